"""Telemetry log: append-only events and lifecycle-limited sessions."""
from __future__ import annotations

import json
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Mapping, Optional, Union

from .errors import NotFoundError, ValidationError
from .storage import EVENTS, SESSIONS, CollectionStore, Record
from .timestamps import EPOCH, Clock, format_timestamp, parse_timestamp, stored_timestamp, utcnow

logger = logging.getLogger(__name__)

ANONYMOUS_SESSION = "anonymous"
UNKNOWN = "unknown"

PropertyValue = Union[str, int, float, bool, None]


def coerce_property(value: Any) -> PropertyValue:
    """Keep scalars as they are; store anything else as its JSON text."""

    if value is None or isinstance(value, (str, bool, int, float)):
        return value
    return json.dumps(value, sort_keys=True, default=str)


def coerce_properties(properties: Optional[Mapping[str, Any]]) -> Dict[str, PropertyValue]:
    if properties is None:
        return {}
    if not isinstance(properties, Mapping):
        raise ValidationError("properties must be an object")
    return {str(key): coerce_property(value) for key, value in properties.items()}


@dataclass
class AnalyticsEvent:
    id: str
    event_name: str
    session_id: str = ANONYMOUS_SESSION
    properties: Dict[str, PropertyValue] = field(default_factory=dict)
    timestamp: datetime = EPOCH
    client_version: str = UNKNOWN
    platform: str = UNKNOWN

    def to_payload(self) -> Dict[str, object]:
        return {
            "id": self.id,
            "session_id": self.session_id,
            "event_name": self.event_name,
            "properties": dict(self.properties),
            "timestamp": format_timestamp(self.timestamp),
            "client_version": self.client_version,
            "platform": self.platform,
        }

    @classmethod
    def from_payload(cls, payload: Mapping[str, object]) -> "AnalyticsEvent":
        properties = payload.get("properties")
        return cls(
            id=str(payload.get("id") or ""),
            event_name=str(payload.get("event_name") or ""),
            session_id=str(payload.get("session_id") or ANONYMOUS_SESSION),
            properties=coerce_properties(properties) if isinstance(properties, Mapping) else {},
            timestamp=stored_timestamp(payload.get("timestamp")) or EPOCH,
            client_version=str(payload.get("client_version") or UNKNOWN),
            platform=str(payload.get("platform") or UNKNOWN),
        )


@dataclass
class AnalyticsSession:
    id: str
    start_time: datetime
    end_time: Optional[datetime] = None
    client_version: str = UNKNOWN
    platform: str = UNKNOWN
    metadata: Dict[str, Any] = field(default_factory=dict)
    event_count: int = 0

    @property
    def active(self) -> bool:
        return self.end_time is None

    def to_payload(self) -> Dict[str, object]:
        return {
            "id": self.id,
            "start_time": format_timestamp(self.start_time),
            "end_time": format_timestamp(self.end_time) if self.end_time else None,
            "client_version": self.client_version,
            "platform": self.platform,
            "metadata": dict(self.metadata),
            "event_count": self.event_count,
        }

    @classmethod
    def from_payload(cls, payload: Mapping[str, object]) -> "AnalyticsSession":
        metadata = payload.get("metadata")
        try:
            event_count = int(payload.get("event_count") or 0)  # type: ignore[arg-type]
        except (TypeError, ValueError):
            event_count = 0
        return cls(
            id=str(payload.get("id") or ""),
            start_time=stored_timestamp(payload.get("start_time")) or EPOCH,
            end_time=stored_timestamp(payload.get("end_time")),
            client_version=str(payload.get("client_version") or UNKNOWN),
            platform=str(payload.get("platform") or UNKNOWN),
            metadata=dict(metadata) if isinstance(metadata, Mapping) else {},
            event_count=event_count,
        )


@dataclass
class TelemetrySnapshot:
    """The event log and session table as of one load."""

    events: List[AnalyticsEvent]
    sessions: List[AnalyticsSession]


@dataclass
class Page:
    items: List[Any]
    total: int


class TelemetryLog:
    """Append-only event log plus session start/end bookkeeping."""

    def __init__(self, store: CollectionStore, clock: Clock = utcnow) -> None:
        self._store = store
        self._clock = clock

    def _build_event(self, raw: Mapping[str, Any]) -> AnalyticsEvent:
        if not isinstance(raw, Mapping):
            raise ValidationError("event must be an object")
        event_name = raw.get("event_name")
        if not isinstance(event_name, str) or not event_name.strip():
            raise ValidationError("event_name is required")
        timestamp = raw.get("timestamp")
        return AnalyticsEvent(
            id=str(uuid.uuid4()),
            event_name=event_name,
            session_id=str(raw.get("session_id") or ANONYMOUS_SESSION),
            properties=coerce_properties(raw.get("properties")),
            timestamp=parse_timestamp(timestamp) if timestamp else self._clock(),
            client_version=str(raw.get("client_version") or UNKNOWN),
            platform=str(raw.get("platform") or UNKNOWN),
        )

    def append_event(self, raw: Mapping[str, Any]) -> AnalyticsEvent:
        return self.append_batch([raw])[0]

    def append_batch(self, raws: Iterable[Mapping[str, Any]]) -> List[AnalyticsEvent]:
        """Validate every event first, then append them all in one write."""

        events = [self._build_event(raw) for raw in raws]
        if not events:
            return []
        with self._store.mutate(EVENTS) as records:
            records.extend(event.to_payload() for event in events)
        return events

    def start_session(
        self,
        client_version: Optional[str] = None,
        platform: Optional[str] = None,
        metadata: Optional[Mapping[str, Any]] = None,
    ) -> AnalyticsSession:
        session = AnalyticsSession(
            id=str(uuid.uuid4()),
            start_time=self._clock(),
            client_version=client_version or UNKNOWN,
            platform=platform or UNKNOWN,
            metadata=dict(metadata or {}),
        )
        with self._store.mutate(SESSIONS) as records:
            records.append(session.to_payload())
        logger.info("Session started: %s (%s, %s)", session.id, session.platform, session.client_version)
        return session

    def end_session(self, session_id: str) -> AnalyticsSession:
        """Close a session and snapshot its event count; ending it again changes nothing."""

        with self._store.mutate(SESSIONS) as records:
            index = _index_of(records, session_id)
            if index == -1:
                raise NotFoundError("Session", session_id)
            session = AnalyticsSession.from_payload(records[index])
            if session.end_time is not None:
                return session
            session.end_time = self._clock()
            session.event_count = sum(
                1 for event in self._store.load(EVENTS) if event.get("session_id") == session_id
            )
            records[index] = session.to_payload()
        logger.info("Session ended: %s with %d events", session_id, session.event_count)
        return session

    def clear(self) -> None:
        with self._store.mutate_many(EVENTS, SESSIONS) as collections:
            for records in collections.values():
                records.clear()
        logger.info("Analytics data cleared")

    def events(self) -> List[AnalyticsEvent]:
        return [AnalyticsEvent.from_payload(record) for record in self._store.load(EVENTS)]

    def sessions(self) -> List[AnalyticsSession]:
        return [AnalyticsSession.from_payload(record) for record in self._store.load(SESSIONS)]

    def snapshot(self) -> TelemetrySnapshot:
        return TelemetrySnapshot(events=self.events(), sessions=self.sessions())

    def query_events(
        self,
        event_name: Optional[str] = None,
        session_id: Optional[str] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> Page:
        """Return matching events newest first, with the total before pagination."""

        matching = [
            event
            for event in self.events()
            if (event_name is None or event.event_name == event_name)
            and (session_id is None or event.session_id == session_id)
            and (start is None or event.timestamp >= start)
            and (end is None or event.timestamp <= end)
        ]
        matching.sort(key=lambda event: event.timestamp, reverse=True)
        return Page(items=matching[offset : offset + limit], total=len(matching))

    def list_sessions(self, limit: int = 50, offset: int = 0) -> Page:
        sessions = sorted(self.sessions(), key=lambda session: session.start_time, reverse=True)
        return Page(items=sessions[offset : offset + limit], total=len(sessions))

    def session_events(self, session_id: str) -> List[AnalyticsEvent]:
        events = [event for event in self.events() if event.session_id == session_id]
        events.sort(key=lambda event: event.timestamp)
        return events


def _index_of(records: List[Record], record_id: str) -> int:
    for index, record in enumerate(records):
        if record.get("id") == record_id:
            return index
    return -1
