"""Read-side analytics computed from the telemetry log on every call.

Nothing here is cached or persisted: each query loads the current snapshot of
the log and recomputes its rollups, so results always match the log at the time
of the call. Cost is linear in the number of stored events.
"""
from __future__ import annotations

from collections import Counter
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Dict, Iterable, List, Optional, Tuple

from .telemetry import AnalyticsEvent, PropertyValue, TelemetryLog, TelemetrySnapshot
from .timestamps import Clock, utcnow

EMPTY_VALUE = "(empty)"
BREAKDOWN_TOP_VALUES = 20
TREND_DAYS = 7
WEEK_DAYS = 7
MONTH_DAYS = 30


@dataclass(frozen=True)
class Windows:
    """Window starts anchored at the UTC midnight of ``now``."""

    today: datetime
    this_week: datetime
    this_month: datetime

    @classmethod
    def anchored_at(cls, now: datetime) -> "Windows":
        if now.tzinfo is None:
            now = now.replace(tzinfo=timezone.utc)
        midnight = now.astimezone(timezone.utc).replace(hour=0, minute=0, second=0, microsecond=0)
        return cls(
            today=midnight,
            this_week=midnight - timedelta(days=WEEK_DAYS),
            this_month=midnight - timedelta(days=MONTH_DAYS),
        )

    def count(self, timestamps: List[datetime]) -> Dict[str, int]:
        return {
            "total": len(timestamps),
            "today": sum(1 for ts in timestamps if ts >= self.today),
            "this_week": sum(1 for ts in timestamps if ts >= self.this_week),
            "this_month": sum(1 for ts in timestamps if ts >= self.this_month),
        }


def top_events(events: Iterable[AnalyticsEvent], limit: Optional[int] = None) -> List[Dict[str, object]]:
    """Event-name frequencies, most frequent first; equal counts ordered by name."""

    counts = Counter(event.event_name for event in events)
    ranked = sorted(counts.items(), key=lambda item: (-item[1], item[0]))
    if limit is not None:
        ranked = ranked[:limit]
    return [{"name": name, "count": count} for name, count in ranked]


def events_per_day(events: Iterable[AnalyticsEvent], today: datetime) -> List[Dict[str, object]]:
    """Zero-filled daily counts for the trailing week, oldest day first."""

    days = [today - timedelta(days=offset) for offset in range(TREND_DAYS - 1, -1, -1)]
    counts = dict.fromkeys((day.date() for day in days), 0)
    window_start, window_end = days[0], today + timedelta(days=1)
    for event in events:
        if window_start <= event.timestamp < window_end:
            counts[event.timestamp.date()] += 1
    return [{"date": day.isoformat(), "count": count} for day, count in counts.items()]


def summarize(snapshot: TelemetrySnapshot, now: datetime, top_limit: Optional[int] = None) -> Dict[str, object]:
    windows = Windows.anchored_at(now)
    sessions = windows.count([session.start_time for session in snapshot.sessions])
    sessions["active"] = sum(1 for session in snapshot.sessions if session.active)
    return {
        "events": windows.count([event.timestamp for event in snapshot.events]),
        "sessions": sessions,
        "top_events": top_events(snapshot.events, top_limit),
        "events_per_day": events_per_day(snapshot.events, windows.today),
    }


def _value_key(value: PropertyValue) -> Tuple[str, PropertyValue]:
    # bool is an int subclass; tag it so True and 1 count separately
    if isinstance(value, bool):
        return ("bool", value)
    if isinstance(value, (int, float)):
        return ("number", value)
    return ("string", value)


def frequency_table(values: Iterable[PropertyValue], limit: Optional[int] = None) -> List[Dict[str, object]]:
    """Count values, most frequent first; ties keep the order values first appeared."""

    counts: Dict[Tuple[str, PropertyValue], List[object]] = {}
    for value in values:
        if value is None:
            value = EMPTY_VALUE
        key = _value_key(value)
        entry = counts.get(key)
        if entry is None:
            counts[key] = [value, 1]
        else:
            entry[1] += 1  # type: ignore[operator]
    ranked = sorted(counts.values(), key=lambda entry: -entry[1])  # type: ignore[operator]
    if limit is not None:
        ranked = ranked[:limit]
    return [{"value": value, "count": count} for value, count in ranked]


def breakdown(
    events: Iterable[AnalyticsEvent],
    event_name: str,
    property_name: Optional[str] = None,
) -> Dict[str, object]:
    """Per-property value frequencies across events named ``event_name``.

    With ``property_name`` the single table is returned in full. Without it every
    property seen on the matching events gets a table of its top values.
    """

    matching = [event for event in events if event.event_name == event_name]
    properties = sorted({key for event in matching for key in event.properties})
    result: Dict[str, object] = {
        "event_name": event_name,
        "total_count": len(matching),
        "properties": properties,
    }
    if property_name is not None:
        result["property"] = property_name
        result["breakdown"] = frequency_table(event.properties.get(property_name) for event in matching)
        return result

    result["breakdowns"] = {
        name: frequency_table(
            (event.properties.get(name) for event in matching), limit=BREAKDOWN_TOP_VALUES
        )
        for name in properties
    }
    return result


class AggregationEngine:
    """Summaries and breakdowns over the telemetry log's current snapshot."""

    def __init__(self, log: TelemetryLog, clock: Clock = utcnow) -> None:
        self._log = log
        self._clock = clock

    def summary(self, now: Optional[datetime] = None, top_limit: Optional[int] = None) -> Dict[str, object]:
        return summarize(self._log.snapshot(), now or self._clock(), top_limit)

    def event_breakdown(self, event_name: str, property_name: Optional[str] = None) -> Dict[str, object]:
        return breakdown(self._log.events(), event_name, property_name)

    def event_names(self) -> List[str]:
        return sorted({event.event_name for event in self._log.events()})
