"""Crash reports uploaded by game clients, kept for the analytics dashboard."""
from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from pathlib import PurePosixPath
from typing import Dict, List, Mapping, Optional

from .blobs import BlobStore
from .errors import NotFoundError, StorageError, ValidationError
from .storage import CRASHES, CollectionStore, Record
from .telemetry import UNKNOWN
from .timestamps import EPOCH, Clock, format_timestamp, stored_timestamp, utcnow

logger = logging.getLogger(__name__)

DEFAULT_MAX_BYTES = 10 * 1024 * 1024


@dataclass
class CrashReport:
    id: str
    filename: str
    upload_date: datetime = EPOCH
    platform: str = UNKNOWN
    client_version: str = UNKNOWN
    file_size: int = 0
    error_message: Optional[str] = None

    def to_payload(self) -> Dict[str, object]:
        return {
            "id": self.id,
            "filename": self.filename,
            "upload_date": format_timestamp(self.upload_date),
            "platform": self.platform,
            "client_version": self.client_version,
            "file_size": self.file_size,
            "error_message": self.error_message,
        }

    @classmethod
    def from_payload(cls, payload: Mapping[str, object]) -> "CrashReport":
        try:
            file_size = max(0, int(payload.get("file_size") or 0))  # type: ignore[arg-type]
        except (TypeError, ValueError):
            file_size = 0
        error_message = payload.get("error_message")
        return cls(
            id=str(payload.get("id") or ""),
            filename=str(payload.get("filename") or ""),
            upload_date=stored_timestamp(payload.get("upload_date")) or EPOCH,
            platform=str(payload.get("platform") or UNKNOWN),
            client_version=str(payload.get("client_version") or UNKNOWN),
            file_size=file_size,
            error_message=str(error_message) if error_message else None,
        )


def clean_filename(filename: Optional[str]) -> str:
    """Reduce a client-supplied name to its last path component."""

    name = PurePosixPath((filename or "").replace("\\", "/")).name.replace('"', "").strip()
    if not name or name in {".", ".."}:
        raise ValidationError("filename is required")
    return name


class CrashReportStore:
    """Crash report metadata in the ``crashes`` collection, files in the blob store."""

    def __init__(
        self,
        store: CollectionStore,
        blobs: BlobStore,
        clock: Clock = utcnow,
        max_bytes: int = DEFAULT_MAX_BYTES,
    ) -> None:
        self._store = store
        self._blobs = blobs
        self._clock = clock
        self._max_bytes = max_bytes

    def submit(
        self,
        filename: Optional[str],
        data: bytes,
        platform: Optional[str] = None,
        client_version: Optional[str] = None,
        error_message: Optional[str] = None,
    ) -> CrashReport:
        """Store the crash file, then record it.

        Raises:
            ValidationError: If the file is empty, too large or unnamed.
            StorageError: If the file or the record cannot be written.
        """

        report = CrashReport(
            id=str(uuid.uuid4()),
            filename=clean_filename(filename),
            upload_date=self._clock(),
            platform=platform or UNKNOWN,
            client_version=client_version or UNKNOWN,
            file_size=len(data),
            error_message=error_message or None,
        )
        if not data:
            raise ValidationError("Crash file is empty")
        if len(data) > self._max_bytes:
            raise ValidationError(f"Crash file exceeds {self._max_bytes} bytes")

        try:
            self._blobs.save_crash(report.id, data)
        except OSError as exc:
            logger.exception("Failed to save crash file %s", report.id)
            raise StorageError(f"Failed to save crash file {report.id!r}") from exc
        try:
            with self._store.mutate(CRASHES) as records:
                records.append(report.to_payload())
        except StorageError:
            self._discard_file(report.id)
            raise
        logger.info(
            "Crash report received: %s (%s, %s, %d bytes)",
            report.filename,
            report.platform,
            report.client_version,
            report.file_size,
        )
        return report

    def all(self) -> List[CrashReport]:
        """Every crash report, newest first."""

        reports = [CrashReport.from_payload(record) for record in self._store.load(CRASHES)]
        return sorted(reports, key=lambda report: report.upload_date, reverse=True)

    def get(self, crash_id: str) -> CrashReport:
        for report in self.all():
            if report.id == crash_id:
                return report
        raise NotFoundError("Crash report", crash_id)

    def download(self, crash_id: str) -> bytes:
        self.get(crash_id)
        try:
            return self._blobs.load_crash(crash_id)
        except KeyError as exc:
            raise NotFoundError("Crash file", crash_id) from exc

    def delete(self, crash_id: str) -> CrashReport:
        with self._store.mutate(CRASHES) as records:
            index = _index_of(records, crash_id)
            if index == -1:
                raise NotFoundError("Crash report", crash_id)
            report = CrashReport.from_payload(records.pop(index))
        self._discard_file(crash_id)
        logger.info("Crash report deleted: %s", crash_id)
        return report

    def _discard_file(self, crash_id: str) -> None:
        try:
            self._blobs.delete_crash(crash_id)
        except OSError:
            logger.exception("Failed to delete crash file %s", crash_id)


def _index_of(records: List[Record], record_id: str) -> int:
    for index, record in enumerate(records):
        if record.get("id") == record_id:
            return index
    return -1
