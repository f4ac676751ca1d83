"""Exceptions raised by the design store and telemetry core."""
from __future__ import annotations


class DesignServerError(Exception):
    """Base class for errors surfaced by the core services."""


class ValidationError(DesignServerError):
    """Raised when a required input field is missing or malformed."""


class NotFoundError(DesignServerError):
    """Raised when an operation references an unknown record id."""

    def __init__(self, kind: str, record_id: str) -> None:
        super().__init__(f"{kind} {record_id!r} not found")
        self.kind = kind
        self.record_id = record_id


class StorageError(DesignServerError):
    """Raised when a collection cannot be read or written."""
