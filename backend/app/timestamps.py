"""UTC timestamp helpers shared by the stores."""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Callable, Optional, Union

from .errors import ValidationError

Clock = Callable[[], datetime]

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def format_timestamp(value: datetime) -> str:
    """Render ``value`` as ISO-8601 UTC with millisecond precision and a ``Z`` suffix."""

    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_timestamp(value: Union[str, datetime]) -> datetime:
    """Parse an ISO-8601 string or datetime into an aware UTC datetime.

    Naive values are taken to be UTC.

    Raises:
        ValidationError: If ``value`` is not a recognisable timestamp.
    """

    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str):
        text = value.strip()
        if text.endswith("Z") or text.endswith("z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError as exc:
            raise ValidationError(f"Invalid timestamp {value!r}") from exc
    else:
        raise ValidationError(f"Invalid timestamp {value!r}")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def stored_timestamp(value: object) -> Optional[datetime]:
    """Parse a persisted timestamp, returning ``None`` for missing or damaged values."""

    if value is None:
        return None
    try:
        return parse_timestamp(value)  # type: ignore[arg-type]
    except ValidationError:
        return None
