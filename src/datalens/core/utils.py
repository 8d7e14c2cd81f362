"""Small shared helpers."""

from datetime import datetime, timezone
from typing import Optional
from uuid import UUID

from datalens.exceptions import ValidationError


def utc_now() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """
    Return *value* as an aware UTC datetime.

    SQLite drops tzinfo on round-trip; naive values read back from it
    are assumed to be UTC.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_id(value: "UUID | str", field: str = "id") -> UUID:
    """Parse a queued item id."""
    if isinstance(value, UUID):
        return value
    try:
        return UUID(str(value))
    except ValueError as e:
        raise ValidationError(f"Malformed {field}: {value!r}", field=field, reason="malformed") from e
