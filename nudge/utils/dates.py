"""Date and time helpers.

All instants handled by the service are timezone-aware UTC datetimes. Naive
values coming from the model or from storage drivers that drop tzinfo are
interpreted as UTC.
"""

from datetime import UTC, datetime


def utc_now() -> datetime:
    """Current wall-clock instant in UTC."""
    return datetime.now(UTC)


def ensure_utc(value: datetime) -> datetime:
    """Attach or convert to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def parse_iso_datetime(value: str | datetime) -> datetime:
    """Parse an ISO 8601 string into an aware UTC datetime.

    Raises:
        ValueError: If the value is not a valid ISO 8601 date/time
    """
    if isinstance(value, datetime):
        return ensure_utc(value)

    text = value.strip()
    if not text:
        raise ValueError("Date string is empty")

    try:
        parsed = datetime.fromisoformat(text)
    except ValueError as e:
        raise ValueError(f"Invalid ISO date string: {value}") from e

    return ensure_utc(parsed)


def is_future(value: datetime, now: datetime) -> bool:
    """Whether ``value`` is strictly after ``now``."""
    return ensure_utc(value) > ensure_utc(now)


def format_human(value: datetime) -> str:
    """Readable form used in confirmations and SMS bodies."""
    return ensure_utc(value).strftime("%A, %B %d, %Y at %I:%M %p UTC")


def to_iso(value: datetime) -> str:
    """Serialise an instant as ISO 8601 with a ``Z`` suffix."""
    return ensure_utc(value).isoformat().replace("+00:00", "Z")
