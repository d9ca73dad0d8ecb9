"""UTC timestamp helpers. All persisted timestamps use this format."""

from datetime import datetime, timezone
from typing import Optional


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def format_timestamp(value: datetime) -> str:
    """ISO 8601, microsecond precision, ``Z`` suffix (sorts lexicographically)."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return (
        value.astimezone(timezone.utc)
        .isoformat(timespec="microseconds")
        .replace("+00:00", "Z")
    )


def get_utc_timestamp() -> str:
    """Current UTC time in the persisted format."""
    return format_timestamp(utc_now())


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """Parse a persisted or remote timestamp; naive values are taken as UTC."""
    if not value:
        return None
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed
