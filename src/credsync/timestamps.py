"""RFC3339 timestamp helpers shared by the metadata and lock records."""

from datetime import UTC, datetime


def utc_now() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(UTC)


def to_rfc3339(value: datetime) -> str:
    """Format a datetime as RFC3339 (UTC, 'Z' suffix).

    Example:
        >>> to_rfc3339(datetime(2025, 1, 2, 3, 4, 5, tzinfo=UTC))
        '2025-01-02T03:04:05Z'
    """
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    text = value.astimezone(UTC).isoformat()
    return text.replace("+00:00", "Z")


def from_rfc3339(text: str) -> datetime:
    """Parse an RFC3339 timestamp into an aware UTC datetime.

    Naive values are assumed to be UTC.

    Raises:
        ValueError: If text is not a valid timestamp
    """
    if not isinstance(text, str):
        raise ValueError(f"Timestamp must be a string, got {type(text).__name__}")
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


__all__ = ["from_rfc3339", "to_rfc3339", "utc_now"]
