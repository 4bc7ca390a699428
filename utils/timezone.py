"""UTC-everywhere time handling for tokens, challenges and device trust."""

from datetime import datetime, timezone


def now_utc() -> datetime:
    """
    Current time in UTC.

    Use this instead of datetime.now() everywhere. Tests patch it per module
    to move the clock.
    """
    return datetime.now(timezone.utc)


def from_timestamp(seconds: int | float) -> datetime:
    """Convert a POSIX timestamp (e.g. a JWT 'exp' claim) to a UTC datetime."""
    return datetime.fromtimestamp(seconds, tz=timezone.utc)
