"""
UTC Timestamps

Every timestamp the service writes is timezone-aware UTC. SQLite keeps no
offset, so values are normalized to UTC before they are stored and tagged
as UTC again when they are loaded.
"""

from datetime import datetime, timezone

from sqlalchemy import DateTime
from sqlalchemy.types import TypeDecorator


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Naive values are taken to already be UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class UTCDateTime(TypeDecorator):
    """DateTime(timezone=True) that round-trips as aware UTC on every backend."""

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return value
        value = as_utc(value)
        if dialect.name == "sqlite":
            # Stored as text; one fixed offset keeps comparisons lexical
            return value.replace(tzinfo=None)
        return value

    def process_result_value(self, value, dialect):
        if value is None:
            return value
        return as_utc(value)
