"""Database-agnostic column types.

Production runs on PostgreSQL (asyncpg); local runs and the test-suite run on
SQLite (aiosqlite). These types behave the same on both.
"""
from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import JSON, DateTime, Uuid
from sqlalchemy.types import TypeDecorator

# JSON works on both; JSONB is PostgreSQL-only
JSONType = JSON

# Native UUID on PostgreSQL, CHAR(32) elsewhere
UUIDType = Uuid


class UTCDateTime(TypeDecorator):
    """
    Timezone-aware timestamp that always comes back as aware UTC.

    SQLite drops tzinfo on the way in, so naive values read back are UTC by
    construction (everything is converted to UTC before binding).
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    def process_result_value(self, value: datetime | None, dialect) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)
