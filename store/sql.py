"""Shared SQLAlchemy helpers for the stores."""

from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import AsyncIterator

import sqlalchemy as sa
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine, create_async_engine

from core.errors import TransientStoreError


class UTCDateTime(sa.TypeDecorator):
    """Store naive UTC, hand back tz-aware UTC.

    SQLite has no timezone support, so aware datetimes are normalised on the
    way in; comparisons in WHERE clauses then work on a single timeline.
    """

    impl = sa.DateTime
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            raise ValueError(f"Naive datetime not allowed: {value!r}")
        return value.astimezone(timezone.utc).replace(tzinfo=None)

    def process_result_value(self, value: datetime | None, dialect):
        if value is None:
            return None
        return value.replace(tzinfo=timezone.utc)


def make_engine(db_url: str) -> AsyncEngine:
    return create_async_engine(db_url, echo=False)


@asynccontextmanager
async def begin(engine: AsyncEngine, conn: AsyncConnection | None = None) -> AsyncIterator[AsyncConnection]:
    """Join *conn* if the caller already holds a transaction, else open one.

    Lock and busy errors surface as TransientStoreError.
    """
    try:
        if conn is not None:
            yield conn
        else:
            async with engine.begin() as new_conn:
                yield new_conn
    except OperationalError as e:
        raise TransientStoreError(str(e.orig or e)) from e
