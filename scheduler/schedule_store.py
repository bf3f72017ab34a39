"""SQLite persistence for Schedule records."""

from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncIterator

import sqlalchemy as sa
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncConnection

from core.errors import ScheduleNotFound
from scheduler.models import Schedule, ScheduleStatus
from store.sql import UTCDateTime, begin, make_engine

# ── Schema ───────────────────────────────────────────────────────────────────

_metadata = sa.MetaData()

_schedules = sa.Table(
    "workflow_schedules",
    _metadata,
    sa.Column("id",               sa.String,   primary_key=True),
    sa.Column("workflow_id",      sa.String,   nullable=False, index=True),
    sa.Column("name",             sa.String,   nullable=False),
    sa.Column("schedule_type",    sa.String,   nullable=False),
    sa.Column("cron_expression",  sa.String,   nullable=True),
    sa.Column("interval_seconds", sa.Integer,  nullable=True),
    sa.Column("inputs",           sa.JSON,     nullable=False),
    sa.Column("start_time",       UTCDateTime, nullable=True),
    sa.Column("end_time",         UTCDateTime, nullable=True),
    sa.Column("status",           sa.String,   nullable=False, index=True),
    sa.Column("next_run_at",      UTCDateTime, nullable=True,  index=True),
    sa.Column("last_run_at",      UTCDateTime, nullable=True),
    sa.Column("created_at",       UTCDateTime, nullable=False),
    sa.Column("updated_at",       UTCDateTime, nullable=False),
    sa.Column("deleted_at",       UTCDateTime, nullable=True),
)

_live = _schedules.c.deleted_at.is_(None)


def _to_row(schedule: Schedule) -> dict:
    row = schedule.model_dump()
    row["schedule_type"] = schedule.schedule_type.value
    row["status"] = schedule.status.value
    return row


def _from_row(row) -> Schedule:
    return Schedule.model_validate(dict(row._mapping))


# ── Store ────────────────────────────────────────────────────────────────────

class ScheduleStore:
    """Schedules are soft-deleted: every read except load(include_deleted=True)
    skips rows with ``deleted_at`` set."""

    def __init__(self, db_url: str = "sqlite+aiosqlite:///scheduler.db"):
        self._engine = make_engine(db_url)

    async def init(self) -> None:
        async with self._engine.begin() as conn:
            await conn.run_sync(_metadata.create_all)

    async def close(self) -> None:
        await self._engine.dispose()

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[AsyncConnection]:
        """All store calls given the yielded connection commit or roll back together."""
        async with begin(self._engine) as conn:
            yield conn

    # ── CRUD ─────────────────────────────────────────────────────────────────

    async def save(self, schedule: Schedule, conn: AsyncConnection | None = None) -> Schedule:
        row = _to_row(schedule)
        async with begin(self._engine, conn) as c:
            await c.execute(
                sqlite_insert(_schedules)
                .values(**row)
                .on_conflict_do_update(
                    index_elements=["id"],
                    set_={k: row[k] for k in row if k not in ("id", "created_at")},
                )
            )
        return schedule

    async def save_if_status(
        self,
        schedule: Schedule,
        expected: ScheduleStatus,
        conn: AsyncConnection | None = None,
    ) -> bool:
        """Write *schedule* only if the stored row is live and still *expected*.

        Returns False when another writer changed the status (or deleted the
        row) since it was read.
        """
        row = _to_row(schedule)
        values = {k: v for k, v in row.items() if k not in ("id", "created_at")}
        async with begin(self._engine, conn) as c:
            result = await c.execute(
                sa.update(_schedules)
                .where(
                    _schedules.c.id == schedule.id,
                    _schedules.c.status == expected.value,
                    _live,
                )
                .values(**values)
            )
        return bool(result.rowcount)

    async def load(
        self,
        schedule_id: str,
        conn: AsyncConnection | None = None,
        include_deleted: bool = False,
    ) -> Schedule:
        """Load a schedule by ID. Raises ScheduleNotFound if missing or deleted."""
        query = sa.select(_schedules).where(_schedules.c.id == schedule_id)
        if not include_deleted:
            query = query.where(_live)
        async with begin(self._engine, conn) as c:
            row = (await c.execute(query)).fetchone()
        if row is None:
            raise ScheduleNotFound(schedule_id)
        return _from_row(row)

    async def list_all(self, workflow_id: str | None = None) -> list[Schedule]:
        """Return live schedules, newest first."""
        query = sa.select(_schedules).where(_live)
        if workflow_id:
            query = query.where(_schedules.c.workflow_id == workflow_id)
        query = query.order_by(_schedules.c.created_at.desc())
        async with begin(self._engine) as conn:
            rows = (await conn.execute(query)).fetchall()
        return [_from_row(r) for r in rows]

    async def soft_delete(self, schedule_id: str, deleted_at: datetime) -> bool:
        """Mark a schedule deleted. Returns False if there was nothing to delete."""
        async with begin(self._engine) as conn:
            result = await conn.execute(
                sa.update(_schedules)
                .where(_schedules.c.id == schedule_id, _live)
                .values(
                    deleted_at=deleted_at,
                    updated_at=deleted_at,
                    status=ScheduleStatus.DISABLED.value,
                    next_run_at=None,
                )
            )
        return bool(result.rowcount)

    # ── Worker queries ───────────────────────────────────────────────────────

    async def find_due(self, now: datetime, limit: int) -> list[Schedule]:
        """ENABLED schedules whose next_run_at has passed, oldest-due first."""
        query = (
            sa.select(_schedules)
            .where(
                _live,
                _schedules.c.status == ScheduleStatus.ENABLED.value,
                _schedules.c.next_run_at.is_not(None),
                _schedules.c.next_run_at <= now,
            )
            .order_by(_schedules.c.next_run_at.asc(), _schedules.c.id)
            .limit(limit)
        )
        async with begin(self._engine) as conn:
            rows = (await conn.execute(query)).fetchall()
        return [_from_row(r) for r in rows]

    async def expire_ended(self, now: datetime) -> list[str]:
        """Flip ENABLED schedules whose end_time has passed to EXPIRED.

        Returns the affected IDs.
        """
        condition = sa.and_(
            _live,
            _schedules.c.status == ScheduleStatus.ENABLED.value,
            _schedules.c.end_time.is_not(None),
            _schedules.c.end_time <= now,
        )
        async with begin(self._engine) as conn:
            ids = list((await conn.execute(
                sa.select(_schedules.c.id).where(condition)
            )).scalars())
            if ids:
                await conn.execute(
                    sa.update(_schedules)
                    .where(_schedules.c.id.in_(ids))
                    .values(
                        status=ScheduleStatus.EXPIRED.value,
                        next_run_at=None,
                        updated_at=now,
                    )
                )
        return ids
