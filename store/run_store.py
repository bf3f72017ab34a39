"""RunStore — SQLite-backed persistence for Run records."""

from __future__ import annotations

from datetime import datetime

import sqlalchemy as sa
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncConnection

from core.errors import RunNotFound
from core.state import Run, RunStatus
from store.sql import UTCDateTime, begin, make_engine

# ── Schema ───────────────────────────────────────────────────────────────────

_metadata = sa.MetaData()

_runs = sa.Table(
    "workflow_runs",
    _metadata,
    sa.Column("id",             sa.String,   primary_key=True),
    sa.Column("workflow_id",    sa.String,   nullable=False, index=True),
    sa.Column("schedule_id",    sa.String,   nullable=True,  index=True),
    sa.Column("status",         sa.String,   nullable=False, index=True),
    sa.Column("graph_snapshot", sa.JSON,     nullable=False),
    sa.Column("inputs",         sa.JSON,     nullable=False),
    sa.Column("outputs",        sa.JSON,     nullable=True),
    sa.Column("node_states",    sa.JSON,     nullable=False),
    sa.Column("error",          sa.JSON,     nullable=True),
    sa.Column("started_at",     UTCDateTime, nullable=True),
    sa.Column("completed_at",   UTCDateTime, nullable=True),
    sa.Column("duration_ms",    sa.Integer,  nullable=True),
    sa.Column("created_at",     UTCDateTime, nullable=False, index=True),
    sa.Column("updated_at",     UTCDateTime, nullable=False),
)


def _to_row(run: Run) -> dict:
    row = run.model_dump()
    row["status"] = run.status.value
    return row


def _from_row(row) -> Run:
    return Run.model_validate(dict(row._mapping))


# ── Store ────────────────────────────────────────────────────────────────────

class RunStore:
    """Persist and query Run records. Runs are hard-deleted."""

    def __init__(self, db_url: str = "sqlite+aiosqlite:///scheduler.db"):
        self._engine = make_engine(db_url)

    async def init(self) -> None:
        """Create tables if they don't exist. Call once at startup."""
        async with self._engine.begin() as conn:
            await conn.run_sync(_metadata.create_all)

    async def close(self) -> None:
        await self._engine.dispose()

    # ── CRUD ─────────────────────────────────────────────────────────────────

    async def save(self, run: Run, conn: AsyncConnection | None = None) -> Run:
        """Insert or update a run (upsert)."""
        row = _to_row(run)
        async with begin(self._engine, conn) as c:
            await c.execute(
                sqlite_insert(_runs)
                .values(**row)
                .on_conflict_do_update(
                    index_elements=["id"],
                    set_={k: row[k] for k in row if k not in ("id", "created_at")},
                )
            )
        return run

    async def load(self, run_id: str, conn: AsyncConnection | None = None) -> Run:
        """Load a run by ID. Raises RunNotFound if missing."""
        async with begin(self._engine, conn) as c:
            row = (await c.execute(
                sa.select(_runs).where(_runs.c.id == run_id)
            )).fetchone()
        if row is None:
            raise RunNotFound(run_id)
        return _from_row(row)

    async def query(
        self,
        workflow_id: str,
        *,
        offset: int = 0,
        limit: int = 20,
        status: RunStatus | None = None,
        created_from: datetime | None = None,
        created_to: datetime | None = None,
    ) -> tuple[list[Run], int]:
        """Return one page of runs (newest first) and the total match count."""
        conditions = [_runs.c.workflow_id == workflow_id]
        if status is not None:
            conditions.append(_runs.c.status == status.value)
        if created_from is not None:
            conditions.append(_runs.c.created_at >= created_from)
        if created_to is not None:
            conditions.append(_runs.c.created_at <= created_to)

        page_query = (
            sa.select(_runs)
            .where(*conditions)
            .order_by(_runs.c.created_at.desc(), _runs.c.id)
            .offset(offset)
            .limit(limit)
        )
        count_query = sa.select(sa.func.count()).select_from(_runs).where(*conditions)

        async with begin(self._engine) as conn:
            rows = (await conn.execute(page_query)).fetchall()
            total = (await conn.execute(count_query)).scalar_one()
        return [_from_row(r) for r in rows], total

    async def delete_many(self, run_ids: list[str]) -> int:
        if not run_ids:
            return 0
        async with begin(self._engine) as conn:
            result = await conn.execute(sa.delete(_runs).where(_runs.c.id.in_(run_ids)))
        return result.rowcount or 0

    async def delete_finished_before(self, cutoff: datetime, statuses: frozenset[RunStatus]) -> int:
        """Delete runs created before *cutoff* whose status is in *statuses*."""
        async with begin(self._engine) as conn:
            result = await conn.execute(
                sa.delete(_runs).where(
                    _runs.c.created_at < cutoff,
                    _runs.c.status.in_([s.value for s in statuses]),
                )
            )
        return result.rowcount or 0
