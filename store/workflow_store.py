"""WorkflowStore — SQLite-backed persistence for workflow definitions."""

import sqlalchemy as sa
from sqlalchemy.dialects.sqlite import insert as sqlite_insert

from core.errors import WorkflowNotFound
from store.sql import UTCDateTime, begin, make_engine
from workflow.definition import Workflow

# ── Schema ───────────────────────────────────────────────────────────────────

_metadata = sa.MetaData()

_workflows = sa.Table(
    "workflows",
    _metadata,
    sa.Column("id",               sa.String,   primary_key=True),
    sa.Column("name",             sa.String,   nullable=False, index=True),
    sa.Column("description",      sa.Text,     nullable=False, default=""),
    sa.Column("graph_definition", sa.JSON,     nullable=False),
    sa.Column("default_inputs",   sa.JSON,     nullable=False),
    sa.Column("created_at",       UTCDateTime, nullable=False),
    sa.Column("updated_at",       UTCDateTime, nullable=False),
)


# ── Store ────────────────────────────────────────────────────────────────────

class WorkflowStore:
    """Persist and look up Workflow definitions."""

    def __init__(self, db_url: str = "sqlite+aiosqlite:///scheduler.db"):
        self._engine = make_engine(db_url)

    async def init(self) -> None:
        """Create tables if they don't exist. Call once at startup."""
        async with self._engine.begin() as conn:
            await conn.run_sync(_metadata.create_all)

    async def close(self) -> None:
        await self._engine.dispose()

    # ── CRUD ─────────────────────────────────────────────────────────────────

    async def save(self, workflow: Workflow) -> Workflow:
        """Insert or update a workflow (upsert)."""
        row = workflow.model_dump()
        async with begin(self._engine) as conn:
            await conn.execute(
                sqlite_insert(_workflows)
                .values(**row)
                .on_conflict_do_update(
                    index_elements=["id"],
                    set_={k: row[k] for k in row if k not in ("id", "created_at")},
                )
            )
        return workflow

    async def find_workflow(self, workflow_id: str) -> Workflow:
        """Load a workflow by ID. Raises WorkflowNotFound if missing."""
        async with begin(self._engine) as conn:
            row = (await conn.execute(
                sa.select(_workflows).where(_workflows.c.id == workflow_id)
            )).fetchone()
        if row is None:
            raise WorkflowNotFound(workflow_id)
        return Workflow.model_validate(dict(row._mapping))

    async def list_all(self) -> list[Workflow]:
        async with begin(self._engine) as conn:
            rows = (await conn.execute(
                sa.select(_workflows).order_by(_workflows.c.created_at.desc())
            )).fetchall()
        return [Workflow.model_validate(dict(r._mapping)) for r in rows]
