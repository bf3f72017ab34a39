"""Tests for the SQLite stores and the shared column/transaction helpers."""

from datetime import datetime, timedelta, timezone

import pytest

from conftest import T0
from core.errors import TransientStoreError, WorkflowNotFound
from store.run_store import RunStore
from store.sql import UTCDateTime
from store.workflow_store import WorkflowStore
from workflow.definition import Workflow


# ── UTCDateTime ───────────────────────────────────────────────────────────────


def test_utc_datetime_normalises_offsets():
    col = UTCDateTime()
    cest = timezone(timedelta(hours=2))
    stored = col.process_bind_param(datetime(2026, 6, 1, 12, 0, tzinfo=cest), None)
    assert stored == datetime(2026, 6, 1, 10, 0)
    assert stored.tzinfo is None

    loaded = col.process_result_value(stored, None)
    assert loaded == datetime(2026, 6, 1, 10, 0, tzinfo=timezone.utc)
    assert loaded.tzinfo is timezone.utc


def test_utc_datetime_rejects_naive():
    with pytest.raises(ValueError):
        UTCDateTime().process_bind_param(datetime(2026, 6, 1, 12, 0), None)


def test_utc_datetime_passes_none():
    col = UTCDateTime()
    assert col.process_bind_param(None, None) is None
    assert col.process_result_value(None, None) is None


# ── WorkflowStore ─────────────────────────────────────────────────────────────


async def test_workflow_store_upsert_and_find(db_url):
    store = WorkflowStore(db_url)
    await store.init()
    try:
        wf = Workflow(id="wf-1", name="ingest", default_inputs={"limit": 10})
        await store.save(wf)
        await store.save(wf.model_copy(update={"name": "ingest-v2"}))

        found = await store.find_workflow("wf-1")
        assert found.name == "ingest-v2"
        assert found.default_inputs == {"limit": 10}
        assert found.created_at.tzinfo is not None
        assert [w.id for w in await store.list_all()] == ["wf-1"]

        with pytest.raises(WorkflowNotFound):
            await store.find_workflow("wf-2")
    finally:
        await store.close()


def test_workflow_name_must_not_be_blank():
    with pytest.raises(ValueError):
        Workflow(name="   ")


# ── Failure translation ───────────────────────────────────────────────────────


async def test_unreachable_database_is_transient(tmp_path):
    store = RunStore(f"sqlite+aiosqlite:///{tmp_path}/missing/dir/runs.db")
    try:
        with pytest.raises(TransientStoreError):
            await store.load("r-1")
    finally:
        await store.close()


async def test_query_window_uses_utc_timeline(runtime, workflow, clock):
    """Filters given in a non-UTC offset select the same instants as UTC ones."""
    run = await runtime.runs.create_run("wf-report")
    cet = timezone(timedelta(hours=1))
    local = (T0 - timedelta(minutes=1)).astimezone(cet)

    runs, total = await runtime.run_store.query("wf-report", created_from=local)
    assert total == 1
    assert runs[0].id == run.id
    assert runs[0].created_at == T0

    _, total = await runtime.run_store.query(
        "wf-report", created_from=(T0 + timedelta(seconds=1)).astimezone(cet)
    )
    assert total == 0
