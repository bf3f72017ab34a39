"""Tests for RunService: run creation, the run state machine, listing and retention."""

from datetime import timedelta

import pytest

from conftest import T0
from core.errors import InvalidRunState, RunNotFound, ValidationError, WorkflowNotFound
from core.state import RunError, RunResult, RunStatus
from workflow.definition import Workflow


@pytest.fixture
def runs(runtime, workflow):
    return runtime.runs


# ── Creation ──────────────────────────────────────────────────────────────────


async def test_create_run_merges_inputs(runs):
    """Caller inputs override workflow defaults key by key."""
    run = await runs.create_run("wf-report", inputs={"region": "us", "dry_run": True})
    assert run.status == RunStatus.PENDING
    assert run.inputs == {"region": "us", "format": "pdf", "dry_run": True}
    assert run.node_states == {}
    assert run.started_at is None
    assert run.created_at == T0

    loaded = await runs.get_run(run.id)
    assert loaded.inputs == run.inputs
    assert loaded.schedule_id is None


async def test_create_run_without_inputs_uses_defaults(runs):
    run = await runs.create_run("wf-report", schedule_id="sched-1")
    assert run.inputs == {"region": "eu", "format": "pdf"}
    assert run.schedule_id == "sched-1"


async def test_create_run_unknown_workflow(runs):
    with pytest.raises(WorkflowNotFound):
        await runs.create_run("missing")


async def test_snapshot_not_affected_by_later_workflow_edits(runtime, runs, workflow):
    run = await runs.create_run("wf-report")
    assert run.graph_snapshot["graph_definition"]["nodes"][0]["id"] == "fetch"

    edited = workflow.model_copy(update={
        "graph_definition": {"nodes": [{"id": "rewritten"}], "edges": []},
    })
    await runtime.workflow_store.save(edited)

    loaded = await runs.get_run(run.id)
    assert loaded.graph_snapshot["graph_definition"]["nodes"][0]["id"] == "fetch"
    newer = await runs.create_run("wf-report")
    assert newer.graph_snapshot["graph_definition"]["nodes"][0]["id"] == "rewritten"


async def test_get_unknown_run(runs):
    with pytest.raises(RunNotFound):
        await runs.get_run("nope")


# ── State machine ─────────────────────────────────────────────────────────────


async def test_start_run(runs, clock):
    run = await runs.create_run("wf-report")
    clock.advance(seconds=2)
    started = await runs.start_run(run.id)
    assert started.status == RunStatus.RUNNING
    assert started.started_at == T0 + timedelta(seconds=2)


async def test_start_run_is_idempotent(runs, clock):
    run = await runs.create_run("wf-report")
    first = await runs.start_run(run.id)
    clock.advance(seconds=5)
    second = await runs.start_run(run.id)
    assert second.status == RunStatus.RUNNING
    assert second.started_at == first.started_at


async def test_start_after_cancel_does_nothing(runs):
    run = await runs.create_run("wf-report")
    await runs.cancel_run(run.id)
    again = await runs.start_run(run.id)
    assert again.status == RunStatus.CANCELLED
    assert again.started_at is None


async def test_complete_success_records_duration(runs, clock):
    run = await runs.create_run("wf-report")
    await runs.start_run(run.id)
    clock.advance(seconds=1.5)
    done = await runs.complete_run(run.id, RunResult(
        success=True,
        outputs={"report": "/tmp/r.pdf"},
        node_states={"fetch": "done", "publish": "done"},
    ))
    assert done.status == RunStatus.SUCCESS
    assert done.duration_ms == 1500
    assert done.completed_at == T0 + timedelta(seconds=1.5)

    loaded = await runs.get_run(run.id)
    assert loaded.outputs == {"report": "/tmp/r.pdf"}
    assert loaded.node_states == {"fetch": "done", "publish": "done"}
    assert loaded.duration_ms == 1500


async def test_complete_failure_keeps_error(runs, clock):
    run = await runs.create_run("wf-report")
    await runs.start_run(run.id)
    clock.advance(seconds=3)
    done = await runs.complete_run(run.id, RunResult(
        success=False,
        error=RunError(message="smtp timeout", node_id="publish"),
    ))
    assert done.status == RunStatus.FAILED
    assert done.duration_ms == 3000

    loaded = await runs.get_run(run.id)
    assert loaded.error is not None
    assert loaded.error.message == "smtp timeout"
    assert loaded.error.node_id == "publish"


async def test_complete_from_pending_allowed(runs, clock):
    run = await runs.create_run("wf-report")
    clock.advance(seconds=1)
    done = await runs.complete_run(run.id, RunResult(success=True))
    assert done.status == RunStatus.SUCCESS
    assert done.completed_at == T0 + timedelta(seconds=1)
    assert done.duration_ms is None


async def test_complete_twice_rejected(runs):
    run = await runs.create_run("wf-report")
    await runs.start_run(run.id)
    await runs.complete_run(run.id, RunResult(success=True))
    with pytest.raises(InvalidRunState):
        await runs.complete_run(run.id, RunResult(success=False))
    assert (await runs.get_run(run.id)).status == RunStatus.SUCCESS


async def test_cancel_pending_run(runs):
    run = await runs.create_run("wf-report")
    cancelled = await runs.cancel_run(run.id)
    assert cancelled.status == RunStatus.CANCELLED
    assert cancelled.completed_at == T0
    assert cancelled.duration_ms is None


async def test_cancel_running_run(runs, clock):
    run = await runs.create_run("wf-report")
    await runs.start_run(run.id)
    clock.advance(seconds=4)
    cancelled = await runs.cancel_run(run.id)
    assert cancelled.status == RunStatus.CANCELLED
    assert cancelled.duration_ms == 4000


@pytest.mark.parametrize("success", [True, False])
async def test_cancel_finished_run_rejected(runs, success):
    run = await runs.create_run("wf-report")
    await runs.start_run(run.id)
    await runs.complete_run(run.id, RunResult(success=success))
    with pytest.raises(InvalidRunState):
        await runs.cancel_run(run.id)


async def test_cancel_cancelled_run_rejected(runs):
    run = await runs.create_run("wf-report")
    await runs.cancel_run(run.id)
    with pytest.raises(InvalidRunState):
        await runs.cancel_run(run.id)


async def test_cancel_unknown_run(runs):
    with pytest.raises(RunNotFound):
        await runs.cancel_run("nope")


async def test_record_progress_merges(runs):
    run = await runs.create_run("wf-report")
    await runs.start_run(run.id)
    await runs.record_progress(run.id, node_states={"fetch": "done"})
    updated = await runs.record_progress(
        run.id, node_states={"publish": "running"}, outputs={"rows": 12}
    )
    assert updated.node_states == {"fetch": "done", "publish": "running"}
    assert updated.outputs == {"rows": 12}
    assert (await runs.get_run(run.id)).node_states == updated.node_states


async def test_record_progress_on_finished_run_rejected(runs):
    run = await runs.create_run("wf-report")
    await runs.cancel_run(run.id)
    with pytest.raises(InvalidRunState):
        await runs.record_progress(run.id, node_states={"fetch": "done"})


# ── Listing ───────────────────────────────────────────────────────────────────


async def _seed(runs, clock, n: int) -> list:
    created = []
    for _ in range(n):
        created.append(await runs.create_run("wf-report"))
        clock.advance(minutes=1)
    return created


async def test_list_runs_paginates_newest_first(runs, clock):
    created = await _seed(runs, clock, 5)

    first = await runs.list_runs("wf-report", page=1, page_size=2)
    assert first.total == 5
    assert [r.id for r in first.runs] == [created[4].id, created[3].id]

    last = await runs.list_runs("wf-report", page=3, page_size=2)
    assert [r.id for r in last.runs] == [created[0].id]

    beyond = await runs.list_runs("wf-report", page=4, page_size=2)
    assert beyond.runs == []
    assert beyond.total == 5


async def test_list_runs_filters(runtime, runs, clock):
    created = await _seed(runs, clock, 4)
    await runs.start_run(created[1].id)
    await runs.cancel_run(created[2].id)
    await runtime.workflow_store.save(Workflow(id="wf-other", name="other"))
    await runs.create_run("wf-other")

    running = await runs.list_runs("wf-report", status=RunStatus.RUNNING)
    assert [r.id for r in running.runs] == [created[1].id]
    assert running.total == 1

    window = await runs.list_runs(
        "wf-report",
        start_date=T0 + timedelta(minutes=1),
        end_date=T0 + timedelta(minutes=2),
    )
    assert {r.id for r in window.runs} == {created[1].id, created[2].id}

    assert (await runs.list_runs("wf-other")).total == 1
    assert (await runs.list_runs("wf-none")).total == 0


@pytest.mark.parametrize("page,page_size", [(0, 20), (1, 0), (-1, 5)])
async def test_list_runs_rejects_bad_paging(runs, page, page_size):
    with pytest.raises(ValidationError):
        await runs.list_runs("wf-report", page=page, page_size=page_size)


async def test_delete_runs(runs, clock):
    a, b, c = await _seed(runs, clock, 3)
    assert await runs.delete_runs([a.id, c.id, "does-not-exist"]) == 2
    assert [r.id for r in (await runs.list_runs("wf-report")).runs] == [b.id]
    assert await runs.delete_runs([]) == 0
    with pytest.raises(RunNotFound):
        await runs.get_run(a.id)


# ── Retention ─────────────────────────────────────────────────────────────────


async def test_cleanup_old_runs_keeps_active_runs(runs, clock):
    """Old terminal runs go; old active runs and recent runs stay."""
    old_running = await runs.create_run("wf-report")
    await runs.start_run(old_running.id)
    old_pending = await runs.create_run("wf-report")
    old_success = await runs.create_run("wf-report")
    await runs.complete_run(old_success.id, RunResult(success=True))
    old_failed = await runs.create_run("wf-report")
    await runs.complete_run(old_failed.id, RunResult(success=False))
    old_cancelled = await runs.create_run("wf-report")
    await runs.cancel_run(old_cancelled.id)

    clock.advance(days=80)
    recent = await runs.create_run("wf-report")
    await runs.complete_run(recent.id, RunResult(success=True))

    clock.advance(days=10)
    assert await runs.cleanup_old_runs(30) == 3

    remaining = {r.id for r in (await runs.list_runs("wf-report", page_size=50)).runs}
    assert remaining == {old_running.id, old_pending.id, recent.id}


async def test_cleanup_with_nothing_to_delete(runs):
    await runs.create_run("wf-report")
    assert await runs.cleanup_old_runs(0) == 0


async def test_cleanup_negative_days_rejected(runs):
    with pytest.raises(ValidationError):
        await runs.cleanup_old_runs(-1)
