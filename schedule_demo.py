"""Scheduler demo — schedule a workflow, dispatch it, and play the executor's part."""

import asyncio
import sys
import tempfile
from pathlib import Path

from core.config import Settings
from core.logging_config import setup_logging
from core.state import RunResult, RunStatus
from runtime import build_runtime
from scheduler.models import ScheduleCreate, ScheduleType
from workflow.definition import Workflow


# ── Example workflow: an opaque graph the executor would interpret ───────────

DEMO_WORKFLOW = Workflow(
    id="hello-pipeline",
    name="hello-pipeline",
    description="Fetch, transform and publish a daily report.",
    graph_definition={
        "nodes": [
            {"id": "fetch", "type": "http"},
            {"id": "transform", "type": "python"},
            {"id": "publish", "type": "email"},
        ],
        "edges": [["fetch", "transform"], ["transform", "publish"]],
    },
    default_inputs={"region": "eu", "format": "pdf"},
)


async def fake_executor(queue: asyncio.Queue, runtime) -> None:
    """Consume dispatched runs and walk each through start → complete."""
    while True:
        event = await queue.get()
        run_id = event["run_id"]
        await runtime.runs.start_run(run_id)
        await asyncio.sleep(0.05)
        await runtime.runs.complete_run(
            run_id,
            RunResult(success=True, outputs={"report": f"/reports/{run_id}.pdf"}),
        )
        queue.task_done()


async def main() -> None:
    setup_logging("INFO", json_output=False)
    db_path = Path(tempfile.mkdtemp()) / "demo.db"
    runtime = await build_runtime(
        Settings(DATABASE_URL=f"sqlite+aiosqlite:///{db_path}"), enable_retention=False
    )

    await runtime.workflow_store.save(DEMO_WORKFLOW)
    schedule = await runtime.schedules.create_schedule(ScheduleCreate(
        workflow_id=DEMO_WORKFLOW.id,
        name="every-five-minutes",
        schedule_type=ScheduleType.CRON,
        cron_expression="*/5 * * * *",
        inputs={"region": "us"},
    ))
    print(f"\nSchedule {schedule.id} next fires at {schedule.next_run_at}\n{'─' * 50}")

    queue = runtime.dispatch.subscribe()
    executor = asyncio.create_task(fake_executor(queue, runtime))
    try:
        run = await runtime.worker.trigger_schedule(schedule.id)
        if run is None:
            print("Dispatch failed, see log output above.")
            sys.exit(1)
        await asyncio.wait_for(queue.join(), timeout=5)

        finished = await runtime.runs.get_run(run.id)
        schedule = await runtime.schedules.get_schedule(schedule.id)
    finally:
        executor.cancel()
        await runtime.close()

    print(f"\n{'─' * 50}")
    print(f"Run       : {finished.id}")
    print(f"Status    : {finished.status.value}")
    print(f"Inputs    : {finished.inputs}")
    print(f"Duration  : {finished.duration_ms} ms")
    print(f"Last run  : {schedule.last_run_at}")
    print(f"Next run  : {schedule.next_run_at}")
    sys.exit(0 if finished.status == RunStatus.SUCCESS else 1)


if __name__ == "__main__":
    asyncio.run(main())
