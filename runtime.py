"""Build stores, services and the worker from settings."""

from __future__ import annotations

from dataclasses import dataclass

from core.clock import Clock, utcnow
from core.config import Settings
from core.dispatch import DispatchChannel
from scheduler.schedule_service import ScheduleService
from scheduler.schedule_store import ScheduleStore
from scheduler.worker import SchedulerWorker
from store.run_store import RunStore
from store.workflow_store import WorkflowStore
from workflow.run_service import RunService


@dataclass
class Runtime:
    workflow_store: WorkflowStore
    schedule_store: ScheduleStore
    run_store: RunStore
    schedules: ScheduleService
    runs: RunService
    dispatch: DispatchChannel
    worker: SchedulerWorker

    async def close(self) -> None:
        await self.worker.stop()
        await self.workflow_store.close()
        await self.schedule_store.close()
        await self.run_store.close()


async def build_runtime(
    settings: Settings | None = None,
    *,
    database_url: str | None = None,
    clock: Clock = utcnow,
    enable_retention: bool = True,
) -> Runtime:
    """Create every component, initialise the tables, and return them wired."""
    settings = settings or Settings()
    db_url = database_url or settings.DATABASE_URL

    workflow_store = WorkflowStore(db_url)
    schedule_store = ScheduleStore(db_url)
    run_store = RunStore(db_url)
    for store in (workflow_store, schedule_store, run_store):
        await store.init()

    schedules = ScheduleService(schedule_store, workflow_store, clock=clock)
    runs = RunService(run_store, workflow_store, clock=clock)
    dispatch = DispatchChannel(max_queue_size=settings.DISPATCH_QUEUE_SIZE)
    worker = SchedulerWorker(
        schedules,
        runs,
        dispatch=dispatch,
        scan_interval=settings.SCAN_INTERVAL_SECONDS,
        max_concurrent_runs=settings.MAX_CONCURRENT_RUNS,
        retention_days=settings.RUN_RETENTION_DAYS if enable_retention else None,
        retention_interval=settings.RETENTION_SWEEP_SECONDS,
    )
    return Runtime(
        workflow_store=workflow_store,
        schedule_store=schedule_store,
        run_store=run_store,
        schedules=schedules,
        runs=runs,
        dispatch=dispatch,
        worker=worker,
    )
