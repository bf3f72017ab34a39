"""Polling scheduler worker — turns due schedules into runs on a fixed cadence."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from pydantic import BaseModel

from core.dispatch import DispatchChannel
from core.errors import ScheduleNotEnabled
from core.logging_config import new_trace_id, reset_trace_id, set_trace_id
from core.state import Run
from core.tracer import Tracer
from scheduler.models import Schedule, ScheduleStatus
from scheduler.schedule_service import ScheduleService
from workflow.run_service import RunService

logger = logging.getLogger(__name__)

_SCAN_JOB_ID = "scan-schedules"
_RETENTION_JOB_ID = "run-retention"


class WorkerStatus(BaseModel):
    running: bool
    busy: bool
    scan_interval_seconds: float
    max_concurrent_runs: int
    last_cycle: dict | None = None


class SchedulerWorker:
    """Scans for due schedules every ``scan_interval`` seconds and dispatches runs.

    Assumes it is the only active instance: two workers on one database
    would both pick up the same due schedules.
    """

    def __init__(
        self,
        schedule_service: ScheduleService,
        run_service: RunService,
        dispatch: DispatchChannel | None = None,
        scan_interval: float = 30.0,
        max_concurrent_runs: int = 10,
        retention_days: int | None = None,
        retention_interval: float = 86400.0,
        tracer: Tracer | None = None,
    ):
        if max_concurrent_runs < 1:
            raise ValueError("max_concurrent_runs must be at least 1")
        self._schedules = schedule_service
        self._runs = run_service
        self._dispatch = dispatch or DispatchChannel()
        self.scan_interval = scan_interval
        self.max_concurrent_runs = max_concurrent_runs
        self.retention_days = retention_days
        self.retention_interval = retention_interval
        self.tracer = tracer or Tracer()
        self._aps: AsyncIOScheduler | None = None
        # Single-flight guard: held for the whole scan cycle
        self._cycle_lock = asyncio.Lock()

    # ── Lifecycle ────────────────────────────────────────────────────────────

    @property
    def running(self) -> bool:
        return self._aps is not None

    @property
    def busy(self) -> bool:
        return self._cycle_lock.locked()

    async def start(self) -> None:
        """Start the scan timer; the first cycle runs immediately. No-op if running."""
        if self._aps is not None:
            logger.info("Scheduler worker is already running")
            return

        self._aps = AsyncIOScheduler(timezone=timezone.utc)
        self._aps.add_job(
            self.process_schedules,
            trigger=IntervalTrigger(seconds=self.scan_interval),
            id=_SCAN_JOB_ID,
            next_run_time=datetime.now(timezone.utc),
            max_instances=1,
            coalesce=True,
        )
        if self.retention_days is not None:
            self._aps.add_job(
                self.sweep_retention,
                trigger=IntervalTrigger(seconds=self.retention_interval),
                id=_RETENTION_JOB_ID,
                max_instances=1,
                coalesce=True,
            )
        self._aps.start()
        logger.info(
            "Scheduler worker started",
            extra={"scan_interval_s": self.scan_interval,
                   "max_concurrent_runs": self.max_concurrent_runs,
                   "retention_days": self.retention_days},
        )

    async def stop(self) -> None:
        """Stop the timer without waiting for an in-flight cycle. No-op if stopped."""
        if self._aps is None:
            return
        if self._aps.running:
            self._aps.shutdown(wait=False)
        self._aps = None
        logger.info("Scheduler worker stopped")

    def status(self) -> WorkerStatus:
        last = self.tracer.last("cycle")
        return WorkerStatus(
            running=self.running,
            busy=self.busy,
            scan_interval_seconds=self.scan_interval,
            max_concurrent_runs=self.max_concurrent_runs,
            last_cycle=last.to_dict() if last else None,
        )

    # ── Scan cycle ────────────────────────────────────────────────────────────

    async def process_schedules(self) -> None:
        """One scan cycle: dispatch due schedules, then sweep expired ones.

        Skipped outright if the previous cycle has not finished.
        """
        if self._cycle_lock.locked():
            logger.debug("Scheduler worker is busy, skipping this cycle")
            return

        async with self._cycle_lock:
            token = set_trace_id(new_trace_id())
            try:
                with self.tracer.span("scan_cycle", kind="cycle") as span:
                    try:
                        await self._run_cycle(span.attrs)
                    except Exception as e:
                        span.error = f"{type(e).__name__}: {e}"
                        logger.exception("Error processing schedules")
                logger.debug(
                    "Scheduler worker cycle completed",
                    extra={"duration_ms": span.duration_ms, **span.attrs},
                )
            finally:
                reset_trace_id(token)

    async def _run_cycle(self, stats: dict) -> None:
        stats.update(due=0, dispatched=0, failed=0, expired=0)

        schedules = await self._schedules.get_schedules_to_run(self.max_concurrent_runs)
        stats["due"] = len(schedules)
        if schedules:
            logger.info("Found schedules to execute", extra={"count": len(schedules)})
            results = await asyncio.gather(
                *[self._execute_schedule(s) for s in schedules],
                return_exceptions=True,
            )
            for schedule, result in zip(schedules, results):
                if isinstance(result, Run):
                    stats["dispatched"] += 1
                else:
                    stats["failed"] += 1
                    if isinstance(result, BaseException):
                        logger.error(
                            "Schedule dispatch raised",
                            extra={"schedule_id": schedule.id, "error": repr(result)},
                        )

        stats["expired"] = await self._handle_expired_schedules()

    async def _handle_expired_schedules(self) -> int:
        try:
            expired = await self._schedules.expire_schedules()
        except Exception:
            logger.exception("Error handling expired schedules")
            return 0
        if expired:
            logger.info("Expired schedules", extra={"count": len(expired), "schedule_ids": expired})
        return len(expired)

    # ── Per-schedule dispatch ─────────────────────────────────────────────────

    async def _execute_schedule(self, schedule: Schedule) -> Run | None:
        """Create a run for *schedule*, hand it off, and advance the schedule.

        Never raises: any failure is logged and the schedule is advanced anyway
        so it does not stay due and get retried every cycle.
        """
        logger.info(
            "Executing schedule",
            extra={"schedule_id": schedule.id, "schedule_name": schedule.name},
        )
        run: Run | None = None
        with self.tracer.span(schedule.id, kind="dispatch", schedule_id=schedule.id) as span:
            try:
                run = await self._runs.create_run(
                    schedule.workflow_id,
                    inputs=schedule.inputs,
                    schedule_id=schedule.id,
                )
                span.attrs["run_id"] = run.id
                await self._dispatch.dispatch(run)
                await self._schedules.update_schedule_after_run(schedule, dispatched=True)
                logger.info(
                    "Schedule fired",
                    extra={"schedule_id": schedule.id, "run_id": run.id},
                )
                return run
            except Exception as e:
                span.error = f"{type(e).__name__}: {e}"
                logger.exception(
                    "Failed to execute schedule",
                    extra={"schedule_id": schedule.id},
                )

            try:
                await self._schedules.update_schedule_after_run(
                    schedule, dispatched=run is not None
                )
            except Exception:
                logger.exception(
                    "Failed to update schedule after error",
                    extra={"schedule_id": schedule.id},
                )
        return run

    async def trigger_schedule(self, schedule_id: str) -> Run | None:
        """Dispatch *schedule_id* right now, outside the regular cadence.

        Waits for an in-flight scan cycle to finish and holds the cycle lock
        while dispatching, so a schedule is never fired by both at once. A
        scan tick that lands meanwhile is skipped as busy.

        Raises:
            ScheduleNotFound:   no such schedule.
            ScheduleNotEnabled: the schedule is DISABLED or EXPIRED.
        """
        async with self._cycle_lock:
            schedule = await self._schedules.get_schedule(schedule_id)
            if schedule.status != ScheduleStatus.ENABLED:
                raise ScheduleNotEnabled(schedule_id, schedule.status.value)
            logger.info("Schedule triggered manually", extra={"schedule_id": schedule_id})
            return await self._execute_schedule(schedule)

    # ── Retention ─────────────────────────────────────────────────────────────

    async def sweep_retention(self) -> int:
        if self.retention_days is None:
            return 0
        with self.tracer.span("run_retention", kind="retention") as span:
            try:
                deleted = await self._runs.cleanup_old_runs(self.retention_days)
            except Exception:
                logger.exception("Run retention sweep failed")
                return 0
            span.attrs["deleted"] = deleted
        return deleted
