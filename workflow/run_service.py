"""Run service — creates run records and drives them through the run state machine.

    PENDING ──start──▶ RUNNING ──complete(success)──▶ SUCCESS
       │                  └──────complete(failure)──▶ FAILED
       └──────cancel (from PENDING or RUNNING)──────▶ CANCELLED

Terminal states are absorbing. ``start_run`` tolerates duplicate delivery
by doing nothing when the run has already left PENDING.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any

from core.clock import Clock, utcnow
from core.errors import InvalidRunState, ValidationError
from core.state import (
    CANCELLABLE_STATUSES,
    TERMINAL_STATUSES,
    Run,
    RunPage,
    RunResult,
    RunStatus,
)
from store.run_store import RunStore
from store.workflow_store import WorkflowStore

logger = logging.getLogger(__name__)


class RunService:
    def __init__(
        self,
        store: RunStore,
        workflow_store: WorkflowStore,
        clock: Clock = utcnow,
    ):
        self._store = store
        self._workflows = workflow_store
        self._clock = clock

    # ── Creation ──────────────────────────────────────────────────────────────

    async def create_run(
        self,
        workflow_id: str,
        inputs: dict[str, Any] | None = None,
        schedule_id: str | None = None,
    ) -> Run:
        """Snapshot the current workflow definition into a new PENDING run.

        Caller ``inputs`` override the workflow's ``default_inputs`` key by key.

        Raises:
            WorkflowNotFound: *workflow_id* does not exist.
        """
        workflow = await self._workflows.find_workflow(workflow_id)
        now = self._clock()
        run = Run(
            workflow_id=workflow.id,
            schedule_id=schedule_id,
            status=RunStatus.PENDING,
            graph_snapshot=workflow.snapshot(),
            inputs={**workflow.default_inputs, **(inputs or {})},
            node_states={},
            created_at=now,
            updated_at=now,
        )
        await self._store.save(run)
        logger.info(
            "Run created",
            extra={"run_id": run.id, "workflow_id": workflow.id,
                   "workflow_name": workflow.name, "schedule_id": schedule_id},
        )
        return run

    async def get_run(self, run_id: str) -> Run:
        return await self._store.load(run_id)

    # ── Transitions ───────────────────────────────────────────────────────────

    async def start_run(self, run_id: str) -> Run:
        """PENDING → RUNNING. A no-op for any other status."""
        run = await self._store.load(run_id)
        if run.status != RunStatus.PENDING:
            logger.warning(
                "Start ignored, run already started or finished",
                extra={"run_id": run_id, "status": run.status.value},
            )
            return run

        now = self._clock()
        run.status = RunStatus.RUNNING
        run.started_at = now
        run.updated_at = now
        await self._store.save(run)
        logger.info("Run started", extra={"run_id": run_id})
        return run

    async def complete_run(self, run_id: str, result: RunResult) -> Run:
        """Finish a run as SUCCESS or FAILED, merging whatever the engine reported.

        Raises:
            InvalidRunState: the run is already terminal.
        """
        run = await self._store.load(run_id)
        if run.status in TERMINAL_STATUSES:
            raise InvalidRunState(run_id, run.status.value, "complete")
        if run.status == RunStatus.PENDING:
            logger.warning("Run completed without a start signal", extra={"run_id": run_id})

        now = self._clock()
        if result.outputs is not None:
            run.outputs = result.outputs
        if result.node_states is not None:
            run.node_states = result.node_states
        if result.error is not None:
            run.error = result.error
        run.finish(RunStatus.SUCCESS if result.success else RunStatus.FAILED, now)
        run.updated_at = now
        await self._store.save(run)

        log = logger.info if result.success else logger.error
        log(
            "Run completed",
            extra={"run_id": run_id, "status": run.status.value,
                   "duration_ms": run.duration_ms},
        )
        return run

    async def cancel_run(self, run_id: str) -> Run:
        """Mark a PENDING or RUNNING run CANCELLED.

        Only bookkeeping changes; stopping the actual execution is up to the
        engine once it sees the new status.

        Raises:
            InvalidRunState: the run is already terminal.
        """
        run = await self._store.load(run_id)
        if run.status not in CANCELLABLE_STATUSES:
            raise InvalidRunState(run_id, run.status.value, "cancel")

        now = self._clock()
        run.finish(RunStatus.CANCELLED, now)
        run.updated_at = now
        await self._store.save(run)
        logger.info("Run cancelled", extra={"run_id": run_id, "duration_ms": run.duration_ms})
        return run

    async def record_progress(
        self,
        run_id: str,
        node_states: dict[str, Any] | None = None,
        outputs: dict[str, Any] | None = None,
    ) -> Run:
        """Store intermediate node states/outputs for a run that is still active."""
        run = await self._store.load(run_id)
        if run.status in TERMINAL_STATUSES:
            raise InvalidRunState(run_id, run.status.value, "update progress of")
        if node_states is not None:
            run.node_states = {**run.node_states, **node_states}
        if outputs is not None:
            run.outputs = {**(run.outputs or {}), **outputs}
        run.updated_at = self._clock()
        await self._store.save(run)
        logger.debug("Run progress recorded", extra={"run_id": run_id})
        return run

    # ── Queries & housekeeping ────────────────────────────────────────────────

    async def list_runs(
        self,
        workflow_id: str,
        page: int = 1,
        page_size: int = 20,
        status: RunStatus | None = None,
        start_date: datetime | None = None,
        end_date: datetime | None = None,
    ) -> RunPage:
        """One page of a workflow's runs, newest first."""
        if page < 1:
            raise ValidationError(f"page must be >= 1, got {page}")
        if page_size < 1:
            raise ValidationError(f"page_size must be >= 1, got {page_size}")

        runs, total = await self._store.query(
            workflow_id,
            offset=(page - 1) * page_size,
            limit=page_size,
            status=status,
            created_from=start_date,
            created_to=end_date,
        )
        logger.debug(
            "Runs listed",
            extra={"workflow_id": workflow_id, "total": total, "page": page,
                   "page_size": page_size},
        )
        return RunPage(runs=runs, total=total, page=page, page_size=page_size)

    async def delete_runs(self, run_ids: list[str]) -> int:
        """Hard delete. Returns how many rows went away."""
        deleted = await self._store.delete_many(list(run_ids))
        logger.info("Runs deleted", extra={"requested": len(run_ids), "deleted": deleted})
        return deleted

    async def cleanup_old_runs(self, days_to_keep: int = 30) -> int:
        """Delete terminal runs created more than *days_to_keep* days ago.

        PENDING and RUNNING runs are never touched, however old: an ancient
        active run is a stuck execution that someone needs to look at.
        """
        if days_to_keep < 0:
            raise ValidationError(f"days_to_keep must be >= 0, got {days_to_keep}")
        cutoff = self._clock() - timedelta(days=days_to_keep)
        deleted = await self._store.delete_finished_before(cutoff, TERMINAL_STATUSES)
        logger.info(
            "Old runs cleaned up",
            extra={"deleted": deleted, "days_to_keep": days_to_keep, "cutoff": cutoff},
        )
        return deleted
