"""Schedule validation, recurrence bookkeeping and status transitions."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import TYPE_CHECKING

from core.clock import Clock, utcnow
from core.errors import (
    InvalidScheduleDefinition,
    RecurrenceError,
    ScheduleNotFound,
    TransientStoreError,
)
from scheduler.models import (
    RECURRENCE_FIELDS,
    Schedule,
    ScheduleCreate,
    ScheduleStatus,
    ScheduleType,
    ScheduleUpdate,
)
from scheduler.recurrence import next_run_time, validate_cron_expression
from scheduler.schedule_store import ScheduleStore

if TYPE_CHECKING:
    from store.workflow_store import WorkflowStore

logger = logging.getLogger(__name__)

# Conditional writes lost to a concurrent status change before giving up
_WRITE_ATTEMPTS = 3


def validate_schedule(definition: ScheduleCreate | Schedule) -> None:
    """Raise InvalidScheduleDefinition describing the first rule *definition* breaks."""
    kind = definition.schedule_type
    if kind == ScheduleType.CRON:
        if not definition.cron_expression:
            raise InvalidScheduleDefinition("cron expression is required for cron schedules")
        try:
            validate_cron_expression(definition.cron_expression)
        except RecurrenceError as e:
            raise InvalidScheduleDefinition(str(e)) from e
    elif kind == ScheduleType.INTERVAL:
        if not definition.interval_seconds or definition.interval_seconds <= 0:
            raise InvalidScheduleDefinition("interval seconds must be greater than 0")
    elif kind == ScheduleType.ONCE:
        if definition.start_time is None:
            raise InvalidScheduleDefinition("start time is required for one-time schedules")

    if (
        definition.start_time is not None
        and definition.end_time is not None
        and definition.end_time <= definition.start_time
    ):
        raise InvalidScheduleDefinition("end time must be after start time")


def _past_end(schedule: Schedule, next_at: datetime | None) -> bool:
    return (
        schedule.end_time is not None
        and next_at is not None
        and next_at > schedule.end_time
    )


class ScheduleService:
    """Owns every write to a Schedule's status and next_run_at."""

    def __init__(
        self,
        store: ScheduleStore,
        workflow_store: WorkflowStore,
        clock: Clock = utcnow,
    ):
        self._store = store
        self._workflows = workflow_store
        self._clock = clock

    # ── Recurrence ────────────────────────────────────────────────────────────

    def calculate_next_run_time(
        self,
        schedule: Schedule | ScheduleCreate,
        start_time: datetime | None = None,
        now: datetime | None = None,
    ) -> datetime | None:
        return next_run_time(
            schedule.schedule_type,
            cron_expression=schedule.cron_expression,
            interval_seconds=schedule.interval_seconds,
            start_time=start_time,
            now=now or self._clock(),
        )

    # ── CRUD ──────────────────────────────────────────────────────────────────

    async def create_schedule(self, definition: ScheduleCreate) -> Schedule:
        """Validate *definition*, compute its first fire time and persist it ENABLED.

        Raises:
            WorkflowNotFound:          the target workflow does not exist.
            InvalidScheduleDefinition: the definition breaks a validation rule.
        """
        await self._workflows.find_workflow(definition.workflow_id)
        validate_schedule(definition)

        now = self._clock()
        schedule = Schedule(
            **definition.model_dump(),
            status=ScheduleStatus.ENABLED,
            created_at=now,
            updated_at=now,
        )
        schedule.next_run_at = self.calculate_next_run_time(
            schedule, start_time=definition.start_time, now=now
        )
        await self._store.save(schedule)
        logger.info(
            "Schedule created",
            extra={"schedule_id": schedule.id, "schedule_name": schedule.name,
                   "schedule_type": schedule.schedule_type.value,
                   "next_run_at": schedule.next_run_at},
        )
        return schedule

    async def get_schedule(self, schedule_id: str) -> Schedule:
        return await self._store.load(schedule_id)

    async def list_schedules(self, workflow_id: str | None = None) -> list[Schedule]:
        return await self._store.list_all(workflow_id=workflow_id)

    async def update_schedule(self, schedule_id: str, patch: ScheduleUpdate) -> Schedule:
        """Apply *patch*; recompute next_run_at if a recurrence field changed.

        An EXPIRED schedule whose recomputed fire time still falls inside its
        window is switched back to ENABLED. Moving ``end_time`` before the
        pending next_run_at expires the schedule.
        """
        schedule = await self._store.load(schedule_id)
        changes = patch.model_dump(exclude_unset=True)
        recurrence_changed = any(
            key in RECURRENCE_FIELDS and value != getattr(schedule, key)
            for key, value in changes.items()
        )
        window_changed = "end_time" in changes and changes["end_time"] != schedule.end_time

        updated = schedule.model_copy(update=changes)
        if recurrence_changed or window_changed:
            validate_schedule(updated)

        now = self._clock()
        if recurrence_changed:
            next_at = self.calculate_next_run_time(updated, start_time=updated.start_time, now=now)
            if updated.status == ScheduleStatus.DISABLED:
                updated.next_run_at = None
            elif _past_end(updated, next_at):
                updated.status = ScheduleStatus.EXPIRED
                updated.next_run_at = None
            else:
                if updated.status == ScheduleStatus.EXPIRED:
                    logger.info("Expired schedule re-enabled by update",
                                extra={"schedule_id": schedule_id})
                updated.status = ScheduleStatus.ENABLED
                updated.next_run_at = next_at
        elif (
            window_changed
            and updated.status == ScheduleStatus.ENABLED
            and _past_end(updated, updated.next_run_at)
        ):
            logger.info("Schedule window now ends before its next run, expired",
                        extra={"schedule_id": schedule_id, "end_time": updated.end_time})
            updated.status = ScheduleStatus.EXPIRED
            updated.next_run_at = None

        updated.updated_at = now
        await self._store.save(updated)
        logger.info(
            "Schedule updated",
            extra={"schedule_id": schedule_id, "fields": sorted(changes),
                   "status": updated.status.value, "next_run_at": updated.next_run_at},
        )
        return updated

    async def delete_schedule(self, schedule_id: str) -> None:
        """Soft delete: the row stays for audit, it just never fires or lists again."""
        if not await self._store.soft_delete(schedule_id, self._clock()):
            raise ScheduleNotFound(schedule_id)
        logger.info("Schedule deleted", extra={"schedule_id": schedule_id})

    # ── Status transitions ────────────────────────────────────────────────────

    async def enable_schedule(self, schedule_id: str) -> Schedule:
        """Idempotent. Recomputes next_run_at from now before enabling."""
        schedule = await self._store.load(schedule_id)
        if schedule.status == ScheduleStatus.ENABLED:
            return schedule

        now = self._clock()
        origin = schedule.start_time if schedule.start_time and schedule.start_time > now else now
        next_at = self.calculate_next_run_time(schedule, start_time=origin, now=now)
        if _past_end(schedule, next_at) or (schedule.end_time and schedule.end_time <= now):
            logger.warning(
                "Schedule window already closed, left expired",
                extra={"schedule_id": schedule_id, "end_time": schedule.end_time},
            )
            schedule.status = ScheduleStatus.EXPIRED
            schedule.next_run_at = None
        else:
            schedule.status = ScheduleStatus.ENABLED
            schedule.next_run_at = next_at
        schedule.updated_at = now
        await self._store.save(schedule)
        logger.info("Schedule enabled", extra={"schedule_id": schedule_id,
                                               "next_run_at": schedule.next_run_at})
        return schedule

    async def disable_schedule(self, schedule_id: str) -> Schedule:
        schedule = await self._store.load(schedule_id)
        schedule.status = ScheduleStatus.DISABLED
        schedule.next_run_at = None
        schedule.updated_at = self._clock()
        await self._store.save(schedule)
        logger.info("Schedule disabled", extra={"schedule_id": schedule_id})
        return schedule

    # ── Worker support ────────────────────────────────────────────────────────

    async def get_schedules_to_run(self, limit: int = 100) -> list[Schedule]:
        """ENABLED schedules that are due, oldest next_run_at first, at most *limit*."""
        return await self._store.find_due(self._clock(), limit)

    async def update_schedule_after_run(self, schedule: Schedule, dispatched: bool = True) -> Schedule:
        """Advance a schedule after a dispatch attempt.

        The write is conditional on the status read just before it: if a
        concurrent disable, expiry or delete lands in between, the row is
        re-read and the bookkeeping recomputed against the new status.
        ``last_run_at`` is only touched when a run was actually created. A
        ONCE schedule is spent after its attempt; any other schedule whose
        next fire time would land past ``end_time`` becomes EXPIRED.

        Raises:
            ScheduleNotFound:    the schedule was deleted meanwhile.
            TransientStoreError: the row kept changing under every attempt.
        """
        now = self._clock()
        for attempt in range(1, _WRITE_ATTEMPTS + 1):
            async with self._store.transaction() as conn:
                current = await self._store.load(schedule.id, conn=conn)
                expected = current.status
                self._advance_after_run(current, now, dispatched)
                if await self._store.save_if_status(current, expected, conn=conn):
                    break
            logger.info(
                "Schedule changed during bookkeeping, re-reading",
                extra={"schedule_id": schedule.id, "attempt": attempt},
            )
        else:
            raise TransientStoreError(
                f"Schedule '{schedule.id}' kept changing during bookkeeping"
            )

        if current.status == ScheduleStatus.EXPIRED and expected == ScheduleStatus.ENABLED:
            logger.info("Schedule expired", extra={"schedule_id": current.id})
        return current

    def _advance_after_run(self, current: Schedule, now: datetime, dispatched: bool) -> None:
        if dispatched:
            current.last_run_at = now

        if current.status != ScheduleStatus.ENABLED:
            current.next_run_at = None
        elif current.schedule_type == ScheduleType.ONCE:
            current.status = ScheduleStatus.EXPIRED
            current.next_run_at = None
        else:
            next_at = self.calculate_next_run_time(current, start_time=now, now=now)
            if _past_end(current, next_at):
                current.status = ScheduleStatus.EXPIRED
                current.next_run_at = None
            else:
                current.next_run_at = next_at
        current.updated_at = now

    async def expire_schedules(self) -> list[str]:
        """Expire every ENABLED schedule whose end_time has passed."""
        return await self._store.expire_ended(self._clock())
