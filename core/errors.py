"""Scheduler error types.

Service methods raise these and let them propagate; the worker loop is the
only place that catches them, one schedule at a time.
"""

from __future__ import annotations


class SchedulerError(Exception):
    """Base class for scheduler errors."""


# ── Validation ────────────────────────────────────────────────────────────────

class ValidationError(SchedulerError):
    """Caller supplied something unusable. Never retried automatically."""


class InvalidScheduleDefinition(ValidationError):
    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"Invalid schedule definition: {reason}")


class RecurrenceError(ValidationError):
    """The recurrence calculator could not produce a next run time."""


class InvalidExpression(RecurrenceError):
    def __init__(self, expression: str | None, detail: str = ""):
        self.expression = expression
        msg = f"Invalid cron expression {expression!r}"
        super().__init__(f"{msg}: {detail}" if detail else msg)


class InvalidInterval(RecurrenceError):
    def __init__(self, interval_seconds: int | None):
        self.interval_seconds = interval_seconds
        super().__init__(
            f"Interval seconds must be a positive integer, got {interval_seconds!r}"
        )


class UnsupportedType(RecurrenceError):
    def __init__(self, schedule_type: object):
        self.schedule_type = schedule_type
        super().__init__(f"Unsupported schedule type: {schedule_type!r}")


# ── Lookups ───────────────────────────────────────────────────────────────────

class NotFoundError(SchedulerError):
    resource_type = "Resource"

    def __init__(self, resource_id: str):
        self.resource_id = resource_id
        super().__init__(f"{self.resource_type} '{resource_id}' not found")


class WorkflowNotFound(NotFoundError):
    resource_type = "Workflow"


class ScheduleNotFound(NotFoundError):
    resource_type = "Schedule"


class RunNotFound(NotFoundError):
    resource_type = "Run"


# ── State machine ─────────────────────────────────────────────────────────────

class InvalidStateTransition(SchedulerError):
    """A transition was requested that the current status does not allow."""


class InvalidRunState(InvalidStateTransition):
    def __init__(self, run_id: str, status: str, action: str):
        self.run_id = run_id
        self.status = status
        self.action = action
        super().__init__(f"Cannot {action} run '{run_id}' in status '{status}'")


class ScheduleNotEnabled(InvalidStateTransition):
    def __init__(self, schedule_id: str, status: str):
        self.schedule_id = schedule_id
        self.status = status
        super().__init__(f"Schedule '{schedule_id}' is not enabled (status: {status})")


# ── Storage ───────────────────────────────────────────────────────────────────

class TransientStoreError(SchedulerError):
    """The store failed in a way that may succeed on a later attempt."""
