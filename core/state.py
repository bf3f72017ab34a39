"""Run state machine types."""

import uuid
from datetime import datetime, timedelta
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from core.clock import utcnow


class RunStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


# Absorbing: no transition leaves these
TERMINAL_STATUSES = frozenset({RunStatus.SUCCESS, RunStatus.FAILED, RunStatus.CANCELLED})

# Statuses cancel_run accepts
CANCELLABLE_STATUSES = frozenset({RunStatus.PENDING, RunStatus.RUNNING})


class RunError(BaseModel):
    message: str
    stack: str | None = None
    node_id: str | None = None


class Run(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    workflow_id: str
    schedule_id: str | None = None
    status: RunStatus = RunStatus.PENDING
    graph_snapshot: dict[str, Any] = {}
    inputs: dict[str, Any] = {}
    outputs: dict[str, Any] | None = None
    node_states: dict[str, Any] = {}
    error: RunError | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    duration_ms: int | None = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def finish(self, status: RunStatus, completed_at: datetime) -> None:
        """Move to a terminal status and derive duration_ms."""
        self.status = status
        self.completed_at = completed_at
        if self.started_at is not None:
            self.duration_ms = (self.completed_at - self.started_at) // timedelta(milliseconds=1)


class RunResult(BaseModel):
    """What the execution engine reports when a run finishes."""
    success: bool
    outputs: dict[str, Any] | None = None
    node_states: dict[str, Any] | None = None
    error: RunError | None = None


class RunPage(BaseModel):
    runs: list[Run]
    total: int
    page: int
    page_size: int
