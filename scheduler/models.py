"""Scheduler data models."""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator

from core.clock import utcnow


class ScheduleType(str, Enum):
    CRON = "cron"
    INTERVAL = "interval"
    ONCE = "once"
    MANUAL = "manual"


class ScheduleStatus(str, Enum):
    ENABLED = "enabled"
    DISABLED = "disabled"
    EXPIRED = "expired"


# Fields whose change forces next_run_at to be recomputed
RECURRENCE_FIELDS = frozenset({"schedule_type", "cron_expression", "interval_seconds", "start_time"})


def _assume_utc(value: datetime | None) -> datetime | None:
    """Naive timestamps from config files are taken to be UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class ScheduleCreate(BaseModel):
    workflow_id: str
    name: str
    schedule_type: ScheduleType
    cron_expression: str | None = None
    interval_seconds: int | None = None
    inputs: dict[str, Any] = {}
    start_time: datetime | None = None
    end_time: datetime | None = None

    @field_validator("start_time", "end_time")
    @classmethod
    def assume_utc(cls, v: datetime | None) -> datetime | None:
        return _assume_utc(v)


class ScheduleUpdate(BaseModel):
    """Partial update; only fields explicitly set are applied."""
    name: str | None = None
    schedule_type: ScheduleType | None = None
    cron_expression: str | None = None
    interval_seconds: int | None = None
    inputs: dict[str, Any] | None = None
    start_time: datetime | None = None
    end_time: datetime | None = None

    @field_validator("start_time", "end_time")
    @classmethod
    def assume_utc(cls, v: datetime | None) -> datetime | None:
        return _assume_utc(v)


class Schedule(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    workflow_id: str
    name: str
    schedule_type: ScheduleType
    cron_expression: str | None = None
    interval_seconds: int | None = None
    inputs: dict[str, Any] = {}
    start_time: datetime | None = None
    end_time: datetime | None = None
    status: ScheduleStatus = ScheduleStatus.ENABLED
    next_run_at: datetime | None = None
    last_run_at: datetime | None = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    deleted_at: datetime | None = None

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None
