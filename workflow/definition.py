"""Workflow definition record."""

import uuid
from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field, field_validator

from core.clock import utcnow


class Workflow(BaseModel):
    """A named workflow graph plus the inputs every run starts from.

    ``graph_definition`` belongs to the execution engine; the scheduler only
    copies it into each run's snapshot and never looks inside.
    """

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    name: str
    description: str = ""
    graph_definition: dict[str, Any] = {}
    default_inputs: dict[str, Any] = {}
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @field_validator("name")
    @classmethod
    def name_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("Workflow name must not be blank")
        return v

    def snapshot(self) -> dict[str, Any]:
        """Deep, JSON-safe copy for Run.graph_snapshot."""
        return self.model_dump(mode="json")
