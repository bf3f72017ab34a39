"""Shared fixtures: a controllable clock and a runtime on a per-test SQLite file."""

from datetime import datetime, timedelta, timezone

import pytest

from runtime import build_runtime
from workflow.definition import Workflow

T0 = datetime(2026, 1, 5, 10, 0, 0, tzinfo=timezone.utc)  # a Monday


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime = T0):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now

    def set(self, now: datetime) -> None:
        self.now = now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def db_url(tmp_path):
    return f"sqlite+aiosqlite:///{tmp_path}/scheduler.db"


@pytest.fixture
async def runtime(db_url, clock):
    rt = await build_runtime(database_url=db_url, clock=clock, enable_retention=False)
    yield rt
    await rt.close()


@pytest.fixture
async def workflow(runtime):
    wf = Workflow(
        id="wf-report",
        name="daily-report",
        graph_definition={"nodes": [{"id": "fetch"}, {"id": "publish"}], "edges": [["fetch", "publish"]]},
        default_inputs={"region": "eu", "format": "pdf"},
    )
    await runtime.workflow_store.save(wf)
    return wf
