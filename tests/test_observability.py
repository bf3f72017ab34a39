"""Tests for structured logging, the span tracer and the dispatch channel."""

import json
import logging
import sys

import pytest

from conftest import FakeClock
from core.dispatch import DispatchChannel
from core.logging_config import (
    JsonFormatter,
    PlainFormatter,
    get_trace_id,
    new_trace_id,
    reset_trace_id,
    set_trace_id,
    setup_logging,
)
from core.state import Run
from core.tracer import Tracer


def make_record(msg: str = "Schedule fired", **extra) -> logging.LogRecord:
    record = logging.LogRecord("scheduler.worker", logging.INFO, __file__, 1, msg, None, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


# ── Logging ───────────────────────────────────────────────────────────────────


def test_json_formatter_includes_extras_and_trace_id():
    token = set_trace_id("abc12345")
    try:
        out = json.loads(JsonFormatter().format(make_record(schedule_id="s-1", count=3)))
    finally:
        reset_trace_id(token)

    assert out["msg"] == "Schedule fired"
    assert out["level"] == "INFO"
    assert out["logger"] == "scheduler.worker"
    assert out["trace_id"] == "abc12345"
    assert out["schedule_id"] == "s-1"
    assert out["count"] == 3
    assert out["ts"].endswith("Z")


def test_json_formatter_serialises_exceptions():
    try:
        raise RuntimeError("boom")
    except RuntimeError:
        record = logging.LogRecord(
            "scheduler.worker", logging.ERROR, __file__, 1, "failed", None, sys.exc_info()
        )
    out = json.loads(JsonFormatter().format(record))
    assert "RuntimeError: boom" in out["exc"]


def test_plain_formatter_appends_extras():
    line = PlainFormatter().format(make_record(run_id="r-9"))
    assert "Schedule fired" in line
    assert "[-]" in line
    assert "run_id=r-9" in line


def test_trace_id_defaults_and_resets():
    assert get_trace_id() == "-"
    tid = new_trace_id()
    assert len(tid) == 8
    token = set_trace_id(tid)
    assert get_trace_id() == tid
    reset_trace_id(token)
    assert get_trace_id() == "-"


def test_setup_logging_installs_single_handler():
    root = logging.getLogger()
    saved_handlers, saved_level = root.handlers[:], root.level
    try:
        setup_logging("debug", json_output=False)
        assert len(root.handlers) == 1
        assert isinstance(root.handlers[0].formatter, PlainFormatter)
        assert root.level == logging.DEBUG
        assert logging.getLogger("apscheduler").level == logging.WARNING
    finally:
        root.handlers = saved_handlers
        root.setLevel(saved_level)


# ── Tracer ────────────────────────────────────────────────────────────────────


def test_span_records_duration_and_attrs():
    clock = FakeClock()
    tracer = Tracer(clock=clock)
    with tracer.span("scan_cycle", kind="cycle", due=2) as span:
        clock.advance(milliseconds=250)
        span.attrs["dispatched"] = 2

    assert span.duration_ms == 250
    assert span.error is None
    assert tracer.last("cycle") is span
    data = span.to_dict()
    assert data["due"] == 2
    assert data["dispatched"] == 2
    assert data["kind"] == "cycle"


def test_span_captures_error_and_reraises():
    tracer = Tracer()
    with pytest.raises(ValueError):
        with tracer.span("s-1", kind="dispatch"):
            raise ValueError("bad input")
    span = tracer.last("dispatch")
    assert span.error == "ValueError: bad input"
    assert span.finished_at is not None


def test_tracer_history_is_bounded():
    tracer = Tracer(max_spans=3)
    for i in range(5):
        with tracer.span(f"s-{i}", kind="dispatch"):
            pass
    with tracer.span("scan_cycle", kind="cycle"):
        pass

    assert [s.name for s in tracer.spans()] == ["s-3", "s-4", "scan_cycle"]
    assert [s.name for s in tracer.spans("dispatch")] == ["s-3", "s-4"]
    assert tracer.last("retention") is None


# ── Dispatch channel ──────────────────────────────────────────────────────────


async def test_dispatch_fans_out_to_every_subscriber():
    channel = DispatchChannel()
    a, b = channel.subscribe(), channel.subscribe()
    assert channel.subscriber_count == 2

    run = Run(workflow_id="wf-1", schedule_id="s-1")
    await channel.dispatch(run)

    for q in (a, b):
        event = q.get_nowait()
        assert event["type"] == "run_created"
        assert event["run_id"] == run.id
        assert event["workflow_id"] == "wf-1"
        assert event["schedule_id"] == "s-1"


async def test_dispatch_without_subscribers_is_dropped():
    channel = DispatchChannel()
    q = channel.subscribe()
    channel.unsubscribe(q)
    channel.unsubscribe(q)
    assert channel.subscriber_count == 0

    await channel.dispatch(Run(workflow_id="wf-1"))
    assert q.empty()


async def test_dispatch_drops_event_when_subscriber_queue_full(caplog):
    channel = DispatchChannel(max_queue_size=1)
    full, roomy = channel.subscribe(), channel.subscribe()
    first, second = Run(workflow_id="wf-1"), Run(workflow_id="wf-1")

    await channel.dispatch(first)
    assert roomy.get_nowait()["run_id"] == first.id
    with caplog.at_level(logging.WARNING, logger="core.dispatch"):
        await channel.dispatch(second)

    assert full.qsize() == 1
    assert full.get_nowait()["run_id"] == first.id
    assert roomy.get_nowait()["run_id"] == second.id
    assert "Subscriber queue full, dispatch event dropped" in caplog.text
