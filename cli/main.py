"""Scheduler admin CLI — manage workflows, schedules and runs in the scheduler database."""

from __future__ import annotations

import asyncio
import json
import sys
from datetime import datetime
from typing import Any, Awaitable, Callable, TypeVar

import click
import pydantic
import yaml
from rich import box
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from core.config import Settings
from core.errors import SchedulerError
from core.logging_config import setup_logging
from core.state import Run, RunError, RunResult, RunStatus
from runtime import Runtime, build_runtime
from scheduler.models import Schedule, ScheduleCreate, ScheduleUpdate
from workflow.definition import Workflow

console = Console()
err_console = Console(stderr=True)

T = TypeVar("T")

_STATUS_COLOR: dict[str, str] = {
    "success": "green",
    "failed": "red",
    "running": "yellow",
    "pending": "blue",
    "cancelled": "dim",
    "enabled": "green",
    "disabled": "yellow",
    "expired": "dim",
}


# ── Internal helpers ──────────────────────────────────────────────────────────


def _color(status: str) -> str:
    return _STATUS_COLOR.get(status, "white")


def _fmt_time(value: datetime | None) -> str:
    return value.strftime("%Y-%m-%d %H:%M:%S") if value else "-"


def _load_file(path: str) -> dict:
    with open(path) as f:
        return yaml.safe_load(f) if path.endswith((".yaml", ".yml")) else json.load(f)


def _die(msg: str, code: int = 1) -> None:
    err_console.print(f"[red]Error:[/] {escape(msg)}")
    sys.exit(code)


def _settings(obj: dict) -> Settings:
    if obj.get("db"):
        return Settings(DATABASE_URL=obj["db"])
    return Settings()


def _run(obj: dict, fn: Callable[[Runtime], Awaitable[T]]) -> T:
    """Build a runtime, run *fn* against it, and tear everything down."""
    async def go() -> T:
        runtime = await build_runtime(_settings(obj), enable_retention=False)
        try:
            return await fn(runtime)
        finally:
            await runtime.close()

    try:
        return asyncio.run(go())
    except SchedulerError as e:
        _die(str(e))
    except pydantic.ValidationError as e:
        _die(f"Invalid input:\n{e}")


def _emit_json(data: Any) -> None:
    click.echo(json.dumps(data, indent=2, default=str))


# ── Root group ────────────────────────────────────────────────────────────────


@click.group()
@click.option(
    "--db",
    default=None,
    envvar="SCHEDULER_DATABASE_URL",
    help="SQLAlchemy database URL (default: sqlite+aiosqlite:///scheduler.db).",
)
@click.option("--json", "json_output", is_flag=True, help="Output raw JSON.")
@click.pass_context
def cli(ctx: click.Context, db: str | None, json_output: bool) -> None:
    """Workflow scheduler administration CLI."""
    ctx.ensure_object(dict)
    ctx.obj["db"] = db
    ctx.obj["json_output"] = json_output


# ── engine workflow ───────────────────────────────────────────────────────────


@cli.group("workflow")
def workflow() -> None:
    """Register workflow definitions."""


@workflow.command("register")
@click.argument("file", type=click.Path(exists=True))
@click.pass_obj
def workflow_register(obj: dict, file: str) -> None:
    """Register (or replace) a workflow from a YAML or JSON file.

    \b
    File format (YAML example):
      id: nightly-report        # optional, generated if absent
      name: nightly-report
      default_inputs:
        region: eu
      graph_definition:
        nodes: [...]
    """
    payload = _load_file(file)

    async def go(rt: Runtime) -> Workflow:
        return await rt.workflow_store.save(Workflow.model_validate(payload))

    wf = _run(obj, go)
    if obj["json_output"]:
        _emit_json(wf.model_dump(mode="json"))
        return
    click.echo(f"Registered  {wf.id}  ({wf.name})")


@workflow.command("list")
@click.pass_obj
def workflow_list(obj: dict) -> None:
    """List registered workflows."""
    workflows = _run(obj, lambda rt: rt.workflow_store.list_all())
    if obj["json_output"]:
        _emit_json([w.model_dump(mode="json") for w in workflows])
        return
    if not workflows:
        click.echo("No workflows found.")
        return

    table = Table(box=box.SIMPLE)
    table.add_column("Workflow ID", style="cyan")
    table.add_column("Name")
    table.add_column("Updated")
    for wf in workflows:
        table.add_row(wf.id, wf.name, _fmt_time(wf.updated_at))
    console.print(table)


# ── engine schedule ───────────────────────────────────────────────────────────


@cli.group("schedule")
def schedule() -> None:
    """Manage workflow schedules."""


def _print_schedule(s: Schedule, json_output: bool) -> None:
    if json_output:
        _emit_json(s.model_dump(mode="json"))
        return
    console.print(f"[cyan]{s.id}[/]  {s.name}")
    console.print(f"  Workflow : {s.workflow_id}")
    console.print(f"  Type     : {s.schedule_type.value}"
                  + (f"  ({s.cron_expression})" if s.cron_expression else "")
                  + (f"  (every {s.interval_seconds}s)" if s.interval_seconds else ""))
    console.print(f"  Status   : [{_color(s.status.value)}]{s.status.value}[/]")
    console.print(f"  Window   : {_fmt_time(s.start_time)} → {_fmt_time(s.end_time)}")
    console.print(f"  Next run : {_fmt_time(s.next_run_at)}")
    console.print(f"  Last run : {_fmt_time(s.last_run_at)}")


@schedule.command("create")
@click.argument("file", type=click.Path(exists=True))
@click.pass_obj
def schedule_create(obj: dict, file: str) -> None:
    """Create a schedule from a YAML or JSON file.

    \b
    File format (YAML example):
      workflow_id: nightly-report
      name: every-five-minutes
      schedule_type: cron
      cron_expression: "*/5 * * * *"
      inputs:
        region: us
    """
    payload = _load_file(file)

    async def go(rt: Runtime) -> Schedule:
        return await rt.schedules.create_schedule(ScheduleCreate.model_validate(payload))

    s = _run(obj, go)
    if obj["json_output"]:
        _emit_json(s.model_dump(mode="json"))
        return
    click.echo(f"Created  {s.id}  [{s.status.value}]  next: {_fmt_time(s.next_run_at)}")


@schedule.command("update")
@click.argument("schedule_id")
@click.argument("file", type=click.Path(exists=True))
@click.pass_obj
def schedule_update(obj: dict, schedule_id: str, file: str) -> None:
    """Apply a partial update from a YAML or JSON file.

    \b
    Only the keys present in the file change, e.g.:
      cron_expression: "0 * * * *"
      end_time: 2026-12-31T00:00:00Z
    """
    payload = _load_file(file) or {}

    async def go(rt: Runtime) -> Schedule:
        return await rt.schedules.update_schedule(schedule_id, ScheduleUpdate.model_validate(payload))

    s = _run(obj, go)
    if obj["json_output"]:
        _emit_json(s.model_dump(mode="json"))
        return
    click.echo(f"Updated  {s.id}  [{s.status.value}]  next: {_fmt_time(s.next_run_at)}")


@schedule.command("list")
@click.option("--workflow", "workflow_id", help="Filter by workflow ID.")
@click.pass_obj
def schedule_list(obj: dict, workflow_id: str | None) -> None:
    """List all schedules."""
    schedules = _run(obj, lambda rt: rt.schedules.list_schedules(workflow_id))

    if obj["json_output"]:
        _emit_json([s.model_dump(mode="json") for s in schedules])
        return

    if not schedules:
        click.echo("No schedules found.")
        return

    table = Table(box=box.SIMPLE)
    table.add_column("Schedule ID", style="cyan")
    table.add_column("Name")
    table.add_column("Type")
    table.add_column("Status")
    table.add_column("Next Run")
    table.add_column("Last Run")
    for s in schedules:
        table.add_row(
            s.id,
            s.name,
            s.schedule_type.value,
            f"[{_color(s.status.value)}]{s.status.value}[/]",
            _fmt_time(s.next_run_at),
            _fmt_time(s.last_run_at),
        )
    console.print(table)


@schedule.command("show")
@click.argument("schedule_id")
@click.pass_obj
def schedule_show(obj: dict, schedule_id: str) -> None:
    """Show one schedule."""
    s = _run(obj, lambda rt: rt.schedules.get_schedule(schedule_id))
    _print_schedule(s, obj["json_output"])


@schedule.command("enable")
@click.argument("schedule_id")
@click.pass_obj
def schedule_enable(obj: dict, schedule_id: str) -> None:
    """Enable a schedule (recomputes its next run from now)."""
    s = _run(obj, lambda rt: rt.schedules.enable_schedule(schedule_id))
    if obj["json_output"]:
        _emit_json(s.model_dump(mode="json"))
        return
    click.echo(f"Enabled  {schedule_id}  [{s.status.value}]  next: {_fmt_time(s.next_run_at)}")


@schedule.command("disable")
@click.argument("schedule_id")
@click.pass_obj
def schedule_disable(obj: dict, schedule_id: str) -> None:
    """Disable a schedule."""
    _run(obj, lambda rt: rt.schedules.disable_schedule(schedule_id))
    click.echo(f"Disabled  {schedule_id}")


@schedule.command("delete")
@click.argument("schedule_id")
@click.pass_obj
def schedule_delete(obj: dict, schedule_id: str) -> None:
    """Delete a schedule (kept in the database for audit)."""
    _run(obj, lambda rt: rt.schedules.delete_schedule(schedule_id))
    click.echo(f"Deleted  {schedule_id}")


@schedule.command("trigger")
@click.argument("schedule_id")
@click.pass_obj
def schedule_trigger(obj: dict, schedule_id: str) -> None:
    """Create a run for a schedule right now."""
    run = _run(obj, lambda rt: rt.worker.trigger_schedule(schedule_id))
    if run is None:
        _die(f"Dispatch failed for schedule '{schedule_id}', see logs")
    if obj["json_output"]:
        _emit_json(run.model_dump(mode="json"))
        return
    click.echo(f"Triggered  {schedule_id}  run: {run.id}")


# ── engine run ────────────────────────────────────────────────────────────────


@cli.group("run")
def run() -> None:
    """Inspect and manage workflow runs."""


def _print_run(r: Run, json_output: bool) -> None:
    if json_output:
        _emit_json(r.model_dump(mode="json"))
        return
    dur = f"  ({r.duration_ms} ms)" if r.duration_ms is not None else ""
    console.print(f"[cyan]{r.id}[/]  [{_color(r.status.value)}]{r.status.value}[/]{dur}")
    console.print(f"  Workflow : {r.workflow_id}")
    console.print(f"  Schedule : {r.schedule_id or '-'}")
    console.print(f"  Created  : {_fmt_time(r.created_at)}")
    console.print(f"  Started  : {_fmt_time(r.started_at)}")
    console.print(f"  Finished : {_fmt_time(r.completed_at)}")
    if r.error:
        console.print(f"  Error    : [red]{r.error.message}[/]")


@run.command("list")
@click.argument("workflow_id")
@click.option("--status", type=click.Choice([s.value for s in RunStatus]), help="Filter by status.")
@click.option("--page", default=1, show_default=True, type=click.IntRange(min=1))
@click.option("--page-size", default=20, show_default=True, type=click.IntRange(min=1))
@click.pass_obj
def run_list(obj: dict, workflow_id: str, status: str | None, page: int, page_size: int) -> None:
    """List runs of a workflow, newest first."""
    result = _run(obj, lambda rt: rt.runs.list_runs(
        workflow_id,
        page=page,
        page_size=page_size,
        status=RunStatus(status) if status else None,
    ))

    if obj["json_output"]:
        _emit_json(result.model_dump(mode="json"))
        return

    if not result.runs:
        click.echo("No runs found.")
        return

    table = Table(box=box.SIMPLE, caption=f"page {result.page} · {result.total} total")
    table.add_column("Run ID", style="cyan")
    table.add_column("Status")
    table.add_column("Schedule")
    table.add_column("Created")
    table.add_column("Duration", justify="right")
    for r in result.runs:
        table.add_row(
            r.id,
            f"[{_color(r.status.value)}]{r.status.value}[/]",
            r.schedule_id or "-",
            _fmt_time(r.created_at),
            f"{r.duration_ms} ms" if r.duration_ms is not None else "-",
        )
    console.print(table)


@run.command("show")
@click.argument("run_id")
@click.pass_obj
def run_show(obj: dict, run_id: str) -> None:
    """Show one run."""
    r = _run(obj, lambda rt: rt.runs.get_run(run_id))
    _print_run(r, obj["json_output"])


@run.command("start")
@click.argument("run_id")
@click.pass_obj
def run_start(obj: dict, run_id: str) -> None:
    """Mark a pending run as running (no-op if it already left PENDING)."""
    r = _run(obj, lambda rt: rt.runs.start_run(run_id))
    _print_run(r, obj["json_output"])


@run.command("complete")
@click.argument("run_id")
@click.option("--failed", is_flag=True, help="Record the run as FAILED instead of SUCCESS.")
@click.option("--error", "error_message", default=None, help="Error message for a failed run.")
@click.option("--outputs", "outputs_file", type=click.Path(exists=True),
              help="YAML or JSON file with the run outputs.")
@click.pass_obj
def run_complete(
    obj: dict,
    run_id: str,
    failed: bool,
    error_message: str | None,
    outputs_file: str | None,
) -> None:
    """Finish a run, as the execution engine would."""
    result = RunResult(
        success=not failed,
        outputs=_load_file(outputs_file) if outputs_file else None,
        error=RunError(message=error_message) if error_message else None,
    )
    r = _run(obj, lambda rt: rt.runs.complete_run(run_id, result))
    _print_run(r, obj["json_output"])


@run.command("cancel")
@click.argument("run_id")
@click.pass_obj
def run_cancel(obj: dict, run_id: str) -> None:
    """Cancel a pending or running run."""
    _run(obj, lambda rt: rt.runs.cancel_run(run_id))
    click.echo(f"Cancelled  {run_id}")


@run.command("delete")
@click.argument("run_ids", nargs=-1, required=True)
@click.pass_obj
def run_delete(obj: dict, run_ids: tuple[str, ...]) -> None:
    """Permanently delete runs."""
    deleted = _run(obj, lambda rt: rt.runs.delete_runs(list(run_ids)))
    click.echo(f"Deleted {deleted} run(s)")


@run.command("cleanup")
@click.option("--days", default=30, show_default=True, type=click.IntRange(min=0),
              help="Keep finished runs newer than this many days.")
@click.pass_obj
def run_cleanup(obj: dict, days: int) -> None:
    """Delete finished runs older than the retention window."""
    deleted = _run(obj, lambda rt: rt.runs.cleanup_old_runs(days))
    click.echo(f"Cleaned up {deleted} run(s) older than {days} day(s)")


# ── engine worker ─────────────────────────────────────────────────────────────


@cli.group("worker")
def worker() -> None:
    """Run the scheduler worker."""


@worker.command("start")
@click.pass_obj
def worker_start(obj: dict) -> None:
    """Run the worker in the foreground until interrupted."""
    from main import serve

    settings = _settings(obj)
    setup_logging(settings.LOG_LEVEL, json_output=settings.LOG_JSON)
    asyncio.run(serve(settings))


@worker.command("once")
@click.pass_obj
def worker_once(obj: dict) -> None:
    """Run a single scan cycle and report what it did."""
    async def go(rt: Runtime) -> dict:
        await rt.worker.process_schedules()
        return rt.worker.status().last_cycle or {}

    cycle = _run(obj, go)
    if obj["json_output"]:
        _emit_json(cycle)
        return
    console.print(
        f"Cycle done in {cycle.get('duration_ms', '-')} ms: "
        f"{cycle.get('due', 0)} due, {cycle.get('dispatched', 0)} dispatched, "
        f"{cycle.get('failed', 0)} failed, {cycle.get('expired', 0)} expired"
    )
