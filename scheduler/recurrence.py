"""Recurrence arithmetic — turn a schedule definition into its next fire time.

Pure functions: no storage, no side effects, and deterministic for a given
``now``. Every code path that sets ``next_run_at`` goes through
:func:`next_run_time`.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

from croniter import croniter

from core.clock import utcnow
from core.errors import InvalidExpression, InvalidInterval, UnsupportedType
from scheduler.models import ScheduleType


def _normalize_cron(expression: str | None) -> str:
    """Return the expression in the field order croniter expects.

    Five fields are standard cron. Six fields carry a leading seconds field,
    which croniter wants last.
    """
    if not expression or not expression.strip():
        raise InvalidExpression(expression, "expression is empty")
    fields = expression.split()
    if len(fields) == 5:
        return " ".join(fields)
    if len(fields) == 6:
        return " ".join(fields[1:] + fields[:1])
    raise InvalidExpression(expression, f"expected 5 or 6 fields, got {len(fields)}")


def _cron_iter(expression: str | None, base: datetime) -> croniter:
    normalized = _normalize_cron(expression)
    try:
        return croniter(normalized, base)
    except (ValueError, KeyError) as e:
        raise InvalidExpression(expression, str(e)) from e


def validate_cron_expression(expression: str | None) -> None:
    """Raise InvalidExpression if *expression* cannot be parsed."""
    _cron_iter(expression, utcnow())


def _next_cron(expression: str | None, after: datetime) -> datetime:
    itr = _cron_iter(expression, after)
    nxt = itr.get_next(datetime).astimezone(timezone.utc)
    # croniter compares at second resolution; never hand back a time <= after
    while nxt <= after:
        nxt = itr.get_next(datetime).astimezone(timezone.utc)
    return nxt


def next_run_time(
    schedule_type: ScheduleType | str,
    *,
    cron_expression: str | None = None,
    interval_seconds: int | None = None,
    start_time: datetime | None = None,
    now: datetime | None = None,
) -> datetime | None:
    """Compute when a schedule should fire next.

    - ONCE: ``start_time`` if it is still ahead, otherwise ``now``.
    - CRON: first occurrence strictly after ``now``; a future ``start_time``
      moves the search origin forward to it.
    - INTERVAL: ``(start_time or now) + interval_seconds``.
    - MANUAL: ``None``, it never fires on its own.

    Raises:
        InvalidExpression: CRON expression cannot be parsed.
        InvalidInterval:   INTERVAL without a positive ``interval_seconds``.
        UnsupportedType:   anything else.
    """
    now = now or utcnow()
    try:
        kind = ScheduleType(schedule_type)
    except ValueError:
        raise UnsupportedType(schedule_type) from None

    if kind == ScheduleType.ONCE:
        if start_time is None or start_time <= now:
            return now
        return start_time

    if kind == ScheduleType.CRON:
        origin = start_time if start_time is not None and start_time > now else now
        return _next_cron(cron_expression, origin)

    if kind == ScheduleType.INTERVAL:
        if (
            interval_seconds is None
            or isinstance(interval_seconds, bool)
            or not isinstance(interval_seconds, int)
            or interval_seconds <= 0
        ):
            raise InvalidInterval(interval_seconds)
        return (start_time or now) + timedelta(seconds=interval_seconds)

    if kind == ScheduleType.MANUAL:
        return None

    raise UnsupportedType(schedule_type)
