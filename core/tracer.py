"""Tracer — timed spans for scan cycles and dispatches, kept in a bounded history."""

from __future__ import annotations

from collections import deque
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Generator

from core.clock import Clock, utcnow


# ── Data classes ─────────────────────────────────────────────────────────────

@dataclass
class Span:
    """A single timed operation."""
    name: str
    kind: str                        # cycle | dispatch | retention
    started_at: datetime
    finished_at: datetime | None = None
    error: str | None = None
    attrs: dict = field(default_factory=dict)

    @property
    def duration_ms(self) -> int | None:
        if self.started_at and self.finished_at:
            return int((self.finished_at - self.started_at).total_seconds() * 1000)
        return None

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "kind": self.kind,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "duration_ms": self.duration_ms,
            "error": self.error,
            **self.attrs,
        }


# ── Tracer ────────────────────────────────────────────────────────────────────

class Tracer:
    """Collects the most recent spans; older ones fall off the end."""

    def __init__(self, max_spans: int = 100, clock: Clock = utcnow):
        self._spans: deque[Span] = deque(maxlen=max_spans)
        self._clock = clock

    @contextmanager
    def span(self, name: str, kind: str, **attrs) -> Generator[Span, None, None]:
        """Context manager that records a timed span, including failed ones."""
        s = Span(name=name, kind=kind, started_at=self._clock(), attrs=attrs)
        try:
            yield s
        except BaseException as e:
            s.error = f"{type(e).__name__}: {e}"
            raise
        finally:
            s.finished_at = self._clock()
            self._spans.append(s)

    def spans(self, kind: str | None = None) -> list[Span]:
        return [s for s in self._spans if kind is None or s.kind == kind]

    def last(self, kind: str) -> Span | None:
        for s in reversed(self._spans):
            if s.kind == kind:
                return s
        return None
