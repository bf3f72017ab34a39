"""In-process channel that hands freshly created runs to the executor."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone

from core.state import Run

logger = logging.getLogger(__name__)


class DispatchChannel:
    """Lightweight fan-out backed by asyncio.Queue.

    Every subscriber receives its own copy of every ``run_created`` event.
    An executor subscribes, picks up run ids, and reports back through
    RunService.start_run / complete_run. With no subscribers attached,
    dispatched events are dropped and the run simply stays PENDING. The same
    happens for a subscriber whose queue is full: the event is dropped for that
    subscriber and a warning logged.
    """

    def __init__(self, max_queue_size: int = 1000) -> None:
        self._queues: list[asyncio.Queue] = []
        self.max_queue_size = max_queue_size

    def subscribe(self) -> asyncio.Queue:
        """Return a queue that will receive all future dispatch events."""
        q: asyncio.Queue = asyncio.Queue(maxsize=self.max_queue_size)
        self._queues.append(q)
        return q

    def unsubscribe(self, q: asyncio.Queue) -> None:
        try:
            self._queues.remove(q)
        except ValueError:
            pass

    @property
    def subscriber_count(self) -> int:
        return len(self._queues)

    async def dispatch(self, run: Run) -> None:
        """Publish *run* to every subscriber currently registered."""
        event = _make_event(run)
        if not self._queues:
            logger.debug("No executor subscribed, run left pending", extra={"run_id": run.id})
        for q in list(self._queues):
            try:
                q.put_nowait(event)
            except asyncio.QueueFull:
                logger.warning(
                    "Subscriber queue full, dispatch event dropped",
                    extra={"run_id": run.id, "max_queue_size": self.max_queue_size},
                )


def _make_event(run: Run) -> dict:
    return {
        "type": "run_created",
        "run_id": run.id,
        "workflow_id": run.workflow_id,
        "schedule_id": run.schedule_id,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
