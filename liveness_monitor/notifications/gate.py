"""Rate-limited notification delivery.

The gate decides synchronously whether an event is sent, then hands the rendered text to
a background worker. Delivery never blocks the caller and its failures are only logged.
"""

from __future__ import annotations

import asyncio
import contextlib
import time
from dataclasses import dataclass
from typing import Any, Callable, Mapping, Protocol, Sequence

import structlog

from liveness_monitor.notifications.events import DEFAULT_MINUTE_GATES, EventKind, NotificationEvent
from liveness_monitor.notifications.render import render_event

logger = structlog.get_logger(__name__)

MAX_PENDING_DELIVERIES = 100


class MessageSink(Protocol):
    name: str

    async def send_message(self, destination: Any, topic: str, text: str) -> Any:
        """Deliver ``text`` and return the backend's message id."""

    async def edit_message(self, message_id: Any, text: str) -> bool:
        """Replace an earlier message. False when the backend refuses."""


@dataclass(frozen=True)
class Destination:
    sink: MessageSink
    target: Any

    @property
    def label(self) -> str:
        return f"{self.sink.name}:{self.target}"


@dataclass
class GateRecord:
    minimum_interval_minutes: int
    last_sent_at: float | None = None


class NotificationGate:
    def __init__(
        self,
        destinations: Sequence[Destination] = (),
        *,
        topic: str = "",
        minute_gates: Mapping[EventKind, int] | None = None,
        send_timeout_seconds: float = 15.0,
        edit_repeated_status: bool = False,
        max_pending: int = MAX_PENDING_DELIVERIES,
        clock: Callable[[], float] = time.monotonic,
    ):
        gates = {**DEFAULT_MINUTE_GATES, **(minute_gates or {})}
        self.records: dict[EventKind, GateRecord] = {
            kind: GateRecord(minimum_interval_minutes=max(0, int(gates.get(kind, 0)))) for kind in EventKind
        }
        self.destinations = list(destinations)
        self.topic = topic
        self.send_timeout_seconds = float(send_timeout_seconds)
        self.edit_repeated_status = edit_repeated_status
        self.max_pending = max(1, int(max_pending))
        self.clock = clock
        self.last_kind: EventKind | None = None
        self.sent_count = 0
        self.suppressed_count = 0
        self.dropped_count = 0
        self._last_message_ids: dict[int, Any] = {}
        self._queue: asyncio.Queue | None = None
        self._worker: asyncio.Task | None = None

    def should_suppress(self, kind: EventKind) -> bool:
        record = self.records[kind]
        if kind != self.last_kind or record.minimum_interval_minutes <= 0 or record.last_sent_at is None:
            return False
        return (self.clock() - record.last_sent_at) < record.minimum_interval_minutes * 60.0

    def emit(self, kind: EventKind, payload: Mapping[str, Any] | None = None) -> bool:
        """Send ``kind`` unless it repeats inside its minimum interval.

        Returns False when the message was suppressed.
        """
        kind = EventKind(kind)
        if self.should_suppress(kind):
            self.suppressed_count += 1
            logger.debug("Notification suppressed", kind=kind.value)
            return False

        text = render_event(NotificationEvent(kind=kind, payload=dict(payload or {})))
        edit = (
            self.edit_repeated_status
            and kind == EventKind.TEST_PASSED
            and self.last_kind == EventKind.TEST_PASSED
        )

        # Recorded even if delivery later fails; a lost message is not retried.
        self.records[kind].last_sent_at = self.clock()
        self.last_kind = kind
        self.sent_count += 1

        if self.destinations:
            self._enqueue(text, edit)
        else:
            logger.info("Notification", kind=kind.value, text=text)
        return True

    def _enqueue(self, text: str, edit: bool) -> None:
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            logger.warning("No running event loop; notification dropped", text=text[:200])
            return
        if self._queue is None:
            self._queue = asyncio.Queue(maxsize=self.max_pending)
        if self._worker is None or self._worker.done():
            self._worker = asyncio.create_task(self._run_worker(self._queue))
        if self._queue.full():
            dropped_text, _ = self._queue.get_nowait()
            self._queue.task_done()
            self.dropped_count += 1
            logger.warning("Delivery backlog full, dropping oldest notification", text=dropped_text[:200])
        self._queue.put_nowait((text, edit))

    async def _run_worker(self, queue: asyncio.Queue) -> None:
        while True:
            text, edit = await queue.get()
            tasks = [
                asyncio.create_task(self._deliver(i, dest, text, edit)) for i, dest in enumerate(self.destinations)
            ]
            try:
                for fut in asyncio.as_completed(tasks):
                    await fut
            finally:
                for task in tasks:
                    task.cancel()
                queue.task_done()

    async def _deliver(self, index: int, destination: Destination, text: str, edit: bool) -> None:
        try:
            message_id = await asyncio.wait_for(
                self._send_or_edit(index, destination, text, edit),
                timeout=self.send_timeout_seconds,
            )
        except asyncio.TimeoutError:
            self._last_message_ids.pop(index, None)
            logger.warning(
                "Notification delivery timed out",
                destination=destination.label,
                timeout_seconds=self.send_timeout_seconds,
            )
            return
        except Exception as e:
            self._last_message_ids.pop(index, None)
            logger.warning(
                "Notification delivery failed",
                destination=destination.label,
                error=f"{type(e).__name__}: {e}",
            )
            return
        self._last_message_ids[index] = message_id

    async def _send_or_edit(self, index: int, destination: Destination, text: str, edit: bool) -> Any:
        last_id = self._last_message_ids.get(index)
        if edit and last_id is not None:
            if await destination.sink.edit_message(last_id, text):
                return last_id
            logger.info("Message edit refused, sending a new message", destination=destination.label)
        return await destination.sink.send_message(destination.target, self.topic, text)

    async def drain(self, timeout: float | None = None) -> None:
        """Wait for queued deliveries, then stop the worker."""
        if self._worker is None or self._queue is None:
            return
        try:
            await asyncio.wait_for(self._queue.join(), timeout)
        except asyncio.TimeoutError:
            logger.warning("Dropping undelivered notifications", pending=self._queue.qsize())
        finally:
            self._worker.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._worker
            self._worker = None
            self._queue = None
