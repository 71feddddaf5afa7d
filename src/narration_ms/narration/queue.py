"""
FIFO backlog for narration requests that arrive while admission is full.

Entries drain in enqueue order through the same pipeline as direct calls.
At most one drain runs at a time. A drain pops the head only after it has
reserved an admission slot for it, processes it, then pauses
``queue_processing_delay_ms`` before the next one so the remote service is
not hit in bursts. If the drain stops with entries left (no free slot), it
reschedules itself after twice the delay.

Drains are also scheduled whenever a slot frees up (a resource ends, errors
or is evicted, or a reservation is given back).
"""
from __future__ import annotations

import asyncio
import time
from collections import deque
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Awaitable, Callable, Deque, Optional

from narration_ms.core.config import AudioSettings
from narration_ms.core.logging import debug, get_logger, info, set_request_id, verbose
from narration_ms.narration.admission import PlaybackAdmissionController, Reservation
from narration_ms.narration.result import SpeakResult, SpeakStatus

if TYPE_CHECKING:
    from narration_ms.core.metrics import MetricsCollector

_LOG = get_logger("narration-ms.queue")


@dataclass
class QueueEntry:
    text: str
    request_id: str
    future: "asyncio.Future[SpeakResult]" = field(repr=False)
    truncated: bool = False
    enqueued_at: float = field(default_factory=time.monotonic)
    started_at: Optional[float] = None

    def resolve(self, result: SpeakResult) -> None:
        if not self.future.done():
            self.future.set_result(result)


Processor = Callable[[QueueEntry, Reservation], Awaitable[SpeakResult]]


class RequestQueue:
    """
    Strict FIFO backlog with a single paced drain loop.

    Args:
        admission: Slots are reserved here before an entry is popped.
        settings: Live audio settings (queue_processing_delay_ms).
        metrics: Keeps the queued_requests gauge in step with the backlog.
        processor: Runs one entry through the synthesis/playback pipeline
            while holding the given reservation.
    """

    def __init__(
        self,
        admission: PlaybackAdmissionController,
        settings: AudioSettings,
        metrics: "MetricsCollector",
        processor: Optional[Processor] = None,
    ):
        self.admission = admission
        self.settings = settings
        self.metrics = metrics
        self.processor = processor
        self._entries: Deque[QueueEntry] = deque()
        self._current: Optional[QueueEntry] = None
        self._running = False
        self._timer: Optional[asyncio.TimerHandle] = None
        self._task: Optional[asyncio.Task] = None

    def __len__(self) -> int:
        return len(self._entries)

    @property
    def is_processing(self) -> bool:
        return self._running

    def pending_texts(self) -> list:
        return [e.text for e in self._entries]

    def enqueue(self, text: str, request_id: str, truncated: bool = False) -> QueueEntry:
        loop = asyncio.get_running_loop()
        entry = QueueEntry(text=text, request_id=request_id, future=loop.create_future(), truncated=truncated)
        self._entries.append(entry)
        self.metrics.record_enqueued()
        info(_LOG, "queue_enqueued", depth=len(self._entries))
        self.schedule_drain(self.settings.queue_delay_s)
        return entry

    def schedule_drain(self, delay_s: Optional[float] = None) -> None:
        """
        Start a drain after ``delay_s`` (default: the pacing delay).

        Keeps whichever pending timer fires first.
        """
        if not self._entries:
            return
        if delay_s is None:
            delay_s = self.settings.queue_delay_s

        loop = asyncio.get_running_loop()
        when = loop.time() + delay_s
        if self._timer is not None:
            if self._timer.when() <= when:
                return
            self._timer.cancel()
        self._timer = loop.call_later(delay_s, self._start_drain)
        debug(_LOG, "drain_scheduled", delay_s=round(delay_s, 3))

    def _start_drain(self) -> None:
        self._timer = None
        if self._running or not self._entries:
            return
        self._task = asyncio.get_running_loop().create_task(self._drain())

    async def _drain(self) -> None:
        if self._running:
            return
        self._running = True
        try:
            while self._entries:
                reservation = self.admission.try_reserve()
                if reservation is None:
                    break
                entry = self._entries.popleft()
                self.metrics.record_dequeued()
                entry.started_at = time.monotonic()
                self._current = entry
                set_request_id(entry.request_id)
                verbose(
                    _LOG,
                    "queue_processing",
                    waited_ms=round((entry.started_at - entry.enqueued_at) * 1000.0, 1),
                    remaining=len(self._entries),
                )
                try:
                    result = await self.processor(entry, reservation)
                except Exception as e:
                    self.admission.release_reservation(reservation)
                    if not entry.future.done():
                        entry.future.set_exception(e)
                    raise
                finally:
                    self._current = None
                entry.resolve(result)

                if self._entries:
                    await asyncio.sleep(self.settings.queue_delay_s)
        finally:
            self._running = False
            self._task = None

        if self._entries:
            verbose(_LOG, "drain_rescheduled", remaining=len(self._entries))
            self.schedule_drain(2 * self.settings.queue_delay_s)

    async def cancel_all(self) -> int:
        """
        Stop draining and discard every entry.

        Pending futures (including the entry being processed) resolve with
        status CANCELLED.

        Returns:
            Number of entries discarded from the backlog.
        """
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

        discarded = 0
        while self._entries:
            entry = self._entries.popleft()
            self.metrics.record_dequeued()
            entry.resolve(SpeakResult(status=SpeakStatus.CANCELLED, request_id=entry.request_id, truncated=entry.truncated))
            discarded += 1

        current = self._current
        if current is not None:
            current.resolve(SpeakResult(status=SpeakStatus.CANCELLED, request_id=current.request_id, truncated=current.truncated))

        task = self._task
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                # Re-raise only if we ourselves are being cancelled
                current_task = asyncio.current_task()
                if current_task is not None and current_task.cancelling():
                    raise
        self._running = False
        self._task = None

        if discarded:
            info(_LOG, "queue_cleared", discarded=discarded)
        return discarded
