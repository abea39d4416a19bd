"""In-process fire-and-forget notification dispatch."""

import asyncio
from collections.abc import Iterable

from genguard.logging.config import get_logger

from .events import AdmissionEvent
from .sinks import NotificationSink

logger = get_logger(__name__)


class NotificationDispatcher:
    """Bounded queue drained by background worker tasks.

    ``publish`` never blocks and never raises: when the queue is full the
    event is dropped. Each event goes to every sink concurrently, and a
    failing sink does not affect the others.
    """

    def __init__(
        self,
        sinks: Iterable[NotificationSink],
        maxsize: int = 1000,
        workers: int = 1,
    ) -> None:
        self.sinks = list(sinks)
        self.workers = workers
        self._queue: asyncio.Queue[AdmissionEvent] = asyncio.Queue(maxsize=maxsize)
        self._tasks: list[asyncio.Task] = []
        self.dropped = 0

    @property
    def running(self) -> bool:
        return any(not task.done() for task in self._tasks)

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def publish(self, event: AdmissionEvent) -> bool:
        """Enqueue an event; returns False if it was dropped."""
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            self.dropped += 1
            logger.warning(
                "Notification queue full, dropping event",
                event=event.event,
                job_id=event.job_id,
                dropped=self.dropped,
            )
            return False
        return True

    async def start(self) -> None:
        if self.running:
            return
        self._tasks = [
            asyncio.create_task(self._worker_loop(i), name=f"notify-worker-{i}")
            for i in range(self.workers)
        ]
        logger.info("Notification dispatcher started", workers=self.workers, sinks=len(self.sinks))

    async def drain(self) -> None:
        """Wait until every queued event has been handled."""
        await self._queue.join()

    async def stop(self, timeout: float = 5.0) -> None:
        """Drain for up to ``timeout`` seconds, then cancel the workers."""
        if self._tasks:
            try:
                await asyncio.wait_for(self._queue.join(), timeout=timeout)
            except TimeoutError:
                logger.warning("Notification queue not drained before stop", pending=self.pending)

        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        logger.info("Notification dispatcher stopped")

    async def _worker_loop(self, index: int) -> None:
        while True:
            event = await self._queue.get()
            try:
                await self._deliver(event)
            except Exception:
                logger.exception("Error delivering notification", worker=index)
            finally:
                self._queue.task_done()

    async def _deliver(self, event: AdmissionEvent) -> None:
        await asyncio.gather(*(self._send(sink, event) for sink in self.sinks))

    async def _send(self, sink: NotificationSink, event: AdmissionEvent) -> None:
        try:
            await sink.send(event)
        except Exception:
            logger.warning(
                "Notification sink failed",
                sink=sink.name,
                event=event.event,
                job_id=event.job_id,
                exc_info=True,
            )
