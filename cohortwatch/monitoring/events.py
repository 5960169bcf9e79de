"""
Change-event stream: record change notifications feeding event mode.

Publishers (the HTTP surface, importers) put ChangeEvents on a bounded
asyncio.Queue; one EvaluationWorker drains it and calls
MonitoringEngine.process_change for each event. Delivery is at-least-once:
a repeated event is absorbed by the dedup window.
"""

import asyncio
from typing import Optional

import structlog

from cohortwatch.config import settings
from cohortwatch.exceptions import CohortWatchError
from cohortwatch.monitoring.engine import MonitoringEngine
from cohortwatch.monitoring.schemas import BatchResult, ChangeEvent

logger = structlog.get_logger(__name__)


class ChangeEventStream:
    """Typed, bounded queue of change events."""

    def __init__(self, maxsize: Optional[int] = None):
        self._queue: asyncio.Queue[ChangeEvent] = asyncio.Queue(
            maxsize=settings.event_queue_size if maxsize is None else maxsize
        )

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    async def publish(self, event: ChangeEvent) -> None:
        """Enqueue, waiting for room when the queue is full."""
        await self._queue.put(event)
        logger.debug(
            "change_event_published",
            institution_id=event.institution_id,
            student_id=event.student_id,
            kind=event.kind.value,
        )

    def publish_nowait(self, event: ChangeEvent) -> bool:
        """Enqueue without waiting. Returns False when the queue is full."""
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            logger.warning(
                "change_event_queue_full",
                institution_id=event.institution_id,
                student_id=event.student_id,
            )
            return False
        return True

    async def get(self) -> ChangeEvent:
        return await self._queue.get()

    def task_done(self) -> None:
        self._queue.task_done()

    async def join(self) -> None:
        await self._queue.join()


class EvaluationWorker:
    """
    Drains a ChangeEventStream into the engine.

    A failure for one event is logged and the worker moves on.
    """

    def __init__(self, engine: MonitoringEngine, stream: ChangeEventStream):
        self.engine = engine
        self.stream = stream
        self.processed = 0
        self.failed = 0
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run(), name="cohortwatch-evaluation-worker")
        logger.info("evaluation_worker_started")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info(
            "evaluation_worker_stopped", processed=self.processed, failed=self.failed
        )

    async def handle(self, event: ChangeEvent) -> Optional[BatchResult]:
        try:
            result = await self.engine.process_change(event)
        except CohortWatchError as e:
            self.failed += 1
            logger.warning(
                "change_event_rejected",
                institution_id=event.institution_id,
                student_id=event.student_id,
                kind=e.kind,
                error=e.message,
            )
            return None
        except Exception as e:
            self.failed += 1
            logger.error(
                "change_event_failed",
                institution_id=event.institution_id,
                student_id=event.student_id,
                error=str(e),
                exc_info=True,
            )
            return None
        self.processed += 1
        return result

    async def _run(self) -> None:
        while True:
            event = await self.stream.get()
            try:
                await self.handle(event)
            finally:
                self.stream.task_done()
