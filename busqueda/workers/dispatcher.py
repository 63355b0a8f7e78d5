from __future__ import annotations

import asyncio
import contextlib
import logging

from opentelemetry import trace

from busqueda.schemas.indexing import FactEvent, IndexEvent, PoiEvent
from busqueda.services.ingestion import IngestionService, IngestResult

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


class DispatcherSaturatedError(Exception):
    """Raised when the push queue is full and the event cannot be accepted."""


class DispatcherNotRunningError(Exception):
    """Raised when an event is submitted before start() or after stop()."""


def event_identity(event: IndexEvent) -> str:
    if isinstance(event, FactEvent):
        return f"fact:{event.fact.fact_id}"
    if isinstance(event, PoiEvent):
        return f"poi:{event.poi.poi_id}@{event.poi.fact_id}"
    return f"censorship:{event.censorship.request_id}@{event.censorship.fact_id}"


class IngestionDispatcher:
    """Bounded queue of pushed events drained by a fixed pool of worker tasks.

    Each event goes through the ingestion service with its retry policy. An
    event that still fails is logged with its identity and dropped; a later
    event or the next reconciliation sweep repairs the index.
    """

    def __init__(self, ingestion: IngestionService, *, workers: int = 4, queue_size: int = 1000) -> None:
        self.ingestion = ingestion
        self.worker_count = max(1, workers)
        self._queue: asyncio.Queue[IndexEvent] = asyncio.Queue(maxsize=max(1, queue_size))
        self._tasks: list[asyncio.Task[None]] = []
        self._running = False
        self.processed = 0
        self.failed = 0

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._tasks = [
            asyncio.create_task(self._worker_loop(), name=f"ingestion-dispatcher-{index}")
            for index in range(self.worker_count)
        ]
        logger.info("ingestion dispatcher started workers=%s queue_size=%s", self.worker_count, self._queue.maxsize)

    def submit(self, event: IndexEvent) -> int:
        if not self._running:
            raise DispatcherNotRunningError("ingestion dispatcher is not running")
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull as exc:
            logger.warning("ingestion queue saturated event=%s depth=%s", event_identity(event), self._queue.qsize())
            raise DispatcherSaturatedError("ingestion queue is full") from exc
        return self._queue.qsize()

    async def join(self) -> None:
        await self._queue.join()

    async def stop(self, *, drain: bool = True) -> None:
        if not self._running:
            return
        self._running = False
        if drain:
            await self._queue.join()
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._tasks = []
        logger.info("ingestion dispatcher stopped processed=%s failed=%s", self.processed, self.failed)

    async def _worker_loop(self) -> None:
        while True:
            event = await self._queue.get()
            try:
                await self.process(event)
            finally:
                self._queue.task_done()

    async def process(self, event: IndexEvent) -> IngestResult | None:
        identity = event_identity(event)
        with tracer.start_as_current_span("dispatcher.process_event") as span:
            span.set_attribute("event.kind", event.kind)
            span.set_attribute("event.identity", identity)
            try:
                result = await self._apply(event)
            except Exception:
                self.failed += 1
                logger.exception("dropping event after failed ingestion event=%s", identity)
                return None
            self.processed += 1
            span.set_attribute("ingest.outcome", result.outcome)
            return result

    async def _apply(self, event: IndexEvent) -> IngestResult:
        if isinstance(event, FactEvent):
            return await self.ingestion.ingest_fact(event.fact)
        if isinstance(event, PoiEvent):
            return await self.ingestion.ingest_poi(event.poi)
        return await self.ingestion.ingest_censorship(event.censorship.fact_id, event.censorship.request_id)
