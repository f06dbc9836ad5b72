"""
Fire-and-forget enrichment handoff.

Request handlers ``publish`` records after the response is built; a single
worker task drains the queue and hands each record to the configured
``Enricher``. A full queue drops the record instead of blocking the caller.
"""
import asyncio
from typing import Any, Protocol

from bookproxy.internal.models import BookRecord
from bookproxy.util.log import logger


class Enricher(Protocol):
    async def enrich(self, record: BookRecord) -> dict[str, Any] | None: ...


class NullEnricher:
    async def enrich(self, record: BookRecord) -> dict[str, Any] | None:
        return None


class EnrichmentQueue:
    def __init__(self, enricher: Enricher | None = None, maxsize: int = 1000):
        self.enricher: Enricher = enricher or NullEnricher()
        self._queue: asyncio.Queue[BookRecord] = asyncio.Queue(maxsize=maxsize)
        self._worker: asyncio.Task[None] | None = None
        self.dropped = 0
        self.processed = 0

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def publish(self, record: BookRecord) -> bool:
        try:
            self._queue.put_nowait(record)
        except asyncio.QueueFull:
            self.dropped += 1
            logger.warning("Enrichment queue full, dropping record", record_id=record.id)
            return False
        return True

    def publish_many(self, records: list[BookRecord]) -> int:
        return sum(self.publish(record) for record in records)

    def start(self) -> None:
        if self._worker is None or self._worker.done():
            self._worker = asyncio.get_running_loop().create_task(self._run())

    async def join(self) -> None:
        """Wait until everything published so far was handled."""
        await self._queue.join()

    async def stop(self) -> None:
        if self._worker is None:
            return
        self._worker.cancel()
        try:
            await self._worker
        except asyncio.CancelledError:
            pass
        self._worker = None

    async def _run(self) -> None:
        while True:
            record = await self._queue.get()
            try:
                enrichment = await self.enricher.enrich(record)
                self.processed += 1
                if enrichment:
                    logger.debug("Record enriched", record_id=record.id, fields=list(enrichment))
            except Exception as e:
                logger.error(
                    "Enrichment failed",
                    record_id=record.id,
                    error=str(e),
                    error_type=type(e).__name__,
                )
            finally:
                self._queue.task_done()
