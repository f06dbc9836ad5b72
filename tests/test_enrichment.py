import pytest
from structlog.testing import capture_logs

from bookproxy.internal.enrichment import EnrichmentQueue
from tests.fakes import make_record


class RecordingEnricher:
    def __init__(self, fail_on: set[str] | None = None):
        self.seen: list[str] = []
        self.fail_on = fail_on or set()

    async def enrich(self, record):
        if record.id in self.fail_on:
            raise RuntimeError("enrichment backend down")
        self.seen.append(record.id)
        return {"summary": "..."}


class TestEnrichmentQueue:
    @pytest.mark.asyncio
    async def test_worker_drains_queue(self):
        enricher = RecordingEnricher()
        queue = EnrichmentQueue(enricher)
        queue.start()

        assert queue.publish_many([make_record("a", "alpha"), make_record("b", "alpha")]) == 2
        await queue.join()
        await queue.stop()

        assert enricher.seen == ["a", "b"]
        assert queue.processed == 2
        assert queue.pending == 0

    @pytest.mark.asyncio
    async def test_full_queue_drops_instead_of_blocking(self):
        queue = EnrichmentQueue(maxsize=1)

        assert queue.publish(make_record("a", "alpha")) is True
        with capture_logs() as logs:
            assert queue.publish(make_record("b", "alpha")) is False

        assert queue.dropped == 1
        assert logs[0]["event"] == "Enrichment queue full, dropping record"

    @pytest.mark.asyncio
    async def test_enricher_errors_do_not_stop_worker(self):
        enricher = RecordingEnricher(fail_on={"bad"})
        queue = EnrichmentQueue(enricher)
        queue.start()

        with capture_logs() as logs:
            queue.publish(make_record("bad", "alpha"))
            queue.publish(make_record("good", "alpha"))
            await queue.join()
        await queue.stop()

        assert enricher.seen == ["good"]
        assert any(log["event"] == "Enrichment failed" for log in logs)

    @pytest.mark.asyncio
    async def test_stop_without_start(self):
        await EnrichmentQueue().stop()
