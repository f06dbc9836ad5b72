import pytest

from bookproxy.internal.book_service import BookService
from bookproxy.internal.cache_keys import IdentifierQuery, SearchQuery
from bookproxy.internal.enrichment import EnrichmentQueue
from bookproxy.internal.orchestrator import ProviderOrchestrator
from bookproxy.util.exceptions import AllProvidersFailed, RecordNotFound
from tests.fakes import FakeProvider

DUNE = "9780441172719"
MISSING = "9780000000002"


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider("alpha", quality=90, missing_ids={MISSING})


@pytest.fixture
def enrichment() -> EnrichmentQueue:
    return EnrichmentQueue()


@pytest.fixture
def service(provider, quota_store, cache_store, cache_settings, enrichment) -> BookService:
    orchestrator = ProviderOrchestrator([provider], quota_store, client_session=None)  # pyright: ignore[reportArgumentType]
    return BookService(cache_store, orchestrator, enrichment, cache_settings)


class TestSearch:
    @pytest.mark.asyncio
    async def test_miss_then_hit(self, service, provider):
        query = SearchQuery(query="dune")

        miss = await service.search(query)
        assert miss.cache_status == "MISS"
        assert miss.provider == "alpha"
        assert miss.payload["cached"] is False
        assert miss.payload["items"][0]["title"] == "dune"

        hit = await service.search(query)
        assert hit.cache_status.startswith("HIT-")
        assert hit.payload["cached"] is True
        assert hit.payload["items"] == miss.payload["items"]
        assert provider.calls == ["dune"]

    @pytest.mark.asyncio
    async def test_equivalent_queries_share_cache(self, service, provider):
        await service.search(SearchQuery(query="The  Hobbit"))
        await service.search(SearchQuery(query="the hobbit"))
        assert len(provider.calls) == 1

    @pytest.mark.asyncio
    async def test_results_published_for_enrichment(self, service, enrichment):
        await service.search(SearchQuery(query="dune"))
        assert enrichment.pending == 1


class TestLookup:
    @pytest.mark.asyncio
    async def test_miss_then_hit(self, service, provider, enrichment):
        miss = await service.lookup(DUNE)
        assert miss.cache_status == "MISS"
        assert miss.payload["isbn_13"] == DUNE
        assert enrichment.pending == 1

        hit = await service.lookup(DUNE)
        assert hit.payload["isbn_13"] == DUNE
        assert hit.payload["cached"] is True
        assert provider.calls == [DUNE]

    @pytest.mark.asyncio
    async def test_not_found_is_cached_briefly(self, service, provider, cache_store, clock, cache_settings):
        with pytest.raises(RecordNotFound):
            await service.lookup(MISSING)
        with pytest.raises(RecordNotFound):
            await service.lookup(MISSING)
        assert provider.calls == [MISSING]

        hit = await cache_store.get(IdentifierQuery(isbn=MISSING).cache_key())
        assert hit is not None
        assert hit.json() == {"not_found": True, "isbn": MISSING}

        clock.advance(cache_settings.negative_ttl_seconds + 1)
        with pytest.raises(RecordNotFound):
            await service.lookup(MISSING)
        assert provider.calls == [MISSING, MISSING]

    @pytest.mark.asyncio
    async def test_provider_failure_is_not_cached(self, service, provider):
        provider.fail_all = True
        with pytest.raises(AllProvidersFailed):
            await service.lookup(DUNE)

        provider.fail_all = False
        response = await service.lookup(DUNE)
        assert response.cache_status == "MISS"


class TestBatch:
    @pytest.mark.asyncio
    async def test_mixed_outcomes_preserve_order(self, service, provider):
        provider.fail_ids = {"9780316769174"}
        isbns = [DUNE, MISSING, "9780316769174"]

        response = await service.batch(isbns)

        assert [item["id"] for item in response.items] == isbns
        assert [item["status"] for item in response.items] == ["ok", "not_found", "failed"]
        assert (response.successful, response.not_found, response.failed) == (1, 1, 1)
        assert response.total == 3
        assert response.items[2]["error"] == "all_providers_failed"

    @pytest.mark.asyncio
    async def test_cached_items_skip_providers(self, service, provider):
        await service.lookup(DUNE)
        provider.calls.clear()

        response = await service.batch([DUNE, "9780316769174"])

        assert provider.calls == ["9780316769174"]
        assert response.items[0]["cached"] is True
        assert response.items[1]["cached"] is False
        assert response.items[1]["provider"] == "alpha"

    @pytest.mark.asyncio
    async def test_not_found_recorded_for_later_lookups(self, service, provider):
        await service.batch([MISSING])
        provider.calls.clear()

        with pytest.raises(RecordNotFound):
            await service.lookup(MISSING)
        assert provider.calls == []
