import pytest
from sqlmodel import SQLModel, Session

from bookproxy.internal.cache_keys import IdentifierQuery, SearchQuery
from bookproxy.internal.models import CacheEntry, CacheTier
from bookproxy.internal.cache_store import CacheStore
from tests.fakes import make_record

LONG_TTL = 30 * 86_400


class TestReadWrite:
    @pytest.mark.asyncio
    async def test_repeated_gets_return_identical_payloads(self, cache_store: CacheStore):
        """A single set yields byte-identical reads until expiry."""
        key = SearchQuery(query="dune").cache_key()
        await cache_store.set(key, {"items": [1, 2, 3], "provider": "alpha"}, LONG_TTL)

        payloads = []
        for _ in range(3):
            hit = await cache_store.get(key)
            assert hit is not None
            payloads.append(hit.payload)

        assert payloads[0] == payloads[1] == payloads[2]
        assert hit.json() == {"items": [1, 2, 3], "provider": "alpha"}

    @pytest.mark.asyncio
    async def test_miss_returns_none(self, cache_store: CacheStore):
        assert await cache_store.get("search/unknown") is None

    @pytest.mark.asyncio
    async def test_pydantic_payload_is_serialized(self, cache_store: CacheStore):
        key = IdentifierQuery(isbn="9780765326355").cache_key()
        await cache_store.set(key, make_record("9780765326355", "alpha"), LONG_TTL)

        hit = await cache_store.get(key)
        assert hit is not None
        assert hit.json()["provider"] == "alpha"
        assert hit.tier == CacheTier.warm

    @pytest.mark.asyncio
    async def test_overwrite_replaces_payload(self, cache_store: CacheStore):
        await cache_store.set("search/k", {"v": 1}, LONG_TTL)
        await cache_store.set("search/k", {"v": 2}, LONG_TTL)

        hit = await cache_store.get("search/k")
        assert hit is not None
        assert hit.json() == {"v": 2}

    @pytest.mark.asyncio
    async def test_delete(self, cache_store: CacheStore):
        await cache_store.set("search/k", {"v": 1}, 60)
        await cache_store.delete("search/k")
        assert await cache_store.get("search/k") is None


class TestExpiry:
    @pytest.mark.asyncio
    async def test_expired_warm_entry_not_served_and_removed(self, cache_store, db_engine, clock):
        await cache_store.set("search/k", {"v": 1}, LONG_TTL)
        clock.advance(LONG_TTL + 1)

        assert await cache_store.get("search/k") is None
        with Session(db_engine) as session:
            assert session.get(CacheEntry, "search/k") is None

    @pytest.mark.asyncio
    async def test_expired_hot_entry_not_served(self, cache_store, clock):
        await cache_store.set("search/k", {"v": 1}, 3_600)
        assert cache_store.hot.contains("search/k")

        clock.advance(3_601)
        assert await cache_store.get("search/k") is None

    @pytest.mark.asyncio
    async def test_purge_expired(self, cache_store, clock):
        await cache_store.set("search/old", {"v": 1}, 60)
        await cache_store.set("search/new", {"v": 2}, LONG_TTL)
        clock.advance(120)

        # one warm row plus its hot copy
        assert cache_store.purge_expired() == 2
        assert await cache_store.get("search/new") is not None


class TestHotTierWrites:
    @pytest.mark.asyncio
    async def test_long_lived_unpopular_entry_stays_warm_only(self, cache_store):
        await cache_store.set("search/k", {"v": 1}, LONG_TTL, popularity_hint=1)
        assert not cache_store.hot.contains("search/k")

    @pytest.mark.asyncio
    async def test_short_lived_entry_written_to_hot(self, cache_store):
        await cache_store.set("search/k", {"v": 1}, 3_600)
        hit = await cache_store.get("search/k")
        assert hit is not None
        assert hit.tier == CacheTier.hot

    @pytest.mark.asyncio
    async def test_popular_entry_written_to_hot(self, cache_store):
        await cache_store.set("search/k", {"v": 1}, LONG_TTL, popularity_hint=4)
        assert cache_store.hot.contains("search/k")

    @pytest.mark.asyncio
    async def test_oversized_entry_never_hot(self, cache_store, cache_settings):
        big = {"blob": "x" * cache_settings.hot_size_limit_bytes}
        await cache_store.set("search/k", big, 3_600, popularity_hint=10)
        assert not cache_store.hot.contains("search/k")

    @pytest.mark.asyncio
    async def test_hot_copy_capped_by_max_ttl(self, cache_store, cache_settings, clock):
        await cache_store.set("search/k", {"v": 1}, LONG_TTL, popularity_hint=10)
        clock.advance(cache_settings.hot_max_ttl_seconds + 1)

        assert not cache_store.hot.contains("search/k")
        hit = await cache_store.get("search/k")
        assert hit is not None
        assert hit.tier == CacheTier.warm


class TestPromotion:
    @pytest.mark.asyncio
    async def test_promoted_after_five_recent_hits(self, cache_store):
        await cache_store.set("search/k", {"v": 1}, LONG_TTL)

        for _ in range(5):
            hit = await cache_store.get("search/k")
            assert hit is not None
            assert hit.tier == CacheTier.warm
        await cache_store.drain()

        assert cache_store.hot.contains("search/k")
        hit = await cache_store.get("search/k")
        assert hit is not None
        assert hit.tier == CacheTier.hot
        assert cache_store.hot.get_metrics().promotions == 1

    @pytest.mark.asyncio
    async def test_promotion_keeps_original_age(self, cache_store, clock):
        await cache_store.set("search/k", {"v": 1}, LONG_TTL)
        clock.advance(600)
        for _ in range(5):
            await cache_store.get("search/k")
        await cache_store.drain()

        hit = await cache_store.get("search/k")
        assert hit is not None
        assert hit.tier == CacheTier.hot
        assert hit.age_seconds == 600

    @pytest.mark.asyncio
    async def test_overwrite_cancels_queued_promotion(self, cache_store):
        await cache_store.set("search/k", {"v": "old"}, LONG_TTL)
        for _ in range(5):
            await cache_store.get("search/k")

        await cache_store.set("search/k", {"v": "new"}, LONG_TTL)
        await cache_store.drain()

        hit = await cache_store.get("search/k")
        assert hit is not None
        assert hit.json() == {"v": "new"}
        assert cache_store.hot.get_metrics().promotions == 0

    @pytest.mark.asyncio
    async def test_delete_cancels_queued_promotion(self, cache_store):
        await cache_store.set("search/k", {"v": "old"}, LONG_TTL)
        for _ in range(5):
            await cache_store.get("search/k")

        await cache_store.delete("search/k")
        await cache_store.drain()

        assert await cache_store.get("search/k") is None

    @pytest.mark.asyncio
    async def test_fewer_than_five_hits_never_promoted(self, cache_store):
        await cache_store.set("search/k", {"v": 1}, LONG_TTL)

        for _ in range(4):
            await cache_store.get("search/k")
        await cache_store.drain()

        assert not cache_store.hot.contains("search/k")

    @pytest.mark.asyncio
    async def test_stale_previous_access_not_promoted(self, cache_store, clock):
        await cache_store.set("search/k", {"v": 1}, LONG_TTL)
        for _ in range(4):
            await cache_store.get("search/k")

        clock.advance(25 * 3_600)
        await cache_store.get("search/k")
        await cache_store.drain()

        assert not cache_store.hot.contains("search/k")

    @pytest.mark.asyncio
    async def test_oversized_entry_not_promoted(self, cache_store, cache_settings):
        big = {"blob": "x" * cache_settings.hot_size_limit_bytes}
        await cache_store.set("search/k", big, LONG_TTL)
        for _ in range(6):
            await cache_store.get("search/k")
        await cache_store.drain()

        assert not cache_store.hot.contains("search/k")

    def test_should_promote_thresholds_are_configurable(self, db_engine, cache_settings, clock):
        settings = cache_settings.model_copy(update={"promotion_min_hits": 2})
        store = CacheStore(db_engine, settings, clock=clock)

        assert store.should_promote(2, clock.now - 10, 100) is True
        assert store.should_promote(1, clock.now - 10, 100) is False


class TestStorageFailures:
    @pytest.mark.asyncio
    async def test_read_error_degrades_to_miss(self, cache_store, db_engine):
        await cache_store.set("search/k", {"v": 1}, LONG_TTL)
        SQLModel.metadata.drop_all(db_engine)

        assert await cache_store.get("search/k") is None
        assert cache_store.status()["warm"]["errors"] == 1

    @pytest.mark.asyncio
    async def test_write_error_is_swallowed(self, cache_store, db_engine):
        SQLModel.metadata.drop_all(db_engine)

        stored = await cache_store.set("search/k", {"v": 1}, LONG_TTL)
        assert stored is False


class TestStatus:
    @pytest.mark.asyncio
    async def test_status_counts_namespaces(self, cache_store):
        await cache_store.set(SearchQuery(query="dune").cache_key(), {"v": 1}, LONG_TTL)
        await cache_store.set(SearchQuery(query="emma").cache_key(), {"v": 1}, LONG_TTL)
        await cache_store.set(IdentifierQuery(isbn="9780765326355").cache_key(), {"v": 1}, LONG_TTL)
        await cache_store.get("search/missing")

        status = cache_store.status()
        assert status["warm"]["entries"] == 3
        assert status["warm"]["namespaces"] == {"search": 2, "id": 1}
        assert status["warm"]["misses"] == 1
        assert status["pending_promotions"] == 0
