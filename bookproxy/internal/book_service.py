"""
Request flow shared by the HTTP routes: cache first, providers on a miss,
write-through, then hand the records to the enrichment queue.
"""
import json
from dataclasses import dataclass, field
from typing import Any

from bookproxy.internal.cache_keys import (
    ContentClass,
    IdentifierQuery,
    SearchQuery,
    content_class_for,
    key_for_request,
    ttl_for,
)
from bookproxy.internal.cache_store import CacheHit, CacheStore
from bookproxy.internal.enrichment import EnrichmentQueue
from bookproxy.internal.env_settings import CacheSettings
from bookproxy.internal.models import BookRecord, Priority, ProviderRequest, RequestType, SearchResult
from bookproxy.internal.orchestrator import ProviderOrchestrator
from bookproxy.util.exceptions import RecordNotFound
from bookproxy.util.log import logger

NOT_FOUND_MARKER = "not_found"


@dataclass
class ServiceResponse:
    payload: dict[str, Any]
    cache_status: str
    """HIT-HOT, HIT-WARM or MISS"""
    provider: str | None = None


@dataclass
class BatchResponse:
    items: list[dict[str, Any]] = field(default_factory=list)
    successful: int = 0
    not_found: int = 0
    failed: int = 0

    @property
    def total(self) -> int:
        return len(self.items)


def _hit_payload(hit: CacheHit) -> dict[str, Any]:
    data = hit.json()
    return {**data, "cached": True, "cache_tier": hit.tier.value, "age": int(hit.age_seconds)}


def _is_not_found(data: Any) -> bool:
    return isinstance(data, dict) and data.get(NOT_FOUND_MARKER) is True


class BookService:
    def __init__(
        self,
        cache: CacheStore,
        orchestrator: ProviderOrchestrator,
        enrichment: EnrichmentQueue,
        cache_settings: CacheSettings,
    ):
        self.cache = cache
        self.orchestrator = orchestrator
        self.enrichment = enrichment
        self.cache_settings = cache_settings

    async def _store(self, request: ProviderRequest, data: SearchResult | BookRecord) -> None:
        content = content_class_for(request, data)
        await self.cache.set(key_for_request(request), data, ttl_for(content, self.cache_settings))

    async def _store_not_found(self, key: str, isbn: str) -> None:
        await self.cache.set(
            key,
            {NOT_FOUND_MARKER: True, "isbn": isbn},
            ttl_for(ContentClass.negative, self.cache_settings),
        )

    async def search(self, query: SearchQuery) -> ServiceResponse:
        key = query.cache_key()
        hit = await self.cache.get(key)
        if hit is not None:
            payload = _hit_payload(hit)
            return ServiceResponse(payload, f"HIT-{hit.tier.value.upper()}", payload.get("provider"))

        request = ProviderRequest(
            id=key,
            request_type=RequestType.search,
            query=query.query,
            max_results=query.max_results,
            sort_by=query.sort_by,
            lang=query.lang,
        )
        result = await self.orchestrator.execute_single(request, priority=Priority.normal)
        await self._store(request, result.data)

        payload = {**result.data.model_dump(mode="json"), "cached": False}
        if isinstance(result.data, SearchResult):
            self.enrichment.publish_many(result.data.items)
        return ServiceResponse(payload, "MISS", result.provider)

    async def lookup(self, isbn: str) -> ServiceResponse:
        key = IdentifierQuery(isbn=isbn).cache_key()
        hit = await self.cache.get(key)
        if hit is not None:
            if _is_not_found(hit.json()):
                raise RecordNotFound(f"No book found for ISBN {isbn}")
            payload = _hit_payload(hit)
            return ServiceResponse(payload, f"HIT-{hit.tier.value.upper()}", payload.get("provider"))

        request = ProviderRequest(id=key, request_type=RequestType.isbn, isbn=isbn)
        try:
            result = await self.orchestrator.execute_single(request, priority=Priority.high)
        except RecordNotFound:
            await self._store_not_found(key, isbn)
            raise

        await self._store(request, result.data)
        payload = {**result.data.model_dump(mode="json"), "cached": False}
        if isinstance(result.data, BookRecord):
            self.enrichment.publish(result.data)
        return ServiceResponse(payload, "MISS", result.provider)

    async def batch(self, isbns: list[str]) -> BatchResponse:
        response = BatchResponse()
        by_isbn: dict[str, dict[str, Any]] = {}
        misses: list[ProviderRequest] = []

        for isbn in isbns:
            key = IdentifierQuery(isbn=isbn).cache_key()
            hit = await self.cache.get(key)
            if hit is None:
                misses.append(ProviderRequest(id=isbn, request_type=RequestType.isbn, isbn=isbn))
                continue
            try:
                data = hit.json()
            except json.JSONDecodeError:
                misses.append(ProviderRequest(id=isbn, request_type=RequestType.isbn, isbn=isbn))
                continue
            if _is_not_found(data):
                by_isbn[isbn] = {"id": isbn, "status": "not_found"}
            else:
                by_isbn[isbn] = {"id": isbn, "status": "ok", "cached": True, "book": data}

        if misses:
            outcome = await self.orchestrator.execute_batch(misses, priority=Priority.normal)
            for success in outcome.successful:
                await self._store(success.request, success.data)
                if isinstance(success.data, BookRecord):
                    self.enrichment.publish(success.data)
                by_isbn[success.request.id] = {
                    "id": success.request.id,
                    "status": "ok",
                    "cached": False,
                    "provider": success.provider,
                    "book": success.data.model_dump(mode="json"),
                }
            for failure in outcome.failed:
                isbn = failure.request.isbn or failure.request.id
                if failure.reason == "not_found":
                    await self._store_not_found(key_for_request(failure.request), isbn)
                    by_isbn[isbn] = {"id": isbn, "status": "not_found"}
                else:
                    by_isbn[isbn] = {"id": isbn, "status": "failed", "error": failure.reason}

        for isbn in isbns:
            item = by_isbn[isbn]
            response.items.append(item)
            if item["status"] == "ok":
                response.successful += 1
            elif item["status"] == "not_found":
                response.not_found += 1
            else:
                response.failed += 1

        logger.info(
            "Batch lookup finished",
            total=response.total,
            successful=response.successful,
            not_found=response.not_found,
            failed=response.failed,
            cache_misses=len(misses),
        )
        return response
