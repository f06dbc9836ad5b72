"""
Quota aware provider selection and execution.

``select_providers`` ranks every provider by its best tier that still has
quota. ``execute_single`` walks that ranking until one provider answers;
``execute_batch`` buckets items by their top-ranked provider and drains each
bucket with a bounded worker pool. Quota is charged only for definitive
outcomes (a result or a not-found), never for failed or cancelled calls.
"""
import asyncio
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Mapping, Sequence

from aiohttp import ClientSession

from bookproxy.internal.env_settings import ProviderSettings
from bookproxy.internal.models import BookRecord, Priority, ProviderRequest, RequestType, SearchResult
from bookproxy.internal.providers import MetadataProvider, QuotaTier
from bookproxy.internal.quota import QuotaStatus, QuotaStore
from bookproxy.util.exceptions import (
    AllProvidersFailed,
    BookProxyError,
    InvalidRequest,
    MalformedResponse,
    ProviderFailure,
    ProviderTimeout,
    QuotaExhausted,
    RecordNotFound,
    StorageFailure,
    handle_external_api_error,
)
from bookproxy.util.log import logger

_LOW_PRIORITIES = (Priority.low, Priority.background)


@dataclass(frozen=True)
class ProviderCandidate:
    provider: MetadataProvider
    tier: QuotaTier
    score: float
    remaining: float

    @property
    def name(self) -> str:
        return self.provider.name


@dataclass(frozen=True)
class FailureRecord:
    provider: str
    tier: str
    reason: str
    message: str


@dataclass
class ProviderResult:
    data: SearchResult | BookRecord
    provider: str
    tier: str
    failures: list[FailureRecord] = field(default_factory=list)


@dataclass(frozen=True)
class BatchItemFailure:
    request: ProviderRequest
    reason: str
    failures: list[FailureRecord] = field(default_factory=list)


@dataclass(frozen=True)
class BatchItemSuccess:
    request: ProviderRequest
    data: SearchResult | BookRecord
    provider: str
    tier: str


@dataclass
class BatchOutcome:
    successful: list[BatchItemSuccess] = field(default_factory=list)
    failed: list[BatchItemFailure] = field(default_factory=list)


def score_tier(
    provider: MetadataProvider,
    tier: QuotaTier,
    remaining_ratio: float,
    request_type: RequestType,
    priority: Priority,
) -> float:
    score: float = provider.quality
    score += remaining_ratio * 20

    if tier.cost == 0:
        score += 30 if priority == Priority.background else 10
    else:
        score -= tier.cost * (0.1 if priority == Priority.background else 0.05)

    if priority == Priority.critical:
        score += provider.critical_bonus
    elif priority in _LOW_PRIORITIES:
        score += provider.background_bonus

    score += provider.affinity.get(request_type, 0)
    return max(0.0, score)


class ProviderOrchestrator:
    def __init__(
        self,
        providers: Sequence[MetadataProvider],
        quota: QuotaStore,
        client_session: ClientSession,
        settings: ProviderSettings | None = None,
    ):
        self.providers = list(providers)
        self.quota = quota
        self.client_session = client_session
        self.settings = settings or ProviderSettings()

    # -------------------------------------------------------------- ranking

    def _usage(self) -> dict[tuple[str, str], int]:
        pairs = [(p.name, t.name) for p in self.providers for t in p.tiers]
        try:
            return self.quota.get_usage_many(pairs)
        except StorageFailure:
            logger.warning("Quota store unavailable, ranking providers as unused")
            return {pair: 0 for pair in pairs}

    def select_providers(
        self,
        request_type: RequestType,
        priority: Priority = Priority.normal,
        metadata: Mapping[str, Any] | None = None,
    ) -> list[ProviderCandidate]:
        excluded = set((metadata or {}).get("exclude_providers", ()))
        usage = self._usage()

        ranked: list[ProviderCandidate] = []
        for provider in self.providers:
            if provider.name in excluded:
                continue
            best: ProviderCandidate | None = None
            for tier in provider.tiers:
                status = QuotaStatus(provider.name, tier.name, usage[(provider.name, tier.name)], tier.limit)
                if status.remaining <= 0:
                    continue
                score = score_tier(provider, tier, status.remaining_ratio, request_type, priority)
                if best is None or score > best.score:
                    best = ProviderCandidate(provider, tier, score, status.remaining)
            if best is not None:
                ranked.append(best)

        ranked.sort(key=lambda candidate: candidate.score, reverse=True)
        return ranked

    # ------------------------------------------------------------ execution

    async def _call(self, provider: MetadataProvider, request: ProviderRequest) -> SearchResult | BookRecord | None:
        match request.request_type:
            case RequestType.search:
                if not request.query:
                    raise InvalidRequest("Search request without a query")
                return await provider.search(
                    self.client_session,
                    request.query,
                    max_results=request.max_results,
                    sort_by=request.sort_by,
                    lang=request.lang,
                )
            case RequestType.isbn:
                if not request.isbn:
                    raise InvalidRequest("Lookup request without an ISBN")
                return await provider.lookup_by_id(self.client_session, request.isbn)

    async def _attempt(
        self,
        candidate: ProviderCandidate,
        request: ProviderRequest,
        timeout: float,
        failures: list[FailureRecord],
    ) -> tuple[bool, SearchResult | BookRecord | None]:
        """One provider call. Returns (answered, data); failures are appended, not raised."""
        try:
            async with asyncio.timeout(timeout):
                data = await self._call(candidate.provider, request)
        except TimeoutError:
            error: ProviderFailure = ProviderTimeout(candidate.name, f"{candidate.name} timed out after {timeout}s")
        except ProviderFailure as e:
            error = e
        else:
            return True, data

        failures.append(FailureRecord(candidate.name, candidate.tier.name, error.reason, error.message))
        if isinstance(error, MalformedResponse):
            logger.error(
                "Provider returned malformed response",
                provider=candidate.name,
                tier=candidate.tier.name,
                item_id=request.id,
                error=error.message,
            )
        else:
            logger.warning(
                "Provider attempt failed",
                provider=candidate.name,
                tier=candidate.tier.name,
                reason=error.reason,
                item_id=request.id,
            )
        return False, None

    async def execute_single(
        self,
        request: ProviderRequest,
        priority: Priority = Priority.normal,
        timeout: float | None = None,
        metadata: Mapping[str, Any] | None = None,
    ) -> ProviderResult:
        """
        Try providers in ranked order until one answers.

        Raises:
            RecordNotFound: a provider answered that the record does not exist.
            QuotaExhausted: no provider has quota left.
            AllProvidersFailed: every ranked provider failed.
        """
        candidates = self.select_providers(request.request_type, priority, metadata)
        if not candidates:
            logger.error("No provider has quota left", request_type=request.request_type)
            raise QuotaExhausted(
                "No provider has remaining quota", retry_after=self.quota.seconds_until_reset()
            )

        timeout = timeout or self.settings.single_timeout_seconds
        failures: list[FailureRecord] = []
        for candidate in candidates:
            answered, data = await self._attempt(candidate, request, timeout, failures)
            if not answered:
                continue

            self.increment_quota(candidate.provider, candidate.tier, 1)
            if data is None:
                raise RecordNotFound(f"No record found for {request.isbn or request.query}")
            if failures:
                logger.info(
                    "Provider fallback succeeded",
                    provider=candidate.name,
                    failed_providers=[f.provider for f in failures],
                )
            return ProviderResult(data=data, provider=candidate.name, tier=candidate.tier.name, failures=failures)

        error = AllProvidersFailed(failures)
        handle_external_api_error(
            error,
            "providers",
            request.request_type,
            item_id=request.id,
            attempts=len(failures),
        )
        raise error

    async def execute_batch(
        self,
        requests: Sequence[ProviderRequest],
        priority: Priority = Priority.background,
        max_concurrency: int | None = None,
        timeout: float | None = None,
    ) -> BatchOutcome:
        """
        Run many requests with per-item failure isolation.

        Items are grouped by their top-ranked provider; each group runs through
        a semaphore bounded pool and all groups run concurrently. An item whose
        provider fails falls through its own ranking. Quota is charged per
        provider/tier once a group completes.
        """
        max_concurrency = max_concurrency or self.settings.batch_max_concurrency
        timeout = timeout or self.settings.batch_timeout_seconds
        outcome = BatchOutcome()

        rankings = {
            request_type: self.select_providers(request_type, priority)
            for request_type in {request.request_type for request in requests}
        }

        queues: dict[str, list[ProviderRequest]] = {}
        for request in requests:
            ranking = rankings[request.request_type]
            if not ranking:
                outcome.failed.append(BatchItemFailure(request, "quota_exhausted"))
                continue
            queues.setdefault(ranking[0].name, []).append(request)

        async def run_queue(provider_name: str, items: list[ProviderRequest]) -> None:
            semaphore = asyncio.Semaphore(max_concurrency)
            charged: Counter[tuple[str, str]] = Counter()
            tiers: dict[tuple[str, str], ProviderCandidate] = {}

            async def run_item(request: ProviderRequest) -> None:
                async with semaphore:
                    failures: list[FailureRecord] = []
                    for candidate in rankings[request.request_type]:
                        answered, data = await self._attempt(candidate, request, timeout, failures)
                        if not answered:
                            continue
                        pair = (candidate.name, candidate.tier.name)
                        charged[pair] += 1
                        tiers[pair] = candidate
                        if data is None:
                            outcome.failed.append(BatchItemFailure(request, "not_found", failures))
                        else:
                            outcome.successful.append(
                                BatchItemSuccess(request, data, candidate.name, candidate.tier.name)
                            )
                        return
                    outcome.failed.append(BatchItemFailure(request, "all_providers_failed", failures))

            results = await asyncio.gather(*(run_item(item) for item in items), return_exceptions=True)
            for item, result in zip(items, results):
                if isinstance(result, BaseException):
                    reason = result.__class__.__name__
                    if isinstance(result, BookProxyError):
                        logger.warning("Batch item failed", provider=provider_name, item_id=item.id, error=result.message)
                    else:
                        logger.exception("Unexpected batch item error", provider=provider_name, item_id=item.id, exc_info=result)
                    outcome.failed.append(BatchItemFailure(item, reason))

            for pair, amount in charged.items():
                candidate = tiers[pair]
                self.increment_quota(candidate.provider, candidate.tier, amount)

        await asyncio.gather(*(run_queue(name, items) for name, items in queues.items()))

        logger.info(
            "Batch completed",
            total=len(requests),
            successful=len(outcome.successful),
            failed=len(outcome.failed),
            queues={name: len(items) for name, items in queues.items()},
        )
        return outcome

    # ---------------------------------------------------------------- quota

    def increment_quota(self, provider: MetadataProvider | str, tier: QuotaTier | str, amount: int = 1) -> int | None:
        provider_obj = self._provider(provider)
        tier_obj = self._tier(provider_obj, tier)
        try:
            return self.quota.increment(provider_obj.name, tier_obj.name, amount, limit=tier_obj.limit)
        except StorageFailure:
            logger.warning(
                "Could not record quota usage",
                provider=provider_obj.name,
                tier=tier_obj.name,
                amount=amount,
            )
            return None

    def quota_report(self) -> list[QuotaStatus]:
        usage = self._usage()
        return [
            QuotaStatus(p.name, t.name, usage[(p.name, t.name)], t.limit, t.cost)
            for p in self.providers
            for t in p.tiers
        ]

    def _provider(self, provider: MetadataProvider | str) -> MetadataProvider:
        if isinstance(provider, MetadataProvider):
            return provider
        for candidate in self.providers:
            if candidate.name == provider:
                return candidate
        raise KeyError(f"Unknown provider {provider}")

    def _tier(self, provider: MetadataProvider, tier: QuotaTier | str) -> QuotaTier:
        if isinstance(tier, QuotaTier):
            return tier
        for candidate in provider.tiers:
            if candidate.name == tier:
                return candidate
        raise KeyError(f"Unknown tier {tier} for {provider.name}")
