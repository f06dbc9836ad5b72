"""
Common provider plumbing.

Every provider speaks to its API through ``_get_json`` which turns HTTP and
parsing problems into the ``ProviderFailure`` taxonomy. Providers only deal in
``BookRecord``/``SearchResult``; nothing provider specific leaks past them.
"""
import json
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Mapping

from aiohttp import ClientError, ClientSession

from bookproxy.internal.env_settings import ProviderTierSettings
from bookproxy.internal.models import BookRecord, RequestType, SearchResult
from bookproxy.util.exceptions import (
    MalformedResponse,
    ProviderAuthError,
    ProviderRateLimited,
    ProviderTransportError,
)
from bookproxy.util.log import logger


@dataclass(frozen=True)
class QuotaTier:
    name: str
    limit: int | None
    """Requests per quota window. None means unlimited."""
    cost: float = 0.0


def tiers_from_settings(tiers: Mapping[str, ProviderTierSettings]) -> list[QuotaTier]:
    # free tiers first so that equally scored tiers spend the cheap allowance first
    ordered = sorted(tiers.items(), key=lambda item: item[1].cost)
    return [QuotaTier(name=name, limit=tier.limit, cost=tier.cost) for name, tier in ordered]


def https(url: str | None) -> str | None:
    if url and url.startswith("http://"):
        return url.replace("http://", "https://", 1)
    return url


class MetadataProvider(ABC):
    """Base class for book metadata APIs."""

    name: str = ""
    quality: int = 0
    """Base score used when ranking providers"""
    critical_bonus: int = 0
    """Added for critical-priority requests"""
    background_bonus: int = -5
    """Added for low and background priority requests"""
    affinity: dict[RequestType, int] = {}

    def __init__(self, tiers: list[QuotaTier]):
        self.tiers = tiers

    @property
    def enabled(self) -> bool:
        return True

    @abstractmethod
    async def search(
        self,
        session: ClientSession,
        query: str,
        max_results: int = 20,
        sort_by: str = "relevance",
        lang: str | None = None,
    ) -> SearchResult:
        ...

    @abstractmethod
    async def lookup_by_id(self, session: ClientSession, isbn: str) -> BookRecord | None:
        """Returns None when the provider answered that the record does not exist."""
        ...

    async def _get_json(
        self,
        session: ClientSession,
        url: str,
        params: Mapping[str, str] | None = None,
        headers: Mapping[str, str] | None = None,
        not_found_ok: bool = False,
    ) -> Any:
        try:
            async with session.get(url, params=params, headers=headers) as response:
                if response.status == 404 and not_found_ok:
                    return None
                if response.status in (401, 403):
                    raise ProviderAuthError(self.name, f"{self.name} rejected credentials ({response.status})")
                if response.status == 429:
                    raise ProviderRateLimited(self.name, f"{self.name} is rate limiting us")
                if response.status != 200:
                    raise ProviderTransportError(self.name, f"{self.name} returned {response.status}")
                body = await response.read()
        except ClientError as e:
            raise ProviderTransportError(self.name, f"{self.name} request failed: {e}") from e

        try:
            return json.loads(body.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            logger.debug(
                "Unparseable provider body", provider=self.name, body=body[:200].decode("utf-8", "replace")
            )
            raise MalformedResponse(self.name, f"{self.name} returned invalid JSON") from e
