"""Cache key derivation and TTL classes.

Keys are ``<namespace>/<sha256>`` where the digest covers the canonical JSON
encoding of the normalized request parameters, so keys are fixed-length and
``"a/b" + "c"`` never collides with ``"a" + "b/c"``.
"""
import hashlib
import json
from enum import StrEnum

from pydantic import BaseModel, ConfigDict

from bookproxy.internal.env_settings import CacheSettings
from bookproxy.internal.models import BookRecord, ProviderRequest, RequestType, SearchResult

SEARCH_NAMESPACE = "search"
ID_NAMESPACE = "id"


def _digest(parts: dict[str, object]) -> str:
    canonical = json.dumps(parts, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
    return hashlib.sha256(canonical.encode()).hexdigest()


def normalize_query_text(query: str) -> str:
    return " ".join(query.split()).lower()


class SearchQuery(BaseModel):
    model_config = ConfigDict(frozen=True)

    query: str
    max_results: int = 20
    sort_by: str = "relevance"
    lang: str | None = None

    def cache_key(self) -> str:
        return f"{SEARCH_NAMESPACE}/" + _digest(
            {
                "q": normalize_query_text(self.query),
                "n": self.max_results,
                "sort": self.sort_by,
                "lang": (self.lang or "any").lower(),
            }
        )


class IdentifierQuery(BaseModel):
    model_config = ConfigDict(frozen=True)

    isbn: str

    def cache_key(self) -> str:
        return f"{ID_NAMESPACE}/" + _digest({"isbn": self.isbn.upper()})


class ContentClass(StrEnum):
    negative = "negative"
    search = "search"
    identifier = "identifier"


def ttl_for(content: ContentClass, settings: CacheSettings) -> int:
    match content:
        case ContentClass.negative:
            return settings.negative_ttl_seconds
        case ContentClass.search:
            return settings.search_ttl_seconds
        case ContentClass.identifier:
            return settings.identifier_ttl_seconds


def key_for_request(request: ProviderRequest) -> str:
    """Cache key a provider request is stored under, shared by live traffic and warming."""
    if request.request_type == RequestType.isbn:
        return IdentifierQuery(isbn=request.isbn or "").cache_key()
    return SearchQuery(
        query=request.query or "",
        max_results=request.max_results,
        sort_by=request.sort_by,
        lang=request.lang,
    ).cache_key()


def content_class_for(request: ProviderRequest, data: SearchResult | BookRecord | None) -> ContentClass:
    if data is None or (isinstance(data, SearchResult) and not data.items):
        return ContentClass.negative
    if request.request_type == RequestType.isbn:
        return ContentClass.identifier
    return ContentClass.search
