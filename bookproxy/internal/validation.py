"""Inbound parameter validation. Every failure is an ``InvalidRequest`` (400)."""
import re

from bookproxy.internal.cache_keys import SearchQuery
from bookproxy.util.exceptions import InvalidRequest

MAX_QUERY_LENGTH = 500
DEFAULT_MAX_RESULTS = 20
MAX_RESULTS_LIMIT = 40
SORT_ORDERS = ("relevance", "newest")
MAX_BATCH_SIZE = 100

_ISBN_10 = re.compile(r"^\d{9}[\dX]$")
_ISBN_13 = re.compile(r"^\d{13}$")
_LANGUAGE = re.compile(r"^[a-zA-Z]{2,3}$")


def validate_search(
    query: str | None,
    max_results: int | str | None = None,
    sort_by: str | None = None,
    lang: str | None = None,
) -> SearchQuery:
    text = (query or "").strip()
    if not text:
        raise InvalidRequest("Query parameter 'q' is required")
    if len(text) > MAX_QUERY_LENGTH:
        raise InvalidRequest(f"Query too long (max {MAX_QUERY_LENGTH} characters)")

    if max_results is None or max_results == "":
        count = DEFAULT_MAX_RESULTS
    else:
        try:
            count = int(max_results)
        except (TypeError, ValueError) as e:
            raise InvalidRequest("maxResults must be a number") from e
    count = min(max(count, 1), MAX_RESULTS_LIMIT)

    order = sort_by or "relevance"
    if order not in SORT_ORDERS:
        raise InvalidRequest(f"sortBy must be one of {', '.join(SORT_ORDERS)}")

    if lang is not None and lang != "" and not _LANGUAGE.match(lang):
        raise InvalidRequest("langRestrict must be a two or three letter language code")

    return SearchQuery(query=text, max_results=count, sort_by=order, lang=lang or None)


def normalize_isbn(raw: str | None) -> str:
    cleaned = re.sub(r"[-\s]", "", raw or "").upper()
    if not cleaned:
        raise InvalidRequest("Parameter 'id' is required")
    if not (_ISBN_10.match(cleaned) or _ISBN_13.match(cleaned)):
        raise InvalidRequest(f"Invalid ISBN format: {raw}")
    return cleaned


def validate_batch(ids: list[str] | None) -> list[str]:
    if not ids:
        raise InvalidRequest("Batch must contain at least one id")
    if len(ids) > MAX_BATCH_SIZE:
        raise InvalidRequest(f"Batch too large (max {MAX_BATCH_SIZE} ids)")
    # duplicates would only be looked up twice
    return list(dict.fromkeys(normalize_isbn(raw) for raw in ids))
