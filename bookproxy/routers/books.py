from typing import Annotated, Optional

from fastapi import APIRouter, Depends, Query, Request, Response
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from bookproxy.internal.book_service import BookService, ServiceResponse
from bookproxy.internal.rate_limit import LimitScope, RateLimitDecision
from bookproxy.internal.validation import normalize_isbn, validate_batch, validate_search
from bookproxy.util.dependencies import enforce_rate_limit, get_book_service, rate_limited
from bookproxy.util.log import logger

router = APIRouter(tags=["Books"])

BATCH_RETRY_AFTER_SECONDS = 60


class BatchRequest(BaseModel):
    ids: list[str] = []


def _rate_headers(response: Response, decision: RateLimitDecision | None) -> None:
    if decision is not None:
        response.headers["X-RateLimit-Limit"] = str(decision.limit)
        response.headers["X-RateLimit-Remaining"] = str(decision.remaining)


def _respond(result: ServiceResponse, decision: RateLimitDecision | None) -> JSONResponse:
    response = JSONResponse(result.payload)
    response.headers["X-Cache"] = result.cache_status
    if result.provider:
        response.headers["X-Provider"] = result.provider
    _rate_headers(response, decision)
    return response


@router.get("/search")
async def search_books(
    book_service: Annotated[BookService, Depends(get_book_service)],
    decision: Annotated[Optional[RateLimitDecision], Depends(rate_limited)],
    q: Annotated[Optional[str], Query()] = None,
    max_results: Annotated[Optional[str], Query(alias="maxResults")] = None,
    sort_by: Annotated[Optional[str], Query(alias="sortBy")] = None,
    lang: Annotated[Optional[str], Query(alias="langRestrict")] = None,
):
    query = validate_search(q, max_results, sort_by, lang)
    result = await book_service.search(query)
    logger.info("Search served", cache=result.cache_status, provider=result.provider)
    return _respond(result, decision)


@router.get("/lookup")
async def lookup_book(
    book_service: Annotated[BookService, Depends(get_book_service)],
    decision: Annotated[Optional[RateLimitDecision], Depends(rate_limited)],
    id: Annotated[Optional[str], Query()] = None,
):
    isbn = normalize_isbn(id)
    result = await book_service.lookup(isbn)
    logger.info("Lookup served", isbn=isbn, cache=result.cache_status, provider=result.provider)
    return _respond(result, decision)


@router.post("/batch")
async def batch_lookup(
    request: Request,
    body: BatchRequest,
    book_service: Annotated[BookService, Depends(get_book_service)],
):
    isbns = validate_batch(body.ids)
    decision = enforce_rate_limit(request, weight=len(isbns), scope=LimitScope.batch)

    result = await book_service.batch(isbns)
    content = {
        "items": result.items,
        "summary": {
            "total": result.total,
            "successful": result.successful,
            "not_found": result.not_found,
            "failed": result.failed,
        },
    }

    if result.failed == 0:
        status_code = 200
    elif result.successful + result.not_found == 0:
        status_code = 503
    else:
        status_code = 207

    response = JSONResponse(content, status_code=status_code)
    if status_code == 503:
        response.headers["Retry-After"] = str(BATCH_RETRY_AFTER_SECONDS)
    _rate_headers(response, decision)
    return response
