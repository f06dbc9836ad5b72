"""FastAPI dependencies resolving the components built in the app lifespan."""
import secrets

from fastapi import Request

from bookproxy.internal.book_service import BookService
from bookproxy.internal.cache_store import CacheStore
from bookproxy.internal.orchestrator import ProviderOrchestrator
from bookproxy.internal.rate_limit import FingerprintRateLimiter, LimitScope, RateLimitDecision
from bookproxy.internal.warming import WarmingScheduler
from bookproxy.util.exceptions import Unauthorized

ADMIN_KEY_HEADER = "X-Admin-Key"


def get_cache_store(request: Request) -> CacheStore:
    return request.app.state.cache_store


def get_orchestrator(request: Request) -> ProviderOrchestrator:
    return request.app.state.orchestrator


def get_book_service(request: Request) -> BookService:
    return request.app.state.book_service


def get_rate_limiter(request: Request) -> FingerprintRateLimiter:
    return request.app.state.rate_limiter


def get_warming_scheduler(request: Request) -> WarmingScheduler:
    return request.app.state.warming


def client_ip(request: Request) -> str:
    return request.client.host if request.client else "unknown"


def enforce_rate_limit(
    request: Request, weight: int = 1, scope: LimitScope = LimitScope.request
) -> RateLimitDecision | None:
    limiter = get_rate_limiter(request)
    return limiter.enforce(
        client_ip(request),
        request.headers.get("user-agent"),
        request.headers.get(limiter.settings.routing_token_header),
        weight=weight,
        scope=scope,
    )


def rate_limited(request: Request) -> RateLimitDecision | None:
    """Dependency form for single-item endpoints."""
    return enforce_rate_limit(request)


def require_admin_key(request: Request) -> None:
    expected = request.app.state.settings.app.admin_api_key
    supplied = request.headers.get(ADMIN_KEY_HEADER)
    if not expected or not supplied or not secrets.compare_digest(supplied, expected):
        raise Unauthorized("Unauthorized")
