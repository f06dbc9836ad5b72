import asyncio
from contextlib import asynccontextmanager, suppress
from typing import Any

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from bookproxy.internal.book_service import BookService
from bookproxy.internal.cache_store import CacheStore
from bookproxy.internal.enrichment import Enricher, EnrichmentQueue
from bookproxy.internal.env_settings import Settings
from bookproxy.internal.maintenance import run_maintenance_loop
from bookproxy.internal.orchestrator import ProviderOrchestrator
from bookproxy.internal.providers import MetadataProvider, build_providers
from bookproxy.internal.quota import QuotaStore
from bookproxy.internal.rate_limit import FingerprintRateLimiter
from bookproxy.internal.warming import WarmingScheduler, run_warming_loop
from bookproxy.util.connection import create_client_session
from bookproxy.util.db import create_db_engine, init_db
from bookproxy.util.exceptions import BookProxyError, public_message
from bookproxy.util.log import bind_request_context, clear_request_context, logger, setup_logging


def create_app(
    settings: Settings | None = None,
    engine: Any = None,
    providers: list[MetadataProvider] | None = None,
    enricher: Enricher | None = None,
) -> FastAPI:
    """
    Build the application. Every component is created in the lifespan and
    kept on ``app.state``; tests pass their own engine and providers.
    """
    settings = settings or Settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        setup_logging(settings.app)
        db_engine = engine if engine is not None else create_db_engine(settings)
        init_db(db_engine)

        client_session = create_client_session(settings.providers.batch_timeout_seconds * 2)
        cache_store = CacheStore(db_engine, settings.cache)
        quota = QuotaStore(db_engine)
        rate_limiter = FingerprintRateLimiter(db_engine, settings.rate_limit)
        orchestrator = ProviderOrchestrator(
            providers if providers is not None else build_providers(settings.providers),
            quota,
            client_session,
            settings.providers,
        )
        enrichment = EnrichmentQueue(enricher, maxsize=settings.app.enrichment_queue_size)
        enrichment.start()
        warming = WarmingScheduler(
            db_engine, orchestrator, cache_store, settings.warming, settings.cache
        )

        app.state.settings = settings
        app.state.client_session = client_session
        app.state.cache_store = cache_store
        app.state.orchestrator = orchestrator
        app.state.enrichment = enrichment
        app.state.warming = warming
        app.state.rate_limiter = rate_limiter
        app.state.book_service = BookService(cache_store, orchestrator, enrichment, settings.cache)

        maintenance_task = asyncio.create_task(
            run_maintenance_loop(
                cache_store, quota, rate_limiter, settings.app.maintenance_interval_seconds
            )
        )
        warming_task = None
        if settings.warming.enabled:
            warming_task = asyncio.create_task(
                run_warming_loop(warming, settings.warming.loop_interval_seconds)
            )

        logger.info(
            "bookproxy started",
            version=settings.app.version,
            providers=[p.name for p in orchestrator.providers],
            warming=settings.warming.enabled,
        )
        try:
            yield
        finally:
            for task in (warming_task, maintenance_task):
                if task is None:
                    continue
                task.cancel()
                with suppress(asyncio.CancelledError):
                    await task
            await enrichment.stop()
            await cache_store.drain()
            await client_session.close()
            logger.info("bookproxy stopped")

    app = FastAPI(
        title="bookproxy",
        version=settings.app.version,
        lifespan=lifespan,
        openapi_url="/openapi.json" if settings.app.openapi_enabled else None,
    )

    @app.middleware("http")
    async def request_context(request: Request, call_next):
        request_id = bind_request_context(method=request.method, path=request.url.path)
        try:
            response = await call_next(request)
        finally:
            clear_request_context()
        response.headers["X-Request-Id"] = request_id
        return response

    @app.exception_handler(BookProxyError)
    async def book_proxy_error_handler(request: Request, exc: BookProxyError):
        headers = {}
        if exc.retry_after is not None:
            headers["Retry-After"] = str(exc.retry_after)
        if exc.status_code >= 500:
            logger.warning("Request failed", error_type=type(exc).__name__, status=exc.status_code)
        return JSONResponse(
            {"error": public_message(exc), "status": exc.status_code},
            status_code=exc.status_code,
            headers=headers,
        )

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        return JSONResponse({"error": "Invalid request parameters", "status": 400}, status_code=400)

    @app.get("/health")
    def health():
        return {"status": "ok", "version": settings.app.version}

    from bookproxy.routers import books, cache

    app.include_router(books.router)
    app.include_router(cache.router)
    return app


def run() -> None:
    import uvicorn

    settings = Settings()
    uvicorn.run(
        "bookproxy.main:create_app",
        factory=True,
        host="0.0.0.0",
        port=settings.app.port,
        log_config=None,
    )
