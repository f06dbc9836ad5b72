"""
Error taxonomy and standard exception handling utilities for bookproxy.

Every error raised across a module boundary derives from ``BookProxyError`` and
knows the HTTP status the API maps it to. The ``handle_*`` helpers give the
same log shape to external API, database, validation and cache failures.
"""
from typing import Any

from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError

from bookproxy.util.log import logger


class BookProxyError(Exception):
    status_code: int = 500
    retry_after: int | None = None

    def __init__(self, message: str, *, retry_after: int | None = None):
        super().__init__(message)
        self.message = message
        if retry_after is not None:
            self.retry_after = retry_after


class InvalidRequest(BookProxyError):
    """Bad caller input. Surfaced immediately, never retried."""

    status_code = 400


class Unauthorized(BookProxyError):
    status_code = 401


class RateLimitExceeded(BookProxyError):
    status_code = 429

    def __init__(self, retry_after: int, limit: int):
        super().__init__("Rate limit exceeded", retry_after=retry_after)
        self.limit = limit


class RecordNotFound(BookProxyError):
    """The provider answered and the record does not exist. Terminal, no fallback."""

    status_code = 404


class ProviderFailure(BookProxyError):
    """A single provider could not answer. The orchestrator falls back to the next one."""

    status_code = 502
    reason: str = "provider_error"

    def __init__(self, provider: str, message: str):
        super().__init__(message)
        self.provider = provider


class ProviderTransportError(ProviderFailure):
    reason = "transport"


class ProviderAuthError(ProviderFailure):
    reason = "auth"


class ProviderRateLimited(ProviderFailure):
    reason = "rate_limited"


class ProviderTimeout(ProviderFailure):
    reason = "timeout"


class MalformedResponse(ProviderFailure):
    reason = "malformed_response"


class ProviderUnavailable(BookProxyError):
    """No provider can serve the request right now (503)."""

    status_code = 503


class QuotaExhausted(ProviderUnavailable):
    pass


class AllProvidersFailed(ProviderUnavailable):
    def __init__(self, failures: list[Any], retry_after: int = 60):
        providers = ", ".join(f"{f.provider}:{f.reason}" for f in failures)
        super().__init__(f"All providers failed ({providers})", retry_after=retry_after)
        self.failures = failures


class StorageFailure(BookProxyError):
    """Raised by storage backends. Always recovered locally, never returned to callers."""


def public_message(error: BookProxyError) -> str:
    """The message a caller is allowed to see. Upstream details stay in the logs."""
    if isinstance(error, ProviderUnavailable):
        if isinstance(error, QuotaExhausted):
            return "All book providers are out of quota"
        return "All book providers failed"
    return error.message


def handle_external_api_error(
    error: Exception,
    service: str,
    operation: str,
    **context: Any
) -> None:
    """
    Standard logging for external API failures.

    Args:
        error: The caught exception
        service: Name of the external service (e.g., "isbndb", "google_books")
        operation: What operation was being attempted (e.g., "search", "lookup")
        **context: Additional context to log (e.g., isbn=..., query=...)

    Example:
        try:
            record = await provider.lookup_by_id(session, isbn)
        except ProviderFailure as e:
            handle_external_api_error(e, provider.name, "lookup", isbn=isbn)
    """
    logger.error(
        f"{service} {operation} failed",
        error=str(error),
        error_type=type(error).__name__,
        service=service,
        operation=operation,
        **context
    )


def handle_database_error(
    error: SQLAlchemyError,
    operation: str,
    rollback_session: Any = None,
    **context: Any
) -> None:
    """
    Standard logging and handling for database errors.

    Args:
        error: The caught SQLAlchemy exception
        operation: What database operation was being attempted
        rollback_session: Optional SQLModel Session to rollback
        **context: Additional context to log

    Example:
        try:
            session.exec(stmt)
            session.commit()
        except SQLAlchemyError as e:
            handle_database_error(e, "increment quota", rollback_session=session, key=key)
            raise
    """
    logger.error(
        f"Database {operation} failed",
        error=str(error),
        error_type=type(error).__name__,
        operation=operation,
        **context
    )

    if rollback_session is not None:
        try:
            rollback_session.rollback()
        except SQLAlchemyError as rollback_error:
            logger.warning(
                "Failed to rollback session after database error",
                error=str(rollback_error)
            )


def handle_validation_error(
    error: ValidationError,
    data_source: str,
    **context: Any
) -> None:
    """
    Standard logging for data validation failures.

    Args:
        error: The caught ValidationError
        data_source: Where the invalid data came from (e.g., "isbndb response", "cache")
        **context: Additional context to log
    """
    logger.error(
        f"{data_source} validation failed",
        error=str(error),
        error_type=type(error).__name__,
        data_source=data_source,
        **context
    )


def handle_cache_error(
    error: Exception,
    operation: str,
    cache_key: str,
    **context: Any
) -> None:
    """
    Standard logging for cache operation failures.

    Args:
        error: The caught exception
        operation: What cache operation was being attempted (e.g., "get", "set")
        cache_key: The cache key involved
        **context: Additional context to log

    Example:
        try:
            entry = self._warm_get(key)
        except SQLAlchemyError as e:
            handle_cache_error(e, "get", key)
            return None
    """
    logger.warning(
        f"Cache {operation} failed",
        error=str(error),
        error_type=type(error).__name__,
        operation=operation,
        cache_key=cache_key,
        **context
    )
