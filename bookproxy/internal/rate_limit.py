"""
Fingerprint based fixed-window rate limiting.

Callers are identified by a hash over their address, user agent and routing
token rather than by address alone, so clients behind a shared NAT do not
starve each other. Each window is one ``ratelimit`` row; admission is a single
conditional upsert that only bumps the counter while it stays within the
limit, so concurrent requests can never push it past the limit.
"""
import hashlib
import time
from dataclasses import dataclass
from enum import StrEnum
from typing import Callable

from sqlalchemy import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import delete

from bookproxy.internal.env_settings import RateLimitSettings
from bookproxy.internal.models import RateLimitWindow
from bookproxy.util.db import open_session, upsert
from bookproxy.util.exceptions import (
    RateLimitExceeded,
    StorageFailure,
    handle_database_error,
)
from bookproxy.util.log import logger

_MARKUP_CHARACTERS = set("<>{}")


class ClientClass(StrEnum):
    trusted = "trusted"
    standard = "standard"
    suspicious = "suspicious"


class LimitScope(StrEnum):
    request = "request"
    batch = "batch"


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    remaining: int
    retry_after_seconds: int
    limit: int


def fingerprint(client_ip: str, user_agent: str | None, routing_token: str | None) -> str:
    composite = f"{client_ip}:{(user_agent or '')[:50]}:{routing_token or ''}"
    return hashlib.sha256(composite.encode()).hexdigest()[:32]


def classify_client(user_agent: str | None, settings: RateLimitSettings) -> ClientClass:
    agent = user_agent or ""
    if settings.trusted_client_identity and settings.trusted_client_identity in agent:
        return ClientClass.trusted

    lowered = agent.lower()
    if (
        len(agent) < settings.min_user_agent_length
        or any(pattern in lowered for pattern in settings.crawler_patterns)
        or _MARKUP_CHARACTERS.intersection(agent)
    ):
        return ClientClass.suspicious

    return ClientClass.standard


def limit_for(client_class: ClientClass, scope: LimitScope, settings: RateLimitSettings) -> int:
    if scope == LimitScope.batch:
        return {
            ClientClass.trusted: settings.trusted_batch_item_limit,
            ClientClass.standard: settings.standard_batch_item_limit,
            ClientClass.suspicious: settings.suspicious_batch_item_limit,
        }[client_class]
    return {
        ClientClass.trusted: settings.trusted_limit,
        ClientClass.standard: settings.standard_limit,
        ClientClass.suspicious: settings.suspicious_limit,
    }[client_class]


class FingerprintRateLimiter:
    def __init__(
        self,
        engine: Engine,
        settings: RateLimitSettings,
        clock: Callable[[], float] = time.time,
    ):
        self._engine = engine
        self._settings = settings
        self._clock = clock

    @property
    def settings(self) -> RateLimitSettings:
        return self._settings

    def _window(self, now: float) -> tuple[int, int]:
        size = self._settings.window_seconds
        start = int(now // size) * size
        return start, start + size

    def check_and_increment(
        self,
        fingerprint: str,
        weight: int = 1,
        client_class: ClientClass = ClientClass.standard,
        scope: LimitScope = LimitScope.request,
    ) -> RateLimitDecision:
        """
        Admit ``weight`` units for the fingerprint in the current window, or deny.

        A denied call does not consume anything. Raises ``StorageFailure`` when
        the counter store is unreachable; the caller decides whether to fail open.
        """
        limit = limit_for(client_class, scope, self._settings)
        now = self._clock()
        start, end = self._window(now)
        retry_after = max(1, int(end - now))
        key = f"ratelimit/{scope}/{fingerprint}/{start}"

        if weight > limit:
            return RateLimitDecision(
                allowed=False, remaining=0, retry_after_seconds=retry_after, limit=limit
            )

        try:
            with open_session(self._engine) as session:
                stmt = upsert(session, RateLimitWindow).values(
                    key=key,
                    fingerprint=fingerprint,
                    scope=scope.value,
                    window_key=str(start),
                    count=weight,
                    limit=limit,
                    expires_at=float(end),
                )
                stmt = stmt.on_conflict_do_update(
                    index_elements=["key"],
                    set_={"count": RateLimitWindow.count + weight},
                    where=(RateLimitWindow.count + weight <= limit),
                ).returning(RateLimitWindow.count)
                count = session.execute(stmt).scalar_one_or_none()
                session.commit()
        except SQLAlchemyError as e:
            handle_database_error(e, "rate limit check", fingerprint=fingerprint, scope=scope)
            raise StorageFailure("Rate limit store unavailable") from e

        if count is None:
            logger.info(
                "Rate limit exceeded",
                fingerprint=fingerprint,
                client_class=client_class,
                scope=scope,
                limit=limit,
                retry_after=retry_after,
            )
            return RateLimitDecision(
                allowed=False, remaining=0, retry_after_seconds=retry_after, limit=limit
            )

        return RateLimitDecision(
            allowed=True,
            remaining=max(0, limit - count),
            retry_after_seconds=0,
            limit=limit,
        )

    def enforce(
        self,
        client_ip: str,
        user_agent: str | None,
        routing_token: str | None,
        weight: int = 1,
        scope: LimitScope = LimitScope.request,
    ) -> RateLimitDecision | None:
        """Raise ``RateLimitExceeded`` when the caller is over its limit.

        Fails open (returns None) when the counter store is unavailable.
        """
        client_class = classify_client(user_agent, self._settings)
        client_print = fingerprint(client_ip, user_agent, routing_token)
        try:
            decision = self.check_and_increment(client_print, weight, client_class, scope)
        except StorageFailure:
            logger.warning("Rate limiter unavailable, allowing request", fingerprint=client_print)
            return None

        if not decision.allowed:
            raise RateLimitExceeded(retry_after=decision.retry_after_seconds, limit=decision.limit)
        return decision

    def purge_expired(self) -> int:
        try:
            with open_session(self._engine) as session:
                result = session.execute(
                    delete(RateLimitWindow).where(RateLimitWindow.expires_at < self._clock())
                )
                session.commit()
                return result.rowcount or 0
        except SQLAlchemyError as e:
            handle_database_error(e, "purge rate limit windows")
            return 0
