"""
Two-tier cache store.

* Hot tier: in-process LRU (``HotTier``), small and fast, for popular or
  short-lived payloads.
* Warm tier: the ``cacheentry`` table, durable and canonical. Every ``set``
  lands here.

Reads check hot first, then warm. A warm hit bumps the entry's hit counter in
the same statement that reads it back and, once the entry is popular and recent
enough, schedules a background promotion into the hot tier. The store is best
effort: storage errors on read become misses and storage errors on write are
logged and swallowed.
"""
import asyncio
import json
import time
from dataclasses import dataclass
from typing import Any, Callable

from pydantic import BaseModel
from sqlalchemy import Engine, func, update
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import delete, select

from bookproxy.internal.env_settings import CacheSettings
from bookproxy.internal.models import CacheEntry, CacheTier
from bookproxy.util.cache import CacheMetrics, HotTier
from bookproxy.util.db import open_session, upsert
from bookproxy.util.exceptions import handle_cache_error
from bookproxy.util.log import logger

SHORT_LIVED_TTL_SECONDS = 86_400


@dataclass(frozen=True)
class CacheHit:
    payload: str
    tier: CacheTier
    age_seconds: float
    hit_count: int

    def json(self) -> Any:
        return json.loads(self.payload)


@dataclass(frozen=True)
class _WarmRead:
    payload: str
    created_at: float
    expires_at: float
    size_bytes: int
    hit_count: int
    previous_access_at: float


def serialize_payload(payload: Any) -> str:
    if isinstance(payload, str):
        return payload
    if isinstance(payload, bytes):
        return payload.decode()
    if isinstance(payload, BaseModel):
        return payload.model_dump_json()
    return json.dumps(payload, sort_keys=True, separators=(",", ":"))


class CacheStore:
    def __init__(
        self,
        engine: Engine,
        settings: CacheSettings,
        clock: Callable[[], float] = time.time,
        hot: HotTier | None = None,
    ):
        self._engine = engine
        self._settings = settings
        self._clock = clock
        self._hot = hot or HotTier(maxsize=settings.hot_max_entries, clock=clock)
        self._warm_metrics = CacheMetrics()
        self._pending: dict[str, asyncio.Task[None]] = {}

    @property
    def hot(self) -> HotTier:
        return self._hot

    # ------------------------------------------------------------------ read

    async def get(self, key: str) -> CacheHit | None:
        hot_entry = self._hot.get(key)
        if hot_entry is not None:
            return CacheHit(
                payload=hot_entry.payload,
                tier=CacheTier.hot,
                age_seconds=max(0.0, self._clock() - hot_entry.created_at),
                hit_count=hot_entry.hit_count,
            )

        try:
            warm = self._read_warm(key)
        except SQLAlchemyError as e:
            self._warm_metrics.record_error()
            handle_cache_error(e, "get", key, tier=CacheTier.warm)
            return None

        if warm is None:
            self._warm_metrics.record_miss()
            logger.debug("Cache miss", cache_key=key)
            return None

        self._warm_metrics.record_hit()
        if self.should_promote(warm.hit_count, warm.previous_access_at, warm.size_bytes):
            self._schedule_promotion(key, warm)

        return CacheHit(
            payload=warm.payload,
            tier=CacheTier.warm,
            age_seconds=max(0.0, self._clock() - warm.created_at),
            hit_count=warm.hit_count,
        )

    def _read_warm(self, key: str) -> _WarmRead | None:
        now = self._clock()
        with open_session(self._engine) as session:
            entry = session.get(CacheEntry, key)
            if entry is None:
                return None

            if now > entry.expires_at:
                session.execute(
                    delete(CacheEntry).where(
                        CacheEntry.key == key, CacheEntry.expires_at < now
                    )
                )
                session.commit()
                logger.debug("Expired warm entry removed", cache_key=key)
                return None

            payload = entry.payload
            created_at = entry.created_at
            expires_at = entry.expires_at
            size_bytes = entry.size_bytes
            previous_access_at = entry.last_access_at

            hit_count = session.execute(
                update(CacheEntry)
                .where(CacheEntry.key == key)  # pyright: ignore[reportArgumentType]
                .values(hit_count=CacheEntry.hit_count + 1, last_access_at=now)
                .returning(CacheEntry.hit_count)
            ).scalar_one_or_none()
            session.commit()

        if hit_count is None:
            # deleted between the read and the counter bump
            return None

        return _WarmRead(
            payload=payload,
            created_at=created_at,
            expires_at=expires_at,
            size_bytes=size_bytes,
            hit_count=hit_count,
            previous_access_at=previous_access_at,
        )

    # ------------------------------------------------------------- promotion

    def should_promote(self, hit_count: int, previous_access_at: float, size_bytes: int) -> bool:
        return (
            hit_count >= self._settings.promotion_min_hits
            and self._clock() - previous_access_at < self._settings.promotion_recency_seconds
            and size_bytes < self._settings.hot_size_limit_bytes
        )

    def _schedule_promotion(self, key: str, warm: _WarmRead) -> None:
        if key in self._pending:
            return
        task = asyncio.get_running_loop().create_task(self._promote(key, warm))
        self._pending[key] = task
        task.add_done_callback(lambda done: self._forget_promotion(key, done))

    def _forget_promotion(self, key: str, task: asyncio.Task[None]) -> None:
        if self._pending.get(key) is task:
            del self._pending[key]

    def _cancel_promotion(self, key: str) -> None:
        # a queued promotion carries the payload it was read with
        task = self._pending.pop(key, None)
        if task is not None:
            task.cancel()

    async def _promote(self, key: str, warm: _WarmRead) -> None:
        try:
            if self._hot.contains(key):
                return
            remaining = int(warm.expires_at - self._clock())
            if remaining <= 0:
                return
            self._hot.set(
                key,
                warm.payload,
                min(remaining, self._settings.hot_max_ttl_seconds),
                created_at=warm.created_at,
            )
            self._hot.get_metrics().record_promotion()
            logger.info("Promoted cache entry to hot tier", cache_key=key, hits=warm.hit_count)
        except Exception as e:
            self._hot.get_metrics().record_error()
            handle_cache_error(e, "promote", key)

    async def drain(self) -> None:
        """Wait for background promotions to settle."""
        if self._pending:
            await asyncio.gather(*list(self._pending.values()), return_exceptions=True)

    # ----------------------------------------------------------------- write

    async def set(
        self,
        key: str,
        payload: Any,
        ttl_seconds: int,
        popularity_hint: int = 1,
    ) -> bool:
        """Write-through. Returns False when the warm write failed."""
        text = serialize_payload(payload)
        size_bytes = len(text.encode())
        now = self._clock()
        namespace = key.split("/", 1)[0]
        self._cancel_promotion(key)

        stored = True
        try:
            with open_session(self._engine) as session:
                stmt = upsert(session, CacheEntry).values(
                    key=key,
                    namespace=namespace,
                    payload=text,
                    created_at=now,
                    ttl_seconds=ttl_seconds,
                    hit_count=0,
                    last_access_at=now,
                    size_bytes=size_bytes,
                    expires_at=now + ttl_seconds,
                )
                stmt = stmt.on_conflict_do_update(
                    index_elements=["key"],
                    set_={
                        "payload": stmt.excluded.payload,
                        "created_at": stmt.excluded.created_at,
                        "ttl_seconds": stmt.excluded.ttl_seconds,
                        "last_access_at": stmt.excluded.last_access_at,
                        "size_bytes": stmt.excluded.size_bytes,
                        "expires_at": stmt.excluded.expires_at,
                    },
                )
                session.execute(stmt)
                session.commit()
        except SQLAlchemyError as e:
            stored = False
            self._warm_metrics.record_error()
            handle_cache_error(e, "set", key, tier=CacheTier.warm)

        wants_hot = (
            popularity_hint > self._settings.hot_popularity_threshold
            or ttl_seconds < SHORT_LIVED_TTL_SECONDS
        )
        if wants_hot and size_bytes < self._settings.hot_size_limit_bytes:
            self._hot.set(key, text, min(ttl_seconds, self._settings.hot_max_ttl_seconds))
        else:
            # never leave an older hot copy shadowing the new warm one
            self._hot.delete(key)

        logger.debug(
            "Cache set",
            cache_key=key,
            ttl=ttl_seconds,
            size=size_bytes,
            tiers="hot+warm" if wants_hot else "warm",
        )
        return stored

    async def delete(self, key: str) -> None:
        self._cancel_promotion(key)
        self._hot.delete(key)
        try:
            with open_session(self._engine) as session:
                session.execute(delete(CacheEntry).where(CacheEntry.key == key))
                session.commit()
        except SQLAlchemyError as e:
            handle_cache_error(e, "delete", key)

    # ----------------------------------------------------------- maintenance

    def purge_expired(self) -> int:
        removed = self._hot.purge_expired()
        try:
            with open_session(self._engine) as session:
                result = session.execute(
                    delete(CacheEntry).where(CacheEntry.expires_at < self._clock())
                )
                session.commit()
                removed += result.rowcount or 0
        except SQLAlchemyError as e:
            handle_cache_error(e, "purge", "*")
        logger.info("Purged expired cache entries", removed=removed)
        return removed

    def status(self) -> dict[str, Any]:
        namespaces: dict[str, int] = {}
        try:
            with open_session(self._engine) as session:
                rows = session.exec(
                    select(CacheEntry.namespace, func.count())
                    .where(CacheEntry.expires_at >= self._clock())
                    .group_by(CacheEntry.namespace)
                ).all()
                namespaces = {namespace: count for namespace, count in rows}
        except SQLAlchemyError as e:
            handle_cache_error(e, "status", "*")

        return {
            "hot": {
                "entries": self._hot.size(),
                "max_entries": self._settings.hot_max_entries,
                **self._hot.get_metrics().snapshot(),
            },
            "warm": {
                "entries": sum(namespaces.values()),
                "namespaces": namespaces,
                **self._warm_metrics.snapshot(),
            },
            "pending_promotions": len(self._pending),
        }
