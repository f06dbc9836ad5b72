"""Per provider/tier usage counters.

Counters are keyed by the current window (``quota/{provider}/{tier}/{window}``)
so they reset by key rollover at period boundaries instead of being cleared.
Increments are one ``INSERT ... ON CONFLICT DO UPDATE SET used = used + n``
statement, which keeps concurrent callers from losing updates.
"""
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable

from sqlalchemy import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import delete, select

from bookproxy.internal.models import QuotaCounter, QuotaPeriod
from bookproxy.util.db import open_session, upsert
from bookproxy.util.exceptions import StorageFailure, handle_database_error
from bookproxy.util.log import logger

# counters outlive their window by an hour to absorb clock skew at the boundary
COUNTER_GRACE_SECONDS = 3_600


def window_key(period: QuotaPeriod, now: float) -> str:
    moment = datetime.fromtimestamp(now, tz=timezone.utc)
    if period == QuotaPeriod.hourly:
        return moment.strftime("%Y-%m-%dT%H")
    return moment.strftime("%Y-%m-%d")


def window_end(period: QuotaPeriod, now: float) -> float:
    moment = datetime.fromtimestamp(now, tz=timezone.utc)
    if period == QuotaPeriod.hourly:
        start = moment.replace(minute=0, second=0, microsecond=0)
        return (start + timedelta(hours=1)).timestamp()
    start = moment.replace(hour=0, minute=0, second=0, microsecond=0)
    return (start + timedelta(days=1)).timestamp()


def counter_key(provider_id: str, tier: str, window: str) -> str:
    return f"quota/{provider_id}/{tier}/{window}"


@dataclass(frozen=True)
class QuotaStatus:
    provider_id: str
    tier: str
    used: int
    limit: int | None
    cost: float = 0.0

    @property
    def remaining(self) -> float:
        if self.limit is None:
            return float("inf")
        return max(0, self.limit - self.used)

    @property
    def remaining_ratio(self) -> float:
        if self.limit is None:
            return 1.0
        if self.limit <= 0:
            return 0.0
        return self.remaining / self.limit

    @property
    def percent_used(self) -> float:
        if not self.limit:
            return 0.0
        return self.used / self.limit * 100

    def as_dict(self) -> dict[str, object]:
        return {
            "provider": self.provider_id,
            "tier": self.tier,
            "used": self.used,
            "limit": self.limit,
            "remaining": None if self.limit is None else self.remaining,
            "percent_used": round(self.percent_used, 2),
            "cost": self.cost,
        }


class QuotaStore:
    def __init__(
        self,
        engine: Engine,
        period: QuotaPeriod = QuotaPeriod.daily,
        clock: Callable[[], float] = time.time,
    ):
        self._engine = engine
        self.period = period
        self._clock = clock

    def current_window(self) -> str:
        return window_key(self.period, self._clock())

    def seconds_until_reset(self) -> int:
        now = self._clock()
        return max(1, int(window_end(self.period, now) - now))

    def get_usage(self, provider_id: str, tier: str) -> int:
        key = counter_key(provider_id, tier, self.current_window())
        try:
            with open_session(self._engine) as session:
                used = session.exec(
                    select(QuotaCounter.used).where(QuotaCounter.key == key)
                ).one_or_none()
        except SQLAlchemyError as e:
            handle_database_error(e, "read quota", key=key)
            raise StorageFailure(f"Could not read quota counter {key}") from e
        return used or 0

    def get_usage_many(self, pairs: list[tuple[str, str]]) -> dict[tuple[str, str], int]:
        """Usage for several provider/tier pairs in one round trip."""
        window = self.current_window()
        keys = {counter_key(p, t, window): (p, t) for p, t in pairs}
        try:
            with open_session(self._engine) as session:
                rows = session.exec(
                    select(QuotaCounter.key, QuotaCounter.used).where(
                        QuotaCounter.key.in_(list(keys))  # pyright: ignore[reportAttributeAccessIssue]
                    )
                ).all()
        except SQLAlchemyError as e:
            handle_database_error(e, "read quotas", window=window)
            raise StorageFailure("Could not read quota counters") from e
        usage = {pair: 0 for pair in pairs}
        for key, used in rows:
            usage[keys[key]] = used
        return usage

    def increment(
        self, provider_id: str, tier: str, amount: int = 1, limit: int | None = None
    ) -> int:
        """Atomically add ``amount`` to the current window's counter and return the new value."""
        if amount <= 0:
            return self.get_usage(provider_id, tier)

        now = self._clock()
        window = window_key(self.period, now)
        key = counter_key(provider_id, tier, window)
        try:
            with open_session(self._engine) as session:
                stmt = upsert(session, QuotaCounter).values(
                    key=key,
                    provider_id=provider_id,
                    tier=tier,
                    period=self.period.value,
                    window_key=window,
                    used=amount,
                    limit=limit,
                    expires_at=window_end(self.period, now) + COUNTER_GRACE_SECONDS,
                )
                stmt = stmt.on_conflict_do_update(
                    index_elements=["key"],
                    set_={"used": QuotaCounter.used + amount},
                ).returning(QuotaCounter.used)
                used = session.execute(stmt).scalar_one()
                session.commit()
        except SQLAlchemyError as e:
            handle_database_error(e, "increment quota", key=key, amount=amount)
            raise StorageFailure(f"Could not increment quota counter {key}") from e

        logger.debug("Quota updated", provider=provider_id, tier=tier, used=used, window=window)
        return used

    def purge_expired(self) -> int:
        try:
            with open_session(self._engine) as session:
                result = session.execute(
                    delete(QuotaCounter).where(QuotaCounter.expires_at < self._clock())
                )
                session.commit()
                return result.rowcount or 0
        except SQLAlchemyError as e:
            handle_database_error(e, "purge quota counters")
            return 0
