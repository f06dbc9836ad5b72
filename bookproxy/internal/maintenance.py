"""Periodic removal of expired cache entries, quota counters and rate limit windows."""
import asyncio

from bookproxy.internal.cache_store import CacheStore
from bookproxy.internal.quota import QuotaStore
from bookproxy.internal.rate_limit import FingerprintRateLimiter
from bookproxy.util.log import logger


def purge_expired_rows(
    cache: CacheStore,
    quota: QuotaStore,
    rate_limiter: FingerprintRateLimiter,
) -> dict[str, int]:
    removed = {
        "cache": cache.purge_expired(),
        "quota": quota.purge_expired(),
        "rate_limit": rate_limiter.purge_expired(),
    }
    if any(removed.values()):
        logger.info("Expired rows purged", **removed)
    return removed


async def run_maintenance_loop(
    cache: CacheStore,
    quota: QuotaStore,
    rate_limiter: FingerprintRateLimiter,
    interval_seconds: int,
) -> None:
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            purge_expired_rows(cache, quota, rate_limiter)
        except Exception as e:
            logger.exception("Maintenance cycle failed, continuing", error=str(e))
