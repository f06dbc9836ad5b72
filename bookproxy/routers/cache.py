from typing import Annotated, Optional

from fastapi import APIRouter, Depends, Query

from bookproxy.internal.cache_store import CacheStore
from bookproxy.internal.orchestrator import ProviderOrchestrator
from bookproxy.internal.warming import WarmingScheduler
from bookproxy.util.dependencies import (
    get_cache_store,
    get_orchestrator,
    get_warming_scheduler,
    rate_limited,
    require_admin_key,
)
from bookproxy.util.exceptions import InvalidRequest
from bookproxy.util.log import logger

router = APIRouter(
    prefix="/cache",
    tags=["Cache"],
    dependencies=[Depends(rate_limited), Depends(require_admin_key)],
)


@router.get("/status")
def cache_status(
    cache_store: Annotated[CacheStore, Depends(get_cache_store)],
    orchestrator: Annotated[ProviderOrchestrator, Depends(get_orchestrator)],
    warming: Annotated[WarmingScheduler, Depends(get_warming_scheduler)],
):
    return {
        "cache": cache_store.status(),
        "quota": [status.as_dict() for status in orchestrator.quota_report()],
        "warming": warming.status(),
    }


@router.post("/warm")
async def warm_cache(
    warming: Annotated[WarmingScheduler, Depends(get_warming_scheduler)],
    type: Annotated[Optional[str], Query()] = None,
    batch: Annotated[Optional[int], Query(ge=1, le=500)] = None,
):
    if not type:
        raise InvalidRequest(f"Parameter 'type' is required. Known jobs: {', '.join(warming.jobs)}")
    logger.info("Manual warming triggered", job_type=type, batch=batch)
    result = await warming.trigger(type, batch_size=batch)
    return result.as_dict()
