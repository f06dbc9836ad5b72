from bookproxy.internal.warming.catalog import WarmItem
from bookproxy.internal.warming.scheduler import (
    Schedule,
    WarmingJob,
    WarmingRunResult,
    WarmingScheduler,
    default_jobs,
    run_warming_loop,
)

__all__ = [
    "Schedule",
    "WarmItem",
    "WarmingJob",
    "WarmingRunResult",
    "WarmingScheduler",
    "default_jobs",
    "run_warming_loop",
]
