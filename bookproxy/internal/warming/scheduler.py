"""
Scheduled cache warming.

Each job walks an ordered set of segments (curated lists) a slice at a time
and checkpoints into ``warmingprogress`` after every slice, so an interrupted
run picks up where it stopped. Triggers may overlap: every checkpoint is a
read-merge-write on the freshly loaded row inside one transaction, so one run
never drops ids recorded by another.
"""
import asyncio
import time
from dataclasses import asdict, dataclass, field
from enum import StrEnum
from typing import Any, Callable

from sqlalchemy import Engine
from sqlalchemy.exc import SQLAlchemyError

from bookproxy.internal.cache_keys import content_class_for, key_for_request, ttl_for
from bookproxy.internal.cache_store import CacheStore
from bookproxy.internal.env_settings import CacheSettings, WarmingSettings
from bookproxy.internal.models import Priority, WarmingProgress
from bookproxy.internal.orchestrator import ProviderOrchestrator
from bookproxy.internal.warming.catalog import (
    WarmItem,
    author_segments,
    bootstrap_segments,
    historical_segments,
    new_release_segments,
)
from bookproxy.util.db import open_session
from bookproxy.util.exceptions import InvalidRequest, StorageFailure, handle_database_error
from bookproxy.util.log import logger


class Schedule(StrEnum):
    once = "once"
    daily = "daily"
    weekly = "weekly"
    monthly = "monthly"

    @property
    def period_seconds(self) -> int | None:
        return {
            Schedule.once: None,
            Schedule.daily: 86_400,
            Schedule.weekly: 7 * 86_400,
            Schedule.monthly: 30 * 86_400,
        }[self]


@dataclass(frozen=True)
class WarmingJob:
    job_type: str
    schedule: Schedule
    segments: Callable[[float], dict[str, list[WarmItem]]]
    description: str = ""
    slices_per_run: int | None = None

    @property
    def one_shot(self) -> bool:
        return self.schedule == Schedule.once


@dataclass
class WarmingRunResult:
    job_type: str
    skipped: bool = False
    slices: int = 0
    attempted: int = 0
    succeeded: int = 0
    failed: int = 0
    cached: int = 0
    segments_completed: list[str] = field(default_factory=list)
    segments_retried: list[str] = field(default_factory=list)
    cycle_restarted: bool = False
    completed: bool = False

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


def default_jobs(settings: WarmingSettings) -> list[WarmingJob]:
    return [
        WarmingJob(
            "bootstrap",
            Schedule.once,
            bootstrap_segments,
            "One-time population with curated bestsellers and popular authors",
            slices_per_run=settings.bootstrap_slices_per_run,
        ),
        WarmingJob("new-releases", Schedule.daily, new_release_segments, "Daily at 02:00 UTC"),
        WarmingJob("popular-authors", Schedule.weekly, author_segments, "Weekly on Sunday at 03:00 UTC"),
        WarmingJob(
            "historical-bestsellers", Schedule.monthly, historical_segments, "Monthly on the 1st at 04:00 UTC"
        ),
    ]


class WarmingScheduler:
    def __init__(
        self,
        engine: Engine,
        orchestrator: ProviderOrchestrator,
        cache: CacheStore,
        settings: WarmingSettings,
        cache_settings: CacheSettings,
        jobs: list[WarmingJob] | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self._engine = engine
        self._orchestrator = orchestrator
        self._cache = cache
        self._settings = settings
        self._cache_settings = cache_settings
        self._clock = clock
        self.jobs = {job.job_type: job for job in (jobs or default_jobs(settings))}

    # ------------------------------------------------------------ progress

    def _job(self, job_type: str) -> WarmingJob:
        job = self.jobs.get(job_type)
        if job is None:
            raise InvalidRequest(f"Unknown warming job '{job_type}'. Known jobs: {', '.join(self.jobs)}")
        return job

    def load_progress(self, job_type: str) -> WarmingProgress:
        try:
            with open_session(self._engine) as session:
                progress = session.get(WarmingProgress, job_type)
                if progress is None:
                    return WarmingProgress(job_type=job_type)
                session.expunge(progress)
                return progress
        except SQLAlchemyError as e:
            handle_database_error(e, "load warming progress", job_type=job_type)
            raise StorageFailure(f"Could not load progress for {job_type}") from e

    def _update_progress(
        self, job_type: str, mutate: Callable[[WarmingProgress], None]
    ) -> WarmingProgress:
        """Apply ``mutate`` to the stored row and commit, all in one transaction."""
        try:
            with open_session(self._engine) as session:
                progress = session.get(WarmingProgress, job_type, with_for_update=True)
                if progress is None:
                    progress = WarmingProgress(job_type=job_type)
                    session.add(progress)
                mutate(progress)
                session.commit()
                session.refresh(progress)
                session.expunge(progress)
                return progress
        except SQLAlchemyError as e:
            handle_database_error(e, "save warming progress", job_type=job_type)
            raise StorageFailure(f"Could not save progress for {job_type}") from e

    # ------------------------------------------------------------- running

    @staticmethod
    def _current_segment(
        progress: WarmingProgress, segments: dict[str, list[WarmItem]]
    ) -> str | None:
        for name in segments:
            if name not in progress.completed_segments:
                return name
        return None

    async def trigger(self, job_type: str, batch_size: int | None = None) -> WarmingRunResult:
        job = self._job(job_type)
        batch_size = batch_size or self._settings.default_batch_size
        if batch_size < 1:
            raise InvalidRequest("batch must be at least 1")

        result = WarmingRunResult(job_type=job_type)
        progress = self.load_progress(job_type)
        if job.one_shot and progress.completed:
            logger.info("Warming job already completed, skipping", job_type=job_type)
            result.skipped = True
            result.completed = True
            return result

        segments = job.segments(self._clock())
        slices = job.slices_per_run or self._settings.slices_per_run
        logger.info("Warming job started", job_type=job_type, batch_size=batch_size, slices=slices)

        while result.slices < slices:
            segment = self._current_segment(progress, segments)
            if segment is None:
                progress = self._finish_cycle(job, result)
                break

            done = set(progress.processed_ids) | set(progress.failed_ids)
            pending = [item for item in segments[segment] if item.id not in done]
            if not pending:
                progress, retried = self._finish_segment(job, segment, segments[segment], result)
                if retried:
                    # a weak pass is retried on the next trigger, not in a tight loop
                    break
                continue

            progress = await self._run_slice(job, segment, segments[segment], pending[:batch_size], result)
            if len(pending) <= batch_size:
                progress, retried = self._finish_segment(job, segment, segments[segment], result)
                if retried:
                    break
        else:
            if self._current_segment(progress, segments) is None:
                progress = self._finish_cycle(job, result)

        logger.info("Warming job finished", **result.as_dict())
        return result

    async def _run_slice(
        self,
        job: WarmingJob,
        segment: str,
        segment_items: list[WarmItem],
        items: list[WarmItem],
        result: WarmingRunResult,
    ) -> WarmingProgress:
        requests = [item.to_request() for item in items]
        outcome = await self._orchestrator.execute_batch(
            requests,
            priority=Priority.background,
            max_concurrency=self._settings.max_concurrency,
        )

        succeeded: list[str] = []
        for success in outcome.successful:
            content = content_class_for(success.request, success.data)
            stored = await self._cache.set(
                key_for_request(success.request),
                success.data,
                ttl_for(content, self._cache_settings),
            )
            result.cached += int(stored)
            succeeded.append(success.request.id)

        failed: list[str] = []
        for failure in outcome.failed:
            # a definitive "does not exist" still counts as handled
            if failure.reason == "not_found":
                succeeded.append(failure.request.id)
            else:
                failed.append(failure.request.id)

        result.slices += 1
        result.attempted += len(items)
        result.succeeded += len(succeeded)
        result.failed += len(failed)

        now = self._clock()
        segment_ids = [item.id for item in segment_items]

        def checkpoint(progress: WarmingProgress) -> None:
            processed = list(dict.fromkeys([*progress.processed_ids, *succeeded]))
            progress.processed_ids = processed
            progress.failed_ids = [
                i for i in dict.fromkeys([*progress.failed_ids, *failed]) if i not in processed
            ]
            progress.current_segment = segment
            handled = set(processed) | set(progress.failed_ids)
            progress.cursor = sum(1 for i in segment_ids if i in handled)
            progress.last_run_at = now
            progress.last_run = {
                "segment": segment,
                "attempted": len(items),
                "succeeded": len(succeeded),
                "failed": len(failed),
                "at": now,
            }

        progress = self._update_progress(job.job_type, checkpoint)
        logger.info(
            "Warming slice processed",
            job_type=job.job_type,
            segment=segment,
            succeeded=len(succeeded),
            failed=len(failed),
        )
        return progress

    def _finish_segment(
        self,
        job: WarmingJob,
        segment: str,
        items: list[WarmItem],
        result: WarmingRunResult,
    ) -> tuple[WarmingProgress, bool]:
        """Close a full pass over a segment. Returns the new progress and whether it will be retried."""
        ids = {item.id for item in items}
        retried = False

        def close(progress: WarmingProgress) -> None:
            nonlocal retried
            if segment in progress.completed_segments:
                # another run closed it first
                return
            succeeded = len(ids.intersection(progress.processed_ids))
            ratio = succeeded / len(ids) if ids else 1.0
            if ratio >= self._settings.success_threshold:
                progress.completed_segments = [*progress.completed_segments, segment]
                progress.processed_ids = [i for i in progress.processed_ids if i not in ids]
                progress.failed_ids = [i for i in progress.failed_ids if i not in ids]
                progress.current_segment = None
                progress.cursor = 0
                result.segments_completed.append(segment)
                logger.info("Warming segment completed", job_type=job.job_type, segment=segment, ratio=ratio)
            else:
                progress.failed_ids = [i for i in progress.failed_ids if i not in ids]
                retried = True
                result.segments_retried.append(segment)
                logger.warning(
                    "Warming segment below success threshold, will retry",
                    job_type=job.job_type,
                    segment=segment,
                    ratio=ratio,
                    threshold=self._settings.success_threshold,
                )

        progress = self._update_progress(job.job_type, close)
        return progress, retried

    def _finish_cycle(self, job: WarmingJob, result: WarmingRunResult) -> WarmingProgress:
        now = self._clock()

        def close(progress: WarmingProgress) -> None:
            progress.last_run_at = now
            if job.one_shot:
                progress.completed = True
                return
            progress.completed_segments = []
            progress.processed_ids = []
            progress.failed_ids = []
            progress.current_segment = None
            progress.cursor = 0

        progress = self._update_progress(job.job_type, close)
        if job.one_shot:
            result.completed = True
            logger.info("One-shot warming job completed", job_type=job.job_type)
        else:
            result.cycle_restarted = True
            logger.info("Warming cycle complete, restarting", job_type=job.job_type)
        return progress

    # ------------------------------------------------------------ schedule

    def due_jobs(self, now: float | None = None) -> list[WarmingJob]:
        now = self._clock() if now is None else now
        due = []
        for job in self.jobs.values():
            progress = self.load_progress(job.job_type)
            if job.one_shot:
                if not progress.completed:
                    due.append(job)
                continue
            period = job.schedule.period_seconds or 0
            if progress.last_run_at is None or now - progress.last_run_at >= period:
                due.append(job)
        return due

    async def run_due(self, now: float | None = None) -> list[WarmingRunResult]:
        results = []
        for job in self.due_jobs(now):
            try:
                results.append(await self.trigger(job.job_type))
            except StorageFailure as e:
                logger.error("Warming job aborted", job_type=job.job_type, error=e.message)
        return results

    def status(self) -> dict[str, Any]:
        jobs: dict[str, Any] = {}
        for job in self.jobs.values():
            try:
                progress = self.load_progress(job.job_type)
            except StorageFailure:
                jobs[job.job_type] = {"schedule": job.schedule, "error": "progress unavailable"}
                continue
            jobs[job.job_type] = {
                "schedule": job.schedule,
                "description": job.description,
                "completed": progress.completed,
                "current_segment": progress.current_segment,
                "completed_segments": progress.completed_segments,
                "processed": len(progress.processed_ids),
                "failed": len(progress.failed_ids),
                "last_run_at": progress.last_run_at,
                "last_run": progress.last_run,
            }
        return {"enabled": self._settings.enabled, "jobs": jobs}


async def run_warming_loop(scheduler: WarmingScheduler, interval_seconds: int) -> None:
    """Poll for due jobs forever. Started from the app lifespan when warming is enabled."""
    logger.info("Warming loop started", interval=interval_seconds)
    while True:
        try:
            await scheduler.run_due()
        except Exception as e:
            logger.exception("Warming cycle failed, continuing", error=str(e))
        await asyncio.sleep(interval_seconds)
