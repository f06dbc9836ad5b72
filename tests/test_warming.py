import asyncio

import pytest
from sqlmodel import SQLModel

from bookproxy.internal.cache_keys import key_for_request
from bookproxy.internal.env_settings import CacheSettings, WarmingSettings
from bookproxy.internal.orchestrator import ProviderOrchestrator
from bookproxy.internal.warming import (
    Schedule,
    WarmingJob,
    WarmingRunResult,
    WarmingScheduler,
    default_jobs,
    run_warming_loop,
)
from bookproxy.internal.warming.catalog import (
    bootstrap_segments,
    isbn_item,
    new_release_segments,
)
from bookproxy.util.exceptions import InvalidRequest, StorageFailure
from tests.fakes import FIXED_NOW, FakeProvider

SHELF = [isbn_item(f"{i:013d}") for i in range(1, 101)]
SHELF_ISBNS = [item.isbn for item in SHELF]


def segments_of(**segments):
    return lambda now: segments


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider("alpha", quality=90)


@pytest.fixture
def make_scheduler(db_engine, quota_store, cache_store, clock, provider):
    orchestrator = ProviderOrchestrator([provider], quota_store, client_session=None)  # pyright: ignore[reportArgumentType]

    def _make(*jobs: WarmingJob, **settings) -> WarmingScheduler:
        return WarmingScheduler(
            db_engine,
            orchestrator,
            cache_store,
            WarmingSettings(**settings),
            CacheSettings(),
            jobs=list(jobs),
            clock=clock,
        )

    return _make


class TestResumability:
    @pytest.mark.asyncio
    async def test_next_trigger_resumes_after_last_slice(self, make_scheduler, provider):
        job = WarmingJob("shelf", Schedule.weekly, segments_of(shelf=SHELF))
        scheduler = make_scheduler(job)

        first = await scheduler.trigger("shelf", batch_size=40)
        assert first.attempted == 40
        assert set(provider.calls) == set(SHELF_ISBNS[:40])

        progress = scheduler.load_progress("shelf")
        assert progress.current_segment == "shelf"
        assert progress.cursor == 40
        assert len(progress.processed_ids) == 40

        provider.calls.clear()
        second = await scheduler.trigger("shelf", batch_size=40)

        assert second.attempted == 40
        assert min(provider.calls) == SHELF_ISBNS[40]
        assert set(provider.calls) == set(SHELF_ISBNS[40:80])
        assert scheduler.load_progress("shelf").cursor == 80

    @pytest.mark.asyncio
    async def test_results_are_cached(self, make_scheduler, cache_store):
        items = SHELF[:3]
        scheduler = make_scheduler(WarmingJob("shelf", Schedule.weekly, segments_of(shelf=items)))

        result = await scheduler.trigger("shelf")

        assert result.cached == 3
        for item in items:
            assert await cache_store.get(key_for_request(item.to_request())) is not None

    @pytest.mark.asyncio
    async def test_checkpoint_merges_with_stored_progress(self, make_scheduler):
        job = WarmingJob("shelf", Schedule.weekly, segments_of(shelf=SHELF))
        scheduler = make_scheduler(job)
        await scheduler.trigger("shelf", batch_size=5)

        # a second run that started from older progress still adds to it
        await scheduler._run_slice(job, "shelf", SHELF, SHELF[5:8], WarmingRunResult("shelf"))

        progress = scheduler.load_progress("shelf")
        assert sorted(progress.processed_ids) == [item.id for item in SHELF[:8]]
        assert progress.cursor == 8


class TestOneShotJobs:
    @pytest.mark.asyncio
    async def test_bootstrap_disables_itself(self, make_scheduler, provider):
        job = WarmingJob(
            "bootstrap",
            Schedule.once,
            segments_of(first=SHELF[:3], second=SHELF[3:6]),
            slices_per_run=10,
        )
        scheduler = make_scheduler(job)

        result = await scheduler.trigger("bootstrap", batch_size=10)
        assert result.completed is True
        assert result.segments_completed == ["first", "second"]
        assert len(provider.calls) == 6

        again = await scheduler.trigger("bootstrap", batch_size=10)
        assert again.skipped is True
        assert len(provider.calls) == 6
        assert scheduler.due_jobs() == []

    @pytest.mark.asyncio
    async def test_bootstrap_spans_several_triggers(self, make_scheduler, provider):
        job = WarmingJob("bootstrap", Schedule.once, segments_of(only=SHELF[:10]), slices_per_run=1)
        scheduler = make_scheduler(job)

        first = await scheduler.trigger("bootstrap", batch_size=4)
        assert first.completed is False
        await scheduler.trigger("bootstrap", batch_size=4)
        last = await scheduler.trigger("bootstrap", batch_size=4)

        assert last.completed is True
        assert sorted(provider.calls) == sorted(item.isbn for item in SHELF[:10])


class TestSegmentCompletion:
    @pytest.mark.asyncio
    async def test_weak_segment_is_retried(self, make_scheduler, provider):
        items = SHELF[:10]
        provider.fail_ids = {items[0].isbn, items[1].isbn, items[2].isbn}
        scheduler = make_scheduler(WarmingJob("shelf", Schedule.weekly, segments_of(shelf=items)))

        first = await scheduler.trigger("shelf", batch_size=20)
        assert first.succeeded == 7
        assert first.failed == 3
        assert first.segments_retried == ["shelf"]

        progress = scheduler.load_progress("shelf")
        assert progress.completed_segments == []
        assert progress.failed_ids == []
        assert len(progress.processed_ids) == 7

        provider.fail_ids = set()
        provider.calls.clear()
        second = await scheduler.trigger("shelf", batch_size=20)

        assert sorted(provider.calls) == sorted(item.isbn for item in items[:3])
        assert second.segments_completed == ["shelf"]

    @pytest.mark.asyncio
    async def test_not_found_counts_as_handled(self, make_scheduler, provider):
        items = SHELF[:5]
        provider.missing_ids = {items[0].isbn, items[1].isbn}
        scheduler = make_scheduler(WarmingJob("shelf", Schedule.weekly, segments_of(shelf=items)))

        result = await scheduler.trigger("shelf")

        assert result.segments_completed == ["shelf"]
        assert result.cached == 3

    @pytest.mark.asyncio
    async def test_recurring_job_restarts_cycle(self, make_scheduler, provider):
        items = SHELF[:5]
        scheduler = make_scheduler(WarmingJob("shelf", Schedule.weekly, segments_of(shelf=items)))

        first = await scheduler.trigger("shelf")
        assert first.cycle_restarted is True
        assert first.completed is False

        progress = scheduler.load_progress("shelf")
        assert progress.completed_segments == []
        assert progress.processed_ids == []

        await scheduler.trigger("shelf")
        assert len(provider.calls) == 10

    @pytest.mark.asyncio
    async def test_segments_run_in_order(self, make_scheduler, provider):
        job = WarmingJob("shelf", Schedule.weekly, segments_of(a=SHELF[:2], b=SHELF[2:4]))
        scheduler = make_scheduler(job)

        result = await scheduler.trigger("shelf")
        assert result.segments_completed == ["a"]
        assert scheduler.load_progress("shelf").completed_segments == ["a"]

        result = await scheduler.trigger("shelf")
        assert result.segments_completed == ["b"]
        assert result.cycle_restarted is True


class TestScheduling:
    @pytest.mark.asyncio
    async def test_due_jobs_follow_schedule(self, make_scheduler, clock):
        weekly = WarmingJob("weekly", Schedule.weekly, segments_of(s=SHELF[:1]))
        daily = WarmingJob("daily", Schedule.daily, segments_of(s=SHELF[1:2]))
        scheduler = make_scheduler(weekly, daily)

        assert {job.job_type for job in scheduler.due_jobs()} == {"weekly", "daily"}

        results = await scheduler.run_due()
        assert {r.job_type for r in results} == {"weekly", "daily"}
        assert scheduler.due_jobs() == []

        clock.advance(86_400)
        assert [job.job_type for job in scheduler.due_jobs()] == ["daily"]

        clock.advance(6 * 86_400)
        assert {job.job_type for job in scheduler.due_jobs()} == {"weekly", "daily"}

    @pytest.mark.asyncio
    async def test_due_jobs_need_progress_store(self, make_scheduler, db_engine):
        scheduler = make_scheduler(WarmingJob("weekly", Schedule.weekly, segments_of(s=SHELF[:1])))
        scheduler.load_progress("weekly")
        SQLModel.metadata.drop_all(db_engine)

        with pytest.raises(StorageFailure):
            scheduler.due_jobs()

    @pytest.mark.asyncio
    async def test_unknown_job(self, make_scheduler):
        scheduler = make_scheduler(WarmingJob("weekly", Schedule.weekly, segments_of(s=SHELF[:1])))
        with pytest.raises(InvalidRequest):
            await scheduler.trigger("nope")

    @pytest.mark.asyncio
    async def test_negative_batch_rejected(self, make_scheduler):
        scheduler = make_scheduler(WarmingJob("weekly", Schedule.weekly, segments_of(s=SHELF[:1])))
        with pytest.raises(InvalidRequest):
            await scheduler.trigger("weekly", batch_size=-1)

    @pytest.mark.asyncio
    async def test_status(self, make_scheduler):
        scheduler = make_scheduler(WarmingJob("shelf", Schedule.weekly, segments_of(shelf=SHELF)))
        await scheduler.trigger("shelf", batch_size=10)

        status = scheduler.status()
        shelf = status["jobs"]["shelf"]
        assert status["enabled"] is False
        assert shelf["processed"] == 10
        assert shelf["current_segment"] == "shelf"
        assert shelf["last_run"]["attempted"] == 10
        assert shelf["last_run_at"] == FIXED_NOW

    @pytest.mark.asyncio
    async def test_loop_keeps_running_after_errors(self):
        calls = 0
        done = asyncio.Event()

        class FlakyScheduler:
            async def run_due(self):
                nonlocal calls
                calls += 1
                if calls == 1:
                    raise RuntimeError("boom")
                done.set()
                return []

        task = asyncio.create_task(run_warming_loop(FlakyScheduler(), 0))  # pyright: ignore[reportArgumentType]
        await asyncio.wait_for(done.wait(), timeout=1)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert calls >= 2


class TestCatalog:
    def test_default_jobs(self):
        jobs = default_jobs(WarmingSettings(bootstrap_slices_per_run=7))
        assert [job.job_type for job in jobs] == [
            "bootstrap",
            "new-releases",
            "popular-authors",
            "historical-bestsellers",
        ]
        assert jobs[0].one_shot
        assert jobs[0].slices_per_run == 7

    def test_bootstrap_covers_bestsellers_and_authors(self):
        segments = bootstrap_segments(FIXED_NOW)
        assert list(segments) == ["classics", "contemporary", "diverse_voices", "authors"]
        assert len(segments["authors"]) == 15
        assert all(item.id.startswith("isbn:") for item in segments["classics"])

    def test_new_release_window(self):
        segment = new_release_segments(FIXED_NOW)["subjects"]
        assert segment[0].id == "new:fiction:2024-03-08"
        assert "publishedDate:2024-03-08..2024-03-15" in (segment[0].query or "")
        assert segment[0].sort_by == "newest"
