"""
Fetch Orchestrator Tests
========================
Balanced sampling, cache revalidation, bounded concurrency, partial
failures and cancellation. The CI provider is an in-memory fake.
"""
import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from cilens.agents.fetch_orchestrator import FetchOrchestrator
from cilens.agents.provider import CIProvider
from cilens.core.exceptions import AuthenticationError, MalformedResponseError, TransientFetchError
from cilens.models.pipeline import CacheEntry, JobExecution, PipelineRun
from cilens.services.cache_service import JobCache

T0 = datetime(2024, 5, 1, tzinfo=timezone.utc)


def _run(n, status="success"):
    return PipelineRun(
        id=f"gid://gitlab/Ci::Pipeline/{n}",
        status=status,
        ref="main",
        source="push",
        created_at=T0 + timedelta(minutes=n),
        stages=["build"],
    )


def _jobs(pipeline_id):
    return [JobExecution(id=f"{pipeline_id}/job", name="build", stage="build",
                         status="success", duration=10.0, pipeline_id=pipeline_id)]


class FakeProvider:
    name = "Fake"

    def __init__(self, runs, job_errors=None, delay=0.0):
        self.runs = runs
        self.job_errors = job_errors or {}
        self.delay = delay
        self.list_calls = []
        self.job_calls = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def list_pipelines(self, project_path, limit, status=None, ref=None,
                             updated_after=None, updated_before=None, terminal_only=False):
        self.list_calls.append({"limit": limit, "status": status, "terminal_only": terminal_only})
        runs = [r for r in self.runs if status is None or r.status == status]
        if terminal_only:
            runs = [r for r in runs if r.is_terminal]
        runs.sort(key=lambda r: r.created_at, reverse=True)
        return runs[:limit]

    async def fetch_pipeline_jobs(self, project_path, pipeline_id):
        self.job_calls.append(pipeline_id)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(self.delay)
            if pipeline_id in self.job_errors:
                raise self.job_errors[pipeline_id]
            return _jobs(pipeline_id)
        finally:
            self.in_flight -= 1


def test_fake_provider_satisfies_protocol():
    assert isinstance(FakeProvider([]), CIProvider)


# ===================================================================
# List phase
# ===================================================================
def test_balanced_sampling_splits_limit():
    runs = [_run(i, "success") for i in range(10)] + [_run(100 + i, "failed") for i in range(10)]
    provider = FakeProvider(runs)

    result = asyncio.run(FetchOrchestrator(provider).fetch("g/p", limit=7))

    statuses = [p.status for p in result.pipelines]
    assert statuses.count("success") == 3
    assert statuses.count("failed") == 4
    assert result.sampling.successful_requested == 3
    assert result.sampling.failed_requested == 4
    assert result.sampling.backfilled == 0


def test_scarce_class_is_backfilled():
    runs = [_run(i, "success") for i in range(10)] + [_run(100, "failed")]
    provider = FakeProvider(runs)

    result = asyncio.run(FetchOrchestrator(provider).fetch("g/p", limit=6))

    statuses = [p.status for p in result.pipelines]
    assert statuses.count("failed") == 1
    assert statuses.count("success") == 5
    assert result.sampling.failed_listed == 1
    assert result.sampling.backfilled == 2
    assert result.listed_count == 6


def test_unbalanced_sampling_lists_terminal_pipelines():
    runs = [_run(1, "success"), _run(2, "running"), _run(3, "failed")]
    provider = FakeProvider(runs)

    result = asyncio.run(FetchOrchestrator(provider, balanced_sampling=False).fetch("g/p", limit=5))

    assert len(provider.list_calls) == 1
    assert provider.list_calls[0]["terminal_only"] is True
    assert [p.status for p in result.pipelines] == ["failed", "success"]
    assert result.sampling.balanced is False


def test_pipelines_sorted_most_recent_first():
    runs = [_run(i, "success" if i % 2 else "failed") for i in range(8)]
    result = asyncio.run(FetchOrchestrator(FakeProvider(runs)).fetch("g/p", limit=8))
    created = [p.created_at for p in result.pipelines]
    assert created == sorted(created, reverse=True)


# ===================================================================
# Detail phase
# ===================================================================
def test_cache_hits_skip_the_network():
    runs = [_run(1, "success"), _run(2, "failed")]
    cache = JobCache.in_memory()
    for run in runs:
        cache.put(CacheEntry(pipeline_id=run.id, status=run.status, jobs=_jobs(run.id)))
    provider = FakeProvider(runs)

    result = asyncio.run(FetchOrchestrator(provider, cache).fetch("g/p", limit=2))

    assert provider.job_calls == []
    assert result.cache_hits == 2
    assert result.fetched_count == 0
    assert all(p.jobs for p in result.pipelines)


def test_stale_cache_entry_is_refetched_and_overwritten():
    run = _run(1, "success")
    cache = JobCache.in_memory()
    cache.put(CacheEntry(pipeline_id=run.id, status="failed", jobs=[]))
    provider = FakeProvider([run])

    result = asyncio.run(FetchOrchestrator(provider, cache).fetch("g/p", limit=2))

    assert provider.job_calls == [run.id]
    assert result.cache_hits == 0
    assert cache.get(run.id).status == "success"
    assert len(cache.get(run.id).jobs) == 1


def test_fetched_terminal_pipelines_are_written_through():
    runs = [_run(1, "success"), _run(2, "failed")]
    cache = JobCache.in_memory()
    asyncio.run(FetchOrchestrator(FakeProvider(runs), cache).fetch("g/p", limit=2))
    assert len(cache) == 2


def test_concurrency_is_bounded():
    runs = [_run(i, "success") for i in range(20)] + [_run(100 + i, "failed") for i in range(20)]
    provider = FakeProvider(runs, delay=0.01)

    result = asyncio.run(FetchOrchestrator(provider, max_concurrency=3).fetch("g/p", limit=40))

    assert len(result.pipelines) == 40
    assert provider.max_in_flight <= 3


def test_failed_pipelines_are_recorded_not_fatal():
    runs = [_run(1, "success"), _run(2, "success"), _run(3, "failed"), _run(4, "failed")]
    provider = FakeProvider(runs, job_errors={
        runs[0].id: TransientFetchError("HTTP 503 after 30 attempts", status_code=503, attempts=30),
        runs[2].id: MalformedResponseError("Pipeline not found"),
    })
    cache = JobCache.in_memory()

    result = asyncio.run(FetchOrchestrator(provider, cache).fetch("g/p", limit=4))

    assert len(result.pipelines) == 2
    assert {f.pipeline_id for f in result.failures} == {runs[0].id, runs[2].id}
    assert {f.error_type for f in result.failures} == {"TransientFetchError", "MalformedResponseError"}
    assert runs[0].id not in cache


def test_authentication_error_aborts():
    runs = [_run(1, "success"), _run(2, "failed")]
    provider = FakeProvider(runs, job_errors={runs[1].id: AuthenticationError(401)})

    with pytest.raises(AuthenticationError):
        asyncio.run(FetchOrchestrator(provider).fetch("g/p", limit=2))


# ===================================================================
# Cancellation
# ===================================================================
def test_cancel_skips_unstarted_fetches():
    runs = [_run(i, "success") for i in range(5)] + [_run(100 + i, "failed") for i in range(5)]
    provider = FakeProvider(runs, delay=0.05)
    orchestrator = FetchOrchestrator(provider, max_concurrency=2)

    async def run_test():
        task = asyncio.create_task(orchestrator.fetch("g/p", limit=10))
        await asyncio.sleep(0.01)
        orchestrator.cancel()
        return await task

    result = asyncio.run(run_test())

    assert orchestrator.cancelled
    assert len(result.pipelines) == 2
    assert len(result.skipped_ids) == 8
    assert len(provider.job_calls) == 2


def test_task_cancellation_propagates():
    runs = [_run(i, "success") for i in range(4)]
    provider = FakeProvider(runs, delay=1.0)
    cache = JobCache.in_memory()

    async def run_test():
        task = asyncio.create_task(FetchOrchestrator(provider, cache).fetch("g/p", limit=8))
        await asyncio.sleep(0.05)
        task.cancel()
        await task

    with pytest.raises(asyncio.CancelledError):
        asyncio.run(run_test())
    assert len(cache) == 0


def test_cache_write_failure_does_not_abort(tmp_path):
    blocker = tmp_path / "blocker"
    blocker.write_text("not a directory")
    runs = [_run(i, "success") for i in range(3)] + [_run(100 + i, "failed") for i in range(3)]
    cache = JobCache("g/p", cache_dir=blocker)

    result = asyncio.run(FetchOrchestrator(FakeProvider(runs), cache).fetch("g/p", limit=6))

    assert len(result.pipelines) == 6
    assert result.failures == []
    assert len(cache) == 6
