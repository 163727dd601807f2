"""
Fetch Orchestrator
==================
Builds the pipeline sample: list phase, then a concurrent detail phase.

List phase:
    - Balanced sampling: limit // 2 successful + the rest failed, listed in
      parallel (most recent first). A scarce class is back-filled from the
      other one and the shortfall is reported in a SamplingReport.
    - Unbalanced: the most recent terminal pipelines, any status.

Detail phase:
    - Cache first: a hit is accepted only when the cached status matches the
      live status (see JobCache.lookup)
    - Misses are fetched under an asyncio.Semaphore (max_concurrency)
    - Transient/malformed failures exclude that pipeline only and are
      recorded as PipelineFetchFailure; auth errors abort the whole fetch
    - Terminal pipelines are written through to the cache right after
      their jobs arrive

Cancellation:
    - cancel() stops tasks that have not started fetching; they are
      reported in skipped_ids
    - Task cancellation propagates; nothing partial reaches the cache
"""
import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from cilens.agents.provider import CIProvider
from cilens.core.constants import DEFAULT_MAX_CONCURRENCY, STATUS_FAILED, STATUS_SUCCESS
from cilens.core.exceptions import FetchError
from cilens.models.insights import PipelineFetchFailure, SamplingReport
from cilens.models.pipeline import CacheEntry, PipelineRun
from cilens.services.cache_service import JobCache

logger = logging.getLogger(__name__)


@dataclass
class FetchResult:
    pipelines: List[PipelineRun] = field(default_factory=list)
    failures: List[PipelineFetchFailure] = field(default_factory=list)
    skipped_ids: List[str] = field(default_factory=list)
    listed_count: int = 0
    cache_hits: int = 0
    fetched_count: int = 0
    sampling: SamplingReport = field(default_factory=SamplingReport)


@dataclass
class _Outcome:
    run: Optional[PipelineRun] = None
    cached: bool = False
    failure: Optional[PipelineFetchFailure] = None
    skipped_id: Optional[str] = None


def _recency_key(run: PipelineRun) -> Tuple[bool, float]:
    return (run.created_at is not None, run.created_at.timestamp() if run.created_at else 0.0)


class FetchOrchestrator:
    """
    Fetches a representative sample of pipelines with their jobs.

    Usage:
        orchestrator = FetchOrchestrator(client, cache)
        result = await orchestrator.fetch("group/project", limit=200)
    """

    def __init__(
        self,
        provider: CIProvider,
        cache: Optional[JobCache] = None,
        max_concurrency: int = DEFAULT_MAX_CONCURRENCY,
        balanced_sampling: bool = True,
    ) -> None:
        self.provider = provider
        self.cache = cache if cache is not None else JobCache.disabled()
        self.max_concurrency = max(1, max_concurrency)
        self.balanced_sampling = balanced_sampling
        self._cancelled = asyncio.Event()

    def cancel(self) -> None:
        """Stop issuing new job fetches; in-flight ones finish normally."""
        if not self._cancelled.is_set():
            logger.info("Fetch cancelled, no new job fetches will start")
        self._cancelled.set()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    async def fetch(
        self,
        project_path: str,
        limit: int,
        ref: Optional[str] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
    ) -> FetchResult:
        """
        Run the list and detail phases.

        Returns
        -------
        FetchResult
            Fetched pipelines (most recent first) plus everything that was
            excluded, skipped or served from cache.
        """
        filters = {"ref": ref, "updated_after": since, "updated_before": until}
        listed, sampling = await self._list_phase(project_path, limit, filters)
        logger.info("Listed %d pipelines for %s", len(listed), project_path)

        semaphore = asyncio.Semaphore(self.max_concurrency)
        tasks = [
            asyncio.create_task(self._fetch_one(project_path, run, semaphore))
            for run in listed
        ]
        try:
            outcomes = await asyncio.gather(*tasks)
        except BaseException:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

        result = FetchResult(listed_count=len(listed), sampling=sampling)
        for outcome in outcomes:
            if outcome.run is not None:
                result.pipelines.append(outcome.run)
                if outcome.cached:
                    result.cache_hits += 1
                else:
                    result.fetched_count += 1
            elif outcome.failure is not None:
                result.failures.append(outcome.failure)
            elif outcome.skipped_id is not None:
                result.skipped_ids.append(outcome.skipped_id)

        result.pipelines.sort(key=_recency_key, reverse=True)

        logger.info(
            "Fetched %d of %d pipelines (%d from cache, %d failed, %d skipped)",
            len(result.pipelines), result.listed_count, result.cache_hits,
            len(result.failures), len(result.skipped_ids),
        )
        return result

    # ------------------------------------------------------------------
    # List phase
    # ------------------------------------------------------------------
    async def _list_status(
        self, project_path: str, limit: int, status: str, filters: Dict[str, Any]
    ) -> List[PipelineRun]:
        if limit <= 0:
            return []
        return await self.provider.list_pipelines(project_path, limit, status=status, **filters)

    async def _list_phase(
        self, project_path: str, limit: int, filters: Dict[str, Any]
    ) -> Tuple[List[PipelineRun], SamplingReport]:
        if not self.balanced_sampling:
            runs = await self.provider.list_pipelines(
                project_path, limit, terminal_only=True, **filters
            )
            report = SamplingReport(
                balanced=False,
                successful_listed=sum(1 for r in runs if r.status == STATUS_SUCCESS),
                failed_listed=sum(1 for r in runs if r.status == STATUS_FAILED),
            )
            return runs, report

        success_share = limit // 2
        failed_share = limit - success_share

        successful, failed = await asyncio.gather(
            self._list_status(project_path, success_share, STATUS_SUCCESS, filters),
            self._list_status(project_path, failed_share, STATUS_FAILED, filters),
        )

        # Back-fill a scarce class from the other one
        backfilled = 0
        if len(successful) < success_share and len(failed) == failed_share:
            wanted = failed_share + success_share - len(successful)
            more = await self._list_status(project_path, wanted, STATUS_FAILED, filters)
            backfilled = len(more) - len(failed)
            failed = more
        elif len(failed) < failed_share and len(successful) == success_share:
            wanted = success_share + failed_share - len(failed)
            more = await self._list_status(project_path, wanted, STATUS_SUCCESS, filters)
            backfilled = len(more) - len(successful)
            successful = more

        report = SamplingReport(
            successful_requested=success_share,
            successful_listed=len(successful),
            failed_requested=failed_share,
            failed_listed=len(failed),
            backfilled=max(backfilled, 0),
        )
        if report.successful_listed < success_share or report.failed_listed < failed_share:
            logger.warning(
                "Unbalanced sample: %d/%d successful, %d/%d failed (back-filled %d)",
                report.successful_listed, success_share,
                report.failed_listed, failed_share, report.backfilled,
            )

        seen = set()
        runs = []
        for run in successful + failed:
            if run.id not in seen:
                seen.add(run.id)
                runs.append(run)
        return runs, report

    # ------------------------------------------------------------------
    # Detail phase
    # ------------------------------------------------------------------
    async def _fetch_one(
        self, project_path: str, run: PipelineRun, semaphore: asyncio.Semaphore
    ) -> _Outcome:
        cached_jobs = self.cache.lookup(run.id, run.status)
        if cached_jobs is not None:
            return _Outcome(run=run.with_jobs(cached_jobs), cached=True)

        async with semaphore:
            if self._cancelled.is_set():
                return _Outcome(skipped_id=run.id)
            try:
                jobs = await self.provider.fetch_pipeline_jobs(project_path, run.id)
            except FetchError as e:
                logger.warning("Excluding pipeline %s: %s", run.id, e)
                return _Outcome(failure=PipelineFetchFailure(
                    pipeline_id=run.id,
                    error_type=type(e).__name__,
                    reason=str(e),
                ))

        if run.is_terminal:
            await self.cache.store(CacheEntry(pipeline_id=run.id, status=run.status, jobs=jobs))
        return _Outcome(run=run.with_jobs(jobs))
