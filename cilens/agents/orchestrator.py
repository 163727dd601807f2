"""
Insights Orchestrator
=====================
Drives one insights collection run end to end.

Flow:
    settings → token check → cache lifecycle → fetch → classify → aggregate → export

Responsibilities:
    - Resolve unset settings from the environment (cilens.core.config)
    - Register the access token with the log redactor before any request
    - Own the JobCache lifecycle (clear / disable / load / flush)
    - Run blocking file I/O (cache load/flush, export) in worker threads
    - Close the GitLab client it created on every exit path
    - Optional JSON export through ResultsWriter

Only ConfigurationError and AuthenticationError (plus list-phase FetchError)
escape run(); per-pipeline failures are reported in the result.
"""
import asyncio
import logging
import time
from datetime import date, datetime, time as dt_time, timezone
from pathlib import Path
from typing import Optional, Tuple, Union

from cilens.agents.fetch_orchestrator import FetchOrchestrator
from cilens.agents.gitlab_client import GitLabClient
from cilens.agents.provider import CIProvider
from cilens.core import config
from cilens.core.constants import PROVIDER_GITLAB
from cilens.core.exceptions import ConfigurationError
from cilens.models.insights import CIInsights
from cilens.models.settings import InsightsRequest
from cilens.parser.pipeline_classifier import classify_pipelines
from cilens.services.cache_service import JobCache
from cilens.services.insights_service import build_insights
from cilens.services.results_writer import ResultsWriter
from cilens.utils.logging_config import register_secret

logger = logging.getLogger(__name__)


def date_window(
    since: Optional[date], until: Optional[date]
) -> Tuple[Optional[datetime], Optional[datetime]]:
    """Map inclusive UTC days onto datetimes: since 00:00:00, until 23:59:59."""
    start = datetime.combine(since, dt_time.min, tzinfo=timezone.utc) if since else None
    end = (
        datetime.combine(until, dt_time(23, 59, 59), tzinfo=timezone.utc) if until else None
    )
    return start, end


class InsightsOrchestrator:
    """
    Usage:
        orchestrator = InsightsOrchestrator()
        insights = await orchestrator.run(InsightsRequest(project_path="group/project"))
    """

    def __init__(self, cache_dir: Optional[Union[str, Path]] = None) -> None:
        self.cache_dir = cache_dir if cache_dir is not None else config.CACHE_DIR
        self._fetcher: Optional[FetchOrchestrator] = None

    def cancel(self) -> None:
        """Stop starting new job fetches for the run in progress."""
        if self._fetcher is not None:
            self._fetcher.cancel()

    def _open_cache(self, settings: InsightsRequest) -> JobCache:
        """Clear, create and load the run's cache (blocking file I/O)."""
        if settings.clear_cache:
            JobCache.clear_project_cache(settings.project_path, self.cache_dir)
        if settings.no_cache:
            logger.info("Job cache disabled for this run")
            return JobCache.disabled()
        cache = JobCache(settings.project_path, cache_dir=self.cache_dir)
        cache.load()
        return cache

    async def run(
        self,
        settings: InsightsRequest,
        token: Optional[str] = None,
        provider: Optional[CIProvider] = None,
    ) -> CIInsights:
        """
        Collect insights for one project.

        Parameters
        ----------
        settings : InsightsRequest
            Per-run settings; None fields fall back to the environment.
        token : str, optional
            Access token; defaults to GITLAB_TOKEN.
        provider : CIProvider, optional
            Pre-built provider. When omitted a GitLabClient is created (and
            closed) here, which requires a token.

        Returns
        -------
        CIInsights
        """
        base_url = settings.base_url or config.GITLAB_BASE_URL
        limit = settings.limit or config.CILENS_LIMIT
        min_type_percentage = (
            settings.min_type_percentage
            if settings.min_type_percentage is not None
            else config.CILENS_MIN_TYPE_PERCENTAGE
        )
        since, until = date_window(settings.since, settings.until)

        owned_client: Optional[GitLabClient] = None
        if provider is None:
            token = config.require_token(token)
            register_secret(token)
            owned_client = GitLabClient(
                base_url,
                token,
                max_retries=config.MAX_RETRIES,
                retry_delay=config.RETRY_DELAY,
                timeout=config.REQUEST_TIMEOUT,
            )
            provider = owned_client
        elif token:
            register_secret(token)

        logger.info(
            "Collecting insights for %s (limit=%d, ref=%s, balanced=%s)",
            settings.project_path, limit, settings.ref or "any", settings.balanced_sampling,
        )
        start = time.time()

        # cache and export file I/O stays off the event loop
        try:
            cache = await asyncio.to_thread(self._open_cache, settings)
            try:
                self._fetcher = FetchOrchestrator(
                    provider,
                    cache,
                    max_concurrency=config.MAX_CONCURRENCY,
                    balanced_sampling=settings.balanced_sampling,
                )
                fetch_result = await self._fetcher.fetch(
                    settings.project_path, limit, ref=settings.ref, since=since, until=until
                )
            finally:
                await asyncio.to_thread(cache.flush)
        finally:
            self._fetcher = None
            if owned_client is not None:
                await owned_client.aclose()

        classification = classify_pipelines(
            fetch_result.pipelines,
            min_type_percentage=min_type_percentage,
            similarity_threshold=settings.similarity_threshold,
        )
        insights = build_insights(
            settings.project_path,
            base_url,
            fetch_result,
            classification,
            provider=getattr(provider, "name", PROVIDER_GITLAB),
        )

        logger.info(
            "Insights for %s ready in %.1fs: %d pipelines, %d types, %s",
            settings.project_path, time.time() - start, insights.total_pipelines,
            insights.total_pipeline_types, insights.completeness.summary(),
        )

        if settings.output_path:
            await asyncio.to_thread(
                ResultsWriter.write_results, insights, settings.output_path, settings.pretty
            )

        return insights

    async def run_from_file(
        self,
        path: Optional[Union[str, Path]] = None,
        token: Optional[str] = None,
        provider: Optional[CIProvider] = None,
    ) -> CIInsights:
        """Run with settings read from ``path`` or the first cilens.{yaml,yml,json} found."""
        settings_path = Path(path) if path else config.find_settings_file()
        if settings_path is None:
            raise ConfigurationError(
                "No settings file found (expected one of "
                + ", ".join(config.SETTINGS_FILE_CANDIDATES) + ")"
            )
        return await self.run(config.load_settings_file(settings_path), token=token, provider=provider)
