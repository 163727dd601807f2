"""
GitLab Client
=============
Talks to the GitLab GraphQL API and maps responses onto the domain model.

Retry policy (per request):
    - Transient: network/transport errors, HTTP 429, HTTP 5xx
      → fixed delay, up to max_retries attempts, then TransientFetchError
    - HTTP 401/403 → AuthenticationError (fatal, no retry)
    - Other 4xx, GraphQL errors, unexpected shapes → MalformedResponseError

The access token is only ever placed in the Authorization header.
"""
import asyncio
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

import httpx

from cilens.core.constants import (
    DEFAULT_MAX_RETRIES,
    DEFAULT_RETRY_DELAY,
    GRAPHQL_PAGE_SIZE,
    PROVIDER_GITLAB,
    STATUS_CANCELED,
    STATUS_FAILED,
    STATUS_RUNNING,
    STATUS_SUCCESS,
    USER_AGENT,
)
from cilens.core.exceptions import (
    AuthenticationError,
    ConfigurationError,
    MalformedResponseError,
    TransientFetchError,
)
from cilens.models.pipeline import JobExecution, PipelineRun

logger = logging.getLogger(__name__)

PIPELINES_QUERY = """
query FetchPipelines($projectPath: ID!, $first: Int, $after: String, $ref: String,
                     $status: PipelineStatusEnum, $updatedAfter: Time, $updatedBefore: Time) {
  project(fullPath: $projectPath) {
    pipelines(first: $first, after: $after, ref: $ref, status: $status,
              updatedAfter: $updatedAfter, updatedBefore: $updatedBefore) {
      pageInfo { hasNextPage endCursor }
      nodes {
        id status ref source createdAt duration
        stages { nodes { name } }
      }
    }
  }
}
"""

PIPELINE_JOBS_QUERY = """
query FetchPipelineJobs($projectPath: ID!, $pipelineId: CiPipelineID!, $first: Int, $after: String) {
  project(fullPath: $projectPath) {
    pipeline(id: $pipelineId) {
      jobs(first: $first, after: $after) {
        pageInfo { hasNextPage endCursor }
        nodes {
          id name status duration schedulingType
          stage { name }
          needs { nodes { name } }
        }
      }
    }
  }
}
"""

# GraphQL PipelineStatusEnum → domain status
_PIPELINE_STATUS_MAP = {
    "SUCCESS": STATUS_SUCCESS,
    "FAILED": STATUS_FAILED,
    "CANCELED": STATUS_CANCELED,
    "CANCELING": STATUS_CANCELED,
    "SKIPPED": STATUS_CANCELED,
}


def normalize_pipeline_status(raw: Optional[str]) -> str:
    """Map a GitLab pipeline status onto success/failed/canceled/running."""
    return _PIPELINE_STATUS_MAP.get((raw or "").upper(), STATUS_RUNNING)


def _numeric_id(gid: str) -> int:
    try:
        return int(gid.rsplit("/", 1)[-1])
    except ValueError:
        return 0


def _parse_time(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


def _nodes(connection: Any) -> List[Dict[str, Any]]:
    if not isinstance(connection, dict):
        return []
    return [n for n in (connection.get("nodes") or []) if isinstance(n, dict)]


def assign_retry_indexes(jobs: List[JobExecution]) -> List[JobExecution]:
    """
    Number attempts of the same job name within one pipeline.

    Attempts are ordered by job id (GitLab ids grow monotonically), so the
    original attempt gets retry_index 0 and the latest gets the highest.
    """
    by_name: Dict[str, List[JobExecution]] = {}
    for job in jobs:
        by_name.setdefault(job.name, []).append(job)

    indexed: Dict[str, int] = {}
    for attempts in by_name.values():
        attempts.sort(key=lambda j: _numeric_id(j.id))
        for i, job in enumerate(attempts):
            indexed[job.id] = i

    return [job.model_copy(update={"retry_index": indexed[job.id]}) for job in jobs]


class GitLabClient:
    """
    Async GitLab GraphQL client.

    Usage:
        async with GitLabClient("https://gitlab.com", token) as client:
            runs = await client.list_pipelines("group/project", limit=100, status="success")
            jobs = await client.fetch_pipeline_jobs("group/project", runs[0].id)
    """

    name = PROVIDER_GITLAB

    def __init__(
        self,
        base_url: str,
        token: str,
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_delay: float = DEFAULT_RETRY_DELAY,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.graphql_url = f"{self.base_url}/api/graphql"
        self.max_retries = max(1, max_retries)
        self.retry_delay = retry_delay
        self.headers = {
            "Accept": "application/json",
            "User-Agent": USER_AGENT,
            "Authorization": f"Bearer {token}",
        }
        self._client = httpx.AsyncClient(
            headers=self.headers, timeout=timeout, transport=transport
        )

    async def __aenter__(self) -> "GitLabClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    # ------------------------------------------------------------------
    # Transport with retry
    # ------------------------------------------------------------------
    async def _execute(self, query: str, variables: Dict[str, Any]) -> Dict[str, Any]:
        """POST a GraphQL query, retrying transient failures with a fixed delay."""
        payload = {"query": query, "variables": variables}
        attempt = 0

        while True:
            attempt += 1
            try:
                response = await self._client.post(self.graphql_url, json=payload)
            except httpx.TransportError as e:
                if attempt >= self.max_retries:
                    raise TransientFetchError(
                        f"Network error after {attempt} attempts: {e}", attempts=attempt
                    ) from e
                logger.warning(
                    "Network error (%s), retrying in %ss (%d/%d)...",
                    type(e).__name__, self.retry_delay, attempt, self.max_retries,
                )
                await asyncio.sleep(self.retry_delay)
                continue

            status_code = response.status_code
            if status_code == 429 or status_code >= 500:
                if attempt >= self.max_retries:
                    raise TransientFetchError(
                        f"GitLab API error (HTTP {status_code}) after {attempt} attempts",
                        status_code=status_code,
                        attempts=attempt,
                    )
                logger.warning(
                    "GitLab API error (HTTP %d). Waiting %ss before retry %d/%d...",
                    status_code, self.retry_delay, attempt, self.max_retries,
                )
                await asyncio.sleep(self.retry_delay)
                continue

            if status_code in (401, 403):
                raise AuthenticationError(status_code)

            if status_code >= 400:
                raise MalformedResponseError(
                    f"GitLab API error (HTTP {status_code}): {response.text[:200]}"
                )

            try:
                body = response.json()
            except ValueError as e:
                raise MalformedResponseError("GitLab returned a non-JSON response") from e

            if not isinstance(body, dict):
                raise MalformedResponseError("GitLab returned an unexpected response shape")

            errors = body.get("errors")
            if errors:
                messages = ", ".join(
                    str(err.get("message", err)) if isinstance(err, dict) else str(err)
                    for err in errors
                )
                raise MalformedResponseError(f"GraphQL errors: {messages}")

            data = body.get("data")
            if not isinstance(data, dict):
                raise MalformedResponseError("GraphQL response contained no data")
            return data

    # ------------------------------------------------------------------
    # List phase
    # ------------------------------------------------------------------
    async def list_pipelines(
        self,
        project_path: str,
        limit: int,
        status: Optional[str] = None,
        ref: Optional[str] = None,
        updated_after: Optional[datetime] = None,
        updated_before: Optional[datetime] = None,
        terminal_only: bool = False,
    ) -> List[PipelineRun]:
        """
        Page through pipelines (most recent first) until ``limit`` are collected.

        Parameters
        ----------
        status : str, optional
            "success" or "failed" to filter server-side.
        terminal_only : bool
            Skip non-terminal pipelines client-side and keep paging.

        Returns
        -------
        List[PipelineRun]
            Pipelines without jobs.
        """
        runs: List[PipelineRun] = []
        cursor: Optional[str] = None

        while len(runs) < limit:
            variables: Dict[str, Any] = {
                "projectPath": project_path,
                "first": min(limit - len(runs), GRAPHQL_PAGE_SIZE),
                "after": cursor,
                "ref": ref,
                "status": status.upper() if status else None,
                "updatedAfter": updated_after.isoformat() if updated_after else None,
                "updatedBefore": updated_before.isoformat() if updated_before else None,
            }
            data = await self._execute(PIPELINES_QUERY, variables)

            project = data.get("project")
            if not isinstance(project, dict):
                raise ConfigurationError(f"Project '{project_path}' not found")

            pipelines = project.get("pipelines")
            if not isinstance(pipelines, dict):
                raise MalformedResponseError(
                    f"No pipeline data available for project '{project_path}'"
                )

            for node in _nodes(pipelines):
                run = self._to_pipeline_run(node)
                if terminal_only and not run.is_terminal:
                    continue
                runs.append(run)

            page_info = pipelines.get("pageInfo") or {}
            cursor = page_info.get("endCursor")
            if not page_info.get("hasNextPage") or not cursor:
                break

        return runs[:limit]

    @staticmethod
    def _to_pipeline_run(node: Dict[str, Any]) -> PipelineRun:
        if not node.get("id"):
            raise MalformedResponseError("Pipeline node without id")
        return PipelineRun(
            id=node["id"],
            status=normalize_pipeline_status(node.get("status")),
            ref=node.get("ref") or "",
            source=node.get("source") or "",
            created_at=_parse_time(node.get("createdAt")),
            duration=float(node.get("duration") or 0),
            stages=[s["name"] for s in _nodes(node.get("stages")) if s.get("name")],
        )

    # ------------------------------------------------------------------
    # Detail phase
    # ------------------------------------------------------------------
    async def fetch_pipeline_jobs(self, project_path: str, pipeline_id: str) -> List[JobExecution]:
        """Fetch every job attempt (including retried ones) of one pipeline."""
        jobs: List[JobExecution] = []
        cursor: Optional[str] = None

        while True:
            variables = {
                "projectPath": project_path,
                "pipelineId": pipeline_id,
                "first": GRAPHQL_PAGE_SIZE,
                "after": cursor,
            }
            data = await self._execute(PIPELINE_JOBS_QUERY, variables)

            # The project was already resolved by the list phase, so a missing
            # project here is a bad response for this one pipeline
            project = data.get("project")
            if not isinstance(project, dict):
                raise MalformedResponseError(
                    f"Project '{project_path}' missing from job data of pipeline '{pipeline_id}'"
                )
            pipeline = project.get("pipeline")
            if not isinstance(pipeline, dict):
                raise MalformedResponseError(f"Pipeline '{pipeline_id}' not found")
            connection = pipeline.get("jobs")
            if not isinstance(connection, dict):
                raise MalformedResponseError(
                    f"No job data available for pipeline '{pipeline_id}'"
                )

            jobs.extend(self._to_job(node, pipeline_id) for node in _nodes(connection))

            page_info = connection.get("pageInfo") or {}
            cursor = page_info.get("endCursor")
            if not page_info.get("hasNextPage") or not cursor:
                break

        return assign_retry_indexes(jobs)

    @staticmethod
    def _to_job(node: Dict[str, Any], pipeline_id: str) -> JobExecution:
        if not node.get("id") or not node.get("name"):
            raise MalformedResponseError(f"Job node without id/name in pipeline {pipeline_id}")

        # schedulingType "dag" means the job declared `needs`
        needs: Optional[List[str]] = None
        if (node.get("schedulingType") or "").lower() == "dag":
            needs = [n["name"] for n in _nodes(node.get("needs")) if n.get("name")]

        stage = node.get("stage")
        if not isinstance(stage, dict):
            stage = {}
        return JobExecution(
            id=node["id"],
            name=node["name"],
            stage=stage.get("name") or "",
            status=node.get("status") or "",
            duration=float(node.get("duration") or 0),
            needs=needs,
            pipeline_id=pipeline_id,
        )
