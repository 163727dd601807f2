"""
CI Provider Capability
======================
What the fetch orchestrator needs from a CI platform.

Any object with these coroutine methods can be used. GitLabClient is the
shipped implementation; tests substitute in-memory fakes.
"""
from datetime import datetime
from typing import List, Optional, Protocol, runtime_checkable

from cilens.models.pipeline import JobExecution, PipelineRun


@runtime_checkable
class CIProvider(Protocol):
    name: str

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
        ...

    async def fetch_pipeline_jobs(self, project_path: str, pipeline_id: str) -> List[JobExecution]:
        ...
