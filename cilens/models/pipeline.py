"""
Pipeline Models
===============
Provider-agnostic domain model produced by every CI provider.

PipelineRun     — one pipeline execution with its ordered stages and jobs
JobExecution    — one attempt of one job (retries are separate executions)
CacheEntry      — persisted job data for a pipeline in a terminal status

Job `needs` semantics:
    None        — job is stage-scheduled (waits for the previous stage)
    []          — job declares `needs: []` and starts immediately
    [names...]  — job waits only for the named jobs
"""
from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, field_validator

from cilens.core.constants import TERMINAL_STATUSES

PipelineStatus = Literal["success", "failed", "running", "canceled"]


class JobExecution(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    stage: str = ""
    status: str = ""
    duration: float = 0.0
    needs: Optional[List[str]] = None
    retry_index: int = 0
    pipeline_id: str = ""

    @field_validator("status")
    @classmethod
    def normalize_status(cls, v: str) -> str:
        return v.lower()

    @field_validator("duration")
    @classmethod
    def non_negative_duration(cls, v: float) -> float:
        return max(v, 0.0)


class PipelineRun(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    status: PipelineStatus
    ref: str = ""
    source: str = ""
    created_at: Optional[datetime] = None
    duration: float = 0.0
    stages: List[str] = []
    jobs: List[JobExecution] = []

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def with_jobs(self, jobs: List[JobExecution]) -> "PipelineRun":
        """Return a copy of this run carrying the given job executions."""
        return self.model_copy(update={"jobs": list(jobs)})


class CacheEntry(BaseModel):
    pipeline_id: str
    status: PipelineStatus
    jobs: List[JobExecution]

    @property
    def is_valid(self) -> bool:
        return self.status in TERMINAL_STATUSES
