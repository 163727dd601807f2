"""
Insights Models
===============
Provider-agnostic result handed to the JSON export and the HTTP API.

CIInsights
  └── pipeline_types[]: PipelineTypeInsights
        └── metrics: TypeMetrics
              └── jobs[]: JobMetrics
  └── completeness: Completeness  (how much of the sample was gathered)
"""
from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel


class CountWithLinks(BaseModel):
    count: int = 0
    links: List[str] = []


class PredecessorJob(BaseModel):
    name: str
    duration_p50: float


class JobMetrics(BaseModel):
    name: str
    duration_p50: float = 0.0
    duration_p95: float = 0.0
    duration_p99: float = 0.0
    time_to_feedback_p50: float = 0.0
    time_to_feedback_p95: float = 0.0
    time_to_feedback_p99: float = 0.0
    predecessors: List[PredecessorJob] = []
    critical_path: List[str] = []
    flakiness_rate: float = 0.0
    flaky_retries: CountWithLinks = CountWithLinks()
    failed_executions: CountWithLinks = CountWithLinks()
    failure_rate: float = 0.0
    total_executions: int = 0


class TypeMetrics(BaseModel):
    percentage: float
    total_pipelines: int
    successful_pipelines: CountWithLinks
    failed_pipelines: CountWithLinks
    success_rate: float
    duration_p50: float = 0.0
    duration_p95: float = 0.0
    duration_p99: float = 0.0
    time_to_feedback_p50: float = 0.0
    time_to_feedback_p95: float = 0.0
    time_to_feedback_p99: float = 0.0
    jobs: List[JobMetrics] = []


class PipelineTypeInsights(BaseModel):
    label: str
    stages: List[str]
    ref_patterns: List[str]
    sources: List[str]
    metrics: TypeMetrics


class SamplingReport(BaseModel):
    """Requested versus obtained sample split for the list phase."""
    balanced: bool = True
    successful_requested: int = 0
    successful_listed: int = 0
    failed_requested: int = 0
    failed_listed: int = 0
    backfilled: int = 0


class PipelineFetchFailure(BaseModel):
    pipeline_id: str
    error_type: str
    reason: str


class Completeness(BaseModel):
    listed_pipelines: int = 0
    fetched_pipelines: int = 0
    cache_hits: int = 0
    failures: List[PipelineFetchFailure] = []
    skipped_ids: List[str] = []
    filtered_out_pipelines: int = 0
    feedback_excluded_ids: List[str] = []
    sampling: Optional[SamplingReport] = None

    @property
    def is_complete(self) -> bool:
        return not self.failures and not self.skipped_ids

    def summary(self) -> str:
        return f"{self.fetched_pipelines} of {self.listed_pipelines} pipelines fetched"


class CIInsights(BaseModel):
    provider: str
    project: str
    collected_at: datetime
    total_pipelines: int
    total_pipeline_types: int
    pipeline_types: List[PipelineTypeInsights]
    completeness: Completeness = Completeness()
