"""
Reliability Analyzer
====================
Classifies every job attempt as flaky, failed or clean.

Per pipeline and job name, attempts are ordered by retry_index:
    flaky  — superseded, unsuccessful attempt whose final attempt succeeded
    failed — attempt with status "failed" and no later success
    clean  — everything else

flaky + failed + clean == total_executions, always.
"""
from typing import Dict, Iterable, List, Tuple

from pydantic import BaseModel

from cilens.core.constants import JOB_FAILED, JOB_SUCCESS
from cilens.models.pipeline import JobExecution, PipelineRun


class ReliabilityStats(BaseModel):
    total_executions: int = 0
    flaky_count: int = 0
    failed_count: int = 0
    clean_count: int = 0
    flakiness_rate: float = 0.0
    failure_rate: float = 0.0
    flaky_job_ids: List[str] = []
    failed_job_ids: List[str] = []


def _rate(count: int, total: int) -> float:
    return round(100.0 * count / total, 2) if total else 0.0


def _classify_attempts(attempts: List[JobExecution]) -> Tuple[List[str], List[str]]:
    """Return (flaky ids, failed ids) for the attempts of one job in one pipeline."""
    ordered = sorted(attempts, key=lambda j: j.retry_index)
    final_succeeded = ordered[-1].status == JOB_SUCCESS

    flaky: List[str] = []
    failed: List[str] = []
    for i, attempt in enumerate(ordered):
        superseded = i < len(ordered) - 1
        if superseded and final_succeeded and attempt.status != JOB_SUCCESS:
            flaky.append(attempt.id)
        elif attempt.status == JOB_FAILED and not any(
            later.status == JOB_SUCCESS for later in ordered[i + 1:]
        ):
            failed.append(attempt.id)
    return flaky, failed


def _build_stats(total: int, flaky: List[str], failed: List[str]) -> ReliabilityStats:
    return ReliabilityStats(
        total_executions=total,
        flaky_count=len(flaky),
        failed_count=len(failed),
        clean_count=total - len(flaky) - len(failed),
        flakiness_rate=_rate(len(flaky), total),
        failure_rate=_rate(len(failed), total),
        flaky_job_ids=flaky,
        failed_job_ids=failed,
    )


def _group_attempts(jobs: Iterable[JobExecution]) -> Dict[Tuple[str, str], List[JobExecution]]:
    groups: Dict[Tuple[str, str], List[JobExecution]] = {}
    for job in jobs:
        groups.setdefault((job.pipeline_id, job.name), []).append(job)
    return groups


def analyze_job_reliability(executions: Iterable[JobExecution]) -> ReliabilityStats:
    """
    Reliability of one job across pipelines.

    ``executions`` are all attempts of a single job name; they are grouped
    by ``pipeline_id`` before retries are matched up.
    """
    executions = list(executions)
    flaky: List[str] = []
    failed: List[str] = []
    for attempts in _group_attempts(executions).values():
        f, x = _classify_attempts(attempts)
        flaky.extend(f)
        failed.extend(x)
    return _build_stats(len(executions), flaky, failed)


def analyze_type_reliability(pipelines: Iterable[PipelineRun]) -> Dict[str, ReliabilityStats]:
    """Per job name reliability across every run of a pipeline type."""
    totals: Dict[str, int] = {}
    flaky: Dict[str, List[str]] = {}
    failed: Dict[str, List[str]] = {}

    for run in pipelines:
        by_name: Dict[str, List[JobExecution]] = {}
        for job in run.jobs:
            by_name.setdefault(job.name, []).append(job)
        for name, attempts in by_name.items():
            f, x = _classify_attempts(attempts)
            totals[name] = totals.get(name, 0) + len(attempts)
            flaky.setdefault(name, []).extend(f)
            failed.setdefault(name, []).extend(x)

    return {
        name: _build_stats(total, flaky[name], failed[name])
        for name, total in totals.items()
    }
