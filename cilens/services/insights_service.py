"""
Insights Aggregator
===================
Turns classified pipeline runs into the provider-agnostic CIInsights result.

Per pipeline type:
    - success_rate and pipeline links (successful / failed)
    - duration triple over successful runs
    - time-to-feedback triple over each successful run's first feedback
    - per-job metrics, sorted by time_to_feedback_p95 descending:
        duration / feedback triples over successful jobs of successful runs,
        direct predecessors with their duration p50,
        most common critical path (slowest predecessor chain) across successful runs,
        reliability over every member run (with job links)

Runs whose job graph has a cycle are left out of feedback statistics and
listed in completeness.feedback_excluded_ids.
"""
import logging
from collections import Counter
from datetime import datetime, timezone
from typing import Dict, List, Set

from cilens.agents.fetch_orchestrator import FetchResult
from cilens.core.constants import JOB_SUCCESS, PROVIDER_GITLAB, STATUS_FAILED, STATUS_SUCCESS
from cilens.core.exceptions import DependencyCycleError
from cilens.models.insights import (
    CIInsights,
    Completeness,
    CountWithLinks,
    JobMetrics,
    PipelineTypeInsights,
    PredecessorJob,
    TypeMetrics,
)
from cilens.parser.pipeline_classifier import Classification, PipelineType
from cilens.services.feedback_service import PipelineFeedback, calculate_feedback, final_attempts
from cilens.services.reliability_service import ReliabilityStats, analyze_type_reliability
from cilens.utils.links import job_url, pipeline_url
from cilens.utils.percentiles import triple_or_empty

logger = logging.getLogger(__name__)


def _rate(count: int, total: int) -> float:
    return round(100.0 * count / total, 2) if total else 0.0


def _job_metrics(
    ptype: PipelineType,
    feedbacks: List[PipelineFeedback],
    base_url: str,
    project_path: str,
) -> List[JobMetrics]:
    successful_runs = {fb.pipeline_id for fb in feedbacks}

    names: Dict[str, None] = {}
    durations: Dict[str, List[float]] = {}
    for run in ptype.runs:
        for job in run.jobs:
            names.setdefault(job.name, None)
        if run.id not in successful_runs:
            continue
        for job in final_attempts(run):
            if job.status == JOB_SUCCESS:
                durations.setdefault(job.name, []).append(job.duration)

    feedback_times: Dict[str, List[float]] = {}
    predecessors: Dict[str, Dict[str, None]] = {}
    critical_paths: Dict[str, Counter] = {}
    for fb in feedbacks:
        for name, job in fb.jobs.items():
            if job.status == JOB_SUCCESS:
                feedback_times.setdefault(name, []).append(job.finish_time)
            for pred in job.predecessors:
                predecessors.setdefault(name, {}).setdefault(pred, None)
            critical_paths.setdefault(name, Counter())[tuple(fb.critical_path(name))] += 1

    duration_p50 = {name: triple_or_empty(durations.get(name, [])).p50 for name in names}
    reliability = analyze_type_reliability(ptype.runs)

    metrics: List[JobMetrics] = []
    for name in names:
        duration = triple_or_empty(durations.get(name, []))
        feedback = triple_or_empty(feedback_times.get(name, []))
        stats = reliability.get(name, ReliabilityStats())
        # ties go to the chain seen first
        paths = critical_paths.get(name)
        critical_path = list(paths.most_common(1)[0][0]) if paths else []
        preds = sorted(
            (
                PredecessorJob(name=pred, duration_p50=duration_p50.get(pred, 0.0))
                for pred in predecessors.get(name, {})
            ),
            key=lambda p: (-p.duration_p50, p.name),
        )
        metrics.append(JobMetrics(
            name=name,
            duration_p50=duration.p50,
            duration_p95=duration.p95,
            duration_p99=duration.p99,
            time_to_feedback_p50=feedback.p50,
            time_to_feedback_p95=feedback.p95,
            time_to_feedback_p99=feedback.p99,
            predecessors=preds,
            critical_path=critical_path,
            flakiness_rate=stats.flakiness_rate,
            flaky_retries=CountWithLinks(
                count=stats.flaky_count,
                links=[job_url(base_url, project_path, i) for i in stats.flaky_job_ids],
            ),
            failed_executions=CountWithLinks(
                count=stats.failed_count,
                links=[job_url(base_url, project_path, i) for i in stats.failed_job_ids],
            ),
            failure_rate=stats.failure_rate,
            total_executions=stats.total_executions,
        ))

    metrics.sort(key=lambda m: (-m.time_to_feedback_p95, m.name))
    return metrics


def build_type_insights(
    ptype: PipelineType,
    base_url: str,
    project_path: str,
    excluded_ids: Set[str],
) -> PipelineTypeInsights:
    """
    Metrics for one pipeline type.

    Pipeline ids whose dependency graph contains a cycle are added to
    ``excluded_ids``.
    """
    successful = [r for r in ptype.runs if r.status == STATUS_SUCCESS]
    failed = [r for r in ptype.runs if r.status == STATUS_FAILED]

    feedbacks: List[PipelineFeedback] = []
    for run in successful:
        try:
            feedbacks.append(calculate_feedback(run))
        except DependencyCycleError as e:
            logger.warning("Excluding pipeline %s from feedback statistics: %s", run.id, e)
            excluded_ids.add(run.id)

    duration = triple_or_empty([r.duration for r in successful])
    first_feedback = [fb.first_feedback for fb in feedbacks if fb.first_feedback is not None]
    feedback = triple_or_empty(first_feedback)

    metrics = TypeMetrics(
        percentage=ptype.percentage,
        total_pipelines=ptype.count,
        successful_pipelines=CountWithLinks(
            count=len(successful),
            links=[pipeline_url(base_url, project_path, r.id) for r in successful],
        ),
        failed_pipelines=CountWithLinks(
            count=len(failed),
            links=[pipeline_url(base_url, project_path, r.id) for r in failed],
        ),
        success_rate=_rate(len(successful), ptype.count),
        duration_p50=duration.p50,
        duration_p95=duration.p95,
        duration_p99=duration.p99,
        time_to_feedback_p50=feedback.p50,
        time_to_feedback_p95=feedback.p95,
        time_to_feedback_p99=feedback.p99,
        jobs=_job_metrics(ptype, feedbacks, base_url, project_path),
    )
    return PipelineTypeInsights(
        label=ptype.label,
        stages=ptype.stages,
        ref_patterns=ptype.ref_patterns,
        sources=ptype.sources,
        metrics=metrics,
    )


def build_insights(
    project_path: str,
    base_url: str,
    fetch_result: FetchResult,
    classification: Classification,
    provider: str = PROVIDER_GITLAB,
) -> CIInsights:
    """
    Assemble the final result.

    Returns
    -------
    CIInsights
        One entry per pipeline type plus the completeness block.
    """
    excluded_ids: Set[str] = set()
    pipeline_types = [
        build_type_insights(ptype, base_url, project_path, excluded_ids)
        for ptype in classification.types
    ]

    completeness = Completeness(
        listed_pipelines=fetch_result.listed_count,
        fetched_pipelines=len(fetch_result.pipelines),
        cache_hits=fetch_result.cache_hits,
        failures=fetch_result.failures,
        skipped_ids=fetch_result.skipped_ids,
        filtered_out_pipelines=classification.filtered_out_count,
        feedback_excluded_ids=sorted(excluded_ids),
        sampling=fetch_result.sampling,
    )
    if not completeness.is_complete:
        logger.warning(
            "Incomplete sample: %s (%d failed, %d skipped)",
            completeness.summary(), len(completeness.failures), len(completeness.skipped_ids),
        )

    return CIInsights(
        provider=provider,
        project=project_path,
        collected_at=datetime.now(timezone.utc),
        total_pipelines=classification.total_pipelines,
        total_pipeline_types=len(pipeline_types),
        pipeline_types=pipeline_types,
        completeness=completeness,
    )
