"""
Reliability Analyzer Tests
==========================
Flaky / failed / clean classification of job attempts.
"""
from cilens.models.pipeline import JobExecution, PipelineRun
from cilens.services.reliability_service import (
    analyze_job_reliability,
    analyze_type_reliability,
)


def _attempt(pid, name, status, retry_index=0):
    return JobExecution(
        id=f"{pid}-{name}-{retry_index}",
        name=name,
        status=status,
        retry_index=retry_index,
        pipeline_id=pid,
    )


def test_retried_then_succeeded_is_flaky():
    stats = analyze_job_reliability([
        _attempt("p1", "test", "failed", 0),
        _attempt("p1", "test", "success", 1),
    ])
    assert stats.flaky_count == 1
    assert stats.failed_count == 0
    assert stats.clean_count == 1
    assert stats.flaky_job_ids == ["p1-test-0"]
    assert stats.flakiness_rate == 50.0


def test_stayed_failed_counts_every_failed_attempt():
    stats = analyze_job_reliability([
        _attempt("p1", "test", "failed", 0),
        _attempt("p1", "test", "failed", 1),
    ])
    assert stats.flaky_count == 0
    assert stats.failed_count == 2
    assert stats.failure_rate == 100.0


def test_canceled_final_attempt_is_clean():
    stats = analyze_job_reliability([_attempt("p1", "test", "canceled")])
    assert stats.clean_count == 1
    assert stats.flaky_count == stats.failed_count == 0


def test_retries_are_matched_within_one_pipeline():
    stats = analyze_job_reliability([
        _attempt("p1", "test", "failed", 0),
        _attempt("p2", "test", "success", 0),
    ])
    assert stats.flaky_count == 0
    assert stats.failed_count == 1


def test_attempt_order_follows_retry_index():
    stats = analyze_job_reliability([
        _attempt("p1", "test", "success", 1),
        _attempt("p1", "test", "failed", 0),
    ])
    assert stats.flaky_count == 1


def test_nine_executions_four_flaky_retries():
    executions = []
    for pid in ("p1", "p2", "p3", "p4"):
        executions.append(_attempt(pid, "lint", "failed", 0))
        executions.append(_attempt(pid, "lint", "success", 1))
    executions.append(_attempt("p5", "lint", "success", 0))

    stats = analyze_job_reliability(executions)
    assert stats.total_executions == 9
    assert stats.flakiness_rate == 44.44
    assert stats.failure_rate == 0.0


def test_counts_partition_total():
    executions = [
        _attempt("p1", "t", "failed", 0),
        _attempt("p1", "t", "success", 1),
        _attempt("p2", "t", "failed", 0),
        _attempt("p3", "t", "success", 0),
        _attempt("p4", "t", "skipped", 0),
    ]
    stats = analyze_job_reliability(executions)
    assert stats.flaky_count + stats.failed_count + stats.clean_count == stats.total_executions


def test_empty_input_has_zero_rates():
    stats = analyze_job_reliability([])
    assert stats.total_executions == 0
    assert stats.flakiness_rate == 0.0
    assert stats.failure_rate == 0.0


def test_type_reliability_groups_by_job_name():
    runs = [
        PipelineRun(id="p1", status="success", jobs=[
            _attempt("p1", "build", "success"),
            _attempt("p1", "test", "failed", 0),
            _attempt("p1", "test", "success", 1),
        ]),
        PipelineRun(id="p2", status="failed", jobs=[
            _attempt("p2", "build", "success"),
            _attempt("p2", "test", "failed"),
        ]),
    ]
    stats = analyze_type_reliability(runs)
    assert stats["build"].total_executions == 2
    assert stats["build"].clean_count == 2
    assert stats["test"].total_executions == 3
    assert stats["test"].flaky_count == 1
    assert stats["test"].failed_count == 1
    assert stats["test"].failed_job_ids == ["p2-test-0"]
