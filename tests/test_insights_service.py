"""
Insights Aggregator Tests
=========================
Type metrics, per-job metrics, links and the completeness block.
"""
from cilens.agents.fetch_orchestrator import FetchResult
from cilens.models.insights import PipelineFetchFailure, SamplingReport
from cilens.models.pipeline import JobExecution, PipelineRun
from cilens.parser.pipeline_classifier import classify_pipelines
from cilens.services.insights_service import build_insights

BASE = "https://gitlab.com"
PROJECT = "group/project"


def _job(pid, jid, name, stage, duration, status="success", needs=None, retry_index=0):
    return JobExecution(
        id=f"gid://gitlab/Ci::Build/{jid}",
        name=name,
        stage=stage,
        status=status,
        duration=duration,
        needs=needs,
        retry_index=retry_index,
        pipeline_id=pid,
    )


def _standard_run(n, status="success", build=10.0, test=20.0, lint_attempts=("success",)):
    pid = f"gid://gitlab/Ci::Pipeline/{n}"
    jobs = [
        _job(pid, n * 100 + 1, "build", "build", build),
        _job(pid, n * 100 + 2, "test", "test", test,
             status="success" if status == "success" else "failed"),
    ]
    for i, lint_status in enumerate(lint_attempts):
        jobs.append(_job(pid, n * 100 + 10 + i, "lint", "build", 5.0,
                         status=lint_status, needs=[], retry_index=i))
    return PipelineRun(
        id=pid, status=status, ref="main", source="push",
        stages=["build", "test"], duration=build + test, jobs=jobs,
    )


def _other_run(n):
    pid = f"gid://gitlab/Ci::Pipeline/{n}"
    return PipelineRun(
        id=pid, status="success", ref="main", source="schedule", stages=["deploy"],
        duration=3.0, jobs=[_job(pid, n * 100, "deploy-prod", "deploy", 3.0)],
    )


def _insights(runs, **fetch_kwargs):
    fetch_result = FetchResult(pipelines=runs, listed_count=len(runs), **fetch_kwargs)
    classification = classify_pipelines(runs, min_type_percentage=0)
    return build_insights(PROJECT, BASE, fetch_result, classification)


def test_type_success_rate_and_percentage():
    runs = (
        [_standard_run(1), _standard_run(2)]
        + [_standard_run(n, status="failed") for n in (3, 4, 5)]
        + [_other_run(n) for n in (6, 7, 8)]
    )
    insights = _insights(runs)

    assert insights.total_pipelines == 8
    assert insights.total_pipeline_types == 2
    standard = insights.pipeline_types[0]
    assert standard.label == "Development Pipeline"
    assert standard.metrics.total_pipelines == 5
    assert standard.metrics.percentage == 62.5
    assert standard.metrics.success_rate == 40.0
    assert standard.metrics.successful_pipelines.count == 2
    assert standard.metrics.failed_pipelines.count == 3
    assert standard.metrics.successful_pipelines.links[0] == f"{BASE}/{PROJECT}/-/pipelines/1"

    prod = insights.pipeline_types[1]
    assert prod.label == "Production Pipeline"
    assert prod.sources == ["schedule"]


def test_duration_and_feedback_percentiles():
    runs = [_standard_run(1, build=10.0, test=20.0), _standard_run(2, build=30.0, test=40.0)]
    metrics = _insights(runs).pipeline_types[0].metrics

    assert metrics.duration_p50 == 30.0
    assert metrics.duration_p99 == 70.0
    # first feedback: lint finishes after 5s in both runs
    assert metrics.time_to_feedback_p50 == 5.0


def test_job_metrics_sorted_by_feedback_p95():
    runs = [_standard_run(1, build=10.0, test=20.0), _standard_run(2, build=30.0, test=40.0)]
    jobs = _insights(runs).pipeline_types[0].metrics.jobs

    assert [j.name for j in jobs] == ["test", "build", "lint"]
    test_job = jobs[0]
    assert test_job.time_to_feedback_p50 == 30.0
    assert test_job.time_to_feedback_p95 == 70.0
    assert test_job.duration_p50 == 20.0
    assert [p.name for p in test_job.predecessors] == ["build", "lint"]
    assert test_job.predecessors[0].duration_p50 == 10.0


def test_critical_path_is_most_common_chain():
    runs = [
        _standard_run(1, build=10.0),
        _standard_run(2, build=12.0),
        _standard_run(3, build=2.0),
    ]
    jobs = {j.name: j for j in _insights(runs).pipeline_types[0].metrics.jobs}

    # lint (5s) only outlasts build in run 3
    assert jobs["test"].critical_path == ["build", "test"]
    assert jobs["lint"].critical_path == ["lint"]


def test_critical_path_empty_without_successful_runs():
    jobs = _insights([_standard_run(1, status="failed")]).pipeline_types[0].metrics.jobs
    assert all(j.critical_path == [] for j in jobs)


def test_flaky_job_links_and_rates():
    runs = [_standard_run(n, lint_attempts=("failed", "success")) for n in (1, 2, 3, 4)]
    runs.append(_standard_run(5))
    insights = _insights(runs)
    lint = next(j for j in insights.pipeline_types[0].metrics.jobs if j.name == "lint")

    assert lint.total_executions == 9
    assert lint.flaky_retries.count == 4
    assert lint.flakiness_rate == 44.44
    assert lint.failure_rate == 0.0
    assert lint.flaky_retries.links[0] == f"{BASE}/{PROJECT}/-/jobs/110"


def test_failed_executions_come_from_all_runs():
    runs = [_standard_run(1), _standard_run(2, status="failed")]
    jobs = _insights(runs).pipeline_types[0].metrics.jobs
    test_job = next(j for j in jobs if j.name == "test")

    assert test_job.failed_executions.count == 1
    assert test_job.failure_rate == 50.0
    assert test_job.failed_executions.links == [f"{BASE}/{PROJECT}/-/jobs/202"]


def test_type_without_successful_runs_has_zero_placeholders():
    runs = [_standard_run(1, status="failed")]
    metrics = _insights(runs).pipeline_types[0].metrics

    assert metrics.success_rate == 0.0
    assert metrics.duration_p50 == 0.0
    assert metrics.time_to_feedback_p99 == 0.0
    assert all(j.duration_p95 == 0.0 for j in metrics.jobs)


def test_cycle_excludes_pipeline_from_feedback():
    good = _standard_run(1)
    pid = "gid://gitlab/Ci::Pipeline/2"
    cyclic = PipelineRun(
        id=pid, status="success", stages=["build", "test"], duration=99.0,
        jobs=[
            _job(pid, 201, "build", "build", 10.0, needs=["test"]),
            _job(pid, 202, "test", "test", 20.0, needs=["build"]),
            _job(pid, 210, "lint", "build", 5.0, needs=[]),
        ],
    )
    insights = _insights([good, cyclic])

    assert insights.completeness.feedback_excluded_ids == [pid]
    metrics = insights.pipeline_types[0].metrics
    assert metrics.successful_pipelines.count == 2
    test_job = next(j for j in metrics.jobs if j.name == "test")
    assert test_job.time_to_feedback_p99 == 30.0


def test_completeness_block():
    runs = [_standard_run(1)]
    failure = PipelineFetchFailure(
        pipeline_id="gid://gitlab/Ci::Pipeline/9", error_type="TransientFetchError", reason="HTTP 503",
    )
    insights = _insights(
        runs,
        failures=[failure],
        skipped_ids=["gid://gitlab/Ci::Pipeline/10"],
        cache_hits=1,
        sampling=SamplingReport(successful_requested=1, successful_listed=1),
    )
    completeness = insights.completeness

    assert completeness.fetched_pipelines == 1
    assert completeness.cache_hits == 1
    assert completeness.failures == [failure]
    assert completeness.is_complete is False
    assert completeness.summary() == "1 of 1 pipelines fetched"


def test_json_contract_keys():
    data = _insights([_standard_run(1)]).model_dump(mode="json")

    assert set(data) >= {
        "provider", "project", "collected_at", "total_pipelines",
        "total_pipeline_types", "pipeline_types", "completeness",
    }
    job = data["pipeline_types"][0]["metrics"]["jobs"][0]
    assert set(job) == {
        "name", "duration_p50", "duration_p95", "duration_p99",
        "time_to_feedback_p50", "time_to_feedback_p95", "time_to_feedback_p99",
        "predecessors", "critical_path", "flakiness_rate", "flaky_retries", "failed_executions",
        "failure_rate", "total_executions",
    }
    assert data["provider"] == "GitLab"
