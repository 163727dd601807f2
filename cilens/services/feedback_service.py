"""
Time-to-Feedback Calculator
===========================
Elapsed time from pipeline start until each job's result is observable.

    finish(job) = max(finish(p) for p in predecessors(job), default 0) + duration(job)

Dependency edges:
    - Explicit `needs` when the job declares them (unknown names ignored,
      `needs: []` means no predecessors)
    - Otherwise stage ordering: every job of the nearest preceding stage
      that has jobs

Graph:
    - One node per job name, the final attempt (highest retry_index)
    - Jobs live in a list; predecessors are index lists into it
    - Evaluation is an explicit-stack DFS with a memo table, so deep
      chains never hit the recursion limit
    - A node revisited while still in progress is a cycle → DependencyCycleError
"""
import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

from cilens.core.constants import JOB_SUCCESS
from cilens.core.exceptions import DependencyCycleError
from cilens.models.pipeline import JobExecution, PipelineRun

logger = logging.getLogger(__name__)

_UNVISITED, _IN_PROGRESS, _DONE = 0, 1, 2


@dataclass(frozen=True)
class JobFeedback:
    name: str
    duration: float
    finish_time: float
    predecessors: Tuple[str, ...]
    critical_predecessor: Optional[str]
    status: str


@dataclass
class PipelineFeedback:
    pipeline_id: str
    jobs: Dict[str, JobFeedback]

    def critical_path(self, name: str) -> List[str]:
        """
        Chain of slowest predecessors leading to ``name``, earliest job first.

        Returns an empty list for unknown job names.
        """
        path: List[str] = []
        current: Optional[str] = name
        while current is not None and current in self.jobs:
            path.append(current)
            current = self.jobs[current].critical_predecessor
        path.reverse()
        return path

    @property
    def first_feedback(self) -> Optional[float]:
        """Earliest finish time among successful jobs, None if none succeeded."""
        times = [j.finish_time for j in self.jobs.values() if j.status == JOB_SUCCESS]
        return min(times) if times else None


# ---------------------------------------------------------------------------
# Graph construction
# ---------------------------------------------------------------------------
def final_attempts(pipeline: PipelineRun) -> List[JobExecution]:
    """Latest attempt of every job name, in first-seen order."""
    latest: Dict[str, JobExecution] = {}
    for job in pipeline.jobs:
        current = latest.get(job.name)
        if current is None or job.retry_index >= current.retry_index:
            latest[job.name] = job
    return list(latest.values())


def stage_order(pipeline: PipelineRun, jobs: List[JobExecution]) -> List[str]:
    """The run's stage list, then any job stage it does not mention."""
    order = [s for s in pipeline.stages if s]
    for job in jobs:
        if job.stage and job.stage not in order:
            order.append(job.stage)
    return order


def build_dependency_graph(pipeline: PipelineRun) -> Tuple[List[JobExecution], List[List[int]]]:
    """
    Returns
    -------
    (jobs, predecessors)
        ``predecessors[i]`` lists the indices ``jobs[i]`` waits for.
    """
    jobs = final_attempts(pipeline)
    index = {job.name: i for i, job in enumerate(jobs)}

    stages = stage_order(pipeline, jobs)
    by_stage: Dict[str, List[int]] = {stage: [] for stage in stages}
    for i, job in enumerate(jobs):
        if job.stage:
            by_stage[job.stage].append(i)

    predecessors: List[List[int]] = []
    for job in jobs:
        if job.needs is not None:
            names = dict.fromkeys(job.needs)
            predecessors.append([index[n] for n in names if n in index])
            continue

        preds: List[int] = []
        if job.stage:
            position = stages.index(job.stage)
            for earlier in reversed(stages[:position]):
                if by_stage[earlier]:
                    preds = list(by_stage[earlier])
                    break
        predecessors.append(preds)

    return jobs, predecessors


# ---------------------------------------------------------------------------
# Evaluation
# ---------------------------------------------------------------------------
def calculate_feedback(pipeline: PipelineRun) -> PipelineFeedback:
    """
    Compute finish times for every job of one pipeline.

    Raises
    ------
    DependencyCycleError
        If the job graph contains a cycle.
    """
    jobs, predecessors = build_dependency_graph(pipeline)
    n = len(jobs)
    finish: List[float] = [0.0] * n
    critical: List[Optional[int]] = [None] * n
    state = [_UNVISITED] * n

    for root in range(n):
        if state[root] == _DONE:
            continue
        state[root] = _IN_PROGRESS
        stack: List[Tuple[int, int]] = [(root, 0)]

        while stack:
            node, position = stack[-1]
            preds = predecessors[node]

            if position < len(preds):
                stack[-1] = (node, position + 1)
                pred = preds[position]
                if state[pred] == _IN_PROGRESS:
                    on_stack = [i for i, _ in stack]
                    cycle = [jobs[i].name for i in on_stack[on_stack.index(pred):]]
                    raise DependencyCycleError(pipeline.id, cycle + [jobs[pred].name])
                if state[pred] == _UNVISITED:
                    state[pred] = _IN_PROGRESS
                    stack.append((pred, 0))
                continue

            slowest: Optional[int] = None
            for pred in preds:
                if slowest is None or finish[pred] > finish[slowest]:
                    slowest = pred
            wait = finish[slowest] if slowest is not None else 0.0
            finish[node] = wait + jobs[node].duration
            critical[node] = slowest
            state[node] = _DONE
            stack.pop()

    return PipelineFeedback(
        pipeline_id=pipeline.id,
        jobs={
            job.name: JobFeedback(
                name=job.name,
                duration=job.duration,
                finish_time=finish[i],
                predecessors=tuple(jobs[p].name for p in predecessors[i]),
                critical_predecessor=jobs[critical[i]].name if critical[i] is not None else None,
                status=job.status,
            )
            for i, job in enumerate(jobs)
        },
    )
