"""
Pipeline Classifier
===================
Groups pipeline runs into "types" by the set of job names they ran.

Grouping Strategy:
    1. EXACT SIGNATURE FIRST — sorted unique job names, case-sensitive
    2. OPTIONAL SIMILARITY MERGE — Jaccard index over signatures, strictly
       above the threshold, greedy in descending group size
    3. PERCENTAGE FILTER LAST — types under min_type_percentage are dropped
       but still counted in total_pipelines

Labels (heuristic, case-insensitive on job names):
    "prod"                          → Production Pipeline
    "staging" / "dev" / "test" / "qa" → Development Pipeline
    otherwise                        → Pipeline: <first three job names>
"""
import logging
from collections import Counter
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Tuple

from cilens.core.constants import DEFAULT_MIN_TYPE_PERCENTAGE
from cilens.models.pipeline import PipelineRun

logger = logging.getLogger(__name__)

Signature = Tuple[str, ...]

_PRODUCTION_MARKERS = ("prod",)
_DEVELOPMENT_MARKERS = ("staging", "dev", "test", "qa")


# ---------------------------------------------------------------------------
# Result types
# ---------------------------------------------------------------------------
@dataclass
class PipelineType:
    label: str
    signature: Signature
    runs: List[PipelineRun]
    percentage: float
    stages: List[str] = field(default_factory=list)
    ref_patterns: List[str] = field(default_factory=list)
    sources: List[str] = field(default_factory=list)

    @property
    def count(self) -> int:
        return len(self.runs)


@dataclass
class Classification:
    types: List[PipelineType]
    total_pipelines: int
    filtered_out_count: int


# ---------------------------------------------------------------------------
# Signatures
# ---------------------------------------------------------------------------
def job_signature(run: PipelineRun) -> Signature:
    """Sorted tuple of the unique job names a run executed."""
    return tuple(sorted({job.name for job in run.jobs}))


def jaccard_similarity(a: Iterable[str], b: Iterable[str]) -> float:
    """|A ∩ B| / |A ∪ B|; two empty signatures are identical."""
    set_a, set_b = set(a), set(b)
    union = set_a | set_b
    if not union:
        return 1.0
    return len(set_a & set_b) / len(union)


def type_label(signature: Signature) -> str:
    lowered = [name.lower() for name in signature]
    if any(marker in name for name in lowered for marker in _PRODUCTION_MARKERS):
        return "Production Pipeline"
    if any(marker in name for name in lowered for marker in _DEVELOPMENT_MARKERS):
        return "Development Pipeline"
    if not signature:
        return "Pipeline: (no jobs)"
    return "Pipeline: " + ", ".join(signature[:3])


def _ordered_union(values: Iterable[str]) -> List[str]:
    seen: Dict[str, None] = {}
    for value in values:
        if value:
            seen.setdefault(value, None)
    return list(seen)


def _by_frequency(values: Iterable[str]) -> List[str]:
    counts = Counter(v for v in values if v)
    return [v for v, _ in sorted(counts.items(), key=lambda kv: (-kv[1], kv[0]))]


def _dedupe_labels(types: List[PipelineType]) -> None:
    seen: Counter = Counter()
    for ptype in types:
        seen[ptype.label] += 1
        if seen[ptype.label] > 1:
            ptype.label = f"{ptype.label} ({seen[ptype.label]})"


# ---------------------------------------------------------------------------
# Grouping
# ---------------------------------------------------------------------------
def _exact_groups(pipelines: List[PipelineRun]) -> Dict[Signature, List[PipelineRun]]:
    groups: Dict[Signature, List[PipelineRun]] = {}
    for run in pipelines:
        groups.setdefault(job_signature(run), []).append(run)
    return groups


def _merge_similar(
    groups: Dict[Signature, List[PipelineRun]], threshold: float
) -> Dict[Signature, List[PipelineRun]]:
    clusters: Dict[Signature, List[PipelineRun]] = {}
    ordered = sorted(groups.items(), key=lambda kv: (-len(kv[1]), kv[0]))
    for signature, runs in ordered:
        for seed in clusters:
            if jaccard_similarity(seed, signature) > threshold:
                clusters[seed].extend(runs)
                break
        else:
            clusters[signature] = list(runs)
    if len(clusters) < len(groups):
        logger.debug("Similarity merge: %d signatures → %d clusters", len(groups), len(clusters))
    return clusters


def classify_pipelines(
    pipelines: List[PipelineRun],
    min_type_percentage: float = DEFAULT_MIN_TYPE_PERCENTAGE,
    similarity_threshold: Optional[float] = None,
) -> Classification:
    """
    Partition runs into pipeline types.

    Parameters
    ----------
    pipelines : List[PipelineRun]
        Runs with their jobs.
    min_type_percentage : float
        Types whose share of all runs is below this are dropped.
    similarity_threshold : float, optional
        Enables Jaccard merging of near-identical signatures.

    Returns
    -------
    Classification
        Types ordered by member count descending, then signature.
    """
    total = len(pipelines)
    groups = _exact_groups(pipelines)
    if similarity_threshold is not None:
        groups = _merge_similar(groups, similarity_threshold)

    types: List[PipelineType] = []
    filtered_out = 0
    for signature, runs in groups.items():
        share = 100.0 * len(runs) / max(total, 1)
        if share < min_type_percentage:
            filtered_out += len(runs)
            continue
        types.append(PipelineType(
            label=type_label(signature),
            signature=signature,
            runs=runs,
            percentage=round(share, 2),
            stages=_ordered_union(
                stage
                for run in runs
                for stage in list(run.stages) + [job.stage for job in run.jobs]
            ),
            ref_patterns=_by_frequency(run.ref for run in runs),
            sources=_by_frequency(run.source for run in runs),
        ))

    types.sort(key=lambda t: (-t.count, t.signature))
    _dedupe_labels(types)

    if filtered_out:
        logger.info(
            "%d pipelines fell below the %.2f%% type threshold", filtered_out, min_type_percentage
        )
    logger.info("Classified %d pipelines into %d types", total, len(types))
    return Classification(types=types, total_pipelines=total, filtered_out_count=filtered_out)
