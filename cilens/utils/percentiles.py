"""
Percentile Engine
=================
Nearest-rank percentiles over a numeric sample.

Rules:
    - Sort ascending, rank = ceil(p * n / 100), clamped to [1, n].
    - Return the value at that rank. No interpolation.
    - Deterministic and stable under duplicate values.
    - Empty samples are a caller error (ValueError).
"""
from typing import NamedTuple, Sequence

from cilens.core.constants import PERCENTILES


class MetricTriple(NamedTuple):
    p50: float
    p95: float
    p99: float


EMPTY_TRIPLE = MetricTriple(0.0, 0.0, 0.0)


def _nearest_rank_index(p: int, n: int) -> int:
    # Integer ceil keeps 95 * 20 / 100 == 19 exact
    rank = -(-p * n // 100)
    return min(max(rank, 1), n) - 1


def percentile(samples: Sequence[float], p: int) -> float:
    """
    Compute the p-th percentile of ``samples`` with the nearest-rank method.

    Parameters
    ----------
    samples : Sequence[float]
        Non-empty sample of observations.
    p : int
        Percentile in 1..100 (50, 95 and 99 are the ones reported).

    Returns
    -------
    float
        The sample value at rank ceil(p * n / 100).
    """
    if not samples:
        raise ValueError("percentile requires a non-empty sample")
    if not 0 < p <= 100:
        raise ValueError(f"percentile must be in (0, 100], got {p}")
    ordered = sorted(samples)
    return float(ordered[_nearest_rank_index(p, len(ordered))])


def percentile_triple(samples: Sequence[float]) -> MetricTriple:
    """Return (p50, p95, p99) for a non-empty sample, sorting only once."""
    if not samples:
        raise ValueError("percentile_triple requires a non-empty sample")
    ordered = sorted(samples)
    n = len(ordered)
    return MetricTriple(*(float(ordered[_nearest_rank_index(p, n)]) for p in PERCENTILES))


def triple_or_empty(samples: Sequence[float]) -> MetricTriple:
    """percentile_triple, with zeros standing in for an empty sample."""
    return percentile_triple(samples) if samples else EMPTY_TRIPLE
