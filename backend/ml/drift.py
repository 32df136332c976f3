"""
Drift statistics — two-sample comparisons used by the feature store.

  - ks_statistic: max |F_base(x) - F_cmp(x)| over the sorted union of samples
  - population_stability_index: Σ (p_cmp − p_base)·ln(p_cmp / p_base), with
    zero frequencies floored so the log stays finite
  - feature_drift: dispatch by feature type, insufficient-data handling
"""

from collections import Counter
from collections.abc import Hashable, Sequence
from typing import Any

import numpy as np

from db.models import DriftMethod, FeatureDriftResult, FeatureType

DEFAULT_DRIFT_THRESHOLD = 0.1
DEFAULT_PSI_FLOOR = 0.0001


def ks_statistic(baseline: Sequence[float], comparison: Sequence[float]) -> float:
    """Kolmogorov–Smirnov statistic between two numeric samples."""
    base = np.sort(np.asarray(baseline, dtype=float))
    cmp_ = np.sort(np.asarray(comparison, dtype=float))
    if base.size == 0 or cmp_.size == 0:
        raise ValueError("ks_statistic requires two non-empty samples")

    support = np.unique(np.concatenate([base, cmp_]))
    cdf_base = np.searchsorted(base, support, side="right") / base.size
    cdf_cmp = np.searchsorted(cmp_, support, side="right") / cmp_.size
    return float(np.max(np.abs(cdf_base - cdf_cmp)))


def distribution(values: Sequence[Hashable]) -> dict[Hashable, float]:
    counts = Counter(values)
    total = len(values)
    return {value: count / total for value, count in counts.items()}


def population_stability_index(
    baseline: Sequence[Hashable],
    comparison: Sequence[Hashable],
    floor: float = DEFAULT_PSI_FLOOR,
) -> float:
    """PSI between two categorical samples. Identical distributions give 0."""
    if not baseline or not comparison:
        raise ValueError("population_stability_index requires two non-empty samples")

    base_dist = distribution(baseline)
    cmp_dist = distribution(comparison)

    psi = 0.0
    for value in set(base_dist) | set(cmp_dist):
        p_base = base_dist.get(value) or floor
        p_cmp = cmp_dist.get(value) or floor
        psi += (p_cmp - p_base) * float(np.log(p_cmp / p_base))
    return psi


def feature_drift(
    feature_type: FeatureType,
    baseline: list[Any],
    comparison: list[Any],
    threshold: float = DEFAULT_DRIFT_THRESHOLD,
    psi_floor: float = DEFAULT_PSI_FLOOR,
) -> FeatureDriftResult:
    """Drift of one feature between two windows. Null values are ignored."""
    base = [v for v in baseline if v is not None]
    cmp_ = [v for v in comparison if v is not None]

    if not base or not cmp_:
        return FeatureDriftResult(
            drift_score=1.0,
            is_drift=True,
            method=DriftMethod.INSUFFICIENT_DATA,
            baseline_count=len(base),
            comparison_count=len(cmp_),
        )

    if feature_type == FeatureType.NUMERICAL:
        score = ks_statistic(base, cmp_)
        method = DriftMethod.KOLMOGOROV_SMIRNOV
    else:
        score = population_stability_index(_hashable(base), _hashable(cmp_), floor=psi_floor)
        method = DriftMethod.POPULATION_STABILITY_INDEX

    return FeatureDriftResult(
        drift_score=score,
        is_drift=score > threshold,
        method=method,
        baseline_count=len(base),
        comparison_count=len(cmp_),
    )


def _hashable(values: list[Any]) -> list[Hashable]:
    # time series / image payloads arrive as lists or dicts; compare them by value
    return [v if isinstance(v, (str, int, float)) else repr(v) for v in values]
