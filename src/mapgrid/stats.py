"""
Order statistics and noise estimators on flat arrays of valid samples.

Empty inputs give NaN rather than raising.
"""

from __future__ import annotations

import math
from typing import NamedTuple

import numpy as np
from scipy.special import erfinv

# median(x^2) / sigma^2 for a zero-mean Gaussian.
MEDIAN_SQUARE_GAUSS = 0.454937


class DataPoint(NamedTuple):
    """Value with its 1-sigma uncertainty."""

    value: float
    rms: float

    @property
    def significance(self) -> float:
        return self.value / self.rms if self.rms > 0.0 else math.nan


def select(values: np.ndarray, fraction: float) -> float:
    """Nearest-rank order statistic: sorted(values)[round(fraction * (n - 1))]."""
    v = np.sort(np.asarray(values, dtype=np.float64).reshape(-1))
    if v.size == 0:
        return math.nan
    fraction = min(1.0, max(0.0, float(fraction)))
    return float(v[int(round(fraction * (v.size - 1)))])


def median(values: np.ndarray) -> float:
    v = np.asarray(values, dtype=np.float64).reshape(-1)
    if v.size == 0:
        return math.nan
    return float(np.median(v))


def robust_rms(values: np.ndarray) -> float:
    """sqrt(median(x^2) / 0.454937); insensitive to a small fraction of outliers."""
    v = np.asarray(values, dtype=np.float64).reshape(-1)
    if v.size == 0:
        return math.nan
    return math.sqrt(float(np.median(v * v)) / MEDIAN_SQUARE_GAUSS)


def weighted_median(values: np.ndarray, weights: np.ndarray) -> DataPoint:
    """
    Median of values under weights, with rms 1/sqrt(sum w).

    The median is the first sorted value at which the cumulative weight reaches
    half of the total; when it lands exactly on half, the midpoint with the next
    value is returned.
    """
    v = np.asarray(values, dtype=np.float64).reshape(-1)
    w = np.asarray(weights, dtype=np.float64).reshape(-1)
    if v.shape != w.shape:
        raise ValueError("values and weights must have the same size.")
    keep = w > 0.0
    v, w = v[keep], w[keep]
    if v.size == 0:
        return DataPoint(math.nan, math.nan)
    order = np.argsort(v, kind="stable")
    v, w = v[order], w[order]
    total = float(np.sum(w))
    cum = np.cumsum(w)
    k = int(np.searchsorted(cum, 0.5 * total))
    k = min(k, v.size - 1)
    value = float(v[k])
    if math.isclose(float(cum[k]), 0.5 * total) and k + 1 < v.size:
        value = 0.5 * (value + float(v[k + 1]))
    return DataPoint(value, 1.0 / math.sqrt(total))


def critical_significance(confidence: float) -> float:
    """Two-sided Gaussian level s with P(|x| < s) = confidence."""
    if not 0.0 < confidence < 1.0:
        raise ValueError(f"confidence must be in (0, 1), got {confidence}.")
    return float(math.sqrt(2.0) * erfinv(confidence))
