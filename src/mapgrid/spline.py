"""
Cubic (Catmull-Rom type) spline taps for grid interpolation.

  w(d) = (1.5 d - 2.5) d^2 + 1          d <= 1
  w(d) = ((-0.5 d + 2.5) d - 4) d + 2   1 < d < 2
  w(d) = 0                              otherwise

The four taps of one axis depend only on the fractional part of the index, so
they are cached on it. A cache is not thread-safe: every worker owns its own
`InterpolatorCache`.
"""

from __future__ import annotations

import math

import numpy as np


def spline_weight(d: float) -> float:
    d = abs(d)
    if d <= 1.0:
        return (1.5 * d - 2.5) * d * d + 1.0
    if d < 2.0:
        return ((-0.5 * d + 2.5) * d - 4.0) * d + 2.0
    return 0.0


class SplineCoeffs:
    """Taps of one axis: `center_on(x)` -> (first tap index, 4 weights)."""

    __slots__ = ("_frac", "_weights")

    def __init__(self):
        self._frac = math.nan
        self._weights = np.zeros(4)

    def center_on(self, x: float) -> tuple[int, np.ndarray]:
        i = math.floor(x)
        frac = x - i
        if frac != self._frac:
            self._weights = np.array(
                [
                    spline_weight(1.0 + frac),
                    spline_weight(frac),
                    spline_weight(1.0 - frac),
                    spline_weight(2.0 - frac),
                ]
            )
            self._frac = frac
        return i - 1, self._weights


class InterpolatorCache:
    __slots__ = ("x", "y")

    def __init__(self):
        self.x = SplineCoeffs()
        self.y = SplineCoeffs()
