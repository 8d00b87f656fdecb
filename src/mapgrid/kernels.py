"""
Gaussian beams and small convolution kernels.

Conventions:
  - FWHM and pixel sizes share the grid's offset units.
  - Kernels are indexed [di, dj] with the center at ((nx-1)/2, (ny-1)/2).
  - Gaussian kernels are peak-normalized (center value 1).
"""

from __future__ import annotations

import math

import numpy as np

SIGMAS_IN_FWHM = 2.0 * math.sqrt(2.0 * math.log(2.0))
# Side of the square with the area of a unit-FWHM Gaussian beam.
FWHM2SIZE = math.sqrt(2.0 * math.pi) / SIGMAS_IN_FWHM


def gaussian_kernel(sigma_x: float, sigma_y: float, *, extent: float = 3.0) -> np.ndarray:
    """
    Gaussian with sigmas in cells, truncated at `extent` sigma per axis.

    A zero sigma gives a single-cell (unsmoothed) axis.
    """
    if not (sigma_x >= 0.0 and sigma_y >= 0.0):
        raise ValueError(f"Kernel sigmas must be >= 0, got ({sigma_x}, {sigma_y}).")
    return np.outer(_gaussian_1d(sigma_x, extent), _gaussian_1d(sigma_y, extent))


def _gaussian_1d(sigma: float, extent: float) -> np.ndarray:
    if sigma == 0.0:
        return np.ones(1)
    h = int(math.ceil(extent * sigma))
    d = np.arange(-h, h + 1, dtype=np.float64) / sigma
    return np.exp(-0.5 * d * d)


def gaussian_beam(fwhm: float, pixel_size, *, extent: float = 2.0) -> np.ndarray:
    """Beam of the given FWHM sampled on cells of size pixel_size=(px, py)."""
    px, py = float(pixel_size[0]), float(pixel_size[1])
    sigma = fwhm / SIGMAS_IN_FWHM
    return gaussian_kernel(sigma / px, sigma / py, extent=extent)


def beam_area(fwhm: float) -> float:
    return (FWHM2SIZE * fwhm) ** 2


def pixel_fwhm(pixel_size) -> float:
    """FWHM of a Gaussian whose area equals one pixel."""
    return math.sqrt(float(pixel_size[0]) * float(pixel_size[1])) / FWHM2SIZE


def neighbour_kernel() -> np.ndarray:
    """Four nearest neighbours, center excluded."""
    return np.array([[0.0, 1.0, 0.0], [1.0, 0.0, 1.0], [0.0, 1.0, 0.0]])
