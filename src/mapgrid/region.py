"""
Circular source regions: containment predicate, bounds and peak centroiding.

The containment test is done in index space: a cell (i, j) is inside when its
distance to the center index is at most radius / sqrt(px * py). For
non-square pixels this is an ellipse on the sky.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, replace
from typing import NamedTuple

import numpy as np

from .grid import BBox, CoordinateGrid


class PeakRefinementError(RuntimeError):
    """The seed cell is not a local peak (fitted offset beyond half a cell)."""


class PeakFit(NamedTuple):
    di: float
    dj: float
    value: float
    significance: float


@dataclass(frozen=True)
class CircularRegion:
    """
    Args:
      center: coordinate in the projection of the grids it is used with.
      radius: radius in grid offset units.
      radius_rms: uncertainty of the radius.
    """

    center: tuple[float, float]
    radius: float
    radius_rms: float = 0.0

    def __post_init__(self):
        if not self.radius > 0.0:
            raise ValueError(f"radius must be > 0, got {self.radius}.")

    def index_center(self, grid: CoordinateGrid) -> tuple[float, float]:
        fi, fj = grid.to_index(self.center)
        return float(fi), float(fj)

    def index_radius(self, grid: CoordinateGrid) -> float:
        px, py = grid.pixel_size
        return self.radius / math.sqrt(px * py)

    def is_inside(self, grid: CoordinateGrid, i: float, j: float) -> bool:
        ci, cj = self.index_center(grid)
        return math.hypot(i - ci, j - cj) <= self.index_radius(grid)

    def bounding_box(self, image) -> BBox:
        """Inclusive index box around the region, clipped to the image."""
        ci, cj = self.index_center(image.grid)
        px, py = image.grid.pixel_size
        r = self.index_radius(image.grid)
        dx = max(self.radius / px, r)
        dy = max(self.radius / py, r)
        box = BBox(
            ix0=max(0, int(math.floor(ci - dx))),
            ix1=min(image.size_x - 1, int(math.ceil(ci + dx))),
            iy0=max(0, int(math.floor(cj - dy))),
            iy1=min(image.size_y - 1, int(math.ceil(cj + dy))),
        )
        if box.nx <= 0 or box.ny <= 0:
            raise ValueError(f"Region at index ({ci:.2f}, {cj:.2f}) does not overlap the {image.size_x}x{image.size_y} grid.")
        return box

    def mask(self, image) -> tuple[BBox, np.ndarray]:
        """(bounding box, containment mask over the box)."""
        box = self.bounding_box(image)
        ci, cj = self.index_center(image.grid)
        ii = np.arange(box.ix0, box.ix1 + 1, dtype=np.float64)[:, None]
        jj = np.arange(box.iy0, box.iy1 + 1, dtype=np.float64)[None, :]
        return box, np.hypot(ii - ci, jj - cj) <= self.index_radius(image.grid)

    def refine_peak(self, image) -> PeakFit:
        """
        Sub-cell peak position from parabolas through the S/N of the cell
        nearest the center and its two neighbours along each axis.

        An axis whose neighbours are not both valid keeps a zero offset.
        Raises PeakRefinementError if either offset exceeds half a cell.
        """
        ci, cj = self.index_center(image.grid)
        i, j = int(math.floor(ci + 0.5)), int(math.floor(cj + 0.5))
        if not image.is_valid(i, j):
            raise PeakRefinementError(f"Peak cell ({i}, {j}) is not valid.")

        y0 = image.significance_at(i, j)
        a = b = c = d = 0.0
        if image.is_valid(i + 1, j) and image.is_valid(i - 1, j):
            yp, ym = image.significance_at(i + 1, j), image.significance_at(i - 1, j)
            a = 0.5 * (yp + ym) - y0
            c = 0.5 * (yp - ym)
        if image.is_valid(i, j + 1) and image.is_valid(i, j - 1):
            yp, ym = image.significance_at(i, j + 1), image.significance_at(i, j - 1)
            b = 0.5 * (yp + ym) - y0
            d = 0.5 * (yp - ym)

        di = -0.5 * c / a if a != 0.0 else 0.0
        dj = -0.5 * d / b if b != 0.0 else 0.0
        if abs(di) > 0.5 or abs(dj) > 0.5:
            raise PeakRefinementError(f"Cell ({i}, {j}) is not a local peak (offset {di:.2f}, {dj:.2f}).")

        significance = y0 + (a * di + c) * di + (b * dj + d) * dj
        value = image.interpolated_value_at(i + di, j + dj)
        if math.isnan(value):
            value = image.value_at(i, j)
        return PeakFit(di, dj, value, significance)

    def move_to_peak(self, image) -> "CircularRegion":
        """
        Region recentered on the highest-S/N valid cell inside it, refined to
        sub-cell precision when all four neighbours of that cell are inside.
        """
        ci, cj = self.index_center(image.grid)
        if not image.contains_index(int(math.floor(ci + 0.5)), int(math.floor(cj + 0.5))):
            raise ValueError("Region center falls outside of the grid.")
        box, inside = self.mask(image)
        s2n = np.where(inside & (image.flags[box.slices] == 0), image.significance_image().values[box.slices], -np.inf)
        k = int(np.argmax(s2n))
        if not np.isfinite(s2n.flat[k]):
            raise PeakRefinementError("No valid peak in the search area.")
        i, j = np.unravel_index(k, s2n.shape)
        i, j = int(i) + box.ix0, int(j) + box.iy0

        grid = image.grid
        moved = replace(self, center=_coordinate(grid, i, j))
        neighbours = ((i + 1, j), (i - 1, j), (i, j + 1), (i, j - 1))
        if all(moved.is_inside(grid, a, b) for a, b in neighbours):
            fit = moved.refine_peak(image)
            moved = replace(self, center=_coordinate(grid, i + fit.di, j + fit.dj))
        return moved


def _coordinate(grid: CoordinateGrid, fi: float, fj: float) -> tuple[float, float]:
    x, y = grid.to_coordinate(fi, fj)
    return float(x), float(y)
