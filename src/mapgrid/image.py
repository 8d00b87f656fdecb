"""
Flagged numeric grid: a 2D scalar field with a parallel validity-flag field.

Storage:
  values: (size_x, size_y) float64, indexed [i, j]
  flags:  (size_x, size_y) uint32, 0 = valid, any set bit excludes the cell

A flagged cell may hold stale values; every algorithm here re-checks flags
before reading. Per-cell passes and statistics reductions run as `RowTask`s
through `mapgrid.parallel.process` (one row = all j for a fixed i).

Resolution bookkeeping (offset units of the grid):
  smooth_fwhm      effective FWHM of the image, at least the pixel FWHM
  ext_filter_fwhm  FWHM of the large-scale filter applied so far (NaN: none)
  correcting_fwhm  FWHM the filter correction was applied for (NaN: none)
"""

from __future__ import annotations

import copy
import logging
import math
import operator
from dataclasses import dataclass

import numpy as np
from scipy import ndimage

from . import stats
from .grid import BBox, CoordinateGrid
from .kernels import beam_area, gaussian_beam, gaussian_kernel, pixel_fwhm, FWHM2SIZE, SIGMAS_IN_FWHM
from .parallel import RowTask, process
from .spline import InterpolatorCache

LOGGER = logging.getLogger(__name__)

FLAG_NODATA = 1
FLAG_CLIPPED = 2
FLAG_SPIKE = 4
FLAG_REGION = 8

INTERPOLATIONS = ("nearest", "bilinear", "quadratic", "spline")

# Stop CLEAN once a peak is less than 70% likely to be real.
CLEAN_CONFIDENCE = 0.7


@dataclass(frozen=True)
class Unit:
    """Named scale applied when values leave or enter the grid."""

    name: str = "U"
    value: float = 1.0


@dataclass(frozen=True)
class CleanResult:
    n_components: int
    components: np.ndarray
    last_peak: float
    critical: float
    capped: bool


def _round(x: float) -> int:
    return int(math.floor(x + 0.5))


def _add_pairs(a, b):
    return a[0] + b[0], a[1] + b[1]


def _pick_max(a, b):
    if a is None:
        return b
    if b is None:
        return a
    return b if b > a else a


class FlaggedImage:
    """
    Args:
      size_x, size_y: grid size, > 0. All cells start flagged (FLAG_NODATA).
      grid: coordinate grid (default: unit Cartesian grid).
      unit: I/O scale.
      interpolation: default mode of `interpolated_value_at`.
      n_workers: worker count for every pass (None: hardware parallelism).
    """

    def __init__(
        self,
        size_x: int,
        size_y: int,
        *,
        grid: CoordinateGrid | None = None,
        unit: Unit | None = None,
        interpolation: str = "spline",
        n_workers: int | None = None,
    ):
        if interpolation not in INTERPOLATIONS:
            raise ValueError(f"interpolation must be one of {INTERPOLATIONS}, got {interpolation!r}.")
        self.grid = grid if grid is not None else CoordinateGrid()
        self.unit = unit if unit is not None else Unit()
        self.interpolation = interpolation
        self.n_workers = n_workers
        self.interrupt = None
        self.set_size(size_x, size_y)
        self.reset_resolution()

    # --- Shape and state ---

    def set_size(self, size_x: int, size_y: int) -> None:
        size_x, size_y = int(size_x), int(size_y)
        if size_x <= 0 or size_y <= 0:
            raise ValueError(f"Grid size must be positive, got {size_x}x{size_y}.")
        self.values = np.zeros((size_x, size_y), dtype=np.float64)
        self.flags = np.full((size_x, size_y), FLAG_NODATA, dtype=np.uint32)

    def reset_resolution(self) -> None:
        self.smooth_fwhm = pixel_fwhm(self.grid.pixel_size)
        self.ext_filter_fwhm = math.nan
        self.correcting_fwhm = math.nan

    @property
    def size_x(self) -> int:
        return int(self.values.shape[0])

    @property
    def size_y(self) -> int:
        return int(self.values.shape[1])

    @property
    def shape(self) -> tuple[int, int]:
        return self.size_x, self.size_y

    def copy(self):
        out = copy.copy(self)
        out.values = self.values.copy()
        out.flags = self.flags.copy()
        out.grid = self.grid.copy()
        return out

    def blank_like(self, size_x: int, size_y: int, grid: CoordinateGrid):
        """Empty grid of the same kind and settings."""
        out = type(self)(
            size_x,
            size_y,
            grid=grid,
            unit=self.unit,
            interpolation=self.interpolation,
            n_workers=self.n_workers,
        )
        out.interrupt = self.interrupt
        return out

    def conforms_to(self, other: "FlaggedImage") -> bool:
        return self.shape == other.shape

    def clear(self) -> None:
        self.values[:] = 0.0
        self.flags[:] = FLAG_NODATA

    def _run(self, row, partial=None, reduce=None, n_rows: int | None = None):
        return process(
            RowTask(row, partial, reduce),
            self.size_x if n_rows is None else n_rows,
            n_workers=self.n_workers,
            interrupt=self.interrupt,
        )

    # --- Cell access ---

    def valid_mask(self) -> np.ndarray:
        return self.flags == 0

    def contains_index(self, i: int, j: int) -> bool:
        return 0 <= i < self.size_x and 0 <= j < self.size_y

    def is_valid(self, i: int, j: int) -> bool:
        return self.contains_index(i, j) and self.flags[i, j] == 0

    def value_at(self, i: int, j: int) -> float:
        """Stored value, or NaN for flagged or out-of-range cells."""
        if not self.is_valid(i, j):
            return math.nan
        return float(self.values[i, j])

    def significance_at(self, i: int, j: int) -> float:
        return self.value_at(i, j)

    def significance_image(self) -> "FlaggedImage":
        return self.copy()

    def cell_weights(self) -> np.ndarray:
        """Per-cell weight used by convolution and weighted averages (0 for flagged cells)."""
        return self.valid_mask().astype(np.float64)

    def to_array(self) -> np.ndarray:
        """Values in `unit`, NaN for flagged cells."""
        return np.where(self.valid_mask(), self.values / self.unit.value, np.nan)

    def load_array(self, data: np.ndarray, unit: Unit | None = None) -> None:
        """Replace contents from an array in `unit`; non-finite entries become flagged."""
        data = np.asarray(data, dtype=np.float64)
        if data.ndim != 2 or data.size == 0:
            raise ValueError(f"data must be a non-empty 2D array, got shape {data.shape}.")
        if unit is not None:
            self.unit = unit
        ok = np.isfinite(data)
        self.values = np.where(ok, data * self.unit.value, 0.0)
        self.flags = np.where(ok, 0, FLAG_NODATA).astype(np.uint32)

    # --- Flags ---

    def flag_mask(self, mask: np.ndarray, pattern: int = FLAG_NODATA) -> None:
        self.flags[np.asarray(mask, dtype=bool)] |= np.uint32(pattern)

    def unflag(self, pattern: int) -> None:
        self.flags &= np.uint32(~pattern & 0xFFFFFFFF)

    def sanitize(self) -> None:
        """Flag non-finite values and zero the contents of flagged cells."""
        self.flags[~np.isfinite(self.values)] |= np.uint32(FLAG_NODATA)
        self.values[self.flags != 0] = 0.0

    def _clip(self, test, pattern: int, data: np.ndarray | None = None) -> int:
        """Flag valid cells where test(data row) holds; returns the count."""
        data = self.values if data is None else data
        flags = self.flags
        bit = np.uint32(pattern)

        def row(i, n):
            with np.errstate(invalid="ignore"):
                hit = (flags[i] == 0) & test(data[i])
            flags[i][hit] |= bit
            return n + int(np.count_nonzero(hit))

        return self._run(row, partial=int, reduce=operator.add)

    def clip_below(self, level: float, pattern: int = FLAG_CLIPPED) -> int:
        """Flag valid cells with value < level. Values are left untouched."""
        return self._clip(lambda v: v < level, pattern)

    def clip_above(self, level: float, pattern: int = FLAG_CLIPPED) -> int:
        return self._clip(lambda v: v > level, pattern)

    def grow_flags(self, radius: float, pattern: int = FLAG_NODATA) -> None:
        """Extend each bit of `pattern` to all cells within `radius` (offset units)."""
        px, py = self.grid.pixel_size
        di = int(math.ceil(radius / px))
        dj = int(math.ceil(radius / py))
        ii, jj = np.meshgrid(np.arange(-di, di + 1), np.arange(-dj, dj + 1), indexing="ij")
        structure = np.hypot(ii * px, jj * py) <= radius
        for bit in range(32):
            b = np.uint32(1 << bit)
            if not pattern & int(b):
                continue
            hit = (self.flags & b) != 0
            if hit.any():
                self.flags[ndimage.binary_dilation(hit, structure=structure)] |= b

    # --- Geometry ---

    def crop(self, i0: int, j0: int, i1: int, j1: int) -> None:
        """
        Reallocate to the inclusive index rectangle [i0..i1] x [j0..j1].

        Contents and flags of the overlap are kept; cells outside the old extent
        are flagged. The grid reference index follows so coordinates stay put.
        """
        i0, j0, i1, j1 = int(i0), int(j0), int(i1), int(j1)
        if i1 < i0 or j1 < j0:
            raise ValueError(f"Empty crop rectangle ({i0},{j0})-({i1},{j1}).")
        values = np.zeros((i1 - i0 + 1, j1 - j0 + 1), dtype=np.float64)
        flags = np.full(values.shape, FLAG_NODATA, dtype=np.uint32)
        a0, a1 = max(i0, 0), min(i1, self.size_x - 1)
        b0, b1 = max(j0, 0), min(j1, self.size_y - 1)
        if a0 <= a1 and b0 <= b1:
            values[a0 - i0 : a1 - i0 + 1, b0 - j0 : b1 - j0 + 1] = self.values[a0 : a1 + 1, b0 : b1 + 1]
            flags[a0 - i0 : a1 - i0 + 1, b0 - j0 : b1 - j0 + 1] = self.flags[a0 : a1 + 1, b0 : b1 + 1]
        self._crop_extra(i0, j0, i1, j1, (a0, a1, b0, b1))
        self.values, self.flags = values, flags
        self.grid.shift_index(i0, j0)

    def _crop_extra(self, i0, j0, i1, j1, overlap) -> None:
        """Hook for subclasses carrying more per-cell arrays."""

    def valid_bbox(self) -> BBox | None:
        valid = self.valid_mask()
        rows = np.flatnonzero(valid.any(axis=1))
        cols = np.flatnonzero(valid.any(axis=0))
        if rows.size == 0:
            return None
        return BBox(ix0=int(rows[0]), ix1=int(rows[-1]), iy0=int(cols[0]), iy1=int(cols[-1]))

    def auto_crop(self) -> BBox:
        """Crop to the bounding box of the valid cells."""
        box = self.valid_bbox()
        if box is None:
            raise ValueError("No valid cells to crop to.")
        self.crop(box.ix0, box.iy0, box.ix1, box.iy1)
        return box

    # --- Arithmetic ---

    def scale(self, factor: float) -> None:
        valid = self.valid_mask()
        self.values[valid] *= factor

    def add_value(self, value: float) -> None:
        valid = self.valid_mask()
        self.values[valid] += value

    def add_image(self, other: "FlaggedImage", scale: float = 1.0) -> None:
        """Add `scale * other` where both grids are valid."""
        if not self.conforms_to(other):
            raise ValueError(f"Shape mismatch: {self.shape} vs {other.shape}.")
        both = self.valid_mask() & other.valid_mask()
        self.values[both] += scale * other.values[both]

    def level(self, robust: bool = False) -> float:
        """Subtract the mean (median if robust) of the valid cells; return it."""
        offset = self.median() if robust else self.mean()
        if math.isnan(offset):
            return offset
        self.add_value(-offset)
        return offset

    # --- Statistics ---

    def _reduce_valid(self, fn, init, merge):
        values, flags = self.values, self.flags

        def row(i, acc):
            v = values[i][flags[i] == 0]
            return merge(acc, fn(v)) if v.size else acc

        return self._run(row, partial=lambda: init, reduce=merge)

    def count_points(self) -> int:
        return self._reduce_valid(lambda v: int(v.size), 0, operator.add)

    def min(self) -> float:
        m = self._reduce_valid(lambda v: float(np.min(v)), math.inf, min)
        return m if math.isfinite(m) else math.nan

    def max(self) -> float:
        m = self._reduce_valid(lambda v: float(np.max(v)), -math.inf, max)
        return m if math.isfinite(m) else math.nan

    def range(self) -> tuple[float, float]:
        return self.min(), self.max()

    def mean(self) -> float:
        s, n = self._reduce_valid(lambda v: (float(np.sum(v)), int(v.size)), (0.0, 0), _add_pairs)
        return s / n if n else math.nan

    def rms(self) -> float:
        s, n = self._reduce_valid(lambda v: (float(np.sum(v * v)), int(v.size)), (0.0, 0), _add_pairs)
        return math.sqrt(s / n) if n else math.nan

    def valid_values(self) -> np.ndarray:
        values, flags = self.values, self.flags

        def row(i, acc):
            v = values[i][flags[i] == 0]
            if v.size:
                acc.append(v)
            return acc

        parts = self._run(row, partial=list, reduce=operator.add)
        return np.concatenate(parts) if parts else np.zeros(0)

    def median(self) -> float:
        return stats.median(self.valid_values())

    def percentile(self, fraction: float) -> float:
        return stats.select(self.valid_values(), fraction)

    def robust_rms(self) -> float:
        return stats.robust_rms(self.valid_values())

    def _index_of_max(self, data: np.ndarray) -> tuple[int, int] | None:
        flags = self.flags

        def row(i, best):
            d = np.where(flags[i] == 0, data[i], -np.inf)
            j = int(np.argmax(d))
            if flags[i, j] != 0:
                return best
            # Ties resolve to the lowest (i, j) for any worker count.
            return _pick_max(best, (float(d[j]), -i, -j))

        best = self._run(row, partial=lambda: None, reduce=_pick_max)
        return None if best is None else (-best[1], -best[2])

    def index_of_max(self) -> tuple[int, int] | None:
        return self._index_of_max(self.values)

    def index_of_max_dev(self) -> tuple[int, int] | None:
        return self._index_of_max(np.abs(self.values))

    # --- Interpolation ---

    def interpolated_value_at(
        self,
        fi: float,
        fj: float,
        mode: str | None = None,
        cache: InterpolatorCache | None = None,
    ) -> float:
        """
        Value at a fractional index; NaN when the nearest cell is not valid.

        Modes: nearest, bilinear, quadratic (separable parabolas), spline
        (4x4 cubic taps, renormalized by the kernel weights of the valid taps).
        `cache` holds spline taps between calls and must not be shared between
        threads.
        """
        i, j = _round(fi), _round(fj)
        if not self.is_valid(i, j):
            return math.nan
        mode = self.interpolation if mode is None else mode
        if mode == "nearest":
            return float(self.values[i, j])
        if mode == "bilinear":
            return self._bilinear_at(fi, fj)
        if mode == "quadratic":
            return self._quadratic_at(fi, fj, i, j)
        if mode == "spline":
            return self._spline_at(fi, fj, cache if cache is not None else InterpolatorCache())
        raise ValueError(f"Unknown interpolation mode {mode!r}.")

    def _bilinear_at(self, fi: float, fj: float) -> float:
        i0, j0 = math.floor(fi), math.floor(fj)
        di, dj = fi - i0, fj - j0
        s = sw = 0.0
        for a, wa in ((i0, 1.0 - di), (i0 + 1, di)):
            if wa == 0.0:
                continue
            for b, wb in ((j0, 1.0 - dj), (j0 + 1, dj)):
                w = wa * wb
                if w == 0.0 or not self.is_valid(a, b):
                    continue
                s += w * self.values[a, b]
                sw += w
        return s / sw if sw > 0.0 else math.nan

    def _quadratic_at(self, fi: float, fj: float, i: int, j: int) -> float:
        y0 = float(self.values[i, j])
        ax = bx = ay = by = 0.0

        if self.is_valid(i + 1, j):
            if self.is_valid(i - 1, j):
                ax = 0.5 * (self.values[i + 1, j] + self.values[i - 1, j]) - y0
                bx = 0.5 * (self.values[i + 1, j] - self.values[i - 1, j])
            else:
                bx = self.values[i + 1, j] - y0
        elif self.is_valid(i - 1, j):
            bx = y0 - self.values[i - 1, j]

        if self.is_valid(i, j + 1):
            if self.is_valid(i, j - 1):
                ay = 0.5 * (self.values[i, j + 1] + self.values[i, j - 1]) - y0
                by = 0.5 * (self.values[i, j + 1] - self.values[i, j - 1])
            else:
                by = self.values[i, j + 1] - y0
        elif self.is_valid(i, j - 1):
            by = y0 - self.values[i, j - 1]

        di, dj = fi - i, fj - j
        return float((ax * di + bx) * di + (ay * dj + by) * dj + y0)

    def _spline_at(self, fi: float, fj: float, cache: InterpolatorCache) -> float:
        i0, wx = cache.x.center_on(fi)
        j0, wy = cache.y.center_on(fj)
        a0, a1 = max(i0, 0), min(i0 + 4, self.size_x)
        b0, b1 = max(j0, 0), min(j0 + 4, self.size_y)
        ok = self.flags[a0:a1, b0:b1] == 0
        w = np.outer(wx[a0 - i0 : a1 - i0], wy[b0 - j0 : b1 - j0]) * ok
        sw = float(np.sum(w))
        if sw == 0.0:
            return math.nan
        return float(np.sum(w * np.where(ok, self.values[a0:a1, b0:b1], 0.0)) / sw)

    # --- Convolution ---

    def _convolve_lattice(self, data, weight, kernel, step_x=1, step_y=1, nodes_x=None, nodes_y=None):
        """
        Normalized convolution at lattice nodes (a*step_x, b*step_y).

        Returns (value, weight) arrays of shape (nodes_x, nodes_y) with
          weight = sum |k| w,  value = sum k w data / weight  (0 where weight == 0).
        """
        kernel = np.asarray(kernel, dtype=np.float64)
        kx, ky = kernel.shape
        ic, jc = (kx - 1) // 2, (ky - 1) // 2
        nx, ny = self.shape
        nodes_x = nx if nodes_x is None else nodes_x
        nodes_y = ny if nodes_y is None else nodes_y
        wv = weight * np.where(weight > 0.0, data, 0.0)
        jn = np.arange(nodes_y) * step_y
        out_v = np.zeros((nodes_x, nodes_y))
        out_w = np.zeros((nodes_x, nodes_y))

        def row(a, _):
            i = a * step_x
            sv = np.zeros(nodes_y)
            sw = np.zeros(nodes_y)
            for ka in range(kx):
                i1 = i + ka - ic
                if i1 < 0 or i1 >= nx:
                    continue
                w_row, v_row = weight[i1], wv[i1]
                for kb in range(ky):
                    k = kernel[ka, kb]
                    if k == 0.0:
                        continue
                    j1 = jn + (kb - jc)
                    m = (j1 >= 0) & (j1 < ny)
                    sv[m] += k * v_row[j1[m]]
                    sw[m] += abs(k) * w_row[j1[m]]
            pos = sw > 0.0
            out_v[a, pos] = sv[pos] / sw[pos]
            out_w[a] = sw
            return None

        self._run(row, n_rows=nodes_x)
        return out_v, out_w

    def _fast_smoothed(self, data, weight, kernel, step_x, step_y, targets):
        """
        (values, weights) of the convolution at `targets`; weight 0 marks cells
        without a result. Strides >= 2 on both axes convolve a decimated lattice
        and spline-interpolate it; otherwise the convolution is exact.
        """
        if step_x < 2 or step_y < 2:
            v, w = self._convolve_lattice(data, weight, kernel)
            return np.where(targets, v, 0.0), np.where(targets, w, 0.0)

        nodes_x = (self.size_x - 1) // step_x + 2
        nodes_y = (self.size_y - 1) // step_y + 2
        cv, cw = self._convolve_lattice(data, weight, kernel, step_x, step_y, nodes_x, nodes_y)
        coarse_flags = np.where(cw > 0.0, 0, FLAG_NODATA).astype(np.uint32)
        coarse = FlaggedImage(nodes_x, nodes_y, n_workers=self.n_workers)
        coarse.values, coarse.flags = cv, coarse_flags
        coarse_w = FlaggedImage(nodes_x, nodes_y, n_workers=self.n_workers)
        coarse_w.values, coarse_w.flags = cw, coarse_flags.copy()

        out_v = np.zeros(self.shape)
        out_w = np.zeros(self.shape)
        sx, sy = 1.0 / step_x, 1.0 / step_y

        def row(i, cache):
            for j in np.flatnonzero(targets[i]):
                v = coarse.interpolated_value_at(i * sx, j * sy, "spline", cache)
                if math.isnan(v):
                    continue
                w = coarse_w.interpolated_value_at(i * sx, j * sy, "spline", cache)
                if w > 0.0:
                    out_v[i, j] = v
                    out_w[i, j] = w
            return cache

        self._run(row, partial=InterpolatorCache)
        return out_v, out_w

    def smoothed(self, kernel) -> tuple[np.ndarray, np.ndarray]:
        """(values, weights) of the exact convolution; zeros at flagged cells."""
        return self.fast_smoothed(kernel, 1, 1)

    def fast_smoothed(self, kernel, step_x: int, step_y: int) -> tuple[np.ndarray, np.ndarray]:
        return self._fast_smoothed(
            self.values, self.cell_weights(), kernel, int(step_x), int(step_y), self.valid_mask()
        )

    def _apply_smoothed(self, values: np.ndarray, weights: np.ndarray) -> np.ndarray:
        valid = self.valid_mask()
        ok = valid & (weights > 0.0)
        self.values[ok] = values[ok]
        self.flags[valid & ~ok] |= np.uint32(FLAG_NODATA)
        return ok

    def smooth(self, kernel) -> None:
        self.fast_smooth(kernel, 1, 1)

    def fast_smooth(self, kernel, step_x: int, step_y: int) -> None:
        self._apply_smoothed(*self.fast_smoothed(kernel, step_x, step_y))

    def _fwhm_steps(self, fwhm: float) -> tuple[int, int]:
        px, py = self.grid.pixel_size
        return int(math.ceil(fwhm / (5.0 * px))), int(math.ceil(fwhm / (5.0 * py)))

    def smoothed_by(self, fwhm: float) -> tuple[np.ndarray, np.ndarray]:
        """Convolution with a Gaussian of the given FWHM (offset units)."""
        sx, sy = self._fwhm_steps(fwhm)
        return self.fast_smoothed(gaussian_beam(fwhm, self.grid.pixel_size, extent=2.0), sx, sy)

    def smooth_by(self, fwhm: float) -> None:
        sx, sy = self._fwhm_steps(fwhm)
        self.fast_smooth(gaussian_beam(fwhm, self.grid.pixel_size, extent=2.0), sx, sy)
        self.smooth_fwhm = math.hypot(self.smooth_fwhm, fwhm)

    def smooth_to(self, fwhm: float) -> None:
        """Smooth so that the image resolution becomes `fwhm` (no-op if already coarser)."""
        if self.smooth_fwhm >= fwhm:
            return
        self.smooth_by(math.sqrt(fwhm * fwhm - self.smooth_fwhm * self.smooth_fwhm))

    # --- Beam bookkeeping ---

    def image_beam_area(self) -> float:
        return beam_area(self.smooth_fwhm)

    def points_per_beam(self) -> float:
        px, py = self.grid.pixel_size
        size = FWHM2SIZE * self.smooth_fwhm
        return max(1.0, size / px) * max(1.0, size / py)

    def count_beams(self) -> float:
        return self.count_points() * self.grid.pixel_area / self.image_beam_area()

    def get_beam(self) -> np.ndarray:
        return gaussian_beam(self.smooth_fwhm, self.grid.pixel_size, extent=3.0)

    # --- Resampling ---

    def resample(self, source: "FlaggedImage", *, antialias: bool = True) -> None:
        """
        Fill this grid by interpolating `source` at the coordinates of every
        cell. Grids on the same projection are matched through offsets.

        When this grid is coarser than the source along an axis (ratio r > 1),
        the source is first smoothed with sigma = sqrt(r^2 - 1) source pixels
        along that axis. `antialias=False` skips that step and aliases.
        """
        ratio = self.grid.pixel_size / source.grid.pixel_size
        src = source
        if antialias and np.any(ratio > 1.0):
            sig = np.sqrt(np.clip(ratio * ratio - 1.0, 0.0, None))
            src = source.copy()
            src.smooth(gaussian_kernel(float(sig[0]), float(sig[1])))
            extra = SIGMAS_IN_FWHM * math.sqrt(float(np.prod(sig * source.grid.pixel_size)))
            src.smooth_fwhm = math.hypot(source.smooth_fwhm, extra)

        self._resample_from(src)
        self.smooth_fwhm = max(pixel_fwhm(self.grid.pixel_size), src.smooth_fwhm)
        self.ext_filter_fwhm = source.ext_filter_fwhm
        self.correcting_fwhm = source.correcting_fwhm

    def _resample_from(self, src: "FlaggedImage") -> None:
        (out,) = self._sample_images([src])
        ok = np.isfinite(out)
        self.values = np.where(ok, out, 0.0)
        self.flags = np.where(ok, 0, FLAG_NODATA).astype(np.uint32)

    def _sample_images(self, sources: list["FlaggedImage"]) -> list[np.ndarray]:
        """Interpolate each source (all on the grid of the first) at every cell of this grid."""
        outs = [np.full(self.shape, np.nan) for _ in sources]
        jj = np.arange(self.size_y, dtype=np.float64)
        src_grid = sources[0].grid
        same_projection = self.grid.projection.matches(src_grid.projection)

        def row(i, cache):
            ii = np.full_like(jj, i)
            if same_projection:
                si, sj = src_grid.offset_to_index(self.grid.index_to_offset(ii, jj))
            else:
                # Offsets are relative to each projection's own reference.
                si, sj = src_grid.to_index(self.grid.to_coordinate(ii, jj))
            for j in range(self.size_y):
                for src, out in zip(sources, outs):
                    out[i, j] = src.interpolated_value_at(float(si[j]), float(sj[j]), cache=cache)
            return cache

        self._run(row, partial=InterpolatorCache)
        return outs

    def regridded(self, pixel_size, *, antialias: bool = True):
        """New image of the same kind on this grid at resolution `pixel_size`."""
        grid = self.grid.regridded(pixel_size)
        ratio = self.grid.pixel_size / grid.pixel_size
        nx = int(math.ceil(self.size_x * ratio[0]))
        ny = int(math.ceil(self.size_y * ratio[1]))
        out = self.blank_like(nx, ny, grid)
        out.resample(self, antialias=antialias)
        out.sanitize()
        return out

    # --- Large-scale filtering ---

    def _filter_update(self, fwhm: float) -> None:
        if math.isnan(self.ext_filter_fwhm):
            self.ext_filter_fwhm = fwhm
        else:
            self.ext_filter_fwhm = 1.0 / math.sqrt(1.0 / self.ext_filter_fwhm**2 + 1.0 / fwhm**2)

    def filter_above(self, fwhm: float, skip: np.ndarray | None = None) -> None:
        """
        Remove structures larger than `fwhm` by subtracting a smoothed copy.

        Cells with a nonzero `skip` entry do not feed the smoothed copy but are
        still filtered.
        """
        if fwhm <= self.smooth_fwhm:
            raise ValueError(f"Filter FWHM {fwhm} must exceed the image resolution {self.smooth_fwhm}.")
        delta = math.sqrt(fwhm * fwhm - self.smooth_fwhm * self.smooth_fwhm)
        weight = self.cell_weights()
        if skip is not None:
            weight = np.where(np.asarray(skip) != 0, 0.0, weight)
        sx, sy = self._fwhm_steps(delta)
        kernel = gaussian_beam(delta, self.grid.pixel_size, extent=2.0)
        extended, w = self._fast_smoothed(self.values, weight, kernel, sx, sy, self.valid_mask())
        ok = self.valid_mask() & (w > 0.0)
        self.values[ok] -= extended[ok]
        self._filter_update(fwhm)

    def fft_filter_above(self, fwhm: float, skip: np.ndarray | None = None) -> None:
        """
        Frequency-domain version of `filter_above`: the weighted image (skipped
        cells zeroed) is low-passed with a Gaussian taper, its mean removed, and
        the result divided by the mean weight subtracted from every valid cell.
        """
        from . import fft_filter

        valid = self.valid_mask()
        use = valid if skip is None else valid & (np.asarray(skip) == 0)
        w = self.cell_weights()
        buffer = np.where(use, w * np.where(use, self.values, 0.0), 0.0)
        n = int(np.count_nonzero(use))
        mean_w = float(np.sum(w[use])) / n if n else 0.0
        if mean_w > 0.0:
            extended = fft_filter.large_scale_component(buffer, fwhm, self.grid.pixel_size)
            self.values[valid] -= extended[valid] / mean_w
        else:
            LOGGER.warning("No unskipped weight to estimate large scales from; nothing filtered.")
        self._filter_update(fwhm)

    def filter_correction_factor(self, fwhm: float) -> float:
        if math.isnan(self.ext_filter_fwhm):
            return 1.0
        eff_filter2 = fwhm * fwhm + self.ext_filter_fwhm**2
        eff2 = fwhm * fwhm + self.smooth_fwhm**2
        return 1.0 / (1.0 - eff2 / eff_filter2)

    def filter_correct(self, fwhm: float, skip: np.ndarray | None = None) -> None:
        """Scale unskipped cells back up for the point-source loss of the filter."""
        if not math.isnan(self.correcting_fwhm):
            return
        self._scale_unskipped(self.filter_correction_factor(fwhm), skip)
        self.correcting_fwhm = fwhm

    def undo_filter_correct(self, skip: np.ndarray | None = None) -> None:
        if math.isnan(self.correcting_fwhm):
            return
        self._scale_unskipped(1.0 / self.filter_correction_factor(self.correcting_fwhm), skip)
        self.correcting_fwhm = math.nan

    def _scale_unskipped(self, factor: float, skip) -> None:
        ok = self.valid_mask()
        if skip is not None:
            ok &= np.asarray(skip) == 0
        self.values[ok] *= factor

    # --- Regions ---

    def flag_region(self, region, pattern: int = FLAG_REGION) -> None:
        box, inside = region.mask(self)
        self.flags[box.slices][inside] |= np.uint32(pattern)

    def unflag_region(self, region, pattern: int = FLAG_REGION) -> None:
        box, inside = region.mask(self)
        self.flags[box.slices][inside] &= np.uint32(~pattern & 0xFFFFFFFF)

    def _region_cells(self, region):
        box, inside = region.mask(self)
        ok = inside & (self.flags[box.slices] == 0)
        return box, ok

    def region_level(self, region) -> float:
        """Weighted mean of the valid cells inside the region."""
        box, ok = self._region_cells(region)
        w = self.cell_weights()[box.slices][ok]
        sw = float(np.sum(w))
        if sw <= 0.0:
            return math.nan
        return float(np.sum(w * self.values[box.slices][ok])) / sw

    def region_integral(self, region) -> float:
        box, ok = self._region_cells(region)
        return float(np.sum(self.values[box.slices][ok]))

    # --- Deconvolution ---

    def clean_components(
        self,
        beam: np.ndarray | None = None,
        *,
        gain: float = 0.1,
        search: "FlaggedImage | None" = None,
        stop_significance: float | None = None,
        max_components: int | None = None,
    ) -> CleanResult:
        """
        CLEAN loop: repeatedly subtract `gain * peak * beam` at the largest
        absolute deviation of `search` until the peak drops below the stopping
        level or `max_components` (default ceil(beams / gain)) is reached.

        The residual is left in this image. Returns the component fluxes
        (peak * gain * beam integral per hit) without re-convolution.
        """
        if not 0.0 < gain <= 1.0:
            raise ValueError(f"gain must be in (0, 1], got {gain}.")
        beam = np.array(self.get_beam() if beam is None else beam, dtype=np.float64)
        ic, jc = beam.shape[0] // 2, beam.shape[1] // 2
        components = np.zeros(self.shape)
        norm = float(beam[ic, jc])
        if not (math.isfinite(norm) and norm > 0.0):
            LOGGER.warning("CLEAN beam has no positive center (%s); nothing deconvolved.", norm)
            return CleanResult(0, components, math.nan, math.nan, False)
        beam /= norm
        beam_int = float(np.sum(beam))

        beams = self.count_beams()
        if stop_significance is None:
            # Level that the largest noise peak among all searched beams stays
            # below with probability CLEAN_CONFIDENCE.
            critical = stats.critical_significance(1.0 - (1.0 - CLEAN_CONFIDENCE) / max(1.0, beams))
        else:
            critical = float(stop_significance)
        if max_components is None:
            max_components = int(math.ceil(beams / gain)) if beams > 0.0 else 0
        search = self if search is None else search

        index = search.index_of_max_dev()
        if index is None:
            LOGGER.warning("No valid cells to deconvolve.")
            return CleanResult(0, components, math.nan, critical, False)
        peak = float(search.values[index])

        n = 0
        while abs(peak) > critical and n < max_components:
            i, j = index
            i0, j0 = i - ic, j - jc
            a0, a1 = max(i0, 0), min(i0 + beam.shape[0], self.size_x)
            b0, b1 = max(j0, 0), min(j0 + beam.shape[1], self.size_y)
            patch = beam[a0 - i0 : a1 - i0, b0 - j0 : b1 - j0]

            decrement = gain * float(self.values[i, j])
            components[i, j] += decrement * beam_int
            ok = self.flags[a0:a1, b0:b1] == 0
            self.values[a0:a1, b0:b1] -= np.where(ok, decrement * patch, 0.0)
            if search is not self:
                ok = search.flags[a0:a1, b0:b1] == 0
                search.values[a0:a1, b0:b1] -= np.where(ok, gain * peak * patch, 0.0)
            n += 1

            index = search.index_of_max_dev()
            if index is None:
                break
            peak = float(search.values[index])

        LOGGER.debug("CLEAN removed %d components (last peak %.3g, critical %.3g).", n, peak, critical)
        return CleanResult(n, components, peak, critical, n >= max_components)

    def deconvolve(
        self,
        beam: np.ndarray | None = None,
        *,
        gain: float = 0.1,
        replacement_fwhm: float | None = None,
        search: "FlaggedImage | None" = None,
        stop_significance: float | None = None,
        max_components: int | None = None,
    ) -> CleanResult:
        """CLEAN, then add the components back convolved to `replacement_fwhm`."""
        if replacement_fwhm is None:
            replacement_fwhm = 0.5 * self.smooth_fwhm
        result = self.clean_components(
            beam,
            gain=gain,
            search=search,
            stop_significance=stop_significance,
            max_components=max_components,
        )
        if result.n_components:
            comp = FlaggedImage(*self.shape, grid=self.grid.copy(), n_workers=self.n_workers)
            comp.values = result.components.copy()
            comp.flags = self.flags.copy()
            restored, w = comp.smoothed_by(replacement_fwhm)
            ok = self.valid_mask() & (w > 0.0)
            self.values[ok] += restored[ok]
        self.smooth_fwhm = math.hypot(pixel_fwhm(self.grid.pixel_size), replacement_fwhm)
        return result

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.size_x}x{self.size_y}, grid={self.grid!r})"
