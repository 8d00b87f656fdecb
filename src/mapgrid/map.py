"""
Weighted accumulation map: a flagged grid with inverse-variance weight and
exposure accumulators.

Accumulation (samples of value v, gain g, weight w, exposure t):
  w_eff = w * g^2
  values[i,j]   += w_eff * v
  weight[i,j]   += w_eff
  exposure[i,j] += t

While `is_accumulating`, `values` holds weighted sums. `end_accumulation()`
divides by weight and validates the cells with weight > 0; after that

  rms(i,j) = 1/sqrt(weight),  s2n(i,j) = value * sqrt(weight).

A cell with zero weight is always flagged.
"""

from __future__ import annotations

import logging
import math
import operator

import numpy as np
from scipy import ndimage

from . import stats
from .grid import CoordinateGrid
from .image import FLAG_CLIPPED, FLAG_NODATA, FLAG_SPIKE, FlaggedImage, Unit, _add_pairs, _round
from .kernels import neighbour_kernel
from .stats import DataPoint

LOGGER = logging.getLogger(__name__)

PRODUCT_ARRAYS = ("signal", "exposure", "weight", "s2n")


class WeightedMap(FlaggedImage):
    """
    Same constructor as `FlaggedImage`. A new map starts empty and
    accumulating.
    """

    def __init__(self, size_x: int, size_y: int, **kwargs):
        super().__init__(size_x, size_y, **kwargs)
        self.weight_factor = 1.0
        self.filter_blanking = math.nan
        self.clipping_s2n = math.nan

    def set_size(self, size_x: int, size_y: int) -> None:
        super().set_size(size_x, size_y)
        self.weight = np.zeros(self.shape)
        self.exposure = np.zeros(self.shape)
        self.is_accumulating = True

    def copy(self):
        out = super().copy()
        out.weight = self.weight.copy()
        out.exposure = self.exposure.copy()
        return out

    def clear(self) -> None:
        super().clear()
        self.weight[:] = 0.0
        self.exposure[:] = 0.0
        self.is_accumulating = True

    def sanitize(self) -> None:
        super().sanitize()
        self.flags[~(self.weight > 0.0)] |= np.uint32(FLAG_NODATA)
        bad = self.flags != 0
        self.values[bad] = 0.0
        self.weight[bad] = 0.0

    def _require_final(self) -> None:
        if self.is_accumulating:
            raise RuntimeError("Map is still accumulating; call end_accumulation() first.")

    def _crop_extra(self, i0, j0, i1, j1, overlap) -> None:
        a0, a1, b0, b1 = overlap
        arrays = []
        for a in (self.weight, self.exposure):
            out = np.zeros((i1 - i0 + 1, j1 - j0 + 1))
            if a0 <= a1 and b0 <= b1:
                out[a0 - i0 : a1 - i0 + 1, b0 - j0 : b1 - j0 + 1] = a[a0 : a1 + 1, b0 : b1 + 1]
            arrays.append(out)
        self.weight, self.exposure = arrays

    # --- Accumulation ---

    def add_sample_at(
        self,
        i: int,
        j: int,
        value: float,
        gain: float = 1.0,
        weight: float = 1.0,
        exposure: float = 0.0,
    ) -> None:
        """Accumulate one sample into cell (i, j). Repeated calls add up."""
        if not self.is_accumulating:
            raise RuntimeError("Map is finalized; call begin_accumulation() before adding samples.")
        if not self.contains_index(i, j):
            raise ValueError(f"Index ({i}, {j}) is outside the {self.size_x}x{self.size_y} map.")
        w = weight * gain * gain
        self.values[i, j] += w * value
        self.weight[i, j] += w
        self.exposure[i, j] += exposure

    def add_sample_at_offset(self, offset, value, gain=1.0, weight=1.0, exposure=0.0) -> None:
        fi, fj = self.grid.offset_to_index(offset)
        self.add_sample_at(_round(float(fi)), _round(float(fj)), value, gain, weight, exposure)

    def add_sample(self, coord, value, gain=1.0, weight=1.0, exposure=0.0) -> None:
        fi, fj = self.grid.to_index(coord)
        self.add_sample_at(_round(float(fi)), _round(float(fj)), value, gain, weight, exposure)

    def add_samples(self, fi, fj, values, gains=1.0, weights=1.0, exposures=0.0) -> None:
        """
        Vectorized `add_sample_at` at fractional indices (rounded to the nearest cell).

        Args:
          fi, fj: (n,) fractional indices.
          values, gains, weights, exposures: (n,) or scalars.
        """
        if not self.is_accumulating:
            raise RuntimeError("Map is finalized; call begin_accumulation() before adding samples.")
        i = np.floor(np.asarray(fi, dtype=np.float64) + 0.5).astype(np.int64)
        j = np.floor(np.asarray(fj, dtype=np.float64) + 0.5).astype(np.int64)
        if i.shape != j.shape:
            raise ValueError("fi and fj must have the same shape.")
        outside = (i < 0) | (i >= self.size_x) | (j < 0) | (j >= self.size_y)
        if np.any(outside):
            raise ValueError(f"{int(np.count_nonzero(outside))} samples fall outside the map.")
        v, g, w, t = np.broadcast_arrays(
            np.asarray(values, dtype=np.float64),
            np.asarray(gains, dtype=np.float64),
            np.asarray(weights, dtype=np.float64),
            np.asarray(exposures, dtype=np.float64),
        )
        if v.shape != i.shape:
            v, g, w, t = (np.broadcast_to(a, i.shape) for a in (v, g, w, t))
        w_eff = w * g * g
        np.add.at(self.values, (i, j), w_eff * v)
        np.add.at(self.weight, (i, j), w_eff)
        np.add.at(self.exposure, (i, j), t)

    def add_map(self, other: "WeightedMap", scale: float = 1.0) -> None:
        """Merge a finalized map into this accumulating one, its weights scaled by `scale`."""
        if not self.is_accumulating:
            raise RuntimeError("Map is finalized; call begin_accumulation() before merging.")
        other._require_final()
        if not self.conforms_to(other):
            raise ValueError(f"Shape mismatch: {self.shape} vs {other.shape}.")
        ok = other.valid_mask()
        ww = scale * other.weight[ok]
        self.values[ok] += ww * other.values[ok]
        self.weight[ok] += ww
        self.exposure[ok] += other.exposure[ok]

    def end_accumulation(self) -> int:
        """Turn weighted sums into means; returns the number of valid cells."""
        if not self.is_accumulating:
            raise RuntimeError("Map is already finalized.")
        hit = self.weight > 0.0
        self.values = np.where(hit, self.values / np.where(hit, self.weight, 1.0), 0.0)
        self.weight[~hit] = 0.0
        self.flags[hit] &= np.uint32(~FLAG_NODATA & 0xFFFFFFFF)
        self.flags[~hit] |= np.uint32(FLAG_NODATA)
        self.is_accumulating = False
        n = int(np.count_nonzero(self.flags == 0))
        if n == 0:
            LOGGER.warning("No cell received any weight.")
        return n

    def begin_accumulation(self) -> None:
        """Turn means back into weighted sums so more samples can be added."""
        self._require_final()
        self.values = np.where(self.weight > 0.0, self.values * self.weight, 0.0)
        self.is_accumulating = True

    # --- Derived views ---

    def cell_weights(self) -> np.ndarray:
        self._require_final()
        return np.where(self.valid_mask(), self.weight, 0.0)

    def _s2n(self) -> np.ndarray:
        self._require_final()
        return self.values * np.sqrt(np.clip(self.weight, 0.0, None))

    def _rms(self) -> np.ndarray:
        with np.errstate(divide="ignore"):
            return np.where(self.weight > 0.0, 1.0 / np.sqrt(np.clip(self.weight, 0.0, None)), np.inf)

    def rms_at(self, i: int, j: int) -> float:
        if not self.is_valid(i, j):
            return math.nan
        return 1.0 / math.sqrt(self.weight[i, j])

    def significance_at(self, i: int, j: int) -> float:
        if not self.is_valid(i, j):
            return math.nan
        return float(self.values[i, j] * math.sqrt(self.weight[i, j]))

    def _view(self, data: np.ndarray, unit: Unit) -> FlaggedImage:
        out = FlaggedImage(*self.shape, grid=self.grid.copy(), unit=unit, interpolation=self.interpolation, n_workers=self.n_workers)
        out.values = np.array(data, dtype=np.float64)
        out.flags = self.flags.copy()
        out.smooth_fwhm = self.smooth_fwhm
        out.interrupt = self.interrupt
        return out

    def significance_image(self) -> FlaggedImage:
        return self._view(self._s2n(), Unit("s/n", 1.0))

    def rms_image(self) -> FlaggedImage:
        return self._view(np.where(self.valid_mask(), self._rms(), 0.0), self.unit)

    def weight_image(self) -> FlaggedImage:
        return self._view(self.weight, Unit(f"[{self.unit.name}]**(-2)", 1.0 / self.unit.value**2))

    def exposure_image(self) -> FlaggedImage:
        return self._view(self.exposure, Unit("s", 1.0))

    def typical_rms(self) -> float:
        sw, n = self._reduce_weighted(self.weight, None)
        return math.sqrt(n / sw) if sw > 0.0 else math.nan

    def mean_exposure(self) -> float:
        """Weight-averaged exposure of the valid cells."""
        s, sw = self._reduce_weighted(self.exposure, self.weight)
        return s / sw if sw > 0.0 else math.nan

    def _reduce_weighted(self, data, weight):
        """(sum w*data, sum w) over valid cells; with weight None: (sum data, count)."""
        flags = self.flags

        def row(i, acc):
            ok = flags[i] == 0
            d = data[i][ok]
            if weight is None:
                return _add_pairs(acc, (float(np.sum(d)), int(d.size)))
            w = weight[i][ok]
            return _add_pairs(acc, (float(np.sum(w * d)), float(np.sum(w))))

        return self._run(row, partial=lambda: (0.0, 0), reduce=_add_pairs)

    def chi2(self, robust: bool = False) -> float:
        """Mean of s2n^2 over valid cells (median(s2n^2)/0.454937 if robust)."""
        if robust:
            valid = self.significance_image().valid_values()
            if valid.size == 0:
                return math.nan
            return float(np.median(valid * valid)) / stats.MEDIAN_SQUARE_GAUSS
        s2n = self._s2n()
        s, n = self._reduce_weighted(s2n * s2n, None)
        return s / n if n else math.nan

    def median(self) -> float:
        """Weighted median of the valid cells."""
        ok = self.valid_mask()
        return stats.weighted_median(self.values[ok], self.weight[ok]).value

    # --- Smoothing and resampling ---

    def fast_smooth(self, kernel, step_x: int, step_y: int) -> None:
        valid = self.valid_mask()
        v, w = self.fast_smoothed(kernel, step_x, step_y)
        t, _ = self._fast_smoothed(self.exposure, valid.astype(np.float64), kernel, int(step_x), int(step_y), valid)
        ok = self._apply_smoothed(v, w)
        self.weight = np.where(ok, w, 0.0)
        self.exposure = np.where(ok, t, 0.0)

    def _resample_from(self, src: FlaggedImage) -> None:
        if not isinstance(src, WeightedMap):
            super()._resample_from(src)
            self.weight = np.where(self.valid_mask(), 1.0, 0.0)
            self.exposure = np.zeros(self.shape)
            self.is_accumulating = False
            return
        v, w, t = self._sample_images([src, src.weight_image(), src.exposure_image()])
        ok = np.isfinite(v) & np.isfinite(w) & (w > 0.0)
        self.values = np.where(ok, v, 0.0)
        self.weight = np.where(ok, w, 0.0)
        self.exposure = np.where(ok & np.isfinite(t), t, 0.0)
        self.flags = np.where(ok, 0, FLAG_NODATA).astype(np.uint32)
        self.weight_factor = src.weight_factor
        self.is_accumulating = False

    # --- Clipping (flags only) ---

    def clip_by_s2n(self, level: float) -> int:
        """Flag cells with S/N below `level`."""
        self.clipping_s2n = level
        return self._clip(lambda s: s < level, FLAG_CLIPPED, self._s2n())

    def clip_above_s2n(self, level: float) -> int:
        return self._clip(lambda s: s > level, FLAG_CLIPPED, self._s2n())

    def clip_above_rms(self, value: float) -> int:
        return self._clip(lambda r: r > value, FLAG_CLIPPED, self._rms())

    def clip_by_relative_rms(self, max_ratio: float, reference_percentile: float = 0.0) -> int:
        """Flag cells noisier than max_ratio times the rms at `reference_percentile`."""
        ref = stats.select(self._rms()[self.valid_mask()], reference_percentile)
        if math.isnan(ref):
            return 0
        return self.clip_above_rms(max_ratio * ref)

    def clip_below_exposure(self, exposure: float) -> int:
        return self._clip(lambda t: t < exposure, FLAG_CLIPPED, self.exposure)

    def clip_by_exposure(self, min_fraction: float, reference_percentile: float = 1.0) -> int:
        """Flag cells with less than min_fraction of the exposure at `reference_percentile`."""
        ref = stats.select(self.exposure[self.valid_mask()], reference_percentile)
        if math.isnan(ref):
            return 0
        return self.clip_below_exposure(min_fraction * ref)

    def s2n_mask(self, min_s2n: float, min_neighbours: int = 0) -> np.ndarray:
        """Valid cells above `min_s2n` with at least `min_neighbours` such cells among their 8 neighbours."""
        mask = self.valid_mask() & (self._s2n() > min_s2n)
        if min_neighbours > 0:
            ring = np.ones((3, 3), dtype=np.int64)
            ring[1, 1] = 0
            counts = ndimage.convolve(mask.astype(np.int64), ring, mode="constant", cval=0)
            mask &= counts >= min_neighbours
        return mask

    def despike(self, significance: float) -> int:
        """
        Flag cells that differ from the weighted mean of their four neighbours by
        more than `significance` sigma, with 1/w_diff = 1/w + 1/w_neighbours.
        """
        valid = self.valid_mask()
        around, w_around = self._fast_smoothed(self.values, self.cell_weights(), neighbour_kernel(), 1, 1, valid)
        values, weight = self.values, self.weight
        flags = self.flags
        bit = np.uint32(FLAG_SPIKE)

        def row(i, n):
            ok = (flags[i] == 0) & (w_around[i] > 0.0)
            w_diff = np.zeros(self.size_y)
            w_diff[ok] = 1.0 / (1.0 / weight[i][ok] + 1.0 / w_around[i][ok])
            spike = ok & (np.abs(values[i] - around[i]) * np.sqrt(w_diff) > significance)
            flags[i][spike] |= bit
            return n + int(np.count_nonzero(spike))

        n = self._run(row, partial=int, reduce=operator.add)
        LOGGER.debug("despike(%.2f): flagged %d cells.", significance, n)
        return n

    # --- Noise model ---

    def scale_weight(self, factor: float) -> None:
        self.weight *= factor

    def reweight(self, robust: bool = False) -> float:
        """Scale weights by 1/chi2 so that the S/N distribution has unit variance."""
        chi2 = self.chi2(robust)
        if not (math.isfinite(chi2) and chi2 > 0.0):
            LOGGER.warning("Cannot reweight: chi2 = %s.", chi2)
            return chi2
        self.scale_weight(1.0 / chi2)
        self.weight_factor /= chi2
        return chi2

    def data_weight(self) -> None:
        """Undo all reweighting."""
        self.scale_weight(1.0 / self.weight_factor)
        self.weight_factor = 1.0

    def apply_correction(self, filtering: float, significance: np.ndarray | None = None) -> None:
        """
        Undo a point-source filtering loss `filtering` (< 1) on cells whose
        significance is at most `clipping_s2n` (all cells when it is NaN).
        """
        s2n = self._s2n() if significance is None else np.asarray(significance)
        ok = self.weight > 0.0
        if not math.isnan(self.clipping_s2n):
            ok &= s2n <= self.clipping_s2n
        self.values[ok] /= filtering
        self.weight[ok] *= filtering * filtering

    # --- Large-scale filtering ---

    def skip_mask(self, blanking: float) -> np.ndarray:
        """Cells excluded from large-scale estimates: flagged or S/N above `blanking`."""
        skip = self.flags != 0
        if not math.isnan(blanking):
            skip |= self._s2n() > blanking
        return skip

    def filter_above(self, fwhm: float, blanking: float = math.nan) -> None:
        super().filter_above(fwhm, self.skip_mask(blanking))
        self.filter_blanking = blanking

    def fft_filter_above(self, fwhm: float, blanking: float = math.nan) -> None:
        super().fft_filter_above(fwhm, self.skip_mask(blanking))
        self.filter_blanking = blanking

    # --- Photometry ---

    def integrated_flux(self, region) -> DataPoint:
        """(sum of valid values inside, sqrt(sum 1/w)); only the region's box is read."""
        box, ok = self._region_cells(region)
        v = self.values[box.slices][ok]
        w = self.weight[box.slices][ok]
        return DataPoint(float(np.sum(v)), math.sqrt(float(np.sum(1.0 / w))))

    def flux(self, region) -> DataPoint:
        """Integrated flux in beam units (divided by points per beam)."""
        total = self.integrated_flux(region)
        a = 1.0 / self.points_per_beam()
        return DataPoint(a * total.value, a * total.rms)

    def region_rms(self, region) -> float:
        box, ok = self._region_cells(region)
        v = self.values[box.slices][ok]
        if v.size < 2:
            return math.nan
        d = v - self.region_level(region)
        return math.sqrt(float(np.sum(d * d)) / (v.size - 1))

    def region_mean_noise(self, region) -> float:
        box, ok = self._region_cells(region)
        w = self.weight[box.slices][ok]
        if w.size == 0:
            return math.nan
        return math.sqrt(float(np.mean(1.0 / w)))

    def region_mean_exposure(self, region) -> float:
        box, ok = self._region_cells(region)
        t = self.exposure[box.slices][ok]
        return float(np.mean(t)) if t.size else math.nan

    # --- Deconvolution ---

    def clean_components(self, beam=None, *, gain=0.1, search=None, stop_significance=None, max_components=None):
        """CLEAN with the S/N image as the default search image."""
        if search is None:
            search = self.significance_image()
        return super().clean_components(
            beam,
            gain=gain,
            search=search,
            stop_significance=stop_significance,
            max_components=max_components,
        )

    # --- Products ---

    def to_products(self) -> dict:
        """
        Signal, exposure, weight and S/N arrays (NaN / 0 outside valid cells,
        signal in `unit`, weight in unit^-2) plus scalar metadata.
        """
        self._require_final()
        valid = self.valid_mask()
        u = self.unit.value
        products = dict(
            signal=np.where(valid, self.values / u, np.nan),
            exposure=np.where(valid, self.exposure, 0.0),
            weight=np.where(valid, self.weight * u * u, 0.0),
            s2n=np.where(valid, self._s2n(), np.nan),
            smooth_fwhm=float(self.smooth_fwhm),
            ext_filter_fwhm=float(self.ext_filter_fwhm),
            correcting_fwhm=float(self.correcting_fwhm),
            weight_factor=float(self.weight_factor),
            filter_blanking=float(self.filter_blanking),
            clipping_s2n=float(self.clipping_s2n),
            unit_name=self.unit.name,
            unit_value=float(u),
        )
        for key, value in self.grid.to_metadata().items():
            products[f"grid_{key}"] = value
        return products

    @classmethod
    def from_products(cls, products: dict, **kwargs) -> "WeightedMap":
        signal = np.asarray(products["signal"], dtype=np.float64)
        for key in PRODUCT_ARRAYS:
            if np.shape(products[key]) != signal.shape:
                raise ValueError(f"Product {key!r} has shape {np.shape(products[key])}, expected {signal.shape}.")
        grid = CoordinateGrid.from_metadata(
            {key[len("grid_") :]: value for key, value in products.items() if key.startswith("grid_")}
        )
        unit = Unit(str(products.get("unit_name", "U")), float(products.get("unit_value", 1.0)))
        out = cls(*signal.shape, grid=grid, unit=unit, **kwargs)
        u = unit.value
        weight = np.asarray(products["weight"], dtype=np.float64) / (u * u)
        ok = np.isfinite(signal) & (weight > 0.0)
        out.values = np.where(ok, signal * u, 0.0)
        out.weight = np.where(ok, weight, 0.0)
        out.exposure = np.where(ok, np.asarray(products["exposure"], dtype=np.float64), 0.0)
        out.flags = np.where(ok, 0, FLAG_NODATA).astype(np.uint32)
        out.is_accumulating = False
        out.smooth_fwhm = float(products.get("smooth_fwhm", out.smooth_fwhm))
        out.ext_filter_fwhm = float(products.get("ext_filter_fwhm", math.nan))
        out.correcting_fwhm = float(products.get("correcting_fwhm", math.nan))
        out.weight_factor = float(products.get("weight_factor", 1.0))
        out.filter_blanking = float(products.get("filter_blanking", math.nan))
        out.clipping_s2n = float(products.get("clipping_s2n", math.nan))
        return out
