"""
Tests for the flagged numeric grid: interpolation, clipping, statistics,
convolution, resampling, filtering and CLEAN.
"""
from __future__ import annotations

import math

import numpy as np
import pytest

from mapgrid.grid import CartesianProjection, CoordinateGrid, GnomonicProjection
from mapgrid.image import FLAG_CLIPPED, FLAG_NODATA, FLAG_REGION, INTERPOLATIONS, FlaggedImage, Unit
from mapgrid.kernels import gaussian_beam, gaussian_kernel, pixel_fwhm
from mapgrid.region import CircularRegion


def _image(values, *, n_workers=1, **kwargs):
    values = np.asarray(values, dtype=np.float64)
    img = FlaggedImage(*values.shape, n_workers=n_workers, **kwargs)
    img.load_array(values)
    return img


def _point_sources(n, spacing, amplitude, fwhm):
    sigma = fwhm / (2.0 * math.sqrt(2.0 * math.log(2.0)))
    ii, jj = np.meshgrid(np.arange(n), np.arange(n), indexing="ij")
    out = np.zeros((n, n))
    for ci in range(spacing // 2, n, spacing):
        for cj in range(spacing // 2, n, spacing):
            out += amplitude * np.exp(-0.5 * ((ii - ci) ** 2 + (jj - cj) ** 2) / sigma**2)
    return out


# --- Construction ---

def test_new_image_is_all_flagged():
    img = FlaggedImage(4, 5)
    assert img.shape == (4, 5)
    assert img.count_points() == 0
    assert math.isnan(img.mean())
    assert img.index_of_max() is None


@pytest.mark.parametrize("size", [(0, 3), (3, -1)])
def test_non_positive_size_raises(size):
    with pytest.raises(ValueError):
        FlaggedImage(*size)


def test_unit_applies_at_io_only():
    """Values are stored in internal units; to_array divides by the unit."""
    img = FlaggedImage(2, 2, unit=Unit("mJy", 1e-3))
    img.load_array(np.array([[1.0, 2.0], [np.nan, 4.0]]))
    assert img.values[0, 1] == pytest.approx(2e-3)
    assert img.flags[1, 0] == FLAG_NODATA
    out = img.to_array()
    assert np.isnan(out[1, 0])
    np.testing.assert_allclose(out[[0, 0, 1], [0, 1, 1]], [1.0, 2.0, 4.0])


# --- Interpolation ---

@pytest.mark.parametrize("mode", INTERPOLATIONS)
def test_interpolation_exact_at_nodes(mode):
    """Every mode reproduces the stored value at integer indices."""
    rng = np.random.default_rng(2)
    values = rng.normal(size=(8, 7))
    img = _image(values)
    for i in range(8):
        for j in range(7):
            assert img.interpolated_value_at(float(i), float(j), mode) == pytest.approx(values[i, j], abs=1e-12)


@pytest.mark.parametrize("mode", INTERPOLATIONS)
def test_interpolation_nan_when_nearest_cell_flagged(mode):
    img = _image(np.ones((5, 5)))
    img.flags[2, 2] = FLAG_NODATA
    assert math.isnan(img.interpolated_value_at(2.2, 1.9, mode))
    assert math.isnan(img.interpolated_value_at(-0.6, 0.0, mode))


@pytest.mark.parametrize("mode", ["bilinear", "quadratic", "spline"])
def test_interpolation_of_linear_field(mode):
    """A plane is reproduced between nodes away from the edges."""
    ii, jj = np.meshgrid(np.arange(10.0), np.arange(10.0), indexing="ij")
    img = _image(2.0 * ii - 0.5 * jj + 3.0)
    assert img.interpolated_value_at(4.3, 5.6, mode) == pytest.approx(2.0 * 4.3 - 0.5 * 5.6 + 3.0, abs=1e-9)


def test_spline_skips_flagged_taps():
    img = _image(np.full((6, 6), 2.0))
    img.flags[3, 3] = FLAG_NODATA
    assert img.interpolated_value_at(2.4, 2.4, "spline") == pytest.approx(2.0)


# --- Clipping and flags ---

def test_clip_is_flag_only():
    """clip_below flags cells but leaves every value untouched."""
    rng = np.random.default_rng(3)
    values = rng.normal(size=(12, 9))
    img = _image(values)
    n = img.clip_below(0.0)
    assert n == int(np.count_nonzero(values < 0.0))
    np.testing.assert_array_equal(img.values, values)
    assert np.all((img.flags[values < 0.0] & FLAG_CLIPPED) != 0)
    assert np.all(img.flags[values >= 0.0] == 0)
    assert img.min() >= 0.0


def test_clip_ignores_already_flagged_cells():
    img = _image(np.full((3, 3), -1.0))
    img.flags[0, 0] = FLAG_NODATA
    assert img.clip_below(0.0) == 8
    assert img.flags[0, 0] == FLAG_NODATA


def test_unflag_clears_only_pattern():
    img = _image(np.zeros((2, 2)))
    img.flags[0, 0] = FLAG_CLIPPED | FLAG_REGION
    img.unflag(FLAG_CLIPPED)
    assert img.flags[0, 0] == FLAG_REGION


def test_grow_flags_radius_one():
    img = _image(np.zeros((7, 7)))
    img.flags[3, 3] = FLAG_CLIPPED
    img.grow_flags(1.0, FLAG_CLIPPED)
    grown = np.argwhere(img.flags & FLAG_CLIPPED)
    assert sorted(map(tuple, grown)) == [(2, 3), (3, 2), (3, 3), (3, 4), (4, 3)]


def test_sanitize_flags_non_finite():
    img = _image(np.ones((3, 3)))
    img.values[1, 1] = np.inf
    img.sanitize()
    assert img.flags[1, 1] & FLAG_NODATA
    assert img.values[1, 1] == 0.0


# --- Statistics ---

def test_statistics_on_known_values():
    img = _image(np.arange(12.0).reshape(3, 4))
    img.flags[0, 0] = FLAG_NODATA
    assert img.count_points() == 11
    assert img.range() == (1.0, 11.0)
    assert img.mean() == pytest.approx(6.0)
    assert img.median() == pytest.approx(6.0)
    assert img.percentile(0.0) == 1.0
    assert img.percentile(1.0) == 11.0
    assert img.index_of_max() == (2, 3)


def test_index_of_max_ties_resolve_to_lowest_index():
    img = _image(np.zeros((6, 6)), n_workers=4)
    img.values[4, 1] = img.values[1, 5] = img.values[1, 2] = 3.0
    assert img.index_of_max() == (1, 2)


def test_index_of_max_dev_uses_absolute_value():
    img = _image(np.zeros((4, 4)))
    img.values[2, 1] = -5.0
    img.values[0, 3] = 4.0
    assert img.index_of_max_dev() == (2, 1)


def test_robust_rms_ignores_outliers():
    """1000 unit normals plus 5 outliers of 100: robust rms ~ 1, plain rms > 5."""
    rng = np.random.default_rng(4)
    values = np.concatenate([rng.normal(size=1000), np.full(5, 100.0)])
    img = _image(values.reshape(15, 67))
    assert img.robust_rms() == pytest.approx(1.0, rel=0.1)
    assert img.rms() > 5.0 * img.robust_rms()


def test_level_removes_mean():
    img = _image(np.arange(9.0).reshape(3, 3))
    offset = img.level()
    assert offset == pytest.approx(4.0)
    assert img.mean() == pytest.approx(0.0, abs=1e-12)


def test_add_image_only_where_both_valid():
    a = _image(np.ones((2, 2)))
    b = _image(np.full((2, 2), 2.0))
    b.flags[0, 1] = FLAG_NODATA
    a.add_image(b, 0.5)
    np.testing.assert_allclose(a.values, [[2.0, 1.0], [2.0, 2.0]])
    with pytest.raises(ValueError):
        a.add_image(_image(np.ones((3, 2))))


# --- Parallel equivalence ---

def test_results_independent_of_worker_count():
    """Statistics and convolutions agree for 1 and 8 workers."""
    rng = np.random.default_rng(5)
    values = rng.normal(size=(37, 23))
    serial = _image(values, n_workers=1)
    serial.flags[rng.random(values.shape) < 0.1] = FLAG_NODATA
    parallel = serial.copy()
    parallel.n_workers = 8

    assert serial.count_points() == parallel.count_points()
    assert serial.mean() == pytest.approx(parallel.mean(), rel=1e-12)
    assert serial.rms() == pytest.approx(parallel.rms(), rel=1e-12)
    assert serial.median() == parallel.median()
    assert serial.percentile(0.9) == parallel.percentile(0.9)
    assert serial.index_of_max() == parallel.index_of_max()
    assert serial.index_of_max_dev() == parallel.index_of_max_dev()

    kernel = gaussian_kernel(1.5, 2.0)
    for a, b in zip(serial.smoothed(kernel), parallel.smoothed(kernel)):
        np.testing.assert_array_equal(a, b)
    for a, b in zip(serial.fast_smoothed(kernel, 3, 3), parallel.fast_smoothed(kernel, 3, 3)):
        np.testing.assert_array_equal(a, b)


# --- Convolution ---

def test_smooth_preserves_constant_and_skips_flagged():
    img = _image(np.full((10, 10), 3.0))
    img.flags[4, 4] = FLAG_NODATA
    v, w = img.smoothed(gaussian_kernel(1.0, 1.0))
    assert v[4, 4] == 0.0 and w[4, 4] == 0.0
    np.testing.assert_allclose(v[img.valid_mask()], 3.0)


def test_fast_smooth_falls_back_to_exact_below_stride_two():
    rng = np.random.default_rng(6)
    img = _image(rng.normal(size=(20, 16)))
    kernel = gaussian_kernel(2.0, 2.0)
    exact = img.smoothed(kernel)
    for steps in [(1, 1), (1, 4), (4, 1)]:
        fast = img.fast_smoothed(kernel, *steps)
        np.testing.assert_array_equal(fast[0], exact[0])
        np.testing.assert_array_equal(fast[1], exact[1])


def test_fast_smooth_approximates_exact_on_smooth_field():
    ii, jj = np.meshgrid(np.arange(40.0), np.arange(40.0), indexing="ij")
    img = _image(np.sin(ii / 8.0) + np.cos(jj / 10.0))
    kernel = gaussian_beam(6.0, (1.0, 1.0))
    exact, _ = img.smoothed(kernel)
    fast, w = img.fast_smoothed(kernel, 3, 3)
    assert np.all(w > 0.0)
    np.testing.assert_allclose(fast[8:-8, 8:-8], exact[8:-8, 8:-8], atol=0.05)


def test_smooth_by_tracks_resolution():
    img = _image(np.ones((16, 16)))
    fwhm0 = img.smooth_fwhm
    assert fwhm0 == pytest.approx(pixel_fwhm((1.0, 1.0)))
    img.smooth_by(3.0)
    assert img.smooth_fwhm == pytest.approx(math.hypot(fwhm0, 3.0))
    img.smooth_to(5.0)
    assert img.smooth_fwhm == pytest.approx(5.0)
    img.smooth_to(4.0)
    assert img.smooth_fwhm == pytest.approx(5.0)


# --- Geometry ---

def test_crop_keeps_coordinates_registered():
    grid = CoordinateGrid(pixel_size=2.0, reference_index=(1.0, 1.0))
    rng = np.random.default_rng(7)
    values = rng.normal(size=(12, 14))
    img = _image(values, grid=grid)
    x, y = img.grid.to_coordinate(5.0, 6.0)
    img.crop(2, 3, 10, 12)
    assert img.shape == (9, 10)
    assert img.values[3, 3] == values[5, 6]
    x2, y2 = img.grid.to_coordinate(3.0, 3.0)
    assert float(x2) == pytest.approx(float(x))
    assert float(y2) == pytest.approx(float(y))


def test_crop_beyond_extent_flags_new_cells():
    img = _image(np.ones((4, 4)))
    img.crop(-2, 0, 3, 5)
    assert img.shape == (6, 6)
    assert np.all(img.flags[:2, :] == FLAG_NODATA)
    assert np.all(img.flags[:, 4:] == FLAG_NODATA)
    assert img.count_points() == 16


def test_auto_crop_to_valid_cells():
    img = _image(np.ones((10, 10)))
    img.flags[:] = FLAG_NODATA
    img.flags[3:6, 2:8] = 0
    box = img.auto_crop()
    assert (box.ix0, box.ix1, box.iy0, box.iy1) == (3, 5, 2, 7)
    assert img.shape == (3, 6)
    assert img.count_points() == 18


# --- Resampling ---

def test_antialias_changes_downsampled_result():
    """Down-sampling a checkerboard aliases to 1 without smoothing, ~0 with it."""
    ii, jj = np.meshgrid(np.arange(32), np.arange(32), indexing="ij")
    img = _image(np.where((ii + jj) % 2 == 0, 1.0, -1.0))
    aliased = img.regridded(2.0, antialias=False)
    smoothed = img.regridded(2.0, antialias=True)
    assert aliased.shape == smoothed.shape == (16, 16)
    np.testing.assert_allclose(aliased.values[aliased.valid_mask()], 1.0)
    assert np.max(np.abs(smoothed.values[4:12, 4:12])) < 0.1
    assert smoothed.smooth_fwhm > aliased.smooth_fwhm


def test_resample_onto_shifted_reference():
    """Cells are matched by coordinate when the projection references differ."""
    ii, jj = np.meshgrid(np.arange(16.0), np.arange(16.0), indexing="ij")
    src = _image(ii + 100.0 * jj)
    dst = FlaggedImage(8, 8, grid=CoordinateGrid(CartesianProjection((5.0, 0.0))), n_workers=2)
    dst.resample(src)
    assert dst.count_points() == 64
    assert dst.value_at(0, 0) == pytest.approx(src.value_at(5, 0))
    di, dj = np.meshgrid(np.arange(8.0), np.arange(8.0), indexing="ij")
    np.testing.assert_allclose(dst.values, di + 5.0 + 100.0 * dj, atol=1e-9)


def test_resample_between_gnomonic_references():
    ii, jj = np.meshgrid(np.arange(16.0), np.arange(16.0), indexing="ij")
    src_grid = CoordinateGrid(GnomonicProjection((0.0, 0.0)), pixel_size=0.01, reference_index=(8.0, 8.0))
    src = _image(ii + 100.0 * jj, grid=src_grid)
    dst_grid = CoordinateGrid(GnomonicProjection((0.03, 0.0)), pixel_size=0.01, reference_index=(0.0, 8.0))
    dst = FlaggedImage(4, 16, grid=dst_grid, n_workers=1)
    dst.resample(src)
    # lon 0.03 on the equator sits tan(0.03) / 0.01 cells from the source reference.
    assert dst.value_at(0, 8) == pytest.approx(8.0 + math.tan(0.03) / 0.01 + 800.0, abs=1e-6)


def test_upsampling_does_not_smooth():
    ii, jj = np.meshgrid(np.arange(8.0), np.arange(8.0), indexing="ij")
    img = _image(ii + jj)
    fine = img.regridded(0.5)
    assert fine.shape == (16, 16)
    assert fine.values[6, 8] == pytest.approx(3.0 + 4.0)
    assert fine.smooth_fwhm == pytest.approx(img.smooth_fwhm)


# --- Large-scale filtering ---

def test_filter_above_removes_constant():
    img = _image(np.full((32, 32), 5.0))
    img.filter_above(10.0)
    np.testing.assert_allclose(img.values, 0.0, atol=1e-9)
    assert img.ext_filter_fwhm == 10.0


def test_filter_above_requires_larger_fwhm():
    img = _image(np.ones((8, 8)))
    with pytest.raises(ValueError):
        img.filter_above(img.smooth_fwhm)


def test_filter_above_skipped_cells_still_filtered():
    img = _image(np.full((24, 24), 2.0))
    skip = np.zeros((24, 24), dtype=bool)
    skip[10:14, 10:14] = True
    img.values[skip] = 50.0
    img.filter_above(12.0, skip)
    np.testing.assert_allclose(img.values[~skip], 0.0, atol=1e-9)
    np.testing.assert_allclose(img.values[skip], 48.0, atol=1e-9)


def test_filter_fwhm_combines_in_inverse_quadrature():
    img = _image(np.ones((16, 16)))
    img.filter_above(10.0)
    img.filter_above(10.0)
    assert img.ext_filter_fwhm == pytest.approx(10.0 / math.sqrt(2.0))


def test_fft_filter_removes_large_scales():
    """A wave far above the filter FWHM is removed, one far below it is kept."""
    ii = np.arange(32.0)[:, None] * np.ones((1, 32))
    wave = np.sin(2.0 * np.pi * ii / 32.0)

    img = _image(wave)
    before = img.rms()
    img.fft_filter_above(2.0)
    assert img.rms() < 0.05 * before
    assert img.ext_filter_fwhm == 2.0

    img = _image(wave)
    img.fft_filter_above(200.0)
    assert img.rms() > 0.9 * before


def test_filter_correct_round_trip():
    rng = np.random.default_rng(8)
    values = rng.normal(size=(16, 16))
    img = _image(values)
    img.ext_filter_fwhm = 20.0
    img.filter_correct(3.0)
    factor = img.filter_correction_factor(3.0)
    assert factor > 1.0
    np.testing.assert_allclose(img.values, values * factor)
    img.filter_correct(3.0)
    np.testing.assert_allclose(img.values, values * factor)
    img.undo_filter_correct()
    np.testing.assert_allclose(img.values, values, atol=1e-12)
    assert math.isnan(img.correcting_fwhm)


# --- Regions ---

def test_region_helpers():
    img = _image(np.ones((20, 20)))
    region = CircularRegion((10.0, 10.0), 3.0)
    img.flag_region(region)
    n_inside = int(np.count_nonzero(img.flags & FLAG_REGION))
    assert n_inside == 29
    img.unflag_region(region)
    assert img.count_points() == 400
    assert img.region_integral(region) == pytest.approx(29.0)
    assert img.region_level(region) == pytest.approx(1.0)


# --- Deconvolution ---

def test_clean_terminates_and_reduces_residual():
    """A grid of point sources is CLEANed down to the stopping level."""
    img = _image(_point_sources(32, 8, 10.0, 4.0), n_workers=4)
    img.smooth_fwhm = 4.0
    rms_before = img.robust_rms()
    result = img.clean_components(gain=0.2)
    assert result.n_components >= 16
    assert not result.capped
    assert abs(result.last_peak) <= result.critical
    assert np.max(np.abs(img.values)) <= result.critical
    assert img.robust_rms() <= rms_before
    assert np.count_nonzero(result.components) == 16


def test_clean_stops_above_the_noise_on_noisy_field():
    """A 50-sigma source in unit noise is removed without chasing noise peaks."""
    rng = np.random.default_rng(11)
    field = _point_sources(32, 32, 50.0, 3.0) + rng.normal(size=(32, 32))
    img = _image(field, n_workers=3)
    img.smooth_fwhm = 3.0
    rms_before = img.robust_rms()
    cap = math.ceil(img.count_beams() / 0.1)
    result = img.clean_components(gain=0.1)
    assert 2.5 < result.critical < 3.5
    assert not result.capped
    assert 0 < result.n_components < cap // 10
    assert abs(result.last_peak) <= result.critical
    assert np.max(np.abs(img.values)) <= result.critical
    assert abs(img.values[16, 16]) < 5.0
    assert img.robust_rms() <= rms_before


def test_clean_respects_component_cap():
    img = _image(_point_sources(32, 8, 10.0, 4.0))
    img.smooth_fwhm = 4.0
    result = img.clean_components(gain=0.1, max_components=5)
    assert result.n_components == 5
    assert result.capped


def test_clean_on_empty_image():
    img = FlaggedImage(8, 8)
    result = img.clean_components()
    assert result.n_components == 0


def test_clean_rejects_bad_gain():
    with pytest.raises(ValueError):
        _image(np.ones((4, 4))).clean_components(gain=0.0)


def test_deconvolve_sets_resolution():
    img = _image(_point_sources(32, 8, 10.0, 4.0))
    img.smooth_fwhm = 4.0
    img.deconvolve(gain=0.2, replacement_fwhm=2.0)
    assert img.smooth_fwhm == pytest.approx(math.hypot(pixel_fwhm((1.0, 1.0)), 2.0))
    assert img.max() == pytest.approx(img.values[4, 4])
