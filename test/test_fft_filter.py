"""
Tests for the packed real FFT pair and the Gaussian large-scale filter.
"""
from __future__ import annotations

import numpy as np
import pytest

from mapgrid import fft_filter


# --- Transform pair ---

@pytest.mark.parametrize("n", [2, 8, 64])
def test_round_trip(n):
    rng = np.random.default_rng(n)
    x = rng.normal(size=n)
    np.testing.assert_allclose(fft_filter.inverse_real_transform(fft_filter.forward_real_transform(x)), x, atol=1e-12)


def test_round_trip_batched_rows():
    rng = np.random.default_rng(1)
    x = rng.normal(size=(5, 16))
    np.testing.assert_allclose(fft_filter.inverse_real_transform(fft_filter.forward_real_transform(x)), x, atol=1e-12)


def test_packing_layout():
    """Slot 0 = DC, slot 1 = Nyquist, then (re, im) pairs."""
    rng = np.random.default_rng(2)
    x = rng.normal(size=16)
    f = np.fft.rfft(x)
    packed = fft_filter.forward_real_transform(x)
    assert packed.shape == (16,)
    assert packed[0] == pytest.approx(f[0].real)
    assert packed[1] == pytest.approx(f[8].real)
    np.testing.assert_allclose(packed[2::2], f[1:8].real, atol=1e-12)
    np.testing.assert_allclose(packed[3::2], f[1:8].imag, atol=1e-12)


def test_packed_frequencies():
    np.testing.assert_array_equal(fft_filter.packed_frequencies(8), [0, 4, 1, 1, 2, 2, 3, 3])


@pytest.mark.parametrize("n", [0, 3, 12])
def test_non_power_of_two_length_raises(n):
    with pytest.raises(ValueError):
        fft_filter.forward_real_transform(np.zeros(n))


@pytest.mark.parametrize("n, expected", [(1, 2), (2, 2), (5, 8), (8, 8), (33, 64)])
def test_padded_size(n, expected):
    assert fft_filter.padded_size(n) == expected


# --- Large-scale filter ---

def test_large_scale_component_of_constant_is_zero():
    """The DC term is removed: a constant has no large-scale structure."""
    low = fft_filter.large_scale_component(np.full((16, 16), 3.0), 10.0, (1.0, 1.0))
    np.testing.assert_allclose(low, 0.0, atol=1e-10)


def test_large_scale_component_shape_for_unpadded_input():
    rng = np.random.default_rng(3)
    image = rng.normal(size=(20, 13))
    low = fft_filter.large_scale_component(image, 8.0, (1.0, 1.0))
    assert low.shape == (20, 13)
    assert np.all(np.isfinite(low))


def test_gaussian_lowpass_keeps_dc():
    buffer = np.zeros((8, 8))
    buffer[0, 0] = 64.0
    out = fft_filter.gaussian_lowpass(buffer, 1.0, 1.0)
    assert np.sum(out) == pytest.approx(64.0)
