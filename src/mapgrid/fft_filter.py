"""
Real FFT pair with half-spectrum packing, and a Gaussian large-scale filter.

Packing of a real length-N (power of two) transform, N >= 2:
  packed[0] = Re F[0]        (DC)
  packed[1] = Re F[N/2]      (Nyquist)
  packed[2k], packed[2k+1] = Re F[k], Im F[k]   for k = 1 .. N/2-1

The forward transform is unnormalized; the inverse carries 1/N so that
inverse_real_transform(forward_real_transform(x)) == x.
Transforms act on the last axis, so a 2D array is a batch of rows.
"""

from __future__ import annotations

import math

import numpy as np

import jax
import jax.numpy as jnp

from .kernels import SIGMAS_IN_FWHM

jax.config.update("jax_enable_x64", True)


def padded_size(n: int) -> int:
    """Smallest power of two >= max(n, 2)."""
    n = int(n)
    if n < 1:
        raise ValueError(f"n must be >= 1, got {n}.")
    return max(2, 1 << (n - 1).bit_length())


def _check_length(n: int) -> None:
    if n < 2 or n & (n - 1):
        raise ValueError(f"Transform length must be a power of two >= 2, got {n}.")


def forward_real_transform(buffer) -> np.ndarray:
    x = jnp.asarray(buffer, dtype=jnp.float64)
    n = x.shape[-1]
    _check_length(n)
    f = jnp.fft.rfft(x, axis=-1)
    pairs = jnp.stack([f[..., 1 : n // 2].real, f[..., 1 : n // 2].imag], axis=-1)
    pairs = jnp.reshape(pairs, x.shape[:-1] + (n - 2,))
    packed = jnp.concatenate([f[..., :1].real, f[..., n // 2 : n // 2 + 1].real, pairs], axis=-1)
    return np.asarray(packed)


def inverse_real_transform(packed) -> np.ndarray:
    p = jnp.asarray(packed, dtype=jnp.float64)
    n = p.shape[-1]
    _check_length(n)
    pairs = jnp.reshape(p[..., 2:], p.shape[:-1] + (n // 2 - 1, 2))
    f = jnp.concatenate(
        [
            p[..., :1].astype(jnp.complex128),
            pairs[..., 0] + 1j * pairs[..., 1],
            p[..., 1:2].astype(jnp.complex128),
        ],
        axis=-1,
    )
    return np.asarray(jnp.fft.irfft(f, n=n, axis=-1))


def packed_frequencies(n: int) -> np.ndarray:
    """Frequency index (in bins) of every packed slot."""
    _check_length(n)
    f = np.empty(n)
    f[0], f[1] = 0.0, n // 2
    f[2:] = np.repeat(np.arange(1, n // 2), 2)
    return f


def _taper_last_axis(buffer: np.ndarray, sigma_f: float) -> np.ndarray:
    n = buffer.shape[-1]
    f = packed_frequencies(n)
    taper = np.exp(-0.5 * (f / sigma_f) ** 2)
    return inverse_real_transform(forward_real_transform(buffer) * taper)


def gaussian_lowpass(buffer: np.ndarray, sigma_fx: float, sigma_fy: float) -> np.ndarray:
    """
    Separable Gaussian taper exp(-fx^2/2sx^2 - fy^2/2sy^2) on a power-of-two
    2D buffer; frequencies in bins of the buffer.
    """
    b = np.asarray(buffer, dtype=np.float64)
    b = _taper_last_axis(b.T, sigma_fx).T
    return _taper_last_axis(b, sigma_fy)


def large_scale_component(image: np.ndarray, fwhm: float, pixel_size) -> np.ndarray:
    """
    Structure of `image` on scales above `fwhm`, without its mean (DC).

    The image is zero-padded to power-of-two sizes; the taper width in bins is
    sigma_f = SIGMAS_IN_FWHM * N * dx / (2 pi FWHM) per axis.
    """
    image = np.asarray(image, dtype=np.float64)
    nx, ny = image.shape
    px, py = padded_size(nx), padded_size(ny)
    buffer = np.zeros((px, py))
    buffer[:nx, :ny] = image
    sigma_fx = SIGMAS_IN_FWHM * px * float(pixel_size[0]) / (2.0 * math.pi * fwhm)
    sigma_fy = SIGMAS_IN_FWHM * py * float(pixel_size[1]) / (2.0 * math.pi * fwhm)
    low = gaussian_lowpass(buffer, sigma_fx, sigma_fy)
    low = low - np.mean(buffer)
    return low[:nx, :ny]
