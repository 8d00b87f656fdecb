"""
Coordinate grids: continuous coordinates <-> fractional cell index.

  offset = projection.project(coord)
  index  = reference_index + T @ (offset / pixel_size)
  offset = pixel_size * (T^{-1} @ (index - reference_index))

T is a 2x2 matrix with unit-length columns (rotation, optionally skew); all
scale lives in pixel_size. The inverse of T is recomputed by every setter.

Index convention: fi runs along axis 0 (x), fj along axis 1 (y).
"""

from __future__ import annotations

from dataclasses import dataclass

import numpy as np


@dataclass(frozen=True)
class BBox:
    """Inclusive bbox in cell indices."""

    ix0: int
    ix1: int
    iy0: int
    iy1: int

    @property
    def nx(self) -> int:
        return int(self.ix1 - self.ix0 + 1)

    @property
    def ny(self) -> int:
        return int(self.iy1 - self.iy0 + 1)

    @property
    def slices(self) -> tuple[slice, slice]:
        return slice(self.ix0, self.ix1 + 1), slice(self.iy0, self.iy1 + 1)


class CartesianProjection:
    """Plane coordinates; the offset is coord - reference."""

    kind = "cartesian"

    def __init__(self, reference=(0.0, 0.0)):
        self.reference = (float(reference[0]), float(reference[1]))

    def project(self, coord):
        x, y = coord
        return np.subtract(x, self.reference[0]), np.subtract(y, self.reference[1])

    def deproject(self, offset):
        dx, dy = offset
        return np.add(dx, self.reference[0]), np.add(dy, self.reference[1])

    def copy(self):
        return type(self)(self.reference)

    def matches(self, other, tol: float = 1e-12) -> bool:
        return (
            type(other) is type(self)
            and abs(other.reference[0] - self.reference[0]) <= tol
            and abs(other.reference[1] - self.reference[1]) <= tol
        )


class GnomonicProjection(CartesianProjection):
    """
    Gnomonic (TAN) projection of spherical (lon, lat) in radians about the
    reference. Offsets are tangent-plane coordinates in radians.
    """

    kind = "gnomonic"

    def project(self, coord):
        lon, lat = (np.asarray(c, dtype=np.float64) for c in coord)
        lon0, lat0 = self.reference
        dlon = lon - lon0
        cos_c = np.sin(lat0) * np.sin(lat) + np.cos(lat0) * np.cos(lat) * np.cos(dlon)
        if np.any(cos_c <= 0.0):
            raise ValueError("Coordinate is on or beyond the horizon of the gnomonic reference.")
        x = np.cos(lat) * np.sin(dlon) / cos_c
        y = (np.cos(lat0) * np.sin(lat) - np.sin(lat0) * np.cos(lat) * np.cos(dlon)) / cos_c
        return x, y

    def deproject(self, offset):
        x, y = (np.asarray(o, dtype=np.float64) for o in offset)
        lon0, lat0 = self.reference
        rho = np.hypot(x, y)
        c = np.arctan(rho)
        sin_c, cos_c = np.sin(c), np.cos(c)
        with np.errstate(invalid="ignore", divide="ignore"):
            lat = np.where(
                rho > 0.0,
                np.arcsin(np.clip(cos_c * np.sin(lat0) + y * sin_c * np.cos(lat0) / rho, -1.0, 1.0)),
                lat0,
            )
        lon = lon0 + np.arctan2(x * sin_c, rho * np.cos(lat0) * cos_c - y * np.sin(lat0) * sin_c)
        return lon, lat


PROJECTIONS = {p.kind: p for p in (CartesianProjection, GnomonicProjection)}


def _as_pair(v, name: str) -> np.ndarray:
    a = np.asarray(v, dtype=np.float64).reshape(-1)
    if a.size == 1:
        a = np.repeat(a, 2)
    if a.size != 2:
        raise ValueError(f"{name} must be a scalar or a pair, got shape {np.shape(v)}.")
    return a


class CoordinateGrid:
    """
    Affine grid on top of an injected projection.

    Args:
      projection: object with project/deproject/copy/matches (default Cartesian at 0,0).
      pixel_size: scalar or (px, py), > 0, in projected offset units.
      reference_index: fractional index (fi, fj) of the projection reference.
      transform: 2x2 matrix; columns are normalized, singular matrices rejected.
    """

    def __init__(
        self,
        projection=None,
        *,
        pixel_size=1.0,
        reference_index=(0.0, 0.0),
        transform=None,
    ):
        self.projection = projection if projection is not None else CartesianProjection()
        self.reference_index = _as_pair(reference_index, "reference_index")
        self._pixel_size = np.ones(2)
        self._transform = np.eye(2)
        self._inverse = np.eye(2)
        self.set_pixel_size(pixel_size)
        self.set_transform(np.eye(2) if transform is None else transform)

    # --- Geometry state ---

    @property
    def pixel_size(self) -> np.ndarray:
        return self._pixel_size.copy()

    @property
    def transform(self) -> np.ndarray:
        return self._transform.copy()

    @property
    def inverse_transform(self) -> np.ndarray:
        return self._inverse.copy()

    @property
    def pixel_area(self) -> float:
        return float(self._pixel_size[0] * self._pixel_size[1])

    def set_pixel_size(self, pixel_size) -> None:
        ps = _as_pair(pixel_size, "pixel_size")
        if not np.all(np.isfinite(ps)) or np.any(ps <= 0.0):
            raise ValueError(f"pixel_size must be finite and > 0, got {ps.tolist()}.")
        self._pixel_size = ps

    def set_transform(self, m) -> None:
        m = np.asarray(m, dtype=np.float64)
        if m.shape != (2, 2) or not np.all(np.isfinite(m)):
            raise ValueError("transform must be a finite 2x2 matrix.")
        norms = np.linalg.norm(m, axis=0)
        if np.any(norms == 0.0):
            raise ValueError("transform is singular (zero column).")
        m = m / norms
        det = float(np.linalg.det(m))
        if abs(det) < 1e-12:
            raise ValueError("transform is singular.")
        self._transform = m
        self._inverse = np.linalg.inv(m)

    def rotate(self, angle: float) -> None:
        """Compose a rotation by `angle` (radians) onto the current transform."""
        c, s = np.cos(angle), np.sin(angle)
        self.set_transform(np.array([[c, -s], [s, c]]) @ self._transform)

    def shift_index(self, di: float, dj: float) -> None:
        """Move the grid origin by (di, dj) cells, e.g. after cropping."""
        self.reference_index = self.reference_index - np.array([di, dj], dtype=np.float64)

    # --- Mapping ---

    def offset_to_index(self, offset):
        u = np.asarray(offset[0], dtype=np.float64) / self._pixel_size[0]
        v = np.asarray(offset[1], dtype=np.float64) / self._pixel_size[1]
        t = self._transform
        fi = self.reference_index[0] + t[0, 0] * u + t[0, 1] * v
        fj = self.reference_index[1] + t[1, 0] * u + t[1, 1] * v
        return fi, fj

    def index_to_offset(self, fi, fj):
        di = np.asarray(fi, dtype=np.float64) - self.reference_index[0]
        dj = np.asarray(fj, dtype=np.float64) - self.reference_index[1]
        t = self._inverse
        u = t[0, 0] * di + t[0, 1] * dj
        v = t[1, 0] * di + t[1, 1] * dj
        return u * self._pixel_size[0], v * self._pixel_size[1]

    def to_index(self, coord):
        return self.offset_to_index(self.projection.project(coord))

    def to_coordinate(self, fi, fj):
        return self.projection.deproject(self.index_to_offset(fi, fj))

    # --- Derived grids ---

    def copy(self) -> "CoordinateGrid":
        return CoordinateGrid(
            self.projection.copy(),
            pixel_size=self._pixel_size,
            reference_index=self.reference_index,
            transform=self._transform,
        )

    def regridded(self, pixel_size) -> "CoordinateGrid":
        """Same projection and orientation at a new resolution; index 0 stays in place."""
        new_ps = _as_pair(pixel_size, "pixel_size")
        out = self.copy()
        out.set_pixel_size(new_ps)
        out.reference_index = self.reference_index * self._pixel_size / new_ps
        return out

    def matches(self, other: "CoordinateGrid", tol: float = 1e-9) -> bool:
        return (
            self.projection.matches(other.projection)
            and np.allclose(self._pixel_size, other._pixel_size, rtol=tol, atol=0.0)
            and np.allclose(self.reference_index, other.reference_index, rtol=0.0, atol=tol)
            and np.allclose(self._transform, other._transform, rtol=0.0, atol=tol)
        )

    def to_metadata(self) -> dict:
        return dict(
            projection=self.projection.kind,
            reference=np.asarray(self.projection.reference, dtype=np.float64),
            pixel_size=self.pixel_size,
            reference_index=self.reference_index.copy(),
            transform=self.transform,
        )

    @classmethod
    def from_metadata(cls, meta: dict) -> "CoordinateGrid":
        kind = str(meta["projection"])
        if kind not in PROJECTIONS:
            raise ValueError(f"Unknown projection {kind!r}.")
        return cls(
            PROJECTIONS[kind](tuple(np.asarray(meta["reference"], dtype=np.float64))),
            pixel_size=meta["pixel_size"],
            reference_index=meta["reference_index"],
            transform=meta["transform"],
        )

    def __repr__(self) -> str:
        return (
            f"CoordinateGrid({self.projection.kind}, pixel_size={self._pixel_size.tolist()}, "
            f"reference_index={self.reference_index.tolist()})"
        )
