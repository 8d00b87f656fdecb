"""
Map product NPZ save/load and scan NPZ loading.

A product NPZ holds the four parallel arrays of `WeightedMap.to_products()`
(signal, exposure, weight, s2n) and its scalar metadata. A scan NPZ holds
per-sample fractional indices and sample data:
  fi, fj, value            (n,) float
  gain, weight, exposure   (n,) float, optional (default 1, 1, 0)
"""

from __future__ import annotations

from pathlib import Path

import numpy as np

from .map import PRODUCT_ARRAYS, WeightedMap


def save_map(path: Path, wmap: WeightedMap) -> Path:
    path = Path(path)
    products = wmap.to_products()
    payload = {}
    for key, value in products.items():
        if isinstance(value, str):
            payload[key] = np.array(value)
        else:
            payload[key] = np.asarray(value)
    np.savez_compressed(path, **payload)
    return path


def load_products(path: Path) -> dict:
    path = Path(path)
    with np.load(path, allow_pickle=False) as z:
        missing = [k for k in PRODUCT_ARRAYS if k not in z.files]
        if missing:
            raise RuntimeError(f"Missing product arrays {missing} in {path}.")
        out = {}
        for key in z.files:
            a = np.asarray(z[key])
            if a.ndim == 0:
                out[key] = a.item()
            else:
                out[key] = a
    return out


def load_map(path: Path, **kwargs) -> WeightedMap:
    return WeightedMap.from_products(load_products(path), **kwargs)


def load_scan(npz_path: Path) -> dict:
    npz_path = Path(npz_path)
    with np.load(npz_path, allow_pickle=False) as z:
        n = int(np.asarray(z["value"]).size)
        return dict(
            fi=np.asarray(z["fi"], dtype=np.float64),
            fj=np.asarray(z["fj"], dtype=np.float64),
            value=np.asarray(z["value"], dtype=np.float64),
            gain=np.asarray(z["gain"], dtype=np.float64) if "gain" in z.files else np.ones(n),
            weight=np.asarray(z["weight"], dtype=np.float64) if "weight" in z.files else np.ones(n),
            exposure=np.asarray(z["exposure"], dtype=np.float64) if "exposure" in z.files else np.zeros(n),
        )


def discover_scan_paths(scan_dir: Path, *, max_scans: int | None = None) -> list[Path]:
    """Sorted scan NPZ paths in a directory (hidden files skipped), truncated to max_scans."""
    scan_dir = Path(scan_dir)
    paths = sorted(p for p in scan_dir.iterdir() if p.is_file() and p.suffix == ".npz" and not p.name.startswith("."))
    if max_scans is not None and max_scans > 0:
        paths = paths[:max_scans]
    return paths
