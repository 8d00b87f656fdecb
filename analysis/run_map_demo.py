#!/usr/bin/env python3
"""
Synthetic point-source field: simulate scans, accumulate, reduce, photometry.

Outputs:
  mapgrid/analysis/output/demo/scans/scan_<k>.npz   simulated scans
  mapgrid/analysis/output/demo/map.npz              reduced map products

Plot the result with `plot_map.py`.
"""

from __future__ import annotations

import math
import pathlib
from dataclasses import dataclass

import numpy as np
from tqdm import tqdm

from mapgrid import CircularRegion, CoordinateGrid, PeakRefinementError, ReductionConfig
from mapgrid import dataset_io
from mapgrid.workflow import reduce_scan_dir

THIS_DIR = pathlib.Path(__file__).resolve().parent
OUT_DIR = THIS_DIR / "output" / "demo"


@dataclass(frozen=True)
class Config:
    n_pix: int = 96
    pixel_size: float = 1.0
    n_scans: int = 6
    samples_per_cell: float = 2.0
    noise_rms: float = 1.0
    source_fwhm: float = 4.0
    source_amplitudes: tuple = (20.0, 8.0, 4.0)
    drift_amplitude: float = 3.0
    seed: int = 1234


def _sources(cfg: Config) -> list[tuple[float, float, float]]:
    rng = np.random.default_rng(cfg.seed + 1)
    out = []
    for amp in cfg.source_amplitudes:
        ci, cj = rng.uniform(0.2 * cfg.n_pix, 0.8 * cfg.n_pix, size=2)
        out.append((float(ci), float(cj), float(amp)))
    return out


def _sky(fi: np.ndarray, fj: np.ndarray, sources, fwhm: float) -> np.ndarray:
    sigma = fwhm / (2.0 * math.sqrt(2.0 * math.log(2.0)))
    sky = np.zeros_like(fi)
    for ci, cj, amp in sources:
        sky += amp * np.exp(-0.5 * ((fi - ci) ** 2 + (fj - cj) ** 2) / sigma**2)
    return sky


def simulate_scans(cfg: Config, scan_dir: pathlib.Path) -> list:
    scan_dir.mkdir(parents=True, exist_ok=True)
    rng = np.random.default_rng(cfg.seed)
    sources = _sources(cfg)
    n = int(cfg.samples_per_cell * cfg.n_pix * cfg.n_pix)
    for k in tqdm(range(cfg.n_scans), desc="simulate scans", leave=True):
        fi = rng.uniform(-0.49, cfg.n_pix - 0.51, n)
        fj = rng.uniform(-0.49, cfg.n_pix - 0.51, n)
        # Large-scale drift different in every scan.
        phase = rng.uniform(0.0, 2.0 * math.pi)
        drift = cfg.drift_amplitude * np.sin(2.0 * math.pi * fi / cfg.n_pix + phase)
        value = _sky(fi, fj, sources, cfg.source_fwhm) + drift + rng.normal(scale=cfg.noise_rms, size=n)
        np.savez_compressed(
            scan_dir / f"scan_{k:03d}.npz",
            fi=fi,
            fj=fj,
            value=value,
            weight=np.full(n, 1.0 / cfg.noise_rms**2),
            exposure=np.full(n, 0.01),
        )
    print(f"[simulate] n_scans={cfg.n_scans} samples_per_scan={n} sources={len(sources)}", flush=True)
    return sources


def main() -> None:
    cfg = Config()
    scan_dir = OUT_DIR / "scans"
    sources = simulate_scans(cfg, scan_dir)

    reduction = ReductionConfig(
        despike_level=8.0,
        min_relative_exposure=0.2,
        filter_fwhm=6.0 * cfg.source_fwhm,
        filter_blanking=5.0,
        smooth_fwhm=cfg.source_fwhm,
    )
    out_path = OUT_DIR / "map.npz"
    grid = CoordinateGrid(pixel_size=cfg.pixel_size)
    summary = reduce_scan_dir(
        scan_dir=scan_dir,
        out_path=out_path,
        size_x=cfg.n_pix,
        size_y=cfg.n_pix,
        cfg=reduction,
        grid=grid,
    )
    print(f"[summary] {summary}", flush=True)

    wmap = dataset_io.load_map(out_path)
    for ci, cj, amp in sources:
        region = CircularRegion((ci * cfg.pixel_size, cj * cfg.pixel_size), cfg.source_fwhm)
        try:
            region = region.move_to_peak(wmap)
        except PeakRefinementError as exc:
            print(f"[source] ({ci:.1f},{cj:.1f}) amp={amp:g}: no peak ({exc})", flush=True)
            continue
        flux = wmap.flux(region)
        print(
            f"[source] ({ci:.1f},{cj:.1f}) amp={amp:g}  "
            f"peak=({region.center[0]:.2f},{region.center[1]:.2f})  "
            f"flux={flux.value:.3f}+-{flux.rms:.3f}  s2n={flux.significance:.1f}",
            flush=True,
        )


if __name__ == "__main__":
    main()
