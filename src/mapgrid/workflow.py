"""
Map reduction: accumulate scans into a map, then clean it up.

`reduce_map` runs, in order (each step skipped when its threshold is NaN):
  end accumulation -> despike -> exposure clip -> relative rms clip ->
  reweight -> large-scale filter -> smooth -> S/N clip -> CLEAN
"""

from __future__ import annotations

import math
from pathlib import Path

from tqdm import tqdm

from . import dataset_io
from .config import ReductionConfig
from .map import WeightedMap


def accumulate_scans(wmap: WeightedMap, scans, *, label: str = "map") -> int:
    """
    Feed scan dicts (see `dataset_io.load_scan`) into an accumulating map.

    Returns the number of samples added.
    """
    if not wmap.is_accumulating:
        raise RuntimeError(f"[{label}] map is finalized; call begin_accumulation() first.")
    n_samples = 0
    for scan in tqdm(scans, desc=f"accumulate {label}", leave=True):
        wmap.add_samples(
            scan["fi"],
            scan["fj"],
            scan["value"],
            scan.get("gain", 1.0),
            scan.get("weight", 1.0),
            scan.get("exposure", 0.0),
        )
        n_samples += int(scan["value"].size)
    print(f"[accumulate] {label}: n_samples={n_samples}", flush=True)
    return n_samples


def reduce_map(wmap: WeightedMap, cfg: ReductionConfig, *, label: str = "map") -> dict:
    """
    Reduce a map in place according to `cfg`.

    Args:
      wmap: accumulating or finalized map.
      cfg: reduction parameters.
      label: tag used in progress lines and error messages.

    Returns:
      dict of per-step counts and noise figures.
    """
    wmap.n_workers = cfg.n_workers
    wmap.interpolation = cfg.interpolation
    summary: dict = {}

    if wmap.is_accumulating:
        summary["n_valid"] = wmap.end_accumulation()
    else:
        summary["n_valid"] = wmap.count_points()
    if summary["n_valid"] == 0:
        raise RuntimeError(f"[{label}] no valid cells after accumulation.")
    print(f"[reduce] {label}: {wmap.size_x}x{wmap.size_y}  n_valid={summary['n_valid']}", flush=True)

    if _enabled(cfg.despike_level):
        summary["n_spikes"] = wmap.despike(cfg.despike_level)
        print(f"[despike] {label}: level={cfg.despike_level:g}  flagged={summary['n_spikes']}", flush=True)

    if _enabled(cfg.min_relative_exposure):
        summary["n_exposure_clipped"] = wmap.clip_by_exposure(cfg.min_relative_exposure)
    if _enabled(cfg.max_relative_rms):
        summary["n_rms_clipped"] = wmap.clip_by_relative_rms(cfg.max_relative_rms)

    if cfg.reweight:
        summary["chi2"] = wmap.reweight(cfg.reweight_robust)
        print(
            f"[reweight] {label}: chi2={summary['chi2']:.4g}  weight_factor={wmap.weight_factor:.4g}",
            flush=True,
        )

    if _enabled(cfg.filter_fwhm):
        if cfg.fft_filter:
            wmap.fft_filter_above(cfg.filter_fwhm, cfg.filter_blanking)
        else:
            wmap.filter_above(cfg.filter_fwhm, cfg.filter_blanking)
        print(
            f"[filter] {label}: fwhm={cfg.filter_fwhm:g}  blanking={cfg.filter_blanking:g}  "
            f"mode={'fft' if cfg.fft_filter else 'spatial'}",
            flush=True,
        )

    if _enabled(cfg.smooth_fwhm):
        wmap.smooth_to(cfg.smooth_fwhm)
        print(f"[smooth] {label}: smooth_fwhm={wmap.smooth_fwhm:.4g}", flush=True)

    if _enabled(cfg.clip_s2n):
        summary["n_s2n_clipped"] = wmap.clip_by_s2n(cfg.clip_s2n)

    if _enabled(cfg.clean_gain):
        replacement = cfg.replacement_fwhm if _enabled(cfg.replacement_fwhm) else None
        result = wmap.deconvolve(gain=cfg.clean_gain, replacement_fwhm=replacement)
        summary["n_components"] = result.n_components
        print(
            f"[clean] {label}: components={result.n_components}  last_peak={result.last_peak:.3g}  "
            f"critical={result.critical:.3g}  capped={result.capped}",
            flush=True,
        )

    summary["n_final"] = wmap.count_points()
    summary["typical_rms"] = wmap.typical_rms()
    summary["mean_exposure"] = wmap.mean_exposure()
    print(
        f"[reduce] {label}: n_final={summary['n_final']}  typical_rms={summary['typical_rms']:.4g}",
        flush=True,
    )
    return summary


def reduce_scan_dir(
    *,
    scan_dir: Path,
    out_path: Path,
    size_x: int,
    size_y: int,
    cfg: ReductionConfig,
    grid=None,
    max_scans: int | None = None,
) -> dict:
    """Accumulate every scan NPZ in `scan_dir`, reduce, and write the products NPZ."""
    scan_dir = Path(scan_dir)
    label = scan_dir.name
    paths = dataset_io.discover_scan_paths(scan_dir, max_scans=max_scans)
    if not paths:
        raise RuntimeError(f"[{label}] no scan NPZ files in {scan_dir}.")
    wmap = WeightedMap(size_x, size_y, grid=grid, interpolation=cfg.interpolation, n_workers=cfg.n_workers)
    accumulate_scans(wmap, (dataset_io.load_scan(p) for p in paths), label=label)
    summary = reduce_map(wmap, cfg, label=label)
    dataset_io.save_map(out_path, wmap)
    print(f"[write] {out_path}", flush=True)
    return summary


def _enabled(x) -> bool:
    return x is not None and not math.isnan(float(x))
