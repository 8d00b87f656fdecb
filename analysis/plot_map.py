#!/usr/bin/env python3
"""
Plot map products written by `run_map_demo.py` (or any `save_map` NPZ).

Writes figures to:
  mapgrid/analysis/output/demo/plots/
"""

from __future__ import annotations

import pathlib

import numpy as np
import matplotlib.pyplot as plt

from mapgrid import dataset_io

THIS_DIR = pathlib.Path(__file__).resolve().parent
MAP_PATH = THIS_DIR / "output" / "demo" / "map.npz"
OUT_DIR = THIS_DIR / "output" / "demo" / "plots"

PANELS = (
    ("signal", "signal", "RdBu_r"),
    ("s2n", "S/N", "RdBu_r"),
    ("weight", "weight", "viridis"),
    ("exposure", "exposure [s]", "viridis"),
)


def _imshow(ax, img, *, title: str, cmap: str, symmetric: bool):
    img = np.ma.masked_invalid(np.asarray(img, dtype=np.float64))
    cm = plt.get_cmap(cmap).copy()
    # Flagged cells as solid white.
    cm.set_bad(color=(1.0, 1.0, 1.0, 1.0))
    vmin = vmax = None
    if symmetric and img.count():
        vmax = float(np.percentile(np.abs(img.compressed()), 99.5))
        vmin = -vmax
    im = ax.imshow(img.T, origin="lower", cmap=cm, vmin=vmin, vmax=vmax, aspect="equal")
    ax.set_title(title)
    ax.set_xlabel("i")
    ax.set_ylabel("j")
    return im


def plot_products(products: dict, out_path: pathlib.Path) -> None:
    fig, axes = plt.subplots(1, len(PANELS), figsize=(4.6 * len(PANELS), 4.2), dpi=150)
    for ax, (key, title, cmap) in zip(axes, PANELS):
        img = np.asarray(products[key], dtype=np.float64)
        if key in ("weight", "exposure"):
            img = np.where(img > 0.0, img, np.nan)
        im = _imshow(ax, img, title=title, cmap=cmap, symmetric=cmap == "RdBu_r")
        fig.colorbar(im, ax=ax, fraction=0.046, pad=0.04)
    fig.suptitle(
        f"smooth_fwhm={float(products['smooth_fwhm']):.2f}  "
        f"filter_fwhm={float(products['ext_filter_fwhm']):.2f}  "
        f"weight_factor={float(products['weight_factor']):.3g}"
    )
    fig.tight_layout()
    fig.savefig(out_path, bbox_inches="tight")
    plt.close(fig)


def plot_s2n_histogram(products: dict, out_path: pathlib.Path) -> None:
    s2n = np.asarray(products["s2n"], dtype=np.float64)
    s2n = s2n[np.isfinite(s2n)]
    fig, ax = plt.subplots(figsize=(5.0, 3.6), dpi=150)
    bins = np.linspace(-6.0, 6.0, 121)
    ax.hist(np.clip(s2n, bins[0], bins[-1]), bins=bins, histtype="step", color="k", label="map")
    x = 0.5 * (bins[1:] + bins[:-1])
    ax.plot(x, s2n.size * (bins[1] - bins[0]) * np.exp(-0.5 * x * x) / np.sqrt(2.0 * np.pi), "r--", label="N(0,1)")
    ax.set_yscale("log")
    ax.set_xlabel("S/N")
    ax.legend()
    fig.savefig(out_path, bbox_inches="tight")
    plt.close(fig)


def main() -> None:
    if not MAP_PATH.exists():
        raise RuntimeError(f"Missing {MAP_PATH}; run run_map_demo.py first.")
    OUT_DIR.mkdir(parents=True, exist_ok=True)
    products = dataset_io.load_products(MAP_PATH)
    plot_products(products, OUT_DIR / "products.png")
    plot_s2n_histogram(products, OUT_DIR / "s2n_hist.png")
    print(f"[plot] wrote {OUT_DIR}", flush=True)


if __name__ == "__main__":
    main()
