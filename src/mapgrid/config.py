"""
Reduction parameters.

Thresholds arrive from the caller as plain scalars or strings (e.g. from a
command line or a pipeline's own option store); `ReductionConfig.from_mapping`
converts them. A NaN or None threshold disables that step.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, fields

from .image import INTERPOLATIONS


@dataclass(frozen=True)
class ReductionConfig:
    n_workers: int | None = None
    interpolation: str = "spline"
    despike_level: float = 10.0
    reweight: bool = True
    reweight_robust: bool = True
    min_relative_exposure: float = 0.1
    max_relative_rms: float = math.nan
    clip_s2n: float = math.nan
    filter_fwhm: float = math.nan
    filter_blanking: float = 6.0
    fft_filter: bool = False
    smooth_fwhm: float = math.nan
    clean_gain: float = math.nan
    replacement_fwhm: float = math.nan

    def __post_init__(self):
        if self.n_workers is not None and int(self.n_workers) < 1:
            raise ValueError(f"n_workers must be >= 1, got {self.n_workers}.")
        if self.interpolation not in INTERPOLATIONS:
            raise ValueError(f"interpolation must be one of {INTERPOLATIONS}, got {self.interpolation!r}.")
        if not math.isnan(self.clean_gain) and not 0.0 < self.clean_gain <= 1.0:
            raise ValueError(f"clean_gain must be in (0, 1], got {self.clean_gain}.")

    @classmethod
    def from_mapping(cls, options: dict) -> "ReductionConfig":
        known = {f.name: f for f in fields(cls)}
        unknown = sorted(set(options) - set(known))
        if unknown:
            raise ValueError(f"Unknown reduction options: {', '.join(unknown)}.")
        kwargs = {}
        for name, value in options.items():
            default = known[name].default
            if name == "n_workers":
                kwargs[name] = None if value in (None, "", "auto") else int(value)
            elif isinstance(default, bool):
                kwargs[name] = _parse_bool(name, value)
            elif isinstance(default, float):
                kwargs[name] = math.nan if value in (None, "") else float(value)
            else:
                kwargs[name] = str(value)
        return cls(**kwargs)


def _parse_bool(name: str, value) -> bool:
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in ("1", "true", "yes", "on", "t", "y"):
        return True
    if text in ("0", "false", "no", "off", "f", "n"):
        return False
    raise ValueError(f"Option {name!r} expects a boolean, got {value!r}.")
