"""
mapgrid: parallel flagged grids and weighted accumulation maps.

The main public entry points are:
  - `WeightedMap` (accumulate samples, clip, filter, deconvolve)
  - `FlaggedImage` (flagged 2D grid with statistics and convolution)
  - `CoordinateGrid` (coordinates <-> fractional cell index)
  - `CircularRegion` (apertures and peak centroiding)
  - `reduce_map` (standard reduction sequence)
"""

from .config import ReductionConfig
from .grid import BBox, CartesianProjection, CoordinateGrid, GnomonicProjection
from .image import FLAG_CLIPPED, FLAG_NODATA, FLAG_REGION, FLAG_SPIKE, CleanResult, FlaggedImage, Unit
from .map import WeightedMap
from .parallel import RowTask, TaskInterrupted, process
from .region import CircularRegion, PeakFit, PeakRefinementError
from .stats import DataPoint
from .workflow import accumulate_scans, reduce_map

__all__ = [
    "BBox",
    "CartesianProjection",
    "GnomonicProjection",
    "CoordinateGrid",
    "FlaggedImage",
    "WeightedMap",
    "Unit",
    "CleanResult",
    "FLAG_NODATA",
    "FLAG_CLIPPED",
    "FLAG_SPIKE",
    "FLAG_REGION",
    "CircularRegion",
    "PeakFit",
    "PeakRefinementError",
    "DataPoint",
    "RowTask",
    "TaskInterrupted",
    "process",
    "ReductionConfig",
    "accumulate_scans",
    "reduce_map",
]
