"""
tilestitch - phase-correlation registration, global optimization and fusion
of overlapping 2D/3D image tiles.

Pairwise shifts are estimated by phase correlation and verified by real-space
cross correlation, reconciled by an iterative global optimization that
rejects inconsistent links, and the positioned tiles are fused over an exact
region decomposition of the output with pluggable blending strategies.
"""

from .core import TileStitcher
from .errors import Cancelled, NoninvertibleModelError
from .fusion import estimate_bounds, fuse, fuse_no_overlap, fuse_tiles, fuse_to_directory
from .geometry import ClassifiedRegion, Interval, decompose, iter_positions
from .graph import find_overlapping_pairs, find_sequential_pairs, register_pairs
from .optimization import optimize_global
from .parameters import StitchingParameters
from .registration import PairwiseResult, compute_pairwise_candidates, register_pair
from .strategies import FusionMethod, make_strategy
from .tiles import ComparePair, Tile, TranslationModel, grid_cells, grid_offsets

__version__ = "0.1.0"
__all__ = [
    "Cancelled",
    "ClassifiedRegion",
    "ComparePair",
    "FusionMethod",
    "Interval",
    "NoninvertibleModelError",
    "PairwiseResult",
    "StitchingParameters",
    "Tile",
    "TileStitcher",
    "TranslationModel",
    "__version__",
    "compute_pairwise_candidates",
    "decompose",
    "estimate_bounds",
    "find_overlapping_pairs",
    "find_sequential_pairs",
    "fuse",
    "fuse_no_overlap",
    "fuse_tiles",
    "fuse_to_directory",
    "grid_cells",
    "grid_offsets",
    "iter_positions",
    "make_strategy",
    "optimize_global",
    "register_pair",
    "register_pairs",
]
