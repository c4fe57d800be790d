"""
Stitching parameters.
"""

import json
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Optional, Union

from .strategies import FusionMethod


@dataclass
class StitchingParameters:
    """
    Options for registration, optimization and fusion.

    Parameters
    ----------
    dimensionality : int
        2 or 3.
    fusion_method : str
        One of ``blend``, ``average``, ``median``, ``max``, ``min``, ``overlap``.
    regression_threshold : float
        Pairs with a lower cross correlation are ignored by optimization.
    relative_threshold, absolute_threshold : float
        Residual thresholds that trigger rejecting the worst link.
    peaks_to_test : int
        Phase correlation peaks verified per pair.
    min_overlap_fraction : float
        Minimum overlap of a candidate shift, as a fraction of the smaller tile.
    subpixel_accuracy : bool
        Subpixel peak refinement and interpolated fusion.
    sequential : bool
        Pair tiles by acquisition order instead of by overlap.
    sequential_range : int
        Number of following tiles paired with each tile in sequential mode.
    compute_overlap : bool
        If False, seed offsets are used as they are.
    ignore_zero_values : bool
        Skip samples equal to 0 during fusion.
    blend_fraction : float
        Blended fraction of each tile for ``blend`` fusion.
    no_overlap_fusion : bool
        Paste tiles at rounded positions instead of fusing.
    damp_edges : bool
        Exponential edge window before phase correlation.
    downsample : int
        Block-average factor applied before registration.
    channel : int, optional
        Channel used for registration; None averages all channels.
    max_allowed_error, max_iterations, max_plateau_width
        Relaxation stopping criteria.
    max_workers : int, optional
        Worker threads; None uses all CPUs.
    debug : bool
        If True, prints debug info.
    """

    dimensionality: int = 2
    fusion_method: str = "blend"
    regression_threshold: float = 0.3
    relative_threshold: float = 2.5
    absolute_threshold: float = 3.5
    peaks_to_test: int = 5
    min_overlap_fraction: float = 0.01
    subpixel_accuracy: bool = False
    sequential: bool = False
    sequential_range: int = 1
    compute_overlap: bool = True
    ignore_zero_values: bool = False
    blend_fraction: float = 0.2
    no_overlap_fusion: bool = False
    damp_edges: bool = True
    downsample: int = 1
    channel: Optional[int] = None
    max_allowed_error: float = 10.0
    max_iterations: int = 1000
    max_plateau_width: int = 200
    max_workers: Optional[int] = None
    debug: bool = False

    def __post_init__(self):
        if self.dimensionality not in (2, 3):
            raise ValueError(f"dimensionality must be 2 or 3, got {self.dimensionality}")
        self.fusion_method = FusionMethod.parse(self.fusion_method).name.lower()
        if self.relative_threshold <= 0:
            raise ValueError(f"relative_threshold must be positive, got {self.relative_threshold}")
        if self.absolute_threshold <= 0:
            raise ValueError(f"absolute_threshold must be positive, got {self.absolute_threshold}")
        if self.peaks_to_test < 1:
            raise ValueError(f"peaks_to_test must be >= 1, got {self.peaks_to_test}")
        if not 0.0 <= self.min_overlap_fraction <= 1.0:
            raise ValueError(f"min_overlap_fraction must be in [0, 1], got {self.min_overlap_fraction}")
        if self.sequential_range < 1:
            raise ValueError(f"sequential_range must be >= 1, got {self.sequential_range}")
        if not 0.0 <= self.blend_fraction <= 1.0:
            raise ValueError(f"blend_fraction must be in [0, 1], got {self.blend_fraction}")
        if self.downsample < 1:
            raise ValueError(f"downsample must be >= 1, got {self.downsample}")
        if self.channel is not None and self.channel < 0:
            raise ValueError(f"channel must be >= 0 or None, got {self.channel}")
        if self.max_iterations < 1 or self.max_plateau_width < 1:
            raise ValueError("max_iterations and max_plateau_width must be >= 1")
        if self.max_workers is not None and self.max_workers < 1:
            raise ValueError(f"max_workers must be >= 1 or None, got {self.max_workers}")

    @property
    def method(self) -> FusionMethod:
        return FusionMethod.parse(self.fusion_method)

    def to_json(self, filepath: Union[str, Path]) -> None:
        """Save parameters to a JSON file."""
        with open(filepath, "w") as f:
            json.dump(asdict(self), f, indent=2)

    @classmethod
    def from_json(cls, filepath: Union[str, Path]) -> "StitchingParameters":
        """Load parameters from a JSON file; unknown keys raise ValueError."""
        with open(filepath, "r") as f:
            data = json.load(f)
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ValueError(f"Unknown parameters: {unknown}")
        return cls(**data)
