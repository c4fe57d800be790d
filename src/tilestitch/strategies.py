"""
Pixel-fusion strategies.

A strategy combines the samples that several tiles contribute to the same
output pixel. Each instance owns private accumulators covering one block of
output pixels: ``clear`` sizes them, every contributing tile calls ``add``
once with its samples for the whole block, and ``value`` returns the
combined block. Instances are never shared between worker threads.
"""

from enum import Enum
from typing import Dict, Mapping, Optional, Sequence, Tuple, Union

import numpy as np

_MIN_BLEND_WEIGHT = 1e-5


class FusionMethod(Enum):
    """Closed set of fusion strategies (values are the historic numeric ids)."""

    BLEND = 0
    AVERAGE = 1
    MEDIAN = 2
    MAX = 3
    MIN = 4
    OVERLAP = 5

    @classmethod
    def parse(cls, value: Union["FusionMethod", int, str]) -> "FusionMethod":
        """Accept an enum member, a numeric id or a (case-insensitive) name."""
        if isinstance(value, cls):
            return value
        if isinstance(value, (int, np.integer)) and not isinstance(value, bool):
            try:
                return cls(int(value))
            except ValueError:
                raise ValueError(f"Unknown fusion method id {value}") from None
        if isinstance(value, str):
            key = value.strip().lower().replace("-", "_").replace(" ", "_")
            if key in _ALIASES:
                return _ALIASES[key]
        raise ValueError(
            f"Unknown fusion method {value!r}; expected one of {[m.name.lower() for m in cls]}"
        )


_ALIASES = {
    "blend": FusionMethod.BLEND,
    "blending": FusionMethod.BLEND,
    "linear_blending": FusionMethod.BLEND,
    "average": FusionMethod.AVERAGE,
    "mean": FusionMethod.AVERAGE,
    "median": FusionMethod.MEDIAN,
    "max": FusionMethod.MAX,
    "max_intensity": FusionMethod.MAX,
    "min": FusionMethod.MIN,
    "min_intensity": FusionMethod.MIN,
    "overlap": FusionMethod.OVERLAP,
    "overwrite": FusionMethod.OVERLAP,
}


def blend_weight(
    local_position: Sequence[np.ndarray],
    tile_shape: Sequence[int],
    fraction: float = 0.2,
) -> np.ndarray:
    """
    Cosine blending weight for a block of samples of one tile.

    Parameters
    ----------
    local_position : sequence of ndarray
        Per-axis 1D coordinates of the samples in the tile's local frame.
        The block is their outer product.
    tile_shape : sequence of int
        Spatial shape of the tile.
    fraction : float
        Fraction of the tile, split between both borders, over which the
        weight ramps down.

    Returns
    -------
    weight : ndarray
        Weight per sample, in ``[1e-5, 1]``.
    """
    ndim = len(local_position)
    m = np.ones([len(c) for c in local_position], dtype=np.float64)
    for axis, (coords, size) in enumerate(zip(local_position, tile_shape)):
        x = np.asarray(coords, dtype=np.float64)
        v = np.maximum(1.0, np.minimum(x + 1.0, size - x))
        area = np.floor(fraction * 0.5 * size + 0.5)
        if area > 0:
            v = np.where(v < area, v / area, 1.0)
        else:
            v = np.ones_like(v)
        view = [1] * ndim
        view[axis] = len(x)
        m = m * v.reshape(view)
    weight = np.where(m >= 1.0, 1.0, np.where(m <= 0.0, 1e-7, (np.cos((1.0 - m) * np.pi) + 1.0) / 2.0))
    return np.maximum(_MIN_BLEND_WEIGHT, weight)


class PixelFusion:
    """Base class for the fusion strategies."""

    method: FusionMethod = None

    def __init__(self, ignore_zero: bool = False):
        self.ignore_zero = bool(ignore_zero)
        self._shape: Tuple[int, ...] = ()

    def clear(self, shape: Sequence[int]) -> None:
        self._shape = tuple(int(s) for s in shape)

    def add(self, values: np.ndarray, tile_id: int, local_position: Sequence[np.ndarray]) -> None:
        raise NotImplementedError

    def value(self) -> np.ndarray:
        raise NotImplementedError

    def _valid(self, values: np.ndarray) -> np.ndarray:
        if self.ignore_zero:
            return values != 0
        return np.ones(values.shape, dtype=bool)


class AveragePixelFusion(PixelFusion):
    method = FusionMethod.AVERAGE

    def clear(self, shape):
        super().clear(shape)
        self._sum = np.zeros(self._shape, dtype=np.float64)
        self._count = np.zeros(self._shape, dtype=np.int64)

    def add(self, values, tile_id, local_position):
        values = np.asarray(values, dtype=np.float64)
        valid = self._valid(values)
        self._sum += np.where(valid, values, 0.0)
        self._count += valid

    def value(self):
        out = np.zeros(self._shape, dtype=np.float64)
        np.divide(self._sum, self._count, out=out, where=self._count > 0)
        return out


class MedianPixelFusion(PixelFusion):
    """Middle sample, or the mean of the two middle samples for even counts."""

    method = FusionMethod.MEDIAN

    def clear(self, shape):
        super().clear(shape)
        self._samples = []

    def add(self, values, tile_id, local_position):
        values = np.asarray(values, dtype=np.float64)
        self._samples.append(np.where(self._valid(values), values, np.nan))

    def value(self):
        if not self._samples:
            return np.zeros(self._shape, dtype=np.float64)
        stack = np.sort(np.stack(self._samples, axis=0), axis=0)
        count = np.sum(~np.isnan(stack), axis=0)
        lower = np.take_along_axis(stack, (np.maximum(count - 1, 0) // 2)[np.newaxis], axis=0)[0]
        upper = np.take_along_axis(stack, (count // 2)[np.newaxis], axis=0)[0]
        upper = np.where(count % 2 == 0, upper, lower)
        return np.where(count > 0, (lower + upper) / 2.0, 0.0)


class _ExtremumPixelFusion(PixelFusion):
    def clear(self, shape):
        super().clear(shape)
        self._value = np.zeros(self._shape, dtype=np.float64)
        self._set = np.zeros(self._shape, dtype=bool)

    def _better(self, values: np.ndarray) -> np.ndarray:
        raise NotImplementedError

    def add(self, values, tile_id, local_position):
        values = np.asarray(values, dtype=np.float64)
        valid = self._valid(values)
        update = valid & (~self._set | self._better(values))
        self._value = np.where(update, values, self._value)
        self._set |= valid

    def value(self):
        return self._value.copy()


class MaxPixelFusion(_ExtremumPixelFusion):
    method = FusionMethod.MAX

    def _better(self, values):
        return values > self._value


class MinPixelFusion(_ExtremumPixelFusion):
    method = FusionMethod.MIN

    def _better(self, values):
        return values < self._value


class OverlapPixelFusion(PixelFusion):
    """The last tile added wins; zero samples are never skipped."""

    method = FusionMethod.OVERLAP

    def clear(self, shape):
        super().clear(shape)
        self._value = np.zeros(self._shape, dtype=np.float64)

    def add(self, values, tile_id, local_position):
        self._value = np.array(values, dtype=np.float64)

    def value(self):
        return self._value.copy()


class BlendingPixelFusion(PixelFusion):
    """
    Weighted mean with cosine weights fading towards each tile's border.

    Parameters
    ----------
    tile_shapes : mapping of int to tuple
        Spatial shape of every tile id that may be added.
    fraction : float
        Blended fraction of each tile.
    ignore_zero : bool
        Skip samples equal to 0.
    """

    method = FusionMethod.BLEND

    def __init__(self, tile_shapes: Mapping[int, Sequence[int]], fraction: float = 0.2, ignore_zero: bool = False):
        super().__init__(ignore_zero)
        self.tile_shapes = {int(k): tuple(v) for k, v in tile_shapes.items()}
        self.fraction = float(fraction)

    def clear(self, shape):
        super().clear(shape)
        self._value_sum = np.zeros(self._shape, dtype=np.float64)
        self._weight_sum = np.zeros(self._shape, dtype=np.float64)
        self._plain_sum = np.zeros(self._shape, dtype=np.float64)
        self._count = np.zeros(self._shape, dtype=np.int64)

    def add(self, values, tile_id, local_position):
        values = np.asarray(values, dtype=np.float64)
        valid = self._valid(values)
        weight = blend_weight(local_position, self.tile_shapes[int(tile_id)], self.fraction)
        weight = np.where(valid, weight, 0.0)
        self._value_sum += weight * values
        self._weight_sum += weight
        self._plain_sum += np.where(valid, values, 0.0)
        self._count += valid

    def value(self):
        out = np.zeros(self._shape, dtype=np.float64)
        np.divide(self._plain_sum, self._count, out=out, where=self._count > 0)
        np.divide(self._value_sum, self._weight_sum, out=out, where=self._weight_sum > 0)
        return out


_STRATEGIES = {
    FusionMethod.AVERAGE: AveragePixelFusion,
    FusionMethod.MEDIAN: MedianPixelFusion,
    FusionMethod.MAX: MaxPixelFusion,
    FusionMethod.MIN: MinPixelFusion,
    FusionMethod.OVERLAP: OverlapPixelFusion,
}


def make_strategy(
    method: Union[FusionMethod, int, str],
    ignore_zero: bool = False,
    tile_shapes: Optional[Mapping[int, Sequence[int]]] = None,
    blend_fraction: float = 0.2,
) -> PixelFusion:
    """
    Create a fresh strategy instance.

    Raises
    ------
    ValueError
        If the method is unknown, or blending is requested without tile shapes.
    """
    method = FusionMethod.parse(method)
    if method is FusionMethod.BLEND:
        if tile_shapes is None:
            raise ValueError("Blending needs the shape of every tile")
        return BlendingPixelFusion(tile_shapes, blend_fraction, ignore_zero)
    return _STRATEGIES[method](ignore_zero)
