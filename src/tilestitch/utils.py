"""
Shared utilities for tilestitch.

Window profiles, worker sizing and small array helpers.
"""

from multiprocessing import cpu_count
from typing import List, Optional, Sequence, Tuple

import numpy as np
from scipy.fft import next_fast_len
from skimage.measure import block_reduce

__all__ = [
    "block_reduce",
    "cast_to_dtype",
    "exponential_window",
    "fft_shape",
    "make_1d_window",
    "resolve_workers",
    "split_range",
]


def make_1d_window(length: int, fraction: float = 0.1, steepness: float = 5.0) -> np.ndarray:
    """
    Exponential edge-damping profile.

    Parameters
    ----------
    length : int
        Number of samples.
    fraction : float
        Fraction of ``length`` on each side that is damped.
    steepness : float
        Exponential rate of the ramp; larger values give a sharper rise.

    Returns
    -------
    prof : ndarray of shape (length,)
        0 at the outermost samples, rising to 1 at the end of the margin.
    """
    prof = np.ones(length, dtype=np.float64)
    margin = int(round(fraction * length))
    if margin < 1 or length < 3:
        return prof
    dist = np.minimum(np.arange(length), np.arange(length)[::-1]).astype(np.float64)
    t = np.clip(dist / margin, 0.0, 1.0)
    return (1.0 - np.exp(-steepness * t)) / (1.0 - np.exp(-steepness))


def exponential_window(shape: Sequence[int], fraction: float = 0.1) -> np.ndarray:
    """Separable N-D window built from :func:`make_1d_window` profiles."""
    window = np.ones(tuple(shape), dtype=np.float64)
    for axis, n in enumerate(shape):
        view = [1] * len(shape)
        view[axis] = n
        window = window * make_1d_window(n, fraction).reshape(view)
    return window


def fft_shape(shape1: Sequence[int], shape2: Sequence[int]) -> Tuple[int, ...]:
    """Shared FFT-friendly size that holds both blocks."""
    return tuple(next_fast_len(max(int(a), int(b))) for a, b in zip(shape1, shape2))


def resolve_workers(max_workers: Optional[int]) -> int:
    if max_workers is None:
        return cpu_count()
    return max(1, int(max_workers))


def split_range(start: int, stop: int, n_parts: int) -> List[Tuple[int, int]]:
    """Split ``[start, stop)`` into at most ``n_parts`` contiguous half-open ranges."""
    length = stop - start
    n_parts = max(1, min(int(n_parts), length))
    bounds = np.linspace(start, stop, n_parts + 1).round().astype(int)
    return [(int(a), int(b)) for a, b in zip(bounds[:-1], bounds[1:]) if b > a]


def cast_to_dtype(values: np.ndarray, dtype: np.dtype) -> np.ndarray:
    """Cast float results to ``dtype``, rounding and clipping for integer types."""
    dtype = np.dtype(dtype)
    if np.issubdtype(dtype, np.integer):
        info = np.iinfo(dtype)
        return np.clip(np.round(values), info.min, info.max).astype(dtype)
    if dtype == np.bool_:
        return values != 0
    return values.astype(dtype)
