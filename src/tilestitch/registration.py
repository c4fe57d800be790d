"""
Pairwise registration.

Phase correlation finds candidate translations between two blocks; each
candidate is then verified in real space with the Pearson correlation of
the overlapping pixels.

Shifts follow one convention throughout: ``shift`` is the position of the
second block's origin expressed in the first block's frame, i.e. the
position of tile 2 minus the position of tile 1.
"""

import itertools
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

import numpy as np
from scipy import fft, ndimage

from .utils import block_reduce, exponential_window, fft_shape

# Sum of squared differences reported for rejected candidates.
DEGENERATE_SSQ = float(np.finfo(np.float32).max)


@dataclass
class PairwiseResult:
    """One tested translation candidate."""

    shift: np.ndarray
    r: float
    peak: float
    overlap: int
    ssq: float = DEGENERATE_SSQ

    @property
    def is_degenerate(self) -> bool:
        return self.overlap == 0 or self.ssq == DEGENERATE_SSQ


def _prepare(block: np.ndarray, damp_edges: bool) -> np.ndarray:
    arr = np.asarray(block, dtype=np.float64)
    arr = arr - arr.mean()
    if damp_edges:
        arr = arr * exponential_window(arr.shape)
    return arr


def phase_correlation(block1: np.ndarray, block2: np.ndarray, damp_edges: bool = True) -> np.ndarray:
    """
    Phase correlation matrix of two blocks.

    Both blocks are zero-padded to a shared FFT-friendly shape. The PCM peaks
    at the shift of ``block2`` relative to ``block1``, modulo that shape.
    """
    b1 = np.asarray(block1)
    b2 = np.asarray(block2)
    if b1.ndim != b2.ndim:
        raise ValueError(f"Blocks differ in dimensionality: {b1.shape} vs {b2.shape}")
    shape = fft_shape(b1.shape, b2.shape)
    axes = tuple(range(b1.ndim))
    f1 = fft.rfftn(_prepare(b1, damp_edges), s=shape, axes=axes)
    f2 = fft.rfftn(_prepare(b2, damp_edges), s=shape, axes=axes)
    cps = f1 * np.conj(f2)
    mag = np.abs(cps)
    cps = np.divide(cps, mag, out=np.zeros_like(cps), where=mag > 0)
    return fft.irfftn(cps, s=shape, axes=axes)


def find_peaks(pcm: np.ndarray, n_peaks: int) -> List[Tuple[Tuple[int, ...], float]]:
    """
    Strongest local maxima of the PCM.

    A pixel is a local maximum when no pixel of its full 3^N neighbourhood
    (wrapping around the borders) is larger. Equal values keep raster order.
    """
    neighbourhood_max = ndimage.maximum_filter(pcm, size=3, mode="wrap")
    flat = np.flatnonzero(pcm == neighbourhood_max)
    values = pcm.ravel()[flat]
    order = np.argsort(-values, kind="stable")[: max(0, int(n_peaks))]
    return [
        (tuple(int(i) for i in np.unravel_index(flat[k], pcm.shape)), float(values[k]))
        for k in order
    ]


def subpixel_offset(pcm: np.ndarray, peak: Sequence[int]) -> np.ndarray:
    """Per-axis parabola fit through the peak and its two wrapped neighbours."""
    offset = np.zeros(len(peak), dtype=np.float64)
    centre = pcm[tuple(peak)]
    for axis, p in enumerate(peak):
        n = pcm.shape[axis]
        if n < 3:
            continue
        before = list(peak)
        after = list(peak)
        before[axis] = (p - 1) % n
        after[axis] = (p + 1) % n
        f_minus = pcm[tuple(before)]
        f_plus = pcm[tuple(after)]
        denom = f_minus - 2.0 * centre + f_plus
        if denom < 0:
            offset[axis] = np.clip(0.5 * (f_minus - f_plus) / denom, -0.5, 0.5)
    return offset


def expand_peak(peak: Sequence[int], pcm_shape: Sequence[int]) -> List[Tuple[int, ...]]:
    """Real-space shifts consistent with a PCM peak (``p`` or ``p - N`` per axis)."""
    options = [(p,) if p == 0 else (p, p - n) for p, n in zip(peak, pcm_shape)]
    return [tuple(c) for c in itertools.product(*options)]


def score_shift(
    block1: np.ndarray,
    block2: np.ndarray,
    shift: Sequence[int],
    min_overlap_fraction: float = 0.01,
    peak: float = 0.0,
) -> PairwiseResult:
    """
    Verify one integer shift with the Pearson correlation of the overlap.

    Overlaps smaller than ``min_overlap_fraction`` of the smaller block, and
    overlaps where either block has no variance, give ``r = 0``.
    """
    shift = np.asarray(shift, dtype=np.int64)
    shape1 = np.array(block1.shape)
    shape2 = np.array(block2.shape)
    lo = np.maximum(0, shift)
    hi = np.minimum(shape1, shift + shape2)
    extent = hi - lo
    count = int(np.prod(extent)) if np.all(extent > 0) else 0
    min_count = min_overlap_fraction * min(block1.size, block2.size)
    if count == 0 or count < min_count:
        return PairwiseResult(shift.astype(np.float64), 0.0, peak, count, DEGENERATE_SSQ)

    a = np.asarray(block1[tuple(slice(l, h) for l, h in zip(lo, hi))], dtype=np.float64)
    b = np.asarray(
        block2[tuple(slice(l - s, h - s) for l, h, s in zip(lo, hi, shift))], dtype=np.float64
    )
    da = a - a.mean()
    db = b - b.mean()
    var_a = float(np.sum(da * da))
    var_b = float(np.sum(db * db))
    ssq = float(np.mean((a - b) ** 2))
    if var_a == 0.0 or var_b == 0.0:
        r = 0.0
    else:
        r = float(np.clip(np.sum(da * db) / np.sqrt(var_a * var_b), -1.0, 1.0))
    return PairwiseResult(shift.astype(np.float64), r, peak, count, ssq)


def compute_pairwise_candidates(
    block1: np.ndarray,
    block2: np.ndarray,
    peaks_to_test: int = 5,
    min_overlap_fraction: float = 0.01,
    subpixel: bool = False,
    damp_edges: bool = True,
    max_workers: int = 1,
) -> List[PairwiseResult]:
    """
    Rank translation candidates between two blocks.

    Parameters
    ----------
    block1, block2 : ndarray
        Scalar blocks with the same number of dimensions.
    peaks_to_test : int
        Number of PCM maxima to verify.
    min_overlap_fraction : float
        Minimum overlap, as a fraction of the smaller block, for a candidate
        to be scored.
    subpixel : bool
        Refine each peak to subpixel precision.
    damp_edges : bool
        Apply an exponential window before the transform.
    max_workers : int
        Threads used to verify candidates.

    Returns
    -------
    results : list of PairwiseResult
        Sorted by ``r`` descending; ties keep peak order.
    """
    block1 = np.asarray(block1)
    block2 = np.asarray(block2)
    pcm = phase_correlation(block1, block2, damp_edges=damp_edges)

    jobs = []
    for peak, value in find_peaks(pcm, peaks_to_test):
        frac = subpixel_offset(pcm, peak) if subpixel else None
        for shift in expand_peak(peak, pcm.shape):
            jobs.append((shift, value, frac))

    def run(job):
        shift, value, frac = job
        result = score_shift(block1, block2, shift, min_overlap_fraction, peak=value)
        if frac is not None:
            result.shift = result.shift + frac
        return result

    if max_workers > 1 and len(jobs) > 1:
        with ThreadPoolExecutor(max_workers=min(max_workers, len(jobs))) as executor:
            results = list(executor.map(run, jobs))
    else:
        results = [run(job) for job in jobs]

    return sorted(results, key=lambda res: -res.r)


def register_pair(
    image1: np.ndarray,
    image2: np.ndarray,
    roi1: Optional[Tuple[slice, ...]] = None,
    roi2: Optional[Tuple[slice, ...]] = None,
    peaks_to_test: int = 5,
    min_overlap_fraction: float = 0.01,
    subpixel: bool = False,
    damp_edges: bool = True,
    downsample: int = 1,
    max_workers: int = 1,
) -> PairwiseResult:
    """
    Best translation of ``image2`` relative to ``image1``.

    Registration runs on the regions of interest (the predicted overlap)
    when given; the returned shift is expressed between the full images.
    With ``downsample > 1`` both blocks are block-averaged first and the
    shift is scaled back.
    """
    image1 = np.asarray(image1)
    image2 = np.asarray(image2)
    if image1.ndim != image2.ndim:
        raise ValueError(f"Images differ in dimensionality: {image1.shape} vs {image2.shape}")
    if roi1 is None:
        roi1 = tuple(slice(0, n) for n in image1.shape)
    if roi2 is None:
        roi2 = tuple(slice(0, n) for n in image2.shape)
    block1 = image1[roi1]
    block2 = image2[roi2]

    factor = int(downsample)
    if factor > 1:
        block = (factor,) * block1.ndim
        block1 = block_reduce(block1.astype(np.float32), block, np.mean)
        block2 = block_reduce(block2.astype(np.float32), block, np.mean)

    results = compute_pairwise_candidates(
        block1,
        block2,
        peaks_to_test=peaks_to_test,
        min_overlap_fraction=min_overlap_fraction,
        subpixel=subpixel,
        damp_edges=damp_edges,
        max_workers=max_workers,
    )
    roi_offset = np.array(
        [s1.indices(n1)[0] - s2.indices(n2)[0] for s1, s2, n1, n2 in zip(roi1, roi2, image1.shape, image2.shape)],
        dtype=np.float64,
    )
    if not results:
        return PairwiseResult(roi_offset, 0.0, 0.0, 0, DEGENERATE_SSQ)

    best = results[0]
    return PairwiseResult(best.shift * max(factor, 1) + roi_offset, best.r, best.peak, best.overlap, best.ssq)
