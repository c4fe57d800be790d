"""
Overlap graph construction.

Finds candidate tile pairs from seed offsets (geometric or sequential mode),
predicts their overlap and registers every pair.
"""

import threading
from concurrent.futures import ThreadPoolExecutor
from typing import List, Optional, Sequence, Tuple

import numpy as np
from tqdm import tqdm

from .errors import Cancelled
from .registration import register_pair
from .tiles import ComparePair, Tile
from .utils import resolve_workers


def _check_dimensionality(tiles: Sequence[Tile]) -> None:
    dims = {t.dimensionality for t in tiles}
    if len(dims) > 1:
        raise ValueError(f"Tiles of mixed dimensionality: {sorted(dims)}")


def tiles_overlap(tile1: Tile, tile2: Tile) -> bool:
    """True when the seed extents share pixels on every axis."""
    for o1, n1, o2, n2 in zip(tile1.offset, tile1.shape, tile2.offset, tile2.shape):
        if not (o1 < o2 + n2 and o2 < o1 + n1):
            return False
    return True


def find_overlapping_pairs(tiles: Sequence[Tile]) -> List[ComparePair]:
    """
    Candidate pairs whose seed extents intersect, within each timepoint.

    Pairs are ordered by the position of their tiles in ``tiles``.
    """
    _check_dimensionality(tiles)
    pairs = []
    for i, t1 in enumerate(tiles):
        for t2 in tiles[i + 1:]:
            if t1.timepoint == t2.timepoint and tiles_overlap(t1, t2):
                pairs.append(ComparePair(t1, t2))
    return pairs


def find_sequential_pairs(tiles: Sequence[Tile], sequential_range: int = 1) -> List[ComparePair]:
    """Pair every tile with the next ``sequential_range`` tiles of the same timepoint."""
    _check_dimensionality(tiles)
    if sequential_range < 1:
        raise ValueError(f"sequential_range must be >= 1, got {sequential_range}")
    pairs = []
    for i, t1 in enumerate(tiles):
        for t2 in tiles[i + 1: i + 1 + sequential_range]:
            if t1.timepoint == t2.timepoint:
                pairs.append(ComparePair(t1, t2))
    return pairs


def overlap_roi(tile1: Tile, tile2: Tile) -> Tuple[Tuple[slice, ...], Tuple[slice, ...]]:
    """
    Predicted overlap of two tiles, as slices into each tile.

    Axes without a predicted overlap keep the full tile extent.
    """
    roi1 = []
    roi2 = []
    for o1, n1, o2, n2 in zip(tile1.offset, tile1.shape, tile2.offset, tile2.shape):
        start1 = int(np.clip(round(o2 - o1), 0, n1))
        stop1 = int(np.clip(round(o2 + n2 - o1), 0, n1))
        start2 = int(np.clip(round(o1 - o2), 0, n2))
        stop2 = int(np.clip(round(o1 + n1 - o2), 0, n2))
        if stop1 <= start1 or stop2 <= start2:
            start1, stop1, start2, stop2 = 0, n1, 0, n2
        roi1.append(slice(start1, stop1))
        roi2.append(slice(start2, stop2))
    return tuple(roi1), tuple(roi2)


def register_pairs(
    pairs: Sequence[ComparePair],
    peaks_to_test: int = 5,
    min_overlap_fraction: float = 0.01,
    subpixel: bool = False,
    damp_edges: bool = True,
    downsample: int = 1,
    channel: Optional[int] = None,
    use_roi: bool = True,
    max_workers: Optional[int] = None,
    debug: bool = False,
    cancel: Optional[threading.Event] = None,
) -> List[ComparePair]:
    """
    Register every pair and store the best candidate on it.

    Each pair's ``relative_shift``, ``cross_correlation`` and ``peak`` are
    updated in place. A pair whose registration raises keeps its seed shift,
    gets ``cross_correlation = 0`` and is marked invalid; the other pairs are
    unaffected.

    Returns
    -------
    pairs : list of ComparePair
        The same objects, for chaining.
    """
    pairs = list(pairs)
    if not pairs:
        return pairs
    n_workers = min(resolve_workers(max_workers), len(pairs))

    def work(pair: ComparePair) -> None:
        if cancel is not None and cancel.is_set():
            raise Cancelled("Pairwise registration cancelled")
        try:
            if use_roi:
                roi1, roi2 = overlap_roi(pair.tile1, pair.tile2)
            else:
                roi1 = roi2 = None
            result = register_pair(
                pair.tile1.registration_block(channel),
                pair.tile2.registration_block(channel),
                roi1,
                roi2,
                peaks_to_test=peaks_to_test,
                min_overlap_fraction=min_overlap_fraction,
                subpixel=subpixel,
                damp_edges=damp_edges,
                downsample=downsample,
            )
        except Exception as e:
            if debug:
                print(f"Registration failed for ({pair.tile1.tile_id}, {pair.tile2.tile_id}): {e}")
            pair.cross_correlation = 0.0
            pair.peak = 0.0
            pair.is_valid_overlap = False
            return
        pair.relative_shift = result.shift
        pair.cross_correlation = result.r
        pair.peak = result.peak
        if debug:
            print(
                f"{pair.tile1.tile_id} <- {pair.tile2.tile_id}: shift={np.round(result.shift, 3).tolist()} "
                f"R={result.r:.4f} peak={result.peak:.4f}"
            )

    if n_workers > 1:
        with ThreadPoolExecutor(max_workers=n_workers) as executor:
            for _ in tqdm(executor.map(work, pairs), total=len(pairs), desc="register", leave=True):
                pass
    else:
        for pair in tqdm(pairs, desc="register", leave=True):
            work(pair)
    return pairs
