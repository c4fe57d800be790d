"""
Tile fusion.

The output domain is split into non-overlapping regions, each tagged with
the tiles that cover it. Regions (or slices of large regions) are composed
in parallel: every worker samples the contributing tiles for its block and
combines them with a private instance of the selected strategy.
"""

import threading
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple, Union

import numpy as np
import tifffile
from scipy import ndimage
from tqdm import tqdm

from .errors import Cancelled
from .geometry import ClassifiedRegion, Interval, decompose
from .strategies import FusionMethod, make_strategy
from .tiles import Tile, TranslationModel
from .utils import cast_to_dtype, resolve_workers, split_range

# Regions smaller than this are not sliced across workers.
_MIN_SPLIT_VOLUME = 64 * 64
# Tolerance for snapping tile edges to the integer grid.
_EDGE_EPS = 1e-9

Bounds = Tuple[np.ndarray, Tuple[int, ...]]


def estimate_bounds(
    shapes: Sequence[Sequence[int]],
    translations: Sequence[Sequence[float]],
    subpixel: bool = False,
) -> Bounds:
    """
    Bounding box of all positioned tiles.

    Returns
    -------
    offset : ndarray
        Output-frame position of the fused image origin.
    size : tuple of int
        Fused image shape; one pixel larger per axis for subpixel fusion.
    """
    if len(shapes) != len(translations):
        raise ValueError(f"Got {len(shapes)} shapes but {len(translations)} translations")
    if not shapes:
        raise ValueError("Nothing to fuse")
    t = np.asarray(translations, dtype=np.float64)
    s = np.asarray(shapes, dtype=np.float64)
    lo = t.min(axis=0)
    hi = (t + s).max(axis=0)
    size = np.round(hi - lo).astype(int)
    if subpixel:
        size += 1
    return lo, tuple(int(v) for v in size)


def tile_regions(
    shapes: Sequence[Sequence[int]],
    translations: Sequence[Sequence[float]],
    offset: Sequence[float],
    size: Optional[Sequence[int]] = None,
) -> List[ClassifiedRegion]:
    """Integer output extent of every tile, rounded inwards and tagged with its index."""
    regions = []
    for i, (shape, t) in enumerate(zip(shapes, translations)):
        start = np.asarray(t, dtype=np.float64) - np.asarray(offset, dtype=np.float64)
        lo = np.ceil(start - _EDGE_EPS).astype(int)
        hi = np.floor(start + np.asarray(shape) - 1 + _EDGE_EPS).astype(int)
        if size is not None:
            lo = np.maximum(lo, 0)
            hi = np.minimum(hi, np.asarray(size) - 1)
        if np.any(hi < lo):
            continue
        regions.append(ClassifiedRegion([Interval(a, b) for a, b in zip(lo, hi)], (i,)))
    return regions


def _sample(image: np.ndarray, local: Sequence[np.ndarray], subpixel: bool) -> np.ndarray:
    if subpixel:
        coords = np.meshgrid(*local, indexing="ij")
        return ndimage.map_coordinates(image, coords, order=1, mode="mirror", output=np.float64)
    index = [np.floor(c + 0.5).astype(np.int64) for c in local]
    inside = [(k >= 0) & (k < n) for k, n in zip(index, image.shape)]
    clipped = [np.clip(k, 0, n - 1) for k, n in zip(index, image.shape)]
    values = np.asarray(image[np.ix_(*clipped)], dtype=np.float64)
    mask = np.ones(values.shape, dtype=bool)
    for axis, ok in enumerate(inside):
        view = [1] * len(inside)
        view[axis] = len(ok)
        mask = mask & ok.reshape(view)
    return np.where(mask, values, 0.0)


class _FusionPlan:
    """Region decomposition and strategy settings shared by all fused images."""

    def __init__(
        self,
        shapes: Sequence[Sequence[int]],
        translations: Sequence[Sequence[float]],
        method: Union[FusionMethod, int, str] = FusionMethod.BLEND,
        ignore_zero: bool = False,
        subpixel: bool = False,
        blend_fraction: float = 0.2,
        bounds: Optional[Bounds] = None,
        max_workers: Optional[int] = None,
        cancel: Optional[threading.Event] = None,
        progress: bool = True,
    ):
        if len(shapes) != len(translations):
            raise ValueError(f"Got {len(shapes)} tiles but {len(translations)} translations")
        dims = {len(s) for s in shapes} | {len(t) for t in translations}
        if len(dims) != 1:
            raise ValueError(f"Tiles and translations of mixed dimensionality: {sorted(dims)}")
        self.shapes = [tuple(int(v) for v in s) for s in shapes]
        self.models = [TranslationModel(t) for t in translations]
        for model in self.models:
            model.check_invertible()
        self.method = FusionMethod.parse(method)
        self.ignore_zero = bool(ignore_zero)
        self.subpixel = bool(subpixel)
        self.blend_fraction = float(blend_fraction)
        self._tile_shapes = dict(enumerate(self.shapes))
        make_strategy(self.method, self.ignore_zero, self._tile_shapes, self.blend_fraction)

        if bounds is None:
            bounds = estimate_bounds(self.shapes, [m.translation for m in self.models], self.subpixel)
        self.offset = np.asarray(bounds[0], dtype=np.float64)
        self.size = tuple(int(v) for v in bounds[1])
        self.regions = decompose(
            tile_regions(self.shapes, [m.translation for m in self.models], self.offset, self.size)
        )
        self.n_workers = resolve_workers(max_workers)
        self.cancel = cancel
        self.progress = progress

    def _work_items(self, box: Sequence[Tuple[int, int]]) -> List[Tuple[ClassifiedRegion, List[Tuple[int, int]]]]:
        items = []
        for region in self.regions:
            ranges = []
            for iv, (lo, hi) in zip(region.intervals, box):
                a, b = max(iv.min, lo), min(iv.max, hi)
                if b < a:
                    break
                ranges.append((a, b))
            else:
                volume = int(np.prod([b - a + 1 for a, b in ranges]))
                axis = int(np.argmax([b - a + 1 for a, b in ranges]))
                if self.n_workers > 1 and volume >= _MIN_SPLIT_VOLUME:
                    a, b = ranges[axis]
                    for start, stop in split_range(a, b + 1, self.n_workers):
                        part = list(ranges)
                        part[axis] = (start, stop - 1)
                        items.append((region, part))
                else:
                    items.append((region, ranges))
        return items

    def _compose(
        self,
        images: Sequence[np.ndarray],
        region: ClassifiedRegion,
        ranges: Sequence[Tuple[int, int]],
    ) -> np.ndarray:
        shape = tuple(b - a + 1 for a, b in ranges)
        strategy = make_strategy(self.method, self.ignore_zero, self._tile_shapes, self.blend_fraction)
        strategy.clear(shape)
        for tile_id in region.classes:
            translation = self.models[tile_id].translation
            local = [
                np.arange(a, b + 1, dtype=np.float64) + o - t
                for (a, b), o, t in zip(ranges, self.offset, translation)
            ]
            strategy.add(_sample(images[tile_id], local, self.subpixel), tile_id, local)
        return strategy.value()

    def render(
        self,
        images: Sequence[np.ndarray],
        dtype: Optional[np.dtype] = None,
        box: Optional[Sequence[Tuple[int, int]]] = None,
        desc: str = "fuse",
    ) -> np.ndarray:
        """
        Compose one scalar image over ``box`` (inclusive output ranges, full image by default).
        """
        if len(images) != len(self.shapes):
            raise ValueError(f"Got {len(images)} images for {len(self.shapes)} tiles")
        for i, (img, shape) in enumerate(zip(images, self.shapes)):
            if tuple(img.shape) != shape:
                raise ValueError(f"Image {i} has shape {img.shape}, expected {shape}")
        if dtype is None:
            dtype = np.result_type(*[img.dtype for img in images])
        if box is None:
            box = [(0, n - 1) for n in self.size]
        origin = [lo for lo, _ in box]
        out = np.zeros(tuple(hi - lo + 1 for lo, hi in box), dtype=dtype)

        def work(item) -> None:
            if self.cancel is not None and self.cancel.is_set():
                raise Cancelled("Fusion cancelled")
            region, ranges = item
            block = self._compose(images, region, ranges)
            target = tuple(slice(a - o, b - o + 1) for (a, b), o in zip(ranges, origin))
            out[target] = cast_to_dtype(block, dtype)

        items = self._work_items(box)
        if self.n_workers > 1 and len(items) > 1:
            with ThreadPoolExecutor(max_workers=min(self.n_workers, len(items))) as executor:
                for _ in tqdm(
                    executor.map(work, items), total=len(items), desc=desc, leave=False, disable=not self.progress
                ):
                    pass
        else:
            for item in tqdm(items, desc=desc, leave=False, disable=not self.progress):
                work(item)
        return out


def fuse(
    images: Sequence[np.ndarray],
    translations: Sequence[Sequence[float]],
    method: Union[FusionMethod, int, str] = FusionMethod.BLEND,
    ignore_zero: bool = False,
    subpixel: bool = False,
    blend_fraction: float = 0.2,
    bounds: Optional[Bounds] = None,
    dtype: Optional[np.dtype] = None,
    max_workers: Optional[int] = None,
    cancel: Optional[threading.Event] = None,
    progress: bool = True,
) -> np.ndarray:
    """
    Fuse positioned scalar tiles into one image.

    Parameters
    ----------
    images : sequence of ndarray
        Scalar tiles, all 2D or all 3D.
    translations : sequence of array-like
        Position of each tile origin in the output frame (array-axis order).
    method : FusionMethod, int or str
        Fusion strategy.
    ignore_zero : bool
        Skip samples equal to 0.
    subpixel : bool
        Sample with linear interpolation (mirrored at tile borders) instead
        of nearest neighbour.
    blend_fraction : float
        Blended fraction of each tile for ``FusionMethod.BLEND``.
    bounds : (offset, size), optional
        Output frame; defaults to :func:`estimate_bounds`.
    dtype : dtype, optional
        Output dtype; defaults to the input dtype.
    max_workers : int, optional
        Worker threads; defaults to the number of CPUs.
    cancel : threading.Event, optional
        Checked before every work item.
    progress : bool
        Show a tqdm progress bar.

    Returns
    -------
    fused : ndarray

    Raises
    ------
    ValueError
        On mismatched inputs or an unknown method, before any work starts.
    NoninvertibleModelError
        If a translation cannot be inverted.
    """
    images = [np.asarray(img) for img in images]
    plan = _FusionPlan(
        [img.shape for img in images],
        translations,
        method=method,
        ignore_zero=ignore_zero,
        subpixel=subpixel,
        blend_fraction=blend_fraction,
        bounds=bounds,
        max_workers=max_workers,
        cancel=cancel,
        progress=progress,
    )
    return plan.render(images, dtype=dtype)


def fuse_no_overlap(
    images: Sequence[np.ndarray],
    translations: Sequence[Sequence[float]],
    bounds: Optional[Bounds] = None,
    dtype: Optional[np.dtype] = None,
) -> np.ndarray:
    """
    Paste tiles at their rounded positions; later tiles overwrite earlier ones.
    """
    images = [np.asarray(img) for img in images]
    if len(images) != len(translations):
        raise ValueError(f"Got {len(images)} images but {len(translations)} translations")
    models = [TranslationModel(t) for t in translations]
    for model in models:
        model.check_invertible()
    if bounds is None:
        bounds = estimate_bounds([img.shape for img in images], [m.translation for m in models])
    offset = np.asarray(bounds[0], dtype=np.float64)
    size = tuple(int(v) for v in bounds[1])
    if dtype is None:
        dtype = np.result_type(*[img.dtype for img in images])
    out = np.zeros(size, dtype=dtype)
    for img, model in zip(images, models):
        start = np.round(model.translation - offset).astype(int)
        dst = []
        src = []
        for s, n, limit in zip(start, img.shape, size):
            a, b = max(s, 0), min(s + n, limit)
            if b <= a:
                break
            dst.append(slice(a, b))
            src.append(slice(a - s, b - s))
        else:
            out[tuple(dst)] = cast_to_dtype(img[tuple(src)].astype(np.float64), dtype)
    return out


def _group_by_timepoint(tiles: Sequence[Tile]) -> Dict[int, List[Tile]]:
    groups: Dict[int, List[Tile]] = {}
    for tile in tiles:
        groups.setdefault(tile.timepoint, []).append(tile)
    return dict(sorted(groups.items()))


def _channel_count(tiles: Sequence[Tile]) -> int:
    counts = {t.n_channels for t in tiles}
    if len(counts) != 1:
        raise ValueError(f"Tiles have different channel counts: {sorted(counts)}")
    return counts.pop()


def fuse_tiles(
    tiles: Sequence[Tile],
    method: Union[FusionMethod, int, str] = FusionMethod.BLEND,
    ignore_zero: bool = False,
    subpixel: bool = False,
    blend_fraction: float = 0.2,
    no_overlap: bool = False,
    max_workers: Optional[int] = None,
    cancel: Optional[threading.Event] = None,
    progress: bool = True,
) -> np.ndarray:
    """
    Fuse every timepoint and channel at the tiles' committed positions.

    Returns
    -------
    fused : ndarray of shape (T, C, *spatial)
        Timepoints in ascending order; all share one output frame.
    """
    if not tiles:
        raise ValueError("Nothing to fuse")
    n_channels = _channel_count(tiles)
    bounds = estimate_bounds(
        [t.shape for t in tiles], [t.model.translation for t in tiles], subpixel and not no_overlap
    )
    groups = _group_by_timepoint(tiles)
    dtype = np.result_type(*[t.data().dtype for t in tiles])
    out = np.zeros((len(groups), n_channels) + bounds[1], dtype=dtype)
    for ti, (timepoint, group) in enumerate(groups.items()):
        translations = [t.model.translation for t in group]
        plan = None
        if not no_overlap:
            plan = _FusionPlan(
                [t.shape for t in group],
                translations,
                method=method,
                ignore_zero=ignore_zero,
                subpixel=subpixel,
                blend_fraction=blend_fraction,
                bounds=bounds,
                max_workers=max_workers,
                cancel=cancel,
                progress=progress,
            )
        for c in range(n_channels):
            images = [t.channel(c) for t in group]
            if plan is None:
                out[ti, c] = fuse_no_overlap(images, translations, bounds=bounds, dtype=dtype)
            else:
                out[ti, c] = plan.render(images, dtype=dtype, desc=f"fuse t={timepoint} c={c}")
    return out


def _lz(num: int, largest: int) -> str:
    return str(num).zfill(len(str(largest)))


def slice_filename(timepoint: int, n_timepoints: int, z: int, n_slices: int, channel: int, n_channels: int) -> str:
    """Name of one streamed slice; all indices are 1-based."""
    return (
        f"img_t{_lz(timepoint, n_timepoints)}_z{_lz(z, n_slices)}_c{_lz(channel, n_channels)}"
    )


def fuse_to_directory(
    tiles: Sequence[Tile],
    directory: Union[str, Path],
    method: Union[FusionMethod, int, str] = FusionMethod.BLEND,
    ignore_zero: bool = False,
    subpixel: bool = False,
    blend_fraction: float = 0.2,
    max_workers: Optional[int] = None,
    cancel: Optional[threading.Event] = None,
    progress: bool = True,
) -> List[Path]:
    """
    Fuse slice by slice and write one TIFF per (timepoint, z, channel).

    Only one output slice is held in memory at a time. 2D tiles produce a
    single slice per timepoint and channel.

    Returns
    -------
    paths : list of Path
        Written files, in writing order.
    """
    if not tiles:
        raise ValueError("Nothing to fuse")
    directory = Path(directory)
    directory.mkdir(parents=True, exist_ok=True)
    n_channels = _channel_count(tiles)
    bounds = estimate_bounds([t.shape for t in tiles], [t.model.translation for t in tiles], subpixel)
    size = bounds[1]
    n_slices = size[0] if len(size) == 3 else 1
    groups = _group_by_timepoint(tiles)
    dtype = np.result_type(*[t.data().dtype for t in tiles])

    written = []
    for ti, (timepoint, group) in enumerate(groups.items()):
        plan = _FusionPlan(
            [t.shape for t in group],
            [t.model.translation for t in group],
            method=method,
            ignore_zero=ignore_zero,
            subpixel=subpixel,
            blend_fraction=blend_fraction,
            bounds=bounds,
            max_workers=max_workers,
            cancel=cancel,
            progress=False,
        )
        for c in range(n_channels):
            images = [t.channel(c) for t in group]
            for z in tqdm(range(n_slices), desc=f"write t={timepoint} c={c}", disable=not progress):
                if len(size) == 3:
                    box = [(z, z)] + [(0, n - 1) for n in size[1:]]
                    plane = plan.render(images, dtype=dtype, box=box)[0]
                else:
                    plane = plan.render(images, dtype=dtype)
                path = directory / slice_filename(ti + 1, len(groups), z + 1, n_slices, c + 1, n_channels)
                tifffile.imwrite(path, plane)
                written.append(path)
    return written
