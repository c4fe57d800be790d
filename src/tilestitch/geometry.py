"""
Axis-aligned box algebra for fusion.

Intervals and classified regions describe integer pixel ranges in the fused
output frame. ``decompose`` turns the (overlapping) extents of all tiles into
an exact, non-overlapping partition where every region knows which tiles
contribute to it.
"""

from typing import Iterable, Iterator, List, Optional, Sequence, Tuple


class Interval:
    """Inclusive integer range ``[min, max]`` on one axis."""

    __slots__ = ("min", "max")

    def __init__(self, min: int, max: int):
        self.min = int(min)
        self.max = int(max)

    @property
    def length(self) -> int:
        return self.max - self.min + 1

    def intersects(self, other: "Interval") -> bool:
        return self.min <= other.max and other.min <= self.max

    def contains(self, other: "Interval") -> bool:
        return self.min <= other.min and other.max <= self.max

    def copy(self) -> "Interval":
        return Interval(self.min, self.max)

    def __eq__(self, other) -> bool:
        if not isinstance(other, Interval):
            return NotImplemented
        return self.min == other.min and self.max == other.max

    def __hash__(self) -> int:
        return hash((self.min, self.max))

    def __repr__(self) -> str:
        return f"Interval({self.min}, {self.max})"


class ClassifiedRegion:
    """
    Axis-aligned box in output pixels tagged with contributing tile ids.

    Parameters
    ----------
    intervals : sequence of Interval
        One interval per axis, in array-axis order.
    classes : iterable of int, optional
        Ids of the tiles covering every pixel of the region.
    """

    def __init__(self, intervals: Sequence[Interval], classes: Iterable[int] = ()):
        self._intervals = [iv.copy() for iv in intervals]
        self._classes = tuple(sorted(set(classes)))

    @property
    def dimensionality(self) -> int:
        return len(self._intervals)

    @property
    def intervals(self) -> Tuple[Interval, ...]:
        return tuple(self._intervals)

    @property
    def classes(self) -> Tuple[int, ...]:
        return self._classes

    def add_class(self, tile_id: int) -> None:
        self._classes = tuple(sorted(set(self._classes) | {int(tile_id)}))

    def __getitem__(self, axis: int) -> Interval:
        if not 0 <= axis < len(self._intervals):
            raise IndexError(f"Axis {axis} out of range for {len(self._intervals)}D region")
        return self._intervals[axis]

    def set_interval(self, axis: int, interval: Interval) -> None:
        if not 0 <= axis < len(self._intervals):
            raise IndexError(f"Axis {axis} out of range for {len(self._intervals)}D region")
        self._intervals[axis] = interval.copy()

    def intersects(self, other: "ClassifiedRegion") -> bool:
        return all(a.intersects(b) for a, b in zip(self._intervals, other._intervals))

    def contains(self, other: "ClassifiedRegion") -> bool:
        return all(a.contains(b) for a, b in zip(self._intervals, other._intervals))

    @property
    def shape(self) -> Tuple[int, ...]:
        return tuple(iv.length for iv in self._intervals)

    @property
    def volume(self) -> int:
        v = 1
        for iv in self._intervals:
            v *= iv.length
        return v

    def slices(self, offset: Optional[Sequence[int]] = None) -> Tuple[slice, ...]:
        """Slices selecting this region from an array whose origin is ``offset``."""
        if offset is None:
            offset = (0,) * len(self._intervals)
        return tuple(
            slice(iv.min - o, iv.max - o + 1) for iv, o in zip(self._intervals, offset)
        )

    def __eq__(self, other) -> bool:
        if not isinstance(other, ClassifiedRegion):
            return NotImplemented
        return self._intervals == other._intervals and self._classes == other._classes

    def __hash__(self) -> int:
        return hash((tuple(self._intervals), self._classes))

    def __repr__(self) -> str:
        bounds = ", ".join(f"[{iv.min}, {iv.max}]" for iv in self._intervals)
        return f"ClassifiedRegion({bounds}; classes={list(self._classes)})"


def iter_positions(shape: Sequence[int], start: Optional[Sequence[int]] = None) -> Iterator[Tuple[int, ...]]:
    """
    Iterate integer positions of a box in row-major order.

    Works for any dimensionality by advancing the last axis and carrying
    into the preceding ones, like an odometer.

    Parameters
    ----------
    shape : sequence of int
        Extent per axis.
    start : sequence of int, optional
        Position of the first pixel. Defaults to the origin.

    Yields
    ------
    position : tuple of int
    """
    shape = [int(s) for s in shape]
    n = len(shape)
    if n == 0 or any(s <= 0 for s in shape):
        return
    origin = [0] * n if start is None else [int(s) for s in start]
    counter = [0] * n
    while True:
        yield tuple(o + c for o, c in zip(origin, counter))
        axis = n - 1
        while axis >= 0:
            counter[axis] += 1
            if counter[axis] < shape[axis]:
                break
            counter[axis] = 0
            axis -= 1
        if axis < 0:
            return


def _cut_points(a: Interval, b: Interval) -> List[Interval]:
    starts = sorted({a.min, b.min, a.max + 1, b.max + 1})
    return [Interval(lo, hi - 1) for lo, hi in zip(starts[:-1], starts[1:])]


def split_regions(
    query: ClassifiedRegion, placed: ClassifiedRegion
) -> Tuple[List[ClassifiedRegion], List[ClassifiedRegion]]:
    """
    Split two intersecting regions into non-overlapping pieces.

    Both regions are cut at every boundary coordinate of either one. Each
    piece of the Cartesian product is kept if it lies inside ``query``,
    ``placed`` or both, and tagged with the union of the matching classes.

    Returns
    -------
    query_only : list of ClassifiedRegion
        Pieces covered only by ``query``; these may still hit other regions.
    settled : list of ClassifiedRegion
        Pieces covered by ``placed`` (alone or together with ``query``).
    """
    per_axis = [_cut_points(q, p) for q, p in zip(query.intervals, placed.intervals)]
    query_only = []
    settled = []
    for index in iter_positions([len(cuts) for cuts in per_axis]):
        piece = [per_axis[axis][k] for axis, k in enumerate(index)]
        candidate = ClassifiedRegion(piece)
        in_query = query.contains(candidate)
        in_placed = placed.contains(candidate)
        if in_query and in_placed:
            settled.append(ClassifiedRegion(piece, query.classes + placed.classes))
        elif in_placed:
            settled.append(ClassifiedRegion(piece, placed.classes))
        elif in_query:
            query_only.append(ClassifiedRegion(piece, query.classes))
    return query_only, settled


def decompose(regions: Sequence[ClassifiedRegion]) -> List[ClassifiedRegion]:
    """
    Partition the union of possibly overlapping regions.

    Parameters
    ----------
    regions : sequence of ClassifiedRegion
        Raw per-tile extents, each tagged with its tile id.

    Returns
    -------
    placed : list of ClassifiedRegion
        Mutually disjoint regions whose union is the union of the input and
        whose classes name exactly the inputs covering them.
    """
    if regions:
        dims = {r.dimensionality for r in regions}
        if len(dims) != 1:
            raise ValueError(f"Regions of mixed dimensionality: {sorted(dims)}")

    worklist = [ClassifiedRegion(r.intervals, r.classes) for r in reversed(regions)]
    placed: List[ClassifiedRegion] = []
    while worklist:
        query = worklist.pop()
        for k, other in enumerate(placed):
            if query.intersects(other):
                query_only, settled = split_regions(query, other)
                del placed[k]
                placed.extend(settled)
                worklist.extend(query_only)
                break
        else:
            placed.append(query)
    return placed
