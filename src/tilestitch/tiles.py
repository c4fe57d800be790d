"""
Tile data model.

Tiles carry their seed offset, their pixel data (in memory or loaded lazily
from a TIFF path) and the mutable state used by global optimization: a
translation model, the point matches attached to the tile and the tiles it
is connected to. ComparePair records the outcome of registering two tiles.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence, Tuple, Union

import numpy as np


class NoninvertibleModelError(ArithmeticError):
    """Raised when a tile model cannot be inverted."""


class TranslationModel:
    """Pure translation from a tile's local frame to the output frame."""

    def __init__(self, translation: Optional[Sequence[float]] = None, dimensionality: int = 2):
        if translation is None:
            translation = np.zeros(dimensionality, dtype=np.float64)
        self.translation = np.array(translation, dtype=np.float64)

    @property
    def dimensionality(self) -> int:
        return self.translation.shape[0]

    def set(self, translation: Sequence[float]) -> None:
        self.translation = np.array(translation, dtype=np.float64)

    def apply(self, point: Sequence[float]) -> np.ndarray:
        return np.asarray(point, dtype=np.float64) + self.translation

    def apply_inverse(self, point: Sequence[float]) -> np.ndarray:
        self.check_invertible()
        return np.asarray(point, dtype=np.float64) - self.translation

    def check_invertible(self) -> None:
        if not np.all(np.isfinite(self.translation)):
            raise NoninvertibleModelError(f"Translation {self.translation} is not invertible")

    def fit(self, matches: Iterable["PointMatch"]) -> None:
        """
        Least-squares fit to weighted point matches.

        For a translation the optimum is the weighted mean of the offsets
        between the matched world points and the local points.
        """
        total = np.zeros(self.dimensionality, dtype=np.float64)
        weight_sum = 0.0
        for m in matches:
            total += m.weight * (m.p2.world - m.p1.local)
            weight_sum += m.weight
        if weight_sum <= 0:
            return
        self.translation = total / weight_sum

    def copy(self) -> "TranslationModel":
        return TranslationModel(self.translation.copy())

    def __repr__(self) -> str:
        return f"TranslationModel({self.translation.tolist()})"


class Point:
    """A point with a local and a world (transformed) location."""

    __slots__ = ("local", "world")

    def __init__(self, local: Sequence[float]):
        self.local = np.array(local, dtype=np.float64)
        self.world = self.local.copy()

    def apply(self, model: TranslationModel) -> None:
        self.world = model.apply(self.local)

    def distance(self, other: "Point") -> float:
        return float(np.linalg.norm(self.world - other.world))


class PointMatch:
    """Weighted correspondence between points of two tiles."""

    __slots__ = ("p1", "p2", "weight", "pair")

    def __init__(self, p1: Point, p2: Point, weight: float = 1.0, pair: "ComparePair" = None):
        self.p1 = p1
        self.p2 = p2
        self.weight = float(weight)
        self.pair = pair

    @property
    def distance(self) -> float:
        return self.p1.distance(self.p2)


class Tile:
    """
    One input image block.

    Parameters
    ----------
    tile_id : int
        Identifier, unique within a timepoint.
    image : ndarray, optional
        Pixel data with shape ``(*spatial)`` or ``(C, *spatial)``.
    offset : sequence of float, optional
        Seed position of the tile origin in array-axis order.
    timepoint : int
        Timepoint the tile belongs to.
    path : str or Path, optional
        TIFF file to load lazily when ``image`` is not given.
    dimensionality : int, optional
        Number of spatial axes (2 or 3). Defaults to ``len(offset)`` or
        ``image.ndim``.
    """

    def __init__(
        self,
        tile_id: int,
        image: Optional[np.ndarray] = None,
        offset: Optional[Sequence[float]] = None,
        timepoint: int = 0,
        path: Union[str, Path, None] = None,
        dimensionality: Optional[int] = None,
    ):
        if image is None and path is None:
            raise ValueError("A tile needs either an image or a path")
        self.tile_id = int(tile_id)
        self.timepoint = int(timepoint)
        self.path = Path(path) if path is not None else None
        self._image = None if image is None else np.asarray(image)

        if dimensionality is None:
            if offset is not None:
                dimensionality = len(offset)
            else:
                dimensionality = self.data().ndim
        if dimensionality not in (2, 3):
            raise ValueError(f"dimensionality must be 2 or 3, got {dimensionality}")
        self.dimensionality = int(dimensionality)

        if offset is None:
            offset = np.zeros(self.dimensionality)
        self.offset = np.array(offset, dtype=np.float64)
        if self.offset.shape != (self.dimensionality,):
            raise ValueError(
                f"Offset {self.offset.tolist()} does not match dimensionality {self.dimensionality}"
            )

        self.model = TranslationModel(self.offset.copy())
        self.matches: List[PointMatch] = []
        self._connected: Dict[int, "Tile"] = {}
        self.fixed = False
        self.distance = 0.0

    def __repr__(self) -> str:
        return f"Tile(id={self.tile_id}, t={self.timepoint}, offset={self.offset.tolist()})"

    # -------------------------------------------------------------------------
    # Pixel data
    # -------------------------------------------------------------------------

    def data(self) -> np.ndarray:
        """Return the pixel array, loading it from ``path`` on first use."""
        if self._image is None:
            from .io import read_tile

            self._image = read_tile(self.path)
        return self._image

    @property
    def shape(self) -> Tuple[int, ...]:
        """Spatial shape in array-axis order."""
        return tuple(self.data().shape[-self.dimensionality:])

    @property
    def n_channels(self) -> int:
        arr = self.data()
        extra = arr.ndim - self.dimensionality
        if extra == 0:
            return 1
        if extra == 1:
            return arr.shape[0]
        raise ValueError(f"Tile {self.tile_id} has shape {arr.shape}, expected (C, *spatial)")

    def channel(self, index: int) -> np.ndarray:
        arr = self.data()
        if arr.ndim == self.dimensionality:
            if index != 0:
                raise IndexError(f"Tile {self.tile_id} has a single channel")
            return arr
        return arr[index]

    def registration_block(self, channel: Optional[int] = None) -> np.ndarray:
        """Scalar block used for registration; ``None`` averages all channels."""
        arr = self.data()
        if arr.ndim == self.dimensionality:
            return arr
        if channel is None:
            return arr.astype(np.float32).mean(axis=0)
        return arr[channel]

    # -------------------------------------------------------------------------
    # Optimization state
    # -------------------------------------------------------------------------

    @property
    def connected_tiles(self) -> List["Tile"]:
        return list(self._connected.values())

    def add_match(self, match: PointMatch) -> None:
        self.matches.append(match)

    def add_connected_tile(self, tile: "Tile") -> None:
        self._connected[id(tile)] = tile

    def reset_graph(self) -> None:
        self.matches = []
        self._connected = {}
        self.distance = 0.0

    def update(self) -> None:
        """Move the local match points by the current model and refresh the residual."""
        for m in self.matches:
            m.p1.apply(self.model)
        if self.matches:
            self.distance = float(np.mean([m.distance for m in self.matches]))
        else:
            self.distance = 0.0

    def fit_model(self) -> None:
        self.model.fit(self.matches)

    @property
    def position(self) -> np.ndarray:
        return self.model.translation.copy()


@dataclass(eq=False)
class ComparePair:
    """Registration outcome for an ordered tile pair.

    ``relative_shift`` is the position of ``tile2`` minus the position of
    ``tile1``.
    """

    tile1: Tile
    tile2: Tile
    relative_shift: np.ndarray = None
    cross_correlation: float = 0.0
    peak: float = 0.0
    is_valid_overlap: bool = True

    def __post_init__(self):
        if self.tile1.dimensionality != self.tile2.dimensionality:
            raise ValueError(
                f"Tiles {self.tile1.tile_id} and {self.tile2.tile_id} differ in dimensionality"
            )
        if self.relative_shift is None:
            self.relative_shift = self.tile2.offset - self.tile1.offset
        self.relative_shift = np.asarray(self.relative_shift, dtype=np.float64)

    @property
    def key(self) -> Tuple[int, int, int]:
        return (self.tile1.timepoint, self.tile1.tile_id, self.tile2.tile_id)


GRID_ORDERS = ("row-by-row", "column-by-column", "snake-by-rows", "snake-by-columns")
GRID_STARTS = ("top-left", "top-right", "bottom-left", "bottom-right")


def grid_cells(rows: int, columns: int, order: str = "row-by-row", start: str = "top-left") -> List[Tuple[int, int]]:
    """
    ``(row, column)`` of every tile, in acquisition order.

    Parameters
    ----------
    rows, columns : int
        Grid size.
    order : str
        ``row-by-row``, ``column-by-column``, ``snake-by-rows`` or
        ``snake-by-columns``. Snakes reverse direction on every other line.
    start : str
        Corner of the first tile: ``top-left``, ``top-right``, ``bottom-left``
        or ``bottom-right``.
    """
    if rows < 1 or columns < 1:
        raise ValueError(f"Grid must have at least one tile, got {rows}x{columns}")
    if order not in GRID_ORDERS:
        raise ValueError(f"Unknown grid order {order!r}; expected one of {list(GRID_ORDERS)}")
    if start not in GRID_STARTS:
        raise ValueError(f"Unknown grid start {start!r}; expected one of {list(GRID_STARTS)}")

    cells = []
    if order in ("row-by-row", "snake-by-rows"):
        for r in range(rows):
            cols = range(columns)
            if order == "snake-by-rows" and r % 2 == 1:
                cols = reversed(cols)
            cells.extend((r, c) for c in cols)
    else:
        for c in range(columns):
            rs = range(rows)
            if order == "snake-by-columns" and c % 2 == 1:
                rs = reversed(rs)
            cells.extend((r, c) for r in rs)

    flip_rows = start.startswith("bottom")
    flip_cols = start.endswith("right")
    return [
        (rows - 1 - r if flip_rows else r, columns - 1 - c if flip_cols else c)
        for r, c in cells
    ]


def grid_offsets(
    rows: int,
    columns: int,
    tile_shape: Sequence[int],
    overlap: Union[float, Sequence[float]] = 0.2,
    order: str = "row-by-row",
    start: str = "top-left",
) -> List[np.ndarray]:
    """
    Seed offsets for tiles acquired on a regular grid.

    Parameters
    ----------
    rows, columns : int
        Grid size.
    tile_shape : sequence of int
        Spatial tile shape, ``(Y, X)`` or ``(Z, Y, X)``.
    overlap : float or (float, float)
        Fractional overlap between neighbours along ``(y, x)``.
    order, start : str
        Acquisition order and first corner, see :func:`grid_cells`.

    Returns
    -------
    offsets : list of ndarray
        One offset per tile in acquisition order. Z offsets are 0.
    """
    cells = grid_cells(rows, columns, order, start)
    if np.isscalar(overlap):
        overlap = (overlap, overlap)
    oy, ox = (float(o) for o in overlap)
    if not (0.0 <= oy < 1.0 and 0.0 <= ox < 1.0):
        raise ValueError(f"overlap must be in [0, 1), got {(oy, ox)}")
    h, w = tile_shape[-2], tile_shape[-1]
    step_y = int(h * (1.0 - oy))
    step_x = int(w * (1.0 - ox))
    leading = [0.0] * (len(tile_shape) - 2)
    return [np.array(leading + [r * step_y, c * step_x], dtype=np.float64) for r, c in cells]
