"""
Global position optimization.

Pairwise shifts are turned into weighted point matches between tiles. Each
connected component ("islet") is relaxed iteratively until the residuals
plateau; the single worst link is then rejected while the residuals stay
inconsistent, and the islet is optimized again without it.
"""

import threading
from collections import deque
from enum import Enum
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np

from .errors import Cancelled
from .tiles import ComparePair, Point, PointMatch, Tile

# Minimum match weight, so that low or negative correlations still pull.
_MIN_WEIGHT = 1e-3
_SLOPE_TOLERANCE = 1e-4


class ErrorStatistic:
    """Running record of the optimization error and its slope."""

    def __init__(self):
        self.values: List[float] = []
        self.slopes: List[float] = []
        self.mean = 0.0
        self.min = float("inf")
        self.max = 0.0

    def add(self, value: float) -> None:
        value = float(value)
        if len(self.values) > 1:
            self.slopes.append(value - self.values[-1])
        else:
            self.slopes.append(0.0)
        self.values.append(value)
        self.mean += (value - self.mean) / len(self.values)
        self.min = min(self.min, value)
        self.max = max(self.max, value)

    def wide_slope(self, width: int) -> float:
        """
        Mean slope over a window of ``width`` samples.

        The window ends one sample before the most recent one and the sum is
        divided by ``width`` even when fewer slopes are available.
        """
        width = int(width)
        if width <= 0:
            raise ValueError(f"width must be positive, got {width}")
        if width > len(self.slopes):
            raise ValueError(
                f"Cannot estimate a slope over {width} samples from {len(self.slopes)} values"
            )
        end = len(self.slopes) - 1
        return float(sum(self.slopes[max(0, end - width):end])) / width


def _accepted(pair: ComparePair, threshold: float) -> bool:
    return pair.is_valid_overlap and pair.cross_correlation >= threshold


def find_islets(pairs: Sequence[ComparePair], threshold: float = -np.inf) -> List[List[ComparePair]]:
    """
    Group accepted pairs into connected components.

    Parameters
    ----------
    pairs : sequence of ComparePair
    threshold : float
        Pairs with a cross correlation below this value, and invalidated
        pairs, are left out.

    Returns
    -------
    islets : list of list of ComparePair
        Components in order of their first pair; pairs keep their order.
    """
    accepted = [p for p in pairs if _accepted(p, threshold)]
    parent: Dict[int, int] = {}

    def root(key: int) -> int:
        parent.setdefault(key, key)
        while parent[key] != key:
            parent[key] = parent[parent[key]]
            key = parent[key]
        return key

    for p in accepted:
        a, b = root(id(p.tile1)), root(id(p.tile2))
        if a != b:
            parent[b] = a

    groups: Dict[int, List[ComparePair]] = {}
    for p in accepted:
        groups.setdefault(root(id(p.tile1)), []).append(p)
    return list(groups.values())


class TileConfiguration:
    """Tiles of one islet and the relaxation that moves them."""

    def __init__(self):
        self.tiles: List[Tile] = []
        self.fixed_tiles: List[Tile] = []
        self.error = 0.0
        self.min_error = 0.0
        self.max_error = 0.0

    def add_tile(self, tile: Tile) -> None:
        if not any(t is tile for t in self.tiles):
            self.tiles.append(tile)

    def fix_tile(self, tile: Tile) -> None:
        tile.fixed = True
        if not any(t is tile for t in self.fixed_tiles):
            self.fixed_tiles.append(tile)

    def update(self) -> None:
        """Refresh all match points and the error metrics."""
        for tile in self.tiles:
            tile.update()
        distances = [tile.distance for tile in self.tiles]
        if distances:
            self.error = float(np.mean(distances))
            self.min_error = float(np.min(distances))
            self.max_error = float(np.max(distances))
        else:
            self.error = self.min_error = self.max_error = 0.0

    def pre_align(self, anchor: Tile) -> None:
        """Place tiles breadth-first from ``anchor``, each against the tiles already placed."""
        aligned = {id(anchor)}
        queue = deque([anchor])
        while queue:
            current = queue.popleft()
            current.update()
            for neighbour in current.connected_tiles:
                if id(neighbour) in aligned:
                    continue
                matches = [m for m in neighbour.matches if id(_partner(m, neighbour)) in aligned]
                neighbour.model.fit(matches)
                neighbour.update()
                aligned.add(id(neighbour))
                queue.append(neighbour)

    def optimize(
        self,
        max_allowed_error: float = 10.0,
        max_iterations: int = 1000,
        max_plateau_width: int = 200,
        cancel: Optional[threading.Event] = None,
    ) -> int:
        """
        Relax all non-fixed tiles until the error plateaus.

        Returns
        -------
        iterations : int
            Number of relaxation sweeps performed.
        """
        observer = ErrorStatistic()
        self.update()
        half_width = max(1, max_plateau_width // 2)
        i = 0
        while i < max_iterations:
            if cancel is not None and cancel.is_set():
                raise Cancelled("Global optimization cancelled")
            for tile in self.tiles:
                if tile.fixed:
                    continue
                tile.update()
                tile.fit_model()
                tile.update()
            self.update()
            observer.add(self.error)
            if (
                i >= max_plateau_width
                and self.error < max_allowed_error
                and abs(observer.wide_slope(max_plateau_width)) <= _SLOPE_TOLERANCE
                and abs(observer.wide_slope(half_width)) <= _SLOPE_TOLERANCE
            ):
                break
            i += 1
        return i

    def worst_match(self) -> Optional[PointMatch]:
        worst = None
        worst_distance = -1.0
        for tile in self.tiles:
            for m in tile.matches:
                d = m.distance
                if d > worst_distance:
                    worst = m
                    worst_distance = d
        return worst


def _partner(match: PointMatch, tile: Tile) -> Tile:
    pair = match.pair
    return pair.tile2 if pair.tile1 is tile else pair.tile1


class OptimizationState(Enum):
    BUILDING = "building"
    RELAXING = "relaxing"
    CHECKING_CONVERGENCE = "checking_convergence"
    REJECTING_OUTLIER = "rejecting_outlier"
    DONE = "done"


class IsletOptimizer:
    """
    Optimize one islet, rejecting bad links one at a time.

    Parameters
    ----------
    pairs : sequence of ComparePair
        Accepted pairs forming one connected component.
    anchors : sequence of Tile
        Preferred reference tiles; the first one inside the islet is kept
        fixed, otherwise the first tile of the islet is.
    relative_threshold, absolute_threshold : float
        Residual checks that trigger the rejection of the worst link.
    max_allowed_error, max_iterations, max_plateau_width
        Relaxation stopping criteria.
    """

    def __init__(
        self,
        pairs: Sequence[ComparePair],
        anchors: Sequence[Tile] = (),
        relative_threshold: float = 2.5,
        absolute_threshold: float = 3.5,
        max_allowed_error: float = 10.0,
        max_iterations: int = 1000,
        max_plateau_width: int = 200,
        debug: bool = False,
        cancel: Optional[threading.Event] = None,
    ):
        if not pairs:
            raise ValueError("An islet needs at least one pair")
        self.pairs = list(pairs)
        self.anchors = list(anchors)
        self.relative_threshold = relative_threshold
        self.absolute_threshold = absolute_threshold
        self.max_allowed_error = max_allowed_error
        self.max_iterations = max_iterations
        self.max_plateau_width = max_plateau_width
        self.debug = debug
        self.cancel = cancel

        self.state = OptimizationState.BUILDING
        self.configuration = TileConfiguration()
        self.anchor: Optional[Tile] = None
        self.pending: List[List[ComparePair]] = []
        self.rejected: List[ComparePair] = []
        self.iterations = 0

    def _islet_tiles(self) -> List[Tile]:
        tiles: List[Tile] = []
        seen = set()
        for p in self.pairs:
            for t in (p.tile1, p.tile2):
                if id(t) not in seen:
                    seen.add(id(t))
                    tiles.append(t)
        return tiles

    def _choose_anchor(self, tiles: List[Tile]) -> Tile:
        members = {id(t) for t in tiles}
        for anchor in self.anchors:
            if id(anchor) in members:
                return anchor
        return tiles[0]

    def _build(self) -> None:
        tiles = self._islet_tiles()
        config = TileConfiguration()
        for tile in tiles:
            tile.reset_graph()
            tile.fixed = False
            tile.model.set(tile.offset)
            config.add_tile(tile)
        for pair in self.pairs:
            weight = max(float(pair.cross_correlation), _MIN_WEIGHT)
            p1 = Point(np.zeros(pair.tile1.dimensionality))
            p2 = Point(-pair.relative_shift)
            pair.tile1.add_match(PointMatch(p1, p2, weight, pair))
            pair.tile2.add_match(PointMatch(p2, p1, weight, pair))
            pair.tile1.add_connected_tile(pair.tile2)
            pair.tile2.add_connected_tile(pair.tile1)
        self.anchor = self._choose_anchor(tiles)
        config.fix_tile(self.anchor)
        self.configuration = config

    def _relax(self) -> None:
        self.configuration.pre_align(self.anchor)
        self.iterations = self.configuration.optimize(
            self.max_allowed_error, self.max_iterations, self.max_plateau_width, self.cancel
        )
        if self.debug:
            print(
                f"Islet of {len(self.configuration.tiles)} tiles: {self.iterations} iterations, "
                f"avg error {self.configuration.error:.4f}, max error {self.configuration.max_error:.4f}"
            )

    def _needs_rejection(self) -> bool:
        avg = self.configuration.error
        worst = self.configuration.max_error
        return (avg * self.relative_threshold < worst and worst > 0.95) or avg > self.absolute_threshold

    def _reject(self) -> bool:
        """Invalidate the worst link; returns False when nothing is left to optimize."""
        match = self.configuration.worst_match()
        if match is None:
            return False
        pair = match.pair
        pair.is_valid_overlap = False
        self.rejected.append(pair)
        if self.debug:
            print(
                f"Identified link between {pair.tile1.tile_id} and {pair.tile2.tile_id} "
                f"(R={pair.cross_correlation:.4f}, residual {match.distance:.4f}) to be bad. Reoptimizing."
            )
        for tile in self.configuration.tiles:
            tile.reset_graph()
            tile.fixed = False
            tile.model.set(tile.offset)

        islets = find_islets([p for p in self.pairs if p is not pair])
        if not islets:
            self.pairs = []
            return False
        anchor_ids = {id(a) for a in self.anchors} | {id(self.anchor)}
        keep = 0
        for k, islet in enumerate(islets):
            if any(id(p.tile1) in anchor_ids or id(p.tile2) in anchor_ids for p in islet):
                keep = k
                break
        self.pairs = islets[keep]
        self.pending.extend(islet for k, islet in enumerate(islets) if k != keep)
        return True

    def _restore_frame(self) -> None:
        anchor = self.anchor
        delta = anchor.offset - anchor.model.translation
        for tile in self.configuration.tiles:
            tile.model.set(tile.model.translation + delta)

    def step(self) -> OptimizationState:
        """Advance the state machine by one transition."""
        if self.state is OptimizationState.BUILDING:
            self._build()
            self.state = OptimizationState.RELAXING
        elif self.state is OptimizationState.RELAXING:
            self._relax()
            self.state = OptimizationState.CHECKING_CONVERGENCE
        elif self.state is OptimizationState.CHECKING_CONVERGENCE:
            if self._needs_rejection():
                self.state = OptimizationState.REJECTING_OUTLIER
            else:
                self._restore_frame()
                self.state = OptimizationState.DONE
        elif self.state is OptimizationState.REJECTING_OUTLIER:
            if self._reject():
                self.state = OptimizationState.BUILDING
            else:
                self.configuration = TileConfiguration()
                self.state = OptimizationState.DONE
        return self.state

    def run(self) -> Tuple[List[Tile], List[List[ComparePair]]]:
        """
        Optimize until done.

        Returns
        -------
        tiles : list of Tile
            Tiles whose positions were optimized in this islet.
        pending : list of list of ComparePair
            Components split off by rejected links, to be optimized separately.
        """
        while self.state is not OptimizationState.DONE:
            self.step()
        return list(self.configuration.tiles), self.pending


def optimize_global(
    pairs: Sequence[ComparePair],
    tiles: Optional[Sequence[Tile]] = None,
    fixed_tiles: Sequence[Tile] = (),
    correlation_threshold: float = 0.3,
    relative_threshold: float = 2.5,
    absolute_threshold: float = 3.5,
    max_allowed_error: float = 10.0,
    max_iterations: int = 1000,
    max_plateau_width: int = 200,
    debug: bool = False,
    cancel: Optional[threading.Event] = None,
) -> List[Tile]:
    """
    Globally consistent tile positions from pairwise shifts.

    Parameters
    ----------
    pairs : sequence of ComparePair
        Registered pairs. Rejected links get ``is_valid_overlap = False``.
    tiles : sequence of Tile, optional
        All tiles to place. Defaults to the tiles referenced by ``pairs``.
    fixed_tiles : sequence of Tile
        Reference tiles that keep their offsets.
    correlation_threshold : float
        Pairs below this cross correlation are ignored.
    relative_threshold, absolute_threshold : float
        Residual checks for rejecting the worst link.
    max_allowed_error, max_iterations, max_plateau_width
        Relaxation stopping criteria.
    debug : bool
        If True, prints progress details.
    cancel : threading.Event, optional
        Checked between relaxation sweeps.

    Returns
    -------
    tiles : list of Tile
        Every tile, sorted by timepoint then id, with ``model.translation``
        holding its committed position. Tiles without accepted links stay at
        their offsets.
    """
    if tiles is None:
        tiles = []
        seen = set()
        for p in pairs:
            for t in (p.tile1, p.tile2):
                if id(t) not in seen:
                    seen.add(id(t))
                    tiles.append(t)
    tiles = list(tiles)
    dims = {t.dimensionality for t in tiles}
    if len(dims) > 1:
        raise ValueError(f"Tiles of mixed dimensionality: {sorted(dims)}")

    for tile in tiles:
        tile.reset_graph()
        tile.fixed = False
        tile.model.set(tile.offset)

    queue = deque(find_islets(pairs, correlation_threshold))
    if debug:
        print(f"Found {len(queue)} islets from {len(pairs)} pairs")
    placed = set()
    while queue:
        optimizer = IsletOptimizer(
            queue.popleft(),
            anchors=fixed_tiles,
            relative_threshold=relative_threshold,
            absolute_threshold=absolute_threshold,
            max_allowed_error=max_allowed_error,
            max_iterations=max_iterations,
            max_plateau_width=max_plateau_width,
            debug=debug,
            cancel=cancel,
        )
        islet_tiles, pending = optimizer.run()
        queue.extend(pending)
        placed.update(id(t) for t in islet_tiles)

    for tile in tiles:
        tile.fixed = False
        if id(tile) not in placed:
            tile.model.set(tile.offset)
            if debug:
                print(f"Tile {tile.tile_id} (t={tile.timepoint}) has no accepted links; keeping its offset")

    return sorted(tiles, key=lambda t: (t.timepoint, t.tile_id))
