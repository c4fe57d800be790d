"""
TileStitcher - registration, global optimization and fusion of 2D/3D tiles.

Main orchestration class that composes the graph, registration,
optimization, fusion and I/O modules.
"""

import json
import os
import threading
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple, Union

import numpy as np

from .fusion import fuse_tiles, fuse_to_directory
from .graph import find_overlapping_pairs, find_sequential_pairs, register_pairs
from .io import TileConfigurationEntry, load_tiles, write_image, write_tile_configuration
from .optimization import optimize_global
from .parameters import StitchingParameters
from .tiles import ComparePair, Tile, grid_offsets


class TileStitcher:
    """
    Register, optimize and fuse a set of tiles.

    Parameters
    ----------
    tiles : sequence of Tile
        Tiles with seed offsets. Ids must be unique within a timepoint.
    params : StitchingParameters, optional
        Options; defaults match the tiles' dimensionality.
    """

    def __init__(self, tiles: Sequence[Tile], params: Optional[StitchingParameters] = None):
        tiles = list(tiles)
        if not tiles:
            raise ValueError("At least one tile is required")
        if params is None:
            params = StitchingParameters(dimensionality=tiles[0].dimensionality)
        for t in tiles:
            if t.dimensionality != params.dimensionality:
                raise ValueError(
                    f"Tile {t.tile_id} is {t.dimensionality}D but parameters are "
                    f"{params.dimensionality}D"
                )
        keys = [(t.timepoint, t.tile_id) for t in tiles]
        if len(set(keys)) != len(keys):
            raise ValueError("Tile ids must be unique within each timepoint")

        self._tiles = tiles
        self._params = params
        self.pairs: List[ComparePair] = []
        self._cancel = threading.Event()

    @classmethod
    def from_tile_configuration(
        cls, path: Union[str, Path], params: Optional[StitchingParameters] = None
    ) -> "TileStitcher":
        """Create a stitcher from a tile configuration text file."""
        tiles = load_tiles(path)
        if not tiles:
            raise ValueError(f"No tiles listed in {path}")
        if params is None:
            params = StitchingParameters(dimensionality=tiles[0].dimensionality)
        return cls(tiles, params)

    @classmethod
    def from_grid(
        cls,
        sources: Sequence[Union[np.ndarray, str, Path]],
        rows: int,
        columns: int,
        overlap: Union[float, Sequence[float]] = 0.2,
        order: str = "row-by-row",
        start: str = "top-left",
        params: Optional[StitchingParameters] = None,
    ) -> "TileStitcher":
        """
        Create a stitcher for tiles acquired on a regular grid.

        Parameters
        ----------
        sources : sequence of ndarray or path
            Tile images (or TIFF paths) in acquisition order.
        rows, columns : int
            Grid size; ``rows * columns`` must equal ``len(sources)``.
        overlap : float or (float, float)
            Nominal fractional overlap between neighbours along ``(y, x)``.
        order : str
            ``row-by-row``, ``column-by-column``, ``snake-by-rows`` or ``snake-by-columns``.
        start : str
            Corner of the first tile: ``top-left``, ``top-right``, ``bottom-left`` or ``bottom-right``.
        params : StitchingParameters, optional
            Options; the dimensionality defaults to that of the first tile.
        """
        sources = list(sources)
        if len(sources) != rows * columns:
            raise ValueError(f"A {rows}x{columns} grid needs {rows * columns} tiles, got {len(sources)}")
        dimensionality = params.dimensionality if params is not None else None

        def make_tile(i, source, offset=None):
            if isinstance(source, np.ndarray):
                return Tile(i, image=source, offset=offset, dimensionality=dimensionality)
            return Tile(i, path=source, offset=offset, dimensionality=dimensionality)

        first = make_tile(0, sources[0])
        offsets = grid_offsets(rows, columns, first.shape, overlap, order, start)
        tiles = [make_tile(i, s, offsets[i]) for i, s in enumerate(sources)]
        if params is None:
            params = StitchingParameters(dimensionality=first.dimensionality)
        return cls(tiles, params)

    # -------------------------------------------------------------------------
    # Properties
    # -------------------------------------------------------------------------

    @property
    def tiles(self) -> List[Tile]:
        return self._tiles

    @property
    def params(self) -> StitchingParameters:
        return self._params

    @property
    def debug(self) -> bool:
        """Debug flag for verbose logging."""
        return self._params.debug

    @debug.setter
    def debug(self, flag: bool):
        self._params.debug = bool(flag)

    @property
    def pairwise_metrics(self) -> Dict[Tuple[int, int, int], Tuple[float, ...]]:
        """``(timepoint, id1, id2) -> (*shift, R)`` for every valid pair."""
        return {
            p.key: tuple(float(v) for v in p.relative_shift) + (float(p.cross_correlation),)
            for p in self.pairs
            if p.is_valid_overlap
        }

    def cancel(self) -> None:
        """Ask running registration, optimization or fusion to stop."""
        self._cancel.set()

    # -------------------------------------------------------------------------
    # Registration
    # -------------------------------------------------------------------------

    def find_pairs(self) -> List[ComparePair]:
        """Build the candidate pairs from the seed offsets."""
        p = self._params
        if p.sequential:
            self.pairs = find_sequential_pairs(self._tiles, p.sequential_range)
        else:
            self.pairs = find_overlapping_pairs(self._tiles)
        if self.debug:
            print(f"Found {len(self.pairs)} candidate tile pairs")
        return self.pairs

    def compute_pairwise(self) -> None:
        """Register every candidate pair."""
        if not self.pairs:
            self.find_pairs()
        p = self._params
        register_pairs(
            self.pairs,
            peaks_to_test=p.peaks_to_test,
            min_overlap_fraction=p.min_overlap_fraction,
            subpixel=p.subpixel_accuracy,
            damp_edges=p.damp_edges,
            downsample=p.downsample,
            channel=p.channel,
            max_workers=p.max_workers,
            debug=p.debug,
            cancel=self._cancel,
        )

    # -------------------------------------------------------------------------
    # Optimization
    # -------------------------------------------------------------------------

    def optimize(self) -> None:
        """Globally optimize tile positions; the first tile of each timepoint is the reference."""
        p = self._params
        anchors = []
        seen = set()
        for t in self._tiles:
            if t.timepoint not in seen:
                seen.add(t.timepoint)
                anchors.append(t)
        optimize_global(
            self.pairs,
            tiles=self._tiles,
            fixed_tiles=anchors,
            correlation_threshold=p.regression_threshold,
            relative_threshold=p.relative_threshold,
            absolute_threshold=p.absolute_threshold,
            max_allowed_error=p.max_allowed_error,
            max_iterations=p.max_iterations,
            max_plateau_width=p.max_plateau_width,
            debug=p.debug,
            cancel=self._cancel,
        )

    def committed_positions(self) -> Dict[Tuple[int, int], np.ndarray]:
        """``(tile id, timepoint) -> position`` in array-axis order."""
        return {(t.tile_id, t.timepoint): t.position for t in self._tiles}

    # -------------------------------------------------------------------------
    # Metrics persistence
    # -------------------------------------------------------------------------

    def save_pairwise_metrics(self, filepath: Union[str, Path]) -> None:
        """
        Save pairwise registration results to a JSON file.

        Each pair maps ``"t,id1,id2"`` to ``[*shift, R, peak, valid]``.
        """
        out = {
            f"{p.key[0]},{p.key[1]},{p.key[2]}": [float(v) for v in p.relative_shift]
            + [float(p.cross_correlation), float(p.peak), bool(p.is_valid_overlap)]
            for p in self.pairs
        }
        with open(filepath, "w") as f:
            json.dump(out, f)

    def load_pairwise_metrics(self, filepath: Union[str, Path]) -> None:
        """Load pairwise registration results from a JSON file."""
        with open(filepath, "r") as f:
            data = json.load(f)
        lookup = {(t.timepoint, t.tile_id): t for t in self._tiles}
        dim = self._params.dimensionality
        pairs = []
        for key, values in data.items():
            timepoint, i, j = (int(v) for v in key.split(","))
            if (timepoint, i) not in lookup or (timepoint, j) not in lookup:
                raise ValueError(f"Metrics refer to unknown tiles: {key}")
            if len(values) != dim + 3:
                raise ValueError(f"Expected {dim + 3} values for pair {key}, got {len(values)}")
            pairs.append(
                ComparePair(
                    lookup[(timepoint, i)],
                    lookup[(timepoint, j)],
                    relative_shift=np.array(values[:dim]),
                    cross_correlation=values[dim],
                    peak=values[dim + 1],
                    is_valid_overlap=bool(values[dim + 2]),
                )
            )
        self.pairs = pairs

    def write_registered_configuration(self, filepath: Union[str, Path]) -> None:
        """
        Write committed positions in the tile configuration text format.

        Image paths are written relative to the folder of ``filepath`` so the
        file can be loaded again with :func:`~tilestitch.io.load_tiles`.
        """
        folder = Path(filepath).resolve().parent
        entries = []
        for t in self._tiles:
            if t.path is not None:
                name = Path(os.path.relpath(t.path.resolve(), folder)).as_posix()
            else:
                name = f"tile_{t.tile_id}"
            entries.append(TileConfigurationEntry.from_offset(name, t.position))
        write_tile_configuration(filepath, entries, self._params.dimensionality)

    # -------------------------------------------------------------------------
    # Fusion
    # -------------------------------------------------------------------------

    def fuse(self) -> np.ndarray:
        """Fuse all timepoints and channels, shape ``(T, C, *spatial)``."""
        p = self._params
        return fuse_tiles(
            self._tiles,
            method=p.method,
            ignore_zero=p.ignore_zero_values,
            subpixel=p.subpixel_accuracy,
            blend_fraction=p.blend_fraction,
            no_overlap=p.no_overlap_fusion,
            max_workers=p.max_workers,
            cancel=self._cancel,
        )

    def fuse_to_directory(self, directory: Union[str, Path]) -> List[Path]:
        """Fuse slice by slice, writing one TIFF per slice into ``directory``."""
        p = self._params
        return fuse_to_directory(
            self._tiles,
            directory,
            method=p.method,
            ignore_zero=p.ignore_zero_values,
            subpixel=p.subpixel_accuracy,
            blend_fraction=p.blend_fraction,
            max_workers=p.max_workers,
            cancel=self._cancel,
        )

    # -------------------------------------------------------------------------
    # Main pipeline
    # -------------------------------------------------------------------------

    def align(self, metrics_path: Union[str, Path, None] = None) -> None:
        """
        Register and optimize, or take the seed positions when overlap computation is off.

        Parameters
        ----------
        metrics_path : str or Path, optional
            JSON cache of pairwise results; loaded when it exists, written otherwise.
        """
        if self._params.compute_overlap:
            metrics_path = Path(metrics_path) if metrics_path is not None else None
            if metrics_path is not None and metrics_path.exists():
                self.load_pairwise_metrics(metrics_path)
                print(f"Loaded {len(self.pairs)} pairwise metrics from {metrics_path}")
            else:
                print("Computing pairwise registration metrics...")
                self.find_pairs()
                self.compute_pairwise()
                if metrics_path is not None:
                    self.save_pairwise_metrics(metrics_path)
                    print(f"Saved {len(self.pairs)} pairwise metrics to {metrics_path}")

            threshold = self._params.regression_threshold
            if not any(p.is_valid_overlap and p.cross_correlation >= threshold for p in self.pairs):
                print("No tile pair could be registered. Using seed positions directly.")
            else:
                print("Optimizing global tile positions...")
            self.optimize()
        else:
            print("Using seed positions directly.")
            for t in self._tiles:
                t.model.set(t.offset)

    def run(
        self,
        output_path: Union[str, Path, None] = None,
        metrics_path: Union[str, Path, None] = None,
    ) -> np.ndarray:
        """
        Execute the full pipeline end-to-end.

        Parameters
        ----------
        output_path : str or Path, optional
            Where to write the fused TIFF.
        metrics_path : str or Path, optional
            JSON cache of pairwise results, see :meth:`align`.

        Returns
        -------
        fused : ndarray of shape (T, C, *spatial)
        """
        self.align(metrics_path)

        print("Fusing tiles...")
        fused = self.fuse()
        print(f"Output size: {' x '.join(str(n) for n in fused.shape)}")
        if output_path is not None:
            write_image(output_path, np.squeeze(fused) if fused.shape[:2] == (1, 1) else fused)
            print(f"Done! Output: {output_path}")
        return fused
