"""
Tile configuration text files.

Each file declares the dimensionality and then lists one tile per line::

    # Define the number of dimensions we are working on
    dim = 2

    # Define the image coordinates
    tile_0.tif; ; (0.0, 0.0)
    tile_1.tif; ; (921.5, 0.0)

Coordinates are pixel positions relative to a shared origin, in ``(x, y[, z])``
order. Tile objects use array-axis order, so positions are reversed when
converting between the two.
"""

import re
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Sequence, Tuple, Union

import numpy as np

HEADER_DIMENSIONS = "# Define the number of dimensions we are working on"
HEADER_COORDINATES = "# Define the image coordinates"

_DIM_RE = re.compile(r"^dim\s*=\s*(\d+)\s*$")


@dataclass
class TileConfigurationEntry:
    """One tile line: image path, optional series index and ``(x, y[, z])`` position."""

    path: str
    position: Tuple[float, ...]
    series: Optional[int] = None

    @property
    def offset(self) -> np.ndarray:
        """Position in array-axis order (``(y, x)`` or ``(z, y, x)``)."""
        return np.array(self.position[::-1], dtype=np.float64)

    @classmethod
    def from_offset(cls, path: Union[str, Path], offset: Sequence[float], series: Optional[int] = None):
        return cls(str(path), tuple(float(v) for v in offset)[::-1], series)


def _format_number(value) -> str:
    if isinstance(value, (int, np.integer)):
        return str(int(value))
    return repr(float(value))


def format_entry(entry: TileConfigurationEntry) -> str:
    series = "" if entry.series is None else str(entry.series)
    coords = ", ".join(_format_number(v) for v in entry.position)
    return f"{entry.path}; {series}; ({coords})"


def write_tile_configuration(
    path: Union[str, Path],
    entries: Sequence[TileConfigurationEntry],
    dimensionality: int,
) -> None:
    """
    Write a tile configuration file.

    Raises
    ------
    ValueError
        If the dimensionality is not 2 or 3, or an entry does not match it.
    """
    if dimensionality not in (2, 3):
        raise ValueError(f"dimensionality must be 2 or 3, got {dimensionality}")
    for entry in entries:
        if len(entry.position) != dimensionality:
            raise ValueError(
                f"Entry {entry.path} has {len(entry.position)} coordinates, expected {dimensionality}"
            )
    lines = [HEADER_DIMENSIONS, f"dim = {dimensionality}", "", HEADER_COORDINATES]
    lines.extend(format_entry(e) for e in entries)
    with open(path, "w") as f:
        f.write("\n".join(lines) + "\n")


def parse_tile_configuration(text: str) -> Tuple[int, List[TileConfigurationEntry]]:
    """Parse the contents of a tile configuration file."""
    dimensionality = None
    entries = []
    for lineno, raw in enumerate(text.splitlines(), start=1):
        line = raw.strip()
        if not line or line.startswith("#"):
            continue
        m = _DIM_RE.match(line)
        if m:
            dimensionality = int(m.group(1))
            if dimensionality not in (2, 3):
                raise ValueError(f"Line {lineno}: unsupported dimensionality {dimensionality}")
            continue
        if dimensionality is None:
            raise ValueError(f"Line {lineno}: tile entry before 'dim = N' declaration")
        parts = line.split(";")
        if len(parts) != 3:
            raise ValueError(f"Line {lineno}: expected '<path>; <series>; (<coordinates>)', got {raw!r}")
        image_path, series, coords = (p.strip() for p in parts)
        if not (coords.startswith("(") and coords.endswith(")")):
            raise ValueError(f"Line {lineno}: coordinates must be in parentheses, got {coords!r}")
        try:
            position = tuple(float(v) for v in coords[1:-1].split(","))
            series_index = int(series) if series else None
        except ValueError:
            raise ValueError(f"Line {lineno}: cannot parse {raw!r}") from None
        if len(position) != dimensionality:
            raise ValueError(
                f"Line {lineno}: {len(position)} coordinates for dimensionality {dimensionality}"
            )
        entries.append(TileConfigurationEntry(image_path, position, series_index))
    if dimensionality is None:
        raise ValueError("Missing 'dim = N' declaration")
    return dimensionality, entries


def read_tile_configuration(path: Union[str, Path]) -> Tuple[int, List[TileConfigurationEntry]]:
    """
    Read a tile configuration file.

    Returns
    -------
    dimensionality : int
    entries : list of TileConfigurationEntry
        Paths are returned as written in the file.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Tile configuration not found: {path}")
    return parse_tile_configuration(path.read_text())
