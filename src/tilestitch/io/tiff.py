"""
TIFF access for tiles and fused output.
"""

from pathlib import Path
from typing import List, Union

import numpy as np
import tifffile

from ..tiles import Tile
from .tile_configuration import read_tile_configuration


def read_tile(path: Union[str, Path]) -> np.ndarray:
    """Read a tile image, ``(*spatial)`` or ``(C, *spatial)``."""
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Tile image not found: {path}")
    return tifffile.imread(path)


def write_image(path: Union[str, Path], image: np.ndarray) -> None:
    """Write a fused image as (BigTIFF when needed) TIFF."""
    image = np.asarray(image)
    tifffile.imwrite(path, image, bigtiff=image.nbytes > 2**31)


def load_tiles(configuration_path: Union[str, Path]) -> List[Tile]:
    """
    Build lazily loaded tiles from a tile configuration file.

    Relative image paths are resolved against the configuration's folder.
    Tile ids follow the order of the entries.
    """
    configuration_path = Path(configuration_path)
    dimensionality, entries = read_tile_configuration(configuration_path)
    tiles = []
    for i, entry in enumerate(entries):
        image_path = Path(entry.path)
        if not image_path.is_absolute():
            image_path = configuration_path.parent / image_path
        tiles.append(
            Tile(i, path=image_path, offset=entry.offset, dimensionality=dimensionality)
        )
    return tiles
