"""
I/O for tile configuration files and TIFF images.
"""

from .tile_configuration import (
    TileConfigurationEntry,
    format_entry,
    parse_tile_configuration,
    read_tile_configuration,
    write_tile_configuration,
)
from .tiff import load_tiles, read_tile, write_image

__all__ = [
    "TileConfigurationEntry",
    "format_entry",
    "load_tiles",
    "parse_tile_configuration",
    "read_tile",
    "read_tile_configuration",
    "write_image",
    "write_tile_configuration",
]
