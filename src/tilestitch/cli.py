"""
Command line entry point: stitch the tiles listed in a tile configuration file.
"""

import argparse
from pathlib import Path
from typing import List, Optional

from .core import TileStitcher
from .io import read_tile_configuration
from .parameters import StitchingParameters


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Register and fuse tiles from a tile configuration file")
    parser.add_argument("configuration", help="Tile configuration text file")
    parser.add_argument("-o", "--output", help="Fused TIFF path (default: {stem}_fused.tif)")
    parser.add_argument("--slices", help="Write one TIFF per output slice into this folder instead")
    parser.add_argument("--params", help="JSON file with stitching parameters")
    parser.add_argument("--metrics", help="JSON cache of pairwise registration results")
    parser.add_argument(
        "--fusion",
        default=None,
        help="blend, average, median, max, min or overlap (default: blend)",
    )
    parser.add_argument("--threshold", type=float, default=None, help="Regression threshold")
    parser.add_argument("--relative", type=float, default=None, help="Max/avg displacement threshold")
    parser.add_argument("--absolute", type=float, default=None, help="Absolute displacement threshold")
    parser.add_argument("--peaks", type=int, default=None, help="Phase correlation peaks to check")
    parser.add_argument("--sequential", type=int, default=None, metavar="RANGE",
                        help="Pair each tile with the next RANGE tiles instead of by overlap")
    parser.add_argument("--subpixel", action="store_true", help="Subpixel registration and fusion")
    parser.add_argument("--ignore-zero", action="store_true", help="Ignore zero samples when fusing")
    parser.add_argument("--no-overlap", action="store_true", help="Paste tiles without fusing")
    parser.add_argument("--no-registration", action="store_true", help="Use the seed positions as they are")
    parser.add_argument("--channel", type=int, default=None, help="Registration channel (default: average)")
    parser.add_argument("--workers", type=int, default=None, help="Worker threads")
    parser.add_argument("--debug", action="store_true", help="Print debug info")
    return parser


def main(argv: Optional[List[str]] = None) -> None:
    args = build_parser().parse_args(argv)
    configuration = Path(args.configuration)
    dimensionality, _ = read_tile_configuration(configuration)

    if args.params:
        params = StitchingParameters.from_json(args.params)
    else:
        params = StitchingParameters(dimensionality=dimensionality)
    overrides = {
        "fusion_method": args.fusion,
        "regression_threshold": args.threshold,
        "relative_threshold": args.relative,
        "absolute_threshold": args.absolute,
        "peaks_to_test": args.peaks,
        "channel": args.channel,
        "max_workers": args.workers,
    }
    values = {k: v for k, v in vars(params).items()}
    values.update({k: v for k, v in overrides.items() if v is not None})
    values["dimensionality"] = dimensionality
    if args.sequential is not None:
        values.update(sequential=True, sequential_range=args.sequential)
    if args.subpixel:
        values["subpixel_accuracy"] = True
    if args.ignore_zero:
        values["ignore_zero_values"] = True
    if args.no_overlap:
        values["no_overlap_fusion"] = True
    if args.no_registration:
        values["compute_overlap"] = False
    if args.debug:
        values["debug"] = True
    params = StitchingParameters(**values)

    stitcher = TileStitcher.from_tile_configuration(configuration, params)
    if args.slices:
        stitcher.align(args.metrics)
        written = stitcher.fuse_to_directory(args.slices)
        print(f"Done! Wrote {len(written)} slices to {args.slices}")
    else:
        output = args.output or str(configuration.with_name(f"{configuration.stem}_fused.tif"))
        stitcher.run(output_path=output, metrics_path=args.metrics)

    registered = configuration.with_name(f"{configuration.stem}.registered.txt")
    stitcher.write_registered_configuration(registered)
    print(f"Registered positions: {registered}")


if __name__ == "__main__":
    main()
