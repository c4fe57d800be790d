"""Tests for tilestitch.cli module."""

import numpy as np
import pytest
import tifffile

from tilestitch.cli import build_parser, main
from tilestitch.io import TileConfigurationEntry, read_tile_configuration, write_tile_configuration
from tilestitch.parameters import StitchingParameters


@pytest.fixture
def configuration(tmp_path):
    world = np.random.default_rng(2).integers(0, 60000, (90, 150)).astype(np.uint16)
    entries = []
    for i, x in enumerate((0, 55)):
        tifffile.imwrite(tmp_path / f"tile_{i}.tif", world[:, x:x + 95])
        entries.append(TileConfigurationEntry(f"tile_{i}.tif", (x + 2 * i, 0)))
    path = tmp_path / "grid.txt"
    write_tile_configuration(path, entries, 2)
    return path, world


class TestCli:
    """Tests for the command line entry point."""

    def test_parser_defaults(self):
        args = build_parser().parse_args(["config.txt"])
        assert args.configuration == "config.txt"
        assert args.fusion is None
        assert not args.subpixel

    def test_stitch(self, configuration, capsys):
        path, world = configuration
        main([str(path), "--workers", "1"])
        fused = tifffile.imread(path.with_name("grid_fused.tif"))
        np.testing.assert_array_equal(fused, world)
        _, entries = read_tile_configuration(path.with_name("grid.registered.txt"))
        np.testing.assert_allclose(entries[1].position, (55.0, 0.0), atol=1e-3)
        assert "Done!" in capsys.readouterr().out

    def test_slices_without_registration(self, configuration, tmp_path):
        path, _ = configuration
        main([str(path), "--slices", str(tmp_path / "out"), "--no-registration", "--fusion", "max"])
        assert (tmp_path / "out" / "img_t1_z1_c1").exists()
        _, entries = read_tile_configuration(path.with_name("grid.registered.txt"))
        assert entries[1].position == (57.0, 0.0)

    def test_params_file(self, configuration, tmp_path):
        path, _ = configuration
        params = tmp_path / "params.json"
        StitchingParameters(fusion_method="min", compute_overlap=False, max_workers=1).to_json(params)
        output = tmp_path / "custom.tif"
        main([str(path), "--params", str(params), "-o", str(output)])
        assert tifffile.imread(output).shape == (90, 152)
