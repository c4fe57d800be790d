"""Tests for tilestitch.graph module."""

import threading

import numpy as np
import pytest

from tilestitch.errors import Cancelled
from tilestitch.graph import (
    find_overlapping_pairs,
    find_sequential_pairs,
    overlap_roi,
    register_pairs,
    tiles_overlap,
)
from tilestitch.tiles import ComparePair, Tile, grid_offsets


def blank_tiles(offsets, shape=(100, 100), timepoint=0):
    return [Tile(i, image=np.zeros(shape, dtype=np.uint8), offset=o, timepoint=timepoint) for i, o in enumerate(offsets)]


@pytest.fixture
def strip():
    """Three 120x80 tiles cut from one image with 20 px overlaps, seeded with small errors."""
    world = np.random.default_rng(7).random((120, 200)).astype(np.float32)
    seeds = [(0.0, 0.0), (2.0, 57.0), (-1.0, 123.0)]
    return [Tile(i, image=world[:, 60 * i:60 * i + 80], offset=seeds[i]) for i in range(3)]


class TestFindPairs:
    """Tests for overlap and sequential pair search."""

    def test_grid_with_diagonals(self):
        tiles = blank_tiles(grid_offsets(2, 2, (100, 100), overlap=0.2))
        pairs = find_overlapping_pairs(tiles)
        assert [(p.tile1.tile_id, p.tile2.tile_id) for p in pairs] == [
            (0, 1), (0, 2), (0, 3), (1, 2), (1, 3), (2, 3),
        ]

    def test_touching_tiles_do_not_overlap(self):
        a, b = blank_tiles([(0.0, 0.0), (0.0, 100.0)])
        assert not tiles_overlap(a, b)
        assert find_overlapping_pairs([a, b]) == []

    def test_timepoints_are_separate(self):
        tiles = blank_tiles([(0.0, 0.0)]) + blank_tiles([(0.0, 50.0)], timepoint=1)
        assert find_overlapping_pairs(tiles) == []

    def test_sequential(self):
        tiles = blank_tiles([(0.0, 500.0 * i) for i in range(4)])
        pairs = find_sequential_pairs(tiles, sequential_range=2)
        assert [(p.tile1.tile_id, p.tile2.tile_id) for p in pairs] == [(0, 1), (0, 2), (1, 2), (1, 3), (2, 3)]
        np.testing.assert_array_equal(pairs[0].relative_shift, [0.0, 500.0])

    def test_sequential_range_invalid(self):
        with pytest.raises(ValueError):
            find_sequential_pairs(blank_tiles([(0.0, 0.0)]), sequential_range=0)

    def test_mixed_dimensionality(self):
        tiles = blank_tiles([(0.0, 0.0)]) + [Tile(1, image=np.zeros((4, 4, 4)))]
        with pytest.raises(ValueError):
            find_overlapping_pairs(tiles)


class TestOverlapRoi:
    """Tests for overlap_roi function."""

    def test_side_by_side(self):
        a, b = blank_tiles([(0.0, 0.0), (0.0, 80.0)])
        roi1, roi2 = overlap_roi(a, b)
        assert roi1 == (slice(0, 100), slice(80, 100))
        assert roi2 == (slice(0, 100), slice(0, 20))

    def test_no_overlap_keeps_full_extent(self):
        a, b = blank_tiles([(0.0, 0.0), (0.0, 300.0)])
        roi1, roi2 = overlap_roi(a, b)
        assert roi1[1] == slice(0, 100)
        assert roi2[1] == slice(0, 100)


class TestRegisterPairs:
    """Tests for register_pairs function."""

    def test_recovers_true_shifts(self, strip):
        pairs = register_pairs(find_overlapping_pairs(strip), max_workers=2)
        assert len(pairs) == 2
        for pair in pairs:
            np.testing.assert_allclose(pair.relative_shift, [0.0, 60.0])
            assert pair.cross_correlation > 0.99
            assert pair.is_valid_overlap

    def test_without_roi(self, strip):
        (pair,) = register_pairs([ComparePair(strip[0], strip[1])], use_roi=False, max_workers=1)
        np.testing.assert_allclose(pair.relative_shift, [0.0, 60.0])

    def test_failure_marks_pair_invalid(self, strip, tmp_path):
        missing = Tile(9, path=tmp_path / "missing.tif", offset=(0.0, 70.0), dimensionality=2)
        bad = ComparePair(strip[0], missing)
        good = ComparePair(strip[0], strip[1])
        register_pairs([bad, good], max_workers=1)
        assert not bad.is_valid_overlap
        assert bad.cross_correlation == 0.0
        np.testing.assert_array_equal(bad.relative_shift, [0.0, 70.0])
        assert good.is_valid_overlap
        np.testing.assert_allclose(good.relative_shift, [0.0, 60.0])

    def test_cancelled(self, strip):
        event = threading.Event()
        event.set()
        with pytest.raises(Cancelled):
            register_pairs([ComparePair(strip[0], strip[1])], max_workers=1, cancel=event)
