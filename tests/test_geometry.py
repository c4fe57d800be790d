"""Tests for tilestitch.geometry module."""

import numpy as np
import pytest

from tilestitch.geometry import (
    ClassifiedRegion,
    Interval,
    decompose,
    iter_positions,
    split_regions,
)


def region(bounds, classes=()):
    return ClassifiedRegion([Interval(a, b) for a, b in bounds], classes)


class TestInterval:
    """Tests for Interval."""

    def test_length(self):
        assert Interval(3, 7).length == 5
        assert Interval(4, 4).length == 1

    def test_bordering_intervals_intersect(self):
        assert Interval(0, 10).intersects(Interval(10, 20))
        assert Interval(10, 20).intersects(Interval(0, 10))

    def test_disjoint_intervals(self):
        assert not Interval(0, 9).intersects(Interval(10, 20))

    def test_contained_interval_intersects(self):
        assert Interval(0, 20).intersects(Interval(5, 6))
        assert Interval(5, 6).intersects(Interval(0, 20))
        assert Interval(0, 20).contains(Interval(5, 6))
        assert not Interval(5, 6).contains(Interval(0, 20))

    def test_mutable_endpoints(self):
        iv = Interval(0, 5)
        iv.max = 9
        assert iv.length == 10


class TestClassifiedRegion:
    """Tests for ClassifiedRegion."""

    def test_set_out_of_range_raises(self):
        r = region([(0, 1), (0, 1)])
        with pytest.raises(IndexError):
            r.set_interval(2, Interval(0, 1))
        with pytest.raises(IndexError):
            r[-1]

    def test_set_interval_copies(self):
        r = region([(0, 1), (0, 1)])
        iv = Interval(3, 8)
        r.set_interval(1, iv)
        iv.max = 100
        assert r[1] == Interval(3, 8)

    def test_intersects_inclusive(self):
        a = region([(0, 10), (0, 10)])
        assert a.intersects(region([(10, 20), (10, 20)]))
        assert a.intersects(region([(2, 3), (2, 3)]))
        assert not a.intersects(region([(11, 20), (0, 10)]))

    def test_shape_volume_slices(self):
        r = region([(2, 4), (5, 9)], classes=[3, 1, 3])
        assert r.shape == (3, 5)
        assert r.volume == 15
        assert r.classes == (1, 3)
        assert r.slices() == (slice(2, 5), slice(5, 10))
        assert r.slices((2, 5)) == (slice(0, 3), slice(0, 5))


class TestIterPositions:
    """Tests for the N-dimensional odometer iterator."""

    def test_row_major_2d(self):
        assert list(iter_positions((2, 3))) == [
            (0, 0), (0, 1), (0, 2), (1, 0), (1, 1), (1, 2)
        ]

    def test_3d_count_and_order(self):
        positions = list(iter_positions((2, 3, 4)))
        assert len(positions) == 24
        assert positions == sorted(positions)
        assert len(set(positions)) == 24

    def test_start_offset(self):
        assert list(iter_positions((1, 2), start=(5, 7))) == [(5, 7), (5, 8)]

    def test_empty(self):
        assert list(iter_positions((0, 3))) == []
        assert list(iter_positions(())) == []


class TestDecompose:
    """Tests for the region decomposition."""

    def test_split_classifies_pieces(self):
        query = region([(0, 9), (0, 9)], [0])
        placed = region([(5, 14), (0, 9)], [1])
        query_only, settled = split_regions(query, placed)
        assert [r.classes for r in query_only] == [(0,)]
        assert query_only[0].shape == (5, 10)
        assert sorted(r.classes for r in settled) == [(0, 1), (1,)]

    def test_two_overlapping_tiles(self):
        out = decompose([region([(0, 9), (0, 9)], [0]), region([(5, 14), (0, 9)], [1])])
        assert sum(r.volume for r in out) == 150
        both = [r for r in out if r.classes == (0, 1)]
        assert len(both) == 1
        assert both[0].intervals == (Interval(5, 9), Interval(0, 9))

    def test_single_region_unchanged(self):
        r = region([(0, 19), (0, 29)], [0])
        assert decompose([r]) == [r]

    def test_contained_region(self):
        out = decompose([region([(0, 9), (0, 9)], [0]), region([(3, 4), (3, 4)], [1])])
        inner = [r for r in out if r.classes == (0, 1)]
        assert len(inner) == 1 and inner[0].volume == 4
        assert sum(r.volume for r in out) == 100

    def test_mixed_dimensionality_raises(self):
        with pytest.raises(ValueError):
            decompose([region([(0, 1), (0, 1)], [0]), region([(0, 1), (0, 1), (0, 1)], [1])])

    @pytest.mark.parametrize("ndim,seed", [(2, 0), (2, 1), (2, 2), (3, 3), (3, 4)])
    def test_partition_property(self, ndim, seed):
        rng = np.random.default_rng(seed)
        size = (40,) * ndim
        raw = []
        masks = []
        for i in range(6):
            lo = rng.integers(0, 25, ndim)
            hi = lo + rng.integers(0, 14, ndim)
            raw.append(region(list(zip(lo, hi)), [i]))
            mask = np.zeros(size, dtype=bool)
            mask[tuple(slice(a, b + 1) for a, b in zip(lo, hi))] = True
            masks.append(mask)

        out = decompose(raw)
        cover = np.zeros(size, dtype=int)
        for r in out:
            cover[r.slices()] += 1
            for i, mask in enumerate(masks):
                inside = mask[r.slices()]
                if i in r.classes:
                    assert inside.all()
                else:
                    assert not inside.any()

        union = np.any(masks, axis=0)
        assert np.all(cover[union] == 1)
        assert np.all(cover[~union] == 0)
