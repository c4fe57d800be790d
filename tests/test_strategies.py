"""Tests for tilestitch.strategies module."""

import numpy as np
import pytest

from tilestitch.strategies import (
    FusionMethod,
    blend_weight,
    make_strategy,
)

LOCAL = [np.array([0.0]), np.array([0.0, 1.0])]


def combine(method, samples, ignore_zero=False, **kwargs):
    strategy = make_strategy(method, ignore_zero=ignore_zero, **kwargs)
    strategy.clear((1, len(samples[0])))
    for tile_id, values in enumerate(samples):
        strategy.add(np.array([values], dtype=np.float64), tile_id, LOCAL)
    return strategy.value()[0]


class TestFusionMethod:
    """Tests for FusionMethod.parse."""

    def test_names_and_ids(self):
        assert FusionMethod.parse("Average") is FusionMethod.AVERAGE
        assert FusionMethod.parse("linear blending") is FusionMethod.BLEND
        assert FusionMethod.parse(2) is FusionMethod.MEDIAN
        assert FusionMethod.parse(FusionMethod.MAX) is FusionMethod.MAX

    @pytest.mark.parametrize("value", ["bogus", 9, None, 1.5])
    def test_unknown_raises(self, value):
        with pytest.raises(ValueError):
            FusionMethod.parse(value)

    def test_blend_needs_shapes(self):
        with pytest.raises(ValueError):
            make_strategy("blend")


class TestAverage:
    """Tests for the average strategy."""

    def test_mean(self):
        np.testing.assert_allclose(combine("average", [[1, 2], [3, 0]]), [2, 1])

    def test_ignore_zero(self):
        np.testing.assert_allclose(combine("average", [[1, 2], [3, 0]], ignore_zero=True), [2, 2])

    def test_all_ignored_is_zero(self):
        np.testing.assert_allclose(combine("average", [[0, 0]], ignore_zero=True), [0, 0])


class TestMedian:
    """Tests for the median strategy."""

    def test_odd_count(self):
        np.testing.assert_allclose(combine("median", [[1, 7], [5, 8], [3, 9]]), [3, 8])

    def test_even_count_averages_middles(self):
        np.testing.assert_allclose(combine("median", [[1, 1], [2, 2], [3, 3], [10, 4]]), [2.5, 2.5])

    def test_ignore_zero(self):
        np.testing.assert_allclose(combine("median", [[0, 0], [4, 0]], ignore_zero=True), [4, 0])


class TestExtremum:
    """Tests for the min and max strategies."""

    def test_max_seeded_by_first_sample(self):
        np.testing.assert_allclose(combine("max", [[-3, -8], [-2, -9]]), [-2, -8])

    def test_min_seeded_by_first_sample(self):
        np.testing.assert_allclose(combine("min", [[-1, 4], [-5, 6]]), [-5, 4])

    def test_min_ignore_zero(self):
        np.testing.assert_allclose(combine("min", [[0, 3], [2, 0]], ignore_zero=True), [2, 3])


class TestOverlap:
    """Tests for OverlapPixelFusion."""

    def test_last_wins(self):
        np.testing.assert_allclose(combine("overlap", [[1, 2], [3, 0], [5, 6]]), [5, 6])

    def test_zero_sample_still_wins_with_ignore_zero(self):
        np.testing.assert_allclose(combine("overlap", [[5, 5], [0, 0]], ignore_zero=True), [0, 0])


class TestBlend:
    """Tests for blend_weight and BlendingPixelFusion."""

    SHAPES = {0: (100, 100), 1: (100, 100)}

    def test_weights_in_range(self):
        w = blend_weight([np.arange(100.0), np.arange(100.0)], (100, 100), 0.2)
        assert w.min() >= 1e-5
        assert w.max() == 1.0
        assert w[50, 50] == 1.0
        assert w[0, 50] < w[5, 50] < w[20, 50]

    def test_profile_is_symmetric(self):
        x = np.arange(100.0)
        w = blend_weight([np.array([50.0]), x], (100, 100), 0.2)[0]
        np.testing.assert_allclose(w, w[::-1])
        assert w[1] == w[98] < w[10] == 1.0

    def test_blend_area_scales_full_size(self):
        w = blend_weight([np.array([5.0]), np.array([4.0, 5.0])], (11, 11), 1.0)[0]
        assert w[1] == 1.0
        assert w[0] < 1.0

    def test_equal_values(self):
        strategy = make_strategy("blend", tile_shapes=self.SHAPES)
        strategy.clear((1, 1))
        strategy.add(np.array([[7.0]]), 0, [np.array([50.0]), np.array([3.0])])
        strategy.add(np.array([[7.0]]), 1, [np.array([50.0]), np.array([96.0])])
        np.testing.assert_allclose(strategy.value(), [[7.0]])

    def test_border_sample_weighs_less(self):
        strategy = make_strategy("blend", tile_shapes=self.SHAPES)
        strategy.clear((1, 1))
        strategy.add(np.array([[10.0]]), 0, [np.array([50.0]), np.array([50.0])])
        strategy.add(np.array([[0.0]]), 1, [np.array([50.0]), np.array([0.0])])
        value = strategy.value()[0, 0]
        assert 9.5 < value < 10.0

    def test_ignore_zero(self):
        strategy = make_strategy("blend", ignore_zero=True, tile_shapes=self.SHAPES)
        strategy.clear((1, 1))
        strategy.add(np.array([[10.0]]), 0, [np.array([50.0]), np.array([0.0])])
        strategy.add(np.array([[0.0]]), 1, [np.array([50.0]), np.array([50.0])])
        np.testing.assert_allclose(strategy.value(), [[10.0]])

    def test_fresh_instances_do_not_share_state(self):
        a = make_strategy("average")
        b = make_strategy("average")
        a.clear((1,))
        b.clear((1,))
        a.add(np.array([4.0]), 0, [np.array([0.0])])
        assert b.value()[0] == 0.0
