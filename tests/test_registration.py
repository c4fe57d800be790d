"""Tests for tilestitch.registration module."""

import numpy as np
import pytest

from tilestitch.registration import (
    DEGENERATE_SSQ,
    compute_pairwise_candidates,
    expand_peak,
    find_peaks,
    phase_correlation,
    register_pair,
    score_shift,
    subpixel_offset,
)


@pytest.fixture
def shifted_pair():
    """Two 100x100 crops of one random image, the second 80 rows further down."""
    rng = np.random.default_rng(42)
    world = rng.random((180, 100)).astype(np.float32)
    return world[:100], world[80:]


class TestPhaseCorrelation:
    """Tests for phase_correlation function."""

    def test_peak_at_shift(self, shifted_pair):
        a, b = shifted_pair
        pcm = phase_correlation(a, b, damp_edges=False)
        assert pcm.shape == (100, 100)
        assert np.unravel_index(np.argmax(pcm), pcm.shape) == (80, 0)

    def test_dimensionality_mismatch(self):
        with pytest.raises(ValueError):
            phase_correlation(np.zeros((4, 4)), np.zeros((4, 4, 4)))


class TestFindPeaks:
    """Tests for find_peaks function."""

    def test_neighbourhood_wraps(self):
        pcm = np.zeros((8, 8))
        pcm[0, 0] = 1.0
        pcm[7, 7] = 0.9
        peaks = find_peaks(pcm, 64)
        assert peaks[0] == ((0, 0), 1.0)
        assert (7, 7) not in [p for p, _ in peaks]

    def test_top_k_sorted(self):
        pcm = np.zeros((10, 10))
        pcm[2, 2] = 0.5
        pcm[6, 6] = 0.8
        pcm[2, 7] = 0.3
        peaks = find_peaks(pcm, 3)
        assert [p for p, _ in peaks] == [(6, 6), (2, 2), (2, 7)]


class TestExpandPeak:
    """Tests for expand_peak function."""

    def test_2d(self):
        assert expand_peak((3, 0), (10, 10)) == [(3, 0), (-7, 0)]

    def test_3d_has_eight_candidates(self):
        candidates = expand_peak((1, 2, 3), (8, 8, 8))
        assert len(candidates) == 8
        assert (-7, -6, -5) in candidates


class TestScoreShift:
    """Tests for score_shift function."""

    def test_identical_overlap(self, shifted_pair):
        a, b = shifted_pair
        res = score_shift(a, b, (80, 0))
        assert res.r == pytest.approx(1.0)
        assert res.overlap == 2000
        assert res.ssq == pytest.approx(0.0)

    @pytest.mark.parametrize("shift", [(99, 0), (95, 0), (91, 3), (0, 99), (-99, -99), (150, 0)])
    def test_small_overlap_gives_zero(self, shifted_pair, shift):
        a, b = shifted_pair
        res = score_shift(a, b, shift, min_overlap_fraction=0.1)
        assert res.r == 0.0
        assert res.ssq == DEGENERATE_SSQ

    def test_zero_variance(self):
        a = np.full((20, 20), 5.0)
        b = np.random.default_rng(0).random((20, 20))
        assert score_shift(a, b, (0, 0)).r == 0.0
        assert score_shift(b, a, (3, 3)).r == 0.0

    def test_anticorrelated(self, shifted_pair):
        a, _ = shifted_pair
        assert score_shift(a, -a, (0, 0)).r == pytest.approx(-1.0)

    def test_r_bounded(self, shifted_pair):
        a, b = shifted_pair
        rng = np.random.default_rng(1)
        for shift in rng.integers(-90, 90, size=(20, 2)):
            assert -1.0 <= score_shift(a, b, shift).r <= 1.0


class TestSubpixel:
    """Tests for subpixel_offset function."""

    def test_parabola_fit(self):
        pcm = np.zeros((9, 9))
        pcm[4, 4] = 1.0
        pcm[4, 3] = 0.5
        pcm[4, 5] = 0.8
        pcm[3, 4] = 0.5
        pcm[5, 4] = 0.5
        offset = subpixel_offset(pcm, (4, 4))
        assert offset[0] == pytest.approx(0.0)
        assert offset[1] == pytest.approx(0.5 * (0.5 - 0.8) / (0.5 - 2.0 + 0.8))


class TestCandidates:
    """Tests for compute_pairwise_candidates function."""

    def test_true_shift_ranks_first(self, shifted_pair):
        a, b = shifted_pair
        results = compute_pairwise_candidates(a, b, peaks_to_test=5, damp_edges=False)
        best = results[0]
        np.testing.assert_allclose(best.shift, (80, 0), atol=1)
        assert best.r > 0.9
        assert [r.r for r in results] == sorted((r.r for r in results), reverse=True)

    def test_parallel_matches_sequential(self, shifted_pair):
        a, b = shifted_pair
        seq = compute_pairwise_candidates(a, b, damp_edges=False, max_workers=1)
        par = compute_pairwise_candidates(a, b, damp_edges=False, max_workers=4)
        assert [tuple(r.shift) for r in seq] == [tuple(r.shift) for r in par]
        assert [r.r for r in seq] == [r.r for r in par]

    def test_subpixel_stays_close(self, shifted_pair):
        a, b = shifted_pair
        best = compute_pairwise_candidates(a, b, damp_edges=False, subpixel=True)[0]
        np.testing.assert_allclose(best.shift, (80, 0), atol=0.5)


class TestRegisterPair:
    """Tests for register_pair function."""

    def test_full_images(self, shifted_pair):
        a, b = shifted_pair
        best = register_pair(a, b, damp_edges=False)
        np.testing.assert_allclose(best.shift, (80, 0), atol=1)
        assert best.r > 0.9

    def test_roi_offset_is_added(self, shifted_pair):
        a, b = shifted_pair
        roi1 = (slice(80, 100), slice(0, 100))
        roi2 = (slice(0, 20), slice(0, 100))
        best = register_pair(a, b, roi1, roi2)
        np.testing.assert_allclose(best.shift, (80, 0), atol=1)
        assert best.r > 0.9

    def test_downsample(self, shifted_pair):
        a, b = shifted_pair
        best = register_pair(a, b, damp_edges=False, downsample=2)
        np.testing.assert_allclose(best.shift, (80, 0), atol=2)
        assert best.r > 0.9

    def test_flat_images_are_degenerate(self):
        a = np.full((32, 32), 10.0)
        best = register_pair(a, a.copy())
        assert best.r == 0.0
