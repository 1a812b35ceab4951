"""
Tests for the stack module.

Tests cover:
- Weighted sigma-clipped mean (mono and RGB)
- Degenerate pixels: zero spread, emptied sample sets, zero weights
- Band partitioning and spilled frame stores
- Frame weights and stack statistics
"""

import numpy as np
import pytest

from luckystack.cache import AlignedFrameStore
from luckystack.errors import PipelineCancelled, StackingError
from luckystack.progress import CancellationToken
from luckystack.stack import (
    FrameStacker,
    StackAccumulator,
    compute_stack_statistics,
    frame_weight,
    sigma_clip_band,
    sigma_clip_mean,
)


class TestSigmaClipMean:
    """Tests for sigma-clipped mean stacking."""

    def test_identical_frames(self):
        """Identical frames stack to themselves with every sample accepted."""
        frames = [np.full((10, 10), 0.4, dtype=np.float32) for _ in range(3)]
        stacked, accepted = sigma_clip_mean(frames, sigma=3.0, iterations=5)

        assert stacked.shape == (10, 10)
        assert stacked.dtype == np.float32
        assert np.allclose(stacked, 0.4)
        assert accepted == pytest.approx(1.0)

    def test_outlier_rejected(self):
        """A single bright sample is clipped away."""
        frames = [np.full((4, 4), v, dtype=np.float32) for v in (10, 10, 10, 10, 200)]
        stacked, accepted = sigma_clip_mean(frames, sigma=1.5, iterations=2)

        assert np.allclose(stacked, 10.0)
        assert accepted == pytest.approx(0.8)

    def test_sample_on_bound_is_kept(self):
        """A sample exactly at mean + k*std stays in the set."""
        # mean = 1, std = 2, so the upper bound at k = 2 is exactly 5
        frames = [np.full((3, 3), v, dtype=np.float32) for v in (0, 0, 0, 0, 5)]
        stacked, accepted = sigma_clip_mean(frames, sigma=2.0, iterations=1)

        assert np.allclose(stacked, 1.0)
        assert accepted == pytest.approx(1.0)

    def test_two_level_pixel_never_empties(self):
        """Bounds that would reject every sample keep the previous set."""
        frames = [np.zeros((6, 6), dtype=np.float32), np.ones((6, 6), dtype=np.float32)]
        stacked, accepted = sigma_clip_mean(frames, sigma=0.5, iterations=3)

        assert not np.any(np.isnan(stacked))
        assert np.allclose(stacked, 0.5)
        assert accepted == pytest.approx(1.0)

    def test_no_iterations_is_weighted_mean(self, rng):
        frames = rng.uniform(0, 1, (5, 8, 8)).astype(np.float32)
        stacked, _ = sigma_clip_mean(frames, sigma=0.1, iterations=0)
        assert np.allclose(stacked, frames.mean(axis=0), atol=1e-6)

    def test_weights(self):
        frames = [np.zeros((4, 4), dtype=np.float32), np.ones((4, 4), dtype=np.float32)]
        stacked, _ = sigma_clip_mean(frames, weights=[3.0, 1.0])
        assert np.allclose(stacked, 0.25)

    def test_all_zero_weights_fall_back_to_uniform(self):
        frames = [np.zeros((4, 4), dtype=np.float32), np.ones((4, 4), dtype=np.float32)]
        stacked, _ = sigma_clip_mean(frames, weights=[0.0, 0.0])
        assert np.allclose(stacked, 0.5)

    def test_empty_list_raises(self):
        """Empty frame list should raise StackingError."""
        with pytest.raises(StackingError, match="Empty frame list"):
            sigma_clip_mean([])

    def test_single_frame(self, rng):
        """Single frame should return itself."""
        frame = rng.uniform(0, 1, (10, 10)).astype(np.float32)
        stacked, accepted = sigma_clip_mean([frame], sigma=3.0, iterations=5)

        assert np.allclose(stacked, frame)
        assert accepted == pytest.approx(1.0)

    def test_preserves_spatial_structure(self, rng):
        """Spatial structure should be preserved after stacking."""
        gradient = np.arange(100).reshape(10, 10).astype(np.float32) / 100.0
        frames = [gradient + rng.normal(0, 0.001, (10, 10)).astype(np.float32) for _ in range(10)]

        stacked, _ = sigma_clip_mean(frames, sigma=3.0, iterations=2)

        assert np.allclose(stacked, gradient, atol=0.005)

    def test_rgb_stacking(self, rng):
        """RGB frames are clipped per channel."""
        base = rng.uniform(0.2, 0.8, (12, 12, 3)).astype(np.float32)
        frames = [base.copy() for _ in range(6)]
        frames[2][:, :, 1] = 1.0  # Outlier in green only

        stacked, _ = sigma_clip_mean(frames, sigma=2.0, iterations=2)

        assert stacked.shape == (12, 12, 3)
        assert np.allclose(stacked, base, atol=1e-6)

    def test_band_partition_invariance(self, rng):
        """The result does not depend on the band height or the worker count."""
        frames = rng.uniform(0, 1, (9, 37, 21)).astype(np.float32)
        frames[4, 10:20, 5:9] = 5.0

        reference, ref_accepted = sigma_clip_mean(frames, band_rows=37, workers=1)
        for band_rows, workers in ((1, 4), (5, 2), (16, 3)):
            stacked, accepted = sigma_clip_mean(frames, band_rows=band_rows, workers=workers)
            assert np.allclose(stacked, reference, atol=1e-6)
            assert accepted == pytest.approx(ref_accepted)

    def test_frame_order_independence(self, rng):
        frames = rng.uniform(0, 1, (7, 16, 16)).astype(np.float32)
        weights = rng.uniform(0.1, 1.0, 7)
        order = rng.permutation(7)

        a, _ = sigma_clip_mean(frames, weights=weights)
        b, _ = sigma_clip_mean(frames[order], weights=weights[order])

        assert np.allclose(a, b, atol=1e-5)


class TestFrameStacker:
    """Tests for FrameStacker on aligned stores."""

    def test_spilled_store_matches_resident(self, rng, tmp_path):
        frames = rng.uniform(0, 1, (6, 20, 20)).astype(np.float32)
        weights = {i: float(w) for i, w in enumerate(rng.uniform(0.1, 1.0, 6))}
        stacker = FrameStacker(sigma=2.0, iterations=2, band_rows=7, workers=2)

        with AlignedFrameStore(max_resident=6) as resident:
            for i, f in enumerate(frames):
                resident.put(i, f)
            expected, _ = stacker.stack(resident, weights)

        with AlignedFrameStore(max_resident=1, spill_dir=tmp_path) as spilled:
            for i, f in enumerate(frames):
                spilled.put(i, f)
            assert spilled.n_spilled == 5
            result, _ = stacker.stack(spilled, weights)

        assert np.allclose(result, expected)

    def test_empty_store_raises(self):
        with AlignedFrameStore() as store:
            with pytest.raises(StackingError, match="No frames"):
                FrameStacker().stack(store)

    def test_cancelled_token(self, rng):
        token = CancellationToken()
        token.cancel()
        with AlignedFrameStore() as store:
            store.put(0, rng.uniform(0, 1, (8, 8)))
            store.put(1, rng.uniform(0, 1, (8, 8)))
            with pytest.raises(PipelineCancelled):
                FrameStacker(workers=1).stack(store, token=token)


class TestSigmaClipBand:
    """Tests for the single-band clipping pass."""

    def test_band_of_store(self, rng):
        frames = rng.uniform(0, 1, (4, 10, 6)).astype(np.float32)
        with AlignedFrameStore() as store:
            for i, f in enumerate(frames):
                store.put(i, f)
            mean, count = sigma_clip_band(store, {i: 1.0 for i in range(4)}, slice(2, 5), iterations=0)

        assert mean.shape == (3, 6)
        assert np.allclose(mean, frames[:, 2:5].mean(axis=0), atol=1e-6)
        assert np.all(count == 4)

    def test_no_weighted_frames_raises(self, rng):
        with AlignedFrameStore() as store:
            store.put(0, rng.uniform(0, 1, (4, 4)))
            store.put(1, rng.uniform(0, 1, (4, 4)))
            with pytest.raises(StackingError, match="No weighted frames"):
                sigma_clip_band(store, {0: 0.0}, slice(0, 4))


class TestStackAccumulator:
    """Tests for the running weighted sums."""

    def test_weighted_moments(self):
        acc = StackAccumulator((1, 2))
        acc.add(np.array([[0.0, 2.0]]), 1.0)
        acc.add(np.array([[4.0, 2.0]]), 3.0)

        assert np.allclose(acc.mean(), [[3.0, 2.0]])
        assert np.allclose(acc.std(), [[np.sqrt(3.0), 0.0]])
        assert acc.count.tolist() == [[2, 2]]

    def test_rejected_samples_ignored(self):
        acc = StackAccumulator((1, 2))
        acc.add(np.array([[1.0, 1.0]]), 1.0)
        acc.add(np.array([[9.0, 9.0]]), 1.0, accept=np.array([[False, True]]))

        assert np.allclose(acc.mean(), [[1.0, 5.0]])
        assert acc.count.tolist() == [[1, 2]]

    def test_empty_pixels_are_zero(self):
        acc = StackAccumulator((2, 2))
        assert np.all(acc.mean() == 0)
        assert np.all(acc.std() == 0)


class TestFrameWeight:
    """Tests for stacking weights."""

    def test_bounds(self):
        assert frame_weight(1.0, 1.0) == pytest.approx(1.0)
        assert frame_weight(0.0, 0.0) == pytest.approx(0.01)

    def test_monotonic(self):
        assert frame_weight(0.8, 0.5) > frame_weight(0.4, 0.5)
        assert frame_weight(0.5, 0.8) > frame_weight(0.5, 0.4)

    def test_inputs_clipped(self):
        assert frame_weight(1.7, -0.3) == frame_weight(1.0, 0.0)


class TestStackStatistics:
    """Tests for stack statistics."""

    def test_basic_statistics(self, rng):
        """Statistics are computed from the stacked image."""
        stacked = rng.normal(0.5, 0.02, (50, 50)).astype(np.float32)
        stats = compute_stack_statistics(stacked, accepted_fraction=0.9, n_frames=40)

        assert stats.n_frames == 40
        assert stats.accepted_fraction == pytest.approx(0.9)
        assert stats.rejected_fraction == pytest.approx(0.1)
        assert 20 < stats.snr_proxy < 30

    def test_flat_image(self):
        stats = compute_stack_statistics(np.full((5, 5), 0.3), 1.0, 3)
        assert stats.snr_proxy == 0.0
