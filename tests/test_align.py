"""
Tests for the align module.

Tests cover:
- Phase correlation accuracy and confidence
- Frame resampling
- GlobalAligner low-confidence and failure handling
- Reference frame selection
- Chunked alignment into the aligned store
"""

import numpy as np
import pytest
from scipy import ndimage

from luckystack.align import (
    AlignmentResult,
    GlobalAligner,
    align_frames,
    parabolic_offset,
    phase_correlate,
    select_reference_frame,
    shift_image,
)
from luckystack.cache import AlignedFrameStore
from luckystack.config import DiagnosticReason
from luckystack.errors import AlignmentFailure, FrameDecodeError
from luckystack.frame import Frame
from luckystack.io import ArrayFrameSource
from luckystack.quality import QualityRecord


def fourier_translate(image, dy, dx):
    """Periodic sub-pixel translation: result(y, x) = image(y - dy, x - dx)."""
    spectrum = ndimage.fourier_shift(np.fft.fft2(image), (dy, dx))
    return np.fft.ifft2(spectrum).real.astype(np.float32)


class TestParabolicOffset:
    """Tests for sub-sample peak refinement."""

    def test_symmetric_peak(self):
        assert parabolic_offset(0.5, 1.0, 0.5) == 0.0

    def test_offset_towards_larger_neighbour(self):
        assert parabolic_offset(0.2, 1.0, 0.8) > 0
        assert parabolic_offset(0.8, 1.0, 0.2) < 0

    def test_limited_to_half_sample(self):
        assert abs(parabolic_offset(0.0, 1.0, 0.999)) <= 0.5

    def test_not_a_maximum(self):
        """Flat or convex samples give no refinement."""
        assert parabolic_offset(1.0, 1.0, 1.0) == 0.0
        assert parabolic_offset(1.0, 0.0, 1.0) == 0.0


class TestPhaseCorrelate:
    """Tests for phase correlation."""

    def test_recovers_subpixel_shift(self, textured_image):
        """A (3.7, -2.2) px displacement is recovered within 0.2 px."""
        ref = textured_image(periodic=True)
        target = fourier_translate(ref, dy=-2.2, dx=3.7)

        dx, dy, confidence = phase_correlate(ref, target)

        assert abs(dx - 3.7) < 0.2
        assert abs(dy - (-2.2)) < 0.2
        assert confidence > 0.5

    def test_integer_circular_shift(self, textured_image):
        """Integer circular shifts give an exact peak."""
        ref = textured_image(periodic=True)
        target = np.roll(ref, (5, -3), axis=(0, 1))

        dx, dy, confidence = phase_correlate(ref, target)

        assert dx == pytest.approx(-3.0, abs=0.05)
        assert dy == pytest.approx(5.0, abs=0.05)
        assert confidence > 0.95

    def test_identical_images(self, textured_image):
        ref = textured_image()
        dx, dy, confidence = phase_correlate(ref, ref)
        assert dx == pytest.approx(0.0, abs=1e-6)
        assert dy == pytest.approx(0.0, abs=1e-6)
        assert confidence == pytest.approx(1.0, abs=1e-6)

    def test_unrelated_images_low_confidence(self, textured_image):
        a = textured_image(seed=1)
        b = textured_image(seed=2)
        _, _, confidence = phase_correlate(a, b)
        assert confidence < 0.1

    def test_shape_mismatch_raises(self):
        with pytest.raises(ValueError):
            phase_correlate(np.zeros((8, 8)), np.zeros((8, 9)))


class TestShiftImage:
    """Tests for image translation."""

    def test_integer_shift_moves_content(self):
        image = np.zeros((20, 20), dtype=np.float32)
        image[10, 10] = 1.0
        shifted = shift_image(image, dx=2, dy=-3)
        assert np.unravel_index(np.argmax(shifted), shifted.shape) == (7, 12)

    def test_color_channels_shifted_together(self, textured_image):
        mono = textured_image(64, 64)
        rgb = np.stack([mono, mono, mono], axis=-1)
        shifted = shift_image(rgb, dx=1.5, dy=0.5)
        assert shifted.shape == rgb.shape
        assert np.allclose(shifted[:, :, 0], shifted[:, :, 2])
        assert np.allclose(shifted[:, :, 0], shift_image(mono, 1.5, 0.5), atol=1e-6)


class TestGlobalAligner:
    """Tests for GlobalAligner."""

    def test_align_restores_reference(self, textured_image):
        ref = textured_image(periodic=True)
        target = fourier_translate(ref, dy=1.6, dx=-2.4)
        frame = Frame(target, index=3)

        aligned, result = GlobalAligner().align(ref, frame)

        assert isinstance(result, AlignmentResult)
        assert result.frame_index == 3
        assert not result.low_confidence
        assert result.dx == pytest.approx(-2.4, abs=0.2)
        assert result.dy == pytest.approx(1.6, abs=0.2)

        inner = (slice(16, -16), slice(16, -16))
        before = np.mean(np.abs(target[inner] - ref[inner]))
        after = np.mean(np.abs(aligned.data[inner] - ref[inner]))
        assert after < 0.25 * before

    def test_low_confidence_kept_unshifted(self, textured_image):
        ref = textured_image(seed=1)
        frame = Frame(textured_image(seed=2), index=5)

        aligned, result = GlobalAligner(min_confidence=0.1).align(ref, frame)

        assert result.low_confidence
        assert result.confidence == 0.0
        assert result.shift == (0.0, 0.0)
        assert np.array_equal(aligned.data, frame.data)

    def test_shape_mismatch_raises(self, textured_image):
        ref = textured_image(64, 64)
        frame = Frame(textured_image(64, 48), index=1)
        with pytest.raises(AlignmentFailure):
            GlobalAligner().align(ref, frame)

    def test_roi_restricted_correlation(self, textured_image):
        ref = textured_image(periodic=True)
        target = np.roll(ref, (2, 3), axis=(0, 1))
        from luckystack.frame import Rect

        dx, dy, _ = GlobalAligner().estimate(ref, target, Rect(32, 32, 64, 64))
        assert dx == pytest.approx(3.0, abs=0.3)
        assert dy == pytest.approx(2.0, abs=0.3)


class TestSelectReferenceFrame:
    """Tests for reference frame selection."""

    def test_best_selected_frame(self):
        records = [
            QualityRecord(0, 1.0, 0.2),
            QualityRecord(1, 1.0, 0.9),
            QualityRecord(2, 1.0, 0.95),
            QualityRecord(3, 1.0, 0.5),
        ]
        # Frame 2 scores best overall but is not selected
        assert select_reference_frame(records, [0, 1, 3]) == 1

    def test_tie_uses_lowest_index(self):
        records = [QualityRecord(i, 1.0, 0.7) for i in range(4)]
        assert select_reference_frame(records, [3, 2, 1]) == 1

    def test_empty_selection_raises(self):
        with pytest.raises(ValueError):
            select_reference_frame([], [])


class FailingSource(ArrayFrameSource):
    """Array source whose listed frames cannot be decoded."""

    def __init__(self, frames, bad):
        super().__init__(frames)
        self.bad = set(bad)

    def get_frame(self, index):
        if index in self.bad:
            raise FrameDecodeError(index, "corrupt")
        return super().get_frame(index)


class TestAlignFrames:
    """Tests for chunked alignment into the store."""

    def test_frames_stored_and_failures_recorded(self, textured_image):
        ref = textured_image(periodic=True)
        frames = [ref] + [np.roll(ref, (k, -k), axis=(0, 1)) for k in range(1, 6)]
        source = FailingSource(frames, bad=[4])
        reference = source.get_frame(0)
        diagnostics = []

        with AlignedFrameStore(max_resident=8) as store:
            results = align_frames(
                source, list(range(6)), reference, store,
                workers=2, chunk_size=2, diagnostics=diagnostics,
            )

            assert sorted(results) == [0, 1, 2, 3, 5]
            assert store.indices() == [0, 1, 2, 3, 5]
            assert results[0].confidence == 1.0
            assert results[3].dy == pytest.approx(3.0, abs=0.05)
            assert results[3].dx == pytest.approx(-3.0, abs=0.05)
            assert np.allclose(store.get(3)[16:-16, 16:-16], ref[16:-16, 16:-16], atol=1e-3)

        assert [d.frame_index for d in diagnostics] == [4]
        assert diagnostics[0].reason is DiagnosticReason.DECODE_FAILED
