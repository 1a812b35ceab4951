"""
Global frame registration for lucky imaging.

Uses phase correlation (normalized cross-power spectrum) to recover the
whole-frame translation between a frame and the reference with sub-pixel
accuracy, then resamples the frame with a cubic spline kernel.

Failures are explicit: a frame whose correlation peak is too weak is kept
unshifted and flagged low-confidence, a frame that cannot be processed at
all raises AlignmentFailure and is excluded by the caller.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from typing import TYPE_CHECKING, Sequence

import numpy as np
from scipy import ndimage

from .config import Diagnostic, DiagnosticReason
from .errors import AlignmentFailure, FrameDecodeError
from .frame import Frame, Rect
from .io import FrameSource
from .progress import CancellationToken, ProgressReporter
from .utils import resolve_workers

if TYPE_CHECKING:
    from .cache import AlignedFrameStore
    from .local_align import WarpField

logger = logging.getLogger(__name__)

# Guards the normalization of spectral bins with no energy
_SPECTRUM_EPS = 1e-12


@dataclass
class AlignmentResult:
    """Registration outcome for a single frame."""

    frame_index: int
    dx: float = 0.0  # Displacement of the frame relative to the reference (columns)
    dy: float = 0.0  # Displacement of the frame relative to the reference (rows)
    confidence: float = 0.0  # Normalized correlation peak in [0, 1]
    low_confidence: bool = False  # Kept unshifted because the peak was too weak
    warp_field: WarpField | None = None  # Set when local alignment was applied
    local_applied: bool = False
    valid_tile_fraction: float | None = None

    @property
    def shift(self) -> tuple[float, float]:
        """(dx, dy) translation."""
        return self.dx, self.dy


def parabolic_offset(left: float, center: float, right: float) -> float:
    """
    Sub-sample position of a peak from three equally spaced samples.

    Returns the vertex offset of the parabola through the samples, relative
    to the centre sample, limited to [-0.5, 0.5]. Zero when the samples do
    not describe a maximum.
    """
    denom = left - 2.0 * center + right
    if denom >= 0 or not np.isfinite(denom):
        return 0.0
    offset = 0.5 * (left - right) / denom
    return float(np.clip(offset, -0.5, 0.5))


def phase_correlate(
    reference: np.ndarray,
    target: np.ndarray,
) -> tuple[float, float, float]:
    """
    Estimate the translation of ``target`` relative to ``reference``.

    Parameters
    ----------
    reference : np.ndarray
        2D reference luminance.
    target : np.ndarray
        2D target luminance, same shape.

    Returns
    -------
    tuple[float, float, float]
        (dx, dy, confidence) such that ``target(y, x) ~ reference(y - dy, x - dx)``.
        ``confidence`` is the height of the normalized correlation peak,
        clipped to [0, 1] (1.0 for a perfect integer circular shift).

    Notes
    -----
    The normalized cross-power spectrum ``F1 conj(F2) / |F1 conj(F2)|`` of two
    real images is Hermitian, so its inverse transform is real and the peak
    is located on the real part. The peak is refined independently along
    rows and columns by a parabola through the 3x3 neighbourhood.
    """
    ref = np.asarray(reference, dtype=np.float64)
    tgt = np.asarray(target, dtype=np.float64)
    if ref.shape != tgt.shape or ref.ndim != 2:
        raise ValueError(f"Expected two 2D images of equal shape, got {ref.shape} and {tgt.shape}")

    cross = np.fft.fft2(ref) * np.conj(np.fft.fft2(tgt))
    cross /= np.maximum(np.abs(cross), _SPECTRUM_EPS)
    surface = np.fft.ifft2(cross).real

    h, w = surface.shape
    py, px = np.unravel_index(int(np.argmax(surface)), surface.shape)
    peak = float(surface[py, px])

    sub_y = parabolic_offset(surface[(py - 1) % h, px], peak, surface[(py + 1) % h, px])
    sub_x = parabolic_offset(surface[py, (px - 1) % w], peak, surface[py, (px + 1) % w])

    peak_y = py + sub_y
    peak_x = px + sub_x
    if peak_y > h / 2:
        peak_y -= h
    if peak_x > w / 2:
        peak_x -= w

    # The peak sits at minus the displacement of the target
    return -float(peak_x), -float(peak_y), float(np.clip(peak, 0.0, 1.0))


def shift_image(image: np.ndarray, dx: float, dy: float, order: int = 3) -> np.ndarray:
    """
    Translate an image by (dx, dy) with spline resampling.

    Parameters
    ----------
    image : np.ndarray
        (H, W) or (H, W, C) image.
    dx, dy : float
        Translation in pixels (positive moves content right/down).
    order : int, default 3
        Spline order (3 = bicubic spline).

    Returns
    -------
    np.ndarray
        Shifted float32 image; borders are filled by reflection.
    """
    data = np.asarray(image, dtype=np.float32)
    shift = (dy, dx) if data.ndim == 2 else (dy, dx, 0.0)
    return ndimage.shift(data, shift, order=order, mode="reflect").astype(np.float32)


class GlobalAligner:
    """
    Whole-frame translational registration by phase correlation.

    Parameters
    ----------
    min_confidence : float, default 0.1
        Peaks below this are treated as failed correlations: the frame is
        kept with shift (0, 0), confidence 0 and ``low_confidence=True``.
    order : int, default 3
        Spline order used to resample the frame.
    """

    def __init__(self, min_confidence: float = 0.1, order: int = 3):
        self.min_confidence = min_confidence
        self.order = order

    def estimate(
        self,
        reference_lum: np.ndarray,
        target_lum: np.ndarray,
        roi: Rect | None = None,
    ) -> tuple[float, float, float]:
        """Phase correlation restricted to ``roi`` when given."""
        if roi is not None:
            roi = roi.clip_to(reference_lum.shape)
            if roi.width >= 8 and roi.height >= 8:
                reference_lum = reference_lum[roi.slices]
                target_lum = target_lum[roi.slices]
        return phase_correlate(reference_lum, target_lum)

    def align(
        self,
        reference_lum: np.ndarray,
        frame: Frame,
        roi: Rect | None = None,
    ) -> tuple[Frame, AlignmentResult]:
        """
        Register one frame against the reference luminance.

        Returns
        -------
        tuple[Frame, AlignmentResult]
            The resampled frame and the registration record.

        Raises
        ------
        AlignmentFailure
            If the frame geometry does not match the reference or the
            correlation cannot be computed.
        """
        if frame.shape[:2] != reference_lum.shape:
            raise AlignmentFailure(
                frame.index,
                f"frame is {frame.shape[:2]}, reference is {reference_lum.shape}",
            )

        try:
            dx, dy, confidence = self.estimate(reference_lum, frame.luminance(), roi)
        except (ValueError, FloatingPointError) as e:
            raise AlignmentFailure(frame.index, str(e)) from e

        if not np.isfinite([dx, dy, confidence]).all() or confidence < self.min_confidence:
            logger.debug(
                "Low-confidence correlation for frame %d (peak %.3f), keeping it unshifted",
                frame.index,
                confidence,
            )
            return frame, AlignmentResult(frame.index, 0.0, 0.0, 0.0, low_confidence=True)

        aligned = frame.with_data(shift_image(frame.data, -dx, -dy, order=self.order))
        return aligned, AlignmentResult(frame.index, dx, dy, confidence)


def select_reference_frame(records: Sequence, selected: Sequence[int]) -> int:
    """
    Pick the best-scoring selected frame as alignment reference.

    Parameters
    ----------
    records : sequence of QualityRecord
        Scores of the analysis run.
    selected : sequence of int
        Selected frame indices.

    Returns
    -------
    int
        Frame index of the reference (ties broken by lowest index).
    """
    if not selected:
        raise ValueError("No frames provided for reference selection")
    chosen = set(selected)
    candidates = [r for r in records if r.frame_index in chosen]
    if not candidates:
        return min(selected)
    best = min(candidates, key=lambda r: (-r.normalized_score, r.frame_index))
    logger.info(
        "Selected best-scoring frame as reference: #%d (score=%.4f)",
        best.frame_index,
        best.normalized_score,
    )
    return best.frame_index


def align_frames(
    source: FrameSource,
    indices: Sequence[int],
    reference: Frame,
    store: AlignedFrameStore,
    aligner: GlobalAligner | None = None,
    roi: Rect | None = None,
    workers: int | None = None,
    chunk_size: int = 64,
    token: CancellationToken | None = None,
    reporter: ProgressReporter | None = None,
    diagnostics: list[Diagnostic] | None = None,
) -> dict[int, AlignmentResult]:
    """
    Align frames pulled from a source and put them in the aligned store.

    Frames are requested chunk by chunk and aligned in parallel; completion
    order within a chunk is arbitrary. Frames that cannot be decoded or
    aligned are left out of the store and recorded in ``diagnostics``.

    Returns
    -------
    dict[int, AlignmentResult]
        Results of every frame that reached the store, keyed by frame index.
    """
    if aligner is None:
        aligner = GlobalAligner()
    if diagnostics is None:
        diagnostics = []
    workers = resolve_workers(workers)
    reference_lum = reference.luminance()
    results: dict[int, AlignmentResult] = {}
    total = len(indices)
    done = 0

    def align_one(index: int) -> tuple[Frame, AlignmentResult]:
        if token is not None:
            token.raise_if_cancelled()
        if index == reference.index:
            return reference, AlignmentResult(index, 0.0, 0.0, 1.0)
        frame = source.get_frame(index)
        return aligner.align(reference_lum, frame, roi)

    with ThreadPoolExecutor(max_workers=workers) as executor:
        for start in range(0, total, chunk_size):
            if token is not None:
                token.raise_if_cancelled()
            chunk = indices[start:start + chunk_size]
            futures = {executor.submit(align_one, index): index for index in chunk}

            for future in as_completed(futures):
                index = futures[future]
                try:
                    aligned, result = future.result()
                except FrameDecodeError as e:
                    logger.warning("Failed to read frame %d: %s", index, e)
                    diagnostics.append(Diagnostic(index, DiagnosticReason.DECODE_FAILED, str(e)))
                except AlignmentFailure as e:
                    logger.warning("%s", e)
                    diagnostics.append(Diagnostic(index, DiagnosticReason.ALIGNMENT_FAILED, e.reason))
                else:
                    store.put(index, aligned.data)
                    results[index] = result
                    if result.low_confidence:
                        diagnostics.append(
                            Diagnostic(index, DiagnosticReason.LOW_CONFIDENCE, "kept unshifted")
                        )
                done += 1
                if reporter is not None:
                    reporter.step("aligning_global", done, total)

    n_low = sum(1 for r in results.values() if r.low_confidence)
    logger.info(
        "Global alignment complete: %d aligned (%d low-confidence), %d failed",
        len(results),
        n_low,
        total - len(results),
    )
    return results
