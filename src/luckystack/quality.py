"""
Frame quality assessment for lucky imaging.

Provides fast, explainable, deterministic sharpness metrics for frame
selection. No black-box ML - all metrics are transparent and auditable:

- Laplacian response variance (edge sharpness)
- Sobel gradient-magnitude energy
- High-frequency energy in an annulus of the 2-D Fourier spectrum

Each metric is min-max normalized across the analyzed batch and the three
are combined with configurable weights.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Sequence

import numpy as np
from scipy import ndimage
from skimage.filters import threshold_otsu

from .config import Diagnostic, DiagnosticReason
from .errors import FrameDecodeError
from .frame import Frame, Rect, luminance
from .io import FrameSource
from .progress import CancellationToken, ProgressReporter
from .utils import resolve_workers

logger = logging.getLogger(__name__)

DEFAULT_WEIGHTS = (0.4, 0.3, 0.3)
DEFAULT_HF_BAND = (0.3, 0.8)

# Smallest ROI side kept after detection, in pixels
MIN_ROI_SIZE = 32


@dataclass
class FrameMetrics:
    """Raw (un-normalized) sharpness metrics of one frame."""

    frame_index: int
    laplacian_variance: float
    gradient_energy: float
    hf_energy: float
    roi: Rect | None = None


@dataclass
class QualityRecord:
    """Quality of a single frame within one analysis run."""

    frame_index: int
    raw_metric: float  # Laplacian variance of the ROI
    normalized_score: float  # Combined batch-normalized score in [0, 1]
    laplacian_variance: float = 0.0
    gradient_energy: float = 0.0
    hf_energy: float = 0.0
    roi: Rect | None = None


def laplacian_variance(gray: np.ndarray) -> float:
    """
    Variance of the Laplacian response.

    The Laplacian operator detects edges; the variance of its response
    grows with the amount of fine detail in the image.
    """
    lap = ndimage.laplace(np.asarray(gray, dtype=np.float64), mode="reflect")
    return float(np.var(lap))


def gradient_energy(gray: np.ndarray) -> float:
    """Mean squared Sobel gradient magnitude."""
    data = np.asarray(gray, dtype=np.float64)
    gx = ndimage.sobel(data, axis=1, mode="reflect")
    gy = ndimage.sobel(data, axis=0, mode="reflect")
    return float(np.mean(gx * gx + gy * gy))


def high_frequency_energy(
    gray: np.ndarray,
    inner: float = DEFAULT_HF_BAND[0],
    outer: float = DEFAULT_HF_BAND[1],
) -> float:
    """
    Spectral magnitude in an annulus of the 2-D Fourier transform.

    Parameters
    ----------
    gray : np.ndarray
        2D image.
    inner, outer : float
        Annulus radii as fractions of the Nyquist frequency.

    Returns
    -------
    float
        Sum of |FFT| inside the annulus divided by the pixel count, so that
        regions of different sizes give comparable values.
    """
    data = np.asarray(gray, dtype=np.float64)
    h, w = data.shape
    magnitude = np.abs(np.fft.fft2(data))
    fy = np.fft.fftfreq(h)[:, None]
    fx = np.fft.fftfreq(w)[None, :]
    radius = np.sqrt(fx * fx + fy * fy) / 0.5
    band = (radius >= inner) & (radius <= outer)
    return float(magnitude[band].sum() / data.size)


def detect_roi(
    gray: np.ndarray,
    padding: float = 0.15,
    min_size: int = MIN_ROI_SIZE,
) -> Rect:
    """
    Coarse subject bounding box via threshold + largest connected component.

    Parameters
    ----------
    gray : np.ndarray
        2D luminance image.
    padding : float, default 0.15
        Fraction of the subject size added on every side.
    min_size : int, default 32
        Minimum ROI side length in pixels.

    Returns
    -------
    Rect
        Region of interest clipped to the image. The whole frame is returned
        when no subject stands out from the background.

    Notes
    -----
    This is NOT a planet detector. It only bounds the working set so that
    noise in an empty sky does not dominate the sharpness metrics.
    """
    data = np.asarray(gray, dtype=np.float32)
    full = Rect.full(data.shape)
    if float(data.max() - data.min()) < 1e-6:
        return full

    binary = data > threshold_otsu(data)
    labeled, n_features = ndimage.label(binary)
    if n_features == 0:
        return full

    sizes = np.bincount(labeled.ravel())
    sizes[0] = 0
    largest = int(np.argmax(sizes))
    rows, cols = ndimage.find_objects((labeled == largest).astype(np.int32))[0]

    roi = Rect(cols.start, rows.start, cols.stop - cols.start, rows.stop - rows.start)
    roi = roi.pad(padding)

    # Grow around the centre up to the minimum size
    if roi.width < min_size:
        roi = Rect(roi.x - (min_size - roi.width) // 2, roi.y, min_size, roi.height)
    if roi.height < min_size:
        roi = Rect(roi.x, roi.y - (min_size - roi.height) // 2, roi.width, min_size)

    roi = roi.clip_to(data.shape)
    if roi.area == 0:
        return full
    return roi


def measure_frame(
    frame: Frame | np.ndarray,
    roi: Rect | None = None,
    hf_band: tuple[float, float] = DEFAULT_HF_BAND,
    frame_index: int | None = None,
) -> FrameMetrics:
    """
    Compute raw sharpness metrics for a single frame.

    Pure function: identical pixels and ROI always give identical metrics.
    """
    if isinstance(frame, Frame):
        gray = frame.luminance()
        index = frame.index if frame_index is None else frame_index
    else:
        gray = luminance(frame)
        index = -1 if frame_index is None else frame_index

    if roi is not None:
        roi = roi.clip_to(gray.shape)
        if roi.area > 0:
            gray = gray[roi.slices]

    return FrameMetrics(
        frame_index=index,
        laplacian_variance=laplacian_variance(gray),
        gradient_energy=gradient_energy(gray),
        hf_energy=high_frequency_energy(gray, *hf_band),
        roi=roi,
    )


def minmax_normalize(values: Sequence[float]) -> np.ndarray:
    """
    Min-max normalize values to [0, 1].

    A constant batch maps to 1.0 for every entry.
    """
    arr = np.asarray(values, dtype=np.float64)
    if arr.size == 0:
        return arr
    lo, hi = float(arr.min()), float(arr.max())
    if hi - lo <= 0:
        return np.ones_like(arr)
    return np.clip((arr - lo) / (hi - lo), 0.0, 1.0)


def normalize_records(
    metrics: Sequence[FrameMetrics],
    weights: tuple[float, float, float] = DEFAULT_WEIGHTS,
) -> list[QualityRecord]:
    """
    Turn raw metrics of one batch into quality records.

    Parameters
    ----------
    metrics : sequence of FrameMetrics
        Raw metrics for every frame analyzed in this run.
    weights : tuple of 3 floats, default (0.4, 0.3, 0.3)
        Weights for Laplacian variance, gradient energy and high-frequency
        energy. Divided by their sum so the score stays in [0, 1].

    Returns
    -------
    list[QualityRecord]
        Records in the same order as ``metrics``.
    """
    if not metrics:
        return []

    w = np.asarray(weights, dtype=np.float64)
    w = w / w.sum()

    lap = minmax_normalize([m.laplacian_variance for m in metrics])
    grad = minmax_normalize([m.gradient_energy for m in metrics])
    hf = minmax_normalize([m.hf_energy for m in metrics])
    combined = np.clip(w[0] * lap + w[1] * grad + w[2] * hf, 0.0, 1.0)

    return [
        QualityRecord(
            frame_index=m.frame_index,
            raw_metric=m.laplacian_variance,
            normalized_score=float(score),
            laplacian_variance=m.laplacian_variance,
            gradient_energy=m.gradient_energy,
            hf_energy=m.hf_energy,
            roi=m.roi,
        )
        for m, score in zip(metrics, combined)
    ]


def rank_records(records: Sequence[QualityRecord]) -> list[QualityRecord]:
    """Sort records best first; equal scores by ascending frame index."""
    return sorted(records, key=lambda r: (-r.normalized_score, r.frame_index))


def score_statistics(records: Sequence[QualityRecord]) -> dict[str, float]:
    """Min, max, mean and median of the normalized scores (all 0 when empty)."""
    if not records:
        return {"min": 0.0, "max": 0.0, "mean": 0.0, "median": 0.0}
    scores = np.array([r.normalized_score for r in records], dtype=np.float64)
    return {
        "min": float(scores.min()),
        "max": float(scores.max()),
        "mean": float(scores.mean()),
        "median": float(np.median(scores)),
    }


class QualityScorer:
    """
    Batch quality scoring with periodic ROI re-detection.

    Parameters
    ----------
    weights : tuple of 3 floats
        Sub-metric combination weights.
    hf_band : tuple of 2 floats
        High-frequency annulus, fractions of Nyquist.
    roi_interval : int
        Re-detect the ROI every N analyzed frames; reuse it in between.
    roi_padding : float
        Padding around the detected subject.
    use_roi : bool
        If False, score whole frames.
    workers : int or None
        Thread pool size. None = auto-detect.
    chunk_size : int
        Frames decoded and held at once.
    """

    def __init__(
        self,
        weights: tuple[float, float, float] = DEFAULT_WEIGHTS,
        hf_band: tuple[float, float] = DEFAULT_HF_BAND,
        roi_interval: int = 30,
        roi_padding: float = 0.15,
        use_roi: bool = True,
        workers: int | None = None,
        chunk_size: int = 64,
    ):
        self.weights = weights
        self.hf_band = hf_band
        self.roi_interval = max(1, roi_interval)
        self.roi_padding = roi_padding
        self.use_roi = use_roi
        self.workers = resolve_workers(workers)
        self.chunk_size = max(1, chunk_size)

    @classmethod
    def from_config(cls, config) -> QualityScorer:
        return cls(
            weights=config.quality_weights,
            hf_band=config.hf_band,
            roi_interval=config.roi_interval,
            roi_padding=config.roi_padding,
            use_roi=config.use_roi,
            workers=config.workers,
            chunk_size=config.chunk_size,
        )

    def _assign_rois(self, frames: list[Frame], state: dict) -> list[Rect | None]:
        """ROI per frame, re-detecting every ``roi_interval`` frames."""
        rois: list[Rect | None] = []
        for frame in frames:
            if not self.use_roi:
                rois.append(None)
                continue
            if state["roi"] is None or state["since"] >= self.roi_interval:
                state["roi"] = detect_roi(frame.luminance(), padding=self.roi_padding)
                state["since"] = 0
                logger.debug("ROI re-detected on frame %d: %s", frame.index, state["roi"])
            state["since"] += 1
            rois.append(state["roi"])
        return rois

    def score_batch(self, frames: Sequence[Frame]) -> list[QualityRecord]:
        """Score in-memory frames (sequentially) and normalize over the batch."""
        state = {"roi": None, "since": 0}
        rois = self._assign_rois(list(frames), state)
        metrics = [measure_frame(f, roi, self.hf_band) for f, roi in zip(frames, rois)]
        return normalize_records(metrics, self.weights)

    def score_source(
        self,
        source: FrameSource,
        indices: Sequence[int],
        token: CancellationToken | None = None,
        reporter: ProgressReporter | None = None,
        diagnostics: list[Diagnostic] | None = None,
    ) -> list[QualityRecord]:
        """
        Score frames pulled from a frame source, chunk by chunk.

        Parameters
        ----------
        source : FrameSource
            Frame provider.
        indices : sequence of int
            Frame indices to analyze, in timeline order.
        token : CancellationToken, optional
            Polled between frames.
        reporter : ProgressReporter, optional
            Receives "analyzing" events.
        diagnostics : list, optional
            Decode and scoring failures are appended here.

        Returns
        -------
        list[QualityRecord]
            Records of every successfully scored frame, in timeline order.
        """
        if diagnostics is None:
            diagnostics = []
        total = len(indices)
        metrics: list[FrameMetrics] = []
        state = {"roi": None, "since": 0}
        done = 0

        def fetch(index: int) -> Frame | FrameDecodeError:
            if token is not None:
                token.raise_if_cancelled()
            try:
                return source.get_frame(index)
            except FrameDecodeError as e:
                return e

        def measure(frame: Frame, roi: Rect | None) -> FrameMetrics:
            if token is not None:
                token.raise_if_cancelled()
            return measure_frame(frame, roi, self.hf_band)

        with ThreadPoolExecutor(max_workers=self.workers) as executor:
            for start in range(0, total, self.chunk_size):
                if token is not None:
                    token.raise_if_cancelled()
                chunk = list(indices[start:start + self.chunk_size])

                frames: list[Frame] = []
                for index, fetched in zip(chunk, executor.map(fetch, chunk)):
                    if isinstance(fetched, FrameDecodeError):
                        logger.warning("Skipping frame %d: %s", index, fetched)
                        diagnostics.append(
                            Diagnostic(index, DiagnosticReason.DECODE_FAILED, str(fetched))
                        )
                        done += 1
                        if reporter is not None:
                            reporter.step("analyzing", done, total)
                    else:
                        frames.append(fetched)

                rois = self._assign_rois(frames, state)
                futures = [executor.submit(measure, f, roi) for f, roi in zip(frames, rois)]
                for frame, future in zip(frames, futures):
                    try:
                        metrics.append(future.result())
                    except (ValueError, FloatingPointError) as e:
                        logger.warning("Failed to score frame %d: %s", frame.index, e)
                        diagnostics.append(
                            Diagnostic(frame.index, DiagnosticReason.SCORING_FAILED, str(e))
                        )
                    done += 1
                    if reporter is not None:
                        reporter.step("analyzing", done, total)

                # Release decoded frames before pulling the next chunk
                del frames, futures

        records = normalize_records(metrics, self.weights)
        if records:
            ranked = rank_records(records)
            logger.info(
                "Scored %d/%d frames. Best: #%d (%.3f), worst: #%d (%.3f)",
                len(records),
                total,
                ranked[0].frame_index,
                ranked[0].normalized_score,
                ranked[-1].frame_index,
                ranked[-1].normalized_score,
            )
        else:
            logger.warning("No frame could be scored out of %d", total)
        return records
