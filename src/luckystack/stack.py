"""
Image stacking for the luckystack pipeline.

Implements a weighted, sigma-clipped mean computed by streaming over the
aligned frames. Memory use does not depend on the number of frames: the
image is split into horizontal row bands, each band is owned by one worker,
and every clipping iteration is one pass over the stored frames restricted
to that band.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from typing import Mapping, Sequence

import numpy as np

from .cache import AlignedFrameStore
from .errors import StackingError
from .progress import CancellationToken, ProgressReporter
from .utils import resolve_workers

logger = logging.getLogger(__name__)

# Relative standard deviation below which a pixel is considered constant
_STD_EPS = 1e-6


@dataclass
class StackStatistics:
    """Statistics from a stacking operation."""

    n_frames: int
    accepted_fraction: float  # Mean fraction of frames accepted per pixel
    rejected_fraction: float  # 1 - accepted_fraction
    snr_proxy: float  # Median signal over MAD noise


def frame_weight(score: float, confidence: float, floor: float = 0.1) -> float:
    """
    Stacking weight of a frame.

    Product of the quality score and the alignment confidence, each lifted
    to at least ``floor`` so that a frame with zero confidence (kept
    unshifted) still contributes a little.
    """
    score = float(np.clip(score, 0.0, 1.0))
    confidence = float(np.clip(confidence, 0.0, 1.0))
    return (floor + (1.0 - floor) * score) * (floor + (1.0 - floor) * confidence)


class StackAccumulator:
    """
    Running weighted sums for one block of pixels.

    Parameters
    ----------
    shape : tuple
        Shape of the block, (rows, W) or (rows, W, C).
    """

    def __init__(self, shape: tuple[int, ...]):
        self.weight_sum = np.zeros(shape, dtype=np.float64)
        self.value_sum = np.zeros(shape, dtype=np.float64)
        self.square_sum = np.zeros(shape, dtype=np.float64)
        self.count = np.zeros(shape, dtype=np.int32)

    def add(self, samples: np.ndarray, weight: float, accept: np.ndarray | None = None) -> None:
        """Accumulate one frame's samples, only where ``accept`` is True."""
        x = np.asarray(samples, dtype=np.float64)
        if accept is None:
            accept = np.isfinite(x)
        w = np.where(accept, weight, 0.0)
        x = np.where(accept, x, 0.0)
        self.weight_sum += w
        self.value_sum += w * x
        self.square_sum += w * x * x
        self.count += accept

    def mean(self) -> np.ndarray:
        """Weighted mean, 0 where nothing was accepted."""
        safe = np.where(self.weight_sum > 0, self.weight_sum, 1.0)
        return np.where(self.weight_sum > 0, self.value_sum / safe, 0.0)

    def std(self) -> np.ndarray:
        """Weighted population standard deviation, 0 where nothing was accepted."""
        safe = np.where(self.weight_sum > 0, self.weight_sum, 1.0)
        mean = self.value_sum / safe
        variance = np.maximum(self.square_sum / safe - mean * mean, 0.0)
        return np.where(self.weight_sum > 0, np.sqrt(variance), 0.0)

    def restore(self, mask: np.ndarray, other: StackAccumulator) -> None:
        """Copy the sums of ``other`` for the pixels selected by ``mask``."""
        for name in ("weight_sum", "value_sum", "square_sum", "count"):
            getattr(self, name)[mask] = getattr(other, name)[mask]


def _normalize_weights(indices: Sequence[int], weights: Mapping[int, float] | None) -> dict[int, float]:
    if weights is None:
        return {i: 1.0 for i in indices}
    w = {i: max(float(weights.get(i, 0.0)), 0.0) for i in indices}
    if sum(w.values()) <= 0:
        logger.warning("All stacking weights are zero, falling back to uniform weights")
        return {i: 1.0 for i in indices}
    return w


def sigma_clip_band(
    store: AlignedFrameStore,
    weights: Mapping[int, float],
    rows: slice,
    sigma: float = 2.5,
    iterations: int = 2,
    token: CancellationToken | None = None,
) -> tuple[np.ndarray, np.ndarray]:
    """
    Weighted sigma-clipped mean of one row band.

    Parameters
    ----------
    store : AlignedFrameStore
        Aligned frames.
    weights : mapping of int to float
        Stacking weight per frame index (frames absent from it are skipped).
    rows : slice
        Row band to combine.
    sigma : float, default 2.5
        Clipping threshold in standard deviations.
    iterations : int, default 2
        Number of clipping iterations; ``iterations + 1`` passes are made.
    token : CancellationToken, optional
        Polled between frames.

    Returns
    -------
    tuple[np.ndarray, np.ndarray]
        (mean, accepted_count) for the band.

    Notes
    -----
    A sample is accepted only if it lies within the closed bounds
    ``[mean - sigma*std, mean + sigma*std]`` of every previous iteration.
    Pixels whose spread is zero stop clipping. A pixel whose new bounds would
    reject every remaining sample keeps the samples it had and stops
    clipping, so the result never contains NaN.

    Raises
    ------
    StackingError
        If no stored frame has a positive weight.
    """
    indices = [i for i in store.indices() if weights.get(i, 0.0) > 0]
    if not indices:
        raise StackingError("No weighted frames in band")
    shape = store.get(indices[0])[rows].shape

    lo = np.full(shape, -np.inf)
    hi = np.full(shape, np.inf)
    prev_lo, prev_hi = lo, hi
    frozen = np.zeros(shape, dtype=bool)
    previous: StackAccumulator | None = None

    for iteration in range(iterations + 1):
        acc = StackAccumulator(shape)
        for index in indices:
            if token is not None:
                token.raise_if_cancelled()
            x = np.asarray(store.get(index)[rows], dtype=np.float64)
            accept = np.isfinite(x) & (x >= lo) & (x <= hi)
            acc.add(x, weights[index], accept)

        if previous is not None:
            emptied = (acc.weight_sum <= 0) & (previous.weight_sum > 0)
            if emptied.any():
                acc.restore(emptied, previous)
                lo = np.where(emptied, prev_lo, lo)
                hi = np.where(emptied, prev_hi, hi)
                frozen |= emptied

        if iteration == iterations:
            break

        mean, std = acc.mean(), acc.std()
        stop = frozen | (acc.weight_sum <= 0) | (std <= _STD_EPS * np.maximum(np.abs(mean), 1.0))
        prev_lo, prev_hi = lo, hi
        lo = np.where(stop, lo, np.maximum(lo, mean - sigma * std))
        hi = np.where(stop, hi, np.minimum(hi, mean + sigma * std))
        frozen = stop
        previous = acc

    return acc.mean().astype(np.float32), acc.count


class FrameStacker:
    """
    Parallel weighted sigma-clipped stacking over row bands.

    Parameters
    ----------
    sigma : float, default 2.5
        Clipping threshold in standard deviations.
    iterations : int, default 2
        Clipping iterations.
    band_rows : int, default 64
        Height of each row band.
    workers : int, optional
        Thread pool size. None = auto-detect.

    Example
    -------
    >>> stacker = FrameStacker(sigma=2.5, iterations=2)
    >>> image, accepted = stacker.stack(store, weights)
    """

    def __init__(
        self,
        sigma: float = 2.5,
        iterations: int = 2,
        band_rows: int = 64,
        workers: int | None = None,
    ):
        self.sigma = sigma
        self.iterations = iterations
        self.band_rows = max(1, band_rows)
        self.workers = resolve_workers(workers)

    @classmethod
    def from_config(cls, config) -> FrameStacker:
        return cls(
            sigma=config.sigma,
            iterations=config.sigma_iterations,
            band_rows=config.band_rows,
            workers=config.workers,
        )

    def stack(
        self,
        store: AlignedFrameStore,
        weights: Mapping[int, float] | None = None,
        token: CancellationToken | None = None,
        reporter: ProgressReporter | None = None,
    ) -> tuple[np.ndarray, float]:
        """
        Combine every frame of the store.

        Parameters
        ----------
        store : AlignedFrameStore
            Aligned frames, all of the same shape.
        weights : mapping of int to float, optional
            Per-frame weights. Uniform when omitted or when all are zero.
        token : CancellationToken, optional
            Polled between frames within each band.
        reporter : ProgressReporter, optional
            Receives one "stacking" event per finished band.

        Returns
        -------
        tuple[np.ndarray, float]
            (stacked float32 image, mean fraction of frames accepted per pixel).

        Raises
        ------
        StackingError
            If the store holds no frame.
        """
        indices = store.indices()
        if not indices:
            raise StackingError("No frames to stack")
        w = _normalize_weights(indices, weights)
        indices = [i for i in indices if w[i] > 0]
        n_frames = len(indices)

        shape = store.shape
        height = shape[0]
        bands = [slice(s, min(s + self.band_rows, height)) for s in range(0, height, self.band_rows)]

        logger.info(
            "Stacking %d frames (%dx%d) with sigma=%.1f, iterations=%d, %d bands",
            n_frames,
            shape[1],
            height,
            self.sigma,
            self.iterations,
            len(bands),
        )

        stacked = np.zeros(shape, dtype=np.float32)
        accepted = np.zeros(shape, dtype=np.int32)

        with ThreadPoolExecutor(max_workers=self.workers) as executor:
            futures = {
                executor.submit(sigma_clip_band, store, w, rows, self.sigma, self.iterations, token): rows
                for rows in bands
            }
            for done, future in enumerate(as_completed(futures), start=1):
                rows = futures[future]
                stacked[rows], accepted[rows] = future.result()
                if reporter is not None:
                    reporter.emit("stacking", 100.0 * done / len(bands), f"band {done}/{len(bands)}")

        accepted_fraction = float(np.mean(accepted)) / n_frames
        logger.info(
            "Stack complete. Mean contributing frames: %.1f, min: %d, max: %d",
            float(np.mean(accepted)),
            int(np.min(accepted)),
            int(np.max(accepted)),
        )
        return stacked, accepted_fraction


def sigma_clip_mean(
    frames: Sequence[np.ndarray] | np.ndarray,
    weights: Sequence[float] | None = None,
    sigma: float = 2.5,
    iterations: int = 2,
    band_rows: int = 64,
    workers: int | None = 1,
) -> tuple[np.ndarray, float]:
    """
    Weighted sigma-clipped mean of in-memory frames.

    Convenience wrapper around ``FrameStacker`` for callers that already hold
    the frames, e.g. a list of 2D images or an (N, H, W[, C]) cube.

    Returns
    -------
    tuple[np.ndarray, float]
        (stacked image, mean accepted fraction).
    """
    if len(frames) == 0:
        raise StackingError("Empty frame list")
    frame_weights = None if weights is None else {i: float(wt) for i, wt in enumerate(weights)}
    with AlignedFrameStore(max_resident=len(frames)) as store:
        for i, frame in enumerate(frames):
            store.put(i, frame)
        return FrameStacker(sigma, iterations, band_rows, workers).stack(store, frame_weights)


def compute_stack_statistics(
    stacked: np.ndarray,
    accepted_fraction: float,
    n_frames: int,
) -> StackStatistics:
    """
    Compute statistics for the stacked result.

    Parameters
    ----------
    stacked : np.ndarray
        Stacked image.
    accepted_fraction : float
        Mean fraction of frames accepted per pixel.
    n_frames : int
        Number of stacked frames.

    Returns
    -------
    StackStatistics
        Statistics dataclass.
    """
    # Median as signal proxy, MAD-based noise estimate
    signal = float(np.median(stacked))
    noise = 1.4826 * float(np.median(np.abs(stacked - signal)))
    snr_proxy = signal / noise if noise > 0 else 0.0

    return StackStatistics(
        n_frames=n_frames,
        accepted_fraction=accepted_fraction,
        rejected_fraction=1.0 - accepted_fraction,
        snr_proxy=snr_proxy,
    )
