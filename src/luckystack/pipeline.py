"""
Lucky-imaging pipeline orchestration.

Runs the stages in order, each one to completion before the next:

    idle -> analyzing -> selecting -> aligning_global -> [aligning_local]
         -> stacking -> sharpening -> done

Any stage may end the run in ``failed`` (fatal error) or ``cancelled``
(cancellation observed between units of work). Per-frame problems are
collected as diagnostics and never stop the run on their own; the run fails
only when fewer than ``min_frames`` usable frames remain.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

import numpy as np

from .align import AlignmentResult, GlobalAligner, align_frames, select_reference_frame
from .cache import AlignedFrameStore
from .config import Diagnostic, DiagnosticReason, StackConfig
from .errors import (
    FrameDecodeError,
    InsufficientFramesError,
    LuckyStackError,
    PipelineCancelled,
)
from .frame import Frame
from .io import FrameSource, ImageSink
from .local_align import LocalAligner, refine_frames
from .progress import CancellationToken, ProgressCallback, ProgressReporter
from .quality import QualityRecord, QualityScorer, detect_roi, rank_records
from .selection import select_frames
from .stack import FrameStacker, StackStatistics, compute_stack_statistics, frame_weight
from .utils import format_duration
from .wavelet import WaveletSharpener

logger = logging.getLogger(__name__)


class PipelineState(Enum):
    """Lifecycle of a pipeline run."""

    IDLE = "idle"
    ANALYZING = "analyzing"
    SELECTING = "selecting"
    ALIGNING_GLOBAL = "aligning_global"
    ALIGNING_LOCAL = "aligning_local"
    STACKING = "stacking"
    SHARPENING = "sharpening"
    DONE = "done"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self in (PipelineState.DONE, PipelineState.FAILED, PipelineState.CANCELLED)


_ABORT = {PipelineState.FAILED, PipelineState.CANCELLED}

TRANSITIONS: dict[PipelineState, set[PipelineState]] = {
    PipelineState.IDLE: {PipelineState.ANALYZING} | _ABORT,
    PipelineState.ANALYZING: {PipelineState.SELECTING} | _ABORT,
    PipelineState.SELECTING: {PipelineState.ALIGNING_GLOBAL} | _ABORT,
    PipelineState.ALIGNING_GLOBAL: {PipelineState.ALIGNING_LOCAL, PipelineState.STACKING} | _ABORT,
    PipelineState.ALIGNING_LOCAL: {PipelineState.STACKING} | _ABORT,
    PipelineState.STACKING: {PipelineState.SHARPENING} | _ABORT,
    PipelineState.SHARPENING: {PipelineState.DONE} | _ABORT,
    PipelineState.DONE: set(),
    PipelineState.FAILED: set(),
    PipelineState.CANCELLED: set(),
}


@dataclass
class PipelineResult:
    """Complete record of one pipeline run."""

    status: PipelineState
    image: np.ndarray | None = None
    diagnostics: list[Diagnostic] = field(default_factory=list)
    records: list[QualityRecord] = field(default_factory=list)
    selected: list[int] = field(default_factory=list)
    alignments: dict[int, AlignmentResult] = field(default_factory=dict)
    reference_index: int | None = None
    statistics: StackStatistics | None = None
    timings: dict[str, float] = field(default_factory=dict)  # Seconds per stage
    error: LuckyStackError | Exception | None = None
    config: StackConfig | None = None

    @property
    def succeeded(self) -> bool:
        return self.status is PipelineState.DONE

    @property
    def n_stacked(self) -> int:
        return self.statistics.n_frames if self.statistics else 0

    def raise_for_status(self) -> None:
        """Re-raise the error that ended a failed or cancelled run."""
        if self.status is PipelineState.FAILED and self.error is not None:
            raise self.error
        if self.status is PipelineState.CANCELLED:
            raise PipelineCancelled("Pipeline run was cancelled")

    def diagnostics_by_reason(self) -> dict[str, int]:
        counts: dict[str, int] = {}
        for d in self.diagnostics:
            counts[d.reason.value] = counts.get(d.reason.value, 0) + 1
        return counts


class LuckyImagingPipeline:
    """
    Orchestrates analysis, selection, alignment, stacking and sharpening.

    Parameters
    ----------
    source : FrameSource
        Provider of decoded frames.
    config : StackConfig, optional
        Pipeline settings. Defaults to ``StackConfig()``.
    sink : ImageSink, optional
        Receives the final image of a successful run.
    progress_callback : callable, optional
        Called with ``ProgressEvent`` objects from a dispatcher thread.
    token : CancellationToken, optional
        Shared cancellation flag; a private one is created when omitted.

    Example
    -------
    >>> pipeline = LuckyImagingPipeline(ArrayFrameSource(frames), StackConfig(min_frames=10))
    >>> result = pipeline.run()
    >>> result.raise_for_status()
    """

    def __init__(
        self,
        source: FrameSource,
        config: StackConfig | None = None,
        sink: ImageSink | None = None,
        progress_callback: ProgressCallback | None = None,
        token: CancellationToken | None = None,
    ):
        self.source = source
        self.config = config if config is not None else StackConfig()
        self.sink = sink
        self.progress_callback = progress_callback
        self.token = token if token is not None else CancellationToken()
        self.state = PipelineState.IDLE
        self.history: list[PipelineState] = [PipelineState.IDLE]

    def cancel(self) -> None:
        """Request cancellation; the run stops at the next unit of work."""
        self.token.cancel()

    def _transition(self, new_state: PipelineState) -> None:
        if new_state not in TRANSITIONS[self.state]:
            raise RuntimeError(f"Illegal pipeline transition {self.state.value} -> {new_state.value}")
        logger.debug("Pipeline state: %s -> %s", self.state.value, new_state.value)
        self.state = new_state
        self.history.append(new_state)

    def _enter(self, new_state: PipelineState, reporter: ProgressReporter) -> None:
        self.token.raise_if_cancelled()
        self._transition(new_state)
        reporter.emit(new_state.value, 0.0, "started")

    def _require(self, available: int, stage: str) -> None:
        if available < self.config.min_frames:
            raise InsufficientFramesError(available, self.config.min_frames, stage=stage)

    def run(self, records: list[QualityRecord] | None = None) -> PipelineResult:
        """
        Execute the pipeline.

        Parameters
        ----------
        records : list[QualityRecord], optional
            Quality records of a previous analysis of the same source. When
            given, scoring is skipped.

        Returns
        -------
        PipelineResult
            Status ``DONE`` with the final image, or ``FAILED``/``CANCELLED``
            without one. Diagnostics are always populated.

        Raises
        ------
        ConfigurationError
            If the configuration is invalid (raised before any processing).
        RuntimeError
            If this pipeline instance has already been run.
        """
        self.config.validate()
        if self.state is not PipelineState.IDLE:
            raise RuntimeError("A pipeline instance can only be run once")

        result = PipelineResult(status=self.state, config=self.config)
        reporter = ProgressReporter(self.progress_callback, every=self.config.progress_every)
        store = AlignedFrameStore(max_resident=self.config.chunk_size)
        t_start = time.perf_counter()

        reporter.start()
        try:
            self._run_stages(result, store, reporter, records)
        except PipelineCancelled:
            logger.warning("Pipeline cancelled during %s", self.state.value)
            self._transition(PipelineState.CANCELLED)
            result.image = None
        except LuckyStackError as e:
            logger.error("Pipeline failed during %s: %s", self.state.value, e)
            self._transition(PipelineState.FAILED)
            result.error = e
            result.image = None
        except Exception as e:
            logger.exception("Unexpected error during %s", self.state.value)
            self._transition(PipelineState.FAILED)
            result.error = e
            result.image = None
        finally:
            store.close()
            reporter.close()

        result.status = self.state
        result.timings["total"] = time.perf_counter() - t_start
        logger.info(
            "Pipeline finished: %s in %s (%d diagnostics)",
            self.state.value,
            format_duration(result.timings["total"]),
            len(result.diagnostics),
        )
        return result

    def _load_reference(self, result: PipelineResult) -> Frame:
        """Decode the best selected frame, falling back to the next best on decode errors."""
        chosen = set(result.selected)
        candidates = [r.frame_index for r in rank_records(result.records) if r.frame_index in chosen]
        first = select_reference_frame(result.records, result.selected)
        for index in [first] + [i for i in candidates if i != first]:
            self.token.raise_if_cancelled()
            try:
                return self.source.get_frame(index)
            except FrameDecodeError as e:
                logger.warning("Reference candidate %d unreadable: %s", index, e)
                result.diagnostics.append(Diagnostic(index, DiagnosticReason.DECODE_FAILED, str(e)))
                result.selected.remove(index)
        raise InsufficientFramesError(0, self.config.min_frames, stage="reference selection")

    def _run_stages(
        self,
        result: PipelineResult,
        store: AlignedFrameStore,
        reporter: ProgressReporter,
        records: list[QualityRecord] | None,
    ) -> None:
        cfg = self.config
        token = self.token
        diagnostics = result.diagnostics

        # Analyzing
        t0 = time.perf_counter()
        self._enter(PipelineState.ANALYZING, reporter)
        if records is None:
            indices = list(range(0, len(self.source), cfg.sample_step))
            logger.info("Analyzing %d/%d frames", len(indices), len(self.source))
            scorer = QualityScorer.from_config(cfg)
            records = scorer.score_source(self.source, indices, token, reporter, diagnostics)
        else:
            logger.info("Using %d precomputed quality records", len(records))
        result.records = list(records)
        result.timings["analyzing"] = time.perf_counter() - t0
        self._require(len(result.records), "analysis")

        # Selecting
        t0 = time.perf_counter()
        self._enter(PipelineState.SELECTING, reporter)
        result.selected = select_frames(
            result.records,
            keep_fraction=cfg.keep_fraction,
            min_frames=cfg.min_frames,
            max_frames=cfg.max_frames,
            spread_window=cfg.spread_window,
        )
        reference = self._load_reference(result)
        result.reference_index = reference.index
        result.timings["selecting"] = time.perf_counter() - t0
        self._require(len(result.selected), "selection")

        # Global alignment
        t0 = time.perf_counter()
        self._enter(PipelineState.ALIGNING_GLOBAL, reporter)
        roi = detect_roi(reference.luminance(), padding=cfg.roi_padding) if cfg.use_roi else None
        result.alignments = align_frames(
            self.source,
            result.selected,
            reference,
            store,
            aligner=GlobalAligner(min_confidence=cfg.min_align_confidence),
            roi=roi,
            workers=cfg.workers,
            chunk_size=cfg.chunk_size,
            token=token,
            reporter=reporter,
            diagnostics=diagnostics,
        )
        result.timings["aligning_global"] = time.perf_counter() - t0
        self._require(len(store), "global alignment")

        # Local alignment
        if cfg.enable_local_align:
            t0 = time.perf_counter()
            self._enter(PipelineState.ALIGNING_LOCAL, reporter)
            refine_frames(
                store,
                result.alignments,
                reference,
                aligner=LocalAligner.from_config(cfg),
                workers=cfg.workers,
                chunk_size=cfg.chunk_size,
                token=token,
                reporter=reporter,
                diagnostics=diagnostics,
            )
            result.timings["aligning_local"] = time.perf_counter() - t0

        # Stacking
        t0 = time.perf_counter()
        self._enter(PipelineState.STACKING, reporter)
        scores = {r.frame_index: r.normalized_score for r in result.records}
        weights = {
            index: frame_weight(scores.get(index, 0.0), result.alignments[index].confidence, cfg.weight_floor)
            for index in store.indices()
        }
        stacked, accepted_fraction = FrameStacker.from_config(cfg).stack(store, weights, token, reporter)
        result.statistics = compute_stack_statistics(stacked, accepted_fraction, len(weights))
        store.close()
        result.timings["stacking"] = time.perf_counter() - t0

        # Sharpening
        t0 = time.perf_counter()
        self._enter(PipelineState.SHARPENING, reporter)
        if cfg.sharpen:
            image = WaveletSharpener().sharpen(stacked, cfg.wavelet_gains)
        else:
            image = np.clip(stacked, 0.0, 1.0).astype(np.float32)
        reporter.emit(PipelineState.SHARPENING.value, 100.0, "done")
        result.timings["sharpening"] = time.perf_counter() - t0

        token.raise_if_cancelled()
        if self.sink is not None:
            self.sink.write(image)
        result.image = image
        self._transition(PipelineState.DONE)


def run_pipeline(
    source: FrameSource,
    config: StackConfig | None = None,
    **kwargs: Any,
) -> PipelineResult:
    """Build a ``LuckyImagingPipeline`` and run it once."""
    records = kwargs.pop("records", None)
    return LuckyImagingPipeline(source, config, **kwargs).run(records=records)
