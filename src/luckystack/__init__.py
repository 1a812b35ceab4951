"""
luckystack - Lucky-imaging stacking pipeline.

Selects the sharpest frames of a burst of short exposures, registers them
with sub-pixel accuracy (global phase correlation, then tile-based local
alignment), combines them with a weighted sigma-clipped mean and sharpens
the result with an à trous wavelet transform.

Example
-------
>>> from luckystack import ArrayFrameSource, LuckyImagingPipeline, StackConfig
>>> config = StackConfig.from_preset("jupiter_saturn", min_frames=20)
>>> result = LuckyImagingPipeline(ArrayFrameSource(frames), config).run()
>>> result.raise_for_status()
>>> image = result.image
"""

from .config import (
    N_WAVELET_LAYERS,
    PRESETS,
    VALID_TILE_SIZES,
    WAVELET_PRESETS,
    Diagnostic,
    DiagnosticReason,
    StackConfig,
)
from .errors import (
    AlignmentFailure,
    ConfigurationError,
    FrameDecodeError,
    InsufficientFramesError,
    LuckyStackError,
    PipelineCancelled,
    StackingError,
)
from .frame import Frame, Rect
from .utils import __version__, __version_info__, get_version_banner

# I/O adapters
from .io import (
    ArrayFrameSource,
    FileImageSink,
    FrameSource,
    ImageSequenceSource,
    ImageSink,
    list_frames,
    read_image,
    write_image,
)

# Progress and cancellation
from .progress import CancellationToken, ProgressEvent, ProgressReporter

# Quality assessment and selection
from .quality import QualityRecord, QualityScorer, detect_roi, measure_frame
from .selection import select_frames, target_count

# Alignment
from .align import AlignmentResult, GlobalAligner, phase_correlate, shift_image
from .local_align import LocalAligner, WarpField, match_tile, tile_grid
from .resample import remap

# Stacking
from .cache import AlignedFrameStore, load_records, save_records
from .stack import (
    FrameStacker,
    StackAccumulator,
    StackStatistics,
    compute_stack_statistics,
    frame_weight,
    sigma_clip_mean,
)

# Sharpening
from .wavelet import WaveletPyramid, WaveletSharpener, decompose, sharpen

# Orchestration
from .pipeline import LuckyImagingPipeline, PipelineResult, PipelineState, run_pipeline

__all__ = [
    # Version
    "__version__",
    "__version_info__",
    "get_version_banner",
    # Config
    "StackConfig",
    "PRESETS",
    "WAVELET_PRESETS",
    "VALID_TILE_SIZES",
    "N_WAVELET_LAYERS",
    "Diagnostic",
    "DiagnosticReason",
    # Errors
    "LuckyStackError",
    "FrameDecodeError",
    "AlignmentFailure",
    "InsufficientFramesError",
    "StackingError",
    "ConfigurationError",
    "PipelineCancelled",
    # Frames
    "Frame",
    "Rect",
    # I/O
    "FrameSource",
    "ImageSink",
    "ArrayFrameSource",
    "ImageSequenceSource",
    "FileImageSink",
    "list_frames",
    "read_image",
    "write_image",
    # Progress
    "CancellationToken",
    "ProgressEvent",
    "ProgressReporter",
    # Quality
    "QualityRecord",
    "QualityScorer",
    "detect_roi",
    "measure_frame",
    "select_frames",
    "target_count",
    # Alignment
    "AlignmentResult",
    "GlobalAligner",
    "phase_correlate",
    "shift_image",
    "LocalAligner",
    "WarpField",
    "match_tile",
    "tile_grid",
    "remap",
    # Stacking
    "AlignedFrameStore",
    "save_records",
    "load_records",
    "FrameStacker",
    "StackAccumulator",
    "StackStatistics",
    "compute_stack_statistics",
    "frame_weight",
    "sigma_clip_mean",
    # Sharpening
    "WaveletPyramid",
    "WaveletSharpener",
    "decompose",
    "sharpen",
    # Pipeline
    "LuckyImagingPipeline",
    "PipelineResult",
    "PipelineState",
    "run_pipeline",
]
