"""
Exception taxonomy for the luckystack pipeline.

Per-frame errors (FrameDecodeError, AlignmentFailure) are recoverable: the
pipeline records them as diagnostics and carries on. The others are fatal
for the run.
"""

from __future__ import annotations


class LuckyStackError(Exception):
    """Base class for all luckystack errors."""


class FrameDecodeError(LuckyStackError):
    """A frame could not be obtained from the frame source."""

    def __init__(self, frame_index: int, reason: str = ""):
        self.frame_index = frame_index
        self.reason = reason
        super().__init__(f"Cannot decode frame {frame_index}: {reason}" if reason else f"Cannot decode frame {frame_index}")


class AlignmentFailure(LuckyStackError):
    """A frame could not be registered against the reference."""

    def __init__(self, frame_index: int, reason: str = ""):
        self.frame_index = frame_index
        self.reason = reason
        super().__init__(f"Alignment failed for frame {frame_index}: {reason}")


class InsufficientFramesError(LuckyStackError):
    """Fewer usable frames remain than the configured minimum."""

    def __init__(self, available: int, required: int, stage: str = ""):
        self.available = available
        self.required = required
        self.stage = stage
        where = f" after {stage}" if stage else ""
        super().__init__(f"Only {available} usable frames{where}, at least {required} required")


class StackingError(LuckyStackError):
    """No frame reached the stacker, or the frames cannot be combined."""


class ConfigurationError(LuckyStackError, ValueError):
    """A configuration parameter is out of range."""


class PipelineCancelled(LuckyStackError):
    """Raised inside a stage when the cancellation token has been set."""
