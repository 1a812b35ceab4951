"""
Utility functions for the luckystack pipeline.

Includes:
- Version info
- Pixel range conversion helpers
- Formatting helpers
"""

from __future__ import annotations

import os
import platform
import sys
from datetime import datetime, timezone

import numpy as np

__version__ = "0.3.0"
__version_info__ = {
    "major": 0,
    "minor": 3,
    "patch": 0,
    "status": "beta",
    "date": "2026-10-19",
}

# Use all available CPUs but leave one free for the caller
DEFAULT_WORKERS = max(1, os.cpu_count() - 1) if os.cpu_count() else 4


def get_version_banner() -> str:
    """Return a formatted version banner for logging."""
    return f"luckystack v{__version__} | Lucky Imaging Stacking Pipeline"


def get_version() -> str:
    """Return the library version string."""
    return __version__


def get_platform_info() -> str:
    """Return platform information string."""
    return f"{platform.system()} {platform.release()} / Python {sys.version_info.major}.{sys.version_info.minor}.{sys.version_info.micro}"


def get_timestamp_iso() -> str:
    """Return current UTC timestamp in ISO format."""
    return datetime.now(timezone.utc).isoformat()


def resolve_workers(workers: int | None) -> int:
    """Return the worker count to use, ``None`` meaning auto-detect."""
    if workers is None:
        return DEFAULT_WORKERS
    return max(1, int(workers))


def round_half_up(value: float) -> int:
    """
    Round to the nearest integer, halves away from zero.

    Python's built-in ``round`` uses banker's rounding, which would make
    ``round(2.5) == 2``. Frame counts follow the usual arithmetic rule.
    """
    return int(np.floor(value + 0.5))


def _quantize(data: np.ndarray, levels: int, dtype) -> np.ndarray:
    return np.round(np.clip(data, 0.0, 1.0) * levels).astype(dtype)


def to_uint8(data: np.ndarray) -> np.ndarray:
    """Quantize [0, 1] pixels to 8 bits; values outside the range saturate."""
    return _quantize(data, 255, np.uint8)


def to_uint16(data: np.ndarray) -> np.ndarray:
    """Quantize [0, 1] pixels to 16 bits; values outside the range saturate."""
    return _quantize(data, 65535, np.uint16)


def format_duration(seconds: float) -> str:
    """Stage timing for logs: ``"4.2s"``, ``"3m 07s"`` or ``"1h 02m 03s"``."""
    if seconds < 60:
        return f"{seconds:.1f}s"
    minutes, secs = divmod(int(round(seconds)), 60)
    hours, minutes = divmod(minutes, 60)
    if hours:
        return f"{hours}h {minutes:02d}m {secs:02d}s"
    return f"{minutes}m {secs:02d}s"
