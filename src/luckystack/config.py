"""
Configuration dataclasses for the luckystack pipeline.

Also holds the per-frame diagnostic records and the named presets that
bundle settings for common targets.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field, replace
from enum import Enum
from typing import Any, Literal

from .errors import ConfigurationError

VALID_TILE_SIZES = (16, 32, 48, 64)
N_WAVELET_LAYERS = 5


class DiagnosticReason(Enum):
    """Reason codes for per-frame problems recorded during a run."""

    DECODE_FAILED = "decode_failed"  # Frame source could not deliver the frame
    SCORING_FAILED = "scoring_failed"  # Quality metrics could not be computed
    ALIGNMENT_FAILED = "alignment_failed"  # Frame excluded from the stack
    LOW_CONFIDENCE = "low_confidence"  # Kept unshifted, weighted down
    LOCAL_ALIGN_SKIPPED = "local_align_skipped"  # Passed through globally aligned only


@dataclass
class Diagnostic:
    """Record of a recoverable per-frame problem."""

    frame_index: int
    reason: DiagnosticReason
    detail: str = ""  # Optional additional info (e.g., exception message)


@dataclass
class StackConfig:
    """
    Configuration for the lucky-imaging pipeline.

    All parameters are explicitly documented and have sensible defaults.
    """

    # --- Frame selection ---
    keep_fraction: float = 0.25
    """Fraction of analyzed frames to keep after quality ranking (0.0-1.0]."""

    min_frames: int = 50
    """Minimum number of frames to stack."""

    max_frames: int = 500
    """Maximum number of frames to stack."""

    sample_step: int = 1
    """Analyze every Nth frame of the source."""

    spread_window: int | None = None
    """Window length (source frames) for temporal-spread selection. None = pure rank order."""

    # --- Quality scoring ---
    quality_weights: tuple[float, float, float] = (0.4, 0.3, 0.3)
    """Weights of (Laplacian variance, gradient energy, high-frequency energy).
    Provisional defaults, not tuned against labelled data."""

    hf_band: tuple[float, float] = (0.3, 0.8)
    """Inner and outer radius of the high-frequency annulus, as fractions of Nyquist."""

    roi_interval: int = 30
    """Re-detect the region of interest every N analyzed frames."""

    roi_padding: float = 0.15
    """Padding added around the detected subject, as a fraction of its size."""

    use_roi: bool = True
    """Restrict scoring and global correlation to the detected region of interest."""

    # --- Global alignment ---
    min_align_confidence: float = 0.1
    """Phase-correlation peak below which a frame is kept unshifted with confidence 0."""

    # --- Local alignment ---
    enable_local_align: bool = True
    """Enable tile-based local alignment (slower, better for large discs)."""

    tile_size: int = 32
    """Tile size for local alignment: 16, 32, 48 or 64."""

    local_confidence_floor: float = 0.5
    """Minimum normalized cross-correlation peak for a tile match to count."""

    local_min_valid_fraction: float = 0.5
    """Fraction of informative tiles that must match for the warp to be applied."""

    local_interpolation: Literal["bicubic", "thin_plate"] = "bicubic"
    """Sparse-to-dense interpolation of tile displacements."""

    resampling: Literal["lanczos3", "cubic"] = "lanczos3"
    """Resampling kernel used to apply the dense warp field."""

    # --- Stacking ---
    sigma: float = 2.5
    """Sigma threshold for sigma-clipped mean."""

    sigma_iterations: int = 2
    """Number of sigma clipping iterations."""

    weight_floor: float = 0.1
    """Lowest relative weight given to a frame's score or alignment confidence."""

    # --- Sharpening ---
    sharpen: bool = True
    """Apply wavelet sharpening to the stacked image."""

    wavelet_gains: tuple[float, ...] = (0.8, 1.5, 2.0, 1.8, 1.2)
    """Per-layer gains, finest layer first."""

    # --- Resources ---
    chunk_size: int = 64
    """Maximum number of decoded/aligned frames held in memory at once."""

    band_rows: int = 64
    """Rows per band for parallel stacking."""

    workers: int | None = None
    """Number of worker threads. None = auto-detect (CPU count - 1)."""

    progress_every: int = 50
    """Emit a progress event every N frames."""

    def validate(self) -> None:
        """Validate configuration parameters."""
        if not 0.0 < self.keep_fraction <= 1.0:
            raise ConfigurationError(f"keep_fraction must be in (0, 1], got {self.keep_fraction}")
        if self.min_frames < 1:
            raise ConfigurationError(f"min_frames must be >= 1, got {self.min_frames}")
        if self.max_frames < self.min_frames:
            raise ConfigurationError(
                f"max_frames ({self.max_frames}) must be >= min_frames ({self.min_frames})"
            )
        if self.sample_step < 1:
            raise ConfigurationError(f"sample_step must be >= 1, got {self.sample_step}")
        if self.spread_window is not None and self.spread_window < 1:
            raise ConfigurationError(f"spread_window must be >= 1, got {self.spread_window}")
        if len(self.quality_weights) != 3 or any(w < 0 for w in self.quality_weights):
            raise ConfigurationError(
                f"quality_weights must be three non-negative numbers, got {self.quality_weights}"
            )
        if sum(self.quality_weights) <= 0:
            raise ConfigurationError("quality_weights must not all be zero")
        inner, outer = self.hf_band
        if not 0.0 <= inner < outer <= 1.0:
            raise ConfigurationError(f"hf_band must satisfy 0 <= inner < outer <= 1, got {self.hf_band}")
        if self.roi_interval < 1:
            raise ConfigurationError(f"roi_interval must be >= 1, got {self.roi_interval}")
        if self.roi_padding < 0:
            raise ConfigurationError(f"roi_padding must be >= 0, got {self.roi_padding}")
        if not 0.0 <= self.min_align_confidence < 1.0:
            raise ConfigurationError(
                f"min_align_confidence must be in [0, 1), got {self.min_align_confidence}"
            )
        if self.tile_size not in VALID_TILE_SIZES:
            raise ConfigurationError(f"tile_size must be one of {VALID_TILE_SIZES}, got {self.tile_size}")
        if not -1.0 <= self.local_confidence_floor <= 1.0:
            raise ConfigurationError(
                f"local_confidence_floor must be in [-1, 1], got {self.local_confidence_floor}"
            )
        if not 0.0 < self.local_min_valid_fraction <= 1.0:
            raise ConfigurationError(
                f"local_min_valid_fraction must be in (0, 1], got {self.local_min_valid_fraction}"
            )
        if self.local_interpolation not in ("bicubic", "thin_plate"):
            raise ConfigurationError(f"Unknown local_interpolation: {self.local_interpolation}")
        if self.resampling not in ("lanczos3", "cubic"):
            raise ConfigurationError(f"Unknown resampling: {self.resampling}")
        if self.sigma <= 0:
            raise ConfigurationError(f"sigma must be positive, got {self.sigma}")
        if self.sigma_iterations < 0:
            raise ConfigurationError(f"sigma_iterations must be >= 0, got {self.sigma_iterations}")
        if not 0.0 <= self.weight_floor <= 1.0:
            raise ConfigurationError(f"weight_floor must be in [0, 1], got {self.weight_floor}")
        if len(self.wavelet_gains) != N_WAVELET_LAYERS:
            raise ConfigurationError(
                f"wavelet_gains must have {N_WAVELET_LAYERS} entries, got {len(self.wavelet_gains)}"
            )
        if self.chunk_size < 1:
            raise ConfigurationError(f"chunk_size must be >= 1, got {self.chunk_size}")
        if self.band_rows < 1:
            raise ConfigurationError(f"band_rows must be >= 1, got {self.band_rows}")
        if self.workers is not None and self.workers < 1:
            raise ConfigurationError(f"workers must be >= 1, got {self.workers}")
        if self.progress_every < 1:
            raise ConfigurationError(f"progress_every must be >= 1, got {self.progress_every}")

    def to_dict(self) -> dict[str, Any]:
        """JSON-compatible dictionary of all settings."""
        d = asdict(self)
        d["quality_weights"] = list(self.quality_weights)
        d["hf_band"] = list(self.hf_band)
        d["wavelet_gains"] = list(self.wavelet_gains)
        return d

    @classmethod
    def from_preset(cls, name: str, **overrides: Any) -> StackConfig:
        """
        Build a configuration from a named preset.

        Parameters
        ----------
        name : str
            One of the keys of ``PRESETS``.
        **overrides
            Fields that replace the preset values.
        """
        try:
            preset = PRESETS[name]
        except KeyError:
            raise ConfigurationError(
                f"Unknown preset '{name}'. Available: {', '.join(sorted(PRESETS))}"
            ) from None
        return replace(preset, **overrides)


# Wavelet layer gains, finest layer first
WAVELET_PRESETS: dict[str, tuple[float, ...]] = {
    "aggressive": (0.6, 2.0, 2.5, 2.2, 1.5),
    "moderate": (0.8, 1.5, 2.0, 1.8, 1.2),
    "conservative": (0.5, 1.2, 1.5, 1.3, 1.0),
    "solar": (0.7, 1.8, 2.2, 1.5, 1.0),
    "lunar": (0.6, 1.3, 1.8, 1.5, 1.2),
    "none": (1.0, 1.0, 1.0, 1.0, 1.0),
}

# Convenience bundles for common targets; not part of the core contract
PRESETS: dict[str, StackConfig] = {
    "jupiter_saturn": StackConfig(
        keep_fraction=0.25, tile_size=32, wavelet_gains=WAVELET_PRESETS["aggressive"]
    ),
    "mars": StackConfig(
        keep_fraction=0.30, tile_size=32, wavelet_gains=WAVELET_PRESETS["moderate"]
    ),
    "moon": StackConfig(
        keep_fraction=0.15, tile_size=48, wavelet_gains=WAVELET_PRESETS["conservative"]
    ),
    "sun": StackConfig(
        keep_fraction=0.20, tile_size=32, wavelet_gains=WAVELET_PRESETS["solar"]
    ),
    # High-contrast discs tolerate tighter clipping and stronger fine layers
    "high_contrast": StackConfig(
        keep_fraction=0.20, sigma=2.0, wavelet_gains=WAVELET_PRESETS["aggressive"]
    ),
    # Low-contrast targets need more frames and gentler sharpening
    "low_contrast": StackConfig(
        keep_fraction=0.40, sigma=3.0, tile_size=48, wavelet_gains=WAVELET_PRESETS["conservative"]
    ),
}
