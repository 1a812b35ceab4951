"""
Frame and region-of-interest types shared by every pipeline stage.

Frames carry read-only float32 pixel data normalized to the [0, 1] working
range. Stages never modify a frame in place; they build a new one with
``Frame.with_data``.
"""

from __future__ import annotations

from dataclasses import dataclass, replace

import numpy as np


@dataclass(frozen=True)
class Rect:
    """Axis-aligned rectangle in pixel coordinates."""

    x: int
    y: int
    width: int
    height: int

    @property
    def slices(self) -> tuple[slice, slice]:
        """(row, column) slices selecting this rectangle from an array."""
        return slice(self.y, self.y + self.height), slice(self.x, self.x + self.width)

    @property
    def area(self) -> int:
        return self.width * self.height

    def clip_to(self, shape: tuple[int, ...]) -> Rect:
        """Clip the rectangle to an image of the given (H, W, ...) shape."""
        h, w = shape[:2]
        x0 = min(max(self.x, 0), w)
        y0 = min(max(self.y, 0), h)
        x1 = min(max(self.x + self.width, 0), w)
        y1 = min(max(self.y + self.height, 0), h)
        return Rect(x0, y0, x1 - x0, y1 - y0)

    def pad(self, fraction: float, min_pixels: int = 0) -> Rect:
        """Grow the rectangle on every side by a fraction of its size."""
        px = max(int(round(self.width * fraction)), min_pixels)
        py = max(int(round(self.height * fraction)), min_pixels)
        return Rect(self.x - px, self.y - py, self.width + 2 * px, self.height + 2 * py)

    @classmethod
    def full(cls, shape: tuple[int, ...]) -> Rect:
        """Rectangle covering a whole image."""
        return cls(0, 0, int(shape[1]), int(shape[0]))


def normalize_pixels(data: np.ndarray) -> tuple[np.ndarray, int]:
    """
    Convert raw pixel data to float32 in the [0, 1] working range.

    Parameters
    ----------
    data : np.ndarray
        Raw pixel buffer, (H, W) or (H, W, C).

    Returns
    -------
    tuple[np.ndarray, int]
        (normalized_data, bit_depth). Float input is kept as-is and
        reported with a bit depth of 32.
    """
    arr = np.asarray(data)
    if arr.dtype == np.uint8:
        return arr.astype(np.float32) / 255.0, 8
    if arr.dtype == np.uint16:
        return arr.astype(np.float32) / 65535.0, 16
    if np.issubdtype(arr.dtype, np.integer):
        info = np.iinfo(arr.dtype)
        return (arr.astype(np.float64) / float(info.max)).astype(np.float32), info.bits
    return arr.astype(np.float32), 32


def luminance(data: np.ndarray) -> np.ndarray:
    """
    Luminance of a mono or colour image.

    Colour images use the ITU-R BT.601 weights; images with other channel
    counts are averaged.
    """
    arr = np.asarray(data, dtype=np.float32)
    if arr.ndim == 2:
        return arr
    if arr.ndim == 3 and arr.shape[2] == 1:
        return arr[:, :, 0]
    if arr.ndim == 3 and arr.shape[2] >= 3:
        return (0.299 * arr[:, :, 0] + 0.587 * arr[:, :, 1] + 0.114 * arr[:, :, 2]).astype(np.float32)
    if arr.ndim == 3:
        return np.mean(arr, axis=2).astype(np.float32)
    raise ValueError(f"Unsupported image shape: {arr.shape}")


@dataclass(frozen=True)
class Frame:
    """
    Immutable pixel buffer with its position in the source sequence.

    Attributes
    ----------
    data : np.ndarray
        Read-only float32 array, (H, W) or (H, W, C), values in [0, 1].
    index : int
        Index of the frame in the original sequence.
    bit_depth : int
        Bit depth of the source pixels (8, 16 or 32 for float sources).
    roi : Rect or None
        Region of interest, when known.
    """

    data: np.ndarray
    index: int
    bit_depth: int = 32
    roi: Rect | None = None

    def __post_init__(self) -> None:
        arr = np.asarray(self.data, dtype=np.float32)
        if arr.ndim not in (2, 3):
            raise ValueError(f"Frame data must be 2D or 3D, got shape {arr.shape}")
        if arr is self.data and arr.flags.writeable:
            arr = arr.copy()
        arr.setflags(write=False)
        object.__setattr__(self, "data", arr)

    @classmethod
    def from_array(cls, data: np.ndarray, index: int, roi: Rect | None = None) -> Frame:
        """Build a frame from raw pixels, normalizing to the working range."""
        normalized, bit_depth = normalize_pixels(data)
        return cls(data=normalized, index=index, bit_depth=bit_depth, roi=roi)

    @property
    def height(self) -> int:
        return self.data.shape[0]

    @property
    def width(self) -> int:
        return self.data.shape[1]

    @property
    def channels(self) -> int:
        return 1 if self.data.ndim == 2 else self.data.shape[2]

    @property
    def shape(self) -> tuple[int, ...]:
        return self.data.shape

    def luminance(self) -> np.ndarray:
        """Luminance plane of the frame (float32, shape (H, W))."""
        return luminance(self.data)

    def with_data(self, data: np.ndarray) -> Frame:
        """New frame with the same index and metadata but different pixels."""
        return replace(self, data=np.asarray(data, dtype=np.float32))

    def with_roi(self, roi: Rect | None) -> Frame:
        return replace(self, roi=roi)
