"""
Frame sources and image sinks.

The pipeline core never parses containers or encodes files itself; it pulls
frames through the ``FrameSource`` protocol and hands the final image to an
``ImageSink``. This module provides the adapters used by the CLI:

- In-memory arrays (``ArrayFrameSource``)
- Directories of still images, e.g. frames exported from a video
  (``ImageSequenceSource``): FITS via astropy, PNG/TIFF/JPEG via imageio
- File output (``FileImageSink``): PNG, 16-bit TIFF, float FITS
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Protocol, Sequence, runtime_checkable

import imageio.v3 as iio
import numpy as np
import tifffile
from astropy.io import fits

from .errors import FrameDecodeError
from .frame import Frame
from .utils import to_uint8, to_uint16

logger = logging.getLogger(__name__)

FITS_EXTENSIONS = (".fits", ".fit", ".fts")
IMAGE_EXTENSIONS = (".png", ".tif", ".tiff", ".jpg", ".jpeg", ".bmp") + FITS_EXTENSIONS


@runtime_checkable
class FrameSource(Protocol):
    """Pull interface to a decoded frame sequence."""

    def __len__(self) -> int: ...

    def get_frame(self, index: int) -> Frame:
        """Return frame ``index`` or raise FrameDecodeError."""
        ...


@runtime_checkable
class ImageSink(Protocol):
    """Receives the single final image of a run."""

    def write(self, image: np.ndarray) -> None: ...


class ArrayFrameSource:
    """
    Frame source backed by in-memory arrays.

    Parameters
    ----------
    frames : sequence of np.ndarray or np.ndarray
        List of (H, W[, C]) arrays or a stacked (N, H, W[, C]) array.
    """

    def __init__(self, frames: Sequence[np.ndarray] | np.ndarray):
        self._frames = frames

    def __len__(self) -> int:
        return len(self._frames)

    def get_frame(self, index: int) -> Frame:
        if not 0 <= index < len(self._frames):
            raise FrameDecodeError(index, "index out of range")
        return Frame.from_array(np.asarray(self._frames[index]), index=index)


def list_frames(
    directory: str | Path,
    extensions: Sequence[str] = IMAGE_EXTENSIONS,
) -> list[Path]:
    """
    Discover image files in a directory.

    Parameters
    ----------
    directory : str or Path
        Folder containing one image per frame.
    extensions : sequence of str
        Accepted (lower-case) file extensions.

    Returns
    -------
    list[Path]
        Files sorted by name, which is the frame order for numbered exports.
    """
    folder = Path(directory)
    if not folder.is_dir():
        raise ValueError(f"Frame directory is not a directory: {folder}")

    paths = sorted(p for p in folder.iterdir() if p.is_file() and p.suffix.lower() in extensions)
    logger.info("Discovered %d frames in %s", len(paths), folder.name)
    return paths


def read_image(path: str | Path) -> np.ndarray:
    """
    Read one image file as a raw array.

    FITS files are read with astropy (BZERO/BSCALE applied, 16-bit data
    returned as uint16); everything else goes through imageio. Planar FITS
    cubes (C, H, W) are returned channel-last.
    """
    path = Path(path)
    if path.suffix.lower() in FITS_EXTENSIONS:
        with fits.open(path) as hdul:
            data = hdul[0].data
            if data is None:
                raise ValueError(f"No image data in primary HDU of {path.name}")
            bitpix = hdul[0].header.get("BITPIX", -32)
            if data.ndim == 3 and data.shape[0] in (3, 4):
                data = np.moveaxis(data, 0, -1)
            if bitpix == 16:
                return np.clip(data, 0, 65535).astype(np.uint16)
            if bitpix == 8:
                return data.astype(np.uint8)
            return np.asarray(data, dtype=np.float32)
    data = iio.imread(path)
    if data.ndim == 3 and data.shape[2] == 4:
        data = data[:, :, :3]  # Drop alpha
    return data


class ImageSequenceSource:
    """
    Frame source reading one image file per frame.

    Parameters
    ----------
    paths : str, Path or sequence of paths
        A directory (files discovered with ``list_frames``) or an explicit
        ordered list of files.
    """

    def __init__(self, paths: str | Path | Sequence[str | Path]):
        if isinstance(paths, (str, Path)):
            self.paths = list_frames(paths)
        else:
            self.paths = [Path(p) for p in paths]

    def __len__(self) -> int:
        return len(self.paths)

    def get_frame(self, index: int) -> Frame:
        if not 0 <= index < len(self.paths):
            raise FrameDecodeError(index, "index out of range")
        path = self.paths[index]
        try:
            data = read_image(path)
        except (OSError, ValueError) as e:
            raise FrameDecodeError(index, f"{path.name}: {e}") from e
        return Frame.from_array(data, index=index)


def write_image(
    path: str | Path,
    image: np.ndarray,
    bit_depth: int = 16,
    overwrite: bool = True,
) -> Path:
    """
    Write a [0, 1] float image to disk.

    Parameters
    ----------
    path : str or Path
        Output path. The extension selects the format: ``.png`` (8 or 16
        bit), ``.tif``/``.tiff`` (8 or 16 bit, via tifffile), ``.fits``
        (float32, channels first), anything else through imageio as 8 bit.
    image : np.ndarray
        (H, W) or (H, W, C) float image.
    bit_depth : int, default 16
        8 or 16 for integer formats.
    overwrite : bool, default True
        Whether to replace an existing file.

    Returns
    -------
    Path
        The written path.
    """
    path = Path(path)
    if path.exists() and not overwrite:
        raise FileExistsError(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    suffix = path.suffix.lower()

    if suffix in FITS_EXTENSIONS:
        data = np.asarray(image, dtype=np.float32)
        if data.ndim == 3:
            data = np.moveaxis(data, -1, 0)
        fits.PrimaryHDU(data=data).writeto(path, overwrite=True)
    elif suffix in (".tif", ".tiff"):
        data = to_uint16(image) if bit_depth == 16 else to_uint8(image)
        tifffile.imwrite(path, data, photometric="rgb" if data.ndim == 3 else "minisblack")
    elif suffix == ".png":
        if bit_depth == 16 and np.ndim(image) == 3:
            # Pillow cannot encode 16-bit colour PNG
            logger.warning("16-bit colour PNG not supported, writing %s as 8-bit", path.name)
            bit_depth = 8
        data = to_uint16(image) if bit_depth == 16 else to_uint8(image)
        iio.imwrite(path, data)
    else:
        iio.imwrite(path, to_uint8(image))

    logger.info("Wrote %s", path)
    return path


class FileImageSink:
    """Image sink writing the final image to a file."""

    def __init__(self, path: str | Path, bit_depth: int = 16):
        self.path = Path(path)
        self.bit_depth = bit_depth

    def write(self, image: np.ndarray) -> None:
        write_image(self.path, image, bit_depth=self.bit_depth)
