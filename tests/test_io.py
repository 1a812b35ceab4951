"""
Tests for frame sources and image output.
"""

import imageio.v3 as iio
import numpy as np
import pytest
import tifffile
from astropy.io import fits

from luckystack.errors import FrameDecodeError
from luckystack.frame import Frame
from luckystack.io import (
    ArrayFrameSource,
    FileImageSink,
    FrameSource,
    ImageSequenceSource,
    list_frames,
    read_image,
    write_image,
)


class TestArrayFrameSource:
    """Tests for in-memory frame sources."""

    def test_uint8_normalized(self):
        source = ArrayFrameSource([np.full((4, 4), 255, dtype=np.uint8)])
        frame = source.get_frame(0)
        assert isinstance(source, FrameSource)
        assert frame.bit_depth == 8
        assert np.allclose(frame.data, 1.0)

    def test_cube(self, rng):
        cube = rng.uniform(0, 1, (3, 5, 5)).astype(np.float32)
        source = ArrayFrameSource(cube)
        assert len(source) == 3
        assert np.array_equal(source.get_frame(2).data, cube[2])
        assert source.get_frame(2).index == 2

    def test_out_of_range(self):
        with pytest.raises(FrameDecodeError):
            ArrayFrameSource([np.zeros((2, 2))]).get_frame(1)


class TestFrame:
    """Tests for the Frame type."""

    def test_read_only_copy(self):
        data = np.zeros((3, 3), dtype=np.float32)
        frame = Frame(data, index=0)
        assert not frame.data.flags.writeable
        data[0, 0] = 1.0
        assert frame.data[0, 0] == 0.0

    def test_luminance_of_color(self):
        rgb = np.zeros((2, 2, 3), dtype=np.float32)
        rgb[:, :, 1] = 1.0
        assert np.allclose(Frame(rgb, index=0).luminance(), 0.587)

    def test_invalid_shape(self):
        with pytest.raises(ValueError):
            Frame(np.zeros(5), index=0)


class TestImageFiles:
    """Tests for reading and writing image files."""

    def test_png_8bit(self, tmp_path, textured_image):
        image = textured_image(16, 16)
        path = write_image(tmp_path / "out.png", image, bit_depth=8)
        data = read_image(path)
        assert data.dtype == np.uint8
        assert np.allclose(data / 255.0, image, atol=1 / 255)

    def test_tiff_16bit(self, tmp_path, textured_image):
        image = textured_image(16, 16)
        path = write_image(tmp_path / "out.tif", image)
        data = tifffile.imread(path)
        assert data.dtype == np.uint16
        assert np.allclose(data / 65535.0, image, atol=1 / 65535)

    def test_color_tiff(self, tmp_path, rng):
        image = rng.uniform(0, 1, (8, 8, 3)).astype(np.float32)
        path = write_image(tmp_path / "rgb.tiff", image)
        assert tifffile.imread(path).shape == (8, 8, 3)

    def test_fits_roundtrip(self, tmp_path, rng):
        image = rng.uniform(0, 1, (10, 12)).astype(np.float32)
        path = write_image(tmp_path / "out.fits", image)
        assert np.allclose(read_image(path), image)

    def test_color_fits_channels_last(self, tmp_path, rng):
        image = rng.uniform(0, 1, (10, 12, 3)).astype(np.float32)
        path = write_image(tmp_path / "rgb.fits", image)
        assert fits.getdata(path).shape == (3, 10, 12)
        assert np.allclose(read_image(path), image)

    def test_16bit_color_png_written_as_8bit(self, tmp_path, rng):
        image = rng.uniform(0, 1, (8, 8, 3)).astype(np.float32)
        path = write_image(tmp_path / "rgb.png", image, bit_depth=16)
        assert iio.imread(path).dtype == np.uint8

    def test_no_overwrite(self, tmp_path):
        path = write_image(tmp_path / "a.png", np.zeros((4, 4)), bit_depth=8)
        with pytest.raises(FileExistsError):
            write_image(path, np.zeros((4, 4)), overwrite=False)

    def test_sink(self, tmp_path):
        sink = FileImageSink(tmp_path / "sub" / "final.tif")
        sink.write(np.full((4, 4), 0.5, dtype=np.float32))
        assert tifffile.imread(tmp_path / "sub" / "final.tif")[0, 0] == 32768


class TestImageSequenceSource:
    """Tests for directory frame sources."""

    def test_reads_directory_in_name_order(self, write_png_frames, rng):
        frames = [np.full((6, 6), v, dtype=np.float32) for v in (0.2, 0.4, 0.6)]
        folder = write_png_frames(frames)
        (folder / "notes.txt").write_text("not a frame")

        source = ImageSequenceSource(folder)

        assert len(source) == 3
        assert len(list_frames(folder)) == 3
        frame = source.get_frame(1)
        assert frame.bit_depth == 8
        assert np.allclose(frame.data, 0.4, atol=1 / 255)

    def test_unreadable_file(self, tmp_path):
        bad = tmp_path / "frame_0000.png"
        bad.write_bytes(b"not a png")
        source = ImageSequenceSource([bad])
        with pytest.raises(FrameDecodeError):
            source.get_frame(0)

    def test_not_a_directory(self, tmp_path):
        with pytest.raises(ValueError):
            list_frames(tmp_path / "missing")
