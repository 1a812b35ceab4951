"""
Pytest configuration and fixtures.
"""

import numpy as np
import pytest
from scipy import ndimage


@pytest.fixture
def rng():
    """Seeded random generator."""
    return np.random.default_rng(12345)


@pytest.fixture
def textured_image():
    """Create a smooth random texture in [0, 1]."""
    def _create(height=128, width=128, sigma=1.5, seed=7, periodic=False):
        gen = np.random.default_rng(seed)
        noise = gen.standard_normal((height, width))
        mode = "wrap" if periodic else "reflect"
        smooth = ndimage.gaussian_filter(noise, sigma, mode=mode)
        smooth = (smooth - smooth.min()) / (smooth.max() - smooth.min())
        return smooth.astype(np.float32)

    return _create


def _planet(size, radius, center):
    """Banded disc on a dark sky."""
    yy, xx = np.mgrid[0:size, 0:size].astype(np.float64)
    r = np.hypot(yy - center[0], xx - center[1])
    disc = np.clip(radius - r, 0.0, 1.0)
    bands = 0.55 + 0.2 * np.sin((yy - center[0]) * 2 * np.pi / 9.0)
    bands += 0.1 * np.cos((xx - center[1]) * 2 * np.pi / 13.0) * np.sin((yy - center[0]) * 2 * np.pi / 5.0)
    return 0.03 + 0.8 * disc * bands


@pytest.fixture
def planet_frames():
    """Create a burst of shifted, variably blurred, noisy planet frames."""
    def _create(n_frames=30, size=96, radius=30, seed=3, max_shift=2.0, noise=0.01):
        gen = np.random.default_rng(seed)
        c = size / 2.0
        frames = []
        blurs = []
        for _ in range(n_frames):
            dy, dx = gen.uniform(-max_shift, max_shift, size=2)
            blur = gen.uniform(0.3, 2.5)
            image = _planet(size, radius, (c + dy, c + dx))
            image = ndimage.gaussian_filter(image, blur)
            image = image + gen.normal(0.0, noise, image.shape)
            frames.append(np.clip(image, 0.0, 1.0).astype(np.float32))
            blurs.append(blur)
        return frames, blurs

    return _create


@pytest.fixture
def write_png_frames(tmp_path):
    """Write frames as numbered 8-bit PNG files and return the directory."""
    import imageio.v3 as iio

    def _write(frames, name="frames"):
        folder = tmp_path / name
        folder.mkdir()
        for i, frame in enumerate(frames):
            data = np.round(np.clip(frame, 0, 1) * 255).astype(np.uint8)
            iio.imwrite(folder / f"frame_{i:04d}.png", data)
        return folder

    return _write
