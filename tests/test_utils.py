"""
Tests for the utility helpers.
"""

import numpy as np

from luckystack.utils import format_duration, resolve_workers, round_half_up, to_uint8, to_uint16


class TestConversions:
    """Tests for integer pixel conversion."""

    def test_to_uint8_saturates(self):
        out = to_uint8(np.array([-0.5, 0.0, 0.5, 1.0, 2.0]))
        assert out.dtype == np.uint8
        assert out.tolist() == [0, 0, 128, 255, 255]

    def test_to_uint16_full_range(self):
        out = to_uint16(np.array([0.0, 0.5, 1.0], dtype=np.float32))
        assert out.dtype == np.uint16
        assert out.tolist() == [0, 32768, 65535]


class TestHelpers:
    """Tests for rounding, worker and duration helpers."""

    def test_round_half_up(self):
        assert [round_half_up(v) for v in (0.5, 1.5, 2.5, 2.49)] == [1, 2, 3, 2]

    def test_resolve_workers(self):
        assert resolve_workers(0) == 1
        assert resolve_workers(3) == 3
        assert resolve_workers(None) >= 1

    def test_format_duration(self):
        assert format_duration(4.24) == "4.2s"
        assert format_duration(187) == "3m 07s"
        assert format_duration(3723) == "1h 02m 03s"
