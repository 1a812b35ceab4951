"""
Tests for frame selection.
"""

import pytest

from luckystack.errors import InsufficientFramesError
from luckystack.quality import QualityRecord
from luckystack.selection import select_frames, target_count


def make_records(scores):
    return [QualityRecord(i, 0.0, s) for i, s in enumerate(scores)]


class TestTargetCount:
    """Tests for the number of frames kept."""

    def test_minimum_applies(self):
        assert target_count(100, 0.25, 50, 500) == 50

    def test_round_half_up(self):
        assert target_count(10, 0.25, 1, 500) == 3
        assert target_count(6, 0.25, 1, 500) == 2

    def test_capped_at_total(self):
        assert target_count(20, 0.25, 50, 500) == 20

    def test_maximum_applies(self):
        assert target_count(10000, 0.5, 50, 500) == 500


class TestSelectFrames:
    """Tests for select_frames."""

    def test_best_frames_in_timeline_order(self):
        records = make_records([0.1, 0.9, 0.3, 0.8, 0.5, 0.7])
        assert select_frames(records, keep_fraction=0.5, min_frames=1) == [1, 3, 5]

    def test_min_frames_raises_count(self):
        records = make_records([i / 100 for i in range(100)])
        selected = select_frames(records, keep_fraction=0.25, min_frames=50)
        assert len(selected) == 50
        assert selected == list(range(50, 100))

    def test_fewer_records_than_minimum(self):
        records = make_records([0.5] * 20)
        assert select_frames(records, min_frames=50) == list(range(20))

    def test_ties_prefer_lower_index(self):
        records = make_records([0.5, 0.9, 0.5, 0.5])
        assert select_frames(records, keep_fraction=0.5, min_frames=1) == [0, 1]

    def test_deterministic(self):
        records = make_records([0.3, 0.3, 0.7, 0.1, 0.7, 0.2, 0.9, 0.3])
        first = select_frames(records, keep_fraction=0.5, min_frames=1)
        assert select_frames(list(reversed(records)), keep_fraction=0.5, min_frames=1) == first

    def test_spread_window(self):
        """Half the target comes from distinct windows, the rest by rank."""
        records = make_records([1.0 - i / 100 for i in range(40)])
        selected = select_frames(records, keep_fraction=0.1, min_frames=1, spread_window=10)
        assert selected == [0, 1, 2, 10]

    def test_spread_window_larger_than_sequence(self):
        records = make_records([1.0 - i / 100 for i in range(40)])
        plain = select_frames(records, keep_fraction=0.1, min_frames=1)
        spread = select_frames(records, keep_fraction=0.1, min_frames=1, spread_window=1000)
        assert spread == plain

    def test_empty_records_raise(self):
        with pytest.raises(InsufficientFramesError):
            select_frames([], min_frames=10)
