"""
Tests for the aligned frame store and quality record persistence.
"""

import numpy as np
import pytest

from luckystack.cache import AlignedFrameStore, load_records, save_records
from luckystack.frame import Rect
from luckystack.quality import QualityRecord


class TestAlignedFrameStore:
    """Tests for AlignedFrameStore."""

    def test_resident_buffers_are_read_only(self, rng):
        data = rng.uniform(0, 1, (8, 8)).astype(np.float32)
        with AlignedFrameStore(max_resident=2) as store:
            store.put(3, data)
            stored = store.get(3)
            assert np.array_equal(stored, data)
            assert not stored.flags.writeable
            assert 3 in store and len(store) == 1
            # The caller's buffer is not frozen
            assert data.flags.writeable

    def test_spills_beyond_capacity(self, rng, tmp_path):
        frames = rng.uniform(0, 1, (5, 6, 6)).astype(np.float32)
        with AlignedFrameStore(max_resident=2, spill_dir=tmp_path) as store:
            for i, f in enumerate(frames):
                store.put(i, f)
            assert store.n_spilled == 3
            assert store.indices() == [0, 1, 2, 3, 4]
            for i, f in enumerate(frames):
                assert np.array_equal(store.get(i), f)
            assert list(tmp_path.iterdir())

        assert list(tmp_path.iterdir()) == []

    def test_replace_keeps_residency(self, rng, tmp_path):
        with AlignedFrameStore(max_resident=1, spill_dir=tmp_path) as store:
            store.put(0, np.zeros((4, 4)))
            store.put(1, np.zeros((4, 4)))
            store.replace(0, np.ones((4, 4)))
            store.replace(1, np.full((4, 4), 2.0))

            assert store.n_spilled == 1
            assert np.all(store.get(0) == 1.0)
            assert np.all(store.get(1) == 2.0)

    def test_replace_missing_frame(self):
        with AlignedFrameStore() as store:
            with pytest.raises(KeyError):
                store.replace(0, np.zeros((2, 2)))

    def test_shape_mismatch(self):
        with AlignedFrameStore() as store:
            store.put(0, np.zeros((4, 4)))
            with pytest.raises(ValueError):
                store.put(1, np.zeros((4, 5)))

    def test_get_missing_frame(self):
        with AlignedFrameStore() as store:
            with pytest.raises(KeyError):
                store.get(9)

    def test_discard_and_close(self, tmp_path):
        store = AlignedFrameStore(max_resident=0, spill_dir=tmp_path)
        store.put(0, np.zeros((3, 3)))
        store.put(1, np.zeros((3, 3)))
        store.discard(0)
        assert store.indices() == [1]

        store.close()
        assert len(store) == 0
        assert store.shape is None


class TestRecordPersistence:
    """Tests for saving and loading quality records."""

    def test_save_and_load(self, tmp_path):
        records = [
            QualityRecord(0, 1.5, 0.25, 1.5, 0.3, 0.04, Rect(1, 2, 30, 40)),
            QualityRecord(4, 2.5, 1.0, 2.5, 0.6, 0.09, None),
        ]
        path = save_records(records, tmp_path / "scores.json", metadata={"n_frames": 5})

        assert load_records(path) == records

    def test_directory_path(self, tmp_path):
        records = [QualityRecord(2, 0.1, 0.5)]
        path = save_records(records, tmp_path)
        assert path.name == "scores.json"
        assert load_records(tmp_path) == records
