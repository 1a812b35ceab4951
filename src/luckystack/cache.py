"""
Caching of intermediate results for the luckystack pipeline.

Two kinds of artifacts are cached:

- Aligned frame buffers (``AlignedFrameStore``). Stacking reads every
  aligned frame several times; the store keeps them as decoded, aligned
  arrays so the frame source is never re-decoded. At most ``max_resident``
  buffers stay in memory, the rest are spilled to ``.npy`` files in a
  scratch directory and read back memory-mapped.
- Quality records (``save_records`` / ``load_records``), so a run can
  resume from a previous analysis without rescoring.
"""

from __future__ import annotations

import json
import logging
import shutil
import tempfile
from pathlib import Path

import numpy as np

from .frame import Rect
from .quality import QualityRecord
from .utils import __version__

logger = logging.getLogger(__name__)

SCORES_FILE = "scores.json"


class AlignedFrameStore:
    """
    Bounded-memory store of aligned frame buffers.

    Parameters
    ----------
    max_resident : int, default 64
        Maximum number of buffers held in memory.
    spill_dir : str or Path, optional
        Directory for spilled buffers. A private temporary directory is
        created on first spill when not given; it is removed by ``close()``.

    Example
    -------
    >>> with AlignedFrameStore(max_resident=2) as store:
    ...     store.put(0, frame0)
    ...     data = store.get(0)
    """

    def __init__(self, max_resident: int = 64, spill_dir: str | Path | None = None):
        self.max_resident = max(0, max_resident)
        self._spill_root = Path(spill_dir) if spill_dir is not None else None
        self._spill_path: Path | None = None
        self._owns_spill_path = False
        self._resident: dict[int, np.ndarray] = {}
        self._spilled: dict[int, Path] = {}
        self._versions: dict[int, int] = {}
        self._shape: tuple[int, ...] | None = None

    def __len__(self) -> int:
        return len(self._resident) + len(self._spilled)

    def __contains__(self, index: int) -> bool:
        return index in self._resident or index in self._spilled

    def __enter__(self) -> AlignedFrameStore:
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    @property
    def shape(self) -> tuple[int, ...] | None:
        """Shape shared by all stored buffers (None while empty)."""
        return self._shape

    @property
    def n_spilled(self) -> int:
        return len(self._spilled)

    def indices(self) -> list[int]:
        """Stored frame indices, ascending."""
        return sorted(set(self._resident) | set(self._spilled))

    def _spill_directory(self) -> Path:
        if self._spill_path is None:
            if self._spill_root is None:
                self._spill_path = Path(tempfile.mkdtemp(prefix="luckystack-"))
                self._owns_spill_path = True
            else:
                self._spill_root.mkdir(parents=True, exist_ok=True)
                self._spill_path = Path(tempfile.mkdtemp(prefix="aligned-", dir=self._spill_root))
                self._owns_spill_path = True
            logger.debug("Spilling aligned frames to %s", self._spill_path)
        return self._spill_path

    def _write_spill(self, index: int, data: np.ndarray) -> Path:
        # New file per version: a memory map of the previous one may still be in use
        version = self._versions.get(index, -1) + 1
        self._versions[index] = version
        path = self._spill_directory() / f"frame_{index:06d}_v{version}.npy"
        np.save(path, data)
        return path

    def put(self, index: int, data: np.ndarray) -> None:
        """Store a new aligned buffer."""
        arr = np.asarray(data, dtype=np.float32)
        if self._shape is None:
            self._shape = arr.shape
        elif arr.shape != self._shape:
            raise ValueError(f"Frame {index} has shape {arr.shape}, store holds {self._shape}")
        if index in self:
            self.discard(index)

        if len(self._resident) < self.max_resident:
            arr = arr.copy() if arr.flags.writeable else arr
            arr.setflags(write=False)
            self._resident[index] = arr
        else:
            self._spilled[index] = self._write_spill(index, arr)

    def replace(self, index: int, data: np.ndarray) -> None:
        """Replace the buffer of an already stored frame, keeping its residency."""
        if index not in self:
            raise KeyError(index)
        arr = np.asarray(data, dtype=np.float32)
        if arr.shape != self._shape:
            raise ValueError(f"Frame {index} has shape {arr.shape}, store holds {self._shape}")
        if index in self._resident:
            arr = arr.copy() if arr.flags.writeable else arr
            arr.setflags(write=False)
            self._resident[index] = arr
        else:
            old = self._spilled[index]
            self._spilled[index] = self._write_spill(index, arr)
            self._unlink(old)

    def get(self, index: int) -> np.ndarray:
        """Read-only buffer of frame ``index`` (memory-mapped when spilled)."""
        if index in self._resident:
            return self._resident[index]
        try:
            path = self._spilled[index]
        except KeyError:
            raise KeyError(f"Frame {index} is not in the aligned store") from None
        return np.load(path, mmap_mode="r")

    def discard(self, index: int) -> None:
        """Drop a frame from the store."""
        self._resident.pop(index, None)
        path = self._spilled.pop(index, None)
        if path is not None:
            self._unlink(path)

    def close(self) -> None:
        """Release every buffer and remove the scratch directory."""
        self._resident.clear()
        self._spilled.clear()
        self._versions.clear()
        if self._spill_path is not None and self._owns_spill_path:
            shutil.rmtree(self._spill_path, ignore_errors=True)
        self._spill_path = None
        self._shape = None

    @staticmethod
    def _unlink(path: Path) -> None:
        try:
            path.unlink()
        except OSError as e:
            # Still memory-mapped on some platforms; removed with the directory
            logger.debug("Could not remove %s yet: %s", path, e)


def _record_to_dict(record: QualityRecord) -> dict:
    d = {
        "frame_index": record.frame_index,
        "raw_metric": record.raw_metric,
        "normalized_score": record.normalized_score,
        "laplacian_variance": record.laplacian_variance,
        "gradient_energy": record.gradient_energy,
        "hf_energy": record.hf_energy,
        "roi": None,
    }
    if record.roi is not None:
        d["roi"] = [record.roi.x, record.roi.y, record.roi.width, record.roi.height]
    return d


def _dict_to_record(d: dict) -> QualityRecord:
    roi = Rect(*d["roi"]) if d.get("roi") is not None else None
    return QualityRecord(
        frame_index=int(d["frame_index"]),
        raw_metric=float(d["raw_metric"]),
        normalized_score=float(d["normalized_score"]),
        laplacian_variance=float(d.get("laplacian_variance", 0.0)),
        gradient_energy=float(d.get("gradient_energy", 0.0)),
        hf_energy=float(d.get("hf_energy", 0.0)),
        roi=roi,
    )


def save_records(
    records: list[QualityRecord],
    path: str | Path,
    metadata: dict | None = None,
) -> Path:
    """
    Save quality records to a JSON file.

    Parameters
    ----------
    records : list[QualityRecord]
        Records of one analysis run.
    path : str or Path
        Output file (a directory gets ``scores.json`` appended).
    metadata : dict, optional
        Extra information stored alongside (e.g. source path, frame count).
    """
    path = Path(path)
    if path.is_dir():
        path = path / SCORES_FILE
    path.parent.mkdir(parents=True, exist_ok=True)

    payload = {
        "version": __version__,
        "n_records": len(records),
        "metadata": metadata or {},
        "records": [_record_to_dict(r) for r in records],
    }
    with open(path, "w") as f:
        json.dump(payload, f, indent=2)
    logger.info("Saved %d quality records to %s", len(records), path)
    return path


def load_records(path: str | Path) -> list[QualityRecord]:
    """Load quality records written by ``save_records``."""
    path = Path(path)
    if path.is_dir():
        path = path / SCORES_FILE
    with open(path) as f:
        payload = json.load(f)
    records = [_dict_to_record(d) for d in payload.get("records", [])]
    logger.info("Loaded %d quality records from %s", len(records), path)
    return records
