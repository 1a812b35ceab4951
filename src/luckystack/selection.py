"""
Frame selection from quality records.

Selection is deterministic: frames are ranked by score with ties broken by
ascending frame index, and the result is always returned in timeline order.
"""

from __future__ import annotations

import logging
import math
from typing import Sequence

from .errors import InsufficientFramesError
from .quality import QualityRecord, rank_records
from .utils import round_half_up

logger = logging.getLogger(__name__)


def target_count(total: int, keep_fraction: float, min_frames: int, max_frames: int) -> int:
    """
    Number of frames to keep.

    ``clamp(round(total * keep_fraction), min_frames, max_frames)``, capped
    at ``total``.
    """
    count = round_half_up(total * keep_fraction)
    count = min(max(count, min_frames), max_frames)
    return min(count, total)


def _spread_pick(ranked: list[QualityRecord], count: int, window: int) -> list[QualityRecord]:
    """Best frame per time window until half the target, then rank order."""
    picked: list[QualityRecord] = []
    used_windows: set[int] = set()
    half = math.ceil(count / 2)

    for record in ranked:
        if len(picked) >= half:
            break
        bucket = record.frame_index // window
        if bucket in used_windows:
            continue
        used_windows.add(bucket)
        picked.append(record)

    # Fill by pure rank order (also covers a shortfall of windows)
    chosen = {r.frame_index for r in picked}
    for record in ranked:
        if len(picked) >= count:
            break
        if record.frame_index not in chosen:
            picked.append(record)
            chosen.add(record.frame_index)
    return picked


def select_frames(
    records: Sequence[QualityRecord],
    keep_fraction: float = 0.25,
    min_frames: int = 50,
    max_frames: int = 500,
    spread_window: int | None = None,
) -> list[int]:
    """
    Select the frames to stack.

    Parameters
    ----------
    records : sequence of QualityRecord
        Quality records of one analysis run.
    keep_fraction : float, default 0.25
        Fraction of records to keep.
    min_frames, max_frames : int
        Bounds on the number of frames kept.
    spread_window : int or None, default None
        If set, accept the best frame of each window of this many source
        frames first, so the selection does not cluster in one short burst
        of good seeing.

    Returns
    -------
    list[int]
        Selected frame indices, ascending.

    Raises
    ------
    InsufficientFramesError
        If ``records`` is empty.
    """
    total = len(records)
    if total == 0:
        raise InsufficientFramesError(0, max(1, min_frames), stage="selection")

    count = target_count(total, keep_fraction, min_frames, max_frames)
    ranked = rank_records(records)

    if spread_window:
        picked = _spread_pick(ranked, count, spread_window)
    else:
        picked = ranked[:count]

    selected = sorted(r.frame_index for r in picked)
    logger.info(
        "Selected %d/%d frames (%.1f%%)%s",
        len(selected),
        total,
        100 * len(selected) / total,
        f", spread window {spread_window}" if spread_window else "",
    )
    return selected
