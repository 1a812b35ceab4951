"""
Report generation for luckystack runs.

Produces:
- run_manifest.json: Machine-readable complete record of a pipeline run
- quality.png: Quality score curve over the frame sequence
"""

from __future__ import annotations

import json
import logging
from dataclasses import asdict
from pathlib import Path
from typing import Any, Sequence

import numpy as np

from .pipeline import PipelineResult
from .quality import QualityRecord
from .utils import get_platform_info, get_timestamp_iso, get_version

logger = logging.getLogger(__name__)

MANIFEST_FILE = "run_manifest.json"
QUALITY_PLOT_FILE = "quality.png"


def _to_native(obj: Any) -> Any:
    """Convert numpy types to native Python types for JSON serialization."""
    if isinstance(obj, np.floating):
        return float(obj)
    elif isinstance(obj, np.integer):
        return int(obj)
    elif isinstance(obj, np.bool_):
        return bool(obj)
    elif isinstance(obj, np.ndarray):
        return obj.tolist()
    elif isinstance(obj, dict):
        return {k: _to_native(v) for k, v in obj.items()}
    elif isinstance(obj, (list, tuple)):
        return [_to_native(v) for v in obj]
    return obj


def _serialize_alignment(index: int, alignment) -> dict[str, Any]:
    return {
        "frame_index": index,
        "dx": alignment.dx,
        "dy": alignment.dy,
        "confidence": alignment.confidence,
        "low_confidence": alignment.low_confidence,
        "local_applied": alignment.local_applied,
        "valid_tile_fraction": alignment.valid_tile_fraction,
    }


def _serialize_record(record: QualityRecord) -> dict[str, Any]:
    roi = record.roi
    return {
        "frame_index": record.frame_index,
        "score": record.normalized_score,
        "laplacian_variance": record.laplacian_variance,
        "gradient_energy": record.gradient_energy,
        "hf_energy": record.hf_energy,
        "roi": [roi.x, roi.y, roi.width, roi.height] if roi is not None else None,
    }


def build_manifest(result: PipelineResult) -> dict[str, Any]:
    """Assemble the JSON-compatible manifest of a run."""
    manifest = {
        "luckystack_version": get_version(),
        "timestamp": get_timestamp_iso(),
        "platform": get_platform_info(),
        "status": result.status.value,
        "error": str(result.error) if result.error is not None else None,
        "config": result.config.to_dict() if result.config is not None else {},
        "frames": {
            "analyzed": len(result.records),
            "selected": len(result.selected),
            "aligned": len(result.alignments),
            "local_aligned": sum(1 for a in result.alignments.values() if a.local_applied),
            "stacked": result.n_stacked,
        },
        "reference_frame": result.reference_index,
        "selected": result.selected,
        "statistics": asdict(result.statistics) if result.statistics is not None else None,
        "timings_s": result.timings,
        "diagnostic_counts": result.diagnostics_by_reason(),
        "diagnostics": [
            {"frame_index": d.frame_index, "reason": d.reason.value, "detail": d.detail}
            for d in result.diagnostics
        ],
        "alignments": [
            _serialize_alignment(i, a) for i, a in sorted(result.alignments.items())
        ],
        "scores": [_serialize_record(r) for r in result.records],
    }
    return _to_native(manifest)


def write_report(result: PipelineResult, output_dir: str | Path) -> Path:
    """
    Write the run manifest as JSON.

    Parameters
    ----------
    result : PipelineResult
        Result of a pipeline run (any status).
    output_dir : str or Path
        Output directory.

    Returns
    -------
    Path
        Path to written manifest file.
    """
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    path = output_dir / MANIFEST_FILE
    with open(path, "w") as f:
        json.dump(build_manifest(result), f, indent=2)
    logger.info("Wrote manifest: %s", path)
    return path


def plot_quality(
    records: Sequence[QualityRecord],
    path: str | Path,
    selected: Sequence[int] | None = None,
) -> Path:
    """
    Plot the quality score of every analyzed frame.

    Parameters
    ----------
    records : sequence of QualityRecord
        Scores of one analysis run.
    path : str or Path
        Output image (PNG).
    selected : sequence of int, optional
        Selected frame indices, highlighted on the curve.

    Returns
    -------
    Path
        The written path.
    """
    import matplotlib

    matplotlib.use("Agg")
    import matplotlib.pyplot as plt

    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    ordered = sorted(records, key=lambda r: r.frame_index)
    x = [r.frame_index for r in ordered]
    y = [r.normalized_score for r in ordered]

    fig, ax = plt.subplots(figsize=(10, 4))
    ax.plot(x, y, color="0.5", linewidth=0.8, label="score")
    if selected:
        chosen = set(selected)
        sx = [r.frame_index for r in ordered if r.frame_index in chosen]
        sy = [r.normalized_score for r in ordered if r.frame_index in chosen]
        ax.scatter(sx, sy, s=8, color="tab:orange", label=f"selected ({len(sx)})", zorder=3)
    ax.set_xlabel("Frame index")
    ax.set_ylabel("Normalized quality score")
    ax.set_ylim(-0.02, 1.02)
    ax.grid(alpha=0.3)
    ax.legend(loc="lower right")
    fig.tight_layout()
    fig.savefig(path, dpi=100)
    plt.close(fig)

    logger.info("Wrote quality plot: %s", path)
    return path


def write_all_reports(result: PipelineResult, output_dir: str | Path) -> dict[str, Path]:
    """Write the manifest and, when scores exist, the quality plot."""
    output_dir = Path(output_dir)
    paths = {"manifest": write_report(result, output_dir)}
    if result.records:
        paths["quality_plot"] = plot_quality(
            result.records, output_dir / QUALITY_PLOT_FILE, result.selected
        )
    return paths
