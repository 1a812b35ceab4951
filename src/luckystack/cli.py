"""
Command-line interface for the luckystack pipeline.

Usage:
    python -m luckystack stack <frames_dir> [options]
    luckystack stack <frames_dir> [options]
    luckystack analyze <frames_dir> [options]
    luckystack presets
"""

from __future__ import annotations

import argparse
import logging
import sys
from dataclasses import replace
from pathlib import Path

from .cache import load_records, save_records
from .cli_output import (
    Colors,
    StageProgressBars,
    print_banner,
    print_error,
    print_header,
    print_info,
    print_metric,
    print_path,
    print_success,
    print_summary_box,
    print_warning,
    setup_terminal,
)
from .config import PRESETS, WAVELET_PRESETS, StackConfig
from .errors import ConfigurationError
from .io import FileImageSink, ImageSequenceSource
from .pipeline import LuckyImagingPipeline, PipelineState
from .quality import QualityScorer, rank_records, score_statistics
from .report import plot_quality, write_all_reports
from .utils import format_duration, get_platform_info, get_version

logger = logging.getLogger(__name__)


def setup_logging(verbose: bool = False) -> None:
    """Configure logging for CLI."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s | %(levelname)-7s | %(message)s",
        datefmt="%H:%M:%S",
    )


def _parse_gains(text: str) -> tuple[float, ...]:
    """Wavelet gains from a preset name or a comma-separated list."""
    if text in WAVELET_PRESETS:
        return WAVELET_PRESETS[text]
    try:
        return tuple(float(v) for v in text.split(","))
    except ValueError:
        raise argparse.ArgumentTypeError(
            f"Expected a wavelet preset ({', '.join(WAVELET_PRESETS)}) or comma-separated gains, got '{text}'"
        ) from None


def build_config(args: argparse.Namespace) -> StackConfig:
    """Map parsed CLI flags onto a StackConfig (preset first, then explicit flags)."""
    config = StackConfig.from_preset(args.preset) if args.preset else StackConfig()

    overrides = {
        "keep_fraction": args.keep,
        "min_frames": args.min_frames,
        "max_frames": args.max_frames,
        "sample_step": args.sample_step,
        "spread_window": args.spread_window,
        "tile_size": args.tile_size,
        "sigma": args.sigma,
        "sigma_iterations": args.sigma_iterations,
        "wavelet_gains": args.gains,
        "workers": args.workers,
        "chunk_size": args.chunk_size,
    }
    overrides = {k: v for k, v in overrides.items() if v is not None}
    if getattr(args, "no_local_align", False):
        overrides["enable_local_align"] = False
    if getattr(args, "no_sharpen", False):
        overrides["sharpen"] = False
    if getattr(args, "no_roi", False):
        overrides["use_roi"] = False
    if getattr(args, "interpolation", None):
        overrides["local_interpolation"] = args.interpolation
    if getattr(args, "resampling", None):
        overrides["resampling"] = args.resampling
    return replace(config, **overrides)


def _add_common_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("frames", type=str, help="Directory of frames (one image file per frame)")
    parser.add_argument("--preset", choices=sorted(PRESETS), help="Start from a named preset")
    parser.add_argument("--sample-step", type=int, help="Analyze every Nth frame (default: 1)")
    parser.add_argument("--workers", type=int, help="Worker threads (default: CPU count - 1)")
    parser.add_argument("--chunk-size", type=int, help="Frames held in memory at once (default: 64)")
    parser.add_argument("--no-roi", action="store_true", help="Score and correlate whole frames")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    parser.add_argument("-q", "--quiet", action="store_true", help="Hide progress bars")


def create_parser() -> argparse.ArgumentParser:
    """Create argument parser for CLI."""
    parser = argparse.ArgumentParser(
        prog="luckystack",
        description="Lucky-imaging stacking: frame selection, alignment, stacking and wavelet sharpening",
    )
    parser.add_argument("--version", action="version", version=f"luckystack {get_version()}")
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # Stack command
    stack_parser = subparsers.add_parser("stack", help="Run the full pipeline on a frame sequence")
    _add_common_arguments(stack_parser)
    stack_parser.add_argument(
        "-o", "--out", type=str, default="stack.tif", help="Output image (.tif, .png or .fits; default: stack.tif)"
    )
    stack_parser.add_argument("--bit-depth", type=int, choices=[8, 16], default=16, help="Integer output depth")
    stack_parser.add_argument("--keep", type=float, help="Fraction of frames to keep (default: 0.25)")
    stack_parser.add_argument("--min-frames", type=int, help="Minimum frames to stack (default: 50)")
    stack_parser.add_argument("--max-frames", type=int, help="Maximum frames to stack (default: 500)")
    stack_parser.add_argument("--spread-window", type=int, help="Spread the selection over windows of N frames")
    stack_parser.add_argument("--tile-size", type=int, choices=[16, 32, 48, 64], help="Local alignment tile size")
    stack_parser.add_argument("--no-local-align", action="store_true", help="Global alignment only")
    stack_parser.add_argument(
        "--interpolation", choices=["bicubic", "thin_plate"], help="Warp field interpolation (default: bicubic)"
    )
    stack_parser.add_argument(
        "--resampling", choices=["lanczos3", "cubic"], help="Warp resampling kernel (default: lanczos3)"
    )
    stack_parser.add_argument("--sigma", type=float, help="Sigma for clipped mean (default: 2.5)")
    stack_parser.add_argument("--sigma-iterations", type=int, help="Clipping iterations (default: 2)")
    stack_parser.add_argument(
        "--gains", type=_parse_gains, help="Wavelet preset name or 5 comma-separated layer gains"
    )
    stack_parser.add_argument("--no-sharpen", action="store_true", help="Skip wavelet sharpening")
    stack_parser.add_argument("--scores", type=str, help="Reuse quality scores saved by 'analyze'")
    stack_parser.add_argument("--report-dir", type=str, help="Write run manifest and quality plot here")

    # Analyze command
    analyze_parser = subparsers.add_parser("analyze", help="Score frame quality and save the scores")
    _add_common_arguments(analyze_parser)
    analyze_parser.add_argument(
        "-o", "--out", type=str, default="scores.json", help="Scores file (default: scores.json)"
    )
    analyze_parser.add_argument("--top", type=int, default=10, help="Number of best frames to list")
    analyze_parser.add_argument("--plot", type=str, help="Also write a quality plot (PNG)")

    # Presets command
    subparsers.add_parser("presets", help="List configuration and wavelet presets")

    return parser


def _null_overrides(args: argparse.Namespace) -> argparse.Namespace:
    """Fill stack-only flags so ``build_config`` works for every command."""
    for name in (
        "keep", "min_frames", "max_frames", "spread_window", "tile_size",
        "sigma", "sigma_iterations", "gains",
    ):
        if not hasattr(args, name):
            setattr(args, name, None)
    return args


def cmd_stack(args: argparse.Namespace) -> int:
    config = build_config(args)
    config.validate()

    source = ImageSequenceSource(args.frames)
    if len(source) == 0:
        print_error(f"No frames found in: {args.frames}")
        return 1

    records = None
    if args.scores:
        records = load_records(args.scores)
        print_info(f"Reusing {len(records)} quality scores from {args.scores}")

    print_metric("Frames", len(source))
    print_metric("Keep", f"{config.keep_fraction:.0%} (min {config.min_frames}, max {config.max_frames})")
    print_metric("Local alignment", f"tiles {config.tile_size}px" if config.enable_local_align else "off")

    bars = StageProgressBars(disable=args.quiet)
    pipeline = LuckyImagingPipeline(
        source,
        config,
        sink=FileImageSink(args.out, bit_depth=args.bit_depth),
        progress_callback=bars,
    )
    try:
        result = pipeline.run(records=records)
    except KeyboardInterrupt:
        pipeline.cancel()
        raise
    finally:
        bars.close()

    if args.report_dir:
        for name, path in write_all_reports(result, args.report_dir).items():
            print_path(name, str(path))

    if result.diagnostics:
        counts = ", ".join(f"{k}: {v}" for k, v in sorted(result.diagnostics_by_reason().items()))
        print_warning(f"{len(result.diagnostics)} frame diagnostics ({counts})")

    if result.status is not PipelineState.DONE:
        print_error(f"Pipeline {result.status.value}: {result.error}")
        return 1

    stats = result.statistics
    print_summary_box(
        [
            f"Stacked frames: {stats.n_frames}",
            f"Reference frame: #{result.reference_index}",
            f"Accepted samples: {stats.accepted_fraction:.1%}",
            f"SNR proxy: {stats.snr_proxy:.1f}",
            f"Total time: {format_duration(result.timings['total'])}",
        ],
        title="Stack complete",
    )
    print_success(f"Wrote {args.out}")
    return 0


def cmd_analyze(args: argparse.Namespace) -> int:
    config = build_config(args)
    config.validate()

    source = ImageSequenceSource(args.frames)
    if len(source) == 0:
        print_error(f"No frames found in: {args.frames}")
        return 1

    indices = list(range(0, len(source), config.sample_step))
    diagnostics = []
    records = QualityScorer.from_config(config).score_source(source, indices, diagnostics=diagnostics)
    if not records:
        print_error("No frame could be scored")
        return 1

    save_records(records, args.out, metadata={"frames": str(Path(args.frames).resolve()), "n_frames": len(source)})
    if args.plot:
        plot_quality(records, args.plot)

    print_header(f"Best {min(args.top, len(records))} of {len(records)} frames")
    print(f"{'#':>6}  {'Score':>7}  {'Laplacian':>11}  {'Gradient':>11}  {'HF energy':>11}")
    for record in rank_records(records)[: args.top]:
        print(
            f"{record.frame_index:>6}  {Colors.VALUE}{record.normalized_score:>7.3f}{Colors.RESET}  "
            f"{record.laplacian_variance:>11.4g}  {record.gradient_energy:>11.4g}  {record.hf_energy:>11.4g}"
        )
    stats = score_statistics(records)
    print_summary_box(
        [
            f"Analyzed frames: {len(records)}/{len(source)}",
            f"Min score: {stats['min']:.3f}",
            f"Max score: {stats['max']:.3f}",
            f"Mean score: {stats['mean']:.3f}",
            f"Median score: {stats['median']:.3f}",
        ],
        title="Analysis complete",
    )
    if diagnostics:
        print_warning(f"{len(diagnostics)} frames could not be scored")
    print_success(f"Saved scores to {args.out}")
    return 0


def cmd_presets() -> int:
    print_header("Configuration presets")
    for name, preset in sorted(PRESETS.items()):
        print(
            f"  {Colors.VALUE}{name:<16}{Colors.RESET} keep={preset.keep_fraction:.0%} "
            f"tile={preset.tile_size} sigma={preset.sigma} gains={preset.wavelet_gains}"
        )
    print_header("Wavelet presets")
    for name, gains in WAVELET_PRESETS.items():
        print(f"  {Colors.VALUE}{name:<16}{Colors.RESET} {', '.join(f'{g:.1f}' for g in gains)}")
    return 0


def main(argv: list[str] | None = None) -> int:
    """Main entry point for CLI."""
    parser = create_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 1

    if args.command == "presets":
        return cmd_presets()

    setup_logging(args.verbose)
    setup_terminal()
    print_banner(get_version())
    logger.debug("Platform: %s", get_platform_info())
    _null_overrides(args)

    try:
        if args.command == "stack":
            return cmd_stack(args)
        if args.command == "analyze":
            return cmd_analyze(args)
    except ConfigurationError as e:
        print_error(f"Invalid configuration: {e}")
        return 2
    except (OSError, ValueError) as e:
        print_error(f"{args.command} failed: {e}")
        logger.exception("%s failed", args.command)
        return 1

    return 0


if __name__ == "__main__":
    sys.exit(main())
