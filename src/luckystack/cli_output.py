"""
Colored CLI output utilities for luckystack.

Provides styled terminal output with colors, per-stage progress bars fed by
pipeline progress events, and status indicators.
"""

from __future__ import annotations

import os
import shutil
import sys
import threading

from colorama import Fore, Style, init as colorama_init
from tqdm import tqdm

from .progress import ProgressEvent

# Initialize colorama for cross-platform support
colorama_init(autoreset=True)


class Colors:
    """Color constants for consistent styling."""

    HEADER = Fore.CYAN + Style.BRIGHT
    STAGE = Fore.BLUE + Style.BRIGHT
    SUCCESS = Fore.GREEN + Style.BRIGHT
    WARNING = Fore.YELLOW
    ERROR = Fore.RED + Style.BRIGHT
    INFO = Fore.WHITE
    VALUE = Fore.YELLOW + Style.BRIGHT
    METRIC = Fore.MAGENTA
    PATH = Fore.CYAN
    PROGRESS = Fore.GREEN
    DIM = Style.DIM
    RESET = Style.RESET_ALL


class Symbols:
    """Unicode symbols for status indicators."""

    CHECK = "\u2714"  # ✔
    CROSS = "\u2718"  # ✘
    ARROW = "\u2192"  # →
    BULLET = "\u2022"  # •
    PLANET = "\U0001FA90"  # 🪐

    @classmethod
    def use_ascii(cls):
        """Switch to ASCII-only fallbacks."""
        cls.CHECK = "[OK]"
        cls.CROSS = "[X]"
        cls.ARROW = "->"
        cls.BULLET = "*"
        cls.PLANET = "[P]"


STAGE_LABELS = {
    "analyzing": "Analyzing quality",
    "selecting": "Selecting frames",
    "aligning_global": "Global alignment",
    "aligning_local": "Local alignment",
    "stacking": "Stacking",
    "sharpening": "Wavelet sharpening",
}


def print_banner(version: str) -> None:
    """Print the luckystack startup banner."""
    print(
        f"\n{Colors.HEADER}{Symbols.PLANET}  luckystack {version} "
        f"| Lucky imaging stacking pipeline{Colors.RESET}\n"
    )


def print_header(text: str, width: int = 60) -> None:
    """Print a styled section header."""
    line = "═" * width
    print(f"\n{Colors.HEADER}{line}")
    print(f"  {text}")
    print(f"{line}{Colors.RESET}")


def print_success(text: str) -> None:
    print(f"{Colors.SUCCESS}{Symbols.CHECK} {text}{Colors.RESET}")


def print_warning(text: str) -> None:
    print(f"{Colors.WARNING}! {text}{Colors.RESET}")


def print_error(text: str) -> None:
    print(f"{Colors.ERROR}{Symbols.CROSS} {text}{Colors.RESET}")


def print_info(text: str) -> None:
    print(f"{Colors.INFO}{Symbols.BULLET} {text}{Colors.RESET}")


def print_metric(name: str, value: str | int | float, unit: str = "") -> None:
    """Print a metric with value."""
    suffix = f" {unit}" if unit else ""
    print(f"  {Colors.METRIC}{name}: {Colors.VALUE}{value}{Colors.RESET}{suffix}")


def print_path(label: str, path: str) -> None:
    print(f"  {Colors.INFO}{label}: {Colors.PATH}{path}{Colors.RESET}")


def print_summary_box(lines: list[str], title: str = "Summary") -> None:
    """Print a summary box with multiple lines."""
    width = max([len(line) for line in lines] + [len(title)]) + 4

    print(f"\n{Colors.SUCCESS}╔{'═' * width}╗")
    print(f"║ {title:^{width - 2}} ║")
    print(f"╟{'─' * width}╢")
    for line in lines:
        print(f"║  {line:<{width - 3}}║")
    print(f"╚{'═' * width}╝{Colors.RESET}")


class StageProgressBars:
    """
    Progress callback rendering one tqdm bar per pipeline stage.

    Pass an instance as ``progress_callback``; events arrive on the
    pipeline's dispatcher thread.

    Example
    -------
    >>> bars = StageProgressBars()
    >>> result = LuckyImagingPipeline(source, config, progress_callback=bars).run()
    >>> bars.close()
    """

    bar_format = "{l_bar}{bar}| {n:.0f}/{total:.0f}% [{elapsed}]"

    def __init__(self, disable: bool = False, ncols: int = 80):
        self.disable = disable
        self.ncols = ncols
        self._stage: str | None = None
        self._bar: tqdm | None = None
        self._lock = threading.Lock()

    def __call__(self, event: ProgressEvent) -> None:
        with self._lock:
            if event.stage != self._stage:
                self._finish()
                self._stage = event.stage
                self._bar = tqdm(
                    total=100,
                    desc=f"{Colors.PROGRESS}{STAGE_LABELS.get(event.stage, event.stage)}{Colors.RESET}",
                    bar_format=self.bar_format,
                    ncols=self.ncols,
                    colour="green",
                    disable=self.disable,
                )
            self._bar.n = event.percent
            if event.message:
                self._bar.set_postfix_str(event.message, refresh=False)
            self._bar.refresh()

    def _finish(self) -> None:
        if self._bar is not None:
            self._bar.close()
            self._bar = None

    def close(self) -> None:
        with self._lock:
            self._finish()
            self._stage = None


def detect_terminal_capabilities() -> dict:
    """
    Detect terminal capabilities for optimal display.

    Returns
    -------
    dict
        Capabilities dict with 'unicode', 'color', 'width' keys.
    """
    caps = {
        "unicode": True,
        "color": True,
        "width": shutil.get_terminal_size(fallback=(80, 24)).columns,
    }

    if not sys.stdout.isatty() or os.environ.get("NO_COLOR"):
        caps["color"] = False
    elif os.environ.get("TERM") == "dumb":
        caps["color"] = False
        caps["unicode"] = False

    encoding = (getattr(sys.stdout, "encoding", None) or "").lower()
    if "utf" not in encoding:
        caps["unicode"] = False

    return caps


def setup_terminal() -> dict:
    """Setup terminal for optimal display."""
    caps = detect_terminal_capabilities()
    if not caps["unicode"]:
        Symbols.use_ascii()
    return caps
