"""Progress formatting and rendering for raw image writes."""

from __future__ import annotations

from typing import TYPE_CHECKING, Callable, Optional

from pve_autoinstall.domain import ImagingProgress
from pve_autoinstall.logging import ThrottledLogger
from pve_autoinstall.storage.devices import human_size

if TYPE_CHECKING:
    from loguru import Logger

ProgressRenderer = Callable[[ImagingProgress], None]


def format_eta(seconds):
    """Format ETA in HH:MM:SS or MM:SS format."""
    if seconds is None:
        return None
    seconds = int(seconds)
    if seconds < 0:
        return None
    hours, remainder = divmod(seconds, 3600)
    minutes, secs = divmod(remainder, 60)
    if hours:
        return f"{hours:d}:{minutes:02d}:{secs:02d}"
    return f"{minutes:02d}:{secs:02d}"


def format_progress_line(progress: ImagingProgress, label: Optional[str] = None) -> str:
    """One status line: ``sdb 1.2GB/4.0GB 30.0% 35.2MB/s ETA 01:20``."""
    parts = []
    if label:
        parts.append(label)
    parts.append(f"{human_size(progress.bytes_written)}/{human_size(progress.total_bytes)}")
    parts.append(f"{progress.percent:.1f}%")
    rate = progress.rate
    if rate:
        parts.append(f"{human_size(rate)}/s")
        eta = format_eta(progress.eta_seconds)
        if eta:
            parts.append(f"ETA {eta}")
    return " ".join(parts)


class LogProgressRenderer:
    """Emit at most one progress line per interval through loguru.

    Reads the progress value it is handed and keeps no counters of its own,
    so a render costs one formatted log line at most.
    """

    def __init__(self, log: Logger, label: Optional[str] = None, interval_seconds: float = 2.0):
        self.label = label
        self.throttled = ThrottledLogger(log, interval_seconds=interval_seconds)

    def __call__(self, progress: ImagingProgress) -> None:
        self.throttled.info("imaging-progress", format_progress_line(progress, self.label))
