"""Raw image writing with device state transitions and progress tracking.

Main Functions:
    - write_image(): Copy an image onto a whole device in fixed-size chunks

Helper Functions:
    - format_eta(): Format seconds as MM:SS or H:MM:SS
    - format_progress_line(): One-line status with rate and ETA
"""

from .operations import write_image
from .progress import LogProgressRenderer, format_eta, format_progress_line


__all__ = [
    "LogProgressRenderer",
    "format_eta",
    "format_progress_line",
    "write_image",
]
