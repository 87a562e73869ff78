from __future__ import annotations

import os
import sys
import time
import uuid
from contextlib import contextmanager
from pathlib import Path
from typing import TYPE_CHECKING, Iterable

if TYPE_CHECKING:
    from loguru import Logger

from loguru import logger

DEFAULT_LOG_DIR = Path(
    os.environ.get(
        "PVE_AUTOINSTALL_LOG_DIR",
        Path.home() / ".local" / "state" / "pve-autoinstall" / "logs",
    )
)

# Custom level between INFO (20) and SUCCESS (25) used for step banners.
STEP_LEVEL = "STEP"
STEP_LEVEL_NO = 22

LEVEL_TAGS = {
    "TRACE": "TRACE",
    "DEBUG": "DEBUG",
    "INFO": "INFO",
    STEP_LEVEL: "STEP",
    "SUCCESS": "OK",
    "WARNING": "WARN",
    "ERROR": "ERROR",
    "CRITICAL": "FATAL",
}


def _ensure_step_level() -> None:
    try:
        logger.level(STEP_LEVEL)
    except ValueError:
        logger.level(STEP_LEVEL, no=STEP_LEVEL_NO, color="<blue><bold>")


_ensure_step_level()


def level_tag(level_name: str) -> str:
    """Return the short status tag printed in front of a console line."""
    return LEVEL_TAGS.get(level_name, level_name)


def _console_format(record) -> str:
    tag = level_tag(record["level"].name)
    prefix = record["extra"].get("prefix")
    if prefix:
        tag = f"{prefix}:{tag}"
    return f"<level>[{tag}]</level> {{message}}\n{{exception}}"


def _audit_format(record) -> str:
    tag = level_tag(record["level"].name)
    return f"{{time:YYYY-MM-DD HH:mm:ss}} [{tag}] {{extra[source]}} | {{message}}\n{{exception}}"


def setup_logging(
    *,
    debug: bool = False,
    trace: bool = False,
    log_dir: Path | None = None,
    audit_log: Path | None = None,
    console: bool = True,
) -> Logger:
    """
    Configure console and file sinks for a CLI invocation.

    Sinks:
    - console (stderr): leveled, prefixed status line per action
    - operations.log: INFO+ events under ``log_dir`` (7 day retention)
    - debug.log: DEBUG+ events when --debug/--trace is enabled
    - audit log: optional append-only file with a full timestamp per line;
      the first-boot run points this at a durable path so headless runs can
      be diagnosed afterwards

    Args:
        debug: Enable DEBUG level output
        trace: Enable TRACE level output (command stdout/stderr)
        log_dir: Directory for rotating log files (``None`` disables them)
        audit_log: Path of the durable append-only log
        console: Install the stderr sink
    """
    logger.remove()
    logger.configure(extra={"job_id": "-", "tags": [], "source": "app"})
    _ensure_step_level()

    if trace:
        console_level = "TRACE"
    elif debug:
        console_level = "DEBUG"
    else:
        console_level = "INFO"

    if console:
        logger.add(
            sys.stderr,
            level=console_level,
            # Synchronous so prompts never overtake the lines above them
            enqueue=False,
            backtrace=False,
            diagnose=False,
            colorize=True,
            format=_console_format,
        )

    if log_dir is not None:
        log_dir.mkdir(parents=True, exist_ok=True)
        logger.add(
            log_dir / "operations.log",
            level="INFO",
            rotation="5 MB",
            retention="7 days",
            compression="zip",
            enqueue=True,
            backtrace=False,
            diagnose=False,
            format=(
                "{time:YYYY-MM-DD HH:mm:ss.SSS} | "
                "{level: <8} | "
                "{extra[source]: <15} | "
                "{extra[job_id]: <15} | "
                "{message}"
            ),
        )
        if debug or trace:
            logger.add(
                log_dir / "debug.log",
                level="TRACE" if trace else "DEBUG",
                rotation="10 MB",
                retention="3 days",
                compression="zip",
                enqueue=True,
                backtrace=True,
                diagnose=True,
                format=(
                    "{time:YYYY-MM-DD HH:mm:ss.SSS} | "
                    "{level: <8} | "
                    "{extra[source]: <15} | "
                    "{extra[job_id]: <15} | "
                    "{extra[tags]} | "
                    "{message}"
                ),
            )

    if audit_log is not None:
        audit_log.parent.mkdir(parents=True, exist_ok=True)
        # No rotation: the file is append-only evidence of every run.
        logger.add(
            audit_log,
            level="DEBUG" if (debug or trace) else "INFO",
            mode="a",
            enqueue=True,
            backtrace=False,
            diagnose=False,
            format=_audit_format,
        )

    return logger


def get_logger(
    *,
    job_id: str | None = None,
    tags: Iterable[str] | None = None,
    source: str | None = None,
    prefix: str | None = None,
) -> Logger:
    """
    Get a logger with bound context.

    Args:
        job_id: Job identifier for tracking operations
        tags: Tags for filtering (e.g., ["imaging", "storage"])
        source: Source component (e.g., "transfer", "zfs", "setup")
        prefix: Console prefix shown before the level tag (e.g., "ZFS")

    Returns:
        Logger with bound context
    """
    extras: dict[str, object] = {}
    if job_id is not None:
        extras["job_id"] = job_id
    if tags is not None:
        extras["tags"] = list(tags)
    if source is not None:
        extras["source"] = source
    if prefix is not None:
        extras["prefix"] = prefix
    return logger.bind(**extras)


@contextmanager
def operation_context(operation: str, **details):
    """
    Context manager for tracking long-running operations with automatic timing.

    Logs operation start, completion and failure with duration tracking.

    Example:
        with operation_context("imaging", target="/dev/sdb") as log:
            log.debug("Taking device offline")
    """
    job_id = f"{operation}-{uuid.uuid4().hex[:8]}"

    with logger.contextualize(job_id=job_id, operation=operation, **details):
        start_time = time.time()
        log = logger.bind(source=operation, job_id=job_id, tags=[operation])

        log.debug("{} started", operation.capitalize())

        try:
            yield log
            duration = time.time() - start_time
            log.bind(duration_seconds=round(duration, 2)).debug(
                "{} completed", operation.capitalize()
            )
        except Exception as e:
            duration = time.time() - start_time
            log.bind(
                error_type=type(e).__name__, duration_seconds=round(duration, 2)
            ).error("{} failed: {}", operation.capitalize(), e)
            raise


class LoggerFactory:
    """
    Factory for creating domain-specific loggers with automatic context.
    """

    @staticmethod
    def for_imaging(job_id: str | None = None, **details) -> Logger:
        """Logger for raw image writes."""
        if job_id is None:
            job_id = f"imaging-{uuid.uuid4().hex[:8]}"
        return logger.bind(
            job_id=job_id, source="imaging", tags=["imaging", "storage"], **details
        )

    @staticmethod
    def for_usb() -> Logger:
        """Logger for removable device detection and selection."""
        return logger.bind(source="usb", tags=["usb", "hardware"])

    @staticmethod
    def for_transfer(job_id: str | None = None) -> Logger:
        """Logger for artifact downloads."""
        if job_id is None:
            job_id = f"fetch-{uuid.uuid4().hex[:8]}"
        return logger.bind(job_id=job_id, source="transfer", tags=["transfer", "network"])

    @staticmethod
    def for_answer() -> Logger:
        """Logger for answer file generation and placement."""
        return logger.bind(source="answer", tags=["answer", "media"])

    @staticmethod
    def for_zfs() -> Logger:
        """Logger for storage pool provisioning."""
        return logger.bind(source="zfs", prefix="ZFS", tags=["zfs", "storage"])

    @staticmethod
    def for_setup() -> Logger:
        """Logger for the first-boot provisioning run."""
        return logger.bind(source="setup", prefix="SETUP", tags=["setup", "first-boot"])

    @staticmethod
    def for_system() -> Logger:
        """Logger for system operations (startup, root checks, config)."""
        return logger.bind(source="system", tags=["system"])


class ThrottledLogger:
    """
    Logger wrapper that throttles high-frequency log events.

    Used for progress lines so rendering never holds up a copy loop.
    """

    def __init__(self, log: Logger, interval_seconds: float = 5.0):
        self.log = log
        self.interval = interval_seconds
        self.last_log_time: dict[str, float] = {}

    def debug(self, key: str, message: str, **kwargs) -> bool:
        """Log at DEBUG level, throttled by key."""
        return self._throttled_log("DEBUG", key, message, **kwargs)

    def info(self, key: str, message: str, **kwargs) -> bool:
        """Log at INFO level, throttled by key."""
        return self._throttled_log("INFO", key, message, **kwargs)

    def reset(self, key: str) -> None:
        self.last_log_time.pop(key, None)

    def _throttled_log(self, level: str, key: str, message: str, **kwargs) -> bool:
        now = time.monotonic()
        last_time = self.last_log_time.get(key)

        if last_time is None or now - last_time >= self.interval:
            log_method = getattr(self.log, level.lower())
            log_method(message, **kwargs)
            self.last_log_time[key] = now
            return True
        return False
