"""Artifact downloads with a fallback ladder of transfer strategies.

Strategies, tried in the order a TransferJob lists them:
    helper     curl (or wget) runs in its own session while the file size is
               polled for progress
    streaming  aiohttp streamed GET written chunk by chunk
    blocking   urllib.request, one plain request

The first strategy that completes wins; when every strategy fails the
collected failures are raised together as TransferExhaustedError. A finished
download smaller than the job's floor is deleted and reported as
TransferTooSmallError, which catches HTML error pages saved under the
artifact's name.

Each attempt writes to ``<destination>.part`` and renames it into place only
on success, so a failed attempt never leaves a plausible-looking artifact.
"""

from __future__ import annotations

import asyncio
import contextlib
import os
import shutil
import subprocess
import time
import urllib.error
import urllib.request
from pathlib import Path
from typing import Callable, Iterable, Optional

import aiohttp

from pve_autoinstall.config.settings import get_setting
from pve_autoinstall.domain import TransferJob, TransferProgress
from pve_autoinstall.logging import LoggerFactory, ThrottledLogger
from pve_autoinstall.storage.devices import human_size

log = LoggerFactory.for_transfer()

# Some helpers report 2**64-1 when the server sent no length
UNKNOWN_TOTAL = 2**64 - 1
CHUNK_SIZE = 1024 * 1024
REQUEST_TIMEOUT = 60

ProgressCallback = Callable[[TransferProgress], None]


class FetchError(Exception):
    """Base exception for artifact downloads."""


class StrategyError(FetchError):
    """One strategy failed; the ladder moves on to the next."""


class TransferTooSmallError(FetchError):
    def __init__(self, path: Path, size: int, minimum: int):
        self.path = path
        self.size = size
        self.minimum = minimum
        super().__init__(
            f"{path.name} is only {human_size(size)} (expected at least {human_size(minimum)}); "
            "deleted, the server probably returned an error page"
        )


class TransferExhaustedError(FetchError):
    def __init__(self, source: str, failures: list[tuple[str, str]]):
        self.source = source
        self.failures = failures
        detail = "; ".join(f"{name}: {reason}" for name, reason in failures) or "no strategies"
        super().__init__(f"All transfer strategies failed for {source} ({detail})")


def normalize_total(total: Optional[int]) -> Optional[int]:
    """Return ``total`` or None when it cannot be a real size."""
    if total is None or total <= 0 or total >= UNKNOWN_TOTAL:
        return None
    return total


def format_transfer_line(progress: TransferProgress) -> str:
    done = human_size(progress.bytes_done)
    rate = progress.rate
    rate_text = f" {human_size(rate)}/s" if rate else ""
    if progress.total_bytes:
        return (
            f"[{progress.strategy}] {progress.percent:.1f}% "
            f"{done}/{human_size(progress.total_bytes)}{rate_text}"
        )
    return f"[{progress.strategy}] {done} downloaded{rate_text}"


class LogTransferRenderer:
    def __init__(self, interval_seconds: float = 2.0):
        self.throttled = ThrottledLogger(log, interval_seconds=interval_seconds)

    def __call__(self, progress: TransferProgress) -> None:
        self.throttled.info("transfer-progress", format_transfer_line(progress))


def _part_path(destination: Path) -> Path:
    return destination.with_name(destination.name + ".part")


def _discard(path: Path) -> None:
    with contextlib.suppress(FileNotFoundError):
        path.unlink()


class TransferStrategy:
    """Uniform contract: write ``job.destination`` and return it, or raise."""

    name = "base"

    def attempt(self, job: TransferJob, progress: ProgressCallback) -> Path:
        raise NotImplementedError


class HelperDownloadStrategy(TransferStrategy):
    name = "helper"

    def __init__(
        self,
        poll_interval: float = 1.0,
        helpers: Iterable[str] = ("curl", "wget"),
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.poll_interval = poll_interval
        self.helpers = tuple(helpers)
        self.sleep = sleep

    def _find_helper(self) -> str:
        for helper in self.helpers:
            if shutil.which(helper):
                return helper
        raise StrategyError(f"no download helper found ({', '.join(self.helpers)})")

    def _command(self, helper: str, url: str, target: Path) -> list[str]:
        if helper == "curl":
            return ["curl", "-fL", "-sS", "--retry", "3", "-o", str(target), url]
        return ["wget", "-q", "--tries=3", "-O", str(target), url]

    def probe_total(self, helper: str, url: str) -> Optional[int]:
        """Ask the server for Content-Length through the helper itself."""
        if helper == "curl":
            command = ["curl", "-sIL", url]
        else:
            command = ["wget", "--spider", "-S", url]
        try:
            result = subprocess.run(
                command, capture_output=True, text=True, timeout=REQUEST_TIMEOUT
            )
        except (subprocess.SubprocessError, OSError):
            return None
        total = None
        for line in (result.stdout + result.stderr).splitlines():
            key, _, value = line.strip().partition(":")
            if key.lower() == "content-length":
                with contextlib.suppress(ValueError):
                    # Redirects print several header blocks; the last one counts
                    total = int(value.strip())
        return normalize_total(total)

    def attempt(self, job: TransferJob, progress: ProgressCallback) -> Path:
        helper = self._find_helper()
        target = _part_path(job.destination)
        state = TransferProgress(strategy=f"{self.name}:{helper}")
        state.total_bytes = self.probe_total(helper, job.source)

        log.debug(f"Starting {helper} for {job.source}")
        process = subprocess.Popen(
            self._command(helper, job.source, target),
            stdout=subprocess.DEVNULL,
            stderr=subprocess.PIPE,
            text=True,
            start_new_session=True,
        )
        while process.poll() is None:
            self.sleep(self.poll_interval)
            with contextlib.suppress(FileNotFoundError):
                state.bytes_done = max(state.bytes_done, target.stat().st_size)
            progress(state)

        stderr = process.stderr.read().strip() if process.stderr else ""
        if process.returncode != 0:
            _discard(target)
            raise StrategyError(f"{helper} exited with {process.returncode}: {stderr}")
        os.replace(target, job.destination)
        state.bytes_done = job.destination.stat().st_size
        progress(state)
        return job.destination


class StreamingHttpStrategy(TransferStrategy):
    name = "streaming"

    def __init__(self, chunk_size: int = CHUNK_SIZE, timeout_seconds: int = REQUEST_TIMEOUT):
        self.chunk_size = chunk_size
        # Unbounded total; only a stalled socket read times out
        self.timeout = aiohttp.ClientTimeout(total=None, sock_read=timeout_seconds)

    async def _download(self, job: TransferJob, progress: ProgressCallback) -> Path:
        target = _part_path(job.destination)
        state = TransferProgress(strategy=self.name)
        async with aiohttp.ClientSession(timeout=self.timeout) as session:
            async with session.get(job.source) as resp:
                if resp.status != 200:
                    raise StrategyError(f"HTTP {resp.status} for {job.source}")
                state.total_bytes = normalize_total(resp.content_length)
                with open(target, "wb") as handle:
                    async for chunk in resp.content.iter_chunked(self.chunk_size):
                        handle.write(chunk)
                        state.bytes_done += len(chunk)
                        progress(state)
        os.replace(target, job.destination)
        return job.destination

    def attempt(self, job: TransferJob, progress: ProgressCallback) -> Path:
        try:
            return asyncio.run(self._download(job, progress))
        except (aiohttp.ClientError, asyncio.TimeoutError) as error:
            _discard(_part_path(job.destination))
            raise StrategyError(f"{type(error).__name__}: {error}") from error
        except StrategyError:
            _discard(_part_path(job.destination))
            raise


class BlockingRequestStrategy(TransferStrategy):
    name = "blocking"

    def __init__(self, chunk_size: int = CHUNK_SIZE, timeout_seconds: int = REQUEST_TIMEOUT):
        self.chunk_size = chunk_size
        self.timeout_seconds = timeout_seconds

    def attempt(self, job: TransferJob, progress: ProgressCallback) -> Path:
        target = _part_path(job.destination)
        state = TransferProgress(strategy=self.name)
        try:
            with urllib.request.urlopen(job.source, timeout=self.timeout_seconds) as resp:  # noqa: S310
                length = resp.headers.get("Content-Length")
                state.total_bytes = normalize_total(int(length)) if length else None
                with open(target, "wb") as handle:
                    while True:
                        chunk = resp.read(self.chunk_size)
                        if not chunk:
                            break
                        handle.write(chunk)
                        state.bytes_done += len(chunk)
                        progress(state)
        except (urllib.error.URLError, ValueError) as error:
            _discard(target)
            raise StrategyError(str(error)) from error
        os.replace(target, job.destination)
        return job.destination


STRATEGIES: dict[str, Callable[[], TransferStrategy]] = {
    HelperDownloadStrategy.name: lambda: HelperDownloadStrategy(
        poll_interval=float(get_setting("transfer_poll_interval", 1.0))
    ),
    StreamingHttpStrategy.name: StreamingHttpStrategy,
    BlockingRequestStrategy.name: BlockingRequestStrategy,
}


def build_strategies(names: Iterable[str]) -> list[TransferStrategy]:
    strategies = []
    for name in names:
        try:
            strategies.append(STRATEGIES[name]())
        except KeyError as error:
            raise ValueError(f"Unknown transfer strategy: {name}") from error
    return strategies


def verify_min_size(path: Path, minimum: int) -> None:
    size = path.stat().st_size
    if size < minimum:
        _discard(path)
        raise TransferTooSmallError(path, size, minimum)


def fetch(
    job: TransferJob,
    *,
    progress: Optional[ProgressCallback] = None,
    strategies: Optional[list[TransferStrategy]] = None,
) -> Path:
    """Download ``job.source`` to ``job.destination``.

    Args:
        job: What to fetch and where to put it
        progress: Called with a TransferProgress value while bytes arrive
        strategies: Strategy objects to use instead of ``job.strategies``

    Returns:
        The destination path

    Raises:
        TransferTooSmallError: The artifact is below ``job.min_size_bytes``
        TransferExhaustedError: Every strategy failed
    """
    destination = job.destination
    if progress is None:
        progress = LogTransferRenderer()

    if job.reuse_existing and destination.exists():
        log.info(f"Reusing existing {destination}")
        verify_min_size(destination, job.min_size_bytes)
        return destination

    destination.parent.mkdir(parents=True, exist_ok=True)
    ladder = strategies if strategies is not None else build_strategies(job.strategies)
    failures: list[tuple[str, str]] = []

    for strategy in ladder:
        log.info(f"Downloading {job.source} ({strategy.name})")
        try:
            strategy.attempt(job, progress)
        except (StrategyError, OSError) as error:
            log.warning(f"{strategy.name} transfer failed: {error}")
            failures.append((strategy.name, str(error)))
            _discard(_part_path(destination))
            continue
        verify_min_size(destination, job.min_size_bytes)
        log.success(f"Downloaded {destination.name} ({human_size(destination.stat().st_size)})")
        return destination

    raise TransferExhaustedError(job.source, failures)
