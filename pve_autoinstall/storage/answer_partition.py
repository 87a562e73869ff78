"""Answer partition creation on freshly imaged media.

The unattended installer looks for a FAT volume labelled PROXMOX-AIS that
carries ``answer.toml``. After imaging, the remaining space on the stick is
measured and, when at least MIN_ANSWER_FREE_BYTES is left, a partition is
appended after the image, formatted and filled with the rendered answer.

Degraded Mode:
    A space shortfall or any partitioning, formatting or mount failure does
    not abort media creation. The rendered answer is written to a local
    fallback path instead and the result is flagged ``degraded`` so the
    operator can place the file by hand.
"""

from __future__ import annotations

import contextlib
import os
import subprocess
import tempfile
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from pve_autoinstall.answer import AnswerConfig, render_answer
from pve_autoinstall.config.settings import (
    ANSWER_FILENAME,
    ANSWER_VOLUME_LABEL,
    MIN_ANSWER_FREE_BYTES,
)
from pve_autoinstall.domain import BlockDevice
from pve_autoinstall.logging import LoggerFactory

from .devices import (
    get_device_size,
    get_partitions,
    human_size,
    partition_path,
    rescan_partitions,
    run_command,
)
from .exceptions import DeviceError, PartitionError

log = LoggerFactory.for_answer()

# MBR type 0x0c: FAT32 with LBA addressing, all remaining space
SFDISK_APPEND_SCRIPT = ",,c\n"
PARTITION_NODE_WAIT = 5.0


@dataclass(frozen=True)
class PartitionResult:
    degraded: bool
    answer_path: Optional[Path]
    partition: Optional[str] = None
    free_bytes: int = 0
    reason: str = ""


def compute_free_space(device: BlockDevice) -> tuple[int, int]:
    """Return (free_bytes, partition_count) from a fresh capacity query."""
    capacity = get_device_size(device.name)
    partitions = get_partitions(device.name)
    used = sum(int(part.get("size") or 0) for part in partitions)
    return max(0, capacity - used), len(partitions)


def has_room_for_answer(free_bytes: int) -> bool:
    return free_bytes >= MIN_ANSWER_FREE_BYTES


def _wait_for_node(node: str, timeout: float = PARTITION_NODE_WAIT) -> None:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if os.path.exists(node):
            return
        time.sleep(0.5)
    raise PartitionError(f"Partition node {node} did not appear", device=node)


def _append_partition(device: BlockDevice, existing: int) -> str:
    run_command(
        ["sfdisk", "--append", "--force", device.device_path],
        input_text=SFDISK_APPEND_SCRIPT,
    )
    rescan_partitions(device.device_path)
    node = partition_path(device.device_path, existing + 1)
    _wait_for_node(node)
    return node


def _format_partition(node: str) -> None:
    run_command(["mkfs.vfat", "-F", "32", "-n", ANSWER_VOLUME_LABEL, node])


def _write_answer_to_partition(node: str, text: str) -> None:
    mount_dir = tempfile.mkdtemp(prefix="pve-answer-")
    try:
        run_command(["mount", node, mount_dir])
        try:
            (Path(mount_dir) / ANSWER_FILENAME).write_text(text, encoding="utf-8")
            run_command(["sync"], check=False)
        finally:
            run_command(["umount", mount_dir])
    finally:
        with contextlib.suppress(OSError):
            os.rmdir(mount_dir)


def write_fallback(text: str, fallback_path: Path) -> Path:
    try:
        fallback_path.parent.mkdir(parents=True, exist_ok=True)
        fallback_path.write_text(text, encoding="utf-8")
    except OSError as error:
        raise PartitionError(
            f"Could not write fallback answer to {fallback_path}: {error}"
        ) from error
    return fallback_path


def create_answer_partition(
    device: BlockDevice, config: AnswerConfig, *, fallback_path: Path
) -> PartitionResult:
    """Place the rendered answer on ``device`` or at ``fallback_path``.

    Returns:
        PartitionResult; ``degraded`` is True when the fallback was used

    Raises:
        PartitionError: Only if even the fallback file cannot be written
    """
    text = render_answer(config)
    rescan_partitions(device.device_path)

    try:
        free_bytes, existing = compute_free_space(device)
    except DeviceError as error:
        return _degrade(text, fallback_path, 0, f"capacity query failed: {error}")

    log.info(f"Free space after image on {device.name}: {human_size(free_bytes)}")
    if not has_room_for_answer(free_bytes):
        return _degrade(
            text,
            fallback_path,
            free_bytes,
            f"{human_size(free_bytes)} free, {human_size(MIN_ANSWER_FREE_BYTES)} needed",
        )

    try:
        node = _append_partition(device, existing)
        _format_partition(node)
        _write_answer_to_partition(node, text)
    except (subprocess.CalledProcessError, OSError, PartitionError) as error:
        detail = getattr(error, "stderr", None) or str(error)
        return _degrade(text, fallback_path, free_bytes, f"partitioning failed: {detail}")

    log.success(f"Answer written to {node} ({ANSWER_VOLUME_LABEL}/{ANSWER_FILENAME})")
    return PartitionResult(
        degraded=False,
        answer_path=Path(ANSWER_FILENAME),
        partition=node,
        free_bytes=free_bytes,
    )


def _degrade(text: str, fallback_path: Path, free_bytes: int, reason: str) -> PartitionResult:
    path = write_fallback(text, fallback_path)
    log.warning(f"Answer partition not created: {reason}")
    log.warning(f"Answer saved to {path}; copy it to a FAT volume labelled {ANSWER_VOLUME_LABEL}")
    return PartitionResult(
        degraded=True,
        answer_path=path,
        free_bytes=free_bytes,
        reason=reason,
    )
