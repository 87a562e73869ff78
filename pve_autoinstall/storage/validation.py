"""Safety validation for storage pool disks.

Checks run in a fixed order and stop at the first failure:
    1. Every disk path exists and is a block device
    2. No disk (or any of its partitions) is mounted
    3. The disk count meets the topology minimum

All validation functions raise exceptions from the exceptions module rather
than returning booleans. Nothing here touches the disks.

Example:
    from pve_autoinstall.storage.validation import validate_pool_disks

    try:
        disks = validate_pool_disks(["/dev/sdb", "/dev/sdc"], Topology.MIRROR)
    except DiskCountError as error:
        print(error)
"""

from __future__ import annotations

import os
import re
import stat
from typing import Sequence

import psutil

from pve_autoinstall.domain import Topology
from pve_autoinstall.logging import LoggerFactory

from .exceptions import DiskCountError, DeviceNotFoundError, MountVerificationError

log = LoggerFactory.for_zfs()

_PARTITION_SUFFIX = re.compile(r"^(p|-part)?\d+$")


def normalize_disk_path(disk: str) -> str:
    """Return ``/dev/<disk>`` for bare kernel names, other paths unchanged."""
    disk = disk.strip()
    if disk.startswith("/"):
        return disk
    return f"/dev/{disk}"


def validate_block_device(disk: str) -> None:
    """Raise DeviceNotFoundError unless ``disk`` is an existing block device."""
    try:
        mode = os.stat(disk).st_mode
    except OSError as error:
        raise DeviceNotFoundError(disk) from error
    if not stat.S_ISBLK(mode):
        raise DeviceNotFoundError(disk)


def _belongs_to(mounted_device: str, disk_real: str) -> bool:
    if mounted_device == disk_real:
        return True
    if not mounted_device.startswith(disk_real):
        return False
    return bool(_PARTITION_SUFFIX.match(mounted_device[len(disk_real):]))


def find_mountpoint(disk: str) -> str | None:
    """Return the first mountpoint of ``disk`` or one of its partitions."""
    disk_real = os.path.realpath(disk)
    for partition in psutil.disk_partitions(all=True):
        device = partition.device
        if not device.startswith("/dev/"):
            continue
        if _belongs_to(os.path.realpath(device), disk_real):
            return partition.mountpoint
    return None


def validate_disk_unmounted(disk: str) -> None:
    mountpoint = find_mountpoint(disk)
    if mountpoint is not None:
        raise MountVerificationError(disk, mountpoint)


def validate_disk_count(disks: Sequence[str], topology: Topology) -> None:
    if len(disks) < topology.min_disks:
        raise DiskCountError(topology.value, topology.min_disks, len(disks))


def validate_pool_disks(disks: Sequence[str], topology: Topology) -> list[str]:
    """Validate candidate pool disks and return the ones that will be used.

    A single-disk topology given more than one disk is accepted with a
    warning and only the first disk is used; the others are never wiped.

    Raises:
        DeviceNotFoundError: A path is missing or not a block device
        MountVerificationError: A disk or one of its partitions is mounted
        DiskCountError: Fewer disks than the topology minimum
    """
    paths = [normalize_disk_path(disk) for disk in disks if disk.strip()]

    for disk in paths:
        validate_block_device(disk)
    for disk in paths:
        validate_disk_unmounted(disk)
    validate_disk_count(paths, topology)

    if topology is Topology.SINGLE and len(paths) > 1:
        ignored = ", ".join(paths[1:])
        log.warning(f"Single disk mode with {len(paths)} disks, using {paths[0]} only")
        log.warning(f"Ignored disks (left untouched): {ignored}")
        return paths[:1]

    log.info(f"Validated {len(paths)} disk(s) for {topology.value}: {', '.join(paths)}")
    return paths
