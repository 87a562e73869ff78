"""Block device detection and management using lsblk and sysfs.

Device Detection:
    lsblk JSON output is the source of truth for names, sizes, transports,
    removable flags and mountpoints. Removable candidates are found by a
    ladder of strategies, the first one that yields entries wins:

    1. Transport filter: whole disks whose lsblk TRAN is ``usb``
    2. Bus hints: whole disks whose sysfs device path sits under a USB or
       MMC host controller (catches readers that report no TRAN)
    3. Removable volumes: partitions flagged removable/hotplug, walked back
       to their owning disk through PKNAME

    Results are deduplicated by device name. Disks carrying /, /boot or
    /boot/efi are never returned.

Operations:
    - list_removable_devices(): Removable candidates as BlockDevice objects
    - get_device_by_name(): Raw lsblk entry for one disk
    - get_device_size(): Fresh capacity query (blockdev, lsblk fallback)
    - unmount_device_with_retry(): Unmount every partition of a disk
    - rescan_partitions(): Ask the kernel to re-read a partition table
    - human_size(): Convert bytes to a human-readable string

Implementation Notes:
    Device numbering can shift between enumeration and action, so callers
    must re-query capacity with get_device_size() right before any
    destructive step instead of trusting an earlier BlockDevice.
"""

from __future__ import annotations

import contextlib
import json
import os
import shutil
import subprocess
import time
from typing import Callable, Optional

from pve_autoinstall.domain import BlockDevice
from pve_autoinstall.logging import LoggerFactory

from .exceptions import DeviceError

ROOT_MOUNTPOINTS = {"/", "/boot", "/boot/efi", "/boot/firmware"}
LSBLK_COLUMNS = "NAME,TYPE,SIZE,MODEL,TRAN,RM,HOTPLUG,MOUNTPOINT,FSTYPE,LABEL,PKNAME"
BUS_HINT_PATTERNS = {"usb": "/usb", "mmc": "/mmc"}

log = LoggerFactory.for_usb()


def run_command(
    command, check=True, log_output=True, log_command=True, input_text=None, env=None
):
    if log_command:
        log.debug(f"Running command: {' '.join(command)}")
    try:
        result = subprocess.run(
            command, check=check, text=True, capture_output=True, input=input_text, env=env
        )
    except subprocess.CalledProcessError as error:
        log.debug(f"Command failed: {' '.join(command)}")
        if error.stdout:
            log.debug(f"stdout: {error.stdout.strip()}")
        if error.stderr:
            log.debug(f"stderr: {error.stderr.strip()}")
        raise
    if result.stdout and (log_output or result.returncode != 0):
        log.trace(f"stdout: {result.stdout.strip()}")
    if result.stderr and (log_output or result.returncode != 0):
        log.trace(f"stderr: {result.stderr.strip()}")
    if log_command:
        log.debug(f"Command completed with return code {result.returncode}")
    return result


def settle_devices(device_path: Optional[str] = None) -> None:
    """Best-effort sync, partition re-read and udev settle."""
    commands = [["sync"]]
    if device_path:
        commands.append(["partprobe", device_path])
    commands.append(["udevadm", "settle", "--timeout=10"])
    for command in commands:
        if not shutil.which(command[0]):
            log.debug(f"Skipping {command[0]}: command not found")
            continue
        with contextlib.suppress(subprocess.CalledProcessError, OSError):
            run_command(command, log_output=False)


def human_size(size_bytes):
    if size_bytes is None:
        return "0B"
    size = float(size_bytes)
    for unit in ["B", "KB", "MB", "GB", "TB"]:
        if size < 1024.0:
            return f"{size:.1f}{unit}"
        size /= 1024.0
    return f"{size:.1f}PB"


def get_block_devices(flat: bool = False) -> list[dict]:
    """Return block device data from lsblk.

    Args:
        flat: List mode (-l): every disk and partition as a top-level entry
            with PKNAME filled in, instead of a tree of children.

    Returns:
        List of lsblk entries, or an empty list when lsblk fails.
    """
    command = ["lsblk", "-J", "-b", "-o", LSBLK_COLUMNS]
    if flat:
        command.insert(1, "-l")
    try:
        result = run_command(command, log_output=False, log_command=False)
        data = json.loads(result.stdout)
    except (subprocess.CalledProcessError, json.JSONDecodeError, OSError) as error:
        log.warning(f"lsblk failed: {error}")
        return []
    return data.get("blockdevices", []) or []


def get_children(device):
    return device.get("children", []) or []


def get_device_by_name(name):
    if not name:
        return None
    name = name.replace("/dev/", "")
    for device in get_block_devices():
        if device.get("name") == name:
            return device
    return None


def has_root_mountpoint(device):
    if device.get("mountpoint") in ROOT_MOUNTPOINTS:
        return True
    for child in get_children(device):
        if has_root_mountpoint(child):
            return True
    return False


def is_root_device(device):
    if device.get("type") != "disk":
        return False
    return has_root_mountpoint(device)


def _is_flag_set(value) -> bool:
    return str(value).lower() in ("1", "true")


def _candidate_disks(devices: list[dict]) -> list[dict]:
    return [d for d in devices if d.get("type") == "disk" and not is_root_device(d)]


def _by_transport(devices: list[dict]) -> list[dict]:
    return [d for d in _candidate_disks(devices) if (d.get("tran") or "").lower() == "usb"]


def sysfs_bus_hint(name: str) -> Optional[str]:
    """Guess the bus of a disk from its resolved /sys/block path."""
    try:
        resolved = os.path.realpath(f"/sys/block/{name}")
    except OSError:
        return None
    for bus, pattern in BUS_HINT_PATTERNS.items():
        if pattern in resolved:
            return bus
    return None


def _by_bus_hint(devices: list[dict]) -> list[dict]:
    matches = []
    for device in _candidate_disks(devices):
        bus = sysfs_bus_hint(device.get("name", ""))
        if bus:
            matches.append({**device, "tran": device.get("tran") or bus})
    return matches


def _by_removable_volume(devices: list[dict]) -> list[dict]:
    disks = {d.get("name"): d for d in _candidate_disks(devices)}
    matches = []
    for entry in get_block_devices(flat=True):
        if entry.get("type") != "part":
            continue
        if not (_is_flag_set(entry.get("rm")) or _is_flag_set(entry.get("hotplug"))):
            continue
        owner = disks.get(entry.get("pkname"))
        if owner is not None:
            matches.append(owner)
    return matches


DETECTION_STRATEGIES: list[tuple[str, Callable[[list[dict]], list[dict]]]] = [
    ("transport", _by_transport),
    ("bus-hint", _by_bus_hint),
    ("removable-volume", _by_removable_volume),
]


def list_removable_devices() -> list[BlockDevice]:
    """Enumerate removable candidates, first successful strategy wins."""
    devices = get_block_devices()
    for strategy_name, strategy in DETECTION_STRATEGIES:
        matches = strategy(devices)
        if not matches:
            log.debug(f"Detection strategy {strategy_name} found no devices")
            continue
        seen: dict[str, BlockDevice] = {}
        for entry in matches:
            name = entry.get("name")
            if name and name not in seen:
                seen[name] = BlockDevice.from_lsblk_dict(entry)
        log.debug(
            f"Detection strategy {strategy_name} found {len(seen)} device(s): "
            f"{', '.join(seen)}"
        )
        return list(seen.values())
    return []


def get_device_size(name: str) -> int:
    """Query the current capacity of a disk in bytes.

    Raises:
        DeviceError: If neither blockdev nor lsblk can report a size, which
            usually means the device vanished or was renumbered
    """
    device_path = name if name.startswith("/dev/") else f"/dev/{name}"
    if shutil.which("blockdev"):
        try:
            result = run_command(["blockdev", "--getsize64", device_path], log_output=False)
            return int(result.stdout.strip())
        except (subprocess.CalledProcessError, ValueError) as error:
            log.debug(f"blockdev size query failed: {error}")
    try:
        result = run_command(
            ["lsblk", "-b", "-d", "-n", "-o", "SIZE", device_path], log_output=False
        )
        return int(result.stdout.strip())
    except (subprocess.CalledProcessError, ValueError) as error:
        raise DeviceError(f"Unable to determine size of {device_path}: {error}") from error


def get_partitions(name: str) -> list[dict]:
    device = get_device_by_name(name)
    if not device:
        return []
    return [child for child in get_children(device) if child.get("type") == "part"]


def partition_path(device_path: str, number: int) -> str:
    """Return the node for partition ``number`` (sdb -> sdb2, nvme0n1 -> nvme0n1p2)."""
    suffix = "p" if device_path[-1].isdigit() else ""
    return f"{device_path}{suffix}{number}"


def rescan_partitions(device_path: str) -> None:
    """Ask the kernel to re-read the partition table of ``device_path``."""
    if shutil.which("blockdev"):
        with contextlib.suppress(subprocess.CalledProcessError, OSError):
            run_command(["blockdev", "--rereadpt", device_path], log_output=False)
    settle_devices(device_path)


def _is_mountpoint_active(mountpoint: str) -> bool:
    try:
        with open("/proc/mounts", "r", encoding="utf-8") as mounts_file:
            for line in mounts_file:
                parts = line.split()
                if len(parts) > 1 and parts[1] == mountpoint:
                    return True
    except FileNotFoundError:
        return os.path.ismount(mountpoint)
    return False


def collect_mountpoints(device: dict) -> list[tuple[str, str]]:
    mountpoints = []
    if device.get("mountpoint"):
        mountpoints.append((device.get("name"), device.get("mountpoint")))
    for child in get_children(device):
        if child.get("mountpoint"):
            mountpoints.append((child.get("name"), child.get("mountpoint")))
    return mountpoints


def unmount_device_with_retry(device: dict) -> tuple[bool, bool]:
    """Unmount device with retry and lazy unmount as last resort.

    Args:
        device: Device dict from lsblk

    Returns:
        Tuple of (success, used_lazy_unmount)
    """
    device_name = device.get("name")

    def filter_active(mountpoint_list):
        active = []
        for partition_name, mountpoint in mountpoint_list:
            if _is_mountpoint_active(mountpoint):
                active.append((partition_name, mountpoint))
            else:
                log.debug(f"{mountpoint} already unmounted")
        return active

    mountpoints = collect_mountpoints(device)
    if not mountpoints:
        log.debug(f"No mounted partitions on {device_name}")
        return True, False

    with contextlib.suppress(subprocess.CalledProcessError, OSError):
        run_command(["sync"], check=False)

    for attempt in range(1, 4):
        log.debug(f"Unmount attempt {attempt}/3...")
        active_mountpoints = filter_active(mountpoints)
        if not active_mountpoints:
            return True, False

        for _partition_name, mountpoint in active_mountpoints:
            try:
                run_command(["umount", mountpoint], check=True)
                log.debug(f"Unmounted {mountpoint}")
            except subprocess.CalledProcessError as error:
                log.debug(f"Failed to unmount {mountpoint}: {error}")

        if not filter_active(mountpoints):
            return True, False

        if attempt < 3:
            time.sleep(1)

    log.debug("Normal unmount failed, attempting lazy unmount...")
    for _partition_name, mountpoint in filter_active(mountpoints):
        try:
            run_command(["umount", "-l", mountpoint], check=True)
            log.debug(f"Lazy unmounted {mountpoint}")
        except subprocess.CalledProcessError as error:
            log.debug(f"Failed to lazy unmount {mountpoint}: {error}")

    if not filter_active(mountpoints):
        return True, True

    log.error(f"Failed to unmount {device_name} even with lazy unmount")
    return False, False
