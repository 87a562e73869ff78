"""ZFS pool provisioning for VM and container storage.

Flow of setup_pool():
    validate disks -> confirm token -> wipe -> zpool create -> datasets
    -> register with pvesm (or print the commands) -> status report

Pool Layout:
    <pool>            mounted at <mount_root>
    <pool>/data       VM disk images and container volumes
    <pool>/template   container templates
    <pool>/iso        installer images
    <pool>/backup     vzdump backups
"""

from __future__ import annotations

import shutil
import subprocess
import time
from dataclasses import dataclass, field
from typing import Callable

from pve_autoinstall.domain import StoragePoolSpec
from pve_autoinstall.logging import LoggerFactory

from .devices import run_command, settle_devices
from .exceptions import PoolOperationError
from .selection import confirm_destructive
from .validation import normalize_disk_path, validate_pool_disks

log = LoggerFactory.for_zfs()

POOL_OPTIONS = ["ashift=12"]
FILESYSTEM_PROPERTIES = [
    "acltype=posixacl",
    "compression=lz4",
    "dnodesize=auto",
    "normalization=formD",
    "relatime=on",
    "xattr=sa",
]
DATASETS = ("data", "template", "iso", "backup")
WIPE_SETTLE_SECONDS = 2


@dataclass
class PoolResult:
    pool: str
    disks: list[str]
    datasets: list[str] = field(default_factory=list)
    registered: bool = False
    registration_commands: list[list[str]] = field(default_factory=list)
    ignored_disks: list[str] = field(default_factory=list)


def wipe_disk(disk: str) -> None:
    """Clear signatures, the partition table and stale pool labels.

    Each step is best-effort: a blank disk has nothing to clear.
    """
    log.info(f"Wiping {disk}...")
    for command in (
        ["wipefs", "-a", disk],
        ["sgdisk", "--zap-all", disk],
        ["zpool", "labelclear", "-f", disk],
    ):
        result = run_command(command, check=False, log_output=False)
        if result.returncode != 0:
            log.debug(f"{command[0]} returned {result.returncode} on {disk}")


def wipe_disks(disks: list[str], sleep: Callable[[float], None] = time.sleep) -> None:
    for disk in disks:
        wipe_disk(disk)
    sleep(WIPE_SETTLE_SECONDS)
    settle_devices()
    log.info("Disks wiped")


def build_create_command(spec: StoragePoolSpec, disks: list[str]) -> list[str]:
    command = ["zpool", "create", "-f"]
    for option in POOL_OPTIONS:
        command += ["-o", option]
    for prop in FILESYSTEM_PROPERTIES:
        command += ["-O", prop]
    command += ["-O", f"mountpoint={spec.mount_root}", spec.name]
    if spec.topology.vdev_keyword:
        command.append(spec.topology.vdev_keyword)
    return command + list(disks)


def dataset_commands(spec: StoragePoolSpec) -> list[list[str]]:
    return [
        ["zfs", "create", "-o", f"mountpoint={spec.mount_root / name}", f"{spec.name}/{name}"]
        for name in DATASETS
    ]


def registration_commands(spec: StoragePoolSpec) -> list[list[str]]:
    root = spec.mount_root
    return [
        ["pvesm", "add", "zfspool", "local-zfs", "-pool", f"{spec.name}/data",
         "-content", "images,rootdir"],
        ["pvesm", "add", "dir", "local-iso", "-path", str(root / "iso"), "-content", "iso"],
        ["pvesm", "add", "dir", "local-template", "-path", str(root / "template"),
         "-content", "vztmpl"],
        ["pvesm", "add", "dir", "local-backup", "-path", str(root / "backup"),
         "-content", "backup"],
    ]


def _run_pool_command(command: list[str], pool: str) -> None:
    try:
        run_command(command)
    except subprocess.CalledProcessError as error:
        stderr = (error.stderr or "").strip()
        raise PoolOperationError(
            f"{' '.join(command[:2])} failed: {stderr or error}", pool=pool
        ) from error


def register_storage(spec: StoragePoolSpec) -> tuple[bool, list[list[str]]]:
    """Register datasets with pvesm, or print the commands when it is absent."""
    commands = registration_commands(spec)
    if not shutil.which("pvesm"):
        log.warning("pvesm not found (Proxmox not installed yet), skipping storage registration")
        log.info("Run these after installation to add the storage:")
        for command in commands:
            log.info(f"  {' '.join(command)}")
        return False, commands
    for command in commands:
        _run_pool_command(command, spec.name)
    log.info("Storage added to Proxmox")
    return True, commands


def report_pool_status(pool: str) -> None:
    for command in (["zpool", "status", pool], ["zfs", "list", "-r", pool]):
        result = run_command(command, check=False, log_output=False)
        for line in (result.stdout or "").splitlines():
            log.info(line)


def setup_pool(
    spec: StoragePoolSpec,
    *,
    prompt: Callable[[str], str] = input,
    sleep: Callable[[float], None] = time.sleep,
) -> PoolResult:
    """Validate, confirm, wipe and create the pool with its datasets.

    Raises:
        DeviceNotFoundError, MountVerificationError, DiskCountError:
            validation failures, raised before anything is touched
        ConfirmationDeclined: The operator did not type the token
        PoolOperationError: zpool/zfs/pvesm failed after wiping
    """
    log.info(f"Setting up ZFS pool: {spec.name}")
    log.info(f"Disks: {', '.join(spec.disks)}")
    log.info(f"Type: {spec.topology.value}")

    disks = validate_pool_disks(spec.disks, spec.topology)
    confirm_destructive(disks, prompt=prompt)

    wipe_disks(disks, sleep=sleep)

    log.info("Creating ZFS pool...")
    _run_pool_command(build_create_command(spec, disks), spec.name)
    log.success(f"ZFS pool {spec.name} created")

    result = PoolResult(
        pool=spec.name,
        disks=disks,
        ignored_disks=[
            path for path in map(normalize_disk_path, spec.disks) if path not in disks
        ],
    )
    for command in dataset_commands(spec):
        _run_pool_command(command, spec.name)
        result.datasets.append(command[-1])
    log.info(f"Datasets created: {', '.join(result.datasets)}")

    result.registered, result.registration_commands = register_storage(spec)
    report_pool_status(spec.name)
    return result
