"""Domain model for the media creation and provisioning pipeline.

Type-safe objects replace the raw lsblk dicts and loose tuples that the
storage, transfer and provisioning layers pass around.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any


# ==============================================================================
# Block Device Domain
# ==============================================================================


@dataclass(frozen=True)
class BlockDevice:
    """A whole-disk block device reported by one enumeration pass.

    Never persisted: device names can shift between enumeration and action,
    so capacity is re-queried before anything destructive happens.
    """

    name: str  # e.g., "sdb"
    size_bytes: int  # Capacity at enumeration time
    model: str | None = None  # e.g., "SanDisk Ultra"
    transport: str | None = None  # lsblk TRAN, e.g. "usb"
    removable: bool = False
    mountpoints: tuple[str, ...] = ()

    @property
    def device_path(self) -> str:
        """Device node path (e.g., /dev/sdb)."""
        return f"/dev/{self.name}"

    @property
    def size_gb(self) -> float:
        return self.size_bytes / (1024**3)

    def format_label(self) -> str:
        """Format a human-readable label for display.

        Returns: e.g., "sdb 14.9GB" or "sdb SanDisk Ultra (14.9GB) [usb]"
        """
        size_str = f"{self.size_gb:.1f}GB"
        label = f"{self.name} {size_str}"
        if self.model:
            label = f"{self.name} {self.model.strip()} ({size_str})"
        if self.transport:
            label = f"{label} [{self.transport}]"
        return label

    @classmethod
    def from_lsblk_dict(cls, device: dict[str, Any]) -> BlockDevice:
        """Convert an lsblk JSON entry to a BlockDevice.

        Raises:
            KeyError: If the name key is missing
            ValueError: If size cannot be converted to int
        """
        name = device["name"]
        size_bytes = int(device.get("size") or 0)

        model = device.get("model")
        if model:
            model = model.strip() or None

        transport = device.get("tran") or None

        # lsblk reports rm as bool, int or "0"/"1" depending on version
        removable = str(device.get("rm")).lower() in ("1", "true")

        mountpoints = []
        if device.get("mountpoint"):
            mountpoints.append(device["mountpoint"])
        for child in device.get("children") or []:
            if child.get("mountpoint"):
                mountpoints.append(child["mountpoint"])

        return cls(
            name=name,
            size_bytes=size_bytes,
            model=model,
            transport=transport,
            removable=removable,
            mountpoints=tuple(mountpoints),
        )


class DeviceState(Enum):
    """Disk state around a raw write."""

    UNKNOWN = "unknown"
    ONLINE = "online"  # Visible to the kernel with its partitions
    PREPARED = "prepared"  # Unmounted and signatures cleared
    OFFLINE = "offline"  # No partition nodes, buffers flushed


# ==============================================================================
# Transfer Domain
# ==============================================================================


@dataclass(frozen=True)
class TransferJob:
    """A single artifact download request."""

    source: str  # URL
    destination: Path
    min_size_bytes: int = 0  # Floor used to reject saved error pages
    strategies: tuple[str, ...] = ("helper", "streaming", "blocking")
    reuse_existing: bool = False


@dataclass
class TransferProgress:
    """Progress value threaded through a transfer attempt."""

    strategy: str
    bytes_done: int = 0
    total_bytes: int | None = None  # None when the size is unknown
    started_at: float = field(default_factory=time.monotonic)

    @property
    def percent(self) -> float | None:
        if not self.total_bytes:
            return None
        return min(100.0, self.bytes_done * 100.0 / self.total_bytes)

    @property
    def rate(self) -> float | None:
        elapsed = time.monotonic() - self.started_at
        if elapsed <= 0:
            return None
        return self.bytes_done / elapsed


# ==============================================================================
# Imaging Domain
# ==============================================================================


@dataclass(frozen=True)
class ImagingOperation:
    """A raw write of an image file onto a whole block device."""

    source: Path
    target: BlockDevice
    chunk_size: int = 4 * 1024 * 1024


@dataclass
class ImagingProgress:
    """Progress value for one write pass. bytes_written only ever grows."""

    total_bytes: int
    bytes_written: int = 0
    started_at: float = field(default_factory=time.monotonic)

    def advance(self, count: int) -> None:
        if count < 0:
            raise ValueError("bytes written cannot decrease")
        self.bytes_written += count

    @property
    def elapsed(self) -> float:
        return max(0.0, time.monotonic() - self.started_at)

    @property
    def percent(self) -> float:
        if self.total_bytes <= 0:
            return 100.0
        return min(100.0, self.bytes_written * 100.0 / self.total_bytes)

    @property
    def rate(self) -> float | None:
        elapsed = self.elapsed
        if elapsed <= 0 or self.bytes_written <= 0:
            return None
        return self.bytes_written / elapsed

    @property
    def eta_seconds(self) -> float | None:
        rate = self.rate
        if not rate:
            return None
        remaining = max(0, self.total_bytes - self.bytes_written)
        return remaining / rate


# ==============================================================================
# Storage Pool Domain
# ==============================================================================


class Topology(Enum):
    """Redundancy topology for a ZFS pool."""

    SINGLE = "single"
    MIRROR = "mirror"
    RAIDZ1 = "raidz1"
    RAIDZ2 = "raidz2"

    @property
    def min_disks(self) -> int:
        return _TOPOLOGY_MIN_DISKS[self]

    @property
    def vdev_keyword(self) -> str | None:
        """Keyword passed to ``zpool create`` (None for a plain stripe)."""
        if self is Topology.SINGLE:
            return None
        return self.value

    @property
    def answer_raid(self) -> str:
        """Value used for ``zfs.raid`` in an installer answer file."""
        return _TOPOLOGY_ANSWER_RAID[self]

    @classmethod
    def parse(cls, value: str) -> Topology:
        try:
            return cls(value.strip().lower())
        except ValueError as error:
            choices = ", ".join(t.value for t in cls)
            raise ValueError(f"Unknown pool type: {value} (expected one of {choices})") from error


_TOPOLOGY_MIN_DISKS = {
    Topology.SINGLE: 1,
    Topology.MIRROR: 2,
    Topology.RAIDZ1: 3,
    Topology.RAIDZ2: 4,
}

_TOPOLOGY_ANSWER_RAID = {
    Topology.SINGLE: "raid0",
    Topology.MIRROR: "raid1",
    Topology.RAIDZ1: "raidz-1",
    Topology.RAIDZ2: "raidz-2",
}


@dataclass(frozen=True)
class StoragePoolSpec:
    """A pool to create: name, mount root, topology and member disks."""

    name: str
    mount_root: Path
    topology: Topology
    disks: tuple[str, ...]


# ==============================================================================
# Provisioning Run Domain
# ==============================================================================


class StepOutcome(Enum):
    """Outcome of one first-boot provisioning step."""

    SUCCESS = "success"
    SOFT_FAILURE = "soft-failure"  # Logged, run continues
    HARD_FAILURE = "hard-failure"  # Logged, run aborts
    SKIPPED = "skipped"


@dataclass(frozen=True)
class StepResult:
    name: str
    outcome: StepOutcome
    detail: str = ""


@dataclass
class ProvisioningRun:
    """Ordered results of one first-boot attempt."""

    auto: bool
    results: list[StepResult] = field(default_factory=list)

    def record(self, result: StepResult) -> None:
        self.results.append(result)

    @property
    def aborted(self) -> bool:
        return any(r.outcome is StepOutcome.HARD_FAILURE for r in self.results)

    @property
    def succeeded(self) -> bool:
        return not self.aborted

    def outcome_of(self, name: str) -> StepOutcome | None:
        for result in self.results:
            if result.name == name:
                return result.outcome
        return None
