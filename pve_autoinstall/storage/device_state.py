"""Explicit online/offline state machine for a disk around a raw write.

States (see DeviceState):
    UNKNOWN -> ONLINE -> PREPARED -> OFFLINE -> ONLINE

Transitions:
    bring_online():  re-read the partition table and wait for udev
    prepare():       unmount every partition, clear signatures (wipefs -a)
    take_offline():  flush buffers and drop kernel partition nodes (partx -d)

Every transition is idempotent: calling it while already in the target state
does nothing. Calling a transition from a state that cannot reach it raises
DeviceError. Exclusive access is enforced by these transitions rather than by
advisory locks.
"""

from __future__ import annotations

import contextlib
import os
import subprocess
from pathlib import Path

from pve_autoinstall.domain import BlockDevice, DeviceState
from pve_autoinstall.logging import LoggerFactory

from . import devices
from .exceptions import DeviceBusyError, DeviceError

log = LoggerFactory.for_imaging(job_id="device-state")

SYSFS_BLOCK = Path("/sys/block")

_ALLOWED_SOURCES = {
    DeviceState.ONLINE: {DeviceState.UNKNOWN, DeviceState.OFFLINE, DeviceState.PREPARED},
    DeviceState.PREPARED: {DeviceState.ONLINE},
    DeviceState.OFFLINE: {DeviceState.PREPARED},
}


class DeviceStateMachine:
    """Drives one block device through the states a raw write needs."""

    def __init__(self, device: BlockDevice, state: DeviceState = DeviceState.UNKNOWN):
        self.device = device
        self.state = state

    def __repr__(self) -> str:
        return f"DeviceStateMachine({self.device.name}, {self.state.value})"

    def _enter(self, target: DeviceState) -> bool:
        if self.state is target:
            log.debug(f"{self.device.name} already {target.value}")
            return False
        if self.state not in _ALLOWED_SOURCES[target]:
            raise DeviceError(
                f"Cannot move {self.device.name} from {self.state.value} to {target.value}"
            )
        return True

    def bring_online(self) -> None:
        if not self._enter(DeviceState.ONLINE):
            return
        log.debug(f"Bringing {self.device.device_path} online")
        devices.rescan_partitions(self.device.device_path)
        self.state = DeviceState.ONLINE

    def prepare(self) -> None:
        if not self._enter(DeviceState.PREPARED):
            return
        entry = devices.get_device_by_name(self.device.name)
        if entry is not None:
            success, used_lazy = devices.unmount_device_with_retry(entry)
            if not success:
                raise DeviceBusyError(self.device.name, "partitions could not be unmounted")
            if used_lazy:
                log.warning(f"Lazy unmount was needed for {self.device.name}")
        try:
            devices.run_command(["wipefs", "-a", self.device.device_path])
        except subprocess.CalledProcessError as error:
            raise DeviceError(
                f"Failed to clear signatures on {self.device.device_path}: {error}"
            ) from error
        self.state = DeviceState.PREPARED

    def take_offline(self) -> None:
        if not self._enter(DeviceState.OFFLINE):
            return
        holders = self.holders()
        if holders:
            raise DeviceBusyError(self.device.name, f"held by {', '.join(holders)}")
        device_path = self.device.device_path
        with contextlib.suppress(subprocess.CalledProcessError, OSError):
            devices.run_command(["blockdev", "--flushbufs", device_path], log_output=False)
        # partx exits non-zero when there is nothing left to drop
        with contextlib.suppress(subprocess.CalledProcessError, OSError):
            devices.run_command(["partx", "-d", device_path], log_output=False)
        self.state = DeviceState.OFFLINE

    def holders(self) -> list[str]:
        """Kernel holders (device-mapper, md) stacked on top of this disk."""
        holders_dir = SYSFS_BLOCK / self.device.name / "holders"
        try:
            return sorted(os.listdir(holders_dir))
        except OSError:
            return []
