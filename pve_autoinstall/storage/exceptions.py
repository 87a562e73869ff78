"""Custom exceptions for storage operations.

Exception Hierarchy:
    StorageError (base)
        ├── DeviceError
        │   ├── DeviceNotFoundError
        │   ├── DeviceBusyError
        │   └── DeviceValidationError
        ├── MountError
        │   └── MountVerificationError
        ├── ImagingError
        ├── PartitionError
        └── PoolError
            ├── DiskCountError
            └── PoolOperationError

    ConfirmationDeclined sits outside the hierarchy: declining a destructive
    action is a clean user abort, not a storage failure.

Usage:
    from pve_autoinstall.storage.exceptions import DiskCountError

    if len(disks) < topology.min_disks:
        raise DiskCountError(topology.value, topology.min_disks, len(disks))
"""

from __future__ import annotations


class ConfirmationDeclined(Exception):
    """The operator did not type the confirmation token."""

    def __init__(self, reason: str = "Aborted by user"):
        self.reason = reason
        super().__init__(reason)


class StorageError(Exception):
    """Base exception for all storage operations."""


class DeviceError(StorageError):
    """Base exception for device-related errors."""


class DeviceNotFoundError(DeviceError):
    """Device was not found or is not a block device."""

    def __init__(self, device_name: str):
        self.device_name = device_name
        super().__init__(f"Disk not found: {device_name}")


class DeviceBusyError(DeviceError):
    """Device is currently in use or mounted."""

    def __init__(self, device_name: str, reason: str = ""):
        self.device_name = device_name
        self.reason = reason
        msg = f"Device {device_name} is busy"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)


class DeviceValidationError(DeviceError):
    """Device failed validation checks."""

    def __init__(self, device_name: str, reason: str):
        self.device_name = device_name
        self.reason = reason
        super().__init__(f"Device validation failed for {device_name}: {reason}")


class MountError(StorageError):
    """Base exception for mount-related errors."""


class MountVerificationError(MountError):
    """Device or one of its partitions is still mounted."""

    def __init__(self, device_name: str, mountpoint: str):
        self.device_name = device_name
        self.mountpoint = mountpoint
        super().__init__(f"Disk is mounted: {device_name} at {mountpoint}")


class ImagingError(StorageError):
    """A raw write failed. The destination must be re-wiped before reuse."""

    def __init__(self, message: str, device: str | None = None, bytes_written: int = 0):
        self.device = device
        self.bytes_written = bytes_written
        super().__init__(message)


class PartitionError(StorageError):
    """Creating or formatting the answer partition failed."""

    def __init__(self, message: str, device: str | None = None):
        self.device = device
        super().__init__(message)


class PoolError(StorageError):
    """Base exception for storage pool provisioning."""


class DiskCountError(PoolError):
    """Too few disks for the requested topology."""

    def __init__(self, topology: str, minimum: int, provided: int):
        self.topology = topology
        self.minimum = minimum
        self.provided = provided
        super().__init__(
            f"{topology} requires at least {minimum} disks ({provided} provided)"
        )


class PoolOperationError(PoolError):
    """A zpool/zfs command failed."""

    def __init__(self, message: str, pool: str | None = None):
        self.pool = pool
        super().__init__(message)
