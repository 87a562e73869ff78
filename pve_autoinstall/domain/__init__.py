"""Domain models for media creation and host provisioning.

This package contains type-safe domain objects shared by the storage,
transfer, answer and provisioning layers.
"""

from __future__ import annotations

from .models import (
    BlockDevice,
    DeviceState,
    ImagingOperation,
    ImagingProgress,
    ProvisioningRun,
    StepOutcome,
    StepResult,
    StoragePoolSpec,
    Topology,
    TransferJob,
    TransferProgress,
)


__all__ = [
    "BlockDevice",
    "DeviceState",
    "ImagingOperation",
    "ImagingProgress",
    "ProvisioningRun",
    "StepOutcome",
    "StepResult",
    "StoragePoolSpec",
    "Topology",
    "TransferJob",
    "TransferProgress",
]
