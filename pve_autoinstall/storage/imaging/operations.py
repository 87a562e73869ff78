"""Raw sequential write of an installer image onto a whole block device.

Sequence:
    1. Bring the device online and release host mounts
    2. Clear partition and filesystem signatures
    3. Take the device offline (flush, drop partition nodes)
    4. Open the image for reading and the raw device for writing
    5. Copy in fixed-size chunks, advancing an ImagingProgress value
    6. Flush and fsync both handles
    7. Bring the device back online so partitioning tools see it

There is no partial-write resume. A failure inside the copy loop raises
ImagingError and the destination must be re-wiped before reuse.
"""

from __future__ import annotations

import os
from typing import Callable, Optional

from pve_autoinstall.domain import DeviceState, ImagingOperation, ImagingProgress
from pve_autoinstall.logging import LoggerFactory, operation_context
from pve_autoinstall.storage.device_state import DeviceStateMachine
from pve_autoinstall.storage.devices import get_device_size, human_size
from pve_autoinstall.storage.exceptions import DeviceValidationError, ImagingError

from .progress import LogProgressRenderer, format_eta, format_progress_line

log = LoggerFactory.for_imaging()


def _open_target(device_path: str):
    return open(device_path, "wb")  # noqa: SIM115


def write_image(
    operation: ImagingOperation,
    *,
    renderer: Optional[Callable[[ImagingProgress], None]] = None,
    state_machine: Optional[DeviceStateMachine] = None,
) -> ImagingProgress:
    """Write ``operation.source`` onto ``operation.target``.

    Args:
        operation: Image path, target device and chunk size
        renderer: Called with the progress value after every chunk
        state_machine: Pre-built state machine (one is created when omitted)

    Returns:
        The final ImagingProgress for the pass

    Raises:
        DeviceValidationError: If the image is larger than the device
        DeviceError: If the device vanished, or cannot be prepared for
            exclusive access
        ImagingError: If anything fails during the copy loop
    """
    target = operation.target
    device_path = target.device_path
    total_bytes = operation.source.stat().st_size

    # Capacity is re-queried here; the enumeration result may be stale.
    capacity = get_device_size(target.name)
    if total_bytes > capacity:
        raise DeviceValidationError(
            target.name,
            f"image is {human_size(total_bytes)} but device holds {human_size(capacity)}",
        )

    if renderer is None:
        renderer = LogProgressRenderer(log, label=target.name)

    machine = state_machine or DeviceStateMachine(target)
    with operation_context("imaging", source=str(operation.source), target=device_path):
        machine.bring_online()
        machine.prepare()
        machine.take_offline()

        progress = ImagingProgress(total_bytes=total_bytes)
        log.info(f"Writing {operation.source.name} to {device_path} ({human_size(total_bytes)})")
        try:
            with open(operation.source, "rb") as source, _open_target(device_path) as raw:
                while True:
                    chunk = source.read(operation.chunk_size)
                    if not chunk:
                        break
                    raw.write(chunk)
                    progress.advance(len(chunk))
                    renderer(progress)
                raw.flush()
                os.fsync(raw.fileno())
        except Exception as error:
            raise ImagingError(
                f"Write to {device_path} failed after {human_size(progress.bytes_written)}: "
                f"{error}. Device state is undefined; do not reuse without re-wiping.",
                device=device_path,
                bytes_written=progress.bytes_written,
            ) from error

        if machine.state is DeviceState.OFFLINE:
            machine.bring_online()

    elapsed = format_eta(progress.elapsed) or "00:00"
    log.success(f"{format_progress_line(progress, target.name)} in {elapsed}")
    return progress
