"""Interactive device selection and the destructive-action confirmation gate.

Both prompts take a ``prompt`` callable (``input`` by default) so callers and
tests can drive them without a terminal. Any invalid answer raises
ConfirmationDeclined, which CLIs map to a clean exit.
"""

from __future__ import annotations

from typing import Callable, Iterable, Sequence

from pve_autoinstall.config.settings import CONFIRMATION_TOKEN
from pve_autoinstall.domain import BlockDevice
from pve_autoinstall.logging import LoggerFactory

from .exceptions import ConfirmationDeclined, DeviceNotFoundError

Prompt = Callable[[str], str]

log = LoggerFactory.for_usb()


def select_device(devices: Sequence[BlockDevice], *, prompt: Prompt = input) -> BlockDevice:
    """Pick one device, auto-selecting when there is a single candidate.

    Raises:
        DeviceNotFoundError: If no candidates were found
        ConfirmationDeclined: If the entered index is empty or invalid
    """
    if not devices:
        raise DeviceNotFoundError("no removable devices detected")
    if len(devices) == 1:
        device = devices[0]
        log.info(f"Auto-selected {device.format_label()}")
        return device

    log.info("Multiple removable devices found:")
    for index, device in enumerate(devices, start=1):
        log.info(f"  {index}) {device.format_label()}")

    answer = prompt(f"Select device [1-{len(devices)}]: ").strip()
    if not answer.isdigit():
        raise ConfirmationDeclined("No device selected")
    index = int(answer)
    if not 1 <= index <= len(devices):
        raise ConfirmationDeclined(f"Invalid selection: {answer}")
    return devices[index - 1]


def find_device(devices: Iterable[BlockDevice], name: str) -> BlockDevice:
    name = name.replace("/dev/", "")
    for device in devices:
        if device.name == name:
            return device
    raise DeviceNotFoundError(name)


def confirm_destructive(
    targets: Iterable[str],
    *,
    prompt: Prompt = input,
    token: str = CONFIRMATION_TOKEN,
) -> None:
    """Require the literal confirmation token before erasing ``targets``.

    Raises:
        ConfirmationDeclined: On any answer other than the exact token
    """
    names = ", ".join(targets)
    log.warning(f"ALL DATA on {names} will be destroyed")
    answer = prompt(f"Type {token} to continue: ")
    if answer.strip() != token:
        raise ConfirmationDeclined()
    log.debug(f"Destructive action confirmed for {names}")
