"""
Pytest configuration and shared fixtures for pve-autoinstall tests.

External commands are never executed: every test patches run_command or
subprocess at the module that uses it.
"""

import json
import subprocess
from pathlib import Path
from typing import Any, Dict
from unittest.mock import Mock

import pytest

from pve_autoinstall.config import settings
from pve_autoinstall.domain import BlockDevice
from pve_autoinstall.provisioning.context import ProvisioningContext


# ==============================================================================
# Device Mock Fixtures
# ==============================================================================


@pytest.fixture
def mock_usb_device() -> Dict[str, Any]:
    """
    Fixture providing a mock USB stick as returned by lsblk -J -b.

    Returns:
        Dict representing a removable 16 GB USB device with one partition.
    """
    return {
        "name": "sdb",
        "type": "disk",
        "size": 16106127360,
        "model": "SanDisk Ultra",
        "tran": "usb",
        "rm": True,
        "hotplug": True,
        "mountpoint": None,
        "fstype": None,
        "label": None,
        "pkname": None,
        "children": [
            {
                "name": "sdb1",
                "type": "part",
                "size": 16105078784,
                "model": None,
                "tran": None,
                "rm": True,
                "hotplug": True,
                "mountpoint": "/media/usb",
                "fstype": "vfat",
                "label": "USB_DRIVE",
                "pkname": "sdb",
            }
        ],
    }


@pytest.fixture
def mock_system_disk() -> Dict[str, Any]:
    """
    Fixture providing the disk holding the root filesystem.

    Returns:
        Dict representing a system disk that must never be offered.
    """
    return {
        "name": "sda",
        "type": "disk",
        "size": 256060514304,
        "model": "Samsung SSD",
        "tran": "sata",
        "rm": False,
        "hotplug": False,
        "mountpoint": None,
        "fstype": None,
        "label": None,
        "pkname": None,
        "children": [
            {
                "name": "sda1",
                "type": "part",
                "size": 536870912,
                "mountpoint": "/boot/efi",
                "fstype": "vfat",
                "pkname": "sda",
            },
            {
                "name": "sda2",
                "type": "part",
                "size": 255522586624,
                "mountpoint": "/",
                "fstype": "ext4",
                "pkname": "sda",
            },
        ],
    }


@pytest.fixture
def mock_lsblk_output(mock_usb_device, mock_system_disk) -> str:
    """
    Fixture providing mock lsblk JSON output.

    Returns:
        JSON string with the system disk and one USB stick.
    """
    return json.dumps({"blockdevices": [mock_system_disk, mock_usb_device]})


@pytest.fixture
def mock_lsblk_empty() -> str:
    """Fixture providing empty lsblk output (no devices)."""
    return json.dumps({"blockdevices": []})


@pytest.fixture
def usb_block_device() -> BlockDevice:
    """An 8 GB removable target as produced by one enumeration pass."""
    return BlockDevice(
        name="sdb",
        size_bytes=8_000_000_000,
        model="SanDisk Ultra",
        transport="usb",
        removable=True,
    )


@pytest.fixture
def second_block_device() -> BlockDevice:
    return BlockDevice(name="sdc", size_bytes=32_000_000_000, model="Kingston", transport="usb")


# ==============================================================================
# Subprocess Mock Fixtures
# ==============================================================================


def completed(stdout: str = "", returncode: int = 0, stderr: str = "") -> Mock:
    """Build a CompletedProcess-like mock."""
    result = Mock()
    result.returncode = returncode
    result.stdout = stdout
    result.stderr = stderr
    return result


@pytest.fixture
def mock_subprocess_success(mocker) -> Mock:
    """
    Fixture providing a mock subprocess.run that always succeeds.

    Returns:
        Mock object for subprocess.run.
    """
    return mocker.patch("subprocess.run", return_value=completed())


@pytest.fixture
def mock_subprocess_failure(mocker) -> Mock:
    """
    Fixture providing a mock subprocess.run that always fails.

    Returns:
        Mock object for subprocess.run that raises CalledProcessError.
    """

    def raise_error(*args, **kwargs):
        raise subprocess.CalledProcessError(1, args[0], stderr="Mock error")

    return mocker.patch("subprocess.run", side_effect=raise_error)


# ==============================================================================
# Provisioning Fixtures
# ==============================================================================


class FakeRunner:
    """Records commands and answers them from a table of prefixes."""

    def __init__(self):
        self.commands: list[list[str]] = []
        self.responses: dict[tuple[str, ...], Any] = {}

    def respond(self, prefix, stdout: str = "", returncode: int = 0, error=None) -> None:
        self.responses[tuple(prefix)] = error if error is not None else completed(
            stdout, returncode
        )

    def __call__(self, command, check=True, **kwargs):
        self.commands.append(list(command))
        for prefix, response in sorted(
            self.responses.items(), key=lambda item: len(item[0]), reverse=True
        ):
            if tuple(command[: len(prefix)]) == prefix:
                if isinstance(response, BaseException):
                    raise response
                if check and response.returncode != 0:
                    raise subprocess.CalledProcessError(response.returncode, command)
                return response
        return completed()

    def ran(self, *prefix: str) -> bool:
        return any(tuple(command[: len(prefix)]) == prefix for command in self.commands)


@pytest.fixture
def fake_runner() -> FakeRunner:
    return FakeRunner()


@pytest.fixture
def provisioning_ctx(tmp_path, fake_runner) -> ProvisioningContext:
    """Context wired to a fake runner, a tmp profile and a tmp sources dir."""
    sources = tmp_path / "sources.list.d"
    sources.mkdir()
    return ProvisioningContext(
        auto=True,
        bashrc=tmp_path / ".bashrc",
        sources_dir=sources,
        network_wait_seconds=10,
        network_poll_interval=5,
        runner=fake_runner,
        sleep=Mock(),
        which=Mock(return_value=None),
    )


# ==============================================================================
# Settings Fixtures
# ==============================================================================


@pytest.fixture
def temp_settings_file(tmp_path) -> Path:
    return tmp_path / "config" / "settings.json"


@pytest.fixture(autouse=True)
def isolated_settings(temp_settings_file, monkeypatch):
    """Keep every test on default settings and away from the real file."""
    monkeypatch.setattr(settings, "SETTINGS_PATH", temp_settings_file)
    settings.settings_store.values = dict(settings.DEFAULT_SETTINGS)
    yield
    settings.settings_store.values = dict(settings.DEFAULT_SETTINGS)


@pytest.fixture
def make_result():
    """Factory for CompletedProcess-like results."""
    return completed
