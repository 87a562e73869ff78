"""Settings storage and fixed constants for the provisioning pipeline."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any


SETTINGS_PATH = Path(
    os.environ.get(
        "PVE_AUTOINSTALL_SETTINGS_PATH",
        Path.home() / ".config" / "pve-autoinstall" / "settings.json",
    )
)

# Fixed values - use these constants instead of hardcoding values elsewhere
CONFIRMATION_TOKEN = "ERASE"
IMAGING_CHUNK_SIZE = 4 * 1024 * 1024
ANSWER_VOLUME_LABEL = "PROXMOX-AIS"
ANSWER_FILENAME = "answer.toml"
MIN_ANSWER_FREE_BYTES = 10 * 1024 * 1024
SETUP_DONE_MARKER = Path("/root/.pve-setup-done")
FIRST_BOOT_LOG = Path("/var/log/pve-first-boot.log")
INSTALL_PREFIX = Path("/opt/pve-autoinstall")
FIRST_BOOT_COMMAND = Path("/usr/local/bin/pve-first-boot")
FIRST_BOOT_UNIT = "pve-first-boot.service"
SHELL_SENTINEL = "# PVE Installer additions"
POOL_NAME = "rpool"
POOL_MOUNT_ROOT = Path("/rpool")
WEB_UI_PORT = 8006

DEFAULT_ISO_VERSION = "8.2-2"
DEFAULT_ISO_URL_TEMPLATE = "https://enterprise.proxmox.com/iso/proxmox-ve_{version}.iso"

DEFAULT_SETTINGS: dict[str, Any] = {
    "iso_url_template": DEFAULT_ISO_URL_TEMPLATE,
    "iso_version": DEFAULT_ISO_VERSION,
    "download_dir": str(Path.home() / "Downloads" / "pve-autoinstall"),
    "iso_min_size_bytes": 500 * 1024 * 1024,
    "helper_tool_url": None,
    "helper_min_size_bytes": 64 * 1024,
    "package_spec": "pve-autoinstall",
    "answer_fallback_path": str(
        Path.home() / ".local" / "state" / "pve-autoinstall" / ANSWER_FILENAME
    ),
    "network_wait_seconds": 120,
    "network_poll_interval": 5,
    "runtime_min_major": 18,
    "runtime_install_major": 20,
    "dependency_packages": ["curl", "wget", "git", "tmux", "htop", "vim"],
    "session_name": "claude",
    "cli_package": "@anthropic-ai/claude-code",
    "cli_binary": "claude",
    "transfer_poll_interval": 1.0,
    "log_dir": None,
}


@dataclass
class SettingsStore:
    values: dict[str, Any] = field(default_factory=dict)


settings_store = SettingsStore()


def load_settings() -> None:
    settings_store.values = dict(DEFAULT_SETTINGS)
    if not SETTINGS_PATH.exists():
        return
    try:
        data = json.loads(SETTINGS_PATH.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError):
        return
    if isinstance(data, dict):
        settings_store.values.update(data)


def get_setting(key: str, default: Any | None = None) -> Any:
    return settings_store.values.get(key, default)


def get_int(key: str, default: int = 0) -> int:
    value = get_setting(key, default)
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def get_path(key: str) -> Path | None:
    value = get_setting(key)
    if not value:
        return None
    return Path(value).expanduser()


def iso_url(version: str | None = None) -> str:
    template = get_setting("iso_url_template") or DEFAULT_ISO_URL_TEMPLATE
    return template.format(version=version or get_setting("iso_version") or DEFAULT_ISO_VERSION)


load_settings()
