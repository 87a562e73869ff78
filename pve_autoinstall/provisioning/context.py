"""Everything a first-boot run needs, gathered in one value.

Paths, package names and timing come from settings; the command runner,
sleep and PATH lookup are injectable so every step can be exercised without
touching the host.
"""

from __future__ import annotations

import shutil
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Optional

from pve_autoinstall.config.settings import WEB_UI_PORT, get_int, get_setting
from pve_autoinstall.storage.devices import run_command

APT_SOURCES_DIR = Path("/etc/apt/sources.list.d")
ENTERPRISE_LIST = "pve-enterprise.list"
NO_SUBSCRIPTION_LIST = "pve-no-subscription.list"
NO_SUBSCRIPTION_ENTRY = "deb http://download.proxmox.com/debian/pve bookworm pve-no-subscription"
RUNTIME_SETUP_URL = "https://deb.nodesource.com/setup_{major}.x"
VENDOR_URL = "https://www.proxmox.com"
PUBLIC_IP = "8.8.8.8"
PUBLIC_HOSTNAME = "google.com"


@dataclass
class ProvisioningContext:
    auto: bool = False
    bashrc: Path = Path("/root/.bashrc")
    sources_dir: Path = APT_SOURCES_DIR
    session_name: str = "claude"
    cli_package: str = "@anthropic-ai/claude-code"
    cli_binary: str = "claude"
    runtime_min_major: int = 18
    runtime_install_major: int = 20
    dependency_packages: list[str] = field(
        default_factory=lambda: ["curl", "wget", "git", "tmux", "htop", "vim"]
    )
    network_wait_seconds: int = 120
    network_poll_interval: int = 5
    attach_delay_seconds: int = 3
    web_ui_port: int = WEB_UI_PORT
    runner: Callable[..., object] = run_command
    sleep: Callable[[float], None] = time.sleep
    which: Callable[[str], Optional[str]] = shutil.which

    @classmethod
    def from_settings(cls, auto: bool) -> ProvisioningContext:
        return cls(
            auto=auto,
            session_name=get_setting("session_name", "claude"),
            cli_package=get_setting("cli_package", "@anthropic-ai/claude-code"),
            cli_binary=get_setting("cli_binary", "claude"),
            runtime_min_major=get_int("runtime_min_major", 18),
            runtime_install_major=get_int("runtime_install_major", 20),
            dependency_packages=list(get_setting("dependency_packages") or []),
            network_wait_seconds=get_int("network_wait_seconds", 120),
            network_poll_interval=get_int("network_poll_interval", 5),
        )

    @property
    def enterprise_list(self) -> Path:
        return self.sources_dir / ENTERPRISE_LIST

    @property
    def no_subscription_list(self) -> Path:
        return self.sources_dir / NO_SUBSCRIPTION_LIST

    def run(self, command: list[str], **kwargs):
        return self.runner(command, **kwargs)
