"""Convert a DHCP-configured host to a static address.

The current lease is read from the routing table so that every prompt can
offer the live value as its default. The interfaces file is backed up with
a timestamp before being rewritten.
"""

from __future__ import annotations

import ipaddress
import re
import shutil
import socket
import subprocess
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Callable, Optional

from pve_autoinstall.logging import LoggerFactory
from pve_autoinstall.storage.selection import confirm_destructive

from .context import ProvisioningContext
from .network import get_gateway, get_primary_interface, get_primary_ip

log = LoggerFactory.for_setup()

INTERFACES_FILE = Path("/etc/network/interfaces")
RESOLV_CONF = Path("/etc/resolv.conf")
HOSTS_FILE = Path("/etc/hosts")
BRIDGE_NAME = "vmbr0"

_BRIDGE_PORTS = re.compile(r"^\s*bridge-ports\s+(\S+)", re.MULTILINE)


@dataclass(frozen=True)
class StaticConfig:
    interface: str
    address: str
    prefix: int
    gateway: str
    dns: str

    def __post_init__(self) -> None:
        ipaddress.ip_address(self.address)
        ipaddress.ip_address(self.gateway)
        ipaddress.ip_address(self.dns)
        if not 0 < self.prefix <= 32:
            raise ValueError(f"invalid prefix length: {self.prefix}")

    @property
    def cidr(self) -> str:
        return f"{self.address}/{self.prefix}"


def get_prefix_length(ctx: ProvisioningContext, interface: str) -> Optional[int]:
    result = ctx.run(
        ["ip", "-o", "-f", "inet", "addr", "show", interface], check=False, log_output=False
    )
    for token in (result.stdout or "").split():
        if "/" in token:
            try:
                return ipaddress.ip_interface(token).network.prefixlen
            except ValueError:
                continue
    return None


def get_nameserver(resolv_conf: Path = RESOLV_CONF) -> Optional[str]:
    if not resolv_conf.exists():
        return None
    for line in resolv_conf.read_text(encoding="utf-8").splitlines():
        parts = line.split()
        if len(parts) >= 2 and parts[0] == "nameserver":
            return parts[1]
    return None


def read_current(ctx: ProvisioningContext, resolv_conf: Path = RESOLV_CONF) -> dict:
    interface = get_primary_interface(ctx) or ""
    return {
        "interface": interface,
        "address": get_primary_ip(ctx) or "",
        "prefix": get_prefix_length(ctx, interface) if interface else None,
        "gateway": get_gateway(ctx) or "",
        "dns": get_nameserver(resolv_conf) or "",
    }


def _ask(prompt: Callable[[str], str], label: str, default) -> str:
    shown = "" if default in (None, "") else str(default)
    answer = prompt(f"{label} [{shown}]: ").strip()
    return answer or shown


def prompt_static_config(current: dict, *, prompt: Callable[[str], str] = input) -> StaticConfig:
    """Ask for each value with the current one as default.

    Raises:
        ValueError: An entered value is not a valid address or prefix
    """
    address = _ask(prompt, "IP Address", current["address"])
    prefix = _ask(prompt, "Netmask (CIDR)", current["prefix"])
    gateway = _ask(prompt, "Gateway", current["gateway"])
    dns = _ask(prompt, "DNS Server", current["dns"])
    return StaticConfig(
        interface=current["interface"],
        address=address,
        prefix=int(prefix.lstrip("/")),
        gateway=gateway,
        dns=dns,
    )


def bridge_port(interfaces_text: str) -> Optional[str]:
    if BRIDGE_NAME not in interfaces_text:
        return None
    match = _BRIDGE_PORTS.search(interfaces_text)
    return match.group(1) if match else None


def render_interfaces(config: StaticConfig, existing: str) -> str:
    """Bridge stanza when the host already has ``vmbr0``, plain stanza otherwise."""
    if BRIDGE_NAME in existing:
        port = bridge_port(existing)
        if port is None or port == BRIDGE_NAME:
            port = config.interface
        return (
            "auto lo\n"
            "iface lo inet loopback\n"
            "\n"
            f"iface {port} inet manual\n"
            "\n"
            f"auto {BRIDGE_NAME}\n"
            f"iface {BRIDGE_NAME} inet static\n"
            f"    address {config.cidr}\n"
            f"    gateway {config.gateway}\n"
            f"    bridge-ports {port}\n"
            "    bridge-stp off\n"
            "    bridge-fd 0\n"
        )
    return (
        "auto lo\n"
        "iface lo inet loopback\n"
        "\n"
        f"auto {config.interface}\n"
        f"iface {config.interface} inet static\n"
        f"    address {config.cidr}\n"
        f"    gateway {config.gateway}\n"
    )


def backup_interfaces(interfaces: Path, now: Optional[datetime] = None) -> Path:
    stamp = (now or datetime.now()).strftime("%Y%m%d%H%M%S")
    backup = interfaces.with_name(f"{interfaces.name}.backup.{stamp}")
    shutil.copy2(interfaces, backup)
    log.info(f"Backed up to {backup}")
    return backup


def update_hosts(hosts: Path, old_address: str, new_address: str, fqdn: str, hostname: str) -> bool:
    """Rewrite the line for the old address. Returns True if one was found."""
    if not old_address or not hosts.exists():
        return False
    lines = hosts.read_text(encoding="utf-8").splitlines(keepends=True)
    changed = False
    for index, line in enumerate(lines):
        fields = line.split()
        if fields and fields[0] == old_address:
            lines[index] = f"{new_address}    {fqdn} {hostname}\n"
            changed = True
    if changed:
        hosts.write_text("".join(lines), encoding="utf-8")
    return changed


def apply_static_config(
    config: StaticConfig,
    old_address: str,
    *,
    interfaces: Path = INTERFACES_FILE,
    resolv_conf: Path = RESOLV_CONF,
    hosts: Path = HOSTS_FILE,
    now: Optional[datetime] = None,
) -> Path:
    """Write the new configuration and return the backup path."""
    existing = interfaces.read_text(encoding="utf-8") if interfaces.exists() else ""
    backup = backup_interfaces(interfaces, now) if interfaces.exists() else interfaces
    interfaces.write_text(render_interfaces(config, existing), encoding="utf-8")
    resolv_conf.write_text(f"nameserver {config.dns}\n", encoding="utf-8")

    hostname = socket.gethostname().split(".")[0]
    fqdn = socket.getfqdn() or f"{hostname}.local"
    if not update_hosts(hosts, old_address, config.address, fqdn, hostname):
        log.warning(f"No {hosts} entry for {old_address}; update it manually")
    log.info("Configuration updated")
    return backup


def restart_networking(ctx: ProvisioningContext, config: StaticConfig, backup: Path) -> bool:
    log.info("Restarting networking...")
    try:
        ctx.run(["systemctl", "restart", "networking"])
    except subprocess.CalledProcessError:
        log.error("Networking restart failed")
        log.info(f"Restore backup with: cp {backup} {INTERFACES_FILE}")
        raise
    ctx.sleep(3)
    current = get_primary_ip(ctx)
    if current == config.address:
        log.success(f"Success! New IP: {current}")
        return True
    log.error("IP address mismatch. Check configuration.")
    log.info(f"Restore backup with: cp {backup} {INTERFACES_FILE}")
    return False


def convert_to_static(
    ctx: ProvisioningContext,
    *,
    prompt: Callable[[str], str] = input,
    interfaces: Path = INTERFACES_FILE,
    resolv_conf: Path = RESOLV_CONF,
    hosts: Path = HOSTS_FILE,
) -> StaticConfig:
    """Interactive conversion. Returns the applied configuration.

    Raises:
        ConfirmationDeclined: The operator did not type the confirmation token
        ValueError: An entered value is invalid
        subprocess.CalledProcessError: The networking restart failed
    """
    current = read_current(ctx, resolv_conf)
    log.info("Current Network Configuration:")
    log.info(f"  Interface: {current['interface']}")
    log.info(f"  IP Address: {current['address']}")
    log.info(f"  Netmask: /{current['prefix']}")
    log.info(f"  Gateway: {current['gateway']}")
    log.info(f"  DNS: {current['dns']}")

    config = prompt_static_config(current, prompt=prompt)
    log.info(f"New configuration: {config.cidr} via {config.gateway}, DNS {config.dns}")
    confirm_destructive([str(interfaces), str(resolv_conf), str(hosts)], prompt=prompt)

    backup = apply_static_config(
        config, current["address"], interfaces=interfaces, resolv_conf=resolv_conf, hosts=hosts
    )
    log.warning("Network restart required!")
    answer = prompt("Restart networking now? (yes/no): ").strip().lower()
    if answer == "yes":
        restart_networking(ctx, config, backup)
    else:
        log.info("Run 'systemctl restart networking' to apply changes")
    return config


__all__ = [
    "StaticConfig",
    "apply_static_config",
    "bridge_port",
    "convert_to_static",
    "prompt_static_config",
    "read_current",
    "render_interfaces",
    "update_hosts",
]
