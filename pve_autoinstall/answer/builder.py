"""Assemble the ordered post-install command list for an answer file.

Order matters, later commands assume the earlier ones succeeded:

    [cleanup]  stale pool destroy -> stale signature wipe -> cluster state
    venv -> pip install package -> link pve-first-boot -> write first-boot unit
    -> systemctl daemon-reload -> systemctl enable

build_answer() is pure: identical inputs always give an identical AnswerConfig.
"""

from __future__ import annotations

import shlex
from pathlib import Path

from pve_autoinstall.config.settings import (
    FIRST_BOOT_COMMAND,
    FIRST_BOOT_UNIT,
    INSTALL_PREFIX,
    SETUP_DONE_MARKER,
)

from .models import (
    AnswerConfig,
    AnswerValidationError,
    DiskSetup,
    EmbeddedFile,
    Identity,
    NetworkConfig,
    PostInstallCommand,
    ServiceUnit,
)

UNIT_DIR = Path("/etc/systemd/system")

# Pools that `zpool import` can still see belong to a previous install; the
# live root pool is already imported and never listed. Each one is imported
# under a temporary name so it cannot clash with the new pool.
DESTROY_STALE_POOLS = (
    "zpool import 2>/dev/null | awk '$1 == \"id:\" {print $2}' | "
    "while read -r id; do "
    "zpool import -f -N -t \"$id\" \"stale-$id\" && zpool destroy -f \"stale-$id\"; "
    "done || true"
)
WIPE_STALE_SIGNATURES = (
    "blkid -t TYPE=zfs_member -o device 2>/dev/null | "
    "while read -r dev; do "
    "zpool status -P 2>/dev/null | grep -q \"$dev\" || wipefs -a \"$dev\"; "
    "done || true"
)
REMOVE_CLUSTER_STATE = (
    "find /etc/pve/nodes -mindepth 1 -maxdepth 1 ! -name \"$(hostname)\" "
    "-exec rm -rf {} + 2>/dev/null; rm -rf /etc/corosync/* /var/lib/corosync/* || true"
)


def first_boot_unit(command=FIRST_BOOT_COMMAND, marker=SETUP_DONE_MARKER) -> ServiceUnit:
    return ServiceUnit(
        description="PVE first boot provisioning",
        unit=(
            ("After", "network-online.target"),
            ("Wants", "network-online.target"),
            ("ConditionPathExists", f"!{marker}"),
        ),
        service=(
            ("Type", "oneshot"),
            ("ExecStart", f"{command} --auto"),
            ("ExecStartPost", f"/usr/bin/touch {marker}"),
            ("ExecStartPost", f"/usr/bin/systemctl disable {FIRST_BOOT_UNIT}"),
            ("RemainAfterExit", "yes"),
            ("StandardOutput", "journal+console"),
            ("TimeoutStartSec", "0"),
        ),
        install=(("WantedBy", "multi-user.target"),),
    )


def cleanup_commands() -> list[PostInstallCommand]:
    return [
        PostInstallCommand("destroy-stale-pools", DESTROY_STALE_POOLS, cleanup=True),
        PostInstallCommand("wipe-stale-signatures", WIPE_STALE_SIGNATURES, cleanup=True),
        PostInstallCommand("remove-cluster-state", REMOVE_CLUSTER_STATE, cleanup=True),
    ]


def setup_commands(package_spec: str) -> list[PostInstallCommand]:
    prefix = shlex.quote(str(INSTALL_PREFIX))
    entry_point = shlex.quote(str(INSTALL_PREFIX / "bin" / FIRST_BOOT_COMMAND.name))
    return [
        PostInstallCommand(
            "install-venv",
            "apt-get update -qq || true; apt-get install -y -qq python3-venv",
        ),
        PostInstallCommand("create-venv", f"python3 -m venv {prefix}"),
        PostInstallCommand(
            "install-package",
            f"{prefix}/bin/pip install -q {shlex.quote(package_spec)}",
        ),
        PostInstallCommand(
            "link-command",
            f"ln -sf {entry_point} {shlex.quote(str(FIRST_BOOT_COMMAND))}",
        ),
        PostInstallCommand(
            "write-unit",
            embedded=EmbeddedFile(path=UNIT_DIR / FIRST_BOOT_UNIT, unit=first_boot_unit()),
        ),
        PostInstallCommand("daemon-reload", "systemctl daemon-reload"),
        PostInstallCommand("enable-unit", f"systemctl enable {FIRST_BOOT_UNIT}"),
    ]


def build_answer(
    identity: Identity,
    network: NetworkConfig,
    storage: DiskSetup,
    cleanup_requested: bool,
    *,
    package_spec: str,
) -> AnswerConfig:
    """Build the answer for one install.

    Args:
        cleanup_requested: Prepend destructive cleanup of a previous install
        package_spec: pip requirement that provides ``pve-first-boot``

    Raises:
        AnswerValidationError: If the package spec is empty
    """
    if not package_spec:
        raise AnswerValidationError("A package spec for pve-autoinstall is required")
    commands: list[PostInstallCommand] = []
    if cleanup_requested:
        commands.extend(cleanup_commands())
    commands.extend(setup_commands(package_spec))
    return AnswerConfig(
        identity=identity,
        network=network,
        disk_setup=storage,
        commands=tuple(commands),
    )
