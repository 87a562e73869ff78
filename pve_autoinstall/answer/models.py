"""Typed structure of an unattended-installer answer file.

The first-boot service unit is carried as a ServiceUnit value inside an
EmbeddedFile, and only turned into text by the renderer. Nothing here
performs I/O.
"""

from __future__ import annotations

import ipaddress
import re
from dataclasses import dataclass, field
from pathlib import Path

from pve_autoinstall.domain import Topology


class AnswerValidationError(ValueError):
    """An answer field is missing or malformed."""


_HOSTNAME_LABEL = re.compile(r"^(?!-)[A-Za-z0-9-]{1,63}(?<!-)$")

FILESYSTEMS = ("ext4", "xfs", "zfs")
NETWORK_SOURCES = ("from-dhcp", "from-answer")

_RAID_TO_TOPOLOGY = {topology.answer_raid: topology for topology in Topology}


def topology_from_raid(value: str) -> Topology:
    try:
        return _RAID_TO_TOPOLOGY[value]
    except KeyError as error:
        raise AnswerValidationError(f"Unknown zfs.raid value: {value}") from error


@dataclass(frozen=True)
class Identity:
    hostname: str
    domain: str
    root_password: str
    keyboard: str = "en-us"
    country: str = "us"
    timezone: str = "UTC"
    mailto: str = "root@localhost"

    def __post_init__(self):
        for label in [self.hostname, *self.domain.split(".")]:
            if not _HOSTNAME_LABEL.match(label):
                raise AnswerValidationError(f"Invalid hostname or domain label: {label!r}")
        if not self.root_password:
            raise AnswerValidationError("Root password must not be empty")

    @property
    def fqdn(self) -> str:
        return f"{self.hostname}.{self.domain}"


@dataclass(frozen=True)
class NetworkConfig:
    """Network source for the installed host.

    ``from-dhcp`` keeps whatever lease the installer obtained; ``from-answer``
    pins cidr, gateway and dns, optionally for one interface name.
    """

    source: str = "from-dhcp"
    cidr: str | None = None
    gateway: str | None = None
    dns: str | None = None
    interface: str | None = None

    def __post_init__(self):
        if self.source not in NETWORK_SOURCES:
            raise AnswerValidationError(f"Unknown network source: {self.source}")
        if self.source != "from-answer":
            return
        if not (self.cidr and self.gateway and self.dns):
            raise AnswerValidationError("Static network needs cidr, gateway and dns")
        try:
            ipaddress.ip_interface(self.cidr)
            ipaddress.ip_address(self.gateway)
            ipaddress.ip_address(self.dns)
        except ValueError as error:
            raise AnswerValidationError(str(error)) from error
        if "/" not in self.cidr:
            raise AnswerValidationError(f"Address needs a prefix length: {self.cidr}")


@dataclass(frozen=True)
class DiskSetup:
    """Filesystem kind, redundancy topology and target disks.

    ``topology`` only applies to zfs and is None for ext4/xfs.
    """

    filesystem: str = "ext4"
    topology: Topology | None = None
    disks: tuple[str, ...] = ()

    def __post_init__(self):
        if self.filesystem not in FILESYSTEMS:
            raise AnswerValidationError(f"Unknown filesystem: {self.filesystem}")
        if self.filesystem == "zfs":
            if self.topology is None:
                object.__setattr__(self, "topology", Topology.SINGLE)
            topology = self.topology
            if len(self.disks) < topology.min_disks:
                raise AnswerValidationError(
                    f"{topology.value} requires at least {topology.min_disks} disks "
                    f"({len(self.disks)} provided)"
                )
        elif self.topology is not None:
            raise AnswerValidationError(f"{self.filesystem} does not take a redundancy topology")
        elif not self.disks:
            raise AnswerValidationError(f"{self.filesystem} needs at least one install disk")


@dataclass(frozen=True)
class ServiceUnit:
    """A systemd unit as sections of ordered key/value pairs."""

    description: str
    unit: tuple[tuple[str, str], ...] = ()
    service: tuple[tuple[str, str], ...] = ()
    install: tuple[tuple[str, str], ...] = ()

    def sections(self) -> list[tuple[str, tuple[tuple[str, str], ...]]]:
        return [
            ("Unit", (("Description", self.description),) + self.unit),
            ("Service", self.service),
            ("Install", self.install),
        ]


@dataclass(frozen=True)
class EmbeddedFile:
    path: Path
    unit: ServiceUnit
    delimiter: str = "EOF"


@dataclass(frozen=True)
class PostInstallCommand:
    """One entry of the ordered post-install list.

    Exactly one of ``command`` or ``embedded`` is set.
    """

    name: str
    command: str | None = None
    embedded: EmbeddedFile | None = None
    cleanup: bool = False


@dataclass(frozen=True)
class AnswerConfig:
    identity: Identity
    network: NetworkConfig
    disk_setup: DiskSetup
    commands: tuple[PostInstallCommand, ...] = field(default_factory=tuple)

    def command_names(self) -> list[str]:
        return [command.name for command in self.commands]
