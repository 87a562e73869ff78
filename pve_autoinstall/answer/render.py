"""Deterministic TOML rendering and parsing of answer files.

Rendering is a small typed emitter: section and key order are fixed, strings
are written as TOML basic strings and lists inline, except the post-install
command list which gets one entry per line. Parsing goes through tomllib.
"""

from __future__ import annotations

import json
import tomllib
from typing import Any

from .models import (
    AnswerConfig,
    AnswerValidationError,
    DiskSetup,
    EmbeddedFile,
    Identity,
    NetworkConfig,
    PostInstallCommand,
    ServiceUnit,
    topology_from_raid,
)


def _toml_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, str):
        # JSON string escapes are a subset of TOML basic-string escapes
        return json.dumps(value, ensure_ascii=False).replace("\x7f", "\\u007f")
    if isinstance(value, (list, tuple)):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    raise TypeError(f"Cannot render {type(value).__name__} as TOML")


def render_unit(unit: ServiceUnit) -> str:
    blocks = []
    for section, entries in unit.sections():
        lines = [f"[{section}]"] + [f"{key}={value}" for key, value in entries]
        blocks.append("\n".join(lines))
    return "\n\n".join(blocks) + "\n"


def render_embedded(embedded: EmbeddedFile) -> str:
    """Render as a quoted heredoc so the shell expands nothing inside it."""
    body = render_unit(embedded.unit)
    if any(line == embedded.delimiter for line in body.splitlines()):
        raise AnswerValidationError(f"Unit body contains the delimiter {embedded.delimiter}")
    return f"cat > {embedded.path} << '{embedded.delimiter}'\n{body}{embedded.delimiter}"


def render_command(command: PostInstallCommand) -> str:
    if command.embedded is not None:
        return render_embedded(command.embedded)
    if not command.command:
        raise AnswerValidationError(f"Post-install command {command.name} is empty")
    return command.command


def _global_section(identity: Identity) -> list[tuple[str, Any]]:
    return [
        ("keyboard", identity.keyboard),
        ("country", identity.country),
        ("fqdn", identity.fqdn),
        ("mailto", identity.mailto),
        ("timezone", identity.timezone),
        ("root_password", identity.root_password),
    ]


def _network_section(network: NetworkConfig) -> list[tuple[str, Any]]:
    entries: list[tuple[str, Any]] = [("source", network.source)]
    if network.source == "from-answer":
        entries += [("cidr", network.cidr), ("gateway", network.gateway), ("dns", network.dns)]
        if network.interface:
            entries.append(("filter.ID_NET_NAME", network.interface))
    return entries


def _disk_section(disk_setup: DiskSetup) -> list[tuple[str, Any]]:
    entries: list[tuple[str, Any]] = [
        ("filesystem", disk_setup.filesystem),
        ("disk_list", list(disk_setup.disks)),
    ]
    if disk_setup.topology is not None:
        entries.append(("zfs.raid", disk_setup.topology.answer_raid))
    return entries


def render_answer(config: AnswerConfig) -> str:
    """Render ``config`` as TOML. Equal configs render byte-identical text."""
    sections = [
        ("global", _global_section(config.identity)),
        ("network", _network_section(config.network)),
        ("disk-setup", _disk_section(config.disk_setup)),
    ]
    blocks = []
    for name, entries in sections:
        lines = [f"[{name}]"] + [f"{key} = {_toml_value(value)}" for key, value in entries]
        blocks.append("\n".join(lines))

    commands = [render_command(command) for command in config.commands]
    if commands:
        body = "\n".join(f"    {_toml_value(command)}," for command in commands)
        blocks.append(f"[post-install]\ncommands = [\n{body}\n]")
    else:
        blocks.append("[post-install]\ncommands = []")
    return "\n\n".join(blocks) + "\n"


def load_answer(text: str) -> dict[str, Any]:
    try:
        return tomllib.loads(text)
    except tomllib.TOMLDecodeError as error:
        raise AnswerValidationError(f"Answer file is not valid TOML: {error}") from error


def parse_answer(text: str) -> tuple[Identity, DiskSetup]:
    """Read the identity and disk setup back out of a rendered answer.

    Raises:
        AnswerValidationError: On malformed TOML or missing keys
    """
    data = load_answer(text)
    try:
        global_section = data["global"]
        disk_section = data["disk-setup"]
        hostname, _, domain = global_section["fqdn"].partition(".")
        identity = Identity(
            hostname=hostname,
            domain=domain,
            root_password=global_section["root_password"],
            keyboard=global_section["keyboard"],
            country=global_section["country"],
            timezone=global_section["timezone"],
            mailto=global_section["mailto"],
        )
        raid = disk_section.get("zfs", {}).get("raid")
        disk_setup = DiskSetup(
            filesystem=disk_section["filesystem"],
            topology=topology_from_raid(raid) if raid else None,
            disks=tuple(disk_section.get("disk_list", ())),
        )
    except KeyError as error:
        raise AnswerValidationError(f"Answer file is missing {error}") from error
    return identity, disk_setup


def parse_commands(text: str) -> list[str]:
    return list(load_answer(text).get("post-install", {}).get("commands", []))
