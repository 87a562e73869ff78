"""Unattended-installer answer generation.

Main Functions:
    - build_answer(): Pure assembly of an AnswerConfig with ordered commands
    - render_answer(): Deterministic TOML text for an AnswerConfig
    - parse_answer(): Identity and disk setup read back from TOML
"""

from .builder import build_answer, first_boot_unit
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
from .render import parse_answer, parse_commands, render_answer, render_unit


__all__ = [
    "AnswerConfig",
    "AnswerValidationError",
    "DiskSetup",
    "EmbeddedFile",
    "Identity",
    "NetworkConfig",
    "PostInstallCommand",
    "ServiceUnit",
    "build_answer",
    "first_boot_unit",
    "parse_answer",
    "parse_commands",
    "render_answer",
    "render_unit",
]
