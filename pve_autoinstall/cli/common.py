"""Shared plumbing for the console entry points."""

from __future__ import annotations

import os
from pathlib import Path

from pve_autoinstall.config.settings import get_path
from pve_autoinstall.logging import DEFAULT_LOG_DIR, setup_logging

EXIT_OK = 0
EXIT_FAILURE = 1


class NotRootError(Exception):
    """The command mutates the host and must run as root."""


def require_root() -> None:
    if os.geteuid() != 0:
        raise NotRootError("This command must be run as root")


def add_logging_arguments(parser) -> None:
    parser.add_argument("-d", "--debug", action="store_true", help="Enable verbose debug output")
    parser.add_argument(
        "--trace", action="store_true", help="Also log command stdout/stderr (implies --debug)"
    )


def configure_logging(args, audit_log: Path | None = None) -> None:
    setup_logging(
        debug=args.debug or args.trace,
        trace=args.trace,
        log_dir=get_path("log_dir") or DEFAULT_LOG_DIR,
        audit_log=audit_log,
    )
