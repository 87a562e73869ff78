"""pve-first-boot: provision a freshly installed host.

Run by the one-shot unit with ``--auto`` on first boot, or by hand without
it to re-run the steps and attach to the session afterwards.
"""

from __future__ import annotations

import argparse
import sys
from pathlib import Path

from pve_autoinstall.config.settings import FIRST_BOOT_LOG
from pve_autoinstall.logging import LoggerFactory
from pve_autoinstall.provisioning import ProvisioningContext, run_first_boot

from .common import (
    EXIT_FAILURE,
    EXIT_OK,
    NotRootError,
    add_logging_arguments,
    configure_logging,
    require_root,
)

log = LoggerFactory.for_setup()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="pve-first-boot",
        description="First boot setup for Proxmox VE hosts",
    )
    parser.add_argument(
        "--auto",
        action="store_true",
        help="Unattended run: wait for the network and do not attach to the session",
    )
    parser.add_argument(
        "--log-file",
        type=Path,
        default=FIRST_BOOT_LOG,
        help=f"Durable audit log (default: {FIRST_BOOT_LOG})",
    )
    add_logging_arguments(parser)
    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(args, audit_log=args.log_file)
    try:
        require_root()
    except NotRootError as error:
        log.error(str(error))
        return EXIT_FAILURE

    run = run_first_boot(ProvisioningContext.from_settings(auto=args.auto))
    for result in run.results:
        log.debug(f"{result.name}: {result.outcome.value} {result.detail}".rstrip())
    return EXIT_FAILURE if run.aborted else EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
