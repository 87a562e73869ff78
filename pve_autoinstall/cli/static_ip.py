"""pve-static-ip: pin the current DHCP lease as a static configuration."""

from __future__ import annotations

import argparse
import subprocess
import sys

from pve_autoinstall.logging import LoggerFactory
from pve_autoinstall.provisioning import ProvisioningContext
from pve_autoinstall.provisioning.static_ip import convert_to_static
from pve_autoinstall.storage.exceptions import ConfirmationDeclined

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
        prog="pve-static-ip",
        description="Convert a DHCP address to a static configuration",
    )
    add_logging_arguments(parser)
    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(args)
    try:
        require_root()
        convert_to_static(ProvisioningContext())
    except ConfirmationDeclined as declined:
        log.info(declined.reason)
        return EXIT_OK
    except (NotRootError, ValueError, OSError, subprocess.CalledProcessError) as error:
        log.error(str(error))
        return EXIT_FAILURE
    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
