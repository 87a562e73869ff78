"""pve-zfs-pool: create the storage pool, its datasets and storage entries."""

from __future__ import annotations

import argparse
import sys
from pathlib import Path

from pve_autoinstall.config.settings import POOL_MOUNT_ROOT, POOL_NAME
from pve_autoinstall.domain import StoragePoolSpec, Topology
from pve_autoinstall.logging import LoggerFactory
from pve_autoinstall.storage.exceptions import ConfirmationDeclined, StorageError
from pve_autoinstall.storage.zfs import setup_pool

from .common import (
    EXIT_FAILURE,
    EXIT_OK,
    NotRootError,
    add_logging_arguments,
    configure_logging,
    require_root,
)

log = LoggerFactory.for_zfs()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="pve-zfs-pool",
        description="Create a ZFS pool and register it with Proxmox VE",
    )
    parser.add_argument(
        "--disks", required=True, help="Comma-separated disks, e.g. sdb,sdc or /dev/sdb"
    )
    parser.add_argument(
        "--type",
        dest="topology",
        type=Topology.parse,
        default=Topology.SINGLE,
        help="single, mirror, raidz1 or raidz2 (default: single)",
    )
    parser.add_argument("--pool", default=POOL_NAME, help=f"Pool name (default: {POOL_NAME})")
    parser.add_argument(
        "--mount-root",
        type=Path,
        default=POOL_MOUNT_ROOT,
        help=f"Pool mountpoint (default: {POOL_MOUNT_ROOT})",
    )
    add_logging_arguments(parser)
    return parser


def spec_from_args(args) -> StoragePoolSpec:
    disks = tuple(disk.strip() for disk in args.disks.split(",") if disk.strip())
    return StoragePoolSpec(
        name=args.pool, mount_root=args.mount_root, topology=args.topology, disks=disks
    )


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(args)
    try:
        require_root()
        result = setup_pool(spec_from_args(args))
    except ConfirmationDeclined as declined:
        log.info(declined.reason)
        return EXIT_OK
    except (NotRootError, StorageError) as error:
        log.error(str(error))
        return EXIT_FAILURE

    log.success(f"ZFS configuration complete: {result.pool} on {', '.join(result.disks)}")
    if result.ignored_disks:
        log.warning(f"Not used: {', '.join(result.ignored_disks)}")
    if not result.registered:
        log.warning("pvesm not found; run the commands above once Proxmox VE is installed")
    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
