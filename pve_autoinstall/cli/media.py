"""pve-make-media: write Proxmox VE install media with an unattended answer.

Flow: select device -> confirm -> fetch ISO -> write image -> build answer
-> optional assistant validation -> answer partition (or fallback file).
"""

from __future__ import annotations

import argparse
import getpass
import sys
import tempfile
from pathlib import Path

from pve_autoinstall.answer import (
    AnswerValidationError,
    DiskSetup,
    Identity,
    NetworkConfig,
    build_answer,
    render_answer,
)
from pve_autoinstall.answer.assistant import assistant_available, validate_with_assistant
from pve_autoinstall.config.settings import (
    IMAGING_CHUNK_SIZE,
    get_int,
    get_path,
    get_setting,
    iso_url,
)
from pve_autoinstall.domain import ImagingOperation, Topology, TransferJob
from pve_autoinstall.logging import LoggerFactory
from pve_autoinstall.services.transfer import FetchError, fetch
from pve_autoinstall.storage.answer_partition import create_answer_partition
from pve_autoinstall.storage.devices import human_size, list_removable_devices
from pve_autoinstall.storage.exceptions import ConfirmationDeclined, StorageError
from pve_autoinstall.storage.imaging import LogProgressRenderer, write_image
from pve_autoinstall.storage.selection import confirm_destructive, find_device, select_device

from .common import (
    EXIT_FAILURE,
    EXIT_OK,
    NotRootError,
    add_logging_arguments,
    configure_logging,
    require_root,
)

log = LoggerFactory.for_system()

ASSISTANT_NAME = "proxmox-auto-install-assistant"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="pve-make-media",
        description="Create Proxmox VE auto-install USB media",
    )
    parser.add_argument("--device", help="Target device name (e.g. sdb); prompts when omitted")
    parser.add_argument("--version", dest="iso_version", help="Proxmox VE ISO version")
    parser.add_argument("--iso-url", help="Full ISO URL, overrides --version")
    parser.add_argument(
        "--skip-download", action="store_true", help="Reuse an already downloaded ISO"
    )
    parser.add_argument("--hostname", default="pve")
    parser.add_argument("--domain", default="local")
    parser.add_argument("--root-password", help="Prompted for when omitted")
    parser.add_argument("--keyboard", default="en-us")
    parser.add_argument("--country", default="us")
    parser.add_argument("--timezone", default="UTC")
    parser.add_argument("--mailto", default="root@localhost")
    parser.add_argument("--filesystem", choices=("ext4", "xfs", "zfs"), default="ext4")
    parser.add_argument(
        "--zfs-type",
        choices=[topology.value for topology in Topology],
        help="Redundancy topology (zfs only, default single)",
    )
    parser.add_argument("--disks", default="", help="Comma-separated install disks (required)")
    parser.add_argument(
        "--cleanup",
        action="store_true",
        help="Destroy stale pools and cluster state left by a previous install",
    )
    parser.add_argument(
        "--package-spec",
        help="pip requirement installed on the new host to provide pve-first-boot",
    )
    parser.add_argument("--static-cidr", help="Static address with prefix, e.g. 192.0.2.10/24")
    parser.add_argument("--static-gateway")
    parser.add_argument("--static-dns")
    parser.add_argument("--interface", help="Interface name filter for the static address")
    parser.add_argument(
        "--no-validate", action="store_true", help="Skip answer validation with the assistant"
    )
    add_logging_arguments(parser)
    return parser


def _split_disks(value: str) -> tuple[str, ...]:
    return tuple(disk.strip() for disk in value.split(",") if disk.strip())


def answer_inputs(args, password: str) -> tuple[Identity, NetworkConfig, DiskSetup]:
    """Validate the answer fields before anything touches a device.

    Raises:
        AnswerValidationError: On any invalid field
    """
    identity = Identity(
        hostname=args.hostname,
        domain=args.domain,
        root_password=password,
        keyboard=args.keyboard,
        country=args.country,
        timezone=args.timezone,
        mailto=args.mailto,
    )
    if args.static_cidr or args.static_gateway or args.static_dns:
        network = NetworkConfig(
            source="from-answer",
            cidr=args.static_cidr,
            gateway=args.static_gateway,
            dns=args.static_dns,
            interface=args.interface,
        )
    else:
        network = NetworkConfig()
    topology = Topology.parse(args.zfs_type) if args.zfs_type else None
    if topology is not None and args.filesystem != "zfs":
        raise AnswerValidationError("--zfs-type requires --filesystem zfs")
    disk_setup = DiskSetup(
        filesystem=args.filesystem, topology=topology, disks=_split_disks(args.disks)
    )
    return identity, network, disk_setup


def _read_password(args) -> str:
    if args.root_password:
        return args.root_password
    first = getpass.getpass("Root password for the installed host: ")
    second = getpass.getpass("Repeat password: ")
    if first != second:
        raise AnswerValidationError("Passwords do not match")
    return first


def fetch_iso(args) -> Path:
    url = args.iso_url or iso_url(args.iso_version)
    download_dir = get_path("download_dir") or Path.cwd()
    job = TransferJob(
        source=url,
        destination=download_dir / url.rsplit("/", 1)[-1],
        min_size_bytes=get_int("iso_min_size_bytes"),
        reuse_existing=args.skip_download,
    )
    return fetch(job)


def fetch_assistant() -> Path | None:
    url = get_setting("helper_tool_url")
    if not url:
        return None
    download_dir = get_path("download_dir") or Path.cwd()
    job = TransferJob(
        source=url,
        destination=download_dir / ASSISTANT_NAME,
        min_size_bytes=get_int("helper_min_size_bytes"),
        reuse_existing=True,
    )
    try:
        return fetch(job)
    except FetchError as error:
        log.warning(f"Answer validation unavailable: {error}")
        return None


def validate_answer(text: str, tool: Path) -> bool:
    with tempfile.TemporaryDirectory(prefix="pve-answer-") as workdir:
        path = Path(workdir) / "answer.toml"
        path.write_text(text, encoding="utf-8")
        return validate_with_assistant(path, tool)


def make_media(args) -> int:
    package_spec = args.package_spec or get_setting("package_spec")
    if not package_spec:
        raise AnswerValidationError(
            "A package spec is required (--package-spec or the package_spec setting)"
        )
    identity, network, disk_setup = answer_inputs(args, _read_password(args))

    devices = list_removable_devices()
    device = find_device(devices, args.device) if args.device else select_device(devices)
    log.info(f"Target: {device.format_label()}")
    confirm_destructive([device.device_path])

    iso = fetch_iso(args)
    renderer = LogProgressRenderer(log, label=device.name)
    progress = write_image(
        ImagingOperation(source=iso, target=device, chunk_size=IMAGING_CHUNK_SIZE),
        renderer=renderer,
    )
    log.info(f"Wrote {human_size(progress.bytes_written)} to {device.device_path}")

    config = build_answer(
        identity, network, disk_setup, args.cleanup, package_spec=package_spec
    )
    if not args.no_validate:
        tool = fetch_assistant()
        if assistant_available(tool):
            validate_answer(render_answer(config), tool)

    fallback = get_path("answer_fallback_path") or Path.cwd() / "answer.toml"
    result = create_answer_partition(device, config, fallback_path=fallback)

    log.success("Media ready")
    log.info(f"  Device:  {device.device_path}")
    log.info(f"  Host:    {identity.fqdn}")
    if result.degraded:
        log.warning(f"  Answer:  {result.answer_path} (copy it to a PROXMOX-AIS volume)")
    else:
        log.info(f"  Answer:  {result.partition}")
    log.info("Boot the target from this media and choose Automated Installation")
    return EXIT_OK


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(args)
    try:
        require_root()
        return make_media(args)
    except ConfirmationDeclined as declined:
        log.info(declined.reason)
        return EXIT_OK
    except (NotRootError, ValueError, FetchError, StorageError) as error:
        log.error(str(error))
        return EXIT_FAILURE


if __name__ == "__main__":
    sys.exit(main())
