"""
Tests for pve_autoinstall.storage.validation module.

This test suite covers:
- Block device existence checks
- Mount detection through the psutil mount table
- Disk count minimums per topology
- Single-disk topology given extra disks
"""

import stat
from collections import namedtuple
from unittest.mock import Mock, patch

import pytest

from pve_autoinstall.domain import Topology
from pve_autoinstall.storage import validation
from pve_autoinstall.storage.exceptions import (
    DeviceNotFoundError,
    DiskCountError,
    MountVerificationError,
)

Partition = namedtuple("Partition", "device mountpoint fstype opts")


@pytest.fixture
def block_devices():
    """Every /dev path is an existing block device."""
    with patch.object(
        validation.os, "stat", return_value=Mock(st_mode=stat.S_IFBLK | 0o660)
    ) as mock_stat:
        yield mock_stat


@pytest.fixture
def nothing_mounted():
    with patch.object(validation.psutil, "disk_partitions", return_value=[]) as mock_parts:
        yield mock_parts


@pytest.fixture
def no_symlinks():
    with patch.object(validation.os.path, "realpath", side_effect=lambda path: path):
        yield


class TestNormalizeDiskPath:
    def test_bare_name(self):
        assert validation.normalize_disk_path("sdb") == "/dev/sdb"

    def test_full_path(self):
        assert validation.normalize_disk_path("/dev/disk/by-id/ata-X") == "/dev/disk/by-id/ata-X"

    def test_strips_whitespace(self):
        assert validation.normalize_disk_path(" sdc ") == "/dev/sdc"


class TestValidateBlockDevice:
    def test_missing_path(self):
        with patch.object(validation.os, "stat", side_effect=FileNotFoundError()):
            with pytest.raises(DeviceNotFoundError, match="Disk not found: /dev/sdz"):
                validation.validate_block_device("/dev/sdz")

    def test_regular_file_is_rejected(self, tmp_path):
        regular = tmp_path / "disk.img"
        regular.write_bytes(b"\0")
        with pytest.raises(DeviceNotFoundError):
            validation.validate_block_device(str(regular))

    def test_block_device_passes(self, block_devices):
        validation.validate_block_device("/dev/sdb")


class TestFindMountpoint:
    def test_partition_of_disk(self, no_symlinks):
        mounts = [Partition("/dev/sdb1", "/mnt/data", "ext4", "rw")]
        with patch.object(validation.psutil, "disk_partitions", return_value=mounts):
            assert validation.find_mountpoint("/dev/sdb") == "/mnt/data"

    def test_nvme_partition(self, no_symlinks):
        mounts = [Partition("/dev/nvme0n1p2", "/srv", "xfs", "rw")]
        with patch.object(validation.psutil, "disk_partitions", return_value=mounts):
            assert validation.find_mountpoint("/dev/nvme0n1") == "/srv"

    def test_similar_name_is_not_a_partition(self, no_symlinks):
        mounts = [Partition("/dev/sdbb1", "/mnt/other", "ext4", "rw")]
        with patch.object(validation.psutil, "disk_partitions", return_value=mounts):
            assert validation.find_mountpoint("/dev/sdb") is None

    def test_pseudo_filesystems_ignored(self, no_symlinks):
        mounts = [Partition("tmpfs", "/run", "tmpfs", "rw")]
        with patch.object(validation.psutil, "disk_partitions", return_value=mounts):
            assert validation.find_mountpoint("/dev/sdb") is None


class TestValidatePoolDisks:
    """Tests for validate_pool_disks() across topologies and disk counts."""

    @pytest.mark.parametrize(
        "topology, count, ok",
        [
            (Topology.SINGLE, 1, True),
            (Topology.MIRROR, 1, False),
            (Topology.MIRROR, 2, True),
            (Topology.RAIDZ1, 2, False),
            (Topology.RAIDZ1, 3, True),
            (Topology.RAIDZ2, 3, False),
            (Topology.RAIDZ2, 4, True),
            (Topology.RAIDZ2, 5, True),
        ],
    )
    def test_minimum_disk_counts(self, topology, count, ok, block_devices, nothing_mounted):
        disks = [f"sd{chr(ord('b') + index)}" for index in range(count)]
        if ok:
            assert validation.validate_pool_disks(disks, topology) == [f"/dev/{d}" for d in disks]
        else:
            with pytest.raises(DiskCountError) as excinfo:
                validation.validate_pool_disks(disks, topology)
            assert excinfo.value.minimum == topology.min_disks

    def test_mirror_with_one_disk_names_minimum(self, block_devices, nothing_mounted):
        with pytest.raises(DiskCountError, match="mirror requires at least 2 disks"):
            validation.validate_pool_disks(["sdb"], Topology.MIRROR)

    def test_no_disks(self, block_devices, nothing_mounted):
        with pytest.raises(DiskCountError):
            validation.validate_pool_disks([], Topology.SINGLE)

    def test_single_with_extra_disks_uses_first(self, block_devices, nothing_mounted):
        used = validation.validate_pool_disks(["sdb", "sdc", "sdd"], Topology.SINGLE)
        assert used == ["/dev/sdb"]

    def test_missing_disk_fails_before_mount_check(self, nothing_mounted):
        with patch.object(validation.os, "stat", side_effect=FileNotFoundError()):
            with pytest.raises(DeviceNotFoundError):
                validation.validate_pool_disks(["sdb", "sdc"], Topology.MIRROR)
        nothing_mounted.assert_not_called()

    def test_mounted_disk_is_rejected(self, block_devices, no_symlinks):
        mounts = [Partition("/dev/sdc1", "/mnt/old", "ext4", "rw")]
        with patch.object(validation.psutil, "disk_partitions", return_value=mounts):
            with pytest.raises(MountVerificationError, match="/dev/sdc at /mnt/old"):
                validation.validate_pool_disks(["sdb", "sdc"], Topology.MIRROR)

    def test_mount_check_precedes_count_check(self, block_devices, no_symlinks):
        mounts = [Partition("/dev/sdb", "/mnt/raw", "ext4", "rw")]
        with patch.object(validation.psutil, "disk_partitions", return_value=mounts):
            with pytest.raises(MountVerificationError):
                validation.validate_pool_disks(["sdb"], Topology.RAIDZ2)
