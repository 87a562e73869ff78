"""Tests for domain models.

This module covers the pure domain layer: no commands run and no files are
touched.
"""
from __future__ import annotations

import dataclasses
from pathlib import Path

import pytest

from pve_autoinstall.domain import (
    BlockDevice,
    ImagingProgress,
    ProvisioningRun,
    StepOutcome,
    StepResult,
    StoragePoolSpec,
    Topology,
    TransferJob,
    TransferProgress,
)


# ==============================================================================
# BlockDevice Tests
# ==============================================================================


class TestBlockDevice:
    """Test BlockDevice domain model."""

    def test_device_path_property(self):
        assert BlockDevice(name="sdb", size_bytes=0).device_path == "/dev/sdb"

    def test_size_gb_property(self):
        assert BlockDevice(name="sdb", size_bytes=2 * 1024**3).size_gb == 2.0

    def test_format_label_minimal(self):
        assert BlockDevice(name="sdb", size_bytes=8 * 1024**3).format_label() == "sdb 8.0GB"

    def test_format_label_full(self, usb_block_device):
        assert usb_block_device.format_label() == "sdb SanDisk Ultra (7.5GB) [usb]"

    def test_from_lsblk_dict_full(self, mock_usb_device):
        device = BlockDevice.from_lsblk_dict(mock_usb_device)
        assert device.name == "sdb"
        assert device.size_bytes == 16106127360
        assert device.transport == "usb"
        assert device.removable is True
        assert device.mountpoints == ("/media/usb",)

    @pytest.mark.parametrize("rm, expected", [(True, True), ("1", True), (0, False), ("0", False), (None, False)])
    def test_from_lsblk_dict_removable_flag(self, rm, expected):
        device = BlockDevice.from_lsblk_dict({"name": "sdc", "size": 1, "rm": rm})
        assert device.removable is expected

    def test_blank_model_becomes_none(self):
        device = BlockDevice.from_lsblk_dict({"name": "sdc", "size": "10", "model": "   "})
        assert device.model is None
        assert device.size_bytes == 10

    def test_from_lsblk_dict_missing_name_raises(self):
        with pytest.raises(KeyError):
            BlockDevice.from_lsblk_dict({"size": 1})

    def test_from_lsblk_dict_invalid_size_raises(self):
        with pytest.raises(ValueError):
            BlockDevice.from_lsblk_dict({"name": "sdc", "size": "big"})

    def test_block_device_is_frozen(self, usb_block_device):
        with pytest.raises(dataclasses.FrozenInstanceError):
            usb_block_device.name = "sdc"


# ==============================================================================
# Progress Tests
# ==============================================================================


class TestImagingProgress:
    def test_advance_is_monotonic(self):
        progress = ImagingProgress(total_bytes=100)
        progress.advance(40)
        progress.advance(0)
        assert progress.bytes_written == 40
        with pytest.raises(ValueError):
            progress.advance(-1)

    def test_percent_is_capped(self):
        progress = ImagingProgress(total_bytes=100, bytes_written=150)
        assert progress.percent == 100.0

    def test_empty_source_is_complete(self):
        assert ImagingProgress(total_bytes=0).percent == 100.0

    def test_no_rate_before_bytes(self):
        progress = ImagingProgress(total_bytes=100)
        assert progress.rate is None
        assert progress.eta_seconds is None


class TestTransferProgress:
    def test_unknown_total(self):
        assert TransferProgress(strategy="helper", bytes_done=10).percent is None

    def test_percent(self):
        assert TransferProgress(strategy="helper", bytes_done=25, total_bytes=100).percent == 25.0

    def test_job_defaults(self):
        job = TransferJob(source="https://example.com/a.iso", destination=Path("/tmp/a.iso"))
        assert job.strategies == ("helper", "streaming", "blocking")
        assert job.reuse_existing is False


# ==============================================================================
# Topology Tests
# ==============================================================================


class TestTopology:
    @pytest.mark.parametrize(
        "topology, minimum, keyword, raid",
        [
            (Topology.SINGLE, 1, None, "raid0"),
            (Topology.MIRROR, 2, "mirror", "raid1"),
            (Topology.RAIDZ1, 3, "raidz1", "raidz-1"),
            (Topology.RAIDZ2, 4, "raidz2", "raidz-2"),
        ],
    )
    def test_properties(self, topology, minimum, keyword, raid):
        assert topology.min_disks == minimum
        assert topology.vdev_keyword == keyword
        assert topology.answer_raid == raid

    def test_parse_normalizes(self):
        assert Topology.parse(" RAIDZ1 ") is Topology.RAIDZ1

    def test_parse_unknown(self):
        with pytest.raises(ValueError, match="Unknown pool type: raid5"):
            Topology.parse("raid5")

    def test_pool_spec(self):
        spec = StoragePoolSpec(
            name="rpool", mount_root=Path("/rpool"), topology=Topology.MIRROR, disks=("sdb", "sdc")
        )
        assert spec.topology.min_disks <= len(spec.disks)


# ==============================================================================
# Provisioning Run Tests
# ==============================================================================


class TestProvisioningRun:
    def test_empty_run_succeeds(self):
        run = ProvisioningRun(auto=True)
        assert run.succeeded
        assert run.outcome_of("network-wait") is None

    def test_soft_failures_do_not_abort(self):
        run = ProvisioningRun(auto=True)
        run.record(StepResult("runtime-install", StepOutcome.SOFT_FAILURE, "apt failed"))
        run.record(StepResult("shell-config", StepOutcome.SKIPPED))
        assert not run.aborted

    def test_hard_failure_aborts(self):
        run = ProvisioningRun(auto=False)
        run.record(StepResult("management-cli", StepOutcome.HARD_FAILURE, "npm failed"))
        assert run.aborted
        assert not run.succeeded
        assert run.outcome_of("management-cli") is StepOutcome.HARD_FAILURE
