"""Tests for flash/device.py - enumeration and target validation."""

import stat
import tempfile
from unittest.mock import patch

import pytest
from conftest import SYSTEM_LSBLK, FakeExecutor, disk, lsblk_json, part

from yom_flasher.errors import (
    DEVICE_ENUMERATION_FAILED,
    DEVICE_NOT_FOUND,
    PARTITION_NOT_ALLOWED,
    SYSTEM_DEVICE,
    UNVERIFIED_TARGET,
)
from yom_flasher.flash.device import (
    LSBLK_COLUMNS,
    DeviceDescriptor,
    DeviceEnumerationError,
    DeviceNotFoundError,
    PartitionDeviceError,
    SystemDeviceError,
    UnverifiedTargetError,
    accepted_flash_targets,
    detect_os_device,
    enumerate_devices,
    ensure_flash_target,
    is_block_device,
    is_partition_path,
    list_devices,
    parse_lsblk_output,
)
from yom_flasher.system.executor import CommandSpawnError
from yom_flasher.types import OSDetection


class TestIsPartitionPath:
    """Tests for is_partition_path function."""

    def test_whole_device_sd(self):
        """Whole disk device should not be detected as partition."""
        assert is_partition_path("/dev/sda") is False
        assert is_partition_path("/dev/sdb") is False
        assert is_partition_path("/dev/sdz") is False

    def test_partition_sd(self):
        """SCSI/SATA partitions should be detected."""
        assert is_partition_path("/dev/sda1") is True
        assert is_partition_path("/dev/sdb2") is True
        assert is_partition_path("/dev/sdz10") is True

    def test_whole_device_mmcblk(self):
        """MMC whole device should not be detected as partition."""
        assert is_partition_path("/dev/mmcblk0") is False
        assert is_partition_path("/dev/mmcblk1") is False

    def test_partition_mmcblk(self):
        """MMC partitions should be detected."""
        assert is_partition_path("/dev/mmcblk0p1") is True
        assert is_partition_path("/dev/mmcblk1p2") is True

    def test_whole_device_nvme(self):
        """NVMe whole device should not be detected as partition."""
        assert is_partition_path("/dev/nvme0n1") is False

    def test_partition_nvme(self):
        """NVMe partitions should be detected."""
        assert is_partition_path("/dev/nvme0n1p1") is True
        assert is_partition_path("/dev/nvme0n1p2") is True

    def test_loop(self):
        """Loop devices and their partitions."""
        assert is_partition_path("/dev/loop0") is False
        assert is_partition_path("/dev/loop0p1") is True

    def test_regular_file(self):
        """Regular file paths should not be detected as partition."""
        assert is_partition_path("/tmp/test.img") is False


class TestIsBlockDevice:
    """Tests for is_block_device function."""

    def test_regular_file(self):
        """Regular file should not be a block device."""
        with tempfile.NamedTemporaryFile() as f:
            assert is_block_device(f.name) is False

    def test_nonexistent_path(self):
        """Non-existent path should return False."""
        assert is_block_device("/dev/nonexistent_device_xyz123") is False

    def test_block_device_mock(self):
        """Mocked block device should be detected."""
        block_mode = stat.S_IFBLK | 0o660
        with patch("os.stat") as mock_stat:
            mock_stat.return_value.st_mode = block_mode
            assert is_block_device("/dev/fake_block") is True


class TestDeviceDescriptor:
    """Tests for the wire format of DeviceDescriptor."""

    def test_to_dict_uses_wire_keys(self):
        """Field names match the helper protocol."""
        device = DeviceDescriptor(
            path="/dev/sdb",
            name="sdb",
            size_bytes=512_110_190_592,
            model="SD Card Reader",
            is_removable=True,
        )
        assert device.to_dict() == {
            "path": "/dev/sdb",
            "name": "sdb",
            "size": 512_110_190_592,
            "model": "SD Card Reader",
            "isRemovable": True,
            "isOS": False,
            "filesystemType": None,
        }

    def test_from_dict_tolerates_sparse_input(self):
        """Missing optional keys get defaults."""
        device = DeviceDescriptor.from_dict({"path": "/dev/mmcblk0", "size": "64"})
        assert device.name == "mmcblk0"
        assert device.size_bytes == 64
        assert device.model == "Unknown Model"
        assert device.is_os is False


class TestDetectOsDevice:
    """Tests for OS device detection."""

    def test_root_on_partition(self):
        """Root on a direct child partition flags its disk."""
        nodes = [
            disk(
                "nvme0n1",
                10,
                children=[part("nvme0n1p2", "nvme0n1", mountpoint="/")],
            ),
            disk("sdb", 10),
        ]
        assert detect_os_device(nodes) == ("/dev/nvme0n1", OSDetection.ROOT_ON_PARTITION)

    def test_root_on_disk(self):
        """Root directly on a whole disk flags that disk."""
        nodes = [disk("vda", 10, mountpoint="/")]
        assert detect_os_device(nodes) == ("/dev/vda", OSDetection.ROOT_ON_DISK)

    def test_root_in_mountpoints_list(self):
        """Newer lsblk releases report mountpoints as a list."""
        root = part("sda2", "sda")
        root["mountpoints"] = ["/", "/home"]
        nodes = [disk("sda", 10, children=[root])]
        assert detect_os_device(nodes)[0] == "/dev/sda"

    def test_root_on_lvm_is_unresolved(self):
        """Stacked mappings are not guessed."""
        lvm = {
            "path": "/dev/mapper/vg-root",
            "name": "vg-root",
            "type": "lvm",
            "mountpoint": "/",
        }
        nodes = [disk("sda", 10, children=[part("sda2", "sda", children=[lvm])])]
        assert detect_os_device(nodes) == (None, OSDetection.UNRESOLVED)

    def test_no_root_mount(self):
        """Nothing mounted at '/' (e.g., a container)."""
        assert detect_os_device([disk("sdb", 10)]) == (None, OSDetection.NO_ROOT_MOUNT)


class TestParseLsblkOutput:
    """Tests for parse_lsblk_output function."""

    def test_lists_disk_level_devices(self):
        """Only disk-level nodes are listed, the OS disk flagged."""
        inventory = parse_lsblk_output(SYSTEM_LSBLK)

        assert [d.path for d in inventory.devices] == ["/dev/sda", "/dev/sdb"]
        sda, sdb = inventory.devices
        assert sda.is_os is True
        assert sdb.is_os is False
        assert sdb.is_removable is True
        assert sdb.size_bytes == 512_110_190_592
        assert inventory.os_device_path == "/dev/sda"
        assert inventory.os_detected

    def test_missing_model_defaults(self):
        """Devices without a model get a placeholder."""
        inventory = parse_lsblk_output(lsblk_json(disk("sdc", 10, model="  ")))
        assert inventory.devices[0].model == "Unknown Model"

    def test_string_fields_from_older_lsblk(self):
        """Sizes and flags emitted as strings are converted."""
        node = disk("sdc", 10)
        node.update(size="2048", rm="1")
        inventory = parse_lsblk_output(lsblk_json(node))
        assert inventory.devices[0].size_bytes == 2048
        assert inventory.devices[0].is_removable is True

    def test_skips_non_disk_nodes(self):
        """Optical drives and other non-disk types are not listed."""
        rom = {"path": "/dev/sr0", "name": "sr0", "type": "rom", "size": 1}
        inventory = parse_lsblk_output(lsblk_json(rom, disk("sdb", 10)))
        assert [d.path for d in inventory.devices] == ["/dev/sdb"]

    def test_invalid_json(self):
        """Unparseable output raises DeviceEnumerationError."""
        with pytest.raises(DeviceEnumerationError) as exc_info:
            parse_lsblk_output("not json")
        assert exc_info.value.error_code == DEVICE_ENUMERATION_FAILED


class TestEnumerateDevices:
    """Tests for enumerate_devices and list_devices."""

    @pytest.mark.asyncio
    async def test_runs_single_lsblk_query(self, system_executor):
        """One lsblk JSON call with byte sizes."""
        inventory = await enumerate_devices(system_executor)

        assert system_executor.calls == [("lsblk", "-J", "-b", "-o", LSBLK_COLUMNS)]
        assert len(inventory.devices) == 2

    @pytest.mark.asyncio
    async def test_list_devices(self, system_executor):
        """list_devices returns the descriptors only."""
        devices = await list_devices(system_executor)
        assert [d.path for d in devices] == ["/dev/sda", "/dev/sdb"]

    @pytest.mark.asyncio
    async def test_lsblk_failure(self):
        """A failing lsblk is reported with its stderr."""
        executor = FakeExecutor().on(
            "lsblk", stderr="lsblk: unknown column", exit_code=1
        )
        with pytest.raises(DeviceEnumerationError) as exc_info:
            await enumerate_devices(executor)
        assert "unknown column" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_lsblk_spawn_failure(self):
        """A spawn failure is reported as an enumeration failure."""
        executor = FakeExecutor().on(
            "lsblk", raises=CommandSpawnError(["/bin/lsblk"], "No such file")
        )
        with pytest.raises(DeviceEnumerationError):
            await enumerate_devices(executor)


class TestEnsureFlashTarget:
    """Tests for ensure_flash_target function."""

    @pytest.fixture
    def inventory(self):
        return parse_lsblk_output(SYSTEM_LSBLK)

    def test_valid_target(self, inventory):
        """A listed removable non-OS device is accepted."""
        device = ensure_flash_target(inventory, "/dev/sdb")
        assert device.path == "/dev/sdb"

    def test_normalizes_path(self, inventory):
        """Redundant separators are normalized before lookup."""
        assert ensure_flash_target(inventory, "/dev//sdb").path == "/dev/sdb"

    def test_partition_not_allowed(self, inventory):
        """Partitions are rejected before lookup."""
        with pytest.raises(PartitionDeviceError) as exc_info:
            ensure_flash_target(inventory, "/dev/sdb1")
        assert exc_info.value.error_code == PARTITION_NOT_ALLOWED

    def test_device_not_found(self, inventory):
        """Unlisted devices are rejected."""
        with pytest.raises(DeviceNotFoundError) as exc_info:
            ensure_flash_target(inventory, "/dev/sdz")
        assert exc_info.value.error_code == DEVICE_NOT_FOUND

    def test_system_device_rejected(self, inventory):
        """The OS device is never a flash target."""
        with pytest.raises(SystemDeviceError) as exc_info:
            ensure_flash_target(inventory, "/dev/sda", allow_unverified=True)
        assert exc_info.value.error_code == SYSTEM_DEVICE

    def test_unverified_non_removable(self):
        """Without OS detection a fixed disk needs explicit confirmation."""
        inventory = parse_lsblk_output(
            lsblk_json(disk("sdc", 10), disk("sdd", 10, rm=True))
        )
        assert inventory.os_detection == OSDetection.NO_ROOT_MOUNT

        with pytest.raises(UnverifiedTargetError) as exc_info:
            ensure_flash_target(inventory, "/dev/sdc")
        assert exc_info.value.error_code == UNVERIFIED_TARGET

        device = ensure_flash_target(inventory, "/dev/sdc", allow_unverified=True)
        assert device.path == "/dev/sdc"
        assert ensure_flash_target(inventory, "/dev/sdd").path == "/dev/sdd"


class TestAcceptedFlashTargets:
    """Tests for accepted_flash_targets function."""

    def test_excludes_os_device(self):
        """The OS device is never offered."""
        inventory = parse_lsblk_output(SYSTEM_LSBLK)
        assert [d.path for d in accepted_flash_targets(inventory)] == ["/dev/sdb"]
