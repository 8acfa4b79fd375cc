"""Tests for flash/eject.py - safe eject."""

import json

import pytest
from conftest import EJECT_LSBLK, FakeExecutor, fake_commands

from yom_flasher.errors import COMMAND_NOT_FOUND, DEVICE_BUSY, EJECT_FAILED
from yom_flasher.flash.eject import (
    DeviceBusyError,
    EjectError,
    partitions_to_unmount,
    safe_eject,
)
from yom_flasher.system.commands import CommandNotFoundError

EJECT_COLUMNS = ("-J", "-b", "-o", "PATH,TYPE,MOUNTPOINT")


def _eject_executor() -> FakeExecutor:
    return FakeExecutor().on("lsblk", *EJECT_COLUMNS, stdout=EJECT_LSBLK)


class TestPartitionsToUnmount:
    """Tests for partitions_to_unmount function."""

    def test_lists_every_partition(self):
        """All partitions are returned, mounted or not."""
        assert partitions_to_unmount(EJECT_LSBLK, "/dev/sdb") == [
            "/dev/sdb1",
            "/dev/sdb2",
            "/dev/sdb3",
        ]

    def test_mounted_device_without_partitions(self):
        """A mounted superfloppy is unmounted itself."""
        output = json.dumps(
            {"blockdevices": [{"path": "/dev/sdc", "type": "disk", "mountpoint": "/mnt"}]}
        )
        assert partitions_to_unmount(output, "/dev/sdc") == ["/dev/sdc"]

    def test_unmounted_device_without_partitions(self):
        output = json.dumps(
            {"blockdevices": [{"path": "/dev/sdc", "type": "disk", "mountpoint": None}]}
        )
        assert partitions_to_unmount(output, "/dev/sdc") == []

    def test_empty_output(self):
        assert partitions_to_unmount('{"blockdevices": []}', "/dev/sdc") == []


class TestSafeEject:
    """Tests for safe_eject function."""

    @pytest.mark.asyncio
    async def test_unmounts_then_powers_off(self):
        """Each partition is unmounted before the power-off."""
        executor = _eject_executor()
        report = await safe_eject(executor, "/dev/sdb")

        assert executor.calls == [
            ("lsblk", *EJECT_COLUMNS, "/dev/sdb"),
            ("udisksctl", "unmount", "-b", "/dev/sdb1"),
            ("udisksctl", "unmount", "-b", "/dev/sdb2"),
            ("udisksctl", "unmount", "-b", "/dev/sdb3"),
            ("udisksctl", "power-off", "-b", "/dev/sdb"),
        ]
        assert report.unmounted == ["/dev/sdb1", "/dev/sdb2", "/dev/sdb3"]
        assert report.failed == []

    @pytest.mark.asyncio
    async def test_not_mounted_partitions(self):
        """NotMounted replies are recorded, not treated as failures."""
        executor = _eject_executor()
        executor.on(
            "udisksctl",
            "unmount",
            "-b",
            "/dev/sdb2",
            stderr="Error unmounting /dev/sdb2: GDBus.Error:org.freedesktop."
            "UDisks2.Error.NotMounted: Device `/dev/sdb2' is not mounted",
            exit_code=1,
        )
        executor.on(
            "udisksctl",
            "unmount",
            "-b",
            "/dev/sdb3",
            stderr="Device /dev/sdb3 is not mounted",
            exit_code=1,
        )
        report = await safe_eject(executor, "/dev/sdb")

        assert report.unmounted == ["/dev/sdb1"]
        assert report.already_unmounted == ["/dev/sdb2", "/dev/sdb3"]
        assert report.to_dict()["alreadyUnmounted"] == ["/dev/sdb2", "/dev/sdb3"]

    @pytest.mark.asyncio
    async def test_unmount_failure_still_powers_off(self):
        """Unmount failures are skipped; power-off is still attempted."""
        executor = _eject_executor()
        executor.on(
            "udisksctl", "unmount", "-b", "/dev/sdb1", stderr="Some error", exit_code=1
        )
        report = await safe_eject(executor, "/dev/sdb")

        assert report.failed == ["/dev/sdb1"]
        assert executor.calls[-1] == ("udisksctl", "power-off", "-b", "/dev/sdb")

    @pytest.mark.asyncio
    async def test_device_busy(self):
        """A busy device raises DeviceBusyError."""
        executor = _eject_executor()
        executor.on(
            "udisksctl",
            "power-off",
            stderr="Error powering off drive: Device is busy",
            exit_code=1,
        )
        with pytest.raises(DeviceBusyError) as exc_info:
            await safe_eject(executor, "/dev/sdb")
        assert exc_info.value.error_code == DEVICE_BUSY
        assert "unmounted" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_power_off_failure(self):
        """Other power-off failures raise EjectError."""
        executor = _eject_executor()
        executor.on(
            "udisksctl",
            "power-off",
            stderr="Error powering off drive: no such object",
            exit_code=1,
        )
        with pytest.raises(EjectError) as exc_info:
            await safe_eject(executor, "/dev/sdb")
        assert exc_info.value.error_code == EJECT_FAILED

    @pytest.mark.asyncio
    async def test_lsblk_failure(self):
        """A failing partition listing aborts before any unmount."""
        executor = FakeExecutor().on(
            "lsblk", stderr="lsblk: /dev/sdx: not a block device", exit_code=32
        )
        with pytest.raises(EjectError):
            await safe_eject(executor, "/dev/sdx")
        assert executor.called("udisksctl") == []

    @pytest.mark.asyncio
    async def test_requires_udisksctl(self):
        """Nothing runs without udisksctl."""
        executor = FakeExecutor(commands=fake_commands(["lsblk"]))
        with pytest.raises(CommandNotFoundError) as exc_info:
            await safe_eject(executor, "/dev/sdb")
        assert exc_info.value.error_code == COMMAND_NOT_FOUND
        assert executor.calls == []
