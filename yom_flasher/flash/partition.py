"""Partition extension after flashing.

This module grows a partition (and its ext2/3/4 filesystem) to fill the
rest of the device once a smaller image has been written to it:
- Derive the partition device path from the disk path and partition number
- Unmount the partition if the desktop auto-mounted it
- Repair a GPT whose backup header is no longer at the end of the disk
- Resize the partition to 100% with parted
- Check and grow the filesystem with e2fsck and resize2fs

The steps run as an ordered state machine:

    unmount-attempted -> gpt-checked -> gpt-repaired-if-needed ->
    partition-resized -> filesystem-checked -> filesystem-resized -> done

Any state may transition to failed. The result distinguishes a partition
that was never resized from one that was resized but whose filesystem was
not grown, since only the latter has modified the partition table.
Nothing is rolled back.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from enum import Enum

from yom_flasher.errors import (
    FILESYSTEM_CHECK_FAILED,
    FILESYSTEM_RESIZE_FAILED,
    GPT_REPAIR_FAILED,
    PARTED_FAILED,
    PARTITION_TABLE_INCONSISTENT,
    FlasherError,
)
from yom_flasher.flash.device import PARTITION_PATTERNS
from yom_flasher.system.commands import CommandNotFoundError
from yom_flasher.system.executor import (
    CommandExecutionError,
    CommandResult,
    PrivilegedExecutor,
    PrivilegeDeniedError,
    is_privilege_failure,
)

logger = logging.getLogger(__name__)

DEFAULT_PARTITION_NUMBER = 3

EXTENSION_COMMANDS = ("udisksctl", "parted", "e2fsck", "resize2fs")

# e2fsck: 0 = clean, 1 = errors corrected, 2 = corrected, reboot advised
E2FSCK_OK_CODES = frozenset({0, 1, 2})

# Whole devices whose names end in a digit take a 'p' before the number
_P_SUFFIX_DISK = re.compile(r"^/dev/(nvme\d+n\d+|mmcblk\d+|loop\d+)$")

_GPT_NEEDS_FIX = re.compile(
    r"fix the GPT|backup GPT table is not at the end of the disk",
    re.IGNORECASE,
)

# Partition rows in 'parted print' output start with the partition number
_PARTED_ROW = re.compile(r"^\s*(\d+)\s+\S")


class ExtensionState(str, Enum):
    """States of the partition extension state machine."""

    UNMOUNT_ATTEMPTED = "unmount-attempted"
    GPT_CHECKED = "gpt-checked"
    GPT_REPAIRED_IF_NEEDED = "gpt-repaired-if-needed"
    PARTITION_RESIZED = "partition-resized"
    FILESYSTEM_CHECKED = "filesystem-checked"
    FILESYSTEM_RESIZED = "filesystem-resized"
    DONE = "done"
    FAILED = "failed"


class ExtensionOutcome(str, Enum):
    """Final outcome of a partition extension."""

    COMPLETED = "completed"
    FILESYSTEM_NOT_GROWN = "filesystem-not-grown"
    PARTITION_NOT_RESIZED = "partition-not-resized"


@dataclass
class PartitionExtensionResult:
    """Result of a partition extension.

    Attributes:
        partition_path: Partition device that was (or would have been) grown.
        succeeded: True only when the filesystem was grown.
        message: Human-readable summary, with manual steps on partial success.
        partition_table_modified: Whether parted resized the partition.
        outcome: Which of the three outcomes was reached.
        states: States visited, in order.
        gpt_repaired: Whether sgdisk relocated the backup GPT.
        error_code: Stable error code when not succeeded.
    """

    partition_path: str
    succeeded: bool
    message: str
    partition_table_modified: bool
    outcome: ExtensionOutcome
    states: list[ExtensionState] = field(default_factory=list)
    gpt_repaired: bool = False
    error_code: str | None = None

    def to_dict(self) -> dict[str, object]:
        """Convert to dictionary for JSON serialization."""
        return {
            "partitionPath": self.partition_path,
            "succeeded": self.succeeded,
            "message": self.message,
            "partitionTableModified": self.partition_table_modified,
            "outcome": self.outcome.value,
            "states": [state.value for state in self.states],
            "gptRepaired": self.gpt_repaired,
            "errorCode": self.error_code,
        }


class PartitionTableInconsistentError(FlasherError):
    """Device path and partition number do not agree."""

    def __init__(self, device_path: str, partition_number: int) -> None:
        super().__init__(
            f"Target device path {device_path} and partition number "
            f"{partition_number} are inconsistent.",
            error_code=PARTITION_TABLE_INCONSISTENT,
        )
        self.device_path = device_path
        self.partition_number = partition_number


class PartedError(FlasherError):
    """parted could not read or resize the partition table."""

    def __init__(self, message: str, stderr: str = "") -> None:
        super().__init__(
            f"{message}. Stderr: {stderr.strip() or 'N/A'}", error_code=PARTED_FAILED
        )
        self.stderr = stderr


class GPTRepairError(FlasherError):
    """The backup GPT header could not be relocated."""

    def __init__(self, disk_path: str, reason: str) -> None:
        super().__init__(
            f"Could not repair GPT on {disk_path}: {reason}",
            error_code=GPT_REPAIR_FAILED,
        )
        self.disk_path = disk_path


class FilesystemCheckError(FlasherError):
    """e2fsck reported errors it could not correct."""

    def __init__(self, partition_path: str, exit_code: int, stderr: str) -> None:
        super().__init__(
            f"Filesystem check failed for {partition_path} (e2fsck exit code "
            f"{exit_code}). Stderr: {stderr.strip() or 'N/A'}",
            error_code=FILESYSTEM_CHECK_FAILED,
        )
        self.partition_path = partition_path
        self.exit_code = exit_code
        self.stderr = stderr


class FilesystemResizeError(FlasherError):
    """resize2fs could not grow the filesystem."""

    def __init__(self, partition_path: str, stderr: str) -> None:
        super().__init__(
            f"Filesystem resize failed for {partition_path}. "
            f"Stderr: {stderr.strip() or 'N/A'}",
            error_code=FILESYSTEM_RESIZE_FAILED,
        )
        self.partition_path = partition_path
        self.stderr = stderr


def _partition_number_of(device_path: str) -> int | None:
    for pattern in PARTITION_PATTERNS:
        match = pattern.match(device_path)
        if match:
            return int(match.group(1))
    return None


def derive_partition_path(device_path: str, partition_number: int) -> str:
    """Build the partition device path for a disk and partition number.

    Examples:
        /dev/sdb, 3 -> /dev/sdb3
        /dev/nvme0n1, 3 -> /dev/nvme0n1p3
        /dev/mmcblk0, 3 -> /dev/mmcblk0p3
        /dev/sdb3, 3 -> /dev/sdb3 (already the partition)

    Raises:
        PartitionTableInconsistentError: Path already names a different
            partition, or ends in a digit without being a known device form.
    """
    if _P_SUFFIX_DISK.match(device_path):
        return f"{device_path}p{partition_number}"
    if not device_path[-1:].isdigit():
        return f"{device_path}{partition_number}"
    if _partition_number_of(device_path) == partition_number:
        return device_path
    raise PartitionTableInconsistentError(device_path, partition_number)


def parent_disk_path(device_path: str) -> str:
    """Strip a partition suffix, returning the whole-disk path.

    /dev/sdb3 -> /dev/sdb, /dev/nvme0n1p3 -> /dev/nvme0n1. Paths that are
    not partitions are returned unchanged.
    """
    if _partition_number_of(device_path) is None:
        return device_path
    disk = re.sub(r"\d+$", "", device_path)
    if disk.endswith("p") and _P_SUFFIX_DISK.match(disk[:-1]):
        return disk[:-1]
    return disk


def parse_last_partition_number(parted_output: str) -> int | None:
    """Highest partition number listed in 'parted print' output."""
    numbers = [
        int(match.group(1))
        for match in map(_PARTED_ROW.match, parted_output.splitlines())
        if match
    ]
    return max(numbers) if numbers else None


async def find_last_partition_number(
    executor: PrivilegedExecutor, disk_path: str
) -> int:
    """Find the number of the last partition on a disk.

    Raises:
        PartedError: parted failed, or the table lists no partitions.
    """
    try:
        result = await executor.run("parted", ["--script", disk_path, "print"])
    except CommandExecutionError as e:
        raise PartedError(
            f"Failed to print partition table for {disk_path}",
            getattr(e, "stderr", e.message),
        ) from e

    number = parse_last_partition_number(result.stdout)
    if number is None:
        raise PartedError(
            f"Could not determine the last partition number on {disk_path}",
            result.stderr,
        )
    logger.info("Identified last partition on %s as %d", disk_path, number)
    return number


def manual_remediation(partition_path: str) -> str:
    return f"sudo e2fsck -f -y {partition_path} && sudo resize2fs {partition_path}"


class PartitionExtender:
    """Runs the extension state machine for one disk and partition.

    Args:
        executor: Executor with the extension commands located.
        disk_path: Whole-disk device (e.g., '/dev/sdb').
        partition_number: Partition to grow.
    """

    def __init__(
        self, executor: PrivilegedExecutor, disk_path: str, partition_number: int
    ) -> None:
        self.executor = executor
        self.disk_path = disk_path
        self.partition_number = partition_number
        self.partition_path = derive_partition_path(disk_path, partition_number)
        self.states: list[ExtensionState] = []
        self.gpt_repaired = False

    def _enter(self, state: ExtensionState) -> None:
        logger.debug("%s: %s", self.partition_path, state.value)
        self.states.append(state)

    def _has(self, name: str) -> bool:
        return name in self.executor.commands

    async def unmount(self) -> None:
        """Unmount the partition; failures are logged and ignored."""
        logger.info("Attempting to unmount %s if mounted", self.partition_path)
        try:
            result = await self.executor.run(
                "udisksctl", ["unmount", "-b", self.partition_path], check=False
            )
        except CommandExecutionError as e:
            logger.warning("Could not unmount %s: %s", self.partition_path, e.message)
            self._enter(ExtensionState.UNMOUNT_ATTEMPTED)
            return
        if result.ok:
            logger.info("Unmounted %s", self.partition_path)
        elif "notmounted" in result.stderr.lower().replace(" ", ""):
            logger.debug("%s was not mounted", self.partition_path)
        else:
            logger.warning(
                "Could not unmount %s: %s", self.partition_path, result.stderr.strip()
            )
        self._enter(ExtensionState.UNMOUNT_ATTEMPTED)

    async def check_gpt(self) -> bool:
        """Return True if parted reports a GPT that needs fixing."""
        logger.info("Checking if GPT needs fixing for %s", self.disk_path)
        try:
            result = await self.executor.run(
                "parted", ["--script", self.disk_path, "print"], check=False
            )
        except CommandExecutionError as e:
            logger.warning("GPT check failed (continuing): %s", e.message)
            self._enter(ExtensionState.GPT_CHECKED)
            return False

        needs_fix = bool(_GPT_NEEDS_FIX.search(result.stderr + result.stdout))
        if needs_fix:
            logger.info("Backup GPT is not at the end of %s", self.disk_path)
        elif not result.ok:
            logger.warning(
                "parted print exited with %d (continuing): %s",
                result.exit_code,
                result.stderr.strip(),
            )
        else:
            logger.info("No GPT issues detected")
        self._enter(ExtensionState.GPT_CHECKED)
        return needs_fix

    async def _relocate_backup_gpt(self) -> None:
        if not self._has("sgdisk"):
            raise GPTRepairError(self.disk_path, "'sgdisk' command not found")
        try:
            await self.executor.run("sgdisk", ["-e", self.disk_path])
        except CommandExecutionError as e:
            raise GPTRepairError(self.disk_path, e.message) from e

    async def refresh_kernel_table(self) -> None:
        """Ask the kernel to re-read the partition table, if partprobe exists."""
        if not self._has("partprobe"):
            return
        try:
            await self.executor.run("partprobe", [self.disk_path])
            logger.info("Partition table re-read with partprobe")
        except CommandExecutionError as e:
            logger.warning("partprobe failed, continuing anyway: %s", e.message)

    async def repair_gpt(self, needs_fix: bool) -> None:
        """Relocate the backup GPT, falling back to a sector-unit parted print."""
        if needs_fix:
            try:
                await self._relocate_backup_gpt()
                self.gpt_repaired = True
                logger.info("GPT fixed using sgdisk")
                await self.refresh_kernel_table()
            except GPTRepairError as e:
                logger.warning("%s. Trying parted instead", e.message)
                try:
                    await self.executor.run(
                        "parted", ["--script", self.disk_path, "unit", "s", "print"]
                    )
                    logger.info("GPT table refreshed using parted")
                except CommandExecutionError as fallback_error:
                    logger.warning(
                        "Could not refresh GPT table, proceeding anyway: %s",
                        fallback_error.message,
                    )
        self._enter(ExtensionState.GPT_REPAIRED_IF_NEEDED)

    async def resize_partition(self) -> None:
        """Grow the partition to 100% of the disk.

        Raises:
            PartedError: parted failed.
            PrivilegeDeniedError: parted lacked permission.
        """
        args = [
            "--script",
            self.disk_path,
            "resizepart",
            str(self.partition_number),
            "100%",
        ]
        try:
            result = await self.executor.run("parted", args)
        except PrivilegeDeniedError:
            raise
        except CommandExecutionError as e:
            raise PartedError(
                f"parted operation failed for {self.disk_path}",
                getattr(e, "stderr", e.message),
            ) from e
        if result.stderr.strip():
            logger.warning("parted stderr: %s", result.stderr.strip())
        logger.info(
            "Partition %d on %s resized by parted", self.partition_number, self.disk_path
        )
        self._enter(ExtensionState.PARTITION_RESIZED)

    async def check_filesystem(self) -> None:
        """Run e2fsck; exit codes 0-2 mean clean or corrected.

        Raises:
            FilesystemCheckError: e2fsck found uncorrectable errors.
        """
        logger.info("Running filesystem check with e2fsck on %s", self.partition_path)
        result: CommandResult = await self.executor.run(
            "e2fsck", ["-f", "-y", self.partition_path], check=False
        )
        if result.exit_code not in E2FSCK_OK_CODES:
            if is_privilege_failure(result.exit_code, result.stderr):
                result.raise_for_status()
            raise FilesystemCheckError(
                self.partition_path, result.exit_code, result.stderr or result.stdout
            )
        if result.exit_code:
            logger.info(
                "e2fsck corrected errors on %s (exit code %d)",
                self.partition_path,
                result.exit_code,
            )
        self._enter(ExtensionState.FILESYSTEM_CHECKED)

    async def resize_filesystem(self) -> None:
        """Grow the filesystem with resize2fs.

        Raises:
            FilesystemResizeError: resize2fs failed.
        """
        try:
            await self.executor.run("resize2fs", [self.partition_path])
        except CommandExecutionError as e:
            raise FilesystemResizeError(
                self.partition_path, getattr(e, "stderr", e.message)
            ) from e
        logger.info("Filesystem on %s resized", self.partition_path)
        self._enter(ExtensionState.FILESYSTEM_RESIZED)

    def _failed(
        self,
        outcome: ExtensionOutcome,
        message: str,
        error_code: str,
    ) -> PartitionExtensionResult:
        self._enter(ExtensionState.FAILED)
        return PartitionExtensionResult(
            partition_path=self.partition_path,
            succeeded=False,
            message=message,
            partition_table_modified=outcome == ExtensionOutcome.FILESYSTEM_NOT_GROWN,
            outcome=outcome,
            states=list(self.states),
            gpt_repaired=self.gpt_repaired,
            error_code=error_code,
        )

    async def run(self) -> PartitionExtensionResult:
        """Run every step in order and report the outcome."""
        await self.unmount()
        needs_fix = await self.check_gpt()
        await self.repair_gpt(needs_fix)

        try:
            await self.resize_partition()
        except (PartedError, PrivilegeDeniedError) as e:
            logger.error("Partition resize failed: %s", e.message)
            return self._failed(
                ExtensionOutcome.PARTITION_NOT_RESIZED, e.message, e.error_code
            )

        await self.refresh_kernel_table()

        try:
            await self.check_filesystem()
            await self.resize_filesystem()
        except (FilesystemCheckError, FilesystemResizeError, CommandExecutionError) as e:
            logger.error(
                "Filesystem operations failed for %s: %s", self.partition_path, e.message
            )
            return self._failed(
                ExtensionOutcome.FILESYSTEM_NOT_GROWN,
                "Partition was resized, but the filesystem could not be extended "
                f"automatically: {e.message}. You may need to run: "
                f"{manual_remediation(self.partition_path)}",
                e.error_code,
            )

        self._enter(ExtensionState.DONE)
        logger.info("Partition extension completed for %s", self.partition_path)
        return PartitionExtensionResult(
            partition_path=self.partition_path,
            succeeded=True,
            message=f"Partition {self.partition_path} and its filesystem were "
            "extended to fill the device.",
            partition_table_modified=True,
            outcome=ExtensionOutcome.COMPLETED,
            states=list(self.states),
            gpt_repaired=self.gpt_repaired,
        )


def _not_resized(
    partition_path: str, error: FlasherError
) -> PartitionExtensionResult:
    return PartitionExtensionResult(
        partition_path=partition_path,
        succeeded=False,
        message=error.message,
        partition_table_modified=False,
        outcome=ExtensionOutcome.PARTITION_NOT_RESIZED,
        states=[ExtensionState.FAILED],
        error_code=error.error_code,
    )


async def extend_partition(
    executor: PrivilegedExecutor,
    device_path: str,
    partition_number: int | None = DEFAULT_PARTITION_NUMBER,
) -> PartitionExtensionResult:
    """Grow a partition and its filesystem to fill the device.

    Args:
        executor: Executor with the extension commands located.
        device_path: Whole disk, or the partition itself.
        partition_number: Partition to grow; None selects the last one.

    Returns:
        PartitionExtensionResult. Failures are reported in the result, never
        raised, so callers can always tell whether the table was modified.
    """
    disk_path = parent_disk_path(device_path)
    try:
        executor.commands.require_all(EXTENSION_COMMANDS)
        if partition_number is None:
            partition_number = await find_last_partition_number(executor, disk_path)
        extender = PartitionExtender(executor, disk_path, partition_number)
        if device_path != disk_path and extender.partition_path != device_path:
            raise PartitionTableInconsistentError(device_path, partition_number)
    except (CommandNotFoundError, PartitionTableInconsistentError, PartedError) as e:
        logger.error("Cannot extend partition on %s: %s", device_path, e.message)
        return _not_resized(device_path, e)

    logger.info(
        "Extending partition %d on %s (%s)",
        partition_number,
        disk_path,
        extender.partition_path,
    )
    return await extender.run()


__all__ = [
    "DEFAULT_PARTITION_NUMBER",
    "E2FSCK_OK_CODES",
    "EXTENSION_COMMANDS",
    "ExtensionOutcome",
    "ExtensionState",
    "FilesystemCheckError",
    "FilesystemResizeError",
    "GPTRepairError",
    "PartedError",
    "PartitionExtender",
    "PartitionExtensionResult",
    "PartitionTableInconsistentError",
    "derive_partition_path",
    "extend_partition",
    "find_last_partition_number",
    "manual_remediation",
    "parent_disk_path",
    "parse_last_partition_number",
]
