"""Block device enumeration and flash-target validation.

This module handles everything device-related before flashing:
- List disk-level block devices from a single lsblk JSON tree
- Identify the device hosting the running OS (root mountpoint '/')
- Ensure whole-device targets only (reject partitions like /dev/sda1)
- Refuse the OS device as a flash target

OS-drive detection is a best-effort heuristic. Root filesystems on LVM,
dm-crypt and similar stacked mappings cannot be traced back to a single
disk; in that case no device is flagged and the inventory reports the
detection as unresolved so callers can demand explicit confirmation.
"""

from __future__ import annotations

import json
import logging
import os
import re
import stat
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import Any

from yom_flasher.errors import (
    DEVICE_ENUMERATION_FAILED,
    DEVICE_NOT_FOUND,
    PARTITION_NOT_ALLOWED,
    SYSTEM_DEVICE,
    UNVERIFIED_TARGET,
    FlasherError,
)
from yom_flasher.system.executor import CommandExecutionError, PrivilegedExecutor
from yom_flasher.types import OSDetection

logger = logging.getLogger(__name__)

LSBLK_COLUMNS = "PATH,NAME,SIZE,MODEL,FSTYPE,MOUNTPOINT,PKNAME,TYPE,RM"
DISK_TYPES = frozenset({"disk", "mmcblk", "nvme"})
ROOT_MOUNTPOINT = "/"
UNKNOWN_MODEL = "Unknown Model"


@dataclass(frozen=True)
class DeviceDescriptor:
    """A disk-level block device.

    Attributes:
        path: Canonical device node (e.g., '/dev/sda').
        name: Kernel name (e.g., 'sda').
        size_bytes: Device size in bytes.
        model: Device model string.
        is_removable: Whether the kernel flags the device as removable.
        is_os: Whether the device hosts the running OS root filesystem.
        filesystem_type: Filesystem signature on the whole device, if any.
    """

    path: str
    name: str
    size_bytes: int
    model: str = UNKNOWN_MODEL
    is_removable: bool = False
    is_os: bool = False
    filesystem_type: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to the wire format used by the helper channel and API."""
        return {
            "path": self.path,
            "name": self.name,
            "size": self.size_bytes,
            "model": self.model,
            "isRemovable": self.is_removable,
            "isOS": self.is_os,
            "filesystemType": self.filesystem_type,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> DeviceDescriptor:
        """Build a descriptor from its wire format."""
        return cls(
            path=str(data["path"]),
            name=str(data.get("name") or os.path.basename(str(data["path"]))),
            size_bytes=_to_int(data.get("size")),
            model=data.get("model") or UNKNOWN_MODEL,
            is_removable=_to_bool(data.get("isRemovable")),
            is_os=_to_bool(data.get("isOS")),
            filesystem_type=data.get("filesystemType") or None,
        )


@dataclass(frozen=True)
class DeviceInventory:
    """Result of one enumeration pass.

    Attributes:
        devices: Disk-level devices, in lsblk order.
        os_device_path: Path of the OS device, or None if not identified.
        os_detection: How the OS device was (or was not) identified.
    """

    devices: tuple[DeviceDescriptor, ...]
    os_device_path: str | None
    os_detection: OSDetection

    @property
    def os_detected(self) -> bool:
        return self.os_device_path is not None

    def get(self, device_path: str) -> DeviceDescriptor | None:
        for device in self.devices:
            if device.path == device_path:
                return device
        return None


class DeviceValidationError(FlasherError):
    """Base exception for device enumeration and validation errors."""


class DeviceEnumerationError(DeviceValidationError):
    """The block device listing could not be produced or parsed."""

    def __init__(self, message: str, stderr: str = "") -> None:
        details = f" Details: {stderr.strip()}" if stderr.strip() else ""
        super().__init__(
            f"Failed to list storage devices (lsblk): {message}.{details}",
            error_code=DEVICE_ENUMERATION_FAILED,
        )
        self.stderr = stderr


class DeviceNotFoundError(DeviceValidationError):
    """Device path is not a listed disk-level device."""

    def __init__(self, device_path: str) -> None:
        super().__init__(f"Device not found: {device_path}", error_code=DEVICE_NOT_FOUND)
        self.device_path = device_path


class PartitionDeviceError(DeviceValidationError):
    """Device appears to be a partition, not a whole device."""

    def __init__(self, device_path: str) -> None:
        super().__init__(
            f"Device appears to be a partition, not a whole device: {device_path}. "
            "Only whole devices (e.g., /dev/sda, /dev/mmcblk0) are supported.",
            error_code=PARTITION_NOT_ALLOWED,
        )
        self.device_path = device_path


class SystemDeviceError(DeviceValidationError):
    """Device hosts the running operating system."""

    def __init__(self, device_path: str) -> None:
        super().__init__(
            f"Device {device_path} hosts the running operating system. "
            "Refusing to flash to avoid data loss.",
            error_code=SYSTEM_DEVICE,
        )
        self.device_path = device_path


class UnverifiedTargetError(DeviceValidationError):
    """OS device could not be identified and the target is not removable."""

    def __init__(self, device_path: str) -> None:
        super().__init__(
            f"Could not determine which device hosts the running OS, and "
            f"{device_path} is not a removable device. Confirm the target "
            "explicitly to continue.",
            error_code=UNVERIFIED_TARGET,
        )
        self.device_path = device_path


# Patterns for partition detection
# /dev/sdX1, /dev/hdX1, /dev/vdX1
_PARTITION_PATTERN_SD = re.compile(r"^/dev/[shv]d[a-z]+(\d+)$")
# /dev/nvme0n1p1, /dev/nvme0n1p2
_PARTITION_PATTERN_NVME = re.compile(r"^/dev/nvme\d+n\d+p(\d+)$")
# /dev/mmcblk0p1, /dev/mmcblk0p2
_PARTITION_PATTERN_MMC = re.compile(r"^/dev/mmcblk\d+p(\d+)$")
# /dev/loop0p1
_PARTITION_PATTERN_LOOP = re.compile(r"^/dev/loop\d+p(\d+)$")

PARTITION_PATTERNS = (
    _PARTITION_PATTERN_SD,
    _PARTITION_PATTERN_NVME,
    _PARTITION_PATTERN_MMC,
    _PARTITION_PATTERN_LOOP,
)


def is_partition_path(device_path: str) -> bool:
    """Check if a device path looks like a partition.

    This uses naming conventions to detect partitions:
    - /dev/sda1, /dev/sdb2 (SCSI/SATA/USB)
    - /dev/mmcblk0p1, /dev/mmcblk0p2 (MMC/SD cards)
    - /dev/nvme0n1p1 (NVMe)
    - /dev/loop0p1 (Loop devices with partitions)

    Args:
        device_path: Path to the device.

    Returns:
        True if the path appears to be a partition, False otherwise.
    """
    return any(pattern.match(device_path) for pattern in PARTITION_PATTERNS)


def is_block_device(device_path: str) -> bool:
    """Check if a path is a block device.

    Args:
        device_path: Path to check.

    Returns:
        True if the path is a block device, False otherwise.
    """
    try:
        mode = os.stat(device_path).st_mode
        return stat.S_ISBLK(mode)
    except OSError:
        return False


def _to_int(value: Any) -> int:
    # Older lsblk releases emit numbers as JSON strings
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


def _to_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes")
    return bool(value)


def _mountpoints(node: Mapping[str, Any]) -> list[str]:
    points = [node.get("mountpoint")]
    # lsblk >= 2.37 reports every mountpoint in a list
    points.extend(node.get("mountpoints") or [])
    return [p for p in points if p]


def find_root_chain(
    nodes: Iterable[Mapping[str, Any]],
) -> list[Mapping[str, Any]] | None:
    """Find the node mounted at '/' with all of its ancestors.

    Walks the lsblk tree depth-first.

    Returns:
        [top-level device, ..., root node], or None if nothing is mounted at '/'.
    """
    for node in nodes:
        if ROOT_MOUNTPOINT in _mountpoints(node):
            return [node]
        chain = find_root_chain(node.get("children") or [])
        if chain is not None:
            return [node, *chain]
    return None


def detect_os_device(
    blockdevices: Iterable[Mapping[str, Any]],
) -> tuple[str | None, OSDetection]:
    """Identify the disk-level device hosting the root filesystem.

    Only two layouts are resolved: root directly on a disk-level device, or
    root on a direct child partition of one. Deeper stacks are reported as
    unresolved rather than guessed.

    Args:
        blockdevices: Top-level nodes of the lsblk JSON tree.

    Returns:
        Tuple of (OS device path or None, detection outcome).
    """
    chain = find_root_chain(blockdevices)
    if chain is None:
        logger.warning("No block device is mounted at '/'; OS device unknown")
        return None, OSDetection.NO_ROOT_MOUNT

    top = chain[0]
    if top.get("type") in DISK_TYPES:
        if len(chain) == 1:
            return top.get("path"), OSDetection.ROOT_ON_DISK
        if len(chain) == 2:
            return top.get("path"), OSDetection.ROOT_ON_PARTITION

    logger.warning(
        "Root filesystem on %s could not be traced to a single disk "
        "(LVM or other stacked device); no device flagged as OS",
        chain[-1].get("path"),
    )
    return None, OSDetection.UNRESOLVED


def parse_lsblk_output(stdout: str) -> DeviceInventory:
    """Build a device inventory from lsblk JSON output.

    Raises:
        DeviceEnumerationError: Output is not the expected JSON document.
    """
    try:
        data = json.loads(stdout)
    except json.JSONDecodeError as e:
        raise DeviceEnumerationError(f"unparseable output ({e})") from e
    if not isinstance(data, dict):
        raise DeviceEnumerationError("unexpected output structure")

    blockdevices = data.get("blockdevices") or []
    os_device_path, detection = detect_os_device(blockdevices)

    devices = tuple(
        DeviceDescriptor(
            path=node.get("path") or f"/dev/{node.get('name')}",
            name=node.get("name") or "",
            size_bytes=_to_int(node.get("size")),
            model=(node.get("model") or "").strip() or UNKNOWN_MODEL,
            is_removable=_to_bool(node.get("rm")),
            is_os=os_device_path is not None and node.get("path") == os_device_path,
            filesystem_type=node.get("fstype") or None,
        )
        for node in blockdevices
        if node.get("type") in DISK_TYPES
    )

    return DeviceInventory(
        devices=devices, os_device_path=os_device_path, os_detection=detection
    )


async def enumerate_devices(executor: PrivilegedExecutor) -> DeviceInventory:
    """List disk-level block devices and identify the OS device.

    Args:
        executor: Executor with 'lsblk' located.

    Returns:
        DeviceInventory for this enumeration pass.

    Raises:
        CommandNotFoundError: lsblk was not located.
        DeviceEnumerationError: lsblk failed or produced bad output.
    """
    try:
        result = await executor.run("lsblk", ["-J", "-b", "-o", LSBLK_COLUMNS])
    except CommandExecutionError as e:
        logger.error("Error listing block devices: %s", e.message)
        raise DeviceEnumerationError(
            "command failed", stderr=getattr(e, "stderr", "") or e.message
        ) from e

    inventory = parse_lsblk_output(result.stdout)
    logger.info(
        "Found %d device(s); OS device: %s (%s)",
        len(inventory.devices),
        inventory.os_device_path or "unknown",
        inventory.os_detection.value,
    )
    return inventory


async def list_devices(executor: PrivilegedExecutor) -> list[DeviceDescriptor]:
    """List disk-level block devices, flagging the OS device."""
    inventory = await enumerate_devices(executor)
    return list(inventory.devices)


def accepted_flash_targets(inventory: DeviceInventory) -> list[DeviceDescriptor]:
    """Devices that may be offered as flash targets (never the OS device)."""
    return [
        device
        for device in inventory.devices
        if not device.is_os and device.path != inventory.os_device_path
    ]


def ensure_flash_target(
    inventory: DeviceInventory,
    device_path: str,
    *,
    allow_unverified: bool = False,
) -> DeviceDescriptor:
    """Validate a device path as a flash target.

    Args:
        inventory: Fresh device inventory.
        device_path: Requested target device.
        allow_unverified: Accept a non-removable target even when the OS
            device could not be identified (explicit user confirmation).

    Returns:
        The matching DeviceDescriptor.

    Raises:
        PartitionDeviceError: Path is a partition.
        DeviceNotFoundError: Path is not a listed disk-level device.
        SystemDeviceError: Path is the OS device.
        UnverifiedTargetError: OS device unknown and target not removable.
    """
    device_path = os.path.normpath(device_path)

    if is_partition_path(device_path):
        logger.error("Device is a partition: %s", device_path)
        raise PartitionDeviceError(device_path)

    device = inventory.get(device_path)
    if device is None:
        logger.error("Device not found: %s", device_path)
        raise DeviceNotFoundError(device_path)

    if device.is_os or device_path == inventory.os_device_path:
        logger.error("Device is the OS device: %s", device_path)
        raise SystemDeviceError(device_path)

    if not inventory.os_detected and not device.is_removable and not allow_unverified:
        logger.error("Unverified non-removable target: %s", device_path)
        raise UnverifiedTargetError(device_path)

    logger.info(
        "Flash target validated: %s (%s, %d bytes, removable=%s)",
        device.path,
        device.model,
        device.size_bytes,
        device.is_removable,
    )
    return device


__all__ = [
    "DISK_TYPES",
    "LSBLK_COLUMNS",
    "DeviceDescriptor",
    "DeviceEnumerationError",
    "DeviceInventory",
    "DeviceNotFoundError",
    "DeviceValidationError",
    "PartitionDeviceError",
    "SystemDeviceError",
    "UnverifiedTargetError",
    "accepted_flash_targets",
    "detect_os_device",
    "enumerate_devices",
    "ensure_flash_target",
    "find_root_chain",
    "is_block_device",
    "is_partition_path",
    "list_devices",
    "parse_lsblk_output",
]
