"""Safe eject of a flashed device.

This module handles:
- Listing the device's partitions with lsblk
- Unmounting each partition with udisksctl (already-unmounted is fine)
- Powering the device off so it can be removed

Unmount failures are logged and skipped; only the final power-off decides
whether the eject succeeded.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field

from yom_flasher.errors import DEVICE_BUSY, EJECT_FAILED, FlasherError
from yom_flasher.system.executor import CommandExecutionError, PrivilegedExecutor

logger = logging.getLogger(__name__)

_NOT_MOUNTED_MARKERS = ("notmounted", "not mounted")
_BUSY_MARKERS = ("device is busy", "target is busy")


@dataclass
class EjectReport:
    """What safe_eject did.

    Attributes:
        device_path: The device that was powered off.
        unmounted: Partitions unmounted by this call.
        already_unmounted: Partitions that were not mounted.
        failed: Partitions whose unmount failed (power-off still attempted).
    """

    device_path: str
    unmounted: list[str] = field(default_factory=list)
    already_unmounted: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, object]:
        return {
            "devicePath": self.device_path,
            "unmounted": list(self.unmounted),
            "alreadyUnmounted": list(self.already_unmounted),
            "failed": list(self.failed),
        }


class EjectError(FlasherError):
    """The device could not be powered off."""

    def __init__(self, device_path: str, reason: str, stderr: str = "") -> None:
        details = f" Stderr: {stderr.strip()}" if stderr.strip() else ""
        super().__init__(
            f"Safe eject failed for {device_path}: {reason}.{details}",
            error_code=EJECT_FAILED,
        )
        self.device_path = device_path
        self.stderr = stderr


class DeviceBusyError(FlasherError):
    """The device is still in use and cannot be powered off."""

    def __init__(self, device_path: str, stderr: str = "") -> None:
        super().__init__(
            f"Device {device_path} is busy. Ensure all filesystems are unmounted "
            f"and no processes are using it. ({stderr.strip() or 'N/A'})",
            error_code=DEVICE_BUSY,
        )
        self.device_path = device_path
        self.stderr = stderr


def _is_not_mounted(stderr: str) -> bool:
    text = stderr.lower()
    return any(marker in text for marker in _NOT_MOUNTED_MARKERS)


def _is_busy(stderr: str) -> bool:
    text = stderr.lower()
    return any(marker in text for marker in _BUSY_MARKERS)


def partitions_to_unmount(lsblk_output: str, device_path: str) -> list[str]:
    """Partition paths to unmount, from 'lsblk -J -o PATH,TYPE,MOUNTPOINT' output.

    Every 'part' child of the device is returned. A device without
    partitions is returned itself, but only if it is mounted.
    """
    data = json.loads(lsblk_output)
    nodes = data.get("blockdevices") or []
    if not nodes:
        logger.warning("lsblk returned no information for %s", device_path)
        return []

    node = nodes[0]
    children = [
        child["path"]
        for child in node.get("children") or []
        if child.get("type") == "part" and child.get("path")
    ]
    if children:
        return children
    if node.get("mountpoint") or any(node.get("mountpoints") or []):
        return [node.get("path") or device_path]
    return []


async def _list_partitions(executor: PrivilegedExecutor, device_path: str) -> list[str]:
    try:
        result = await executor.run(
            "lsblk", ["-J", "-b", "-o", "PATH,TYPE,MOUNTPOINT", device_path]
        )
        return partitions_to_unmount(result.stdout, device_path)
    except CommandExecutionError as e:
        raise EjectError(
            device_path, "could not list partitions", getattr(e, "stderr", e.message)
        ) from e
    except json.JSONDecodeError as e:
        raise EjectError(device_path, f"unparseable lsblk output ({e})") from e


async def safe_eject(executor: PrivilegedExecutor, device_path: str) -> EjectReport:
    """Unmount every partition of a device and power it off.

    Args:
        executor: Executor with 'lsblk' and 'udisksctl' located.
        device_path: Whole device to eject.

    Returns:
        EjectReport describing the unmount pass.

    Raises:
        CommandNotFoundError: lsblk or udisksctl not located.
        DeviceBusyError: power-off refused because the device is in use.
        EjectError: Listing partitions or powering off failed.
    """
    executor.commands.require_all(("lsblk", "udisksctl"))
    logger.info("Starting safe eject for %s", device_path)

    report = EjectReport(device_path=device_path)
    for partition in await _list_partitions(executor, device_path):
        logger.info("Attempting to unmount %s", partition)
        try:
            result = await executor.run(
                "udisksctl", ["unmount", "-b", partition], check=False
            )
        except CommandExecutionError as e:
            logger.warning("Could not unmount %s: %s", partition, e.message)
            report.failed.append(partition)
            continue

        if result.ok:
            logger.info("Unmounted %s", partition)
            report.unmounted.append(partition)
        elif _is_not_mounted(result.stderr):
            logger.info("%s was already not mounted", partition)
            report.already_unmounted.append(partition)
        else:
            logger.warning(
                "Could not unmount %s: %s", partition, result.stderr.strip() or "N/A"
            )
            report.failed.append(partition)

    logger.info("Attempting to power off %s", device_path)
    try:
        await executor.run("udisksctl", ["power-off", "-b", device_path])
    except CommandExecutionError as e:
        stderr = getattr(e, "stderr", "") or ""
        if _is_busy(stderr):
            logger.error("Device %s is busy", device_path)
            raise DeviceBusyError(device_path, stderr) from e
        logger.error("Power-off failed for %s: %s", device_path, e.message)
        raise EjectError(device_path, "power-off failed", stderr or e.message) from e

    logger.info("Powered off %s", device_path)
    return report


__all__ = [
    "DeviceBusyError",
    "EjectError",
    "EjectReport",
    "partitions_to_unmount",
    "safe_eject",
]
