"""Flash service layer.

This module provides high-level device operations:
- plan_flash: Validate the image and the target before anything is written
- run_pipeline_events: Flash -> extend -> eject as an ordered event stream
- flash_device / run_pipeline: Drain the stream into a single result
- extend_device / eject_device: Individual follow-up steps
- describe_devices / check_prerequisites: Read-only helpers for the surfaces

Every public operation returns an OperationResult instead of raising, so the
CLI, the HTTP API and the helper daemon can report failures without the
process exiting. Safety rules:
- Explicit whole-device paths only, never the OS device
- One operation per device at a time
- Steps strictly sequential: extension only after dd exited 0, eject only
  after the partition was resized (a filesystem that could not be grown
  still counts)
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass
from pathlib import Path

from yom_flasher.errors import COMMAND_NOT_FOUND, PIPELINE_INCOMPLETE, FlasherError
from yom_flasher.flash.device import (
    DeviceDescriptor,
    accepted_flash_targets,
    enumerate_devices,
    ensure_flash_target,
)
from yom_flasher.flash.eject import safe_eject
from yom_flasher.flash.partition import (
    EXTENSION_COMMANDS,
    ExtensionOutcome,
    PartitionExtensionResult,
    extend_partition,
    parent_disk_path,
)
from yom_flasher.flash.writer import (
    FlashProgress,
    InvalidImageSizeError,
    flash_image,
    get_image_size,
)
from yom_flasher.system.commands import REQUIRED_COMMANDS, missing_packages_hint
from yom_flasher.system.context import FlasherContext
from yom_flasher.types import OperationResult, PipelineStep

logger = logging.getLogger(__name__)

FLASH_COMMANDS = ("lsblk", "dd")
EJECT_COMMANDS = ("lsblk", "udisksctl")


@dataclass
class FlashPlan:
    """Validated flash request.

    Attributes:
        image_path: Path to the image file.
        image_size: Size of the image in bytes.
        device: The validated target device.
    """

    image_path: str
    image_size: int
    device: DeviceDescriptor

    @property
    def device_path(self) -> str:
        return self.device.path


@dataclass
class PipelineEvent:
    """One observation from a running pipeline.

    Attributes:
        step: Step the event belongs to.
        message: Human-readable status line.
        progress: Flash progress (FLASH step only).
        result: Final result (DONE step only).
    """

    step: PipelineStep
    message: str = ""
    progress: FlashProgress | None = None
    result: OperationResult | None = None

    def to_dict(self) -> dict[str, object]:
        """Convert to dictionary for JSON serialization."""
        data: dict[str, object] = {"step": self.step.value, "message": self.message}
        if self.progress is not None:
            data["progress"] = self.progress.to_dict()
        if self.result is not None:
            data["result"] = self.result.to_dict()
        return data


class PipelineIncompleteError(FlasherError):
    """The event stream ended without a final result."""

    def __init__(self) -> None:
        super().__init__(
            "Pipeline ended without reporting a result", error_code=PIPELINE_INCOMPLETE
        )


def _failure(error: FlasherError, **details: object) -> OperationResult:
    return OperationResult(
        success=False, message=error.message, code=error.error_code, details=details
    )


def resolve_partition_number(
    context: FlasherContext, partition_number: int | None
) -> int | None:
    """Explicit number, else the configured default (0 means 'last partition')."""
    if partition_number is not None:
        return partition_number
    return context.settings.default_partition_number or None


async def plan_flash(
    context: FlasherContext,
    image_path: str | Path,
    device_path: str,
    *,
    allow_unverified: bool = False,
) -> FlashPlan:
    """Validate an image and a target device.

    Raises:
        CommandNotFoundError: lsblk or dd not located.
        ImageNotFoundError: Image file not found.
        InvalidImageSizeError: Image is empty.
        DeviceValidationError: Target refused (OS device, partition, unknown).
    """
    context.commands.require_all(FLASH_COMMANDS)
    image_size = get_image_size(image_path)
    if image_size <= 0:
        raise InvalidImageSizeError(image_size)

    inventory = await enumerate_devices(context.executor)
    device = ensure_flash_target(
        inventory, device_path, allow_unverified=allow_unverified
    )
    return FlashPlan(image_path=str(image_path), image_size=image_size, device=device)


async def run_pipeline_events(
    context: FlasherContext,
    image_path: str | Path,
    device_path: str,
    *,
    partition_number: int | None = None,
    extend: bool = True,
    eject: bool = True,
    allow_unverified: bool = False,
) -> AsyncIterator[PipelineEvent]:
    """Flash an image, then optionally extend and eject, as an event stream.

    The last event always has step DONE and carries the OperationResult.
    Closing the stream early kills dd; the device is then left with a
    partial write and must be reflashed.

    Args:
        context: Runtime context.
        image_path: Image file to write.
        device_path: Whole target device.
        partition_number: Partition to extend (defaults from settings).
        extend: Grow the partition after flashing.
        eject: Unmount and power off after flashing (and extending). Skipped
            when the partition could not be resized.
        allow_unverified: Accept a non-removable target when the OS device
            could not be identified.

    Yields:
        PipelineEvent per step transition and per flash progress update.
    """
    logger.info(
        "Pipeline requested: image=%s, device=%s, extend=%s, eject=%s",
        image_path,
        device_path,
        extend,
        eject,
    )
    details: dict[str, object] = {"devicePath": device_path}

    try:
        async with context.device_guard(device_path):
            yield PipelineEvent(PipelineStep.VALIDATE, "Validating image and device")
            needed = list(FLASH_COMMANDS)
            if extend:
                needed.extend(EXTENSION_COMMANDS)
            if eject:
                needed.extend(EJECT_COMMANDS)
            context.commands.require_all(needed)

            plan = await plan_flash(
                context, image_path, device_path, allow_unverified=allow_unverified
            )
            details["imagePath"] = plan.image_path
            details["imageSize"] = plan.image_size

            yield PipelineEvent(
                PipelineStep.FLASH,
                f"Writing {Path(plan.image_path).name} to {plan.device_path}",
            )
            async for progress in flash_image(
                context.executor,
                plan.image_path,
                plan.device_path,
                plan.image_size,
                block_size=context.settings.flash_block_size,
            ):
                yield PipelineEvent(
                    PipelineStep.FLASH, f"{progress.percent}%", progress=progress
                )
            details["flashed"] = True

            extension: PartitionExtensionResult | None = None
            if extend:
                yield PipelineEvent(
                    PipelineStep.EXTEND, f"Extending partition on {plan.device_path}"
                )
                extension = await extend_partition(
                    context.executor,
                    plan.device_path,
                    resolve_partition_number(context, partition_number),
                )
                details["extension"] = extension.to_dict()
                yield PipelineEvent(PipelineStep.EXTEND, extension.message)

            ejected = False
            if (
                extension is not None
                and extension.outcome == ExtensionOutcome.PARTITION_NOT_RESIZED
            ):
                logger.warning(
                    "Partition on %s was not resized; skipping eject", plan.device_path
                )
            elif eject:
                yield PipelineEvent(PipelineStep.EJECT, f"Ejecting {plan.device_path}")
                report = await safe_eject(context.executor, plan.device_path)
                details["eject"] = report.to_dict()
                ejected = True

    except FlasherError as e:
        logger.error("Pipeline failed for %s: %s", device_path, e.message)
        yield PipelineEvent(
            PipelineStep.DONE, e.message, result=_failure(e, **details)
        )
        return

    yield PipelineEvent(
        PipelineStep.DONE,
        "Pipeline finished",
        result=_pipeline_result(device_path, extension, ejected, details),
    )


def _pipeline_result(
    device_path: str,
    extension: PartitionExtensionResult | None,
    ejected: bool,
    details: dict[str, object],
) -> OperationResult:
    tail = " and ejected" if ejected else ""
    if extension is None or extension.succeeded:
        return OperationResult(
            success=True,
            message=f"{device_path} flashed{' and extended' if extension else ''}{tail}.",
            details=details,
        )
    if extension.outcome == ExtensionOutcome.FILESYSTEM_NOT_GROWN:
        prefix = f"{device_path} flashed{tail}; partition resized but filesystem not grown."
    else:
        prefix = f"{device_path} flashed{tail}; partition not resized."
    return OperationResult(
        success=False,
        message=f"{prefix} {extension.message}",
        code=extension.error_code,
        details=details,
    )


async def drain_pipeline(events: AsyncIterator[PipelineEvent]) -> OperationResult:
    """Consume a pipeline event stream and return its final result."""
    result: OperationResult | None = None
    async for event in events:
        if event.result is not None:
            result = event.result
        elif event.progress is None:
            logger.info("[%s] %s", event.step.value, event.message)
    if result is None:
        return _failure(PipelineIncompleteError())
    return result


async def flash_device(
    context: FlasherContext,
    image_path: str | Path,
    device_path: str,
    *,
    allow_unverified: bool = False,
) -> OperationResult:
    """Flash an image without extending or ejecting."""
    return await drain_pipeline(
        run_pipeline_events(
            context,
            image_path,
            device_path,
            extend=False,
            eject=False,
            allow_unverified=allow_unverified,
        )
    )


async def run_pipeline(
    context: FlasherContext,
    image_path: str | Path,
    device_path: str,
    *,
    partition_number: int | None = None,
    eject: bool = True,
    allow_unverified: bool = False,
) -> OperationResult:
    """Flash, extend and (optionally) eject, returning the final result."""
    return await drain_pipeline(
        run_pipeline_events(
            context,
            image_path,
            device_path,
            partition_number=partition_number,
            eject=eject,
            allow_unverified=allow_unverified,
        )
    )


async def extend_device(
    context: FlasherContext,
    device_path: str,
    partition_number: int | None = None,
) -> OperationResult:
    """Grow a partition and its filesystem to fill the device."""
    disk_path = parent_disk_path(device_path)
    try:
        async with context.device_guard(disk_path):
            extension = await extend_partition(
                context.executor,
                device_path,
                resolve_partition_number(context, partition_number),
            )
    except FlasherError as e:
        logger.error("Extension refused for %s: %s", device_path, e.message)
        return _failure(e, devicePath=device_path)

    return OperationResult(
        success=extension.succeeded,
        message=extension.message,
        code=extension.error_code,
        details={"devicePath": device_path, "extension": extension.to_dict()},
    )


async def eject_device(context: FlasherContext, device_path: str) -> OperationResult:
    """Unmount all partitions of a device and power it off."""
    try:
        async with context.device_guard(device_path):
            report = await safe_eject(context.executor, device_path)
    except FlasherError as e:
        logger.error("Eject failed for %s: %s", device_path, e.message)
        return _failure(e, devicePath=device_path)

    return OperationResult(
        success=True,
        message=f"{device_path} was safely ejected.",
        details={"devicePath": device_path, "eject": report.to_dict()},
    )


async def describe_devices(context: FlasherContext) -> OperationResult:
    """Enumerate devices and mark which are acceptable flash targets."""
    try:
        inventory = await enumerate_devices(context.executor)
    except FlasherError as e:
        logger.error("Device enumeration failed: %s", e.message)
        return _failure(e)

    targets = {device.path for device in accepted_flash_targets(inventory)}
    return OperationResult(
        success=True,
        message=f"Found {len(inventory.devices)} device(s).",
        details={
            "devices": [
                {**device.to_dict(), "acceptedTarget": device.path in targets}
                for device in inventory.devices
            ],
            "osDevicePath": inventory.os_device_path,
            "osDetection": inventory.os_detection.value,
        },
    )


def check_prerequisites(context: FlasherContext) -> OperationResult:
    """Report missing system tools with the packages that provide them."""
    missing = sorted(context.missing)
    required = sorted(context.missing_required)
    details: dict[str, object] = {
        "commands": dict(context.commands),
        "missing": missing,
        "packages": missing_packages_hint(missing),
    }
    if required:
        return OperationResult(
            success=False,
            message=f"Missing required commands: {', '.join(required)}. "
            f"Install: {' '.join(missing_packages_hint(required))}",
            code=COMMAND_NOT_FOUND,
            details=details,
        )
    return OperationResult(
        success=True,
        message=f"All {len(REQUIRED_COMMANDS)} required commands found.",
        details=details,
    )


__all__ = [
    "EJECT_COMMANDS",
    "FLASH_COMMANDS",
    "FlashPlan",
    "PipelineEvent",
    "PipelineIncompleteError",
    "check_prerequisites",
    "describe_devices",
    "drain_pipeline",
    "eject_device",
    "extend_device",
    "flash_device",
    "plan_flash",
    "resolve_partition_number",
    "run_pipeline",
    "run_pipeline_events",
]
