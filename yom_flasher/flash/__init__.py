"""Raw image flashing, partition extension and safe eject.

This module handles:
- Device enumeration and flash-target policy (whole devices, never the OS)
- Streaming dd writes with progress events
- Growing a partition and its ext filesystem to fill the device
- Unmount and power-off of the flashed device
- The flash -> extend -> eject pipeline

All operations follow the same safety rules:
- Explicit device paths only (no guessing)
- One operation per device at a time
- Synchronous, flushed writes
"""

from yom_flasher.flash.device import (
    DeviceDescriptor,
    DeviceEnumerationError,
    DeviceInventory,
    DeviceNotFoundError,
    DeviceValidationError,
    PartitionDeviceError,
    SystemDeviceError,
    UnverifiedTargetError,
    accepted_flash_targets,
    enumerate_devices,
    ensure_flash_target,
    list_devices,
)
from yom_flasher.flash.eject import DeviceBusyError, EjectError, EjectReport, safe_eject
from yom_flasher.flash.partition import (
    ExtensionOutcome,
    ExtensionState,
    PartitionExtensionResult,
    derive_partition_path,
    extend_partition,
)
from yom_flasher.flash.service import (
    FlashPlan,
    PipelineEvent,
    eject_device,
    extend_device,
    flash_device,
    plan_flash,
    run_pipeline,
    run_pipeline_events,
)
from yom_flasher.flash.writer import (
    FlashProgress,
    ImageNotFoundError,
    InvalidImageSizeError,
    flash_image,
    get_image_size,
)

__all__ = [
    # Device enumeration
    "DeviceDescriptor",
    "DeviceEnumerationError",
    "DeviceInventory",
    "DeviceNotFoundError",
    "DeviceValidationError",
    "PartitionDeviceError",
    "SystemDeviceError",
    "UnverifiedTargetError",
    "accepted_flash_targets",
    "enumerate_devices",
    "ensure_flash_target",
    "list_devices",
    # Writer
    "FlashProgress",
    "ImageNotFoundError",
    "InvalidImageSizeError",
    "flash_image",
    "get_image_size",
    # Partition extension
    "ExtensionOutcome",
    "ExtensionState",
    "PartitionExtensionResult",
    "derive_partition_path",
    "extend_partition",
    # Eject
    "DeviceBusyError",
    "EjectError",
    "EjectReport",
    "safe_eject",
    # Service
    "FlashPlan",
    "PipelineEvent",
    "eject_device",
    "extend_device",
    "flash_device",
    "plan_flash",
    "run_pipeline",
    "run_pipeline_events",
]
