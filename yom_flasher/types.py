"""Shared type definitions for yom_flasher.

This module contains enums and dataclasses shared across subpackages to
avoid circular imports.
"""

from dataclasses import dataclass, field
from enum import Enum


class PipelineStep(str, Enum):
    """Steps of the flash -> extend -> eject pipeline, in execution order."""

    VALIDATE = "validate"
    FLASH = "flash"
    EXTEND = "extend"
    EJECT = "eject"
    DONE = "done"


class OSDetection(str, Enum):
    """How the device hosting the root filesystem was (or was not) found."""

    ROOT_ON_DISK = "root-on-disk"
    ROOT_ON_PARTITION = "root-on-partition"
    UNRESOLVED = "unresolved"
    NO_ROOT_MOUNT = "no-root-mount"


@dataclass
class OperationResult:
    """Result of an orchestrator operation (flash, extend, eject, pipeline)."""

    success: bool
    message: str
    code: str | None = None
    details: dict[str, object] = field(default_factory=dict)

    def to_dict(self) -> dict[str, object]:
        """Convert to dictionary for JSON serialization."""
        result: dict[str, object] = {"success": self.success, "message": self.message}
        if self.code is not None:
            result["code"] = self.code
        if self.details:
            result["details"] = self.details
        return result


__all__ = [
    "OSDetection",
    "OperationResult",
    "PipelineStep",
]
