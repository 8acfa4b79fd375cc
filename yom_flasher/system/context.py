"""Runtime context shared by every device operation.

The context bundles the settings, the command cache and the executor. It is
built once at process start (CLI invocation, helper daemon, web app
lifespan) and passed explicitly to the operations that need it.
"""

from __future__ import annotations

import logging
import os
from collections.abc import AsyncIterator, Iterable
from contextlib import asynccontextmanager
from dataclasses import dataclass, field

from yom_flasher.config import Settings, get_settings
from yom_flasher.errors import OPERATION_IN_PROGRESS, FlasherError
from yom_flasher.system.commands import (
    OPTIONAL_COMMANDS,
    REQUIRED_COMMANDS,
    CommandPathCache,
    locate_commands,
)
from yom_flasher.system.executor import PrivilegedExecutor

logger = logging.getLogger(__name__)


class DeviceOperationInProgressError(FlasherError):
    """Another operation is already running against the same device."""

    def __init__(self, device_path: str) -> None:
        super().__init__(
            f"Another operation is already in progress on {device_path}. "
            "Wait for it to finish before starting a new one.",
            error_code=OPERATION_IN_PROGRESS,
        )
        self.device_path = device_path


def device_key(device_path: str) -> str:
    """Canonical form of a device path (symlinks resolved, slashes collapsed)."""
    return os.path.realpath(device_path)


@dataclass
class FlasherContext:
    """Settings, located commands and executor for one process.

    Attributes:
        settings: Effective application settings.
        commands: Immutable cache of located tool paths.
        missing: Names that could not be located at startup.
        executor: Executor bound to the command cache.
    """

    settings: Settings
    commands: CommandPathCache
    missing: set[str] = field(default_factory=set)
    executor: PrivilegedExecutor = field(init=False)
    _busy_devices: set[str] = field(default_factory=set, init=False, repr=False)

    def __post_init__(self) -> None:
        self.executor = PrivilegedExecutor(
            self.commands, default_timeout=self.settings.command_timeout
        )

    @property
    def missing_required(self) -> set[str]:
        return self.missing & REQUIRED_COMMANDS

    @asynccontextmanager
    async def device_guard(self, device_path: str) -> AsyncIterator[None]:
        """Hold exclusive use of a device for the duration of an operation.

        The path is canonicalized first, so aliases such as /dev//sdb or
        /dev/disk/by-id links share the lock of the node they name.

        Raises:
            DeviceOperationInProgressError: The device is already in use.
        """
        key = device_key(device_path)
        if key in self._busy_devices:
            raise DeviceOperationInProgressError(device_path)
        self._busy_devices.add(key)
        try:
            yield
        finally:
            self._busy_devices.discard(key)

    def is_busy(self, device_path: str) -> bool:
        return device_key(device_path) in self._busy_devices


def create_context(
    settings: Settings | None = None,
    names: Iterable[str] | None = None,
) -> FlasherContext:
    """Locate commands and build the runtime context.

    Args:
        settings: Application settings (defaults to environment settings).
        names: Commands to locate (defaults to required + optional).

    Returns:
        FlasherContext ready for use.
    """
    if settings is None:
        settings = get_settings()
    if names is None:
        names = REQUIRED_COMMANDS | OPTIONAL_COMMANDS

    commands, missing = locate_commands(names, settings.extra_command_dirs)
    context = FlasherContext(settings=settings, commands=commands, missing=missing)
    if context.missing_required:
        logger.warning(
            "Missing required commands: %s", ", ".join(sorted(context.missing_required))
        )
    return context


__all__ = [
    "DeviceOperationInProgressError",
    "FlasherContext",
    "create_context",
    "device_key",
]
