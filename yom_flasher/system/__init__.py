"""System tool discovery and execution.

This module handles:
- Locating dd, lsblk, parted and the other tools at fixed install paths
- Running them as asyncio subprocesses and classifying failures
- The per-process runtime context shared by every device operation
"""

from yom_flasher.system.commands import (
    CommandNotFoundError,
    CommandPathCache,
    locate_commands,
)
from yom_flasher.system.context import FlasherContext, create_context
from yom_flasher.system.executor import (
    CommandFailedError,
    CommandResult,
    PrivilegedExecutor,
    PrivilegeDeniedError,
)

__all__ = [
    "CommandFailedError",
    "CommandNotFoundError",
    "CommandPathCache",
    "CommandResult",
    "FlasherContext",
    "PrivilegeDeniedError",
    "PrivilegedExecutor",
    "create_context",
    "locate_commands",
]
