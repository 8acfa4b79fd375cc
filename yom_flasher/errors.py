"""Error taxonomy for device operations.

Every error raised by the orchestrator carries a human-readable message
and a stable error code that the CLI, the HTTP API and the privileged
helper surface unchanged. Component-specific exception classes live next
to the code that raises them and derive from FlasherError.
"""

# Command discovery and execution
COMMAND_NOT_FOUND = "command_not_found"
COMMAND_FAILED = "command_failed"
COMMAND_SPAWN_FAILED = "command_spawn_failed"
COMMAND_TIMEOUT = "command_timeout"
PRIVILEGE_DENIED = "privilege_denied"

# Devices
DEVICE_ENUMERATION_FAILED = "device_enumeration_failed"
DEVICE_NOT_FOUND = "device_not_found"
DEVICE_BUSY = "device_busy"
OPERATION_IN_PROGRESS = "operation_in_progress"
SYSTEM_DEVICE = "system_device"
PARTITION_NOT_ALLOWED = "partition_not_allowed"
UNVERIFIED_TARGET = "unverified_target"
EJECT_FAILED = "eject_failed"

# Flashing
PIPELINE_INCOMPLETE = "pipeline_incomplete"
IMAGE_NOT_FOUND = "image_not_found"
INVALID_IMAGE_SIZE = "invalid_image_size"
FLASH_SPAWN_FAILED = "flash_spawn_failed"
FLASH_FAILED = "flash_failed"

# Partition extension
PARTITION_TABLE_INCONSISTENT = "partition_table_inconsistent"
PARTED_FAILED = "parted_failed"
GPT_REPAIR_FAILED = "gpt_repair_failed"
FILESYSTEM_CHECK_FAILED = "filesystem_check_failed"
FILESYSTEM_RESIZE_FAILED = "filesystem_resize_failed"

# Privileged helper channel
IPC_TIMEOUT = "ipc_timeout"
IPC_CONNECTION_LOST = "ipc_connection_lost"
HELPER_ALREADY_RUNNING = "helper_already_running"
HELPER_ERROR = "helper_error"


class FlasherError(Exception):
    """Base exception for all orchestrator errors."""

    def __init__(self, message: str, error_code: str) -> None:
        super().__init__(message)
        self.message = message
        self.error_code = error_code


__all__ = [
    "COMMAND_FAILED",
    "COMMAND_NOT_FOUND",
    "COMMAND_SPAWN_FAILED",
    "COMMAND_TIMEOUT",
    "DEVICE_BUSY",
    "DEVICE_ENUMERATION_FAILED",
    "DEVICE_NOT_FOUND",
    "EJECT_FAILED",
    "FILESYSTEM_CHECK_FAILED",
    "FILESYSTEM_RESIZE_FAILED",
    "FLASH_FAILED",
    "FLASH_SPAWN_FAILED",
    "FlasherError",
    "GPT_REPAIR_FAILED",
    "HELPER_ALREADY_RUNNING",
    "HELPER_ERROR",
    "IMAGE_NOT_FOUND",
    "INVALID_IMAGE_SIZE",
    "IPC_CONNECTION_LOST",
    "IPC_TIMEOUT",
    "OPERATION_IN_PROGRESS",
    "PARTED_FAILED",
    "PARTITION_NOT_ALLOWED",
    "PARTITION_TABLE_INCONSISTENT",
    "PIPELINE_INCOMPLETE",
    "PRIVILEGE_DENIED",
    "SYSTEM_DEVICE",
    "UNVERIFIED_TARGET",
]
