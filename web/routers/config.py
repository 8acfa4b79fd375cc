"""Configuration endpoints."""

from typing import Any

from fastapi import APIRouter, Depends

from web.deps import get_context
from yom_flasher.flash.service import check_prerequisites
from yom_flasher.system.context import FlasherContext

router = APIRouter()


@router.get("")
def get_config(context: FlasherContext = Depends(get_context)) -> dict[str, Any]:
    """Get effective configuration and located commands.

    Returns:
        Current configuration as JSON.
    """
    settings = context.settings
    prerequisites = check_prerequisites(context)
    return {
        "helper_socket_path": str(settings.helper_socket_path),
        "helper_socket_mode": oct(settings.helper_socket_mode),
        "ipc_timeout": settings.ipc_timeout,
        "reconnect_interval": settings.reconnect_interval,
        "flash_block_size": settings.flash_block_size,
        "default_partition_number": settings.default_partition_number,
        "command_timeout": settings.command_timeout,
        "extra_command_dirs": [str(d) for d in settings.extra_command_dirs],
        "log_level": settings.log_level,
        "prerequisites": prerequisites.to_dict(),
    }
