"""Safe eject endpoint."""

from typing import Any

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from web.deps import get_context, raise_for_result
from yom_flasher.flash.service import eject_device
from yom_flasher.system.context import FlasherContext

router = APIRouter()


class EjectRequest(BaseModel):
    """Request body for safe eject."""

    device_path: str


@router.post("")
async def eject_endpoint(
    request: EjectRequest,
    context: FlasherContext = Depends(get_context),
) -> dict[str, Any]:
    """Unmount every partition of a device and power it off."""
    result = await eject_device(context, request.device_path)
    return raise_for_result(result).to_dict()
