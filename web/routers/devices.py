"""Device listing endpoint."""

from typing import Any

from fastapi import APIRouter, Depends

from web.deps import get_context, raise_for_result
from yom_flasher.flash.service import describe_devices
from yom_flasher.system.context import FlasherContext

router = APIRouter()


@router.get("")
async def list_devices_endpoint(
    context: FlasherContext = Depends(get_context),
) -> dict[str, Any]:
    """List disk-level block devices.

    The device hosting the OS is flagged with isOS and is never an
    accepted flash target.
    """
    result = raise_for_result(await describe_devices(context))
    return result.details
