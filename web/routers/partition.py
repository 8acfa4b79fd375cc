"""Partition extension endpoint."""

from typing import Any

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from web.deps import get_context, raise_for_result
from yom_flasher.flash.service import extend_device
from yom_flasher.system.context import FlasherContext

router = APIRouter()


class ExtendRequest(BaseModel):
    """Request body for partition extension."""

    device_path: str
    partition_number: int | None = Field(default=None, ge=1)


@router.post("/extend")
async def extend_endpoint(
    request: ExtendRequest,
    context: FlasherContext = Depends(get_context),
) -> dict[str, Any]:
    """Grow a partition and its filesystem to fill the device.

    A resized partition whose filesystem could not be grown is reported as
    an error whose details show partitionTableModified=true and the manual
    commands to finish the job.
    """
    result = await extend_device(context, request.device_path, request.partition_number)
    return raise_for_result(result).to_dict()
