"""Flash -> extend -> eject pipeline endpoint."""

from fastapi import APIRouter, Depends
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field

from web.deps import get_context, stream_events
from yom_flasher.flash.service import run_pipeline_events
from yom_flasher.system.context import FlasherContext

router = APIRouter()


class PipelineRequest(BaseModel):
    """Request body for the full pipeline."""

    image_path: str
    device_path: str
    partition_number: int | None = Field(default=None, ge=1)
    eject: bool = True
    allow_unverified: bool = False


@router.post("")
async def pipeline_endpoint(
    request: PipelineRequest,
    context: FlasherContext = Depends(get_context),
) -> StreamingResponse:
    """Flash an image, extend its partition and eject, streaming NDJSON events."""
    events = run_pipeline_events(
        context,
        request.image_path,
        request.device_path,
        partition_number=request.partition_number,
        eject=request.eject,
        allow_unverified=request.allow_unverified,
    )
    return stream_events(events)
