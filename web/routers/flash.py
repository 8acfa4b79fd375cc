"""Flash operation endpoint.

- POST /flash - Write an image to a device, streaming progress as NDJSON

All operations require explicit whole-device paths and never target the
device hosting the OS.
"""

from fastapi import APIRouter, Depends
from fastapi.responses import StreamingResponse
from pydantic import BaseModel

from web.deps import get_context, stream_events
from yom_flasher.flash.service import run_pipeline_events
from yom_flasher.system.context import FlasherContext

router = APIRouter()


class FlashRequest(BaseModel):
    """Request body for flash operation."""

    image_path: str
    device_path: str
    allow_unverified: bool = False


@router.post("")
async def flash_endpoint(
    request: FlashRequest,
    context: FlasherContext = Depends(get_context),
) -> StreamingResponse:
    """Flash an image to a device.

    Each response line is a JSON event; progress events carry percent,
    bytesCopied, totalBytes and speed. Validation failures are reported in
    the final 'done' event rather than as an HTTP error, since the stream
    has already started.

    Args:
        request: Flash request parameters.
        context: Runtime context.

    Returns:
        NDJSON event stream.
    """
    events = run_pipeline_events(
        context,
        request.image_path,
        request.device_path,
        extend=False,
        eject=False,
        allow_unverified=request.allow_unverified,
    )
    return stream_events(events)
