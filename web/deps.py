"""Runtime context dependency for FastAPI.

The context (settings, located commands, executor and the per-device
operation guard) is created once in the application lifespan and shared by
every request, so two requests can never run against the same device.
"""

from __future__ import annotations

import json
from collections.abc import AsyncIterator

from fastapi import HTTPException, Request
from fastapi.responses import StreamingResponse
from fastapi import status as http_status

from yom_flasher.errors import (
    COMMAND_NOT_FOUND,
    DEVICE_BUSY,
    DEVICE_NOT_FOUND,
    FILESYSTEM_CHECK_FAILED,
    FILESYSTEM_RESIZE_FAILED,
    IMAGE_NOT_FOUND,
    INVALID_IMAGE_SIZE,
    OPERATION_IN_PROGRESS,
    PARTITION_NOT_ALLOWED,
    PARTITION_TABLE_INCONSISTENT,
    SYSTEM_DEVICE,
    UNVERIFIED_TARGET,
)
from yom_flasher.flash.service import PipelineEvent
from yom_flasher.system.context import FlasherContext
from yom_flasher.types import OperationResult

# HTTP status per error code; anything else is a 500
_STATUS_BY_CODE = {
    DEVICE_NOT_FOUND: http_status.HTTP_404_NOT_FOUND,
    IMAGE_NOT_FOUND: http_status.HTTP_404_NOT_FOUND,
    INVALID_IMAGE_SIZE: http_status.HTTP_400_BAD_REQUEST,
    SYSTEM_DEVICE: http_status.HTTP_400_BAD_REQUEST,
    PARTITION_NOT_ALLOWED: http_status.HTTP_400_BAD_REQUEST,
    UNVERIFIED_TARGET: http_status.HTTP_400_BAD_REQUEST,
    PARTITION_TABLE_INCONSISTENT: http_status.HTTP_400_BAD_REQUEST,
    OPERATION_IN_PROGRESS: http_status.HTTP_409_CONFLICT,
    DEVICE_BUSY: http_status.HTTP_409_CONFLICT,
    # Partition resized, filesystem not grown: partial success
    FILESYSTEM_CHECK_FAILED: http_status.HTTP_409_CONFLICT,
    FILESYSTEM_RESIZE_FAILED: http_status.HTTP_409_CONFLICT,
    COMMAND_NOT_FOUND: http_status.HTTP_503_SERVICE_UNAVAILABLE,
}


def get_context(request: Request) -> FlasherContext:
    """Get the runtime context from app state.

    Args:
        request: FastAPI request object.

    Returns:
        FlasherContext created at startup.
    """
    context: FlasherContext = request.app.state.context
    return context


def status_for_code(code: str | None) -> int:
    return _STATUS_BY_CODE.get(code or "", http_status.HTTP_500_INTERNAL_SERVER_ERROR)


def raise_for_result(result: OperationResult) -> OperationResult:
    """Turn a failed result into an HTTPException carrying code and message."""
    if result.success:
        return result
    raise HTTPException(
        status_code=status_for_code(result.code),
        detail={
            "code": result.code,
            "message": result.message,
            "details": result.details,
        },
    )


async def _ndjson(events: AsyncIterator[PipelineEvent]) -> AsyncIterator[bytes]:
    async for event in events:
        yield json.dumps(event.to_dict()).encode() + b"\n"


def stream_events(events: AsyncIterator[PipelineEvent]) -> StreamingResponse:
    """Stream pipeline events as newline-delimited JSON.

    The final line always has step 'done' and carries the result. Closing
    the connection early stops the pipeline (and kills dd if it is running).
    """
    return StreamingResponse(_ndjson(events), media_type="application/x-ndjson")
