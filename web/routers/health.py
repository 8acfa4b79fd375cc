"""Health check endpoints."""

from typing import Any

from fastapi import APIRouter, Depends

from web.deps import get_context
from yom_flasher import __version__
from yom_flasher.system.context import FlasherContext

router = APIRouter()


@router.get("/health")
def health(context: FlasherContext = Depends(get_context)) -> dict[str, Any]:
    """Health check endpoint.

    The service is 'degraded' when a required system tool was not located
    at startup; device operations needing it will be refused.

    Returns:
        Health status, version and the missing required commands.
    """
    missing = sorted(context.missing_required)
    return {
        "status": "degraded" if missing else "ok",
        "version": __version__,
        "missingCommands": missing,
    }


@router.get("/")
def root() -> dict[str, str]:
    return {"name": "YOM Flasher API", "version": __version__}
