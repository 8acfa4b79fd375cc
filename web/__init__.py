"""FastAPI web application for YOM Flasher.

This module provides the HTTP API that mirrors the flash service layer.

All business logic is delegated to core modules in yom_flasher/.
"""

from web.app import app, create_app

__all__ = ["app", "create_app"]
