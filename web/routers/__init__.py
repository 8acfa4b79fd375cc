"""Router modules for FastAPI web API."""

from web.routers import config, devices, eject, flash, health, partition, pipeline

__all__ = ["config", "devices", "eject", "flash", "health", "partition", "pipeline"]
