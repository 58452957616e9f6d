"""Router modules for FastAPI web API."""

from web.routers import config, devices, health, jobs

__all__ = ["config", "devices", "health", "jobs"]
