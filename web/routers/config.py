"""Configuration endpoints."""

from typing import Any

from fastapi import APIRouter

from diskimager.config import get_settings

router = APIRouter()


@router.get("")
def get_config() -> dict[str, Any]:
    """Get effective configuration.

    Returns:
        Current configuration as JSON.
    """
    settings = get_settings()
    return {
        "diskutil_path": settings.diskutil_path,
        "dd_path": settings.dd_path,
        "raw_device_prefix": settings.raw_device_prefix,
        "copy_backend": settings.copy_backend,
        "block_size": settings.block_size,
        "progress_interval": settings.progress_interval,
        "allow_last_disk_fallback": settings.allow_last_disk_fallback,
        "disk_tool_timeout": settings.disk_tool_timeout,
        "privilege_probe_device": settings.privilege_probe_device,
        "min_image_bytes": settings.min_image_bytes,
        "db_url": settings.db_url,
        "log_level": settings.log_level,
    }
