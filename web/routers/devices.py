"""Device discovery endpoints.

- GET /devices - List mounted removable devices
- GET /devices/{identifier}/usage - Total and free space of a device
"""

from typing import Any

from fastapi import APIRouter, Depends, HTTPException
from fastapi import status as http_status

from diskimager.imaging.catalog import DeviceDescriptor, get_device_usage
from diskimager.imaging.service import ImagingOrchestrator
from web.deps import get_orchestrator

router = APIRouter()


def device_to_dict(device: DeviceDescriptor) -> dict[str, Any]:
    """Convert a device descriptor to a dictionary."""
    return {
        "identifier": device.identifier,
        "name": device.name,
        "size": device.size,
        "mount_path": device.mount_path,
        "is_removable": device.is_removable,
    }


def find_device_or_404(
    orchestrator: ImagingOrchestrator, identifier: str
) -> DeviceDescriptor:
    """Look a device up in a freshly refreshed snapshot.

    Raises:
        HTTPException: 404 if no mounted removable device has the identifier.
    """
    for device in orchestrator.list_devices():
        if device.identifier == identifier:
            return device
    raise HTTPException(
        status_code=http_status.HTTP_404_NOT_FOUND,
        detail={
            "code": "device_not_found",
            "message": f"Device not found: {identifier}",
        },
    )


@router.get("")
def list_devices_endpoint(
    orchestrator: ImagingOrchestrator = Depends(get_orchestrator),
) -> list[dict[str, Any]]:
    """List mounted removable devices.

    Returns:
        List of device descriptors.
    """
    return [device_to_dict(d) for d in orchestrator.list_devices()]


@router.get("/{identifier}/usage")
def device_usage_endpoint(
    identifier: str,
    orchestrator: ImagingOrchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    """Get total and free space of a device.

    Raises:
        HTTPException: If the device is unknown or its usage cannot be read.
    """
    device = find_device_or_404(orchestrator, identifier)
    usage = get_device_usage(device)
    if usage is None:
        raise HTTPException(
            status_code=http_status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={
                "code": "usage_unavailable",
                "message": f"Could not read usage for {device.mount_path}",
            },
        )
    return {
        "identifier": device.identifier,
        "total_bytes": usage.total_bytes,
        "free_bytes": usage.free_bytes,
    }
