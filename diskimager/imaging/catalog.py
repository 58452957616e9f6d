"""Removable device discovery.

This module enumerates the currently mounted volumes and exposes the
removable or ejectable ones as immutable DeviceDescriptor snapshots:
- Mounted volumes come from psutil
- Removable/ejectable flags and volume names come from the disk tool
- Capacity is formatted for display only

Enumeration failures are never raised: an empty device list is a valid
state for callers to show.
"""

import logging
from dataclasses import dataclass
from pathlib import PurePosixPath

import psutil
from rich.filesize import decimal

from diskimager.config import Settings, get_settings
from diskimager.imaging.disktool import DiskToolError, query_plist

logger = logging.getLogger(__name__)

UNKNOWN_DEVICE_NAME = "Unknown Device"


@dataclass(frozen=True)
class DeviceDescriptor:
    """Snapshot of one enumerated removable volume.

    Attributes:
        identifier: Last path component of the mount path.
        name: Volume name, or a placeholder when the volume has none.
        size: Human-readable capacity (display only, not for arithmetic).
        mount_path: Path the volume is mounted at.
        is_removable: Whether the OS flags the volume as removable.
    """

    identifier: str
    name: str
    size: str
    mount_path: str
    is_removable: bool


@dataclass(frozen=True)
class VolumeInfo:
    """Raw properties of a mounted volume before filtering.

    Attributes:
        mount_path: Path the volume is mounted at.
        name: Volume name reported by the OS, if any.
        total_bytes: Total capacity of the volume in bytes.
        is_removable: Removable flag reported by the OS.
        is_ejectable: Ejectable flag reported by the OS.
    """

    mount_path: str
    name: str | None
    total_bytes: int
    is_removable: bool
    is_ejectable: bool


@dataclass(frozen=True)
class DeviceUsage:
    """Space usage of a mounted device."""

    total_bytes: int
    free_bytes: int


def _describe_volume(mount_path: str, settings: Settings) -> VolumeInfo:
    """Read the properties of a single mounted volume.

    Raises:
        DiskToolError: The disk tool could not describe the volume.
        OSError: The volume capacity could not be read.
    """
    info = query_plist(mount_path, settings=settings)

    is_removable = bool(info.get("Removable", False) or info.get("RemovableMedia"))
    is_ejectable = bool(info.get("Ejectable", False))
    name = info.get("VolumeName") or None

    total_bytes = psutil.disk_usage(mount_path).total

    return VolumeInfo(
        mount_path=mount_path,
        name=name,
        total_bytes=total_bytes,
        is_removable=is_removable,
        is_ejectable=is_ejectable,
    )


def enumerate_volumes(settings: Settings | None = None) -> list[VolumeInfo]:
    """Enumerate all mounted volumes with their removable/ejectable flags.

    Volumes whose properties cannot be read are skipped.

    Args:
        settings: Application settings (optional).

    Returns:
        List of VolumeInfo for every readable mounted volume.

    Raises:
        OSError: The mounted volume table could not be read.
    """
    if settings is None:
        settings = get_settings()

    volumes: list[VolumeInfo] = []
    for partition in psutil.disk_partitions(all=False):
        try:
            volumes.append(_describe_volume(partition.mountpoint, settings))
        except (DiskToolError, OSError) as e:
            logger.warning(
                "Error reading volume properties for %s: %s", partition.mountpoint, e
            )

    return volumes


def to_descriptor(volume: VolumeInfo) -> DeviceDescriptor:
    """Build a DeviceDescriptor from raw volume properties.

    Args:
        volume: Raw volume properties.

    Returns:
        Immutable DeviceDescriptor.
    """
    return DeviceDescriptor(
        identifier=PurePosixPath(volume.mount_path).name or volume.mount_path,
        name=volume.name or UNKNOWN_DEVICE_NAME,
        size=decimal(volume.total_bytes),
        mount_path=volume.mount_path,
        is_removable=volume.is_removable,
    )


def list_removable_devices(settings: Settings | None = None) -> list[DeviceDescriptor]:
    """List mounted volumes flagged removable or ejectable.

    Args:
        settings: Application settings (optional).

    Returns:
        List of DeviceDescriptor reflecting the current moment. Empty if
        the OS enumeration call fails.
    """
    try:
        volumes = enumerate_volumes(settings)
    except (OSError, psutil.Error) as e:
        logger.warning("Volume enumeration failed, reporting no devices: %s", e)
        return []

    devices = [
        to_descriptor(volume)
        for volume in volumes
        if volume.is_removable or volume.is_ejectable
    ]
    logger.debug("Found %d removable device(s)", len(devices))
    return devices


def get_device_usage(device: DeviceDescriptor) -> DeviceUsage | None:
    """Get total and free space of a mounted device.

    Args:
        device: Device to query.

    Returns:
        DeviceUsage, or None if the volume cannot be queried.
    """
    try:
        usage = psutil.disk_usage(device.mount_path)
    except OSError as e:
        logger.warning("Error getting device info for %s: %s", device.mount_path, e)
        return None
    return DeviceUsage(total_bytes=usage.total, free_bytes=usage.free)


class DeviceCatalog:
    """Caller-pulled snapshot of removable devices.

    The snapshot is replaced wholesale by refresh(); there is no
    incremental diffing and no live subscription.
    """

    def __init__(self, settings: Settings | None = None) -> None:
        self._settings = settings
        self._devices: tuple[DeviceDescriptor, ...] = ()

    @property
    def devices(self) -> tuple[DeviceDescriptor, ...]:
        """Devices from the most recent refresh."""
        return self._devices

    def list_removable_devices(self) -> list[DeviceDescriptor]:
        """Query the current removable devices without touching the snapshot."""
        return list_removable_devices(self._settings)

    def refresh(self) -> tuple[DeviceDescriptor, ...]:
        """Re-enumerate devices and replace the snapshot.

        Returns:
            The new snapshot.
        """
        self._devices = tuple(self.list_removable_devices())
        return self._devices

    def find(self, identifier: str) -> DeviceDescriptor | None:
        """Look up a device by identifier in the current snapshot.

        Args:
            identifier: Device identifier.

        Returns:
            Matching DeviceDescriptor, or None.
        """
        for device in self._devices:
            if device.identifier == identifier:
                return device
        return None


__all__ = [
    "UNKNOWN_DEVICE_NAME",
    "DeviceCatalog",
    "DeviceDescriptor",
    "DeviceUsage",
    "VolumeInfo",
    "enumerate_volumes",
    "get_device_usage",
    "list_removable_devices",
    "to_descriptor",
]
