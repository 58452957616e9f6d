"""Disk imaging engine.

This module handles:
- Removable device discovery
- Raw whole-disk device path resolution
- Unmount/mount sequencing
- Streaming block copy with progress and cancellation
- Single-job orchestration of write and read operations

Safety rules:
- Raw paths are resolved immediately before each job, never cached
- Devices are unmounted before any raw write
- Writes are synced before a job reports success
- Only one imaging job runs at a time
"""

from diskimager.imaging.catalog import (
    DeviceCatalog,
    DeviceDescriptor,
    DeviceUsage,
    get_device_usage,
    list_removable_devices,
)
from diskimager.imaging.copier import (
    DEFAULT_BLOCK_SIZE,
    CopyEndpoint,
    CopyResult,
    copy_blocks,
    copy_image,
    copy_with_dd,
    sync_device,
)
from diskimager.imaging.errors import (
    CopyFailedError,
    DeviceInfoParseError,
    DeviceInfoUnavailableError,
    DeviceUnmountFailedError,
    ImagingError,
    JobAlreadyActiveError,
    JobCancelledError,
    PermissionDeniedError,
    RawPathNotFoundError,
    SourceNotFoundError,
    SyncFailedError,
)
from diskimager.imaging.image import get_file_size, validate_iso
from diskimager.imaging.models import ImagingRecord
from diskimager.imaging.mount import MountController
from diskimager.imaging.privileges import check_raw_device_access, has_admin_privileges
from diskimager.imaging.resolver import RawPathResolver
from diskimager.imaging.service import (
    ImagingJob,
    ImagingOrchestrator,
    JobResult,
    get_job_records,
)

__all__ = [
    # Models
    "ImagingRecord",
    # Discovery
    "DeviceCatalog",
    "DeviceDescriptor",
    "DeviceUsage",
    "get_device_usage",
    "list_removable_devices",
    # Resolution and mounting
    "MountController",
    "RawPathResolver",
    # Copy engine
    "DEFAULT_BLOCK_SIZE",
    "CopyEndpoint",
    "CopyResult",
    "copy_blocks",
    "copy_image",
    "copy_with_dd",
    "sync_device",
    # Images and privileges
    "check_raw_device_access",
    "get_file_size",
    "has_admin_privileges",
    "validate_iso",
    # Errors
    "CopyFailedError",
    "DeviceInfoParseError",
    "DeviceInfoUnavailableError",
    "DeviceUnmountFailedError",
    "ImagingError",
    "JobAlreadyActiveError",
    "JobCancelledError",
    "PermissionDeniedError",
    "RawPathNotFoundError",
    "SourceNotFoundError",
    "SyncFailedError",
    # Service
    "ImagingJob",
    "ImagingOrchestrator",
    "JobResult",
    "get_job_records",
]
