"""Error types for imaging operations.

Every failure in a write or read flow surfaces as exactly one
ImagingError subclass, annotated with the stage that failed.
"""

from diskimager.types import JobStage


class ImagingError(Exception):
    """Base exception for imaging errors."""

    def __init__(
        self,
        message: str,
        error_code: str,
        stage: JobStage | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.stage = stage


class DeviceUnmountFailedError(ImagingError):
    """The device could not be unmounted before writing."""

    def __init__(self, mount_path: str) -> None:
        super().__init__(
            f"Failed to unmount device at {mount_path}",
            error_code="DEVICE_UNMOUNT_FAILED",
            stage=JobStage.UNMOUNT,
        )
        self.mount_path = mount_path


class SourceNotFoundError(ImagingError):
    """Source image is missing or unreadable."""

    def __init__(self, source_path: str) -> None:
        super().__init__(
            f"Source image not found or unreadable: {source_path}",
            error_code="SOURCE_NOT_FOUND",
            stage=JobStage.VALIDATE_SOURCE,
        )
        self.source_path = source_path


class DeviceInfoUnavailableError(ImagingError):
    """The disk tool could not describe the device."""

    def __init__(self, message: str) -> None:
        super().__init__(
            message, error_code="DEVICE_INFO_UNAVAILABLE", stage=JobStage.RESOLVE
        )


class DeviceInfoParseError(ImagingError):
    """The disk tool output could not be parsed."""

    def __init__(self, message: str) -> None:
        super().__init__(
            message, error_code="DEVICE_INFO_PARSE_FAILED", stage=JobStage.RESOLVE
        )


class RawPathNotFoundError(ImagingError):
    """No raw device identifier could be extracted for the device."""

    def __init__(self, device_name: str) -> None:
        super().__init__(
            f"Could not find raw device path for '{device_name}'",
            error_code="RAW_PATH_NOT_FOUND",
            stage=JobStage.RESOLVE,
        )
        self.device_name = device_name


class CopyFailedError(ImagingError):
    """Block copy failed."""

    def __init__(self, message: str, stage: JobStage = JobStage.COPY) -> None:
        super().__init__(message, error_code="COPY_FAILED", stage=stage)


class SyncFailedError(ImagingError):
    """Flushing writes to the device failed."""

    def __init__(self, device_path: str, detail: str | None = None) -> None:
        message = f"Failed to sync device {device_path}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message, error_code="SYNC_FAILED", stage=JobStage.SYNC)
        self.device_path = device_path


class PermissionDeniedError(ImagingError):
    """Access to the raw device was denied."""

    def __init__(self, device_path: str, stage: JobStage = JobStage.COPY) -> None:
        super().__init__(
            f"Permission denied accessing {device_path}. "
            "Run with administrator privileges.",
            error_code="PERMISSION_DENIED",
            stage=stage,
        )
        self.device_path = device_path


class JobCancelledError(ImagingError):
    """The job was cancelled by the caller."""

    def __init__(self, stage: JobStage | None = JobStage.COPY) -> None:
        super().__init__("Imaging job cancelled", error_code="CANCELLED", stage=stage)


class JobAlreadyActiveError(ImagingError):
    """Another imaging job is already running."""

    def __init__(self, job_id: str) -> None:
        super().__init__(
            f"An imaging job is already active: {job_id}",
            error_code="JOB_ALREADY_ACTIVE",
        )
        self.job_id = job_id


__all__ = [
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
]
