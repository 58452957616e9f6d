"""Shared type definitions for diskimager.

This module contains enums shared across subpackages to avoid
circular imports.
"""

from enum import Enum


class JobStatus(str, Enum):
    """Status of an imaging job."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        """Whether the status is final."""
        return self in (JobStatus.SUCCEEDED, JobStatus.FAILED, JobStatus.CANCELLED)


class JobDirection(str, Enum):
    """Direction of an imaging job."""

    WRITE_TO_DEVICE = "write-to-device"
    READ_FROM_DEVICE = "read-from-device"


class JobStage(str, Enum):
    """Stage of an imaging flow, used to annotate failures."""

    VALIDATE_SOURCE = "validate-source"
    RESOLVE = "resolve"
    PRIVILEGE_CHECK = "privilege-check"
    UNMOUNT = "unmount"
    PREPARE_OUTPUT = "prepare-output"
    COPY = "copy"
    SYNC = "sync"


class EndpointKind(str, Enum):
    """Kind of a copy source or destination."""

    FILE = "file"
    DEVICE = "device"


__all__ = [
    "EndpointKind",
    "JobDirection",
    "JobStage",
    "JobStatus",
]
