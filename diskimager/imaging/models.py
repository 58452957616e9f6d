"""Imaging ORM models.

This module defines the ImagingRecord model, an audit trail of imaging
jobs. Records are only written when the orchestrator is given a session
factory.
"""

from datetime import datetime, timezone

from sqlalchemy import BigInteger, DateTime, Float, Index, Integer, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from diskimager.db import Base
from diskimager.types import JobStatus


def to_db_timestamp(value: datetime | None = None) -> datetime:
    """Naive UTC timestamp as stored in every DateTime column.

    Args:
        value: Aware or naive-UTC datetime. Defaults to now.
    """
    if value is None:
        value = datetime.now(timezone.utc)
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


class ImagingRecord(Base):
    """ORM model for imaging jobs.

    Attributes:
        id: Primary key.
        job_id: Identifier of the in-memory job.
        direction: write-to-device or read-from-device.
        source_path: Image file or raw device read from.
        target_path: Raw device or image file written to.
        device_identifier: Identifier of the device descriptor.
        device_name: Display name of the device.
        raw_device_path: Resolved raw device path, once known.
        requested_at: Timestamp when the job was requested.
        started_at: Timestamp when the job started running.
        finished_at: Timestamp when the job reached a terminal state.
        status: Job status.
        progress: Last reported progress.
        bytes_copied: Bytes copied by the job.
        error_type: Error code if the job failed.
        error_stage: Stage that failed.
        error_message: Error message if the job failed.
    """

    __tablename__ = "imaging_records"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    job_id: Mapped[str] = mapped_column(String(32), nullable=False, unique=True)

    direction: Mapped[str] = mapped_column(String(20), nullable=False)
    source_path: Mapped[str] = mapped_column(String(500), nullable=False)
    target_path: Mapped[str] = mapped_column(String(500), nullable=False)

    # Device identification
    device_identifier: Mapped[str] = mapped_column(
        String(255), nullable=False, index=True
    )
    device_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    raw_device_path: Mapped[str | None] = mapped_column(String(100), nullable=True)

    # Timing
    requested_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, server_default=func.now()
    )
    started_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    finished_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    # Status
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=JobStatus.PENDING.value, index=True
    )
    progress: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    bytes_copied: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)

    # Errors
    error_type: Mapped[str | None] = mapped_column(String(100), nullable=True)
    error_stage: Mapped[str | None] = mapped_column(String(20), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Indexes
    __table_args__ = (
        Index("ix_imaging_records_device_status", "device_identifier", "status"),
    )

    def __repr__(self) -> str:
        """Return string representation of ImagingRecord."""
        return (
            f"<ImagingRecord(id={self.id}, job_id='{self.job_id}', "
            f"direction='{self.direction}', status='{self.status}')>"
        )

    def mark_running(self, at: datetime | None = None) -> None:
        """Mark this job as running."""
        self.status = JobStatus.RUNNING.value
        self.started_at = to_db_timestamp(at)

    def mark_succeeded(self, bytes_copied: int, at: datetime | None = None) -> None:
        """Mark this job as succeeded."""
        self.status = JobStatus.SUCCEEDED.value
        self.progress = 1.0
        self.bytes_copied = bytes_copied
        self.finished_at = to_db_timestamp(at)

    def mark_failed(
        self,
        error_type: str | None = None,
        message: str | None = None,
        stage: str | None = None,
        *,
        cancelled: bool = False,
        at: datetime | None = None,
    ) -> None:
        """Mark this job as failed or cancelled.

        Args:
            error_type: Type/category of the error.
            message: Error message details.
            stage: Stage of the flow that failed.
            cancelled: Record the job as cancelled rather than failed.
            at: When the job finished. Defaults to now.
        """
        self.status = (JobStatus.CANCELLED if cancelled else JobStatus.FAILED).value
        self.finished_at = to_db_timestamp(at)
        if error_type:
            self.error_type = error_type
        if message:
            self.error_message = message
        if stage:
            self.error_stage = stage


__all__ = ["ImagingRecord", "to_db_timestamp"]
