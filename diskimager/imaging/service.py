"""Imaging service layer.

This module composes device resolution, unmounting and the block copy
engine into the two user-facing operations:
- write an image file onto a removable device
- read a removable device into an image file

Each operation is an ImagingJob running on a dedicated worker thread.
Only one job may be active at a time; a second request while one is
pending or running is rejected with JobAlreadyActiveError.

Write flow: validate source -> resolve raw path -> probe raw access ->
unmount -> copy -> sync. The raw path is resolved before unmounting
because resolution reads volume metadata that disappears once the
volume is unmounted.

Read flow: resolve raw path -> create output directory -> copy.
"""

import logging
import os
import threading
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from diskimager.config import Settings, get_settings
from diskimager.db import get_session
from diskimager.imaging.catalog import DeviceCatalog, DeviceDescriptor
from diskimager.imaging.copier import (
    CopyEndpoint,
    CopyResult,
    ProgressCallback,
    copy_image,
    sync_device,
)
from diskimager.imaging.errors import (
    CopyFailedError,
    DeviceUnmountFailedError,
    ImagingError,
    JobAlreadyActiveError,
    JobCancelledError,
    PermissionDeniedError,
    SourceNotFoundError,
)
from diskimager.imaging.models import ImagingRecord, to_db_timestamp
from diskimager.imaging.mount import MountController
from diskimager.imaging.privileges import check_raw_device_access
from diskimager.imaging.resolver import RawPathResolver
from diskimager.types import JobDirection, JobStage, JobStatus

logger = logging.getLogger(__name__)

Copier = Callable[..., CopyResult]


@dataclass(frozen=True)
class JobResult:
    """Terminal summary of an imaging job.

    Attributes:
        job_id: Job identifier.
        success: Whether the job succeeded.
        status: Terminal status.
        direction: Direction of the job.
        source_path: Path read from.
        target_path: Path written to.
        raw_device_path: Resolved raw device path, if resolution ran.
        bytes_copied: Number of bytes copied.
        error_code: Error code if the job did not succeed.
        error_message: Error message if the job did not succeed.
        error_stage: Stage that failed.
    """

    job_id: str
    success: bool
    status: JobStatus
    direction: JobDirection
    source_path: str
    target_path: str
    raw_device_path: str | None
    bytes_copied: int
    error_code: str | None = None
    error_message: str | None = None
    error_stage: JobStage | None = None


class ImagingJob:
    """State of one imaging operation, from request to terminal state.

    Progress only moves forward. Once cancellation is requested no
    further progress callbacks fire.
    """

    def __init__(
        self,
        direction: JobDirection,
        device: DeviceDescriptor,
        image_path: str,
        on_progress: ProgressCallback | None = None,
    ) -> None:
        self.id = uuid.uuid4().hex
        self.direction = direction
        self.device = device
        self.image_path = image_path
        self.raw_device_path: str | None = None

        self.status = JobStatus.PENDING
        self.stage: JobStage | None = None
        self.progress = 0.0
        self.bytes_copied = 0
        self.error: ImagingError | None = None

        self.requested_at = datetime.now(timezone.utc)
        self.started_at: datetime | None = None
        self.finished_at: datetime | None = None

        self._on_progress = on_progress
        self._cancel_event = threading.Event()
        self._done = threading.Event()
        self._lock = threading.Lock()

    def __repr__(self) -> str:
        return (
            f"<ImagingJob(id={self.id[:8]}, direction={self.direction.value}, "
            f"status={self.status.value}, progress={self.progress:.3f})>"
        )

    @property
    def source_path(self) -> str:
        """Path read from."""
        if self.direction == JobDirection.WRITE_TO_DEVICE:
            return self.image_path
        return self.raw_device_path or self.device.mount_path

    @property
    def target_path(self) -> str:
        """Path written to."""
        if self.direction == JobDirection.WRITE_TO_DEVICE:
            return self.raw_device_path or self.device.mount_path
        return self.image_path

    @property
    def cancel_event(self) -> threading.Event:
        """Event set when cancellation is requested."""
        return self._cancel_event

    @property
    def is_active(self) -> bool:
        """Whether the job has not reached a terminal state."""
        return not self.status.is_terminal

    def cancel(self) -> bool:
        """Request cancellation.

        Returns:
            True if the request was delivered to an active job.
        """
        if not self.is_active:
            return False
        logger.info("Cancellation requested for job %s", self.id)
        self._cancel_event.set()
        return True

    def wait(self, timeout: float | None = None) -> JobResult | None:
        """Block until the job is finished.

        Args:
            timeout: Seconds to wait (None = wait forever).

        Returns:
            JobResult, or None if the timeout expired first.
        """
        if not self._done.wait(timeout):
            return None
        return self.result()

    def result(self) -> JobResult:
        """Current summary of the job."""
        error = self.error
        return JobResult(
            job_id=self.id,
            success=self.status == JobStatus.SUCCEEDED,
            status=self.status,
            direction=self.direction,
            source_path=self.source_path,
            target_path=self.target_path,
            raw_device_path=self.raw_device_path,
            bytes_copied=self.bytes_copied,
            error_code=error.error_code if error else None,
            error_message=error.message if error else None,
            error_stage=error.stage if error else None,
        )

    def _enter(self, stage: JobStage) -> None:
        if self._cancel_event.is_set():
            raise JobCancelledError(stage=stage)
        self.stage = stage
        logger.info("Job %s: %s", self.id[:8], stage.value)

    def _report_progress(self, value: float, *, final: bool = False) -> None:
        with self._lock:
            if not final and (self._cancel_event.is_set() or self.status.is_terminal):
                return
            if value <= self.progress:
                return
            self.progress = value
        if self._on_progress is not None:
            self._on_progress(value)

    def _on_copy_progress(self, value: float) -> None:
        # The terminal 1.0 is held back until every stage has finished
        if value < 1.0:
            self._report_progress(value)

    def _mark_running(self) -> None:
        self.status = JobStatus.RUNNING
        self.started_at = datetime.now(timezone.utc)

    def _mark_succeeded(self, bytes_copied: int) -> None:
        self.bytes_copied = bytes_copied
        self._report_progress(1.0, final=True)
        self.status = JobStatus.SUCCEEDED
        self.finished_at = datetime.now(timezone.utc)

    def _mark_failed(self, error: ImagingError) -> None:
        if error.stage is None:
            error.stage = self.stage
        self.error = error
        self.status = (
            JobStatus.CANCELLED
            if isinstance(error, JobCancelledError)
            else JobStatus.FAILED
        )
        self.finished_at = datetime.now(timezone.utc)


class ImagingOrchestrator:
    """Run imaging jobs one at a time.

    Collaborators are injectable so that tests can substitute fakes for
    the disk tool, the mount controller and the copy primitive.
    """

    def __init__(
        self,
        *,
        settings: Settings | None = None,
        catalog: DeviceCatalog | None = None,
        resolver: RawPathResolver | None = None,
        mount_controller: MountController | None = None,
        copier: Copier = copy_image,
        syncer: Callable[[str], None] = sync_device,
        session_factory: sessionmaker[Session] | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._catalog = catalog or DeviceCatalog(self._settings)
        self._resolver = resolver or RawPathResolver(self._settings)
        self._mount_controller = mount_controller or MountController(self._settings)
        self._copier = copier
        self._syncer = syncer
        self._session_factory = session_factory

        self._lock = threading.Lock()
        self._active_job: ImagingJob | None = None

    @property
    def active_job(self) -> ImagingJob | None:
        """The pending or running job, if any."""
        return self._active_job

    def list_devices(self) -> list[DeviceDescriptor]:
        """Refresh and return the removable devices."""
        return list(self._catalog.refresh())

    def begin_write_image_to_device(
        self,
        image_path: str | Path,
        device: DeviceDescriptor,
        on_progress: ProgressCallback | None = None,
        on_complete: Callable[[JobResult], None] | None = None,
    ) -> ImagingJob:
        """Start writing an image onto a device.

        Args:
            image_path: Image file to write.
            device: Target device.
            on_progress: Called from the worker thread with progress values.
            on_complete: Called from the worker thread with the terminal result.

        Returns:
            The started ImagingJob.

        Raises:
            JobAlreadyActiveError: Another job is pending or running.
        """
        job = ImagingJob(
            JobDirection.WRITE_TO_DEVICE, device, str(image_path), on_progress
        )
        logger.info(
            "Write requested: image=%s, device=%s (%s)",
            image_path,
            device.name,
            device.mount_path,
        )
        self._start(job, self._write_flow, on_complete)
        return job

    def begin_read_device_to_image(
        self,
        device: DeviceDescriptor,
        output_path: str | Path,
        on_progress: ProgressCallback | None = None,
        on_complete: Callable[[JobResult], None] | None = None,
    ) -> ImagingJob:
        """Start capturing a device into an image file.

        Args:
            device: Source device.
            output_path: Image file to create.
            on_progress: Called from the worker thread with progress values.
            on_complete: Called from the worker thread with the terminal result.

        Returns:
            The started ImagingJob.

        Raises:
            JobAlreadyActiveError: Another job is pending or running.
        """
        job = ImagingJob(
            JobDirection.READ_FROM_DEVICE, device, str(output_path), on_progress
        )
        logger.info(
            "Read requested: device=%s (%s), output=%s",
            device.name,
            device.mount_path,
            output_path,
        )
        self._start(job, self._read_flow, on_complete)
        return job

    def write_image_to_device(
        self,
        image_path: str | Path,
        device: DeviceDescriptor,
        on_progress: ProgressCallback | None = None,
    ) -> JobResult:
        """Write an image onto a device and wait for the result."""
        job = self.begin_write_image_to_device(image_path, device, on_progress)
        return job.wait()  # type: ignore[return-value]

    def read_device_to_image(
        self,
        device: DeviceDescriptor,
        output_path: str | Path,
        on_progress: ProgressCallback | None = None,
    ) -> JobResult:
        """Capture a device into an image file and wait for the result."""
        job = self.begin_read_device_to_image(device, output_path, on_progress)
        return job.wait()  # type: ignore[return-value]

    def cancel_active_job(self) -> bool:
        """Request cancellation of the active job.

        Returns:
            True if an active job was signalled.
        """
        with self._lock:
            job = self._active_job
        if job is None:
            return False
        return job.cancel()

    def _start(
        self,
        job: ImagingJob,
        flow: Callable[[ImagingJob], int],
        on_complete: Callable[[JobResult], None] | None,
    ) -> None:
        with self._lock:
            if self._active_job is not None:
                logger.warning(
                    "Rejecting job: job %s is still %s",
                    self._active_job.id,
                    self._active_job.status.value,
                )
                raise JobAlreadyActiveError(self._active_job.id)
            self._active_job = job

        try:
            self._persist(job)
        except Exception:
            with self._lock:
                self._active_job = None
            raise

        worker = threading.Thread(
            target=self._run,
            args=(job, flow, on_complete),
            name=f"imaging-{job.id[:8]}",
            daemon=True,
        )
        worker.start()

    def _run(
        self,
        job: ImagingJob,
        flow: Callable[[ImagingJob], int],
        on_complete: Callable[[JobResult], None] | None,
    ) -> None:
        try:
            job._mark_running()
            self._persist(job)
            bytes_copied = flow(job)
            job._mark_succeeded(bytes_copied)
            logger.info(
                "Job %s succeeded: %d bytes %s",
                job.id[:8],
                bytes_copied,
                job.direction.value,
            )
        except ImagingError as e:
            job._mark_failed(e)
            if job.status == JobStatus.CANCELLED:
                logger.info("Job %s cancelled during %s", job.id[:8], job.stage)
            else:
                logger.error(
                    "Job %s failed at %s: %s",
                    job.id[:8],
                    e.stage.value if e.stage else "unknown stage",
                    e.message,
                )
        except Exception as e:
            logger.exception("Job %s failed unexpectedly", job.id[:8])
            job._mark_failed(
                ImagingError(f"Unexpected error: {e}", error_code="UNEXPECTED_ERROR")
            )
        finally:
            try:
                self._persist(job)
            finally:
                with self._lock:
                    if self._active_job is job:
                        self._active_job = None
                try:
                    if on_complete is not None:
                        on_complete(job.result())
                finally:
                    job._done.set()

    def _write_flow(self, job: ImagingJob) -> int:
        device = job.device

        job._enter(JobStage.VALIDATE_SOURCE)
        image = Path(job.image_path)
        if not image.is_file() or not os.access(image, os.R_OK):
            raise SourceNotFoundError(str(image))

        job._enter(JobStage.RESOLVE)
        raw_path = self._resolver.resolve(device)
        job.raw_device_path = raw_path

        job._enter(JobStage.PRIVILEGE_CHECK)
        if not check_raw_device_access(raw_path):
            raise PermissionDeniedError(raw_path, stage=JobStage.PRIVILEGE_CHECK)

        job._enter(JobStage.UNMOUNT)
        if not self._mount_controller.unmount(device):
            raise DeviceUnmountFailedError(device.mount_path)

        job._enter(JobStage.COPY)
        result = self._copier(
            CopyEndpoint.file(image),
            CopyEndpoint.device(raw_path),
            settings=self._settings,
            on_progress=job._on_copy_progress,
            cancel_event=job.cancel_event,
        )
        job.bytes_copied = result.bytes_copied

        # Written data is flushed even if cancellation arrives now
        job.stage = JobStage.SYNC
        logger.info("Job %s: %s", job.id[:8], JobStage.SYNC.value)
        self._syncer(raw_path)

        return result.bytes_copied

    def _read_flow(self, job: ImagingJob) -> int:
        job._enter(JobStage.RESOLVE)
        raw_path = self._resolver.resolve(job.device)
        job.raw_device_path = raw_path

        job._enter(JobStage.PREPARE_OUTPUT)
        output = Path(job.image_path)
        try:
            output.parent.mkdir(parents=True, exist_ok=True)
        except PermissionError as e:
            raise PermissionDeniedError(
                str(output.parent), stage=JobStage.PREPARE_OUTPUT
            ) from e
        except OSError as e:
            raise CopyFailedError(
                f"Could not create output directory {output.parent}: {e}",
                stage=JobStage.PREPARE_OUTPUT,
            ) from e

        job._enter(JobStage.COPY)
        result = self._copier(
            CopyEndpoint.device(raw_path),
            CopyEndpoint.file(output),
            settings=self._settings,
            on_progress=job._on_copy_progress,
            cancel_event=job.cancel_event,
        )
        return result.bytes_copied

    def _persist(self, job: ImagingJob) -> None:
        if self._session_factory is None:
            return

        with get_session(self._session_factory) as session:
            record = session.scalars(
                select(ImagingRecord).where(ImagingRecord.job_id == job.id)
            ).first()
            if record is None:
                record = ImagingRecord(
                    job_id=job.id,
                    direction=job.direction.value,
                    device_identifier=job.device.identifier,
                    device_name=job.device.name,
                    status=JobStatus.PENDING.value,
                    requested_at=to_db_timestamp(job.requested_at),
                )
                session.add(record)

            record.source_path = job.source_path
            record.target_path = job.target_path
            record.raw_device_path = job.raw_device_path
            record.progress = job.progress
            record.bytes_copied = job.bytes_copied

            if job.status == JobStatus.RUNNING:
                record.mark_running(job.started_at)
            elif job.status == JobStatus.SUCCEEDED:
                record.mark_succeeded(job.bytes_copied, job.finished_at)
            elif job.status in (JobStatus.FAILED, JobStatus.CANCELLED):
                error = job.error
                record.mark_failed(
                    error_type=error.error_code if error else None,
                    message=error.message if error else None,
                    stage=error.stage.value if error and error.stage else None,
                    cancelled=job.status == JobStatus.CANCELLED,
                    at=job.finished_at,
                )


def get_job_records(
    session: Session,
    *,
    status: JobStatus | None = None,
    direction: JobDirection | None = None,
    device_identifier: str | None = None,
    limit: int = 100,
) -> list[ImagingRecord]:
    """Query imaging records with optional filters.

    Args:
        session: Database session.
        status: Filter by status.
        direction: Filter by direction.
        device_identifier: Filter by device identifier.
        limit: Maximum number of records to return.

    Returns:
        List of ImagingRecord objects, newest first.
    """
    stmt = select(ImagingRecord)

    if status is not None:
        stmt = stmt.where(ImagingRecord.status == status.value)
    if direction is not None:
        stmt = stmt.where(ImagingRecord.direction == direction.value)
    if device_identifier is not None:
        stmt = stmt.where(ImagingRecord.device_identifier == device_identifier)

    stmt = stmt.order_by(ImagingRecord.requested_at.desc(), ImagingRecord.id.desc())
    stmt = stmt.limit(limit)

    return list(session.scalars(stmt).all())


__all__ = [
    "Copier",
    "ImagingJob",
    "ImagingOrchestrator",
    "JobResult",
    "get_job_records",
]
