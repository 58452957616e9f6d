"""Imaging job endpoints.

- POST /jobs/write - Start writing an image onto a device
- POST /jobs/read - Start capturing a device into an image file
- GET /jobs/active - State of the active job
- DELETE /jobs/active - Cancel the active job
- GET /jobs - List imaging records

Jobs run in the background; clients poll GET /jobs/active for progress.
"""

from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi import status as http_status
from pydantic import BaseModel
from sqlalchemy.orm import Session

from diskimager.config import get_settings
from diskimager.imaging.errors import JobAlreadyActiveError
from diskimager.imaging.image import validate_iso
from diskimager.imaging.models import ImagingRecord
from diskimager.imaging.service import ImagingJob, ImagingOrchestrator, get_job_records
from diskimager.types import JobDirection, JobStatus
from web.deps import get_db, get_orchestrator
from web.routers.devices import find_device_or_404

router = APIRouter()


class WriteJobRequest(BaseModel):
    """Request body for a write job."""

    device_identifier: str
    image_path: str
    skip_validation: bool = False


class ReadJobRequest(BaseModel):
    """Request body for a read job."""

    device_identifier: str
    output_path: str


def _job_to_dict(job: ImagingJob) -> dict[str, Any]:
    error = job.error
    return {
        "job_id": job.id,
        "direction": job.direction.value,
        "device_identifier": job.device.identifier,
        "source_path": job.source_path,
        "target_path": job.target_path,
        "raw_device_path": job.raw_device_path,
        "status": job.status.value,
        "stage": job.stage.value if job.stage else None,
        "progress": job.progress,
        "bytes_copied": job.bytes_copied,
        "started_at": job.started_at.isoformat() if job.started_at else None,
        "finished_at": job.finished_at.isoformat() if job.finished_at else None,
        "error_code": error.error_code if error else None,
        "error_message": error.message if error else None,
    }


def _record_to_dict(record: ImagingRecord) -> dict[str, Any]:
    return {
        "id": record.id,
        "job_id": record.job_id,
        "direction": record.direction,
        "source_path": record.source_path,
        "target_path": record.target_path,
        "device_identifier": record.device_identifier,
        "device_name": record.device_name,
        "raw_device_path": record.raw_device_path,
        "status": record.status,
        "progress": record.progress,
        "bytes_copied": record.bytes_copied,
        "requested_at": record.requested_at.isoformat()
        if record.requested_at
        else None,
        "started_at": record.started_at.isoformat() if record.started_at else None,
        "finished_at": record.finished_at.isoformat() if record.finished_at else None,
        "error_type": record.error_type,
        "error_stage": record.error_stage,
        "error_message": record.error_message,
    }


def _conflict(e: JobAlreadyActiveError) -> HTTPException:
    return HTTPException(
        status_code=http_status.HTTP_409_CONFLICT,
        detail={"code": "job_already_active", "message": e.message},
    )


@router.post("/write", status_code=http_status.HTTP_202_ACCEPTED)
def start_write_job(
    request: WriteJobRequest,
    orchestrator: ImagingOrchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    """Start writing an image onto a removable device.

    Raises:
        HTTPException: 400 for an invalid image, 404 for an unknown
            device, 409 if a job is already active.
    """
    settings = get_settings()
    if not request.skip_validation and not validate_iso(
        request.image_path, settings.min_image_bytes
    ):
        raise HTTPException(
            status_code=http_status.HTTP_400_BAD_REQUEST,
            detail={
                "code": "invalid_image",
                "message": f"Invalid ISO file: {request.image_path}",
            },
        )

    device = find_device_or_404(orchestrator, request.device_identifier)
    try:
        job = orchestrator.begin_write_image_to_device(request.image_path, device)
    except JobAlreadyActiveError as e:
        raise _conflict(e) from e
    return _job_to_dict(job)


@router.post("/read", status_code=http_status.HTTP_202_ACCEPTED)
def start_read_job(
    request: ReadJobRequest,
    orchestrator: ImagingOrchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    """Start capturing a removable device into an image file.

    Raises:
        HTTPException: 404 for an unknown device, 409 if a job is
            already active.
    """
    device = find_device_or_404(orchestrator, request.device_identifier)
    try:
        job = orchestrator.begin_read_device_to_image(device, request.output_path)
    except JobAlreadyActiveError as e:
        raise _conflict(e) from e
    return _job_to_dict(job)


@router.get("/active")
def get_active_job(
    orchestrator: ImagingOrchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    """Get the state of the active job.

    Raises:
        HTTPException: 404 if no job is active.
    """
    job = orchestrator.active_job
    if job is None:
        raise HTTPException(
            status_code=http_status.HTTP_404_NOT_FOUND,
            detail={"code": "no_active_job", "message": "No imaging job is active"},
        )
    return _job_to_dict(job)


@router.delete("/active")
def cancel_active_job(
    orchestrator: ImagingOrchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    """Request cancellation of the active job.

    The job stops at its next block boundary; poll GET /jobs/active or
    GET /jobs for the terminal state.

    Raises:
        HTTPException: 404 if no job is active.
    """
    job = orchestrator.active_job
    if job is None or not orchestrator.cancel_active_job():
        raise HTTPException(
            status_code=http_status.HTTP_404_NOT_FOUND,
            detail={"code": "no_active_job", "message": "No imaging job is active"},
        )
    return {"job_id": job.id, "cancel_requested": True}


@router.get("")
def list_job_records(
    status: str | None = Query(None, description="Filter by status"),
    direction: str | None = Query(None, description="Filter by direction"),
    device: str | None = Query(None, description="Filter by device identifier"),
    limit: int = Query(100, ge=1, le=1000, description="Maximum results"),
    db: Session = Depends(get_db),
) -> list[dict[str, Any]]:
    """List imaging records, newest first.

    Raises:
        HTTPException: If a filter value is invalid.
    """
    status_filter: JobStatus | None = None
    if status:
        try:
            status_filter = JobStatus(status)
        except ValueError:
            raise HTTPException(
                status_code=http_status.HTTP_400_BAD_REQUEST,
                detail={
                    "code": "invalid_status",
                    "message": f"Invalid status: {status}. Valid values: "
                    "pending, running, succeeded, failed, cancelled",
                },
            ) from None

    direction_filter: JobDirection | None = None
    if direction:
        try:
            direction_filter = JobDirection(direction)
        except ValueError:
            raise HTTPException(
                status_code=http_status.HTTP_400_BAD_REQUEST,
                detail={
                    "code": "invalid_direction",
                    "message": f"Invalid direction: {direction}. Valid values: "
                    "write-to-device, read-from-device",
                },
            ) from None

    records = get_job_records(
        db,
        status=status_filter,
        direction=direction_filter,
        device_identifier=device,
        limit=limit,
    )
    return [_record_to_dict(r) for r in records]
