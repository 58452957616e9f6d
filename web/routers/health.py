"""Liveness endpoints."""

from typing import Any

from fastapi import APIRouter, Depends

from diskimager import __version__
from diskimager.imaging.service import ImagingOrchestrator
from web.deps import get_orchestrator

API_NAME = "Disk Imager API"

router = APIRouter()


@router.get("/health")
def health(
    orchestrator: ImagingOrchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    """Report liveness, version and whether an imaging job is running."""
    return {
        "status": "ok",
        "version": __version__,
        "job_active": orchestrator.active_job is not None,
    }


@router.get("/")
def root() -> dict[str, str]:
    """API name and version."""
    return {"name": API_NAME, "version": __version__}
