"""Tests for FastAPI web API.

Uses TestClient against an app without lifespan; the orchestrator in
app state is built from fakes and temporary files.
"""

import os
import threading
import time
import uuid
from unittest.mock import MagicMock

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from diskimager import __version__
from diskimager.config import Settings
from diskimager.db import Base
from diskimager.imaging.catalog import DeviceDescriptor
from diskimager.imaging.copier import CopyResult
from diskimager.imaging.errors import JobCancelledError
from diskimager.imaging.service import ImagingOrchestrator
from web.routers import config, devices, health, jobs

DEVICE = DeviceDescriptor("USBSTICK", "USBSTICK", "16.0 GB", "/Volumes/USBSTICK", True)


def create_test_app() -> FastAPI:
    """Create a minimal FastAPI app for testing without lifespan."""
    application = FastAPI(title="Disk Imager API", version=__version__)

    application.include_router(health.router, tags=["health"])
    application.include_router(config.router, prefix="/config", tags=["config"])
    application.include_router(devices.router, prefix="/devices", tags=["devices"])
    application.include_router(jobs.router, prefix="/jobs", tags=["jobs"])

    return application


class GatedCopier:
    """Copier that blocks until released or cancelled."""

    def __init__(self) -> None:
        self.started = threading.Event()
        self.release = threading.Event()

    def __call__(self, source, destination, *, on_progress, cancel_event, **kwargs):
        on_progress(0.5)
        self.started.set()
        while not self.release.is_set():
            if cancel_event.wait(0.01):
                raise JobCancelledError()
        return CopyResult(bytes_copied=100, total_bytes=100)


@pytest.fixture
def copier():
    """A gated copier shared with the orchestrator."""
    gated = GatedCopier()
    yield gated
    gated.release.set()


@pytest.fixture
def client(tmp_path, copier):
    """Create a test client with a fresh SQLite database in tmp_path."""
    db_file = tmp_path / f"test_{uuid.uuid4().hex[:8]}.db"
    engine = create_engine(
        f"sqlite:///{db_file}",
        connect_args={"check_same_thread": False},
        echo=False,
    )
    Base.metadata.create_all(engine)

    raw = tmp_path / "rdisk9"
    raw.write_bytes(b"\0" * 1024)

    catalog = MagicMock()
    catalog.refresh.return_value = (DEVICE,)
    resolver = MagicMock()
    resolver.resolve.return_value = str(raw)
    mount_controller = MagicMock()
    mount_controller.unmount.return_value = True

    app = create_test_app()
    app.state.session_factory = sessionmaker(bind=engine)
    app.state.orchestrator = ImagingOrchestrator(
        settings=Settings(),
        catalog=catalog,
        resolver=resolver,
        mount_controller=mount_controller,
        copier=copier,
        syncer=MagicMock(),
        session_factory=app.state.session_factory,
    )

    with TestClient(app) as test_client:
        yield test_client

    copier.release.set()
    engine.dispose()


@pytest.fixture
def image(tmp_path):
    """A valid ISO image."""
    path = tmp_path / "ubuntu.iso"
    path.write_bytes(os.urandom(2 * 1024 * 1024))
    return path


def _wait_for_idle(client, timeout: float = 5.0) -> None:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if client.get("/jobs/active").status_code == 404:
            return
        time.sleep(0.01)
    raise AssertionError("job did not finish")


class TestHealthEndpoints:
    """Tests for health and root endpoints."""

    def test_health(self, client):
        """Test health endpoint returns OK status."""
        response = client.get("/health")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "ok"
        assert data["version"] == __version__
        assert data["job_active"] is False

    def test_root(self, client):
        """Test root endpoint returns API name and version."""
        response = client.get("/")
        assert response.status_code == 200
        assert response.json()["name"] == "Disk Imager API"


class TestConfigEndpoints:
    """Tests for configuration endpoints."""

    def test_get_config(self, client):
        """Test getting configuration."""
        response = client.get("/config")
        assert response.status_code == 200
        data = response.json()
        assert "copy_backend" in data
        assert "block_size" in data
        assert "allow_last_disk_fallback" in data
        assert "log_level" in data


class TestDeviceEndpoints:
    """Tests for device endpoints."""

    def test_list_devices(self, client):
        """Test listing devices."""
        response = client.get("/devices")
        assert response.status_code == 200
        assert response.json() == [
            {
                "identifier": "USBSTICK",
                "name": "USBSTICK",
                "size": "16.0 GB",
                "mount_path": "/Volumes/USBSTICK",
                "is_removable": True,
            }
        ]

    def test_usage_unknown_device(self, client):
        """Unknown devices should return 404."""
        response = client.get("/devices/NOPE/usage")
        assert response.status_code == 404
        assert response.json()["detail"]["code"] == "device_not_found"


class TestJobEndpoints:
    """Tests for job endpoints."""

    def test_no_active_job(self, client):
        """GET /jobs/active should 404 when idle."""
        response = client.get("/jobs/active")
        assert response.status_code == 404
        assert response.json()["detail"]["code"] == "no_active_job"

    def test_cancel_without_job(self, client):
        """DELETE /jobs/active should 404 when idle."""
        response = client.delete("/jobs/active")
        assert response.status_code == 404

    def test_write_unknown_device(self, client, image):
        """Writing to an unknown device should 404."""
        response = client.post(
            "/jobs/write",
            json={"device_identifier": "NOPE", "image_path": str(image)},
        )
        assert response.status_code == 404
        assert response.json()["detail"]["code"] == "device_not_found"

    def test_write_invalid_image(self, client, tmp_path):
        """Invalid images should be rejected with 400."""
        bad = tmp_path / "bad.txt"
        bad.write_text("nope")
        response = client.post(
            "/jobs/write",
            json={"device_identifier": "USBSTICK", "image_path": str(bad)},
        )
        assert response.status_code == 400
        assert response.json()["detail"]["code"] == "invalid_image"

    def test_write_lifecycle(self, client, copier, image):
        """A write job should run, block a second job, then be recorded."""
        response = client.post(
            "/jobs/write",
            json={"device_identifier": "USBSTICK", "image_path": str(image)},
        )
        assert response.status_code == 202
        job_id = response.json()["job_id"]
        assert copier.started.wait(5)

        active = client.get("/jobs/active")
        assert active.status_code == 200
        assert active.json()["job_id"] == job_id
        assert active.json()["status"] == "running"
        assert active.json()["progress"] == 0.5

        conflict = client.post(
            "/jobs/read",
            json={"device_identifier": "USBSTICK", "output_path": "/tmp/x.iso"},
        )
        assert conflict.status_code == 409
        assert conflict.json()["detail"]["code"] == "job_already_active"

        copier.release.set()
        _wait_for_idle(client)

        records = client.get("/jobs").json()
        assert len(records) == 1
        assert records[0]["job_id"] == job_id
        assert records[0]["status"] == "succeeded"
        assert records[0]["direction"] == "write-to-device"

    def test_cancel_active_job(self, client, copier, tmp_path):
        """DELETE /jobs/active should cancel the running job."""
        response = client.post(
            "/jobs/read",
            json={
                "device_identifier": "USBSTICK",
                "output_path": str(tmp_path / "out" / "capture.iso"),
            },
        )
        assert response.status_code == 202
        assert copier.started.wait(5)

        cancel = client.delete("/jobs/active")
        assert cancel.status_code == 200
        assert cancel.json()["cancel_requested"] is True

        _wait_for_idle(client)
        records = client.get("/jobs", params={"status": "cancelled"}).json()
        assert len(records) == 1
        assert records[0]["error_type"] == "CANCELLED"

    def test_list_invalid_status(self, client):
        """Invalid status filters should be rejected."""
        response = client.get("/jobs", params={"status": "bogus"})
        assert response.status_code == 400
        assert response.json()["detail"]["code"] == "invalid_status"

    def test_list_invalid_direction(self, client):
        """Invalid direction filters should be rejected."""
        response = client.get("/jobs", params={"direction": "sideways"})
        assert response.status_code == 400
        assert response.json()["detail"]["code"] == "invalid_direction"
