"""FastAPI dependencies.

Both the session factory and the imaging orchestrator are created once
by the app lifespan and stored on app.state. Sharing one orchestrator
across requests keeps the one-active-job rule process-wide.
"""

from __future__ import annotations

from collections.abc import Generator
from typing import cast

from fastapi import Depends, Request
from sqlalchemy.orm import Session, sessionmaker

from diskimager.db import get_session
from diskimager.imaging.service import ImagingOrchestrator


def get_session_factory(request: Request) -> sessionmaker[Session]:
    """Session factory stored on app state."""
    return cast("sessionmaker[Session]", request.app.state.session_factory)


def get_orchestrator(request: Request) -> ImagingOrchestrator:
    """Imaging orchestrator stored on app state."""
    return cast(ImagingOrchestrator, request.app.state.orchestrator)


def get_db(
    session_factory: sessionmaker[Session] = Depends(get_session_factory),
) -> Generator[Session, None, None]:
    """Database session for one request.

    The session is committed when the handler returns normally and
    rolled back if it raises.

    Yields:
        Database session.
    """
    with get_session(session_factory) as session:
        yield session
