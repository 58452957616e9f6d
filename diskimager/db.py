"""Job history storage for diskimager.

Imaging jobs are recorded through SQLAlchemy, by default in a SQLite file
under ~/.local/share/diskimager. Records are written from each job's
worker thread, so SQLite connections are not pinned to the thread that
opened them.
"""

from collections.abc import Generator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from sqlalchemy import Engine, create_engine
from sqlalchemy.engine import make_url
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from diskimager.config import get_settings


class Base(DeclarativeBase):
    """Declarative base for diskimager tables."""


def _is_sqlite(db_url: str) -> bool:
    return make_url(db_url).get_backend_name() == "sqlite"


def _ensure_sqlite_parent(db_url: str) -> None:
    database = make_url(db_url).database
    if not database or database == ":memory:":
        return
    Path(database).expanduser().parent.mkdir(parents=True, exist_ok=True)


def get_engine(db_url: str | None = None) -> Engine:
    """Create an engine for the job history database.

    For SQLite files the containing directory is created on demand.

    Args:
        db_url: SQLAlchemy URL. Defaults to Settings.db_url.

    Returns:
        SQLAlchemy Engine.
    """
    db_url = db_url or get_settings().db_url

    connect_args: dict[str, Any] = {}
    if _is_sqlite(db_url):
        connect_args["check_same_thread"] = False
        _ensure_sqlite_parent(db_url)

    return create_engine(db_url, connect_args=connect_args)


def get_session_factory(engine: Engine | None = None) -> sessionmaker[Session]:
    """Session factory whose objects stay readable after commit."""
    return sessionmaker(
        bind=engine or get_engine(), autoflush=False, expire_on_commit=False
    )


def create_all_tables(engine: Engine | None = None) -> None:
    """Create any missing tables."""
    # Importing the models registers them on Base.metadata
    from diskimager.imaging import models  # noqa: F401

    Base.metadata.create_all(bind=engine or get_engine())


def drop_all_tables(engine: Engine | None = None) -> None:
    """Drop every table. Only meant for tests."""
    Base.metadata.drop_all(bind=engine or get_engine())


def init_db(db_url: str | None = None) -> sessionmaker[Session]:
    """Prepare the database and return a session factory.

    Called once at startup by the CLI and the HTTP app.

    Args:
        db_url: SQLAlchemy URL. Defaults to Settings.db_url.

    Returns:
        Session factory bound to a database with all tables present.
    """
    engine = get_engine(db_url)
    create_all_tables(engine)
    return get_session_factory(engine)


@contextmanager
def get_session(
    session_factory: sessionmaker[Session] | None = None,
) -> Generator[Session, None, None]:
    """Run a unit of work: commit on success, roll back on error.

    Args:
        session_factory: Factory to open the session with. Defaults to
            one bound to Settings.db_url.

    Yields:
        An open Session.
    """
    factory = session_factory or get_session_factory()
    with factory() as session:
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise


__all__ = [
    "Base",
    "create_all_tables",
    "drop_all_tables",
    "get_engine",
    "get_session",
    "get_session_factory",
    "init_db",
]
