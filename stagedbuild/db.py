"""Database engine and sessions for the build record store.

Records of dependency caches, application builds, runtime images and
pipeline runs live in one SQLAlchemy database, SQLite by default.
"""

from collections.abc import Generator
from contextlib import contextmanager
from pathlib import Path

from sqlalchemy import Engine, create_engine
from sqlalchemy.engine import make_url
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from stagedbuild.config import get_settings


class Base(DeclarativeBase):
    """Declarative base for the build record models."""


def get_engine(db_url: str | None = None) -> Engine:
    """Create an engine for the record store.

    For a file-backed SQLite URL the parent directory is created first.

    Args:
        db_url: Database URL; taken from settings when omitted.

    Returns:
        SQLAlchemy Engine.
    """
    url = make_url(db_url or get_settings().db_url)

    connect_args: dict[str, object] = {}
    if url.get_backend_name() == "sqlite":
        # Sessions may be used from FastAPI's worker threads
        connect_args["check_same_thread"] = False
        if url.database and url.database != ":memory:":
            Path(url.database).parent.mkdir(parents=True, exist_ok=True)

    return create_engine(url, connect_args=connect_args, echo=False)


def get_session_factory(engine: Engine | None = None) -> sessionmaker[Session]:
    """Return a session factory bound to an engine.

    Objects stay loaded after commit so summaries can be rendered from
    them once the transaction is closed.
    """
    return sessionmaker(
        bind=engine if engine is not None else get_engine(),
        autoflush=False,
        expire_on_commit=False,
    )


@contextmanager
def get_session(
    session_factory: sessionmaker[Session] | None = None,
) -> Generator[Session, None, None]:
    """Open a session that commits on success and rolls back on error."""
    factory = session_factory if session_factory is not None else get_session_factory()
    session = factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def create_all_tables(engine: Engine | None = None) -> None:
    """Create the record tables if they do not exist yet."""
    # Importing the models registers their tables on Base.metadata
    from stagedbuild.builds import models  # noqa: F401

    Base.metadata.create_all(bind=engine if engine is not None else get_engine())


__all__ = [
    "Base",
    "create_all_tables",
    "get_engine",
    "get_session",
    "get_session_factory",
]
