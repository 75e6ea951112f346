"""Request-scoped database session for the HTTP API.

Each request gets its own session. It is committed when the handler
returns and rolled back when the handler raises. Handlers that must keep
a record despite raising (a failed pipeline run) commit explicitly before
raising.
"""

from __future__ import annotations

from collections.abc import Generator
from typing import Any

from fastapi import Depends, Request
from sqlalchemy.orm import Session, sessionmaker


def get_session_factory(request: Request) -> sessionmaker[Session]:
    """Return the session factory installed on app state at startup."""
    factory: Any = request.app.state.session_factory
    return factory  # type: ignore[no-any-return]


def get_db(
    session_factory: sessionmaker[Session] = Depends(get_session_factory),
) -> Generator[Session, None, None]:
    """Yield a session for one request.

    Yields:
        Database session, committed on success and rolled back on error.
    """
    session = session_factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
