"""Database session helper utilities.

Provides a small contextmanager `session_scope(engine)` to centralize
creation/cleanup of `sqlmodel.Session` instances, and `get_db_session` as the
FastAPI dependency form of the same thing.
"""
from contextlib import contextmanager
from typing import Iterator

from fastapi import Request
from sqlmodel import Session
import logging

logger = logging.getLogger(__name__)


@contextmanager
def session_scope(engine) -> Iterator[Session]:
    """Yield a short-lived SQLModel `Session` bound to `engine`.

    Caller is responsible for committing. Uncommitted work is rolled back
    when the block raises; the session is always closed on exit.
    """
    sess = Session(engine)
    logger.debug("Opening DB session %s", sess)
    try:
        yield sess
    except Exception:
        try:
            sess.rollback()
        except Exception as e:
            logger.exception("Failed to roll back DB session: %s", e)
        raise
    finally:
        try:
            sess.close()
            logger.debug("Closed DB session %s", sess)
        except Exception as e:
            logger.exception("Failed to close DB session: %s", e)


def get_db_session(request: Request) -> Iterator[Session]:
    """FastAPI dependency yielding a session on the application's engine."""
    with session_scope(request.app.state.engine) as session:
        yield session
