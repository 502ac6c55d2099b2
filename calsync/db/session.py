"""
Database session management utilities.

Request-scoped and background-task sessions share one SessionLocal factory.
"""

from contextlib import contextmanager
from typing import Generator, Iterator

from sqlalchemy.orm import Session

from calsync.db.base import SessionLocal


def get_db() -> Generator:
    """
    Get a database session.

    Yields:
        SQLAlchemy database session
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def session_scope() -> Iterator[Session]:
    """Session for work that runs outside a request (timers, background tasks)."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
