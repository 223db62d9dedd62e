"""Database engine and helpers.

This module configures the SQLModel/SQLAlchemy engine from
`settings.DATABASE_URL` (a local SQLite file by default) and provides
small helpers used by the application and scripts. Any transactional
relational store SQLAlchemy supports can be used instead; the engines
only rely on unique constraints raising `IntegrityError`.
"""

from sqlmodel import SQLModel, create_engine, Session

from .config import settings
from . import models  # noqa: F401  (registers tables on SQLModel.metadata)

_connect_args = {"check_same_thread": False} if settings.DATABASE_URL.startswith("sqlite") else {}
engine = create_engine(settings.DATABASE_URL, echo=False, connect_args=_connect_args)


def create_db_and_tables(bind=None):
    """Create database tables using SQLModel metadata.

    This function is intended for local development and tests;
    production deployments should rely on a proper migration tool
    (alembic) instead.
    """
    SQLModel.metadata.create_all(bind or engine)


def get_session():
    """Yield a database `Session` for FastAPI dependency injection.

    The generator yields a session and ensures it is closed when the
    request scope finishes.
    """
    with Session(engine) as session:
        yield session
