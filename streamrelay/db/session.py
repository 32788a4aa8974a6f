"""Database session management and engine configuration.

The SQLite file lives under DATA_DIR and only stores resolution cache
entries, so the schema is created directly from model metadata at startup.
"""

from typing import Generator

from loguru import logger
from sqlmodel import Session, create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.pool import NullPool

from streamrelay.config import DATA_DIR
from streamrelay.db.base import ModelBase

DATABASE_URL = f"sqlite:///{(DATA_DIR / 'streamrelay_cache.db').as_posix()}"
logger.debug(f"DATABASE_URL: {DATABASE_URL}")

# - check_same_thread=False: sessions are opened from worker threads
# - NullPool: connections are closed when sessions end (important for SQLite)
engine = create_engine(
    DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=NullPool,
    echo=False,
)
logger.debug("SQLModel engine created.")


def create_db_and_tables(bind: Engine | None = None) -> None:
    """Create all tables registered on ModelBase metadata (idempotent)."""
    ModelBase.metadata.create_all(bind or engine)
    logger.debug("Database tables ensured.")


def get_session() -> Generator[Session, None, None]:
    """Dependency for FastAPI endpoints to get a database session."""
    logger.debug("Creating new DB session.")
    with Session(engine) as session:
        yield session


def dispose_engine() -> None:
    """Dispose the global SQLAlchemy engine to close any pooled connections."""
    engine.dispose()
    logger.debug("SQLAlchemy engine disposed.")


__all__ = [
    "engine",
    "get_session",
    "create_db_and_tables",
    "dispose_engine",
    "DATABASE_URL",
]
