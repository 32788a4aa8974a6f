"""Database package: SQLModel models, engine, and CRUD helpers.

Key modules:
    - base: ModelBase class for all table models
    - session: Database engine and session management
    - models: ResolutionRecord table and CRUD functions
"""

from .base import ModelBase
from .session import (
    engine,
    get_session,
    create_db_and_tables,
    dispose_engine,
    DATABASE_URL,
)
from .models import (
    ResolutionRecord,
    upsert_resolution,
    get_resolution,
    delete_resolutions,
    prune_expired,
)

__all__ = [
    "ModelBase",
    "engine",
    "get_session",
    "create_db_and_tables",
    "dispose_engine",
    "DATABASE_URL",
    "ResolutionRecord",
    "upsert_resolution",
    "get_resolution",
    "delete_resolutions",
    "prune_expired",
]
