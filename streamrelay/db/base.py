"""Base SQLModel class and metadata for all database models."""

from sqlmodel import SQLModel
from sqlalchemy.orm import registry as sa_registry

# Use a private registry/base to avoid SQLModel's global default registry
# being reused across test re-imports (which causes SAWarnings about
# duplicate class names). Each import of this module creates a fresh
# registry and metadata.
_registry = sa_registry()


class ModelBase(SQLModel, registry=_registry):  # type: ignore[call-arg]
    """Base class for all database table models."""

    pass


__all__ = ["ModelBase"]
