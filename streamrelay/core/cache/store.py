from __future__ import annotations

from typing import Optional, Protocol

from loguru import logger
from sqlalchemy.engine import Engine
from sqlmodel import Session

from streamrelay.domain.models import CacheEntry, ContentKey


class ResolutionStore(Protocol):
    """Blocking persistence backend; ResolutionCache calls it from a worker thread."""

    def prepare(self) -> None: ...

    def load(self, key: ContentKey, provider: str) -> Optional[CacheEntry]: ...

    def save(self, entry: CacheEntry) -> None: ...

    def delete(self, key: ContentKey, provider: Optional[str]) -> int: ...

    def prune(self, now: float) -> int: ...


class SqlResolutionStore:
    """ResolutionStore backed by the SQLModel `ResolutionRecord` table."""

    def __init__(self, engine: Engine | None = None) -> None:
        if engine is None:
            from streamrelay.db.session import engine as default_engine

            engine = default_engine
        self._engine = engine

    def prepare(self) -> None:
        from streamrelay.db.session import create_db_and_tables

        create_db_and_tables(self._engine)

    def load(self, key: ContentKey, provider: str) -> Optional[CacheEntry]:
        from streamrelay.db.models import get_resolution

        with Session(self._engine) as session:
            rec = get_resolution(session, key, provider)
            if rec is None:
                return None
            try:
                return rec.to_entry()
            except ValueError as exc:
                logger.warning(
                    "Dropping unreadable resolution record {} provider={}: {}",
                    key.cache_key(),
                    provider,
                    exc,
                )
                return None

    def save(self, entry: CacheEntry) -> None:
        from streamrelay.db.models import upsert_resolution

        with Session(self._engine) as session:
            upsert_resolution(session, entry)

    def delete(self, key: ContentKey, provider: Optional[str]) -> int:
        from streamrelay.db.models import delete_resolutions

        with Session(self._engine) as session:
            return delete_resolutions(session, key, provider)

    def prune(self, now: float) -> int:
        from streamrelay.db.models import prune_expired

        with Session(self._engine) as session:
            return prune_expired(session, now)
