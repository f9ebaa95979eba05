"""Data-access layer — SQL-backed key-value store over SQLAlchemy."""

from __future__ import annotations

import json
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from typing import Any, AsyncIterator

import structlog
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from behavioral_stress.storage.base import KeyValueStore, StorageUnavailableError
from behavioral_stress.storage.database import KeyValueRow, dispose_engine, get_session_factory

logger = structlog.get_logger(__name__)


class BaseRepository:
    """Shared base with session management for all repositories."""

    def __init__(
        self,
        session: AsyncSession | None = None,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
    ) -> None:
        self._external_session = session
        self._session_factory = session_factory

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[AsyncSession]:
        if self._external_session is not None:
            yield self._external_session
            return
        factory = self._session_factory or get_session_factory()
        async with factory() as session:
            yield session


class SQLKeyValueStore(BaseRepository, KeyValueStore):
    """:class:`KeyValueStore` persisting JSON payloads in ``kv_entries``.

    Database errors surface as :class:`StorageUnavailableError`.
    """

    async def get(self, key: str) -> Any | None:
        try:
            async with self._session() as session:
                row = await session.get(KeyValueRow, key)
                if row is None:
                    return None
                return json.loads(row.value_json)
        except (SQLAlchemyError, OSError) as exc:
            logger.warning("kv_store.get_failed", key=key, error=str(exc))
            raise StorageUnavailableError(f"could not read {key!r}") from exc

    async def set(self, key: str, value: Any) -> bool:
        try:
            payload = json.dumps(value)
        except (TypeError, ValueError) as exc:
            raise StorageUnavailableError(f"value for {key!r} is not JSON-serialisable") from exc
        try:
            async with self._session() as session:
                existing = await session.get(KeyValueRow, key)
                if existing is not None:
                    existing.value_json = payload
                    existing.updated_at = datetime.now(UTC)
                else:
                    session.add(KeyValueRow(key=key, value_json=payload))
                await session.commit()
        except (SQLAlchemyError, OSError) as exc:
            logger.warning("kv_store.set_failed", key=key, error=str(exc))
            raise StorageUnavailableError(f"could not write {key!r}") from exc
        return True

    async def remove(self, key: str) -> bool:
        try:
            async with self._session() as session:
                row = await session.get(KeyValueRow, key)
                if row is None:
                    return False
                await session.delete(row)
                await session.commit()
        except (SQLAlchemyError, OSError) as exc:
            logger.warning("kv_store.remove_failed", key=key, error=str(exc))
            raise StorageUnavailableError(f"could not remove {key!r}") from exc
        return True

    async def close(self) -> None:
        if self._external_session is None and self._session_factory is None:
            await dispose_engine()

    async def keys(self, prefix: str = "") -> list[str]:
        try:
            async with self._session() as session:
                stmt = select(KeyValueRow.key).order_by(KeyValueRow.key)
                if prefix:
                    stmt = stmt.where(KeyValueRow.key.startswith(prefix))
                result = await session.execute(stmt)
                return list(result.scalars().all())
        except (SQLAlchemyError, OSError) as exc:
            raise StorageUnavailableError("could not list keys") from exc
