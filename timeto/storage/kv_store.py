"""Session key-value store: in-memory with a DB-backed variant."""

from __future__ import annotations

import json
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any

import structlog
from sqlmodel.ext.asyncio.session import AsyncSession

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncEngine

from timeto.models.database import SessionValue, _utc_now

logger = structlog.get_logger(__name__)


class KeyValueStore(ABC):
    """Persistent key-value store used for session continuity."""

    @abstractmethod
    async def get(self, key: str) -> Any | None:
        """Return the stored value, or None if the key is absent."""

    @abstractmethod
    async def set(self, key: str, value: Any) -> None:
        """Store a JSON-serializable value."""

    @abstractmethod
    async def delete(self, key: str) -> None:
        """Remove a key. Missing keys are ignored."""


class InMemoryKeyValueStore(KeyValueStore):
    """In-memory fallback for dev/testing without a database."""

    def __init__(self) -> None:
        self._values: dict[str, str] = {}

    async def get(self, key: str) -> Any | None:
        raw = self._values.get(key)
        return None if raw is None else json.loads(raw)

    async def set(self, key: str, value: Any) -> None:
        # Values are stored as JSON; callers always get a copy
        self._values[key] = json.dumps(value, default=str)

    async def delete(self, key: str) -> None:
        self._values.pop(key, None)


class DatabaseKeyValueStore(KeyValueStore):
    """Stores session values in the ``session_values`` table."""

    def __init__(self, engine: AsyncEngine) -> None:
        self._engine = engine

    async def get(self, key: str) -> Any | None:
        async with AsyncSession(self._engine) as session:
            row = await session.get(SessionValue, key)
            return None if row is None else json.loads(row.value_json)

    async def set(self, key: str, value: Any) -> None:
        async with AsyncSession(self._engine) as session:
            row = await session.get(SessionValue, key)
            if row:
                row.value_json = json.dumps(value, default=str)
                row.updated_at = _utc_now()
            else:
                row = SessionValue(key=key, value_json=json.dumps(value, default=str))
            session.add(row)
            await session.commit()
            logger.debug("session_value_saved", key=key)

    async def delete(self, key: str) -> None:
        async with AsyncSession(self._engine) as session:
            row = await session.get(SessionValue, key)
            if row:
                await session.delete(row)
                await session.commit()
