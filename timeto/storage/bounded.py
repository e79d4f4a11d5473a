"""Timeout-bounded store wrappers and the store factories.

Every round trip runs under ``asyncio.wait_for``; timeouts and driver
failures surface as :class:`~timeto.exceptions.TransientStoreError`.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Any, TypeVar

import structlog
from sqlalchemy.exc import SQLAlchemyError

from timeto.exceptions import TransientStoreError
from timeto.storage.document_store import DocumentSnapshot, DocumentStore, QueryOp
from timeto.storage.kv_store import KeyValueStore

if TYPE_CHECKING:
    from collections.abc import Awaitable

    from timeto.config.settings import Settings

logger = structlog.get_logger(__name__)

T = TypeVar("T")


async def bounded(awaitable: Awaitable[T], *, timeout: float, operation: str, target: str) -> T:
    """Await a store call with a deadline, translating I/O failures."""
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout)
    except TimeoutError as exc:
        logger.warning("store_timeout", operation=operation, target=target, timeout=timeout)
        msg = f"Store {operation} timed out after {timeout}s: {target}"
        raise TransientStoreError(msg) from exc
    except (OSError, SQLAlchemyError) as exc:
        logger.warning("store_io_failed", operation=operation, target=target, error=str(exc))
        msg = f"Store {operation} failed: {target}"
        raise TransientStoreError(msg) from exc


class BoundedDocumentStore(DocumentStore):
    """Wraps another DocumentStore and bounds every call with a timeout."""

    def __init__(self, inner: DocumentStore, timeout_seconds: float) -> None:
        self._inner = inner
        self._timeout = timeout_seconds

    async def get(self, path: str) -> DocumentSnapshot | None:
        return await bounded(
            self._inner.get(path), timeout=self._timeout, operation="get", target=path
        )

    async def set(self, path: str, data: dict[str, Any], *, merge: bool = False) -> None:
        await bounded(
            self._inner.set(path, data, merge=merge),
            timeout=self._timeout,
            operation="set",
            target=path,
        )

    async def update(self, path: str, fields: dict[str, Any]) -> None:
        await bounded(
            self._inner.update(path, fields), timeout=self._timeout, operation="update", target=path
        )

    async def delete(self, path: str) -> None:
        await bounded(
            self._inner.delete(path), timeout=self._timeout, operation="delete", target=path
        )

    async def add(self, collection: str, data: dict[str, Any]) -> str:
        return await bounded(
            self._inner.add(collection, data),
            timeout=self._timeout,
            operation="add",
            target=collection,
        )

    async def list(self, collection: str) -> list[DocumentSnapshot]:
        return await bounded(
            self._inner.list(collection), timeout=self._timeout, operation="list", target=collection
        )

    async def query(
        self, collection: str, field: str, op: QueryOp, value: Any
    ) -> list[DocumentSnapshot]:
        return await bounded(
            self._inner.query(collection, field, op, value),
            timeout=self._timeout,
            operation="query",
            target=f"{collection}[{field} {op}]",
        )


class BoundedKeyValueStore(KeyValueStore):
    """Wraps another KeyValueStore and bounds every call with a timeout."""

    def __init__(self, inner: KeyValueStore, timeout_seconds: float) -> None:
        self._inner = inner
        self._timeout = timeout_seconds

    async def get(self, key: str) -> Any | None:
        return await bounded(
            self._inner.get(key), timeout=self._timeout, operation="kv_get", target=key
        )

    async def set(self, key: str, value: Any) -> None:
        await bounded(
            self._inner.set(key, value), timeout=self._timeout, operation="kv_set", target=key
        )

    async def delete(self, key: str) -> None:
        await bounded(
            self._inner.delete(key), timeout=self._timeout, operation="kv_delete", target=key
        )


def create_document_store(settings: Settings | None = None) -> DocumentStore:
    """Factory: create the appropriate DocumentStore based on settings."""
    from timeto.config.settings import get_settings

    settings = settings or get_settings()
    if settings.use_database:
        from timeto.storage.database import get_engine
        from timeto.storage.sql_store import SqlDocumentStore

        inner: DocumentStore = SqlDocumentStore(get_engine())
    else:
        from timeto.storage.document_store import InMemoryDocumentStore

        inner = InMemoryDocumentStore()
    return BoundedDocumentStore(inner, settings.store_timeout_seconds)


def create_kv_store(settings: Settings | None = None) -> KeyValueStore:
    """Factory: create the appropriate KeyValueStore based on settings."""
    from timeto.config.settings import get_settings

    settings = settings or get_settings()
    if settings.use_database:
        from timeto.storage.database import get_engine
        from timeto.storage.kv_store import DatabaseKeyValueStore

        inner: KeyValueStore = DatabaseKeyValueStore(get_engine())
    else:
        from timeto.storage.kv_store import InMemoryKeyValueStore

        inner = InMemoryKeyValueStore()
    return BoundedKeyValueStore(inner, settings.store_timeout_seconds)
