"""Database-backed document store using SQLModel + AsyncSession."""

from __future__ import annotations

import json
from typing import TYPE_CHECKING, Any

import structlog
from sqlmodel import col, select
from sqlmodel.ext.asyncio.session import AsyncSession

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncEngine

from timeto.exceptions import NotFound
from timeto.models.database import StoredDocument, _utc_now
from timeto.storage.document_store import (
    DocumentSnapshot,
    DocumentStore,
    QueryOp,
    apply_field_updates,
    deep_merge,
    matches,
    new_document_id,
    split_path,
)

logger = structlog.get_logger(__name__)


def _encode(data: dict[str, Any]) -> str:
    return json.dumps(data, default=str, sort_keys=True)


class SqlDocumentStore(DocumentStore):
    """Stores each document as one JSON row keyed by its full path.

    Predicates are evaluated in Python over the rows of one collection, which
    keeps the store portable between PostgreSQL and SQLite.
    """

    def __init__(self, engine: AsyncEngine) -> None:
        self._engine = engine

    def _to_snapshot(self, row: StoredDocument) -> DocumentSnapshot:
        return DocumentSnapshot(id=row.doc_id, path=row.path, data=json.loads(row.data_json))

    async def get(self, path: str) -> DocumentSnapshot | None:
        async with AsyncSession(self._engine) as session:
            row = await session.get(StoredDocument, path)
            if not row:
                return None
            return self._to_snapshot(row)

    async def set(self, path: str, data: dict[str, Any], *, merge: bool = False) -> None:
        collection, doc_id = split_path(path)
        async with AsyncSession(self._engine) as session:
            row = await session.get(StoredDocument, path)
            if row:
                current = json.loads(row.data_json)
                row.data_json = _encode(deep_merge(current, data) if merge else data)
                row.updated_at = _utc_now()
            else:
                row = StoredDocument(
                    path=path, collection=collection, doc_id=doc_id, data_json=_encode(data)
                )
            session.add(row)
            await session.commit()
        logger.debug("document_written", path=path, merge=merge)

    async def update(self, path: str, fields: dict[str, Any]) -> None:
        async with AsyncSession(self._engine) as session:
            row = await session.get(StoredDocument, path)
            if not row:
                raise NotFound("document", path)
            row.data_json = _encode(apply_field_updates(json.loads(row.data_json), fields))
            row.updated_at = _utc_now()
            session.add(row)
            await session.commit()
        logger.debug("document_updated", path=path, fields=sorted(fields))

    async def delete(self, path: str) -> None:
        async with AsyncSession(self._engine) as session:
            row = await session.get(StoredDocument, path)
            if not row:
                return
            await session.delete(row)
            await session.commit()
        logger.debug("document_deleted", path=path)

    async def add(self, collection: str, data: dict[str, Any]) -> str:
        doc_id = new_document_id()
        await self.set(f"{collection.strip('/')}/{doc_id}", data)
        return doc_id

    async def list(self, collection: str) -> list[DocumentSnapshot]:
        async with AsyncSession(self._engine) as session:
            statement = (
                select(StoredDocument)
                .where(col(StoredDocument.collection) == collection.strip("/"))
                .order_by(col(StoredDocument.created_at), col(StoredDocument.path))
            )
            results = await session.execute(statement)
            return [self._to_snapshot(row) for row in results.scalars().all()]

    async def query(
        self, collection: str, field: str, op: QueryOp, value: Any
    ) -> list[DocumentSnapshot]:
        return [doc for doc in await self.list(collection) if matches(doc.data, field, op, value)]
