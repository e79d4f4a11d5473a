"""Abstract hierarchical document store and the in-memory implementation.

Documents live at slash-separated paths (``collection/id[/sub/id...]``).
Only single-document operations are atomic; nothing here offers a
multi-document transaction.
"""

from __future__ import annotations

import copy
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Literal

import structlog

from timeto.exceptions import NotFound, ValidationError

logger = structlog.get_logger(__name__)

QueryOp = Literal["==", "in", "array-contains"]


class _DeleteField:
    """Sentinel value: remove the field in :meth:`DocumentStore.update`."""

    _instance: _DeleteField | None = None

    def __new__(cls) -> _DeleteField:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "DELETE_FIELD"


DELETE_FIELD = _DeleteField()


@dataclass(frozen=True, slots=True)
class DocumentSnapshot:
    """A document read from the store."""

    id: str
    path: str
    data: dict[str, Any]


def split_path(path: str) -> tuple[str, str]:
    """Split a document path into (collection path, document id)."""
    segments = path.strip("/").split("/")
    if len(segments) < 2 or len(segments) % 2:
        msg = f"Not a document path: {path!r}"
        raise ValidationError(msg)
    return "/".join(segments[:-1]), segments[-1]


def get_field(data: dict[str, Any], field: str) -> Any:
    """Read a dotted field path, returning None when any segment is missing."""
    current: Any = data
    for part in field.split("."):
        if not isinstance(current, dict) or part not in current:
            return None
        current = current[part]
    return current


def deep_merge(base: dict[str, Any], patch: dict[str, Any]) -> dict[str, Any]:
    """Return ``base`` with ``patch`` merged in recursively; nested dicts merge, others replace."""
    merged = copy.deepcopy(base)
    for key, value in patch.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def apply_field_updates(data: dict[str, Any], fields: dict[str, Any]) -> dict[str, Any]:
    """Apply dotted-path field updates, honouring :data:`DELETE_FIELD`."""
    updated = copy.deepcopy(data)
    for field, value in fields.items():
        parts = field.split(".")
        target = updated
        for part in parts[:-1]:
            child = target.get(part)
            if not isinstance(child, dict):
                if value is DELETE_FIELD:
                    break
                child = {}
                target[part] = child
            target = child
        else:
            if value is DELETE_FIELD:
                target.pop(parts[-1], None)
            else:
                target[parts[-1]] = copy.deepcopy(value)
    return updated


def matches(data: dict[str, Any], field: str, op: QueryOp, value: Any) -> bool:
    """Evaluate a single query predicate against a document."""
    actual = get_field(data, field)
    if op == "==":
        return bool(actual == value)
    if op == "in":
        return actual is not None and actual in value
    if op == "array-contains":
        return isinstance(actual, list) and value in actual
    msg = f"Unsupported query operator: {op!r}"
    raise ValidationError(msg)


def new_document_id() -> str:
    return uuid.uuid4().hex


class DocumentStore(ABC):
    """Abstract base class for the document store."""

    @abstractmethod
    async def get(self, path: str) -> DocumentSnapshot | None:
        """Read one document. Returns None if it does not exist."""

    @abstractmethod
    async def set(self, path: str, data: dict[str, Any], *, merge: bool = False) -> None:
        """Write a whole document, or deep-merge into it when ``merge`` is set."""

    @abstractmethod
    async def update(self, path: str, fields: dict[str, Any]) -> None:
        """Update dotted field paths of an existing document. Raises NotFound if missing."""

    @abstractmethod
    async def delete(self, path: str) -> None:
        """Delete one document. Deleting a missing document is a no-op."""

    @abstractmethod
    async def add(self, collection: str, data: dict[str, Any]) -> str:
        """Create a document with a generated id and return the id."""

    @abstractmethod
    async def list(self, collection: str) -> list[DocumentSnapshot]:
        """Return every direct child document of a collection."""

    @abstractmethod
    async def query(
        self, collection: str, field: str, op: QueryOp, value: Any
    ) -> list[DocumentSnapshot]:
        """Return the documents of a collection matching one predicate."""


class InMemoryDocumentStore(DocumentStore):
    """In-memory document store. Replaced by the SQL store in production."""

    def __init__(self) -> None:
        self._documents: dict[str, dict[str, Any]] = {}

    async def get(self, path: str) -> DocumentSnapshot | None:
        _, doc_id = split_path(path)
        data = self._documents.get(path)
        if data is None:
            return None
        return DocumentSnapshot(id=doc_id, path=path, data=copy.deepcopy(data))

    async def set(self, path: str, data: dict[str, Any], *, merge: bool = False) -> None:
        split_path(path)
        existing = self._documents.get(path)
        if merge and existing is not None:
            self._documents[path] = deep_merge(existing, data)
        else:
            self._documents[path] = copy.deepcopy(data)

    async def update(self, path: str, fields: dict[str, Any]) -> None:
        existing = self._documents.get(path)
        if existing is None:
            raise NotFound("document", path)
        self._documents[path] = apply_field_updates(existing, fields)

    async def delete(self, path: str) -> None:
        split_path(path)
        self._documents.pop(path, None)

    async def add(self, collection: str, data: dict[str, Any]) -> str:
        doc_id = new_document_id()
        await self.set(f"{collection}/{doc_id}", data)
        return doc_id

    async def list(self, collection: str) -> list[DocumentSnapshot]:
        prefix = f"{collection.strip('/')}/"
        return [
            DocumentSnapshot(id=path[len(prefix) :], path=path, data=copy.deepcopy(data))
            for path, data in self._documents.items()
            if path.startswith(prefix) and "/" not in path[len(prefix) :]
        ]

    async def query(
        self, collection: str, field: str, op: QueryOp, value: Any
    ) -> list[DocumentSnapshot]:
        return [doc for doc in await self.list(collection) if matches(doc.data, field, op, value)]
