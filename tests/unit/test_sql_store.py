"""Unit tests for the SQL-backed stores (SQLite in memory)."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest

from timeto.exceptions import NotFound
from timeto.storage.document_store import DELETE_FIELD
from timeto.storage.kv_store import DatabaseKeyValueStore
from timeto.storage.sql_store import SqlDocumentStore

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncEngine


@pytest.mark.unit
class TestSqlDocumentStore:
    async def test_set_get_roundtrip(self, async_engine: AsyncEngine) -> None:
        store = SqlDocumentStore(async_engine)
        await store.set("organizations/o1", {"name": "One", "members": {"u1": "owner"}})
        doc = await store.get("organizations/o1")
        assert doc is not None
        assert doc.id == "o1"
        assert doc.data["members"] == {"u1": "owner"}

    async def test_get_missing(self, async_engine: AsyncEngine) -> None:
        assert await SqlDocumentStore(async_engine).get("users/none") is None

    async def test_merge_and_update(self, async_engine: AsyncEngine) -> None:
        store = SqlDocumentStore(async_engine)
        await store.set("users/u1", {"firstName": "Ada", "organizations": {"o1": "owner"}})
        await store.set("users/u1", {"organizations": {"o2": "admin"}}, merge=True)
        await store.update("users/u1", {"organizations.o1": DELETE_FIELD})
        doc = await store.get("users/u1")
        assert doc is not None
        assert doc.data == {"firstName": "Ada", "organizations": {"o2": "admin"}}

    async def test_update_missing_raises(self, async_engine: AsyncEngine) -> None:
        with pytest.raises(NotFound):
            await SqlDocumentStore(async_engine).update("users/u1", {"firstName": "Ada"})

    async def test_list_and_query_scope_to_collection(self, async_engine: AsyncEngine) -> None:
        store = SqlDocumentStore(async_engine)
        await store.set("organizations/o1", {"members": {"u1": "owner"}})
        await store.set("organizations/o2", {"members": {"u2": "owner"}})
        await store.set("organizations/o1/members/u1", {"role": "owner"})

        docs = await store.list("organizations")
        assert sorted(doc.id for doc in docs) == ["o1", "o2"]

        visible = await store.query("organizations", "members.u2", "in", ["owner"])
        assert [doc.id for doc in visible] == ["o2"]

        members = await store.list("organizations/o1/members")
        assert [doc.id for doc in members] == ["u1"]

    async def test_add_and_delete(self, async_engine: AsyncEngine) -> None:
        store = SqlDocumentStore(async_engine)
        doc_id = await store.add("scheduledNotifications", {"eventId": "e1"})
        assert await store.get(f"scheduledNotifications/{doc_id}") is not None
        await store.delete(f"scheduledNotifications/{doc_id}")
        assert await store.get(f"scheduledNotifications/{doc_id}") is None
        await store.delete(f"scheduledNotifications/{doc_id}")


@pytest.mark.unit
class TestDatabaseKeyValueStore:
    async def test_set_get_delete(self, async_engine: AsyncEngine) -> None:
        kv = DatabaseKeyValueStore(async_engine)
        assert await kv.get("lastOrg_u1") is None
        await kv.set("lastOrg_u1", "o1")
        await kv.set("currentOrg_u1", {"id": "o1", "name": "One"})
        assert await kv.get("lastOrg_u1") == "o1"
        assert await kv.get("currentOrg_u1") == {"id": "o1", "name": "One"}

        await kv.set("lastOrg_u1", "o2")
        assert await kv.get("lastOrg_u1") == "o2"

        await kv.delete("lastOrg_u1")
        assert await kv.get("lastOrg_u1") is None
        await kv.delete("lastOrg_u1")
