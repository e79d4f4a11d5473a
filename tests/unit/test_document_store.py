"""Unit tests for the in-memory document store and path helpers."""

from __future__ import annotations

import pytest

from timeto.exceptions import NotFound, ValidationError
from timeto.storage.document_store import (
    DELETE_FIELD,
    InMemoryDocumentStore,
    deep_merge,
    get_field,
    split_path,
)


@pytest.mark.unit
class TestHelpers:
    def test_split_path(self) -> None:
        assert split_path("organizations/o1/members/u1") == ("organizations/o1/members", "u1")

    def test_split_path_rejects_collection_path(self) -> None:
        with pytest.raises(ValidationError):
            split_path("organizations/o1/members")

    def test_get_field_dotted(self) -> None:
        assert get_field({"members": {"u1": "owner"}}, "members.u1") == "owner"
        assert get_field({"members": {}}, "members.u1") is None

    def test_deep_merge_keeps_sibling_keys(self) -> None:
        merged = deep_merge(
            {"settings": {"allowPublicEvents": False, "requireMemberApproval": True}},
            {"settings": {"allowPublicEvents": True}},
        )
        assert merged == {"settings": {"allowPublicEvents": True, "requireMemberApproval": True}}

    def test_delete_field_is_a_singleton(self) -> None:
        assert type(DELETE_FIELD)() is DELETE_FIELD


@pytest.mark.unit
class TestInMemoryDocumentStore:
    async def test_get_missing_returns_none(self) -> None:
        assert await InMemoryDocumentStore().get("users/nobody") is None

    async def test_set_and_get(self) -> None:
        store = InMemoryDocumentStore()
        await store.set("users/u1", {"firstName": "Ada"})
        doc = await store.get("users/u1")
        assert doc is not None
        assert doc.id == "u1"
        assert doc.path == "users/u1"
        assert doc.data == {"firstName": "Ada"}

    async def test_returned_data_is_a_copy(self) -> None:
        store = InMemoryDocumentStore()
        await store.set("users/u1", {"organizations": {}})
        doc = await store.get("users/u1")
        assert doc is not None
        doc.data["organizations"]["o1"] = "owner"
        again = await store.get("users/u1")
        assert again is not None
        assert again.data == {"organizations": {}}

    async def test_set_merge_is_deep(self) -> None:
        store = InMemoryDocumentStore()
        await store.set("users/u1", {"firstName": "Ada", "organizations": {"o1": "owner"}})
        await store.set("users/u1", {"organizations": {"o2": "member"}}, merge=True)
        doc = await store.get("users/u1")
        assert doc is not None
        assert doc.data == {
            "firstName": "Ada",
            "organizations": {"o1": "owner", "o2": "member"},
        }

    async def test_set_without_merge_replaces(self) -> None:
        store = InMemoryDocumentStore()
        await store.set("users/u1", {"firstName": "Ada"})
        await store.set("users/u1", {"lastName": "Lovelace"})
        doc = await store.get("users/u1")
        assert doc is not None
        assert doc.data == {"lastName": "Lovelace"}

    async def test_update_dotted_paths_and_delete_field(self) -> None:
        store = InMemoryDocumentStore()
        await store.set("organizations/o1", {"members": {"u1": "owner", "u2": "member"}})
        await store.update(
            "organizations/o1", {"members.u2": DELETE_FIELD, "members.u3": "admin"}
        )
        doc = await store.get("organizations/o1")
        assert doc is not None
        assert doc.data["members"] == {"u1": "owner", "u3": "admin"}

    async def test_update_missing_document_raises(self) -> None:
        with pytest.raises(NotFound):
            await InMemoryDocumentStore().update("users/u1", {"firstName": "Ada"})

    async def test_delete_missing_is_noop(self) -> None:
        await InMemoryDocumentStore().delete("users/u1")

    async def test_add_generates_id(self) -> None:
        store = InMemoryDocumentStore()
        doc_id = await store.add("organizations/o1/leads", {"firstName": "Lee"})
        doc = await store.get(f"organizations/o1/leads/{doc_id}")
        assert doc is not None
        assert doc.data == {"firstName": "Lee"}

    async def test_list_returns_direct_children_only(self) -> None:
        store = InMemoryDocumentStore()
        await store.set("organizations/o1", {"name": "One"})
        await store.set("organizations/o2", {"name": "Two"})
        await store.set("organizations/o1/members/u1", {"role": "owner"})
        docs = await store.list("organizations")
        assert sorted(doc.id for doc in docs) == ["o1", "o2"]

    async def test_query_operators(self) -> None:
        store = InMemoryDocumentStore()
        await store.set("users/u1", {"phoneNumber": "+1555", "referralOrganizations": ["o1"]})
        await store.set("users/u2", {"phoneNumber": "+1666", "referralOrganizations": ["o2"]})
        await store.set("organizations/o1", {"members": {"u1": "owner"}})

        by_phone = await store.query("users", "phoneNumber", "==", "+1555")
        assert [doc.id for doc in by_phone] == ["u1"]

        referred = await store.query("users", "referralOrganizations", "array-contains", "o2")
        assert [doc.id for doc in referred] == ["u2"]

        visible = await store.query("organizations", "members.u1", "in", ["owner", "admin"])
        assert [doc.id for doc in visible] == ["o1"]
        assert await store.query("organizations", "members.u9", "in", ["owner"]) == []
