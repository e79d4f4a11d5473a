"""Shared test fixtures."""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import create_async_engine

from timeto.config.settings import Settings
from timeto.exceptions import TransientStoreError
from timeto.models.documents import Event, NotificationSettings, Organization, User
from timeto.storage.collections import (
    event_path,
    lead_path,
    member_path,
    organization_path,
    user_path,
)
from timeto.storage.database import init_db
from timeto.storage.document_store import DocumentSnapshot, InMemoryDocumentStore, QueryOp
from timeto.storage.kv_store import InMemoryKeyValueStore
from timeto.tenancy.context import AuthIdentity
from timeto.tenancy.session import TenancySessionManager
from timeto.types import OrgRole, SystemRole
from timeto.web.app import create_app
from timeto.web.dependencies import TenancyServices

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

EVENT_START = datetime(2030, 6, 1, 18, 0, tzinfo=UTC)


@pytest.fixture()
def settings() -> Settings:
    return Settings(
        use_database=False,
        auth_mode="header",
        creation_cooldown_seconds=0.0,
        membership_write_attempts=3,
        membership_retry_delay_ms=1,
        store_timeout_seconds=2.0,
    )


class FaultyStore(InMemoryDocumentStore):
    """In-memory store that can fail or stall round trips for chosen path prefixes."""

    def __init__(self) -> None:
        super().__init__()
        self.failing: set[str] = set()
        self.delays: dict[str, float] = {}

    async def _enter(self, path: str) -> None:
        for prefix, delay in self.delays.items():
            if path.startswith(prefix):
                await asyncio.sleep(delay)
        if any(path.startswith(prefix) for prefix in self.failing):
            msg = f"injected failure: {path}"
            raise TransientStoreError(msg)

    async def get(self, path: str) -> DocumentSnapshot | None:
        await self._enter(path)
        return await super().get(path)

    async def set(self, path: str, data: dict[str, Any], *, merge: bool = False) -> None:
        await self._enter(path)
        await super().set(path, data, merge=merge)

    async def update(self, path: str, fields: dict[str, Any]) -> None:
        await self._enter(path)
        await super().update(path, fields)

    async def delete(self, path: str) -> None:
        await self._enter(path)
        await super().delete(path)

    async def query(
        self, collection: str, field: str, op: QueryOp, value: Any
    ) -> list[DocumentSnapshot]:
        await self._enter(collection)
        return await super().query(collection, field, op, value)


@pytest.fixture()
def store() -> FaultyStore:
    return FaultyStore()


@pytest.fixture()
def kv_store() -> InMemoryKeyValueStore:
    return InMemoryKeyValueStore()


@pytest.fixture()
async def async_engine():
    """In-memory SQLite engine with all tables created."""
    engine = create_async_engine("sqlite+aiosqlite:///:memory:")
    await init_db(engine)
    yield engine
    await engine.dispose()


class Seeder:
    """Writes fixture documents straight into a store, bypassing the services."""

    def __init__(self, store: InMemoryDocumentStore) -> None:
        self.store = store

    async def user(
        self,
        user_id: str,
        *,
        organizations: dict[str, OrgRole] | None = None,
        system_role: SystemRole = SystemRole.USER,
        **fields: Any,
    ) -> User:
        user = User(
            id=user_id,
            system_role=system_role,
            organizations=organizations or {},
            **fields,
        )
        await self.store.set(user_path(user_id), user.to_document())
        return user

    async def organization(
        self,
        org_id: str,
        owner_id: str,
        *,
        name: str | None = None,
        members: dict[str, OrgRole] | None = None,
        **fields: Any,
    ) -> Organization:
        name = name or f"Org {org_id}"
        org = Organization(
            id=org_id,
            name=name,
            name_lower=name.lower(),
            owner_id=owner_id,
            members=members if members is not None else {owner_id: OrgRole.OWNER},
            **fields,
        )
        await self.store.set(organization_path(org_id), org.to_document())
        return org

    async def membership(
        self, org_id: str, owner_id: str, *, members: dict[str, OrgRole] | None = None
    ) -> Organization:
        """Seed an organization with every copy of each role in agreement."""
        roles = {owner_id: OrgRole.OWNER, **(members or {})}
        org = await self.organization(org_id, owner_id, members=roles)
        for user_id, role in roles.items():
            await self.store.set(
                member_path(org_id, user_id),
                {"userId": user_id, "role": role.value, "status": "active"},
            )
            await self.store.set(
                user_path(user_id), {"organizations": {org_id: role.value}}, merge=True
            )
        return org

    async def member_document(self, org_id: str, user_id: str, data: dict[str, Any]) -> None:
        await self.store.set(member_path(org_id, user_id), data)

    async def lead(self, org_id: str, lead_id: str, **data: Any) -> None:
        await self.store.set(lead_path(org_id, lead_id), {"status": "pending", **data})

    async def event(
        self,
        event_id: str,
        org_id: str,
        *,
        reminder_times: list[int] | None = None,
        owner: str = "",
    ) -> Event:
        event = Event(
            id=event_id,
            organization_id=org_id,
            start=EVENT_START,
            title=f"Event {event_id}",
            owner=owner,
            notification_settings=(
                NotificationSettings(enabled=True, reminder_times=reminder_times)
                if reminder_times is not None
                else None
            ),
        )
        await self.store.set(event_path(event_id), event.to_document())
        return event


@pytest.fixture()
def seed(store: InMemoryDocumentStore) -> Seeder:
    return Seeder(store)


@pytest.fixture()
def signed_in(
    store: InMemoryDocumentStore, kv_store: InMemoryKeyValueStore
) -> Callable[[str], Awaitable[TenancySessionManager]]:
    """Factory: a session manager signed in as ``user_id``."""

    async def _sign_in(user_id: str) -> TenancySessionManager:
        manager = TenancySessionManager(store, kv_store)
        await manager.sign_in(AuthIdentity(uid=user_id, email=f"{user_id}@example.com"))
        return manager

    return _sign_in


@pytest.fixture()
def app(settings: Settings, store: InMemoryDocumentStore, kv_store: InMemoryKeyValueStore):
    """A fresh app sharing the test's in-memory stores."""
    return create_app(settings=settings, services=TenancyServices(store, kv_store, settings))


@pytest.fixture()
async def client(app):
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
