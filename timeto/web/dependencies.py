"""FastAPI dependency injection and shared per-app state."""

from __future__ import annotations

import time
from typing import TYPE_CHECKING

import structlog
from fastapi import Depends, Request

from timeto.config.settings import SINGLE_TENANT_USER_ID
from timeto.events.service import EventService
from timeto.exceptions import AuthenticationRequired
from timeto.membership.directory import MembershipDirectory
from timeto.notifications.scheduler import NotificationScheduler
from timeto.tenancy.context import AuthIdentity
from timeto.tenancy.organizations import OrganizationLifecycle
from timeto.tenancy.session import TenancySessionManager
from timeto.types import SessionState

if TYPE_CHECKING:
    from timeto.config.settings import Settings
    from timeto.storage.document_store import DocumentStore
    from timeto.storage.kv_store import KeyValueStore

logger = structlog.get_logger(__name__)


class TenancyServices:
    """Stores and per-user tenancy sessions shared by every request of one app.

    Sessions are kept in least-recently-used order. Idle ones expire after
    ``session_idle_seconds`` and the oldest is dropped once
    ``session_cache_size`` is reached. A user whose roles were changed by
    someone else is marked stale and signed in again on their next request.
    """

    def __init__(self, store: DocumentStore, kv_store: KeyValueStore, settings: Settings) -> None:
        self.store = store
        self.kv_store = kv_store
        self.settings = settings
        self.scheduler = NotificationScheduler(store)
        self._sessions: dict[str, TenancySessionManager] = {}
        self._last_seen: dict[str, float] = {}
        self._stale: set[str] = set()

    def _touch(self, user_id: str) -> None:
        self._last_seen.pop(user_id, None)
        self._last_seen[user_id] = time.time()

    def _forget(self, user_id: str, reason: str) -> None:
        self._sessions.pop(user_id, None)
        self._last_seen.pop(user_id, None)
        self._stale.discard(user_id)
        logger.debug("session_evicted", user_id=user_id, reason=reason)

    def _cleanup(self) -> None:
        cutoff = time.time() - self.settings.session_idle_seconds
        expired = [uid for uid, seen in self._last_seen.items() if seen < cutoff]
        for user_id in expired:
            self._forget(user_id, "idle")

    def invalidate(self, user_id: str) -> None:
        """Mark a cached session stale after its roles changed elsewhere."""
        if user_id in self._sessions:
            self._stale.add(user_id)
            logger.info("session_invalidated", user_id=user_id)

    async def session_for(self, identity: AuthIdentity) -> TenancySessionManager:
        """Return the user's session, signing in on first use or when stale."""
        self._cleanup()
        manager = self._sessions.get(identity.uid)
        if manager is None:
            while self._last_seen and len(self._sessions) >= self.settings.session_cache_size:
                self._forget(next(iter(self._last_seen)), "capacity")
            manager = TenancySessionManager(self.store, self.kv_store)
            self._sessions[identity.uid] = manager
            self._touch(identity.uid)
            await manager.sign_in(identity)
        elif identity.uid in self._stale:
            self._stale.discard(identity.uid)
            await manager.sign_in(identity)
        elif manager.state in (SessionState.UNINITIALIZED, SessionState.ERROR):
            if manager.session.identity is None:
                await manager.sign_in(identity)
            else:
                await manager.reload()
        self._touch(identity.uid)
        return manager

    async def sign_out(self, user_id: str) -> None:
        manager = self._sessions.pop(user_id, None)
        self._last_seen.pop(user_id, None)
        self._stale.discard(user_id)
        if manager is not None:
            await manager.sign_out()

    def organizations(self, manager: TenancySessionManager) -> OrganizationLifecycle:
        return OrganizationLifecycle(
            self.store,
            manager,
            self.settings.creation_cooldown_seconds,
            on_roles_changed=self.invalidate,
        )

    def membership(self, manager: TenancySessionManager) -> MembershipDirectory:
        return MembershipDirectory(
            self.store,
            manager,
            write_attempts=self.settings.membership_write_attempts,
            retry_delay_ms=self.settings.membership_retry_delay_ms,
            on_roles_changed=self.invalidate,
        )

    def events(self, manager: TenancySessionManager) -> EventService:
        return EventService(self.store, manager, self.scheduler)


def get_services(request: Request) -> TenancyServices:
    return request.app.state.services


def get_identity(
    request: Request, services: TenancyServices = Depends(get_services)
) -> AuthIdentity:
    """Resolve the caller.

    In single mode every request acts as the local user. In header mode a
    trusted gateway supplies ``X-User-Id`` (and optionally ``X-User-Email``
    and ``X-User-Name``).
    """
    if services.settings.auth_mode == "single":
        return AuthIdentity(
            uid=SINGLE_TENANT_USER_ID, email="admin@localhost", display_name="Local Admin"
        )
    uid = request.headers.get("x-user-id", "").strip()
    if not uid or "/" in uid:
        msg = "Missing X-User-Id header"
        raise AuthenticationRequired(msg)
    structlog.contextvars.bind_contextvars(user_id=uid)
    return AuthIdentity(
        uid=uid,
        email=request.headers.get("x-user-email", ""),
        display_name=request.headers.get("x-user-name", ""),
    )


async def get_session_manager(
    identity: AuthIdentity = Depends(get_identity),
    services: TenancyServices = Depends(get_services),
) -> TenancySessionManager:
    return await services.session_for(identity)


def get_lifecycle(
    manager: TenancySessionManager = Depends(get_session_manager),
    services: TenancyServices = Depends(get_services),
) -> OrganizationLifecycle:
    return services.organizations(manager)


def get_directory(
    manager: TenancySessionManager = Depends(get_session_manager),
    services: TenancyServices = Depends(get_services),
) -> MembershipDirectory:
    return services.membership(manager)


def get_event_service(
    manager: TenancySessionManager = Depends(get_session_manager),
    services: TenancyServices = Depends(get_services),
) -> EventService:
    return services.events(manager)
