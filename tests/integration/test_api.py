"""End-to-end HTTP tests against the app with in-memory stores."""

import pytest
from httpx import ASGITransport, AsyncClient

from timeto.config.settings import SINGLE_TENANT_USER_ID
from timeto.tenancy.context import AuthIdentity
from timeto.types import OrgRole
from timeto.web.app import create_app
from timeto.web.dependencies import TenancyServices


def as_user(user_id: str) -> dict[str, str]:
    return {"X-User-Id": user_id, "X-User-Email": f"{user_id}@example.com"}


@pytest.mark.integration
class TestHealth:
    async def test_healthy(self, client) -> None:
        resp = await client.get("/api/health")
        assert resp.status_code == 200
        data = resp.json()
        assert data["status"] == "healthy"
        assert data["store"] == "memory"
        assert "x-request-id" in resp.headers

    async def test_request_id_is_echoed(self, client) -> None:
        resp = await client.get("/api/health", headers={"X-Request-ID": "abc123"})
        assert resp.headers["x-request-id"] == "abc123"

    async def test_degraded_when_store_fails(self, client, store) -> None:
        store.failing.add("users/")
        resp = await client.get("/api/health")
        assert resp.status_code == 200
        assert resp.json()["status"] == "degraded"


@pytest.mark.integration
class TestAuthentication:
    async def test_missing_user_header(self, client) -> None:
        resp = await client.get("/api/session")
        assert resp.status_code == 401
        assert resp.json()["category"] == "not_allowed"

    async def test_single_mode_uses_local_user(self, settings, store, kv_store) -> None:
        single = settings.model_copy(update={"auth_mode": "single"})
        app = create_app(settings=single, services=TenancyServices(store, kv_store, single))
        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://test") as client:
            resp = await client.get("/api/session")
        assert resp.status_code == 200
        assert resp.json()["user_id"] == SINGLE_TENANT_USER_ID

    async def test_sign_out(self, client) -> None:
        await client.get("/api/session", headers=as_user("u1"))
        resp = await client.post("/api/session/sign-out", headers=as_user("u1"))
        assert resp.status_code == 204


@pytest.mark.integration
class TestSessionCache:
    async def test_oldest_session_dropped_at_capacity(self, settings, store, kv_store) -> None:
        small = settings.model_copy(update={"session_cache_size": 1})
        services = TenancyServices(store, kv_store, small)
        first = await services.session_for(AuthIdentity(uid="u1"))
        assert await services.session_for(AuthIdentity(uid="u1")) is first

        await services.session_for(AuthIdentity(uid="u2"))
        again = await services.session_for(AuthIdentity(uid="u1"))
        assert again is not first
        assert again.session.identity.uid == "u1"

    async def test_idle_session_expires(self, settings, store, kv_store, monkeypatch) -> None:
        clock = [1000.0]
        monkeypatch.setattr("timeto.web.dependencies.time.time", lambda: clock[0])
        idle = settings.model_copy(update={"session_idle_seconds": 60.0})
        services = TenancyServices(store, kv_store, idle)
        first = await services.session_for(AuthIdentity(uid="u1"))

        clock[0] += 30
        assert await services.session_for(AuthIdentity(uid="u1")) is first
        clock[0] += 61
        assert await services.session_for(AuthIdentity(uid="u1")) is not first


@pytest.mark.integration
class TestSessionRoutes:
    async def test_new_user_session(self, client) -> None:
        resp = await client.get("/api/session", headers=as_user("u1"))
        assert resp.status_code == 200
        data = resp.json()
        assert data["state"] == "ready"
        assert data["organizations"] == []
        assert data["current_organization"] is None

    async def test_switch_and_roles(self, client, seed) -> None:
        await seed.membership("o1", "u1")
        await seed.membership("o2", "u2", members={"u1": OrgRole.MEMBER})

        resp = await client.put(
            "/api/session/current", json={"organization_id": "o2"}, headers=as_user("u1")
        )
        assert resp.status_code == 200
        assert resp.json()["id"] == "o2"

        session = (await client.get("/api/session", headers=as_user("u1"))).json()
        assert session["current_organization"]["id"] == "o2"

        roles = (await client.get("/api/session/roles/o2", headers=as_user("u1"))).json()
        assert roles["role"] == "member"
        assert roles["can_manage"] is False
        assert roles["can_delete"] is False

    async def test_switch_to_missing_organization(self, client) -> None:
        resp = await client.put(
            "/api/session/current", json={"organization_id": "nope"}, headers=as_user("u1")
        )
        assert resp.status_code == 404
        assert resp.json()["category"] == "not_found"


@pytest.mark.integration
class TestOrganizationRoutes:
    async def test_create_and_list(self, client) -> None:
        resp = await client.post(
            "/api/organizations", json={"name": "Chess Club"}, headers=as_user("u1")
        )
        assert resp.status_code == 201
        org = resp.json()
        assert org["name"] == "Chess Club"
        assert org["members"] == {"u1": "owner"}

        listed = (await client.get("/api/organizations", headers=as_user("u1"))).json()
        assert [item["id"] for item in listed] == [org["id"]]
        session = (await client.get("/api/session", headers=as_user("u1"))).json()
        assert session["current_organization"]["id"] == org["id"]

    async def test_duplicate_name(self, client) -> None:
        await client.post("/api/organizations", json={"name": "Chess Club"}, headers=as_user("u1"))
        resp = await client.post(
            "/api/organizations", json={"name": "chess club"}, headers=as_user("u2")
        )
        assert resp.status_code == 422
        assert resp.json()["category"] == "invalid_input"

        available = await client.get(
            "/api/organizations/name-available",
            params={"name": "CHESS CLUB"},
            headers=as_user("u2"),
        )
        assert available.json()["available"] is False

    async def test_creation_in_progress(self, settings, store, kv_store) -> None:
        slow = settings.model_copy(update={"creation_cooldown_seconds": 5.0})
        app = create_app(settings=slow, services=TenancyServices(store, kv_store, slow))
        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://test") as client:
            first = await client.post(
                "/api/organizations", json={"name": "One"}, headers=as_user("u1")
            )
            second = await client.post(
                "/api/organizations", json={"name": "Two"}, headers=as_user("u1")
            )
        assert first.status_code == 201
        assert second.status_code == 409
        assert second.json()["category"] == "try_again"
        assert "retry-after" in second.headers

    async def test_store_outage_is_try_again(self, client, store) -> None:
        await client.get("/api/session", headers=as_user("u1"))
        store.failing.add("organizations")
        resp = await client.post(
            "/api/organizations", json={"name": "Chess Club"}, headers=as_user("u1")
        )
        assert resp.status_code == 503
        assert resp.json()["category"] == "try_again"

    async def test_outsider_cannot_read(self, client, seed) -> None:
        await seed.membership("o1", "u1")
        resp = await client.get("/api/organizations/o1", headers=as_user("u2"))
        assert resp.status_code == 403
        assert resp.json()["category"] == "not_allowed"

    async def test_update_and_delete(self, client, seed) -> None:
        await seed.membership("o1", "u1")
        resp = await client.patch(
            "/api/organizations/o1", json={"description": "Weekly games"}, headers=as_user("u1")
        )
        assert resp.status_code == 200
        assert resp.json()["description"] == "Weekly games"

        resp = await client.patch(
            "/api/organizations/o1", json={"ownerId": "u2"}, headers=as_user("u1")
        )
        assert resp.status_code == 422

        resp = await client.delete("/api/organizations/o1", headers=as_user("u1"))
        assert resp.status_code == 204
        listed = (await client.get("/api/organizations", headers=as_user("u1"))).json()
        assert listed == []


@pytest.mark.integration
class TestMemberRoutes:
    async def test_membership_lifecycle(self, client, seed) -> None:
        await seed.membership("o1", "u1")
        await seed.user("u2", email="bo@example.com", first_name="Bo")

        resp = await client.post(
            "/api/organizations/o1/members",
            json={"identifier": "bo@example.com", "role": "admin"},
            headers=as_user("u1"),
        )
        assert resp.status_code == 201
        assert resp.json()["role"] == "admin"

        roster = (await client.get("/api/organizations/o1/members", headers=as_user("u1"))).json()
        assert sorted(m["user_id"] for m in roster["members"]) == ["u1", "u2"]
        assert roster["warnings"] == []

        resp = await client.put(
            "/api/organizations/o1/members/u2", json={"role": "member"}, headers=as_user("u1")
        )
        assert resp.status_code == 200
        roles = (await client.get("/api/session/roles/o1", headers=as_user("u2"))).json()
        assert roles["role"] == "member"

        resp = await client.delete("/api/organizations/o1/members/u2", headers=as_user("u1"))
        assert resp.status_code == 204
        roster = (await client.get("/api/organizations/o1/members", headers=as_user("u1"))).json()
        assert [m["user_id"] for m in roster["members"]] == ["u1"]

    async def test_removed_admin_loses_access(self, client, seed) -> None:
        await seed.membership("o1", "u1", members={"u2": OrgRole.ADMIN})
        resp = await client.patch(
            "/api/organizations/o1", json={"description": "Ours"}, headers=as_user("u2")
        )
        assert resp.status_code == 200

        resp = await client.delete("/api/organizations/o1/members/u2", headers=as_user("u1"))
        assert resp.status_code == 204
        resp = await client.patch(
            "/api/organizations/o1", json={"description": "hijacked"}, headers=as_user("u2")
        )
        assert resp.status_code == 403

    async def test_new_role_reaches_an_open_session(self, client, seed) -> None:
        await seed.membership("o1", "u1")
        await seed.user("u3")
        roles = (await client.get("/api/session/roles/o1", headers=as_user("u3"))).json()
        assert roles["role"] is None

        resp = await client.put(
            "/api/organizations/o1/members/u3", json={"role": "admin"}, headers=as_user("u1")
        )
        assert resp.status_code == 200
        roles = (await client.get("/api/session/roles/o1", headers=as_user("u3"))).json()
        assert roles["role"] == "admin"
        assert roles["can_manage"] is True

    async def test_owner_cannot_be_demoted(self, client, seed) -> None:
        await seed.membership("o1", "u1", members={"u2": OrgRole.ADMIN})
        resp = await client.put(
            "/api/organizations/o1/members/u1", json={"role": "member"}, headers=as_user("u2")
        )
        assert resp.status_code == 422

    async def test_event_audience_and_leads(self, client, seed) -> None:
        await seed.membership("o1", "u1")
        await seed.event("e1", "o1")

        resp = await client.post(
            "/api/events/e1/members",
            json={"type": "lead", "first_name": "Lee", "phone_number": "+1 555 010 0000"},
            headers=as_user("u1"),
        )
        assert resp.status_code == 201
        assert resp.json()["type"] == "lead"
        lead_id = resp.json()["id"]

        view = (await client.get("/api/events/e1/members", headers=as_user("u1"))).json()
        assert view["organization_id"] == "o1"
        assert [lead["id"] for lead in view["leads"]] == [lead_id]

        resp = await client.patch(
            f"/api/organizations/o1/leads/{lead_id}",
            json={"status": "invited"},
            headers=as_user("u1"),
        )
        assert resp.status_code == 200
        assert resp.json()["status"] == "invited"

        await seed.user("u3")
        resp = await client.post(
            f"/api/organizations/o1/leads/{lead_id}/convert",
            json={"user_id": "u3"},
            headers=as_user("u1"),
        )
        assert resp.json()["status"] == "transformed"
        resp = await client.patch(
            f"/api/organizations/o1/leads/{lead_id}",
            json={"status": "pending"},
            headers=as_user("u1"),
        )
        assert resp.status_code == 422


@pytest.mark.integration
class TestEventRoutes:
    async def test_event_reminders_follow_edits(self, client, seed) -> None:
        await seed.membership("o1", "u1")
        resp = await client.post(
            "/api/events",
            json={
                "organization_id": "o1",
                "title": "Practice",
                "start": "2030-06-01T18:00:00Z",
                "notification_settings": {"enabled": True, "reminder_times": [10, 60]},
            },
            headers=as_user("u1"),
        )
        assert resp.status_code == 201
        event_id = resp.json()["id"]

        reminders = await client.get(
            f"/api/events/{event_id}/notifications", headers=as_user("u1")
        )
        assert [n["time_before_event"] for n in reminders.json()] == [10, 60]

        resp = await client.patch(
            f"/api/events/{event_id}",
            json={"notification_settings": {"enabled": True, "reminder_times": [60, 1440]}},
            headers=as_user("u1"),
        )
        assert resp.status_code == 200
        reminders = await client.get(
            f"/api/events/{event_id}/notifications", headers=as_user("u1")
        )
        assert [n["time_before_event"] for n in reminders.json()] == [60, 1440]

        listed = await client.get(
            "/api/events", params={"organization_id": "o1"}, headers=as_user("u1")
        )
        assert [event["id"] for event in listed.json()] == [event_id]

        resp = await client.delete(f"/api/events/{event_id}", headers=as_user("u1"))
        assert resp.status_code == 204
        resp = await client.get(f"/api/events/{event_id}", headers=as_user("u1"))
        assert resp.status_code == 404

    async def test_outsider_cannot_create(self, client, seed) -> None:
        await seed.membership("o1", "u1")
        resp = await client.post(
            "/api/events",
            json={"organization_id": "o1", "title": "Crash", "start": "2030-06-01T18:00:00Z"},
            headers=as_user("u2"),
        )
        assert resp.status_code == 403
