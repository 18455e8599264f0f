"""
Tests for the campaign HTTP API: status codes, error mapping and the admin
guard.
"""
import httpx
import pytest
import pytest_asyncio

from campaign_engine.main import app
from campaign_engine.utils.dependencies import get_admin_user
from campaign_engine.utils.security import security

from conftest import ADMIN_EMAIL, AGENT_EMAIL, block, edge, seed_lead, seed_tag

BASE = "/api/v1/campaigns"


def _campaign_payload(**overrides):
    payload = {
        "name": "Welcome flow",
        "description": "Greets new leads",
        "blocks": [
            block("w1", "wait", duration=5, unit="minutes"),
            block("t1", "add_tag", tag_id="vip"),
        ],
        "connections": [edge("w1", "t1")],
        "lead_selection": {"type": "all"},
    }
    payload.update(overrides)
    return payload


@pytest_asyncio.fixture
async def client(db):
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as http_client:
        yield http_client


@pytest_asyncio.fixture
async def admin_client(client, admin_user):
    app.dependency_overrides[get_admin_user] = lambda: admin_user
    yield client
    app.dependency_overrides.clear()


async def _create(admin_client, **overrides):
    response = await admin_client.post(f"{BASE}/", json=_campaign_payload(**overrides))
    assert response.status_code == 201
    return response.json()["campaign_id"]


class TestCrudEndpoints:
    """Create, read, list and edit."""

    @pytest.mark.asyncio
    async def test_create_returns_draft(self, admin_client):
        response = await admin_client.post(f"{BASE}/", json=_campaign_payload())

        assert response.status_code == 201
        body = response.json()
        assert body["success"] is True
        assert body["status"] == "draft"
        assert body["campaign_id"].startswith("CAMP_")

    @pytest.mark.asyncio
    async def test_create_rejects_dangling_connection(self, admin_client):
        payload = _campaign_payload(connections=[edge("w1", "ghost")])

        response = await admin_client.post(f"{BASE}/", json=payload)

        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_get_and_list(self, admin_client):
        campaign_id = await _create(admin_client)

        detail = await admin_client.get(f"{BASE}/{campaign_id}")
        listing = await admin_client.get(f"{BASE}/", params={"status": "draft"})

        assert detail.status_code == 200
        assert [b["id"] for b in detail.json()["campaign"]["blocks"]] == ["w1", "t1"]
        assert listing.json()["pagination"]["total"] == 1
        assert listing.json()["campaigns"][0]["campaign_id"] == campaign_id

    @pytest.mark.asyncio
    async def test_unknown_campaign_is_404(self, admin_client):
        response = await admin_client.get(f"{BASE}/CAMP_missing")
        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_rename_draft(self, admin_client):
        campaign_id = await _create(admin_client)

        response = await admin_client.put(f"{BASE}/{campaign_id}", json={"name": "Renamed"})

        assert response.status_code == 200
        assert response.json()["campaign"]["name"] == "Renamed"


class TestLifecycleEndpoints:
    """Activation, pausing, completion and deletion."""

    @pytest.mark.asyncio
    async def test_activate_empty_graph_is_400(self, admin_client):
        campaign_id = await _create(admin_client, blocks=[], connections=[])

        response = await admin_client.post(f"{BASE}/{campaign_id}/activate")

        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_activate_then_edit_graph_is_409(self, db, admin_client):
        await seed_lead(db, "LD-1")
        campaign_id = await _create(admin_client)

        activated = await admin_client.post(f"{BASE}/{campaign_id}/activate")
        edit = await admin_client.put(f"{BASE}/{campaign_id}", json={"blocks": [block("w1", "wait")]})
        delete = await admin_client.delete(f"{BASE}/{campaign_id}")

        assert activated.status_code == 200
        assert activated.json()["status"] == "active"
        assert activated.json()["enrolled_count"] == 1
        assert edit.status_code == 409
        assert delete.status_code == 409

    @pytest.mark.asyncio
    async def test_pause_resume_complete_delete(self, db, admin_client):
        await seed_lead(db, "LD-1")
        campaign_id = await _create(admin_client)
        await admin_client.post(f"{BASE}/{campaign_id}/activate")

        paused = await admin_client.post(f"{BASE}/{campaign_id}/pause")
        resumed = await admin_client.post(f"{BASE}/{campaign_id}/activate")
        completed = await admin_client.post(f"{BASE}/{campaign_id}/complete")
        deleted = await admin_client.delete(f"{BASE}/{campaign_id}")

        assert paused.json()["status"] == "paused"
        assert resumed.json()["message"] == "Campaign resumed"
        assert completed.json()["status"] == "completed"
        assert deleted.status_code == 200
        assert deleted.json()["deleted"]["enrollments"] == 1
        assert (await admin_client.get(f"{BASE}/{campaign_id}")).status_code == 404

    @pytest.mark.asyncio
    async def test_pause_draft_is_409(self, admin_client):
        campaign_id = await _create(admin_client)

        response = await admin_client.post(f"{BASE}/{campaign_id}/pause")

        assert response.status_code == 409


class TestTrackingEndpoints:
    """Stats, enrollments, executions, events and manual sweeps."""

    @pytest.mark.asyncio
    async def test_stats_shape(self, db, admin_client):
        await seed_lead(db, "LD-1")
        await seed_lead(db, "LD-2")
        campaign_id = await _create(admin_client)
        await admin_client.post(f"{BASE}/{campaign_id}/activate")

        response = await admin_client.get(f"{BASE}/{campaign_id}/stats")

        assert response.status_code == 200
        stats = response.json()
        assert stats["status"] == "active"
        assert stats["metrics"]["enrolled"] == 2
        assert stats["metrics"]["active"] == 2
        assert stats["enrollments"]["total"] == 2
        assert stats["executions"]["pending"] == 2
        assert stats["next_scheduled_at"] is not None

    @pytest.mark.asyncio
    async def test_enrollments_and_unenroll(self, db, admin_client):
        await seed_lead(db, "LD-1")
        campaign_id = await _create(admin_client)
        await admin_client.post(f"{BASE}/{campaign_id}/activate")

        listing = await admin_client.get(f"{BASE}/{campaign_id}/enrollments")
        removed = await admin_client.delete(f"{BASE}/{campaign_id}/enrollments/LD-1")
        again = await admin_client.delete(f"{BASE}/{campaign_id}/enrollments/LD-1")
        executions = await admin_client.get(f"{BASE}/{campaign_id}/executions", params={"status": "cancelled"})

        assert listing.json()["total"] == 1
        assert removed.status_code == 200
        assert removed.json()["cancelled_executions"] == 1
        assert again.status_code == 409
        assert executions.json()["total"] == 1

    @pytest.mark.asyncio
    async def test_record_event(self, db, admin_client):
        campaign_id = await _create(admin_client)

        response = await admin_client.post(
            f"{BASE}/{campaign_id}/events",
            json={"lead_id": "LD-1", "event_type": "email_opened"}
        )

        assert response.status_code == 201
        assert response.json()["event"]["event_type"] == "email_opened"
        assert await db.campaign_events.count_documents({"campaign_id": campaign_id}) == 1

    @pytest.mark.asyncio
    async def test_unknown_event_type_is_422(self, admin_client):
        campaign_id = await _create(admin_client)

        response = await admin_client.post(
            f"{BASE}/{campaign_id}/events",
            json={"lead_id": "LD-1", "event_type": "email_bounced"}
        )

        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_tags_listing(self, db, admin_client):
        await seed_tag(db, "vip", name="VIP")

        response = await admin_client.get(f"{BASE}/tags")

        assert response.json()["total"] == 1
        assert response.json()["tags"][0]["name"] == "VIP"

    @pytest.mark.asyncio
    async def test_manual_sweep(self, admin_client):
        response = await admin_client.post(f"{BASE}/sweep")

        assert response.status_code == 200
        assert response.json()["claimed"] == 0


class TestAuthentication:
    """Bearer token and admin guard."""

    @pytest.mark.asyncio
    async def test_missing_token_is_rejected(self, client):
        response = await client.get(f"{BASE}/")
        assert response.status_code in (401, 403)

    @pytest.mark.asyncio
    async def test_invalid_token_is_401(self, client):
        response = await client.get(f"{BASE}/", headers={"Authorization": "Bearer not-a-jwt"})
        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_admin_token_is_accepted(self, db, client):
        await db.users.insert_one({"email": ADMIN_EMAIL, "role": "admin", "is_active": True})
        token = security.create_access_token({"sub": ADMIN_EMAIL})

        response = await client.get(f"{BASE}/", headers={"Authorization": f"Bearer {token}"})

        assert response.status_code == 200

    @pytest.mark.asyncio
    async def test_non_admin_is_403(self, db, client):
        await db.users.insert_one({"email": AGENT_EMAIL, "role": "user", "is_active": True})
        token = security.create_access_token({"sub": AGENT_EMAIL})

        response = await client.get(f"{BASE}/", headers={"Authorization": f"Bearer {token}"})

        assert response.status_code == 403

    @pytest.mark.asyncio
    async def test_disabled_user_is_401(self, db, client):
        await db.users.insert_one({"email": ADMIN_EMAIL, "role": "admin", "is_active": False})
        token = security.create_access_token({"sub": ADMIN_EMAIL})

        response = await client.get(f"{BASE}/", headers={"Authorization": f"Bearer {token}"})

        assert response.status_code == 401
