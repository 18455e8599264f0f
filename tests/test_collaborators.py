"""
Tests for the stores, transports and time helpers the executor relies on.
"""
import json
from datetime import datetime, timedelta, timezone

import httpx
import pytest

from campaign_engine.config.settings import settings
from campaign_engine.models.campaign import TargetingRule
from campaign_engine.models.errors import DeliveryError
from campaign_engine.services.brevo_client import BrevoClient
from campaign_engine.services.lead_store import lead_store
from campaign_engine.services.template_store import TemplateStore
from campaign_engine.services.whatsapp_client import WhatsAppClient
from campaign_engine.utils.timezone_helper import coerce_datetime, to_naive_utc

from conftest import ADMIN_EMAIL, AGENT_EMAIL, seed_lead


class TestLeadSelection:
    """Targeting rules turned into lead queries."""

    def test_admin_all_is_unfiltered(self, admin_user):
        assert lead_store.build_selection_query(TargetingRule(type="all"), admin_user) == {}

    def test_filters_are_anded_and_scoped_to_owner(self, agent_user):
        rule = TargetingRule(type="filtered", statuses=["Hot"], sources=["website", "referral"])

        query = lead_store.build_selection_query(rule, agent_user)

        assert query == {"$and": [
            {"$or": [{"assigned_to": AGENT_EMAIL}, {"co_assignees": AGENT_EMAIL}]},
            {"status": {"$in": ["Hot"]}},
            {"source": {"$in": ["website", "referral"]}},
        ]}

    @pytest.mark.asyncio
    async def test_co_assignee_sees_lead(self, db, agent_user):
        await seed_lead(db, "LD-1", assigned_to=ADMIN_EMAIL, co_assignees=[AGENT_EMAIL])
        await seed_lead(db, "LD-2", assigned_to=ADMIN_EMAIL)

        leads = await lead_store.find_leads_for_selection(TargetingRule(type="all"), agent_user)

        assert [lead["lead_id"] for lead in leads] == ["LD-1"]


class TestTemplateBody:
    def test_body_component_text(self):
        template = {"components": [{"type": "HEADER", "text": "Hi"}, {"type": "body", "text": "Welcome"}]}
        assert TemplateStore.extract_body_text(template) == "Welcome"

    def test_default_when_missing(self):
        assert TemplateStore.extract_body_text({"template_id": "T", "components": []}) == "Hello!"


class TestTimeHelpers:
    """Follow-up dates arrive in several shapes."""

    def test_aware_datetime_is_normalised(self):
        aware = datetime(2024, 1, 1, 12, 0, tzinfo=timezone(timedelta(hours=5, minutes=30)))
        assert to_naive_utc(aware) == datetime(2024, 1, 1, 6, 30)

    def test_epoch_milliseconds(self):
        assert coerce_datetime(1704110400000) == datetime(2024, 1, 1, 12, 0)

    def test_iso_string(self):
        assert coerce_datetime("2024-01-01T12:00:00+00:00") == datetime(2024, 1, 1, 12, 0)

    def test_iso_string_with_zulu_suffix(self):
        assert coerce_datetime("2026-01-01T00:00:00Z") == datetime(2026, 1, 1)
        assert coerce_datetime(" 2026-01-01T05:30:00.250z ") == datetime(2026, 1, 1, 5, 30, 0, 250000)

    def test_empty_values(self):
        assert coerce_datetime(None) is None
        assert coerce_datetime("") is None

    def test_unsupported_value(self):
        with pytest.raises(ValueError):
            coerce_datetime(["2024"])


class TestWhatsAppClient:
    """Cloud API text sends."""

    @pytest.fixture
    def configured(self, monkeypatch):
        monkeypatch.setattr(settings, "whatsapp_phone_number_id", "12345")
        monkeypatch.setattr(settings, "whatsapp_access_token", "token-abc")

    @pytest.mark.asyncio
    async def test_not_configured(self, db, monkeypatch):
        monkeypatch.setattr(settings, "whatsapp_access_token", "")

        with pytest.raises(DeliveryError):
            await WhatsAppClient().send_message("+91 98765 43210", "Hi", "LD-1")

    @pytest.mark.asyncio
    async def test_sends_and_records_message(self, db, configured):
        requests = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(200, json={"messages": [{"id": "wamid.ABC"}]})

        client = WhatsAppClient(transport=httpx.MockTransport(handler))
        result = await client.send_message("+91 98765 43210", "Hi Asha", "LD-1")

        assert result == {"message_id": "wamid.ABC"}
        [request] = requests
        assert request.url.path.endswith("/12345/messages")
        assert request.headers["Authorization"] == "Bearer token-abc"
        assert json.loads(request.content)["to"] == "919876543210"

        stored = await db.whatsapp_messages.find_one({"message_id": "wamid.ABC"})
        assert stored["lead_id"] == "LD-1"
        assert stored["direction"] == "outgoing"

    @pytest.mark.asyncio
    async def test_api_error_is_delivery_error(self, db, configured):
        client = WhatsAppClient(transport=httpx.MockTransport(
            lambda request: httpx.Response(400, json={"error": {"message": "bad number"}})
        ))

        with pytest.raises(DeliveryError, match="400"):
            await client.send_message("123", "Hi", "LD-1")

        assert await db.whatsapp_messages.count_documents({}) == 0


class TestBrevoClient:
    @pytest.mark.asyncio
    async def test_not_configured(self, monkeypatch):
        monkeypatch.setattr(settings, "brevo_api_key", "")

        with pytest.raises(DeliveryError):
            await BrevoClient().send_email(to="a@example.com", subject="Hi", html_body="<p>Hi</p>")
