"""
Shared fixtures for the campaign engine tests.

Every test gets a fresh in-memory Motor-compatible database (mongomock-motor)
installed as the engine's database, with the production indexes created, so
the uniqueness constraints the engine relies on are exercised for real.
"""
from typing import Any, Dict, List, Optional
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio
from mongomock_motor import AsyncMongoMockClient

from campaign_engine.config import database
from campaign_engine.models.campaign import CampaignCreateRequest
from campaign_engine.services.block_executor import BlockExecutor
from campaign_engine.services.campaign_service import campaign_service
from campaign_engine.utils.timezone_helper import utc_now

ADMIN_EMAIL = "admin@example.com"
AGENT_EMAIL = "agent@example.com"


@pytest_asyncio.fixture
async def db(monkeypatch):
    """Fresh database with indexes, installed as the engine's database."""
    client = AsyncMongoMockClient()
    mock_db = client["campaign_engine_test"]
    monkeypatch.setattr(database, "_database", mock_db)
    await database.create_indexes()
    yield mock_db


@pytest.fixture
def now():
    return utc_now().replace(microsecond=0)


@pytest.fixture
def admin_user() -> Dict[str, Any]:
    return {"email": ADMIN_EMAIL, "role": "admin", "is_active": True}


@pytest.fixture
def agent_user() -> Dict[str, Any]:
    return {"email": AGENT_EMAIL, "role": "user", "is_active": True}


@pytest.fixture
def email_transport():
    """Brevo stand-in: every send succeeds."""
    transport = MagicMock()
    transport.send_email = AsyncMock(return_value={"message_id": "<email-1@brevo>"})
    return transport


@pytest.fixture
def whatsapp_transport():
    """WhatsApp stand-in: every send succeeds."""
    transport = MagicMock()
    transport.send_message = AsyncMock(return_value={"message_id": "wamid.TEST1"})
    return transport


@pytest.fixture
def executor(db, email_transport, whatsapp_transport):
    return BlockExecutor(
        email_client=email_transport,
        messaging_client=whatsapp_transport,
        timeout=5
    )


# =============================================================================
# SEED HELPERS
# =============================================================================


async def seed_lead(db, lead_id: str, **fields) -> Dict[str, Any]:
    lead = {
        "lead_id": lead_id,
        "name": f"Lead {lead_id}",
        "email": f"{lead_id.lower()}@example.com",
        "mobile": "+91 98765 43210",
        "tags": [],
        "status": "Hot",
        "source": "website",
        "assigned_to": ADMIN_EMAIL,
        "co_assignees": [],
    }
    lead.update(fields)
    await db.leads.insert_one(dict(lead))
    return lead


async def seed_tag(db, tag_id: str, name: Optional[str] = None) -> Dict[str, Any]:
    tag = {"tag_id": tag_id, "name": name or tag_id, "color": "#3366ff"}
    await db.tags.insert_one(dict(tag))
    return tag


async def seed_template(db, template_id: str, body: Optional[str] = "Hi {{name}}, your offer is ready") -> Dict[str, Any]:
    components = [{"type": "HEADER", "format": "TEXT", "text": "Offer"}]
    if body is not None:
        components.append({"type": "BODY", "text": body})
    template = {"template_id": template_id, "name": template_id, "components": components}
    await db.whatsapp_templates.insert_one(dict(template))
    return template


def block(block_id: str, block_type: str, **data) -> Dict[str, Any]:
    return {"id": block_id, "type": block_type, "data": data}


def edge(source: str, target: str, label: Optional[str] = None) -> Dict[str, Any]:
    return {"from": source, "to": target, "label": label}


async def create_campaign(
    blocks: List[Dict[str, Any]],
    connections: Optional[List[Dict[str, Any]]] = None,
    lead_selection: Optional[Dict[str, Any]] = None,
    created_by: str = ADMIN_EMAIL,
    name: str = "Test campaign"
) -> Dict[str, Any]:
    request = CampaignCreateRequest(
        name=name,
        blocks=blocks,
        connections=connections or [],
        lead_selection=lead_selection or {"type": "all"}
    )
    return await campaign_service.create_campaign(request, created_by=created_by)


async def create_active_campaign(db, user, blocks, connections=None, lead_selection=None) -> Dict[str, Any]:
    campaign = await create_campaign(blocks, connections, lead_selection, created_by=user["email"])
    await campaign_service.activate_campaign(campaign["campaign_id"], user)
    return await campaign_service.get_campaign(campaign["campaign_id"])
