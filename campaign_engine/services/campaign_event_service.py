# campaign_engine/services/campaign_event_service.py
from typing import Dict, Any, Optional
from datetime import datetime
from bson import ObjectId
import logging

from ..config.database import get_database
from ..models.campaign import EngagementCondition
from ..utils.timezone_helper import utc_now, to_naive_utc

logger = logging.getLogger(__name__)

# Which campaign metric an engagement event counts towards
EVENT_METRICS = {
    EngagementCondition.EMAIL_OPENED: "opened",
    EngagementCondition.WHATSAPP_READ: "opened",
    EngagementCondition.EMAIL_LINK_CLICKED: "clicked",
    EngagementCondition.EMAIL_REPLIED: "replied",
    EngagementCondition.WHATSAPP_REPLIED: "replied",
}

EVENT_CHANNELS = {
    EngagementCondition.EMAIL_OPENED: "email",
    EngagementCondition.EMAIL_LINK_CLICKED: "email",
    EngagementCondition.EMAIL_REPLIED: "email",
    EngagementCondition.WHATSAPP_READ: "whatsapp",
    EngagementCondition.WHATSAPP_REPLIED: "whatsapp",
}


class CampaignEventService:
    """Engagement events (opens, clicks, replies) on campaign messages"""

    def __init__(self):
        self.collection_name = "campaign_events"

    @property
    def db(self):
        return get_database()

    async def record_event(
        self,
        campaign_id: str,
        lead_id: str,
        event_type: EngagementCondition,
        message_id: Optional[str] = None,
        occurred_at: Optional[datetime] = None
    ) -> Dict[str, Any]:
        """Store an engagement event and bump the matching campaign metric"""
        from .campaign_service import campaign_service

        event_type = EngagementCondition(event_type)
        event_doc = {
            "event_id": f"EVT_{ObjectId()}",
            "campaign_id": campaign_id,
            "lead_id": lead_id,
            "event_type": event_type.value,
            "channel": EVENT_CHANNELS[event_type],
            "message_id": message_id,
            "occurred_at": to_naive_utc(occurred_at) or utc_now(),
            "created_at": utc_now()
        }
        await self.db[self.collection_name].insert_one(event_doc)
        await campaign_service.increment_metrics(campaign_id, **{EVENT_METRICS[event_type]: 1})

        logger.info(f"Recorded {event_type.value} for lead {lead_id} in campaign {campaign_id}")
        event_doc.pop("_id", None)
        return event_doc

    async def find_event_since(
        self,
        campaign_id: str,
        lead_id: str,
        event_type: EngagementCondition,
        since: datetime
    ) -> Optional[Dict[str, Any]]:
        """Most recent matching event at or after ``since``"""
        events = await self.db[self.collection_name].find({
            "campaign_id": campaign_id,
            "lead_id": lead_id,
            "event_type": EngagementCondition(event_type).value,
            "occurred_at": {"$gte": since}
        }).sort("occurred_at", -1).limit(1).to_list(length=1)
        return events[0] if events else None

    async def delete_for_campaign(self, campaign_id: str) -> int:
        result = await self.db[self.collection_name].delete_many({"campaign_id": campaign_id})
        return result.deleted_count


# Global service instance
campaign_event_service = CampaignEventService()
