# campaign_engine/services/lead_store.py - Lead access for the campaign engine

from typing import Dict, Any, Optional, List
import logging

from ..config.database import get_database
from ..models.campaign import TargetingRule
from ..utils.timezone_helper import utc_now

logger = logging.getLogger(__name__)

ADMIN_ROLE = "admin"


def is_admin(user: Optional[Dict[str, Any]]) -> bool:
    return bool(user) and user.get("role") == ADMIN_ROLE


class LeadStore:
    """Lead lookups, tag membership updates and targeting queries"""

    def __init__(self):
        self.collection_name = "leads"

    @property
    def db(self):
        """Get database connection"""
        return get_database()

    async def get_lead(self, lead_id: str) -> Optional[Dict[str, Any]]:
        """Get a single lead by its lead_id"""
        return await self.db[self.collection_name].find_one({"lead_id": lead_id})

    async def update_tags(self, lead_id: str, tags: List[str]) -> bool:
        """Replace the lead's tag list"""
        result = await self.db[self.collection_name].update_one(
            {"lead_id": lead_id},
            {"$set": {"tags": list(dict.fromkeys(tags)), "updated_at": utc_now()}}
        )
        return result.matched_count > 0

    async def add_tag(self, lead_id: str, tag_id: str) -> bool:
        """
        Add a tag to the lead; no-op if it is already present

        Returns:
            True if the lead exists
        """
        result = await self.db[self.collection_name].update_one(
            {"lead_id": lead_id},
            {"$addToSet": {"tags": tag_id}, "$set": {"updated_at": utc_now()}}
        )
        return result.matched_count > 0

    async def remove_tag(self, lead_id: str, tag_id: str) -> bool:
        """Remove a tag from the lead; no-op if it is absent"""
        result = await self.db[self.collection_name].update_one(
            {"lead_id": lead_id},
            {"$pull": {"tags": tag_id}, "$set": {"updated_at": utc_now()}}
        )
        return result.matched_count > 0

    def build_selection_query(
        self,
        selection: TargetingRule,
        user: Optional[Dict[str, Any]]
    ) -> Dict[str, Any]:
        """
        Build the Mongo query for a campaign's targeting rule

        Args:
            selection: Targeting rule of the campaign
            user: Campaign owner; admins see every lead, everyone else only
                leads they are assigned to (primary or co-assignee)

        Returns:
            Mongo filter document
        """
        conditions = []

        if not is_admin(user):
            user_email = (user or {}).get("email")
            conditions.append({
                "$or": [
                    {"assigned_to": user_email},
                    {"co_assignees": user_email}
                ]
            })

        if selection.type == "filtered":
            # Each filter is any-of; filters combine with AND
            if selection.tag_ids:
                conditions.append({"tags": {"$in": selection.tag_ids}})
            if selection.statuses:
                conditions.append({"status": {"$in": selection.statuses}})
            if selection.sources:
                conditions.append({"source": {"$in": selection.sources}})

        if not conditions:
            return {}
        if len(conditions) == 1:
            return conditions[0]
        return {"$and": conditions}

    async def find_leads_for_selection(
        self,
        selection: TargetingRule,
        user: Optional[Dict[str, Any]]
    ) -> List[Dict[str, Any]]:
        """Resolve the lead set a targeting rule matches for the given owner"""
        query = self.build_selection_query(selection, user)
        logger.debug(f"Lead selection query: {query}")
        return await self.db[self.collection_name].find(query).to_list(None)


# Global service instance
lead_store = LeadStore()
