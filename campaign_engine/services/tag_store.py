# campaign_engine/services/tag_store.py
from typing import Dict, Any, Optional, List
import logging

from ..config.database import get_database

logger = logging.getLogger(__name__)


class TagStore:
    """Read-only access to lead tags"""

    def __init__(self):
        self.collection_name = "tags"

    @property
    def db(self):
        return get_database()

    async def list_tags(self) -> List[Dict[str, Any]]:
        """List every tag as {tag_id, name, color}"""
        tags = await self.db[self.collection_name].find(
            {}, {"_id": 0, "tag_id": 1, "name": 1, "color": 1}
        ).sort("name", 1).to_list(None)
        return tags

    async def get_tag(self, tag_id: str) -> Optional[Dict[str, Any]]:
        return await self.db[self.collection_name].find_one({"tag_id": tag_id}, {"_id": 0})


# Global service instance
tag_store = TagStore()
