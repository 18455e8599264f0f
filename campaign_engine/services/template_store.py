# campaign_engine/services/template_store.py
from typing import Dict, Any, Optional
import logging

from ..config.database import get_database

logger = logging.getLogger(__name__)

DEFAULT_BODY_TEXT = "Hello!"


class TemplateStore:
    """WhatsApp message templates (Meta template shape: a list of components)"""

    def __init__(self):
        self.collection_name = "whatsapp_templates"

    @property
    def db(self):
        return get_database()

    async def get_template(self, template_id: str) -> Optional[Dict[str, Any]]:
        return await self.db[self.collection_name].find_one({"template_id": template_id})

    @staticmethod
    def extract_body_text(template: Dict[str, Any]) -> str:
        """Text of the template's BODY component"""
        for component in template.get("components") or []:
            if str(component.get("type", "")).upper() == "BODY" and component.get("text"):
                return component["text"]
        logger.warning(f"Template {template.get('template_id')} has no BODY text, using default")
        return DEFAULT_BODY_TEXT


# Global service instance
template_store = TemplateStore()
