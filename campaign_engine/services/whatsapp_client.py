# campaign_engine/services/whatsapp_client.py - WhatsApp Cloud API text sender

import logging
from typing import Dict, Any, Optional
import httpx

from ..config.database import get_database
from ..config.settings import settings
from ..models.errors import DeliveryError
from ..utils.timezone_helper import utc_now

logger = logging.getLogger(__name__)


class WhatsAppClient:
    """Sends plain-text WhatsApp messages on behalf of campaign blocks"""

    def __init__(self, timeout: float = 30.0, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.timeout = timeout
        self.transport = transport

    @staticmethod
    def normalize_phone_number(phone_number: str) -> str:
        """Digits only, as the Cloud API expects (country code included)"""
        return "".join(ch for ch in str(phone_number) if ch.isdigit())

    async def send_message(self, phone_number: str, text: str, lead_id: str) -> Dict[str, Any]:
        """
        Send a text message and record it against the lead

        Returns:
            {"message_id": ...}

        Raises:
            DeliveryError: not configured, HTTP failure or API error
        """
        if not settings.is_whatsapp_configured():
            raise DeliveryError("WhatsApp Cloud API is not configured")

        config = settings.get_whatsapp_config()
        url = f"{config['base_url']}/{config['phone_number_id']}/messages"
        to_number = self.normalize_phone_number(phone_number)

        payload = {
            "messaging_product": "whatsapp",
            "recipient_type": "individual",
            "to": to_number,
            "type": "text",
            "text": {"body": text}
        }
        headers = {"Authorization": f"Bearer {config['access_token']}"}

        logger.debug(f"Sending WhatsApp message to {to_number} for lead {lead_id}")

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.post(url, json=payload, headers=headers)
                response.raise_for_status()
                data = response.json()
        except httpx.HTTPStatusError as e:
            error_msg = f"WhatsApp API error: {e.response.status_code} - {e.response.text}"
            logger.error(error_msg)
            raise DeliveryError(error_msg) from e
        except httpx.HTTPError as e:
            error_msg = f"WhatsApp API request failed: {str(e)}"
            logger.error(error_msg)
            raise DeliveryError(error_msg) from e

        messages = data.get("messages") or []
        message_id = messages[0].get("id") if messages else None
        if not message_id:
            raise DeliveryError(f"WhatsApp API returned no message id: {data}")

        await self._record_outgoing_message(message_id, lead_id, to_number, text)
        logger.info(f"WhatsApp message {message_id} sent to lead {lead_id}")

        return {"message_id": message_id}

    async def _record_outgoing_message(self, message_id: str, lead_id: str, phone_number: str, text: str) -> None:
        db = get_database()
        await db.whatsapp_messages.insert_one({
            "message_id": message_id,
            "lead_id": lead_id,
            "phone_number": phone_number,
            "direction": "outgoing",
            "message_type": "text",
            "content": text,
            "status": "sent",
            "timestamp": utc_now()
        })


# Global client instance
whatsapp_client = WhatsAppClient()
