# campaign_engine/services/brevo_client.py
import aiohttp
from typing import Dict, Any, Optional
import logging

from ..config.settings import settings
from ..models.errors import DeliveryError

logger = logging.getLogger(__name__)


class BrevoClient:
    """Brevo transactional email client used by send_email blocks"""

    @property
    def base_url(self) -> str:
        return settings.brevo_api_url.rstrip("/")

    @property
    def headers(self) -> Dict[str, str]:
        return {
            "Accept": "application/json",
            "Content-Type": "application/json",
            "api-key": settings.brevo_api_key
        }

    async def send_email(
        self,
        to: str,
        subject: str,
        html_body: str,
        to_name: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Send a single HTML email

        Args:
            to: Recipient address
            subject: Rendered subject line
            html_body: Rendered HTML content
            to_name: Optional display name of the recipient

        Returns:
            {"message_id": ...}

        Raises:
            DeliveryError: Brevo is not configured, unreachable or rejected the message
        """
        if not settings.is_brevo_configured():
            raise DeliveryError("Brevo email is not configured")

        recipient = {"email": to}
        if to_name:
            recipient["name"] = to_name

        payload = {
            "sender": {
                "email": settings.brevo_sender_email,
                "name": settings.brevo_sender_name
            },
            "to": [recipient],
            "subject": subject,
            "htmlContent": html_body
        }

        logger.info(f"Sending email to {to} via Brevo")

        try:
            async with aiohttp.ClientSession() as session:
                url = f"{self.base_url}/smtp/email"

                async with session.post(url, json=payload, headers=self.headers) as response:
                    response_data = await response.json(content_type=None)

                    # Brevo answers 201 Created with {"messageId": "<...>"}
                    if response.status in [200, 201, 202]:
                        message_id = (response_data or {}).get("messageId")
                        logger.info(f"Email sent successfully to {to}: {message_id}")
                        return {"message_id": message_id}

                    error_msg = f"Brevo API error: {response.status} - {response_data}"
                    logger.error(error_msg)
                    raise DeliveryError(error_msg)

        except aiohttp.ClientError as e:
            error_msg = f"Network error sending email to {to}: {str(e)}"
            logger.error(error_msg)
            raise DeliveryError(error_msg) from e


# Global client instance
brevo_client = BrevoClient()
