# campaign_engine/services/block_executor.py
"""
Block Executor

Runs one claimed execution: dispatches on the block type, applies the side
effect through the lead / tag / template stores and the email and WhatsApp
transports, records the outcome and hands completed steps to the graph
advancer. Any handler error fails the execution and stops the lead's path at
that block.
"""
from typing import Dict, Any, Optional
from datetime import datetime
import asyncio
import logging
import re

from ..config.settings import settings
from ..models.campaign import (
    AddTagBlock,
    BlockType,
    CampaignBlock,
    RemoveTagBlock,
    SendEmailBlock,
    SendWhatsAppBlock,
)
from ..models.errors import MissingContactInfoError, ReferenceNotFoundError
from ..utils.timezone_helper import utc_now
from .branch_evaluator import branch_evaluator
from .brevo_client import brevo_client
from .campaign_enrollment import enrollment_service
from .campaign_graph import CampaignGraph
from .campaign_service import campaign_service
from .execution_scheduler import execution_scheduler
from .graph_advancer import graph_advancer
from .lead_store import lead_store
from .tag_store import tag_store
from .template_store import template_store
from .whatsapp_client import whatsapp_client

logger = logging.getLogger(__name__)

PLACEHOLDER_PATTERN = re.compile(r"\{\{\s*(\w+)\s*\}\}")


def render_placeholders(text: str, lead: Dict[str, Any]) -> str:
    """Replace ``{{field}}`` with the lead's value; unknown fields render empty"""
    values = dict(lead)
    full_name = (lead.get("name") or "").strip()
    values.setdefault("first_name", full_name.split(" ")[0] if full_name else "")

    def _replace(match):
        value = values.get(match.group(1))
        return "" if value is None else str(value)

    return PLACEHOLDER_PATTERN.sub(_replace, text or "")


class BlockExecutor:
    """Executes due campaign steps for individual leads"""

    def __init__(
        self,
        scheduler=None,
        enrollments=None,
        campaigns=None,
        leads=None,
        tags=None,
        templates=None,
        email_client=None,
        messaging_client=None,
        evaluator=None,
        advancer=None,
        timeout: Optional[float] = None
    ):
        self.scheduler = scheduler or execution_scheduler
        self.enrollments = enrollments or enrollment_service
        self.campaigns = campaigns or campaign_service
        self.leads = leads or lead_store
        self.tags = tags or tag_store
        self.templates = templates or template_store
        self.email_client = email_client or brevo_client
        self.messaging_client = messaging_client or whatsapp_client
        self.evaluator = evaluator or branch_evaluator
        self.advancer = advancer or graph_advancer
        self.timeout = timeout if timeout is not None else settings.campaign_block_timeout_seconds

        self.handlers = {
            BlockType.WAIT.value: self._handle_wait,
            BlockType.SEND_EMAIL.value: self._handle_send_email,
            BlockType.SEND_WHATSAPP.value: self._handle_send_whatsapp,
            BlockType.ADD_TAG.value: self._handle_add_tag,
            BlockType.REMOVE_TAG.value: self._handle_remove_tag,
            BlockType.CONDITIONAL.value: self._handle_branch,
            BlockType.AB_TEST.value: self._handle_branch,
            BlockType.LEAD_CONDITION.value: self._handle_branch,
        }

    async def run(self, execution: Dict[str, Any], now: Optional[datetime] = None) -> Dict[str, Any]:
        """
        Execute a claimed (``executing``) execution end to end

        Returns:
            Summary with the final execution status and any scheduled successors
        """
        execution_id = execution["execution_id"]
        block_id = execution["block_id"]

        campaign = await self.campaigns.get_campaign(execution["campaign_id"])
        if not campaign:
            return await self._fail(execution, f"Campaign {execution['campaign_id']} not found")

        try:
            graph = CampaignGraph.from_campaign(campaign)
        except Exception as e:
            return await self._fail(execution, f"Invalid campaign graph: {str(e)}")

        block = graph.block(block_id)
        if block is None:
            return await self._fail(execution, f"Block {block_id} not found")

        logger.info(f"Executing {block.type} block {block_id} for lead {execution['lead_id']} ({execution_id})")

        try:
            result = await asyncio.wait_for(self.execute(block, execution, now), timeout=self.timeout)
        except asyncio.TimeoutError:
            return await self._fail(execution, f"Block {block_id} timed out after {self.timeout}s")
        except Exception as e:
            return await self._fail(execution, str(e))

        if result.get("deferred"):
            await self.scheduler.defer(execution_id, result["retry_at"], result["evaluation_deadline"])
            logger.info(f"Execution {execution_id} deferred until {result['retry_at']}")
            return {"execution_id": execution_id, "status": "pending", "retry_at": result["retry_at"]}

        if not await self.scheduler.mark_completed(execution_id, result):
            logger.warning(f"Execution {execution_id} was no longer executing, not advancing")
            return {"execution_id": execution_id, "status": "skipped"}

        scheduled = await self.advancer.advance_from(execution, result, graph, now)
        return {
            "execution_id": execution_id,
            "status": "completed",
            "result": result,
            "scheduled": [doc["execution_id"] for doc in scheduled]
        }

    async def execute(
        self,
        block: CampaignBlock,
        execution: Dict[str, Any],
        now: Optional[datetime] = None
    ) -> Dict[str, Any]:
        """
        Apply a block's effect for the execution's lead

        Raises:
            BlockExecutionError: missing lead, contact info or reference, or a
                transport failure
        """
        handler = self.handlers.get(block.type)
        if handler is None:
            raise ValueError(f"No handler for block type {block.type}")

        if block.type == BlockType.WAIT.value:
            return await handler(block, execution, None, now)

        lead = await self.leads.get_lead(execution["lead_id"])
        if not lead:
            raise ReferenceNotFoundError("lead", execution["lead_id"])

        return await handler(block, execution, lead, now)

    async def _fail(self, execution: Dict[str, Any], error: str) -> Dict[str, Any]:
        logger.error(f"❌ Execution {execution['execution_id']} failed: {error}")
        await self.scheduler.mark_failed(execution["execution_id"], error)
        await self.enrollments.record_failure(execution["enrollment_id"], error)
        return {"execution_id": execution["execution_id"], "status": "failed", "error": error}

    # ========================================================================
    # HANDLERS
    # ========================================================================

    async def _handle_wait(self, block, execution, lead, now) -> Dict[str, Any]:
        # The delay is applied to whatever follows the wait block
        return {"success": True, "detail": f"waited {block.data.duration} {block.data.unit.value}"}

    async def _handle_send_email(
        self,
        block: SendEmailBlock,
        execution: Dict[str, Any],
        lead: Dict[str, Any],
        now: Optional[datetime]
    ) -> Dict[str, Any]:
        email = (lead.get("email") or "").strip()
        if not email:
            raise MissingContactInfoError(lead["lead_id"], "email")

        subject = render_placeholders(block.data.subject, lead)
        html_body = render_placeholders(block.data.content, lead)

        response = await self.email_client.send_email(
            to=email,
            subject=subject,
            html_body=html_body,
            to_name=lead.get("name")
        )
        await self.campaigns.increment_metrics(execution["campaign_id"], sent=1)

        return {
            "success": True,
            "channel": "email",
            "message_id": response.get("message_id"),
            "detail": f"email sent to {email}"
        }

    async def _handle_send_whatsapp(
        self,
        block: SendWhatsAppBlock,
        execution: Dict[str, Any],
        lead: Dict[str, Any],
        now: Optional[datetime]
    ) -> Dict[str, Any]:
        mobile = str(lead.get("mobile") or lead.get("contact_number") or "").strip()
        if not mobile:
            raise MissingContactInfoError(lead["lead_id"], "mobile")

        template = await self.templates.get_template(block.data.template_id)
        if not template:
            raise ReferenceNotFoundError("template", block.data.template_id)

        text = render_placeholders(self.templates.extract_body_text(template), lead)

        response = await self.messaging_client.send_message(mobile, text, lead["lead_id"])
        await self.campaigns.increment_metrics(execution["campaign_id"], sent=1)

        return {
            "success": True,
            "channel": "whatsapp",
            "message_id": response.get("message_id"),
            "detail": f"whatsapp message sent to {mobile}"
        }

    async def _handle_add_tag(
        self,
        block: AddTagBlock,
        execution: Dict[str, Any],
        lead: Dict[str, Any],
        now: Optional[datetime]
    ) -> Dict[str, Any]:
        tag_id = block.data.tag_id
        if not await self.tags.get_tag(tag_id):
            raise ReferenceNotFoundError("tag", tag_id)

        already_tagged = tag_id in (lead.get("tags") or [])
        if not await self.leads.add_tag(lead["lead_id"], tag_id):
            raise ReferenceNotFoundError("lead", lead["lead_id"])

        return {"success": True, "tag_id": tag_id, "changed": not already_tagged}

    async def _handle_remove_tag(
        self,
        block: RemoveTagBlock,
        execution: Dict[str, Any],
        lead: Dict[str, Any],
        now: Optional[datetime]
    ) -> Dict[str, Any]:
        tag_id = block.data.tag_id
        if not await self.tags.get_tag(tag_id):
            raise ReferenceNotFoundError("tag", tag_id)

        was_tagged = tag_id in (lead.get("tags") or [])
        if not await self.leads.remove_tag(lead["lead_id"], tag_id):
            raise ReferenceNotFoundError("lead", lead["lead_id"])

        return {"success": True, "tag_id": tag_id, "changed": was_tagged}

    async def _handle_branch(self, block, execution, lead, now) -> Dict[str, Any]:
        decision = await self.evaluator.evaluate(block, execution, lead, now or utc_now())
        if decision.deferred:
            return {
                "deferred": True,
                "retry_at": decision.retry_at,
                "evaluation_deadline": decision.deadline,
                "detail": decision.detail
            }
        return {"success": True, "outcome": decision.outcome, "detail": decision.detail}


# Global service instance
block_executor = BlockExecutor()
