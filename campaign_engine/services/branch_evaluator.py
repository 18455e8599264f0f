# campaign_engine/services/branch_evaluator.py
"""
Outcome evaluation for branching blocks

conditional     -> "true" / "false", may be deferred until its time limit
ab_test         -> "A" / "B", weighted by split_percentage
lead_condition  -> "true" / "false", decided immediately from the lead
"""
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Optional
import logging
import random

from ..config.settings import settings
from ..models.campaign import (
    ABTestBlock,
    CampaignBlock,
    ConditionalBlock,
    LeadCondition,
    LeadConditionBlock,
)
from ..utils.timezone_helper import coerce_datetime, utc_now
from .campaign_event_service import EVENT_CHANNELS, campaign_event_service
from .execution_scheduler import execution_scheduler

logger = logging.getLogger(__name__)

SEND_BLOCK_TYPES = {
    "email": ["send_email"],
    "whatsapp": ["send_whatsapp"],
}


@dataclass
class BranchDecision:
    outcome: Optional[str] = None
    detail: str = ""
    # Set when the outcome cannot be decided yet
    retry_at: Optional[datetime] = None
    deadline: Optional[datetime] = None

    @property
    def deferred(self) -> bool:
        return self.outcome is None


class BranchEvaluator:
    """Decides which branch a lead takes out of a branching block"""

    def __init__(self, event_service=None, scheduler=None, rng: Optional[random.Random] = None,
                 poll_interval: Optional[timedelta] = None):
        self.event_service = event_service or campaign_event_service
        self.scheduler = scheduler or execution_scheduler
        self.rng = rng or random.Random()
        self.poll_interval = poll_interval or timedelta(minutes=settings.campaign_condition_poll_minutes)

    async def evaluate(
        self,
        block: CampaignBlock,
        execution: Dict[str, Any],
        lead: Dict[str, Any],
        now: Optional[datetime] = None
    ) -> BranchDecision:
        now = now or utc_now()

        if isinstance(block, ConditionalBlock):
            return await self._evaluate_conditional(block, execution, now)
        if isinstance(block, ABTestBlock):
            return self._evaluate_ab_test(block)
        if isinstance(block, LeadConditionBlock):
            return self._evaluate_lead_condition(block, lead, now)

        raise ValueError(f"Block {block.id} of type {block.type} has no branches")

    async def _evaluate_conditional(
        self,
        block: ConditionalBlock,
        execution: Dict[str, Any],
        now: datetime
    ) -> BranchDecision:
        condition = block.data.condition
        deadline = execution.get("evaluation_deadline") or (now + block.data.time_window())
        since = await self._engagement_window_start(execution, EVENT_CHANNELS[condition])

        event = await self.event_service.find_event_since(
            execution["campaign_id"], execution["lead_id"], condition, since
        )
        if event:
            return BranchDecision("true", detail=f"{condition.value} at {event['occurred_at']}")

        if now >= deadline:
            return BranchDecision("false", detail=f"no {condition.value} within time limit")

        retry_at = min(now + self.poll_interval, deadline)
        logger.debug(
            f"Condition {condition.value} not met yet for lead {execution['lead_id']}, "
            f"re-checking at {retry_at} (deadline {deadline})"
        )
        return BranchDecision(None, detail=f"waiting for {condition.value}", retry_at=retry_at, deadline=deadline)

    async def _engagement_window_start(self, execution: Dict[str, Any], channel: str) -> datetime:
        """Engagement counts from the enrollment's last send on the channel"""
        last_send = await self.scheduler.last_completed_at(execution["enrollment_id"], SEND_BLOCK_TYPES[channel])
        if last_send:
            return last_send

        from .campaign_enrollment import enrollment_service

        enrollment = await enrollment_service.get_enrollment(execution["enrollment_id"])
        if enrollment:
            return enrollment["enrolled_at"]
        return execution["created_at"]

    def _evaluate_ab_test(self, block: ABTestBlock) -> BranchDecision:
        roll = self.rng.random() * 100
        outcome = "A" if roll < block.data.split_percentage else "B"
        return BranchDecision(outcome, detail=f"split {block.data.split_percentage}/{100 - block.data.split_percentage}")

    def _evaluate_lead_condition(
        self,
        block: LeadConditionBlock,
        lead: Dict[str, Any],
        now: datetime
    ) -> BranchDecision:
        data = block.data

        if data.condition == LeadCondition.HAS_TAGS:
            lead_tags = set(lead.get("tags") or [])
            matched = bool(lead_tags.intersection(data.tag_ids))
            return BranchDecision("true" if matched else "false", detail="has_tags")

        follow_up = coerce_datetime(lead.get("next_follow_up_date"))
        horizon = now + data.time_window()

        if data.condition == LeadCondition.OVERDUE_FOLLOWUP:
            matched = follow_up is not None and follow_up < now
        elif data.condition == LeadCondition.FOLLOWUP_IN_MORE_THAN:
            matched = follow_up is not None and follow_up > horizon
        else:
            matched = follow_up is not None and now <= follow_up <= horizon

        return BranchDecision("true" if matched else "false", detail=data.condition.value)


# Global service instance
branch_evaluator = BranchEvaluator()
