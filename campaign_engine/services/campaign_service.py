# campaign_engine/services/campaign_service.py
from typing import Dict, List, Any, Optional
from bson import ObjectId
import logging

from ..config.database import get_database
from ..models.campaign import (
    CampaignCreateRequest,
    CampaignMetrics,
    CampaignStatus,
    CampaignUpdateRequest,
    dump_block,
)
from ..models.errors import (
    CampaignNotFoundError,
    CampaignStateError,
    CampaignValidationError,
)
from ..utils.timezone_helper import utc_now
from .campaign_event_service import campaign_event_service
from .campaign_graph import CampaignGraph, validate_campaign_graph, validate_for_activation
from .execution_scheduler import execution_scheduler
from .lead_store import is_admin

logger = logging.getLogger(__name__)

METRIC_FIELDS = set(CampaignMetrics.model_fields)

# Fields that may still change once a campaign has been activated and paused
PAUSED_EDITABLE_FIELDS = {"name", "description", "lead_selection"}


class CampaignService:
    """Campaign definitions, status transitions and aggregate metrics"""

    def __init__(self, scheduler=None, event_service=None):
        self.collection_name = "automation_campaigns"
        self.scheduler = scheduler or execution_scheduler
        self.event_service = event_service or campaign_event_service

    @property
    def db(self):
        """Get database connection"""
        return get_database()

    @property
    def enrollments(self):
        from .campaign_enrollment import enrollment_service
        return enrollment_service

    # ========================================================================
    # DEFINITION STORE
    # ========================================================================

    async def create_campaign(
        self,
        campaign_data: CampaignCreateRequest,
        created_by: str
    ) -> Dict[str, Any]:
        """
        Create a new campaign in draft

        Args:
            campaign_data: Campaign definition
            created_by: Email of the owner; decides lead visibility on activation

        Returns:
            The stored campaign document

        Raises:
            CampaignValidationError: the block graph is malformed
        """
        logger.info(f"Creating campaign: {campaign_data.name} by {created_by}")

        block_docs = [dump_block(block) for block in campaign_data.blocks]
        connection_docs = [connection.to_document() for connection in campaign_data.connections]
        validate_campaign_graph(block_docs, connection_docs)

        now = utc_now()
        campaign_doc = {
            "campaign_id": f"CAMP_{ObjectId()}",
            "name": campaign_data.name,
            "description": campaign_data.description,
            "status": CampaignStatus.DRAFT.value,
            "lead_selection": campaign_data.lead_selection.model_dump(),
            "blocks": block_docs,
            "connections": connection_docs,
            "metrics": CampaignMetrics().model_dump(),
            "created_by": created_by,
            "created_at": now,
            "updated_at": now,
            "activated_at": None,
            "completed_at": None
        }

        await self.db[self.collection_name].insert_one(campaign_doc)
        campaign_doc.pop("_id", None)

        logger.info(f"Campaign created successfully: {campaign_doc['campaign_id']}")
        return campaign_doc

    async def get_campaign(self, campaign_id: str) -> Optional[Dict[str, Any]]:
        """Get campaign by ID"""
        return await self.db[self.collection_name].find_one({"campaign_id": campaign_id}, {"_id": 0})

    async def require_campaign(self, campaign_id: str) -> Dict[str, Any]:
        campaign = await self.get_campaign(campaign_id)
        if not campaign:
            raise CampaignNotFoundError(campaign_id)
        return campaign

    async def list_campaigns(
        self,
        user: Optional[Dict[str, Any]] = None,
        status: Optional[str] = None,
        skip: int = 0,
        limit: int = 20
    ) -> Dict[str, Any]:
        """
        List campaigns, newest first

        Args:
            user: Admins see every campaign, everyone else only their own
            status: Optional status filter
        """
        query: Dict[str, Any] = {}
        if status:
            query["status"] = status
        if not is_admin(user):
            query["created_by"] = (user or {}).get("email")

        total = await self.db[self.collection_name].count_documents(query)
        campaigns = await self.db[self.collection_name].find(
            query,
            {"_id": 0, "blocks": 0, "connections": 0}
        ).sort("created_at", -1).skip(skip).limit(limit).to_list(length=limit)

        return {
            "campaigns": campaigns,
            "total": total,
            "skip": skip,
            "limit": limit
        }

    async def update_campaign(
        self,
        campaign_id: str,
        update_data: CampaignUpdateRequest
    ) -> Dict[str, Any]:
        """
        Edit a campaign

        Blocks and connections can only change while the campaign is a draft;
        name, description and targeting can also change while paused.

        Raises:
            CampaignNotFoundError, CampaignStateError, CampaignValidationError
        """
        campaign = await self.require_campaign(campaign_id)
        status = campaign["status"]
        changes = update_data.model_dump(exclude_unset=True, by_alias=True)

        if status != CampaignStatus.DRAFT.value:
            if status != CampaignStatus.PAUSED.value:
                raise CampaignStateError(f"Campaign is {status}; pause it before editing")
            locked = sorted(field for field, value in changes.items()
                            if value is not None and field not in PAUSED_EDITABLE_FIELDS)
            if locked:
                raise CampaignStateError(
                    f"{', '.join(locked)} can only be edited while the campaign is a draft"
                )

        update_fields: Dict[str, Any] = {}
        if update_data.name is not None:
            update_fields["name"] = update_data.name.strip()
            if not update_fields["name"]:
                raise CampaignValidationError("name must not be blank")
        if "description" in changes:
            update_fields["description"] = update_data.description
        if update_data.lead_selection is not None:
            update_fields["lead_selection"] = update_data.lead_selection.model_dump()

        if update_data.touches_graph():
            block_docs = (
                [dump_block(block) for block in update_data.blocks]
                if update_data.blocks is not None else campaign.get("blocks") or []
            )
            connection_docs = (
                [connection.to_document() for connection in update_data.connections]
                if update_data.connections is not None else campaign.get("connections") or []
            )
            validate_campaign_graph(block_docs, connection_docs)
            update_fields["blocks"] = block_docs
            update_fields["connections"] = connection_docs

        if not update_fields:
            return campaign

        update_fields["updated_at"] = utc_now()

        # Status is part of the filter so a concurrent activation wins cleanly
        result = await self.db[self.collection_name].update_one(
            {"campaign_id": campaign_id, "status": status},
            {"$set": update_fields}
        )
        if result.matched_count == 0:
            raise CampaignStateError(f"Campaign {campaign_id} changed status during the update")

        logger.info(f"Campaign {campaign_id} updated: {', '.join(k for k in update_fields if k != 'updated_at')}")
        return await self.get_campaign(campaign_id)

    async def increment_metrics(self, campaign_id: str, **deltas: int) -> None:
        """Atomically adjust aggregate counters, e.g. ``sent=1`` or ``active=-1``"""
        unknown = set(deltas) - METRIC_FIELDS
        if unknown:
            raise ValueError(f"Unknown campaign metrics: {', '.join(sorted(unknown))}")

        increments = {f"metrics.{name}": value for name, value in deltas.items() if value}
        if not increments:
            return

        await self.db[self.collection_name].update_one(
            {"campaign_id": campaign_id},
            {"$inc": increments, "$set": {"updated_at": utc_now()}}
        )

    # ========================================================================
    # LIFECYCLE
    # ========================================================================

    async def _transition(
        self,
        campaign_id: str,
        from_statuses: List[str],
        to_status: CampaignStatus,
        extra: Optional[Dict[str, Any]] = None
    ) -> bool:
        """Compare-and-set the campaign status"""
        now = utc_now()
        fields = {"status": to_status.value, "updated_at": now}
        fields.update(extra or {})
        result = await self.db[self.collection_name].update_one(
            {"campaign_id": campaign_id, "status": {"$in": from_statuses}},
            {"$set": fields}
        )
        return result.modified_count == 1

    async def activate_campaign(
        self,
        campaign_id: str,
        user: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        """
        Start a draft campaign, or resume a paused one

        Activating a draft validates the graph, enrolls every matching lead
        and queues each lead's first block. Resuming never re-enrolls.

        Returns:
            Dictionary with status, enrolled_count and resumed flag

        Raises:
            CampaignValidationError: empty or incomplete graph (nothing changes)
            CampaignStateError: campaign is already active or completed
        """
        campaign = await self.require_campaign(campaign_id)
        status = campaign["status"]

        if status == CampaignStatus.PAUSED.value:
            if not await self._transition(campaign_id, [CampaignStatus.PAUSED.value], CampaignStatus.ACTIVE):
                raise CampaignStateError(f"Campaign {campaign_id} is no longer paused")
            logger.info(f"▶️ Campaign {campaign_id} resumed")
            return {"status": CampaignStatus.ACTIVE.value, "enrolled_count": 0, "resumed": True}

        if status != CampaignStatus.DRAFT.value:
            raise CampaignStateError(f"Cannot activate a campaign that is {status}")

        graph = CampaignGraph.from_campaign(campaign)
        validate_for_activation(graph)

        # Enroll while still a draft: sweeps only claim work of active campaigns
        enrollment_result = await self.enrollments.enroll_leads_in_campaign(campaign, user)
        enrolled_count = enrollment_result["enrolled_count"]

        now = utc_now()
        result = await self.db[self.collection_name].update_one(
            {"campaign_id": campaign_id, "status": CampaignStatus.DRAFT.value},
            {
                "$set": {
                    "status": CampaignStatus.ACTIVE.value,
                    "activated_at": now,
                    "updated_at": now
                },
                "$inc": {
                    "metrics.enrolled": enrolled_count,
                    "metrics.active": enrolled_count
                }
            }
        )
        if result.modified_count == 0:
            # A concurrent activation won; keep the counters in line with our enrollments
            await self.increment_metrics(campaign_id, enrolled=enrolled_count, active=enrolled_count)
            raise CampaignStateError(f"Campaign {campaign_id} is no longer a draft")

        logger.info(f"🚀 Campaign {campaign_id} activated with {enrolled_count} enrolled leads")
        return {
            "status": CampaignStatus.ACTIVE.value,
            "enrolled_count": enrolled_count,
            "total_matching": enrollment_result["total_matching"],
            "failed_count": enrollment_result["failed_count"],
            "resumed": False
        }

    async def pause_campaign(self, campaign_id: str) -> Dict[str, Any]:
        """
        active -> paused

        Sweeps stop claiming the campaign's pending executions; work already
        claimed finishes normally.
        """
        campaign = await self.require_campaign(campaign_id)
        if not await self._transition(campaign_id, [CampaignStatus.ACTIVE.value], CampaignStatus.PAUSED):
            raise CampaignStateError(f"Cannot pause a campaign that is {campaign['status']}")

        logger.info(f"⏸️ Campaign {campaign_id} paused")
        return {"status": CampaignStatus.PAUSED.value}

    async def complete_campaign(self, campaign_id: str) -> Dict[str, Any]:
        """
        active/paused -> completed, cancelling every pending execution

        Enrollments keep their status as history.
        """
        campaign = await self.require_campaign(campaign_id)
        if not await self._transition(
            campaign_id,
            [CampaignStatus.ACTIVE.value, CampaignStatus.PAUSED.value],
            CampaignStatus.COMPLETED,
            extra={"completed_at": utc_now()}
        ):
            raise CampaignStateError(f"Cannot complete a campaign that is {campaign['status']}")

        cancelled = await self.scheduler.cancel_pending(campaign_id=campaign_id)
        logger.info(f"Campaign {campaign_id} marked as COMPLETED ({cancelled} pending executions cancelled)")
        return {"status": CampaignStatus.COMPLETED.value, "cancelled_executions": cancelled}

    async def check_and_complete_campaign(self, campaign_id: str) -> bool:
        """
        Complete an active campaign once no lead has anything left to run

        Returns:
            True if the campaign transitioned to completed
        """
        campaign = await self.get_campaign(campaign_id)
        if not campaign or campaign["status"] != CampaignStatus.ACTIVE.value:
            return False

        active_enrollments = await self.enrollments.count_active(campaign_id)
        open_executions = await self.scheduler.count_non_terminal(campaign_id=campaign_id)
        logger.debug(
            f"Campaign {campaign_id}: {active_enrollments} active enrollments, "
            f"{open_executions} open executions"
        )
        if active_enrollments or open_executions:
            return False

        completed = await self._transition(
            campaign_id,
            [CampaignStatus.ACTIVE.value],
            CampaignStatus.COMPLETED,
            extra={"completed_at": utc_now()}
        )
        if completed:
            logger.info(f"✅ Campaign {campaign_id} marked as COMPLETED - every enrollment finished")
        return completed

    async def delete_campaign(self, campaign_id: str) -> Dict[str, Any]:
        """
        Hard delete a campaign with its enrollments, executions and events

        Raises:
            CampaignStateError: campaign is active (pause it first)
        """
        campaign = await self.require_campaign(campaign_id)
        if campaign["status"] == CampaignStatus.ACTIVE.value:
            raise CampaignStateError("Cannot delete an active campaign; pause it first")

        result = await self.db[self.collection_name].delete_one({
            "campaign_id": campaign_id,
            "status": {"$ne": CampaignStatus.ACTIVE.value}
        })
        if result.deleted_count == 0:
            raise CampaignStateError(f"Campaign {campaign_id} was activated during the delete")

        removed = {
            "enrollments": await self.enrollments.delete_for_campaign(campaign_id),
            "executions": await self.scheduler.delete_for_campaign(campaign_id),
            "events": await self.event_service.delete_for_campaign(campaign_id)
        }
        logger.info(f"🗑️ Campaign {campaign_id} deleted ({removed})")
        return {"campaign_id": campaign_id, "deleted": removed}

    # ========================================================================
    # READ MODELS
    # ========================================================================

    async def get_campaign_stats(self, campaign_id: str) -> Dict[str, Any]:
        """Metrics plus enrollment and execution breakdowns by status"""
        campaign = await self.require_campaign(campaign_id)

        enrollment_counts = await self.enrollments.count_by_status(campaign_id)
        execution_counts = await self.scheduler.count_by_status(campaign_id)

        return {
            "campaign_id": campaign_id,
            "name": campaign["name"],
            "status": campaign["status"],
            "metrics": campaign.get("metrics") or CampaignMetrics().model_dump(),
            "enrollments": enrollment_counts,
            "executions": execution_counts,
            "next_scheduled_at": await self.scheduler.next_scheduled_at(campaign_id)
        }


# Global service instance
campaign_service = CampaignService()
