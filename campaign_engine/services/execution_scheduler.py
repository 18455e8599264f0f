# campaign_engine/services/execution_scheduler.py
from typing import Dict, List, Any, Optional
from datetime import datetime, timedelta
from bson import ObjectId
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError
import logging

from ..config.database import get_database
from ..models.campaign import CampaignStatus
from ..models.campaign_tracking import (
    CampaignExecution,
    ExecutionStatus,
    NON_TERMINAL_EXECUTION_STATUSES,
    build_claim_key,
)
from ..models.errors import SchedulingError
from ..utils.timezone_helper import utc_now

logger = logging.getLogger(__name__)


class ExecutionScheduler:
    """
    Durable queue of per-lead, per-block executions

    An execution holds a ``claim_key`` while it is pending or executing. The
    unique sparse index on that field is what guarantees at most one
    non-terminal execution per (enrollment, block).
    """

    def __init__(self):
        self.collection_name = "campaign_executions"
        self.campaigns_collection = "automation_campaigns"

    @property
    def db(self):
        """Get database connection"""
        return get_database()

    async def schedule(
        self,
        campaign_id: str,
        enrollment_id: str,
        lead_id: str,
        block_id: str,
        block_type: str,
        delay: Optional[timedelta] = None,
        now: Optional[datetime] = None
    ) -> Optional[Dict[str, Any]]:
        """
        Queue a block for a lead

        Args:
            delay: Non-negative offset from ``now``; None runs as soon as possible

        Returns:
            The new execution document, or None when a non-terminal execution
            already exists for this (enrollment, block)

        Raises:
            SchedulingError: negative delay
        """
        delay = delay or timedelta(0)
        if delay < timedelta(0):
            raise SchedulingError(f"Cannot schedule block {block_id} in the past (delay {delay})")

        now = now or utc_now()
        execution = CampaignExecution(
            execution_id=f"EXEC_{ObjectId()}",
            campaign_id=campaign_id,
            enrollment_id=enrollment_id,
            lead_id=lead_id,
            block_id=block_id,
            block_type=block_type,
            scheduled_for=now + delay,
            status=ExecutionStatus.PENDING,
            claim_key=build_claim_key(enrollment_id, block_id),
            created_at=now,
            updated_at=now
        )
        execution_doc = execution.model_dump()

        try:
            await self.db[self.collection_name].insert_one(execution_doc)
        except DuplicateKeyError:
            logger.warning(
                f"Block {block_id} already scheduled for enrollment {enrollment_id}, skipping duplicate"
            )
            return None

        logger.debug(f"Scheduled {block_type} block {block_id} for lead {lead_id} at {execution_doc['scheduled_for']}")
        return execution_doc

    async def active_campaign_ids(self) -> List[str]:
        campaigns = await self.db[self.campaigns_collection].find(
            {"status": CampaignStatus.ACTIVE.value},
            {"campaign_id": 1}
        ).to_list(None)
        return [c["campaign_id"] for c in campaigns]

    async def pull_due(self, now: Optional[datetime] = None, limit: int = 50) -> List[Dict[str, Any]]:
        """
        Claim up to ``limit`` due executions of active campaigns

        Each claim is a single atomic pending -> executing update, so two
        concurrent sweeps can never hand out the same execution.
        """
        now = now or utc_now()
        active_campaign_ids = await self.active_campaign_ids()
        if not active_campaign_ids:
            return []

        claimed = []
        while len(claimed) < limit:
            execution = await self.db[self.collection_name].find_one_and_update(
                {
                    "status": ExecutionStatus.PENDING.value,
                    "scheduled_for": {"$lte": now},
                    "campaign_id": {"$in": active_campaign_ids}
                },
                {
                    "$set": {
                        "status": ExecutionStatus.EXECUTING.value,
                        "claimed_at": now,
                        "updated_at": now
                    },
                    "$inc": {"attempts": 1}
                },
                sort=[("scheduled_for", 1)],
                return_document=ReturnDocument.AFTER
            )
            if execution is None:
                break
            claimed.append(execution)

        if claimed:
            logger.info(f"Claimed {len(claimed)} due campaign executions")
        return claimed

    async def mark_completed(self, execution_id: str, result: Optional[Dict[str, Any]] = None) -> bool:
        """
        executing -> completed

        Returns:
            False if the execution was not in ``executing`` (it must not be advanced)
        """
        now = utc_now()
        update = await self.db[self.collection_name].update_one(
            {"execution_id": execution_id, "status": ExecutionStatus.EXECUTING.value},
            {
                "$set": {
                    "status": ExecutionStatus.COMPLETED.value,
                    "executed_at": now,
                    "result": result,
                    "updated_at": now
                },
                "$unset": {"claim_key": ""}
            }
        )
        return update.modified_count == 1

    async def mark_failed(self, execution_id: str, error: str) -> bool:
        """executing -> failed (terminal, never retried)"""
        now = utc_now()
        update = await self.db[self.collection_name].update_one(
            {"execution_id": execution_id, "status": ExecutionStatus.EXECUTING.value},
            {
                "$set": {
                    "status": ExecutionStatus.FAILED.value,
                    "executed_at": now,
                    "error": error,
                    "updated_at": now
                },
                "$unset": {"claim_key": ""}
            }
        )
        return update.modified_count == 1

    async def fail_stale_executions(
        self,
        older_than: timedelta,
        now: Optional[datetime] = None
    ) -> List[Dict[str, Any]]:
        """
        Fail executions claimed longer ago than ``older_than``

        A sweep that dies mid-run leaves its claimed executions ``executing``
        with their claim key held. They end like any other failed step: the
        claim key is released and nothing downstream is scheduled.

        Returns:
            The executions that were failed
        """
        now = now or utc_now()
        cutoff = now - older_than
        error = f"Execution abandoned: still executing after {older_than}"

        failed = []
        while True:
            execution = await self.db[self.collection_name].find_one_and_update(
                {"status": ExecutionStatus.EXECUTING.value, "claimed_at": {"$lt": cutoff}},
                {
                    "$set": {
                        "status": ExecutionStatus.FAILED.value,
                        "executed_at": now,
                        "error": error,
                        "updated_at": now
                    },
                    "$unset": {"claim_key": ""}
                },
                return_document=ReturnDocument.AFTER
            )
            if execution is None:
                break
            failed.append(execution)

        if failed:
            logger.warning(f"⚠️ Failed {len(failed)} stale executions claimed before {cutoff}")
        return failed

    async def defer(self, execution_id: str, run_at: datetime, evaluation_deadline: datetime) -> bool:
        """
        executing -> pending, to be evaluated again at ``run_at``

        The execution keeps its claim key, so nothing else can be scheduled
        for the same (enrollment, block) meanwhile.
        """
        now = utc_now()
        if run_at < now:
            run_at = now
        update = await self.db[self.collection_name].update_one(
            {"execution_id": execution_id, "status": ExecutionStatus.EXECUTING.value},
            {
                "$set": {
                    "status": ExecutionStatus.PENDING.value,
                    "scheduled_for": run_at,
                    "evaluation_deadline": evaluation_deadline,
                    "updated_at": now
                }
            }
        )
        return update.modified_count == 1

    async def cancel_pending(
        self,
        campaign_id: Optional[str] = None,
        enrollment_id: Optional[str] = None
    ) -> int:
        """Cancel pending executions of a campaign or of one enrollment"""
        query: Dict[str, Any] = {"status": ExecutionStatus.PENDING.value}
        if campaign_id:
            query["campaign_id"] = campaign_id
        if enrollment_id:
            query["enrollment_id"] = enrollment_id
        if len(query) == 1:
            raise ValueError("cancel_pending needs a campaign_id or an enrollment_id")

        result = await self.db[self.collection_name].update_many(
            query,
            {
                "$set": {
                    "status": ExecutionStatus.CANCELLED.value,
                    "updated_at": utc_now()
                },
                "$unset": {"claim_key": ""}
            }
        )
        if result.modified_count:
            logger.info(f"Cancelled {result.modified_count} pending executions ({query})")
        return result.modified_count

    async def count_non_terminal(self, enrollment_id: Optional[str] = None, campaign_id: Optional[str] = None) -> int:
        query: Dict[str, Any] = {"status": {"$in": NON_TERMINAL_EXECUTION_STATUSES}}
        if enrollment_id:
            query["enrollment_id"] = enrollment_id
        if campaign_id:
            query["campaign_id"] = campaign_id
        return await self.db[self.collection_name].count_documents(query)

    async def last_completed_at(self, enrollment_id: str, block_types: List[str]) -> Optional[datetime]:
        """When the enrollment last completed a block of one of ``block_types``"""
        latest = await self.db[self.collection_name].find({
            "enrollment_id": enrollment_id,
            "block_type": {"$in": block_types},
            "status": ExecutionStatus.COMPLETED.value
        }).sort("executed_at", -1).limit(1).to_list(length=1)
        return latest[0]["executed_at"] if latest else None

    async def get_execution(self, execution_id: str) -> Optional[Dict[str, Any]]:
        return await self.db[self.collection_name].find_one({"execution_id": execution_id}, {"_id": 0})

    async def list_executions(
        self,
        campaign_id: str,
        status: Optional[str] = None,
        lead_id: Optional[str] = None,
        skip: int = 0,
        limit: int = 50
    ) -> Dict[str, Any]:
        """Executions of a campaign, newest first, for operator inspection"""
        query: Dict[str, Any] = {"campaign_id": campaign_id}
        if status:
            query["status"] = status
        if lead_id:
            query["lead_id"] = lead_id

        total = await self.db[self.collection_name].count_documents(query)
        executions = await self.db[self.collection_name].find(query, {"_id": 0, "claim_key": 0})\
            .sort("scheduled_for", -1)\
            .skip(skip)\
            .limit(limit)\
            .to_list(length=limit)

        return {"executions": executions, "total": total}

    async def count_by_status(self, campaign_id: str) -> Dict[str, int]:
        counts = {}
        for execution_status in ExecutionStatus:
            counts[execution_status.value] = await self.db[self.collection_name].count_documents({
                "campaign_id": campaign_id,
                "status": execution_status.value
            })
        return counts

    async def next_scheduled_at(self, campaign_id: str) -> Optional[datetime]:
        upcoming = await self.db[self.collection_name].find(
            {"campaign_id": campaign_id, "status": ExecutionStatus.PENDING.value}
        ).sort("scheduled_for", 1).limit(1).to_list(length=1)
        return upcoming[0]["scheduled_for"] if upcoming else None

    async def delete_for_campaign(self, campaign_id: str) -> int:
        result = await self.db[self.collection_name].delete_many({"campaign_id": campaign_id})
        return result.deleted_count


# Global service instance
execution_scheduler = ExecutionScheduler()
