# campaign_engine/services/campaign_enrollment.py
from typing import Dict, Any, Optional
from datetime import datetime
from bson import ObjectId
from pymongo.errors import DuplicateKeyError
import logging

from ..config.database import get_database
from ..models.campaign import TargetingRule
from ..models.campaign_tracking import CampaignEnrollment, EnrollmentStatus
from ..models.errors import CampaignStateError
from ..utils.timezone_helper import utc_now
from .campaign_graph import CampaignGraph
from .execution_scheduler import execution_scheduler
from .lead_store import lead_store

logger = logging.getLogger(__name__)


class EnrollmentService:
    """Service for enrolling leads in campaigns and tracking their progress"""

    def __init__(self, scheduler=None, leads=None):
        self.collection_name = "campaign_enrollments"
        self.scheduler = scheduler or execution_scheduler
        self.leads = leads or lead_store

    @property
    def db(self):
        """Get database connection"""
        return get_database()

    async def enroll_leads_in_campaign(
        self,
        campaign: Dict[str, Any],
        user: Optional[Dict[str, Any]],
        now: Optional[datetime] = None
    ) -> Dict[str, Any]:
        """
        Find matching leads and enroll them in campaign

        Every new enrollment starts at the campaign's first block, which is
        scheduled to run immediately. A lead that cannot be enrolled is logged
        and skipped; the rest of the batch continues.

        Args:
            campaign: Campaign document (already validated for activation)
            user: Campaign owner, decides which leads are visible

        Returns:
            Dictionary with enrolled_count, total_matching and failed_count
        """
        campaign_id = campaign["campaign_id"]
        graph = CampaignGraph.from_campaign(campaign)
        entry_block = graph.block(graph.entry_block_id) if graph.entry_block_id else None
        if entry_block is None:
            raise CampaignStateError(f"Campaign {campaign_id} has no blocks to enroll leads into")

        selection = TargetingRule(**(campaign.get("lead_selection") or {}))
        matching_leads = await self.leads.find_leads_for_selection(selection, user)

        logger.info(f"Found {len(matching_leads)} matching leads for campaign {campaign_id}")

        enrolled_count = 0
        failed_count = 0
        for lead in matching_leads:
            try:
                enrollment = await self._enroll_single_lead(campaign_id, lead["lead_id"], entry_block, now)
                if enrollment:
                    enrolled_count += 1
            except Exception as e:
                failed_count += 1
                logger.error(f"Error enrolling lead {lead.get('lead_id')} in campaign {campaign_id}: {str(e)}")
                continue

        logger.info(
            f"Enrolled {enrolled_count}/{len(matching_leads)} leads in campaign {campaign_id}"
            + (f" ({failed_count} failed)" if failed_count else "")
        )

        return {
            "enrolled_count": enrolled_count,
            "total_matching": len(matching_leads),
            "failed_count": failed_count
        }

    async def _enroll_single_lead(
        self,
        campaign_id: str,
        lead_id: str,
        entry_block,
        now: Optional[datetime] = None
    ) -> Optional[Dict[str, Any]]:
        """
        Create the enrollment record and queue the entry block

        Returns:
            The enrollment document, or None if the lead was already enrolled
        """
        now = now or utc_now()
        enrollment = CampaignEnrollment(
            enrollment_id=f"ENR_{ObjectId()}",
            campaign_id=campaign_id,
            lead_id=lead_id,
            status=EnrollmentStatus.ACTIVE,
            current_block_id=entry_block.id,
            enrolled_at=now,
            created_at=now,
            updated_at=now
        )
        enrollment_doc = enrollment.model_dump()

        try:
            await self.db[self.collection_name].insert_one(enrollment_doc)
        except DuplicateKeyError:
            logger.info(f"Lead {lead_id} already enrolled in campaign {campaign_id}, skipping")
            return None

        try:
            await self.scheduler.schedule(
                campaign_id=campaign_id,
                enrollment_id=enrollment.enrollment_id,
                lead_id=lead_id,
                block_id=entry_block.id,
                block_type=entry_block.type,
                now=now
            )
        except Exception:
            # An enrollment without its entry execution would never run
            await self.db[self.collection_name].delete_one({"enrollment_id": enrollment.enrollment_id})
            raise

        logger.debug(f"Lead {lead_id} enrolled in campaign {campaign_id}")
        enrollment_doc.pop("_id", None)
        return enrollment_doc

    async def get_enrollment(self, enrollment_id: str) -> Optional[Dict[str, Any]]:
        return await self.db[self.collection_name].find_one({"enrollment_id": enrollment_id}, {"_id": 0})

    async def get_enrollment_for_lead(self, campaign_id: str, lead_id: str) -> Optional[Dict[str, Any]]:
        return await self.db[self.collection_name].find_one(
            {"campaign_id": campaign_id, "lead_id": lead_id},
            {"_id": 0}
        )

    async def record_step(self, enrollment_id: str, block_id: str) -> None:
        """Append a completed block to the enrollment's path"""
        await self.db[self.collection_name].update_one(
            {"enrollment_id": enrollment_id},
            {
                "$push": {"path_taken": block_id},
                "$set": {"current_block_id": block_id, "updated_at": utc_now()}
            }
        )

    async def record_failure(self, enrollment_id: str, error: str) -> None:
        """Keep the last handler error on the enrollment; its status stays unchanged"""
        await self.db[self.collection_name].update_one(
            {"enrollment_id": enrollment_id},
            {"$set": {"last_error": error, "updated_at": utc_now()}}
        )

    async def complete_enrollment(self, enrollment_id: str) -> bool:
        """
        active -> completed

        Returns:
            False if the enrollment was no longer active (metrics untouched)
        """
        from .campaign_service import campaign_service

        enrollment = await self.db[self.collection_name].find_one_and_update(
            {"enrollment_id": enrollment_id, "status": EnrollmentStatus.ACTIVE.value},
            {
                "$set": {
                    "status": EnrollmentStatus.COMPLETED.value,
                    "completed_at": utc_now(),
                    "updated_at": utc_now()
                }
            }
        )
        if not enrollment:
            return False

        await campaign_service.increment_metrics(enrollment["campaign_id"], completed=1, active=-1)
        logger.info(f"✅ Lead {enrollment['lead_id']} completed campaign {enrollment['campaign_id']}")
        return True

    async def reopen_enrollment(self, enrollment_id: str) -> bool:
        """
        completed -> active, for a lead that still has a branch to schedule

        Returns:
            False if the enrollment was not completed
        """
        from .campaign_service import campaign_service

        enrollment = await self.db[self.collection_name].find_one_and_update(
            {"enrollment_id": enrollment_id, "status": EnrollmentStatus.COMPLETED.value},
            {
                "$set": {
                    "status": EnrollmentStatus.ACTIVE.value,
                    "completed_at": None,
                    "updated_at": utc_now()
                }
            }
        )
        if not enrollment:
            return False

        await campaign_service.increment_metrics(enrollment["campaign_id"], completed=-1, active=1)
        logger.info(f"Lead {enrollment['lead_id']} reopened in campaign {enrollment['campaign_id']}, another branch is still running")
        return True

    async def unenroll_lead(self, campaign_id: str, lead_id: str) -> Dict[str, Any]:
        """
        Remove a lead from a campaign

        The enrollment becomes ``removed`` and its pending executions are
        cancelled. Work already claimed by a sweep runs to completion but
        schedules nothing further.

        Raises:
            CampaignStateError: lead not enrolled, or enrollment not active
        """
        from .campaign_service import campaign_service

        enrollment = await self.db[self.collection_name].find_one_and_update(
            {
                "campaign_id": campaign_id,
                "lead_id": lead_id,
                "status": EnrollmentStatus.ACTIVE.value
            },
            {
                "$set": {
                    "status": EnrollmentStatus.REMOVED.value,
                    "removed_at": utc_now(),
                    "updated_at": utc_now()
                }
            }
        )
        if not enrollment:
            existing = await self.get_enrollment_for_lead(campaign_id, lead_id)
            if not existing:
                raise CampaignStateError(f"Lead {lead_id} is not enrolled in campaign {campaign_id}")
            raise CampaignStateError(f"Enrollment of lead {lead_id} is already {existing['status']}")

        cancelled = await self.scheduler.cancel_pending(enrollment_id=enrollment["enrollment_id"])
        await campaign_service.increment_metrics(campaign_id, active=-1)

        logger.info(f"Lead {lead_id} unenrolled from campaign {campaign_id} ({cancelled} pending executions cancelled)")
        return {
            "enrollment_id": enrollment["enrollment_id"],
            "lead_id": lead_id,
            "cancelled_executions": cancelled
        }

    async def list_enrollments(
        self,
        campaign_id: str,
        status: Optional[str] = None,
        skip: int = 0,
        limit: int = 50
    ) -> Dict[str, Any]:
        query: Dict[str, Any] = {"campaign_id": campaign_id}
        if status:
            query["status"] = status

        total = await self.db[self.collection_name].count_documents(query)
        enrollments = await self.db[self.collection_name].find(query, {"_id": 0})\
            .sort("enrolled_at", 1)\
            .skip(skip)\
            .limit(limit)\
            .to_list(length=limit)

        return {"enrollments": enrollments, "total": total}

    async def count_by_status(self, campaign_id: str) -> Dict[str, int]:
        counts = {"total": 0}
        for enrollment_status in EnrollmentStatus:
            count = await self.db[self.collection_name].count_documents({
                "campaign_id": campaign_id,
                "status": enrollment_status.value
            })
            counts[enrollment_status.value] = count
            counts["total"] += count
        return counts

    async def count_active(self, campaign_id: str) -> int:
        return await self.db[self.collection_name].count_documents({
            "campaign_id": campaign_id,
            "status": EnrollmentStatus.ACTIVE.value
        })

    async def delete_for_campaign(self, campaign_id: str) -> int:
        result = await self.db[self.collection_name].delete_many({"campaign_id": campaign_id})
        return result.deleted_count


# Global service instance
enrollment_service = EnrollmentService()
