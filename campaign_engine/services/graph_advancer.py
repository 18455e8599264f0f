# campaign_engine/services/graph_advancer.py
from typing import Dict, List, Any, Optional
from datetime import datetime
import logging

from ..models.campaign_tracking import EnrollmentStatus
from ..utils.timezone_helper import utc_now
from .campaign_enrollment import enrollment_service
from .campaign_graph import CampaignGraph
from .execution_scheduler import execution_scheduler

logger = logging.getLogger(__name__)


class GraphAdvancer:
    """
    Moves a lead along the campaign graph after one of its steps completed

    Must run exactly once per completed execution; the scheduler only hands an
    execution to the executor once, which is what guarantees that.
    """

    def __init__(self, scheduler=None, enrollments=None):
        self.scheduler = scheduler or execution_scheduler
        self.enrollments = enrollments or enrollment_service

    async def advance_from(
        self,
        execution: Dict[str, Any],
        result: Optional[Dict[str, Any]],
        graph: CampaignGraph,
        now: Optional[datetime] = None
    ) -> List[Dict[str, Any]]:
        """
        Schedule the successors of a completed execution

        Args:
            execution: The execution that just completed
            result: Its result; branching blocks carry ``outcome``
            graph: Graph of the execution's campaign

        Returns:
            Newly scheduled execution documents (empty when the lead finished
            or was removed meanwhile)
        """
        now = now or utc_now()
        enrollment_id = execution["enrollment_id"]
        block_id = execution["block_id"]

        await self.enrollments.record_step(enrollment_id, block_id)

        outcome = (result or {}).get("outcome")
        targets = graph.successors(block_id, outcome)
        delay = graph.delay_after(block_id)

        enrollment = await self.enrollments.get_enrollment(enrollment_id)
        status = enrollment["status"] if enrollment else None
        if status == EnrollmentStatus.COMPLETED.value and targets:
            # A sibling branch saw no open work and finished the lead before
            # this branch could schedule its successors
            if not await self.enrollments.reopen_enrollment(enrollment_id):
                logger.info(f"Enrollment {enrollment_id} changed state, not advancing past {block_id}")
                return []
        elif status != EnrollmentStatus.ACTIVE.value:
            logger.info(f"Enrollment {enrollment_id} is no longer active, not advancing past {block_id}")
            return []

        scheduled = []
        for target_id in targets:
            target = graph.block(target_id)
            execution_doc = await self.scheduler.schedule(
                campaign_id=execution["campaign_id"],
                enrollment_id=enrollment_id,
                lead_id=execution["lead_id"],
                block_id=target_id,
                block_type=target.type,
                delay=delay,
                now=now
            )
            if execution_doc:
                scheduled.append(execution_doc)

        if targets:
            logger.info(
                f"Lead {execution['lead_id']}: {block_id}"
                + (f" [{outcome}]" if outcome else "")
                + f" -> {', '.join(targets)}"
                + (f" after {delay}" if delay else "")
            )
            return scheduled

        # End of this path; other branches of the same lead may still be running
        remaining = await self.scheduler.count_non_terminal(enrollment_id=enrollment_id)
        if remaining == 0:
            await self.enrollments.complete_enrollment(enrollment_id)
        else:
            logger.debug(f"Enrollment {enrollment_id} reached the end of a path, {remaining} executions still open")

        return scheduled


# Global service instance
graph_advancer = GraphAdvancer()
