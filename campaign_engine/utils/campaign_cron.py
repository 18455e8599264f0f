# campaign_engine/utils/campaign_cron.py
import asyncio
from datetime import datetime, timedelta
from typing import Dict, Any, List, Optional
import logging

from ..config.settings import settings
from ..services.block_executor import block_executor
from ..services.campaign_enrollment import enrollment_service
from ..services.campaign_service import campaign_service
from ..services.execution_scheduler import execution_scheduler

logger = logging.getLogger(__name__)


class CampaignCron:
    """
    Periodic sweep over due campaign executions

    Each tick claims a bounded batch, runs it concurrently (at most
    ``concurrency`` at a time) and waits for the whole batch before sleeping.
    """

    def __init__(
        self,
        scheduler=None,
        executor=None,
        campaigns=None,
        enrollments=None,
        interval_seconds: Optional[int] = None,
        batch_size: Optional[int] = None,
        concurrency: Optional[int] = None
    ):
        self.scheduler = scheduler or execution_scheduler
        self.executor = executor or block_executor
        self.campaigns = campaigns or campaign_service
        self.enrollments = enrollments or enrollment_service
        self.interval_seconds = interval_seconds or settings.campaign_sweep_interval_seconds
        self.batch_size = batch_size or settings.campaign_sweep_batch_size
        self.concurrency = concurrency or settings.campaign_sweep_concurrency
        self.stale_after = timedelta(minutes=settings.campaign_stale_execution_minutes)

        self.is_running = False
        self.task: Optional[asyncio.Task] = None

    async def start(self):
        """Start the campaign cron job"""
        if self.is_running:
            logger.warning("Campaign cron is already running")
            return

        self.is_running = True
        self.task = asyncio.create_task(self._run_loop())
        logger.info(f"Campaign cron started - sweeping every {self.interval_seconds}s")

    async def stop(self):
        """Stop the campaign cron job"""
        if not self.is_running:
            return

        self.is_running = False

        if self.task:
            self.task.cancel()
            try:
                await self.task
            except asyncio.CancelledError:
                pass

        logger.info("Campaign cron stopped")

    async def _run_loop(self):
        while self.is_running:
            try:
                await self.run_once()
            except asyncio.CancelledError:
                break
            except Exception as e:
                # Unclaimed work stays pending and is picked up next tick
                logger.error(f"Error in campaign cron loop: {str(e)}")

            await asyncio.sleep(self.interval_seconds)

    async def run_once(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """
        One sweep tick

        Returns:
            Counts of claimed executions by outcome and campaigns auto-completed
        """
        await self._fail_stale_executions(now)

        executions = await self.scheduler.pull_due(now=now, limit=self.batch_size)
        summary: Dict[str, Any] = {"claimed": len(executions), "completed": 0, "failed": 0, "deferred": 0}
        if executions:
            await self._run_batch(executions, now, summary)
        else:
            logger.debug("No due campaign executions")

        # Campaigns without due work (nobody enrolled, last lead unenrolled)
        # are checked too
        summary["campaigns_completed"] = await self._complete_finished_campaigns(
            {execution["campaign_id"] for execution in executions}
        )
        return summary

    async def _run_batch(self, executions: List[Dict[str, Any]], now: Optional[datetime], summary: Dict[str, Any]):
        semaphore = asyncio.Semaphore(self.concurrency)

        async def _run(execution: Dict[str, Any]) -> Dict[str, Any]:
            async with semaphore:
                return await self.executor.run(execution, now)

        results = await asyncio.gather(*[_run(execution) for execution in executions], return_exceptions=True)

        for execution, result in zip(executions, results):
            if isinstance(result, Exception):
                logger.error(f"Error executing {execution['execution_id']}: {str(result)}")
                summary["failed"] += 1
            elif result["status"] == "completed":
                summary["completed"] += 1
            elif result["status"] == "failed":
                summary["failed"] += 1
            elif result["status"] == "pending":
                summary["deferred"] += 1

        logger.info(
            f"Campaign sweep: {summary['claimed']} claimed, {summary['completed']} completed, "
            f"{summary['failed']} failed, {summary['deferred']} deferred"
        )

    async def _fail_stale_executions(self, now: Optional[datetime]):
        try:
            stale = await self.scheduler.fail_stale_executions(self.stale_after, now=now)
            for execution in stale:
                await self.enrollments.record_failure(execution["enrollment_id"], execution["error"])
        except Exception as e:
            logger.error(f"Error failing stale campaign executions: {str(e)}")

    async def _complete_finished_campaigns(self, campaign_ids) -> List[str]:
        campaign_ids = set(campaign_ids)
        try:
            campaign_ids.update(await self.scheduler.active_campaign_ids())
        except Exception as e:
            logger.error(f"Error listing active campaigns: {str(e)}")

        completed = []
        for campaign_id in sorted(campaign_ids):
            try:
                if await self.campaigns.check_and_complete_campaign(campaign_id):
                    completed.append(campaign_id)
            except Exception as e:
                logger.error(f"Error checking completion of campaign {campaign_id}: {str(e)}")
        return completed


# Global cron instance
campaign_cron = CampaignCron()


async def start_campaign_cron():
    """Start the campaign cron (call on app startup)"""
    await campaign_cron.start()


async def stop_campaign_cron():
    """Stop the campaign cron (call on app shutdown)"""
    await campaign_cron.stop()
