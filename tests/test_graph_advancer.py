"""
Tests for advancing leads through the graph: wait delays, branch selection
and enrollment completion.
"""
from datetime import timedelta

import pytest
from bson import ObjectId

from campaign_engine.models.campaign_tracking import CampaignEnrollment
from campaign_engine.services.campaign_enrollment import enrollment_service
from campaign_engine.services.campaign_graph import CampaignGraph
from campaign_engine.services.campaign_service import campaign_service
from campaign_engine.services.execution_scheduler import execution_scheduler
from campaign_engine.services.graph_advancer import graph_advancer

from conftest import block, create_active_campaign, edge, seed_lead


async def _seed_enrollment(db, campaign_id, lead_id, now):
    enrollment = CampaignEnrollment(
        enrollment_id=f"ENR_{ObjectId()}",
        campaign_id=campaign_id,
        lead_id=lead_id,
        enrolled_at=now,
        created_at=now,
        updated_at=now
    )
    await db.campaign_enrollments.insert_one(enrollment.model_dump())
    return enrollment.model_dump()


def _completed_execution(enrollment, block_id, block_type):
    return {
        "execution_id": f"EXEC_{ObjectId()}",
        "campaign_id": enrollment["campaign_id"],
        "enrollment_id": enrollment["enrollment_id"],
        "lead_id": enrollment["lead_id"],
        "block_id": block_id,
        "block_type": block_type,
        "status": "completed",
    }


class TestLinearCampaign:
    """wait(5 minutes) -> send_email, one lead."""

    @pytest.mark.asyncio
    async def test_end_to_end(self, db, executor, email_transport, admin_user, now):
        await seed_lead(db, "LD-1")
        campaign = await create_active_campaign(
            db, admin_user,
            [block("w1", "wait", duration=5, unit="minutes"), block("e1", "send_email", subject="Hi", content="Hi")],
            [edge("w1", "e1")]
        )
        campaign_id = campaign["campaign_id"]

        # Activation: one enrollment, one immediate execution for the wait block
        assert await db.campaign_enrollments.count_documents({"campaign_id": campaign_id}) == 1
        [wait_execution] = await execution_scheduler.pull_due()
        assert wait_execution["block_id"] == "w1"

        # Completing the wait schedules the email five minutes later
        outcome = await executor.run(wait_execution, now)
        assert outcome["status"] == "completed"
        [email_id] = outcome["scheduled"]
        email_execution = await execution_scheduler.get_execution(email_id)
        assert email_execution["block_id"] == "e1"
        assert email_execution["scheduled_for"] == now + timedelta(minutes=5)

        assert await execution_scheduler.pull_due(now=now + timedelta(minutes=4)) == []
        [due] = await execution_scheduler.pull_due(now=now + timedelta(minutes=5))

        # The email has no outgoing connection: the enrollment completes
        outcome = await executor.run(due, now + timedelta(minutes=5))
        assert outcome["scheduled"] == []
        email_transport.send_email.assert_awaited_once()

        enrollment = await enrollment_service.get_enrollment_for_lead(campaign_id, "LD-1")
        assert enrollment["status"] == "completed"
        assert enrollment["path_taken"] == ["w1", "e1"]
        assert enrollment["completed_at"] is not None

        stored = await campaign_service.get_campaign(campaign_id)
        assert stored["metrics"]["completed"] == 1
        assert stored["metrics"]["active"] == 0
        assert stored["metrics"]["sent"] == 1


class TestBranching:
    """Branch outcome decides which successor is scheduled."""

    @pytest.mark.asyncio
    async def test_false_outcome_schedules_false_path_only(self, db, now):
        blocks = [
            block("c1", "conditional", condition="email_opened", true_path=["A"], false_path=["B"]),
            block("A", "add_tag", tag_id="t1"),
            block("B", "remove_tag", tag_id="t1"),
        ]
        graph = CampaignGraph.from_documents(blocks, [])
        enrollment = await _seed_enrollment(db, "CAMP_1", "LD-1", now)

        scheduled = await graph_advancer.advance_from(
            _completed_execution(enrollment, "c1", "conditional"),
            {"outcome": "false"},
            graph,
            now
        )

        assert [e["block_id"] for e in scheduled] == ["B"]
        assert await db.campaign_executions.count_documents({"block_id": "A"}) == 0

    @pytest.mark.asyncio
    async def test_ab_outcome_follows_labelled_edge(self, db, now):
        blocks = [block("ab", "ab_test", split_percentage=30), block("A", "wait"), block("B", "wait")]
        graph = CampaignGraph.from_documents(blocks, [edge("ab", "A", "A"), edge("ab", "B", "B")])
        enrollment = await _seed_enrollment(db, "CAMP_1", "LD-1", now)

        scheduled = await graph_advancer.advance_from(
            _completed_execution(enrollment, "ab", "ab_test"), {"outcome": "A"}, graph, now
        )

        assert [e["block_id"] for e in scheduled] == ["A"]

    @pytest.mark.asyncio
    async def test_branch_with_no_target_for_outcome_completes(self, db, now):
        blocks = [block("c1", "conditional", true_path=["A"]), block("A", "wait")]
        graph = CampaignGraph.from_documents(blocks, [])
        enrollment = await _seed_enrollment(db, "CAMP_1", "LD-1", now)
        await db.automation_campaigns.insert_one({
            "campaign_id": "CAMP_1", "status": "active", "metrics": {"active": 1, "completed": 0}
        })

        scheduled = await graph_advancer.advance_from(
            _completed_execution(enrollment, "c1", "conditional"), {"outcome": "false"}, graph, now
        )

        assert scheduled == []
        stored = await enrollment_service.get_enrollment(enrollment["enrollment_id"])
        assert stored["status"] == "completed"
        assert stored["path_taken"] == ["c1"]


class TestEnrollmentState:
    """Advancing respects the enrollment's status and open work."""

    @pytest.mark.asyncio
    async def test_removed_enrollment_is_not_advanced(self, db, now):
        graph = CampaignGraph.from_documents([block("w1", "wait"), block("w2", "wait")], [edge("w1", "w2")])
        enrollment = await _seed_enrollment(db, "CAMP_1", "LD-1", now)
        await db.campaign_enrollments.update_one(
            {"enrollment_id": enrollment["enrollment_id"]}, {"$set": {"status": "removed"}}
        )

        scheduled = await graph_advancer.advance_from(
            _completed_execution(enrollment, "w1", "wait"), {"success": True}, graph, now
        )

        assert scheduled == []
        assert await db.campaign_executions.count_documents({}) == 0

    @pytest.mark.asyncio
    async def test_path_end_waits_for_other_open_branches(self, db, now):
        graph = CampaignGraph.from_documents([block("w1", "wait"), block("w2", "wait")], [])
        enrollment = await _seed_enrollment(db, "CAMP_1", "LD-1", now)
        await execution_scheduler.schedule(
            "CAMP_1", enrollment["enrollment_id"], "LD-1", "w2", "wait", now=now
        )

        await graph_advancer.advance_from(
            _completed_execution(enrollment, "w1", "wait"), {"success": True}, graph, now
        )

        stored = await enrollment_service.get_enrollment(enrollment["enrollment_id"])
        assert stored["status"] == "active"

    @pytest.mark.asyncio
    async def test_sibling_branch_finishing_first_does_not_drop_successors(self, db, now):
        # c1 fans out to A and B; only A has a successor. Both run in the same
        # sweep and B's advance sees no open work before A schedules C.
        blocks = [
            block("c1", "conditional", true_path=["A", "B"]),
            block("A", "wait"),
            block("B", "wait"),
            block("C", "wait"),
        ]
        graph = CampaignGraph.from_documents(blocks, [edge("A", "C")])
        enrollment = await _seed_enrollment(db, "CAMP_1", "LD-1", now)
        await db.automation_campaigns.insert_one({
            "campaign_id": "CAMP_1", "status": "active", "metrics": {"active": 1, "completed": 0}
        })

        assert await graph_advancer.advance_from(
            _completed_execution(enrollment, "B", "wait"), {"success": True}, graph, now
        ) == []
        finished_early = await enrollment_service.get_enrollment(enrollment["enrollment_id"])
        assert finished_early["status"] == "completed"

        scheduled = await graph_advancer.advance_from(
            _completed_execution(enrollment, "A", "wait"), {"success": True}, graph, now
        )

        assert [e["block_id"] for e in scheduled] == ["C"]
        reopened = await enrollment_service.get_enrollment(enrollment["enrollment_id"])
        assert reopened["status"] == "active"
        assert reopened["completed_at"] is None
        campaign = await campaign_service.get_campaign("CAMP_1")
        assert campaign["metrics"]["active"] == 1
        assert campaign["metrics"]["completed"] == 0

        # The lead finishes once C, the last open step, completes
        await db.campaign_executions.update_one(
            {"execution_id": scheduled[0]["execution_id"]},
            {"$set": {"status": "completed"}, "$unset": {"claim_key": ""}}
        )
        await graph_advancer.advance_from(
            _completed_execution(enrollment, "C", "wait"), {"success": True}, graph, now
        )

        finished = await enrollment_service.get_enrollment(enrollment["enrollment_id"])
        assert finished["status"] == "completed"
        assert finished["path_taken"] == ["B", "A", "C"]
        campaign = await campaign_service.get_campaign("CAMP_1")
        assert campaign["metrics"]["active"] == 0
        assert campaign["metrics"]["completed"] == 1

    @pytest.mark.asyncio
    async def test_unenrolled_lead_is_not_reopened(self, db, now):
        graph = CampaignGraph.from_documents([block("A", "wait"), block("C", "wait")], [edge("A", "C")])
        enrollment = await _seed_enrollment(db, "CAMP_1", "LD-1", now)
        await db.campaign_enrollments.update_one(
            {"enrollment_id": enrollment["enrollment_id"]}, {"$set": {"status": "removed"}}
        )

        scheduled = await graph_advancer.advance_from(
            _completed_execution(enrollment, "A", "wait"), {"success": True}, graph, now
        )

        assert scheduled == []
        assert (await enrollment_service.get_enrollment(enrollment["enrollment_id"]))["status"] == "removed"
