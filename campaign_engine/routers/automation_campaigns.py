# campaign_engine/routers/automation_campaigns.py
from fastapi import APIRouter, Depends, HTTPException, Query, status
from typing import Dict, Any, Optional
import logging

from ..config.database import get_database
from ..utils.dependencies import get_admin_user
from ..models.campaign import (
    CampaignCreateRequest,
    CampaignResponse,
    CampaignUpdateRequest,
)
from ..models.campaign_tracking import CampaignEventRequest, CampaignStatsResponse
from ..models.errors import (
    CampaignNotFoundError,
    CampaignStateError,
    CampaignValidationError,
)
from ..services.campaign_enrollment import enrollment_service
from ..services.campaign_event_service import campaign_event_service
from ..services.campaign_service import campaign_service
from ..services.execution_scheduler import execution_scheduler
from ..services.tag_store import tag_store
from ..utils.campaign_cron import campaign_cron

logger = logging.getLogger(__name__)

router = APIRouter()


def _http_error(e: Exception, action: str) -> HTTPException:
    """Map engine errors onto HTTP status codes"""
    if isinstance(e, CampaignNotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    if isinstance(e, CampaignValidationError):
        return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    if isinstance(e, CampaignStateError):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))

    logger.error(f"Error trying to {action}: {str(e)}")
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail=f"Failed to {action}: {str(e)}"
    )


# ============================================================================
# CAMPAIGN CRUD ENDPOINTS
# ============================================================================

@router.post("/", response_model=CampaignResponse, status_code=status.HTTP_201_CREATED)
async def create_campaign(
    campaign_data: CampaignCreateRequest,
    current_user: Dict[str, Any] = Depends(get_admin_user)
):
    """
    Create a draft campaign (Admin only)

    - Validates the block graph
    - Nothing is enrolled until the campaign is activated
    """
    try:
        admin_email = current_user.get("email")
        logger.info(f"Campaign creation requested by {admin_email}")

        campaign = await campaign_service.create_campaign(campaign_data, created_by=admin_email)

        return CampaignResponse(
            success=True,
            message="Campaign created successfully",
            campaign_id=campaign["campaign_id"],
            status=campaign["status"]
        )

    except HTTPException:
        raise
    except Exception as e:
        raise _http_error(e, "create campaign")


@router.get("/tags")
async def list_tags(current_user: Dict[str, Any] = Depends(get_admin_user)):
    """Tags available to add_tag / remove_tag / has_tags blocks"""
    try:
        tags = await tag_store.list_tags()
        return {"success": True, "tags": tags, "total": len(tags)}
    except Exception as e:
        raise _http_error(e, "list tags")


@router.post("/sweep")
async def run_sweep(current_user: Dict[str, Any] = Depends(get_admin_user)):
    """Run one scheduler sweep immediately (Admin only)"""
    try:
        logger.info(f"Manual campaign sweep requested by {current_user.get('email')}")
        summary = await campaign_cron.run_once()
        return {"success": True, **summary}
    except Exception as e:
        raise _http_error(e, "run campaign sweep")


@router.get("/")
async def list_campaigns(
    status_filter: Optional[str] = Query(None, alias="status", description="Filter by status (draft/active/paused/completed)"),
    page: int = Query(1, ge=1, description="Page number"),
    limit: int = Query(20, ge=1, le=100, description="Items per page"),
    current_user: Dict[str, Any] = Depends(get_admin_user)
):
    """
    List campaigns (Admin only)

    - Optional status filter
    - Paginated, newest first
    """
    try:
        skip = (page - 1) * limit
        result = await campaign_service.list_campaigns(
            user=current_user,
            status=status_filter,
            skip=skip,
            limit=limit
        )

        total = result["total"]
        return {
            "success": True,
            "campaigns": result["campaigns"],
            "pagination": {
                "page": page,
                "limit": limit,
                "total": total,
                "pages": (total + limit - 1) // limit
            }
        }

    except Exception as e:
        raise _http_error(e, "list campaigns")


@router.get("/{campaign_id}")
async def get_campaign(
    campaign_id: str,
    current_user: Dict[str, Any] = Depends(get_admin_user)
):
    """Get full campaign definition and metrics"""
    try:
        campaign = await campaign_service.require_campaign(campaign_id)
        return {"success": True, "campaign": campaign}
    except Exception as e:
        raise _http_error(e, "get campaign")


@router.put("/{campaign_id}")
async def update_campaign(
    campaign_id: str,
    update_data: CampaignUpdateRequest,
    current_user: Dict[str, Any] = Depends(get_admin_user)
):
    """
    Edit a campaign

    - Blocks and connections: draft only
    - Name, description, targeting: draft or paused
    """
    try:
        campaign = await campaign_service.update_campaign(campaign_id, update_data)
        return {"success": True, "message": "Campaign updated", "campaign": campaign}
    except Exception as e:
        raise _http_error(e, "update campaign")


# ============================================================================
# LIFECYCLE ENDPOINTS
# ============================================================================

@router.post("/{campaign_id}/activate", response_model=CampaignResponse)
async def activate_campaign(
    campaign_id: str,
    current_user: Dict[str, Any] = Depends(get_admin_user)
):
    """
    Activate a draft (enrolls matching leads) or resume a paused campaign
    """
    try:
        campaign = await campaign_service.require_campaign(campaign_id)
        owner = current_user
        if campaign.get("created_by") != current_user.get("email"):
            owner = await _campaign_owner(campaign) or current_user

        result = await campaign_service.activate_campaign(campaign_id, owner)

        message = (
            "Campaign resumed" if result["resumed"]
            else f"Campaign activated with {result['enrolled_count']} leads enrolled"
        )
        return CampaignResponse(
            success=True,
            message=message,
            campaign_id=campaign_id,
            status=result["status"],
            enrolled_count=result["enrolled_count"]
        )

    except Exception as e:
        raise _http_error(e, "activate campaign")


async def _campaign_owner(campaign: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """Lead visibility follows the campaign owner, not whoever pressed activate"""
    return await get_database().users.find_one({"email": campaign.get("created_by")}, {"_id": 0})


@router.post("/{campaign_id}/pause", response_model=CampaignResponse)
async def pause_campaign(
    campaign_id: str,
    current_user: Dict[str, Any] = Depends(get_admin_user)
):
    """Pause an active campaign; in-flight steps finish, nothing new is claimed"""
    try:
        result = await campaign_service.pause_campaign(campaign_id)
        return CampaignResponse(
            success=True,
            message="Campaign paused successfully",
            campaign_id=campaign_id,
            status=result["status"]
        )
    except Exception as e:
        raise _http_error(e, "pause campaign")


@router.post("/{campaign_id}/complete", response_model=CampaignResponse)
async def complete_campaign(
    campaign_id: str,
    current_user: Dict[str, Any] = Depends(get_admin_user)
):
    """Stop a campaign for good, cancelling every pending step"""
    try:
        result = await campaign_service.complete_campaign(campaign_id)
        return CampaignResponse(
            success=True,
            message=f"Campaign completed ({result['cancelled_executions']} pending steps cancelled)",
            campaign_id=campaign_id,
            status=result["status"]
        )
    except Exception as e:
        raise _http_error(e, "complete campaign")


@router.delete("/{campaign_id}")
async def delete_campaign(
    campaign_id: str,
    current_user: Dict[str, Any] = Depends(get_admin_user)
):
    """Delete a non-active campaign with its enrollments, executions and events"""
    try:
        result = await campaign_service.delete_campaign(campaign_id)
        logger.info(f"Campaign {campaign_id} deleted by {current_user.get('email')}")
        return {"success": True, "message": "Campaign deleted successfully", **result}
    except Exception as e:
        raise _http_error(e, "delete campaign")


# ============================================================================
# TRACKING ENDPOINTS
# ============================================================================

@router.get("/{campaign_id}/stats", response_model=CampaignStatsResponse)
async def get_campaign_stats(
    campaign_id: str,
    current_user: Dict[str, Any] = Depends(get_admin_user)
):
    """Metrics plus enrollment and execution breakdowns"""
    try:
        return await campaign_service.get_campaign_stats(campaign_id)
    except Exception as e:
        raise _http_error(e, "get campaign stats")


@router.get("/{campaign_id}/enrollments")
async def list_enrollments(
    campaign_id: str,
    status_filter: Optional[str] = Query(None, alias="status", description="active/completed/removed"),
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=200),
    current_user: Dict[str, Any] = Depends(get_admin_user)
):
    """Leads enrolled in the campaign with their current block and path"""
    try:
        await campaign_service.require_campaign(campaign_id)
        result = await enrollment_service.list_enrollments(
            campaign_id,
            status=status_filter,
            skip=(page - 1) * limit,
            limit=limit
        )
        return {"success": True, **result, "page": page, "limit": limit}
    except Exception as e:
        raise _http_error(e, "list enrollments")


@router.delete("/{campaign_id}/enrollments/{lead_id}")
async def unenroll_lead(
    campaign_id: str,
    lead_id: str,
    current_user: Dict[str, Any] = Depends(get_admin_user)
):
    """Remove a lead from the campaign and cancel its pending steps"""
    try:
        await campaign_service.require_campaign(campaign_id)
        result = await enrollment_service.unenroll_lead(campaign_id, lead_id)
        return {"success": True, "message": f"Lead {lead_id} removed from campaign", **result}
    except Exception as e:
        raise _http_error(e, "unenroll lead")


@router.get("/{campaign_id}/executions")
async def list_executions(
    campaign_id: str,
    status_filter: Optional[str] = Query(None, alias="status", description="pending/executing/completed/failed/cancelled"),
    lead_id: Optional[str] = Query(None),
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=200),
    current_user: Dict[str, Any] = Depends(get_admin_user)
):
    """Scheduled and finished steps, with error text of failed ones"""
    try:
        await campaign_service.require_campaign(campaign_id)
        result = await execution_scheduler.list_executions(
            campaign_id,
            status=status_filter,
            lead_id=lead_id,
            skip=(page - 1) * limit,
            limit=limit
        )
        return {"success": True, **result, "page": page, "limit": limit}
    except Exception as e:
        raise _http_error(e, "list executions")


@router.post("/{campaign_id}/events", status_code=status.HTTP_201_CREATED)
async def record_event(
    campaign_id: str,
    event: CampaignEventRequest,
    current_user: Dict[str, Any] = Depends(get_admin_user)
):
    """Record an engagement event (open, click, read, reply) for a lead"""
    try:
        await campaign_service.require_campaign(campaign_id)
        event_doc = await campaign_event_service.record_event(
            campaign_id,
            event.lead_id,
            event.event_type,
            message_id=event.message_id,
            occurred_at=event.occurred_at
        )
        return {"success": True, "event": event_doc}
    except Exception as e:
        raise _http_error(e, "record event")
