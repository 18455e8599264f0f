# campaign_engine/models/campaign_tracking.py
from pydantic import BaseModel, ConfigDict, Field
from typing import Any, Dict, List, Optional
from datetime import datetime
from enum import Enum

from .campaign import EngagementCondition


class EnrollmentStatus(str, Enum):
    """Per-lead enrollment status"""
    ACTIVE = "active"
    COMPLETED = "completed"
    REMOVED = "removed"


class ExecutionStatus(str, Enum):
    """Scheduled task status"""
    PENDING = "pending"
    EXECUTING = "executing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


NON_TERMINAL_EXECUTION_STATUSES = [ExecutionStatus.PENDING.value, ExecutionStatus.EXECUTING.value]


def build_claim_key(enrollment_id: str, block_id: str) -> str:
    """Key that is unique among non-terminal executions"""
    return f"{enrollment_id}:{block_id}"


class CampaignEnrollment(BaseModel):
    """Track a lead's position in a campaign"""
    model_config = ConfigDict(use_enum_values=True)

    enrollment_id: str
    campaign_id: str
    lead_id: str

    status: EnrollmentStatus = EnrollmentStatus.ACTIVE
    current_block_id: Optional[str] = Field(None, description="Last block reached")
    path_taken: List[str] = Field(default_factory=list, description="Visited block ids, in order")
    last_error: Optional[str] = None

    enrolled_at: datetime
    completed_at: Optional[datetime] = None
    removed_at: Optional[datetime] = None

    created_at: datetime
    updated_at: datetime


class CampaignExecution(BaseModel):
    """One per-lead, per-block unit of work"""
    model_config = ConfigDict(use_enum_values=True)

    execution_id: str
    campaign_id: str
    enrollment_id: str
    lead_id: str
    block_id: str
    block_type: str

    scheduled_for: datetime
    status: ExecutionStatus = ExecutionStatus.PENDING
    claim_key: Optional[str] = None
    attempts: int = Field(default=0, ge=0)

    claimed_at: Optional[datetime] = None
    executed_at: Optional[datetime] = None
    evaluation_deadline: Optional[datetime] = Field(None, description="Deadline for a deferred branch evaluation")
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None

    created_at: datetime
    updated_at: datetime


class CampaignEventRequest(BaseModel):
    """Engagement notification for a lead that received a campaign message"""
    lead_id: str = Field(..., min_length=1)
    event_type: EngagementCondition
    message_id: Optional[str] = None
    occurred_at: Optional[datetime] = None


class EnrollmentSummary(BaseModel):
    total: int
    active: int
    completed: int
    removed: int


class ExecutionSummary(BaseModel):
    pending: int
    executing: int
    completed: int
    failed: int
    cancelled: int


class CampaignStatsResponse(BaseModel):
    """Campaign statistics response"""
    campaign_id: str
    name: str
    status: str
    metrics: Dict[str, int]
    enrollments: EnrollmentSummary
    executions: ExecutionSummary
    next_scheduled_at: Optional[datetime] = None
