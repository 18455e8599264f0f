# campaign_engine/models/campaign.py
from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator
from typing import Annotated, Any, ClassVar, Dict, List, Literal, Optional, Tuple, Union
from datetime import timedelta
from enum import Enum


class CampaignStatus(str, Enum):
    """Campaign lifecycle status"""
    DRAFT = "draft"
    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"


class BlockType(str, Enum):
    """Action types a campaign graph is built from"""
    WAIT = "wait"
    SEND_EMAIL = "send_email"
    SEND_WHATSAPP = "send_whatsapp"
    CONDITIONAL = "conditional"
    AB_TEST = "ab_test"
    ADD_TAG = "add_tag"
    REMOVE_TAG = "remove_tag"
    LEAD_CONDITION = "lead_condition"


BRANCHING_BLOCK_TYPES = {BlockType.CONDITIONAL, BlockType.AB_TEST, BlockType.LEAD_CONDITION}


class TimeUnit(str, Enum):
    MINUTES = "minutes"
    HOURS = "hours"
    DAYS = "days"


def duration_to_timedelta(value: int, unit: TimeUnit) -> timedelta:
    """Convert a (value, unit) pair from block data into a timedelta"""
    unit = TimeUnit(unit)
    if unit == TimeUnit.MINUTES:
        return timedelta(minutes=value)
    if unit == TimeUnit.HOURS:
        return timedelta(hours=value)
    return timedelta(days=value)


class EngagementCondition(str, Enum):
    """Message engagement a conditional block waits for"""
    EMAIL_OPENED = "email_opened"
    EMAIL_REPLIED = "email_replied"
    EMAIL_LINK_CLICKED = "email_link_clicked"
    WHATSAPP_READ = "whatsapp_read"
    WHATSAPP_REPLIED = "whatsapp_replied"


class LeadCondition(str, Enum):
    HAS_TAGS = "has_tags"
    OVERDUE_FOLLOWUP = "overdue_followup"
    FOLLOWUP_IN_MORE_THAN = "followup_in_more_than"
    FOLLOWUP_IN_LESS_THAN = "followup_in_less_than"


# ============================================================================
# BLOCK PAYLOADS (one shape per block type)
# ============================================================================

class WaitData(BaseModel):
    duration: int = Field(default=1, ge=0)
    unit: TimeUnit = TimeUnit.HOURS

    def to_timedelta(self) -> timedelta:
        return duration_to_timedelta(self.duration, self.unit)


class SendEmailData(BaseModel):
    subject: str = ""
    content: str = Field(default="", description="HTML body, supports {{name}}-style placeholders")


class SendWhatsAppData(BaseModel):
    template_id: str = ""
    template_name: Optional[str] = None


class ConditionalData(BaseModel):
    condition: EngagementCondition = EngagementCondition.EMAIL_OPENED
    time_limit: int = Field(default=24, ge=0)
    time_limit_unit: TimeUnit = TimeUnit.HOURS
    true_path: List[str] = []
    false_path: List[str] = []

    def time_window(self) -> timedelta:
        return duration_to_timedelta(self.time_limit, self.time_limit_unit)


class ABTestData(BaseModel):
    split_percentage: int = Field(default=50, ge=0, le=100, description="Share of leads sent down path A")
    path_a: List[str] = []
    path_b: List[str] = []


class TagData(BaseModel):
    tag_id: str = ""


class LeadConditionData(BaseModel):
    condition: LeadCondition = LeadCondition.HAS_TAGS
    tag_ids: List[str] = []
    time_value: int = Field(default=1, ge=0)
    time_unit: TimeUnit = TimeUnit.DAYS
    true_path: List[str] = []
    false_path: List[str] = []

    def time_window(self) -> timedelta:
        return duration_to_timedelta(self.time_value, self.time_unit)


# ============================================================================
# BLOCKS (tagged union keyed by ``type``)
# ============================================================================

class BlockPosition(BaseModel):
    x: float = 0
    y: float = 0


class _BlockBase(BaseModel):
    id: str = Field(..., min_length=1, description="Stable id, unique within the campaign")
    position: Optional[BlockPosition] = None

    # Branch outcomes, in the order they are offered to connection labels
    branch_outcomes: ClassVar[Tuple[str, ...]] = ()

    @property
    def is_branching(self) -> bool:
        return bool(self.branch_outcomes)

    def declared_path(self, outcome: Optional[str]) -> List[str]:
        """Block ids the block's own data routes ``outcome`` to"""
        return []


class WaitBlock(_BlockBase):
    type: Literal["wait"] = "wait"
    data: WaitData = Field(default_factory=WaitData)


class SendEmailBlock(_BlockBase):
    type: Literal["send_email"] = "send_email"
    data: SendEmailData = Field(default_factory=SendEmailData)


class SendWhatsAppBlock(_BlockBase):
    type: Literal["send_whatsapp"] = "send_whatsapp"
    data: SendWhatsAppData = Field(default_factory=SendWhatsAppData)


class ConditionalBlock(_BlockBase):
    type: Literal["conditional"] = "conditional"
    data: ConditionalData = Field(default_factory=ConditionalData)

    branch_outcomes: ClassVar[Tuple[str, ...]] = ("true", "false")

    def declared_path(self, outcome: Optional[str]) -> List[str]:
        if outcome == "true":
            return list(self.data.true_path)
        if outcome == "false":
            return list(self.data.false_path)
        return []


class ABTestBlock(_BlockBase):
    type: Literal["ab_test"] = "ab_test"
    data: ABTestData = Field(default_factory=ABTestData)

    branch_outcomes: ClassVar[Tuple[str, ...]] = ("A", "B")

    def declared_path(self, outcome: Optional[str]) -> List[str]:
        if outcome == "A":
            return list(self.data.path_a)
        if outcome == "B":
            return list(self.data.path_b)
        return []


class AddTagBlock(_BlockBase):
    type: Literal["add_tag"] = "add_tag"
    data: TagData = Field(default_factory=TagData)


class RemoveTagBlock(_BlockBase):
    type: Literal["remove_tag"] = "remove_tag"
    data: TagData = Field(default_factory=TagData)


class LeadConditionBlock(_BlockBase):
    type: Literal["lead_condition"] = "lead_condition"
    data: LeadConditionData = Field(default_factory=LeadConditionData)

    branch_outcomes: ClassVar[Tuple[str, ...]] = ("true", "false")

    def declared_path(self, outcome: Optional[str]) -> List[str]:
        if outcome == "true":
            return list(self.data.true_path)
        if outcome == "false":
            return list(self.data.false_path)
        return []


CampaignBlock = Annotated[
    Union[
        WaitBlock,
        SendEmailBlock,
        SendWhatsAppBlock,
        ConditionalBlock,
        ABTestBlock,
        AddTagBlock,
        RemoveTagBlock,
        LeadConditionBlock,
    ],
    Field(discriminator="type"),
]

_block_adapter = TypeAdapter(CampaignBlock)


def parse_block(block_doc: Dict[str, Any]) -> CampaignBlock:
    """Validate a stored block document into its typed variant"""
    return _block_adapter.validate_python(block_doc)


def dump_block(block: CampaignBlock) -> Dict[str, Any]:
    return _block_adapter.dump_python(block, mode="json")


class Connection(BaseModel):
    """Directed edge between two blocks; ``label`` selects a branch"""
    model_config = ConfigDict(populate_by_name=True)

    from_block: str = Field(..., alias="from", min_length=1)
    to_block: str = Field(..., alias="to", min_length=1)
    label: Optional[str] = None

    def to_document(self) -> Dict[str, Any]:
        return {"from": self.from_block, "to": self.to_block, "label": self.label}


# ============================================================================
# TARGETING AND METRICS
# ============================================================================

class TargetingRule(BaseModel):
    """Which leads a campaign enrolls on activation"""
    type: Literal["all", "filtered"] = "all"
    tag_ids: List[str] = []
    statuses: List[str] = []
    sources: List[str] = []
    auto_enroll_new: bool = False


class CampaignMetrics(BaseModel):
    enrolled: int = 0
    active: int = 0
    completed: int = 0
    sent: int = 0
    opened: int = 0
    clicked: int = 0
    replied: int = 0


# ============================================================================
# REQUESTS / RESPONSES
# ============================================================================

class CampaignCreateRequest(BaseModel):
    """Request model for creating a draft campaign"""
    name: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = None
    lead_selection: TargetingRule = Field(default_factory=TargetingRule)
    blocks: List[CampaignBlock] = []
    connections: List[Connection] = []

    @field_validator("name")
    @classmethod
    def strip_name(cls, v):
        v = v.strip()
        if not v:
            raise ValueError("name must not be blank")
        return v


class CampaignUpdateRequest(BaseModel):
    """Partial update; graph fields only apply to draft campaigns"""
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    description: Optional[str] = None
    lead_selection: Optional[TargetingRule] = None
    blocks: Optional[List[CampaignBlock]] = None
    connections: Optional[List[Connection]] = None

    def touches_graph(self) -> bool:
        return self.blocks is not None or self.connections is not None


class CampaignResponse(BaseModel):
    """Response model for campaign operations"""
    success: bool
    message: str
    campaign_id: Optional[str] = None
    status: Optional[CampaignStatus] = None
    enrolled_count: Optional[int] = None
