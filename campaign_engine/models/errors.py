# campaign_engine/models/errors.py


class CampaignError(Exception):
    """Base error for campaign lifecycle operations"""


class CampaignNotFoundError(CampaignError):
    def __init__(self, campaign_id: str):
        self.campaign_id = campaign_id
        super().__init__(f"Campaign {campaign_id} not found")


class CampaignValidationError(CampaignError):
    """Rejected definition or request; campaign state is left unchanged"""


class CampaignStateError(CampaignError):
    """Operation not allowed in the campaign's (or enrollment's) current status"""


class SchedulingError(CampaignError):
    pass


class BlockExecutionError(Exception):
    """Raised by block handlers; turns the execution into a failed one"""


class MissingContactInfoError(BlockExecutionError):
    def __init__(self, lead_id: str, field: str):
        self.lead_id = lead_id
        self.field = field
        super().__init__(f"Lead {lead_id} is missing contact info: {field}")


class ReferenceNotFoundError(BlockExecutionError):
    def __init__(self, kind: str, reference_id: str):
        self.kind = kind
        self.reference_id = reference_id
        super().__init__(f"{kind.capitalize()} {reference_id} not found")


class DeliveryError(BlockExecutionError):
    """Transport (email / WhatsApp) refused or could not deliver a message"""
