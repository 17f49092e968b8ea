"""Campaign — a trust-gated outreach to one segment."""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel


class CampaignStatus(str, Enum):
    DRAFT = "DRAFT"
    READY = "READY"
    EXECUTED = "EXECUTED"


class SendStatus(str, Enum):
    DRY_RUN = "DRY_RUN"
    SENT = "SENT"
    SUPPRESSED = "SUPPRESSED"


class Campaign(BaseModel):
    id: str
    tenant_id: str
    rule_set_id: Optional[str] = None
    name: str
    dry_run: bool = True
    status: CampaignStatus = CampaignStatus.DRAFT
    requires_approval: bool = False
    approved_by: Optional[str] = None
    approved_at: Optional[datetime] = None
    executed_at: Optional[datetime] = None
    segment_size: int = 0
    suppressed_size: int = 0
    gating_summary: dict = {}               # Policy + trust total used, for audit
    row_version: int = 0
    created_at: datetime
    updated_at: datetime


class SendReceipt(BaseModel):
    """Per-recipient dispatch record."""

    id: str
    campaign_id: str
    recipient: str
    channel: str = "email"
    status: SendStatus
    reason: Optional[str] = None            # Set for SUPPRESSED
    created_at: datetime
    updated_at: datetime


class ExecutionOutcome(BaseModel):
    sent: int
    campaign: Campaign
