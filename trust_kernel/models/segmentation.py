"""Rule sets, population members and segment snapshots."""

from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class SegmentConditions(BaseModel):
    """
    The filter document carried by a rule set. An unset condition is
    "no constraint" and never suppresses anyone.
    """

    required: List[str] = []                # Attributes that must be present
    rating_gte: Optional[float] = None
    sentiment: Optional[str] = None
    referral_sent: Optional[bool] = None


class RuleSet(BaseModel):
    id: str
    tenant_id: str
    name: str
    description: str = ""
    conditions: SegmentConditions = SegmentConditions()
    active: bool = True
    created_at: datetime
    updated_at: datetime


class EndCustomer(BaseModel):
    """One member of a tenant's audience."""

    id: str
    tenant_id: str
    email: str
    attributes: dict = {}
    created_at: datetime


class SuppressedMember(BaseModel):
    email: str
    reason: str


class SegmentResult(BaseModel):
    """Output of one evaluation. Pure data, not persisted as-is."""

    eligible: int
    suppressed: int
    reasons: Dict[str, int] = {}
    eligible_members: List[str] = []
    suppressed_members: List[SuppressedMember] = []


class SegmentSnapshot(BaseModel):
    """Immutable record of one preview, kept for audit and campaign sizing."""

    model_config = ConfigDict(frozen=True)

    id: str
    tenant_id: str
    rule_set_id: str
    eligible: int = Field(ge=0)
    suppressed: int = Field(ge=0)
    reasons: Dict[str, int] = {}
    created_at: datetime
