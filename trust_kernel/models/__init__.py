"""Trust Kernel data models."""

from trust_kernel.models.campaign import (
    Campaign,
    CampaignStatus,
    ExecutionOutcome,
    SendReceipt,
    SendStatus,
)
from trust_kernel.models.policy import PolicyDecision, PolicyZone
from trust_kernel.models.receipt import Receipt, ReceiptActor, ReceiptKind
from trust_kernel.models.recommendation import (
    ArticleDraft,
    ContentRecommendation,
    DraftContent,
    DraftPayload,
    ProductUpdateDraft,
    PublishResult,
    RecommendationAction,
    RecommendationKind,
    RecommendationStatus,
)
from trust_kernel.models.segmentation import (
    EndCustomer,
    RuleSet,
    SegmentConditions,
    SegmentResult,
    SegmentSnapshot,
    SuppressedMember,
)
from trust_kernel.models.trust import (
    Tenant,
    TrustScoreSnapshot,
    TrustSignals,
    TrustWeights,
)

__all__ = [
    "ArticleDraft",
    "Campaign",
    "CampaignStatus",
    "ContentRecommendation",
    "DraftContent",
    "DraftPayload",
    "EndCustomer",
    "ExecutionOutcome",
    "PolicyDecision",
    "PolicyZone",
    "ProductUpdateDraft",
    "PublishResult",
    "Receipt",
    "ReceiptActor",
    "ReceiptKind",
    "RecommendationAction",
    "RecommendationKind",
    "RecommendationStatus",
    "RuleSet",
    "SegmentConditions",
    "SegmentResult",
    "SegmentSnapshot",
    "SendReceipt",
    "SendStatus",
    "SuppressedMember",
    "Tenant",
    "TrustScoreSnapshot",
    "TrustSignals",
    "TrustWeights",
]
