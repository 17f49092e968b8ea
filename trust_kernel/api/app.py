"""
Trust Kernel API — FastAPI endpoints.

Exposes the kernel per tenant (addressed by domain) for:
- Trust scores and the policy they imply
- Content recommendations (draft → approve → publish)
- Rule sets, population import and segment previews
- Dry-run campaigns and gated execution
- The receipt ledger

Read endpoints degrade to a 200 ``{ok: false, degraded: true}`` payload
when storage is unreachable; mutating endpoints surface 503.
"""

from typing import List, Optional

import structlog
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from trust_kernel.campaigns.guard import CampaignExecutionGuard
from trust_kernel.config import Settings, get_settings
from trust_kernel.errors import NotFoundError, StorageUnavailableError, TrustKernelError
from trust_kernel.logging_setup import configure_logging
from trust_kernel.models.campaign import SendStatus
from trust_kernel.models.receipt import ReceiptActor, ReceiptKind
from trust_kernel.models.recommendation import (
    DraftPayload,
    RecommendationAction,
    RecommendationKind,
    RecommendationStatus,
)
from trust_kernel.models.segmentation import SegmentConditions
from trust_kernel.models.trust import Tenant, TrustSignals
from trust_kernel.receipts.ledger import ReceiptLedger
from trust_kernel.recommendations.collaborators import (
    DraftGenerator,
    InMemoryPublisher,
    Publisher,
    TemplateDraftGenerator,
)
from trust_kernel.recommendations.lifecycle import RecommendationLifecycle
from trust_kernel.segmentation.engine import SegmentationService
from trust_kernel.storage.store import KernelStore
from trust_kernel.trust.engine import TrustScoreEngine

logger = structlog.get_logger()

_STATUS_BY_KIND = {
    "not_found": 404,
    "invalid_state": 409,
    "draft_missing": 409,
    "requires_approval": 409,
    "no_action": 409,
    "needs_verification": 409,
    "policy_block": 403,
    "invalid_draft": 422,
    "collaborator_failed": 502,
    "storage_unavailable": 503,
}


def degraded_payload(route: str) -> dict:
    return {
        "ok": False,
        "error": "storage_unavailable",
        "degraded": True,
        "route": route,
    }


# --- Request/Response Models ---

class TenantCreateRequest(BaseModel):
    domain: str
    name: Optional[str] = None


class RecommendationCreateRequest(BaseModel):
    kind: RecommendationKind
    title: str
    target_ref: str
    rationale: str = ""
    action: RecommendationAction = RecommendationAction.CREATE


class DraftRequest(BaseModel):
    payload: Optional[DraftPayload] = None
    override_markdown: Optional[str] = None


class ApproveRequest(BaseModel):
    approver: str = "manager"


class RuleSetCreateRequest(BaseModel):
    name: str
    description: str = ""
    conditions: SegmentConditions = SegmentConditions()


class RuleSetUpdateRequest(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    conditions: Optional[SegmentConditions] = None
    active: Optional[bool] = None


class CustomerIn(BaseModel):
    email: str
    attributes: dict = {}


class CustomersImportRequest(BaseModel):
    customers: List[CustomerIn]


class SegmentPreviewRequest(BaseModel):
    rule_set_id: str


class CampaignCreateRequest(BaseModel):
    rule_set_id: str
    name: Optional[str] = None
    requires_approval: bool = False


# --- Application Factory ---

def create_app(
    settings: Optional[Settings] = None,
    store: Optional[KernelStore] = None,
    generator: Optional[DraftGenerator] = None,
    publisher: Optional[Publisher] = None,
) -> FastAPI:
    """Create and configure the FastAPI application."""

    settings = settings or get_settings()
    configure_logging(settings)

    app = FastAPI(
        title="Trust Kernel API",
        description="Trust-gated action policy for content and campaigns",
        version="0.1.0",
    )

    # Initialize components
    ks = store or KernelStore(settings.database_path)
    ledger = ReceiptLedger(ks, max_list_limit=settings.receipt_list_limit_max)
    trust = TrustScoreEngine(ks, ledger, settings)
    segmentation = SegmentationService(ks, ledger)
    lifecycle = RecommendationLifecycle(
        ks,
        ledger,
        trust,
        generator=generator or TemplateDraftGenerator(),
        publisher=publisher or InMemoryPublisher(),
    )
    guard = CampaignExecutionGuard(ks, ledger, trust, segmentation, settings)

    # Store components on app state for access in endpoints
    app.state.settings = settings
    app.state.store = ks
    app.state.ledger = ledger
    app.state.trust = trust
    app.state.segmentation = segmentation
    app.state.lifecycle = lifecycle
    app.state.guard = guard

    @app.exception_handler(TrustKernelError)
    async def handle_kernel_error(request: Request, exc: TrustKernelError):
        status = _STATUS_BY_KIND.get(exc.kind, 500)
        if status >= 500:
            logger.error("request_failed", path=request.url.path, error=exc.kind)
        return JSONResponse(status_code=status, content=exc.to_dict())

    def tenant_for(domain: str) -> Tenant:
        tenant = ks.get_tenant_by_domain(domain)
        if tenant is None:
            raise NotFoundError("tenant", domain)
        return tenant

    # === TENANTS & TRUST ===

    @app.post("/tenants")
    def register_tenant(req: TenantCreateRequest):
        """Register a tenant, or return the one already holding this domain."""
        tenant = ks.get_or_create_tenant(req.domain, req.name)
        return {"ok": True, "tenant": tenant.model_dump(mode="json")}

    @app.get("/tenants/{domain}/trust/latest")
    def latest_trust(domain: str):
        """Latest trust snapshot and the policy it implies."""
        try:
            tenant = tenant_for(domain)
            snapshot, decision = trust.policy_for(tenant.id)
        except StorageUnavailableError:
            return degraded_payload("/tenants/{domain}/trust/latest")
        return {
            "ok": True,
            "snapshot": snapshot.model_dump(mode="json"),
            "policy": decision.snapshot(),
            "stale": trust.is_stale(snapshot),
        }

    @app.post("/tenants/{domain}/trust/snapshots")
    def record_trust(domain: str, req: TrustSignals):
        """Record a freshly computed trust snapshot."""
        tenant = tenant_for(domain)
        snapshot = trust.record(tenant.id, req)
        _, decision = trust.policy_for(tenant.id)
        return {
            "ok": True,
            "snapshot": snapshot.model_dump(mode="json"),
            "policy": decision.snapshot(),
        }

    # === RECOMMENDATIONS ===

    @app.get("/tenants/{domain}/recommendations")
    def list_recommendations(domain: str, status: Optional[RecommendationStatus] = None):
        try:
            tenant = tenant_for(domain)
            recs = lifecycle.list(tenant.id, status)
        except StorageUnavailableError:
            return degraded_payload("/tenants/{domain}/recommendations")
        return {"ok": True, "recommendations": [r.model_dump(mode="json") for r in recs]}

    @app.post("/tenants/{domain}/recommendations")
    def propose_recommendation(domain: str, req: RecommendationCreateRequest):
        tenant = tenant_for(domain)
        rec = lifecycle.propose(
            tenant.id,
            kind=req.kind,
            title=req.title,
            target_ref=req.target_ref,
            rationale=req.rationale,
            action=req.action,
        )
        return {"ok": True, "recommendation": rec.model_dump(mode="json")}

    @app.post("/tenants/{domain}/recommendations/{rec_id}/draft")
    def draft_recommendation(domain: str, rec_id: str, req: Optional[DraftRequest] = None):
        """Generate a draft, attach the supplied one, or edit the current body."""
        tenant = tenant_for(domain)
        req = req or DraftRequest()
        rec = lifecycle.draft(
            tenant.id,
            rec_id,
            payload=req.payload,
            override_markdown=req.override_markdown,
        )
        return {"ok": True, "recommendation": rec.model_dump(mode="json")}

    @app.post("/tenants/{domain}/recommendations/{rec_id}/approve")
    def approve_recommendation(domain: str, rec_id: str, req: Optional[ApproveRequest] = None):
        tenant = tenant_for(domain)
        rec = lifecycle.approve(tenant.id, rec_id, (req or ApproveRequest()).approver)
        return {"ok": True, "recommendation": rec.model_dump(mode="json")}

    @app.post("/tenants/{domain}/recommendations/{rec_id}/publish")
    def publish_recommendation(domain: str, rec_id: str):
        tenant = tenant_for(domain)
        rec = lifecycle.publish(tenant.id, rec_id)
        return {"ok": True, "recommendation": rec.model_dump(mode="json")}

    @app.post("/tenants/{domain}/recommendations/{rec_id}/dismiss")
    def dismiss_recommendation(domain: str, rec_id: str):
        tenant = tenant_for(domain)
        rec = lifecycle.dismiss(tenant.id, rec_id)
        return {"ok": True, "dismissed": rec.id}

    # === RULE SETS & SEGMENTS ===

    @app.get("/tenants/{domain}/rulesets")
    def list_rule_sets(domain: str):
        try:
            tenant = tenant_for(domain)
            rule_sets = segmentation.list_rule_sets(tenant.id)
        except StorageUnavailableError:
            return degraded_payload("/tenants/{domain}/rulesets")
        return {"ok": True, "rule_sets": [r.model_dump(mode="json") for r in rule_sets]}

    @app.post("/tenants/{domain}/rulesets")
    def create_rule_set(domain: str, req: RuleSetCreateRequest):
        tenant = tenant_for(domain)
        rule_set = segmentation.create_rule_set(
            tenant.id, req.name, req.conditions, description=req.description
        )
        return {"ok": True, "rule_set": rule_set.model_dump(mode="json")}

    @app.patch("/tenants/{domain}/rulesets/{rule_set_id}")
    def update_rule_set(domain: str, rule_set_id: str, req: RuleSetUpdateRequest):
        tenant = tenant_for(domain)
        rule_set = segmentation.update_rule_set(
            tenant.id,
            rule_set_id,
            name=req.name,
            description=req.description,
            conditions=req.conditions,
            active=req.active,
        )
        return {"ok": True, "rule_set": rule_set.model_dump(mode="json")}

    @app.get("/tenants/{domain}/customers")
    def list_customers(domain: str):
        try:
            tenant = tenant_for(domain)
            customers = ks.list_end_customers(tenant.id)
        except StorageUnavailableError:
            return degraded_payload("/tenants/{domain}/customers")
        return {"ok": True, "customers": [c.model_dump(mode="json") for c in customers]}

    @app.post("/tenants/{domain}/customers")
    def import_customers(domain: str, req: CustomersImportRequest):
        """Import population members. Existing emails get their attributes replaced."""
        tenant = tenant_for(domain)
        customers = segmentation.add_end_customers(
            tenant.id, [c.model_dump() for c in req.customers]
        )
        return {"ok": True, "imported": len(customers)}

    @app.post("/tenants/{domain}/segments/preview")
    def preview_segment(domain: str, req: SegmentPreviewRequest):
        tenant = tenant_for(domain)
        snapshot = segmentation.preview(tenant.id, req.rule_set_id)
        return {"ok": True, "snapshot": snapshot.model_dump(mode="json")}

    # === CAMPAIGNS ===

    @app.post("/tenants/{domain}/campaigns")
    def plan_campaign(domain: str, req: CampaignCreateRequest):
        """Create a dry-run campaign for a rule set. Nothing is sent."""
        tenant = tenant_for(domain)
        campaign = guard.plan_dry_run(
            tenant.id,
            req.rule_set_id,
            name=req.name,
            requires_approval=req.requires_approval,
        )
        return {"ok": True, "campaign": campaign.model_dump(mode="json")}

    @app.get("/tenants/{domain}/campaigns/{campaign_id}")
    def get_campaign(domain: str, campaign_id: str, status: Optional[SendStatus] = None):
        tenant = tenant_for(domain)
        campaign = guard.get(tenant.id, campaign_id)
        sends = guard.list_send_receipts(tenant.id, campaign_id, status)
        return {
            "ok": True,
            "campaign": campaign.model_dump(mode="json"),
            "send_receipts": [s.model_dump(mode="json") for s in sends],
        }

    @app.post("/tenants/{domain}/campaigns/{campaign_id}/approve")
    def approve_campaign(domain: str, campaign_id: str, req: Optional[ApproveRequest] = None):
        tenant = tenant_for(domain)
        campaign = guard.approve(tenant.id, campaign_id, (req or ApproveRequest()).approver)
        return {"ok": True, "campaign": campaign.model_dump(mode="json")}

    @app.post("/tenants/{domain}/campaigns/{campaign_id}/execute")
    def execute_campaign(domain: str, campaign_id: str):
        tenant = tenant_for(domain)
        outcome = guard.execute(tenant.id, campaign_id)
        return {"ok": True, **outcome.model_dump(mode="json")}

    # === RECEIPTS ===

    @app.get("/tenants/{domain}/receipts")
    def list_receipts(
        domain: str,
        kind: Optional[ReceiptKind] = None,
        actor: Optional[ReceiptActor] = None,
        limit: int = 50,
    ):
        """Newest first; ``limit`` is clamped to the configured maximum."""
        try:
            tenant = tenant_for(domain)
            receipts = ledger.list(tenant.id, kind=kind, actor=actor, limit=limit)
        except StorageUnavailableError:
            return degraded_payload("/tenants/{domain}/receipts")
        return {"ok": True, "receipts": [r.model_dump(mode="json") for r in receipts]}

    return app


# Default application instance
app = create_app()
