"""
Campaign Execution Guard — decides whether a dry-run campaign may send.

Execution is one compound check, short-circuiting in this order:
  1. requires_approval and not approved  → requires_approval
  2. trust zone UNSAFE                   → policy_block
  3. every DRY_RUN send receipt          → SENT
  4. campaign                            → EXECUTED (+ gating summary)

Behavioral Contract:
- Only recipients previewed at dry-run time are ever sent to. The segment
  is not recomputed at execution.
- EXECUTED is terminal. A second execute fails with invalid_state and
  touches no recipient.
- Steps 3 and 4 and the receipt commit in one transaction; a failure
  leaves the campaign and its recipients exactly as they were.
"""

from typing import List, Optional

import structlog

from trust_kernel.config import Settings
from trust_kernel.errors import (
    InvalidStateError,
    NotFoundError,
    PolicyBlockError,
    RequiresApprovalError,
)
from trust_kernel.models.campaign import (
    Campaign,
    CampaignStatus,
    ExecutionOutcome,
    SendReceipt,
    SendStatus,
)
from trust_kernel.models.policy import PolicyDecision, PolicyZone
from trust_kernel.models.receipt import ReceiptActor, ReceiptKind
from trust_kernel.policy.gate import (
    CAMPAIGNS,
    CAMPAIGNS_DRY_RUN,
    CAMPAIGNS_SEND,
    CAMPAIGNS_SEND_LIMITED,
    PolicyGate,
)
from trust_kernel.receipts.ledger import ReceiptLedger
from trust_kernel.segmentation.engine import SegmentationService
from trust_kernel.storage.store import KernelStore, new_id, utcnow
from trust_kernel.trust.engine import TrustScoreEngine

logger = structlog.get_logger()


def _send_mode(decision: PolicyDecision) -> str:
    """The most permissive send grant in effect, for the audit summary."""
    for action in (CAMPAIGNS_SEND, CAMPAIGNS_SEND_LIMITED, CAMPAIGNS_DRY_RUN):
        if decision.permits(action):
            return action
    return "none"


class CampaignExecutionGuard:
    """Plans, approves and executes trust-gated campaigns."""

    def __init__(
        self,
        store: KernelStore,
        ledger: ReceiptLedger,
        trust: TrustScoreEngine,
        segmentation: SegmentationService,
        settings: Settings,
        gate: Optional[PolicyGate] = None,
    ):
        self.store = store
        self.ledger = ledger
        self.trust = trust
        self.segmentation = segmentation
        self.settings = settings
        self.gate = gate or PolicyGate()

    def get(self, tenant_id: str, campaign_id: str) -> Campaign:
        campaign = self.store.get_campaign(campaign_id)
        if campaign is None or campaign.tenant_id != tenant_id:
            raise NotFoundError("campaign", campaign_id)
        return campaign

    def list_send_receipts(
        self,
        tenant_id: str,
        campaign_id: str,
        status: Optional[SendStatus] = None,
    ) -> List[SendReceipt]:
        self.get(tenant_id, campaign_id)
        return self.store.list_send_receipts(campaign_id, status)

    def plan_dry_run(
        self,
        tenant_id: str,
        rule_set_id: str,
        name: Optional[str] = None,
        requires_approval: bool = False,
    ) -> Campaign:
        """
        Segment the tenant's audience with ``rule_set_id`` and create a
        dry-run campaign: DRY_RUN receipts for the eligible, SUPPRESSED
        receipts (with reason) for everyone else. Nothing is sent.
        """
        try:
            with self.store.transaction():
                rule_set = self.segmentation.get_rule_set(tenant_id, rule_set_id)
                if not rule_set.active:
                    raise InvalidStateError(rule_set_id, "active", "inactive")

                snapshot, decision = self.trust.policy_for(tenant_id)
                self.gate.require_any(
                    decision, [CAMPAIGNS_DRY_RUN, CAMPAIGNS], trust_total=snapshot.total
                )
                self.ledger.write(
                    tenant_id,
                    ReceiptKind.DECIDE,
                    ReceiptActor.TRUST_ENGINE,
                    "Policy checked for campaign planning",
                    input={"trust_total": snapshot.total},
                    output=decision.snapshot(),
                )

                result, segment = self.segmentation.segment(tenant_id, rule_set)

                now = utcnow()
                campaign = Campaign(
                    id=new_id("camp"),
                    tenant_id=tenant_id,
                    rule_set_id=rule_set.id,
                    name=name or f"Dry-run: {rule_set.name}",
                    dry_run=True,
                    status=CampaignStatus.READY,
                    requires_approval=requires_approval,
                    segment_size=result.eligible,
                    suppressed_size=result.suppressed,
                    gating_summary={
                        "policy": decision.snapshot(),
                        "trust_total": snapshot.total,
                        "reasons": result.reasons,
                        "segment_snapshot_id": segment.id,
                        "dry_run": True,
                    },
                    created_at=now,
                    updated_at=now,
                )
                self.store.insert_campaign(campaign)

                dry_run = result.eligible_members[: self.settings.max_dry_run_recipients]
                for recipient in dry_run:
                    self.store.insert_send_receipt(SendReceipt(
                        id=new_id("send"),
                        campaign_id=campaign.id,
                        recipient=recipient,
                        status=SendStatus.DRY_RUN,
                        created_at=now,
                        updated_at=now,
                    ))
                suppressed = result.suppressed_members[: self.settings.max_suppressed_receipts]
                for member in suppressed:
                    self.store.insert_send_receipt(SendReceipt(
                        id=new_id("send"),
                        campaign_id=campaign.id,
                        recipient=member.email,
                        status=SendStatus.SUPPRESSED,
                        reason=member.reason,
                        created_at=now,
                        updated_at=now,
                    ))

                self.ledger.write(
                    tenant_id,
                    ReceiptKind.EXECUTE,
                    ReceiptActor.DELIVERY,
                    "Dry-run delivery executed (no sends)",
                    input={"campaign_id": campaign.id, "channel": "email", "dry_run": True},
                    output={"dry_run_count": len(dry_run), "suppressed_count": len(suppressed)},
                )
        except PolicyBlockError as e:
            self._suppressed(tenant_id, "Campaign planning blocked by trust policy", e, rule_set_id)
            raise

        logger.info(
            "campaign_planned",
            tenant_id=tenant_id,
            campaign_id=campaign.id,
            eligible=result.eligible,
            suppressed=result.suppressed,
        )
        return campaign

    def approve(self, tenant_id: str, campaign_id: str, approver: str) -> Campaign:
        """Stamp manager approval. Re-approving keeps the first stamp."""
        with self.store.transaction():
            campaign = self.get(tenant_id, campaign_id)
            if campaign.status == CampaignStatus.EXECUTED:
                raise InvalidStateError(campaign_id, "not EXECUTED", campaign.status.value)
            if campaign.approved_at is not None:
                return campaign
            updated = self._save(campaign, approved_by=approver, approved_at=utcnow())
            self.ledger.write(
                tenant_id,
                ReceiptKind.DECIDE,
                ReceiptActor.ORCHESTRATOR,
                f"Manager approved campaign {campaign.name}",
                input={"campaign_id": campaign_id},
                output={"approved_by": approver},
            )
        logger.info("campaign_approved", tenant_id=tenant_id, campaign_id=campaign_id)
        return updated

    def execute(self, tenant_id: str, campaign_id: str) -> ExecutionOutcome:
        """
        Send the previewed segment.

        GUARD: never sends without approval (when required) or in an
        UNSAFE zone.
        """
        try:
            with self.store.transaction():
                campaign = self.get(tenant_id, campaign_id)
                if campaign.status == CampaignStatus.EXECUTED:
                    raise InvalidStateError(
                        campaign_id, CampaignStatus.READY.value, campaign.status.value
                    )
                if campaign.requires_approval and campaign.approved_at is None:
                    raise RequiresApprovalError(campaign_id)

                snapshot, decision = self.trust.policy_for(tenant_id)
                if decision.zone == PolicyZone.UNSAFE:
                    raise PolicyBlockError(
                        zone=decision.zone.value,
                        action=CAMPAIGNS_SEND,
                        trust_total=snapshot.total,
                    )

                sent = 0
                now = utcnow()
                for receipt in self.store.list_send_receipts(campaign_id, SendStatus.DRY_RUN):
                    updated_receipt = receipt.model_copy(
                        update={"status": SendStatus.SENT, "updated_at": now}
                    )
                    if self.store.update_send_receipt(updated_receipt, SendStatus.DRY_RUN):
                        sent += 1

                updated = self._save(
                    campaign,
                    status=CampaignStatus.EXECUTED,
                    dry_run=False,
                    executed_at=now,
                    gating_summary={
                        **campaign.gating_summary,
                        "policy": decision.snapshot(),
                        "trust_total": snapshot.total,
                        "dry_run": False,
                        "send_mode": _send_mode(decision),
                        "executed": True,
                    },
                )
                self.ledger.write(
                    tenant_id,
                    ReceiptKind.EXECUTE,
                    ReceiptActor.DELIVERY,
                    f"Executed safe segment (sent {sent})",
                    input={"campaign_id": campaign_id, "trust_total": snapshot.total},
                    output={"sent": sent, "zone": decision.zone.value},
                )
        except (RequiresApprovalError, PolicyBlockError) as e:
            self._suppressed(tenant_id, "Campaign execution blocked", e, campaign_id)
            logger.info(
                "campaign_execution_blocked",
                tenant_id=tenant_id,
                campaign_id=campaign_id,
                reason=e.kind,
            )
            raise

        logger.info(
            "campaign_executed",
            tenant_id=tenant_id,
            campaign_id=campaign_id,
            sent=sent,
            zone=decision.zone.value,
        )
        return ExecutionOutcome(sent=sent, campaign=updated)

    def _save(self, campaign: Campaign, **changes) -> Campaign:
        updated = campaign.model_copy(update={
            **changes,
            "row_version": campaign.row_version + 1,
            "updated_at": utcnow(),
        })
        if not self.store.swap_campaign(updated, campaign.row_version):
            current = self.store.get_campaign(campaign.id)
            raise InvalidStateError(
                campaign.id,
                campaign.status.value,
                current.status.value if current else "MISSING",
            )
        return updated

    def _suppressed(self, tenant_id: str, summary: str, error, subject_id: str) -> None:
        self.ledger.write(
            tenant_id,
            ReceiptKind.SUPPRESS,
            ReceiptActor.DELIVERY,
            summary,
            input={"id": subject_id},
            output={"error": error.kind, **error.details()},
        )
