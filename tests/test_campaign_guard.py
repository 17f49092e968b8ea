"""Tests for the Campaign Execution Guard."""

import threading

import pytest

from trust_kernel.campaigns.guard import CampaignExecutionGuard
from trust_kernel.config import Settings
from trust_kernel.errors import (
    InvalidStateError,
    NotFoundError,
    PolicyBlockError,
    RequiresApprovalError,
)
from trust_kernel.models.campaign import CampaignStatus, SendReceipt, SendStatus
from trust_kernel.models.receipt import ReceiptActor, ReceiptKind
from trust_kernel.models.segmentation import SegmentConditions
from trust_kernel.models.trust import TrustSignals
from trust_kernel.receipts.ledger import ReceiptLedger
from trust_kernel.segmentation.engine import SegmentationService
from trust_kernel.storage.store import KernelStore, new_id, utcnow
from trust_kernel.trust.engine import TrustScoreEngine


def _make_signals(value: int) -> TrustSignals:
    return TrustSignals(
        experience=value,
        responsiveness=value,
        stability=value,
        recency=value,
        risk=value,
    )


def _make_customers():
    """5 happy reviewers and 2 that should be suppressed."""
    happy = {"rating": 5, "sentiment": "positive", "referral_sent": False}
    customers = [{"email": f"fan{i}@example.com", "attributes": happy} for i in range(5)]
    customers.append({"email": "quiet@example.com", "attributes": {"sentiment": "positive"}})
    customers.append({"email": "grumpy@example.com", "attributes": {**happy, "rating": 2}})
    return customers


def _make_sent_receipt(campaign_id: str, recipient: str) -> SendReceipt:
    now = utcnow()
    return SendReceipt(
        id=new_id("send"),
        campaign_id=campaign_id,
        recipient=recipient,
        status=SendStatus.SENT,
        created_at=now,
        updated_at=now,
    )


class TestCampaignExecutionGuard:
    def setup_method(self):
        self.settings = Settings(database_path=":memory:")
        self.store = KernelStore(":memory:")
        self.ledger = ReceiptLedger(self.store)
        self.trust = TrustScoreEngine(self.store, self.ledger, self.settings)
        self.segmentation = SegmentationService(self.store, self.ledger)
        self.guard = CampaignExecutionGuard(
            self.store, self.ledger, self.trust, self.segmentation, self.settings
        )
        self.tenant = self.store.get_or_create_tenant("shop.example")
        self.segmentation.add_end_customers(self.tenant.id, _make_customers())
        self.rule_set = self.segmentation.create_rule_set(
            self.tenant.id,
            "Happy reviewers",
            SegmentConditions(rating_gte=5, sentiment="positive", referral_sent=False),
        )

    def _sends(self, campaign_id: str, status: SendStatus):
        return self.guard.list_send_receipts(self.tenant.id, campaign_id, status)

    def test_plan_creates_dry_run(self):
        campaign = self.guard.plan_dry_run(self.tenant.id, self.rule_set.id)

        assert campaign.status == CampaignStatus.READY
        assert campaign.dry_run is True
        assert campaign.segment_size == 5
        assert campaign.suppressed_size == 2
        assert len(self._sends(campaign.id, SendStatus.DRY_RUN)) == 5

        suppressed = {s.recipient: s.reason for s in self._sends(campaign.id, SendStatus.SUPPRESSED)}
        assert suppressed == {
            "quiet@example.com": "missing_rating",
            "grumpy@example.com": "rating_below_5",
        }

        executes = self.ledger.list(self.tenant.id, kind=ReceiptKind.EXECUTE, actor=ReceiptActor.DELIVERY)
        assert executes[0].output == {"dry_run_count": 5, "suppressed_count": 2}

    def test_plan_caps_dry_run_receipts(self):
        settings = Settings(database_path=":memory:", max_dry_run_recipients=3)
        guard = CampaignExecutionGuard(
            self.store, self.ledger, self.trust, self.segmentation, settings
        )
        campaign = guard.plan_dry_run(self.tenant.id, self.rule_set.id)
        assert campaign.segment_size == 5
        assert len(self._sends(campaign.id, SendStatus.DRY_RUN)) == 3

    def test_plan_blocked_in_unsafe_zone(self):
        self.trust.record(self.tenant.id, _make_signals(20))
        with pytest.raises(PolicyBlockError):
            self.guard.plan_dry_run(self.tenant.id, self.rule_set.id)
        suppressed = self.ledger.list(self.tenant.id, kind=ReceiptKind.SUPPRESS)
        assert len(suppressed) == 1

    def test_plan_rejects_inactive_rule_set(self):
        self.segmentation.update_rule_set(self.tenant.id, self.rule_set.id, active=False)
        with pytest.raises(InvalidStateError):
            self.guard.plan_dry_run(self.tenant.id, self.rule_set.id)

    def test_execute_sends_exactly_the_dry_run_recipients(self):
        campaign = self.guard.plan_dry_run(self.tenant.id, self.rule_set.id)
        self.store.insert_send_receipt(_make_sent_receipt(campaign.id, "early1@example.com"))
        self.store.insert_send_receipt(_make_sent_receipt(campaign.id, "early2@example.com"))

        outcome = self.guard.execute(self.tenant.id, campaign.id)

        assert outcome.sent == 5
        assert outcome.campaign.status == CampaignStatus.EXECUTED
        assert outcome.campaign.dry_run is False
        assert outcome.campaign.executed_at is not None
        assert outcome.campaign.gating_summary["executed"] is True
        assert outcome.campaign.gating_summary["policy"]["zone"] == "READY"
        assert len(self._sends(campaign.id, SendStatus.SENT)) == 7
        assert self._sends(campaign.id, SendStatus.DRY_RUN) == []
        assert len(self._sends(campaign.id, SendStatus.SUPPRESSED)) == 2

    def test_second_execute_leaves_recipients_alone(self):
        campaign = self.guard.plan_dry_run(self.tenant.id, self.rule_set.id)
        self.guard.execute(self.tenant.id, campaign.id)
        before = self.guard.list_send_receipts(self.tenant.id, campaign.id)

        with pytest.raises(InvalidStateError):
            self.guard.execute(self.tenant.id, campaign.id)

        assert self.guard.list_send_receipts(self.tenant.id, campaign.id) == before
        executed = [
            r for r in self.ledger.list(self.tenant.id, kind=ReceiptKind.EXECUTE)
            if r.output.get("sent") is not None
        ]
        assert len(executed) == 1

    def test_concurrent_execute_sends_once(self):
        campaign = self.guard.plan_dry_run(self.tenant.id, self.rule_set.id)
        outcomes = []

        def attempt():
            try:
                outcomes.append(self.guard.execute(self.tenant.id, campaign.id).sent)
            except InvalidStateError:
                outcomes.append("invalid_state")

        threads = [threading.Thread(target=attempt) for _ in range(6)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert sorted(outcomes, key=str) == [5] + ["invalid_state"] * 5
        assert len(self._sends(campaign.id, SendStatus.SENT)) == 5
        assert self._sends(campaign.id, SendStatus.DRY_RUN) == []
        executed = [
            r for r in self.ledger.list(self.tenant.id, kind=ReceiptKind.EXECUTE)
            if r.output.get("sent") is not None
        ]
        assert len(executed) == 1
        assert executed[0].output["sent"] == 5

    def test_execute_keeps_planning_summary(self):
        campaign = self.guard.plan_dry_run(self.tenant.id, self.rule_set.id)
        planned = dict(campaign.gating_summary)

        summary = self.guard.execute(self.tenant.id, campaign.id).campaign.gating_summary

        assert summary["segment_snapshot_id"] == planned["segment_snapshot_id"]
        assert summary["reasons"] == {"missing_rating": 1, "rating_below_5": 1}
        assert summary["executed"] is True
        assert summary["dry_run"] is False
        stored = self.guard.get(self.tenant.id, campaign.id).gating_summary
        assert stored == summary

    def test_requires_approval(self):
        campaign = self.guard.plan_dry_run(
            self.tenant.id, self.rule_set.id, requires_approval=True
        )
        with pytest.raises(RequiresApprovalError):
            self.guard.execute(self.tenant.id, campaign.id)

        assert len(self._sends(campaign.id, SendStatus.DRY_RUN)) == 5
        assert self._sends(campaign.id, SendStatus.SENT) == []
        assert self.guard.get(self.tenant.id, campaign.id).status == CampaignStatus.READY
        suppressed = self.ledger.list(self.tenant.id, kind=ReceiptKind.SUPPRESS)
        assert suppressed[0].output["error"] == "requires_approval"

        self.guard.approve(self.tenant.id, campaign.id, "manager@shop.example")
        outcome = self.guard.execute(self.tenant.id, campaign.id)
        assert outcome.sent == 5

    def test_unsafe_zone_blocks_execution(self):
        campaign = self.guard.plan_dry_run(self.tenant.id, self.rule_set.id)
        self.trust.record(self.tenant.id, _make_signals(15))

        with pytest.raises(PolicyBlockError):
            self.guard.execute(self.tenant.id, campaign.id)
        assert len(self._sends(campaign.id, SendStatus.DRY_RUN)) == 5
        assert self.guard.get(self.tenant.id, campaign.id).status == CampaignStatus.READY

    def test_caution_zone_executes(self):
        campaign = self.guard.plan_dry_run(self.tenant.id, self.rule_set.id)
        self.trust.record(self.tenant.id, _make_signals(50))

        outcome = self.guard.execute(self.tenant.id, campaign.id)
        assert outcome.sent == 5
        assert outcome.campaign.gating_summary["policy"]["zone"] == "CAUTION"

    def test_approval_keeps_first_stamp(self):
        campaign = self.guard.plan_dry_run(
            self.tenant.id, self.rule_set.id, requires_approval=True
        )
        first = self.guard.approve(self.tenant.id, campaign.id, "alice")
        second = self.guard.approve(self.tenant.id, campaign.id, "bob")
        assert second.approved_by == "alice"
        assert second.approved_at == first.approved_at

    def test_approve_executed_campaign_is_invalid(self):
        campaign = self.guard.plan_dry_run(self.tenant.id, self.rule_set.id)
        self.guard.execute(self.tenant.id, campaign.id)
        with pytest.raises(InvalidStateError):
            self.guard.approve(self.tenant.id, campaign.id, "manager")

    def test_campaign_scoped_to_tenant(self):
        campaign = self.guard.plan_dry_run(self.tenant.id, self.rule_set.id)
        other = self.store.get_or_create_tenant("other.example")
        with pytest.raises(NotFoundError):
            self.guard.execute(other.id, campaign.id)
