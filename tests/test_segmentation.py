"""Tests for the Segmentation Engine."""

import pytest

from trust_kernel.errors import NotFoundError
from trust_kernel.models.receipt import ReceiptActor, ReceiptKind
from trust_kernel.models.segmentation import SegmentConditions
from trust_kernel.receipts.ledger import ReceiptLedger
from trust_kernel.segmentation.engine import SegmentationService, evaluate, format_threshold
from trust_kernel.storage.store import KernelStore


def _make_conditions() -> SegmentConditions:
    return SegmentConditions(rating_gte=5, sentiment="positive", referral_sent=False)


def _make_population():
    """10 members: 4 match, 3 lack a rating, 2 rate below 5, 1 has the wrong sentiment."""
    ok = {"rating": 5, "sentiment": "positive", "referral_sent": False}
    return [
        ("ana@example.com", dict(ok)),
        ("ben@example.com", {**ok, "rating": 6}),
        ("cai@example.com", {**ok, "sentiment": "Positive"}),
        ("dee@example.com", {"rating": "5", "sentiment": "positive", "referralSent": False}),
        ("eli@example.com", {"sentiment": "positive", "referral_sent": False}),
        ("fay@example.com", {"rating": None, "sentiment": "negative"}),
        ("gus@example.com", {"rating": "n/a", "sentiment": "positive"}),
        ("hal@example.com", {**ok, "rating": 4}),
        ("ivy@example.com", {**ok, "rating": 2, "sentiment": "negative"}),
        ("jon@example.com", {**ok, "sentiment": "negative"}),
    ]


class TestEvaluate:
    def test_reference_population(self):
        result = evaluate(_make_conditions(), _make_population())

        assert result.eligible == 4
        assert result.suppressed == 6
        assert result.reasons == {
            "missing_rating": 3,
            "non_matching_sentiment": 1,
            "rating_below_5": 2,
        }
        assert result.eligible_members == [
            "ana@example.com",
            "ben@example.com",
            "cai@example.com",
            "dee@example.com",
        ]

    def test_each_member_counted_once(self):
        result = evaluate(_make_conditions(), _make_population())
        assert sum(result.reasons.values()) == result.suppressed
        emails = result.eligible_members + [m.email for m in result.suppressed_members]
        assert len(emails) == len(set(emails)) == 10

    def test_threshold_precedes_categorical(self):
        result = evaluate(_make_conditions(), _make_population())
        reasons = {m.email: m.reason for m in result.suppressed_members}
        assert reasons["ivy@example.com"] == "rating_below_5"

    def test_deterministic(self):
        first = evaluate(_make_conditions(), _make_population())
        second = evaluate(_make_conditions(), _make_population())
        assert first.model_dump() == second.model_dump()

    def test_unset_conditions_suppress_nobody(self):
        result = evaluate(SegmentConditions(), _make_population())
        assert result.eligible == 10
        assert result.reasons == {}

    def test_empty_population_is_not_an_error(self):
        result = evaluate(_make_conditions(), [])
        assert result.eligible == 0
        assert result.suppressed == 0

    def test_referral_state_mismatch(self):
        population = [("kim@example.com", {"rating": 5, "sentiment": "positive", "referral_sent": "true"})]
        result = evaluate(_make_conditions(), population)
        assert result.reasons == {"referral_sent_state_mismatch": 1}

    def test_required_attribute_missing(self):
        conditions = SegmentConditions(required=["first_name"])
        result = evaluate(conditions, [("lee@example.com", {"first_name": ""})])
        assert result.reasons == {"missing_first_name": 1}

    def test_fractional_threshold_reason(self):
        assert format_threshold(5.0) == "5"
        assert format_threshold(4.5) == "4_5"
        result = evaluate(SegmentConditions(rating_gte=4.5), [("mo@example.com", {"rating": 4})])
        assert result.reasons == {"rating_below_4_5": 1}


class TestSegmentationService:
    def setup_method(self):
        self.store = KernelStore(":memory:")
        self.ledger = ReceiptLedger(self.store)
        self.service = SegmentationService(self.store, self.ledger)
        self.tenant = self.store.get_or_create_tenant("shop.example")
        self.service.add_end_customers(
            self.tenant.id,
            [{"email": e, "attributes": a} for e, a in _make_population()],
        )

    def test_preview_persists_snapshot(self):
        rule_set = self.service.create_rule_set(self.tenant.id, "Happy reviewers", _make_conditions())
        snapshot = self.service.preview(self.tenant.id, rule_set.id)

        assert snapshot.eligible == 4
        assert snapshot.suppressed == 6
        assert self.store.list_segment_snapshots(rule_set.id) == [snapshot]

    def test_preview_writes_receipt(self):
        rule_set = self.service.create_rule_set(self.tenant.id, "Happy reviewers", _make_conditions())
        self.service.preview(self.tenant.id, rule_set.id)

        receipts = self.ledger.list(self.tenant.id, kind=ReceiptKind.DECIDE, actor=ReceiptActor.RULE_ENGINE)
        assert receipts[0].summary == "Segment computed for Happy reviewers"
        assert receipts[0].output["eligible"] == 4

    def test_rule_set_name_reused(self):
        first = self.service.create_rule_set(self.tenant.id, "Happy reviewers", SegmentConditions())
        second = self.service.create_rule_set(self.tenant.id, "Happy reviewers", _make_conditions())
        assert first.id == second.id
        assert self.service.get_rule_set(self.tenant.id, first.id).conditions.rating_gte == 5
        assert len(self.service.list_rule_sets(self.tenant.id)) == 1

    def test_update_rule_set(self):
        rule_set = self.service.create_rule_set(self.tenant.id, "Happy reviewers", _make_conditions())
        updated = self.service.update_rule_set(self.tenant.id, rule_set.id, active=False)
        assert not updated.active
        assert updated.conditions == rule_set.conditions

    def test_import_replaces_attributes(self):
        self.service.add_end_customers(
            self.tenant.id, [{"email": "eli@example.com", "attributes": {"rating": 5}}]
        )
        population = dict(self.service.population(self.tenant.id))
        assert len(population) == 10
        assert population["eli@example.com"] == {"rating": 5}

    def test_rule_set_scoped_to_tenant(self):
        other = self.store.get_or_create_tenant("other.example")
        rule_set = self.service.create_rule_set(self.tenant.id, "Happy reviewers", _make_conditions())
        with pytest.raises(NotFoundError):
            self.service.preview(other.id, rule_set.id)
