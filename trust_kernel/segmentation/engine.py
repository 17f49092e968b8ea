"""
Segmentation Engine — partitions a population into eligible and suppressed.

Conditions are checked in a fixed precedence and the first failure decides
the suppression reason, so no member is ever counted twice:

  1. missing attribute        → missing_<attr>
  2. numeric threshold unmet  → <attr>_below_<threshold>
  3. categorical mismatch     → non_matching_<attr>
  4. boolean-state mismatch   → <attr>_state_mismatch

Behavioral Contract:
- evaluate() is a pure function of its inputs: same conditions and same
  population always give the same counts.
- An unset condition is no constraint and never suppresses.
- "Zero eligible" is a valid result, not an error.
"""

import math
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

import structlog

from trust_kernel.errors import NotFoundError
from trust_kernel.models.receipt import ReceiptActor, ReceiptKind
from trust_kernel.models.segmentation import (
    EndCustomer,
    RuleSet,
    SegmentConditions,
    SegmentResult,
    SegmentSnapshot,
    SuppressedMember,
)
from trust_kernel.receipts.ledger import ReceiptLedger
from trust_kernel.storage.store import KernelStore, new_id, utcnow

logger = structlog.get_logger()

_MISSING = object()

# A check returns a suppression reason, or None when the member passes
Check = Callable[[dict], Optional[str]]


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(p.title() for p in rest)


def _lookup(attributes: dict, name: str) -> Any:
    """Attribute value by snake_case name, falling back to camelCase."""
    if name in attributes:
        return attributes[name]
    return attributes.get(_camel(name), _MISSING)


def _as_number(value: Any) -> Optional[float]:
    if value is _MISSING or value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("true", "1", "yes")
    return bool(value) if value is not _MISSING else False


def format_threshold(threshold: float) -> str:
    """5.0 → "5", 4.5 → "4_5"."""
    if float(threshold).is_integer():
        return str(int(threshold))
    return str(threshold).replace(".", "_")


def _missing_check(attr: str, numeric: bool) -> Check:
    def check(attributes: dict) -> Optional[str]:
        value = _lookup(attributes, attr)
        if numeric:
            absent = _as_number(value) is None
        else:
            absent = value is _MISSING or value is None or value == ""
        return f"missing_{attr}" if absent else None
    return check


def _threshold_check(attr: str, minimum: float) -> Check:
    def check(attributes: dict) -> Optional[str]:
        value = _as_number(_lookup(attributes, attr))
        if value is not None and value < minimum:
            return f"{attr}_below_{format_threshold(minimum)}"
        return None
    return check


def _categorical_check(attr: str, required: str) -> Check:
    def check(attributes: dict) -> Optional[str]:
        value = _lookup(attributes, attr)
        actual = "" if value is _MISSING or value is None else str(value)
        if actual.strip().lower() != required.strip().lower():
            return f"non_matching_{attr}"
        return None
    return check


def _boolean_check(attr: str, required: bool) -> Check:
    def check(attributes: dict) -> Optional[str]:
        if _as_bool(_lookup(attributes, attr)) != required:
            return f"{attr}_state_mismatch"
        return None
    return check


def build_checks(conditions: SegmentConditions) -> List[Check]:
    """Ordered checks for a condition set. Earlier checks take precedence."""
    missing: List[Check] = []
    thresholds: List[Check] = []
    categorical: List[Check] = []
    boolean: List[Check] = []

    numeric_attrs = []
    if conditions.rating_gte is not None:
        numeric_attrs.append("rating")
        thresholds.append(_threshold_check("rating", conditions.rating_gte))
    if conditions.sentiment is not None:
        categorical.append(_categorical_check("sentiment", conditions.sentiment))
    if conditions.referral_sent is not None:
        boolean.append(_boolean_check("referral_sent", conditions.referral_sent))

    for attr in conditions.required:
        if attr not in numeric_attrs:
            missing.append(_missing_check(attr, numeric=False))
    for attr in numeric_attrs:
        missing.append(_missing_check(attr, numeric=True))

    return missing + thresholds + categorical + boolean


def first_failure(checks: List[Check], attributes: dict) -> Optional[str]:
    for check in checks:
        reason = check(attributes)
        if reason:
            return reason
    return None


def evaluate(
    conditions: SegmentConditions,
    population: Iterable[Tuple[str, dict]],
) -> SegmentResult:
    """
    Partition ``population`` (pairs of recipient and attributes).

    Reasons are counted once per suppressed member; the reason map is
    key-sorted so equal inputs serialize identically.
    """
    checks = build_checks(conditions)
    reasons: Dict[str, int] = {}
    eligible: List[str] = []
    suppressed: List[SuppressedMember] = []

    for recipient, attributes in population:
        reason = first_failure(checks, attributes or {})
        if reason:
            suppressed.append(SuppressedMember(email=recipient, reason=reason))
            reasons[reason] = reasons.get(reason, 0) + 1
        else:
            eligible.append(recipient)

    return SegmentResult(
        eligible=len(eligible),
        suppressed=len(suppressed),
        reasons=dict(sorted(reasons.items())),
        eligible_members=eligible,
        suppressed_members=suppressed,
    )


class SegmentationService:
    """Rule-set management and persisted segment previews for a tenant."""

    def __init__(self, store: KernelStore, ledger: ReceiptLedger):
        self.store = store
        self.ledger = ledger

    # --- Rule sets ---

    def get_rule_set(self, tenant_id: str, rule_set_id: str) -> RuleSet:
        rule_set = self.store.get_rule_set(rule_set_id)
        if rule_set is None or rule_set.tenant_id != tenant_id:
            raise NotFoundError("rule_set", rule_set_id)
        return rule_set

    def list_rule_sets(self, tenant_id: str) -> List[RuleSet]:
        return self.store.list_rule_sets(tenant_id)

    def create_rule_set(
        self,
        tenant_id: str,
        name: str,
        conditions: SegmentConditions,
        description: str = "",
    ) -> RuleSet:
        """
        Create a rule set, or update and reuse the one already holding
        ``name`` for this tenant.
        """
        now = utcnow()
        with self.store.transaction():
            existing = self.store.get_rule_set_by_name(tenant_id, name)
            if existing:
                rule_set = existing.model_copy(update={
                    "description": description,
                    "conditions": conditions,
                    "active": True,
                    "updated_at": now,
                })
                self.store.update_rule_set(rule_set)
            else:
                rule_set = RuleSet(
                    id=new_id("rs"),
                    tenant_id=tenant_id,
                    name=name,
                    description=description,
                    conditions=conditions,
                    created_at=now,
                    updated_at=now,
                )
                self.store.insert_rule_set(rule_set)
            self.ledger.write(
                tenant_id,
                ReceiptKind.DECIDE,
                ReceiptActor.RULE_ENGINE,
                f"Rule set saved: {name}",
                input={"name": name, "conditions": conditions.model_dump()},
                output={"rule_set_id": rule_set.id},
            )
        return rule_set

    def update_rule_set(
        self,
        tenant_id: str,
        rule_set_id: str,
        name: Optional[str] = None,
        description: Optional[str] = None,
        conditions: Optional[SegmentConditions] = None,
        active: Optional[bool] = None,
    ) -> RuleSet:
        changes = {
            k: v
            for k, v in {
                "name": name,
                "description": description,
                "conditions": conditions,
                "active": active,
            }.items()
            if v is not None
        }
        with self.store.transaction():
            rule_set = self.get_rule_set(tenant_id, rule_set_id)
            updated = rule_set.model_copy(update={**changes, "updated_at": utcnow()})
            self.store.update_rule_set(updated)
            self.ledger.write(
                tenant_id,
                ReceiptKind.DECIDE,
                ReceiptActor.RULE_ENGINE,
                f"Rule set updated: {updated.name}",
                input={"rule_set_id": rule_set_id, "changes": sorted(changes)},
                output={"active": updated.active},
            )
        return updated

    # --- Population ---

    def add_end_customers(self, tenant_id: str, members: List[dict]) -> List[EndCustomer]:
        """Import population members; an existing email has its attributes replaced."""
        now = utcnow()
        customers = [
            EndCustomer(
                id=new_id("ec"),
                tenant_id=tenant_id,
                email=m["email"],
                attributes=m.get("attributes", {}),
                created_at=now,
            )
            for m in members
        ]
        with self.store.transaction():
            for customer in customers:
                self.store.upsert_end_customer(customer)
        return customers

    def population(self, tenant_id: str) -> List[Tuple[str, dict]]:
        return [(c.email, c.attributes) for c in self.store.list_end_customers(tenant_id)]

    # --- Evaluation ---

    def segment(self, tenant_id: str, rule_set: RuleSet) -> Tuple[SegmentResult, SegmentSnapshot]:
        """Evaluate ``rule_set`` and persist the snapshot. Caller owns the transaction."""
        result = evaluate(rule_set.conditions, self.population(tenant_id))
        snapshot = SegmentSnapshot(
            id=new_id("seg"),
            tenant_id=tenant_id,
            rule_set_id=rule_set.id,
            eligible=result.eligible,
            suppressed=result.suppressed,
            reasons=result.reasons,
            created_at=utcnow(),
        )
        self.store.insert_segment_snapshot(snapshot)
        self.ledger.write(
            tenant_id,
            ReceiptKind.DECIDE,
            ReceiptActor.RULE_ENGINE,
            f"Segment computed for {rule_set.name}",
            input={"rule_set_id": rule_set.id, "conditions": rule_set.conditions.model_dump()},
            output={
                "eligible": result.eligible,
                "suppressed": result.suppressed,
                "reasons": result.reasons,
            },
        )
        logger.info(
            "segment_evaluated",
            tenant_id=tenant_id,
            rule_set_id=rule_set.id,
            eligible=result.eligible,
            suppressed=result.suppressed,
        )
        return result, snapshot

    def preview(self, tenant_id: str, rule_set_id: str) -> SegmentSnapshot:
        with self.store.transaction():
            rule_set = self.get_rule_set(tenant_id, rule_set_id)
            _, snapshot = self.segment(tenant_id, rule_set)
        return snapshot
