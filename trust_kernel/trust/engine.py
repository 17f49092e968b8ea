"""
Trust Score Engine — turns trust sub-signals into a total and a zone.

Zones (closed on the upper bound of each band):
  total  0-40:  UNSAFE
  total 41-65:  CAUTION
  total 66-80:  READY
  total 81-100: ADVOCACY

Behavioral Contract:
- zone_of is total over 0-100 and monotonic: a higher score never yields
  a less permissive zone.
- A tenant with no snapshot gets exactly one cold-start snapshot, even
  under concurrent first calls.
- Snapshots are appended, never updated. The latest is the newest.
- Policy is resolved fresh on every call; nothing is cached.
"""

import sqlite3
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional, Tuple

import structlog
from croniter import croniter

from trust_kernel.config import Settings
from trust_kernel.errors import NotFoundError
from trust_kernel.models.policy import PolicyDecision, PolicyZone
from trust_kernel.models.receipt import ReceiptActor, ReceiptKind
from trust_kernel.models.trust import TrustScoreSnapshot, TrustSignals, TrustWeights
from trust_kernel.policy.gate import resolve
from trust_kernel.receipts.ledger import ReceiptLedger
from trust_kernel.storage.store import KernelStore, new_id, utcnow

logger = structlog.get_logger()

_SIGNAL_NAMES = ("experience", "responsiveness", "stability", "recency", "risk")


def zone_of(total: int) -> PolicyZone:
    """Resolve a trust total (0-100) to its policy zone."""
    if not 0 <= total <= 100:
        raise ValueError(f"trust total must be within 0-100, got {total}")
    if total <= 40:
        return PolicyZone.UNSAFE
    elif total <= 65:
        return PolicyZone.CAUTION
    elif total <= 80:
        return PolicyZone.READY
    else:
        return PolicyZone.ADVOCACY


def compute_total(signals: TrustSignals, weights: TrustWeights) -> int:
    """Weighted mean of the sub-signals, rounded half-up into 0-100."""
    weight_sum = sum(getattr(weights, n) for n in _SIGNAL_NAMES)
    if weight_sum <= 0:
        raise ValueError("at least one trust weight must be positive")
    score = sum(
        getattr(signals, n) * getattr(weights, n) for n in _SIGNAL_NAMES
    ) / weight_sum
    rounded = int(Decimal(str(score)).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    return max(0, min(100, rounded))


def _is_stale(created_at: datetime, schedule: str, now: datetime) -> bool:
    """True if a scheduled recomputation fired after the snapshot was taken."""
    try:
        last_tick = croniter(schedule, now).get_prev(datetime)
    except (ValueError, KeyError):
        # Unparseable schedule: staleness is unknown, report fresh
        return False
    return created_at < last_tick


class TrustScoreEngine:
    """
    The single owner of trust scores. Injected into every consumer that
    needs a policy decision.
    """

    def __init__(self, store: KernelStore, ledger: ReceiptLedger, settings: Settings):
        self.store = store
        self.ledger = ledger
        self.settings = settings

    def latest(self, tenant_id: str) -> TrustScoreSnapshot:
        """
        The tenant's newest snapshot, creating the cold-start default if
        none exists. The default total comes from settings (70, READY,
        unless configured otherwise).
        """
        if self.store.get_tenant(tenant_id) is None:
            raise NotFoundError("tenant", tenant_id)

        with self.store.transaction():
            snapshot = self.store.latest_trust_snapshot(tenant_id)
            if snapshot is not None:
                return snapshot

            default = self.settings.cold_start_trust_total
            snapshot = TrustScoreSnapshot(
                id=new_id("trust"),
                tenant_id=tenant_id,
                total=default,
                experience=default,
                responsiveness=default,
                stability=default,
                recency=default,
                risk=default,
                created_at=utcnow(),
            )
            try:
                self.store.insert_trust_snapshot(snapshot, cold_start=True)
            except sqlite3.IntegrityError:
                # Another writer created the cold-start row first
                existing = self.store.latest_trust_snapshot(tenant_id)
                if existing is None:
                    raise
                return existing

            logger.info(
                "trust_cold_start",
                tenant_id=tenant_id,
                snapshot_id=snapshot.id,
                total=default,
            )
            return snapshot

    def record(self, tenant_id: str, signals: TrustSignals) -> TrustScoreSnapshot:
        """Append a freshly computed snapshot. Entry point for the recompute job."""
        if self.store.get_tenant(tenant_id) is None:
            raise NotFoundError("tenant", tenant_id)

        total = compute_total(signals, self.settings.trust_weights)
        snapshot = TrustScoreSnapshot(
            id=new_id("trust"),
            tenant_id=tenant_id,
            total=total,
            created_at=utcnow(),
            **signals.model_dump(),
        )
        decision = resolve(zone_of(total))

        with self.store.transaction():
            self.store.insert_trust_snapshot(snapshot)
            self.ledger.write(
                tenant_id,
                ReceiptKind.DECIDE,
                ReceiptActor.TRUST_ENGINE,
                f"Trust score: {total}/100 ({decision.zone.value})",
                input=signals.model_dump(),
                output={"snapshot_id": snapshot.id, "total": total, **decision.snapshot()},
            )

        logger.info(
            "trust_snapshot_recorded",
            tenant_id=tenant_id,
            snapshot_id=snapshot.id,
            total=total,
            zone=decision.zone.value,
        )
        return snapshot

    def policy_for(self, tenant_id: str) -> Tuple[TrustScoreSnapshot, PolicyDecision]:
        """Current snapshot and the policy it implies. Resolved on every call."""
        snapshot = self.latest(tenant_id)
        return snapshot, resolve(zone_of(snapshot.total))

    def is_stale(self, snapshot: TrustScoreSnapshot, now: Optional[datetime] = None) -> bool:
        """Whether the recompute schedule has ticked since this snapshot was taken."""
        return _is_stale(
            snapshot.created_at,
            self.settings.trust_recompute_schedule,
            now or utcnow(),
        )
