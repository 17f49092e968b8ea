"""
Policy Gate — maps a trust zone to the actions it permits and forbids.

Behavioral Contract:
- Static, total mapping. Every zone resolves; nothing is derived at runtime.
- Allowed and blocked sets are disjoint within a zone.
- Each zone's allowed set extends the previous one, except that
  campaigns_send replaces campaigns_send_limited at ADVOCACY.
- A token in neither set is not policy-governed. Callers must not read
  absence as denial.
- Never cached: consumers resolve against the zone of the moment.
"""

from typing import Dict, Iterable, Optional

import structlog

from trust_kernel.errors import PolicyBlockError
from trust_kernel.models.policy import PolicyDecision, PolicyZone

logger = structlog.get_logger()

# Action tokens
CRAWL = "crawl"
BUILD_KNOWLEDGE = "build_knowledge"
GENERATE_DRAFTS = "generate_drafts"
PUBLISH = "publish"
PUBLISH_WITH_APPROVAL = "publish_with_approval"
CAMPAIGNS = "campaigns"
CAMPAIGNS_DRY_RUN = "campaigns_dry_run"
CAMPAIGNS_SEND_LIMITED = "campaigns_send_limited"
CAMPAIGNS_SEND = "campaigns_send"
AUTOMATED_OUTREACH = "automated_outreach"
AGGRESSIVE_UPSELL_SEGMENTS = "aggressive_upsell_segments"

PUBLISH_ACTIONS = frozenset({PUBLISH, PUBLISH_WITH_APPROVAL})
SEND_ACTIONS = frozenset({CAMPAIGNS_SEND, CAMPAIGNS_SEND_LIMITED})

_UNSAFE_ALLOWED = frozenset({CRAWL, BUILD_KNOWLEDGE, GENERATE_DRAFTS})
_CAUTION_ALLOWED = _UNSAFE_ALLOWED | {PUBLISH_WITH_APPROVAL, CAMPAIGNS_DRY_RUN}
_READY_ALLOWED = _CAUTION_ALLOWED | {CAMPAIGNS_SEND_LIMITED}
_ADVOCACY_ALLOWED = _CAUTION_ALLOWED | {CAMPAIGNS_SEND}

_POLICY_TABLE: Dict[PolicyZone, PolicyDecision] = {
    PolicyZone.UNSAFE: PolicyDecision(
        zone=PolicyZone.UNSAFE,
        allowed=_UNSAFE_ALLOWED,
        blocked=frozenset({PUBLISH, CAMPAIGNS, AUTOMATED_OUTREACH}),
    ),
    PolicyZone.CAUTION: PolicyDecision(
        zone=PolicyZone.CAUTION,
        allowed=_CAUTION_ALLOWED,
        blocked=frozenset({CAMPAIGNS_SEND}),
    ),
    PolicyZone.READY: PolicyDecision(
        zone=PolicyZone.READY,
        allowed=_READY_ALLOWED,
        blocked=frozenset({AGGRESSIVE_UPSELL_SEGMENTS}),
    ),
    PolicyZone.ADVOCACY: PolicyDecision(
        zone=PolicyZone.ADVOCACY,
        allowed=_ADVOCACY_ALLOWED,
        blocked=frozenset(),
    ),
}


def resolve(zone: PolicyZone) -> PolicyDecision:
    """The fixed policy for a zone."""
    return _POLICY_TABLE[PolicyZone(zone)]


class PolicyGate:
    """Stateless wrapper used by consumers that want to raise on denial."""

    def resolve(self, zone: PolicyZone) -> PolicyDecision:
        return resolve(zone)

    def require_any(
        self,
        decision: PolicyDecision,
        actions: Iterable[str],
        trust_total: Optional[int] = None,
    ) -> str:
        """
        Return the first of ``actions`` the decision allows.

        Raises PolicyBlockError when none is allowed and at least one is
        governed. Ungoverned actions pass through.
        """
        actions = list(actions)
        for action in actions:
            if decision.permits(action):
                return action
        if not any(decision.governs(a) for a in actions):
            return actions[0]
        logger.info(
            "policy_blocked",
            zone=decision.zone.value,
            actions=actions,
            trust_total=trust_total,
        )
        raise PolicyBlockError(
            zone=decision.zone.value, action="|".join(actions), trust_total=trust_total
        )
