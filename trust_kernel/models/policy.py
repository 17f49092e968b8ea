"""Policy Decision — what a trust zone permits and forbids."""

from enum import Enum
from typing import FrozenSet

from pydantic import BaseModel, ConfigDict


class PolicyZone(str, Enum):
    UNSAFE = "UNSAFE"
    CAUTION = "CAUTION"
    READY = "READY"
    ADVOCACY = "ADVOCACY"


class PolicyDecision(BaseModel):
    """
    Derived from a zone and recomputed on every request. Never persisted
    as its own row; a copy is embedded in receipts and gating summaries.
    """

    model_config = ConfigDict(frozen=True)

    zone: PolicyZone
    allowed: FrozenSet[str]
    blocked: FrozenSet[str]

    def permits(self, action: str) -> bool:
        return action in self.allowed

    def forbids(self, action: str) -> bool:
        return action in self.blocked

    def governs(self, action: str) -> bool:
        """Tokens in neither set are not policy-governed."""
        return action in self.allowed or action in self.blocked

    def snapshot(self) -> dict:
        """Serializable form for audit records."""
        return {
            "zone": self.zone.value,
            "allowed": sorted(self.allowed),
            "blocked": sorted(self.blocked),
        }
