"""Typed outcomes for expected failures in the trust kernel.

Every error carries a machine-readable ``kind`` so transports can map it
without inspecting the message. Nothing here is raised for an ordinary
business result such as an empty segment.
"""

from typing import List, Optional


class TrustKernelError(Exception):
    """Base exception for all trust kernel errors."""

    kind = "trust_kernel_error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def details(self) -> dict:
        return {}

    def to_dict(self) -> dict:
        return {"ok": False, "error": self.kind, "message": self.message, **self.details()}


class NotFoundError(TrustKernelError):
    """Raised when a tenant, recommendation, campaign or rule set is missing."""

    kind = "not_found"

    def __init__(self, entity: str, entity_id: str):
        super().__init__(f"{entity} {entity_id} not found")
        self.entity = entity
        self.entity_id = entity_id

    def details(self) -> dict:
        return {"entity": self.entity, "id": self.entity_id}


class InvalidStateError(TrustKernelError):
    """Raised when a transition is attempted from a state that does not permit it."""

    kind = "invalid_state"

    def __init__(self, entity_id: str, expected: str, actual: str):
        super().__init__(
            f"{entity_id}: expected state {expected}, found {actual}"
        )
        self.entity_id = entity_id
        self.expected = expected
        self.actual = actual

    def details(self) -> dict:
        return {"expected": self.expected, "actual": self.actual}


class PolicyBlockError(TrustKernelError):
    """Raised when the current trust zone forbids the requested action."""

    kind = "policy_block"

    def __init__(self, zone: str, action: str, trust_total: Optional[int] = None):
        super().__init__(f"Trust policy blocked {action} (zone {zone})")
        self.zone = zone
        self.action = action
        self.trust_total = trust_total

    def details(self) -> dict:
        return {"zone": self.zone, "action": self.action, "trust_total": self.trust_total}


class RequiresApprovalError(TrustKernelError):
    """Raised when a campaign needs manager approval before execution."""

    kind = "requires_approval"

    def __init__(self, campaign_id: str):
        super().__init__(
            f"Campaign {campaign_id} requires manager approval before execution"
        )
        self.campaign_id = campaign_id


class DraftMissingError(TrustKernelError):
    """Raised when approve/publish finds no draft payload."""

    kind = "draft_missing"

    def __init__(self, recommendation_id: str):
        super().__init__(f"Recommendation {recommendation_id} has no draft")
        self.recommendation_id = recommendation_id


class NoActionError(TrustKernelError):
    """Raised when a recommendation's analysis concluded nothing should change."""

    kind = "no_action"

    def __init__(self, recommendation_id: str, action: str):
        super().__init__(
            f"Recommendation {recommendation_id} is {action}; nothing to draft or publish"
        )
        self.action = action

    def details(self) -> dict:
        return {"action": self.action}


class NeedsVerificationError(TrustKernelError):
    """Raised when a draft still contains claims nobody has verified."""

    kind = "needs_verification"

    def __init__(self, recommendation_id: str, missing: List[str]):
        super().__init__(
            f"Recommendation {recommendation_id} has unverified claims"
        )
        self.missing = missing

    def details(self) -> dict:
        return {"missing_claims": self.missing}


class CollaboratorError(TrustKernelError):
    """Raised when an external generator or publisher fails."""

    kind = "collaborator_failed"

    def __init__(self, collaborator: str, message: str):
        super().__init__(f"{collaborator} failed: {message}")
        self.collaborator = collaborator

    def details(self) -> dict:
        return {"collaborator": self.collaborator}


class StorageUnavailableError(TrustKernelError):
    """Raised when the persistence layer cannot be reached."""

    kind = "storage_unavailable"

    def __init__(self, message: str = "Storage is not reachable"):
        super().__init__(message)


class InvalidDraftError(TrustKernelError):
    """Raised when a draft payload does not fit the recommendation's kind."""

    kind = "invalid_draft"
