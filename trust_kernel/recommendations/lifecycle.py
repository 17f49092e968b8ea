"""
Recommendation Lifecycle — the only path from a content idea to live content.

  PROPOSED → DRAFTED → APPROVED → PUBLISHED (terminal)
  any non-terminal state → dismissed (row deleted)

Behavioral Contract:
- A recommendation reaches PUBLISHED only through every state in order.
  Skipping a state fails with invalid_state and changes nothing.
- Publishing consults the trust policy fresh. A zone that allows neither
  publish nor publish_with_approval blocks it regardless of approval.
- A transition either fully applies (state + side effect + receipt) or
  leaves no trace. Writes use compare-and-swap on row_version, so of two
  racing transitions exactly one succeeds.
- The publisher is called with an idempotency key, so a retried publish
  can never go live twice.
"""

from typing import List, Optional

import structlog
from pydantic import ValidationError

from trust_kernel.errors import (
    CollaboratorError,
    DraftMissingError,
    InvalidDraftError,
    InvalidStateError,
    NeedsVerificationError,
    NoActionError,
    NotFoundError,
    PolicyBlockError,
)
from trust_kernel.models.receipt import ReceiptActor, ReceiptKind
from trust_kernel.models.recommendation import (
    ACTIONABLE,
    ArticleDraft,
    ContentRecommendation,
    DraftPayload,
    ProductUpdateDraft,
    RecommendationAction,
    RecommendationKind,
    RecommendationStatus,
)
from trust_kernel.policy.gate import PUBLISH, PUBLISH_WITH_APPROVAL, PolicyGate
from trust_kernel.receipts.ledger import ReceiptLedger
from trust_kernel.recommendations.collaborators import (
    DraftGenerator,
    Publisher,
    unverified_claims,
)
from trust_kernel.storage.store import KernelStore, new_id, utcnow
from trust_kernel.trust.engine import TrustScoreEngine

logger = structlog.get_logger()

_DRAFTABLE = (RecommendationStatus.PROPOSED, RecommendationStatus.DRAFTED)


def _draft_matches(kind: RecommendationKind, draft: DraftPayload) -> bool:
    if kind == RecommendationKind.PRODUCT_UPDATE:
        return isinstance(draft, ProductUpdateDraft)
    return isinstance(draft, ArticleDraft) and draft.type == kind.value


class RecommendationLifecycle:
    """State machine over ContentRecommendation rows."""

    def __init__(
        self,
        store: KernelStore,
        ledger: ReceiptLedger,
        trust: TrustScoreEngine,
        generator: DraftGenerator,
        publisher: Publisher,
        gate: Optional[PolicyGate] = None,
    ):
        self.store = store
        self.ledger = ledger
        self.trust = trust
        self.generator = generator
        self.publisher = publisher
        self.gate = gate or PolicyGate()

    # --- Reads ---

    def get(self, tenant_id: str, rec_id: str) -> ContentRecommendation:
        rec = self.store.get_recommendation(rec_id)
        if rec is None or rec.tenant_id != tenant_id:
            raise NotFoundError("recommendation", rec_id)
        return rec

    def list(
        self, tenant_id: str, status: Optional[RecommendationStatus] = None
    ) -> List[ContentRecommendation]:
        return self.store.list_recommendations(
            tenant_id, status=RecommendationStatus(status).value if status else None
        )

    # --- Transitions ---

    def propose(
        self,
        tenant_id: str,
        kind: RecommendationKind,
        title: str,
        target_ref: str,
        rationale: str = "",
        action: RecommendationAction = RecommendationAction.CREATE,
    ) -> ContentRecommendation:
        now = utcnow()
        rec = ContentRecommendation(
            id=new_id("rec"),
            tenant_id=tenant_id,
            kind=kind,
            action=action,
            title=title,
            rationale=rationale,
            target_ref=target_ref,
            created_at=now,
            updated_at=now,
        )
        with self.store.transaction():
            self.store.insert_recommendation(rec)
            self._receipt(rec, ReceiptKind.DECIDE, "Recommendation proposed", None)
        logger.info("recommendation_proposed", tenant_id=tenant_id, recommendation_id=rec.id)
        return rec

    def draft(
        self,
        tenant_id: str,
        rec_id: str,
        payload: Optional[DraftPayload] = None,
        override_markdown: Optional[str] = None,
    ) -> ContentRecommendation:
        """
        Attach a new draft version. Allowed from PROPOSED and DRAFTED;
        the result is always DRAFTED.

        With ``override_markdown`` and an existing draft, only the body is
        edited and the generator is not called. The generator runs outside
        the write transaction; the write then fails with invalid_state if
        the row moved on in the meantime.
        """
        rec = self.get(tenant_id, rec_id)
        self._require_actionable(rec)
        self._expect(rec, *_DRAFTABLE)
        observed_version = rec.row_version
        override = (override_markdown or "").strip()

        if override and rec.draft is not None:
            draft = self._with_body(rec.draft, override)
        else:
            draft = payload if payload is not None else self._generate(rec)
            if draft is None:
                raise DraftMissingError(rec.id)
            if override:
                draft = self._with_body(draft, override)

        if not _draft_matches(rec.kind, draft):
            raise InvalidDraftError(
                f"Draft type {draft.type} does not fit recommendation kind {rec.kind.value}"
            )

        previous_version = rec.draft.version if rec.draft else 0
        update = {"version": previous_version + 1}
        if isinstance(draft, ArticleDraft) and isinstance(rec.draft, ArticleDraft):
            # Slug is fixed by the first draft
            update["slug"] = rec.draft.slug
        draft = draft.model_copy(update=update)

        with self.store.transaction():
            current = self.get(tenant_id, rec_id)
            if current.row_version != observed_version:
                raise InvalidStateError(rec_id, rec.status.value, current.status.value)
            updated = self._save(
                current,
                status=RecommendationStatus.DRAFTED,
                draft=draft,
            )
            self._receipt(
                updated,
                ReceiptKind.DECIDE,
                "Draft edited for recommendation" if override else "Draft generated for recommendation",
                current.status,
                extra={"draft_version": draft.version},
            )

        logger.info(
            "recommendation_drafted",
            tenant_id=tenant_id,
            recommendation_id=rec_id,
            draft_version=draft.version,
        )
        return updated

    def approve(self, tenant_id: str, rec_id: str, approver: str) -> ContentRecommendation:
        with self.store.transaction():
            rec = self.get(tenant_id, rec_id)
            self._require_actionable(rec)
            self._expect(rec, RecommendationStatus.DRAFTED)
            self._require_draft(rec)
            now = utcnow()
            updated = self._save(
                rec,
                status=RecommendationStatus.APPROVED,
                approved_by=approver,
                approved_at=now,
            )
            self._receipt(
                updated,
                ReceiptKind.DECIDE,
                "Approved draft for recommendation",
                rec.status,
                extra={"approved_by": approver},
            )
        logger.info(
            "recommendation_approved",
            tenant_id=tenant_id,
            recommendation_id=rec_id,
            approver=approver,
        )
        return updated

    def publish(self, tenant_id: str, rec_id: str) -> ContentRecommendation:
        """
        Push the approved draft live and mark the recommendation PUBLISHED.

        Publisher call, status write and receipt commit together; a
        publisher failure rolls everything back and surfaces as
        collaborator_failed.
        """
        try:
            with self.store.transaction():
                rec = self.get(tenant_id, rec_id)
                self._require_actionable(rec)
                self._expect(rec, RecommendationStatus.APPROVED)
                draft = self._require_draft(rec)

                snapshot, decision = self.trust.policy_for(tenant_id)
                permitted_by = self.gate.require_any(
                    decision, [PUBLISH, PUBLISH_WITH_APPROVAL], trust_total=snapshot.total
                )

                missing = unverified_claims(draft)
                if missing:
                    raise NeedsVerificationError(rec.id, missing)

                idempotency_key = f"{rec.id}:v{draft.version}"
                try:
                    result = self.publisher.publish(rec, draft, idempotency_key)
                except Exception as e:
                    logger.error(
                        "recommendation_publish_failed",
                        tenant_id=tenant_id,
                        recommendation_id=rec_id,
                        error=str(e),
                    )
                    raise CollaboratorError("publisher", str(e)) from e

                updated = self._save(
                    rec,
                    status=RecommendationStatus.PUBLISHED,
                    target_ref=result.target_ref,
                    published_at=utcnow(),
                )
                self._receipt(
                    updated,
                    ReceiptKind.PUBLISH,
                    "Recommendation published",
                    rec.status,
                    extra={
                        "target_ref": result.target_ref,
                        "permitted_by": permitted_by,
                        "trust_total": snapshot.total,
                        "zone": decision.zone.value,
                    },
                )
        except (PolicyBlockError, NeedsVerificationError) as e:
            self.ledger.write(
                tenant_id,
                ReceiptKind.SUPPRESS,
                ReceiptActor.CONTENT_ENGINE,
                f"Publish blocked: {e.kind}",
                input={"recommendation_id": rec_id},
                output=e.details(),
            )
            logger.info(
                "recommendation_publish_blocked",
                tenant_id=tenant_id,
                recommendation_id=rec_id,
                reason=e.kind,
            )
            raise

        logger.info(
            "recommendation_published",
            tenant_id=tenant_id,
            recommendation_id=rec_id,
            target_ref=updated.target_ref,
        )
        return updated

    def dismiss(self, tenant_id: str, rec_id: str) -> ContentRecommendation:
        """Delete a recommendation and its draft. Published content is history and stays."""
        with self.store.transaction():
            rec = self.get(tenant_id, rec_id)
            if rec.status == RecommendationStatus.PUBLISHED:
                raise InvalidStateError(rec_id, "not PUBLISHED", rec.status.value)
            if not self.store.delete_recommendation(rec.id, rec.row_version):
                current = self.store.get_recommendation(rec.id)
                raise InvalidStateError(
                    rec_id, rec.status.value, current.status.value if current else "DELETED"
                )
            self.ledger.write(
                tenant_id,
                ReceiptKind.SUPPRESS,
                ReceiptActor.CONTENT_ENGINE,
                "Recommendation discarded",
                input={"recommendation_id": rec.id, "from": rec.status.value},
                output={"target_ref": rec.target_ref, "title": rec.title, "to": "DISMISSED"},
            )
        logger.info("recommendation_dismissed", tenant_id=tenant_id, recommendation_id=rec_id)
        return rec

    # --- Helpers ---

    def _generate(self, rec: ContentRecommendation) -> Optional[DraftPayload]:
        try:
            return self.generator.generate(rec)
        except ValidationError as e:
            raise InvalidDraftError(f"Generator returned an invalid draft: {e}") from e
        except Exception as e:
            logger.error(
                "draft_generation_failed",
                recommendation_id=rec.id,
                error=str(e),
            )
            raise CollaboratorError("draft_generator", str(e)) from e

    @staticmethod
    def _with_body(draft: DraftPayload, body: str) -> DraftPayload:
        content = draft.content.model_copy(update={
            "body_markdown": body,
            "short_answer": draft.content.short_answer or body[:160],
        })
        return draft.model_copy(update={"content": content})

    @staticmethod
    def _require_actionable(rec: ContentRecommendation) -> None:
        if rec.action not in ACTIONABLE:
            raise NoActionError(rec.id, rec.action.value)

    @staticmethod
    def _expect(rec: ContentRecommendation, *states: RecommendationStatus) -> None:
        if rec.status not in states:
            raise InvalidStateError(
                rec.id, "|".join(s.value for s in states), rec.status.value
            )

    @staticmethod
    def _require_draft(rec: ContentRecommendation) -> DraftPayload:
        if rec.draft is None:
            raise DraftMissingError(rec.id)
        return rec.draft

    def _save(self, rec: ContentRecommendation, **changes) -> ContentRecommendation:
        updated = rec.model_copy(update={
            **changes,
            "row_version": rec.row_version + 1,
            "updated_at": utcnow(),
        })
        if not self.store.swap_recommendation(updated, rec.row_version):
            current = self.store.get_recommendation(rec.id)
            raise InvalidStateError(
                rec.id, rec.status.value, current.status.value if current else "DELETED"
            )
        return updated

    def _receipt(
        self,
        rec: ContentRecommendation,
        kind: ReceiptKind,
        summary: str,
        from_status: Optional[RecommendationStatus],
        extra: Optional[dict] = None,
    ) -> None:
        self.ledger.write(
            rec.tenant_id,
            kind,
            ReceiptActor.CONTENT_ENGINE,
            summary,
            input={
                "recommendation_id": rec.id,
                "from": from_status.value if from_status else None,
            },
            output={"status": rec.status.value, **(extra or {})},
        )
