"""
Content collaborators — draft generation and publishing.

Both are external in production (an LLM-backed content engine, a storefront
content API). The lifecycle only depends on the protocols below; the
deterministic implementations back the prototype and the tests.
"""

import re
import threading
from typing import Dict, List, Protocol

from trust_kernel.models.recommendation import (
    ArticleDraft,
    ContentRecommendation,
    DraftContent,
    DraftPayload,
    ProductUpdateDraft,
    PublishResult,
    RecommendationKind,
)

_MARKER = re.compile(r"\[\s*NEEDS_VERIFICATION\s*:\s*([^\]]+?)\s*\]", re.IGNORECASE)
_BARE_MARKER = re.compile(r"NEEDS_VERIFICATION", re.IGNORECASE)


def extract_verification_markers(text: str) -> List[str]:
    """
    Notes from ``[NEEDS_VERIFICATION: ...]`` markers in a draft body.
    A bare NEEDS_VERIFICATION with no note yields a single generic entry.
    """
    items: List[str] = []
    for match in _MARKER.finditer(text or ""):
        note = match.group(1).strip()
        if note and note not in items:
            items.append(note)
    if not items and _BARE_MARKER.search(text or ""):
        items.append("NEEDS_VERIFICATION")
    return items


def unverified_claims(draft: DraftPayload) -> List[str]:
    """Everything in a draft that still needs a human to verify it."""
    claims = list(draft.content.needs_verification)
    for marker in extract_verification_markers(draft.content.body_markdown):
        if marker not in claims:
            claims.append(marker)
    return claims


def slugify(text: str) -> str:
    slug = re.sub(r"[^a-z0-9\s-]", "", (text or "").lower()).strip()
    slug = re.sub(r"\s+", "-", slug)
    return re.sub(r"-+", "-", slug)[:72]


class DraftGenerator(Protocol):
    """Protocol for draft generation — pluggable backend."""

    def generate(self, recommendation: ContentRecommendation) -> DraftPayload: ...


class Publisher(Protocol):
    """
    Protocol for the live-content publisher. Must be idempotent on
    ``idempotency_key``: a retried call returns the first result.
    """

    def publish(
        self,
        recommendation: ContentRecommendation,
        draft: DraftPayload,
        idempotency_key: str,
    ) -> PublishResult: ...


class TemplateDraftGenerator:
    """
    Deterministic generator used when no LLM backend is configured.
    Produces a short templated draft from the recommendation itself.
    """

    def generate(self, recommendation: ContentRecommendation) -> DraftPayload:
        title = recommendation.title.strip() or "Draft"
        if recommendation.kind == RecommendationKind.PRODUCT_UPDATE:
            return ProductUpdateDraft(
                type="PRODUCT_UPDATE",
                product_handle=slugify(recommendation.target_ref) or "product",
                target_url=recommendation.target_ref,
                content=DraftContent(
                    short_answer=title[:160],
                    body_markdown=(
                        "- Materials: describe what the product is made of.\n"
                        "- Fit: give sizing guidance.\n"
                        "- Care & returns: link the returns policy.\n"
                    ),
                ),
            )

        if recommendation.kind == RecommendationKind.BLOG:
            body = (
                f"# {title}\n\n"
                "## What this covers\n"
                "- The exact answers customers ask before purchase\n\n"
                "## Key takeaways\n"
                "- Keep policy answers short and concrete\n"
            )
        else:
            body = (
                f"# {title}\n\n"
                "Short answer: state the rule, the timeframe, and what the "
                "customer should do next.\n"
            )
        return ArticleDraft(
            type=recommendation.kind.value,
            title=title,
            slug=slugify(title) or f"draft-{recommendation.id[-6:]}",
            target_url=recommendation.target_ref,
            content=DraftContent(short_answer=title[:160], body_markdown=body),
        )


class InMemoryPublisher:
    """
    Prototype publisher that keeps live artifacts in memory, keyed by
    target. Production would call the storefront content API.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._results: Dict[str, PublishResult] = {}
        self.live: Dict[str, DraftPayload] = {}

    def publish(
        self,
        recommendation: ContentRecommendation,
        draft: DraftPayload,
        idempotency_key: str,
    ) -> PublishResult:
        with self._lock:
            if idempotency_key in self._results:
                return self._results[idempotency_key]

            if isinstance(draft, ProductUpdateDraft):
                target = f"/products/{draft.product_handle}"
            else:
                target = f"{draft.target_url.rstrip('/')}/{draft.slug}"
            self.live[target] = draft
            result = PublishResult(target_ref=target, external_id=idempotency_key)
            self._results[idempotency_key] = result
            return result

    def publish_count(self) -> int:
        return len(self._results)
