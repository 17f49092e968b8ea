"""Content Recommendation — a proposed piece of content and its draft."""

from datetime import datetime
from enum import Enum
from typing import Annotated, List, Literal, Optional, Union

from pydantic import BaseModel, Field, field_validator


class RecommendationStatus(str, Enum):
    PROPOSED = "PROPOSED"
    DRAFTED = "DRAFTED"
    APPROVED = "APPROVED"
    PUBLISHED = "PUBLISHED"


class RecommendationKind(str, Enum):
    FAQ = "FAQ"
    BLOG = "BLOG"
    TRUTH_BLOCK = "TRUTH_BLOCK"
    PRODUCT_UPDATE = "PRODUCT_UPDATE"


class RecommendationAction(str, Enum):
    """What the analyzer concluded should happen to the target."""
    CREATE = "CREATE"
    UPDATE = "UPDATE"
    NOOP = "NOOP"
    DEFER = "DEFER"
    SKIP = "SKIP"


ACTIONABLE = frozenset({RecommendationAction.CREATE, RecommendationAction.UPDATE})


class DraftContent(BaseModel):
    short_answer: str = ""
    body_markdown: str
    facts_used: List[str] = []
    needs_verification: List[str] = []     # Claims the generator could not back

    @field_validator("body_markdown")
    @classmethod
    def _body_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("draft body must not be empty")
        return value


class ArticleDraft(BaseModel):
    """FAQ, blog post or truth block rendered onto a site page."""

    type: Literal["FAQ", "BLOG", "TRUTH_BLOCK"]
    title: str
    slug: str
    target_url: str
    content: DraftContent
    version: int = 1


class ProductUpdateDraft(BaseModel):
    """Patch to an existing product page."""

    type: Literal["PRODUCT_UPDATE"]
    product_handle: str
    target_url: str
    content: DraftContent
    version: int = 1


DraftPayload = Annotated[
    Union[ArticleDraft, ProductUpdateDraft],
    Field(discriminator="type"),
]


class ContentRecommendation(BaseModel):
    """
    Owned by the recommendation lifecycle. Status and draft live on the
    same row so they can never disagree: a draft is attached only in
    DRAFTED or later.
    """

    id: str
    tenant_id: str
    kind: RecommendationKind
    action: RecommendationAction = RecommendationAction.CREATE
    status: RecommendationStatus = RecommendationStatus.PROPOSED
    title: str
    rationale: str = ""
    target_ref: str
    draft: Optional[DraftPayload] = None
    approved_by: Optional[str] = None
    approved_at: Optional[datetime] = None
    published_at: Optional[datetime] = None
    row_version: int = 0                    # Bumped on every write; used for CAS
    created_at: datetime
    updated_at: datetime


class PublishResult(BaseModel):
    """What the publishing collaborator reports back."""

    target_ref: str
    external_id: Optional[str] = None
