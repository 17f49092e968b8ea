"""Trust Score Snapshot — periodic trust measurement for a tenant."""

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field


class TrustSignals(BaseModel):
    """The five sub-signals a trust total is derived from. Each is 0-100."""

    experience: int = Field(ge=0, le=100)
    responsiveness: int = Field(ge=0, le=100)
    stability: int = Field(ge=0, le=100)
    recency: int = Field(ge=0, le=100)
    risk: int = Field(ge=0, le=100)         # Higher = less risky


class TrustWeights(BaseModel):
    """Relative weight of each sub-signal in the total. Normalized on use."""

    experience: float = Field(ge=0, default=0.30)
    responsiveness: float = Field(ge=0, default=0.20)
    stability: float = Field(ge=0, default=0.20)
    recency: float = Field(ge=0, default=0.15)
    risk: float = Field(ge=0, default=0.15)


class TrustScoreSnapshot(BaseModel):
    """
    Immutable, tenant-scoped trust measurement.

    The total is derived once at creation and never recomputed. Newer
    snapshots supersede older ones; nothing is ever updated or deleted.
    """

    model_config = ConfigDict(frozen=True)

    id: str
    tenant_id: str
    total: int = Field(ge=0, le=100)
    experience: int = Field(ge=0, le=100)
    responsiveness: int = Field(ge=0, le=100)
    stability: int = Field(ge=0, le=100)
    recency: int = Field(ge=0, le=100)
    risk: int = Field(ge=0, le=100)
    created_at: datetime


class Tenant(BaseModel):
    """A customer of the platform. Everything else is scoped to one."""

    id: str
    domain: str
    name: str
    created_at: datetime
