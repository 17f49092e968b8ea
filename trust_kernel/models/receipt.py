"""Receipt — one immutable entry in the audit ledger."""

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict


class ReceiptKind(str, Enum):
    READ = "READ"
    DECIDE = "DECIDE"
    EXECUTE = "EXECUTE"
    PUBLISH = "PUBLISH"
    SUPPRESS = "SUPPRESS"


class ReceiptActor(str, Enum):
    CRAWLER = "CRAWLER"
    ORCHESTRATOR = "ORCHESTRATOR"
    INTENT_ENGINE = "INTENT_ENGINE"
    TRUST_ENGINE = "TRUST_ENGINE"
    CONTENT_ENGINE = "CONTENT_ENGINE"
    RULE_ENGINE = "RULE_ENGINE"
    DELIVERY = "DELIVERY"


class Receipt(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    tenant_id: str
    kind: ReceiptKind
    actor: ReceiptActor
    summary: str
    input: Optional[Any] = None             # Already bounded by the ledger
    output: Optional[Any] = None
    created_at: datetime
