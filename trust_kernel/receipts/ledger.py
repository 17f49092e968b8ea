"""
Receipt Ledger — append-only audit trail for every policy-relevant decision.

Behavioral Contract:
- Append-only. No receipt is ever modified or deleted.
- Payloads are bounded before storage so one oversized input can never
  make the audit trail itself a scalability hazard.
- Listing is newest-first and capped.
"""

import json
import math
from typing import Any, List, Optional, Union

import structlog

from trust_kernel.models.receipt import Receipt, ReceiptActor, ReceiptKind
from trust_kernel.storage.store import KernelStore, new_id, utcnow

logger = structlog.get_logger()

MAX_STRING_LENGTH = 2000
MAX_DEPTH = 4
MAX_LIST_ITEMS = 50
MAX_SERIALIZED_LENGTH = 20_000
ELLIPSIS = "…"
DEPTH_PLACEHOLDER = "[truncated]"


def _truncate(value: Any, depth: int = 0) -> Any:
    if isinstance(value, float) and not math.isfinite(value):
        return str(value)
    if value is None or isinstance(value, (bool, int, float)):
        return value
    if isinstance(value, str):
        if len(value) > MAX_STRING_LENGTH:
            return value[:MAX_STRING_LENGTH] + ELLIPSIS
        return value
    if depth >= MAX_DEPTH:
        return DEPTH_PLACEHOLDER
    if isinstance(value, (list, tuple, set, frozenset)):
        items = sorted(value, key=str) if isinstance(value, (set, frozenset)) else list(value)
        return [_truncate(v, depth + 1) for v in items[:MAX_LIST_ITEMS]]
    if isinstance(value, dict):
        return {str(k): _truncate(v, depth + 1) for k, v in value.items()}
    if hasattr(value, "model_dump"):
        return _truncate(value.model_dump(mode="json"), depth)
    return _truncate(str(value), depth)


def bound_payload(value: Any) -> Any:
    """
    Clip a payload to storage limits:
      strings    > 2000 chars  → first 2000 chars + "…"
      nesting   >= 4 levels    → "[truncated]"
      lists      > 50 items    → first 50
      serialized > 20000 chars → {"truncated": True, "preview": <first 20000 chars>}
    """
    truncated = _truncate(value)
    serialized = json.dumps(truncated, default=str, allow_nan=False)
    if len(serialized) <= MAX_SERIALIZED_LENGTH:
        return truncated
    return {"truncated": True, "preview": serialized[:MAX_SERIALIZED_LENGTH]}


class ReceiptLedger:
    """Writes and reads receipts. Every component that mutates state writes here."""

    def __init__(self, store: KernelStore, max_list_limit: int = 200):
        self.store = store
        self.max_list_limit = max_list_limit

    def write(
        self,
        tenant_id: str,
        kind: Union[ReceiptKind, str],
        actor: Union[ReceiptActor, str],
        summary: str,
        input: Optional[Any] = None,
        output: Optional[Any] = None,
    ) -> Receipt:
        receipt = Receipt(
            id=new_id("rcpt"),
            tenant_id=tenant_id,
            kind=ReceiptKind(kind),
            actor=ReceiptActor(actor),
            summary=summary,
            input=None if input is None else bound_payload(input),
            output=None if output is None else bound_payload(output),
            created_at=utcnow(),
        )
        self.store.insert_receipt(receipt)
        logger.debug(
            "receipt_written",
            receipt_id=receipt.id,
            tenant_id=tenant_id,
            kind=receipt.kind.value,
            actor=receipt.actor.value,
        )
        return receipt

    def get(self, receipt_id: str) -> Optional[Receipt]:
        return self.store.get_receipt(receipt_id)

    def list(
        self,
        tenant_id: str,
        kind: Optional[Union[ReceiptKind, str]] = None,
        actor: Optional[Union[ReceiptActor, str]] = None,
        limit: int = 50,
    ) -> List[Receipt]:
        """Newest first. ``limit`` is clamped to 1..max_list_limit."""
        limit = min(self.max_list_limit, max(1, limit))
        return self.store.list_receipts(
            tenant_id,
            kind=ReceiptKind(kind).value if kind else None,
            actor=ReceiptActor(actor).value if actor else None,
            limit=limit,
        )
