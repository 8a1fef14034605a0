"""
Core types shared by the indexer variants and the dispatcher.
"""

import json
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from webhook_indexer.core.exceptions import PayloadDecodeError


UNKNOWN_PLATFORM = "UNKNOWN"


class WebhookTransaction(BaseModel):
    """Transaction object nested in an inbound event."""
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    id: str = ""
    signatures: List[str] = Field(default_factory=list)
    fee_payer_id: str = Field(default="", alias="feePayerId")
    instructions: Any = None
    events: Any = None
    type: str = ""
    status_message: str = Field(default="", alias="statusMessage")
    enhanced_details: Any = Field(default=None, alias="enhancedDetails")

    @field_validator("id", "fee_payer_id", "type", "status_message", mode="before")
    @classmethod
    def none_as_empty(cls, v: Any) -> Any:
        return "" if v is None else v

    @field_validator("signatures", mode="before")
    @classmethod
    def none_as_no_signatures(cls, v: Any) -> Any:
        return [] if v is None else v


class WebhookPayload(BaseModel):
    """Inbound event envelope."""
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    account_data: List[Dict[str, Any]] = Field(default_factory=list, alias="accountData")
    slot: int = 0
    transaction: WebhookTransaction = Field(default_factory=WebhookTransaction)

    @field_validator("account_data", mode="before")
    @classmethod
    def none_as_no_accounts(cls, v: Any) -> Any:
        return [] if v is None else v

    @property
    def signatures(self) -> List[str]:
        return self.transaction.signatures

    @property
    def transaction_id(self) -> str:
        """First signature, used as the token row transaction id."""
        return self.transaction.signatures[0] if self.transaction.signatures else ""

    @property
    def signature(self) -> str:
        """Transaction id, falling back to the first signature."""
        return self.transaction.id or self.transaction_id

    def decode_details(self) -> Dict[str, Any]:
        """
        Decode the free-form enhanced details blob.

        The blob may arrive embedded as an object or as a JSON-encoded string.

        Raises:
            PayloadDecodeError: If the blob is missing or not a JSON object
        """
        raw = self.transaction.enhanced_details
        if raw is None:
            raise PayloadDecodeError("enhancedDetails is missing")
        if isinstance(raw, (str, bytes)):
            try:
                raw = json.loads(raw)
            except ValueError as e:
                raise PayloadDecodeError(f"enhancedDetails is not valid JSON: {e}")
        if not isinstance(raw, dict):
            raise PayloadDecodeError(
                f"enhancedDetails must be an object, got {type(raw).__name__}"
            )
        return raw


class ItemOutcome(Enum):
    """Result of one normalized item within an event."""
    APPLIED = "applied"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass
class ItemResult:
    """Per-item result returned from Indexer.process."""
    kind: str
    outcome: ItemOutcome
    key: Optional[str] = None
    reason: Optional[str] = None
    rows: int = 0

    @classmethod
    def applied(cls, kind: str, key: str, rows: int = 1) -> "ItemResult":
        return cls(kind=kind, outcome=ItemOutcome.APPLIED, key=key, rows=rows)

    @classmethod
    def skipped(cls, kind: str, reason: str, key: Optional[str] = None) -> "ItemResult":
        return cls(kind=kind, outcome=ItemOutcome.SKIPPED, key=key, reason=reason)

    @classmethod
    def failed(cls, kind: str, reason: str, key: Optional[str] = None) -> "ItemResult":
        return cls(kind=kind, outcome=ItemOutcome.FAILED, key=key, reason=reason)

    def to_dict(self) -> Dict[str, Any]:
        data = {"kind": self.kind, "outcome": self.outcome.value}
        if self.key is not None:
            data["key"] = self.key
        if self.reason is not None:
            data["reason"] = self.reason
        if self.rows:
            data["rows"] = self.rows
        return data


def count_outcomes(results: List[ItemResult]) -> Dict[str, int]:
    counts = {outcome.value: 0 for outcome in ItemOutcome}
    for result in results:
        counts[result.outcome.value] += 1
    return counts


@dataclass
class ProcessingStats:
    """Process-wide dispatch counters."""
    dispatched: int = 0
    succeeded: int = 0
    failed: int = 0
    rejected: int = 0
    items_applied: int = 0
    items_skipped: int = 0
    items_failed: int = 0
    last_processed_slot: Optional[int] = None
    start_time: Optional[datetime] = field(default_factory=datetime.utcnow)

    def record_results(self, results: List[ItemResult]) -> None:
        counts = count_outcomes(results)
        self.items_applied += counts[ItemOutcome.APPLIED.value]
        self.items_skipped += counts[ItemOutcome.SKIPPED.value]
        self.items_failed += counts[ItemOutcome.FAILED.value]
