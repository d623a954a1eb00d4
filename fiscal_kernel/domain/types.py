"""
fiscal_kernel.domain.types -- Status enums and frozen DTOs for inbox records.

ZERO I/O.  ORM models in ``fiscal_kernel.models`` convert to these DTOs via
``to_dto()`` so that services hand immutable snapshots to callers instead of
live session-bound rows.

Invariants enforced:
    - All DTOs are frozen dataclasses with tuples for collections.
    - Enum values are the persisted strings.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID


# =============================================================================
# Status enums
# =============================================================================


class DocumentKind(str, Enum):
    """Kind of received tax document."""

    NFE = "nfe"
    OTHER = "other"


class DocumentStatus(str, Enum):
    """Pipeline lifecycle of an inbox document."""

    PENDING = "pending"  # Captured, not yet parsed
    PROCESSING = "processing"  # Parsed, awaiting product matching
    PENDING_MATCHING = "pending_matching"  # Some lines need a human
    READY_TO_BOOK = "ready_to_book"  # Proposal generated
    BOOKED = "booked"  # Launched downstream (set externally)


class CaptureOrigin(str, Enum):
    """How a document entered the inbox."""

    AUTOMATIC = "automatic"
    MANUAL_IMPORT = "manual_import"


class AcknowledgmentKind(str, Enum):
    """Recipient acknowledgment event ("manifestação do destinatário")."""

    AWARENESS = "awareness"
    CONFIRMATION = "confirmation"
    NON_RECOGNITION = "non_recognition"
    NOT_PERFORMED = "not_performed"

    @property
    def event_code(self) -> str:
        return _ACK_EVENT_CODES[self]

    @property
    def requires_justification(self) -> bool:
        return self in (
            AcknowledgmentKind.NON_RECOGNITION,
            AcknowledgmentKind.NOT_PERFORMED,
        )

    @property
    def resulting_status(self) -> AcknowledgmentStatus:
        return _ACK_RESULTING_STATUS[self]


class AcknowledgmentStatus(str, Enum):
    """Acknowledgment state recorded on the document after a successful event."""

    AWARENESS = "awareness"
    CONFIRMED = "confirmed"
    UNKNOWN = "unknown"
    NOT_PERFORMED = "not_performed"


_ACK_EVENT_CODES: dict[AcknowledgmentKind, str] = {
    AcknowledgmentKind.AWARENESS: "210200",
    AcknowledgmentKind.CONFIRMATION: "210210",
    AcknowledgmentKind.NON_RECOGNITION: "210220",
    AcknowledgmentKind.NOT_PERFORMED: "210240",
}

_ACK_RESULTING_STATUS: dict[AcknowledgmentKind, AcknowledgmentStatus] = {
    AcknowledgmentKind.AWARENESS: AcknowledgmentStatus.AWARENESS,
    AcknowledgmentKind.CONFIRMATION: AcknowledgmentStatus.CONFIRMED,
    AcknowledgmentKind.NON_RECOGNITION: AcknowledgmentStatus.UNKNOWN,
    AcknowledgmentKind.NOT_PERFORMED: AcknowledgmentStatus.NOT_PERFORMED,
}


class MatchStatus(str, Enum):
    """Matching state of a line item."""

    UNMATCHED = "unmatched"
    MATCHED = "matched"
    SUGGESTION = "suggestion"


class MatchMethod(str, Enum):
    """Which cascade stage produced a line's match."""

    SUPPLIER_CODE = "supplier_code"
    IDENTIFIER = "identifier"
    FUZZY = "fuzzy"
    MANUAL = "manual"


class MappingOrigin(str, Enum):
    """How a supplier product mapping was learned."""

    MANUAL = "manual"
    IDENTIFIER = "identifier"
    FUZZY = "fuzzy"
    AUTOMATIC = "automatic"


# =============================================================================
# DTOs
# =============================================================================


@dataclass(frozen=True)
class MatchSuggestion:
    """A candidate product offered for manual resolution."""

    product_id: UUID
    name: str
    score: int  # 0-100
    reason: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "product_id": str(self.product_id),
            "name": self.name,
            "score": self.score,
            "reason": self.reason,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> MatchSuggestion:
        return cls(
            product_id=UUID(str(data["product_id"])),
            name=data["name"],
            score=int(data["score"]),
            reason=data.get("reason", ""),
        )


@dataclass(frozen=True)
class InboxDocumentInfo:
    """Immutable snapshot of an inbox document (without the raw payload)."""

    document_id: UUID
    tenant_id: UUID
    kind: DocumentKind
    access_key: str
    status: DocumentStatus
    origin: CaptureOrigin
    issuer_tax_id: str | None = None
    issuer_name: str | None = None
    recipient_tax_id: str | None = None
    issue_date: datetime | None = None
    total_value: Decimal | None = None
    number: str | None = None
    series: str | None = None
    total_items: int = 0
    matched_items: int = 0
    pending_items: int = 0
    acknowledgment: AcknowledgmentStatus | None = None
    has_payload: bool = False
    proposal: dict[str, Any] | None = None
    pipeline_error: str | None = None


@dataclass(frozen=True)
class LineItemInfo:
    """Immutable snapshot of a document line item."""

    line_item_id: UUID
    document_id: UUID
    line_number: int
    supplier_code: str
    description: str
    classification_code: str | None
    identifier: str | None
    unit: str | None
    quantity: Decimal
    unit_price: Decimal
    total_value: Decimal
    match_status: MatchStatus
    product_id: UUID | None = None
    match_score: int | None = None
    match_method: MatchMethod | None = None
    suggestions: tuple[MatchSuggestion, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class SupplierMappingInfo:
    """Immutable snapshot of a learned supplier product mapping."""

    mapping_id: UUID
    tenant_id: UUID
    supplier_tax_id: str
    supplier_code: str
    product_id: UUID
    origin: MappingOrigin
    confidence: int
    times_used: int
    is_active: bool
    supplier_description: str | None = None
    classification_code: str | None = None
    identifier: str | None = None
    last_used_at: datetime | None = None
