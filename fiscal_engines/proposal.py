"""
fiscal_engines.proposal -- Booking proposal builder for parsed inbox documents.

Responsibility:
    Summarize, for a human reviewer, what booking a received document will
    do downstream: which supplier it comes from, which lines map to which
    products, the document totals, and the follow-on actions (stock entry,
    payable creation, average-cost update, supplier creation).

Architecture position:
    Engines -- pure calculation layer, zero I/O.
    The generate_proposal pipeline stage gathers the inputs and persists
    ``BookingProposal.to_dict()`` verbatim on the document.

Invariants enforced:
    - ``generated_at`` is an explicit parameter; the engine never reads
      the clock.
    - Amounts are rendered as strings so the stored JSON keeps Decimal
      precision.
    - ``create_payable`` is true exactly when the document has installments;
      ``create_supplier`` is true exactly when no internal supplier is linked.

Failure modes:
    - None.  A document without lines produces a proposal with no items.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any
from uuid import UUID

from fiscal_engines.tracer import traced_engine


@dataclass(frozen=True)
class ProposalLine:
    line_item_id: UUID
    description: str
    product_id: UUID | None
    match_status: str
    quantity: Decimal
    unit_price: Decimal
    total_value: Decimal

    def to_dict(self) -> dict[str, Any]:
        return {
            "item_id": str(self.line_item_id),
            "description": self.description,
            "product_id": str(self.product_id) if self.product_id else None,
            "match_status": self.match_status,
            "quantity": str(self.quantity),
            "unit_price": str(self.unit_price),
            "total_value": str(self.total_value),
        }


@dataclass(frozen=True)
class ProposalActions:
    update_stock: bool
    create_payable: bool
    update_average_cost: bool
    create_supplier: bool

    def to_dict(self) -> dict[str, bool]:
        return {
            "update_stock": self.update_stock,
            "create_payable": self.create_payable,
            "update_average_cost": self.update_average_cost,
            "create_supplier": self.create_supplier,
        }


@dataclass(frozen=True)
class BookingProposal:
    """Immutable proposal; ``to_dict()`` is the persisted form."""

    document_id: UUID
    kind: str
    supplier_tax_id: str | None
    supplier_name: str | None
    supplier_id: UUID | None
    lines: tuple[ProposalLine, ...]
    totals: Mapping[str, Any]
    actions: ProposalActions
    generated_at: datetime
    unmatched_lines: int = field(default=0)

    def to_dict(self) -> dict[str, Any]:
        return {
            "document_id": str(self.document_id),
            "kind": self.kind,
            "supplier": {
                "tax_id": self.supplier_tax_id,
                "name": self.supplier_name,
                "supplier_id": str(self.supplier_id) if self.supplier_id else None,
            },
            "items": [line.to_dict() for line in self.lines],
            "totals": dict(self.totals),
            "actions": self.actions.to_dict(),
            "unmatched_lines": self.unmatched_lines,
            "generated_at": self.generated_at.isoformat(),
        }


@traced_engine("booking_proposal", "1.0", fingerprint_fields=("document_id",))
def build_booking_proposal(
    *,
    document_id: UUID,
    kind: str,
    supplier_tax_id: str | None,
    supplier_name: str | None,
    supplier_id: UUID | None,
    lines: Sequence[ProposalLine],
    totals: Mapping[str, Any] | None,
    installments: Sequence[Any] | None,
    generated_at: datetime,
) -> BookingProposal:
    """Build the proposal for one document."""
    actions = ProposalActions(
        update_stock=True,
        create_payable=bool(installments),
        update_average_cost=True,
        create_supplier=supplier_id is None,
    )
    unmatched = sum(1 for line in lines if line.product_id is None)
    return BookingProposal(
        document_id=document_id,
        kind=kind,
        supplier_tax_id=supplier_tax_id,
        supplier_name=supplier_name,
        supplier_id=supplier_id,
        lines=tuple(lines),
        totals=dict(totals or {}),
        actions=actions,
        generated_at=generated_at,
        unmatched_lines=unmatched,
    )
