"""
Module: fiscal_kernel.models.inbox_document
Responsibility: ORM persistence for received tax documents and their lines.
Architecture position: Kernel > Models.  May import from db/base.py and
    domain/types.py only.

Invariants enforced:
    - (tenant_id, access_key) is UNIQUE: re-ingesting a key never creates a
      second row.  The collector treats the IntegrityError from a racing
      insert as a skip.
    - A line item's match_status is ``unmatched`` until product_id is set.
    - Every row carries tenant_id; every query filters on it.

Failure modes:
    - IntegrityError on duplicate (tenant_id, access_key).
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import (
    JSON,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from fiscal_kernel.db.base import TrackedBase, UUIDString
from fiscal_kernel.domain.types import (
    AcknowledgmentStatus,
    CaptureOrigin,
    DocumentKind,
    DocumentStatus,
    InboxDocumentInfo,
    LineItemInfo,
    MatchMethod,
    MatchStatus,
    MatchSuggestion,
)


class InboxDocument(TrackedBase):
    """
    One received tax document per tenant.

    Contract:
        Created by the collector or manual import on first sighting of an
        access key; mutated by the pipeline stages; ``booked`` is set by the
        external launch action.
    """

    __tablename__ = "inbox_documents"

    __table_args__ = (
        UniqueConstraint("tenant_id", "access_key", name="uq_inbox_documents_tenant_key"),
        Index("idx_inbox_documents_tenant_status", "tenant_id", "status"),
        Index("idx_inbox_documents_issuer", "tenant_id", "issuer_tax_id"),
    )

    tenant_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    kind: Mapped[str] = mapped_column(
        String(20), nullable=False, default=DocumentKind.NFE.value,
    )
    access_key: Mapped[str] = mapped_column(String(44), nullable=False)
    external_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    nsu: Mapped[str | None] = mapped_column(String(30), nullable=True)

    number: Mapped[str | None] = mapped_column(String(20), nullable=True)
    series: Mapped[str | None] = mapped_column(String(10), nullable=True)
    issue_date: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )
    nature_of_operation: Mapped[str | None] = mapped_column(String(200), nullable=True)

    # Issuer (supplier side)
    issuer_tax_id: Mapped[str | None] = mapped_column(String(14), nullable=True)
    issuer_name: Mapped[str | None] = mapped_column(String(200), nullable=True)
    issuer_trade_name: Mapped[str | None] = mapped_column(String(200), nullable=True)
    issuer_state_registration: Mapped[str | None] = mapped_column(String(20), nullable=True)
    issuer_state: Mapped[str | None] = mapped_column(String(2), nullable=True)
    issuer_tax_regime: Mapped[int | None] = mapped_column(Integer, nullable=True)

    recipient_tax_id: Mapped[str | None] = mapped_column(String(14), nullable=True)
    supplier_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)

    total_value: Mapped[Decimal | None] = mapped_column(nullable=True)
    totals: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    transport: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    installments: Mapped[list | None] = mapped_column(JSON, nullable=True)
    additional_info: Mapped[str | None] = mapped_column(Text, nullable=True)

    status: Mapped[str] = mapped_column(
        String(30), nullable=False, default=DocumentStatus.PENDING.value,
    )
    origin: Mapped[str] = mapped_column(
        String(20), nullable=False, default=CaptureOrigin.AUTOMATIC.value,
    )
    acknowledgment: Mapped[str | None] = mapped_column(String(20), nullable=True)
    acknowledged_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )

    raw_payload: Mapped[str | None] = mapped_column(Text, nullable=True)
    payload_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)

    total_items: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    matched_items: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    pending_items: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    proposal: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    pipeline_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    captured_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )

    items: Mapped[list[InboxLineItem]] = relationship(
        "InboxLineItem",
        back_populates="document",
        order_by="InboxLineItem.line_number",
        cascade="all, delete-orphan",
    )

    def to_dto(self) -> InboxDocumentInfo:
        return InboxDocumentInfo(
            document_id=self.id,
            tenant_id=self.tenant_id,
            kind=DocumentKind(self.kind),
            access_key=self.access_key,
            status=DocumentStatus(self.status),
            origin=CaptureOrigin(self.origin),
            issuer_tax_id=self.issuer_tax_id,
            issuer_name=self.issuer_name,
            recipient_tax_id=self.recipient_tax_id,
            issue_date=self.issue_date,
            total_value=self.total_value,
            number=self.number,
            series=self.series,
            total_items=self.total_items,
            matched_items=self.matched_items,
            pending_items=self.pending_items,
            acknowledgment=(
                AcknowledgmentStatus(self.acknowledgment) if self.acknowledgment else None
            ),
            has_payload=self.raw_payload is not None,
            proposal=self.proposal,
            pipeline_error=self.pipeline_error,
        )

    def __repr__(self) -> str:
        return f"<InboxDocument {self.access_key} [{self.status}]>"


class InboxLineItem(TrackedBase):
    """
    One line of an inbox document.

    Contract:
        Created in bulk by the parse stage; mutated once by the match stage;
        re-mutated only by an explicit manual link.
    """

    __tablename__ = "inbox_line_items"

    __table_args__ = (
        UniqueConstraint("document_id", "line_number", name="uq_inbox_line_items_document_line"),
        Index("idx_inbox_line_items_tenant_status", "tenant_id", "match_status"),
    )

    tenant_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    document_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("inbox_documents.id"), nullable=False,
    )
    line_number: Mapped[int] = mapped_column(Integer, nullable=False)

    supplier_code: Mapped[str] = mapped_column(String(60), nullable=False)
    description: Mapped[str] = mapped_column(String(500), nullable=False)
    classification_code: Mapped[str | None] = mapped_column(String(8), nullable=True)
    cest: Mapped[str | None] = mapped_column(String(7), nullable=True)
    cfop: Mapped[str | None] = mapped_column(String(4), nullable=True)
    unit: Mapped[str | None] = mapped_column(String(6), nullable=True)
    identifier: Mapped[str | None] = mapped_column(String(14), nullable=True)

    quantity: Mapped[Decimal] = mapped_column(nullable=False)
    unit_price: Mapped[Decimal] = mapped_column(nullable=False)
    total_value: Mapped[Decimal] = mapped_column(nullable=False)
    discount: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("0"))
    taxes: Mapped[dict | None] = mapped_column(JSON, nullable=True)

    product_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    match_status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=MatchStatus.UNMATCHED.value,
    )
    match_score: Mapped[int | None] = mapped_column(Integer, nullable=True)
    match_method: Mapped[str | None] = mapped_column(String(20), nullable=True)
    suggestions: Mapped[list | None] = mapped_column(JSON, nullable=True)

    document: Mapped[InboxDocument] = relationship(
        "InboxDocument", back_populates="items",
    )

    def to_dto(self) -> LineItemInfo:
        return LineItemInfo(
            line_item_id=self.id,
            document_id=self.document_id,
            line_number=self.line_number,
            supplier_code=self.supplier_code,
            description=self.description,
            classification_code=self.classification_code,
            identifier=self.identifier,
            unit=self.unit,
            quantity=self.quantity,
            unit_price=self.unit_price,
            total_value=self.total_value,
            match_status=MatchStatus(self.match_status),
            product_id=self.product_id,
            match_score=self.match_score,
            match_method=MatchMethod(self.match_method) if self.match_method else None,
            suggestions=tuple(
                MatchSuggestion.from_dict(s) for s in (self.suggestions or [])
            ),
        )

    def __repr__(self) -> str:
        return f"<InboxLineItem {self.line_number}: {self.supplier_code} [{self.match_status}]>"
