"""
Module: fiscal_kernel.models.audit_event
Responsibility: ORM persistence for the tamper-evident audit hash chain.
Architecture position: Kernel > Models.  May import from db/base.py only.

Invariants enforced:
    - Audit records are append-only; the application never updates or
      deletes them.
    - hash = H(entity_type | entity_id | action | payload_hash | prev_hash),
      computed by AuditorService.
    - seq is monotonically increasing, allocated by SequenceService.

Audit relevance:
    AuditEvent IS the audit trail.  Every inbox state transition (capture,
    import, parse, match, proposal, acknowledgment, manual link, terminal
    queue failure) produces an AuditEvent.
"""

from datetime import datetime
from enum import Enum
from uuid import UUID

from sqlalchemy import JSON, BigInteger, DateTime, Index, String
from sqlalchemy.orm import Mapped, mapped_column

from fiscal_kernel.db.base import Base, UUIDString


class AuditAction(str, Enum):
    """Types of auditable inbox actions."""

    # Capture
    DOCUMENT_CAPTURED = "document_captured"
    DOCUMENT_IMPORTED = "document_imported"

    # Pipeline
    DOCUMENT_PARSED = "document_parsed"
    PRODUCTS_MATCHED = "products_matched"
    PROPOSAL_GENERATED = "proposal_generated"
    QUEUE_UNIT_FAILED = "queue_unit_failed"

    # Acknowledgment
    ACKNOWLEDGMENT_SENT = "acknowledgment_sent"
    ACKNOWLEDGMENT_FAILED = "acknowledgment_failed"

    # Matching overrides
    LINE_ITEM_LINKED = "line_item_linked"
    MAPPING_DISABLED = "mapping_disabled"


class AuditEvent(Base):
    """
    Audit event with hash chain for tamper evidence.

    Guarantees:
        - seq is globally unique and monotonically increasing.
        - prev_hash is None only for the genesis event.
    """

    __tablename__ = "audit_events"
    __table_args__ = (
        Index("idx_audit_entity", "entity_type", "entity_id"),
        Index("idx_audit_tenant_action", "tenant_id", "action"),
        Index("idx_audit_seq", "seq"),
    )

    seq: Mapped[int] = mapped_column(BigInteger, nullable=False, unique=True)
    tenant_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)

    # e.g. "InboxDocument", "InboxLineItem", "SupplierProductMapping"
    entity_type: Mapped[str] = mapped_column(String(50), nullable=False)
    entity_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    action: Mapped[str] = mapped_column(String(50), nullable=False)
    actor_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    payload: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    payload_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    prev_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)
    hash: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)

    def __repr__(self) -> str:
        return f"<AuditEvent #{self.seq} {self.entity_type}:{self.action}>"
