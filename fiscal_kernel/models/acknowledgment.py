"""
Module: fiscal_kernel.models.acknowledgment
Responsibility: ORM persistence for acknowledgment ("manifestação") events,
    the tenant's trusted-issuer list and per-tenant inbox settings.
Architecture position: Kernel > Models.  May import from db/base.py only.

Invariants enforced:
    - DocumentAcknowledgment rows are append-only: one row per attempt,
      successful or not.
    - (tenant_id, issuer_tax_id) is UNIQUE on TrustedIssuer.
    - One FiscalInboxSettings row per tenant.
"""

from __future__ import annotations

from datetime import datetime
from uuid import UUID

from sqlalchemy import Boolean, DateTime, ForeignKey, Index, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from fiscal_kernel.db.base import TrackedBase, UUIDString


class DocumentAcknowledgment(TrackedBase):
    """One acknowledgment event sent (or attempted) for a document."""

    __tablename__ = "document_acknowledgments"

    __table_args__ = (
        Index("idx_document_acknowledgments_document", "tenant_id", "document_id"),
    )

    tenant_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    document_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("inbox_documents.id"), nullable=False,
    )
    access_key: Mapped[str] = mapped_column(String(44), nullable=False)
    kind: Mapped[str] = mapped_column(String(20), nullable=False)
    event_code: Mapped[str] = mapped_column(String(6), nullable=False)
    justification: Mapped[str | None] = mapped_column(Text, nullable=True)
    protocol: Mapped[str | None] = mapped_column(String(60), nullable=True)
    success: Mapped[bool] = mapped_column(Boolean, nullable=False)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    automatic: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    user_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    sent_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class TrustedIssuer(TrackedBase):
    """An issuer whose documents the tenant acknowledges automatically."""

    __tablename__ = "trusted_issuers"

    __table_args__ = (
        UniqueConstraint("tenant_id", "issuer_tax_id", name="uq_trusted_issuers_tenant_issuer"),
    )

    tenant_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    issuer_tax_id: Mapped[str] = mapped_column(String(14), nullable=False)
    name: Mapped[str | None] = mapped_column(String(200), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    auto_acknowledge: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    # None falls back to the tenant default kind
    acknowledgment_kind: Mapped[str | None] = mapped_column(String(20), nullable=True)


class FiscalInboxSettings(TrackedBase):
    """Per-tenant inbox switches."""

    __tablename__ = "fiscal_inbox_settings"

    tenant_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False, unique=True)
    auto_acknowledge_enabled: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False,
    )
    default_acknowledgment_kind: Mapped[str | None] = mapped_column(String(20), nullable=True)
