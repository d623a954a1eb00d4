"""
ORM model for the persisted processing queue.

Contract:
    ProcessingQueueUnitModel persists one unit of pipeline work (one stage
    for one document) with its retry state.  ``to_dto()`` returns the
    frozen ``QueueUnit``.

Architecture: fiscal_batch/models. Imports from fiscal_kernel.db.base only.

Invariants enforced:
    - ``seq`` allocated via SequenceService (not set by ORM); selection
      orders by (priority, seq).
    - ``attempts`` / ``max_attempts`` bound retries; the processor moves a
      unit to ``error`` only at the ceiling.
"""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING
from uuid import UUID

from sqlalchemy import JSON, BigInteger, DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from fiscal_kernel.db.base import TrackedBase, UUIDString

if TYPE_CHECKING:
    from fiscal_batch.domain.types import QueueUnit


class ProcessingQueueUnitModel(TrackedBase):
    """Persistent queue unit."""

    __tablename__ = "processing_queue"

    __table_args__ = (
        Index("ix_processing_queue_eligible", "tenant_id", "status", "priority", "seq"),
        Index("ix_processing_queue_document", "document_id"),
    )

    tenant_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    document_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("inbox_documents.id"), nullable=False,
    )
    stage: Mapped[str] = mapped_column(String(30), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    max_attempts: Mapped[int] = mapped_column(Integer, default=3, nullable=False)
    priority: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    seq: Mapped[int] = mapped_column(BigInteger, nullable=False, unique=True)
    payload: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    not_before: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )
    started_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )
    completed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )

    def to_dto(self) -> QueueUnit:
        from fiscal_batch.domain.types import QueueStage, QueueUnit, QueueUnitStatus

        return QueueUnit(
            unit_id=self.id,
            tenant_id=self.tenant_id,
            document_id=self.document_id,
            stage=QueueStage(self.stage),
            status=QueueUnitStatus(self.status),
            attempts=self.attempts,
            max_attempts=self.max_attempts,
            priority=self.priority,
            seq=self.seq,
            payload=dict(self.payload or {}),
            last_error=self.last_error,
            not_before=self.not_before,
            started_at=self.started_at,
            completed_at=self.completed_at,
            created_at=self.created_at,
        )

    def __repr__(self) -> str:
        return f"<ProcessingQueueUnit #{self.seq} {self.stage} [{self.status}]>"
