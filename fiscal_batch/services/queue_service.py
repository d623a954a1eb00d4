"""
QueueService -- persisted processing queue: enqueue, select, claim, settle.

Contract:
    Owns every write to ``processing_queue``.  The processor and the worker
    pool call ``select_eligible`` / ``claim`` / ``mark_done`` /
    ``record_failure``; intake services call ``enqueue``.

Architecture: fiscal_batch/services.  Imports from fiscal_batch.domain,
    fiscal_batch.models and kernel services.

Invariants enforced:
    - ``seq`` is allocated via SequenceService, so (priority, seq) is a
      total order even when units share a clock instant.
    - ``claim`` is a conditional UPDATE (``pending -> processing`` only if
      still pending and under the attempt ceiling).  Exactly one claimant
      wins; everybody else sees rowcount 0.
    - ``attempts`` only ever increases; ``error`` only at the ceiling.
    - Backoff is expressed as ``not_before``.  Nothing sleeps.
    - All timestamps come from the injected Clock.

Non-goals:
    - Does NOT call ``session.commit()`` -- caller controls boundaries.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any
from uuid import UUID

from sqlalchemy import func, or_, select, update
from sqlalchemy.orm import Session

from fiscal_kernel.domain.clock import Clock, SystemClock
from fiscal_kernel.exceptions import QueueUnitNotFoundError
from fiscal_kernel.logging_config import get_logger
from fiscal_kernel.services.sequence_service import SequenceService

from fiscal_batch.domain.types import QueueStage, QueueUnitStatus
from fiscal_batch.models.queue import ProcessingQueueUnitModel

logger = get_logger("batch.queue")

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_BATCH_SIZE = 50
DEFAULT_BACKOFF_SECONDS = 30.0
DEFAULT_BACKOFF_MAX_SECONDS = 3600.0


def compute_backoff(
    attempts: int,
    base_seconds: float = DEFAULT_BACKOFF_SECONDS,
    max_seconds: float = DEFAULT_BACKOFF_MAX_SECONDS,
) -> float:
    """Delay after the ``attempts``-th failure: base * 2**(attempts-1), capped."""
    if attempts <= 0:
        return 0.0
    return min(max_seconds, base_seconds * (2 ** (attempts - 1)))


class QueueService:
    """Persisted queue operations scoped by tenant."""

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        sequence_service: SequenceService | None = None,
        default_max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        backoff_seconds: float = DEFAULT_BACKOFF_SECONDS,
        backoff_max_seconds: float = DEFAULT_BACKOFF_MAX_SECONDS,
    ):
        self._session = session
        self._clock = clock or SystemClock()
        self._sequence = sequence_service or SequenceService(session)
        self._default_max_attempts = default_max_attempts
        self._backoff_seconds = backoff_seconds
        self._backoff_max_seconds = backoff_max_seconds

    # -------------------------------------------------------------------------
    # Enqueue
    # -------------------------------------------------------------------------

    def enqueue(
        self,
        tenant_id: UUID,
        document_id: UUID,
        stage: QueueStage,
        payload: dict[str, Any] | None = None,
        priority: int = 0,
        max_attempts: int | None = None,
    ) -> ProcessingQueueUnitModel:
        seq = self._sequence.next_value(SequenceService.QUEUE_UNIT)
        unit = ProcessingQueueUnitModel(
            tenant_id=tenant_id,
            document_id=document_id,
            stage=stage.value,
            status=QueueUnitStatus.PENDING.value,
            attempts=0,
            max_attempts=max_attempts or self._default_max_attempts,
            priority=priority,
            seq=seq,
            payload=payload or {},
        )
        self._session.add(unit)
        self._session.flush()

        logger.info(
            "queue_unit_enqueued",
            extra={
                "tenant_id": str(tenant_id),
                "document_id": str(document_id),
                "unit_id": str(unit.id),
                "stage": stage.value,
                "seq": seq,
            },
        )
        return unit

    # -------------------------------------------------------------------------
    # Selection and claim
    # -------------------------------------------------------------------------

    def select_eligible(
        self,
        tenant_id: UUID | None,
        limit: int = DEFAULT_BATCH_SIZE,
        as_of: datetime | None = None,
    ) -> list[ProcessingQueueUnitModel]:
        """
        Pending units under their attempt ceiling whose ``not_before`` has
        passed, in (priority, seq) order.  ``tenant_id=None`` spans tenants.
        """
        now = as_of or self._clock.now()
        stmt = (
            select(ProcessingQueueUnitModel)
            .where(
                ProcessingQueueUnitModel.status == QueueUnitStatus.PENDING.value,
                ProcessingQueueUnitModel.attempts < ProcessingQueueUnitModel.max_attempts,
                or_(
                    ProcessingQueueUnitModel.not_before.is_(None),
                    ProcessingQueueUnitModel.not_before <= now,
                ),
            )
            .order_by(ProcessingQueueUnitModel.priority, ProcessingQueueUnitModel.seq)
            .limit(limit)
        )
        if tenant_id is not None:
            stmt = stmt.where(ProcessingQueueUnitModel.tenant_id == tenant_id)
        return list(self._session.execute(stmt).scalars().all())

    def claim(self, unit: ProcessingQueueUnitModel, as_of: datetime | None = None) -> bool:
        """
        Atomically move ``unit`` from pending to processing.

        Returns False when another worker claimed it first.
        """
        now = as_of or self._clock.now()
        result = self._session.execute(
            update(ProcessingQueueUnitModel)
            .where(
                ProcessingQueueUnitModel.id == unit.id,
                ProcessingQueueUnitModel.status == QueueUnitStatus.PENDING.value,
                ProcessingQueueUnitModel.attempts < ProcessingQueueUnitModel.max_attempts,
            )
            .values(status=QueueUnitStatus.PROCESSING.value, started_at=now)
            .execution_options(synchronize_session=False)
        )
        self._session.refresh(unit)
        claimed = result.rowcount == 1
        if not claimed:
            logger.debug(
                "queue_unit_claim_lost",
                extra={"unit_id": str(unit.id), "status": unit.status},
            )
        return claimed

    # -------------------------------------------------------------------------
    # Settlement
    # -------------------------------------------------------------------------

    def mark_done(self, unit: ProcessingQueueUnitModel, as_of: datetime | None = None) -> None:
        unit.status = QueueUnitStatus.DONE.value
        unit.completed_at = as_of or self._clock.now()
        unit.last_error = None
        self._session.flush()

    def record_failure(
        self,
        unit: ProcessingQueueUnitModel,
        error_message: str,
        as_of: datetime | None = None,
    ) -> bool:
        """
        Count a failed attempt.

        Returns True when the unit is now terminal (``error``); otherwise the
        unit is back to ``pending`` with ``not_before`` pushed out.
        """
        now = as_of or self._clock.now()
        unit.attempts += 1
        unit.last_error = error_message

        terminal = unit.attempts >= unit.max_attempts
        if terminal:
            unit.status = QueueUnitStatus.ERROR.value
            unit.completed_at = now
            unit.not_before = None
        else:
            delay = compute_backoff(
                unit.attempts, self._backoff_seconds, self._backoff_max_seconds,
            )
            unit.status = QueueUnitStatus.PENDING.value
            unit.not_before = now + timedelta(seconds=delay)
        self._session.flush()

        logger.warning(
            "queue_unit_failed",
            extra={
                "unit_id": str(unit.id),
                "document_id": str(unit.document_id),
                "stage": unit.stage,
                "attempts": unit.attempts,
                "max_attempts": unit.max_attempts,
                "terminal": terminal,
                "not_before": unit.not_before.isoformat() if unit.not_before else None,
                "error": error_message,
            },
        )
        return terminal

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def get_unit(self, tenant_id: UUID, unit_id: UUID) -> ProcessingQueueUnitModel:
        unit = self._session.execute(
            select(ProcessingQueueUnitModel).where(
                ProcessingQueueUnitModel.id == unit_id,
                ProcessingQueueUnitModel.tenant_id == tenant_id,
            )
        ).scalar_one_or_none()
        if unit is None:
            raise QueueUnitNotFoundError(str(unit_id))
        return unit

    def list_units(
        self,
        tenant_id: UUID,
        document_id: UUID | None = None,
        status: QueueUnitStatus | None = None,
    ) -> list[ProcessingQueueUnitModel]:
        stmt = (
            select(ProcessingQueueUnitModel)
            .where(ProcessingQueueUnitModel.tenant_id == tenant_id)
            .order_by(ProcessingQueueUnitModel.seq)
        )
        if document_id is not None:
            stmt = stmt.where(ProcessingQueueUnitModel.document_id == document_id)
        if status is not None:
            stmt = stmt.where(ProcessingQueueUnitModel.status == status.value)
        return list(self._session.execute(stmt).scalars().all())

    def count_by_status(self, tenant_id: UUID) -> dict[str, int]:
        counts = {s.value: 0 for s in QueueUnitStatus}
        rows = self._session.execute(
            select(ProcessingQueueUnitModel.status, func.count())
            .where(ProcessingQueueUnitModel.tenant_id == tenant_id)
            .group_by(ProcessingQueueUnitModel.status)
        ).all()
        for status, count in rows:
            counts[status] = count
        return counts
