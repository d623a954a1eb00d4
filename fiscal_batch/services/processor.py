"""
PipelineProcessor -- drains the processing queue one claimed unit at a time.

Contract:
    ``process_queue(tenant_id)`` selects up to ``batch_size`` eligible units
    in (priority, seq) order and runs each through its stage handler.
    ``process_unit(unit)`` is the single-unit entry point the worker pool
    uses from its own sessions.

Architecture: fiscal_batch/services.  Imports from fiscal_batch.domain,
    fiscal_batch.models, fiscal_batch.stages and kernel services.

Invariants enforced:
    - Claim before work: a unit another worker claimed is skipped.
    - SAVEPOINT per unit: a handler failure rolls back only that unit's
      stage writes; the batch continues.
    - On success the follow-on unit (if any) is enqueued in the same
      SAVEPOINT as the stage writes, so a document never has two live
      units.
    - On failure ``attempts`` increments; the unit goes to ``error`` only
      at ``max_attempts``, and then ``document.pipeline_error`` carries the
      message while ``document.status`` is left as it was.
    - All timestamps come from the injected Clock.  Nothing sleeps.

Non-goals:
    - Does NOT call ``session.commit()`` -- caller controls boundaries.
"""

from __future__ import annotations

import time
from datetime import datetime
from uuid import UUID

from sqlalchemy.orm import Session

from fiscal_kernel.domain.clock import Clock, SystemClock
from fiscal_kernel.logging_config import LogContext, get_logger
from fiscal_kernel.models.audit_event import AuditAction
from fiscal_kernel.models.inbox_document import InboxDocument
from fiscal_kernel.services.auditor_service import AuditorService

from fiscal_batch.domain.types import (
    QueueRunResult,
    QueueStage,
    QueueUnitStatus,
    UnitResult,
)
from fiscal_batch.models.queue import ProcessingQueueUnitModel
from fiscal_batch.services.queue_service import DEFAULT_BATCH_SIZE, QueueService
from fiscal_batch.stages.base import StageRegistry

logger = get_logger("batch.processor")

_STAGE_AUDIT_ACTIONS: dict[QueueStage, AuditAction] = {
    QueueStage.PARSE: AuditAction.DOCUMENT_PARSED,
    QueueStage.MATCH: AuditAction.PRODUCTS_MATCHED,
    QueueStage.PROPOSE: AuditAction.PROPOSAL_GENERATED,
}


def _error_message(exc: Exception) -> str:
    text = str(exc)
    return f"{type(exc).__name__}: {text}" if text else type(exc).__name__


class PipelineProcessor:
    """Sequential queue drain with SAVEPOINT-per-unit isolation."""

    def __init__(
        self,
        session: Session,
        stage_registry: StageRegistry,
        clock: Clock | None = None,
        queue_service: QueueService | None = None,
        auditor_service: AuditorService | None = None,
        batch_size: int = DEFAULT_BATCH_SIZE,
    ):
        self._session = session
        self._registry = stage_registry
        self._clock = clock or SystemClock()
        self._queue = queue_service or QueueService(session, clock=self._clock)
        self._auditor = auditor_service
        self._batch_size = batch_size

    # -------------------------------------------------------------------------
    # Batch
    # -------------------------------------------------------------------------

    def process_queue(self, tenant_id: UUID | None) -> QueueRunResult:
        """Run every eligible unit once.  Never raises for a unit failure."""
        started_at = self._clock.now()
        units = self._queue.select_eligible(
            tenant_id, limit=self._batch_size, as_of=started_at,
        )

        processed = 0
        errors = 0
        skipped = 0
        terminal = 0
        results: list[UnitResult] = []

        for unit in units:
            result = self.process_unit(unit)
            if result is None:
                skipped += 1
                continue
            results.append(result)
            if result.status == QueueUnitStatus.DONE:
                processed += 1
            else:
                errors += 1
                if result.status == QueueUnitStatus.ERROR:
                    terminal += 1

        completed_at = self._clock.now()
        logger.info(
            "queue_run_completed",
            extra={
                "tenant_id": str(tenant_id) if tenant_id else None,
                "selected": len(units),
                "processed": processed,
                "errors": errors,
                "skipped": skipped,
                "terminal_errors": terminal,
            },
        )
        return QueueRunResult(
            selected=len(units),
            processed=processed,
            errors=errors,
            skipped=skipped,
            terminal_errors=terminal,
            results=tuple(results),
            started_at=started_at,
            completed_at=completed_at,
        )

    # -------------------------------------------------------------------------
    # Single unit
    # -------------------------------------------------------------------------

    def process_unit(self, unit: ProcessingQueueUnitModel) -> UnitResult | None:
        """
        Claim and run one unit.

        Returns:
            None when the claim was lost, otherwise the unit's result.
        """
        now = self._clock.now()
        if not self._queue.claim(unit, as_of=now):
            return None

        dto = unit.to_dto()
        with LogContext.bind(
            tenant_id=dto.tenant_id, document_id=dto.document_id, unit_id=dto.unit_id,
        ):
            start = time.monotonic()
            savepoint = self._session.begin_nested()
            try:
                handler = self._registry.get(dto.stage)
                outcome = handler.handle(dto, self._session, now)

                next_unit_id = None
                if outcome.next_stage is not None:
                    follow_on = self._queue.enqueue(
                        dto.tenant_id,
                        dto.document_id,
                        outcome.next_stage,
                        payload=outcome.next_payload,
                        priority=dto.priority,
                    )
                    next_unit_id = follow_on.id
                self._queue.mark_done(unit, as_of=self._clock.now())
                savepoint.commit()
            except Exception as exc:
                savepoint.rollback()
                return self._fail(unit, exc, now, start)

            duration_ms = int((time.monotonic() - start) * 1000)
            if self._auditor:
                self._auditor.record_document_event(
                    dto.tenant_id,
                    dto.document_id,
                    _STAGE_AUDIT_ACTIONS[dto.stage],
                    unit_id=dto.unit_id,
                    **outcome.result_data,
                )
            logger.info(
                "queue_unit_done",
                extra={
                    "stage": dto.stage.value,
                    "next_stage": outcome.next_stage.value if outcome.next_stage else None,
                    "duration_ms": duration_ms,
                },
            )
            return UnitResult(
                unit_id=dto.unit_id,
                document_id=dto.document_id,
                stage=dto.stage,
                status=QueueUnitStatus.DONE,
                attempts=unit.attempts,
                next_unit_id=next_unit_id,
                duration_ms=duration_ms,
            )

    def _fail(
        self,
        unit: ProcessingQueueUnitModel,
        exc: Exception,
        as_of: datetime,
        start: float,
    ) -> UnitResult:
        message = _error_message(exc)
        terminal = self._queue.record_failure(unit, message, as_of=as_of)

        if terminal:
            document = self._session.get(InboxDocument, unit.document_id)
            if document is not None:
                document.pipeline_error = message
                self._session.flush()
            if self._auditor:
                self._auditor.record_document_event(
                    unit.tenant_id,
                    unit.document_id,
                    AuditAction.QUEUE_UNIT_FAILED,
                    unit_id=unit.id,
                    stage=unit.stage,
                    attempts=unit.attempts,
                    error=message,
                )

        return UnitResult(
            unit_id=unit.id,
            document_id=unit.document_id,
            stage=QueueStage(unit.stage),
            status=QueueUnitStatus(unit.status),
            attempts=unit.attempts,
            error_message=message,
            duration_ms=int((time.monotonic() - start) * 1000),
        )
