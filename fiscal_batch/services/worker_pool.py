"""
ConcurrentPipelineRunner -- bounded thread pool over the processing queue.

Contract:
    ``run(tenant_id)`` selects eligible units once, then hands each unit id
    to a ``ThreadPoolExecutor``.  Every worker opens its own session, claims
    the unit atomically, processes it and commits.

Architecture: fiscal_batch/services.  Built by PipelineOrchestrator.

Invariants enforced:
    - One session per unit per worker; sessions are never shared across
      threads.
    - Claims are the conditional UPDATE in QueueService, so two workers
      handed the same unit id process it at most once.
    - A document has at most one live unit, so parallelism is across
      documents only and stage order within a document is preserved.

Failure modes:
    - A worker whose commit fails rolls back, logs
      ``pipeline_worker_failed`` and is counted as an error; the other
      workers are unaffected.
"""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Callable
from uuid import UUID

from sqlalchemy.orm import Session

from fiscal_kernel.domain.clock import Clock, SystemClock
from fiscal_kernel.logging_config import get_logger

from fiscal_batch.domain.types import QueueRunResult, QueueUnitStatus, UnitResult
from fiscal_batch.models.queue import ProcessingQueueUnitModel
from fiscal_batch.services.processor import PipelineProcessor
from fiscal_batch.services.queue_service import DEFAULT_BATCH_SIZE, QueueService

logger = get_logger("batch.worker_pool")

DEFAULT_MAX_WORKERS = 4


class ConcurrentPipelineRunner:
    """Runs queue units in parallel, one session per unit."""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        build_processor: Callable[[Session], PipelineProcessor],
        max_workers: int = DEFAULT_MAX_WORKERS,
        clock: Clock | None = None,
        batch_size: int = DEFAULT_BATCH_SIZE,
    ):
        if max_workers < 1:
            raise ValueError("max_workers must be at least 1")
        self._session_factory = session_factory
        self._build_processor = build_processor
        self._max_workers = max_workers
        self._clock = clock or SystemClock()
        self._batch_size = batch_size

    @property
    def max_workers(self) -> int:
        return self._max_workers

    def run(self, tenant_id: UUID | None) -> QueueRunResult:
        started_at = self._clock.now()
        unit_ids = self._select(tenant_id)

        processed = 0
        errors = 0
        skipped = 0
        terminal = 0
        results: list[UnitResult] = []

        with ThreadPoolExecutor(
            max_workers=self._max_workers, thread_name_prefix="fiscal-pipeline",
        ) as pool:
            futures = {pool.submit(self._run_unit, unit_id): unit_id for unit_id in unit_ids}
            for future in as_completed(futures):
                try:
                    result = future.result()
                except Exception:
                    errors += 1
                    logger.exception(
                        "pipeline_worker_failed",
                        extra={"unit_id": str(futures[future])},
                    )
                    continue
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

        logger.info(
            "pipeline_pool_run_completed",
            extra={
                "selected": len(unit_ids),
                "processed": processed,
                "errors": errors,
                "skipped": skipped,
                "max_workers": self._max_workers,
            },
        )
        return QueueRunResult(
            selected=len(unit_ids),
            processed=processed,
            errors=errors,
            skipped=skipped,
            terminal_errors=terminal,
            results=tuple(sorted(results, key=lambda r: str(r.unit_id))),
            started_at=started_at,
            completed_at=self._clock.now(),
        )

    def _select(self, tenant_id: UUID | None) -> list[UUID]:
        session = self._session_factory()
        try:
            units = QueueService(session, clock=self._clock).select_eligible(
                tenant_id, limit=self._batch_size,
            )
            return [unit.id for unit in units]
        finally:
            session.close()

    def _run_unit(self, unit_id: UUID) -> UnitResult | None:
        session = self._session_factory()
        try:
            unit = session.get(ProcessingQueueUnitModel, unit_id)
            if unit is None:
                return None
            result = self._build_processor(session).process_unit(unit)
            session.commit()
            return result
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()
