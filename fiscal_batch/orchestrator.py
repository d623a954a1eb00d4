"""
PipelineOrchestrator -- DI container for the document pipeline.

Contract:
    Wires the StageRegistry with the three stage handlers, creates
    PipelineProcessor instances, and optionally a ConcurrentPipelineRunner.
    Single place where pipeline dependencies are composed.

Architecture: fiscal_batch (top-level).  The product matcher comes from
    fiscal_services; it is imported lazily so that fiscal_services can
    import this module without a cycle.

Invariants enforced:
    - Clock injection: every service receives the same Clock.
    - Audit trail: AuditorService is wired into every processor.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Callable

from sqlalchemy.orm import Session

from fiscal_kernel.domain.clock import Clock, SystemClock
from fiscal_kernel.logging_config import get_logger
from fiscal_kernel.services.auditor_service import AuditorService

from fiscal_batch.services.processor import PipelineProcessor
from fiscal_batch.services.queue_service import (
    DEFAULT_BACKOFF_MAX_SECONDS,
    DEFAULT_BACKOFF_SECONDS,
    DEFAULT_BATCH_SIZE,
    DEFAULT_MAX_ATTEMPTS,
    QueueService,
)
from fiscal_batch.services.worker_pool import DEFAULT_MAX_WORKERS, ConcurrentPipelineRunner
from fiscal_batch.stages.base import StageRegistry
from fiscal_batch.stages.match import MatchProductsStage, ProductMatcher
from fiscal_batch.stages.parse import ParseDocumentStage
from fiscal_batch.stages.propose import GenerateProposalStage

if TYPE_CHECKING:
    from fiscal_config.schema import MatchingDef, PipelineDef

logger = get_logger("batch.orchestrator")

MatcherFactory = Callable[[Session], ProductMatcher]


def default_stage_registry(matcher: ProductMatcher) -> StageRegistry:
    """Create a StageRegistry loaded with parse, match and propose."""
    registry = StageRegistry()
    registry.register(ParseDocumentStage())
    registry.register(MatchProductsStage(matcher))
    registry.register(GenerateProposalStage())
    return registry


class PipelineOrchestrator:
    """DI container for the pipeline.

    Contract:
        - ``from_session()`` creates a fully wired orchestrator.
        - ``create_processor()`` returns a PipelineProcessor, optionally on
          another session (worker threads).
        - ``create_runner()`` returns a ConcurrentPipelineRunner.

    Non-goals:
        - Does NOT manage session lifecycle -- caller controls commits.
    """

    def __init__(
        self,
        session: Session,
        matcher_factory: MatcherFactory,
        clock: Clock | None = None,
        batch_size: int = DEFAULT_BATCH_SIZE,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        backoff_seconds: float = DEFAULT_BACKOFF_SECONDS,
        backoff_max_seconds: float = DEFAULT_BACKOFF_MAX_SECONDS,
        max_workers: int = DEFAULT_MAX_WORKERS,
    ) -> None:
        self._session = session
        self._matcher_factory = matcher_factory
        self._clock = clock or SystemClock()
        self._batch_size = batch_size
        self._max_attempts = max_attempts
        self._backoff_seconds = backoff_seconds
        self._backoff_max_seconds = backoff_max_seconds
        self._max_workers = max_workers

    # -------------------------------------------------------------------------
    # Factory
    # -------------------------------------------------------------------------

    @classmethod
    def from_session(
        cls,
        session: Session,
        clock: Clock | None = None,
        pipeline: PipelineDef | None = None,
        matching: MatchingDef | None = None,
        matcher_factory: MatcherFactory | None = None,
    ) -> PipelineOrchestrator:
        """Create a fully wired orchestrator.

        Args:
            session: SQLAlchemy session for persistence.
            clock: Optional clock for deterministic testing.
            pipeline: Optional batch / retry settings; defaults otherwise.
            matching: Optional thresholds for the default matcher.
            matcher_factory: Optional override building the matcher for a
                session.  Defaults to ProductMatchingService.
        """
        effective_clock = clock or SystemClock()

        if matcher_factory is None:
            def matcher_factory(target: Session) -> ProductMatcher:
                from fiscal_services.product_matching_service import ProductMatchingService

                return ProductMatchingService.from_session(
                    target, clock=effective_clock, matching=matching,
                )

        kwargs = {}
        if pipeline is not None:
            kwargs = dict(
                batch_size=pipeline.batch_size,
                max_attempts=pipeline.max_attempts,
                backoff_seconds=pipeline.retry_backoff_seconds,
                backoff_max_seconds=pipeline.retry_backoff_max_seconds,
                max_workers=pipeline.max_workers,
            )
        return cls(
            session=session,
            matcher_factory=matcher_factory,
            clock=effective_clock,
            **kwargs,
        )

    # -------------------------------------------------------------------------
    # Processor
    # -------------------------------------------------------------------------

    def create_queue_service(self, session: Session | None = None) -> QueueService:
        return QueueService(
            session or self._session,
            clock=self._clock,
            default_max_attempts=self._max_attempts,
            backoff_seconds=self._backoff_seconds,
            backoff_max_seconds=self._backoff_max_seconds,
        )

    def create_processor(self, session: Session | None = None) -> PipelineProcessor:
        """Create a PipelineProcessor on ``session`` (default: the orchestrator's)."""
        target = session or self._session
        return PipelineProcessor(
            session=target,
            stage_registry=default_stage_registry(self._matcher_factory(target)),
            clock=self._clock,
            queue_service=self.create_queue_service(target),
            auditor_service=AuditorService(target, clock=self._clock),
            batch_size=self._batch_size,
        )

    # -------------------------------------------------------------------------
    # Worker pool
    # -------------------------------------------------------------------------

    def create_runner(
        self,
        session_factory: Callable[[], Session],
        max_workers: int | None = None,
    ) -> ConcurrentPipelineRunner:
        return ConcurrentPipelineRunner(
            session_factory=session_factory,
            build_processor=self.create_processor,
            max_workers=max_workers or self._max_workers,
            clock=self._clock,
            batch_size=self._batch_size,
        )

    # -------------------------------------------------------------------------
    # Properties
    # -------------------------------------------------------------------------

    @property
    def session(self) -> Session:
        return self._session

    @property
    def clock(self) -> Clock:
        return self._clock

    @property
    def batch_size(self) -> int:
        return self._batch_size
