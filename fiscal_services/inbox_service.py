"""
FiscalInboxService -- the inbound surface of the fiscal inbox.

Contract:
    One object per session exposing every operation callers (CLI, web
    handlers, schedulers) need: capture, manual import, queue processing,
    acknowledgment, manual product linking and mapping maintenance.

Architecture: fiscal_services.  Composes fiscal_ingestion (collector,
    intake, acknowledgment), fiscal_batch (pipeline orchestrator) and the
    product matching service around a single session and Clock.

Invariants enforced:
    - Clock injection: every composed service receives the same Clock.
    - Configuration comes in as an ``InboxConfiguration``; nothing here
      reads files or the environment except through
      ``DistributionApiDef.resolve_client_secret()``.

Non-goals:
    - Does NOT call ``session.commit()`` -- the caller (``session_scope``)
      owns the transaction.  The worker pool is the exception: it commits
      per unit in its own sessions.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Callable
from uuid import UUID

import httpx
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from fiscal_batch.domain.types import QueueRunResult
from fiscal_batch.orchestrator import PipelineOrchestrator
from fiscal_kernel.domain.clock import Clock, SystemClock
from fiscal_kernel.domain.types import (
    AcknowledgmentKind,
    DocumentKind,
    DocumentStatus,
    InboxDocumentInfo,
    LineItemInfo,
    SupplierMappingInfo,
)
from fiscal_kernel.exceptions import DocumentNotFoundError
from fiscal_kernel.logging_config import get_logger
from fiscal_kernel.models.inbox_document import InboxDocument
from fiscal_kernel.services.auditor_service import AuditorService
from fiscal_kernel.services.retry_service import (
    CircuitBreakerRegistry,
    RetryService,
    get_circuit_registry,
)
from fiscal_ingestion.adapters.distribution_client import (
    DEFAULT_PAGE_SIZE,
    DistributionApiClient,
)
from fiscal_ingestion.domain.types import (
    AcknowledgmentReceipt,
    CollectionResult,
    RemoteDocument,
)
from fiscal_ingestion.domain.validators import validate_tax_id
from fiscal_ingestion.services import (
    AcknowledgmentService,
    CollectorService,
    IntakeService,
)
from fiscal_services.product_matching_service import ProductMatchingService

if TYPE_CHECKING:
    from fiscal_config.schema import InboxConfiguration

logger = get_logger("services.inbox")

DEFAULT_LIST_LIMIT = 20


@dataclass(frozen=True)
class InboxSummary:
    """Document and queue counts for one tenant."""

    tenant_id: UUID
    documents: dict[str, int] = field(default_factory=dict)
    queue: dict[str, int] = field(default_factory=dict)

    @property
    def total_documents(self) -> int:
        return sum(self.documents.values())


@dataclass(frozen=True)
class DocumentPage:
    """One page of a filtered document listing."""

    documents: list[InboxDocumentInfo]
    total: int
    limit: int
    offset: int

    @property
    def total_pages(self) -> int:
        return (self.total + self.limit - 1) // self.limit


class FiscalInboxService:
    """Facade over collection, import, pipeline and matching."""

    def __init__(
        self,
        session: Session,
        client: DistributionApiClient,
        clock: Clock | None = None,
        intake: IntakeService | None = None,
        collector: CollectorService | None = None,
        acknowledgments: AcknowledgmentService | None = None,
        matching: ProductMatchingService | None = None,
        orchestrator: PipelineOrchestrator | None = None,
    ):
        self._session = session
        self._client = client
        self._clock = clock or SystemClock()
        auditor = AuditorService(session, clock=self._clock)

        self._orchestrator = orchestrator or PipelineOrchestrator.from_session(
            session, clock=self._clock,
        )
        self._intake = intake or IntakeService(
            session,
            clock=self._clock,
            queue_service=self._orchestrator.create_queue_service(),
            auditor_service=auditor,
        )
        self._acknowledgments = acknowledgments or AcknowledgmentService(
            session, client, clock=self._clock, auditor_service=auditor,
        )
        self._collector = collector or CollectorService(
            session,
            client,
            clock=self._clock,
            intake_service=self._intake,
            acknowledgment_service=self._acknowledgments,
        )
        self._matching = matching or ProductMatchingService.from_session(
            session, clock=self._clock,
        )

    # -------------------------------------------------------------------------
    # Factory
    # -------------------------------------------------------------------------

    @classmethod
    def from_session(
        cls,
        session: Session,
        config: InboxConfiguration,
        clock: Clock | None = None,
        http_client: httpx.Client | None = None,
        circuit_registry: CircuitBreakerRegistry | None = None,
    ) -> FiscalInboxService:
        """Create a fully wired facade from a configuration.

        Args:
            session: SQLAlchemy session shared by every composed service.
            config: Active configuration (see ``fiscal_config.get_active_config``).
            clock: Optional clock for deterministic testing.
            http_client: Optional ``httpx.Client`` (tests use MockTransport).
            circuit_registry: Optional circuit map; defaults to the
                process-wide one.

        Raises:
            ConfigurationError: The client secret variable is not set.
        """
        effective_clock = clock or SystemClock()
        api = config.distribution_api

        registry = circuit_registry or get_circuit_registry()
        registry.configure(
            config.circuit_breaker.failure_threshold,
            config.circuit_breaker.recovery_seconds,
        )
        retry_service = RetryService(
            registry=registry,
            default_options=config.retry.default_options(),
        )
        client = DistributionApiClient(
            base_url=api.base_url,
            token_url=api.token_url,
            client_id=api.client_id,
            client_secret=api.resolve_client_secret(),
            retry_service=retry_service,
            scope=api.scope,
            clock=effective_clock,
            http_client=http_client,
            timeout_seconds=api.timeout_seconds,
            retry_options=config.retry.endpoint_options(),
        )

        auditor = AuditorService(session, clock=effective_clock)
        orchestrator = PipelineOrchestrator.from_session(
            session,
            clock=effective_clock,
            pipeline=config.pipeline,
            matching=config.matching,
        )
        intake = IntakeService(
            session,
            clock=effective_clock,
            queue_service=orchestrator.create_queue_service(),
            auditor_service=auditor,
        )
        acknowledgments = AcknowledgmentService(
            session,
            client,
            clock=effective_clock,
            auditor_service=auditor,
            min_justification_length=config.acknowledgment.min_justification_length,
        )
        collector = CollectorService(
            session,
            client,
            clock=effective_clock,
            intake_service=intake,
            acknowledgment_service=acknowledgments,
            page_size=api.page_size,
        )
        logger.info(
            "inbox_service_created",
            extra={"config_id": config.config_id, "config_version": config.version},
        )
        return cls(
            session=session,
            client=client,
            clock=effective_clock,
            intake=intake,
            collector=collector,
            acknowledgments=acknowledgments,
            matching=ProductMatchingService.from_session(
                session, clock=effective_clock, matching=config.matching,
            ),
            orchestrator=orchestrator,
        )

    # -------------------------------------------------------------------------
    # Capture
    # -------------------------------------------------------------------------

    def collect(self, tenant_id: UUID, issuer_tax_id: str) -> CollectionResult:
        return self._collector.collect(tenant_id, issuer_tax_id)

    def manual_import(
        self,
        tenant_id: UUID,
        raw_payload: str,
        kind: DocumentKind | str = DocumentKind.NFE,
        actor_id: UUID | None = None,
    ) -> InboxDocumentInfo:
        return self._intake.import_payload(
            tenant_id, raw_payload, kind=DocumentKind(kind), actor_id=actor_id,
        )

    # -------------------------------------------------------------------------
    # Pipeline
    # -------------------------------------------------------------------------

    def process_queue(self, tenant_id: UUID | None) -> QueueRunResult:
        """Process eligible units sequentially on this session."""
        return self._orchestrator.create_processor().process_queue(tenant_id)

    def process_queue_concurrently(
        self,
        tenant_id: UUID | None,
        session_factory: Callable[[], Session],
        max_workers: int | None = None,
    ) -> QueueRunResult:
        """Process eligible units on a worker pool, one session per unit."""
        runner = self._orchestrator.create_runner(session_factory, max_workers=max_workers)
        return runner.run(tenant_id)

    # -------------------------------------------------------------------------
    # Acknowledgment
    # -------------------------------------------------------------------------

    def acknowledge(
        self,
        tenant_id: UUID,
        user_id: UUID | None,
        issuer_tax_id: str,
        document_id: UUID,
        kind: AcknowledgmentKind | str,
        justification: str | None = None,
    ) -> AcknowledgmentReceipt:
        return self._acknowledgments.acknowledge(
            tenant_id, user_id, issuer_tax_id, document_id, kind, justification,
        )

    # -------------------------------------------------------------------------
    # Matching
    # -------------------------------------------------------------------------

    def link_line_item(
        self,
        tenant_id: UUID,
        line_item_id: UUID,
        product_id: UUID,
        actor_id: UUID | None = None,
    ) -> LineItemInfo:
        return self._matching.link_line_item(tenant_id, line_item_id, product_id, actor_id)

    def list_supplier_mappings(
        self,
        tenant_id: UUID,
        supplier_tax_id: str | None = None,
        include_inactive: bool = False,
    ) -> list[SupplierMappingInfo]:
        return self._matching.list_supplier_mappings(
            tenant_id, supplier_tax_id, include_inactive=include_inactive,
        )

    def disable_mapping(
        self,
        tenant_id: UUID,
        mapping_id: UUID,
        actor_id: UUID | None = None,
    ) -> SupplierMappingInfo:
        return self._matching.disable_mapping(tenant_id, mapping_id, actor_id)

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def get_document(self, tenant_id: UUID, document_id: UUID) -> InboxDocumentInfo:
        return self._load_document(tenant_id, document_id).to_dto()

    def _load_document(self, tenant_id: UUID, document_id: UUID) -> InboxDocument:
        document = self._session.execute(
            select(InboxDocument).where(
                InboxDocument.id == document_id,
                InboxDocument.tenant_id == tenant_id,
            )
        ).scalar_one_or_none()
        if document is None:
            raise DocumentNotFoundError(str(document_id))
        return document

    def list_documents(
        self,
        tenant_id: UUID,
        status: DocumentStatus | str | None = None,
        kind: DocumentKind | str | None = None,
        issuer_name: str | None = None,
        limit: int = DEFAULT_LIST_LIMIT,
        offset: int = 0,
    ) -> DocumentPage:
        """
        Documents of one tenant, newest issue date first, one page at a time.

        ``issuer_name`` matches any part of the name, ignoring case.  The
        page carries the total count for the same filters.

        Raises:
            ValueError: Unknown status or kind, ``limit`` below 1 or a
                negative ``offset``.
        """
        if limit < 1:
            raise ValueError(f"limit must be at least 1, got {limit}")
        if offset < 0:
            raise ValueError(f"offset must not be negative, got {offset}")

        conditions = [InboxDocument.tenant_id == tenant_id]
        if status is not None:
            conditions.append(InboxDocument.status == DocumentStatus(status).value)
        if kind is not None:
            conditions.append(InboxDocument.kind == DocumentKind(kind).value)
        if issuer_name:
            conditions.append(InboxDocument.issuer_name.ilike(f"%{issuer_name}%"))

        total = self._session.execute(
            select(func.count()).select_from(InboxDocument).where(*conditions)
        ).scalar_one()
        documents = self._session.execute(
            select(InboxDocument)
            .where(*conditions)
            .order_by(
                InboxDocument.issue_date.desc().nulls_last(),
                InboxDocument.access_key,
            )
            .limit(limit)
            .offset(offset)
        ).scalars().all()

        return DocumentPage(
            documents=[document.to_dto() for document in documents],
            total=total,
            limit=limit,
            offset=offset,
        )

    def list_remote_unacknowledged(
        self,
        issuer_tax_id: str,
        offset: int = 0,
        limit: int = DEFAULT_PAGE_SIZE,
    ) -> list[RemoteDocument]:
        """Documents the distribution service still holds without an acknowledgment."""
        return self._client.list_unacknowledged(validate_tax_id(issuer_tax_id), offset, limit)

    def list_line_items(self, tenant_id: UUID, document_id: UUID) -> list[LineItemInfo]:
        """Lines of one document in line order, for manual review."""
        document = self._load_document(tenant_id, document_id)
        return [line.to_dto() for line in document.items]

    def inbox_summary(self, tenant_id: UUID) -> InboxSummary:
        """Counts of documents by pipeline status and queue units by status."""
        documents = {s.value: 0 for s in DocumentStatus}
        rows = self._session.execute(
            select(InboxDocument.status, func.count())
            .where(InboxDocument.tenant_id == tenant_id)
            .group_by(InboxDocument.status)
        ).all()
        for status, count in rows:
            documents[status] = count

        return InboxSummary(
            tenant_id=tenant_id,
            documents=documents,
            queue=self._orchestrator.create_queue_service().count_by_status(tenant_id),
        )

    def close(self) -> None:
        self._client.close()
