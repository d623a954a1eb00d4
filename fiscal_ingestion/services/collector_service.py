"""
CollectorService -- pulls received documents from the distribution API.

Contract:
    ``collect(tenant_id, issuer_tax_id)`` runs one capture cycle:

    1. request a distribution batch (failure recorded, run continues);
    2. page through the listing until a short page (failure recorded,
       pagination stops);
    3. admit every unseen access key, fetching its payload when available
       (payload failure logged, document stored without payload);
    4. run automatic acknowledgment.

    ``CollectionResult.success`` is true exactly when no error was recorded.

Architecture: fiscal_ingestion/services.  Network I/O via
    DistributionApiClient; persistence via IntakeService.

Invariants enforced:
    - Dedup by (tenant, access key): collecting the same listing twice
      creates each document once and reports no error the second time.
    - A single document's failure never aborts the cycle.

Non-goals:
    - Does NOT call ``session.commit()`` -- caller controls boundaries.
"""

from __future__ import annotations

from uuid import UUID

from sqlalchemy.orm import Session

from fiscal_kernel.domain.clock import Clock, SystemClock
from fiscal_kernel.domain.types import CaptureOrigin, DocumentKind
from fiscal_kernel.logging_config import LogContext, get_logger
from fiscal_kernel.services.auditor_service import AuditorService
from fiscal_ingestion.adapters.distribution_client import (
    DEFAULT_PAGE_SIZE,
    DistributionApiClient,
)
from fiscal_ingestion.domain.types import CollectionResult, RemoteDocument
from fiscal_ingestion.domain.validators import validate_access_key, validate_tax_id
from fiscal_ingestion.services.acknowledgment_service import AcknowledgmentService
from fiscal_ingestion.services.intake_service import (
    DocumentAdmission,
    IntakeService,
    acknowledgment_from_remote,
)

logger = get_logger("ingestion.collector")


class CollectorService:
    """One capture cycle against the distribution API."""

    def __init__(
        self,
        session: Session,
        client: DistributionApiClient,
        clock: Clock | None = None,
        intake_service: IntakeService | None = None,
        acknowledgment_service: AcknowledgmentService | None = None,
        auditor_service: AuditorService | None = None,
        page_size: int = DEFAULT_PAGE_SIZE,
    ):
        self._session = session
        self._client = client
        self._clock = clock or SystemClock()
        self._intake = intake_service or IntakeService(
            session, clock=self._clock, auditor_service=auditor_service,
        )
        self._acknowledgments = acknowledgment_service
        self._page_size = page_size

    def collect(self, tenant_id: UUID, issuer_tax_id: str) -> CollectionResult:
        """
        Raises:
            InvalidTaxIdError: ``issuer_tax_id`` is not a CPF/CNPJ.  Every
                other failure is reported in the result.
        """
        tax_id = validate_tax_id(issuer_tax_id)
        errors: list[str] = []
        new_documents = 0
        skipped = 0
        acknowledged = 0

        with LogContext.bind(tenant_id=tenant_id):
            logger.info("collection_started", extra={"tax_id": tax_id})

            try:
                self._client.request_distribution(tax_id)
            except Exception as exc:
                errors.append(f"distribution request failed: {exc}")
                logger.warning("distribution_request_failed", exc_info=True)

            offset = 0
            while True:
                try:
                    page = self._client.list_documents(tax_id, offset, self._page_size)
                except Exception as exc:
                    errors.append(f"listing failed at offset {offset}: {exc}")
                    logger.warning(
                        "distribution_listing_failed",
                        extra={"offset": offset},
                        exc_info=True,
                    )
                    break

                for remote in page:
                    try:
                        if self._collect_one(tenant_id, remote):
                            new_documents += 1
                        else:
                            skipped += 1
                    except Exception as exc:
                        errors.append(f"document {remote.access_key} failed: {exc}")
                        logger.warning(
                            "document_collection_failed",
                            extra={"access_key": remote.access_key},
                            exc_info=True,
                        )

                if len(page) < self._page_size:
                    break
                offset += self._page_size

            if self._acknowledgments is not None:
                outcome = self._acknowledgments.auto_acknowledge(tenant_id, tax_id)
                acknowledged = outcome.acknowledged
                errors.extend(outcome.errors)

            logger.info(
                "collection_completed",
                extra={
                    "new_documents": new_documents,
                    "skipped_documents": skipped,
                    "acknowledged_documents": acknowledged,
                    "errors": len(errors),
                },
            )

        return CollectionResult(
            new_documents=new_documents,
            skipped_documents=skipped,
            acknowledged_documents=acknowledged,
            errors=tuple(errors),
        )

    def _collect_one(self, tenant_id: UUID, remote: RemoteDocument) -> bool:
        """Admit one remote document.  Returns False when it was already known."""
        access_key = validate_access_key(remote.access_key)
        if self._intake.find_by_access_key(tenant_id, access_key) is not None:
            return False

        payload: str | None = None
        if remote.payload_available and remote.external_id:
            try:
                payload = self._client.fetch_payload(remote.external_id)
            except Exception:
                logger.warning(
                    "payload_fetch_failed",
                    extra={"access_key": access_key, "external_id": remote.external_id},
                    exc_info=True,
                )

        document = self._intake.admit(
            tenant_id,
            DocumentAdmission(
                access_key=access_key,
                origin=CaptureOrigin.AUTOMATIC,
                kind=DocumentKind.NFE,
                raw_payload=payload or None,
                issuer_tax_id=remote.issuer_tax_id,
                issuer_name=remote.issuer_name,
                issuer_state_registration=remote.issuer_state_registration,
                recipient_tax_id=remote.recipient_tax_id,
                issue_date=remote.issue_date,
                total_value=remote.total_value,
                external_id=remote.external_id,
                nsu=remote.nsu,
                acknowledgment=acknowledgment_from_remote(remote.acknowledgment),
            ),
        )
        return document is not None
