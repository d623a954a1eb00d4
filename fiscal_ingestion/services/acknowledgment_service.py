"""
AcknowledgmentService -- recipient acknowledgment ("manifestação") events.

Contract:
    ``acknowledge()`` sends one event for one document through the
    distribution API and records the attempt.  ``auto_acknowledge()`` sends
    events for unacknowledged documents of trusted issuers when the tenant
    has the feature switched on.

Architecture: fiscal_ingestion/services.  Network I/O via
    DistributionApiClient (retry + circuit ``distribution_acknowledgment``).

Invariants enforced:
    - Kind, justification, tax id and document are validated before any
      network call.
    - Every attempt writes a ``document_acknowledgments`` row, success or
      not.
    - The document's acknowledgment status changes only on success and is
      independent of its pipeline status.

Failure modes:
    - ``acknowledge`` re-raises the API error after recording it.
    - ``auto_acknowledge`` never raises for a single document; it collects
      the error and continues.
"""

from __future__ import annotations

from typing import Any
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from fiscal_kernel.db.base import SYSTEM_ACTOR_ID
from fiscal_kernel.domain.clock import Clock, SystemClock
from fiscal_kernel.domain.types import AcknowledgmentKind, DocumentKind
from fiscal_kernel.exceptions import DocumentNotFoundError
from fiscal_kernel.logging_config import LogContext, get_logger
from fiscal_kernel.models.acknowledgment import (
    DocumentAcknowledgment,
    FiscalInboxSettings,
    TrustedIssuer,
)
from fiscal_kernel.models.audit_event import AuditAction
from fiscal_kernel.models.inbox_document import InboxDocument
from fiscal_kernel.services.auditor_service import AuditorService
from fiscal_ingestion.adapters.distribution_client import DistributionApiClient
from fiscal_ingestion.domain.types import AcknowledgmentReceipt, AutoAcknowledgmentResult
from fiscal_ingestion.domain.validators import (
    MIN_JUSTIFICATION_LENGTH,
    validate_justification,
    validate_tax_id,
)

logger = get_logger("ingestion.acknowledgment")


def _protocol_of(response: dict[str, Any]) -> str | None:
    for key in ("protocolo", "protocol", "id"):
        if response.get(key):
            return str(response[key])
    return None


class AcknowledgmentService:
    """Manual and automatic acknowledgment of received documents."""

    def __init__(
        self,
        session: Session,
        client: DistributionApiClient,
        clock: Clock | None = None,
        auditor_service: AuditorService | None = None,
        min_justification_length: int = MIN_JUSTIFICATION_LENGTH,
    ):
        self._session = session
        self._client = client
        self._clock = clock or SystemClock()
        self._auditor = auditor_service
        self._min_justification = min_justification_length

    def acknowledge(
        self,
        tenant_id: UUID,
        user_id: UUID | None,
        issuer_tax_id: str,
        document_id: UUID,
        kind: AcknowledgmentKind | str,
        justification: str | None = None,
        automatic: bool = False,
    ) -> AcknowledgmentReceipt:
        """
        Send one acknowledgment event.

        ``issuer_tax_id`` is the tenant's own CPF/CNPJ, on whose behalf the
        event is sent.

        Raises:
            ValueError: Unknown kind.
            JustificationRequiredError: Missing or short justification for
                non-recognition / not-performed.
            InvalidTaxIdError: Malformed tax id.
            DocumentNotFoundError: Unknown document for this tenant.
            ExternalServiceError / CircuitOpenError / httpx.TransportError:
                the API call failed (after the attempt was recorded).
        """
        event_kind = AcknowledgmentKind(kind)
        text = validate_justification(event_kind, justification, self._min_justification)
        tax_id = validate_tax_id(issuer_tax_id)

        document = self._session.execute(
            select(InboxDocument).where(
                InboxDocument.id == document_id,
                InboxDocument.tenant_id == tenant_id,
            )
        ).scalar_one_or_none()
        if document is None:
            raise DocumentNotFoundError(str(document_id))

        actor = user_id or SYSTEM_ACTOR_ID
        with LogContext.bind(tenant_id=tenant_id, document_id=document.id, actor_id=actor):
            try:
                response = self._client.send_acknowledgment(
                    tax_id, document.access_key, event_kind.event_code, text,
                )
            except Exception as exc:
                row = self._record_attempt(
                    tenant_id, document, event_kind, text, actor, automatic,
                    success=False, error_message=str(exc) or type(exc).__name__,
                )
                if self._auditor:
                    self._auditor.record_document_event(
                        tenant_id, document.id, AuditAction.ACKNOWLEDGMENT_FAILED,
                        actor_id=actor,
                        acknowledgment_id=row.id,
                        kind=event_kind.value,
                        automatic=automatic,
                        error=row.error_message,
                    )
                logger.warning(
                    "acknowledgment_failed",
                    extra={
                        "access_key": document.access_key,
                        "kind": event_kind.value,
                        "automatic": automatic,
                        "error": row.error_message,
                    },
                )
                raise

            protocol = _protocol_of(response)
            row = self._record_attempt(
                tenant_id, document, event_kind, text, actor, automatic,
                success=True, protocol=protocol,
            )
            document.acknowledgment = event_kind.resulting_status.value
            document.acknowledged_at = row.sent_at
            document.updated_by_id = actor
            self._session.flush()

            if self._auditor:
                self._auditor.record_document_event(
                    tenant_id, document.id, AuditAction.ACKNOWLEDGMENT_SENT,
                    actor_id=actor,
                    acknowledgment_id=row.id,
                    kind=event_kind.value,
                    event_code=event_kind.event_code,
                    automatic=automatic,
                    protocol=protocol,
                )
            logger.info(
                "acknowledgment_sent",
                extra={
                    "access_key": document.access_key,
                    "kind": event_kind.value,
                    "event_code": event_kind.event_code,
                    "automatic": automatic,
                },
            )

        return AcknowledgmentReceipt(
            acknowledgment_id=row.id,
            document_id=document.id,
            access_key=document.access_key,
            kind=event_kind,
            event_code=event_kind.event_code,
            success=True,
            automatic=automatic,
            protocol=protocol,
        )

    def auto_acknowledge(self, tenant_id: UUID, issuer_tax_id: str) -> AutoAcknowledgmentResult:
        """
        Acknowledge every unacknowledged NF-e of an active trusted issuer
        flagged ``auto_acknowledge``.

        The kind comes from the trusted issuer, else the tenant default,
        else awareness.
        """
        settings = self._session.execute(
            select(FiscalInboxSettings).where(FiscalInboxSettings.tenant_id == tenant_id)
        ).scalar_one_or_none()
        if settings is None or not settings.auto_acknowledge_enabled:
            return AutoAcknowledgmentResult()

        trusted = {
            issuer.issuer_tax_id: issuer
            for issuer in self._session.execute(
                select(TrustedIssuer).where(
                    TrustedIssuer.tenant_id == tenant_id,
                    TrustedIssuer.is_active.is_(True),
                    TrustedIssuer.auto_acknowledge.is_(True),
                )
            ).scalars().all()
        }
        if not trusted:
            return AutoAcknowledgmentResult()

        documents = self._session.execute(
            select(InboxDocument)
            .where(
                InboxDocument.tenant_id == tenant_id,
                InboxDocument.kind == DocumentKind.NFE.value,
                InboxDocument.acknowledgment.is_(None),
                InboxDocument.issuer_tax_id.in_(trusted.keys()),
            )
            .order_by(InboxDocument.captured_at, InboxDocument.access_key)
        ).scalars().all()

        acknowledged = 0
        errors: list[str] = []
        for document in documents:
            issuer = trusted[document.issuer_tax_id]
            kind = (
                issuer.acknowledgment_kind
                or settings.default_acknowledgment_kind
                or AcknowledgmentKind.AWARENESS.value
            )
            try:
                self.acknowledge(
                    tenant_id,
                    None,
                    issuer_tax_id,
                    document.id,
                    kind,
                    automatic=True,
                )
                acknowledged += 1
            except Exception as exc:
                errors.append(f"auto acknowledgment of {document.access_key} failed: {exc}")
                logger.warning(
                    "auto_acknowledgment_failed",
                    extra={"access_key": document.access_key, "kind": kind},
                    exc_info=True,
                )

        logger.info(
            "auto_acknowledgment_completed",
            extra={
                "tenant_id": str(tenant_id),
                "candidates": len(documents),
                "acknowledged": acknowledged,
                "errors": len(errors),
            },
        )
        return AutoAcknowledgmentResult(acknowledged=acknowledged, errors=tuple(errors))

    def _record_attempt(
        self,
        tenant_id: UUID,
        document: InboxDocument,
        kind: AcknowledgmentKind,
        justification: str | None,
        actor_id: UUID,
        automatic: bool,
        success: bool,
        protocol: str | None = None,
        error_message: str | None = None,
    ) -> DocumentAcknowledgment:
        row = DocumentAcknowledgment(
            tenant_id=tenant_id,
            document_id=document.id,
            access_key=document.access_key,
            kind=kind.value,
            event_code=kind.event_code,
            justification=justification,
            protocol=protocol,
            success=success,
            error_message=error_message,
            automatic=automatic,
            user_id=None if automatic else actor_id,
            sent_at=self._clock.now(),
            created_by_id=actor_id,
        )
        self._session.add(row)
        self._session.flush()
        return row
