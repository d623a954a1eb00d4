"""
IntakeService -- the single admission path into the inbox.

Contract:
    ``admit()`` inserts a new document for (tenant, access key) and, when a
    payload is present, enqueues its parse_xml unit -- both inside one
    SAVEPOINT.  The collector and manual import both go through it.

    ``import_payload()`` is the manual import entry point: header parse,
    conflict check, then ``admit()``.

Architecture: fiscal_ingestion/services.  Imports kernel models/services,
    the NF-e parser, and fiscal_batch's QueueService for enqueueing.

Invariants enforced:
    - (tenant_id, access_key) is unique.  A duplicate found up front is a
      skip (collector) or a DocumentAlreadyExistsError (manual import); a
      duplicate that races in between is an IntegrityError absorbed by the
      SAVEPOINT and reported as a skip.
    - A document is enqueued for parsing only if it has a payload.
    - Manual import validates everything before the first write.

Non-goals:
    - Does NOT call ``session.commit()`` -- caller controls boundaries.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from fiscal_batch.domain.types import QueueStage
from fiscal_batch.services.queue_service import QueueService
from fiscal_kernel.db.base import SYSTEM_ACTOR_ID
from fiscal_kernel.domain.clock import Clock, SystemClock
from fiscal_kernel.domain.types import (
    AcknowledgmentStatus,
    CaptureOrigin,
    DocumentKind,
    DocumentStatus,
    InboxDocumentInfo,
)
from fiscal_kernel.exceptions import DocumentAlreadyExistsError
from fiscal_kernel.logging_config import get_logger
from fiscal_kernel.models.audit_event import AuditAction
from fiscal_kernel.models.inbox_document import InboxDocument
from fiscal_kernel.services.auditor_service import AuditorService
from fiscal_kernel.utils.hashing import hash_text
from fiscal_ingestion.domain.validators import (
    number_from_access_key,
    series_from_access_key,
    state_from_access_key,
    validate_access_key,
)
from fiscal_ingestion.parsers.nfe_xml import parse_header

logger = get_logger("ingestion.intake")

# Distribution API reports acknowledgment in its own vocabulary
_REMOTE_ACKNOWLEDGMENT: dict[str, AcknowledgmentStatus] = {
    "ciencia": AcknowledgmentStatus.AWARENESS,
    "confirmacao": AcknowledgmentStatus.CONFIRMED,
    "confirmada": AcknowledgmentStatus.CONFIRMED,
    "desconhecimento": AcknowledgmentStatus.UNKNOWN,
    "desconhecida": AcknowledgmentStatus.UNKNOWN,
    "nao_realizada": AcknowledgmentStatus.NOT_PERFORMED,
}


def acknowledgment_from_remote(value: str | None) -> AcknowledgmentStatus | None:
    """Map a remote acknowledgment label to ours; unknown labels map to None."""
    if not value:
        return None
    label = value.strip().lower()
    if label in _REMOTE_ACKNOWLEDGMENT:
        return _REMOTE_ACKNOWLEDGMENT[label]
    try:
        return AcknowledgmentStatus(label)
    except ValueError:
        return None


@dataclass(frozen=True)
class DocumentAdmission:
    """Everything known about a document at the moment it is first seen."""

    access_key: str
    origin: CaptureOrigin
    kind: DocumentKind = DocumentKind.NFE
    raw_payload: str | None = None
    issuer_tax_id: str | None = None
    issuer_name: str | None = None
    issuer_state_registration: str | None = None
    recipient_tax_id: str | None = None
    issue_date: datetime | None = None
    total_value: Decimal | None = None
    external_id: str | None = None
    nsu: str | None = None
    acknowledgment: AcknowledgmentStatus | None = None


class IntakeService:
    """Deduplicating insert + enqueue, shared by collector and manual import."""

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        queue_service: QueueService | None = None,
        auditor_service: AuditorService | None = None,
    ):
        self._session = session
        self._clock = clock or SystemClock()
        self._queue = queue_service or QueueService(session, clock=self._clock)
        self._auditor = auditor_service

    def find_by_access_key(self, tenant_id: UUID, access_key: str) -> InboxDocument | None:
        return self._session.execute(
            select(InboxDocument).where(
                InboxDocument.tenant_id == tenant_id,
                InboxDocument.access_key == access_key,
            )
        ).scalar_one_or_none()

    def admit(
        self,
        tenant_id: UUID,
        admission: DocumentAdmission,
        actor_id: UUID | None = None,
    ) -> InboxDocument | None:
        """
        Insert the document and enqueue parsing if it carries a payload.

        Returns:
            The new document, or None when the access key already exists
            for the tenant (no error).
        """
        if self.find_by_access_key(tenant_id, admission.access_key) is not None:
            return None

        now = self._clock.now()
        key = admission.access_key
        savepoint = self._session.begin_nested()
        try:
            document = InboxDocument(
                tenant_id=tenant_id,
                kind=admission.kind.value,
                access_key=key,
                external_id=admission.external_id,
                nsu=admission.nsu,
                number=number_from_access_key(key),
                series=series_from_access_key(key),
                issuer_state=state_from_access_key(key),
                issue_date=admission.issue_date,
                issuer_tax_id=admission.issuer_tax_id,
                issuer_name=admission.issuer_name,
                issuer_state_registration=admission.issuer_state_registration,
                recipient_tax_id=admission.recipient_tax_id,
                total_value=admission.total_value,
                status=DocumentStatus.PENDING.value,
                origin=admission.origin.value,
                acknowledgment=(
                    admission.acknowledgment.value if admission.acknowledgment else None
                ),
                acknowledged_at=now if admission.acknowledgment else None,
                raw_payload=admission.raw_payload,
                payload_hash=(
                    hash_text(admission.raw_payload) if admission.raw_payload else None
                ),
                captured_at=now,
                created_by_id=actor_id or SYSTEM_ACTOR_ID,
            )
            self._session.add(document)
            self._session.flush()

            if admission.raw_payload:
                self._queue.enqueue(tenant_id, document.id, QueueStage.PARSE)
            savepoint.commit()
        except IntegrityError:
            savepoint.rollback()
            logger.info(
                "document_admission_raced",
                extra={"tenant_id": str(tenant_id), "access_key": key},
            )
            return None
        except Exception:
            savepoint.rollback()
            raise

        if self._auditor:
            self._auditor.record_document_event(
                tenant_id,
                document.id,
                (
                    AuditAction.DOCUMENT_IMPORTED
                    if admission.origin == CaptureOrigin.MANUAL_IMPORT
                    else AuditAction.DOCUMENT_CAPTURED
                ),
                actor_id=actor_id,
                access_key=key,
                origin=admission.origin.value,
                has_payload=admission.raw_payload is not None,
            )
        logger.info(
            "document_admitted",
            extra={
                "tenant_id": str(tenant_id),
                "document_id": str(document.id),
                "access_key": key,
                "origin": admission.origin.value,
                "has_payload": admission.raw_payload is not None,
            },
        )
        return document

    def import_payload(
        self,
        tenant_id: UUID,
        raw_payload: str,
        kind: DocumentKind = DocumentKind.NFE,
        actor_id: UUID | None = None,
    ) -> InboxDocumentInfo:
        """
        Manually import a payload.

        Raises:
            PayloadParseError: The payload has no readable NF-e header.
            InvalidAccessKeyError: The header's key is not 44 digits.
            DocumentAlreadyExistsError: The tenant already holds this key;
                carries the existing document id.
        """
        header = parse_header(raw_payload)
        access_key = validate_access_key(header.access_key)

        existing = self.find_by_access_key(tenant_id, access_key)
        if existing is not None:
            raise DocumentAlreadyExistsError(access_key, str(existing.id))

        document = self.admit(
            tenant_id,
            DocumentAdmission(
                access_key=access_key,
                origin=CaptureOrigin.MANUAL_IMPORT,
                kind=kind,
                raw_payload=raw_payload,
                issuer_tax_id=header.issuer_tax_id,
                issuer_name=header.issuer_name,
                recipient_tax_id=header.recipient_tax_id,
                issue_date=header.issue_date,
                total_value=header.total_value,
            ),
            actor_id=actor_id,
        )
        if document is None:
            # Lost a race with a concurrent insert of the same key
            existing = self.find_by_access_key(tenant_id, access_key)
            raise DocumentAlreadyExistsError(
                access_key, str(existing.id) if existing else "",
            )
        return document.to_dto()
