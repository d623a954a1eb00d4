"""
Stage parse_xml: turn a captured payload into structured document fields
and line items.
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import select
from sqlalchemy.orm import Session

from fiscal_kernel.domain.types import DocumentStatus, MatchStatus
from fiscal_kernel.exceptions import PayloadMissingError, PayloadParseError
from fiscal_kernel.logging_config import get_logger
from fiscal_kernel.models.inbox_document import InboxDocument, InboxLineItem
from fiscal_kernel.models.supplier_mapping import Supplier
from fiscal_ingestion.domain.types import ParsedInvoice
from fiscal_ingestion.parsers.nfe_xml import parse_nfe

from fiscal_batch.domain.types import QueueStage, QueueUnit, StageOutcome
from fiscal_batch.stages.base import load_document

logger = get_logger("batch.stages.parse")


class ParseDocumentStage:
    """
    Parses ``document.raw_payload`` and rewrites the document from it.

    Replaces any existing line items, so re-running after a failed match
    never duplicates lines.  Enqueues match_products with the issuer's tax
    id as payload.
    """

    @property
    def stage(self) -> QueueStage:
        return QueueStage.PARSE

    @property
    def description(self) -> str:
        return "Parse the NF-e payload into document fields and line items"

    def handle(self, unit: QueueUnit, session: Session, as_of: datetime) -> StageOutcome:
        document = load_document(session, unit.tenant_id, unit.document_id)
        if not document.raw_payload:
            raise PayloadMissingError(str(document.id))

        parsed = parse_nfe(document.raw_payload)
        if parsed.access_key != document.access_key:
            raise PayloadParseError(
                f"payload access key {parsed.access_key} does not match "
                f"document {document.access_key}"
            )

        self._apply_header(session, document, parsed)
        self._replace_items(session, document, parsed)

        document.status = DocumentStatus.PROCESSING.value
        document.pipeline_error = None
        session.flush()

        logger.info(
            "document_parsed",
            extra={
                "document_id": str(document.id),
                "access_key": document.access_key,
                "items": len(parsed.items),
                "supplier_linked": document.supplier_id is not None,
            },
        )
        return StageOutcome(
            next_stage=QueueStage.MATCH,
            next_payload={"supplier_tax_id": parsed.issuer.tax_id},
            result_data={"items": len(parsed.items)},
        )

    def _apply_header(
        self, session: Session, document: InboxDocument, parsed: ParsedInvoice,
    ) -> None:
        issuer = parsed.issuer
        document.number = parsed.number or document.number
        document.series = parsed.series or document.series
        document.issue_date = parsed.issue_date or document.issue_date
        document.nature_of_operation = parsed.nature_of_operation or None
        document.issuer_tax_id = issuer.tax_id or document.issuer_tax_id
        document.issuer_name = issuer.name or document.issuer_name
        document.issuer_trade_name = issuer.trade_name
        document.issuer_state_registration = (
            issuer.state_registration or document.issuer_state_registration
        )
        document.issuer_state = issuer.state or document.issuer_state
        document.issuer_tax_regime = issuer.tax_regime
        document.recipient_tax_id = parsed.recipient.tax_id or document.recipient_tax_id
        document.total_value = parsed.totals.total
        document.totals = parsed.totals.to_dict()
        document.transport = parsed.transport.to_dict() if parsed.transport else None
        document.installments = (
            [i.to_dict() for i in parsed.installments] if parsed.installments else None
        )
        document.additional_info = parsed.additional_info

        document.supplier_id = None
        if document.issuer_tax_id:
            document.supplier_id = session.execute(
                select(Supplier.id).where(
                    Supplier.tenant_id == document.tenant_id,
                    Supplier.tax_id == document.issuer_tax_id,
                    Supplier.is_active.is_(True),
                )
            ).scalar_one_or_none()

    def _replace_items(
        self, session: Session, document: InboxDocument, parsed: ParsedInvoice,
    ) -> None:
        # Deletes must reach the database before the re-inserts; the unit of
        # work would otherwise insert first and trip uq (document_id, line_number)
        document.items.clear()
        session.flush()

        for item in parsed.items:
            document.items.append(
                InboxLineItem(
                    tenant_id=document.tenant_id,
                    line_number=item.line_number,
                    supplier_code=item.supplier_code,
                    description=item.description,
                    classification_code=item.classification_code or None,
                    cest=item.cest,
                    cfop=item.cfop or None,
                    unit=item.unit or None,
                    identifier=item.identifier,
                    quantity=item.quantity,
                    unit_price=item.unit_price,
                    total_value=item.total_value,
                    discount=item.discount,
                    taxes=item.taxes or None,
                    match_status=MatchStatus.UNMATCHED.value,
                )
            )

        document.total_items = len(parsed.items)
        document.matched_items = 0
        document.pending_items = len(parsed.items)
