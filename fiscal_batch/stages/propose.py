"""
Stage generate_proposal: build and store the booking proposal.

The document becomes ``ready_to_book`` here even when lines are still
unmatched; the proposal's ``unmatched_lines`` tells the reviewer.
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy.orm import Session

from fiscal_engines.proposal import ProposalLine, build_booking_proposal
from fiscal_kernel.domain.types import DocumentStatus
from fiscal_kernel.logging_config import get_logger

from fiscal_batch.domain.types import QueueStage, QueueUnit, StageOutcome
from fiscal_batch.stages.base import load_document

logger = get_logger("batch.stages.propose")


class GenerateProposalStage:

    @property
    def stage(self) -> QueueStage:
        return QueueStage.PROPOSE

    @property
    def description(self) -> str:
        return "Generate the booking proposal"

    def handle(self, unit: QueueUnit, session: Session, as_of: datetime) -> StageOutcome:
        document = load_document(session, unit.tenant_id, unit.document_id)

        proposal = build_booking_proposal(
            document_id=document.id,
            kind=document.kind,
            supplier_tax_id=document.issuer_tax_id,
            supplier_name=document.issuer_name,
            supplier_id=document.supplier_id,
            lines=[
                ProposalLine(
                    line_item_id=line.id,
                    description=line.description,
                    product_id=line.product_id,
                    match_status=line.match_status,
                    quantity=line.quantity,
                    unit_price=line.unit_price,
                    total_value=line.total_value,
                )
                for line in document.items
            ],
            totals=document.totals,
            installments=document.installments,
            generated_at=as_of,
        )

        document.proposal = proposal.to_dict()
        document.status = DocumentStatus.READY_TO_BOOK.value
        session.flush()

        logger.info(
            "proposal_generated",
            extra={
                "document_id": str(document.id),
                "items": len(proposal.lines),
                "unmatched_lines": proposal.unmatched_lines,
            },
        )
        return StageOutcome(
            next_stage=None,
            result_data={"unmatched_lines": proposal.unmatched_lines},
        )
