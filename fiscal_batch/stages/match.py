"""
Stage match_products: run every line of a parsed document through the
product-matching cascade.
"""

from __future__ import annotations

from datetime import datetime
from typing import Protocol
from uuid import UUID

from sqlalchemy.orm import Session

from fiscal_engines.matching import ItemToMatch, MatchResult
from fiscal_kernel.domain.types import DocumentStatus, MatchStatus
from fiscal_kernel.logging_config import get_logger

from fiscal_batch.domain.types import QueueStage, QueueUnit, StageOutcome
from fiscal_batch.stages.base import load_document

logger = get_logger("batch.stages.match")


class ProductMatcher(Protocol):
    """Anything that can resolve one supplier line to a product."""

    def match(self, tenant_id: UUID, item: ItemToMatch) -> MatchResult: ...


class MatchProductsStage:
    """
    Applies the matcher to each unmatched line in line order.

    Lines already ``matched`` (manual link, earlier run) are counted and
    left untouched.  The document ends ``ready_to_book`` when no line is
    pending, ``pending_matching`` otherwise.  Always hands off to
    generate_proposal.
    """

    def __init__(self, matcher: ProductMatcher):
        self._matcher = matcher

    @property
    def stage(self) -> QueueStage:
        return QueueStage.MATCH

    @property
    def description(self) -> str:
        return "Match document lines to internal products"

    def handle(self, unit: QueueUnit, session: Session, as_of: datetime) -> StageOutcome:
        document = load_document(session, unit.tenant_id, unit.document_id)
        supplier_tax_id = unit.payload.get("supplier_tax_id") or document.issuer_tax_id or ""

        matched = 0
        suggested = 0
        for line in document.items:
            if line.match_status == MatchStatus.MATCHED.value:
                matched += 1
                continue

            result = self._matcher.match(
                unit.tenant_id,
                ItemToMatch(
                    supplier_tax_id=supplier_tax_id,
                    supplier_code=line.supplier_code,
                    description=line.description,
                    classification_code=line.classification_code,
                    identifier=line.identifier,
                ),
            )
            line.match_score = result.score
            line.match_method = result.method.value
            line.suggestions = [s.to_dict() for s in result.suggestions] or None
            if result.is_match:
                line.product_id = result.product_id
                line.match_status = MatchStatus.MATCHED.value
                matched += 1
            elif result.suggestions:
                line.product_id = None
                line.match_status = MatchStatus.SUGGESTION.value
                suggested += 1
            else:
                line.product_id = None
                line.match_status = MatchStatus.UNMATCHED.value

        total = len(document.items)
        document.total_items = total
        document.matched_items = matched
        document.pending_items = total - matched
        document.status = (
            DocumentStatus.READY_TO_BOOK.value
            if document.pending_items == 0
            else DocumentStatus.PENDING_MATCHING.value
        )
        session.flush()

        logger.info(
            "products_matched",
            extra={
                "document_id": str(document.id),
                "total_items": total,
                "matched_items": matched,
                "suggested_items": suggested,
                "status": document.status,
            },
        )
        return StageOutcome(
            next_stage=QueueStage.PROPOSE,
            result_data={
                "matched_items": matched,
                "pending_items": document.pending_items,
            },
        )
