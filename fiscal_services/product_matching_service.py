"""
ProductMatchingService -- store-backed product matching cascade.

Responsibility:
    Resolve a supplier's line (tax id, code, description, NCM, EAN) to an
    internal product through an ordered chain of strategies, and own the
    supplier product mappings ("de-para") the chain learns from.

Architecture position:
    Services -- stateful orchestration over engines + kernel.
    Uses ``fiscal_engines.matching`` for the pure similarity ranking.

Cascade (first confident outcome wins):
    1. SupplierCodeStrategy      active mapping by (tax id, code)   score 100
    2. IdentifierStrategy        active product by EAN               score 95
    3. ClassificationFuzzyStrategy  same-NCM products, similarity >= 70
    4. no match                  method ``manual``, best suggestion's score

Invariants enforced:
    - A mapping key (tenant, supplier tax id, supplier code) has one row.
      Upserts bump ``times_used``; a racing insert's IntegrityError is
      absorbed inside a SAVEPOINT and retried as an update.
    - Mappings are soft-disabled, never deleted.  Automatic upserts leave
      a disabled mapping disabled; only a manual link re-activates it.
    - Thresholds and limits are constructor parameters (config driven).

Non-goals:
    - Does NOT call ``session.commit()`` -- caller controls boundaries.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Protocol
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from fiscal_engines.matching import ItemToMatch, MatchResult, ProductCandidate, rank_candidates
from fiscal_ingestion.parsers.nfe_xml import NO_IDENTIFIER
from fiscal_kernel.db.base import SYSTEM_ACTOR_ID
from fiscal_kernel.domain.clock import Clock, SystemClock
from fiscal_kernel.domain.types import (
    DocumentStatus,
    LineItemInfo,
    MappingOrigin,
    MatchMethod,
    MatchStatus,
    MatchSuggestion,
    SupplierMappingInfo,
)
from fiscal_kernel.exceptions import (
    LineItemNotFoundError,
    MappingNotFoundError,
    ProductNotFoundError,
)
from fiscal_kernel.logging_config import get_logger
from fiscal_kernel.models.inbox_document import InboxLineItem
from fiscal_kernel.models.supplier_mapping import Product, SupplierProductMapping
from fiscal_kernel.services.auditor_service import AuditorService

if TYPE_CHECKING:
    from fiscal_config.schema import MatchingDef

logger = get_logger("services.product_matching")

SUPPLIER_CODE_SCORE = 100
IDENTIFIER_SCORE = 95
MANUAL_SCORE = 100
DEFAULT_FUZZY_THRESHOLD = 70
DEFAULT_CANDIDATE_LIMIT = 20
DEFAULT_SUGGESTION_LIMIT = 5


# =============================================================================
# Mapping persistence
# =============================================================================


def _find_mapping(
    session: Session,
    tenant_id: UUID,
    supplier_tax_id: str,
    supplier_code: str,
    active_only: bool = False,
) -> SupplierProductMapping | None:
    stmt = select(SupplierProductMapping).where(
        SupplierProductMapping.tenant_id == tenant_id,
        SupplierProductMapping.supplier_tax_id == supplier_tax_id,
        SupplierProductMapping.supplier_code == supplier_code,
    )
    if active_only:
        stmt = stmt.where(SupplierProductMapping.is_active.is_(True))
    return session.execute(stmt).scalar_one_or_none()


def upsert_mapping(
    session: Session,
    *,
    tenant_id: UUID,
    supplier_tax_id: str,
    supplier_code: str,
    product_id: UUID,
    origin: MappingOrigin,
    confidence: int,
    as_of: datetime,
    supplier_description: str | None = None,
    classification_code: str | None = None,
    identifier: str | None = None,
    unit: str | None = None,
    conversion_factor: Decimal | None = None,
    actor_id: UUID | None = None,
) -> SupplierProductMapping:
    """
    Insert or refresh the mapping for (tenant, supplier tax id, code).

    An existing row has its ``times_used`` bumped.  A disabled row is only
    re-pointed and re-activated when ``origin`` is manual.
    """

    def _refresh(existing: SupplierProductMapping) -> SupplierProductMapping:
        if not existing.is_active and origin != MappingOrigin.MANUAL:
            return existing
        existing.product_id = product_id
        existing.origin = origin.value
        existing.confidence = confidence
        existing.times_used += 1
        existing.last_used_at = as_of
        existing.is_active = True
        existing.supplier_description = supplier_description or existing.supplier_description
        existing.classification_code = classification_code or existing.classification_code
        existing.identifier = identifier or existing.identifier
        existing.unit = unit or existing.unit
        if conversion_factor is not None:
            existing.conversion_factor = conversion_factor
        existing.updated_by_id = actor_id or SYSTEM_ACTOR_ID
        session.flush()
        return existing

    existing = _find_mapping(session, tenant_id, supplier_tax_id, supplier_code)
    if existing is not None:
        return _refresh(existing)

    savepoint = session.begin_nested()
    try:
        mapping = SupplierProductMapping(
            tenant_id=tenant_id,
            supplier_tax_id=supplier_tax_id,
            supplier_code=supplier_code,
            supplier_description=supplier_description,
            classification_code=classification_code,
            identifier=identifier,
            product_id=product_id,
            origin=origin.value,
            confidence=confidence,
            times_used=1,
            last_used_at=as_of,
            conversion_factor=conversion_factor or Decimal("1"),
            unit=unit,
            is_active=True,
            created_by_id=actor_id or SYSTEM_ACTOR_ID,
        )
        session.add(mapping)
        session.flush()
        savepoint.commit()
    except IntegrityError:
        savepoint.rollback()
        logger.info(
            "mapping_insert_raced",
            extra={"supplier_tax_id": supplier_tax_id, "supplier_code": supplier_code},
        )
        existing = _find_mapping(session, tenant_id, supplier_tax_id, supplier_code)
        if existing is None:
            raise
        return _refresh(existing)

    logger.info(
        "mapping_saved",
        extra={
            "mapping_id": str(mapping.id),
            "supplier_tax_id": supplier_tax_id,
            "supplier_code": supplier_code,
            "origin": origin.value,
            "confidence": confidence,
        },
    )
    return mapping


# =============================================================================
# Strategies
# =============================================================================


@dataclass(frozen=True)
class StrategyOutcome:
    """Either a confident result, or no opinion plus optional suggestions."""

    result: MatchResult | None = None
    suggestions: tuple[MatchSuggestion, ...] = ()

    @property
    def is_confident(self) -> bool:
        return self.result is not None


class MatchStrategy(Protocol):
    """One step of the cascade."""

    @property
    def name(self) -> str: ...

    def apply(self, tenant_id: UUID, item: ItemToMatch, as_of: datetime) -> StrategyOutcome: ...


class SupplierCodeStrategy:
    """A learned mapping for the supplier's own code."""

    name = "supplier_code"

    def __init__(self, session: Session):
        self._session = session

    def apply(self, tenant_id: UUID, item: ItemToMatch, as_of: datetime) -> StrategyOutcome:
        if not item.supplier_tax_id or not item.supplier_code:
            return StrategyOutcome()
        mapping = _find_mapping(
            self._session, tenant_id, item.supplier_tax_id, item.supplier_code,
            active_only=True,
        )
        if mapping is None:
            return StrategyOutcome()

        mapping.times_used += 1
        mapping.last_used_at = as_of
        self._session.flush()
        return StrategyOutcome(
            result=MatchResult(
                product_id=mapping.product_id,
                method=MatchMethod.SUPPLIER_CODE,
                score=SUPPLIER_CODE_SCORE,
            )
        )


class IdentifierStrategy:
    """An active product carrying the line's EAN/GTIN."""

    name = "identifier"

    def __init__(self, session: Session):
        self._session = session

    def apply(self, tenant_id: UUID, item: ItemToMatch, as_of: datetime) -> StrategyOutcome:
        identifier = (item.identifier or "").strip()
        if not identifier or identifier.upper() == NO_IDENTIFIER:
            return StrategyOutcome()

        product = self._session.execute(
            select(Product)
            .where(
                Product.tenant_id == tenant_id,
                Product.identifier == identifier,
                Product.is_active.is_(True),
            )
            .order_by(Product.name)
            .limit(1)
        ).scalar_one_or_none()
        if product is None:
            return StrategyOutcome()

        if item.supplier_tax_id and item.supplier_code:
            upsert_mapping(
                self._session,
                tenant_id=tenant_id,
                supplier_tax_id=item.supplier_tax_id,
                supplier_code=item.supplier_code,
                product_id=product.id,
                origin=MappingOrigin.IDENTIFIER,
                confidence=IDENTIFIER_SCORE,
                as_of=as_of,
                supplier_description=item.description,
                classification_code=item.classification_code,
                identifier=identifier,
            )
        return StrategyOutcome(
            result=MatchResult(
                product_id=product.id,
                method=MatchMethod.IDENTIFIER,
                score=IDENTIFIER_SCORE,
            )
        )


class ClassificationFuzzyStrategy:
    """
    Description similarity among active products of the same NCM.

    Accepts the best candidate at or above ``threshold``; below it, offers
    the top ``suggestion_limit`` candidates without an opinion.
    """

    name = "classification_fuzzy"

    def __init__(
        self,
        session: Session,
        threshold: int = DEFAULT_FUZZY_THRESHOLD,
        candidate_limit: int = DEFAULT_CANDIDATE_LIMIT,
        suggestion_limit: int = DEFAULT_SUGGESTION_LIMIT,
    ):
        self._session = session
        self._threshold = threshold
        self._candidate_limit = candidate_limit
        self._suggestion_limit = suggestion_limit

    @property
    def threshold(self) -> int:
        return self._threshold

    def apply(self, tenant_id: UUID, item: ItemToMatch, as_of: datetime) -> StrategyOutcome:
        if not item.classification_code:
            return StrategyOutcome()

        products = self._session.execute(
            select(Product)
            .where(
                Product.tenant_id == tenant_id,
                Product.classification_code == item.classification_code,
                Product.is_active.is_(True),
            )
            .order_by(Product.name, Product.id)
            .limit(self._candidate_limit)
        ).scalars().all()
        if not products:
            return StrategyOutcome()

        ranked = rank_candidates(
            description=item.description,
            classification_code=item.classification_code,
            candidates=[ProductCandidate(p.id, p.name) for p in products],
            limit=self._suggestion_limit,
        )
        best = ranked[0]
        if best.score < self._threshold:
            return StrategyOutcome(suggestions=ranked)

        if item.supplier_tax_id and item.supplier_code:
            upsert_mapping(
                self._session,
                tenant_id=tenant_id,
                supplier_tax_id=item.supplier_tax_id,
                supplier_code=item.supplier_code,
                product_id=best.product_id,
                origin=MappingOrigin.FUZZY,
                confidence=best.score,
                as_of=as_of,
                supplier_description=item.description,
                classification_code=item.classification_code,
                identifier=item.identifier,
            )
        return StrategyOutcome(
            result=MatchResult(
                product_id=best.product_id,
                method=MatchMethod.FUZZY,
                score=best.score,
            )
        )


# =============================================================================
# Service
# =============================================================================


class ProductMatchingService:
    """
    Matching cascade plus the manual operations on lines and mappings.

    Contract:
        ``match()`` never raises for "no match"; it returns a MatchResult
        with ``product_id=None``.  Manual operations raise typed
        MatchingError subclasses before any mutation.
    """

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        auditor_service: AuditorService | None = None,
        strategies: list[MatchStrategy] | None = None,
    ):
        self._session = session
        self._clock = clock or SystemClock()
        self._auditor = auditor_service
        self._strategies: list[MatchStrategy] = (
            strategies if strategies is not None else default_strategies(session)
        )

    @classmethod
    def from_session(
        cls,
        session: Session,
        clock: Clock | None = None,
        matching: MatchingDef | None = None,
    ) -> ProductMatchingService:
        effective_clock = clock or SystemClock()
        if matching is None:
            strategies = default_strategies(session)
        else:
            strategies = default_strategies(
                session,
                fuzzy_threshold=matching.fuzzy_threshold,
                candidate_limit=matching.candidate_limit,
                suggestion_limit=matching.suggestion_limit,
            )
        return cls(
            session=session,
            clock=effective_clock,
            auditor_service=AuditorService(session, clock=effective_clock),
            strategies=strategies,
        )

    @property
    def strategies(self) -> tuple[MatchStrategy, ...]:
        return tuple(self._strategies)

    # -------------------------------------------------------------------------
    # Cascade
    # -------------------------------------------------------------------------

    def match(self, tenant_id: UUID, item: ItemToMatch) -> MatchResult:
        as_of = self._clock.now()
        suggestions: tuple[MatchSuggestion, ...] = ()

        for strategy in self._strategies:
            outcome = strategy.apply(tenant_id, item, as_of)
            if outcome.is_confident:
                logger.debug(
                    "line_matched",
                    extra={
                        "supplier_code": item.supplier_code,
                        "strategy": strategy.name,
                        "product_id": str(outcome.result.product_id),
                        "score": outcome.result.score,
                    },
                )
                return outcome.result
            if outcome.suggestions and not suggestions:
                suggestions = outcome.suggestions

        best = suggestions[0].score if suggestions else 0
        logger.debug(
            "line_unmatched",
            extra={
                "supplier_code": item.supplier_code,
                "suggestions": len(suggestions),
                "best_score": best,
            },
        )
        return MatchResult(
            product_id=None,
            method=MatchMethod.MANUAL,
            score=best,
            suggestions=suggestions,
        )

    # -------------------------------------------------------------------------
    # Mappings
    # -------------------------------------------------------------------------

    def save_mapping(
        self,
        tenant_id: UUID,
        supplier_tax_id: str,
        supplier_code: str,
        product_id: UUID,
        origin: MappingOrigin = MappingOrigin.MANUAL,
        confidence: int = MANUAL_SCORE,
        supplier_description: str | None = None,
        classification_code: str | None = None,
        identifier: str | None = None,
        unit: str | None = None,
        conversion_factor: Decimal | None = None,
        actor_id: UUID | None = None,
    ) -> SupplierMappingInfo:
        mapping = upsert_mapping(
            self._session,
            tenant_id=tenant_id,
            supplier_tax_id=supplier_tax_id,
            supplier_code=supplier_code,
            product_id=product_id,
            origin=origin,
            confidence=confidence,
            as_of=self._clock.now(),
            supplier_description=supplier_description,
            classification_code=classification_code,
            identifier=identifier,
            unit=unit,
            conversion_factor=conversion_factor,
            actor_id=actor_id,
        )
        return mapping.to_dto()

    def list_supplier_mappings(
        self,
        tenant_id: UUID,
        supplier_tax_id: str | None = None,
        include_inactive: bool = False,
    ) -> list[SupplierMappingInfo]:
        """Mappings ordered by ``times_used`` descending."""
        stmt = (
            select(SupplierProductMapping)
            .where(SupplierProductMapping.tenant_id == tenant_id)
            .order_by(
                SupplierProductMapping.times_used.desc(),
                SupplierProductMapping.supplier_code,
            )
        )
        if supplier_tax_id is not None:
            stmt = stmt.where(SupplierProductMapping.supplier_tax_id == supplier_tax_id)
        if not include_inactive:
            stmt = stmt.where(SupplierProductMapping.is_active.is_(True))
        return [m.to_dto() for m in self._session.execute(stmt).scalars().all()]

    def disable_mapping(
        self,
        tenant_id: UUID,
        mapping_id: UUID,
        actor_id: UUID | None = None,
    ) -> SupplierMappingInfo:
        mapping = self._session.execute(
            select(SupplierProductMapping).where(
                SupplierProductMapping.id == mapping_id,
                SupplierProductMapping.tenant_id == tenant_id,
            )
        ).scalar_one_or_none()
        if mapping is None:
            raise MappingNotFoundError(str(mapping_id))

        mapping.is_active = False
        mapping.updated_by_id = actor_id or SYSTEM_ACTOR_ID
        self._session.flush()

        if self._auditor:
            self._auditor.record_mapping_disabled(tenant_id, mapping.id, actor_id)
        logger.info("mapping_disabled", extra={"mapping_id": str(mapping_id)})
        return mapping.to_dto()

    # -------------------------------------------------------------------------
    # Manual link
    # -------------------------------------------------------------------------

    def link_line_item(
        self,
        tenant_id: UUID,
        line_item_id: UUID,
        product_id: UUID,
        actor_id: UUID | None = None,
    ) -> LineItemInfo:
        """
        Manually assign ``product_id`` to a line and learn the mapping.

        Postconditions:
            - The line is ``matched`` with score 100, method ``manual``.
            - A manual mapping (confidence 100) exists for the line's
              supplier code.
            - The document's counts are recomputed; a ``pending_matching``
              document with nothing left pending becomes ``ready_to_book``.

        Raises:
            LineItemNotFoundError: Unknown line for this tenant.
            ProductNotFoundError: Unknown or inactive product.
        """
        line = self._session.execute(
            select(InboxLineItem).where(
                InboxLineItem.id == line_item_id,
                InboxLineItem.tenant_id == tenant_id,
            )
        ).scalar_one_or_none()
        if line is None:
            raise LineItemNotFoundError(str(line_item_id))

        product = self._session.execute(
            select(Product).where(
                Product.id == product_id,
                Product.tenant_id == tenant_id,
                Product.is_active.is_(True),
            )
        ).scalar_one_or_none()
        if product is None:
            raise ProductNotFoundError(str(product_id))

        document = line.document
        previous_product_id = line.product_id

        if document.issuer_tax_id:
            upsert_mapping(
                self._session,
                tenant_id=tenant_id,
                supplier_tax_id=document.issuer_tax_id,
                supplier_code=line.supplier_code,
                product_id=product.id,
                origin=MappingOrigin.MANUAL,
                confidence=MANUAL_SCORE,
                as_of=self._clock.now(),
                supplier_description=line.description,
                classification_code=line.classification_code,
                identifier=line.identifier,
                unit=line.unit,
                actor_id=actor_id,
            )

        line.product_id = product.id
        line.match_status = MatchStatus.MATCHED.value
        line.match_score = MANUAL_SCORE
        line.match_method = MatchMethod.MANUAL.value
        line.suggestions = None
        line.updated_by_id = actor_id or SYSTEM_ACTOR_ID

        matched = sum(
            1 for item in document.items if item.match_status == MatchStatus.MATCHED.value
        )
        document.total_items = len(document.items)
        document.matched_items = matched
        document.pending_items = document.total_items - matched
        if (
            document.pending_items == 0
            and document.status == DocumentStatus.PENDING_MATCHING.value
        ):
            document.status = DocumentStatus.READY_TO_BOOK.value
        self._session.flush()

        if self._auditor:
            self._auditor.record_line_item_linked(
                tenant_id,
                line.id,
                product.id,
                actor_id,
                previous_product_id=previous_product_id,
            )
        logger.info(
            "line_item_linked",
            extra={
                "line_item_id": str(line.id),
                "document_id": str(document.id),
                "product_id": str(product.id),
                "pending_items": document.pending_items,
            },
        )
        return line.to_dto()


def default_strategies(
    session: Session,
    fuzzy_threshold: int = DEFAULT_FUZZY_THRESHOLD,
    candidate_limit: int = DEFAULT_CANDIDATE_LIMIT,
    suggestion_limit: int = DEFAULT_SUGGESTION_LIMIT,
) -> list[MatchStrategy]:
    """The standard cascade, in precedence order."""
    return [
        SupplierCodeStrategy(session),
        IdentifierStrategy(session),
        ClassificationFuzzyStrategy(
            session,
            threshold=fuzzy_threshold,
            candidate_limit=candidate_limit,
            suggestion_limit=suggestion_limit,
        ),
    ]
