"""
Tests for ProductMatchingService.

Covers:
- Cascade precedence: supplier code > identifier > fuzzy > none
- Fuzzy threshold boundary (70 accepts, 69 suggests)
- Mapping learning, soft-disable and manual re-activation
- Manual line linking and the document counters it recomputes
"""

from uuid import uuid4

import pytest

from fiscal_batch.orchestrator import PipelineOrchestrator
from fiscal_config.schema import MatchingDef
from fiscal_engines.matching import ItemToMatch
from fiscal_kernel.domain.types import (
    CaptureOrigin,
    DocumentStatus,
    MappingOrigin,
    MatchMethod,
    MatchStatus,
)
from fiscal_kernel.exceptions import (
    LineItemNotFoundError,
    MappingNotFoundError,
    ProductNotFoundError,
)
from fiscal_kernel.models.audit_event import AuditAction
from fiscal_kernel.models.supplier_mapping import Product
from fiscal_kernel.services.auditor_service import AuditorService
from fiscal_ingestion.services.intake_service import DocumentAdmission, IntakeService
from fiscal_services.product_matching_service import (
    ClassificationFuzzyStrategy,
    IdentifierStrategy,
    ProductMatchingService,
    SupplierCodeStrategy,
)

SUPPLIER = "12345678000195"
NCM = "73181500"
EAN = "7891234567895"


@pytest.fixture
def matcher(session, clock):
    return ProductMatchingService.from_session(session, clock=clock)


@pytest.fixture
def product(session, tenant_id):
    def _product(name, ncm=NCM, identifier=None, is_active=True):
        row = Product(
            tenant_id=tenant_id, name=name, classification_code=ncm,
            identifier=identifier, is_active=is_active,
        )
        session.add(row)
        session.flush()
        return row

    return _product


def _item(description="PARAFUSO SEXTAVADO 10MM", code="P-001", ncm=NCM, identifier=None):
    return ItemToMatch(
        supplier_tax_id=SUPPLIER,
        supplier_code=code,
        description=description,
        classification_code=ncm,
        identifier=identifier,
    )


class TestCascadePrecedence:
    def test_default_strategy_order(self, matcher):
        assert [type(s) for s in matcher.strategies] == [
            SupplierCodeStrategy, IdentifierStrategy, ClassificationFuzzyStrategy,
        ]

    def test_supplier_code_beats_identifier(self, matcher, product, tenant_id):
        mapped = product("MAPPED PRODUCT", ncm="00000000")
        product("BY EAN", identifier=EAN)
        matcher.save_mapping(tenant_id, SUPPLIER, "P-001", mapped.id)

        result = matcher.match(tenant_id, _item(identifier=EAN))

        assert result.product_id == mapped.id
        assert result.method == MatchMethod.SUPPLIER_CODE
        assert result.score == 100

    def test_identifier_beats_fuzzy(self, matcher, product, tenant_id):
        by_ean = product("SOMETHING ELSE", identifier=EAN)
        product("PARAFUSO SEXTAVADO 10MM")

        result = matcher.match(tenant_id, _item(identifier=EAN))

        assert result.product_id == by_ean.id
        assert result.method == MatchMethod.IDENTIFIER
        assert result.score == 95

    def test_no_gtin_placeholder_skips_identifier(self, matcher, product, tenant_id):
        product("SEM GTIN PRODUCT", ncm="00000000", identifier="SEM GTIN")

        result = matcher.match(tenant_id, _item(identifier="SEM GTIN"))

        assert result.product_id is None

    def test_fuzzy_match(self, matcher, product, tenant_id):
        screw = product("PARAFUSO SEXTAVADO 10MM")

        result = matcher.match(tenant_id, _item())

        assert result.product_id == screw.id
        assert result.method == MatchMethod.FUZZY
        assert result.score == 100

    def test_fuzzy_only_within_same_ncm(self, matcher, product, tenant_id):
        product("PARAFUSO SEXTAVADO 10MM", ncm="84099190")

        result = matcher.match(tenant_id, _item())

        assert result.product_id is None
        assert result.suggestions == ()
        assert result.method == MatchMethod.MANUAL
        assert result.score == 0

    def test_inactive_products_ignored(self, matcher, product, tenant_id):
        product("PARAFUSO SEXTAVADO 10MM", identifier=EAN, is_active=False)

        assert matcher.match(tenant_id, _item(identifier=EAN)).product_id is None

    def test_other_tenant_invisible(self, matcher, product):
        product("PARAFUSO SEXTAVADO 10MM")

        assert matcher.match(uuid4(), _item()).product_id is None


class TestFuzzyThreshold:
    def test_score_70_accepted(self, matcher, product, tenant_id):
        candidate = product("abcdefghijklmnXXXXXX")

        result = matcher.match(tenant_id, _item(description="abcdefghijklmnopqrst"))

        assert result.product_id == candidate.id
        assert result.score == 70

    def test_score_69_only_suggested(self, matcher, product, tenant_id):
        candidate = product("abcdefghijklmnopqrXXXXXXXX")

        result = matcher.match(tenant_id, _item(description="abcdefghijklmnopqrst"))

        assert result.product_id is None
        assert result.method == MatchMethod.MANUAL
        assert result.score == 69
        assert [s.product_id for s in result.suggestions] == [candidate.id]

    def test_suggestion_limit(self, session, clock, product, tenant_id):
        for n in range(8):
            product(f"ARRUELA {n}")

        matcher = ProductMatchingService.from_session(
            session, clock=clock, matching=MatchingDef(suggestion_limit=3),
        )

        result = matcher.match(tenant_id, _item())

        assert len(result.suggestions) == 3


class TestMappingLearning:
    def test_identifier_match_learns_mapping(self, matcher, product, tenant_id):
        by_ean = product("BY EAN", identifier=EAN)

        matcher.match(tenant_id, _item(identifier=EAN))

        (mapping,) = matcher.list_supplier_mappings(tenant_id)
        assert mapping.product_id == by_ean.id
        assert mapping.origin == MappingOrigin.IDENTIFIER.value
        assert mapping.confidence == 95
        assert mapping.identifier == EAN

    def test_fuzzy_match_learns_mapping(self, matcher, product, tenant_id):
        screw = product("PARAFUSO SEXTAVADO 10MM")

        matcher.match(tenant_id, _item())
        second = matcher.match(tenant_id, _item())

        assert second.method == MatchMethod.SUPPLIER_CODE
        (mapping,) = matcher.list_supplier_mappings(tenant_id)
        assert mapping.product_id == screw.id
        assert mapping.origin == MappingOrigin.FUZZY.value
        assert mapping.times_used == 2

    def test_suggestion_learns_nothing(self, matcher, product, tenant_id):
        product("ARRUELA LISA")

        matcher.match(tenant_id, _item())

        assert matcher.list_supplier_mappings(tenant_id) == []

    def test_save_mapping_upserts(self, matcher, product, tenant_id):
        first = product("FIRST", ncm="00000000")
        second = product("SECOND", ncm="00000000")

        created = matcher.save_mapping(tenant_id, SUPPLIER, "P-001", first.id)
        updated = matcher.save_mapping(tenant_id, SUPPLIER, "P-001", second.id)

        assert updated.mapping_id == created.mapping_id
        assert updated.product_id == second.id
        assert updated.times_used == 2
        assert len(matcher.list_supplier_mappings(tenant_id)) == 1


class TestDisableMapping:
    def test_disabled_mapping_not_used(self, matcher, product, tenant_id):
        mapped = product("MAPPED", ncm="00000000")
        info = matcher.save_mapping(tenant_id, SUPPLIER, "P-001", mapped.id)

        disabled = matcher.disable_mapping(tenant_id, info.mapping_id)

        assert disabled.is_active is False
        assert matcher.match(tenant_id, _item()).product_id is None
        assert matcher.list_supplier_mappings(tenant_id) == []
        assert len(matcher.list_supplier_mappings(tenant_id, include_inactive=True)) == 1

    def test_automatic_match_keeps_mapping_disabled(self, matcher, product, tenant_id):
        screw = product("PARAFUSO SEXTAVADO 10MM")
        matcher.match(tenant_id, _item())
        (info,) = matcher.list_supplier_mappings(tenant_id)
        matcher.disable_mapping(tenant_id, info.mapping_id)

        result = matcher.match(tenant_id, _item())

        assert result.method == MatchMethod.FUZZY
        assert result.product_id == screw.id
        (still,) = matcher.list_supplier_mappings(tenant_id, include_inactive=True)
        assert still.is_active is False
        assert still.times_used == 1

    def test_manual_mapping_reactivates(self, matcher, product, tenant_id):
        mapped = product("MAPPED", ncm="00000000")
        info = matcher.save_mapping(tenant_id, SUPPLIER, "P-001", mapped.id)
        matcher.disable_mapping(tenant_id, info.mapping_id)

        again = matcher.save_mapping(tenant_id, SUPPLIER, "P-001", mapped.id)

        assert again.is_active is True
        assert matcher.match(tenant_id, _item()).method == MatchMethod.SUPPLIER_CODE

    def test_unknown_mapping(self, matcher, tenant_id):
        with pytest.raises(MappingNotFoundError):
            matcher.disable_mapping(tenant_id, uuid4())

    def test_disable_is_audited(self, session, clock, product, tenant_id):
        matcher = ProductMatchingService.from_session(session, clock=clock)
        mapped = product("MAPPED", ncm="00000000")
        info = matcher.save_mapping(tenant_id, SUPPLIER, "P-001", mapped.id)
        actor = uuid4()

        matcher.disable_mapping(tenant_id, info.mapping_id, actor_id=actor)

        (event,) = AuditorService(session, clock=clock).get_trail(tenant_id, info.mapping_id)
        assert event.action == AuditAction.MAPPING_DISABLED.value


class TestListMappings:
    def test_ordered_by_usage(self, matcher, product, tenant_id):
        target = product("TARGET", ncm="00000000")
        matcher.save_mapping(tenant_id, SUPPLIER, "B", target.id)
        matcher.save_mapping(tenant_id, SUPPLIER, "A", target.id)
        for _ in range(2):
            matcher.save_mapping(tenant_id, SUPPLIER, "C", target.id)

        codes = [m.supplier_code for m in matcher.list_supplier_mappings(tenant_id)]

        assert codes == ["C", "A", "B"]

    def test_filter_by_supplier(self, matcher, product, tenant_id):
        target = product("TARGET", ncm="00000000")
        matcher.save_mapping(tenant_id, SUPPLIER, "A", target.id)
        matcher.save_mapping(tenant_id, "98765432000198", "A", target.id)

        mappings = matcher.list_supplier_mappings(tenant_id, supplier_tax_id="98765432000198")

        assert [m.supplier_tax_id for m in mappings] == ["98765432000198"]


@pytest.fixture
def pending_document(session, clock, tenant_id, access_key, nfe_xml):
    """A parsed and matched document whose two lines found nothing."""
    orchestrator = PipelineOrchestrator.from_session(session, clock=clock)
    document = IntakeService(
        session, clock=clock, queue_service=orchestrator.create_queue_service(),
    ).admit(
        tenant_id,
        DocumentAdmission(
            access_key=access_key(1),
            origin=CaptureOrigin.MANUAL_IMPORT,
            raw_payload=nfe_xml(access_key(1), items=[
                {"code": "A1", "description": "CHAPA ACO", "ncm": "72085200"},
                {"code": "B2", "description": "TINTA EPOXI", "ncm": "32089010"},
            ]),
        ),
    )
    processor = orchestrator.create_processor()
    processor.process_queue(tenant_id)
    processor.process_queue(tenant_id)
    assert document.status == DocumentStatus.PENDING_MATCHING.value
    return document


class TestLinkLineItem:
    def test_link_marks_line_matched_and_learns(self, matcher, product, pending_document, tenant_id):
        steel = product("CHAPA DE ACO", ncm="72085200")
        line = pending_document.items[0]

        info = matcher.link_line_item(tenant_id, line.id, steel.id)

        assert info.product_id == steel.id
        assert info.match_status == MatchStatus.MATCHED.value
        assert info.match_score == 100
        assert info.match_method == MatchMethod.MANUAL.value
        assert info.suggestions == ()
        (mapping,) = matcher.list_supplier_mappings(tenant_id)
        assert mapping.supplier_code == "A1"
        assert mapping.origin == MappingOrigin.MANUAL.value
        assert pending_document.matched_items == 1
        assert pending_document.pending_items == 1
        assert pending_document.status == DocumentStatus.PENDING_MATCHING.value

    def test_last_link_makes_document_ready(self, matcher, product, pending_document, tenant_id):
        steel = product("CHAPA DE ACO", ncm="72085200")
        paint = product("TINTA", ncm="32089010")

        matcher.link_line_item(tenant_id, pending_document.items[0].id, steel.id)
        matcher.link_line_item(tenant_id, pending_document.items[1].id, paint.id)

        assert pending_document.pending_items == 0
        assert pending_document.status == DocumentStatus.READY_TO_BOOK.value

    def test_relink_is_audited_with_previous_product(
        self, session, clock, product, pending_document, tenant_id,
    ):
        matcher = ProductMatchingService.from_session(session, clock=clock)
        first = product("FIRST", ncm="72085200")
        second = product("SECOND", ncm="72085200")
        line = pending_document.items[0]

        matcher.link_line_item(tenant_id, line.id, first.id)
        matcher.link_line_item(tenant_id, line.id, second.id)

        trail = AuditorService(session, clock=clock).get_trail(tenant_id, line.id)
        assert [e.action for e in trail] == [AuditAction.LINE_ITEM_LINKED.value] * 2
        (mapping,) = matcher.list_supplier_mappings(tenant_id)
        assert mapping.product_id == second.id

    def test_unknown_line(self, matcher, product, tenant_id):
        target = product("TARGET")
        with pytest.raises(LineItemNotFoundError):
            matcher.link_line_item(tenant_id, uuid4(), target.id)

    def test_unknown_product(self, matcher, pending_document, tenant_id):
        with pytest.raises(ProductNotFoundError):
            matcher.link_line_item(tenant_id, pending_document.items[0].id, uuid4())

    def test_inactive_product_rejected(self, matcher, product, pending_document, tenant_id):
        retired = product("RETIRED", is_active=False)
        line = pending_document.items[0]

        with pytest.raises(ProductNotFoundError):
            matcher.link_line_item(tenant_id, line.id, retired.id)
        assert line.match_status == MatchStatus.UNMATCHED.value

    def test_other_tenant_line_invisible(self, matcher, session, pending_document):
        other_tenant = uuid4()
        foreign = Product(tenant_id=other_tenant, name="X", classification_code=NCM)
        session.add(foreign)
        session.flush()

        with pytest.raises(LineItemNotFoundError):
            matcher.link_line_item(other_tenant, pending_document.items[0].id, foreign.id)
