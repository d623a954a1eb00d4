"""
Tests for FiscalInboxService, the facade callers use.

Covers:
- Wiring from a configuration (secret from the environment)
- Collect -> process -> ready_to_book end to end
- Manual import conflicts, acknowledgment, queries and summary
- Filtered, paginated document listing
"""

from datetime import UTC, datetime
from uuid import uuid4

import pytest

from fiscal_config.loader import parse_configuration
from fiscal_kernel.domain.types import AcknowledgmentKind, DocumentStatus
from fiscal_kernel.exceptions import (
    ConfigurationError,
    DocumentAlreadyExistsError,
    DocumentNotFoundError,
    InvalidTaxIdError,
)
from fiscal_kernel.models.inbox_document import InboxDocument
from fiscal_kernel.models.supplier_mapping import Product
from fiscal_services.inbox_service import FiscalInboxService

RECIPIENT = "11222333000181"


@pytest.fixture
def config():
    return parse_configuration(
        {
            "config_id": "inbox-tests",
            "distribution_api": {
                "base_url": "https://api.test",
                "token_url": "https://auth.test/oauth/token",
                "client_id": "inbox-tests",
                "page_size": 2,
            },
            "retry": {"max_retries": 1, "base_delay_seconds": 0, "max_delay_seconds": 0},
            "circuit_breaker": {"failure_threshold": 3, "recovery_seconds": 30},
        }
    )


@pytest.fixture
def inbox(session, clock, config, http_client, circuit_registry, monkeypatch):
    monkeypatch.setenv("FISCAL_INBOX_CLIENT_SECRET", "s3cret")
    service = FiscalInboxService.from_session(
        session, config, clock=clock, http_client=http_client,
        circuit_registry=circuit_registry,
    )
    yield service
    service.close()


def _drain(inbox, tenant_id):
    return [inbox.process_queue(tenant_id) for _ in range(3)]


class TestFromSession:
    def test_missing_secret(self, session, config, monkeypatch):
        monkeypatch.delenv("FISCAL_INBOX_CLIENT_SECRET", raising=False)
        with pytest.raises(ConfigurationError, match="FISCAL_INBOX_CLIENT_SECRET"):
            FiscalInboxService.from_session(session, config)

    def test_circuit_settings_applied(self, inbox, circuit_registry):
        assert circuit_registry.failure_threshold == 3
        assert circuit_registry.recovery_seconds == 30


class TestEndToEnd:
    def test_collect_then_process(self, inbox, session, fake_api, tenant_id, access_key, nfe_xml):
        session.add(Product(
            tenant_id=tenant_id, name="PARAFUSO SEXTAVADO 10MM", classification_code="73181500",
        ))
        session.flush()
        for number in (1, 2, 3):
            fake_api.add_document(access_key(number), payload=nfe_xml(access_key(number)))

        collected = inbox.collect(tenant_id, RECIPIENT)
        runs = _drain(inbox, tenant_id)

        assert collected.success
        assert collected.new_documents == 3
        assert len(fake_api.calls("list")) == 2
        assert [r.processed for r in runs] == [3, 3, 3]

        summary = inbox.inbox_summary(tenant_id)
        assert summary.documents[DocumentStatus.READY_TO_BOOK.value] == 3
        assert summary.total_documents == 3
        assert summary.queue["done"] == 9

    def test_second_collection_skips_known(self, inbox, fake_api, tenant_id, access_key, nfe_xml):
        fake_api.add_document(access_key(1), payload=nfe_xml(access_key(1)))
        inbox.collect(tenant_id, RECIPIENT)

        again = inbox.collect(tenant_id, RECIPIENT)

        assert again.new_documents == 0
        assert again.skipped_documents == 1
        assert again.success


class TestManualImport:
    def test_import_and_query(self, inbox, tenant_id, access_key, nfe_xml):
        info = inbox.manual_import(tenant_id, nfe_xml(access_key(7)))

        fetched = inbox.get_document(tenant_id, info.document_id)

        assert fetched.access_key == access_key(7)
        assert fetched.origin == "manual_import"
        assert fetched.status == DocumentStatus.PENDING.value

    def test_duplicate_import_conflict(self, inbox, tenant_id, access_key, nfe_xml):
        first = inbox.manual_import(tenant_id, nfe_xml(access_key(7)))

        with pytest.raises(DocumentAlreadyExistsError) as exc_info:
            inbox.manual_import(tenant_id, nfe_xml(access_key(7)))
        assert str(first.document_id) in str(exc_info.value)

    def test_unknown_document(self, inbox, tenant_id):
        with pytest.raises(DocumentNotFoundError):
            inbox.get_document(tenant_id, uuid4())

    def test_documents_scoped_by_tenant(self, inbox, tenant_id, access_key, nfe_xml):
        info = inbox.manual_import(tenant_id, nfe_xml(access_key(7)))
        with pytest.raises(DocumentNotFoundError):
            inbox.get_document(uuid4(), info.document_id)


class TestAcknowledge:
    def test_acknowledge_updates_document(self, inbox, fake_api, tenant_id, access_key, nfe_xml):
        info = inbox.manual_import(tenant_id, nfe_xml(access_key(7)))

        receipt = inbox.acknowledge(
            tenant_id, uuid4(), RECIPIENT, info.document_id, AcknowledgmentKind.CONFIRMATION,
        )

        assert receipt.success
        assert receipt.event_code == "210210"
        assert fake_api.acknowledgments[0]["chave"] == access_key(7)
        assert inbox.get_document(tenant_id, info.document_id).acknowledgment == "confirmed"


class TestMappingsThroughFacade:
    def test_link_and_disable(self, inbox, session, tenant_id, access_key, nfe_xml):
        info = inbox.manual_import(tenant_id, nfe_xml(access_key(7), items=[
            {"code": "Z9", "description": "CHAPA ACO", "ncm": "72085200"},
        ]))
        _drain(inbox, tenant_id)
        product = Product(tenant_id=tenant_id, name="CHAPA", classification_code="72085200")
        session.add(product)
        session.flush()
        (line,) = inbox.list_line_items(tenant_id, info.document_id)

        inbox.link_line_item(tenant_id, line.line_item_id, product.id)
        (mapping,) = inbox.list_supplier_mappings(tenant_id)
        inbox.disable_mapping(tenant_id, mapping.mapping_id)

        assert inbox.list_supplier_mappings(tenant_id) == []
        assert len(inbox.list_supplier_mappings(tenant_id, include_inactive=True)) == 1


class TestSummary:
    def test_empty_summary(self, inbox, tenant_id):
        summary = inbox.inbox_summary(tenant_id)

        assert summary.total_documents == 0
        assert set(summary.documents) == {s.value for s in DocumentStatus}


class TestLineItems:
    def test_lines_in_order(self, inbox, tenant_id, access_key, nfe_xml):
        info = inbox.manual_import(tenant_id, nfe_xml(access_key(7), items=[
            {"code": "A1", "description": "CHAPA ACO"},
            {"code": "B2", "description": "TINTA EPOXI"},
        ]))
        inbox.process_queue(tenant_id)

        lines = inbox.list_line_items(tenant_id, info.document_id)

        assert [line.line_number for line in lines] == [1, 2]
        assert [line.supplier_code for line in lines] == ["A1", "B2"]

    def test_unknown_document(self, inbox, tenant_id):
        with pytest.raises(DocumentNotFoundError):
            inbox.list_line_items(tenant_id, uuid4())


class TestListDocuments:
    @pytest.fixture
    def imported(self, inbox, session, tenant_id, access_key, nfe_xml):
        """Three documents issued on 1, 2 and 3 March by two suppliers."""

        def _import(number, issuer_name, day, status=DocumentStatus.PENDING):
            info = inbox.manual_import(
                tenant_id, nfe_xml(access_key(number), issuer_name=issuer_name),
            )
            document = session.get(InboxDocument, info.document_id)
            document.issue_date = datetime(2026, 3, day, 10, 0, tzinfo=UTC)
            document.status = status.value
            session.flush()
            return info.document_id

        return [
            _import(1, "Acos Paulista Ltda", 1),
            _import(2, "Tintas Brasil SA", 2, DocumentStatus.ERROR),
            _import(3, "ACOS PAULISTA LTDA", 3, DocumentStatus.ERROR),
        ]

    def test_newest_issue_date_first(self, inbox, tenant_id, imported):
        page = inbox.list_documents(tenant_id)

        assert [d.document_id for d in page.documents] == imported[::-1]
        assert page.total == 3
        assert page.total_pages == 1

    def test_filter_by_status(self, inbox, tenant_id, imported):
        page = inbox.list_documents(tenant_id, status=DocumentStatus.ERROR)

        assert [d.document_id for d in page.documents] == [imported[2], imported[1]]
        assert page.total == 2

    def test_filter_by_issuer_name_ignores_case(self, inbox, tenant_id, imported):
        page = inbox.list_documents(tenant_id, issuer_name="paulista")

        assert [d.document_id for d in page.documents] == [imported[2], imported[0]]

    def test_filters_combine(self, inbox, tenant_id, imported):
        page = inbox.list_documents(tenant_id, status="error", issuer_name="Tintas")

        assert [d.document_id for d in page.documents] == [imported[1]]
        assert page.total == 1

    def test_filter_by_kind(self, inbox, tenant_id, imported):
        assert inbox.list_documents(tenant_id, kind="nfe").total == 3
        assert inbox.list_documents(tenant_id, kind="other").total == 0

    def test_pagination_keeps_total(self, inbox, tenant_id, imported):
        first = inbox.list_documents(tenant_id, limit=2)
        second = inbox.list_documents(tenant_id, limit=2, offset=2)

        assert [d.document_id for d in first.documents] == [imported[2], imported[1]]
        assert [d.document_id for d in second.documents] == [imported[0]]
        assert first.total == second.total == 3
        assert first.total_pages == 2

    def test_scoped_by_tenant(self, inbox, imported):
        page = inbox.list_documents(uuid4())

        assert page.documents == []
        assert page.total == 0

    @pytest.mark.parametrize("limit,offset", [(0, 0), (10, -1)])
    def test_bad_window_rejected(self, inbox, tenant_id, limit, offset):
        with pytest.raises(ValueError):
            inbox.list_documents(tenant_id, limit=limit, offset=offset)

    def test_unknown_status_rejected(self, inbox, tenant_id):
        with pytest.raises(ValueError):
            inbox.list_documents(tenant_id, status="stuck")


class TestRemoteUnacknowledged:
    def test_lists_pending_remote_documents(self, inbox, fake_api, access_key):
        fake_api.add_document(access_key(1), acknowledgment="ciencia")
        fake_api.add_document(access_key(2))

        (pending,) = inbox.list_remote_unacknowledged(RECIPIENT)

        assert pending.access_key == access_key(2)
        assert fake_api.calls("unacknowledged")[0].url.params["cpf_cnpj"] == RECIPIENT

    def test_invalid_tax_id(self, inbox, fake_api):
        with pytest.raises(InvalidTaxIdError):
            inbox.list_remote_unacknowledged("123")
        assert fake_api.calls("unacknowledged") == []
