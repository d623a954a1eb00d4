"""
Tests for AuditorService.

Covers:
- Hash chain linkage across events
- Tamper detection by validate_chain
- Per-entity trail ordering
- Audit write failure isolation (never aborts the caller)
"""

from uuid import uuid4

from sqlalchemy import select

from fiscal_kernel.models.audit_event import AuditAction, AuditEvent
from fiscal_kernel.services.auditor_service import AuditorService


class TestAuditChain:
    def test_events_are_linked_by_prev_hash(self, session, clock, tenant_id):
        auditor = AuditorService(session, clock=clock)
        doc_id = uuid4()

        first = auditor.record_document_event(
            tenant_id, doc_id, AuditAction.DOCUMENT_CAPTURED, access_key="k1",
        )
        second = auditor.record_document_event(
            tenant_id, doc_id, AuditAction.DOCUMENT_PARSED, line_items=2,
        )

        assert first.prev_hash is None
        assert second.prev_hash == first.hash
        assert second.seq > first.seq
        assert auditor.validate_chain()

    def test_tampered_payload_hash_breaks_chain(self, session, clock, tenant_id):
        auditor = AuditorService(session, clock=clock)
        event = auditor.record_document_event(
            tenant_id, uuid4(), AuditAction.DOCUMENT_CAPTURED,
        )
        auditor.record_document_event(tenant_id, uuid4(), AuditAction.DOCUMENT_CAPTURED)

        event.payload_hash = "0" * 64
        session.flush()

        assert not auditor.validate_chain()

    def test_empty_chain_is_valid(self, session, clock):
        assert AuditorService(session, clock=clock).validate_chain()


class TestAuditTrail:
    def test_trail_is_scoped_to_entity_and_tenant(self, session, clock, tenant_id):
        auditor = AuditorService(session, clock=clock)
        doc_id = uuid4()
        auditor.record_document_event(tenant_id, doc_id, AuditAction.DOCUMENT_CAPTURED)
        auditor.record_document_event(tenant_id, uuid4(), AuditAction.DOCUMENT_CAPTURED)
        auditor.record_document_event(uuid4(), doc_id, AuditAction.DOCUMENT_CAPTURED)
        auditor.record_document_event(tenant_id, doc_id, AuditAction.PROPOSAL_GENERATED)

        trail = auditor.get_trail(tenant_id, doc_id)

        assert [e.action for e in trail] == [
            AuditAction.DOCUMENT_CAPTURED.value,
            AuditAction.PROPOSAL_GENERATED.value,
        ]

    def test_line_item_linked_payload(self, session, clock, tenant_id):
        auditor = AuditorService(session, clock=clock)
        line_id, product_id = uuid4(), uuid4()

        event = auditor.record_line_item_linked(tenant_id, line_id, product_id, actor_id=None)

        assert event.entity_type == "InboxLineItem"
        assert event.payload["product_id"] == str(product_id)
        assert event.payload["previous_product_id"] is None

    def test_occurred_at_comes_from_clock(self, session, clock, tenant_id):
        auditor = AuditorService(session, clock=clock)
        event = auditor.record_mapping_disabled(tenant_id, uuid4(), actor_id=None)
        assert event.occurred_at == clock.now()


class TestAuditFailureIsolation:
    def test_failure_returns_none_and_logs(self, session, clock, tenant_id, captured_logs, monkeypatch):
        auditor = AuditorService(session, clock=clock)

        def explode(*args, **kwargs):
            raise RuntimeError("sequence unavailable")

        monkeypatch.setattr(auditor._sequence_service, "next_value", explode)

        assert auditor.record_document_event(
            tenant_id, uuid4(), AuditAction.DOCUMENT_CAPTURED,
        ) is None

        failures = [r for r in captured_logs() if r["message"] == "audit_write_failed"]
        assert len(failures) == 1
        assert failures[0]["exc_type"] == "RuntimeError"

    def test_failure_leaves_caller_transaction_usable(self, session, clock, tenant_id, monkeypatch):
        auditor = AuditorService(session, clock=clock)
        auditor.record_document_event(tenant_id, uuid4(), AuditAction.DOCUMENT_CAPTURED)

        def explode(*args, **kwargs):
            raise RuntimeError("boom")

        original = auditor._sequence_service.next_value
        monkeypatch.setattr(auditor._sequence_service, "next_value", explode)
        auditor.record_document_event(tenant_id, uuid4(), AuditAction.DOCUMENT_CAPTURED)
        monkeypatch.setattr(auditor._sequence_service, "next_value", original)

        auditor.record_document_event(tenant_id, uuid4(), AuditAction.DOCUMENT_CAPTURED)
        session.commit()

        count = len(session.execute(select(AuditEvent)).scalars().all())
        assert count == 2
        assert auditor.validate_chain()
