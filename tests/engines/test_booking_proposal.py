"""
Tests for fiscal_engines.proposal.

Covers:
- Follow-on actions derived from installments and supplier linkage
- Unmatched line counting
- Persisted dict form (string amounts, ISO timestamp)
"""

from datetime import datetime, timezone
from decimal import Decimal
from uuid import uuid4

from fiscal_engines.proposal import ProposalLine, build_booking_proposal

GENERATED_AT = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)


def _line(product_id=None, status="unmatched"):
    return ProposalLine(
        line_item_id=uuid4(),
        description="PARAFUSO",
        product_id=product_id,
        match_status=status,
        quantity=Decimal("2.0000"),
        unit_price=Decimal("10.50"),
        total_value=Decimal("21.00"),
    )


def _build(**overrides):
    kwargs = dict(
        document_id=uuid4(),
        kind="nfe",
        supplier_tax_id="12345678000195",
        supplier_name="Fornecedor",
        supplier_id=None,
        lines=[_line()],
        totals={"products": "21.00", "document": "21.00"},
        installments=[{"number": "001", "due_date": "2026-04-01", "amount": "21.00"}],
        generated_at=GENERATED_AT,
    )
    kwargs.update(overrides)
    return build_booking_proposal(**kwargs)


class TestProposalActions:
    def test_installments_create_payable(self):
        assert _build().actions.create_payable

    def test_no_installments_no_payable(self):
        assert not _build(installments=[]).actions.create_payable
        assert not _build(installments=None).actions.create_payable

    def test_unknown_supplier_is_created(self):
        assert _build(supplier_id=None).actions.create_supplier

    def test_known_supplier_is_not_created(self):
        assert not _build(supplier_id=uuid4()).actions.create_supplier

    def test_stock_and_cost_always_updated(self):
        actions = _build().actions
        assert actions.update_stock
        assert actions.update_average_cost


class TestProposalLines:
    def test_counts_unmatched_lines(self):
        proposal = _build(lines=[_line(), _line(uuid4(), "matched"), _line()])
        assert proposal.unmatched_lines == 2

    def test_document_without_lines(self):
        proposal = _build(lines=[])
        assert proposal.lines == ()
        assert proposal.unmatched_lines == 0


class TestProposalDict:
    def test_shape(self):
        doc_id = uuid4()
        supplier_id = uuid4()
        product_id = uuid4()
        data = _build(
            document_id=doc_id,
            supplier_id=supplier_id,
            lines=[_line(product_id, "matched")],
        ).to_dict()

        assert data["document_id"] == str(doc_id)
        assert data["kind"] == "nfe"
        assert data["supplier"] == {
            "tax_id": "12345678000195",
            "name": "Fornecedor",
            "supplier_id": str(supplier_id),
        }
        assert data["items"][0]["product_id"] == str(product_id)
        assert data["items"][0]["quantity"] == "2.0000"
        assert data["items"][0]["total_value"] == "21.00"
        assert data["totals"]["document"] == "21.00"
        assert data["actions"]["create_supplier"] is False
        assert data["unmatched_lines"] == 0
        assert data["generated_at"] == GENERATED_AT.isoformat()

    def test_unmatched_line_has_null_product(self):
        data = _build().to_dict()
        assert data["items"][0]["product_id"] is None
        assert data["supplier"]["supplier_id"] is None
