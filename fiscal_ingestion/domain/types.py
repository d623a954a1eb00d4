"""
fiscal_ingestion.domain.types -- Pure frozen dataclasses for document intake.

ZERO I/O.  Imports only from fiscal_kernel/domain/.

Three families live here:
    - What the distribution API says about a document (``RemoteDocument``).
    - What the NF-e parser extracts from a payload (``ParsedInvoice`` and
      its parts, plus the lighter ``InvoiceHeader`` used by manual import).
    - What intake operations report back (``CollectionResult``,
      ``AcknowledgmentReceipt``, ``AutoAcknowledgmentResult``).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any
from uuid import UUID

from fiscal_kernel.domain.types import AcknowledgmentKind


def _to_decimal(value: Any) -> Decimal:
    if value is None or value == "":
        return Decimal("0")
    try:
        return Decimal(str(value))
    except InvalidOperation:
        return Decimal("0")


def _to_datetime(value: Any) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None


# =============================================================================
# Distribution API view
# =============================================================================


@dataclass(frozen=True)
class RemoteDocument:
    """One entry of a distribution listing page."""

    external_id: str
    access_key: str
    issuer_tax_id: str | None = None
    issuer_name: str | None = None
    issuer_state_registration: str | None = None
    recipient_tax_id: str | None = None
    issue_date: datetime | None = None
    total_value: Decimal = Decimal("0")
    nsu: str | None = None
    payload_available: bool = False
    acknowledgment: str | None = None

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> RemoteDocument:
        return cls(
            external_id=str(data.get("id", "")),
            access_key=str(data.get("chave", "")),
            issuer_tax_id=data.get("cnpj_emitente"),
            issuer_name=data.get("nome_emitente"),
            issuer_state_registration=data.get("inscricao_estadual_emitente"),
            recipient_tax_id=data.get("cnpj_destinatario"),
            issue_date=_to_datetime(data.get("data_emissao")),
            total_value=_to_decimal(data.get("valor_total")),
            nsu=str(data["nsu"]) if data.get("nsu") is not None else None,
            payload_available=bool(data.get("xml_disponivel", False)),
            acknowledgment=data.get("manifestacao") or None,
        )


# =============================================================================
# Parsed NF-e
# =============================================================================


@dataclass(frozen=True)
class ParsedParty:
    tax_id: str
    name: str
    trade_name: str | None = None
    state_registration: str | None = None
    state: str | None = None
    tax_regime: int | None = None


@dataclass(frozen=True)
class ParsedTotals:
    """ICMSTot group.  ``fcp`` is vFCPST + vFCP."""

    products: Decimal = Decimal("0")
    freight: Decimal = Decimal("0")
    insurance: Decimal = Decimal("0")
    discount: Decimal = Decimal("0")
    other: Decimal = Decimal("0")
    total: Decimal = Decimal("0")
    icms_base: Decimal = Decimal("0")
    icms_value: Decimal = Decimal("0")
    icms_st_base: Decimal = Decimal("0")
    icms_st_value: Decimal = Decimal("0")
    ipi: Decimal = Decimal("0")
    pis: Decimal = Decimal("0")
    cofins: Decimal = Decimal("0")
    fcp: Decimal = Decimal("0")

    def to_dict(self) -> dict[str, str]:
        return {
            "products": str(self.products),
            "freight": str(self.freight),
            "insurance": str(self.insurance),
            "discount": str(self.discount),
            "other": str(self.other),
            "total": str(self.total),
            "icms_base": str(self.icms_base),
            "icms_value": str(self.icms_value),
            "icms_st_base": str(self.icms_st_base),
            "icms_st_value": str(self.icms_st_value),
            "ipi": str(self.ipi),
            "pis": str(self.pis),
            "cofins": str(self.cofins),
            "fcp": str(self.fcp),
        }


@dataclass(frozen=True)
class ParsedLineItem:
    line_number: int
    supplier_code: str
    description: str
    classification_code: str
    cfop: str
    unit: str
    quantity: Decimal
    unit_price: Decimal
    total_value: Decimal
    discount: Decimal = Decimal("0")
    freight: Decimal = Decimal("0")
    cest: str | None = None
    identifier: str | None = None
    # {"icms": {...}, "ipi": {...}, "pis": {...}, "cofins": {...}}
    taxes: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ParsedTransport:
    freight_mode: int = 0
    carrier_tax_id: str | None = None
    carrier_name: str | None = None
    volumes: int | None = None
    net_weight: Decimal | None = None
    gross_weight: Decimal | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "freight_mode": self.freight_mode,
            "carrier_tax_id": self.carrier_tax_id,
            "carrier_name": self.carrier_name,
            "volumes": self.volumes,
            "net_weight": str(self.net_weight) if self.net_weight is not None else None,
            "gross_weight": str(self.gross_weight) if self.gross_weight is not None else None,
        }


@dataclass(frozen=True)
class ParsedInstallment:
    number: str
    due_date: str
    amount: Decimal

    def to_dict(self) -> dict[str, str]:
        return {"number": self.number, "due_date": self.due_date, "amount": str(self.amount)}


@dataclass(frozen=True)
class ParsedInvoice:
    """Everything the pipeline keeps from an NF-e payload."""

    access_key: str
    number: str
    series: str
    issue_date: datetime | None
    nature_of_operation: str
    operation_type: str  # "inbound" | "outbound"
    purpose: str  # "normal" | "complementary" | "adjustment" | "return"
    issuer: ParsedParty
    recipient: ParsedParty
    totals: ParsedTotals
    items: tuple[ParsedLineItem, ...] = ()
    transport: ParsedTransport | None = None
    installments: tuple[ParsedInstallment, ...] = ()
    additional_info: str | None = None
    fiscal_info: str | None = None


@dataclass(frozen=True)
class InvoiceHeader:
    """Minimal identification read from a payload for manual import."""

    access_key: str
    issuer_tax_id: str | None
    issuer_name: str | None
    recipient_tax_id: str | None
    issue_date: datetime | None
    total_value: Decimal


# =============================================================================
# Operation results
# =============================================================================


@dataclass(frozen=True)
class CollectionResult:
    """Outcome of one collector run.  ``success`` iff ``errors`` is empty."""

    new_documents: int
    skipped_documents: int = 0
    acknowledged_documents: int = 0
    errors: tuple[str, ...] = ()

    @property
    def success(self) -> bool:
        return not self.errors


@dataclass(frozen=True)
class AcknowledgmentReceipt:
    acknowledgment_id: UUID
    document_id: UUID
    access_key: str
    kind: AcknowledgmentKind
    event_code: str
    success: bool
    automatic: bool
    protocol: str | None = None


@dataclass(frozen=True)
class AutoAcknowledgmentResult:
    acknowledged: int = 0
    errors: tuple[str, ...] = ()
