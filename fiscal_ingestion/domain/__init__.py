"""Pure domain types and validators for fiscal document intake (ZERO I/O)."""

from fiscal_ingestion.domain.types import (
    AcknowledgmentReceipt,
    AutoAcknowledgmentResult,
    CollectionResult,
    InvoiceHeader,
    ParsedInstallment,
    ParsedInvoice,
    ParsedLineItem,
    ParsedParty,
    ParsedTotals,
    ParsedTransport,
    RemoteDocument,
)
from fiscal_ingestion.domain.validators import (
    validate_access_key,
    validate_justification,
    validate_tax_id,
)

__all__ = [
    "AcknowledgmentReceipt",
    "AutoAcknowledgmentResult",
    "CollectionResult",
    "InvoiceHeader",
    "ParsedInstallment",
    "ParsedInvoice",
    "ParsedLineItem",
    "ParsedParty",
    "ParsedTotals",
    "ParsedTransport",
    "RemoteDocument",
    "validate_access_key",
    "validate_justification",
    "validate_tax_id",
]
