"""Domain models for the fiscal kernel."""

from fiscal_kernel.models.acknowledgment import (
    DocumentAcknowledgment,
    FiscalInboxSettings,
    TrustedIssuer,
)
from fiscal_kernel.models.audit_event import AuditAction, AuditEvent
from fiscal_kernel.models.inbox_document import InboxDocument, InboxLineItem
from fiscal_kernel.models.supplier_mapping import Product, Supplier, SupplierProductMapping
from fiscal_kernel.services.sequence_service import SequenceCounter

__all__ = [
    "AuditAction",
    "AuditEvent",
    "DocumentAcknowledgment",
    "FiscalInboxSettings",
    "InboxDocument",
    "InboxLineItem",
    "Product",
    "SequenceCounter",
    "Supplier",
    "SupplierProductMapping",
    "TrustedIssuer",
]
