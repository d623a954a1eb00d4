"""Document admission services: collector, manual import, acknowledgment."""

from fiscal_ingestion.services.acknowledgment_service import AcknowledgmentService
from fiscal_ingestion.services.collector_service import CollectorService
from fiscal_ingestion.services.intake_service import DocumentAdmission, IntakeService

__all__ = [
    "AcknowledgmentService",
    "CollectorService",
    "DocumentAdmission",
    "IntakeService",
]
