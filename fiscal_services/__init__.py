"""
fiscal_services -- Package init and public API.

Responsibility:
    Stateful services that compose the pure matching engines
    (fiscal_engines/) with database sessions, and the inbox facade that
    composes ingestion, pipeline and matching for callers.

Architecture position:
    Services -- stateful orchestration over engines + kernel.

    Dependency direction:
        fiscal_services/  -> fiscal_ingestion/, fiscal_batch/  (allowed)
        fiscal_services/  -> fiscal_engines/, fiscal_kernel/   (allowed)
        fiscal_kernel/    -> fiscal_services/ (FORBIDDEN, except the
                             ORM registry used by create_tables)

Failure modes:
    - ImportError at startup if a service's dependency graph is broken.
"""

from fiscal_kernel.logging_config import get_logger

logger = get_logger("services")

from fiscal_services.inbox_service import DocumentPage, FiscalInboxService, InboxSummary
from fiscal_services.product_matching_service import ProductMatchingService

__all__ = [
    "DocumentPage",
    "FiscalInboxService",
    "InboxSummary",
    "ProductMatchingService",
]
