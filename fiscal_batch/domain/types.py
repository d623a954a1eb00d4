"""
fiscal_batch.domain.types -- Pure frozen dataclasses for the processing queue.

ZERO I/O.

Invariants enforced:
    - All DTOs are frozen dataclasses (immutable).
    - A unit's ``attempts`` never decreases; ``error`` is reachable only when
      ``attempts >= max_attempts``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any
from uuid import UUID


# =============================================================================
# Status enums
# =============================================================================


class QueueStage(str, Enum):
    """Pipeline stage a queue unit runs.  Order is causal per document."""

    PARSE = "parse_xml"
    MATCH = "match_products"
    PROPOSE = "generate_proposal"


class QueueUnitStatus(str, Enum):
    """Queue unit lifecycle."""

    PENDING = "pending"  # Eligible once not_before has passed
    PROCESSING = "processing"  # Claimed by a worker
    DONE = "done"  # Stage succeeded; follow-on enqueued
    ERROR = "error"  # attempts reached max_attempts


# =============================================================================
# DTOs
# =============================================================================


@dataclass(frozen=True)
class QueueUnit:
    """Immutable snapshot of one unit of pipeline work."""

    unit_id: UUID
    tenant_id: UUID
    document_id: UUID
    stage: QueueStage
    status: QueueUnitStatus
    attempts: int = 0
    max_attempts: int = 3
    priority: int = 0
    seq: int | None = None
    payload: dict[str, Any] = field(default_factory=dict)
    last_error: str | None = None
    not_before: datetime | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    created_at: datetime | None = None


@dataclass(frozen=True)
class StageOutcome:
    """
    What a stage handler reports back to the processor.

    ``next_stage`` is None for the terminal stage.  ``result_data`` is a
    small summary used for logging and audit.
    """

    next_stage: QueueStage | None = None
    next_payload: dict[str, Any] = field(default_factory=dict)
    result_data: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class UnitResult:
    unit_id: UUID
    document_id: UUID
    stage: QueueStage
    status: QueueUnitStatus
    attempts: int
    error_message: str | None = None
    next_unit_id: UUID | None = None
    duration_ms: int = 0


@dataclass(frozen=True)
class QueueRunResult:
    """Outcome of one ``process_queue`` call.

    ``processed`` counts units that succeeded, ``errors`` counts units whose
    handler failed (whether rescheduled or terminal), ``skipped`` counts
    units another worker claimed first.
    """

    selected: int = 0
    processed: int = 0
    errors: int = 0
    skipped: int = 0
    terminal_errors: int = 0
    results: tuple[UnitResult, ...] = ()
    started_at: datetime | None = None
    completed_at: datetime | None = None
