"""
fiscal_batch.domain -- Pure types for the processing queue.

ZERO I/O.  All DTOs are frozen dataclasses.
"""

from fiscal_batch.domain.types import (
    QueueRunResult,
    QueueStage,
    QueueUnit,
    QueueUnitStatus,
    StageOutcome,
    UnitResult,
)

__all__ = [
    "QueueRunResult",
    "QueueStage",
    "QueueUnit",
    "QueueUnitStatus",
    "StageOutcome",
    "UnitResult",
]
