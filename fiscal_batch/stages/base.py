"""
StageHandler protocol and StageRegistry.

Contract:
    ``StageHandler`` is the interface every pipeline stage implements.
    ``StageRegistry`` stores handlers keyed by ``QueueStage``; the processor
    dispatches each claimed unit through it.

Architecture:
    fiscal_batch/stages.  Imports from fiscal_batch.domain, kernel models
    and exceptions.

Invariants enforced:
    - One handler per stage.
    - Handlers never commit and never enqueue; they return a
      ``StageOutcome`` and the processor persists the follow-on unit.
"""

from __future__ import annotations

from datetime import datetime
from typing import Protocol, runtime_checkable
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from fiscal_kernel.exceptions import DocumentNotFoundError, StageNotRegisteredError
from fiscal_kernel.models.inbox_document import InboxDocument

from fiscal_batch.domain.types import QueueStage, QueueUnit, StageOutcome


@runtime_checkable
class StageHandler(Protocol):
    """
    One pipeline stage.

    Contract:
        - ``stage``: the QueueStage this handler serves.
        - ``handle()``: performs the stage for ONE unit inside the
          processor's SAVEPOINT; raises on failure.

    Non-goals:
        - Does NOT manage transactions -- the processor owns the SAVEPOINT.
        - Does NOT retry -- the queue's attempts / not_before do.
    """

    @property
    def stage(self) -> QueueStage: ...

    @property
    def description(self) -> str: ...

    def handle(
        self,
        unit: QueueUnit,
        session: Session,
        as_of: datetime,
    ) -> StageOutcome: ...


class StageRegistry:
    """Registry mapping QueueStage to StageHandler implementations."""

    def __init__(self) -> None:
        self._handlers: dict[QueueStage, StageHandler] = {}

    def register(self, handler: StageHandler) -> None:
        """
        Raises:
            ValueError: If a handler for the same stage is already registered.
        """
        if handler.stage in self._handlers:
            raise ValueError(f"Stage '{handler.stage.value}' is already registered")
        self._handlers[handler.stage] = handler

    def get(self, stage: QueueStage | str) -> StageHandler:
        """
        Raises:
            StageNotRegisteredError: If no handler serves ``stage``.
        """
        try:
            return self._handlers[QueueStage(stage)]
        except (KeyError, ValueError):
            raise StageNotRegisteredError(
                stage.value if isinstance(stage, QueueStage) else str(stage),
                self.list_stages(),
            ) from None

    def list_stages(self) -> tuple[str, ...]:
        return tuple(sorted(s.value for s in self._handlers))

    def __len__(self) -> int:
        return len(self._handlers)

    def __contains__(self, stage: QueueStage | str) -> bool:
        try:
            return QueueStage(stage) in self._handlers
        except ValueError:
            return False


def load_document(session: Session, tenant_id: UUID, document_id: UUID) -> InboxDocument:
    """Load a tenant's document or raise ``DocumentNotFoundError``."""
    document = session.execute(
        select(InboxDocument).where(
            InboxDocument.id == document_id,
            InboxDocument.tenant_id == tenant_id,
        )
    ).scalar_one_or_none()
    if document is None:
        raise DocumentNotFoundError(str(document_id))
    return document
