"""
AuditorService -- append-only, hash-chained audit sink for inbox transitions.

Responsibility:
    Records every inbox state transition as an ``AuditEvent`` and validates
    the chain on demand.

Architecture position:
    Kernel > Services.  Consumed by the collector, acknowledgment, matching
    and pipeline services; never consumed by anything it audits.

Invariants enforced:
    - hash = H(entity_type | entity_id | action | payload_hash | prev_hash).
    - seq allocated via SequenceService (locked counter row).
    - An audit-write failure NEVER aborts the operation being audited: the
      write runs in its own SAVEPOINT, and on failure the savepoint is
      rolled back, ``audit_write_failed`` is logged, and ``record`` returns
      None.

Non-goals:
    - Does NOT call ``session.commit()`` -- caller controls boundaries.
"""

from __future__ import annotations

from typing import Any
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from fiscal_kernel.db.base import SYSTEM_ACTOR_ID
from fiscal_kernel.domain.clock import Clock, SystemClock
from fiscal_kernel.logging_config import get_logger
from fiscal_kernel.models.audit_event import AuditAction, AuditEvent
from fiscal_kernel.services.sequence_service import SequenceService
from fiscal_kernel.utils.hashing import hash_audit_event, hash_payload, to_json_safe

logger = get_logger("services.auditor")


class AuditorService:
    """
    Service for creating and validating tamper-evident audit events.

    Contract:
        ``record()`` is the single write entry point.  The ``record_*``
        helpers fix entity type and action for the common inbox events.
    """

    def __init__(self, session: Session, clock: Clock | None = None):
        self._session = session
        self._clock = clock or SystemClock()
        self._sequence_service = SequenceService(session)

    def _get_last_hash(self) -> str | None:
        last_event = self._session.execute(
            select(AuditEvent).order_by(AuditEvent.seq.desc()).limit(1)
        ).scalar_one_or_none()
        return last_event.hash if last_event else None

    def record(
        self,
        tenant_id: UUID,
        entity_type: str,
        entity_id: UUID,
        action: AuditAction,
        actor_id: UUID | None = None,
        payload: dict[str, Any] | None = None,
    ) -> AuditEvent | None:
        """
        Append one audit event.

        Postconditions:
            - On success, a new AuditEvent is flushed and returned.
            - On any failure, nothing is written, the failure is logged and
              None is returned.  The caller's transaction is untouched.
        """
        savepoint = self._session.begin_nested()
        try:
            seq = self._sequence_service.next_value(SequenceService.AUDIT_EVENT)
            prev_hash = self._get_last_hash()

            payload_data = to_json_safe(payload or {})
            payload_hash = hash_payload(payload_data)
            event_hash = hash_audit_event(
                entity_type=entity_type,
                entity_id=str(entity_id),
                action=action.value,
                payload_hash=payload_hash,
                prev_hash=prev_hash,
            )

            audit_event = AuditEvent(
                seq=seq,
                tenant_id=tenant_id,
                entity_type=entity_type,
                entity_id=entity_id,
                action=action.value,
                actor_id=actor_id or SYSTEM_ACTOR_ID,
                occurred_at=self._clock.now(),
                payload=payload_data,
                payload_hash=payload_hash,
                prev_hash=prev_hash,
                hash=event_hash,
            )
            self._session.add(audit_event)
            self._session.flush()
            savepoint.commit()
        except Exception:
            savepoint.rollback()
            logger.warning(
                "audit_write_failed",
                extra={
                    "tenant_id": str(tenant_id),
                    "entity_type": entity_type,
                    "entity_id": str(entity_id),
                    "action": action.value,
                },
                exc_info=True,
            )
            return None

        logger.debug(
            "audit_event_created",
            extra={
                "entity_type": entity_type,
                "entity_id": str(entity_id),
                "action": action.value,
                "seq": seq,
            },
        )
        return audit_event

    # Domain-specific recording methods

    def record_document_event(
        self,
        tenant_id: UUID,
        document_id: UUID,
        action: AuditAction,
        actor_id: UUID | None = None,
        **details: Any,
    ) -> AuditEvent | None:
        """Record a transition of an ``InboxDocument``."""
        return self.record(
            tenant_id=tenant_id,
            entity_type="InboxDocument",
            entity_id=document_id,
            action=action,
            actor_id=actor_id,
            payload=details,
        )

    def record_line_item_linked(
        self,
        tenant_id: UUID,
        line_item_id: UUID,
        product_id: UUID,
        actor_id: UUID | None,
        previous_product_id: UUID | None = None,
    ) -> AuditEvent | None:
        return self.record(
            tenant_id=tenant_id,
            entity_type="InboxLineItem",
            entity_id=line_item_id,
            action=AuditAction.LINE_ITEM_LINKED,
            actor_id=actor_id,
            payload={
                "product_id": product_id,
                "previous_product_id": previous_product_id,
            },
        )

    def record_mapping_disabled(
        self,
        tenant_id: UUID,
        mapping_id: UUID,
        actor_id: UUID | None,
    ) -> AuditEvent | None:
        return self.record(
            tenant_id=tenant_id,
            entity_type="SupplierProductMapping",
            entity_id=mapping_id,
            action=AuditAction.MAPPING_DISABLED,
            actor_id=actor_id,
        )

    # Queries

    def validate_chain(self) -> bool:
        """
        Recompute every hash in seq order.

        Returns:
            True if every event's hash and prev_hash link are intact.
        """
        events = self._session.execute(
            select(AuditEvent).order_by(AuditEvent.seq)
        ).scalars().all()

        prev_hash: str | None = None
        for event in events:
            if event.prev_hash != prev_hash:
                logger.error(
                    "audit_chain_link_broken",
                    extra={"seq": event.seq, "expected_prev": prev_hash},
                )
                return False
            expected = hash_audit_event(
                entity_type=event.entity_type,
                entity_id=str(event.entity_id),
                action=event.action,
                payload_hash=event.payload_hash,
                prev_hash=event.prev_hash,
            )
            if expected != event.hash:
                logger.error("audit_chain_hash_mismatch", extra={"seq": event.seq})
                return False
            prev_hash = event.hash
        return True

    def get_trail(
        self,
        tenant_id: UUID,
        entity_id: UUID,
    ) -> list[AuditEvent]:
        """All events for one entity, oldest first."""
        return list(
            self._session.execute(
                select(AuditEvent)
                .where(
                    AuditEvent.tenant_id == tenant_id,
                    AuditEvent.entity_id == entity_id,
                )
                .order_by(AuditEvent.seq)
            ).scalars().all()
        )
