"""
AuditorService -- tamper-evident audit trail for discount decisions.

Responsibility:
    Creates immutable, hash-chained audit events for rule changes, promo
    redemptions, approval transitions and allocation transitions.
    Provides chain validation and per-entity trace queries.

Architecture position:
    Kernel > Services -- imperative shell, called by RuleService,
    ApprovalService, AllocationService and RedemptionService.

Invariants enforced:
    - Sequence monotonicity via SequenceService (never max+1).
    - Chain integrity: ``hash = H(entity_type | entity_id | action |
      payload_hash | prev_hash)``.
    - Append-only: AuditEvent rows reject UPDATE and DELETE at the ORM.

Failure modes:
    - AuditChainBrokenError from ``validate_chain()`` when a stored hash
      no longer matches its recomputation or its predecessor.
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from discount_kernel.domain.clock import Clock, SystemClock, ensure_aware
from discount_kernel.exceptions import AuditChainBrokenError
from discount_kernel.logging_config import get_logger
from discount_kernel.models.audit_event import AuditAction, AuditEvent
from discount_kernel.services.sequence_service import SequenceService
from discount_kernel.utils.hashing import hash_audit_event, hash_payload

logger = get_logger("services.auditor")


@dataclass(frozen=True)
class AuditTraceEntry:
    """A single entry in an audit trace."""

    seq: int
    action: AuditAction
    occurred_at: datetime
    actor_id: UUID
    payload: dict[str, Any]
    hash: str


@dataclass(frozen=True)
class AuditTrace:
    """All audit events for one entity, oldest first."""

    entity_type: str
    entity_id: UUID
    entries: tuple[AuditTraceEntry, ...]

    @property
    def is_empty(self) -> bool:
        return len(self.entries) == 0

    @property
    def actions(self) -> tuple[AuditAction, ...]:
        return tuple(e.action for e in self.entries)

    @property
    def last_action(self) -> AuditAction | None:
        return self.entries[-1].action if self.entries else None


class AuditorService:
    """
    Service for creating and validating tamper-evident audit events.

    Guarantees:
        - Every event's ``hash`` is a deterministic function of its content
          and its predecessor's hash; tampering is detectable by
          ``validate_chain()``.

    Non-goals:
        - Does NOT call ``session.commit()``; the caller owns the transaction.
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

    def _create_audit_event(
        self,
        tenant_id: str,
        entity_type: str,
        entity_id: UUID,
        action: AuditAction,
        actor_id: UUID,
        payload: dict[str, Any] | None = None,
    ) -> AuditEvent:
        """
        Append one event to the chain.

        Postconditions:
            - The event is flushed with the next ``seq`` and
              ``prev_hash`` equal to the previous event's ``hash``.
        """
        seq = self._sequence_service.next_value(SequenceService.AUDIT_EVENT)
        prev_hash = self._get_last_hash()

        payload_data = payload or {}
        computed_payload_hash = hash_payload(payload_data)
        event_hash = hash_audit_event(
            entity_type=entity_type,
            entity_id=str(entity_id),
            action=action.value,
            payload_hash=computed_payload_hash,
            prev_hash=prev_hash,
        )

        audit_event = AuditEvent(
            seq=seq,
            tenant_id=tenant_id,
            entity_type=entity_type,
            entity_id=entity_id,
            action=action.value,
            actor_id=actor_id,
            occurred_at=self._clock.now(),
            payload=payload_data,
            payload_hash=computed_payload_hash,
            prev_hash=prev_hash,
            hash=event_hash,
        )
        self._session.add(audit_event)
        self._session.flush()

        logger.info(
            "audit_event_created",
            extra={
                "entity_type": entity_type,
                "entity_id": str(entity_id),
                "action": action.value,
                "seq": seq,
            },
        )
        return audit_event

    # Rules

    def record_rule_created(
        self,
        tenant_id: str,
        rule_id: UUID,
        source_type: str,
        label: str,
        actor_id: UUID,
    ) -> AuditEvent:
        return self._create_audit_event(
            tenant_id=tenant_id,
            entity_type="DiscountRule",
            entity_id=rule_id,
            action=AuditAction.RULE_CREATED,
            actor_id=actor_id,
            payload={"source_type": source_type, "label": label},
        )

    def record_rule_deactivated(
        self,
        tenant_id: str,
        rule_id: UUID,
        source_type: str,
        actor_id: UUID,
    ) -> AuditEvent:
        return self._create_audit_event(
            tenant_id=tenant_id,
            entity_type="DiscountRule",
            entity_id=rule_id,
            action=AuditAction.RULE_DEACTIVATED,
            actor_id=actor_id,
            payload={"source_type": source_type},
        )

    def record_promo_redeemed(
        self,
        tenant_id: str,
        rule_id: UUID,
        customer_id: str,
        transaction_ref: str | None,
        actor_id: UUID,
    ) -> AuditEvent:
        return self._create_audit_event(
            tenant_id=tenant_id,
            entity_type="DiscountRule",
            entity_id=rule_id,
            action=AuditAction.PROMO_REDEEMED,
            actor_id=actor_id,
            payload={"customer_id": customer_id, "transaction_ref": transaction_ref},
        )

    # Approvals

    def record_approval_requested(
        self,
        tenant_id: str,
        approval_id: UUID,
        requested_amount: Decimal,
        requested_percentage: Decimal,
        threshold_percentage: Decimal,
        actor_id: UUID,
    ) -> AuditEvent:
        """
        Record that a discount crossed the approval threshold.

        Preconditions:
            - ``approval_id`` is a PENDING approval flushed in this
              transaction.
        """
        return self._create_audit_event(
            tenant_id=tenant_id,
            entity_type="DiscountApproval",
            entity_id=approval_id,
            action=AuditAction.APPROVAL_REQUESTED,
            actor_id=actor_id,
            payload={
                "requested_amount": str(requested_amount),
                "requested_percentage": str(requested_percentage),
                "threshold_percentage": str(threshold_percentage),
            },
        )

    def record_approval_resolved(
        self,
        tenant_id: str,
        approval_id: UUID,
        action: AuditAction,
        actor_id: UUID,
        note: str | None = None,
    ) -> AuditEvent:
        """Record APPROVAL_GRANTED, APPROVAL_REJECTED or APPROVAL_EXPIRED."""
        return self._create_audit_event(
            tenant_id=tenant_id,
            entity_type="DiscountApproval",
            entity_id=approval_id,
            action=action,
            actor_id=actor_id,
            payload={"note": note},
        )

    # Allocations

    def record_allocation(
        self,
        tenant_id: str,
        allocation_id: UUID,
        action: AuditAction,
        actor_id: UUID,
        payload: dict[str, Any] | None = None,
    ) -> AuditEvent:
        """Record ALLOCATION_CREATED, ALLOCATION_APPLIED or ALLOCATION_VOIDED."""
        return self._create_audit_event(
            tenant_id=tenant_id,
            entity_type="DiscountAllocation",
            entity_id=allocation_id,
            action=action,
            actor_id=actor_id,
            payload=payload,
        )

    # Queries

    def get_trace(self, entity_type: str, entity_id: UUID) -> AuditTrace:
        events = self._session.execute(
            select(AuditEvent)
            .where(AuditEvent.entity_type == entity_type, AuditEvent.entity_id == entity_id)
            .order_by(AuditEvent.seq)
        ).scalars().all()

        entries = tuple(
            AuditTraceEntry(
                seq=e.seq,
                action=AuditAction(e.action),
                occurred_at=ensure_aware(e.occurred_at),
                actor_id=e.actor_id,
                payload=e.payload or {},
                hash=e.hash,
            )
            for e in events
        )
        return AuditTrace(entity_type=entity_type, entity_id=entity_id, entries=entries)

    def validate_chain(self) -> bool:
        """
        Recompute every hash in seq order.

        Raises:
            AuditChainBrokenError: On the first mismatch.
        """
        events = self._session.execute(
            select(AuditEvent).order_by(AuditEvent.seq)
        ).scalars().all()

        prev_hash: str | None = None
        for e in events:
            if e.prev_hash != prev_hash:
                raise AuditChainBrokenError(e.seq, "prev_hash does not match predecessor")
            if hash_payload(e.payload or {}) != e.payload_hash:
                raise AuditChainBrokenError(e.seq, "payload hash mismatch")
            expected = hash_audit_event(
                entity_type=e.entity_type,
                entity_id=str(e.entity_id),
                action=e.action,
                payload_hash=e.payload_hash,
                prev_hash=e.prev_hash,
            )
            if expected != e.hash:
                raise AuditChainBrokenError(e.seq, "event hash mismatch")
            prev_hash = e.hash

        logger.info("audit_chain_validated", extra={"event_count": len(events)})
        return True
