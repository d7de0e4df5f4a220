"""
Module: discount_kernel.models.audit_event
Responsibility: ORM persistence for the tamper-evident audit hash chain and
    the sequence counter that orders it.
Architecture position: Kernel > Models.  May import from db/base.py only.

Invariants enforced:
    - Audit records are append-only; ORM listeners reject UPDATE and DELETE.
    - hash = H(entity_type | entity_id | action | payload_hash | prev_hash).
    - seq is monotonically increasing, allocated from a locked counter row.

Audit relevance:
    Every approval transition (requested, approved, rejected, expired) and
    every allocation transition (created, applied, voided) produces an
    AuditEvent.
"""

from datetime import datetime
from enum import Enum
from uuid import UUID

from sqlalchemy import JSON, BigInteger, DateTime, Index, String, event
from sqlalchemy.orm import Mapped, mapped_column

from discount_kernel.db.base import Base, UUIDString
from discount_kernel.exceptions import ImmutabilityViolationError


class AuditAction(str, Enum):
    """Types of auditable discount actions."""

    RULE_CREATED = "rule_created"
    RULE_DEACTIVATED = "rule_deactivated"

    APPROVAL_REQUESTED = "approval_requested"
    APPROVAL_GRANTED = "approval_granted"
    APPROVAL_REJECTED = "approval_rejected"
    APPROVAL_EXPIRED = "approval_expired"

    ALLOCATION_CREATED = "allocation_created"
    ALLOCATION_APPLIED = "allocation_applied"
    ALLOCATION_VOIDED = "allocation_voided"

    PROMO_REDEEMED = "promo_redeemed"


class AuditEvent(Base):
    """
    Audit event with hash chain for tamper evidence.

    Guarantees:
        - prev_hash is None only for the genesis event.
    """

    __tablename__ = "audit_events"

    __table_args__ = (
        Index("idx_audit_entity", "entity_type", "entity_id"),
        Index("idx_audit_tenant_action", "tenant_id", "action"),
        Index("idx_audit_seq", "seq"),
    )

    seq: Mapped[int] = mapped_column(BigInteger, nullable=False, unique=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    entity_type: Mapped[str] = mapped_column(String(50), nullable=False)
    entity_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    action: Mapped[str] = mapped_column(String(50), nullable=False)
    actor_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    payload: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    payload_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    prev_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)
    hash: Mapped[str] = mapped_column(String(64), nullable=False)

    def __repr__(self) -> str:
        return f"<AuditEvent {self.action} on {self.entity_type}:{self.entity_id}>"


class SequenceCounter(Base):
    """Named monotonic counter. Row-level locking keeps it gap-safe."""

    __tablename__ = "sequence_counters"

    name: Mapped[str] = mapped_column(String(50), nullable=False, unique=True)
    current_value: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)


@event.listens_for(AuditEvent, "before_update")
def prevent_audit_update(mapper, connection, target):
    raise ImmutabilityViolationError(
        entity_type="AuditEvent",
        entity_id=str(target.id),
        reason="Audit events are append-only -- cannot modify",
    )


@event.listens_for(AuditEvent, "before_delete")
def prevent_audit_delete(mapper, connection, target):
    raise ImmutabilityViolationError(
        entity_type="AuditEvent",
        entity_id=str(target.id),
        reason="Audit events are append-only -- cannot delete",
    )
