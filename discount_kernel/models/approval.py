"""
Module: discount_kernel.models.approval
Responsibility: ORM persistence for discount approvals.

Architecture position: Kernel > Models.  May import from db/base.py and
    domain/ DTOs.

Invariants enforced:
    - DB check constraint limits status values to the persisted lifecycle.
    - request_hash is write-once and verified on load by ApprovalService.
    - Approvals are never deleted; an ORM listener rejects DELETE.

Failure modes:
    - ImmutabilityViolationError on DELETE.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import CheckConstraint, Index, String, Text, event
from sqlalchemy.orm import Mapped, mapped_column

from discount_kernel.db.base import Base, UUIDString
from discount_kernel.domain.approval import ApprovalStatus, DiscountApproval
from discount_kernel.domain.clock import ensure_aware
from discount_kernel.exceptions import ImmutabilityViolationError


class DiscountApprovalModel(Base):
    """Persistent discount approval request."""

    __tablename__ = "discount_approvals"

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'approved', 'rejected', 'expired')",
            name="ck_discount_approvals_status",
        ),
        Index("ix_discount_approvals_tenant_status", "tenant_id", "status", "requested_at"),
        Index("ix_discount_approvals_fingerprint", "tenant_id", "context_fingerprint"),
    )

    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    transaction_ref: Mapped[str | None] = mapped_column(String(100), nullable=True)
    context_fingerprint: Mapped[str] = mapped_column(String(64), nullable=False)
    customer_id: Mapped[str] = mapped_column(String(64), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    subtotal: Mapped[Decimal] = mapped_column(nullable=False)
    requested_amount: Mapped[Decimal] = mapped_column(nullable=False)
    requested_percentage: Mapped[Decimal] = mapped_column(nullable=False)
    threshold_percentage: Mapped[Decimal] = mapped_column(nullable=False)
    threshold_amount: Mapped[Decimal | None] = mapped_column(nullable=True)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=ApprovalStatus.PENDING.value,
    )
    requested_by: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    requested_at: Mapped[datetime] = mapped_column(nullable=False)
    approver_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    approval_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    rejection_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    resolved_at: Mapped[datetime | None] = mapped_column(nullable=True)
    request_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)

    def __repr__(self) -> str:
        return f"<DiscountApproval {self.id} status={self.status}>"

    def to_dto(self) -> DiscountApproval:
        """Convert ORM model to frozen domain DTO."""
        return DiscountApproval(
            approval_id=self.id,
            tenant_id=self.tenant_id,
            transaction_ref=self.transaction_ref,
            context_fingerprint=self.context_fingerprint,
            customer_id=self.customer_id,
            currency=self.currency,
            subtotal=self.subtotal,
            requested_amount=self.requested_amount,
            requested_percentage=self.requested_percentage,
            threshold_percentage=self.threshold_percentage,
            threshold_amount=self.threshold_amount,
            reason=self.reason,
            status=ApprovalStatus(self.status),
            requested_by=self.requested_by,
            requested_at=ensure_aware(self.requested_at),
            approver_id=self.approver_id,
            approval_notes=self.approval_notes,
            rejection_reason=self.rejection_reason,
            resolved_at=ensure_aware(self.resolved_at) if self.resolved_at else None,
            request_hash=self.request_hash,
        )


@event.listens_for(DiscountApprovalModel, "before_delete")
def prevent_approval_delete(mapper, connection, target):
    """Approvals are the audit trail of discount sign-off."""
    raise ImmutabilityViolationError(
        entity_type="DiscountApproval",
        entity_id=str(target.id),
        reason="Discount approvals are never deleted",
    )
