"""
Module: discount_kernel.models.allocation
Responsibility: ORM persistence for discount allocations and their lines.

Architecture position: Kernel > Models.  May import from db/base.py and
    domain/ DTOs.

Invariants enforced:
    - sum(lines.allocated_amount) == total_amount; verified by
      AllocationService before flush.
    - Allocation lines are immutable from creation (ORM listeners).
    - Allocations are voided, never deleted.
    - There is NO unique constraint on transaction_ref: voided allocations
      must remain queryable next to their replacement.  "At most one APPLIED
      allocation per transaction" is checked by AllocationService while
      holding a per-transaction lock.

Failure modes:
    - ImmutabilityViolationError on line UPDATE/DELETE or allocation DELETE.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import (
    JSON,
    CheckConstraint,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    event,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from discount_kernel.db.base import Base, UUIDString
from discount_kernel.domain.allocation import (
    AllocationMethod,
    AllocationStatus,
    DiscountAllocation,
    DiscountAllocationLine,
    TransactionType,
)
from discount_kernel.domain.clock import ensure_aware
from discount_kernel.exceptions import ImmutabilityViolationError


class DiscountAllocationModel(Base):
    """Allocation aggregate."""

    __tablename__ = "discount_allocations"

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'applied', 'void')",
            name="ck_discount_allocations_status",
        ),
        CheckConstraint("total_amount >= 0", name="ck_discount_allocations_total"),
        UniqueConstraint("allocation_number", name="uq_discount_allocations_number"),
        Index("ix_discount_allocations_txn", "tenant_id", "transaction_ref", "status"),
    )

    allocation_number: Mapped[str] = mapped_column(String(40), nullable=False)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    transaction_ref: Mapped[str] = mapped_column(String(100), nullable=False)
    transaction_type: Mapped[str] = mapped_column(String(20), nullable=False)
    method: Mapped[str] = mapped_column(String(30), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    total_amount: Mapped[Decimal] = mapped_column(nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=AllocationStatus.PENDING.value,
    )
    rule_ids: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    approval_id: Mapped[UUID | None] = mapped_column(
        UUIDString(), ForeignKey("discount_approvals.id"), nullable=True,
    )
    created_by: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    created_at: Mapped[datetime] = mapped_column(nullable=False)
    applied_at: Mapped[datetime | None] = mapped_column(nullable=True)
    voided_at: Mapped[datetime | None] = mapped_column(nullable=True)
    voided_by: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    void_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    lines: Mapped[list[DiscountAllocationLineModel]] = relationship(
        "DiscountAllocationLineModel",
        back_populates="allocation",
        order_by="DiscountAllocationLineModel.sequence",
        lazy="selectin",
    )

    def __repr__(self) -> str:
        return (
            f"<DiscountAllocation {self.allocation_number} "
            f"txn={self.transaction_ref} status={self.status}>"
        )

    def to_dto(self) -> DiscountAllocation:
        """Convert ORM model to frozen domain DTO."""
        return DiscountAllocation(
            allocation_id=self.id,
            allocation_number=self.allocation_number,
            tenant_id=self.tenant_id,
            transaction_ref=self.transaction_ref,
            transaction_type=TransactionType(self.transaction_type),
            method=AllocationMethod(self.method),
            currency=self.currency,
            total_amount=self.total_amount,
            status=AllocationStatus(self.status),
            lines=tuple(line.to_dto() for line in self.lines),
            created_by=self.created_by,
            created_at=ensure_aware(self.created_at),
            rule_ids=tuple(UUID(r) for r in self.rule_ids or ()),
            approval_id=self.approval_id,
            applied_at=ensure_aware(self.applied_at) if self.applied_at else None,
            voided_at=ensure_aware(self.voided_at) if self.voided_at else None,
            voided_by=self.voided_by,
            void_reason=self.void_reason,
        )


class DiscountAllocationLineModel(Base):
    """One line's share of an allocation. Append-only."""

    __tablename__ = "discount_allocation_lines"

    __table_args__ = (
        UniqueConstraint("allocation_id", "sequence", name="uq_allocation_lines_seq"),
        CheckConstraint("allocated_amount >= 0", name="ck_allocation_lines_amount"),
    )

    allocation_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("discount_allocations.id"), nullable=False,
    )
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)
    line_ref: Mapped[str] = mapped_column(String(100), nullable=False)
    basis_amount: Mapped[Decimal] = mapped_column(nullable=False)
    allocated_amount: Mapped[Decimal] = mapped_column(nullable=False)
    quantity: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("1"))
    weight: Mapped[Decimal | None] = mapped_column(nullable=True)

    allocation: Mapped[DiscountAllocationModel] = relationship(
        "DiscountAllocationModel", back_populates="lines",
    )

    def to_dto(self) -> DiscountAllocationLine:
        return DiscountAllocationLine(
            line_ref=self.line_ref,
            sequence=self.sequence,
            basis_amount=self.basis_amount,
            allocated_amount=self.allocated_amount,
            quantity=self.quantity,
            weight=self.weight,
        )


# =============================================================================
# ORM-Level Immutability
# =============================================================================


@event.listens_for(DiscountAllocationLineModel, "before_update")
def prevent_allocation_line_update(mapper, connection, target):
    raise ImmutabilityViolationError(
        entity_type="DiscountAllocationLine",
        entity_id=str(target.id),
        reason="Allocation lines are immutable -- void and reallocate instead",
    )


@event.listens_for(DiscountAllocationLineModel, "before_delete")
def prevent_allocation_line_delete(mapper, connection, target):
    raise ImmutabilityViolationError(
        entity_type="DiscountAllocationLine",
        entity_id=str(target.id),
        reason="Allocation lines are kept for historical reporting",
    )


@event.listens_for(DiscountAllocationModel, "before_delete")
def prevent_allocation_delete(mapper, connection, target):
    raise ImmutabilityViolationError(
        entity_type="DiscountAllocation",
        entity_id=str(target.id),
        reason="Allocations are voided, never deleted",
    )
