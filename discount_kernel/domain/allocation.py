"""
Allocation -- Discount allocation lifecycle and DTOs.

Responsibility:
    Pure domain types for distributing a finalized discount across the
    line items of a transaction: the allocation method, the aggregate
    status lifecycle and the frozen DTOs returned by the allocation
    service.

Architecture position:
    Kernel > Domain -- pure functional core, zero I/O.

Invariants enforced:
    - ``sum(line.allocated_amount) == total_amount`` for every allocation.
    - VOID is terminal; voided allocations keep their lines.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID


class AllocationMethod(str, Enum):
    """How the discount total is split across lines."""

    PRO_RATA_AMOUNT = "pro_rata_amount"
    PRO_RATA_QUANTITY = "pro_rata_quantity"
    CUSTOM_WEIGHTS = "custom_weights"
    EQUAL = "equal"


class AllocationStatus(str, Enum):
    PENDING = "pending"
    APPLIED = "applied"
    VOID = "void"


class TransactionType(str, Enum):
    """Kind of transaction owning an allocation."""

    INVOICE = "invoice"
    POS_SALE = "pos_sale"


ALLOCATION_TRANSITIONS: dict[AllocationStatus, frozenset[AllocationStatus]] = {
    AllocationStatus.PENDING: frozenset({AllocationStatus.APPLIED, AllocationStatus.VOID}),
    AllocationStatus.APPLIED: frozenset({AllocationStatus.VOID}),
    AllocationStatus.VOID: frozenset(),
}


@dataclass(frozen=True)
class AllocationLineInput:
    """A line to receive a share of the discount."""

    line_ref: str
    amount: Decimal
    quantity: Decimal = Decimal("1")
    weight: Decimal | None = None


@dataclass(frozen=True)
class DiscountAllocationLine:
    line_ref: str
    sequence: int
    basis_amount: Decimal
    allocated_amount: Decimal
    quantity: Decimal = Decimal("1")
    weight: Decimal | None = None

    def as_input(self) -> AllocationLineInput:
        """The line as it was fed to the allocation engine."""
        return AllocationLineInput(
            line_ref=self.line_ref,
            amount=self.basis_amount,
            quantity=self.quantity,
            weight=self.weight,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "line_ref": self.line_ref,
            "sequence": self.sequence,
            "basis_amount": str(self.basis_amount),
            "quantity": str(self.quantity),
            "weight": str(self.weight) if self.weight is not None else None,
            "allocated_amount": str(self.allocated_amount),
        }


@dataclass(frozen=True)
class DiscountAllocation:
    """A persisted allocation aggregate with its lines."""

    allocation_id: UUID
    allocation_number: str
    tenant_id: str
    transaction_ref: str
    transaction_type: TransactionType
    method: AllocationMethod
    currency: str
    total_amount: Decimal
    status: AllocationStatus
    lines: tuple[DiscountAllocationLine, ...]
    created_by: UUID
    created_at: datetime
    rule_ids: tuple[UUID, ...] = ()
    approval_id: UUID | None = None
    applied_at: datetime | None = None
    voided_at: datetime | None = None
    voided_by: UUID | None = None
    void_reason: str | None = None

    @property
    def lines_total(self) -> Decimal:
        return sum((line.allocated_amount for line in self.lines), Decimal("0"))

    def to_dict(self) -> dict[str, Any]:
        return {
            "allocation_id": str(self.allocation_id),
            "allocation_number": self.allocation_number,
            "transaction_ref": self.transaction_ref,
            "transaction_type": self.transaction_type.value,
            "method": self.method.value,
            "currency": self.currency,
            "total_amount": str(self.total_amount),
            "status": self.status.value,
            "lines": [line.to_dict() for line in self.lines],
            "rule_ids": [str(r) for r in self.rule_ids],
            "approval_id": str(self.approval_id) if self.approval_id else None,
            "created_at": self.created_at.isoformat(),
            "applied_at": self.applied_at.isoformat() if self.applied_at else None,
            "voided_at": self.voided_at.isoformat() if self.voided_at else None,
            "void_reason": self.void_reason,
        }
