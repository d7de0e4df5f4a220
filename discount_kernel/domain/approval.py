"""
Approval -- Discount approval gate state machine and DTOs.

Responsibility:
    Pure domain types for the approval gate: the status lifecycle, its
    legal transitions, the evaluation outcome produced by the approval
    engine, and the persisted approval record as a frozen DTO.

Architecture position:
    Kernel > Domain -- pure functional core, zero I/O.

Invariants enforced:
    - PENDING is the only non-terminal persisted status.
    - APPROVED, REJECTED and EXPIRED are terminal and immutable.
    - NOT_REQUIRED is an evaluation outcome only; it is never persisted.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID


class ApprovalStatus(str, Enum):
    """Lifecycle status of a discount approval."""

    NOT_REQUIRED = "not_required"
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    EXPIRED = "expired"


class ExpiryAction(str, Enum):
    """What happens to a PENDING approval that outlives its tenant's window."""

    EXPIRE = "expire"
    REJECT = "reject"


APPROVAL_TRANSITIONS: dict[ApprovalStatus, frozenset[ApprovalStatus]] = {
    ApprovalStatus.PENDING: frozenset({
        ApprovalStatus.APPROVED,
        ApprovalStatus.REJECTED,
        ApprovalStatus.EXPIRED,
    }),
    ApprovalStatus.APPROVED: frozenset(),
    ApprovalStatus.REJECTED: frozenset(),
    ApprovalStatus.EXPIRED: frozenset(),
}

TERMINAL_APPROVAL_STATUSES: frozenset[ApprovalStatus] = frozenset({
    ApprovalStatus.APPROVED,
    ApprovalStatus.REJECTED,
    ApprovalStatus.EXPIRED,
})


def can_transition(current: ApprovalStatus, target: ApprovalStatus) -> bool:
    return target in APPROVAL_TRANSITIONS.get(current, frozenset())


@dataclass(frozen=True)
class ApprovalCheck:
    """Outcome of evaluating a resolved discount against tenant thresholds."""

    required: bool
    discount_amount: Decimal
    discount_percentage: Decimal
    threshold_percentage: Decimal
    threshold_amount: Decimal | None = None
    triggered_by: str | None = None

    @property
    def status(self) -> ApprovalStatus:
        return ApprovalStatus.PENDING if self.required else ApprovalStatus.NOT_REQUIRED


@dataclass(frozen=True)
class DiscountApproval:
    """Persisted approval request for one priced context."""

    approval_id: UUID
    tenant_id: str
    transaction_ref: str | None
    context_fingerprint: str
    customer_id: str
    currency: str
    subtotal: Decimal
    requested_amount: Decimal
    requested_percentage: Decimal
    threshold_percentage: Decimal
    status: ApprovalStatus
    requested_by: UUID
    requested_at: datetime
    threshold_amount: Decimal | None = None
    reason: str | None = None
    approver_id: UUID | None = None
    approval_notes: str | None = None
    rejection_reason: str | None = None
    resolved_at: datetime | None = None
    request_hash: str | None = None

    @property
    def is_pending(self) -> bool:
        return self.status == ApprovalStatus.PENDING

    def to_dict(self) -> dict[str, Any]:
        return {
            "approval_id": str(self.approval_id),
            "transaction_ref": self.transaction_ref,
            "customer_id": self.customer_id,
            "currency": self.currency,
            "subtotal": str(self.subtotal),
            "requested_amount": str(self.requested_amount),
            "requested_percentage": str(self.requested_percentage),
            "threshold_percentage": str(self.threshold_percentage),
            "threshold_amount": (
                str(self.threshold_amount) if self.threshold_amount is not None else None
            ),
            "status": self.status.value,
            "requested_by": str(self.requested_by),
            "requested_at": self.requested_at.isoformat(),
            "reason": self.reason,
            "approver_id": str(self.approver_id) if self.approver_id else None,
            "approval_notes": self.approval_notes,
            "rejection_reason": self.rejection_reason,
            "resolved_at": self.resolved_at.isoformat() if self.resolved_at else None,
        }
