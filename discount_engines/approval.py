"""
Module: discount_engines.approval
Responsibility:
    Decide whether a resolved discount needs manager approval and whether a
    pending approval has gone stale.

Architecture position:
    Engines -- pure calculation layer, zero I/O.

Invariants enforced:
    - Approval is required iff the discount percentage is >= the threshold
      percentage, or the discount amount is >= the optional threshold amount.
    - A zero discount never requires approval.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from decimal import Decimal

from discount_engines.calculation import percentage_of
from discount_engines.tracer import traced_engine
from discount_kernel.domain.approval import ApprovalCheck
from discount_kernel.domain.clock import ensure_aware
from discount_kernel.domain.values import Money


@traced_engine(
    "discount_approval",
    "1.0",
    fingerprint_fields=("total_discount", "subtotal", "threshold_percentage"),
)
def evaluate_discount_approval(
    *,
    total_discount: Money,
    subtotal: Money,
    threshold_percentage: Decimal,
    threshold_amount: Decimal | None = None,
) -> ApprovalCheck:
    """Compare a discount against the tenant's approval thresholds."""
    if threshold_percentage < 0:
        raise ValueError("threshold_percentage cannot be negative")

    pct = percentage_of(total_discount.amount, subtotal.amount)
    if not total_discount.is_positive:
        return ApprovalCheck(
            required=False,
            discount_amount=total_discount.amount,
            discount_percentage=pct,
            threshold_percentage=threshold_percentage,
            threshold_amount=threshold_amount,
        )

    triggered_by = None
    if pct >= threshold_percentage:
        triggered_by = "percentage"
    elif threshold_amount is not None and total_discount.amount >= threshold_amount:
        triggered_by = "amount"

    return ApprovalCheck(
        required=triggered_by is not None,
        discount_amount=total_discount.amount,
        discount_percentage=pct,
        threshold_percentage=threshold_percentage,
        threshold_amount=threshold_amount,
        triggered_by=triggered_by,
    )


def is_approval_expired(
    requested_at: datetime,
    as_of: datetime,
    expiry_hours: int | None,
) -> bool:
    """True when a pending approval is at least ``expiry_hours`` old. Naive values are UTC."""
    if expiry_hours is None:
        return False
    return ensure_aware(as_of) >= ensure_aware(requested_at) + timedelta(hours=expiry_hours)
