"""
Policy -- Per-tenant discount policy.

Approval thresholds, the business-wide discount cap and the approval expiry
window are tenant configuration passed explicitly into the combination
resolver and approval gate.  Nothing here is process-wide state.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from decimal import Decimal
from typing import Protocol

from discount_kernel.domain.allocation import AllocationMethod
from discount_kernel.domain.approval import ExpiryAction

DEFAULT_APPROVAL_THRESHOLD_PERCENTAGE = Decimal("20")


@dataclass(frozen=True)
class TenantDiscountPolicy:
    """
    Discount policy for one tenant.

    Guarantees:
        - Percentages are within [0, 100].
        - ``approval_expiry_hours`` of None means PENDING approvals never expire.
    """

    tenant_id: str
    currency: str = "USD"
    approval_threshold_percentage: Decimal = DEFAULT_APPROVAL_THRESHOLD_PERCENTAGE
    approval_threshold_amount: Decimal | None = None
    max_discount_percentage: Decimal | None = None
    approval_expiry_hours: int | None = None
    approval_expiry_action: ExpiryAction = ExpiryAction.EXPIRE
    exclusive_dominates: bool = True
    default_allocation_method: AllocationMethod = AllocationMethod.PRO_RATA_AMOUNT

    def __post_init__(self) -> None:
        for name in ("approval_threshold_percentage", "max_discount_percentage"):
            value = getattr(self, name)
            if value is not None and not (Decimal("0") <= value <= Decimal("100")):
                raise ValueError(f"{name} must be between 0 and 100, got {value}")
        if self.approval_threshold_amount is not None and self.approval_threshold_amount <= 0:
            raise ValueError("approval_threshold_amount must be positive")
        if self.approval_expiry_hours is not None and self.approval_expiry_hours <= 0:
            raise ValueError("approval_expiry_hours must be positive")

    def with_threshold(self, threshold_percentage: Decimal | None) -> TenantDiscountPolicy:
        """Per-call threshold override."""
        if threshold_percentage is None:
            return self
        return replace(self, approval_threshold_percentage=threshold_percentage)


class PolicySource(Protocol):
    """Resolves the discount policy for a tenant."""

    def policy_for(self, tenant_id: str) -> TenantDiscountPolicy:
        ...


class StaticPolicySource:
    """PolicySource backed by a fixed mapping, with a fallback default."""

    def __init__(
        self,
        policies: dict[str, TenantDiscountPolicy] | None = None,
        default: TenantDiscountPolicy | None = None,
    ):
        self._policies = dict(policies or {})
        self._default = default

    def policy_for(self, tenant_id: str) -> TenantDiscountPolicy:
        policy = self._policies.get(tenant_id)
        if policy is not None:
            return policy
        if self._default is not None:
            return replace(self._default, tenant_id=tenant_id)
        return TenantDiscountPolicy(tenant_id=tenant_id)
