"""ORM models for the discount kernel."""

from discount_kernel.models.allocation import (
    DiscountAllocationLineModel,
    DiscountAllocationModel,
)
from discount_kernel.models.approval import DiscountApprovalModel
from discount_kernel.models.audit_event import AuditAction, AuditEvent, SequenceCounter
from discount_kernel.models.redemption import DiscountRedemption
from discount_kernel.models.rules import (
    RULE_MODELS,
    CustomerPaymentTerm,
    DiscountRuleColumns,
    EarlyPaymentTerm,
    PricingRule,
    PromotionalDiscount,
    VolumeDiscountTier,
)

__all__ = [
    "AuditAction",
    "AuditEvent",
    "CustomerPaymentTerm",
    "DiscountAllocationLineModel",
    "DiscountAllocationModel",
    "DiscountApprovalModel",
    "DiscountRedemption",
    "DiscountRuleColumns",
    "EarlyPaymentTerm",
    "PricingRule",
    "PromotionalDiscount",
    "RULE_MODELS",
    "SequenceCounter",
    "VolumeDiscountTier",
]
