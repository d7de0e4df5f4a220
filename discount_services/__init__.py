"""
Discount services: rule sources, discovery, allocation, pricing orchestration.

Stateful orchestration over discount_engines (pure calculation) and
discount_kernel (domain, persistence, kernel services).
"""

from discount_services.allocation_service import AllocationService
from discount_services.discovery import DiscountDiscovery
from discount_services.operations import DiscountOperations, OperationResult
from discount_services.pricing_orchestrator import (
    PricingOrchestrator,
    PricingResult,
    PricingStatus,
)
from discount_services.rule_sources import (
    AttributePricingSource,
    EarlyPaymentRuleSource,
    PromotionalRuleSource,
    VolumeTierSource,
)

__all__ = [
    "AllocationService",
    "AttributePricingSource",
    "DiscountDiscovery",
    "DiscountOperations",
    "EarlyPaymentRuleSource",
    "OperationResult",
    "PricingOrchestrator",
    "PricingResult",
    "PricingStatus",
    "PromotionalRuleSource",
    "VolumeTierSource",
]
