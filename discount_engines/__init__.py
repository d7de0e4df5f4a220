"""
Module: discount_engines
Responsibility:
    Package entrypoint re-exporting the pure discount calculation engines.
    This is the import surface for discount_services.

Architecture position:
    Engines -- pure calculation layer, zero I/O.
    May only import discount_kernel/domain (and sibling engine modules).
    MUST NOT import discount_services.

Invariants enforced:
    - Purity: engines never read the clock; times are passed in.
    - Decimal-only arithmetic; floats are rejected by Money.
    - Determinism: identical inputs always produce identical outputs.

Audit relevance:
    Engine entrypoints are wrapped by ``@traced_engine`` and emit
    DISCOUNT_ENGINE_TRACE log records.

Usage:
    from discount_engines import resolve_combination, AllocationEngine
"""

from discount_engines.allocation import (
    AllocationEngine,
    AllocationOutcome,
    AllocationShare,
    largest_remainder_split,
)
from discount_engines.approval import evaluate_discount_approval, is_approval_expired
from discount_engines.calculation import (
    compute_discount_amount,
    percentage_of,
    validate_discount_value,
)
from discount_engines.combination import resolve_combination
from discount_engines.eligibility import (
    VolumeMatch,
    check_validity_window,
    compute_pricing_adjustment,
    evaluate_early_payment,
    evaluate_promotion,
    match_pricing_conditions,
    select_volume_tiers,
)
from discount_engines.tracer import traced_engine

__all__ = [
    "AllocationEngine",
    "AllocationOutcome",
    "AllocationShare",
    "VolumeMatch",
    "check_validity_window",
    "compute_discount_amount",
    "compute_pricing_adjustment",
    "evaluate_discount_approval",
    "evaluate_early_payment",
    "evaluate_promotion",
    "is_approval_expired",
    "largest_remainder_split",
    "match_pricing_conditions",
    "percentage_of",
    "resolve_combination",
    "select_volume_tiers",
    "traced_engine",
    "validate_discount_value",
]
