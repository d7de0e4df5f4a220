"""
Module: discount_engines.calculation
Responsibility:
    Single-rule discount arithmetic: turn a rule's kind and value into an
    amount for a given base, honouring the rule's own cap, and validate
    rule values at definition time.

Architecture position:
    Engines -- pure calculation layer, zero I/O.

Invariants enforced:
    - A computed discount never exceeds its base amount.
    - Percentages are capped at 100.
    - Results are rounded half-up to the currency minor unit.
"""

from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal

from discount_kernel.domain.discounts import DiscountKind, validate_discount_value
from discount_kernel.domain.values import Money

__all__ = [
    "HUNDRED",
    "compute_discount_amount",
    "percentage_of",
    "validate_discount_value",
]

HUNDRED = Decimal("100")


def compute_discount_amount(
    kind: DiscountKind,
    value: Decimal,
    base: Money,
    max_discount_amount: Decimal | None = None,
) -> Money:
    """
    Discount produced by one rule on ``base``.

    Non-positive bases and values yield zero; callers drop zero offers.
    """
    if base.amount <= 0 or value <= 0:
        return Money.zero(base.currency)

    if kind == DiscountKind.PERCENTAGE:
        raw = base.amount * min(value, HUNDRED) / HUNDRED
    else:
        raw = min(value, base.amount)

    if max_discount_amount is not None:
        raw = min(raw, max_discount_amount)

    amount = Money(raw, base.currency).round(ROUND_HALF_UP)
    if amount > base:
        return base
    return amount


def percentage_of(part: Decimal, whole: Decimal) -> Decimal:
    """``part / whole * 100``; zero when whole is zero."""
    if whole == 0:
        return Decimal("0")
    return part / whole * HUNDRED
