"""
Module: discount_engines.combination
Responsibility:
    Resolve the set of discount offers that actually apply to a context
    under stacking rules, the subtotal ceiling and an optional tenant-wide
    percentage cap.

Architecture position:
    Engines -- pure calculation layer, zero I/O.

Invariants enforced:
    - total_discount <= subtotal and final_amount >= 0.
    - When exclusivity dominates, an EXCLUSIVE winner is applied alone.
      Winner order: highest priority, then largest amount, then rule id.
    - Scaling down to a cap keeps the applied amounts summing exactly to the
      capped total (largest remainder).
    - Deterministic: the same offers always resolve to the same result.

Worked example:
    subtotal 100.00, offers A 10% stackable and B 7.50 fixed stackable
    -> applied A=10.00, B=7.50, total 17.50, final 82.50.
"""

from __future__ import annotations

from collections.abc import Sequence
from decimal import ROUND_DOWN, Decimal

from discount_engines.allocation import largest_remainder_split
from discount_engines.calculation import HUNDRED
from discount_engines.tracer import traced_engine
from discount_kernel.domain.discounts import CombinationResult, DiscountOffer
from discount_kernel.domain.values import Money
from discount_kernel.logging_config import get_logger

logger = get_logger("engines.combination")

CAPPED_BY_SUBTOTAL = "subtotal"
CAPPED_BY_PERCENTAGE = "max_discount_percentage"


def _winner_key(offer: DiscountOffer) -> tuple:
    return (-offer.priority, -offer.amount.amount, str(offer.rule_id))


def _sum(offers: Sequence[DiscountOffer], zero: Money) -> Money:
    total = zero
    for offer in offers:
        total = total + offer.amount
    return total


@traced_engine(
    "discount_combination",
    "1.0",
    fingerprint_fields=("subtotal", "max_discount_percentage", "exclusive_dominates"),
)
def resolve_combination(
    *,
    offers: Sequence[DiscountOffer],
    subtotal: Money,
    max_discount_percentage: Decimal | None = None,
    exclusive_dominates: bool = True,
) -> CombinationResult:
    """
    Pick the applied offers and the total discount.

    Args:
        offers: Candidate offers, any order; non-positive offers are ignored.
        subtotal: Pre-discount amount of the transaction.
        max_discount_percentage: Optional tenant cap on the total discount.
        exclusive_dominates: When False, the best EXCLUSIVE offer competes
            against the sum of all STACKABLE offers and the larger wins.
    """
    zero = Money.zero(subtotal.currency)
    for offer in offers:
        if offer.amount.currency != subtotal.currency:
            raise ValueError(
                f"Offer {offer.rule_id} is in {offer.amount.currency.code}, "
                f"transaction is in {subtotal.currency.code}"
            )

    candidates = [o for o in offers if o.amount.is_positive]
    exclusives = sorted((o for o in candidates if o.is_exclusive), key=_winner_key)
    stackables = sorted((o for o in candidates if not o.is_exclusive), key=_winner_key)

    exclusive_applied = False
    if exclusives and exclusive_dominates:
        applied = [exclusives[0]]
        exclusive_applied = True
    elif exclusives:
        stack_total = _sum(stackables, zero)
        if exclusives[0].amount > stack_total:
            applied = [exclusives[0]]
            exclusive_applied = True
        else:
            applied = list(stackables)
    else:
        applied = list(stackables)

    applied_ids = {o.rule_id for o in applied}
    discarded = tuple(o for o in candidates if o.rule_id not in applied_ids)

    raw_total = _sum(applied, zero)
    cap = subtotal
    capped_by = CAPPED_BY_SUBTOTAL
    if max_discount_percentage is not None:
        pct_cap = Money(subtotal.amount * max_discount_percentage / HUNDRED, subtotal.currency)
        pct_cap = pct_cap.round(ROUND_DOWN)
        if pct_cap < cap:
            cap = pct_cap
            capped_by = CAPPED_BY_PERCENTAGE

    if raw_total > cap:
        scaled = largest_remainder_split(cap, [o.amount.amount for o in applied])
        applied = [o.with_amount(amount) for o, amount in zip(applied, scaled)]
        total = cap
        logger.info(
            "combination_capped",
            extra={
                "capped_by": capped_by,
                "uncapped_total": str(raw_total.amount),
                "capped_total": str(cap.amount),
            },
        )
    else:
        total = raw_total
        capped_by = None

    result = CombinationResult(
        applied_offers=tuple(applied),
        discarded_offers=discarded,
        subtotal=subtotal,
        total_discount=total,
        final_amount=subtotal - total,
        exclusive_applied=exclusive_applied,
        capped_by=capped_by,
    )
    logger.debug(
        "combination_resolved",
        extra={
            "candidate_count": len(candidates),
            "applied_count": len(result.applied_offers),
            "total_discount": str(total.amount),
            "exclusive_applied": exclusive_applied,
        },
    )
    return result
