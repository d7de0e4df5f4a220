"""
Module: discount_engines.allocation
Responsibility:
    Split a finalized discount total across the line items of a transaction
    (pro-rata by amount, pro-rata by quantity, custom weights, equal) with
    exact minor-unit reconciliation by the largest-remainder method.

Architecture position:
    Engines -- pure calculation layer, zero I/O.
    May only import discount_kernel/domain.

Invariants enforced:
    - sum(shares) == total exactly, at the currency's minor unit, for any
      line count and any total (including totals not evenly divisible).
    - Leftover minor units go one at a time to the lines with the largest
      fractional remainders; ties go to the earlier line.
    - Purity: no clock access, no I/O.

Failure modes:
    - ValueError on an empty line list, negative weights, a zero total
      weight with a positive total, custom weights not summing to 1, or a
      total with sub-minor-unit precision.

Usage:
    engine = AllocationEngine()
    outcome = engine.allocate(
        total=Money.of("10.00", "USD"),
        lines=[
            AllocationLineInput("l1", Decimal("33.33")),
            AllocationLineInput("l2", Decimal("33.33")),
            AllocationLineInput("l3", Decimal("33.34")),
        ],
        method=AllocationMethod.PRO_RATA_AMOUNT,
    )
    # 3.33 / 3.33 / 3.34
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from decimal import ROUND_DOWN, Decimal, localcontext

from discount_engines.tracer import traced_engine
from discount_kernel.domain.allocation import AllocationLineInput, AllocationMethod
from discount_kernel.domain.values import Money
from discount_kernel.logging_config import get_logger

logger = get_logger("engines.allocation")

CUSTOM_WEIGHT_TOLERANCE = Decimal("0.001")


def largest_remainder_split(total: Money, weights: Sequence[Decimal]) -> list[Money]:
    """
    Split ``total`` proportionally to ``weights`` in whole minor units.

    Each raw share is truncated to the minor unit; the leftover units are
    handed out by descending fractional remainder, ties by position.
    """
    if not weights:
        raise ValueError("At least one weight is required")
    if any(w < 0 for w in weights):
        raise ValueError("Weights cannot be negative")
    if total.is_negative:
        raise ValueError("Cannot split a negative total")

    unit = total.currency.minor_unit
    if total.amount != total.amount.quantize(unit):
        raise ValueError(
            f"Total {total} has more precision than the currency minor unit {unit}"
        )
    if total.is_zero:
        return [Money.zero(total.currency) for _ in weights]

    weight_sum = sum(weights, Decimal("0"))
    if weight_sum == 0:
        raise ValueError("Total weight is zero; cannot split a positive total")

    with localcontext() as ctx:
        ctx.prec = 60
        raw = [total.amount * w / weight_sum for w in weights]
        truncated = [r.quantize(unit, rounding=ROUND_DOWN) for r in raw]
        remainders = [r - t for r, t in zip(raw, truncated)]
        leftover_units = int((total.amount - sum(truncated, Decimal("0"))) / unit)

    if not 0 <= leftover_units <= len(weights):
        raise ValueError(f"Unexpected leftover of {leftover_units} minor units")

    order = sorted(range(len(weights)), key=lambda i: (-remainders[i], i))
    for i in order[:leftover_units]:
        truncated[i] += unit

    return [Money(amount, total.currency) for amount in truncated]


@dataclass(frozen=True)
class AllocationShare:
    """One line's allocated share."""

    line_ref: str
    sequence: int
    basis_amount: Decimal
    weight: Decimal
    allocated: Money


@dataclass(frozen=True)
class AllocationOutcome:
    """
    Result of an allocation run.

    Guarantees:
        - ``sum(s.allocated for s in shares) == total``.
    """

    method: AllocationMethod
    total: Money
    shares: tuple[AllocationShare, ...]

    @property
    def allocated_total(self) -> Money:
        result = Money.zero(self.total.currency)
        for share in self.shares:
            result = result + share.allocated
        return result

    @property
    def is_reconciled(self) -> bool:
        return self.allocated_total == self.total


class AllocationEngine:
    """
    Distributes a discount total across transaction lines.

    Contract:
        Pure; returns an AllocationOutcome and never persists.

    Non-goals:
        - Does not decide *whether* a discount may be allocated; the
          allocation service enforces approval and duplicate checks.
    """

    @traced_engine("discount_allocation", "1.0", fingerprint_fields=("total", "method"))
    def allocate(
        self,
        *,
        total: Money,
        lines: Sequence[AllocationLineInput],
        method: AllocationMethod = AllocationMethod.PRO_RATA_AMOUNT,
    ) -> AllocationOutcome:
        if not lines:
            raise ValueError("Cannot allocate across zero line items")

        logger.info(
            "allocation_started",
            extra={
                "method": method.value,
                "total": str(total.amount),
                "currency": total.currency.code,
                "line_count": len(lines),
            },
        )

        weights = self._weights(lines, method)
        amounts = largest_remainder_split(total, weights)

        shares = tuple(
            AllocationShare(
                line_ref=line.line_ref,
                sequence=idx + 1,
                basis_amount=line.amount,
                weight=weight,
                allocated=amount,
            )
            for idx, (line, weight, amount) in enumerate(zip(lines, weights, amounts))
        )
        outcome = AllocationOutcome(method=method, total=total, shares=shares)

        logger.info(
            "allocation_completed",
            extra={
                "method": method.value,
                "total": str(total.amount),
                "allocated": str(outcome.allocated_total.amount),
            },
        )
        return outcome

    def _weights(
        self,
        lines: Sequence[AllocationLineInput],
        method: AllocationMethod,
    ) -> list[Decimal]:
        match method:
            case AllocationMethod.PRO_RATA_AMOUNT:
                return [line.amount for line in lines]
            case AllocationMethod.PRO_RATA_QUANTITY:
                return [line.quantity for line in lines]
            case AllocationMethod.EQUAL:
                return [Decimal("1")] * len(lines)
            case AllocationMethod.CUSTOM_WEIGHTS:
                if any(line.weight is None for line in lines):
                    raise ValueError("Every line needs a weight for custom-weight allocation")
                weights = [line.weight for line in lines]
                if abs(sum(weights, Decimal("0")) - Decimal("1")) > CUSTOM_WEIGHT_TOLERANCE:
                    raise ValueError("Custom weights must sum to 1")
                return weights
            case _:
                raise ValueError(f"Unknown allocation method: {method}")
