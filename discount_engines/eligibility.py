"""
Module: discount_engines.eligibility
Responsibility:
    Decide whether a rule applies to a context and on what base amount:
    validity windows, promotional code constraints, best volume tier per
    scope, early-payment windows and attribute-pricing condition sets.

Architecture position:
    Engines -- pure calculation layer, zero I/O.  Rule sources load rules
    and usage counts, then delegate every decision here.

Invariants enforced:
    - Ineligibility is returned as ``Eligibility(False, reason)`` or an
      ineligible quote, never raised.
    - Volume: per scope, the single tier with the highest threshold not
      exceeding the actual quantity/amount wins; ties go to the greater
      discount.
    - Early payment: eligible iff payment_date <= invoice_date + discount_days.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Any

from discount_engines.calculation import compute_discount_amount
from discount_kernel.domain.collaborators import InvoiceSnapshot
from discount_kernel.domain.discounts import (
    AdjustmentType,
    AttributePricingTerms,
    DiscountContext,
    DiscountKind,
    DiscountRule,
    EarlyPaymentQuote,
    EarlyPaymentTerms,
    Eligibility,
    LineItem,
    PricingConditions,
    PromotionalTerms,
    VolumeScope,
    VolumeTierTerms,
)
from discount_kernel.domain.values import Money

# Reasons surfaced to callers
INVALID_OR_EXPIRED = "invalid_or_expired"
INACTIVE = "inactive"
NOT_YET_VALID = "not_yet_valid"
EXPIRED = "expired"
USAGE_LIMIT_REACHED = "usage_limit_reached"
CUSTOMER_LIMIT_REACHED = "customer_limit_reached"
MINIMUM_PURCHASE_NOT_MET = "minimum_purchase_not_met"
NOT_APPLICABLE_TO_CUSTOMER = "not_applicable_to_customer"
NOT_APPLICABLE_TO_ITEMS = "not_applicable_to_items"
PAYMENT_AFTER_DISCOUNT_WINDOW = "payment_after_discount_window"
CONDITIONS_NOT_MET = "conditions_not_met"


def check_validity_window(rule: DiscountRule, at: datetime) -> Eligibility:
    """Active flag plus inclusive [valid_from, valid_to] window."""
    if not rule.is_active:
        return Eligibility.no(INACTIVE)
    if rule.valid_from is not None and at < rule.valid_from:
        return Eligibility.no(NOT_YET_VALID)
    if rule.valid_to is not None and at > rule.valid_to:
        return Eligibility.no(EXPIRED)
    return Eligibility.ok()


def check_customer_scope(rule: DiscountRule, context: DiscountContext) -> Eligibility:
    if not rule.scope.matches_customer(context.customer_id, context.customer_segments):
        return Eligibility.no(NOT_APPLICABLE_TO_CUSTOMER)
    return Eligibility.ok()


def rule_base_amount(rule: DiscountRule, context: DiscountContext) -> Money:
    """Amount of the context the rule's category/service scope covers."""
    return Money.of(
        context.scoped_amount(rule.scope.categories, rule.scope.services),
        context.currency,
    )


# =============================================================================
# Promotional
# =============================================================================


def evaluate_promotion(
    rule: DiscountRule,
    context: DiscountContext,
    customer_redemptions: int,
) -> Eligibility:
    """
    Check a promotional rule already matched by code.

    Window problems collapse into ``invalid_or_expired`` so a user cannot
    discover which codes exist but are not live yet.
    """
    if not isinstance(rule.terms, PromotionalTerms):
        raise ValueError(f"Rule {rule.rule_id} is not promotional")

    if not check_validity_window(rule, context.evaluated_at).eligible:
        return Eligibility.no(INVALID_OR_EXPIRED)
    if rule.usage.is_exhausted:
        return Eligibility.no(USAGE_LIMIT_REACHED)
    limit = rule.usage.max_uses_per_customer
    if limit is not None and customer_redemptions >= limit:
        return Eligibility.no(CUSTOMER_LIMIT_REACHED)
    scope = check_customer_scope(rule, context)
    if not scope.eligible:
        return scope
    minimum = rule.terms.min_purchase_amount
    if minimum is not None and context.subtotal < minimum:
        return Eligibility.no(MINIMUM_PURCHASE_NOT_MET)
    if not rule_base_amount(rule, context).is_positive:
        return Eligibility.no(NOT_APPLICABLE_TO_ITEMS)
    return Eligibility.ok()


# =============================================================================
# Volume tiers
# =============================================================================


@dataclass(frozen=True)
class VolumeMatch:
    rule: DiscountRule
    base: Money
    discount: Money


def _volume_lines(terms: VolumeTierTerms, context: DiscountContext) -> tuple[LineItem, ...]:
    match terms.volume_scope:
        case VolumeScope.ALL:
            return context.line_items
        case VolumeScope.CATEGORY:
            return tuple(l for l in context.line_items if l.category_id == terms.target_id)
        case VolumeScope.SERVICE:
            return tuple(l for l in context.line_items if l.service_id == terms.target_id)
    return ()


def _volume_actuals(terms: VolumeTierTerms, context: DiscountContext) -> tuple[Decimal, Decimal]:
    """(quantity, amount) counted toward a tier."""
    if not context.line_items:
        if terms.volume_scope == VolumeScope.ALL:
            return Decimal("0"), context.subtotal
        return Decimal("0"), Decimal("0")
    lines = _volume_lines(terms, context)
    quantity = sum((l.quantity for l in lines), Decimal("0"))
    amount = sum((l.amount for l in lines), Decimal("0"))
    return quantity, amount


def _tier_qualifies(terms: VolumeTierTerms, quantity: Decimal, amount: Decimal) -> bool:
    if terms.min_quantity is None and terms.min_amount is None:
        return False
    if terms.min_quantity is not None and quantity < terms.min_quantity:
        return False
    if terms.min_amount is not None and amount < terms.min_amount:
        return False
    return True


def _tier_threshold(terms: VolumeTierTerms) -> tuple[Decimal, Decimal]:
    return (terms.min_quantity or Decimal("0"), terms.min_amount or Decimal("0"))


def select_volume_tiers(
    rules: Sequence[DiscountRule],
    context: DiscountContext,
) -> list[VolumeMatch]:
    """Best qualifying tier per scope, in scope order."""
    best: dict[tuple[str, str | None], tuple[tuple, VolumeMatch]] = {}

    for rule in rules:
        terms = rule.terms
        if not isinstance(terms, VolumeTierTerms):
            continue
        if not check_validity_window(rule, context.evaluated_at).eligible:
            continue
        if rule.usage.is_exhausted:
            continue
        if not check_customer_scope(rule, context).eligible:
            continue

        quantity, amount = _volume_actuals(terms, context)
        if not _tier_qualifies(terms, quantity, amount):
            continue

        base = Money.of(amount, context.currency)
        discount = compute_discount_amount(
            rule.kind, rule.value, base, rule.max_discount_amount,
        )
        match_ = VolumeMatch(rule=rule, base=base, discount=discount)
        key = (_tier_threshold(terms), discount.amount)
        current = best.get(terms.scope_key)
        if current is None or key > current[0]:
            best[terms.scope_key] = (key, match_)

    return [best[scope][1] for scope in sorted(best, key=lambda s: (s[0], s[1] or ""))]


# =============================================================================
# Early payment
# =============================================================================


def evaluate_early_payment(
    rule: DiscountRule,
    invoice: InvoiceSnapshot,
    payment_date: date,
) -> EarlyPaymentQuote:
    """Quote the early-payment discount for an invoice paid on ``payment_date``."""
    terms = rule.terms
    if not isinstance(terms, EarlyPaymentTerms):
        raise ValueError(f"Rule {rule.rule_id} is not an early-payment term")

    deadline = invoice.invoice_date + timedelta(days=terms.discount_days)
    net_due = invoice.invoice_date + timedelta(days=terms.net_days)

    if payment_date > deadline:
        return EarlyPaymentQuote(
            invoice_id=invoice.invoice_id,
            eligible=False,
            reason=PAYMENT_AFTER_DISCOUNT_WINDOW,
            rule_id=rule.rule_id,
            discount_percentage=rule.value,
            discount_deadline=deadline,
            net_due_date=net_due,
            days_late=(payment_date - deadline).days,
        )

    discount = compute_discount_amount(
        DiscountKind.PERCENTAGE,
        rule.value,
        Money.of(invoice.amount, invoice.currency),
        rule.max_discount_amount,
    )
    return EarlyPaymentQuote(
        invoice_id=invoice.invoice_id,
        eligible=True,
        rule_id=rule.rule_id,
        discount=discount,
        discount_percentage=rule.value,
        discount_deadline=deadline,
        net_due_date=net_due,
        days_early=(deadline - payment_date).days,
    )


# =============================================================================
# Attribute-based pricing
# =============================================================================


def _attribute_matches(actual: Any, expected: str) -> bool:
    return actual is not None and str(actual) == str(expected)


def match_pricing_conditions(
    conditions: PricingConditions,
    context: DiscountContext,
    scoped_lines: Sequence[LineItem],
) -> Eligibility:
    """All conditions must hold; an empty condition set always matches."""
    if conditions.customer_categories and (
        context.customer_category not in conditions.customer_categories
    ):
        return Eligibility.no("customer_category_mismatch")
    if conditions.customer_segments and not (
        conditions.customer_segments & context.customer_segments
    ):
        return Eligibility.no("customer_segment_mismatch")

    if context.line_items:
        quantity = sum((l.quantity for l in scoped_lines), Decimal("0"))
        amount = sum((l.amount for l in scoped_lines), Decimal("0"))
    else:
        quantity, amount = Decimal("1"), context.subtotal

    if conditions.min_quantity is not None and quantity < conditions.min_quantity:
        return Eligibility.no("quantity_below_minimum")
    if conditions.max_quantity is not None and quantity > conditions.max_quantity:
        return Eligibility.no("quantity_above_maximum")
    if conditions.min_amount is not None and amount < conditions.min_amount:
        return Eligibility.no("amount_below_minimum")

    at = context.evaluated_at
    if conditions.days_of_week and at.weekday() not in conditions.days_of_week:
        return Eligibility.no("outside_days_of_week")
    if conditions.hour_start is not None or conditions.hour_end is not None:
        start = conditions.hour_start if conditions.hour_start is not None else 0
        end = conditions.hour_end if conditions.hour_end is not None else 24
        if not (start <= at.hour < end):
            return Eligibility.no("outside_hours")

    for key, expected in conditions.attributes:
        if not _attribute_matches(context.attributes.get(key), expected):
            return Eligibility.no(CONDITIONS_NOT_MET)
    return Eligibility.ok()


def compute_pricing_adjustment(rule: DiscountRule, context: DiscountContext) -> Money:
    """
    Discount produced by an attribute pricing rule.

    PERCENTAGE and FIXED_AMOUNT are deltas on the scoped amount.  OVERRIDE
    sets a flat unit price for the scoped lines; the discount is the scoped
    amount minus the overridden total, never negative.
    """
    terms = rule.terms
    if not isinstance(terms, AttributePricingTerms):
        raise ValueError(f"Rule {rule.rule_id} is not an attribute pricing rule")

    base = rule_base_amount(rule, context)
    if terms.adjustment == AdjustmentType.OVERRIDE:
        if context.line_items:
            lines = context.lines_in_scope(rule.scope.categories, rule.scope.services)
            quantity = sum((l.quantity for l in lines), Decimal("0"))
        else:
            quantity = Decimal("1")
        override_total = Money.of(rule.value * quantity, context.currency).round()
        if override_total >= base:
            return Money.zero(context.currency)
        discount = base - override_total
        if rule.max_discount_amount is not None:
            discount = Money(min(discount.amount, rule.max_discount_amount), discount.currency)
        return discount.round()

    kind = (
        DiscountKind.PERCENTAGE
        if terms.adjustment == AdjustmentType.PERCENTAGE
        else DiscountKind.FIXED_AMOUNT
    )
    return compute_discount_amount(kind, rule.value, base, rule.max_discount_amount)
