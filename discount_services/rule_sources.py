"""
discount_services.rule_sources -- The four discount rule sources.

Responsibility:
    Each source loads its tenant's active rules through RuleService and
    turns the ones that apply to a DiscountContext into DiscountOffers.
    All eligibility decisions are delegated to discount_engines.eligibility.

Architecture position:
    Services -- stateful orchestration over engines + kernel.

Invariants enforced:
    - Sources never raise for an ineligible rule; they return fewer offers.
    - Offers are computed in the context's currency and never exceed the
      amount they apply to.
    - Every query is scoped to ``context.tenant_id``.
"""

from __future__ import annotations

from datetime import date
from decimal import Decimal

from discount_engines.calculation import compute_discount_amount
from discount_engines.eligibility import (
    INVALID_OR_EXPIRED,
    check_customer_scope,
    check_validity_window,
    compute_pricing_adjustment,
    evaluate_early_payment,
    evaluate_promotion,
    match_pricing_conditions,
    rule_base_amount,
    select_volume_tiers,
)
from discount_kernel.domain.collaborators import InvoiceLookup
from discount_kernel.domain.discounts import (
    AttributePricingTerms,
    DiscountContext,
    DiscountKind,
    DiscountOffer,
    DiscountRule,
    EarlyPaymentQuote,
    PromoValidation,
    RuleSourceType,
)
from discount_kernel.domain.values import Money
from discount_kernel.exceptions import InvoiceNotFoundError
from discount_kernel.logging_config import get_logger
from discount_kernel.services.redemption_service import RedemptionService
from discount_kernel.services.rule_service import RuleService

logger = get_logger("services.rule_sources")

NO_PAYMENT_TERMS = "no_payment_terms"


def _describe(rule: DiscountRule) -> str:
    if rule.kind == DiscountKind.PERCENTAGE:
        return f"{rule.value.normalize():f}% off"
    return f"{rule.value.normalize():f} off"


def make_offer(rule: DiscountRule, amount: Money, description: str | None = None) -> DiscountOffer:
    return DiscountOffer(
        rule_id=rule.rule_id,
        source_type=rule.source_type,
        label=rule.label,
        amount=amount,
        stacking=rule.stacking,
        priority=rule.priority,
        kind=rule.kind,
        value=rule.value,
        description=description or _describe(rule),
    )


class PromotionalRuleSource:
    """Discount unlocked by a promotional code on the context."""

    source_type = RuleSourceType.PROMOTIONAL

    def __init__(self, rules: RuleService, redemptions: RedemptionService):
        self._rules = rules
        self._redemptions = redemptions

    def validate_code(self, context: DiscountContext, code: str | None = None) -> PromoValidation:
        """Explicit feedback on a code: the discount it gives or why not."""
        code = (code or context.promo_code or "").strip()
        if not code:
            return PromoValidation(valid=False, reason=INVALID_OR_EXPIRED)

        rule = self._rules.find_promotion(context.tenant_id, code)
        if rule is None:
            return PromoValidation(valid=False, reason=INVALID_OR_EXPIRED)

        used = 0
        if rule.usage.max_uses_per_customer is not None:
            used = self._redemptions.customer_redemptions(
                context.tenant_id, rule.rule_id, context.customer_id,
            )
        eligibility = evaluate_promotion(rule, context, used)
        if not eligibility.eligible:
            return PromoValidation(valid=False, reason=eligibility.reason, rule_id=rule.rule_id)

        discount = compute_discount_amount(
            rule.kind, rule.value, rule_base_amount(rule, context), rule.max_discount_amount,
        )
        return PromoValidation(valid=True, rule_id=rule.rule_id, discount=discount)

    def find_candidates(self, context: DiscountContext) -> list[DiscountOffer]:
        if not context.promo_code:
            return []
        validation = self.validate_code(context)
        if not validation.valid or validation.discount is None:
            logger.debug(
                "promo_code_not_applied",
                extra={"reason": validation.reason},
            )
            return []
        rule = self._rules.get_rule(context.tenant_id, self.source_type, validation.rule_id)
        return [make_offer(rule, validation.discount)]


class EarlyPaymentRuleSource:
    """Discount for paying an invoice inside its payment term's window."""

    source_type = RuleSourceType.EARLY_PAYMENT

    def __init__(self, rules: RuleService, invoices: InvoiceLookup | None = None):
        self._rules = rules
        self._invoices = invoices

    def quote(
        self,
        tenant_id: str,
        invoice_id: str,
        payment_date: date,
    ) -> EarlyPaymentQuote:
        """
        Quote the early-payment discount for paying ``invoice_id`` on
        ``payment_date``.

        Raises:
            InvoiceNotFoundError: No invoice lookup is configured or the
                invoice does not exist for the tenant.
        """
        invoice = self._invoices.get_invoice(tenant_id, invoice_id) if self._invoices else None
        if invoice is None or invoice.tenant_id != tenant_id:
            raise InvoiceNotFoundError(invoice_id)

        term = self._rules.payment_term_for_customer(tenant_id, invoice.customer_id)
        if term is None:
            return EarlyPaymentQuote(invoice_id=invoice_id, eligible=False, reason=NO_PAYMENT_TERMS)
        return evaluate_early_payment(term, invoice, payment_date)

    def find_candidates(self, context: DiscountContext) -> list[DiscountOffer]:
        if not context.invoice_id or context.payment_date is None or self._invoices is None:
            return []
        try:
            quote = self.quote(context.tenant_id, context.invoice_id, context.payment_date)
        except InvoiceNotFoundError:
            logger.warning("early_payment_invoice_missing", extra={"invoice_id": context.invoice_id})
            return []
        if not quote.eligible or quote.rule_id is None:
            return []

        rule = self._rules.get_rule(context.tenant_id, self.source_type, quote.rule_id)
        if not check_validity_window(rule, context.evaluated_at).eligible:
            return []
        if rule.usage.is_exhausted:
            return []
        amount = compute_discount_amount(
            DiscountKind.PERCENTAGE, rule.value, context.subtotal_money, rule.max_discount_amount,
        )
        description = f"{rule.value.normalize():f}% early payment, {quote.days_early} days early"
        return [make_offer(rule, amount, description)]


class VolumeTierSource:
    """Best qualifying volume tier per scope."""

    source_type = RuleSourceType.VOLUME

    def __init__(self, rules: RuleService):
        self._rules = rules

    def find_candidates(self, context: DiscountContext) -> list[DiscountOffer]:
        rules = self._rules.active_rules(context.tenant_id, self.source_type)
        return [
            make_offer(m.rule, m.discount, f"{m.rule.terms.tier_name}: {_describe(m.rule)}")
            for m in select_volume_tiers(rules, context)
        ]


class AttributePricingSource:
    """Rules whose condition set matches the customer, basket and time."""

    source_type = RuleSourceType.ATTRIBUTE_PRICING

    def __init__(self, rules: RuleService):
        self._rules = rules

    def find_candidates(self, context: DiscountContext) -> list[DiscountOffer]:
        offers: list[DiscountOffer] = []
        for rule in self._rules.active_rules(context.tenant_id, self.source_type):
            terms = rule.terms
            if not isinstance(terms, AttributePricingTerms):
                continue
            if not check_validity_window(rule, context.evaluated_at).eligible:
                continue
            if rule.usage.is_exhausted or not check_customer_scope(rule, context).eligible:
                continue
            scoped = context.lines_in_scope(rule.scope.categories, rule.scope.services)
            if context.line_items and not scoped:
                continue
            if not match_pricing_conditions(terms.conditions, context, scoped).eligible:
                continue
            amount = compute_pricing_adjustment(rule, context)
            if amount.amount > Decimal("0"):
                offers.append(make_offer(rule, amount))
        return offers
