"""
Discounts -- Rule, context, and offer value types.

Responsibility:
    Defines the immutable vocabulary shared by rule sources, discovery,
    the combination resolver and the orchestrator: what a discount rule is,
    what a pricing request looks like, and what a candidate discount offer
    carries.

Architecture position:
    Kernel > Domain -- pure functional core, zero I/O.

Invariants enforced:
    - DiscountContext is validated at construction and immutable afterwards.
      Its subtotal equals the sum of its line amounts when lines are given.
    - DiscountRule variants are a tagged union: ``source_type`` names the
      variant and ``terms`` carries the variant-specific data.
    - Ineligibility is a value (``Eligibility``), never an exception.

Failure modes:
    - ContextValidationError on a malformed pricing context.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from types import MappingProxyType
from typing import Any, Mapping, Protocol, Union
from uuid import UUID

from discount_kernel.domain.currency import CurrencyRegistry
from discount_kernel.domain.values import Money
from discount_kernel.exceptions import ContextValidationError


class DiscountKind(str, Enum):
    """How a rule's value is interpreted."""

    PERCENTAGE = "percentage"
    FIXED_AMOUNT = "fixed_amount"


class RuleSourceType(str, Enum):
    """Variant tag of a discount rule."""

    PROMOTIONAL = "promotional"
    EARLY_PAYMENT = "early_payment"
    VOLUME = "volume"
    ATTRIBUTE_PRICING = "attribute_pricing"


class StackingPolicy(str, Enum):
    """Whether a rule may combine with others in one transaction."""

    EXCLUSIVE = "exclusive"
    STACKABLE = "stackable"


class VolumeScope(str, Enum):
    """Which lines count toward a volume tier threshold."""

    ALL = "all"
    CATEGORY = "category"
    SERVICE = "service"


class AdjustmentType(str, Enum):
    """Attribute pricing adjustment: a delta or a flat override price."""

    PERCENTAGE = "percentage"
    FIXED_AMOUNT = "fixed_amount"
    OVERRIDE = "override"


# =============================================================================
# Pricing context
# =============================================================================


@dataclass(frozen=True)
class LineItem:
    """One line of the transaction being priced."""

    line_id: str
    amount: Decimal
    quantity: Decimal = Decimal("1")
    product_id: str | None = None
    service_id: str | None = None
    category_id: str | None = None


@dataclass(frozen=True)
class DiscountContext:
    """
    One pricing request.

    Contract:
        Built once per preview/calculate call and never persisted.  All
        fields are validated in ``__post_init__``; a malformed context never
        reaches a rule source.

    Guarantees:
        - ``subtotal == sum(line.amount)`` when line items are present.
        - ``evaluated_at`` is timezone-aware.
        - ``attributes`` is read-only.
    """

    tenant_id: str
    customer_id: str
    subtotal: Decimal
    evaluated_at: datetime
    currency: str = "USD"
    line_items: tuple[LineItem, ...] = ()
    promo_code: str | None = None
    customer_segments: frozenset[str] = frozenset()
    customer_category: str | None = None
    attributes: Mapping[str, Any] = field(default_factory=dict)
    transaction_ref: str | None = None
    invoice_id: str | None = None
    payment_date: date | None = None

    def __post_init__(self) -> None:
        errors: dict[str, str] = {}

        if not self.tenant_id:
            errors["tenant_id"] = "required"
        if not self.customer_id:
            errors["customer_id"] = "required"
        if not isinstance(self.subtotal, Decimal) or not self.subtotal.is_finite():
            errors["subtotal"] = "must be a finite decimal"
        elif self.subtotal < 0:
            errors["subtotal"] = "must not be negative"
        if not CurrencyRegistry.is_valid(self.currency or ""):
            errors["currency"] = f"unknown currency {self.currency!r}"
        if not isinstance(self.evaluated_at, datetime) or self.evaluated_at.tzinfo is None:
            errors["evaluated_at"] = "must be a timezone-aware datetime"

        seen: set[str] = set()
        for idx, line in enumerate(self.line_items):
            prefix = f"line_items[{idx}]"
            if not line.line_id:
                errors[f"{prefix}.line_id"] = "required"
            elif line.line_id in seen:
                errors[f"{prefix}.line_id"] = f"duplicate line id {line.line_id!r}"
            seen.add(line.line_id)
            if line.amount < 0:
                errors[f"{prefix}.amount"] = "must not be negative"
            if line.quantity <= 0:
                errors[f"{prefix}.quantity"] = "must be positive"

        if self.line_items and "subtotal" not in errors:
            line_total = sum((line.amount for line in self.line_items), Decimal("0"))
            if line_total != self.subtotal:
                errors["subtotal"] = (
                    f"subtotal {self.subtotal} does not equal line total {line_total}"
                )

        if errors:
            raise ContextValidationError(errors)

        object.__setattr__(self, "currency", self.currency.upper())
        if self.promo_code is not None:
            code = self.promo_code.strip()
            object.__setattr__(self, "promo_code", code or None)
        object.__setattr__(self, "customer_segments", frozenset(self.customer_segments))
        object.__setattr__(self, "attributes", MappingProxyType(dict(self.attributes)))

    @property
    def subtotal_money(self) -> Money:
        return Money.of(self.subtotal, self.currency)

    @property
    def total_quantity(self) -> Decimal:
        return sum((line.quantity for line in self.line_items), Decimal("0"))

    def lines_in_scope(
        self,
        categories: frozenset[str] = frozenset(),
        services: frozenset[str] = frozenset(),
    ) -> tuple[LineItem, ...]:
        """Lines matching a category/service scope. Empty scope matches all."""
        if not categories and not services:
            return self.line_items
        return tuple(
            line
            for line in self.line_items
            if (line.category_id is not None and line.category_id in categories)
            or (line.service_id is not None and line.service_id in services)
        )

    def scoped_amount(
        self,
        categories: frozenset[str] = frozenset(),
        services: frozenset[str] = frozenset(),
    ) -> Decimal:
        """Amount a rule applies to. Without line items this is the subtotal."""
        if not self.line_items:
            return self.subtotal if not categories and not services else Decimal("0")
        return sum(
            (line.amount for line in self.lines_in_scope(categories, services)),
            Decimal("0"),
        )

    def to_canonical_dict(self) -> dict[str, Any]:
        """Deterministic representation used for approval fingerprints."""
        return {
            "tenant_id": self.tenant_id,
            "customer_id": self.customer_id,
            "currency": self.currency,
            "subtotal": self.subtotal,
            "promo_code": self.promo_code.upper() if self.promo_code else None,
            "transaction_ref": self.transaction_ref,
            "line_items": [
                {
                    "line_id": line.line_id,
                    "amount": line.amount,
                    "quantity": line.quantity,
                    "product_id": line.product_id,
                    "service_id": line.service_id,
                    "category_id": line.category_id,
                }
                for line in self.line_items
            ],
        }


# =============================================================================
# Rules
# =============================================================================


def validate_discount_value(kind: DiscountKind, value: Decimal) -> dict[str, str]:
    """Field errors for a rule's kind/value pair (empty when valid)."""
    errors: dict[str, str] = {}
    if not isinstance(value, Decimal) or not value.is_finite():
        errors["value"] = "must be a finite decimal"
        return errors
    if value <= 0:
        errors["value"] = "must be positive"
    elif kind == DiscountKind.PERCENTAGE and value > Decimal("100"):
        errors["value"] = "percentage cannot exceed 100"
    return errors


@dataclass(frozen=True)
class RuleScope:
    """Which customers and lines a rule applies to. Empty sets mean any."""

    categories: frozenset[str] = frozenset()
    services: frozenset[str] = frozenset()
    customer_segments: frozenset[str] = frozenset()
    customer_ids: frozenset[str] = frozenset()

    def matches_customer(self, customer_id: str, segments: frozenset[str]) -> bool:
        if self.customer_ids and customer_id not in self.customer_ids:
            return False
        if self.customer_segments and not (self.customer_segments & segments):
            return False
        return True


@dataclass(frozen=True)
class UsageLimits:
    """Redemption caps and the committed usage counter."""

    max_uses: int | None = None
    max_uses_per_customer: int | None = None
    times_used: int = 0

    @property
    def remaining(self) -> int | None:
        if self.max_uses is None:
            return None
        return max(self.max_uses - self.times_used, 0)

    @property
    def is_exhausted(self) -> bool:
        return self.max_uses is not None and self.times_used >= self.max_uses


@dataclass(frozen=True)
class PromotionalTerms:
    code: str
    min_purchase_amount: Decimal | None = None


@dataclass(frozen=True)
class VolumeTierTerms:
    tier_name: str
    volume_scope: VolumeScope = VolumeScope.ALL
    target_id: str | None = None
    min_quantity: Decimal | None = None
    min_amount: Decimal | None = None

    @property
    def scope_key(self) -> tuple[str, str | None]:
        return (self.volume_scope.value, self.target_id)


@dataclass(frozen=True)
class PricingConditions:
    """Condition set of an attribute-based pricing rule. None means any."""

    customer_categories: frozenset[str] = frozenset()
    customer_segments: frozenset[str] = frozenset()
    min_quantity: Decimal | None = None
    max_quantity: Decimal | None = None
    min_amount: Decimal | None = None
    days_of_week: frozenset[int] = frozenset()
    hour_start: int | None = None
    hour_end: int | None = None
    attributes: tuple[tuple[str, str], ...] = ()


@dataclass(frozen=True)
class AttributePricingTerms:
    conditions: PricingConditions
    adjustment: AdjustmentType


@dataclass(frozen=True)
class EarlyPaymentTerms:
    term_name: str
    discount_days: int
    net_days: int
    is_default: bool = False


RuleTerms = Union[
    PromotionalTerms,
    VolumeTierTerms,
    AttributePricingTerms,
    EarlyPaymentTerms,
]


@dataclass(frozen=True)
class DiscountRule:
    """
    A discount rule of any variant.

    Contract:
        Created by an operator, soft-deactivated, never hard-deleted.
        ``usage.times_used`` is incremented only when a calculation commits.
    """

    rule_id: UUID
    tenant_id: str
    source_type: RuleSourceType
    label: str
    kind: DiscountKind
    value: Decimal
    terms: RuleTerms
    scope: RuleScope = RuleScope()
    valid_from: datetime | None = None
    valid_to: datetime | None = None
    usage: UsageLimits = UsageLimits()
    stacking: StackingPolicy = StackingPolicy.STACKABLE
    priority: int = 0
    max_discount_amount: Decimal | None = None
    is_active: bool = True


@dataclass(frozen=True)
class DiscountOffer:
    """A candidate discount computed for one specific context."""

    rule_id: UUID
    source_type: RuleSourceType
    label: str
    amount: Money
    stacking: StackingPolicy
    priority: int
    kind: DiscountKind
    value: Decimal
    description: str = ""

    @property
    def is_exclusive(self) -> bool:
        return self.stacking == StackingPolicy.EXCLUSIVE

    def with_amount(self, amount: Money) -> DiscountOffer:
        return DiscountOffer(
            rule_id=self.rule_id,
            source_type=self.source_type,
            label=self.label,
            amount=amount,
            stacking=self.stacking,
            priority=self.priority,
            kind=self.kind,
            value=self.value,
            description=self.description,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "rule_id": str(self.rule_id),
            "source_type": self.source_type.value,
            "label": self.label,
            "amount": str(self.amount.amount),
            "currency": self.amount.currency.code,
            "stacking": self.stacking.value,
            "priority": self.priority,
            "kind": self.kind.value,
            "value": str(self.value),
            "description": self.description,
        }


@dataclass(frozen=True)
class Eligibility:
    """Result of checking a rule against a context."""

    eligible: bool
    reason: str | None = None

    @classmethod
    def ok(cls) -> Eligibility:
        return cls(True)

    @classmethod
    def no(cls, reason: str) -> Eligibility:
        return cls(False, reason)


@dataclass(frozen=True)
class PromoValidation:
    """Explicit feedback for a promo code entered by a user."""

    valid: bool
    reason: str | None = None
    rule_id: UUID | None = None
    discount: Money | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "valid": self.valid,
            "reason": self.reason,
            "rule_id": str(self.rule_id) if self.rule_id else None,
            "discount": str(self.discount.amount) if self.discount else None,
        }


@dataclass(frozen=True)
class EarlyPaymentQuote:
    """Early-payment discount availability for an invoice and payment date."""

    invoice_id: str
    eligible: bool
    reason: str | None = None
    rule_id: UUID | None = None
    discount: Money | None = None
    discount_percentage: Decimal | None = None
    discount_deadline: date | None = None
    net_due_date: date | None = None
    days_early: int | None = None
    days_late: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "invoice_id": self.invoice_id,
            "eligible": self.eligible,
            "reason": self.reason,
            "rule_id": str(self.rule_id) if self.rule_id else None,
            "discount": str(self.discount.amount) if self.discount else None,
            "discount_percentage": (
                str(self.discount_percentage) if self.discount_percentage is not None else None
            ),
            "discount_deadline": self.discount_deadline.isoformat() if self.discount_deadline else None,
            "net_due_date": self.net_due_date.isoformat() if self.net_due_date else None,
            "days_early": self.days_early,
            "days_late": self.days_late,
        }


@dataclass(frozen=True)
class IneligibleOffer:
    """An offer that dropped out during commit, with the reason."""

    rule_id: UUID
    reason: str


@dataclass(frozen=True)
class CombinationResult:
    """
    Resolved discount combination for one context.

    Guarantees:
        - ``sum(o.amount for o in applied_offers) == total_discount``.
        - ``total_discount <= subtotal`` and ``final_amount >= 0``.
        - No STACKABLE offer is applied alongside an EXCLUSIVE one when
          exclusivity dominates.
    """

    applied_offers: tuple[DiscountOffer, ...]
    discarded_offers: tuple[DiscountOffer, ...]
    subtotal: Money
    total_discount: Money
    final_amount: Money
    exclusive_applied: bool = False
    capped_by: str | None = None

    @property
    def discount_percentage(self) -> Decimal:
        if self.subtotal.is_zero:
            return Decimal("0")
        return self.total_discount.amount / self.subtotal.amount * Decimal("100")

    @property
    def rule_ids(self) -> tuple[UUID, ...]:
        return tuple(o.rule_id for o in self.applied_offers)

    def to_dict(self) -> dict[str, Any]:
        return {
            "applied_offers": [o.to_dict() for o in self.applied_offers],
            "subtotal": str(self.subtotal.amount),
            "total_discount": str(self.total_discount.amount),
            "final_amount": str(self.final_amount.amount),
            "currency": self.subtotal.currency.code,
            "discount_percentage": str(
                self.discount_percentage.quantize(Decimal("0.01"))
            ),
            "exclusive_applied": self.exclusive_applied,
            "capped_by": self.capped_by,
        }


class RuleSource(Protocol):
    """A provider of candidate discount offers for a context."""

    source_type: RuleSourceType

    def find_candidates(self, context: DiscountContext) -> list[DiscountOffer]:
        ...
