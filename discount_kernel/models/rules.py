"""
Module: discount_kernel.models.rules
Responsibility: ORM persistence for the four discount rule variants and
    customer payment-term assignments.
Architecture position: Kernel > Models.  May import from db/base.py and
    domain/ DTOs (for to_dto conversion).

Invariants enforced:
    - Rules are soft-deactivated (is_active=False), never deleted.  An ORM
      before_delete listener raises ImmutabilityViolationError because
      historical allocations reference rule ids.
    - times_used is only changed through RedemptionService's conditional
      UPDATE; it never exceeds max_uses.
    - Promotional codes are unique per tenant.

Failure modes:
    - ImmutabilityViolationError on any DELETE of a rule row.
    - IntegrityError on a duplicate promotional code within a tenant.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import ClassVar
from uuid import UUID

from sqlalchemy import (
    JSON,
    CheckConstraint,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
    event,
)
from sqlalchemy.orm import Mapped, mapped_column

from discount_kernel.db.base import Base, UUIDString
from discount_kernel.domain.clock import ensure_aware
from discount_kernel.domain.discounts import (
    AdjustmentType,
    AttributePricingTerms,
    DiscountKind,
    DiscountRule,
    EarlyPaymentTerms,
    PricingConditions,
    PromotionalTerms,
    RuleScope,
    RuleSourceType,
    RuleTerms,
    StackingPolicy,
    UsageLimits,
    VolumeScope,
    VolumeTierTerms,
)
from discount_kernel.exceptions import ImmutabilityViolationError


def _opt_aware(value: datetime | None) -> datetime | None:
    return ensure_aware(value) if value is not None else None


class DiscountRuleColumns:
    """Columns shared by every rule variant."""

    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    label: Mapped[str] = mapped_column(String(200), nullable=False)
    discount_kind: Mapped[str] = mapped_column(String(20), nullable=False)
    discount_value: Mapped[Decimal] = mapped_column(nullable=False)

    categories: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    services: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    customer_segments: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    customer_ids: Mapped[list] = mapped_column(JSON, nullable=False, default=list)

    valid_from: Mapped[datetime | None] = mapped_column(nullable=True)
    valid_to: Mapped[datetime | None] = mapped_column(nullable=True)

    max_uses: Mapped[int | None] = mapped_column(Integer, nullable=True)
    max_uses_per_customer: Mapped[int | None] = mapped_column(Integer, nullable=True)
    times_used: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    stacking: Mapped[str] = mapped_column(
        String(20), nullable=False, default=StackingPolicy.STACKABLE.value,
    )
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_discount_amount: Mapped[Decimal | None] = mapped_column(nullable=True)

    is_active: Mapped[bool] = mapped_column(nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(nullable=False)
    created_by_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    deactivated_at: Mapped[datetime | None] = mapped_column(nullable=True)
    deactivated_by_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)

    source_type: ClassVar[RuleSourceType]

    def _terms(self) -> RuleTerms:
        raise NotImplementedError

    def to_dto(self) -> DiscountRule:
        """Convert ORM model to frozen domain DTO."""
        return DiscountRule(
            rule_id=self.id,
            tenant_id=self.tenant_id,
            source_type=self.source_type,
            label=self.label,
            kind=DiscountKind(self.discount_kind),
            value=self.discount_value,
            terms=self._terms(),
            scope=RuleScope(
                categories=frozenset(self.categories or ()),
                services=frozenset(self.services or ()),
                customer_segments=frozenset(self.customer_segments or ()),
                customer_ids=frozenset(self.customer_ids or ()),
            ),
            valid_from=_opt_aware(self.valid_from),
            valid_to=_opt_aware(self.valid_to),
            usage=UsageLimits(
                max_uses=self.max_uses,
                max_uses_per_customer=self.max_uses_per_customer,
                times_used=self.times_used,
            ),
            stacking=StackingPolicy(self.stacking),
            priority=self.priority,
            max_discount_amount=self.max_discount_amount,
            is_active=self.is_active,
        )


def _rule_checks(table: str) -> tuple:
    return (
        CheckConstraint(
            "discount_kind IN ('percentage', 'fixed_amount')",
            name=f"ck_{table}_kind",
        ),
        CheckConstraint("discount_value > 0", name=f"ck_{table}_value_positive"),
        CheckConstraint("times_used >= 0", name=f"ck_{table}_times_used"),
        CheckConstraint(
            "max_uses IS NULL OR times_used <= max_uses",
            name=f"ck_{table}_usage_cap",
        ),
        CheckConstraint(
            "stacking IN ('exclusive', 'stackable')",
            name=f"ck_{table}_stacking",
        ),
    )


class PromotionalDiscount(DiscountRuleColumns, Base):
    """Promotional code discount."""

    __tablename__ = "promotional_discounts"
    __table_args__ = (
        *_rule_checks("promotional_discounts"),
        UniqueConstraint("tenant_id", "code", name="uq_promotional_discounts_code"),
    )

    source_type = RuleSourceType.PROMOTIONAL

    # Stored upper-case; lookups are case-insensitive
    code: Mapped[str] = mapped_column(String(50), nullable=False)
    min_purchase_amount: Mapped[Decimal | None] = mapped_column(nullable=True)

    def _terms(self) -> RuleTerms:
        return PromotionalTerms(code=self.code, min_purchase_amount=self.min_purchase_amount)

    def __repr__(self) -> str:
        return f"<PromotionalDiscount {self.code} tenant={self.tenant_id}>"


class VolumeDiscountTier(DiscountRuleColumns, Base):
    """Quantity or amount threshold tier."""

    __tablename__ = "volume_discount_tiers"
    __table_args__ = (
        *_rule_checks("volume_discount_tiers"),
        CheckConstraint(
            "min_quantity IS NOT NULL OR min_amount IS NOT NULL",
            name="ck_volume_discount_tiers_threshold",
        ),
        Index("ix_volume_tiers_scope", "tenant_id", "volume_scope", "target_id"),
    )

    source_type = RuleSourceType.VOLUME

    tier_name: Mapped[str] = mapped_column(String(100), nullable=False)
    volume_scope: Mapped[str] = mapped_column(
        String(20), nullable=False, default=VolumeScope.ALL.value,
    )
    target_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    min_quantity: Mapped[Decimal | None] = mapped_column(nullable=True)
    min_amount: Mapped[Decimal | None] = mapped_column(nullable=True)

    def _terms(self) -> RuleTerms:
        return VolumeTierTerms(
            tier_name=self.tier_name,
            volume_scope=VolumeScope(self.volume_scope),
            target_id=self.target_id,
            min_quantity=self.min_quantity,
            min_amount=self.min_amount,
        )

    def __repr__(self) -> str:
        return f"<VolumeDiscountTier {self.tier_name} scope={self.volume_scope}>"


class PricingRule(DiscountRuleColumns, Base):
    """Attribute-based pricing rule with a condition set."""

    __tablename__ = "pricing_rules"
    __table_args__ = (
        *_rule_checks("pricing_rules"),
        CheckConstraint(
            "adjustment_type IN ('percentage', 'fixed_amount', 'override')",
            name="ck_pricing_rules_adjustment",
        ),
    )

    source_type = RuleSourceType.ATTRIBUTE_PRICING

    adjustment_type: Mapped[str] = mapped_column(String(20), nullable=False)
    condition_customer_categories: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    condition_segments: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    condition_min_quantity: Mapped[Decimal | None] = mapped_column(nullable=True)
    condition_max_quantity: Mapped[Decimal | None] = mapped_column(nullable=True)
    condition_min_amount: Mapped[Decimal | None] = mapped_column(nullable=True)
    condition_days_of_week: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    condition_hour_start: Mapped[int | None] = mapped_column(Integer, nullable=True)
    condition_hour_end: Mapped[int | None] = mapped_column(Integer, nullable=True)
    condition_attributes: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)

    def _terms(self) -> RuleTerms:
        return AttributePricingTerms(
            conditions=PricingConditions(
                customer_categories=frozenset(self.condition_customer_categories or ()),
                customer_segments=frozenset(self.condition_segments or ()),
                min_quantity=self.condition_min_quantity,
                max_quantity=self.condition_max_quantity,
                min_amount=self.condition_min_amount,
                days_of_week=frozenset(self.condition_days_of_week or ()),
                hour_start=self.condition_hour_start,
                hour_end=self.condition_hour_end,
                attributes=tuple(sorted((self.condition_attributes or {}).items())),
            ),
            adjustment=AdjustmentType(self.adjustment_type),
        )

    def __repr__(self) -> str:
        return f"<PricingRule {self.label} adjustment={self.adjustment_type}>"


class EarlyPaymentTerm(DiscountRuleColumns, Base):
    """Payment term granting a percentage discount for paying early."""

    __tablename__ = "early_payment_terms"
    __table_args__ = (
        *_rule_checks("early_payment_terms"),
        CheckConstraint("discount_days >= 0", name="ck_early_payment_terms_days"),
        CheckConstraint("net_days >= discount_days", name="ck_early_payment_terms_net"),
    )

    source_type = RuleSourceType.EARLY_PAYMENT

    term_name: Mapped[str] = mapped_column(String(100), nullable=False)
    discount_days: Mapped[int] = mapped_column(Integer, nullable=False)
    net_days: Mapped[int] = mapped_column(Integer, nullable=False)
    is_default: Mapped[bool] = mapped_column(nullable=False, default=False)

    def _terms(self) -> RuleTerms:
        return EarlyPaymentTerms(
            term_name=self.term_name,
            discount_days=self.discount_days,
            net_days=self.net_days,
            is_default=self.is_default,
        )

    def __repr__(self) -> str:
        return f"<EarlyPaymentTerm {self.term_name}>"


class CustomerPaymentTerm(Base):
    """Assignment of an early-payment term to a customer."""

    __tablename__ = "customer_payment_terms"
    __table_args__ = (
        UniqueConstraint("tenant_id", "customer_id", name="uq_customer_payment_terms"),
    )

    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    customer_id: Mapped[str] = mapped_column(String(64), nullable=False)
    term_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("early_payment_terms.id"), nullable=False,
    )
    assigned_at: Mapped[datetime] = mapped_column(nullable=False)


RULE_MODELS: dict[RuleSourceType, type[DiscountRuleColumns]] = {
    RuleSourceType.PROMOTIONAL: PromotionalDiscount,
    RuleSourceType.VOLUME: VolumeDiscountTier,
    RuleSourceType.ATTRIBUTE_PRICING: PricingRule,
    RuleSourceType.EARLY_PAYMENT: EarlyPaymentTerm,
}


def _prevent_rule_delete(mapper, connection, target):
    raise ImmutabilityViolationError(
        entity_type=type(target).__name__,
        entity_id=str(target.id),
        reason="Discount rules are deactivated, never deleted",
    )


for _model in RULE_MODELS.values():
    event.listen(_model, "before_delete", _prevent_rule_delete)
