"""
RuleService -- lifecycle of discount rules.

Responsibility:
    Validates and persists the four rule variants, soft-deactivates rules,
    assigns early-payment terms to customers and loads active rules for
    the rule sources.

Architecture position:
    Kernel > Services.  May import from domain/, models/, db/.

Invariants enforced:
    - Rule values are validated before persisting (positive, percentages
      at most 100, windows ordered, tiers with a threshold).
    - Rules are deactivated, never deleted.
    - Promotional codes are stored upper-case and unique per tenant.
    - All reads are scoped by tenant_id.

Failure modes:
    - InvalidRuleError on a malformed definition or duplicate promo code.
    - RuleNotFoundError when a rule id does not exist for the tenant.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from discount_kernel.domain.clock import Clock, SystemClock
from discount_kernel.domain.discounts import (
    AdjustmentType,
    DiscountKind,
    DiscountRule,
    PricingConditions,
    RuleScope,
    RuleSourceType,
    StackingPolicy,
    VolumeScope,
    validate_discount_value,
)
from discount_kernel.exceptions import InvalidRuleError, RuleNotFoundError
from discount_kernel.logging_config import get_logger
from discount_kernel.models.rules import (
    RULE_MODELS,
    CustomerPaymentTerm,
    DiscountRuleColumns,
    EarlyPaymentTerm,
    PricingRule,
    PromotionalDiscount,
    VolumeDiscountTier,
)
from discount_kernel.services.auditor_service import AuditorService

logger = get_logger("services.rules")


@dataclass(frozen=True)
class RuleDefinition:
    """Fields shared by every rule variant at creation time."""

    label: str
    kind: DiscountKind
    value: Decimal
    scope: RuleScope = field(default_factory=RuleScope)
    valid_from: datetime | None = None
    valid_to: datetime | None = None
    max_uses: int | None = None
    max_uses_per_customer: int | None = None
    stacking: StackingPolicy = StackingPolicy.STACKABLE
    priority: int = 0
    max_discount_amount: Decimal | None = None


def _validate_definition(definition: RuleDefinition) -> dict[str, str]:
    errors = validate_discount_value(definition.kind, definition.value)
    if not definition.label or not definition.label.strip():
        errors["label"] = "required"
    if (
        definition.valid_from is not None
        and definition.valid_to is not None
        and definition.valid_from > definition.valid_to
    ):
        errors["valid_to"] = "must not be before valid_from"
    if definition.max_uses is not None and definition.max_uses <= 0:
        errors["max_uses"] = "must be positive"
    if definition.max_uses_per_customer is not None and definition.max_uses_per_customer <= 0:
        errors["max_uses_per_customer"] = "must be positive"
    if definition.max_discount_amount is not None and definition.max_discount_amount <= 0:
        errors["max_discount_amount"] = "must be positive"
    return errors


class RuleService:
    """
    Creates, deactivates and loads discount rules.

    Non-goals:
        - Does NOT evaluate eligibility; rule sources delegate that to
          discount_engines.eligibility.
        - Does NOT call ``session.commit()``.
    """

    def __init__(
        self,
        session: Session,
        auditor: AuditorService,
        clock: Clock | None = None,
    ):
        self._session = session
        self._auditor = auditor
        self._clock = clock or SystemClock()

    # -------------------------------------------------------------------------
    # Creation
    # -------------------------------------------------------------------------

    def _common_columns(
        self,
        tenant_id: str,
        definition: RuleDefinition,
        actor_id: UUID,
    ) -> dict:
        return {
            "tenant_id": tenant_id,
            "label": definition.label.strip(),
            "discount_kind": definition.kind.value,
            "discount_value": definition.value,
            "categories": sorted(definition.scope.categories),
            "services": sorted(definition.scope.services),
            "customer_segments": sorted(definition.scope.customer_segments),
            "customer_ids": sorted(definition.scope.customer_ids),
            "valid_from": definition.valid_from,
            "valid_to": definition.valid_to,
            "max_uses": definition.max_uses,
            "max_uses_per_customer": definition.max_uses_per_customer,
            "times_used": 0,
            "stacking": definition.stacking.value,
            "priority": definition.priority,
            "max_discount_amount": definition.max_discount_amount,
            "is_active": True,
            "created_at": self._clock.now(),
            "created_by_id": actor_id,
        }

    def _persist(
        self,
        model: DiscountRuleColumns,
        actor_id: UUID,
    ) -> DiscountRule:
        self._session.add(model)
        self._session.flush()
        self._auditor.record_rule_created(
            tenant_id=model.tenant_id,
            rule_id=model.id,
            source_type=model.source_type.value,
            label=model.label,
            actor_id=actor_id,
        )
        logger.info(
            "discount_rule_created",
            extra={
                "tenant_id": model.tenant_id,
                "rule_id": str(model.id),
                "source_type": model.source_type.value,
            },
        )
        return model.to_dto()

    def create_promotion(
        self,
        tenant_id: str,
        code: str,
        definition: RuleDefinition,
        actor_id: UUID,
        min_purchase_amount: Decimal | None = None,
    ) -> DiscountRule:
        """Create a promotional code discount. Codes are case-insensitive."""
        errors = _validate_definition(definition)
        normalized = (code or "").strip().upper()
        if not normalized:
            errors["code"] = "required"
        if min_purchase_amount is not None and min_purchase_amount < 0:
            errors["min_purchase_amount"] = "must not be negative"
        if normalized and self._promotion_model(tenant_id, normalized) is not None:
            errors["code"] = f"promotional code {normalized!r} already exists"
        if errors:
            raise InvalidRuleError("promotional discount", errors)

        model = PromotionalDiscount(
            **self._common_columns(tenant_id, definition, actor_id),
            code=normalized,
            min_purchase_amount=min_purchase_amount,
        )
        return self._persist(model, actor_id)

    def create_volume_tier(
        self,
        tenant_id: str,
        tier_name: str,
        definition: RuleDefinition,
        actor_id: UUID,
        volume_scope: VolumeScope = VolumeScope.ALL,
        target_id: str | None = None,
        min_quantity: Decimal | None = None,
        min_amount: Decimal | None = None,
    ) -> DiscountRule:
        errors = _validate_definition(definition)
        if not tier_name:
            errors["tier_name"] = "required"
        if min_quantity is None and min_amount is None:
            errors["min_quantity"] = "a quantity or amount threshold is required"
        if min_quantity is not None and min_quantity <= 0:
            errors["min_quantity"] = "must be positive"
        if min_amount is not None and min_amount <= 0:
            errors["min_amount"] = "must be positive"
        if volume_scope != VolumeScope.ALL and not target_id:
            errors["target_id"] = f"required for {volume_scope.value} scope"
        if errors:
            raise InvalidRuleError("volume tier", errors)

        model = VolumeDiscountTier(
            **self._common_columns(tenant_id, definition, actor_id),
            tier_name=tier_name,
            volume_scope=volume_scope.value,
            target_id=target_id if volume_scope != VolumeScope.ALL else None,
            min_quantity=min_quantity,
            min_amount=min_amount,
        )
        return self._persist(model, actor_id)

    def create_pricing_rule(
        self,
        tenant_id: str,
        definition: RuleDefinition,
        adjustment: AdjustmentType,
        actor_id: UUID,
        conditions: PricingConditions | None = None,
    ) -> DiscountRule:
        """
        Create an attribute-based pricing rule.

        For OVERRIDE, ``definition.value`` is the unit price charged and
        ``definition.kind`` must be FIXED_AMOUNT.
        """
        conditions = conditions or PricingConditions()
        errors = _validate_definition(definition)
        expected_kind = (
            DiscountKind.PERCENTAGE
            if adjustment == AdjustmentType.PERCENTAGE
            else DiscountKind.FIXED_AMOUNT
        )
        if definition.kind != expected_kind:
            errors["kind"] = f"must be {expected_kind.value} for {adjustment.value} adjustments"
        if any(d not in range(7) for d in conditions.days_of_week):
            errors["days_of_week"] = "days are 0 (Monday) to 6 (Sunday)"
        for name in ("hour_start", "hour_end"):
            hour = getattr(conditions, name)
            if hour is not None and not 0 <= hour <= 24:
                errors[name] = "must be between 0 and 24"
        if (
            conditions.min_quantity is not None
            and conditions.max_quantity is not None
            and conditions.min_quantity > conditions.max_quantity
        ):
            errors["max_quantity"] = "must not be below min_quantity"
        if errors:
            raise InvalidRuleError("pricing rule", errors)

        model = PricingRule(
            **self._common_columns(tenant_id, definition, actor_id),
            adjustment_type=adjustment.value,
            condition_customer_categories=sorted(conditions.customer_categories),
            condition_segments=sorted(conditions.customer_segments),
            condition_min_quantity=conditions.min_quantity,
            condition_max_quantity=conditions.max_quantity,
            condition_min_amount=conditions.min_amount,
            condition_days_of_week=sorted(conditions.days_of_week),
            condition_hour_start=conditions.hour_start,
            condition_hour_end=conditions.hour_end,
            condition_attributes=dict(conditions.attributes),
        )
        return self._persist(model, actor_id)

    def create_early_payment_term(
        self,
        tenant_id: str,
        term_name: str,
        definition: RuleDefinition,
        discount_days: int,
        net_days: int,
        actor_id: UUID,
        is_default: bool = False,
    ) -> DiscountRule:
        """Create a term such as "2/10 net 30"."""
        errors = _validate_definition(definition)
        if definition.kind != DiscountKind.PERCENTAGE:
            errors["kind"] = "early payment discounts are percentages"
        if not term_name:
            errors["term_name"] = "required"
        if discount_days < 0:
            errors["discount_days"] = "must not be negative"
        if net_days < discount_days:
            errors["net_days"] = "must not be before discount_days"
        if errors:
            raise InvalidRuleError("early payment term", errors)

        if is_default:
            for existing in self._session.execute(
                select(EarlyPaymentTerm).where(
                    EarlyPaymentTerm.tenant_id == tenant_id,
                    EarlyPaymentTerm.is_default.is_(True),
                )
            ).scalars():
                existing.is_default = False

        model = EarlyPaymentTerm(
            **self._common_columns(tenant_id, definition, actor_id),
            term_name=term_name,
            discount_days=discount_days,
            net_days=net_days,
            is_default=is_default,
        )
        return self._persist(model, actor_id)

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def deactivate(
        self,
        tenant_id: str,
        source_type: RuleSourceType,
        rule_id: UUID,
        actor_id: UUID,
    ) -> DiscountRule:
        """Soft-deactivate a rule. Idempotent."""
        model = self._load(tenant_id, source_type, rule_id)
        if not model.is_active:
            return model.to_dto()

        model.is_active = False
        model.deactivated_at = self._clock.now()
        model.deactivated_by_id = actor_id
        self._session.flush()

        self._auditor.record_rule_deactivated(
            tenant_id=tenant_id,
            rule_id=rule_id,
            source_type=source_type.value,
            actor_id=actor_id,
        )
        logger.info(
            "discount_rule_deactivated",
            extra={"tenant_id": tenant_id, "rule_id": str(rule_id)},
        )
        return model.to_dto()

    def assign_payment_term(
        self,
        tenant_id: str,
        customer_id: str,
        term_id: UUID,
    ) -> None:
        """Assign (or reassign) an early-payment term to a customer."""
        self._load(tenant_id, RuleSourceType.EARLY_PAYMENT, term_id)
        assignment = self._session.execute(
            select(CustomerPaymentTerm).where(
                CustomerPaymentTerm.tenant_id == tenant_id,
                CustomerPaymentTerm.customer_id == customer_id,
            )
        ).scalar_one_or_none()

        if assignment is None:
            assignment = CustomerPaymentTerm(
                tenant_id=tenant_id,
                customer_id=customer_id,
                term_id=term_id,
                assigned_at=self._clock.now(),
            )
            self._session.add(assignment)
        else:
            assignment.term_id = term_id
            assignment.assigned_at = self._clock.now()
        self._session.flush()

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def _load(
        self,
        tenant_id: str,
        source_type: RuleSourceType,
        rule_id: UUID,
    ) -> DiscountRuleColumns:
        model_cls = RULE_MODELS[source_type]
        model = self._session.execute(
            select(model_cls).where(
                model_cls.id == rule_id,
                model_cls.tenant_id == tenant_id,
            )
        ).scalar_one_or_none()
        if model is None:
            raise RuleNotFoundError(str(rule_id))
        return model

    def _promotion_model(self, tenant_id: str, code: str) -> PromotionalDiscount | None:
        return self._session.execute(
            select(PromotionalDiscount).where(
                PromotionalDiscount.tenant_id == tenant_id,
                PromotionalDiscount.code == code.strip().upper(),
            )
        ).scalar_one_or_none()

    def get_rule(
        self,
        tenant_id: str,
        source_type: RuleSourceType,
        rule_id: UUID,
    ) -> DiscountRule:
        return self._load(tenant_id, source_type, rule_id).to_dto()

    def active_rules(self, tenant_id: str, source_type: RuleSourceType) -> list[DiscountRule]:
        """Active rules of one variant, highest priority first."""
        model_cls = RULE_MODELS[source_type]
        models = self._session.execute(
            select(model_cls)
            .where(model_cls.tenant_id == tenant_id, model_cls.is_active.is_(True))
            .order_by(model_cls.priority.desc(), model_cls.created_at)
        ).scalars().all()
        return [m.to_dto() for m in models]

    def find_promotion(self, tenant_id: str, code: str) -> DiscountRule | None:
        """Promotion by code, active or not."""
        model = self._promotion_model(tenant_id, code)
        return model.to_dto() if model else None

    def payment_term_for_customer(self, tenant_id: str, customer_id: str) -> DiscountRule | None:
        """The customer's assigned active term, else the tenant's default term."""
        assigned = self._session.execute(
            select(EarlyPaymentTerm)
            .join(CustomerPaymentTerm, CustomerPaymentTerm.term_id == EarlyPaymentTerm.id)
            .where(
                CustomerPaymentTerm.tenant_id == tenant_id,
                CustomerPaymentTerm.customer_id == customer_id,
                EarlyPaymentTerm.is_active.is_(True),
            )
        ).scalar_one_or_none()
        if assigned is not None:
            return assigned.to_dto()

        default = self._session.execute(
            select(EarlyPaymentTerm).where(
                EarlyPaymentTerm.tenant_id == tenant_id,
                EarlyPaymentTerm.is_default.is_(True),
                EarlyPaymentTerm.is_active.is_(True),
            )
        ).scalars().first()
        return default.to_dto() if default else None
