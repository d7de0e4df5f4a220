"""
Tests for RuleService -- creation, validation and lifecycle of discount rules.

Covers:
- Creation of each rule variant, with an audit event per rule
- Field validation collected into InvalidRuleError.field_errors
- Case-insensitive promotional codes, unique per tenant
- Soft deactivation (idempotent) and the no-delete guard
- Payment term assignment and the tenant default term
"""

from datetime import timedelta
from decimal import Decimal
from uuid import uuid4

import pytest
from sqlalchemy import select

from discount_kernel.domain.discounts import (
    AdjustmentType,
    DiscountKind,
    PricingConditions,
    RuleSourceType,
    VolumeScope,
)
from discount_kernel.exceptions import (
    ImmutabilityViolationError,
    InvalidRuleError,
    RuleNotFoundError,
)
from discount_kernel.models.audit_event import AuditAction
from discount_kernel.models.rules import PromotionalDiscount
from tests.factories import MONDAY_NOON, OTHER_TENANT, TENANT, make_definition


class TestCreatePromotion:

    def test_code_is_normalized(self, create_promotion):
        rule = create_promotion(code="  save10 ")
        assert rule.terms.code == "SAVE10"
        assert rule.source_type == RuleSourceType.PROMOTIONAL
        assert rule.usage.times_used == 0

    def test_audited(self, create_promotion, auditor_service):
        rule = create_promotion()
        trace = auditor_service.get_trace("DiscountRule", rule.rule_id)
        assert trace.actions == (AuditAction.RULE_CREATED,)

    def test_duplicate_code_rejected_case_insensitively(self, create_promotion):
        create_promotion(code="SAVE10")
        with pytest.raises(InvalidRuleError) as exc_info:
            create_promotion(code="save10")
        assert "code" in exc_info.value.field_errors

    def test_same_code_allowed_in_other_tenant(self, create_promotion):
        create_promotion(code="SAVE10")
        assert create_promotion(code="SAVE10", tenant_id=OTHER_TENANT).tenant_id == OTHER_TENANT

    def test_collects_all_field_errors(self, rule_service, test_actor_id):
        definition = make_definition(
            "",
            DiscountKind.PERCENTAGE,
            "150",
            valid_from=MONDAY_NOON,
            valid_to=MONDAY_NOON - timedelta(days=1),
            max_uses=0,
        )
        with pytest.raises(InvalidRuleError) as exc_info:
            rule_service.create_promotion(TENANT, "", definition, test_actor_id)
        assert set(exc_info.value.field_errors) == {"label", "value", "valid_to", "max_uses", "code"}


class TestCreateOtherVariants:

    def test_volume_tier_requires_threshold(self, create_volume_tier):
        with pytest.raises(InvalidRuleError) as exc_info:
            create_volume_tier()
        assert "min_quantity" in exc_info.value.field_errors

    def test_scoped_volume_tier_requires_target(self, create_volume_tier):
        with pytest.raises(InvalidRuleError) as exc_info:
            create_volume_tier(min_quantity=10, volume_scope=VolumeScope.CATEGORY)
        assert "target_id" in exc_info.value.field_errors

    def test_volume_tier_round_trips_terms(self, create_volume_tier):
        rule = create_volume_tier(
            min_quantity=10, volume_scope=VolumeScope.CATEGORY, target_id="shoes",
        )
        assert rule.terms.min_quantity == Decimal("10")
        assert rule.terms.scope_key == ("category", "shoes")

    def test_pricing_rule_kind_must_match_adjustment(self, rule_service, test_actor_id):
        with pytest.raises(InvalidRuleError) as exc_info:
            rule_service.create_pricing_rule(
                TENANT,
                make_definition("Override", DiscountKind.PERCENTAGE, "10"),
                AdjustmentType.OVERRIDE,
                test_actor_id,
            )
        assert "kind" in exc_info.value.field_errors

    def test_pricing_rule_validates_conditions(self, create_pricing_rule):
        with pytest.raises(InvalidRuleError) as exc_info:
            create_pricing_rule(
                conditions=PricingConditions(days_of_week=frozenset({7}), hour_start=25),
            )
        assert {"days_of_week", "hour_start"} <= set(exc_info.value.field_errors)

    def test_pricing_rule_round_trips_conditions(self, create_pricing_rule):
        conditions = PricingConditions(
            customer_categories=frozenset({"wholesale"}),
            days_of_week=frozenset({0, 1}),
            attributes=(("channel", "web"),),
        )
        rule = create_pricing_rule(conditions=conditions)
        assert rule.terms.conditions.customer_categories == frozenset({"wholesale"})
        assert rule.terms.conditions.days_of_week == frozenset({0, 1})
        assert dict(rule.terms.conditions.attributes) == {"channel": "web"}

    def test_payment_term_net_before_discount_days(self, create_payment_term):
        with pytest.raises(InvalidRuleError) as exc_info:
            create_payment_term(discount_days=30, net_days=10)
        assert "net_days" in exc_info.value.field_errors


class TestLifecycle:

    def test_deactivate_is_idempotent(self, create_promotion, rule_service, test_actor_id, auditor_service):
        rule = create_promotion()
        first = rule_service.deactivate(TENANT, RuleSourceType.PROMOTIONAL, rule.rule_id, test_actor_id)
        second = rule_service.deactivate(TENANT, RuleSourceType.PROMOTIONAL, rule.rule_id, test_actor_id)

        assert not first.is_active and not second.is_active
        trace = auditor_service.get_trace("DiscountRule", rule.rule_id)
        assert trace.actions.count(AuditAction.RULE_DEACTIVATED) == 1

    def test_inactive_rules_excluded_from_active_rules(self, create_promotion, rule_service, test_actor_id):
        keep = create_promotion(code="KEEP")
        drop = create_promotion(code="DROP")
        rule_service.deactivate(TENANT, RuleSourceType.PROMOTIONAL, drop.rule_id, test_actor_id)
        active = rule_service.active_rules(TENANT, RuleSourceType.PROMOTIONAL)
        assert [r.rule_id for r in active] == [keep.rule_id]

    def test_active_rules_ordered_by_priority(self, create_volume_tier, rule_service):
        low = create_volume_tier("low", min_quantity=1, priority=1)
        high = create_volume_tier("high", min_quantity=1, priority=5)
        active = rule_service.active_rules(TENANT, RuleSourceType.VOLUME)
        assert [r.rule_id for r in active] == [high.rule_id, low.rule_id]

    def test_rules_cannot_be_deleted(self, create_promotion, session):
        create_promotion()
        model = session.execute(select(PromotionalDiscount)).scalar_one()
        session.delete(model)
        with pytest.raises(ImmutabilityViolationError):
            session.flush()

    def test_unknown_rule(self, rule_service, test_actor_id):
        with pytest.raises(RuleNotFoundError):
            rule_service.deactivate(TENANT, RuleSourceType.VOLUME, uuid4(), test_actor_id)

    def test_other_tenant_rule_not_found(self, create_promotion, rule_service):
        rule = create_promotion()
        with pytest.raises(RuleNotFoundError):
            rule_service.get_rule(OTHER_TENANT, RuleSourceType.PROMOTIONAL, rule.rule_id)


class TestPaymentTerms:

    def test_default_term_used_without_assignment(self, create_payment_term, rule_service):
        default = create_payment_term(is_default=True)
        assert rule_service.payment_term_for_customer(TENANT, "cust-1").rule_id == default.rule_id

    def test_only_one_default(self, create_payment_term, rule_service):
        create_payment_term("1/10 net 30", value="1", is_default=True)
        newer = create_payment_term("3/5 net 30", value="3", discount_days=5, is_default=True)
        assert rule_service.payment_term_for_customer(TENANT, "cust-1").rule_id == newer.rule_id

    def test_assignment_beats_default(self, create_payment_term, rule_service):
        create_payment_term(is_default=True)
        special = create_payment_term("3/15 net 45", value="3", discount_days=15, net_days=45)
        rule_service.assign_payment_term(TENANT, "cust-1", special.rule_id)
        assert rule_service.payment_term_for_customer(TENANT, "cust-1").rule_id == special.rule_id
        assert rule_service.payment_term_for_customer(TENANT, "cust-2").rule_id != special.rule_id

    def test_no_term(self, rule_service):
        assert rule_service.payment_term_for_customer(TENANT, "cust-1") is None
