"""
Tests for PricingOrchestrator -- preview and commit of discounts.

Covers:
- preview(): no usage, approval or allocation side effects
- calculate_final_price(): below threshold commits and allocates; at or above
  threshold requests a PENDING approval; an approved request unlocks commit
- Approval scope binding, per-call threshold override, ignored approval id
- Usage limit consumed between discovery and commit: offer dropped and the
  combination resolved again
- Savepoint rollback on a failed allocation
- Context enrichment from collaborators, tenant isolation, policy caps
"""

from decimal import Decimal
from uuid import uuid4

import pytest

from discount_engines.eligibility import USAGE_LIMIT_REACHED
from discount_kernel.domain.allocation import AllocationStatus, TransactionType
from discount_kernel.domain.collaborators import CustomerProfile
from discount_kernel.domain.discounts import (
    DiscountContext,
    IneligibleOffer,
    LineItem,
    RuleScope,
    RuleSourceType,
    StackingPolicy,
)
from discount_kernel.domain.policy import StaticPolicySource, TenantDiscountPolicy
from discount_kernel.domain.values import Money
from discount_kernel.exceptions import (
    ApprovalScopeMismatchError,
    AwaitingApprovalError,
    DuplicateAllocationError,
    ValidationError,
)
from discount_services.pricing_orchestrator import (
    SUBTOTAL_LINE_REF,
    PricingOrchestrator,
    PricingStatus,
)
from tests.factories import (
    MONDAY_NOON,
    OTHER_TENANT,
    TENANT,
    FakeCatalog,
    FakeDirectory,
    RecordingBridge,
    make_context,
)


def usd(amount: str) -> Money:
    return Money.of(amount, "USD")


def times_used(orchestrator, rule) -> int:
    return orchestrator.rule_service.get_rule(TENANT, rule.source_type, rule.rule_id).usage.times_used


def orchestrator_with(session, clock, **kwargs) -> PricingOrchestrator:
    policy = TenantDiscountPolicy(tenant_id=TENANT, **kwargs.pop("policy", {}))
    return PricingOrchestrator(
        session, policies=StaticPolicySource({TENANT: policy}), clock=clock, **kwargs,
    )


# ---------------------------------------------------------------------------
# preview
# ---------------------------------------------------------------------------


class TestPreview:

    def test_preview_has_no_side_effects(self, orchestrator, create_promotion):
        rule = create_promotion(code="BIG", value="30")
        ctx = make_context("100.00", promo_code="BIG", transaction_ref="TX-1")

        result = orchestrator.preview(ctx)

        assert result.status == PricingStatus.PREVIEW
        assert result.requires_approval
        assert result.combination.total_discount == usd("30.00")
        assert times_used(orchestrator, rule) == 0
        assert orchestrator.approval_service.list_pending(TENANT) == []
        assert orchestrator.allocation_service.list_for_transaction(TENANT, "TX-1") == []

    def test_preview_fingerprint_is_stable(self, orchestrator, create_promotion):
        create_promotion()
        ctx = make_context("100.00", promo_code="SAVE10")
        assert orchestrator.preview(ctx).context_fingerprint == orchestrator.preview(ctx).context_fingerprint

    def test_to_dict(self, orchestrator, create_promotion):
        create_promotion()
        data = orchestrator.preview(make_context("100.00", promo_code="SAVE10")).to_dict()
        assert data["status"] == "preview"
        assert data["requires_approval"] is False
        assert data["allocation"] is None

    def test_invalid_threshold_override(self, orchestrator):
        with pytest.raises(ValidationError):
            orchestrator.preview(make_context("100.00"), threshold_override=Decimal("150"))


# ---------------------------------------------------------------------------
# Below threshold
# ---------------------------------------------------------------------------


class TestCommitBelowThreshold:

    def test_commit_redeems_and_allocates(self, orchestrator, create_promotion, test_actor_id):
        rule = create_promotion()
        ctx = make_context(
            promo_code="SAVE10", transaction_ref="TX-1", lines=[("a", "60.00"), ("b", "40.00")],
        )

        result = orchestrator.calculate_final_price(ctx, test_actor_id)

        assert result.status == PricingStatus.COMMITTED
        assert result.approval_id is None
        assert times_used(orchestrator, rule) == 1
        allocation = result.allocation
        assert allocation.status == AllocationStatus.APPLIED
        assert allocation.transaction_type == TransactionType.POS_SALE
        assert [l.allocated_amount for l in allocation.lines] == [Decimal("6.00"), Decimal("4.00")]
        assert allocation.rule_ids == (rule.rule_id,)

    def test_without_lines_allocates_to_subtotal(self, orchestrator, create_promotion, test_actor_id):
        create_promotion()
        ctx = make_context("80.00", promo_code="SAVE10", transaction_ref="TX-2", invoice_id="INV-2")
        result = orchestrator.calculate_final_price(ctx, test_actor_id)
        [line] = result.allocation.lines
        assert line.line_ref == SUBTOTAL_LINE_REF
        assert line.allocated_amount == Decimal("8.00")
        assert result.allocation.transaction_type == TransactionType.INVOICE

    def test_without_transaction_ref_no_allocation(self, orchestrator, create_promotion, test_actor_id):
        rule = create_promotion()
        result = orchestrator.calculate_final_price(make_context("100", promo_code="SAVE10"), test_actor_id)
        assert result.status == PricingStatus.COMMITTED
        assert result.allocation is None
        assert times_used(orchestrator, rule) == 1

    def test_no_discount(self, orchestrator, test_actor_id):
        result = orchestrator.calculate_final_price(make_context("100", transaction_ref="TX-3"), test_actor_id)
        assert result.combination.total_discount.is_zero
        assert result.allocation is None

    def test_approval_id_ignored_below_threshold(self, orchestrator, create_promotion, test_actor_id):
        create_promotion()
        ctx = make_context("100", promo_code="SAVE10")
        result = orchestrator.calculate_final_price(ctx, test_actor_id, approval_id=uuid4())
        assert result.status == PricingStatus.COMMITTED
        assert result.approval_id is None

    def test_threshold_override(self, orchestrator, create_promotion, test_actor_id):
        create_promotion(code="BIG", value="30")
        ctx = make_context("100", promo_code="BIG")
        result = orchestrator.calculate_final_price(ctx, test_actor_id, threshold_override=Decimal("50"))
        assert result.status == PricingStatus.COMMITTED

    def test_bridge_notified(self, session, deterministic_clock, create_promotion, test_actor_id):
        bridge = RecordingBridge()
        orchestrator = orchestrator_with(session, deterministic_clock, accounting_bridge=bridge)
        create_promotion()
        orchestrator.calculate_final_price(
            make_context("100", promo_code="SAVE10", transaction_ref="TX-4"), test_actor_id,
        )
        [event] = bridge.events
        assert event.transaction_ref == "TX-4"
        assert event.total_discount == Decimal("10.00")

    def test_commit_logged(self, orchestrator, create_promotion, test_actor_id, captured_logs):
        create_promotion()
        orchestrator.calculate_final_price(
            make_context("100", promo_code="SAVE10", transaction_ref="TX-5"), test_actor_id,
        )
        committed = [r for r in captured_logs() if r["message"] == "discount_committed"]
        assert committed
        assert committed[0]["total_discount"] == "10.00"


# ---------------------------------------------------------------------------
# Approval gate
# ---------------------------------------------------------------------------


class TestApprovalGate:

    def test_at_threshold_requests_approval(self, orchestrator, create_promotion, test_actor_id):
        rule = create_promotion(code="TWENTY", value="20")
        ctx = make_context("100", promo_code="TWENTY", transaction_ref="TX-1")

        result = orchestrator.calculate_final_price(ctx, test_actor_id)

        assert result.status == PricingStatus.APPROVAL_REQUIRED
        assert result.approval_id is not None
        assert result.allocation is None
        assert times_used(orchestrator, rule) == 0
        [pending] = orchestrator.approval_service.list_pending(TENANT)
        assert pending.approval_id == result.approval_id
        assert pending.requested_amount == Decimal("20.00")

    def test_repeat_call_reuses_pending_request(self, orchestrator, create_promotion, test_actor_id):
        create_promotion(code="BIG", value="30")
        ctx = make_context("100", promo_code="BIG")
        first = orchestrator.calculate_final_price(ctx, test_actor_id)
        second = orchestrator.calculate_final_price(ctx, test_actor_id)
        assert first.approval_id == second.approval_id

    def test_pending_approval_blocks_commit(self, orchestrator, create_promotion, test_actor_id):
        create_promotion(code="BIG", value="30")
        ctx = make_context("100", promo_code="BIG")
        pending = orchestrator.calculate_final_price(ctx, test_actor_id)
        with pytest.raises(AwaitingApprovalError):
            orchestrator.calculate_final_price(ctx, test_actor_id, approval_id=pending.approval_id)

    def test_approved_request_unlocks_commit(self, orchestrator, create_promotion, test_actor_id):
        rule = create_promotion(code="BIG", value="30")
        ctx = make_context("100", promo_code="BIG", transaction_ref="TX-7")
        pending = orchestrator.calculate_final_price(ctx, test_actor_id)
        orchestrator.approval_service.approve(TENANT, pending.approval_id, uuid4())

        result = orchestrator.calculate_final_price(ctx, test_actor_id, approval_id=pending.approval_id)

        assert result.status == PricingStatus.COMMITTED
        assert result.approval_id == pending.approval_id
        assert result.allocation.approval_id == pending.approval_id
        assert result.allocation.total_amount == Decimal("30.00")
        assert times_used(orchestrator, rule) == 1

    def test_approval_bound_to_context(self, orchestrator, create_promotion, test_actor_id):
        create_promotion(code="BIG", value="30")
        pending = orchestrator.calculate_final_price(make_context("100", promo_code="BIG"), test_actor_id)
        orchestrator.approval_service.approve(TENANT, pending.approval_id, uuid4())

        other = make_context("500", promo_code="BIG")
        with pytest.raises(ApprovalScopeMismatchError):
            orchestrator.calculate_final_price(other, test_actor_id, approval_id=pending.approval_id)

    def test_amount_threshold(self, session, deterministic_clock, create_promotion, test_actor_id):
        orchestrator = orchestrator_with(
            session, deterministic_clock, policy={"approval_threshold_amount": Decimal("50")},
        )
        create_promotion(code="SMALLPCT", value="10")
        result = orchestrator.calculate_final_price(
            make_context("1000", promo_code="SMALLPCT"), test_actor_id,
        )
        assert result.status == PricingStatus.APPROVAL_REQUIRED
        assert result.approval_check.triggered_by == "amount"


# ---------------------------------------------------------------------------
# Commit-time usage limits and rollback
# ---------------------------------------------------------------------------


class TestCommitRaces:

    def test_exhausted_offer_dropped_and_resolved_again(
        self, orchestrator, create_promotion, create_volume_tier, test_actor_id, monkeypatch,
    ):
        promo = create_promotion(code="ONCE", value="10", max_uses=1)
        tier = create_volume_tier("bulk", value="5", min_amount=50)
        ctx = make_context("100", promo_code="ONCE", transaction_ref="TX-8")

        stale = orchestrator.available_discounts(ctx)
        assert len(stale) == 2
        # another checkout takes the last use after discovery
        assert orchestrator.redemption_service.redeem(
            tenant_id=TENANT,
            rule_id=promo.rule_id,
            source_type=RuleSourceType.PROMOTIONAL,
            customer_id="someone-else",
            actor_id=test_actor_id,
        )
        monkeypatch.setattr(orchestrator.discovery, "discover_discounts", lambda context: list(stale))

        result = orchestrator.calculate_final_price(ctx, test_actor_id)

        assert result.status == PricingStatus.COMMITTED
        assert result.ineligible == (IneligibleOffer(promo.rule_id, USAGE_LIMIT_REACHED),)
        assert [o.rule_id for o in result.combination.applied_offers] == [tier.rule_id]
        assert result.combination.total_discount == usd("5.00")
        assert result.allocation.total_amount == Decimal("5.00")
        assert times_used(orchestrator, promo) == 1

    def test_dropping_exclusive_offer_regates_approval(
        self, orchestrator, create_promotion, create_volume_tier, test_actor_id, monkeypatch,
    ):
        promo = create_promotion(
            code="SOLO", value="10", max_uses=1, stacking=StackingPolicy.EXCLUSIVE, priority=10,
        )
        tier = create_volume_tier("bulk", value="25", min_amount=50)
        ctx = make_context("100", promo_code="SOLO", transaction_ref="TX-10")

        stale = orchestrator.available_discounts(ctx)
        assert orchestrator.redemption_service.redeem(
            tenant_id=TENANT,
            rule_id=promo.rule_id,
            source_type=RuleSourceType.PROMOTIONAL,
            customer_id="someone-else",
            actor_id=test_actor_id,
        )
        monkeypatch.setattr(orchestrator.discovery, "discover_discounts", lambda context: list(stale))

        result = orchestrator.calculate_final_price(ctx, test_actor_id)

        assert result.status == PricingStatus.APPROVAL_REQUIRED
        assert result.approval_id is not None
        assert result.allocation is None
        assert result.ineligible == (IneligibleOffer(promo.rule_id, USAGE_LIMIT_REACHED),)
        assert result.combination.total_discount == usd("25.00")
        assert times_used(orchestrator, tier) == 0
        approval = orchestrator.approval_service.get(TENANT, result.approval_id)
        assert approval.requested_amount == Decimal("25.00")
        assert orchestrator.allocation_service.list_for_transaction(TENANT, "TX-10") == []

    def test_failed_allocation_rolls_back_redemption(
        self, orchestrator, create_promotion, test_actor_id, session,
    ):
        rule = create_promotion()
        ctx = make_context("100", promo_code="SAVE10", transaction_ref="TX-9")
        orchestrator.calculate_final_price(ctx, test_actor_id)

        with pytest.raises(DuplicateAllocationError):
            orchestrator.calculate_final_price(ctx, test_actor_id)
        session.expire_all()
        assert times_used(orchestrator, rule) == 1


# ---------------------------------------------------------------------------
# Enrichment, isolation, caps
# ---------------------------------------------------------------------------


class TestContextAndPolicy:

    def test_customer_segments_from_directory(
        self, session, deterministic_clock, create_promotion, test_actor_id,
    ):
        directory = FakeDirectory({(TENANT, "cust-1"): CustomerProfile("cust-1", frozenset({"vip"}))})
        orchestrator = orchestrator_with(session, deterministic_clock, customers=directory)
        create_promotion(code="VIP", scope=RuleScope(customer_segments=frozenset({"vip"})))

        assert orchestrator.validate_promo(make_context("100"), "VIP").valid
        assert not orchestrator.validate_promo(make_context("100", customer_id="cust-2"), "VIP").valid

    def test_line_categories_from_catalog(self, session, deterministic_clock, create_promotion):
        orchestrator = orchestrator_with(session, deterministic_clock, catalog=FakeCatalog({"sku-1": "shoes"}))
        create_promotion(code="SHOES", scope=RuleScope(categories=frozenset({"shoes"})))
        ctx = DiscountContext(
            tenant_id=TENANT,
            customer_id="cust-1",
            subtotal=Decimal("80.00"),
            evaluated_at=MONDAY_NOON,
            promo_code="SHOES",
            line_items=(
                LineItem(line_id="1", amount=Decimal("50.00"), product_id="sku-1"),
                LineItem(line_id="2", amount=Decimal("30.00"), product_id="sku-2"),
            ),
        )

        [offer] = orchestrator.available_discounts(ctx)
        assert offer.amount == usd("5.00")

    def test_other_tenant_rules_not_applied(self, orchestrator, create_promotion, create_volume_tier):
        create_promotion(code="SAVE10", tenant_id=OTHER_TENANT)
        create_volume_tier("bulk", min_amount=1, tenant_id=OTHER_TENANT)
        result = orchestrator.preview(make_context("100", promo_code="SAVE10"))
        assert result.combination.total_discount.is_zero

    def test_max_discount_percentage(
        self, session, deterministic_clock, create_promotion, create_volume_tier,
    ):
        orchestrator = orchestrator_with(
            session, deterministic_clock,
            policy={"max_discount_percentage": Decimal("12"), "approval_threshold_percentage": Decimal("50")},
        )
        create_promotion(value="10")
        create_volume_tier("bulk", value="5", min_amount=50)
        result = orchestrator.preview(make_context("100", promo_code="SAVE10"))
        assert result.combination.total_discount == usd("12.00")
        assert result.combination.capped_by == "max_discount_percentage"

    def test_find_best_combination(self, orchestrator, create_promotion):
        create_promotion()
        combination = orchestrator.find_best_combination(make_context("100", promo_code="SAVE10"))
        assert combination.total_discount == usd("10.00")
