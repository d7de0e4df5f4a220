"""
discount_services.pricing_orchestrator -- Preview and commit of discounts.

Responsibility:
    Central DI container for the discount pipeline and the two entry
    points built on it: ``preview`` (no side effects) and
    ``calculate_final_price`` (usage redemption, approval gate, allocation).

Architecture position:
    Services -- stateful orchestration over engines + kernel.
    This module is the only place where discount services, rule sources
    and discovery are constructed and composed.

Invariants enforced:
    - Preview never writes: no usage increments, approvals or allocations.
    - A discount at or above the approval threshold is never committed in
      the call that detects it; a PENDING approval is requested instead.
    - A discount strictly below the threshold never creates an approval.
    - Usage redemption and allocation for one commit run inside a single
      savepoint; a refused redemption rolls the savepoint back, drops that
      offer and resolves the combination again.
    - When that second resolution crosses the threshold and no approval in
      hand covers its amount, nothing is committed; a PENDING approval is
      requested for the new combination.

Failure modes:
    - ContextValidationError from DiscountContext construction.
    - AwaitingApprovalError / ApprovalRejectedError /
      ApprovalScopeMismatchError when committing against an approval.
    - DuplicateAllocationError if the transaction already carries an
      APPLIED allocation.

Usage:
    orchestrator = PricingOrchestrator(session, policies=registry, clock=clock)
    result = orchestrator.preview(context)
    result = orchestrator.calculate_final_price(context, actor_id=actor)
    if result.status is PricingStatus.APPROVAL_REQUIRED:
        ...  # surface result.approval_id to the caller
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import date
from decimal import Decimal
from enum import Enum
from typing import TYPE_CHECKING, Any
from uuid import UUID

from sqlalchemy.orm import Session

from discount_engines.approval import evaluate_discount_approval, is_approval_expired
from discount_engines.combination import resolve_combination
from discount_engines.eligibility import USAGE_LIMIT_REACHED
from discount_kernel.domain.allocation import (
    AllocationLineInput,
    AllocationMethod,
    DiscountAllocation,
    TransactionType,
)
from discount_kernel.domain.approval import ApprovalCheck, ApprovalStatus
from discount_kernel.domain.clock import Clock, SystemClock
from discount_kernel.domain.collaborators import (
    AccountingBridge,
    CatalogLookup,
    CustomerDirectory,
    InvoiceLookup,
)
from discount_kernel.domain.discounts import (
    CombinationResult,
    DiscountContext,
    DiscountOffer,
    EarlyPaymentQuote,
    IneligibleOffer,
    LineItem,
    PromoValidation,
)
from discount_kernel.domain.policy import PolicySource, StaticPolicySource, TenantDiscountPolicy
from discount_kernel.exceptions import ValidationError
from discount_kernel.logging_config import LogContext, get_logger
from discount_kernel.services.approval_service import ApprovalService
from discount_kernel.services.auditor_service import AuditorService
from discount_kernel.services.redemption_service import RedemptionService
from discount_kernel.services.rule_service import RuleService
from discount_kernel.utils.hashing import hash_payload
from discount_services.allocation_service import AllocationService
from discount_services.discovery import DiscountDiscovery
from discount_services.rule_sources import (
    AttributePricingSource,
    EarlyPaymentRuleSource,
    PromotionalRuleSource,
    VolumeTierSource,
)

if TYPE_CHECKING:
    from pathlib import Path

    from discount_config.settings import Settings

logger = get_logger("services.pricing")

SUBTOTAL_LINE_REF = "subtotal"


class PricingStatus(str, Enum):
    PREVIEW = "preview"
    APPROVAL_REQUIRED = "approval_required"
    COMMITTED = "committed"


@dataclass(frozen=True)
class PricingResult:
    """Outcome of a preview or calculate call."""

    status: PricingStatus
    context_fingerprint: str
    combination: CombinationResult
    approval_check: ApprovalCheck
    approval_id: UUID | None = None
    allocation: DiscountAllocation | None = None
    ineligible: tuple[IneligibleOffer, ...] = ()

    @property
    def requires_approval(self) -> bool:
        return self.approval_check.required

    def to_dict(self) -> dict[str, Any]:
        data = self.combination.to_dict()
        data.update({
            "status": self.status.value,
            "requires_approval": self.requires_approval,
            "approval_id": str(self.approval_id) if self.approval_id else None,
            "allocation": self.allocation.to_dict() if self.allocation else None,
            "ineligible": [
                {"rule_id": str(i.rule_id), "reason": i.reason} for i in self.ineligible
            ],
        })
        return data


class PricingOrchestrator:
    """Central factory and entry point for discount pricing.

    Contract:
        Receives a SQLAlchemy Session and optional collaborators.  Constructs
        every discount service exactly once and exposes them as public
        attributes.

    Non-goals:
        - Does NOT manage transaction boundaries (caller's responsibility).
        - Does NOT own the Session lifecycle (no commit/rollback).
    """

    def __init__(
        self,
        session: Session,
        policies: PolicySource | None = None,
        clock: Clock | None = None,
        customers: CustomerDirectory | None = None,
        catalog: CatalogLookup | None = None,
        invoices: InvoiceLookup | None = None,
        accounting_bridge: AccountingBridge | None = None,
    ) -> None:
        self._session = session
        self._clock = clock or SystemClock()
        self._policies = policies or StaticPolicySource()
        self._customers = customers
        self._catalog = catalog

        # Order matters: later services depend on earlier ones.
        self.auditor = AuditorService(session, self._clock)
        self.rule_service = RuleService(session, self.auditor, self._clock)
        self.approval_service = ApprovalService(
            session, self.auditor, self._clock, expiry_rule=is_approval_expired,
        )
        self.redemption_service = RedemptionService(session, self.auditor, self._clock)
        self.allocation_service = AllocationService(
            session,
            self.auditor,
            self._clock,
            accounting_bridge=accounting_bridge,
            approval_service=self.approval_service,
        )

        self.promotions = PromotionalRuleSource(self.rule_service, self.redemption_service)
        self.early_payment = EarlyPaymentRuleSource(self.rule_service, invoices)
        self.discovery = DiscountDiscovery([
            self.promotions,
            self.early_payment,
            VolumeTierSource(self.rule_service),
            AttributePricingSource(self.rule_service),
        ])

    # -------------------------------------------------------------------------
    # Read-only
    # -------------------------------------------------------------------------

    @property
    def clock(self) -> Clock:
        return self._clock

    def policy_for(self, tenant_id: str) -> TenantDiscountPolicy:
        return self._policies.policy_for(tenant_id)

    def _policy(self, tenant_id: str, threshold_override: Decimal | None) -> TenantDiscountPolicy:
        try:
            return self.policy_for(tenant_id).with_threshold(threshold_override)
        except ValueError as exc:
            raise ValidationError(str(exc), {"threshold_percentage": str(exc)}) from exc

    def enrich(self, context: DiscountContext) -> DiscountContext:
        """Fill customer segments/category and line categories from collaborators."""
        changes: dict[str, Any] = {}
        if self._customers is not None:
            profile = self._customers.get_profile(context.tenant_id, context.customer_id)
            if profile is not None:
                changes["customer_segments"] = context.customer_segments | profile.segments
                if context.customer_category is None and profile.category:
                    changes["customer_category"] = profile.category

        if self._catalog is not None and any(
            line.category_id is None and line.product_id for line in context.line_items
        ):
            changes["line_items"] = tuple(self._categorize(context.tenant_id, line)
                                          for line in context.line_items)

        return replace(context, **changes) if changes else context

    def _categorize(self, tenant_id: str, line: LineItem) -> LineItem:
        if line.category_id is not None or not line.product_id:
            return line
        category = self._catalog.category_for(tenant_id, line.product_id)
        return replace(line, category_id=category) if category else line

    def available_discounts(self, context: DiscountContext) -> list[DiscountOffer]:
        """Every candidate offer for the context, before combination."""
        return self.discovery.discover_discounts(self.enrich(context))

    def find_best_combination(self, context: DiscountContext) -> CombinationResult:
        context = self.enrich(context)
        offers = self.discovery.discover_discounts(context)
        return self._resolve(context, offers, self.policy_for(context.tenant_id))

    def validate_promo(self, context: DiscountContext, code: str | None = None) -> PromoValidation:
        return self.promotions.validate_code(self.enrich(context), code)

    def quote_early_payment(
        self,
        tenant_id: str,
        invoice_id: str,
        payment_date: date,
    ) -> EarlyPaymentQuote:
        return self.early_payment.quote(tenant_id, invoice_id, payment_date)

    def preview(
        self,
        context: DiscountContext,
        threshold_override: Decimal | None = None,
    ) -> PricingResult:
        """Resolve the discount and the approval outcome without writing anything."""
        context = self.enrich(context)
        policy = self._policy(context.tenant_id, threshold_override)
        combination = self._resolve(context, self.discovery.discover_discounts(context), policy)
        check = self._check_approval(combination, policy)

        logger.info(
            "discount_previewed",
            extra={
                "tenant_id": context.tenant_id,
                "total_discount": str(combination.total_discount.amount),
                "requires_approval": check.required,
            },
        )
        return PricingResult(
            status=PricingStatus.PREVIEW,
            context_fingerprint=self.fingerprint(context, combination),
            combination=combination,
            approval_check=check,
        )

    # -------------------------------------------------------------------------
    # Commit
    # -------------------------------------------------------------------------

    def calculate_final_price(
        self,
        context: DiscountContext,
        actor_id: UUID,
        approval_id: UUID | None = None,
        threshold_override: Decimal | None = None,
        method: AllocationMethod | None = None,
        transaction_type: TransactionType | None = None,
    ) -> PricingResult:
        """
        Resolve the discount and commit it.

        Below the approval threshold the applied offers are redeemed and,
        when the context names a transaction, an APPLIED allocation is
        written.  At or above the threshold a PENDING approval is requested
        and returned unless ``approval_id`` unlocks the commit.

        Raises:
            AwaitingApprovalError: ``approval_id`` is still PENDING.
            ApprovalRejectedError: ``approval_id`` was rejected or expired.
            ApprovalScopeMismatchError: ``approval_id`` belongs to another context.
        """
        context = self.enrich(context)
        policy = self._policy(context.tenant_id, threshold_override)
        offers = self.discovery.discover_discounts(context)

        with LogContext.bind(
            tenant_id=context.tenant_id,
            transaction_ref=context.transaction_ref,
            actor_id=actor_id,
        ):
            combination = self._resolve(context, offers, policy)
            check = self._check_approval(combination, policy)
            fingerprint = self.fingerprint(context, combination)

            if check.required:
                if approval_id is None:
                    return self._request_approval(context, combination, check, fingerprint, actor_id)

                self.approval_service.ensure_committable(
                    context.tenant_id,
                    approval_id,
                    fingerprint,
                    expiry_hours=policy.approval_expiry_hours,
                    expiry_action=policy.approval_expiry_action,
                )
            else:
                approval_id = None

            return self._commit(
                context=context,
                offers=offers,
                combination=combination,
                check=check,
                fingerprint=fingerprint,
                policy=policy,
                actor_id=actor_id,
                approval_id=approval_id,
                method=method or policy.default_allocation_method,
                transaction_type=transaction_type or _infer_transaction_type(context),
            )

    def _commit(
        self,
        *,
        context: DiscountContext,
        offers: list[DiscountOffer],
        combination: CombinationResult,
        check: ApprovalCheck,
        fingerprint: str,
        policy: TenantDiscountPolicy,
        actor_id: UUID,
        approval_id: UUID | None,
        method: AllocationMethod,
        transaction_type: TransactionType,
    ) -> PricingResult:
        ineligible: list[IneligibleOffer] = []
        remaining = list(offers)

        # Bounded: every retry drops at least one offer.
        while True:
            savepoint = self._session.begin_nested()
            try:
                refused = self._redeem_all(context, combination.applied_offers, actor_id)
            except Exception:
                savepoint.rollback()
                raise
            if refused is not None:
                savepoint.rollback()
                ineligible.append(IneligibleOffer(refused.rule_id, USAGE_LIMIT_REACHED))
                remaining = [o for o in remaining if o.rule_id != refused.rule_id]
                combination = self._resolve(context, remaining, policy)
                check = self._check_approval(combination, policy)
                fingerprint = self.fingerprint(context, combination)
                logger.info(
                    "offer_dropped_at_commit",
                    extra={"rule_id": str(refused.rule_id), "reason": USAGE_LIMIT_REACHED},
                )
                if check.required and not self._approval_covers(
                    context.tenant_id, approval_id, combination,
                ):
                    # The dropped offer was holding back a larger combination.
                    return self._request_approval(
                        context,
                        combination,
                        check,
                        fingerprint,
                        actor_id,
                        ineligible=tuple(ineligible),
                    )
                continue

            allocation = None
            if context.transaction_ref and combination.total_discount.is_positive:
                try:
                    allocation = self._allocate_and_apply(
                        context, combination, actor_id, approval_id, method, transaction_type,
                    )
                except Exception:
                    savepoint.rollback()
                    raise
            savepoint.commit()
            break

        logger.info(
            "discount_committed",
            extra={
                "total_discount": str(combination.total_discount.amount),
                "applied_count": len(combination.applied_offers),
                "dropped_count": len(ineligible),
                "allocation_id": str(allocation.allocation_id) if allocation else None,
            },
        )
        return PricingResult(
            status=PricingStatus.COMMITTED,
            context_fingerprint=fingerprint,
            combination=combination,
            approval_check=check,
            approval_id=approval_id,
            allocation=allocation,
            ineligible=tuple(ineligible),
        )

    def _request_approval(
        self,
        context: DiscountContext,
        combination: CombinationResult,
        check: ApprovalCheck,
        fingerprint: str,
        actor_id: UUID,
        ineligible: tuple[IneligibleOffer, ...] = (),
    ) -> PricingResult:
        approval = self.approval_service.request_approval(
            tenant_id=context.tenant_id,
            context_fingerprint=fingerprint,
            customer_id=context.customer_id,
            currency=context.currency,
            subtotal=context.subtotal,
            check=check,
            requested_by=actor_id,
            transaction_ref=context.transaction_ref,
        )
        logger.info(
            "discount_approval_required",
            extra={
                "approval_id": str(approval.approval_id),
                "triggered_by": check.triggered_by,
            },
        )
        return PricingResult(
            status=PricingStatus.APPROVAL_REQUIRED,
            context_fingerprint=fingerprint,
            combination=combination,
            approval_check=check,
            approval_id=approval.approval_id,
            ineligible=ineligible,
        )

    def _approval_covers(
        self,
        tenant_id: str,
        approval_id: UUID | None,
        combination: CombinationResult,
    ) -> bool:
        """An approval granted for a larger discount still covers a smaller one."""
        if approval_id is None:
            return False
        approval = self.approval_service.get(tenant_id, approval_id)
        return (
            approval.status == ApprovalStatus.APPROVED
            and combination.total_discount.amount <= approval.requested_amount
        )

    def _redeem_all(
        self,
        context: DiscountContext,
        applied: tuple[DiscountOffer, ...],
        actor_id: UUID,
    ) -> DiscountOffer | None:
        """Redeem each applied offer; return the first one refused."""
        for offer in applied:
            taken = self.redemption_service.redeem(
                tenant_id=context.tenant_id,
                rule_id=offer.rule_id,
                source_type=offer.source_type,
                customer_id=context.customer_id,
                actor_id=actor_id,
                transaction_ref=context.transaction_ref,
            )
            if not taken:
                return offer
        return None

    def _allocate_and_apply(
        self,
        context: DiscountContext,
        combination: CombinationResult,
        actor_id: UUID,
        approval_id: UUID | None,
        method: AllocationMethod,
        transaction_type: TransactionType,
    ) -> DiscountAllocation:
        if context.line_items:
            lines = [
                AllocationLineInput(line_ref=line.line_id, amount=line.amount, quantity=line.quantity)
                for line in context.line_items
            ]
        else:
            lines = [AllocationLineInput(line_ref=SUBTOTAL_LINE_REF, amount=context.subtotal)]
            method = AllocationMethod.PRO_RATA_AMOUNT

        allocation = self.allocation_service.allocate(
            tenant_id=context.tenant_id,
            transaction_ref=context.transaction_ref,
            transaction_type=transaction_type,
            total=combination.total_discount,
            lines=lines,
            actor_id=actor_id,
            method=method,
            rule_ids=combination.rule_ids,
            approval_id=approval_id,
        )
        return self.allocation_service.apply(context.tenant_id, allocation.allocation_id, actor_id)

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    @staticmethod
    def fingerprint(context: DiscountContext, combination: CombinationResult) -> str:
        """Hash binding an approval to the priced context and its applied offers."""
        return hash_payload({
            "context": context.to_canonical_dict(),
            "applied": sorted(
                [str(o.rule_id), o.amount.amount] for o in combination.applied_offers
            ),
        })

    @staticmethod
    def _resolve(
        context: DiscountContext,
        offers: list[DiscountOffer],
        policy: TenantDiscountPolicy,
    ) -> CombinationResult:
        try:
            return resolve_combination(
                offers=offers,
                subtotal=context.subtotal_money,
                max_discount_percentage=policy.max_discount_percentage,
                exclusive_dominates=policy.exclusive_dominates,
            )
        except ValueError as exc:
            raise ValidationError(str(exc), {"offers": str(exc)}) from exc

    @staticmethod
    def _check_approval(
        combination: CombinationResult,
        policy: TenantDiscountPolicy,
    ) -> ApprovalCheck:
        return evaluate_discount_approval(
            total_discount=combination.total_discount,
            subtotal=combination.subtotal,
            threshold_percentage=policy.approval_threshold_percentage,
            threshold_amount=policy.approval_threshold_amount,
        )


def _infer_transaction_type(context: DiscountContext) -> TransactionType:
    return TransactionType.INVOICE if context.invoice_id else TransactionType.POS_SALE


def build_pricing_orchestrator(
    session: Session,
    settings: "Settings | None" = None,
    policy_file: "Path | None" = None,
    clock: Clock | None = None,
    **collaborators: Any,
) -> PricingOrchestrator:
    """Build a PricingOrchestrator with tenant policies loaded from config.

    Args:
        session: SQLAlchemy session.
        settings: Process settings; read from the environment when omitted.
        policy_file: Explicit policy file, overriding ``settings.policy_file``.
        clock: Optional clock; default SystemClock.
        **collaborators: customers, catalog, invoices, accounting_bridge.
    """
    from discount_config import get_policy_source

    return PricingOrchestrator(
        session,
        policies=get_policy_source(policy_file, settings=settings),
        clock=clock,
        **collaborators,
    )
