"""
RedemptionService -- atomic consumption of usage-limited discount rules.

Responsibility:
    Increments a rule's usage counter and records the redemption, but only
    while the rule is active and below both its global and per-customer
    caps.  The check and the increment are one conditional UPDATE, so two
    concurrent commits can never both take the last use.

Architecture position:
    Kernel > Services.  May import from domain/, models/, db/.

Invariants enforced:
    - times_used never exceeds max_uses.
    - A customer never redeems a rule more than max_uses_per_customer times.
    - A failed redemption changes nothing.

Failure modes:
    - None raised; ``redeem`` returns False when the rule is exhausted,
      inactive or capped for the customer.
"""

from __future__ import annotations

from uuid import UUID

from sqlalchemy import func, or_, select, update
from sqlalchemy.orm import Session

from discount_kernel.domain.clock import Clock, SystemClock
from discount_kernel.domain.discounts import RuleSourceType
from discount_kernel.logging_config import get_logger
from discount_kernel.models.redemption import DiscountRedemption
from discount_kernel.models.rules import RULE_MODELS
from discount_kernel.services.auditor_service import AuditorService

logger = get_logger("services.redemption")


class RedemptionService:
    """Conditional usage-counter increments with a redemption ledger."""

    def __init__(
        self,
        session: Session,
        auditor: AuditorService,
        clock: Clock | None = None,
    ):
        self._session = session
        self._auditor = auditor
        self._clock = clock or SystemClock()

    def customer_redemptions(self, tenant_id: str, rule_id: UUID, customer_id: str) -> int:
        """Committed redemptions of one rule by one customer."""
        return self._session.execute(
            select(func.count(DiscountRedemption.id)).where(
                DiscountRedemption.tenant_id == tenant_id,
                DiscountRedemption.rule_id == rule_id,
                DiscountRedemption.customer_id == customer_id,
            )
        ).scalar_one()

    def redeem(
        self,
        *,
        tenant_id: str,
        rule_id: UUID,
        source_type: RuleSourceType,
        customer_id: str,
        actor_id: UUID,
        transaction_ref: str | None = None,
    ) -> bool:
        """
        Consume one use of a rule for a customer.

        Returns:
            True if the use was taken; False if a cap was already reached.
        """
        model_cls = RULE_MODELS[source_type]
        per_customer = (
            select(func.count(DiscountRedemption.id))
            .where(
                DiscountRedemption.rule_id == rule_id,
                DiscountRedemption.customer_id == customer_id,
            )
            .scalar_subquery()
        )

        result = self._session.execute(
            update(model_cls)
            .where(
                model_cls.id == rule_id,
                model_cls.tenant_id == tenant_id,
                model_cls.is_active.is_(True),
                or_(model_cls.max_uses.is_(None), model_cls.times_used < model_cls.max_uses),
                or_(
                    model_cls.max_uses_per_customer.is_(None),
                    per_customer < model_cls.max_uses_per_customer,
                ),
            )
            .values(times_used=model_cls.times_used + 1)
            .execution_options(synchronize_session="fetch")
        )

        if result.rowcount != 1:
            logger.info(
                "redemption_refused",
                extra={
                    "tenant_id": tenant_id,
                    "rule_id": str(rule_id),
                    "customer_id": customer_id,
                },
            )
            return False

        self._session.add(
            DiscountRedemption(
                tenant_id=tenant_id,
                rule_id=rule_id,
                source_type=source_type.value,
                customer_id=customer_id,
                transaction_ref=transaction_ref,
                redeemed_at=self._clock.now(),
                redeemed_by=actor_id,
            )
        )
        self._session.flush()

        if source_type == RuleSourceType.PROMOTIONAL:
            self._auditor.record_promo_redeemed(
                tenant_id=tenant_id,
                rule_id=rule_id,
                customer_id=customer_id,
                transaction_ref=transaction_ref,
                actor_id=actor_id,
            )
        logger.debug(
            "redemption_recorded",
            extra={"rule_id": str(rule_id), "customer_id": customer_id},
        )
        return True
