"""
discount_services.discovery -- Gather candidate offers from every rule source.

Responsibility:
    Asks each configured RuleSource for its candidates, drops non-positive
    offers, removes duplicates by rule id and returns the candidates in a
    deterministic order.

Architecture position:
    Services -- stateful orchestration over engines + kernel.

Invariants enforced:
    - Each rule contributes at most one offer (the larger one on a clash).
    - Order is largest amount first, then priority, then rule id.
"""

from __future__ import annotations

from collections.abc import Sequence
from uuid import UUID

from discount_kernel.domain.discounts import DiscountContext, DiscountOffer, RuleSource
from discount_kernel.logging_config import get_logger

logger = get_logger("services.discovery")


def _offer_order(offer: DiscountOffer) -> tuple:
    return (-offer.amount.amount, -offer.priority, str(offer.rule_id))


class DiscountDiscovery:
    """Fan-out over rule sources."""

    def __init__(self, sources: Sequence[RuleSource]):
        self._sources = tuple(sources)

    @property
    def sources(self) -> tuple[RuleSource, ...]:
        return self._sources

    def discover_discounts(self, context: DiscountContext) -> list[DiscountOffer]:
        by_rule: dict[UUID, DiscountOffer] = {}
        for source in self._sources:
            found = source.find_candidates(context)
            logger.debug(
                "rule_source_evaluated",
                extra={"source_type": source.source_type.value, "candidates": len(found)},
            )
            for offer in found:
                if not offer.amount.is_positive:
                    continue
                current = by_rule.get(offer.rule_id)
                if current is None or offer.amount > current.amount:
                    by_rule[offer.rule_id] = offer

        offers = sorted(by_rule.values(), key=_offer_order)
        logger.info(
            "discounts_discovered",
            extra={"tenant_id": context.tenant_id, "candidate_count": len(offers)},
        )
        return offers
