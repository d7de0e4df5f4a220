"""
Collaborators -- Narrow interfaces to systems outside the discount engine.

The engine consumes customer, catalog and invoice data and publishes a
"transaction finalized with discount" event.  Each boundary is a Protocol so
hosts can plug in their own persistence without the engine importing it.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from typing import Protocol
from uuid import UUID


@dataclass(frozen=True)
class CustomerProfile:
    customer_id: str
    segments: frozenset[str] = frozenset()
    category: str | None = None


@dataclass(frozen=True)
class InvoiceSnapshot:
    """The invoice fields early-payment evaluation needs."""

    invoice_id: str
    tenant_id: str
    customer_id: str
    invoice_date: date
    amount: Decimal
    currency: str = "USD"


@dataclass(frozen=True)
class DiscountFinalizedEvent:
    """Published when an allocation is applied, for contra-revenue posting."""

    tenant_id: str
    allocation_id: UUID
    allocation_number: str
    transaction_ref: str
    transaction_type: str
    currency: str
    total_discount: Decimal
    line_amounts: tuple[tuple[str, Decimal], ...]
    rule_ids: tuple[UUID, ...]
    finalized_at: datetime


class CustomerDirectory(Protocol):
    def get_profile(self, tenant_id: str, customer_id: str) -> CustomerProfile | None:
        ...


class CatalogLookup(Protocol):
    def category_for(self, tenant_id: str, product_id: str) -> str | None:
        ...


class InvoiceLookup(Protocol):
    def get_invoice(self, tenant_id: str, invoice_id: str) -> InvoiceSnapshot | None:
        ...


class AccountingBridge(Protocol):
    def on_discount_finalized(self, event: DiscountFinalizedEvent) -> None:
        ...
