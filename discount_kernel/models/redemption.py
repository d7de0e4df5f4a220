"""
Module: discount_kernel.models.redemption
Responsibility: One row per committed use of a usage-limited discount rule.

Per-customer limits are counted over these rows.  The row is written in the
same statement sequence as the conditional usage-counter increment, so it
commits or rolls back together with the counter.
"""

from datetime import datetime
from uuid import UUID

from sqlalchemy import Index, String
from sqlalchemy.orm import Mapped, mapped_column

from discount_kernel.db.base import Base, UUIDString


class DiscountRedemption(Base):
    __tablename__ = "discount_redemptions"

    __table_args__ = (
        Index("ix_discount_redemptions_rule_customer", "rule_id", "customer_id"),
        Index("ix_discount_redemptions_txn", "tenant_id", "transaction_ref"),
    )

    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    rule_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    source_type: Mapped[str] = mapped_column(String(30), nullable=False)
    customer_id: Mapped[str] = mapped_column(String(64), nullable=False)
    transaction_ref: Mapped[str | None] = mapped_column(String(100), nullable=True)
    redeemed_at: Mapped[datetime] = mapped_column(nullable=False)
    redeemed_by: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)

    def __repr__(self) -> str:
        return f"<DiscountRedemption rule={self.rule_id} customer={self.customer_id}>"
