"""
Tests for the pure discount approval engine.

Tests cover:
- evaluate_discount_approval: percentage threshold boundary, amount trigger,
  zero discount, negative threshold
- is_approval_expired: no expiry configured, boundary at exactly N hours,
  naive timestamps read as UTC
"""

from datetime import timedelta
from decimal import Decimal

import pytest

from discount_engines.approval import evaluate_discount_approval, is_approval_expired
from discount_kernel.domain.approval import ApprovalStatus
from discount_kernel.domain.values import Money
from tests.factories import MONDAY_NOON


def check(discount: str, subtotal: str = "100.00", threshold: str = "20", amount: str | None = None):
    return evaluate_discount_approval(
        total_discount=Money.of(discount, "USD"),
        subtotal=Money.of(subtotal, "USD"),
        threshold_percentage=Decimal(threshold),
        threshold_amount=Decimal(amount) if amount is not None else None,
    )


class TestThresholdPercentage:

    def test_below_threshold(self):
        result = check("19.99")
        assert not result.required
        assert result.status == ApprovalStatus.NOT_REQUIRED

    def test_exactly_at_threshold_requires_approval(self):
        result = check("20.00")
        assert result.required
        assert result.triggered_by == "percentage"
        assert result.status == ApprovalStatus.PENDING

    def test_percentage_is_reported(self):
        assert check("25.00", subtotal="200.00").discount_percentage == Decimal("12.5")

    def test_zero_discount_never_requires_approval(self):
        assert not check("0.00", threshold="0").required

    def test_zero_threshold_requires_approval_for_any_discount(self):
        assert check("0.01", threshold="0").required

    def test_negative_threshold_rejected(self):
        with pytest.raises(ValueError):
            check("1.00", threshold="-1")


class TestThresholdAmount:

    def test_amount_trigger_below_percentage(self):
        result = check("600.00", subtotal="10000.00", amount="500")
        assert result.required
        assert result.triggered_by == "amount"

    def test_amount_not_reached(self):
        assert not check("400.00", subtotal="10000.00", amount="500").required


class TestExpiry:

    def test_no_expiry_configured(self):
        assert not is_approval_expired(MONDAY_NOON, MONDAY_NOON + timedelta(days=365), None)

    def test_expires_at_boundary(self):
        assert not is_approval_expired(MONDAY_NOON, MONDAY_NOON + timedelta(hours=23, minutes=59), 24)
        assert is_approval_expired(MONDAY_NOON, MONDAY_NOON + timedelta(hours=24), 24)

    def test_naive_timestamps_are_utc(self):
        naive = MONDAY_NOON.replace(tzinfo=None)
        assert is_approval_expired(naive, MONDAY_NOON + timedelta(hours=24), 24)
        assert not is_approval_expired(MONDAY_NOON, naive + timedelta(hours=23), 24)
