"""
Pure domain layer.

Immutable value objects, DTOs and protocols with NO dependencies on:
- ORM (SQLAlchemy)
- Database
- I/O
"""

from discount_kernel.domain.clock import Clock, DeterministicClock, SystemClock
from discount_kernel.domain.currency import CurrencyInfo, CurrencyRegistry
from discount_kernel.domain.values import Currency, Money

__all__ = [
    "Clock",
    "DeterministicClock",
    "SystemClock",
    "CurrencyInfo",
    "CurrencyRegistry",
    "Currency",
    "Money",
]
