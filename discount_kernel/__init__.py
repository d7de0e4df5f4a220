"""
Discount Kernel

Multi-tenant discount calculation and allocation core:
- Typed discount rules with soft lifecycle
- Approval gate for large discounts
- Exact minor-unit allocation across line items
- Atomic usage redemption for promotional codes
- Hash-chained audit trail
"""

__version__ = "0.1.0"
