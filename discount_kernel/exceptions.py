"""
Typed Exception Hierarchy for the Discount Kernel.

===============================================================================
WHY TYPED EXCEPTIONS
===============================================================================

Callers of the discount engine must branch on outcomes precisely: a discount
awaiting approval is handled differently from a double allocation, which is
handled differently from a malformed request.  Matching on message text is
fragile, so every error:
  1. Has a TYPED exception class (catch by type, not message)
  2. Has a CODE attribute (machine-readable, API-safe)
  3. Carries structured DATA (not just a message string)

Example:
    try:
        orchestrator.calculate_final_price(context, actor_id=actor)
    except AwaitingApprovalError as e:
        respond(409, code=e.code, approval_id=e.approval_id)

Ineligibility (a rule that legitimately does not apply) is NOT an error and
has no exception class.  Rule sources return empty lists or explicit
``eligible=False`` results instead.

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

    DiscountKernelError (base)
    |
    +-- ValidationError
    |   +-- ContextValidationError
    |   +-- InvalidRuleError
    |
    +-- NotFoundError
    |   +-- RuleNotFoundError
    |   +-- ApprovalNotFoundError
    |   +-- AllocationNotFoundError
    |   +-- InvoiceNotFoundError
    |
    +-- ApprovalRequiredError
    |   +-- AwaitingApprovalError
    |
    +-- ApprovalRejectedError
    |
    +-- ConflictError
    |   +-- ApprovalAlreadyResolvedError
    |   +-- ApprovalScopeMismatchError
    |   +-- AllocationStatusConflictError
    |   +-- DuplicateAllocationError
    |
    +-- ConsistencyError
    |   +-- AllocationConsistencyError
    |   +-- TamperDetectedError
    |   +-- AuditChainBrokenError
    |
    +-- ImmutabilityViolationError
"""

from decimal import Decimal
from typing import Any


class DiscountKernelError(Exception):
    """Base exception for all discount kernel errors."""

    code: str = "DISCOUNT_KERNEL_ERROR"


# =============================================================================
# Validation
# =============================================================================


class ValidationError(DiscountKernelError):
    """Caller supplied missing or malformed input."""

    code: str = "VALIDATION_ERROR"

    def __init__(self, message: str, field_errors: dict[str, str] | None = None):
        self.field_errors = dict(field_errors or {})
        super().__init__(message)


class ContextValidationError(ValidationError):
    """A pricing context failed validation."""

    code: str = "INVALID_DISCOUNT_CONTEXT"

    def __init__(self, field_errors: dict[str, str]):
        fields = ", ".join(sorted(field_errors))
        super().__init__(f"Invalid discount context: {fields}", field_errors)


class InvalidRuleError(ValidationError):
    """A discount rule definition is invalid."""

    code: str = "INVALID_DISCOUNT_RULE"

    def __init__(self, reason: str, field_errors: dict[str, str] | None = None):
        self.reason = reason
        super().__init__(f"Invalid discount rule: {reason}", field_errors)


# =============================================================================
# Not found
# =============================================================================


class NotFoundError(DiscountKernelError):
    """A referenced entity does not exist within the caller's tenant."""

    code: str = "NOT_FOUND"


class RuleNotFoundError(NotFoundError):
    """Discount rule not found."""

    code: str = "RULE_NOT_FOUND"

    def __init__(self, rule_id: str):
        self.rule_id = rule_id
        super().__init__(f"Discount rule not found: {rule_id}")


class ApprovalNotFoundError(NotFoundError):
    """Discount approval not found."""

    code: str = "APPROVAL_NOT_FOUND"

    def __init__(self, approval_id: str):
        self.approval_id = approval_id
        super().__init__(f"Discount approval not found: {approval_id}")


class AllocationNotFoundError(NotFoundError):
    """Discount allocation not found."""

    code: str = "ALLOCATION_NOT_FOUND"

    def __init__(self, allocation_id: str):
        self.allocation_id = allocation_id
        super().__init__(f"Discount allocation not found: {allocation_id}")


class InvoiceNotFoundError(NotFoundError):
    """Invoice not found through the invoice collaborator."""

    code: str = "INVOICE_NOT_FOUND"

    def __init__(self, invoice_id: str):
        self.invoice_id = invoice_id
        super().__init__(f"Invoice not found: {invoice_id}")


# =============================================================================
# Approval gate
# =============================================================================


class ApprovalRequiredError(DiscountKernelError):
    """The discount exceeds the approval threshold and cannot be committed."""

    code: str = "APPROVAL_REQUIRED"

    def __init__(
        self,
        approval_id: str,
        discount_percentage: Decimal | None = None,
        threshold_percentage: Decimal | None = None,
        message: str | None = None,
    ):
        self.approval_id = approval_id
        self.discount_percentage = discount_percentage
        self.threshold_percentage = threshold_percentage
        super().__init__(
            message
            or f"Discount of {discount_percentage}% requires approval "
            f"(threshold {threshold_percentage}%): approval {approval_id}"
        )


class AwaitingApprovalError(ApprovalRequiredError):
    """Commit attempted while the approval is still PENDING."""

    code: str = "AWAITING_APPROVAL"

    def __init__(self, approval_id: str):
        super().__init__(
            approval_id,
            message=f"Discount is awaiting approval: {approval_id}",
        )


class ApprovalRejectedError(DiscountKernelError):
    """Commit attempted with a REJECTED or EXPIRED approval."""

    code: str = "APPROVAL_REJECTED"

    def __init__(self, approval_id: str, status: str, reason: str | None = None):
        self.approval_id = approval_id
        self.status = status
        self.reason = reason
        super().__init__(
            f"Discount approval {approval_id} is {status}"
            + (f": {reason}" if reason else "")
        )


# =============================================================================
# Conflicts
# =============================================================================


class ConflictError(DiscountKernelError):
    """An operation conflicts with the current persisted state."""

    code: str = "CONFLICT"


class ApprovalAlreadyResolvedError(ConflictError):
    """Transition attempted on a terminal approval."""

    code: str = "APPROVAL_ALREADY_RESOLVED"

    def __init__(self, approval_id: str, current_status: str, attempted: str):
        self.approval_id = approval_id
        self.current_status = current_status
        self.attempted = attempted
        super().__init__(
            f"Approval {approval_id} is already {current_status}; "
            f"cannot transition to {attempted}"
        )


class ApprovalScopeMismatchError(ConflictError):
    """An approval was presented for a different priced context."""

    code: str = "APPROVAL_SCOPE_MISMATCH"

    def __init__(self, approval_id: str, reason: str):
        self.approval_id = approval_id
        self.reason = reason
        super().__init__(f"Approval {approval_id} does not cover this request: {reason}")


class AllocationStatusConflictError(ConflictError):
    """Illegal allocation status transition."""

    code: str = "ALLOCATION_STATUS_CONFLICT"

    def __init__(self, allocation_id: str, current_status: str, attempted: str):
        self.allocation_id = allocation_id
        self.current_status = current_status
        self.attempted = attempted
        super().__init__(
            f"Allocation {allocation_id} is {current_status}; "
            f"cannot transition to {attempted}"
        )


class DuplicateAllocationError(ConflictError):
    """The transaction already has an APPLIED allocation."""

    code: str = "DUPLICATE_ALLOCATION"

    def __init__(self, transaction_ref: str, existing_allocation_id: str):
        self.transaction_ref = transaction_ref
        self.existing_allocation_id = existing_allocation_id
        super().__init__(
            f"Transaction {transaction_ref} already has applied allocation "
            f"{existing_allocation_id}"
        )


# =============================================================================
# Consistency
# =============================================================================


class ConsistencyError(DiscountKernelError):
    """An internal invariant failed. Never expected; always fatal."""

    code: str = "CONSISTENCY_ERROR"


class AllocationConsistencyError(ConsistencyError):
    """Allocated shares do not reconcile to the target total."""

    code: str = "ALLOCATION_INCONSISTENT"

    def __init__(self, expected: Decimal, actual: Decimal, currency: str):
        self.expected = expected
        self.actual = actual
        self.currency = currency
        super().__init__(
            f"Allocation sum {actual} {currency} does not equal total "
            f"{expected} {currency}"
        )


class TamperDetectedError(ConsistencyError):
    """A persisted approval no longer matches its creation hash."""

    code: str = "APPROVAL_TAMPER_DETECTED"

    def __init__(self, approval_id: str):
        self.approval_id = approval_id
        super().__init__(f"Approval {approval_id} failed integrity verification")


class AuditChainBrokenError(ConsistencyError):
    """An audit event's hash no longer links to its predecessor."""

    code: str = "AUDIT_CHAIN_BROKEN"

    def __init__(self, event_seq: int, reason: str):
        self.event_seq = event_seq
        self.reason = reason
        super().__init__(f"Audit chain broken at seq {event_seq}: {reason}")


# =============================================================================
# Immutability
# =============================================================================


class ImmutabilityViolationError(DiscountKernelError):
    """Attempt to modify or delete an immutable record."""

    code: str = "IMMUTABILITY_VIOLATION"

    def __init__(self, entity_type: str, entity_id: str, reason: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.reason = reason
        super().__init__(f"Cannot modify {entity_type} {entity_id}: {reason}")


def error_details(exc: DiscountKernelError) -> dict[str, Any]:
    """Structured, public attributes of an exception (excluding ``args``)."""
    return {
        k: v
        for k, v in vars(exc).items()
        if not k.startswith("_") and k not in ("args", "code")
    }
