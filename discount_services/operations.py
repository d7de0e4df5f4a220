"""
discount_services.operations -- JSON-in / JSON-out discount operations.

Responsibility:
    The outward surface of the discount engine.  Each method takes the
    tenant id (as an authenticated session would supply it) plus a plain
    dict payload, calls the pricing orchestrator and returns an
    ``OperationResult`` holding an HTTP-equivalent status and a
    JSON-compatible body.

Architecture position:
    Services -- the only layer that translates typed kernel errors into
    error payloads.  Routing and transport are left to the host.

Invariants enforced:
    - Every kernel error becomes ``{"error": {"code", "message", "details"}}``.
    - Tenant id is always explicit; lookups never cross tenants, so an id
      from another tenant surfaces as 404.
    - Errors outside the kernel hierarchy propagate unchanged.

Usage:
    with session_scope() as session:
        ops = DiscountOperations(PricingOrchestrator(session, policies=registry))
        result = ops.preview("t1", {"customer_id": "c1", "amount": "120.00"})
        result.status, result.body
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Callable
from uuid import UUID

from discount_kernel.domain.allocation import (
    AllocationLineInput,
    AllocationMethod,
    TransactionType,
)
from discount_kernel.domain.approval import ApprovalStatus
from discount_kernel.domain.discounts import DiscountContext, LineItem
from discount_kernel.domain.values import Money
from discount_kernel.exceptions import (
    ApprovalRejectedError,
    ApprovalRequiredError,
    ConflictError,
    ConsistencyError,
    DiscountKernelError,
    NotFoundError,
    ValidationError,
    error_details,
)
from discount_kernel.logging_config import LogContext, get_logger
from discount_services.pricing_orchestrator import PricingOrchestrator, PricingStatus

logger = get_logger("services.operations")


@dataclass(frozen=True)
class OperationResult:
    status: int
    body: dict[str, Any] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.status < 400


def _status_for(exc: DiscountKernelError) -> int:
    if isinstance(exc, ValidationError):
        return 400
    if isinstance(exc, NotFoundError):
        return 404
    if isinstance(exc, (ApprovalRequiredError, ApprovalRejectedError, ConflictError)):
        return 409
    return 500


def _details_for(exc: DiscountKernelError) -> dict[str, Any]:
    if isinstance(exc, ValidationError):
        return {"field_errors": dict(exc.field_errors)}
    if isinstance(exc, ConsistencyError):
        return {}
    return {
        key: str(value) if value is not None and not isinstance(value, (int, bool)) else value
        for key, value in error_details(exc).items()
    }


def error_result(exc: DiscountKernelError) -> OperationResult:
    """Translate a kernel error into an error payload."""
    status = _status_for(exc)
    message = "Internal consistency error" if isinstance(exc, ConsistencyError) else str(exc)
    log = logger.error if status >= 500 else logger.warning
    log("operation_failed", extra={"error_code": exc.code, "status": status})
    return OperationResult(
        status=status,
        body={"error": {"code": exc.code, "message": message, "details": _details_for(exc)}},
    )


# =============================================================================
# Payload parsing
# =============================================================================


def _decimal(payload: dict, key: str, errors: dict[str, str], required: bool = True) -> Decimal | None:
    raw = payload.get(key)
    if raw is None or raw == "":
        if required:
            errors[key] = "required"
        return None
    if isinstance(raw, float):
        raw = repr(raw)
    try:
        value = Decimal(str(raw))
    except (InvalidOperation, ValueError):
        errors[key] = "must be a decimal number"
        return None
    if not value.is_finite():
        errors[key] = "must be a decimal number"
        return None
    return value


def _uuid(raw: Any, key: str, errors: dict[str, str]) -> UUID | None:
    if raw is None or raw == "":
        return None
    if isinstance(raw, UUID):
        return raw
    try:
        return UUID(str(raw))
    except ValueError:
        errors[key] = "must be a UUID"
        return None


def _date(raw: Any, key: str, errors: dict[str, str]) -> date | None:
    if raw is None or raw == "":
        return None
    if isinstance(raw, date):
        return raw
    try:
        return date.fromisoformat(str(raw))
    except ValueError:
        errors[key] = "must be an ISO date"
        return None


def _day_start(day: date) -> datetime:
    return datetime.combine(day, time.min, tzinfo=timezone.utc)


def _enum(enum_cls, raw: Any, key: str, errors: dict[str, str]):
    if raw is None or raw == "":
        return None
    try:
        return enum_cls(str(raw).lower())
    except ValueError:
        errors[key] = f"must be one of {', '.join(m.value for m in enum_cls)}"
        return None


def _raise_if(errors: dict[str, str]) -> None:
    if errors:
        raise ValidationError(f"Invalid request: {', '.join(sorted(errors))}", errors)


def _require_uuid(raw: Any, key: str) -> UUID:
    errors: dict[str, str] = {}
    value = _uuid(raw, key, errors)
    if value is None and not errors:
        errors[key] = "required"
    _raise_if(errors)
    return value


def parse_context(tenant_id: str, payload: dict, now: datetime) -> DiscountContext:
    """Build a DiscountContext from a request payload."""
    errors: dict[str, str] = {}
    items: list[LineItem] = []
    for idx, raw in enumerate(payload.get("items") or []):
        item_errors: dict[str, str] = {}
        amount = _decimal(raw, "amount", item_errors)
        quantity = _decimal(raw, "quantity", item_errors, required=False)
        for key, msg in item_errors.items():
            errors[f"items[{idx}].{key}"] = msg
        if amount is None:
            continue
        items.append(
            LineItem(
                line_id=str(raw.get("line_id") or raw.get("id") or idx + 1),
                amount=amount,
                quantity=quantity if quantity is not None else Decimal("1"),
                product_id=raw.get("product_id"),
                service_id=raw.get("service_id"),
                category_id=raw.get("category_id"),
            )
        )

    subtotal = _decimal(payload, "amount", errors, required=not items)
    if subtotal is None and items and "amount" not in errors:
        subtotal = sum((item.amount for item in items), Decimal("0"))
    payment_date = _date(payload.get("payment_date"), "payment_date", errors)

    evaluated_at = now
    if payload.get("evaluated_at"):
        try:
            evaluated_at = datetime.fromisoformat(str(payload["evaluated_at"]))
        except ValueError:
            errors["evaluated_at"] = "must be an ISO datetime"
    _raise_if(errors)

    return DiscountContext(
        tenant_id=tenant_id,
        customer_id=str(payload.get("customer_id") or ""),
        subtotal=subtotal,
        evaluated_at=evaluated_at,
        currency=str(payload.get("currency") or "USD"),
        line_items=tuple(items),
        promo_code=payload.get("promo_code"),
        customer_segments=frozenset(payload.get("customer_segments") or ()),
        customer_category=payload.get("customer_category"),
        attributes=dict(payload.get("attributes") or {}),
        transaction_ref=payload.get("transaction_ref"),
        invoice_id=payload.get("invoice_id"),
        payment_date=payment_date,
    )


# =============================================================================
# Operations
# =============================================================================


class DiscountOperations:
    """Typed replacement for the discount HTTP endpoints."""

    def __init__(self, orchestrator: PricingOrchestrator):
        self._orchestrator = orchestrator
        self._clock = orchestrator.clock

    def _run(self, tenant_id: str, fn: Callable[[], OperationResult]) -> OperationResult:
        with LogContext.bind(tenant_id=tenant_id):
            try:
                return fn()
            except DiscountKernelError as exc:
                return error_result(exc)

    def _context(self, tenant_id: str, payload: dict) -> DiscountContext:
        return parse_context(tenant_id, payload or {}, self._clock.now())

    # --- pricing -------------------------------------------------------------

    def preview(self, tenant_id: str, payload: dict) -> OperationResult:
        """POST /discounts/preview"""

        def op() -> OperationResult:
            errors: dict[str, str] = {}
            threshold = _decimal(payload, "threshold_percentage", errors, required=False)
            _raise_if(errors)
            result = self._orchestrator.preview(
                self._context(tenant_id, payload), threshold_override=threshold,
            )
            return OperationResult(200, result.to_dict())

        return self._run(tenant_id, op)

    def calculate(self, tenant_id: str, payload: dict, actor_id: UUID) -> OperationResult:
        """POST /discounts/calculate"""

        def op() -> OperationResult:
            errors: dict[str, str] = {}
            threshold = _decimal(payload, "threshold_percentage", errors, required=False)
            approval_id = _uuid(payload.get("approval_id"), "approval_id", errors)
            method = _enum(AllocationMethod, payload.get("allocation_method"), "allocation_method", errors)
            txn_type = _enum(TransactionType, payload.get("transaction_type"), "transaction_type", errors)
            _raise_if(errors)

            result = self._orchestrator.calculate_final_price(
                self._context(tenant_id, payload),
                actor_id=actor_id,
                approval_id=approval_id,
                threshold_override=threshold,
                method=method,
                transaction_type=txn_type,
            )
            status = 202 if result.status == PricingStatus.APPROVAL_REQUIRED else 200
            return OperationResult(status, result.to_dict())

        return self._run(tenant_id, op)

    def available(self, tenant_id: str, payload: dict) -> OperationResult:
        """GET /discounts/available"""

        def op() -> OperationResult:
            offers = self._orchestrator.available_discounts(self._context(tenant_id, payload))
            return OperationResult(200, {"offers": [o.to_dict() for o in offers]})

        return self._run(tenant_id, op)

    def validate_promo(self, tenant_id: str, payload: dict) -> OperationResult:
        """POST /discounts/promo/validate"""

        def op() -> OperationResult:
            code = payload.get("code") or payload.get("promo_code")
            if not code:
                raise ValidationError("A promo code is required", {"code": "required"})
            validation = self._orchestrator.validate_promo(
                self._context(tenant_id, payload), str(code),
            )
            return OperationResult(200, validation.to_dict())

        return self._run(tenant_id, op)

    def quote_early_payment(self, tenant_id: str, payload: dict) -> OperationResult:
        """POST /discounts/early-payment/quote"""

        def op() -> OperationResult:
            errors: dict[str, str] = {}
            invoice_id = payload.get("invoice_id")
            if not invoice_id:
                errors["invoice_id"] = "required"
            payment_date = _date(payload.get("payment_date"), "payment_date", errors)
            _raise_if(errors)
            quote = self._orchestrator.quote_early_payment(
                tenant_id, str(invoice_id), payment_date or self._clock.now().date(),
            )
            return OperationResult(200, quote.to_dict())

        return self._run(tenant_id, op)

    # --- approvals -----------------------------------------------------------

    def approve(
        self,
        tenant_id: str,
        approval_id: Any,
        approver_id: UUID,
        payload: dict | None = None,
    ) -> OperationResult:
        """POST /discounts/approvals/:id/approve"""

        def op() -> OperationResult:
            approval = self._orchestrator.approval_service.approve(
                tenant_id,
                _require_uuid(approval_id, "approval_id"),
                approver_id,
                notes=(payload or {}).get("notes"),
            )
            return OperationResult(200, approval.to_dict())

        return self._run(tenant_id, op)

    def reject(
        self,
        tenant_id: str,
        approval_id: Any,
        approver_id: UUID,
        payload: dict,
    ) -> OperationResult:
        """POST /discounts/approvals/:id/reject"""

        def op() -> OperationResult:
            approval = self._orchestrator.approval_service.reject(
                tenant_id,
                _require_uuid(approval_id, "approval_id"),
                approver_id,
                reason=str((payload or {}).get("reason") or ""),
            )
            return OperationResult(200, approval.to_dict())

        return self._run(tenant_id, op)

    def list_pending_approvals(self, tenant_id: str) -> OperationResult:
        """GET /discounts/approvals/pending"""

        def op() -> OperationResult:
            pending = self._orchestrator.approval_service.list_pending(tenant_id)
            return OperationResult(200, {"approvals": [a.to_dict() for a in pending]})

        return self._run(tenant_id, op)

    def approval_history(self, tenant_id: str, params: dict | None = None) -> OperationResult:
        """GET /discounts/approvals?status=&from=&to="""

        def op() -> OperationResult:
            query = params or {}
            errors: dict[str, str] = {}
            status = _enum(ApprovalStatus, query.get("status"), "status", errors)
            start = _date(query.get("from"), "from", errors)
            end = _date(query.get("to"), "to", errors)
            if start and end and end < start:
                errors["to"] = "must not be before from"
            _raise_if(errors)
            approvals = self._orchestrator.approval_service.list_approvals(
                tenant_id,
                status=status,
                requested_from=_day_start(start) if start else None,
                requested_to=_day_start(end + timedelta(days=1)) if end else None,
            )
            return OperationResult(200, {"approvals": [a.to_dict() for a in approvals]})

        return self._run(tenant_id, op)

    def expire_stale_approvals(self, tenant_id: str) -> OperationResult:
        def op() -> OperationResult:
            policy = self._orchestrator.policy_for(tenant_id)
            expired = self._orchestrator.approval_service.expire_stale(
                tenant_id,
                self._clock.now(),
                policy.approval_expiry_hours,
                policy.approval_expiry_action,
            )
            return OperationResult(200, {"expired": [str(a) for a in expired]})

        return self._run(tenant_id, op)

    # --- allocations ---------------------------------------------------------

    def create_allocation(self, tenant_id: str, payload: dict, actor_id: UUID) -> OperationResult:
        """POST /discounts/allocations"""

        def op() -> OperationResult:
            errors: dict[str, str] = {}
            total = _decimal(payload, "total", errors)
            method = _enum(AllocationMethod, payload.get("method"), "method", errors)
            txn_type = _enum(TransactionType, payload.get("transaction_type"), "transaction_type", errors)
            approval_id = _uuid(payload.get("approval_id"), "approval_id", errors)
            rule_ids = [
                _uuid(raw, f"rule_ids[{idx}]", errors)
                for idx, raw in enumerate(payload.get("rule_ids") or [])
            ]

            lines: list[AllocationLineInput] = []
            for idx, raw in enumerate(payload.get("lines") or []):
                line_errors: dict[str, str] = {}
                amount = _decimal(raw, "amount", line_errors)
                quantity = _decimal(raw, "quantity", line_errors, required=False)
                weight = _decimal(raw, "weight", line_errors, required=False)
                for key, msg in line_errors.items():
                    errors[f"lines[{idx}].{key}"] = msg
                if amount is not None:
                    lines.append(
                        AllocationLineInput(
                            line_ref=str(raw.get("line_ref") or idx + 1),
                            amount=amount,
                            quantity=quantity if quantity is not None else Decimal("1"),
                            weight=weight,
                        )
                    )
            if not lines and not any(k.startswith("lines") for k in errors):
                errors["lines"] = "at least one line is required"
            _raise_if(errors)

            try:
                money = Money.of(total, str(payload.get("currency") or "USD"))
            except ValueError as exc:
                raise ValidationError(str(exc), {"currency": str(exc)}) from exc

            allocation = self._orchestrator.allocation_service.allocate(
                tenant_id=tenant_id,
                transaction_ref=str(payload.get("transaction_ref") or ""),
                transaction_type=txn_type or TransactionType.INVOICE,
                total=money,
                lines=lines,
                actor_id=actor_id,
                method=method or self._orchestrator.policy_for(tenant_id).default_allocation_method,
                rule_ids=[r for r in rule_ids if r is not None],
                approval_id=approval_id,
            )
            return OperationResult(201, allocation.to_dict())

        return self._run(tenant_id, op)

    def apply_allocation(self, tenant_id: str, allocation_id: Any, actor_id: UUID) -> OperationResult:
        """POST /discounts/allocations/:id/apply"""

        def op() -> OperationResult:
            allocation = self._orchestrator.allocation_service.apply(
                tenant_id, _require_uuid(allocation_id, "allocation_id"), actor_id,
            )
            return OperationResult(200, allocation.to_dict())

        return self._run(tenant_id, op)

    def void_allocation(
        self,
        tenant_id: str,
        allocation_id: Any,
        actor_id: UUID,
        payload: dict,
    ) -> OperationResult:
        """POST /discounts/allocations/:id/void"""

        def op() -> OperationResult:
            allocation = self._orchestrator.allocation_service.void(
                tenant_id,
                _require_uuid(allocation_id, "allocation_id"),
                actor_id,
                reason=str((payload or {}).get("reason") or ""),
            )
            return OperationResult(200, allocation.to_dict())

        return self._run(tenant_id, op)
