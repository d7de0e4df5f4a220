"""
discount_services.allocation_service -- Persisted discount allocations.

Responsibility:
    Runs the pure AllocationEngine over a transaction's lines and persists
    the result as an allocation aggregate, then drives its lifecycle:
    PENDING -> APPLIED -> VOID, reallocation, and the active discount total
    for a transaction.

Architecture position:
    Services -- stateful orchestration over engines + kernel.
    Composes AllocationEngine (pure split), SequenceService (allocation
    numbers), AuditorService (trail) and the allocation ORM models.

Invariants enforced:
    - sum(line allocations) == total, re-verified before anything is
      persisted.
    - At most one APPLIED allocation per (tenant, transaction_ref); checked
      while holding a per-transaction lock (an advisory transaction lock on
      PostgreSQL, the database write lock on SQLite).
    - Allocations and their lines are never edited or deleted; changes go
      through void + reallocate.
    - An allocation citing an approval is only written while that approval
      is APPROVED.

Failure modes:
    - DuplicateAllocationError if the transaction already has an APPLIED
      allocation.
    - AwaitingApprovalError / ApprovalRejectedError for an approval id that
      is not APPROVED.
    - AllocationConsistencyError if the engine output does not reconcile.
    - AllocationStatusConflictError on an illegal status transition.
    - AllocationNotFoundError for an unknown id within the tenant.
    - ValidationError for a void without a reason or bad allocation input.

Usage:
    service = AllocationService(session, auditor, clock)
    allocation = service.allocate(
        tenant_id="t1",
        transaction_ref="INV-1001",
        transaction_type=TransactionType.INVOICE,
        total=Money.of("10.00", "USD"),
        lines=[AllocationLineInput("1", Decimal("33.33")), ...],
        actor_id=actor,
    )
    service.apply(tenant_id="t1", allocation_id=allocation.allocation_id, actor_id=actor)
"""

from __future__ import annotations

import hashlib
from collections.abc import Sequence
from decimal import Decimal
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from discount_engines.allocation import AllocationEngine
from discount_engines.approval import is_approval_expired
from discount_kernel.domain.allocation import (
    ALLOCATION_TRANSITIONS,
    AllocationLineInput,
    AllocationMethod,
    AllocationStatus,
    DiscountAllocation,
    TransactionType,
)
from discount_kernel.domain.approval import ApprovalStatus
from discount_kernel.domain.clock import Clock, SystemClock
from discount_kernel.domain.collaborators import AccountingBridge, DiscountFinalizedEvent
from discount_kernel.domain.values import Money
from discount_kernel.exceptions import (
    AllocationConsistencyError,
    AllocationNotFoundError,
    AllocationStatusConflictError,
    ApprovalRejectedError,
    AwaitingApprovalError,
    DuplicateAllocationError,
    ValidationError,
)
from discount_kernel.logging_config import LogContext, get_logger
from discount_kernel.models.allocation import (
    DiscountAllocationLineModel,
    DiscountAllocationModel,
)
from discount_kernel.models.audit_event import AuditAction
from discount_kernel.services.approval_service import ApprovalService
from discount_kernel.services.auditor_service import AuditorService
from discount_kernel.services.sequence_service import SequenceService

logger = get_logger("services.allocation")


class AllocationService:
    """
    Creates and transitions discount allocations.

    Non-goals:
        - Does NOT decide whether a discount needs approval; that is the
          pricing orchestrator's gate.  It only refuses an ``approval_id``
          that is not APPROVED.
        - Does NOT call ``session.commit()``.
    """

    def __init__(
        self,
        session: Session,
        auditor: AuditorService,
        clock: Clock | None = None,
        engine: AllocationEngine | None = None,
        accounting_bridge: AccountingBridge | None = None,
        approval_service: ApprovalService | None = None,
    ):
        self._session = session
        self._auditor = auditor
        self._clock = clock or SystemClock()
        self._engine = engine or AllocationEngine()
        self._bridge = accounting_bridge
        self._approvals = approval_service or ApprovalService(
            session, auditor, self._clock, expiry_rule=is_approval_expired,
        )
        self._sequence = SequenceService(session)

    # -------------------------------------------------------------------------
    # Creation
    # -------------------------------------------------------------------------

    def allocate(
        self,
        *,
        tenant_id: str,
        transaction_ref: str,
        transaction_type: TransactionType,
        total: Money,
        lines: Sequence[AllocationLineInput],
        actor_id: UUID,
        method: AllocationMethod = AllocationMethod.PRO_RATA_AMOUNT,
        rule_ids: Sequence[UUID] = (),
        approval_id: UUID | None = None,
    ) -> DiscountAllocation:
        """
        Split ``total`` across ``lines`` and persist a PENDING allocation.

        Raises:
            DuplicateAllocationError: The transaction already has an
                APPLIED allocation.
            AwaitingApprovalError: ``approval_id`` is still PENDING.
            ApprovalRejectedError: ``approval_id`` was rejected or expired.
            ValidationError: Bad lines, weights or total.
        """
        if not transaction_ref:
            raise ValidationError("transaction_ref is required", {"transaction_ref": "required"})
        if approval_id is not None:
            self._ensure_approved(tenant_id, approval_id)
        self._lock_transaction(tenant_id, transaction_ref)
        self._ensure_not_applied(tenant_id, transaction_ref)

        try:
            outcome = self._engine.allocate(total=total, lines=lines, method=method)
        except ValueError as exc:
            raise ValidationError(str(exc), {"lines": str(exc)}) from exc

        allocated = outcome.allocated_total
        if allocated != total:
            raise AllocationConsistencyError(total.amount, allocated.amount, total.currency.code)

        now = self._clock.now()
        number = self._sequence.next_value(SequenceService.ALLOCATION_NUMBER)
        model = DiscountAllocationModel(
            allocation_number=f"DA-{now:%Y%m}-{number:08d}",
            tenant_id=tenant_id,
            transaction_ref=transaction_ref,
            transaction_type=transaction_type.value,
            method=method.value,
            currency=total.currency.code,
            total_amount=total.amount,
            status=AllocationStatus.PENDING.value,
            rule_ids=[str(r) for r in rule_ids],
            approval_id=approval_id,
            created_by=actor_id,
            created_at=now,
            lines=[
                DiscountAllocationLineModel(
                    sequence=share.sequence,
                    line_ref=share.line_ref,
                    basis_amount=share.basis_amount,
                    allocated_amount=share.allocated.amount,
                    quantity=line.quantity,
                    weight=line.weight,
                )
                for line, share in zip(lines, outcome.shares)
            ],
        )
        self._session.add(model)
        self._session.flush()

        self._auditor.record_allocation(
            tenant_id=tenant_id,
            allocation_id=model.id,
            action=AuditAction.ALLOCATION_CREATED,
            actor_id=actor_id,
            payload={
                "allocation_number": model.allocation_number,
                "transaction_ref": transaction_ref,
                "total_amount": str(total.amount),
                "currency": total.currency.code,
                "method": method.value,
                "line_count": len(outcome.shares),
            },
        )
        with LogContext.bind(allocation_id=str(model.id), transaction_ref=transaction_ref):
            logger.info(
                "allocation_created",
                extra={
                    "allocation_number": model.allocation_number,
                    "total_amount": str(total.amount),
                },
            )
        return model.to_dto()

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def apply(self, tenant_id: str, allocation_id: UUID, actor_id: UUID) -> DiscountAllocation:
        """PENDING -> APPLIED, then notify the accounting bridge."""
        model = self._load_model(tenant_id, allocation_id, for_update=True)
        self._lock_transaction(tenant_id, model.transaction_ref)
        self._ensure_not_applied(tenant_id, model.transaction_ref, exclude_id=model.id)
        self._transition(model, AllocationStatus.APPLIED)
        model.applied_at = self._clock.now()
        self._session.flush()

        self._auditor.record_allocation(
            tenant_id=tenant_id,
            allocation_id=model.id,
            action=AuditAction.ALLOCATION_APPLIED,
            actor_id=actor_id,
            payload={"transaction_ref": model.transaction_ref},
        )
        dto = model.to_dto()
        if self._bridge is not None:
            self._bridge.on_discount_finalized(
                DiscountFinalizedEvent(
                    tenant_id=tenant_id,
                    allocation_id=dto.allocation_id,
                    allocation_number=dto.allocation_number,
                    transaction_ref=dto.transaction_ref,
                    transaction_type=dto.transaction_type.value,
                    currency=dto.currency,
                    total_discount=dto.total_amount,
                    line_amounts=tuple((l.line_ref, l.allocated_amount) for l in dto.lines),
                    rule_ids=dto.rule_ids,
                    finalized_at=dto.applied_at,
                )
            )
        with LogContext.bind(allocation_id=str(model.id), transaction_ref=model.transaction_ref):
            logger.info("allocation_applied", extra={"total_amount": str(model.total_amount)})
        return dto

    def void(
        self,
        tenant_id: str,
        allocation_id: UUID,
        actor_id: UUID,
        reason: str,
    ) -> DiscountAllocation:
        """PENDING or APPLIED -> VOID. Lines are kept."""
        if not reason or not reason.strip():
            raise ValidationError("A void reason is required", {"reason": "required"})

        model = self._load_model(tenant_id, allocation_id, for_update=True)
        previous = model.status
        self._transition(model, AllocationStatus.VOID)
        model.voided_at = self._clock.now()
        model.voided_by = actor_id
        model.void_reason = reason.strip()
        self._session.flush()

        self._auditor.record_allocation(
            tenant_id=tenant_id,
            allocation_id=model.id,
            action=AuditAction.ALLOCATION_VOIDED,
            actor_id=actor_id,
            payload={"previous_status": previous, "reason": model.void_reason},
        )
        with LogContext.bind(allocation_id=str(model.id), transaction_ref=model.transaction_ref):
            logger.info("allocation_voided", extra={"previous_status": previous})
        return model.to_dto()

    def reallocate(
        self,
        *,
        tenant_id: str,
        allocation_id: UUID,
        actor_id: UUID,
        reason: str,
        lines: Sequence[AllocationLineInput] | None = None,
        method: AllocationMethod | None = None,
    ) -> DiscountAllocation:
        """
        Void an allocation and apply a replacement with the same total.

        ``lines`` and ``method`` default to the original allocation's.
        """
        original = self.get(tenant_id, allocation_id)
        if lines is None:
            lines = [line.as_input() for line in original.lines]
        self.void(tenant_id, allocation_id, actor_id, reason)

        replacement = self.allocate(
            tenant_id=tenant_id,
            transaction_ref=original.transaction_ref,
            transaction_type=original.transaction_type,
            total=Money.of(original.total_amount, original.currency).round(),
            lines=lines,
            actor_id=actor_id,
            method=method or original.method,
            rule_ids=original.rule_ids,
            approval_id=original.approval_id,
        )
        return self.apply(tenant_id, replacement.allocation_id, actor_id)

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def get(self, tenant_id: str, allocation_id: UUID) -> DiscountAllocation:
        return self._load_model(tenant_id, allocation_id).to_dto()

    def list_for_transaction(self, tenant_id: str, transaction_ref: str) -> list[DiscountAllocation]:
        models = self._session.execute(
            select(DiscountAllocationModel)
            .where(
                DiscountAllocationModel.tenant_id == tenant_id,
                DiscountAllocationModel.transaction_ref == transaction_ref,
            )
            .order_by(DiscountAllocationModel.created_at, DiscountAllocationModel.allocation_number)
        ).scalars().all()
        return [m.to_dto() for m in models]

    def active_discount_total(self, tenant_id: str, transaction_ref: str) -> Decimal:
        """Sum of the non-VOID allocations for a transaction (zero if none)."""
        total = self._session.execute(
            select(func.coalesce(func.sum(DiscountAllocationModel.total_amount), 0)).where(
                DiscountAllocationModel.tenant_id == tenant_id,
                DiscountAllocationModel.transaction_ref == transaction_ref,
                DiscountAllocationModel.status != AllocationStatus.VOID.value,
            )
        ).scalar_one()
        return Decimal(str(total))

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _lock_transaction(self, tenant_id: str, transaction_ref: str) -> None:
        """Serialize allocation writes for one transaction."""
        if self._session.get_bind().dialect.name != "postgresql":
            return
        digest = hashlib.sha256(f"{tenant_id}:{transaction_ref}".encode("utf-8")).digest()
        key = int.from_bytes(digest[:8], "big", signed=True)
        self._session.execute(select(func.pg_advisory_xact_lock(key)))

    def _applied_model(self, tenant_id: str, transaction_ref: str) -> DiscountAllocationModel | None:
        return self._session.execute(
            select(DiscountAllocationModel)
            .where(
                DiscountAllocationModel.tenant_id == tenant_id,
                DiscountAllocationModel.transaction_ref == transaction_ref,
                DiscountAllocationModel.status == AllocationStatus.APPLIED.value,
            )
            .with_for_update()
        ).scalars().first()

    def _ensure_not_applied(
        self,
        tenant_id: str,
        transaction_ref: str,
        exclude_id: UUID | None = None,
    ) -> None:
        existing = self._applied_model(tenant_id, transaction_ref)
        if existing is not None and existing.id != exclude_id:
            raise DuplicateAllocationError(transaction_ref, str(existing.id))

    def _ensure_approved(self, tenant_id: str, approval_id: UUID) -> None:
        """Only an APPROVED request may back an allocation."""
        approval = self._approvals.get(tenant_id, approval_id)
        if approval.status == ApprovalStatus.PENDING:
            raise AwaitingApprovalError(str(approval_id))
        if approval.status != ApprovalStatus.APPROVED:
            raise ApprovalRejectedError(
                str(approval_id), approval.status.value, approval.rejection_reason,
            )

    def _transition(self, model: DiscountAllocationModel, target: AllocationStatus) -> None:
        current = AllocationStatus(model.status)
        if target not in ALLOCATION_TRANSITIONS.get(current, frozenset()):
            raise AllocationStatusConflictError(str(model.id), current.value, target.value)
        model.status = target.value

    def _load_model(
        self,
        tenant_id: str,
        allocation_id: UUID,
        for_update: bool = False,
    ) -> DiscountAllocationModel:
        stmt = select(DiscountAllocationModel).where(
            DiscountAllocationModel.id == allocation_id,
            DiscountAllocationModel.tenant_id == tenant_id,
        )
        if for_update:
            stmt = stmt.with_for_update()
        model = self._session.execute(stmt).scalar_one_or_none()
        if model is None:
            raise AllocationNotFoundError(str(allocation_id))
        return model
