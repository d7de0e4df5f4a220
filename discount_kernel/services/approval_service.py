"""
discount_kernel.services.approval_service -- Discount approval lifecycle.

Responsibility:
    Persists approval requests for discounts that crossed a tenant's
    threshold, records approve/reject decisions, expires stale requests and
    verifies that an approval actually covers the context being committed.

Architecture position:
    Kernel > Services.  May import from domain/, models/, db/.
    The threshold decision itself is made by discount_engines.approval.

Invariants enforced:
    - Lifecycle: PENDING -> APPROVED | REJECTED | EXPIRED; terminal states
      are immutable.  Approving an APPROVED request is a no-op; every other
      transition out of a terminal state is a conflict.
    - An approval only unlocks the context it was requested for (matching
      tenant and context fingerprint).
    - Tamper evidence: a request hash computed at creation is verified on
      every load.
    - One PENDING request per tenant and context fingerprint.

Failure modes:
    - ApprovalNotFoundError if the id does not exist for the tenant.
    - ApprovalAlreadyResolvedError on a conflicting terminal transition.
    - AwaitingApprovalError / ApprovalRejectedError / ApprovalScopeMismatchError
      from ``ensure_committable``.
    - TamperDetectedError on hash mismatch.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timedelta
from decimal import Decimal
from uuid import UUID, uuid4

from sqlalchemy import select
from sqlalchemy.orm import Session

from discount_kernel.domain.approval import (
    ApprovalCheck,
    ApprovalStatus,
    DiscountApproval,
    ExpiryAction,
    can_transition,
)
from discount_kernel.domain.clock import Clock, SystemClock, ensure_aware
from discount_kernel.exceptions import (
    ApprovalAlreadyResolvedError,
    ApprovalNotFoundError,
    ApprovalRejectedError,
    ApprovalScopeMismatchError,
    AwaitingApprovalError,
    TamperDetectedError,
    ValidationError,
)
from discount_kernel.logging_config import LogContext, get_logger
from discount_kernel.models.approval import DiscountApprovalModel
from discount_kernel.models.audit_event import AuditAction
from discount_kernel.services.auditor_service import AuditorService
from discount_kernel.utils.hashing import hash_payload

logger = get_logger("services.approval")

# Actor recorded for transitions made by the system (expiry)
SYSTEM_ACTOR_ID = UUID(int=0)

PERCENTAGE_QUANTUM = Decimal("0.0001")

ExpiryRule = Callable[[datetime, datetime, int | None], bool]


def _normalize_amount_for_hash(amount: Decimal | None) -> str | None:
    """Numeric columns may come back with trailing zeros; normalize them."""
    if amount is None:
        return None
    return str(Decimal(str(amount)).normalize())


def _compute_request_hash(
    *,
    approval_id: UUID,
    tenant_id: str,
    context_fingerprint: str,
    customer_id: str,
    currency: str,
    subtotal: Decimal,
    requested_amount: Decimal,
    requested_percentage: Decimal,
    threshold_percentage: Decimal,
    requested_by: UUID,
) -> str:
    """Hash over every field that must not change after creation."""
    return hash_payload({
        "approval_id": str(approval_id),
        "tenant_id": tenant_id,
        "context_fingerprint": context_fingerprint,
        "customer_id": customer_id,
        "currency": currency,
        "subtotal": _normalize_amount_for_hash(subtotal),
        "requested_amount": _normalize_amount_for_hash(requested_amount),
        "requested_percentage": _normalize_amount_for_hash(requested_percentage),
        "threshold_percentage": _normalize_amount_for_hash(threshold_percentage),
        "requested_by": str(requested_by),
    })


class ApprovalService:
    """
    Manages the discount approval lifecycle.

    ``expiry_rule(requested_at, as_of, expiry_hours)`` decides when a PENDING
    request has gone stale; the services layer wires in
    ``discount_engines.approval.is_approval_expired``.
    """

    def __init__(
        self,
        session: Session,
        auditor: AuditorService,
        clock: Clock | None = None,
        *,
        expiry_rule: ExpiryRule,
    ) -> None:
        self._session = session
        self._auditor = auditor
        self._clock = clock or SystemClock()
        self._is_expired = expiry_rule

    def request_approval(
        self,
        *,
        tenant_id: str,
        context_fingerprint: str,
        customer_id: str,
        currency: str,
        subtotal: Decimal,
        check: ApprovalCheck,
        requested_by: UUID,
        transaction_ref: str | None = None,
        reason: str | None = None,
    ) -> DiscountApproval:
        """
        Create a PENDING approval, or return the one already pending for
        the same context.
        """
        existing = self._session.execute(
            select(DiscountApprovalModel).where(
                DiscountApprovalModel.tenant_id == tenant_id,
                DiscountApprovalModel.context_fingerprint == context_fingerprint,
                DiscountApprovalModel.status == ApprovalStatus.PENDING.value,
            )
        ).scalars().first()
        if existing is not None:
            logger.info(
                "approval_request_reused",
                extra={"approval_id": str(existing.id), "tenant_id": tenant_id},
            )
            return existing.to_dto()

        approval_id = uuid4()
        requested_percentage = check.discount_percentage.quantize(PERCENTAGE_QUANTUM)
        request_hash = _compute_request_hash(
            approval_id=approval_id,
            tenant_id=tenant_id,
            context_fingerprint=context_fingerprint,
            customer_id=customer_id,
            currency=currency,
            subtotal=subtotal,
            requested_amount=check.discount_amount,
            requested_percentage=requested_percentage,
            threshold_percentage=check.threshold_percentage,
            requested_by=requested_by,
        )

        model = DiscountApprovalModel(
            id=approval_id,
            tenant_id=tenant_id,
            transaction_ref=transaction_ref,
            context_fingerprint=context_fingerprint,
            customer_id=customer_id,
            currency=currency,
            subtotal=subtotal,
            requested_amount=check.discount_amount,
            requested_percentage=requested_percentage,
            threshold_percentage=check.threshold_percentage,
            threshold_amount=check.threshold_amount,
            reason=reason,
            status=ApprovalStatus.PENDING.value,
            requested_by=requested_by,
            requested_at=self._clock.now(),
            request_hash=request_hash,
        )
        self._session.add(model)
        self._session.flush()

        self._auditor.record_approval_requested(
            tenant_id=tenant_id,
            approval_id=approval_id,
            requested_amount=check.discount_amount,
            requested_percentage=requested_percentage,
            threshold_percentage=check.threshold_percentage,
            actor_id=requested_by,
        )
        logger.info(
            "approval_requested",
            extra={
                "approval_id": str(approval_id),
                "tenant_id": tenant_id,
                "requested_amount": str(check.discount_amount),
                "requested_percentage": str(requested_percentage),
                "triggered_by": check.triggered_by,
            },
        )
        return model.to_dto()

    def approve(
        self,
        tenant_id: str,
        approval_id: UUID,
        approver_id: UUID,
        notes: str | None = None,
    ) -> DiscountApproval:
        """Approve a PENDING request. Idempotent on APPROVED."""
        model = self._load_model(tenant_id, approval_id, for_update=True)
        if self._verified(model).status == ApprovalStatus.APPROVED:
            return model.to_dto()
        self._transition(model, ApprovalStatus.APPROVED)

        model.approver_id = approver_id
        model.approval_notes = notes
        model.resolved_at = self._clock.now()
        self._session.flush()

        self._auditor.record_approval_resolved(
            tenant_id=tenant_id,
            approval_id=approval_id,
            action=AuditAction.APPROVAL_GRANTED,
            actor_id=approver_id,
            note=notes,
        )
        with LogContext.bind(approval_id=str(approval_id)):
            logger.info("approval_granted", extra={"approver_id": str(approver_id)})
        return model.to_dto()

    def reject(
        self,
        tenant_id: str,
        approval_id: UUID,
        approver_id: UUID,
        reason: str,
    ) -> DiscountApproval:
        """Reject a PENDING request. A reason is mandatory."""
        if not reason or not reason.strip():
            raise ValidationError("A rejection reason is required", {"reason": "required"})

        model = self._load_model(tenant_id, approval_id, for_update=True)
        self._verified(model)
        self._transition(model, ApprovalStatus.REJECTED)

        model.approver_id = approver_id
        model.rejection_reason = reason.strip()
        model.resolved_at = self._clock.now()
        self._session.flush()

        self._auditor.record_approval_resolved(
            tenant_id=tenant_id,
            approval_id=approval_id,
            action=AuditAction.APPROVAL_REJECTED,
            actor_id=approver_id,
            note=model.rejection_reason,
        )
        with LogContext.bind(approval_id=str(approval_id)):
            logger.info("approval_rejected", extra={"approver_id": str(approver_id)})
        return model.to_dto()

    def get(self, tenant_id: str, approval_id: UUID) -> DiscountApproval:
        """Load an approval and verify its tamper-evidence hash."""
        return self._verified(self._load_model(tenant_id, approval_id))

    def list_pending(self, tenant_id: str) -> list[DiscountApproval]:
        """PENDING approvals for a tenant, oldest first."""
        models = self._session.execute(
            select(DiscountApprovalModel)
            .where(
                DiscountApprovalModel.tenant_id == tenant_id,
                DiscountApprovalModel.status == ApprovalStatus.PENDING.value,
            )
            .order_by(DiscountApprovalModel.requested_at)
        ).scalars().all()
        return [m.to_dto() for m in models]

    def list_approvals(
        self,
        tenant_id: str,
        status: ApprovalStatus | None = None,
        requested_from: datetime | None = None,
        requested_to: datetime | None = None,
    ) -> list[DiscountApproval]:
        """Approval history for a tenant, newest first, optionally filtered."""
        stmt = select(DiscountApprovalModel).where(DiscountApprovalModel.tenant_id == tenant_id)
        if status is not None:
            stmt = stmt.where(DiscountApprovalModel.status == status.value)
        if requested_from is not None:
            stmt = stmt.where(DiscountApprovalModel.requested_at >= ensure_aware(requested_from))
        if requested_to is not None:
            stmt = stmt.where(DiscountApprovalModel.requested_at < ensure_aware(requested_to))
        models = self._session.execute(
            stmt.order_by(
                DiscountApprovalModel.requested_at.desc(), DiscountApprovalModel.id,
            )
        ).scalars().all()
        return [m.to_dto() for m in models]

    def ensure_committable(
        self,
        tenant_id: str,
        approval_id: UUID,
        context_fingerprint: str,
        expiry_hours: int | None = None,
        expiry_action: ExpiryAction = ExpiryAction.EXPIRE,
    ) -> DiscountApproval:
        """
        Return the approval if it unlocks committing this context.

        Raises:
            AwaitingApprovalError: Still PENDING.
            ApprovalRejectedError: REJECTED or EXPIRED (including lazy expiry).
            ApprovalScopeMismatchError: Approved for a different context.
        """
        model = self._load_model(tenant_id, approval_id, for_update=True)
        dto = self._verified(model)

        if dto.context_fingerprint != context_fingerprint:
            raise ApprovalScopeMismatchError(
                str(approval_id), "approval was granted for a different pricing context",
            )

        if dto.is_pending and self._is_expired(dto.requested_at, self._clock.now(), expiry_hours):
            dto = self._expire(model, expiry_action, note="expired before commit")

        if dto.status == ApprovalStatus.PENDING:
            raise AwaitingApprovalError(str(approval_id))
        if dto.status != ApprovalStatus.APPROVED:
            raise ApprovalRejectedError(
                str(approval_id), dto.status.value, dto.rejection_reason,
            )
        return dto

    def expire_stale(
        self,
        tenant_id: str,
        as_of: datetime,
        expiry_hours: int | None,
        expiry_action: ExpiryAction = ExpiryAction.EXPIRE,
    ) -> list[UUID]:
        """Move PENDING approvals older than the window to EXPIRED/REJECTED."""
        if expiry_hours is None:
            return []
        cutoff = ensure_aware(as_of) - timedelta(hours=expiry_hours)

        models = self._session.execute(
            select(DiscountApprovalModel)
            .where(
                DiscountApprovalModel.tenant_id == tenant_id,
                DiscountApprovalModel.status == ApprovalStatus.PENDING.value,
                DiscountApprovalModel.requested_at <= cutoff,
            )
            .order_by(DiscountApprovalModel.requested_at)
            .with_for_update()
        ).scalars().all()

        expired: list[UUID] = []
        for model in models:
            self._expire(model, expiry_action, note=f"no decision within {expiry_hours}h")
            expired.append(model.id)

        if expired:
            logger.info(
                "approvals_expired",
                extra={"tenant_id": tenant_id, "count": len(expired)},
            )
        return expired

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _expire(
        self,
        model: DiscountApprovalModel,
        action: ExpiryAction,
        note: str,
    ) -> DiscountApproval:
        target = (
            ApprovalStatus.REJECTED if action == ExpiryAction.REJECT else ApprovalStatus.EXPIRED
        )
        self._transition(model, target)
        model.resolved_at = self._clock.now()
        if target == ApprovalStatus.REJECTED:
            model.rejection_reason = note
        self._session.flush()

        self._auditor.record_approval_resolved(
            tenant_id=model.tenant_id,
            approval_id=model.id,
            action=AuditAction.APPROVAL_EXPIRED,
            actor_id=SYSTEM_ACTOR_ID,
            note=note,
        )
        return model.to_dto()

    def _transition(self, model: DiscountApprovalModel, target: ApprovalStatus) -> None:
        current = ApprovalStatus(model.status)
        if not can_transition(current, target):
            raise ApprovalAlreadyResolvedError(str(model.id), current.value, target.value)
        model.status = target.value

    def _load_model(
        self,
        tenant_id: str,
        approval_id: UUID,
        for_update: bool = False,
    ) -> DiscountApprovalModel:
        stmt = select(DiscountApprovalModel).where(
            DiscountApprovalModel.id == approval_id,
            DiscountApprovalModel.tenant_id == tenant_id,
        )
        if for_update:
            stmt = stmt.with_for_update()
        model = self._session.execute(stmt).scalar_one_or_none()
        if model is None:
            raise ApprovalNotFoundError(str(approval_id))
        return model

    def _verified(self, model: DiscountApprovalModel) -> DiscountApproval:
        dto = model.to_dto()
        if dto.request_hash is None:
            return dto
        computed = _compute_request_hash(
            approval_id=dto.approval_id,
            tenant_id=dto.tenant_id,
            context_fingerprint=dto.context_fingerprint,
            customer_id=dto.customer_id,
            currency=dto.currency,
            subtotal=dto.subtotal,
            requested_amount=dto.requested_amount,
            requested_percentage=dto.requested_percentage,
            threshold_percentage=dto.threshold_percentage,
            requested_by=dto.requested_by,
        )
        if computed != dto.request_hash:
            logger.error(
                "approval_tamper_detected",
                extra={"approval_id": str(dto.approval_id)},
            )
            raise TamperDetectedError(str(dto.approval_id))
        return dto
