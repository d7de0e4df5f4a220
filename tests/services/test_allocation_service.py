"""
Tests for AllocationService -- persisted discount allocations.

Covers:
- allocate(): exact line split, allocation numbering, audit trail
- apply(): one APPLIED allocation per transaction, accounting bridge event
- void(): mandatory reason, VOID allocations excluded from the active total
- reallocate(): void + replacement with the same total, original quantities
  and weights reused
- approval backing: only an APPROVED approval may back an allocation
- Immutability of allocations and their lines
- Tenant isolation
"""

from decimal import Decimal
from uuid import uuid4

import pytest
from sqlalchemy import select

from discount_kernel.domain.allocation import (
    AllocationLineInput,
    AllocationMethod,
    AllocationStatus,
    TransactionType,
)
from discount_engines.approval import is_approval_expired
from discount_kernel.domain.approval import ApprovalCheck
from discount_kernel.domain.values import Money
from discount_kernel.exceptions import (
    AllocationNotFoundError,
    AllocationStatusConflictError,
    ApprovalNotFoundError,
    ApprovalRejectedError,
    AwaitingApprovalError,
    DuplicateAllocationError,
    ImmutabilityViolationError,
    ValidationError,
)
from discount_kernel.models.allocation import DiscountAllocationLineModel, DiscountAllocationModel
from discount_kernel.models.audit_event import AuditAction
from discount_kernel.services.approval_service import ApprovalService
from discount_services.allocation_service import AllocationService
from tests.factories import OTHER_TENANT, TENANT, RecordingBridge

THIRDS = [
    AllocationLineInput("1", Decimal("33.33")),
    AllocationLineInput("2", Decimal("33.33")),
    AllocationLineInput("3", Decimal("33.34")),
]


@pytest.fixture
def bridge():
    return RecordingBridge()


@pytest.fixture
def allocation_service(session, auditor_service, deterministic_clock, bridge):
    return AllocationService(
        session, auditor_service, deterministic_clock, accounting_bridge=bridge,
    )


@pytest.fixture
def allocate(allocation_service, test_actor_id):
    def _allocate(total="10.00", transaction_ref="INV-1", lines=THIRDS, tenant_id=TENANT, **kwargs):
        return allocation_service.allocate(
            tenant_id=tenant_id,
            transaction_ref=transaction_ref,
            transaction_type=TransactionType.INVOICE,
            total=Money.of(total, "USD"),
            lines=lines,
            actor_id=test_actor_id,
            **kwargs,
        )

    return _allocate


@pytest.fixture
def approvals(session, auditor_service, deterministic_clock):
    return ApprovalService(
        session, auditor_service, deterministic_clock, expiry_rule=is_approval_expired,
    )


@pytest.fixture
def pending_approval(approvals, test_actor_id):
    def _pending(fingerprint: str = "fp-alloc"):
        return approvals.request_approval(
            tenant_id=TENANT,
            context_fingerprint=fingerprint,
            customer_id="cust-1",
            currency="USD",
            subtotal=Decimal("40.00"),
            check=ApprovalCheck(
                required=True,
                discount_amount=Decimal("10.00"),
                discount_percentage=Decimal("25"),
                threshold_percentage=Decimal("20"),
                triggered_by="percentage",
            ),
            requested_by=test_actor_id,
        )

    return _pending


class TestAllocate:

    def test_lines_reconcile(self, allocate):
        allocation = allocate()
        assert allocation.status == AllocationStatus.PENDING
        assert [l.allocated_amount for l in allocation.lines] == [
            Decimal("3.33"), Decimal("3.33"), Decimal("3.34"),
        ]
        assert allocation.lines_total == Decimal("10.00")

    def test_allocation_number_format(self, allocate):
        first = allocate(transaction_ref="INV-1")
        second = allocate(transaction_ref="INV-2")
        assert first.allocation_number.startswith("DA-202401-")
        assert first.allocation_number != second.allocation_number

    def test_rule_ids_recorded(self, allocate):
        rule_id = uuid4()
        assert allocate(rule_ids=[rule_id]).rule_ids == (rule_id,)

    def test_audited(self, allocate, auditor_service):
        allocation = allocate()
        trace = auditor_service.get_trace("DiscountAllocation", allocation.allocation_id)
        assert trace.actions == (AuditAction.ALLOCATION_CREATED,)
        assert trace.entries[0].payload["line_count"] == 3

    def test_transaction_ref_required(self, allocate):
        with pytest.raises(ValidationError):
            allocate(transaction_ref="")

    def test_bad_lines_become_validation_error(self, allocate):
        with pytest.raises(ValidationError):
            allocate(lines=[])

    def test_custom_weights(self, allocate):
        allocation = allocate(
            total="9.00",
            lines=[
                AllocationLineInput("a", Decimal("1"), weight=Decimal("0.5")),
                AllocationLineInput("b", Decimal("1"), weight=Decimal("0.5")),
            ],
            method=AllocationMethod.CUSTOM_WEIGHTS,
        )
        assert [l.allocated_amount for l in allocation.lines] == [Decimal("4.50"), Decimal("4.50")]


class TestApply:

    def test_apply_notifies_bridge(self, allocate, allocation_service, test_actor_id, bridge):
        allocation = allocate()
        applied = allocation_service.apply(TENANT, allocation.allocation_id, test_actor_id)

        assert applied.status == AllocationStatus.APPLIED
        assert applied.applied_at is not None
        [event] = bridge.events
        assert event.allocation_id == allocation.allocation_id
        assert event.total_discount == Decimal("10.00")
        assert [ref for ref, _ in event.line_amounts] == ["1", "2", "3"]

    def test_second_applied_allocation_rejected(self, allocate, allocation_service, test_actor_id):
        first = allocate()
        allocation_service.apply(TENANT, first.allocation_id, test_actor_id)
        with pytest.raises(DuplicateAllocationError):
            allocate()

    def test_cannot_apply_twice(self, allocate, allocation_service, test_actor_id):
        allocation = allocate()
        allocation_service.apply(TENANT, allocation.allocation_id, test_actor_id)
        with pytest.raises(AllocationStatusConflictError):
            allocation_service.apply(TENANT, allocation.allocation_id, test_actor_id)

    def test_other_tenant_cannot_apply(self, allocate, allocation_service, test_actor_id):
        allocation = allocate()
        with pytest.raises(AllocationNotFoundError):
            allocation_service.apply(OTHER_TENANT, allocation.allocation_id, test_actor_id)

    def test_same_ref_in_other_tenant_is_independent(self, allocate, allocation_service, test_actor_id):
        ours = allocate()
        allocation_service.apply(TENANT, ours.allocation_id, test_actor_id)
        theirs = allocate(tenant_id=OTHER_TENANT)
        assert allocation_service.apply(OTHER_TENANT, theirs.allocation_id, test_actor_id).status == (
            AllocationStatus.APPLIED
        )


class TestVoid:

    def test_void_requires_reason(self, allocate, allocation_service, test_actor_id):
        allocation = allocate()
        with pytest.raises(ValidationError):
            allocation_service.void(TENANT, allocation.allocation_id, test_actor_id, "")

    def test_void_excluded_from_active_total(self, allocate, allocation_service, test_actor_id):
        allocation = allocate()
        allocation_service.apply(TENANT, allocation.allocation_id, test_actor_id)
        assert allocation_service.active_discount_total(TENANT, "INV-1") == Decimal("10.00")

        voided = allocation_service.void(TENANT, allocation.allocation_id, test_actor_id, "order cancelled")

        assert voided.status == AllocationStatus.VOID
        assert voided.void_reason == "order cancelled"
        assert len(voided.lines) == 3
        assert allocation_service.active_discount_total(TENANT, "INV-1") == Decimal("0")

    def test_void_is_terminal(self, allocate, allocation_service, test_actor_id):
        allocation = allocate()
        allocation_service.void(TENANT, allocation.allocation_id, test_actor_id, "x")
        with pytest.raises(AllocationStatusConflictError):
            allocation_service.apply(TENANT, allocation.allocation_id, test_actor_id)

    def test_after_void_a_new_allocation_can_apply(self, allocate, allocation_service, test_actor_id):
        first = allocate()
        allocation_service.apply(TENANT, first.allocation_id, test_actor_id)
        allocation_service.void(TENANT, first.allocation_id, test_actor_id, "redo")
        second = allocate()
        assert allocation_service.apply(TENANT, second.allocation_id, test_actor_id).status == (
            AllocationStatus.APPLIED
        )


class TestReallocate:

    def test_reallocate_keeps_total(self, allocate, allocation_service, test_actor_id):
        original = allocate()
        allocation_service.apply(TENANT, original.allocation_id, test_actor_id)

        replacement = allocation_service.reallocate(
            tenant_id=TENANT,
            allocation_id=original.allocation_id,
            actor_id=test_actor_id,
            reason="line 3 returned",
            method=AllocationMethod.EQUAL,
        )

        assert replacement.status == AllocationStatus.APPLIED
        assert replacement.total_amount == Decimal("10.00")
        assert replacement.method == AllocationMethod.EQUAL
        history = allocation_service.list_for_transaction(TENANT, "INV-1")
        assert [a.status for a in history] == [AllocationStatus.VOID, AllocationStatus.APPLIED]
        assert allocation_service.active_discount_total(TENANT, "INV-1") == Decimal("10.00")

    def test_reallocate_keeps_quantity_split(self, allocate, allocation_service, test_actor_id):
        original = allocate(
            total="8.00",
            lines=[
                AllocationLineInput("a", Decimal("10.00"), quantity=Decimal("3")),
                AllocationLineInput("b", Decimal("10.00"), quantity=Decimal("1")),
            ],
            method=AllocationMethod.PRO_RATA_QUANTITY,
        )
        assert [l.allocated_amount for l in original.lines] == [Decimal("6.00"), Decimal("2.00")]
        allocation_service.apply(TENANT, original.allocation_id, test_actor_id)

        replacement = allocation_service.reallocate(
            tenant_id=TENANT,
            allocation_id=original.allocation_id,
            actor_id=test_actor_id,
            reason="invoice reissued",
        )

        assert replacement.method == AllocationMethod.PRO_RATA_QUANTITY
        assert [l.allocated_amount for l in replacement.lines] == [Decimal("6.00"), Decimal("2.00")]
        assert [l.quantity for l in replacement.lines] == [Decimal("3"), Decimal("1")]

    def test_reallocate_keeps_custom_weights(self, allocate, allocation_service, test_actor_id):
        original = allocate(
            total="8.00",
            lines=[
                AllocationLineInput("a", Decimal("1"), weight=Decimal("0.75")),
                AllocationLineInput("b", Decimal("1"), weight=Decimal("0.25")),
            ],
            method=AllocationMethod.CUSTOM_WEIGHTS,
        )
        allocation_service.apply(TENANT, original.allocation_id, test_actor_id)

        replacement = allocation_service.reallocate(
            tenant_id=TENANT,
            allocation_id=original.allocation_id,
            actor_id=test_actor_id,
            reason="invoice reissued",
        )

        assert replacement.status == AllocationStatus.APPLIED
        assert [l.allocated_amount for l in replacement.lines] == [Decimal("6.00"), Decimal("2.00")]
        assert [l.weight for l in replacement.lines] == [Decimal("0.75"), Decimal("0.25")]


class TestApprovalBacking:

    def test_approved_approval_is_recorded(self, allocate, approvals, pending_approval):
        approval = pending_approval()
        approvals.approve(TENANT, approval.approval_id, uuid4())

        allocation = allocate(approval_id=approval.approval_id)

        assert allocation.approval_id == approval.approval_id

    def test_rejected_approval_refused(
        self, allocate, allocation_service, approvals, pending_approval,
    ):
        approval = pending_approval()
        approvals.reject(TENANT, approval.approval_id, uuid4(), "too generous")

        with pytest.raises(ApprovalRejectedError):
            allocate(approval_id=approval.approval_id)
        assert allocation_service.list_for_transaction(TENANT, "INV-1") == []

    def test_pending_approval_refused(self, allocate, pending_approval):
        approval = pending_approval()
        with pytest.raises(AwaitingApprovalError):
            allocate(approval_id=approval.approval_id)

    def test_unknown_approval_refused(self, allocate):
        with pytest.raises(ApprovalNotFoundError):
            allocate(approval_id=uuid4())

    def test_other_tenants_approval_refused(self, allocate, approvals, pending_approval):
        approval = pending_approval()
        approvals.approve(TENANT, approval.approval_id, uuid4())
        with pytest.raises(ApprovalNotFoundError):
            allocate(approval_id=approval.approval_id, tenant_id=OTHER_TENANT)


class TestImmutability:

    def test_lines_cannot_be_edited(self, allocate, session):
        allocate()
        line = session.execute(select(DiscountAllocationLineModel).limit(1)).scalar_one()
        line.allocated_amount = Decimal("99")
        with pytest.raises(ImmutabilityViolationError):
            session.flush()

    def test_allocation_cannot_be_deleted(self, allocate, session):
        allocate()
        model = session.execute(select(DiscountAllocationModel)).scalar_one()
        session.delete(model)
        with pytest.raises(ImmutabilityViolationError):
            session.flush()
