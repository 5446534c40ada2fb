"""
Unit Tests for the Transfer Workflow
"""

import pytest
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from uuid import UUID

from membership.clock import FixedClock
from membership.config import Settings
from membership.errors import (
    IdempotencyConflictError,
    InsufficientBalanceError,
    InvalidAmountError,
    InvalidStateError,
    PartiallyAppliedError,
)
from membership.models import (
    EnrollmentStatus,
    Member,
    OperationContext,
    OrderItem,
    OrderRequest,
    PaymentAllocation,
    PaymentMethod,
    PaymentType,
    Product,
    ProgramType,
    ScheduleEvent,
    ScheduleEventStatus,
    TransferRequest,
)
from membership.service import MembershipService
from membership.store import Collection
from membership.transfer import transfer_fee


DONOR_ID = UUID("550e8400-e29b-41d4-a716-446655440000")
RECEIVER_ID = UUID("660e8400-e29b-41d4-a716-446655440001")
THIRD_ID = UUID("770e8400-e29b-41d4-a716-446655440002")
PT_ID = UUID("11111111-1111-1111-1111-111111111111")
MONTHLY_ID = UUID("22222222-2222-2222-2222-222222222222")
STAFF = OperationContext(actor_id="staff-01")


def make_service():
    clock = FixedClock(datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc))
    service = MembershipService(clock=clock, settings=Settings(_env_file=None))
    service.add_member(Member(id=DONOR_ID, name="김민수"))
    service.add_member(Member(id=RECEIVER_ID, name="이지은"))
    service.add_product(Product(id=PT_ID, name="PT 10회", price=500_000, program_type=ProgramType.COUNT, sessions=10))
    service.add_product(Product(id=MONTHLY_ID, name="헬스 3개월", price=500_000, program_type=ProgramType.DURATION, months=3))
    return service


def buy(service, product_id=PT_ID, paid=500_000):
    result = service.process_order(STAFF, OrderRequest(
        member_id=DONOR_ID,
        items=[OrderItem(product_id=product_id)],
        payments=PaymentAllocation(card=paid),
    ))
    return result.enrollments[0]


def transfer_request(enrollment, **overrides):
    return TransferRequest(enrollment_id=enrollment.id, to_member_id=RECEIVER_ID, **overrides)


class TestFee:
    """Tests for fee calculation and payment."""

    def test_fee_is_ten_percent_floored(self):
        """Test the default fee ratio."""
        assert transfer_fee(500_000, Decimal("0.10")) == 50_000
        assert transfer_fee(333_333, Decimal("0.10")) == 33_333

    def test_points_reduce_cash_fee(self):
        """Test fee 50,000 with 20,000 points leaves a 30,000 cash fee."""
        service = make_service()
        enrollment = buy(service)
        service.ledger.earn(RECEIVER_ID, 50_000, "test")

        result = service.transfer(STAFF, transfer_request(enrollment, point_payment=20_000))

        assert result.fee == 50_000
        assert result.cash_fee == 30_000
        assert result.point_payment == 20_000
        assert service.ledger.balance(RECEIVER_ID) == 30_000

        payment = result.fee_payment
        assert payment.member_id == RECEIVER_ID
        assert payment.payment_type == PaymentType.OTHER
        assert payment.breakdown.card == 30_000
        assert payment.breakdown.points == 20_000
        assert payment.reference == result.reference == f"transfer_{enrollment.id}"

    def test_fully_paid_with_points_writes_no_payment(self):
        """Test that no cash fee means no fee payment record."""
        service = make_service()
        enrollment = buy(service)
        service.ledger.earn(RECEIVER_ID, 50_000, "test")
        payments_before = service.store.count(Collection.PAYMENT)

        result = service.transfer(STAFF, transfer_request(enrollment, point_payment=50_000))

        assert result.cash_fee == 0
        assert result.fee_payment is None
        assert service.store.count(Collection.PAYMENT) == payments_before

    def test_custom_fee_ratio(self):
        """Test that the request can override the fee ratio."""
        service = make_service()
        enrollment = buy(service)

        result = service.transfer(
            STAFF, transfer_request(enrollment, fee_ratio=Decimal("0.05"), payment_method=PaymentMethod.CASH)
        )

        assert result.fee == 25_000
        assert result.fee_payment.breakdown.cash == 25_000


class TestRejections:
    """Tests for checks that run before any write."""

    def test_insufficient_points_writes_nothing(self):
        """Test 60,000 points against a 50,000 balance fails with nothing written."""
        service = make_service()
        enrollment = buy(service)
        service.ledger.earn(RECEIVER_ID, 50_000, "test")
        payments_before = service.store.count(Collection.PAYMENT)
        entries_before = service.store.count(Collection.POINT_TRANSACTION)

        with pytest.raises(InsufficientBalanceError):
            service.transfer(STAFF, transfer_request(enrollment, point_payment=60_000))

        assert service.store.count(Collection.PAYMENT) == payments_before
        assert service.store.count(Collection.POINT_TRANSACTION) == entries_before
        assert service.get_enrollment(enrollment.id).enrollment_status == EnrollmentStatus.ACTIVE
        assert service.store.count(Collection.COURSE_ENROLLMENT) == 1

    def test_points_above_fee(self):
        """Test that points cannot exceed the fee."""
        service = make_service()
        enrollment = buy(service)
        service.ledger.earn(RECEIVER_ID, 100_000, "test")

        with pytest.raises(InvalidAmountError):
            service.transfer(STAFF, transfer_request(enrollment, point_payment=60_000))

    def test_self_transfer(self):
        """Test that the receiver must differ from the owner."""
        service = make_service()
        enrollment = buy(service)

        with pytest.raises(InvalidStateError):
            service.transfer(STAFF, TransferRequest(enrollment_id=enrollment.id, to_member_id=DONOR_ID))

    def test_wrong_owner(self):
        """Test that from_member_id must own the enrollment."""
        service = make_service()
        enrollment = buy(service)

        with pytest.raises(InvalidStateError):
            service.transfer(STAFF, transfer_request(enrollment, from_member_id=RECEIVER_ID))

    def test_on_hold(self):
        """Test that held enrollments cannot be transferred."""
        service = make_service()
        enrollment = buy(service, product_id=MONTHLY_ID)
        service.start_hold(enrollment.id)

        with pytest.raises(InvalidStateError):
            service.transfer(STAFF, transfer_request(enrollment))

        assert service.store.count(Collection.PAYMENT) == 1

    def test_completed_enrollment(self):
        """Test that terminal enrollments cannot be transferred."""
        service = make_service()
        result = service.process_order(STAFF, OrderRequest(
            member_id=DONOR_ID,
            items=[OrderItem(product_id=MONTHLY_ID, start_date=date(2023, 1, 1))],
            payments=PaymentAllocation(card=500_000),
        ))
        enrollment = result.enrollments[0]
        assert enrollment.enrollment_status == EnrollmentStatus.COMPLETED

        with pytest.raises(InvalidStateError):
            service.transfer(STAFF, transfer_request(enrollment))

    def test_transferred_enrollment_goes_to_one_receiver(self):
        """Test that a handed-over enrollment cannot be sent to someone else."""
        service = make_service()
        service.add_member(Member(id=THIRD_ID, name="박서준"))
        enrollment = buy(service)
        service.transfer(STAFF, transfer_request(enrollment))

        with pytest.raises(IdempotencyConflictError):
            service.transfer(STAFF, TransferRequest(
                enrollment_id=enrollment.id, to_member_id=THIRD_ID,
            ))

    def test_repeat_request_is_idempotent(self):
        """Test that re-sending a finished transfer returns the same handover."""
        service = make_service()
        enrollment = buy(service)

        first = service.transfer(STAFF, transfer_request(enrollment))
        second = service.transfer(STAFF, transfer_request(enrollment))

        assert second.enrollment.id == first.enrollment.id
        assert service.store.count(Collection.COURSE_ENROLLMENT) == 2
        assert len(service.store.query_by_field(Collection.PAYMENT, "reference", first.reference)) == 1


class TestHandover:
    """Tests for the records a transfer leaves behind."""

    def test_source_cancelled_and_successor_created(self):
        """Test both sides of the handover."""
        service = make_service()
        enrollment = buy(service, product_id=MONTHLY_ID)

        result = service.transfer(STAFF, transfer_request(enrollment))

        assert result.source.enrollment_status == EnrollmentStatus.CANCELLED
        assert result.source.transferred_to_id == RECEIVER_ID
        assert "[양도]" in result.source.notes
        assert "이지은" in result.source.notes

        new = result.enrollment
        assert new.member_id == RECEIVER_ID
        assert new.enrollment_status == EnrollmentStatus.ACTIVE
        assert new.transferred_from_id == enrollment.id
        assert new.applied_price == enrollment.applied_price
        assert new.paid_amount == enrollment.paid_amount
        assert new.end_date == enrollment.end_date
        assert "[양도받음]" in new.notes
        assert "김민수" in new.notes

    def test_unpaid_balance_is_inherited(self):
        """Test that the receiver takes over an outstanding balance."""
        service = make_service()
        enrollment = buy(service, paid=200_000)

        result = service.transfer(STAFF, transfer_request(enrollment))

        new = result.enrollment
        assert new.enrollment_status == EnrollmentStatus.UNPAID
        assert (new.paid_amount, new.unpaid_amount) == (200_000, 300_000)
        assert service.member_unpaid_total(RECEIVER_ID) == 300_000
        assert service.member_unpaid_total(DONOR_ID) == 0

    def test_used_sessions_carry_over(self):
        """Test that sessions used by the donor reduce the receiver's remaining count."""
        service = make_service()
        enrollment = buy(service)
        start = datetime(2024, 2, 20, 10, tzinfo=timezone.utc)
        for day, status in enumerate([
            ScheduleEventStatus.COMPLETED,
            ScheduleEventStatus.COMPLETED,
            ScheduleEventStatus.COMPLETED,
            ScheduleEventStatus.CANCELLED,
        ]):
            service.record_reservation(ScheduleEvent(
                enrollment_id=enrollment.id, member_id=DONOR_ID, status=status,
                start_time=start + timedelta(days=day), end_time=start + timedelta(days=day, hours=1),
            ))

        result = service.transfer(STAFF, transfer_request(enrollment))

        new = result.enrollment
        assert new.carried_sessions == 3
        assert new.session_count == 10
        assert service.enrollment_sessions(new.id).remaining_sessions == 7
        # History stays with the original record
        assert service.sessions.completed_sessions(enrollment.id) == 3
        assert service.sessions.completed_sessions(new.id) == 0

    def test_transfer_starts_today(self):
        """Test that the receiver's record starts on the transfer date."""
        service = make_service()
        enrollment = buy(service, product_id=MONTHLY_ID)

        result = service.transfer(STAFF, transfer_request(enrollment))

        assert result.enrollment.start_date == date(2024, 3, 1)


class TestRecovery:
    """Tests for partial failure and resume."""

    def test_failure_after_fee_then_resume(self, monkeypatch):
        """Test that a failed handover resumes without charging twice."""
        service = make_service()
        enrollment = buy(service)
        service.ledger.earn(RECEIVER_ID, 50_000, "test")
        request = transfer_request(enrollment, point_payment=20_000)

        def broken_transfer_in(*args, **kwargs):
            raise RuntimeError("store unavailable")

        monkeypatch.setattr(service.enrollments, "transfer_in", broken_transfer_in)
        with pytest.raises(PartiallyAppliedError) as exc_info:
            service.transfer(STAFF, request)

        error = exc_info.value
        assert error.completed_steps == ["charge_points", "record_fee_payment", "transfer_out"]
        assert error.failed_step == "transfer_in"
        assert service.get_enrollment(enrollment.id).enrollment_status == EnrollmentStatus.CANCELLED

        monkeypatch.undo()
        result = service.transfer(STAFF, request)

        assert result.enrollment.member_id == RECEIVER_ID
        assert service.ledger.balance(RECEIVER_ID) == 30_000
        fee_payments = service.store.query_by_field(Collection.PAYMENT, "reference", result.reference)
        assert len(fee_payments) == 1

    def test_resume_cannot_switch_receiver_after_handover(self, monkeypatch):
        """Test that a resume after transfer_out stays with the original receiver."""
        service = make_service()
        service.add_member(Member(id=THIRD_ID, name="박서준"))
        enrollment = buy(service)

        def broken_transfer_in(*args, **kwargs):
            raise RuntimeError("store unavailable")

        monkeypatch.setattr(service.enrollments, "transfer_in", broken_transfer_in)
        with pytest.raises(PartiallyAppliedError):
            service.transfer(STAFF, transfer_request(enrollment))
        monkeypatch.undo()

        source = service.get_enrollment(enrollment.id)
        assert source.transferred_to_id == RECEIVER_ID

        with pytest.raises(IdempotencyConflictError):
            service.transfer(STAFF, TransferRequest(enrollment_id=enrollment.id, to_member_id=THIRD_ID))

        assert service.store.query_by_field(Collection.COURSE_ENROLLMENT, "transferred_from_id", enrollment.id) == []
        assert service.member_enrollments(THIRD_ID) == []

        result = service.transfer(STAFF, transfer_request(enrollment))
        assert result.enrollment.member_id == RECEIVER_ID

    def test_resume_cannot_switch_receiver_after_fee(self, monkeypatch):
        """Test that a fee charged to one receiver is not reused for another."""
        service = make_service()
        service.add_member(Member(id=THIRD_ID, name="박서준"))
        enrollment = buy(service)

        def broken_transfer_out(*args, **kwargs):
            raise RuntimeError("store unavailable")

        monkeypatch.setattr(service.enrollments, "transfer_out", broken_transfer_out)
        with pytest.raises(PartiallyAppliedError) as exc_info:
            service.transfer(STAFF, transfer_request(enrollment))
        monkeypatch.undo()
        assert exc_info.value.completed_steps == ["record_fee_payment"]

        with pytest.raises(IdempotencyConflictError):
            service.transfer(STAFF, TransferRequest(enrollment_id=enrollment.id, to_member_id=THIRD_ID))

        assert service.get_enrollment(enrollment.id).enrollment_status == EnrollmentStatus.ACTIVE


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
