import logging
from decimal import ROUND_FLOOR, Decimal
from typing import Optional

from .clock import Clock, SystemClock
from .config import Settings, get_settings
from .enrollment import EnrollmentStateMachine
from .errors import (
    IdempotencyConflictError,
    InsufficientBalanceError,
    InvalidAmountError,
    InvalidStateError,
    MemberNotFoundError,
)
from .models import (
    CourseEnrollment,
    EnrollmentStatus,
    Member,
    OperationContext,
    Payment,
    PaymentItem,
    PaymentMethod,
    PaymentType,
    TransferRequest,
    TransferResult,
)
from .orders import breakdown_for, record_id
from .points import PointLedger
from .sessions import SessionAccounting
from .store import Collection, RecordStore
from .workflow import StepRunner

logger = logging.getLogger(__name__)

TRANSFERABLE_STATUSES = (EnrollmentStatus.ACTIVE, EnrollmentStatus.UNPAID)


def transfer_fee(applied_price: int, ratio: Decimal) -> int:
    return int((Decimal(applied_price) * ratio).to_integral_value(rounding=ROUND_FLOOR))


class TransferWorkflow:
    """Hands an enrollment to another member for a fee.

    The receiver pays the fee, partly in points if they choose. The donor's
    record is cancelled and a new record is opened for the receiver with
    the same price, balance and end date. Sessions already used stay in the
    donor's reservation history; the new record carries their count.
    """

    def __init__(
        self,
        store: RecordStore,
        ledger: PointLedger,
        machine: EnrollmentStateMachine,
        sessions: Optional[SessionAccounting] = None,
        clock: Optional[Clock] = None,
        settings: Optional[Settings] = None,
    ):
        self.store = store
        self.ledger = ledger
        self.machine = machine
        self.sessions = sessions or machine.sessions
        self.clock = clock or SystemClock()
        self.settings = settings or get_settings()

    @staticmethod
    def reference_for(enrollment: CourseEnrollment) -> str:
        return f"transfer_{enrollment.id}"

    def transfer(self, ctx: OperationContext, request: TransferRequest) -> TransferResult:
        source = self.machine.get(request.enrollment_id)
        reference = self.reference_for(source)
        receiver = self._get_member(request.to_member_id)

        ratio = request.fee_ratio if request.fee_ratio is not None else self.settings.TRANSFER_FEE_RATIO
        fee = transfer_fee(source.applied_price, ratio)
        point_payment = request.point_payment
        cash_fee = max(0, fee - point_payment)

        fee_payment_id = record_id(reference, "fee")
        self._check_resume(source, reference, receiver, fee, point_payment, fee_payment_id)

        # A record already handed over under this reference is a resume, not a new transfer.
        if source.transfer_reference != reference:
            self._validate(source, receiver, request)
        if point_payment > 0 and not self._points_charged(reference):
            available = self.ledger.balance(receiver.id)
            if point_payment > available:
                logger.warning(
                    "Transfer %s rejected: point payment %s exceeds balance %s", reference, point_payment, available
                )
                raise InsufficientBalanceError(point_payment, available)
        if point_payment > fee:
            raise InvalidAmountError(f"Point payment {point_payment:,} exceeds the transfer fee {fee:,}")

        carried = source.carried_sessions + self.sessions.completed_sessions(source.id)

        runner = StepRunner(reference)
        if point_payment > 0:
            runner.add(
                "charge_points",
                lambda: self.ledger.consume_fifo(
                    receiver.id, point_payment, reference, f"Transfer fee for {source.product_name}",
                    source="transfer_fee", related_payment_id=fee_payment_id if cash_fee else None, ctx=ctx,
                ),
                lambda: self._points_charged(reference),
            )
        if cash_fee > 0:
            runner.add(
                "record_fee_payment",
                lambda: self._record_fee_payment(
                    ctx, fee_payment_id, reference, receiver, source, fee, cash_fee, point_payment, request,
                ),
                lambda: self.store.get(Collection.PAYMENT, fee_payment_id) is not None,
            )
        runner.add(
            "transfer_out",
            lambda: self.machine.transfer_out(source.id, receiver, fee, reference),
            lambda: self.machine.get(source.id).transfer_reference == reference,
        )
        runner.add(
            "transfer_in",
            lambda: self.machine.transfer_in(source, receiver, fee, carried, request.memo),
            lambda: self._successor(source) is not None,
        )
        runner.run()

        logger.info(
            "Enrollment %s transferred from %s to %s: fee=%s cash=%s points=%s",
            source.id, source.member_id, receiver.id, fee, cash_fee, point_payment,
        )
        return TransferResult(
            reference=reference,
            source=self.machine.get(source.id),
            enrollment=self._successor(source),
            fee=fee,
            cash_fee=cash_fee,
            point_payment=point_payment,
            fee_payment=self.store.get(Collection.PAYMENT, fee_payment_id),
            message=f"Transferred {source.product_name} to {receiver.name}",
        )

    def _validate(self, source: CourseEnrollment, receiver: Member, request: TransferRequest) -> None:
        if request.from_member_id is not None and request.from_member_id != source.member_id:
            raise InvalidStateError(
                f"Enrollment {source.id} does not belong to member {request.from_member_id}"
            )
        if receiver.id == source.member_id:
            raise InvalidStateError("An enrollment cannot be transferred to its current owner")
        if source.is_on_hold():
            raise InvalidStateError(f"Enrollment {source.id} is on hold and cannot be transferred")
        if source.enrollment_status not in TRANSFERABLE_STATUSES:
            raise InvalidStateError(
                f"Cannot transfer enrollment {source.id} in {source.enrollment_status.value} state"
            )

    def _check_resume(
        self,
        source: CourseEnrollment,
        reference: str,
        receiver: Member,
        fee: int,
        point_payment: int,
        fee_payment_id,
    ) -> None:
        """Reject a retry whose receiver or fee split differs from what was already written."""
        if source.transfer_reference == reference and source.transferred_to_id != receiver.id:
            raise IdempotencyConflictError(
                f"Enrollment {source.id} was already handed over to member {source.transferred_to_id}"
            )

        entries = self.ledger.entries_for_reference(reference)
        drawn = -sum(t.amount for t in entries if t.amount < 0)
        if any(t.member_id != receiver.id for t in entries) or drawn not in (0, point_payment):
            raise IdempotencyConflictError(
                f"Transfer {reference} already charged points for a different receiver or amount"
            )

        fee_payment = self.store.get(Collection.PAYMENT, fee_payment_id)
        if fee_payment is not None and (
            fee_payment.member_id != receiver.id
            or fee_payment.total_amount != fee
            or fee_payment.breakdown.points != point_payment
        ):
            raise IdempotencyConflictError(
                f"Transfer {reference} already recorded a fee payment for a different receiver or amount"
            )

    def _get_member(self, member_id) -> Member:
        member = self.store.get(Collection.MEMBER, member_id)
        if member is None:
            raise MemberNotFoundError(f"Member {member_id} not found")
        return member

    def _points_charged(self, reference: str) -> bool:
        return any(t.amount < 0 for t in self.ledger.entries_for_reference(reference))

    def _successor(self, source: CourseEnrollment) -> Optional[CourseEnrollment]:
        successors = self.store.query_by_field(Collection.COURSE_ENROLLMENT, "transferred_from_id", source.id)
        return successors[0] if successors else None

    def _record_fee_payment(
        self,
        ctx: OperationContext,
        payment_id,
        reference: str,
        receiver: Member,
        source: CourseEnrollment,
        fee: int,
        cash_fee: int,
        point_payment: int,
        request: TransferRequest,
    ) -> Payment:
        method = request.payment_method if point_payment == 0 else PaymentMethod.MIXED
        payment = Payment(
            id=payment_id,
            member_id=receiver.id,
            member_name=receiver.name,
            items=[PaymentItem(product_id=source.product_id, name=f"Transfer fee: {source.product_name}", price=fee)],
            total_amount=fee,
            paid_amount=fee,
            payment_method=method,
            payment_type=PaymentType.OTHER,
            breakdown=breakdown_for(request.payment_method, cash_fee, points=point_payment),
            related_course_id=source.id,
            reference=reference,
            memo=request.memo or f"Transfer from {source.member_name}",
            processed_by=ctx.actor_id,
            created_at=self.clock.now(),
        )
        return self.store.put(Collection.PAYMENT, payment)
