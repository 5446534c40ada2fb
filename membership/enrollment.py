"""
Course enrollment lifecycle.

``enrollment_status`` only changes through the transition table below,
keyed by ``(current status, event, program type)``. Pairs missing from the
table are rejected. Count-based programs have no hold, extend or expire
rows, so the events a record can take depend on its program type.
"""

import logging
from collections import Counter
from datetime import date, timedelta
from typing import Optional
from uuid import UUID

from .clock import Clock, SystemClock
from .errors import (
    AlreadyHoldError,
    EnrollmentNotFoundError,
    InvalidExtensionError,
    InvalidProgramTypeError,
    InvalidStateError,
)
from .models import (
    CourseEnrollment,
    EnrollmentEvent,
    EnrollmentStatus,
    HoldInfo,
    Member,
    OperationContext,
    Payment,
    PaymentItem,
    PaymentMethod,
    PaymentType,
    ProgramType,
    UnpaidSummary,
)
from .sessions import SessionAccounting
from .store import Collection, RecordStore

logger = logging.getLogger(__name__)

# END_HOLD goes back to whatever the record was before the hold started.
RESTORE = None

S = EnrollmentStatus
E = EnrollmentEvent
DURATION = ProgramType.DURATION
COUNT = ProgramType.COUNT

TRANSITIONS: dict[tuple[EnrollmentStatus, EnrollmentEvent, ProgramType], Optional[EnrollmentStatus]] = {
    (S.ACTIVE, E.START_HOLD, DURATION): S.HOLD,
    (S.UNPAID, E.START_HOLD, DURATION): S.HOLD,
    (S.HOLD, E.END_HOLD, DURATION): RESTORE,
    (S.ACTIVE, E.EXTEND, DURATION): S.ACTIVE,
    (S.UNPAID, E.EXTEND, DURATION): S.UNPAID,
    (S.ACTIVE, E.EXPIRE, DURATION): S.COMPLETED,
    (S.UNPAID, E.COMPLETE_UNPAID, DURATION): S.COMPLETED,
    (S.HOLD, E.COMPLETE_UNPAID, DURATION): S.COMPLETED,
    (S.ACTIVE, E.TRANSFER_OUT, DURATION): S.CANCELLED,
    (S.UNPAID, E.TRANSFER_OUT, DURATION): S.CANCELLED,
    (S.UNPAID, E.COMPLETE_UNPAID, COUNT): S.COMPLETED,
    (S.ACTIVE, E.TRANSFER_OUT, COUNT): S.CANCELLED,
    (S.UNPAID, E.TRANSFER_OUT, COUNT): S.CANCELLED,
    (S.ACTIVE, E.EXHAUST, COUNT): S.COMPLETED,
}

DURATION_ONLY_EVENTS = frozenset({E.START_HOLD, E.END_HOLD, E.EXTEND, E.EXPIRE})


def _won(amount: int) -> str:
    return f"{amount:,}원"


class EnrollmentStateMachine:
    def __init__(self, store: RecordStore, sessions: Optional[SessionAccounting] = None, clock: Optional[Clock] = None):
        self.store = store
        self.sessions = sessions or SessionAccounting(store)
        self.clock = clock or SystemClock()

    # ==================== Table lookups ====================

    def available_events(self, enrollment: CourseEnrollment) -> set[EnrollmentEvent]:
        events = {
            event for (status, event, program_type) in TRANSITIONS
            if status == enrollment.enrollment_status and program_type == enrollment.program_type
        }
        if E.COMPLETE_UNPAID in events and not self._owes_balance(enrollment):
            events.discard(E.COMPLETE_UNPAID)
        return events

    def _resolve(self, enrollment: CourseEnrollment, event: EnrollmentEvent) -> Optional[EnrollmentStatus]:
        if event in DURATION_ONLY_EVENTS and enrollment.program_type != DURATION:
            raise InvalidProgramTypeError(
                f"'{event.value}' is only available for duration-based programs "
                f"(enrollment {enrollment.id} is {enrollment.program_type.value})"
            )
        key = (enrollment.enrollment_status, event, enrollment.program_type)
        if key not in TRANSITIONS:
            raise InvalidStateError(
                f"Cannot {event.value} enrollment {enrollment.id} in {enrollment.enrollment_status.value} state"
            )
        return TRANSITIONS[key]

    # ==================== Record access ====================

    def get(self, enrollment_id: UUID) -> CourseEnrollment:
        enrollment = self.store.get(Collection.COURSE_ENROLLMENT, enrollment_id)
        if enrollment is None:
            raise EnrollmentNotFoundError(f"Enrollment {enrollment_id} not found")
        return enrollment

    def create(self, enrollment: CourseEnrollment) -> CourseEnrollment:
        if not enrollment.is_settled():
            raise InvalidStateError(
                f"paid {enrollment.paid_amount} + unpaid {enrollment.unpaid_amount} "
                f"!= applied price {enrollment.applied_price}"
            )
        enrollment.created_at = enrollment.updated_at = self.clock.now()
        self.store.put(Collection.COURSE_ENROLLMENT, enrollment)
        logger.info("Enrollment created: %s member=%s status=%s", enrollment.id, enrollment.member_id, enrollment.enrollment_status.value)
        return enrollment

    def _save(self, enrollment: CourseEnrollment) -> CourseEnrollment:
        enrollment.updated_at = self.clock.now()
        self.store.put(Collection.COURSE_ENROLLMENT, enrollment)
        return enrollment

    # ==================== Hold / extend ====================

    def start_hold(self, enrollment_id: UUID, reason: Optional[str] = None) -> CourseEnrollment:
        enrollment = self.get(enrollment_id)
        if enrollment.is_on_hold():
            raise AlreadyHoldError(f"Enrollment {enrollment_id} is already on hold")
        target = self._resolve(enrollment, E.START_HOLD)

        today = self.clock.today()
        hold = enrollment.hold_info or HoldInfo()
        hold.is_hold = True
        hold.hold_start_date = today
        hold.hold_end_date = None
        hold.hold_reason = reason
        hold.status_before_hold = enrollment.enrollment_status

        enrollment.hold_info = hold
        enrollment.enrollment_status = target
        enrollment.append_note(f"[홀드] {today.isoformat()} 홀드 시작" + (f" (사유: {reason})" if reason else ""))
        logger.info("Hold started: %s", enrollment_id)
        return self._save(enrollment)

    def end_hold(self, enrollment_id: UUID) -> CourseEnrollment:
        enrollment = self.get(enrollment_id)
        if not enrollment.is_on_hold():
            raise InvalidStateError(f"Enrollment {enrollment_id} is not on hold")
        self._resolve(enrollment, E.END_HOLD)

        today = self.clock.today()
        hold = enrollment.hold_info
        held_days = max(0, (today - hold.hold_start_date).days) if hold.hold_start_date else 0

        hold.is_hold = False
        hold.hold_end_date = today
        hold.total_hold_days += held_days
        if enrollment.end_date is not None:
            enrollment.end_date = enrollment.end_date + timedelta(days=held_days)

        enrollment.enrollment_status = hold.status_before_hold or (
            S.UNPAID if enrollment.unpaid_amount > 0 else S.ACTIVE
        )
        hold.status_before_hold = None
        enrollment.append_note(f"[홀드해제] {today.isoformat()} {held_days}일 홀드, 종료일 연장")
        logger.info("Hold ended: %s after %s days", enrollment_id, held_days)
        return self._save(enrollment)

    def extend(self, enrollment_id: UUID, days: int, reason: Optional[str] = None) -> CourseEnrollment:
        if days <= 0:
            raise InvalidExtensionError(f"Extension must be at least 1 day, got {days}")
        enrollment = self.get(enrollment_id)
        if enrollment.is_on_hold():
            raise InvalidStateError(f"Enrollment {enrollment_id} is on hold and cannot be extended")
        target = self._resolve(enrollment, E.EXTEND)

        today = self.clock.today()
        base = enrollment.end_date or today
        enrollment.end_date = base + timedelta(days=days)
        enrollment.enrollment_status = target
        enrollment.append_note(
            f"[연장] {today.isoformat()} {days}일 연장" + (f" (사유: {reason})" if reason else "")
        )
        logger.info("Enrollment %s extended by %s days to %s", enrollment_id, days, enrollment.end_date)
        return self._save(enrollment)

    # ==================== Settlement ====================

    def complete_unpaid(
        self, ctx: OperationContext, enrollment_id: UUID, payment_method: PaymentMethod
    ) -> tuple[CourseEnrollment, Payment]:
        enrollment = self.get(enrollment_id)
        if not self._owes_balance(enrollment):
            raise InvalidStateError(f"Enrollment {enrollment_id} has no outstanding balance to complete")
        target = self._resolve(enrollment, E.COMPLETE_UNPAID)

        delta = enrollment.unpaid_amount
        payment = Payment(
            member_id=enrollment.member_id,
            member_name=enrollment.member_name,
            items=[PaymentItem(
                product_id=enrollment.product_id, name=enrollment.product_name,
                price=delta, program_type=enrollment.program_type,
            )],
            total_amount=delta,
            paid_amount=delta,
            unpaid_amount=0,
            payment_method=payment_method,
            payment_type=PaymentType.COURSE,
            related_course_id=enrollment.id,
            reference=f"complete_{enrollment.id}",
            memo=f"Outstanding balance settled for {enrollment.product_name}",
            processed_by=ctx.actor_id,
            created_at=self.clock.now(),
        )
        self.store.put(Collection.PAYMENT, payment)

        enrollment.paid_amount = enrollment.applied_price
        enrollment.unpaid_amount = 0
        enrollment.enrollment_status = target
        if enrollment.hold_info is not None:
            enrollment.hold_info.is_hold = False
        enrollment.append_note(
            f"[완납] {self.clock.today().isoformat()} 미수금 {_won(delta)} 완납 ({payment_method.value})"
        )
        logger.info("Unpaid balance %s settled on enrollment %s", delta, enrollment_id)
        return self._save(enrollment), payment

    @staticmethod
    def _owes_balance(enrollment: CourseEnrollment) -> bool:
        if enrollment.unpaid_amount <= 0:
            return False
        if enrollment.enrollment_status == S.UNPAID:
            return True
        return (
            enrollment.enrollment_status == S.HOLD
            and enrollment.hold_info is not None
            and enrollment.hold_info.status_before_hold == S.UNPAID
        )

    # ==================== Transfer ====================

    def transfer_out(self, enrollment_id: UUID, receiver: Member, fee: int, reference: str) -> CourseEnrollment:
        enrollment = self.get(enrollment_id)
        if enrollment.is_on_hold():
            raise InvalidStateError(f"Enrollment {enrollment_id} is on hold and cannot be transferred")
        target = self._resolve(enrollment, E.TRANSFER_OUT)

        enrollment.enrollment_status = target
        enrollment.transfer_reference = reference
        enrollment.transferred_to_id = receiver.id
        enrollment.append_note(
            f"[양도] {self.clock.today().isoformat()} {receiver.name}님에게 양도 (수수료: {_won(fee)})"
        )
        logger.info("Enrollment %s transferred out to member %s", enrollment_id, receiver.id)
        return self._save(enrollment)

    def transfer_in(
        self,
        source: CourseEnrollment,
        receiver: Member,
        fee: int,
        carried_sessions: int,
        memo: Optional[str] = None,
    ) -> CourseEnrollment:
        note = (
            f"[양도받음] {self.clock.today().isoformat()} {source.member_name}님으로부터 양도받음 "
            f"(수수료 지불: {_won(fee)})"
        )
        if memo:
            note = f"{note}\n{memo}"

        enrollment = CourseEnrollment(
            member_id=receiver.id,
            member_name=receiver.name,
            branch_id=receiver.branch_id,
            product_id=source.product_id,
            product_name=source.product_name,
            product_price=source.product_price,
            applied_price=source.applied_price,
            program_type=source.program_type,
            # Opens unpaid when a balance is inherited so complete_unpaid can still collect it.
            enrollment_status=S.UNPAID if source.unpaid_amount > 0 else S.ACTIVE,
            session_count=source.session_count,
            carried_sessions=carried_sessions,
            start_date=self.clock.today(),
            end_date=source.end_date,
            paid_amount=source.paid_amount,
            unpaid_amount=source.unpaid_amount,
            notes=note,
            transferred_from_id=source.id,
        )
        return self.create(enrollment)

    # ==================== Sweeps ====================

    def expire_lapsed(self, as_of: Optional[date] = None) -> int:
        """Complete active duration enrollments whose end date has passed."""
        as_of = as_of or self.clock.today()
        updated = 0
        for enrollment in self.store.query_by_field(Collection.COURSE_ENROLLMENT, "enrollment_status", S.ACTIVE):
            if enrollment.program_type != DURATION or enrollment.end_date is None or enrollment.end_date >= as_of:
                continue
            enrollment.enrollment_status = self._resolve(enrollment, E.EXPIRE)
            self._save(enrollment)
            updated += 1
        if updated:
            logger.info("%s lapsed enrollments completed", updated)
        return updated

    def complete_exhausted(self) -> int:
        """Complete active count enrollments with no sessions left."""
        updated = 0
        for enrollment in self.store.query_by_field(Collection.COURSE_ENROLLMENT, "enrollment_status", S.ACTIVE):
            if enrollment.program_type != COUNT or not enrollment.session_count:
                continue
            if self.sessions.remaining_sessions(enrollment) > 0:
                continue
            enrollment.enrollment_status = self._resolve(enrollment, E.EXHAUST)
            self._save(enrollment)
            updated += 1
        return updated

    # ==================== Reporting ====================

    def by_member(self, member_id: UUID) -> list[CourseEnrollment]:
        return self.store.query_by_field(Collection.COURSE_ENROLLMENT, "member_id", member_id)

    def member_unpaid_total(self, member_id: UUID) -> int:
        return sum(e.unpaid_amount for e in self.by_member(member_id) if self._owes_balance(e))

    def unpaid_summary(self) -> UnpaidSummary:
        unpaid = [e for e in self.store.query_all(Collection.COURSE_ENROLLMENT) if self._owes_balance(e)]
        return UnpaidSummary(
            unpaid_member_count=len({e.member_id for e in unpaid}),
            total_unpaid_amount=sum(e.unpaid_amount for e in unpaid),
        )

    def status_counts(self, branch_id: Optional[str] = None) -> dict[str, int]:
        enrollments = self.store.query_all(Collection.COURSE_ENROLLMENT)
        if branch_id is not None:
            enrollments = [e for e in enrollments if e.branch_id == branch_id]
        counts = Counter(e.enrollment_status.value for e in enrollments)
        return {"total": len(enrollments), **{s.value: counts.get(s.value, 0) for s in S}}
