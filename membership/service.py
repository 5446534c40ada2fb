from datetime import date, datetime, timezone
from typing import Optional
from uuid import UUID

from .clock import Clock, SystemClock
from .config import Settings, get_settings
from .enrollment import EnrollmentStateMachine
from .errors import MemberNotFoundError
from .models import (
    CourseEnrollment,
    EnrollmentWithSessions,
    Member,
    OperationContext,
    OrderRequest,
    OrderResult,
    Payment,
    PaymentMethod,
    PointBalance,
    PointHistoryResponse,
    PointPurchaseResult,
    PointStats,
    PointTransaction,
    Product,
    ProgramType,
    ReservationStats,
    ScheduleEvent,
    ScheduleEventStatus,
    TransferRequest,
    TransferResult,
    UnpaidSummary,
)
from .orders import OrderProcessor
from .points import PointLedger
from .sessions import SessionAccounting
from .store import Collection, RecordStore
from .transfer import TransferWorkflow

DEMO_MEMBER_ID = UUID("550e8400-e29b-41d4-a716-446655440000")
DEMO_RECEIVER_ID = UUID("660e8400-e29b-41d4-a716-446655440001")
DEMO_PT_PRODUCT_ID = UUID("11111111-1111-1111-1111-111111111111")
DEMO_MONTHLY_PRODUCT_ID = UUID("22222222-2222-2222-2222-222222222222")
DEMO_LOCKER_PRODUCT_ID = UUID("33333333-3333-3333-3333-333333333333")


def seed_demo_data(store: RecordStore) -> None:
    now = datetime.now(timezone.utc)
    store.put(Collection.MEMBER, Member(
        id=DEMO_MEMBER_ID, name="김민수", phone="010-1234-5678",
        branch_id="gangnam", branch_name="강남점", created_at=now,
    ))
    store.put(Collection.MEMBER, Member(
        id=DEMO_RECEIVER_ID, name="이지은", phone="010-9876-5432",
        branch_id="gangnam", branch_name="강남점", created_at=now,
    ))
    store.put(Collection.PRODUCT, Product(
        id=DEMO_PT_PRODUCT_ID, name="PT 10회", price=500_000,
        program_type=ProgramType.COUNT, sessions=10, program_name="Personal Training",
    ))
    store.put(Collection.PRODUCT, Product(
        id=DEMO_MONTHLY_PRODUCT_ID, name="헬스 3개월", price=300_000,
        program_type=ProgramType.DURATION, months=3, program_name="Fitness",
    ))
    store.put(Collection.PRODUCT, Product(
        id=DEMO_LOCKER_PRODUCT_ID, name="개인 락커 3개월", price=30_000,
    ))


class MembershipService:
    """Wires the ledger, the enrollment lifecycle and the workflows over one store."""

    def __init__(
        self,
        store: Optional[RecordStore] = None,
        clock: Optional[Clock] = None,
        settings: Optional[Settings] = None,
        seed: bool = False,
    ):
        self.store = store or RecordStore()
        self.clock = clock or SystemClock()
        self.settings = settings or get_settings()
        if seed:
            seed_demo_data(self.store)

        self.ledger = PointLedger(self.store, self.clock, self.settings)
        self.sessions = SessionAccounting(self.store)
        self.enrollments = EnrollmentStateMachine(self.store, self.sessions, self.clock)
        self.orders = OrderProcessor(self.store, self.ledger, self.enrollments, self.clock, self.settings)
        self.transfers = TransferWorkflow(
            self.store, self.ledger, self.enrollments, self.sessions, self.clock, self.settings
        )

    # ==================== Catalog ====================

    def add_member(self, member: Member) -> Member:
        member.created_at = member.created_at or self.clock.now()
        return self.store.put(Collection.MEMBER, member)

    def get_member(self, member_id: UUID) -> Member:
        member = self.store.get(Collection.MEMBER, member_id)
        if member is None:
            raise MemberNotFoundError(f"Member {member_id} not found")
        return member

    def add_product(self, product: Product) -> Product:
        return self.store.put(Collection.PRODUCT, product)

    def record_reservation(self, event: ScheduleEvent) -> ScheduleEvent:
        return self.store.put(Collection.SCHEDULE_EVENT, event)

    def set_reservation_status(self, event_id: UUID, status: ScheduleEventStatus) -> ScheduleEvent:
        return self.sessions.set_event_status(event_id, status)

    # ==================== Orders ====================

    def process_order(self, ctx: OperationContext, request: OrderRequest) -> OrderResult:
        return self.orders.process_order(ctx, request)

    def register_point_purchase(
        self,
        ctx: OperationContext,
        member_id: UUID,
        amount: int,
        payment_method: PaymentMethod,
        bonus_enabled: bool = True,
        memo: Optional[str] = None,
    ) -> PointPurchaseResult:
        return self.orders.register_point_purchase(ctx, member_id, amount, payment_method, bonus_enabled, memo)

    def payments_for_member(self, member_id: UUID) -> list[Payment]:
        self.get_member(member_id)
        payments = self.store.query_by_field(Collection.PAYMENT, "member_id", member_id)
        payments.sort(key=lambda p: p.created_at or self.clock.now(), reverse=True)
        return payments

    # ==================== Points ====================

    def get_balance(self, member_id: UUID) -> PointBalance:
        self.get_member(member_id)
        return self.ledger.get_balance(member_id)

    def get_point_history(self, member_id: UUID, limit: int = 50, offset: int = 0) -> PointHistoryResponse:
        self.get_member(member_id)
        return self.ledger.history(member_id, limit, offset)

    def get_point_stats(self, member_id: UUID) -> PointStats:
        self.get_member(member_id)
        return self.ledger.stats(member_id)

    def adjust_points(self, ctx: OperationContext, member_id: UUID, amount: int, description: str) -> list[PointTransaction]:
        self.get_member(member_id)
        return self.ledger.adjust(ctx, member_id, amount, description)

    def expire_points(self, as_of: Optional[datetime] = None) -> int:
        return self.ledger.expire(as_of=as_of)

    # ==================== Enrollments ====================

    def get_enrollment(self, enrollment_id: UUID) -> CourseEnrollment:
        return self.enrollments.get(enrollment_id)

    def start_hold(self, enrollment_id: UUID, reason: Optional[str] = None) -> CourseEnrollment:
        return self.enrollments.start_hold(enrollment_id, reason)

    def end_hold(self, enrollment_id: UUID) -> CourseEnrollment:
        return self.enrollments.end_hold(enrollment_id)

    def extend(self, enrollment_id: UUID, days: int, reason: Optional[str] = None) -> CourseEnrollment:
        return self.enrollments.extend(enrollment_id, days, reason)

    def complete_unpaid(
        self, ctx: OperationContext, enrollment_id: UUID, payment_method: PaymentMethod
    ) -> CourseEnrollment:
        enrollment, _ = self.enrollments.complete_unpaid(ctx, enrollment_id, payment_method)
        return enrollment

    def transfer(self, ctx: OperationContext, request: TransferRequest) -> TransferResult:
        return self.transfers.transfer(ctx, request)

    def enrollment_sessions(self, enrollment_id: UUID) -> EnrollmentWithSessions:
        return self.sessions.with_sessions(self.enrollments.get(enrollment_id))

    def reservation_history(self, enrollment_id: UUID) -> list[ScheduleEvent]:
        self.enrollments.get(enrollment_id)
        return self.sessions.reservation_history(enrollment_id)

    def reservation_stats(self, enrollment_id: UUID) -> ReservationStats:
        self.enrollments.get(enrollment_id)
        return self.sessions.reservation_stats(enrollment_id)

    def member_enrollments(self, member_id: UUID) -> list[EnrollmentWithSessions]:
        self.get_member(member_id)
        return self.sessions.member_enrollments_with_sessions(member_id)

    def unpaid_summary(self) -> UnpaidSummary:
        return self.enrollments.unpaid_summary()

    def member_unpaid_total(self, member_id: UUID) -> int:
        return self.enrollments.member_unpaid_total(member_id)

    def status_counts(self, branch_id: Optional[str] = None) -> dict[str, int]:
        return self.enrollments.status_counts(branch_id)

    def run_housekeeping(self, as_of: Optional[date] = None) -> dict[str, int]:
        """Point expiry plus the lapsed and exhausted enrollment sweeps."""
        as_of_dt = (
            datetime.combine(as_of, datetime.min.time(), tzinfo=timezone.utc) if as_of else None
        )
        return {
            "expired_point_entries": self.ledger.expire(as_of=as_of_dt),
            "lapsed_enrollments": self.enrollments.expire_lapsed(as_of),
            "exhausted_enrollments": self.enrollments.complete_exhausted(),
        }
