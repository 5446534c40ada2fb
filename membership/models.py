from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Optional
from uuid import UUID, uuid4
from pydantic import BaseModel, Field, ConfigDict


class ProgramType(str, Enum):
    COUNT = "count"
    DURATION = "duration"


class EnrollmentStatus(str, Enum):
    ACTIVE = "active"
    UNPAID = "unpaid"
    HOLD = "hold"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class EnrollmentEvent(str, Enum):
    START_HOLD = "start_hold"
    END_HOLD = "end_hold"
    EXTEND = "extend"
    COMPLETE_UNPAID = "complete_unpaid"
    TRANSFER_OUT = "transfer_out"
    EXPIRE = "expire"
    EXHAUST = "exhaust"


class PointTransactionType(str, Enum):
    EARNED = "earned"
    USED = "used"
    EXPIRED = "expired"
    ADJUSTED = "adjusted"


class PaymentMethod(str, Enum):
    CASH = "cash"
    CARD = "card"
    TRANSFER = "transfer"
    POINTS = "points"
    MIXED = "mixed"
    NONE = "none"


class PaymentType(str, Enum):
    COURSE = "course"
    ASSET = "asset"
    OTHER = "other"


class OrderStatus(str, Enum):
    COMPLETED = "completed"
    PARTIALLY_PAID = "partially_paid"
    PENDING = "pending"


class ScheduleEventType(str, Enum):
    CLASS = "class"
    CONSULTATION = "consultation"
    OTHER = "other"


class ScheduleEventStatus(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    NOSHOW = "noshow"


class OperationContext(BaseModel):
    """Who is performing a mutating call. Passed explicitly into every workflow."""

    actor_id: str
    actor_name: Optional[str] = None
    branch_id: Optional[str] = None
    is_system_admin: bool = False


# ==================== Stored entities ====================

class Member(BaseModel):
    id: UUID = Field(default_factory=uuid4)
    name: str
    phone: Optional[str] = None
    branch_id: Optional[str] = None
    branch_name: Optional[str] = None
    coach_id: Optional[str] = None
    coach_name: Optional[str] = None
    is_active: bool = True
    created_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class Product(BaseModel):
    id: UUID = Field(default_factory=uuid4)
    name: str
    price: int = Field(..., ge=0)
    program_type: Optional[ProgramType] = Field(
        default=None, description="None for non-course items such as lockers"
    )
    sessions: Optional[int] = Field(default=None, gt=0)
    months: Optional[int] = Field(default=None, gt=0)
    duration_days: Optional[int] = Field(default=None, gt=0)
    program_id: Optional[str] = None
    program_name: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)

    def is_course(self) -> bool:
        return self.program_type is not None


class HoldInfo(BaseModel):
    is_hold: bool = False
    hold_start_date: Optional[date] = None
    hold_end_date: Optional[date] = None
    hold_reason: Optional[str] = None
    total_hold_days: int = 0
    status_before_hold: Optional[EnrollmentStatus] = None


class CourseEnrollment(BaseModel):
    id: UUID = Field(default_factory=uuid4)
    order_id: Optional[str] = None
    member_id: UUID
    member_name: str = ""
    branch_id: Optional[str] = None
    product_id: UUID
    product_name: str = ""
    product_price: int = 0
    applied_price: int = Field(..., ge=0)
    program_type: ProgramType
    enrollment_status: EnrollmentStatus = EnrollmentStatus.ACTIVE
    session_count: Optional[int] = None
    carried_sessions: int = Field(
        default=0, ge=0, description="Sessions consumed under a predecessor enrollment"
    )
    start_date: date
    end_date: Optional[date] = None
    paid_amount: int = Field(default=0, ge=0)
    unpaid_amount: int = Field(default=0, ge=0)
    hold_info: Optional[HoldInfo] = None
    notes: str = ""
    transferred_from_id: Optional[UUID] = None
    transfer_reference: Optional[str] = None
    transferred_to_id: Optional[UUID] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)

    def is_on_hold(self) -> bool:
        return bool(self.hold_info and self.hold_info.is_hold)

    def is_settled(self) -> bool:
        return self.paid_amount + self.unpaid_amount == self.applied_price

    def append_note(self, line: str) -> None:
        self.notes = f"{self.notes}\n{line}".strip()


class PaymentItem(BaseModel):
    product_id: Optional[UUID] = None
    name: str
    price: int
    quantity: int = 1
    program_type: Optional[ProgramType] = None


class PaymentBreakdown(BaseModel):
    cash: int = 0
    card: int = 0
    transfer: int = 0
    points: int = 0


class Payment(BaseModel):
    id: UUID = Field(default_factory=uuid4)
    order_id: Optional[str] = None
    member_id: UUID
    member_name: str = ""
    items: list[PaymentItem] = Field(default_factory=list)
    total_amount: int
    paid_amount: int
    unpaid_amount: int = 0
    payment_method: PaymentMethod
    payment_type: PaymentType
    breakdown: PaymentBreakdown = Field(default_factory=PaymentBreakdown)
    order_status: OrderStatus = OrderStatus.COMPLETED
    related_course_id: Optional[UUID] = None
    reference: Optional[str] = None
    request_fingerprint: Optional[str] = Field(
        default=None, description="Digest of the request that wrote this payment, for replay checks"
    )
    memo: str = ""
    processed_by: Optional[str] = None
    created_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class PointTransaction(BaseModel):
    id: UUID = Field(default_factory=uuid4)
    member_id: UUID
    amount: int
    type: PointTransactionType
    source: str
    description: str = ""
    earned_date: datetime
    expiry_date: Optional[datetime] = None
    related_payment_id: Optional[UUID] = None
    related_order_id: Optional[str] = None
    original_transaction_id: Optional[UUID] = None
    is_expired: bool = False
    processed_by: Optional[str] = None
    created_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)

    def is_source(self) -> bool:
        return self.amount > 0 and self.type in (
            PointTransactionType.EARNED, PointTransactionType.ADJUSTED
        )

    def is_live(self, as_of: datetime) -> bool:
        return self.expiry_date is None or self.expiry_date > as_of


class ScheduleEvent(BaseModel):
    id: UUID = Field(default_factory=uuid4)
    enrollment_id: Optional[UUID] = None
    member_id: Optional[UUID] = None
    type: ScheduleEventType = ScheduleEventType.CLASS
    status: ScheduleEventStatus = ScheduleEventStatus.ACTIVE
    start_time: datetime
    end_time: datetime
    title: str = ""

    model_config = ConfigDict(from_attributes=True)


# ==================== Requests ====================

class OrderItem(BaseModel):
    product_id: UUID
    price: Optional[int] = Field(default=None, ge=0, description="Applied price; catalog price when omitted")
    sessions: Optional[int] = Field(default=None, gt=0)
    start_date: Optional[date] = None
    end_date: Optional[date] = None


class PaymentAllocation(BaseModel):
    cash: int = Field(default=0, ge=0)
    card: int = Field(default=0, ge=0)
    transfer: int = Field(default=0, ge=0)
    points: int = Field(default=0, ge=0)
    bonus_enabled: bool = False

    @property
    def cash_like(self) -> int:
        return self.cash + self.card + self.transfer

    @property
    def received(self) -> int:
        return self.cash_like + self.points


class OrderRequest(BaseModel):
    member_id: UUID
    items: list[OrderItem]
    payments: PaymentAllocation = Field(default_factory=PaymentAllocation)
    order_type: str = Field(default="course_enrollment")
    order_id: Optional[str] = Field(default=None, description="Caller-supplied idempotency key")

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "member_id": "550e8400-e29b-41d4-a716-446655440000",
            "items": [{"product_id": "11111111-1111-1111-1111-111111111111"}],
            "payments": {"card": 300000, "points": 20000, "bonus_enabled": False},
            "order_type": "course_enrollment",
            "order_id": "order-2024-0001",
        }
    })


class HoldRequest(BaseModel):
    reason: Optional[str] = None


class ExtendRequest(BaseModel):
    days: int
    reason: Optional[str] = None


class CompletePaymentRequest(BaseModel):
    payment_method: PaymentMethod = PaymentMethod.CARD


class ReservationStatusRequest(BaseModel):
    status: ScheduleEventStatus


class TransferBody(BaseModel):
    to_member_id: UUID
    from_member_id: Optional[UUID] = None
    fee_ratio: Optional[Decimal] = Field(default=None, ge=0, le=1)
    payment_method: PaymentMethod = PaymentMethod.CARD
    point_payment: int = Field(default=0, ge=0)
    memo: Optional[str] = None


class TransferRequest(TransferBody):
    enrollment_id: UUID


class PointPurchaseRequest(BaseModel):
    amount: int = Field(..., gt=0)
    payment_method: PaymentMethod = PaymentMethod.CARD
    bonus_enabled: bool = True
    memo: Optional[str] = None


class PointAdjustRequest(BaseModel):
    amount: int
    description: str = Field(..., description="Reason for the adjustment")


# ==================== Responses / read models ====================

class PointBalance(BaseModel):
    member_id: UUID
    current_balance: int
    as_of: datetime


class PointSource(BaseModel):
    id: UUID
    available_amount: int
    earned_date: datetime
    expiry_date: Optional[datetime] = None


class PointHistoryResponse(BaseModel):
    member_id: UUID
    entries: list[PointTransaction]
    total_count: int
    current_balance: int


class PointStats(BaseModel):
    member_id: UUID
    total_earned: int = 0
    total_used: int = 0
    total_expired: int = 0
    current_balance: int = 0
    expiring_in_7_days: int = 0
    expiring_in_30_days: int = 0
    transaction_count: int = 0


class OrderResult(BaseModel):
    order_id: str
    payment: Payment
    enrollments: list[CourseEnrollment]
    points_used: int = 0
    points_earned: int = 0
    bonus_points: int = 0
    message: str


class PointPurchaseResult(BaseModel):
    payment: Payment
    earned: list[PointTransaction]
    message: str


class TransferResult(BaseModel):
    reference: str
    source: CourseEnrollment
    enrollment: CourseEnrollment
    fee: int
    cash_fee: int
    point_payment: int
    fee_payment: Optional[Payment] = None
    message: str


class ReservationStats(BaseModel):
    total: int = 0
    active: int = 0
    completed: int = 0
    cancelled: int = 0
    noshow: int = 0


class EnrollmentWithSessions(BaseModel):
    enrollment: CourseEnrollment
    completed_sessions: int
    remaining_sessions: int


class UnpaidSummary(BaseModel):
    unpaid_member_count: int
    total_unpaid_amount: int
