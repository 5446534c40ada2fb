import logging
from typing import NoReturn, Optional
from uuid import UUID

from fastapi import Depends, FastAPI, Header, HTTPException, status
from fastapi.middleware.cors import CORSMiddleware

from .config import configure_logging, get_settings
from .errors import (
    IdempotencyConflictError,
    MembershipError,
    NotFoundError,
    PartiallyAppliedError,
    PermissionDeniedError,
)
from .models import (
    CompletePaymentRequest,
    CourseEnrollment,
    EnrollmentWithSessions,
    ExtendRequest,
    HoldRequest,
    OperationContext,
    OrderRequest,
    OrderResult,
    Payment,
    PointAdjustRequest,
    PointBalance,
    PointHistoryResponse,
    PointPurchaseRequest,
    PointPurchaseResult,
    PointStats,
    PointTransaction,
    ReservationStats,
    ReservationStatusRequest,
    ScheduleEvent,
    TransferBody,
    TransferRequest,
    TransferResult,
    UnpaidSummary,
)
from .service import MembershipService

settings = get_settings()
configure_logging(settings)
logger = logging.getLogger(__name__)

app = FastAPI(
    title=settings.API_TITLE,
    description="Order settlement, FIFO point ledger and course enrollment lifecycle for gym memberships",
    version=settings.API_VERSION,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

membership_service = MembershipService(settings=settings, seed=True)


def get_service() -> MembershipService:
    return membership_service


def get_context(
    x_actor_id: str = Header(default="front-desk"),
    x_actor_name: Optional[str] = Header(default=None),
    x_branch_id: Optional[str] = Header(default=None),
    x_system_admin: bool = Header(default=False),
) -> OperationContext:
    return OperationContext(
        actor_id=x_actor_id,
        actor_name=x_actor_name,
        branch_id=x_branch_id,
        is_system_admin=x_system_admin,
    )


def raise_http_error(e: MembershipError) -> NoReturn:
    if isinstance(e, NotFoundError):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    if isinstance(e, PermissionDeniedError):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(e))
    if isinstance(e, IdempotencyConflictError):
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    if isinstance(e, PartiallyAppliedError):
        logger.error("Partially applied: %s", e)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={
                "message": str(e),
                "reference": e.reference,
                "completed_steps": e.completed_steps,
                "failed_step": e.failed_step,
            },
        )
    raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))


@app.get("/health", tags=["System"])
def health_check():
    return {"status": "healthy", "service": "membership-ledger"}


# ==================== Orders ====================

@app.post("/orders", response_model=OrderResult, status_code=status.HTTP_201_CREATED, tags=["Orders"])
def create_order(
    request: OrderRequest,
    ctx: OperationContext = Depends(get_context),
    service: MembershipService = Depends(get_service),
) -> OrderResult:
    try:
        return service.process_order(ctx, request)
    except MembershipError as e:
        raise_http_error(e)


@app.get("/members/{member_id}/payments", response_model=list[Payment], tags=["Orders"])
def get_member_payments(member_id: UUID, service: MembershipService = Depends(get_service)) -> list[Payment]:
    try:
        return service.payments_for_member(member_id)
    except MembershipError as e:
        raise_http_error(e)


# ==================== Points ====================

@app.post(
    "/members/{member_id}/points/top-ups",
    response_model=PointPurchaseResult,
    status_code=status.HTTP_201_CREATED,
    tags=["Points"],
)
def top_up_points(
    member_id: UUID,
    request: PointPurchaseRequest,
    ctx: OperationContext = Depends(get_context),
    service: MembershipService = Depends(get_service),
) -> PointPurchaseResult:
    try:
        return service.register_point_purchase(
            ctx, member_id, request.amount, request.payment_method, request.bonus_enabled, request.memo
        )
    except MembershipError as e:
        raise_http_error(e)


@app.post("/members/{member_id}/points/adjustments", response_model=list[PointTransaction], tags=["Points"])
def adjust_points(
    member_id: UUID,
    request: PointAdjustRequest,
    ctx: OperationContext = Depends(get_context),
    service: MembershipService = Depends(get_service),
) -> list[PointTransaction]:
    try:
        return service.adjust_points(ctx, member_id, request.amount, request.description)
    except MembershipError as e:
        raise_http_error(e)


@app.get("/members/{member_id}/points/balance", response_model=PointBalance, tags=["Points"])
def get_point_balance(member_id: UUID, service: MembershipService = Depends(get_service)) -> PointBalance:
    try:
        return service.get_balance(member_id)
    except MembershipError as e:
        raise_http_error(e)


@app.get("/members/{member_id}/points/history", response_model=PointHistoryResponse, tags=["Points"])
def get_point_history(
    member_id: UUID, limit: int = 50, offset: int = 0, service: MembershipService = Depends(get_service)
) -> PointHistoryResponse:
    try:
        return service.get_point_history(member_id, limit, offset)
    except MembershipError as e:
        raise_http_error(e)


@app.get("/members/{member_id}/points/stats", response_model=PointStats, tags=["Points"])
def get_point_stats(member_id: UUID, service: MembershipService = Depends(get_service)) -> PointStats:
    try:
        return service.get_point_stats(member_id)
    except MembershipError as e:
        raise_http_error(e)


@app.post("/points/expire", tags=["Points"])
def expire_points(service: MembershipService = Depends(get_service)):
    return {"expired_entries": service.expire_points()}


# ==================== Enrollments ====================

@app.get("/enrollments/unpaid-summary", response_model=UnpaidSummary, tags=["Enrollments"])
def get_unpaid_summary(service: MembershipService = Depends(get_service)) -> UnpaidSummary:
    return service.unpaid_summary()


@app.get("/enrollments/status-counts", tags=["Enrollments"])
def get_status_counts(branch_id: Optional[str] = None, service: MembershipService = Depends(get_service)):
    return service.status_counts(branch_id)


@app.get("/enrollments/{enrollment_id}", response_model=CourseEnrollment, tags=["Enrollments"])
def get_enrollment(enrollment_id: UUID, service: MembershipService = Depends(get_service)) -> CourseEnrollment:
    try:
        return service.get_enrollment(enrollment_id)
    except MembershipError as e:
        raise_http_error(e)


@app.post("/enrollments/{enrollment_id}/hold", response_model=CourseEnrollment, tags=["Enrollments"])
def start_hold(
    enrollment_id: UUID, request: HoldRequest, service: MembershipService = Depends(get_service)
) -> CourseEnrollment:
    try:
        return service.start_hold(enrollment_id, request.reason)
    except MembershipError as e:
        raise_http_error(e)


@app.post("/enrollments/{enrollment_id}/hold/end", response_model=CourseEnrollment, tags=["Enrollments"])
def end_hold(enrollment_id: UUID, service: MembershipService = Depends(get_service)) -> CourseEnrollment:
    try:
        return service.end_hold(enrollment_id)
    except MembershipError as e:
        raise_http_error(e)


@app.post("/enrollments/{enrollment_id}/extend", response_model=CourseEnrollment, tags=["Enrollments"])
def extend_enrollment(
    enrollment_id: UUID, request: ExtendRequest, service: MembershipService = Depends(get_service)
) -> CourseEnrollment:
    try:
        return service.extend(enrollment_id, request.days, request.reason)
    except MembershipError as e:
        raise_http_error(e)


@app.post("/enrollments/{enrollment_id}/complete-payment", response_model=CourseEnrollment, tags=["Enrollments"])
def complete_payment(
    enrollment_id: UUID,
    request: CompletePaymentRequest,
    ctx: OperationContext = Depends(get_context),
    service: MembershipService = Depends(get_service),
) -> CourseEnrollment:
    try:
        return service.complete_unpaid(ctx, enrollment_id, request.payment_method)
    except MembershipError as e:
        raise_http_error(e)


@app.post("/enrollments/{enrollment_id}/transfer", response_model=TransferResult, tags=["Enrollments"])
def transfer_enrollment(
    enrollment_id: UUID,
    body: TransferBody,
    ctx: OperationContext = Depends(get_context),
    service: MembershipService = Depends(get_service),
) -> TransferResult:
    try:
        return service.transfer(ctx, TransferRequest(enrollment_id=enrollment_id, **body.model_dump()))
    except MembershipError as e:
        raise_http_error(e)


@app.get("/enrollments/{enrollment_id}/sessions", response_model=EnrollmentWithSessions, tags=["Enrollments"])
def get_enrollment_sessions(
    enrollment_id: UUID, service: MembershipService = Depends(get_service)
) -> EnrollmentWithSessions:
    try:
        return service.enrollment_sessions(enrollment_id)
    except MembershipError as e:
        raise_http_error(e)


@app.get("/enrollments/{enrollment_id}/reservations", response_model=list[ScheduleEvent], tags=["Enrollments"])
def get_reservation_history(
    enrollment_id: UUID, service: MembershipService = Depends(get_service)
) -> list[ScheduleEvent]:
    try:
        return service.reservation_history(enrollment_id)
    except MembershipError as e:
        raise_http_error(e)


@app.get("/enrollments/{enrollment_id}/reservations/stats", response_model=ReservationStats, tags=["Enrollments"])
def get_reservation_stats(
    enrollment_id: UUID, service: MembershipService = Depends(get_service)
) -> ReservationStats:
    try:
        return service.reservation_stats(enrollment_id)
    except MembershipError as e:
        raise_http_error(e)


# ==================== Reservations ====================

@app.post("/reservations", response_model=ScheduleEvent, status_code=status.HTTP_201_CREATED, tags=["Reservations"])
def record_reservation(event: ScheduleEvent, service: MembershipService = Depends(get_service)) -> ScheduleEvent:
    return service.record_reservation(event)


@app.post("/reservations/{event_id}/status", response_model=ScheduleEvent, tags=["Reservations"])
def set_reservation_status(
    event_id: UUID, request: ReservationStatusRequest, service: MembershipService = Depends(get_service)
) -> ScheduleEvent:
    try:
        return service.set_reservation_status(event_id, request.status)
    except MembershipError as e:
        raise_http_error(e)


@app.get("/members/{member_id}/enrollments",response_model=list[EnrollmentWithSessions], tags=["Members"])
def get_member_enrollments(
    member_id: UUID, service: MembershipService = Depends(get_service)
) -> list[EnrollmentWithSessions]:
    try:
        return service.member_enrollments(member_id)
    except MembershipError as e:
        raise_http_error(e)


@app.post("/housekeeping", tags=["System"])
def run_housekeeping(service: MembershipService = Depends(get_service)):
    return service.run_housekeeping()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
