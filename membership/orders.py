"""
Order settlement.

One order becomes a fixed sequence of independent writes: point debit,
surplus and bonus credits, the ``Payment`` record, then one enrollment per
course item. Everything that can be rejected is checked before the first
write, and the order id doubles as the idempotency key, so a failed order
can be re-submitted and picks up where it stopped.
"""

import calendar
import hashlib
import json
import logging
from datetime import date, timedelta
from typing import Optional
from uuid import NAMESPACE_URL, UUID, uuid4, uuid5

from .clock import Clock, SystemClock
from .config import Settings, get_settings
from .enrollment import EnrollmentStateMachine
from .errors import (
    IdempotencyConflictError,
    InsufficientBalanceError,
    InvalidAmountError,
    MemberNotFoundError,
    ProductNotFoundError,
)
from .models import (
    CourseEnrollment,
    EnrollmentStatus,
    Member,
    OperationContext,
    OrderItem,
    OrderRequest,
    OrderResult,
    OrderStatus,
    Payment,
    PaymentAllocation,
    PaymentBreakdown,
    PaymentItem,
    PaymentMethod,
    PaymentType,
    PointPurchaseResult,
    PointTransactionType,
    Product,
    ProgramType,
)
from .points import PointLedger
from .store import Collection, RecordStore
from .workflow import StepRunner

logger = logging.getLogger(__name__)

OVERPAYMENT_SOURCE = "overpayment"
BONUS_SOURCE = "bonus"
PURCHASE_SOURCE = "point_purchase"

CASH_LIKE_METHODS = (PaymentMethod.CASH, PaymentMethod.CARD, PaymentMethod.TRANSFER)


def add_months(start: date, months: int) -> date:
    """Calendar month arithmetic, clamped to the last day of the target month."""
    month_index = start.month - 1 + months
    year = start.year + month_index // 12
    month = month_index % 12 + 1
    day = min(start.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def calculate_bonus(amount: int, settings: Settings) -> int:
    """Tiered bonus: BONUS_PER_UNIT points for every full BONUS_UNIT in ``amount``."""
    if amount < settings.BONUS_UNIT:
        return 0
    return (amount // settings.BONUS_UNIT) * settings.BONUS_PER_UNIT


def request_fingerprint(
    member_id: UUID, items: list[OrderItem], prices: list[int], payments: PaymentAllocation
) -> str:
    payload = {
        "member_id": str(member_id),
        "items": [
            {
                "product_id": str(item.product_id),
                "price": price,
                "sessions": item.sessions,
                "start_date": item.start_date,
                "end_date": item.end_date,
            }
            for item, price in zip(items, prices)
        ],
        "payments": payments.model_dump(),
    }
    encoded = json.dumps(payload, sort_keys=True, default=str).encode("utf-8")
    return hashlib.sha256(encoded).hexdigest()


def record_id(reference: str, part: str) -> UUID:
    """Stable id for a record written on behalf of ``reference``."""
    return uuid5(NAMESPACE_URL, f"membership:{reference}:{part}")


def resolve_payment_method(allocation: PaymentAllocation) -> PaymentMethod:
    used = [
        method for method, amount in (
            (PaymentMethod.CASH, allocation.cash),
            (PaymentMethod.CARD, allocation.card),
            (PaymentMethod.TRANSFER, allocation.transfer),
            (PaymentMethod.POINTS, allocation.points),
        )
        if amount > 0
    ]
    if not used:
        return PaymentMethod.NONE
    if len(used) > 1:
        return PaymentMethod.MIXED
    return used[0]


def breakdown_for(method: PaymentMethod, amount: int, points: int = 0) -> PaymentBreakdown:
    breakdown = PaymentBreakdown(points=points)
    if method in CASH_LIKE_METHODS:
        setattr(breakdown, method.value, amount)
    return breakdown


class OrderProcessor:
    def __init__(
        self,
        store: RecordStore,
        ledger: PointLedger,
        machine: EnrollmentStateMachine,
        clock: Optional[Clock] = None,
        settings: Optional[Settings] = None,
    ):
        self.store = store
        self.ledger = ledger
        self.machine = machine
        self.clock = clock or SystemClock()
        self.settings = settings or get_settings()

    # ==================== Orders ====================

    def process_order(self, ctx: OperationContext, request: OrderRequest) -> OrderResult:
        order_id = request.order_id or f"order_{uuid4().hex}"
        member = self._get_member(request.member_id)

        if not request.items:
            raise InvalidAmountError("An order needs at least one item")
        lines = [(item, self._get_product(item.product_id)) for item in request.items]
        prices = [item.price if item.price is not None else product.price for item, product in lines]

        payment_id = record_id(order_id, "payment")
        enrollment_ids = [
            record_id(order_id, f"enrollment:{index}")
            for index, (_, product) in enumerate(lines) if product.is_course()
        ]

        payments = request.payments
        total = sum(prices)
        received = payments.received
        paid = min(received, total)
        unpaid = total - paid
        excess = max(0, received - total)
        bonus = calculate_bonus(excess, self.settings) if payments.bonus_enabled else 0

        fingerprint = request_fingerprint(member.id, request.items, prices, payments)
        self._check_replay(order_id, payment_id, fingerprint, member.id, payments.points, excess, bonus)
        if self._order_recorded(payment_id, enrollment_ids):
            logger.info("Order %s already processed, returning stored result", order_id)
            return self._stored_result(order_id, payment_id, enrollment_ids, "Order already processed (idempotent return)")

        if payments.points > 0 and not self._points_drawn(order_id):
            available = self.ledger.balance(member.id)
            if payments.points > available:
                logger.warning("Order %s rejected: points %s exceed balance %s", order_id, payments.points, available)
                raise InsufficientBalanceError(payments.points, available)

        payment = Payment(
            id=payment_id,
            order_id=order_id,
            member_id=member.id,
            member_name=member.name,
            items=[
                PaymentItem(product_id=product.id, name=product.name, price=price, program_type=product.program_type)
                for (_, product), price in zip(lines, prices)
            ],
            total_amount=total,
            paid_amount=paid,
            unpaid_amount=unpaid,
            payment_method=resolve_payment_method(payments),
            payment_type=PaymentType.COURSE if any(p.is_course() for _, p in lines) else PaymentType.ASSET,
            breakdown=PaymentBreakdown(
                cash=payments.cash, card=payments.card,
                transfer=payments.transfer, points=payments.points,
            ),
            order_status=self._order_status(paid, unpaid),
            request_fingerprint=fingerprint,
            memo=request.order_type,
            processed_by=ctx.actor_id,
        )

        runner = StepRunner(order_id)
        if payments.points > 0:
            runner.add(
                "consume_points",
                lambda: self.ledger.consume_fifo(
                    member.id, payments.points, order_id, f"Points applied to order {order_id}",
                    related_payment_id=payment_id, ctx=ctx,
                ),
                lambda: self._points_drawn(order_id),
            )
        if excess > 0:
            runner.add(
                "earn_overpayment",
                lambda: self.ledger.earn(
                    member.id, excess, OVERPAYMENT_SOURCE, f"Overpayment on order {order_id}",
                    related_order_id=order_id, related_payment_id=payment_id, ctx=ctx,
                ),
                lambda: self._credited(order_id, OVERPAYMENT_SOURCE),
            )
        if bonus > 0:
            runner.add(
                "earn_bonus",
                lambda: self.ledger.earn(
                    member.id, bonus, BONUS_SOURCE, f"Bonus for {excess:,} overpayment on order {order_id}",
                    related_order_id=order_id, related_payment_id=payment_id, ctx=ctx,
                ),
                lambda: self._credited(order_id, BONUS_SOURCE),
            )
        runner.add(
            "record_payment",
            lambda: self._record_payment(payment),
            lambda: self.store.get(Collection.PAYMENT, payment_id) is not None,
        )

        remaining = paid
        course_index = 0
        for index, ((item, product), price) in enumerate(zip(lines, prices)):
            allocated = min(remaining, price)
            remaining -= allocated
            if not product.is_course():
                continue
            enrollment = self._build_enrollment(
                enrollment_ids[course_index], order_id, member, item, product, price, allocated,
            )
            course_index += 1
            runner.add(
                f"create_enrollment[{index}]",
                lambda e=enrollment: self.machine.create(e),
                lambda e=enrollment: self.store.get(Collection.COURSE_ENROLLMENT, e.id) is not None,
            )

        runner.run()
        logger.info(
            "Order %s settled: member=%s total=%s paid=%s unpaid=%s excess=%s bonus=%s",
            order_id, member.id, total, paid, unpaid, excess, bonus,
        )
        return self._stored_result(order_id, payment_id, enrollment_ids, "Order processed successfully")

    # ==================== Point top-ups ====================

    def register_point_purchase(
        self,
        ctx: OperationContext,
        member_id: UUID,
        amount: int,
        payment_method: PaymentMethod,
        bonus_enabled: bool = True,
        memo: Optional[str] = None,
    ) -> PointPurchaseResult:
        """Sell points over the counter: ``amount`` points plus the tiered bonus."""
        member = self._get_member(member_id)
        if amount <= 0:
            raise InvalidAmountError(f"Point purchase amount must be positive, got {amount}")
        if payment_method not in CASH_LIKE_METHODS:
            raise InvalidAmountError(f"Points cannot be bought with '{payment_method.value}'")

        bonus = calculate_bonus(amount, self.settings) if bonus_enabled else 0
        payment_id = uuid4()
        reference = f"topup_{payment_id}"

        runner = StepRunner(reference)
        runner.add("earn_points", lambda: self.ledger.earn(
            member.id, amount, PURCHASE_SOURCE, memo or f"Point purchase {amount:,}",
            related_order_id=reference, related_payment_id=payment_id, ctx=ctx,
        ))
        if bonus > 0:
            runner.add("earn_bonus", lambda: self.ledger.earn(
                member.id, bonus, BONUS_SOURCE, f"Bonus for {amount:,} point purchase",
                related_order_id=reference, related_payment_id=payment_id, ctx=ctx,
            ))
        runner.add("record_payment", lambda: self._record_payment(Payment(
            id=payment_id,
            order_id=reference,
            member_id=member.id,
            member_name=member.name,
            items=[PaymentItem(name="Point purchase", price=amount)],
            total_amount=amount,
            paid_amount=amount,
            payment_method=payment_method,
            payment_type=PaymentType.OTHER,
            breakdown=breakdown_for(payment_method, amount),
            reference=reference,
            memo=memo or "",
            processed_by=ctx.actor_id,
        )))
        results = runner.run()

        earned = [results["earn_points"]]
        if "earn_bonus" in results:
            earned.append(results["earn_bonus"])
        message = f"{amount:,} points purchased"
        if bonus:
            message += f" with {bonus:,} bonus points"
        return PointPurchaseResult(payment=results["record_payment"], earned=earned, message=message)

    # ==================== Internals ====================

    def _get_member(self, member_id: UUID) -> Member:
        member = self.store.get(Collection.MEMBER, member_id)
        if member is None:
            raise MemberNotFoundError(f"Member {member_id} not found")
        return member

    def _get_product(self, product_id: UUID) -> Product:
        product = self.store.get(Collection.PRODUCT, product_id)
        if product is None:
            raise ProductNotFoundError(f"Product {product_id} not found")
        return product

    def _record_payment(self, payment: Payment) -> Payment:
        payment.created_at = self.clock.now()
        return self.store.put(Collection.PAYMENT, payment)

    @staticmethod
    def _order_status(paid: int, unpaid: int) -> OrderStatus:
        if unpaid == 0:
            return OrderStatus.COMPLETED
        return OrderStatus.PARTIALLY_PAID if paid > 0 else OrderStatus.PENDING

    def _build_enrollment(
        self,
        enrollment_id: UUID,
        order_id: str,
        member: Member,
        item: OrderItem,
        product: Product,
        price: int,
        allocated: int,
    ) -> CourseEnrollment:
        today = self.clock.today()
        start_date = item.start_date or today
        end_date = item.end_date
        session_count = None

        if product.program_type == ProgramType.DURATION:
            if end_date is None and product.months:
                end_date = add_months(start_date, product.months)
            elif end_date is None and product.duration_days:
                end_date = start_date + timedelta(days=product.duration_days)
        else:
            session_count = item.sessions or product.sessions

        unpaid = price - allocated
        if unpaid > 0:
            status = EnrollmentStatus.UNPAID
        elif product.program_type == ProgramType.DURATION and end_date is not None and end_date < today:
            status = EnrollmentStatus.COMPLETED
        else:
            status = EnrollmentStatus.ACTIVE

        return CourseEnrollment(
            id=enrollment_id,
            order_id=order_id,
            member_id=member.id,
            member_name=member.name,
            branch_id=member.branch_id,
            product_id=product.id,
            product_name=product.name,
            product_price=product.price,
            applied_price=price,
            program_type=product.program_type,
            enrollment_status=status,
            session_count=session_count,
            start_date=start_date,
            end_date=end_date,
            paid_amount=allocated,
            unpaid_amount=unpaid,
        )

    def _points_drawn(self, order_id: str) -> bool:
        return any(
            t.type == PointTransactionType.USED and t.amount < 0
            for t in self.ledger.entries_for_reference(order_id)
        )

    def _credited(self, order_id: str, source: str) -> bool:
        return any(t.source == source and t.amount > 0 for t in self.ledger.entries_for_reference(order_id))

    def _check_replay(
        self,
        order_id: str,
        payment_id: UUID,
        fingerprint: str,
        member_id: UUID,
        points: int,
        excess: int,
        bonus: int,
    ) -> None:
        """Reject an order id that already recorded writes for a different request."""
        stored = self.store.get(Collection.PAYMENT, payment_id)
        if stored is not None:
            if stored.request_fingerprint != fingerprint:
                logger.warning("Order %s reused for a different request", order_id)
                raise IdempotencyConflictError(f"Order {order_id} was already recorded for a different request")
            return

        # No payment yet: only ledger steps may have landed, so compare them with this request.
        entries = self.ledger.entries_for_reference(order_id)
        if not entries:
            return
        drawn = -sum(t.amount for t in entries if t.type == PointTransactionType.USED)
        credited = sum(t.amount for t in entries if t.source == OVERPAYMENT_SOURCE and t.amount > 0)
        bonus_credited = sum(t.amount for t in entries if t.source == BONUS_SOURCE and t.amount > 0)
        if (
            any(t.member_id != member_id for t in entries)
            or drawn not in (0, points)
            or credited not in (0, excess)
            or bonus_credited not in (0, bonus)
        ):
            logger.warning("Order %s reused for a different request", order_id)
            raise IdempotencyConflictError(f"Order {order_id} was already partially recorded for a different request")

    def _order_recorded(self, payment_id: UUID, enrollment_ids: list[UUID]) -> bool:
        if self.store.get(Collection.PAYMENT, payment_id) is None:
            return False
        return all(self.store.get(Collection.COURSE_ENROLLMENT, e) is not None for e in enrollment_ids)

    def _stored_result(self, order_id: str, payment_id: UUID, enrollment_ids: list[UUID], message: str) -> OrderResult:
        entries = self.ledger.entries_for_reference(order_id)
        return OrderResult(
            order_id=order_id,
            payment=self.store.get(Collection.PAYMENT, payment_id),
            enrollments=[self.store.get(Collection.COURSE_ENROLLMENT, e) for e in enrollment_ids],
            points_used=-sum(t.amount for t in entries if t.type == PointTransactionType.USED),
            points_earned=sum(t.amount for t in entries if t.source == OVERPAYMENT_SOURCE and t.amount > 0),
            bonus_points=sum(t.amount for t in entries if t.source == BONUS_SOURCE and t.amount > 0),
            message=message,
        )
