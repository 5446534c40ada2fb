"""
Point ledger.

Every member's point balance is a fold over an append-only list of signed
``PointTransaction`` entries. Nothing stores a running total.

- Earnings (``earned`` and positive ``adjusted`` entries) are the sources
  that debits draw from, oldest ``earned_date`` first.
- Each debit entry names the earning it was drawn from
  (``original_transaction_id``) and inherits that earning's
  ``expiry_date``. When an earning expires, it and every debit drawn from
  it drop out of ``balance`` together.
- ``expire`` writes compensating ``expired`` entries for audit. ``balance``
  filters by expiry on its own, so skipping the sweep never changes a
  balance.
"""

import logging
from collections import defaultdict
from datetime import datetime, timedelta
from typing import Iterable, Optional
from uuid import UUID, uuid4

from .clock import Clock, SystemClock
from .config import Settings, get_settings
from .errors import InsufficientBalanceError, InvalidAmountError, PermissionDeniedError
from .models import (
    OperationContext,
    PointBalance,
    PointHistoryResponse,
    PointSource,
    PointStats,
    PointTransaction,
    PointTransactionType,
)
from .store import Collection, RecordStore

logger = logging.getLogger(__name__)


class PointLedger:
    def __init__(self, store: RecordStore, clock: Optional[Clock] = None, settings: Optional[Settings] = None):
        self.store = store
        self.clock = clock or SystemClock()
        self.settings = settings or get_settings()

    # ==================== Reads ====================

    def transactions(self, member_id: UUID) -> list[PointTransaction]:
        return self.store.query_by_field(Collection.POINT_TRANSACTION, "member_id", member_id)

    def entries_for_reference(self, reference: str) -> list[PointTransaction]:
        return self.store.query_by_field(Collection.POINT_TRANSACTION, "related_order_id", reference)

    def balance(self, member_id: UUID, as_of: Optional[datetime] = None) -> int:
        as_of = as_of or self.clock.now()
        return sum(t.amount for t in self.transactions(member_id) if t.is_live(as_of))

    def get_balance(self, member_id: UUID, as_of: Optional[datetime] = None) -> PointBalance:
        as_of = as_of or self.clock.now()
        return PointBalance(member_id=member_id, current_balance=self.balance(member_id, as_of), as_of=as_of)

    def available_sources(self, member_id: UUID, as_of: Optional[datetime] = None) -> list[PointSource]:
        """Unexpired earnings with something left to draw, oldest first."""
        as_of = as_of or self.clock.now()
        transactions = self.transactions(member_id)
        drawn = self._drawn_by_source(transactions)

        sources = []
        for t in transactions:
            if not t.is_source() or t.is_expired or not t.is_live(as_of):
                continue
            available = t.amount - drawn.get(t.id, 0)
            if available > 0:
                sources.append(PointSource(
                    id=t.id, available_amount=available,
                    earned_date=t.earned_date, expiry_date=t.expiry_date,
                ))
        sources.sort(key=lambda s: s.earned_date)
        return sources

    def history(self, member_id: UUID, limit: int = 50, offset: int = 0) -> PointHistoryResponse:
        entries = self.transactions(member_id)
        entries.sort(key=lambda e: e.created_at or e.earned_date, reverse=True)
        return PointHistoryResponse(
            member_id=member_id,
            entries=entries[offset:offset + limit],
            total_count=len(entries),
            current_balance=self.balance(member_id),
        )

    def stats(self, member_id: UUID, as_of: Optional[datetime] = None) -> PointStats:
        as_of = as_of or self.clock.now()
        transactions = self.transactions(member_id)

        earned = sum(t.amount for t in transactions if t.is_source())
        used = sum(
            -t.amount for t in transactions
            if t.amount < 0 and t.type in (PointTransactionType.USED, PointTransactionType.ADJUSTED)
        )
        expired = sum(-t.amount for t in transactions if t.type == PointTransactionType.EXPIRED)

        in_7_days = as_of + timedelta(days=7)
        in_30_days = as_of + timedelta(days=30)
        sources = [s for s in self.available_sources(member_id, as_of) if s.expiry_date]

        return PointStats(
            member_id=member_id,
            total_earned=earned,
            total_used=used,
            total_expired=expired,
            current_balance=self.balance(member_id, as_of),
            expiring_in_7_days=sum(s.available_amount for s in sources if s.expiry_date <= in_7_days),
            expiring_in_30_days=sum(s.available_amount for s in sources if s.expiry_date <= in_30_days),
            transaction_count=len(transactions),
        )

    def search(self, term: str) -> list[PointTransaction]:
        needle = term.lower()
        return [
            t for t in self.store.query_all(Collection.POINT_TRANSACTION)
            if needle in t.source.lower() or needle in t.description.lower()
        ]

    # ==================== Writes ====================

    def earn(
        self,
        member_id: UUID,
        amount: int,
        source: str,
        description: str = "",
        expiry_date: Optional[datetime] = None,
        *,
        earned_date: Optional[datetime] = None,
        related_order_id: Optional[str] = None,
        related_payment_id: Optional[UUID] = None,
        entry_type: PointTransactionType = PointTransactionType.EARNED,
        ctx: Optional[OperationContext] = None,
    ) -> PointTransaction:
        if amount <= 0:
            raise InvalidAmountError(f"Earned points must be positive, got {amount}")

        earned_date = earned_date or self.clock.now()
        if expiry_date is None and self.settings.POINT_EXPIRY_DAYS:
            expiry_date = earned_date + timedelta(days=self.settings.POINT_EXPIRY_DAYS)

        entry = self._record(PointTransaction(
            member_id=member_id,
            amount=amount,
            type=entry_type,
            source=source,
            description=description,
            earned_date=earned_date,
            expiry_date=expiry_date,
            related_order_id=related_order_id,
            related_payment_id=related_payment_id,
            processed_by=ctx.actor_id if ctx else None,
        ))
        logger.info("Points earned: member=%s amount=%s source=%s", member_id, amount, source)
        return entry

    def consume_fifo(
        self,
        member_id: UUID,
        amount: int,
        reference: str,
        description: str = "",
        *,
        source: str = "purchase",
        related_payment_id: Optional[UUID] = None,
        entry_type: PointTransactionType = PointTransactionType.USED,
        ctx: Optional[OperationContext] = None,
    ) -> list[PointTransaction]:
        if amount <= 0:
            raise InvalidAmountError(f"Points to consume must be positive, got {amount}")

        now = self.clock.now()
        available = self.balance(member_id, now)
        if amount > available:
            logger.warning("Point spend rejected: member=%s requested=%s balance=%s", member_id, amount, available)
            raise InsufficientBalanceError(amount, available)

        # Plan the whole draw before writing anything.
        plan: list[tuple[PointSource, int]] = []
        remaining = amount
        for batch in self.available_sources(member_id, now):
            if remaining <= 0:
                break
            take = min(remaining, batch.available_amount)
            plan.append((batch, take))
            remaining -= take

        if remaining > 0:
            raise InsufficientBalanceError(amount, amount - remaining)

        entries = [
            self._record(PointTransaction(
                member_id=member_id,
                amount=-take,
                type=entry_type,
                source=source,
                description=description or f"FIFO draw from {batch.id}",
                earned_date=batch.earned_date,
                expiry_date=batch.expiry_date,
                related_order_id=reference,
                related_payment_id=related_payment_id,
                original_transaction_id=batch.id,
                processed_by=ctx.actor_id if ctx else None,
            ))
            for batch, take in plan
        ]
        logger.info("Points consumed: member=%s amount=%s batches=%s ref=%s", member_id, amount, len(entries), reference)
        return entries

    def expire(self, member_id: Optional[UUID] = None, as_of: Optional[datetime] = None) -> int:
        """Write one ``expired`` entry per lapsed earning that still had points left.

        Safe to run repeatedly: each earning is flagged ``is_expired`` the
        first time it is swept.
        """
        as_of = as_of or self.clock.now()
        transactions = (
            self.transactions(member_id) if member_id is not None
            else self.store.query_all(Collection.POINT_TRANSACTION)
        )
        drawn = self._drawn_by_source(transactions)

        written = 0
        for t in transactions:
            if not t.is_source() or t.is_expired or t.expiry_date is None or t.expiry_date > as_of:
                continue
            leftover = t.amount - drawn.get(t.id, 0)
            if leftover > 0:
                self._record(PointTransaction(
                    member_id=t.member_id,
                    amount=-leftover,
                    type=PointTransactionType.EXPIRED,
                    source="point_expiry",
                    description=f"Expired on {t.expiry_date.date().isoformat()}",
                    earned_date=t.earned_date,
                    expiry_date=t.expiry_date,
                    related_payment_id=t.related_payment_id,
                    original_transaction_id=t.id,
                ))
                written += 1
            t.is_expired = True
            self.store.put(Collection.POINT_TRANSACTION, t)

        if written:
            logger.info("Point expiry sweep wrote %s entries", written)
        return written

    def adjust(self, ctx: OperationContext, member_id: UUID, amount: int, description: str) -> list[PointTransaction]:
        if not ctx.is_system_admin:
            raise PermissionDeniedError(f"{ctx.actor_id} may not adjust point balances")
        if amount == 0:
            raise InvalidAmountError("Adjustment amount must be non-zero")

        if amount > 0:
            return [self.earn(
                member_id, amount, "manual_adjustment", description,
                entry_type=PointTransactionType.ADJUSTED, ctx=ctx,
            )]
        return self.consume_fifo(
            member_id, -amount, f"adjust_{uuid4()}", description,
            source="manual_adjustment", entry_type=PointTransactionType.ADJUSTED, ctx=ctx,
        )

    # ==================== Internals ====================

    def _record(self, entry: PointTransaction) -> PointTransaction:
        entry.created_at = self.clock.now()
        return self.store.put(Collection.POINT_TRANSACTION, entry)

    @staticmethod
    def _drawn_by_source(transactions: Iterable[PointTransaction]) -> dict[UUID, int]:
        drawn: dict[UUID, int] = defaultdict(int)
        for t in transactions:
            if t.original_transaction_id is not None and t.amount < 0:
                drawn[t.original_transaction_id] += -t.amount
        return drawn
