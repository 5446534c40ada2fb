"""
Order & Membership Ledger Engine

This module provides:
- Purchase settlement across cash, card, bank transfer and points
- A FIFO point ledger with expiry, derived from append-only entries
- Course enrollment lifecycle: active / unpaid → hold → completed / cancelled
- Transfers of an enrollment between members for a fee
- Session usage replayed from the reservation log
"""

from .errors import MembershipError
from .models import (
    CourseEnrollment,
    EnrollmentStatus,
    OperationContext,
    Payment,
    PointTransaction,
    ProgramType,
)
from .service import MembershipService

__all__ = [
    "CourseEnrollment",
    "EnrollmentStatus",
    "MembershipError",
    "OperationContext",
    "Payment",
    "PointTransaction",
    "ProgramType",
    "MembershipService",
]
