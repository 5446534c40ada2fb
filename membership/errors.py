from typing import Optional


class MembershipError(Exception):
    pass


class InsufficientBalanceError(MembershipError):
    def __init__(self, requested: int, available: int):
        self.requested = requested
        self.available = available
        super().__init__(
            f"Insufficient point balance: requested {requested:,}, available {available:,}"
        )


class InvalidStateError(MembershipError):
    pass


class AlreadyHoldError(InvalidStateError):
    pass


class InvalidProgramTypeError(MembershipError):
    pass


class InvalidExtensionError(MembershipError):
    pass


class InvalidAmountError(MembershipError):
    pass


class PermissionDeniedError(MembershipError):
    pass


class NotFoundError(MembershipError):
    pass


class ProductNotFoundError(NotFoundError):
    pass


class EnrollmentNotFoundError(NotFoundError):
    pass


class MemberNotFoundError(NotFoundError):
    pass


class PartiallyAppliedError(MembershipError):
    """A multi-step operation failed after at least one write landed.

    Re-running the same request with the same reference resumes from the
    failed step.
    """

    def __init__(self, reference: str, completed_steps: list[str], failed_step: str, cause: Optional[Exception] = None):
        self.reference = reference
        self.completed_steps = list(completed_steps)
        self.failed_step = failed_step
        self.cause = cause
        super().__init__(
            f"Operation {reference} partially applied: completed {self.completed_steps}, "
            f"failed at '{failed_step}'" + (f" ({cause})" if cause else "")
        )


class IdempotencyConflictError(MembershipError):
    """A reference was reused for a request that differs from the one it first recorded."""
