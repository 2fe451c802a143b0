"""
Ledger Error Taxonomy

Every failure the engine reports belongs to one family: validation,
authorization, not found, conflict, consistency, or a best-effort partial
write. Each error carries a machine-readable ``kind``.
"""

from datetime import timedelta
from typing import List, Optional


class LedgerError(Exception):
    """Base class for ledger domain errors."""

    kind = "ledger_error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


# Validation errors: caught before any mutation, always reported as-is

class ValidationError(LedgerError, ValueError):
    """Bad input shape or an invalid referenced entity."""

    kind = "validation_error"


class InvalidAmountError(ValidationError):
    kind = "invalid_amount"


class InvalidKindError(ValidationError):
    kind = "invalid_kind"


class InvalidReferenceError(ValidationError):
    """The UTR reference does not match the accepted pattern."""

    kind = "invalid_reference"


class InvalidPartyError(ValidationError):
    kind = "invalid_party"


class InactiveBranchError(ValidationError):
    kind = "inactive_branch"


class InvalidRateError(ValidationError):
    kind = "invalid_rate"


class InvalidTransactionKindError(ValidationError):
    """Only credit and debit transactions can be reversed."""

    kind = "invalid_transaction_kind"


# Authorization errors: role, branch, ownership or time-window mismatches

class AuthorizationError(LedgerError):
    kind = "authorization_error"


class UnauthorizedBranchAccessError(AuthorizationError):
    kind = "unauthorized_branch_access"


class ForbiddenError(AuthorizationError):
    kind = "forbidden"


class ReversalWindowExpiredError(AuthorizationError):
    """Staff tried to reverse a transaction older than the allowed window."""

    kind = "reversal_window_expired"

    def __init__(self, age: timedelta, window: timedelta):
        self.age = age
        self.window = window
        window_hours = int(window.total_seconds() // 3600)
        age_hours = int(age.total_seconds() // 3600)
        super().__init__(
            f"Cannot delete transactions older than {window_hours} hours "
            f"(this transaction is {age_hours} hours old). Contact admin for assistance."
        )


class NotFoundError(LedgerError):
    kind = "not_found"


class TransactionNotFoundError(NotFoundError):
    kind = "transaction_not_found"

    def __init__(self, transaction_id: str):
        self.transaction_id = transaction_id
        super().__init__(f"Transaction {transaction_id} not found")


# Conflict errors: the caller may retry with a new reference

class ConflictError(LedgerError):
    kind = "conflict"


class DuplicateReferenceError(ConflictError):
    kind = "duplicate_reference"

    def __init__(self, utr_id: str):
        self.utr_id = utr_id
        super().__init__(f"UTR ID {utr_id} has already been used")


# Consistency errors: the atomic unit was rolled back, safe to retry

class ConsistencyError(LedgerError):
    kind = "consistency_error"


class AtomicTimeoutError(ConsistencyError):
    kind = "timeout"


class PartialWriteError(LedgerError):
    """
    Best-effort mode only: some writes of an operation were applied and a
    later one failed. Not recoverable automatically; an operator has to
    reconcile the listed writes by hand.
    """

    kind = "partial_write"

    def __init__(self, operation: str, completed_steps: List[str],
                 cause: Optional[BaseException] = None):
        self.operation = operation
        self.completed_steps = list(completed_steps)
        self.cause = cause
        super().__init__(
            f"{operation} partially applied without rollback "
            f"(completed: {', '.join(self.completed_steps)}; cause: {cause}). "
            f"Manual reconciliation required."
        )
