"""Exceptions raised by the credit services.

Validation outcomes (insufficient credits, monthly cap, unknown plan on a
user record) are returned as ValidationResult by the plan validator. Tool
orchestrators wrap a failed result in RequestRejected for the HTTP layer.
"""
from typing import Optional


class CreditSystemError(Exception):
    """Base exception for credit operations."""
    pass


class InvalidArgumentError(CreditSystemError):
    """Caller passed a value outside the accepted range."""
    pass


class UnknownPlanError(CreditSystemError):
    """Plan type is not registered."""

    def __init__(self, plan_type):
        self.plan_type = plan_type
        super().__init__(f"Unknown plan type: {plan_type!r}")


class AccountNotFoundError(CreditSystemError):
    """No user account for the given user id."""

    def __init__(self, user_id: str):
        self.user_id = user_id
        super().__init__(f"User account not found: {user_id}")


class LedgerConsistencyError(CreditSystemError):
    """Orchestration misused the reservation protocol.

    Always fatal to the request: ignoring one can hide a double spend.
    """
    pass


class UnknownTransactionError(LedgerConsistencyError):
    def __init__(self, transaction_id: str):
        self.transaction_id = transaction_id
        super().__init__(f"Credit transaction not found: {transaction_id}")


class TransactionStateError(LedgerConsistencyError):
    """Requested transition is not allowed from the transaction's current state."""

    def __init__(self, transaction_id: str, current_state: str, attempted: str):
        self.transaction_id = transaction_id
        self.current_state = current_state
        self.attempted = attempted
        super().__init__(
            f"Cannot {attempted} credit transaction {transaction_id} in state {current_state}"
        )


class TransientStoreError(CreditSystemError):
    """Document store unreachable or timed out.

    ambiguous=True means a write may or may not have been applied; callers
    must re-read the balance before resubmitting.
    """

    def __init__(self, message: str, ambiguous: bool = False, operation: Optional[str] = None):
        self.ambiguous = ambiguous
        self.operation = operation
        super().__init__(message)


class RequestRejected(CreditSystemError):
    """A tool request failed pre-flight validation. Nothing was reserved."""

    def __init__(self, validation):
        self.validation = validation
        super().__init__(validation.message or validation.error_code)
