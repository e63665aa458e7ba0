"""AssignSavvy Credit Models

Two persisted records:
- CreditTransaction: a reservation against the balance. Immutable apart
  from `state`, which moves once from reserved to committed or rolled_back.
- LedgerEntry: append-only audit row for balance movements outside the
  reservation protocol (refunds, grants, resets, signup).

Plus the structured results returned by the credit ledger.
"""

from pydantic import BaseModel, Field
from typing import Optional
from datetime import datetime, timezone
from enum import Enum
import uuid


class ToolType(str, Enum):
    """Metered tools"""
    WRITING = "writing"
    RESEARCH = "research"
    DETECTOR_DETECTION = "detector_detection"
    DETECTOR_GENERATION = "detector_generation"
    PROMPT_ENGINEER = "prompt_engineer"


class QualityTier(str, Enum):
    STANDARD = "standard"
    PREMIUM = "premium"


class TransactionState(str, Enum):
    RESERVED = "reserved"
    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"


class LedgerEntryType(str, Enum):
    """Balance movements recorded in credit_ledger"""
    SIGNUP = "SIGNUP"        # Initial allotment on account creation
    GRANT = "GRANT"          # Top-up (paid or plan allotment)
    RESET = "RESET"          # Balance set to a plan allotment (refresh, upgrade, downgrade)
    REFUND = "REFUND"        # Credits returned outside rollback


class CreditTransaction(BaseModel):
    """Reservation record.

    parent_transaction_id links a shortfall reservation created during
    reconciliation to the reservation it tops up.
    """
    transaction_id: str = Field(default_factory=lambda: f"CTX-{uuid.uuid4().hex[:16].upper()}")
    user_id: str

    tool_type: ToolType
    quality: QualityTier = QualityTier.STANDARD
    plan_type: Optional[str] = None

    credits_reserved: int = Field(gt=0)
    words_allocated: int = Field(ge=0)

    state: TransactionState = TransactionState.RESERVED
    parent_transaction_id: Optional[str] = None

    created_at: str = Field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    model_config = {"extra": "ignore"}


class LedgerEntry(BaseModel):
    """Append-only audit row."""
    entry_id: str = Field(default_factory=lambda: f"CLE-{uuid.uuid4().hex[:16].upper()}")
    user_id: str
    entry_type: LedgerEntryType
    delta: int  # Signed change applied to the balance
    balance_after: int
    reason: str
    reference_id: Optional[str] = None  # e.g. transaction_id, stripe checkout session id
    created_at: str = Field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    model_config = {"extra": "ignore"}


# ============================================================================
# Ledger results
# ============================================================================

class ReservationResult(BaseModel):
    """Outcome of CreditLedger.reserve.

    success=True carries transaction_id, credits_deducted, words_allocated
    and new_balance. success=False carries required_credits and
    previous_balance; the balance was not touched.
    """
    success: bool
    transaction_id: Optional[str] = None
    credits_deducted: int = 0
    words_allocated: int = 0
    new_balance: Optional[int] = None
    required_credits: int = 0
    previous_balance: Optional[int] = None


class RollbackResult(BaseModel):
    transaction_id: str
    credits_restored: int
    new_balance: Optional[int] = None
    already_rolled_back: bool = False


class RefundResult(BaseModel):
    user_id: str
    credits_refunded: int
    new_balance: int
    entry_id: str


class AdjustmentOutcome(str, Enum):
    NO_CHANGE = "no_change"
    SHORTFALL_CHARGED = "shortfall_charged"
    SHORTFALL_UNCOVERED = "shortfall_uncovered"
    SURPLUS_REFUNDED = "surplus_refunded"


class AdjustmentResult(BaseModel):
    """Outcome of CreditLedger.adjust_after_actual.

    net_credits is what the request cost in total once reconciled.
    """
    transaction_id: str
    estimated_credits: int
    actual_credits: int
    credits_delta: int
    outcome: AdjustmentOutcome
    follow_up_transaction_id: Optional[str] = None
    net_credits: int
    new_balance: Optional[int] = None


class StaleReservation(BaseModel):
    transaction_id: str
    user_id: str
    tool_type: ToolType
    credits_reserved: int
    created_at: str
