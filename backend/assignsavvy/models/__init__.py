"""AssignSavvy Data Models"""

from .user import (
    UserAccount,
    AccountSummary,
    PlanType,
    SubscriptionStatus,
    DEFAULT_SIGNUP_CREDITS,
)
from .credits import (
    ToolType,
    QualityTier,
    TransactionState,
    CreditTransaction,
    LedgerEntry,
    LedgerEntryType,
    ReservationResult,
    RollbackResult,
    RefundResult,
    AdjustmentResult,
    AdjustmentOutcome,
    StaleReservation,
)
from .usage import (
    MonthlyUsageRecord,
    UsageEvent,
)
from .validation import (
    ValidationErrorCode,
    ValidationResult,
    UpgradeOption,
)
from .tools import (
    GenerationResult,
    DetectionResult,
    DetectionIssue,
    ToolErrorCode,
    ToolRunResult,
    ToolResultRecord,
    DetectorWorkflowResult,
)

__all__ = [
    # User
    "UserAccount",
    "AccountSummary",
    "PlanType",
    "SubscriptionStatus",
    "DEFAULT_SIGNUP_CREDITS",
    # Credits
    "ToolType",
    "QualityTier",
    "TransactionState",
    "CreditTransaction",
    "LedgerEntry",
    "LedgerEntryType",
    "ReservationResult",
    "RollbackResult",
    "RefundResult",
    "AdjustmentResult",
    "AdjustmentOutcome",
    "StaleReservation",
    # Usage
    "MonthlyUsageRecord",
    "UsageEvent",
    # Validation
    "ValidationErrorCode",
    "ValidationResult",
    "UpgradeOption",
    # Tools
    "GenerationResult",
    "DetectionResult",
    "DetectionIssue",
    "ToolErrorCode",
    "ToolRunResult",
    "ToolResultRecord",
    "DetectorWorkflowResult",
]
