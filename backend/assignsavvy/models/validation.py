"""Plan validation results.

Validation failures are expected and user-facing, so they are returned as
data rather than raised.
"""

from pydantic import BaseModel
from typing import Optional, List
from enum import Enum


class ValidationErrorCode(str, Enum):
    PLAN_NOT_FOUND = "PLAN_NOT_FOUND"
    INVALID_PLAN = "INVALID_PLAN"
    MONTHLY_CREDIT_LIMIT_REACHED = "MONTHLY_CREDIT_LIMIT_REACHED"
    INSUFFICIENT_CREDITS = "INSUFFICIENT_CREDITS"
    INVALID_WORD_COUNT = "INVALID_WORD_COUNT"
    INVALID_TOOL_TYPE = "INVALID_TOOL_TYPE"


class UpgradeOption(BaseModel):
    can_upgrade: bool
    recommended_plan: Optional[str] = None
    benefits: List[str] = []


class ValidationResult(BaseModel):
    is_valid: bool
    user_plan: Optional[str] = None
    requested_word_count: Optional[int] = None
    estimated_credits: Optional[int] = None
    available_credits: Optional[int] = None

    error_code: Optional[ValidationErrorCode] = None
    message: Optional[str] = None

    # INSUFFICIENT_CREDITS
    required_credits: Optional[int] = None
    upgrade_options: Optional[UpgradeOption] = None

    # MONTHLY_CREDIT_LIMIT_REACHED
    current_usage: Optional[int] = None
    monthly_limit: Optional[int] = None
    reset_date: Optional[str] = None
