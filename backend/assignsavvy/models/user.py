"""AssignSavvy User Account Model

One document per user in the `users` collection. The credit balance is
embedded on the account and is only ever mutated by the credit ledger.
"""

from pydantic import BaseModel, Field
from typing import Optional
from datetime import datetime, timezone
from enum import Enum


class PlanType(str, Enum):
    """Plan tiers"""
    FREEMIUM = "freemium"
    PRO = "pro"
    CUSTOM = "custom"


class SubscriptionStatus(str, Enum):
    """Paid subscription lifecycle. Cancelled paid users are auto-downgraded."""
    ACTIVE = "active"
    CANCELLED = "cancelled"
    INACTIVE = "inactive"


DEFAULT_SIGNUP_CREDITS = 200


class UserAccount(BaseModel):
    """User account with embedded credit balance.

    plan_type is kept as a plain string: an unregistered value on a stored
    account must reach the plan validator (INVALID_PLAN) instead of failing
    model parsing.
    """
    user_id: str
    email: Optional[str] = None
    display_name: str = ""

    plan_type: str = PlanType.FREEMIUM.value
    credits: int = Field(default=DEFAULT_SIGNUP_CREDITS, ge=0)
    subscription_status: SubscriptionStatus = SubscriptionStatus.INACTIVE

    # Refresh bookkeeping
    last_credit_refresh: Optional[str] = None
    last_refresh_month: Optional[str] = None  # YYYY-MM
    last_credit_allocation: Optional[str] = None

    lifetime_credits_used: int = 0

    created_at: str = Field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    updated_at: str = Field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    model_config = {"extra": "ignore"}


class AccountSummary(BaseModel):
    """Balance view returned to the account owner."""
    user_id: str
    plan_type: str
    credits: int
    subscription_status: SubscriptionStatus
    last_credit_refresh: Optional[str] = None
