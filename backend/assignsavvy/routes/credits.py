"""AssignSavvy Credit Routes

Endpoints:
- GET /api/plans - Plan catalogue
- GET /api/plans/upgrade-options - Upgrade path for the caller's plan
- POST /api/credits/init - Open account and apply a due freemium refresh
- GET /api/credits/balance - Current balance
- GET /api/credits/transactions - Reservation history
- GET /api/credits/usage - Monthly usage aggregate
- GET /api/credits/usage/history - Zero-filled monthly usage
- POST /api/credits/estimate - Dry-run validation and credit estimate
"""

from fastapi import APIRouter, Depends, Query
from typing import Optional
from pydantic import BaseModel
import logging

from assignsavvy.models.credits import ToolType, QualityTier
from assignsavvy.models.user import UserAccount, AccountSummary
from assignsavvy.models.validation import ValidationResult
from assignsavvy.routes.deps import get_services, get_current_account
from assignsavvy.services.container import CreditServices

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/credits", tags=["Credits"])
plans_router = APIRouter(prefix="/api/plans", tags=["Plans"])


class EstimateRequest(BaseModel):
    tool_type: ToolType
    word_count: Optional[int] = None
    content: Optional[str] = None
    quality: QualityTier = QualityTier.STANDARD


def _summary(account: UserAccount) -> AccountSummary:
    return AccountSummary(
        user_id=account.user_id,
        plan_type=account.plan_type,
        credits=account.credits,
        subscription_status=account.subscription_status,
        last_credit_refresh=account.last_credit_refresh,
    )


@plans_router.get("")
async def list_plans(services: CreditServices = Depends(get_services)):
    """Plan catalogue. No auth required - for display on pricing page."""
    return {"plans": services.plan_registry.get_all_plans()}


@plans_router.get("/upgrade-options")
async def get_upgrade_options(
    account: UserAccount = Depends(get_current_account),
    services: CreditServices = Depends(get_services),
):
    return services.plan_registry.get_upgrade_options(account.plan_type)


@router.post("/init")
async def init_credits(
    account: UserAccount = Depends(get_current_account),
    services: CreditServices = Depends(get_services),
):
    """Called by the client after sign-in.

    Applies a freemium refresh or a pending downgrade if one is due today.
    """
    refresh = await services.allocation.refresh_if_due(account.user_id)
    current = await services.ledger.get_account(account.user_id)
    return {"account": _summary(current), "refresh": refresh}


@router.get("/balance", response_model=AccountSummary)
async def get_balance(account: UserAccount = Depends(get_current_account)):
    return _summary(account)


@router.get("/transactions")
async def get_transactions(
    limit: int = Query(50, ge=1, le=100),
    offset: int = Query(0, ge=0),
    account: UserAccount = Depends(get_current_account),
    services: CreditServices = Depends(get_services),
):
    transactions = await services.ledger.get_transaction_history(account.user_id, limit, offset)
    return {
        "transactions": transactions,
        "limit": limit,
        "offset": offset,
    }


@router.get("/usage")
async def get_usage(
    month: Optional[str] = None,
    account: UserAccount = Depends(get_current_account),
    services: CreditServices = Depends(get_services),
):
    return await services.usage_tracker.get_monthly_usage(account.user_id, month)


@router.get("/usage/history")
async def get_usage_history(
    months: int = Query(6, ge=1, le=12),
    account: UserAccount = Depends(get_current_account),
    services: CreditServices = Depends(get_services),
):
    history = await services.usage_tracker.get_user_usage_history(account.user_id, months)
    return {"months": history}


@router.post("/estimate", response_model=ValidationResult)
async def estimate(
    data: EstimateRequest,
    account: UserAccount = Depends(get_current_account),
    services: CreditServices = Depends(get_services),
):
    """Dry run: the validation a tool request would get. Nothing is reserved."""
    return await services.validator.validate_request(
        account.user_id, data.content, data.word_count, data.tool_type, data.quality
    )
