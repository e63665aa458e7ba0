"""AssignSavvy Credit Allocation Service

Plan-driven balance changes:
- Monthly freemium refresh (signup-day anniversary, once per calendar month)
- Auto-downgrade of cancelled paid subscriptions
- Pro and custom allocations from Stripe payments (upgrade or top-up)

Every balance write goes through CreditLedger.reset_balance or
CreditLedger.grant_credits.
"""

from datetime import datetime, timezone
from typing import Optional, Dict, Any
import calendar
import logging

from assignsavvy.errors import AccountNotFoundError
from assignsavvy.models.user import UserAccount, PlanType, SubscriptionStatus
from assignsavvy.services.credit_ledger import CreditLedger
from assignsavvy.services.plan_registry import PlanRegistryService, PLAN_DEFINITIONS
from assignsavvy.services.usage_tracker import current_month

logger = logging.getLogger(__name__)

PAID_PLANS = [PlanType.PRO.value, PlanType.CUSTOM.value]


def refresh_day(created_at: Optional[str], now: datetime) -> int:
    """Day of `now`'s month on which a user's refresh falls.

    The signup day-of-month, clamped to the last day of the month
    (a user who signed up on the 31st refreshes on the 30th in April).
    """
    last_day = calendar.monthrange(now.year, now.month)[1]
    if not created_at:
        return 1
    try:
        signup_day = datetime.fromisoformat(created_at).day
    except ValueError:
        logger.warning(f"Unparseable created_at {created_at!r}; refreshing on day 1")
        return 1
    return min(signup_day, last_day)


class CreditAllocationService:
    """Credit allocation and monthly refresh."""

    def __init__(self, db, ledger: CreditLedger, plan_registry: PlanRegistryService):
        self.db = db
        self.ledger = ledger
        self.plan_registry = plan_registry

    async def _require_account(self, user_id: str) -> UserAccount:
        account = await self.ledger.get_account(user_id)
        if account is None:
            raise AccountNotFoundError(user_id)
        return account

    # -------------------------------------------------------------------------
    # Freemium refresh
    # -------------------------------------------------------------------------

    async def refresh_freemium_credits(self, user_id: str, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Refresh (or downgrade) one user.

        Returns a dict with downgraded / refreshed / skipped flags. The
        once-per-month guard is part of the reset's filter, so running the
        refresh twice in a month only resets once.
        """
        now = now or datetime.now(timezone.utc)
        month = current_month(now)
        timestamp = now.isoformat()
        freemium_credits = PLAN_DEFINITIONS[PlanType.FREEMIUM]["monthly_credits"]

        account = await self._require_account(user_id)

        # 1. Cancelled paid subscription -> freemium
        if account.plan_type in PAID_PLANS and account.subscription_status == SubscriptionStatus.CANCELLED:
            entry = await self.ledger.reset_balance(
                user_id,
                freemium_credits,
                reason=f"Downgraded from {account.plan_type} after cancellation",
                guard={
                    "plan_type": account.plan_type,
                    "subscription_status": SubscriptionStatus.CANCELLED.value,
                },
                set_fields={
                    "plan_type": PlanType.FREEMIUM.value,
                    "subscription_status": SubscriptionStatus.INACTIVE.value,
                    "last_credit_refresh": timestamp,
                    "last_refresh_month": month,
                },
            )
            if entry is None:
                return {"success": True, "skipped": True, "reason": "Subscription changed during downgrade"}
            logger.info(f"Downgraded {user_id} from {account.plan_type} to freemium")
            return {
                "success": True,
                "downgraded": True,
                "user_id": user_id,
                "new_plan": PlanType.FREEMIUM.value,
                "new_credits": freemium_credits,
                "refreshed_at": timestamp,
            }

        # 2. Only freemium users refresh
        if account.plan_type != PlanType.FREEMIUM.value:
            return {"success": True, "skipped": True, "reason": "Not a freemium user"}

        # 3. Once per calendar month
        entry = await self.ledger.reset_balance(
            user_id,
            freemium_credits,
            reason=f"Freemium refresh {month}",
            guard={
                "plan_type": PlanType.FREEMIUM.value,
                "last_refresh_month": {"$ne": month},
            },
            set_fields={
                "last_credit_refresh": timestamp,
                "last_refresh_month": month,
            },
        )
        if entry is None:
            return {"success": True, "skipped": True, "reason": "Already refreshed this month"}

        return {
            "success": True,
            "refreshed": True,
            "user_id": user_id,
            "new_credits": freemium_credits,
            "refreshed_at": timestamp,
        }

    def is_refresh_due(self, account: UserAccount, now: Optional[datetime] = None) -> bool:
        """Whether the daily job would touch this account today."""
        now = now or datetime.now(timezone.utc)
        if account.plan_type in PAID_PLANS:
            return account.subscription_status == SubscriptionStatus.CANCELLED
        if account.plan_type != PlanType.FREEMIUM.value:
            return False
        if account.last_refresh_month == current_month(now):
            return False
        return now.day >= refresh_day(account.created_at, now)

    async def refresh_if_due(self, user_id: str, now: Optional[datetime] = None) -> Dict[str, Any]:
        account = await self._require_account(user_id)
        if not self.is_refresh_due(account, now):
            return {"success": True, "skipped": True, "reason": "Refresh not due"}
        return await self.refresh_freemium_credits(user_id, now)

    async def run_daily_refresh(self, now: Optional[datetime] = None) -> Dict[str, int]:
        """Scheduled entry point.

        Downgrades every cancelled paid user, then refreshes freemium users
        whose refresh day has arrived this month. A failure on one user is
        logged and counted; the run continues.
        """
        now = now or datetime.now(timezone.utc)
        month = current_month(now)
        stats = {"checked": 0, "downgraded": 0, "refreshed": 0, "skipped": 0, "failed": 0}

        query = {
            "$or": [
                {
                    "plan_type": {"$in": PAID_PLANS},
                    "subscription_status": SubscriptionStatus.CANCELLED.value,
                },
                {
                    "plan_type": PlanType.FREEMIUM.value,
                    "last_refresh_month": {"$ne": month},
                },
            ]
        }
        cursor = self.db.users.find(query, {"_id": 0})

        async for doc in cursor:
            stats["checked"] += 1
            user_id = doc.get("user_id")
            try:
                account = UserAccount(**doc)
                if not self.is_refresh_due(account, now):
                    stats["skipped"] += 1
                    continue
                result = await self.refresh_freemium_credits(user_id, now)
                if result.get("downgraded"):
                    stats["downgraded"] += 1
                elif result.get("refreshed"):
                    stats["refreshed"] += 1
                else:
                    stats["skipped"] += 1
            except Exception as e:
                stats["failed"] += 1
                logger.error(f"Credit refresh failed for {user_id}: {e}", exc_info=True)

        logger.info(
            f"Daily credit refresh {month}: checked {stats['checked']}, refreshed {stats['refreshed']}, "
            f"downgraded {stats['downgraded']}, failed {stats['failed']}"
        )
        return stats

    # -------------------------------------------------------------------------
    # Paid allocations
    # -------------------------------------------------------------------------

    async def _allocate(
        self,
        user_id: str,
        plan_type: PlanType,
        credits: int,
        is_upgrade: bool,
        reference_id: Optional[str],
    ) -> Dict[str, Any]:
        await self._require_account(user_id)
        timestamp = datetime.now(timezone.utc).isoformat()

        if is_upgrade:
            entry = await self.ledger.reset_balance(
                user_id,
                credits,
                reason=f"Upgrade to {plan_type.value}",
                reference_id=reference_id,
                set_fields={
                    "plan_type": plan_type.value,
                    "subscription_status": SubscriptionStatus.ACTIVE.value,
                    "last_credit_allocation": timestamp,
                },
            )
        else:
            entry = await self.ledger.grant_credits(
                user_id,
                credits,
                reason=f"{plan_type.value} top-up",
                reference_id=reference_id,
                set_fields={"last_credit_allocation": timestamp},
            )

        mode = "upgrade" if is_upgrade else "topup"
        logger.info(f"Allocated {credits} {plan_type.value} credits to {user_id} ({mode})")
        return {
            "success": True,
            "credits": credits,
            "mode": mode,
            "new_balance": entry.balance_after,
        }

    async def allocate_pro_credits(
        self,
        user_id: str,
        is_upgrade: bool = False,
        reference_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Upgrade resets the balance to the Pro allotment; otherwise add it."""
        credits = PLAN_DEFINITIONS[PlanType.PRO]["monthly_credits"]
        return await self._allocate(user_id, PlanType.PRO, credits, is_upgrade, reference_id)

    async def allocate_custom_credits(
        self,
        user_id: str,
        amount_paid: float,
        is_upgrade: bool = False,
        reference_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        credits = self.plan_registry.custom_credits_for_payment(amount_paid)
        return await self._allocate(user_id, PlanType.CUSTOM, credits, is_upgrade, reference_id)

    async def mark_subscription_cancelled(self, user_id: str) -> None:
        """Flag a paid subscription as cancelled; the next daily run downgrades it."""
        result = await self.db.users.update_one(
            {"user_id": user_id},
            {"$set": {
                "subscription_status": SubscriptionStatus.CANCELLED.value,
                "updated_at": datetime.now(timezone.utc).isoformat(),
            }},
        )
        if result.matched_count == 0:
            raise AccountNotFoundError(user_id)
        logger.info(f"Subscription cancelled for {user_id}")
