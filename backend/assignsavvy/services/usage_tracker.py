"""AssignSavvy Usage Tracker

Durable per-user, per-month counters:
- monthly_usage: one aggregate document per (user_id, YYYY-MM)
- usage_events: append-only row per recorded request, with caller metadata

Counters are only changed with $inc inside a single upserting
find_one_and_update, so concurrent requests for the same user are all
counted.
"""

from datetime import datetime, timezone
from typing import Optional, Dict, Any, List
import logging
import re

from pymongo import ReturnDocument

from assignsavvy.errors import InvalidArgumentError
from assignsavvy.models.usage import MonthlyUsageRecord, UsageEvent

logger = logging.getLogger(__name__)

MONTH_PATTERN = re.compile(r"^\d{4}-(0[1-9]|1[0-2])$")
MAX_HISTORY_MONTHS = 12


def current_month(now: Optional[datetime] = None) -> str:
    """YYYY-MM for now (UTC)."""
    current = now or datetime.now(timezone.utc)
    return current.strftime("%Y-%m")


def next_month_start(now: Optional[datetime] = None) -> datetime:
    """First instant of the calendar month after now (UTC)."""
    current = now or datetime.now(timezone.utc)
    if current.month == 12:
        return datetime(current.year + 1, 1, 1, tzinfo=timezone.utc)
    return datetime(current.year, current.month + 1, 1, tzinfo=timezone.utc)


def previous_months(count: int, now: Optional[datetime] = None) -> List[str]:
    """The last `count` month keys, most recent first."""
    current = now or datetime.now(timezone.utc)
    year, month = current.year, current.month
    keys = []
    for _ in range(count):
        keys.append(f"{year:04d}-{month:02d}")
        month -= 1
        if month == 0:
            month = 12
            year -= 1
    return keys


def _validate_amount(name: str, value: int) -> None:
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise InvalidArgumentError(f"{name} must be a non-negative integer, got {value!r}")


class UsageTracker:
    """Monthly usage aggregation."""

    def __init__(self, db):
        self.db = db

    async def ensure_indexes(self) -> None:
        await self.db.monthly_usage.create_index([("user_id", 1), ("month", 1)], unique=True)
        await self.db.usage_events.create_index([("user_id", 1), ("created_at", -1)])
        await self.db.usage_events.create_index("event_id", unique=True)

    async def record_usage(
        self,
        user_id: str,
        words_generated: int,
        credits_used: int,
        metadata: Optional[Dict[str, Any]] = None,
        now: Optional[datetime] = None,
    ) -> MonthlyUsageRecord:
        """Add one request to the current month's counters.

        Raises on store failure; callers that treat usage as best-effort
        catch and report it themselves.
        """
        _validate_amount("words_generated", words_generated)
        _validate_amount("credits_used", credits_used)

        current = now or datetime.now(timezone.utc)
        month = current_month(current)
        timestamp = current.isoformat()

        doc = await self.db.monthly_usage.find_one_and_update(
            {"user_id": user_id, "month": month},
            {
                "$inc": {
                    "total_words": words_generated,
                    "total_credits": credits_used,
                    "request_count": 1,
                },
                "$set": {"updated_at": timestamp},
                "$setOnInsert": {"created_at": timestamp},
            },
            projection={"_id": 0},
            upsert=True,
            return_document=ReturnDocument.AFTER,
        )

        event = UsageEvent(
            user_id=user_id,
            month=month,
            words_generated=words_generated,
            credits_used=credits_used,
            metadata=metadata or {},
            created_at=timestamp,
        )
        await self.db.usage_events.insert_one(event.model_dump())

        logger.info(
            f"Recorded usage for user {user_id} ({month}): +{words_generated} words, "
            f"+{credits_used} credits"
        )
        return MonthlyUsageRecord(**doc)

    async def get_monthly_usage(self, user_id: str, month: Optional[str] = None) -> MonthlyUsageRecord:
        """Aggregate for a month (default: current). Zero record if nothing recorded yet."""
        month = month or current_month()
        if not MONTH_PATTERN.match(month):
            raise InvalidArgumentError(f"month must be YYYY-MM, got {month!r}")

        doc = await self.db.monthly_usage.find_one(
            {"user_id": user_id, "month": month},
            {"_id": 0},
        )
        if not doc:
            return MonthlyUsageRecord(user_id=user_id, month=month)
        return MonthlyUsageRecord(**doc)

    async def get_user_usage_history(
        self,
        user_id: str,
        months: int = 6,
        now: Optional[datetime] = None,
    ) -> List[MonthlyUsageRecord]:
        """One record per calendar month, most recent first, zero-filled."""
        if isinstance(months, bool) or not isinstance(months, int) or not 1 <= months <= MAX_HISTORY_MONTHS:
            raise InvalidArgumentError(f"months must be between 1 and {MAX_HISTORY_MONTHS}, got {months!r}")

        keys = previous_months(months, now)
        cursor = self.db.monthly_usage.find(
            {"user_id": user_id, "month": {"$in": keys}},
            {"_id": 0},
        )
        found = {doc["month"]: doc async for doc in cursor}

        return [
            MonthlyUsageRecord(**found[key]) if key in found else MonthlyUsageRecord(user_id=user_id, month=key)
            for key in keys
        ]
