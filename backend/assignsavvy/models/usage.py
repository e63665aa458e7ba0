"""AssignSavvy Usage Models

Per-user, per-calendar-month aggregates. Counters only ever increase
within a month.
"""

from pydantic import BaseModel, Field
from typing import Optional, Dict, Any
from datetime import datetime, timezone
import uuid


class MonthlyUsageRecord(BaseModel):
    """Aggregate for (user_id, month). month is YYYY-MM."""
    user_id: str
    month: str
    total_words: int = 0
    total_credits: int = 0
    request_count: int = 0
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    model_config = {"extra": "ignore"}


class UsageEvent(BaseModel):
    """One recorded request, with caller metadata (tool, transaction id...)."""
    event_id: str = Field(default_factory=lambda: f"UEV-{uuid.uuid4().hex[:16].upper()}")
    user_id: str
    month: str
    words_generated: int
    credits_used: int
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: str = Field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    model_config = {"extra": "ignore"}
