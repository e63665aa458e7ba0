"""Tool orchestration models

Provider outputs, the per-request outcome returned by orchestrators and the
history record persisted in `tool_results`.
"""

from pydantic import BaseModel, Field
from typing import Optional, List, Dict, Any
from datetime import datetime, timezone
from enum import Enum
import uuid

from assignsavvy.models.credits import ToolType


class GenerationResult(BaseModel):
    content: str
    word_count: int


class DetectionIssue(BaseModel):
    excerpt: str = ""
    reason: str = ""
    severity: str = "medium"


class DetectionResult(BaseModel):
    originality_score: float
    issues: List[DetectionIssue] = []


class ToolErrorCode(str, Enum):
    GENERATION_FAILED = "GENERATION_FAILED"
    INSUFFICIENT_CREDITS = "INSUFFICIENT_CREDITS"


class ToolRunResult(BaseModel):
    """What an orchestrator hands back to the HTTP layer.

    usage_recorded / history_saved report the best-effort steps that run
    after the credits have been committed.
    """
    success: bool
    tool_type: ToolType
    output: Dict[str, Any] = Field(default_factory=dict)
    word_count: int = 0

    transaction_id: Optional[str] = None
    credits_used: int = 0
    remaining_credits: Optional[int] = None

    usage_recorded: bool = False
    history_saved: bool = False
    result_id: Optional[str] = None

    error_code: Optional[ToolErrorCode] = None
    message: Optional[str] = None
    required_credits: Optional[int] = None
    available_credits: Optional[int] = None


class DetectorWorkflowResult(BaseModel):
    """detect -> improve -> detect again. Each step is metered on its own.

    stopped_reason is set when a follow-up step was rejected or failed;
    the steps that ran stay charged.
    """
    clean: bool = False
    detection: ToolRunResult
    rewrite: Optional[ToolRunResult] = None
    final_check: Optional[ToolRunResult] = None
    stopped_reason: Optional[str] = None


class ToolResultRecord(BaseModel):
    """History row in tool_results."""
    result_id: str = Field(default_factory=lambda: f"TRS-{uuid.uuid4().hex[:16].upper()}")
    user_id: str
    tool_type: ToolType
    title: str
    preview: str = ""
    output: Dict[str, Any] = Field(default_factory=dict)
    word_count: int = 0
    credits_used: int = 0
    transaction_id: Optional[str] = None
    status: str = "completed"
    created_at: str = Field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    model_config = {"extra": "ignore"}
