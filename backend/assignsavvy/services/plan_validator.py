"""Pre-flight request validation.

Checks run in a fixed order and stop at the first failure:
tool type known -> plan exists -> plan registered -> monthly cap ->
balance covers estimate.
Nothing here writes to the store.
"""

from datetime import datetime
from typing import Optional, Union
import logging

from assignsavvy.errors import UnknownPlanError
from assignsavvy.models.credits import ToolType, QualityTier
from assignsavvy.models.validation import ValidationErrorCode, ValidationResult
from assignsavvy.services.credit_ledger import CreditLedger
from assignsavvy.services.plan_registry import PlanRegistryService, count_words
from assignsavvy.services.usage_tracker import UsageTracker, current_month, next_month_start

logger = logging.getLogger(__name__)


class PlanValidator:
    def __init__(self, plan_registry: PlanRegistryService, usage_tracker: UsageTracker, ledger: CreditLedger):
        self.plan_registry = plan_registry
        self.usage_tracker = usage_tracker
        self.ledger = ledger

    async def validate_request(
        self,
        user_id: str,
        content: Optional[str],
        requested_word_count: Optional[int],
        tool_type: Union[str, ToolType],
        quality: Union[str, QualityTier] = QualityTier.STANDARD,
        now: Optional[datetime] = None,
    ) -> ValidationResult:
        """Return the first failing check as a ValidationResult, or is_valid=True."""
        word_count = requested_word_count if requested_word_count is not None else count_words(content)

        try:
            tool_type = ToolType(tool_type)
            quality = QualityTier(quality)
        except ValueError:
            return ValidationResult(
                is_valid=False,
                requested_word_count=word_count,
                error_code=ValidationErrorCode.INVALID_TOOL_TYPE,
                message=f"Unknown tool type {tool_type!r} or quality {quality!r}",
            )

        # 1. Plan existence
        account = await self.ledger.get_account(user_id)
        if account is None or not account.plan_type:
            return ValidationResult(
                is_valid=False,
                requested_word_count=word_count,
                error_code=ValidationErrorCode.PLAN_NOT_FOUND,
                message="No plan found for this account",
            )

        # 2. Plan registered
        try:
            limits = self.plan_registry.get_limits(account.plan_type)
        except UnknownPlanError:
            logger.error(f"User {user_id} has unregistered plan type {account.plan_type!r}")
            return ValidationResult(
                is_valid=False,
                user_plan=account.plan_type,
                requested_word_count=word_count,
                available_credits=account.credits,
                error_code=ValidationErrorCode.INVALID_PLAN,
                message=f"Plan '{account.plan_type}' is not available",
            )
        plan = limits.plan_type.value

        # 3. Monthly cap
        if limits.enforce_monthly_cap and limits.monthly_credits is not None:
            usage = await self.usage_tracker.get_monthly_usage(user_id, current_month(now))
            if usage.total_credits >= limits.monthly_credits:
                reset_date = next_month_start(now).date().isoformat()
                return ValidationResult(
                    is_valid=False,
                    user_plan=plan,
                    requested_word_count=word_count,
                    available_credits=account.credits,
                    error_code=ValidationErrorCode.MONTHLY_CREDIT_LIMIT_REACHED,
                    message=(
                        f"Monthly limit of {limits.monthly_credits} credits reached. "
                        f"Credits reset on {reset_date}."
                    ),
                    current_usage=usage.total_credits,
                    monthly_limit=limits.monthly_credits,
                    reset_date=reset_date,
                    upgrade_options=self.plan_registry.get_upgrade_options(plan),
                )

        # 4. Balance vs dry-run estimate
        if isinstance(word_count, bool) or not isinstance(word_count, int) or word_count <= 0:
            return ValidationResult(
                is_valid=False,
                user_plan=plan,
                requested_word_count=word_count,
                available_credits=account.credits,
                error_code=ValidationErrorCode.INVALID_WORD_COUNT,
                message="Word count must be a positive number",
            )
        estimated = self.plan_registry.credits_for_words(word_count, tool_type, quality)

        if account.credits < estimated:
            logger.warning(
                f"Validation: user {user_id} needs {estimated} credits, has {account.credits}"
            )
            return ValidationResult(
                is_valid=False,
                user_plan=plan,
                requested_word_count=word_count,
                estimated_credits=estimated,
                available_credits=account.credits,
                error_code=ValidationErrorCode.INSUFFICIENT_CREDITS,
                message=(
                    f"Insufficient credits: this request needs {estimated} credits "
                    f"but you have {account.credits}"
                ),
                required_credits=estimated,
                upgrade_options=self.plan_registry.get_upgrade_options(plan),
            )

        return ValidationResult(
            is_valid=True,
            user_plan=plan,
            requested_word_count=word_count,
            estimated_credits=estimated,
            available_credits=account.credits,
        )
