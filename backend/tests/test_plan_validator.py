"""
Plan validator: checks run in order, stop at the first failure and never reserve.
"""
from datetime import datetime, timezone

import pytest

from assignsavvy.models.validation import ValidationErrorCode
from assignsavvy.services.usage_tracker import current_month


class TestValidationOrder:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("tool_type,quality", [("essay", "standard"), ("writing", "deluxe")])
    async def test_unknown_tool_type_is_a_result(self, services, tool_type, quality):
        result = await services.validator.validate_request("ghost", None, 100, tool_type, quality)
        assert result.is_valid is False
        assert result.error_code == ValidationErrorCode.INVALID_TOOL_TYPE

    @pytest.mark.asyncio
    async def test_missing_account_is_plan_not_found(self, services):
        result = await services.validator.validate_request("ghost", None, 100, "writing")
        assert result.is_valid is False
        assert result.error_code == ValidationErrorCode.PLAN_NOT_FOUND

    @pytest.mark.asyncio
    async def test_unregistered_plan(self, services, make_account):
        await make_account(plan_type="enterprise")
        result = await services.validator.validate_request("user-1", None, 100, "writing")
        assert result.error_code == ValidationErrorCode.INVALID_PLAN
        assert result.user_plan == "enterprise"

    @pytest.mark.asyncio
    async def test_monthly_cap_reached(self, services, make_account):
        await make_account(credits=150)
        now = datetime(2026, 5, 20, tzinfo=timezone.utc)
        await services.usage_tracker.record_usage("user-1", 600, 200, now=now)

        result = await services.validator.validate_request("user-1", None, 3, "writing", now=now)
        assert result.error_code == ValidationErrorCode.MONTHLY_CREDIT_LIMIT_REACHED
        assert result.current_usage == 200
        assert result.monthly_limit == 200
        assert result.reset_date == "2026-06-01"
        assert result.upgrade_options.recommended_plan == "pro"

    @pytest.mark.asyncio
    async def test_cap_checked_before_word_count(self, services, make_account):
        await make_account()
        await services.usage_tracker.record_usage("user-1", 600, 250)
        result = await services.validator.validate_request("user-1", None, 0, "writing")
        assert result.error_code == ValidationErrorCode.MONTHLY_CREDIT_LIMIT_REACHED

    @pytest.mark.asyncio
    async def test_pro_plan_has_no_monthly_cap(self, services, make_account):
        await make_account(plan_type="pro", credits=2000)
        await services.usage_tracker.record_usage("user-1", 9000, 3000)
        result = await services.validator.validate_request("user-1", None, 300, "writing")
        assert result.is_valid is True
        assert result.estimated_credits == 100

    @pytest.mark.asyncio
    @pytest.mark.parametrize("word_count", [0, -10])
    async def test_invalid_word_count(self, services, make_account, word_count):
        await make_account()
        result = await services.validator.validate_request("user-1", None, word_count, "writing")
        assert result.error_code == ValidationErrorCode.INVALID_WORD_COUNT

    @pytest.mark.asyncio
    async def test_empty_content_counts_zero_words(self, services, make_account):
        await make_account()
        result = await services.validator.validate_request("user-1", "   ", None, "writing")
        assert result.error_code == ValidationErrorCode.INVALID_WORD_COUNT

    @pytest.mark.asyncio
    async def test_insufficient_credits(self, services, make_account):
        await make_account(credits=10)
        result = await services.validator.validate_request("user-1", None, 600, "writing")
        assert result.error_code == ValidationErrorCode.INSUFFICIENT_CREDITS
        assert result.required_credits == 200
        assert result.available_credits == 10
        assert result.upgrade_options.can_upgrade is True


class TestValidResult:
    @pytest.mark.asyncio
    async def test_word_count_from_content(self, services, make_account):
        await make_account()
        result = await services.validator.validate_request(
            "user-1", "one two three four five six", None, "research"
        )
        assert result.is_valid is True
        assert result.requested_word_count == 6
        assert result.estimated_credits == 2
        assert result.user_plan == "freemium"

    @pytest.mark.asyncio
    async def test_premium_quality_priced_higher(self, services, make_account):
        await make_account()
        result = await services.validator.validate_request("user-1", None, 300, "writing", quality="premium")
        assert result.estimated_credits == 150

    @pytest.mark.asyncio
    async def test_validation_never_reserves(self, services, make_account, db):
        await make_account()
        await services.validator.validate_request("user-1", None, 300, "writing")
        await services.validator.validate_request("user-1", None, 6000, "writing")
        assert await services.ledger.get_balance("user-1") == 200
        assert await db.credit_transactions.count_documents({}) == 0

    @pytest.mark.asyncio
    async def test_usage_below_cap_passes(self, services, make_account):
        await make_account()
        await services.usage_tracker.record_usage("user-1", 300, 100)
        usage = await services.usage_tracker.get_monthly_usage("user-1", current_month())
        assert usage.total_credits == 100
        result = await services.validator.validate_request("user-1", None, 30, "writing")
        assert result.is_valid is True
