"""Plan Registry - Single Source of Truth for plan tiers and credit pricing.

This is the AUTHORITATIVE source for:
- Plan tiers and monthly credit allotments
- Word-to-credit ratios per tool
- Quality tier multipliers
- Paid plan pricing used by credit allocation
- Upgrade paths shown to users

NON-NEGOTIABLE RULES:
1. Ratios are WORDS PER CREDIT: credits = ceil(words / words_per_credit)
2. Unknown plan types raise UnknownPlanError - never default silently
3. Pure lookups only: no store access, no side effects

Plan Structure:
- freemium: 200 credits / month, monthly cap enforced
- pro: 2000 credits per $9.99 purchase or renewal
- custom: no monthly cap, 220 credits per dollar, $15 minimum
"""
from decimal import Decimal
from typing import Dict, List, Optional, Any, Union

from pydantic import BaseModel

from assignsavvy.errors import InvalidArgumentError, UnknownPlanError
from assignsavvy.models.credits import ToolType, QualityTier
from assignsavvy.models.user import PlanType
from assignsavvy.models.validation import UpgradeOption


# ============================================================================
# CREDIT RATIOS - words per credit, per tool
# ============================================================================
DEFAULT_WORDS_PER_CREDIT: Dict[ToolType, int] = {
    ToolType.WRITING: 3,
    ToolType.RESEARCH: 5,
    ToolType.DETECTOR_DETECTION: 20,   # ~100 characters of scanned text
    ToolType.DETECTOR_GENERATION: 3,
    ToolType.PROMPT_ENGINEER: 10,
}

# Multipliers as exact (numerator, denominator) so pricing stays integral
QUALITY_MULTIPLIERS: Dict[QualityTier, tuple] = {
    QualityTier.STANDARD: (1, 1),
    QualityTier.PREMIUM: (3, 2),
}


class PlanLimits(BaseModel):
    """Per-plan configuration.

    monthly_credits=None means unlimited. enforce_monthly_cap is only set on
    freemium: paid plans buy credits, so their balance is the only limit.
    """
    plan_type: PlanType
    monthly_credits: Optional[int] = None
    enforce_monthly_cap: bool = False
    words_per_credit: Dict[ToolType, int]

    model_config = {"frozen": True}


# ============================================================================
# PLAN DEFINITIONS
# ============================================================================
PLAN_DEFINITIONS: Dict[PlanType, Dict[str, Any]] = {
    PlanType.FREEMIUM: {
        "code": "freemium",
        "name": "Freemium",
        "description": "Try every tool with a monthly credit allowance",

        # Limits
        "monthly_credits": 200,
        "enforce_monthly_cap": True,

        # Pricing
        "price": 0.0,
        "currency": "USD",
    },
    PlanType.PRO: {
        "code": "pro",
        "name": "Pro",
        "description": "2000 credits for regular writers",

        # Limits
        "monthly_credits": 2000,
        "enforce_monthly_cap": False,

        # Pricing
        "price": 9.99,
        "currency": "USD",
    },
    PlanType.CUSTOM: {
        "code": "custom",
        "name": "Custom",
        "description": "Pay for exactly the credits you need",

        # Limits
        "monthly_credits": None,  # Unlimited or contract defined
        "enforce_monthly_cap": False,

        # Pricing
        "min_amount": 15,
        "credits_per_dollar": 220,
        "currency": "USD",
    },
}


# ============================================================================
# UPGRADE PATHS
# ============================================================================
UPGRADE_OPTIONS: Dict[PlanType, Dict[str, Any]] = {
    PlanType.FREEMIUM: {
        "can_upgrade": True,
        "recommended_plan": PlanType.PRO.value,
        "benefits": [
            "2000 credits per purchase",
            "No monthly credit cap",
            "Priority processing",
            "Advanced export formats",
        ],
    },
    PlanType.PRO: {
        "can_upgrade": True,
        "recommended_plan": PlanType.CUSTOM.value,
        "benefits": [
            "Custom credit rates",
            "Dedicated support",
            "API access",
            "Custom integrations",
        ],
    },
    PlanType.CUSTOM: {
        "can_upgrade": False,
        "recommended_plan": None,
        "benefits": [],
    },
}


def count_words(text: Optional[str]) -> int:
    """Whitespace-delimited word count; 0 for empty or non-string input."""
    if not text or not isinstance(text, str):
        return 0
    return len(text.split())


# ============================================================================
# PLAN REGISTRY SERVICE
# ============================================================================
class PlanRegistryService:
    """Lookup service for plan limits and credit pricing."""

    def __init__(self, words_per_credit: Optional[Dict[ToolType, int]] = None):
        ratios = dict(DEFAULT_WORDS_PER_CREDIT)
        if words_per_credit:
            ratios.update(words_per_credit)
        for tool, ratio in ratios.items():
            if not isinstance(ratio, int) or ratio <= 0:
                raise InvalidArgumentError(f"words_per_credit for {tool} must be a positive integer")
        self._words_per_credit = ratios

    # -------------------------------------------------------------------------
    # Plan Information
    # -------------------------------------------------------------------------

    def resolve_plan_type(self, value: Union[str, PlanType, None]) -> PlanType:
        """Map a stored plan string to PlanType. Raises UnknownPlanError."""
        if isinstance(value, PlanType):
            return value
        try:
            return PlanType(str(value).strip().lower())
        except ValueError:
            raise UnknownPlanError(value)

    def get_plan(self, plan_type: Union[str, PlanType]) -> Dict[str, Any]:
        """Get complete plan definition."""
        return PLAN_DEFINITIONS[self.resolve_plan_type(plan_type)].copy()

    def get_all_plans(self) -> List[Dict[str, Any]]:
        """Get all plans for display."""
        return [plan.copy() for plan in PLAN_DEFINITIONS.values()]

    def get_limits(self, plan_type: Union[str, PlanType]) -> PlanLimits:
        plan_type = self.resolve_plan_type(plan_type)
        plan = PLAN_DEFINITIONS[plan_type]
        return PlanLimits(
            plan_type=plan_type,
            monthly_credits=plan["monthly_credits"],
            enforce_monthly_cap=plan["enforce_monthly_cap"],
            words_per_credit=dict(self._words_per_credit),
        )

    def get_upgrade_options(self, plan_type: Union[str, PlanType]) -> UpgradeOption:
        return UpgradeOption(**UPGRADE_OPTIONS[self.resolve_plan_type(plan_type)])

    # -------------------------------------------------------------------------
    # Pricing
    # -------------------------------------------------------------------------

    def words_per_credit(self, tool_type: Union[str, ToolType]) -> int:
        try:
            return self._words_per_credit[ToolType(tool_type)]
        except ValueError:
            raise InvalidArgumentError(f"Unknown tool type: {tool_type!r}")

    def credits_for_words(
        self,
        word_count: int,
        tool_type: Union[str, ToolType],
        quality: Union[str, QualityTier] = QualityTier.STANDARD,
    ) -> int:
        """ceil(word_count * quality / words_per_credit), in integer arithmetic."""
        if isinstance(word_count, bool) or not isinstance(word_count, int):
            raise InvalidArgumentError(f"word_count must be an integer, got {word_count!r}")
        if word_count <= 0:
            raise InvalidArgumentError(f"word_count must be positive, got {word_count}")
        ratio = self.words_per_credit(tool_type)
        try:
            numerator, denominator = QUALITY_MULTIPLIERS[QualityTier(quality)]
        except ValueError:
            raise InvalidArgumentError(f"Unknown quality tier: {quality!r}")
        return -(-(word_count * numerator) // (ratio * denominator))

    def custom_credits_for_payment(self, amount_paid: float) -> int:
        """Credits bought by a custom-plan payment in dollars."""
        plan = PLAN_DEFINITIONS[PlanType.CUSTOM]
        if amount_paid is None or amount_paid < plan["min_amount"]:
            raise InvalidArgumentError(f"Minimum payment is ${plan['min_amount']}")
        return int(Decimal(str(amount_paid)) * plan["credits_per_dollar"])
