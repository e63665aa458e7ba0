"""Service wiring.

Everything is built from one injected Motor database handle. The app
lifespan keeps the bundle on app.state.services; scheduled jobs build
their own.
"""
from dataclasses import dataclass
from typing import Any, Optional

from assignsavvy.config import PROVIDER_TIMEOUT_SECONDS
from assignsavvy.services.credit_allocation import CreditAllocationService
from assignsavvy.services.credit_ledger import CreditLedger
from assignsavvy.services.orchestrators import (
    WriterOrchestrator,
    ResearchOrchestrator,
    DetectorOrchestrator,
    PromptOptimizerOrchestrator,
)
from assignsavvy.services.plan_registry import PlanRegistryService
from assignsavvy.services.plan_validator import PlanValidator
from assignsavvy.services.providers import GenerationProvider, GeminiProvider
from assignsavvy.services.tool_history import ToolHistoryStore
from assignsavvy.services.usage_tracker import UsageTracker


@dataclass
class CreditServices:
    db: Any
    plan_registry: PlanRegistryService
    usage_tracker: UsageTracker
    ledger: CreditLedger
    validator: PlanValidator
    allocation: CreditAllocationService
    history: ToolHistoryStore
    writer: WriterOrchestrator
    research: ResearchOrchestrator
    detector: DetectorOrchestrator
    prompt_optimizer: PromptOptimizerOrchestrator

    async def ensure_indexes(self) -> None:
        await self.ledger.ensure_indexes()
        await self.usage_tracker.ensure_indexes()
        await self.history.ensure_indexes()
        await self.db.stripe_events.create_index("event_id", unique=True)


def build_services(
    db,
    provider: Optional[GenerationProvider] = None,
    timeout: float = PROVIDER_TIMEOUT_SECONDS,
) -> CreditServices:
    registry = PlanRegistryService()
    tracker = UsageTracker(db)
    ledger = CreditLedger(db, registry)
    validator = PlanValidator(registry, tracker, ledger)
    history = ToolHistoryStore(db)
    provider = provider or GeminiProvider()

    tool_args = (validator, ledger, tracker, history, provider, timeout)
    return CreditServices(
        db=db,
        plan_registry=registry,
        usage_tracker=tracker,
        ledger=ledger,
        validator=validator,
        allocation=CreditAllocationService(db, ledger, registry),
        history=history,
        writer=WriterOrchestrator(*tool_args),
        research=ResearchOrchestrator(*tool_args),
        detector=DetectorOrchestrator(*tool_args),
        prompt_optimizer=PromptOptimizerOrchestrator(*tool_args),
    )
