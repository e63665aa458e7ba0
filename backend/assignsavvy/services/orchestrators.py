"""AssignSavvy Tool Orchestrators

Every metered tool runs the same sequence:

    validate -> reserve -> provider call (bounded) -> commit | rollback
             -> reconcile actual words -> record usage -> save history

- Validation failures raise RequestRejected before anything is reserved.
- Any provider failure, timeout or cancellation rolls the reservation back.
- Ledger errors propagate and fail the request.
- Usage recording and history are best-effort; the result reports whether
  they succeeded.
"""

from typing import Optional, Dict, Any, List, Tuple, Callable, Awaitable, Union
import asyncio
import json
import logging
import re

from assignsavvy.config import PROVIDER_TIMEOUT_SECONDS
from assignsavvy.errors import InvalidArgumentError, RequestRejected
from assignsavvy.models.credits import ToolType, QualityTier
from assignsavvy.models.tools import ToolErrorCode, ToolRunResult, ToolResultRecord, DetectorWorkflowResult
from assignsavvy.services.credit_ledger import CreditLedger
from assignsavvy.services.plan_registry import count_words
from assignsavvy.services.plan_validator import PlanValidator
from assignsavvy.services.providers import GenerationProvider
from assignsavvy.services.tool_history import ToolHistoryStore
from assignsavvy.services.usage_tracker import UsageTracker

logger = logging.getLogger(__name__)

GENERATION_FAILED_MESSAGE = "Generation failed. No credits were charged; please try again."

# Provider call returns (output payload, output word count or None)
ProviderCall = Callable[[], Awaitable[Tuple[Dict[str, Any], Optional[int]]]]


def _title(text: str, limit: int = 60) -> str:
    text = " ".join(text.split())
    return text if len(text) <= limit else text[: limit - 3] + "..."


class ToolOrchestrator:
    """Shared reserve/commit/rollback flow for the metered tools."""

    def __init__(
        self,
        validator: PlanValidator,
        ledger: CreditLedger,
        usage_tracker: UsageTracker,
        history: ToolHistoryStore,
        provider: GenerationProvider,
        timeout: float = PROVIDER_TIMEOUT_SECONDS,
    ):
        self.validator = validator
        self.ledger = ledger
        self.usage_tracker = usage_tracker
        self.history = history
        self.provider = provider
        self.timeout = timeout

    async def _run(
        self,
        user_id: str,
        tool_type: ToolType,
        word_count: int,
        call: ProviderCall,
        title: str,
        content: Optional[str] = None,
        quality: Union[str, QualityTier] = QualityTier.STANDARD,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> ToolRunResult:
        validation = await self.validator.validate_request(
            user_id, content, word_count, tool_type, quality
        )
        if not validation.is_valid:
            raise RequestRejected(validation)

        reservation = await self.ledger.reserve(
            user_id, validation.requested_word_count, validation.user_plan, tool_type, quality
        )
        if not reservation.success:
            # Balance changed between validation and reservation
            return ToolRunResult(
                success=False,
                tool_type=tool_type,
                error_code=ToolErrorCode.INSUFFICIENT_CREDITS,
                message=(
                    f"Insufficient credits: this request needs {reservation.required_credits} "
                    f"credits but you have {reservation.previous_balance}"
                ),
                required_credits=reservation.required_credits,
                available_credits=reservation.previous_balance,
            )
        transaction_id = reservation.transaction_id

        try:
            output, output_words = await asyncio.wait_for(call(), timeout=self.timeout)
        except asyncio.CancelledError:
            logger.warning(f"{tool_type.value} request cancelled; rolling back {transaction_id}")
            await asyncio.shield(self.ledger.rollback(transaction_id))
            raise
        except Exception as e:
            logger.error(
                f"{tool_type.value} provider call failed for {user_id} ({transaction_id}): {e}",
                exc_info=True,
            )
            rollback = await self.ledger.rollback(transaction_id)
            return ToolRunResult(
                success=False,
                tool_type=tool_type,
                transaction_id=transaction_id,
                remaining_credits=rollback.new_balance,
                error_code=ToolErrorCode.GENERATION_FAILED,
                message=GENERATION_FAILED_MESSAGE,
            )

        await self.ledger.commit(transaction_id)
        credits_used = reservation.credits_deducted
        remaining = reservation.new_balance

        if output_words is not None and output_words != reservation.words_allocated:
            adjustment = await self.ledger.adjust_after_actual(transaction_id, output_words)
            credits_used = adjustment.net_credits
            remaining = adjustment.new_balance

        words = output_words if output_words is not None else reservation.words_allocated
        result = ToolRunResult(
            success=True,
            tool_type=tool_type,
            output=output,
            word_count=words,
            transaction_id=transaction_id,
            credits_used=credits_used,
            remaining_credits=remaining,
        )

        try:
            await self.usage_tracker.record_usage(
                user_id,
                words,
                credits_used,
                metadata={"tool_type": tool_type.value, "transaction_id": transaction_id, **(metadata or {})},
            )
            result.usage_recorded = True
        except Exception as e:
            logger.warning(f"Usage not recorded for {transaction_id}: {e}", exc_info=True)

        try:
            result.result_id = await self.history.save(ToolResultRecord(
                user_id=user_id,
                tool_type=tool_type,
                title=title,
                preview=_title(str(next(iter(output.values()), "")), 200),
                output=output,
                word_count=words,
                credits_used=credits_used,
                transaction_id=transaction_id,
            ))
            result.history_saved = True
        except Exception as e:
            logger.warning(f"History not saved for {transaction_id}: {e}", exc_info=True)

        logger.info(
            f"{tool_type.value} completed for {user_id}: {words} words, {credits_used} credits"
        )
        return result


# ============================================================================
# Writer
# ============================================================================

class WriterOrchestrator(ToolOrchestrator):
    DEFAULT_WORD_COUNT = 500

    async def generate(
        self,
        user_id: str,
        topic: str,
        instructions: str = "",
        word_count: int = DEFAULT_WORD_COUNT,
        style: Optional[str] = None,
        quality: Union[str, QualityTier] = QualityTier.STANDARD,
    ) -> ToolRunResult:
        topic = (topic or "").strip()
        if len(topic) < 3:
            raise InvalidArgumentError("Topic is too short")

        async def call():
            prompt = f"Write about: {topic}"
            result = await self.provider.generate(prompt, {
                "target_words": word_count,
                "style": style,
                "instructions": instructions,
            })
            return {"content": result.content, "topic": topic}, result.word_count

        return await self._run(
            user_id, ToolType.WRITING, word_count, call,
            title=_title(topic), content=topic, quality=quality,
            metadata={"topic": _title(topic)},
        )


# ============================================================================
# Research
# ============================================================================

class ResearchOrchestrator(ToolOrchestrator):
    MAX_DEPTH = 8
    WORDS_PER_DEPTH = 1000
    MAX_WORDS = 8000

    async def query(
        self,
        user_id: str,
        query: str,
        depth: int = 1,
        research_type: str = "general",
        quality: Union[str, QualityTier] = QualityTier.STANDARD,
    ) -> ToolRunResult:
        query = (query or "").strip()
        if len(query) < 5:
            raise InvalidArgumentError("Research query is too short")
        if isinstance(depth, bool) or not isinstance(depth, int) or not 1 <= depth <= self.MAX_DEPTH:
            raise InvalidArgumentError(f"depth must be between 1 and {self.MAX_DEPTH}")

        estimated_words = min(depth * self.WORDS_PER_DEPTH, self.MAX_WORDS)

        async def call():
            result = await self.provider.generate(
                f"Research question: {query}",
                {
                    "target_words": estimated_words,
                    "instructions": (
                        f"Produce a {research_type} research report with cited sources "
                        f"at depth {depth} of {self.MAX_DEPTH}."
                    ),
                },
            )
            return {
                "report": result.content,
                "query": query,
                "depth": depth,
                "research_type": research_type,
            }, result.word_count

        return await self._run(
            user_id, ToolType.RESEARCH, estimated_words, call,
            title=_title(query), content=query, quality=quality,
            metadata={"depth": depth, "research_type": research_type},
        )


# ============================================================================
# Detector
# ============================================================================

class DetectorOrchestrator(ToolOrchestrator):
    MIN_TEXT_LENGTH = 20
    CLEAN_SCORE = 80.0

    def _check_text(self, text: str) -> str:
        text = (text or "").strip()
        if len(text) < self.MIN_TEXT_LENGTH:
            raise InvalidArgumentError(f"Text must be at least {self.MIN_TEXT_LENGTH} characters")
        return text

    async def detect(self, user_id: str, text: str) -> ToolRunResult:
        """Priced on the scanned text; nothing to reconcile."""
        text = self._check_text(text)

        async def call():
            result = await self.provider.detect(text)
            return {
                "originality_score": result.originality_score,
                "issues": [issue.model_dump() for issue in result.issues],
            }, None

        return await self._run(
            user_id, ToolType.DETECTOR_DETECTION, count_words(text), call,
            title=_title(text), content=text,
        )

    async def improve(
        self,
        user_id: str,
        text: str,
        issues: Optional[List[Dict[str, Any]]] = None,
        quality: Union[str, QualityTier] = QualityTier.STANDARD,
    ) -> ToolRunResult:
        """Rewrite flagged passages. Priced as generation of a same-length text."""
        text = self._check_text(text)
        word_count = count_words(text)

        instructions = "Rewrite the text so it reads as original work while keeping its meaning."
        if issues:
            excerpts = "; ".join(str(issue.get("excerpt", "")) for issue in issues if issue.get("excerpt"))
            if excerpts:
                instructions += f" Focus on these passages: {excerpts}"

        async def call():
            result = await self.provider.generate(text, {
                "target_words": word_count,
                "instructions": instructions,
            })
            return {"improved": result.content}, result.word_count

        return await self._run(
            user_id, ToolType.DETECTOR_GENERATION, word_count, call,
            title=_title(text), content=text, quality=quality,
        )

    def _is_clean(self, detection: ToolRunResult) -> bool:
        return detection.output.get("originality_score", 0) >= self.CLEAN_SCORE

    async def workflow(
        self,
        user_id: str,
        text: str,
        quality: Union[str, QualityTier] = QualityTier.STANDARD,
    ) -> DetectorWorkflowResult:
        """Detect, then rewrite and re-scan unless the text is already clean.

        A rejection of the first scan propagates. Later steps that are
        rejected or fail end the workflow with stopped_reason set.
        """
        detection = await self.detect(user_id, text)
        workflow = DetectorWorkflowResult(detection=detection)
        if not detection.success:
            workflow.stopped_reason = detection.error_code.value
            return workflow
        if self._is_clean(detection):
            workflow.clean = True
            return workflow

        try:
            rewrite = await self.improve(
                user_id, text, issues=detection.output.get("issues"), quality=quality
            )
        except RequestRejected as e:
            logger.info(f"Detector workflow for {user_id} stopped before rewrite: {e}")
            workflow.stopped_reason = e.validation.error_code.value
            return workflow
        workflow.rewrite = rewrite
        if not rewrite.success:
            workflow.stopped_reason = rewrite.error_code.value
            return workflow

        try:
            final_check = await self.detect(user_id, rewrite.output.get("improved", ""))
        except RequestRejected as e:
            logger.info(f"Detector workflow for {user_id} stopped before final check: {e}")
            workflow.stopped_reason = e.validation.error_code.value
            return workflow
        except InvalidArgumentError as e:
            workflow.stopped_reason = str(e)
            return workflow
        workflow.final_check = final_check
        if not final_check.success:
            workflow.stopped_reason = final_check.error_code.value
            return workflow
        workflow.clean = self._is_clean(final_check)
        return workflow


# ============================================================================
# Prompt optimizer
# ============================================================================

PROMPT_ANALYSIS_INSTRUCTIONS = """Assess the prompt and reply with JSON only:
{"clarity": {"score": 0-100, "feedback": "..."},
 "specificity": {"score": 0-100, "feedback": "..."},
 "context": {"score": 0-100, "feedback": "..."},
 "overall": {"score": 0-100, "feedback": "..."},
 "strengths": ["..."], "improvements": ["..."]}"""

FALLBACK_ANALYSIS = {
    "clarity": {"score": 50, "feedback": "Unable to analyze clarity"},
    "specificity": {"score": 50, "feedback": "Unable to analyze specificity"},
    "context": {"score": 50, "feedback": "Unable to analyze context"},
    "overall": {"score": 50, "feedback": "Analysis failed"},
    "strengths": [],
    "improvements": ["Please try submitting your prompt again"],
}

# Static quick-start prompts, served without auth
PROMPT_TEMPLATES = [
    {"category": "general", "prompt": "Summarize this article in 3 key points."},
    {"category": "academic", "prompt": "Explain the significance of quantum computing in simple terms."},
    {"category": "creative", "prompt": "Write a short story about time travel in 200 words."},
    {"category": "technical", "prompt": "Explain REST API vs GraphQL in detail."},
]

JSON_OBJECT = re.compile(r"\{[\s\S]*\}")


def parse_analysis(text: str) -> Dict[str, Any]:
    match = JSON_OBJECT.search(text or "")
    if match:
        try:
            return json.loads(match.group(0))
        except json.JSONDecodeError:
            logger.warning("Prompt analysis was not valid JSON; using fallback")
    return dict(FALLBACK_ANALYSIS)


class PromptOptimizerOrchestrator(ToolOrchestrator):
    MAX_OUTPUT_WORDS = 1000
    ANALYSIS_OUTPUT_WORDS = 200

    def _input_words(self, prompt: str) -> int:
        words = count_words(prompt)
        if words == 0:
            raise InvalidArgumentError("Prompt is empty")
        return words

    async def optimize(self, user_id: str, prompt: str, category: str = "general") -> ToolRunResult:
        """Billed on input words plus min(1.5x input, 1000) expected output words."""
        input_words = self._input_words(prompt)
        billed_words = input_words + min(input_words * 3 // 2, self.MAX_OUTPUT_WORDS)

        async def call():
            result = await self.provider.generate(prompt, {
                "target_words": billed_words - input_words,
                "instructions": (
                    f"Rewrite this {category} prompt to be clearer, more specific and better "
                    f"scoped. Return only the improved prompt."
                ),
            })
            return {"optimized_prompt": result.content, "category": category}, input_words + result.word_count

        return await self._run(
            user_id, ToolType.PROMPT_ENGINEER, billed_words, call,
            title=_title(prompt), content=prompt,
            metadata={"category": category, "action": "optimize"},
        )

    async def analyze(self, user_id: str, prompt: str) -> ToolRunResult:
        input_words = self._input_words(prompt)
        billed_words = input_words + self.ANALYSIS_OUTPUT_WORDS

        async def call():
            result = await self.provider.generate(prompt, {
                "target_words": self.ANALYSIS_OUTPUT_WORDS,
                "instructions": PROMPT_ANALYSIS_INSTRUCTIONS,
            })
            return {"analysis": parse_analysis(result.content)}, None

        return await self._run(
            user_id, ToolType.PROMPT_ENGINEER, billed_words, call,
            title=_title(prompt), content=prompt,
            metadata={"action": "analyze"},
        )
