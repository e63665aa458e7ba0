"""Generation and detection providers.

Orchestrators only talk to GenerationProvider; the Gemini implementation
wraps utils/llm_chat. Providers raise on failure and never retry.
"""
from abc import ABC, abstractmethod
from typing import Dict, Any, Optional, Callable, Awaitable
import json
import logging

from assignsavvy.config import LLM_MODEL
from assignsavvy.models.tools import GenerationResult, DetectionResult, DetectionIssue
from assignsavvy.services.plan_registry import count_words
from utils.llm_chat import chat, strip_code_fence

logger = logging.getLogger(__name__)


# Output token budget per requested word
TOKENS_PER_WORD = 2
MIN_OUTPUT_TOKENS = 512


class ProviderError(Exception):
    """Provider returned nothing usable."""
    pass


class GenerationProvider(ABC):
    @abstractmethod
    async def generate(self, prompt: str, constraints: Dict[str, Any]) -> GenerationResult:
        """Produce text for prompt. constraints carries target_words, style, etc."""

    @abstractmethod
    async def detect(self, text: str) -> DetectionResult:
        """Score originality of text (0-100) and list suspicious passages."""


GENERATION_SYSTEM_PROMPT = """You are AssignSavvy, an academic writing assistant.
Write original, well-structured prose in the requested style.
Aim for approximately {target_words} words.
Return only the requested text with no preamble."""

DETECTION_SYSTEM_PROMPT = """You review text for signs of AI generation or copied material.
Respond with a JSON object only:
{"originality_score": <0-100, higher is more original>,
 "issues": [{"excerpt": "...", "reason": "...", "severity": "low|medium|high"}]}"""


class GeminiProvider(GenerationProvider):
    """Gemini via utils.llm_chat.chat."""

    def __init__(
        self,
        model: str = LLM_MODEL,
        chat_fn: Optional[Callable[..., Awaitable[str]]] = None,
    ):
        self.model = model
        self._chat = chat_fn or chat

    async def generate(self, prompt: str, constraints: Dict[str, Any]) -> GenerationResult:
        target_words = constraints.get("target_words", 500)
        system_prompt = GENERATION_SYSTEM_PROMPT.format(target_words=target_words)
        if constraints.get("style"):
            system_prompt += f"\nStyle: {constraints['style']}."
        if constraints.get("instructions"):
            system_prompt += f"\n{constraints['instructions']}"

        content = await self._chat(
            system_prompt,
            prompt,
            model=self.model,
            max_output_tokens=max(MIN_OUTPUT_TOKENS, target_words * TOKENS_PER_WORD),
        )
        content = content.strip()
        if not content:
            raise ProviderError("Empty generation result")
        return GenerationResult(content=content, word_count=count_words(content))

    async def detect(self, text: str) -> DetectionResult:
        response = await self._chat(DETECTION_SYSTEM_PROMPT, text, model=self.model)
        try:
            data = json.loads(strip_code_fence(response))
        except json.JSONDecodeError as e:
            logger.error(f"Failed to parse detection response as JSON: {e}")
            raise ProviderError("Detection response was not valid JSON") from e

        try:
            score = float(data.get("originality_score"))
        except (TypeError, ValueError) as e:
            raise ProviderError("Detection response missing originality_score") from e

        issues = [
            DetectionIssue(**issue)
            for issue in data.get("issues", [])
            if isinstance(issue, dict)
        ]
        return DetectionResult(originality_score=max(0.0, min(score, 100.0)), issues=issues)
