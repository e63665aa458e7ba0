"""
Gemini chat helper (google-generativeai).

LLM_API_KEY is the Google AI Studio key; LLM_MODEL the default model.
The SDK is synchronous, so calls run in the default thread pool.
"""
import asyncio
import logging
import os
from functools import partial
from typing import Optional

from assignsavvy.config import LLM_MODEL

logger = logging.getLogger(__name__)

LLM_API_KEY = os.environ.get("LLM_API_KEY")


def _model_name(model: Optional[str]) -> str:
    return model if model and model.startswith("gemini") else LLM_MODEL


def _sync_chat(
    system_prompt: str,
    user_text: str,
    model: str = LLM_MODEL,
    max_output_tokens: Optional[int] = None,
) -> str:
    import google.generativeai as genai
    if not LLM_API_KEY:
        raise ValueError("LLM_API_KEY not found in environment")
    genai.configure(api_key=LLM_API_KEY)

    generation_config = {"max_output_tokens": max_output_tokens} if max_output_tokens else None
    gemini = genai.GenerativeModel(
        _model_name(model),
        system_instruction=system_prompt,
        generation_config=generation_config,
    )
    response = gemini.generate_content(user_text)
    # response.text raises ValueError when the candidate was blocked
    text = response.text if response else ""
    if not text:
        raise ValueError("Empty response from LLM")
    return text


async def chat(
    system_prompt: str,
    user_text: str,
    model: str = LLM_MODEL,
    max_output_tokens: Optional[int] = None,
) -> str:
    """Single-turn completion. Errors from the SDK propagate to the caller."""
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(
        None,
        partial(_sync_chat, system_prompt, user_text, model, max_output_tokens),
    )


def strip_code_fence(text: str) -> str:
    """Remove a surrounding ```json ... ``` fence from a model reply."""
    cleaned = text.strip()
    if cleaned.startswith("```json"):
        cleaned = cleaned[7:]
    elif cleaned.startswith("```"):
        cleaned = cleaned[3:]
    if cleaned.endswith("```"):
        cleaned = cleaned[:-3]
    return cleaned.strip()
