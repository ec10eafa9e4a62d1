"""
MedMinder — LLM Provider Abstraction.

`complete()` routes a prompt to the provider named by LLM_PROVIDER, chosen
once at first use. `extract_json()` decodes the JSON a prompt asked for.
Supports: gemini (default), anthropic, openai.

Used for advisory coaching text and for classifying free-text commands.
Callers treat the output as untrusted, validate it, and fall back when a
call fails.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Awaitable, Callable

logger = logging.getLogger(__name__)

_ProviderFn = Callable[[str, str, str, str, int], Awaitable[str]]


class LLMUnavailable(Exception):
    """Raised when no API key is configured."""


async def _complete_gemini(api_key: str, model: str, system: str, user_message: str, max_tokens: int) -> str:
    import google.generativeai as genai

    genai.configure(api_key=api_key)
    gm = genai.GenerativeModel(model_name=model, system_instruction=system)
    response = await gm.generate_content_async(
        user_message,
        generation_config=genai.types.GenerationConfig(max_output_tokens=max_tokens),
    )
    return response.text


async def _complete_anthropic(api_key: str, model: str, system: str, user_message: str, max_tokens: int) -> str:
    import anthropic

    client = anthropic.AsyncAnthropic(api_key=api_key)
    response = await client.messages.create(
        model=model,
        max_tokens=max_tokens,
        system=system,
        messages=[{"role": "user", "content": user_message}],
    )
    return response.content[0].text


async def _complete_openai(api_key: str, model: str, system: str, user_message: str, max_tokens: int) -> str:
    from openai import AsyncOpenAI

    client = AsyncOpenAI(api_key=api_key)
    response = await client.chat.completions.create(
        model=model,
        max_tokens=max_tokens,
        messages=[
            {"role": "system", "content": system},
            {"role": "user", "content": user_message},
        ],
    )
    return response.choices[0].message.content or ""


_PROVIDERS: dict[str, tuple[_ProviderFn, str]] = {
    "gemini":    (_complete_gemini,    "gemini-2.0-flash"),
    "anthropic": (_complete_anthropic, "claude-haiku-4-5-20251001"),
    "openai":    (_complete_openai,    "gpt-4o-mini"),
}


def _select_provider() -> tuple[_ProviderFn, str, str]:
    """Read settings and return (provider_fn, model, api_key)."""
    from medminder.config import settings

    provider_name = settings.LLM_PROVIDER.lower()
    if provider_name not in _PROVIDERS:
        raise ValueError(
            f"Unknown LLM_PROVIDER={provider_name!r}. "
            f"Supported: {', '.join(_PROVIDERS)}"
        )
    if not settings.LLM_API_KEY:
        raise LLMUnavailable("LLM_API_KEY is not set")

    fn, default_model = _PROVIDERS[provider_name]
    model = settings.LLM_MODEL or default_model
    logger.info("LLM provider: %s, model: %s", provider_name, model)
    return fn, model, settings.LLM_API_KEY


# Chosen once, on the first successful call.
_selected: tuple[_ProviderFn, str, str] | None = None


def reset_provider() -> None:
    """Forget the cached provider so the next call re-reads settings."""
    global _selected
    _selected = None


async def complete(system: str, user_message: str, max_tokens: int = 512) -> str:
    """Send a prompt to the configured LLM provider and return the response text.

    Raises on configuration or API errors — callers should handle exceptions.
    """
    global _selected
    if _selected is None:
        _selected = _select_provider()
    fn, model, api_key = _selected
    return await fn(api_key, model, system, user_message, max_tokens)


# ---------------------------------------------------------------------------
# Reply decoding
# ---------------------------------------------------------------------------


def extract_json(raw: str) -> Any:
    """Decode the JSON object or array in a model reply.

    Models often wrap JSON in ``` fences or add a sentence around it, so
    everything outside the outermost brackets is dropped.
    Raises ValueError when the reply holds no JSON.
    """
    text = raw.strip()
    starts = [i for i in (text.find("{"), text.find("[")) if i != -1]
    if not starts:
        raise ValueError("No JSON in model reply")
    start = min(starts)
    end = text.rfind("}" if text[start] == "{" else "]")
    if end <= start:
        raise ValueError("Unterminated JSON in model reply")
    return json.loads(text[start:end + 1])
