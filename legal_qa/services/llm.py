# =============================================================================
# Multi-Provider LLM Abstraction — Pluggable AI Backend
# =============================================================================
#
# Provides a common interface for LLM completions, with concrete
# implementations for Anthropic (Claude) and OpenAI-compatible APIs
# (OpenAI, DeepSeek, Qwen, YandexGPT gateways, etc.).
#
# DESIGN DECISION: Protocol (structural typing) over ABC.
# Any class with the right `complete()` method works, which is what lets the
# tests inject a fake provider into the legal adviser.
#
# DESIGN DECISION: Native SDKs over LangChain wrappers.
# Direct control over request parameters (JSON mode in particular) and
# easier debugging.
#
# DESIGN DECISION: JSON mode is a request flag, not a separate provider.
# OpenAI-compatible APIs get `response_format={"type": "json_object"}`.
# Anthropic has no equivalent switch; the prompt already demands JSON and
# the adviser's parser falls back to plain text when it doesn't get any.
#
# DESIGN DECISION: Every SDK error is re-raised as ProviderError, so callers
# only handle one exception type for "the AI provider failed".
#
# ARCHITECTURE:
#   LLMProvider (Protocol)
#   ├── AnthropicProvider        — Claude via native Anthropic SDK
#   ├── OpenAICompatibleProvider — Any OpenAI-compatible API
#   ├── get_llm_provider()       — Singleton factory, reads from config
#   └── create_llm_provider()    — Non-singleton factory (Celery tasks)
# =============================================================================

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Protocol

from legal_qa.config import settings
from legal_qa.errors import ProviderError

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Data Structures
# ---------------------------------------------------------------------------


@dataclass
class LLMResponse:
    """
    Standardised response from any LLM provider.

    Normalises the different response formats (Anthropic vs OpenAI)
    into a single structure that downstream code can consume.
    """

    content: str           # The generated text
    model: str             # Model identifier (e.g., "gpt-4o")
    input_tokens: int      # Tokens consumed by the prompt
    output_tokens: int     # Tokens generated in the response


# ---------------------------------------------------------------------------
# Protocol Definition
# ---------------------------------------------------------------------------


class LLMProvider(Protocol):
    """
    Protocol defining the LLM provider interface.

    Both Anthropic and OpenAI-compatible implementations must provide
    the `complete()` method. Checked statically by mypy.
    """

    async def complete(
        self,
        messages: list[dict[str, str]],
        system: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
        json_mode: bool = False,
    ) -> LLMResponse:
        """
        Generate a completion from the LLM.

        Args:
            messages: Conversation messages as dicts with "role" and "content".
                Roles: "user", "assistant" (no "system"; use the system param).
            system: System prompt for the LLM. Handled differently per provider:
                - Anthropic: top-level `system=` kwarg
                - OpenAI: prepended as {"role": "system", ...} message
            temperature: Override sampling temperature (default from config).
            max_tokens: Override max output tokens (default from config).
            json_mode: Ask the provider for a JSON object where supported.

        Returns:
            LLMResponse with generated text and usage metrics.

        Raises:
            ProviderError: The provider call failed.
        """
        ...


# ---------------------------------------------------------------------------
# Implementation 1: Anthropic (Claude)
# ---------------------------------------------------------------------------


class AnthropicProvider:
    """
    Anthropic Claude provider using the native SDK.

    KEY API DIFFERENCE: Anthropic takes system prompts as a top-level
    `system=` kwarg, NOT as a message with role "system".
    """

    def __init__(
        self,
        api_key: str | None = None,
        model: str | None = None,
    ) -> None:
        from anthropic import AsyncAnthropic

        resolved_key = api_key or settings.llm_api_key or settings.anthropic_api_key
        if not resolved_key:
            raise ValueError(
                "No Anthropic API key configured. Set LLM_API_KEY or "
                "ANTHROPIC_API_KEY in .env"
            )

        self._client = AsyncAnthropic(api_key=resolved_key)
        self._model = model or settings.llm_model
        self._temperature = settings.llm_temperature
        self._max_tokens = settings.llm_max_tokens

        logger.info("Initialized AnthropicProvider (model=%s)", self._model)

    async def complete(
        self,
        messages: list[dict[str, str]],
        system: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
        json_mode: bool = False,
    ) -> LLMResponse:
        """Generate a completion using Claude."""
        from anthropic import AnthropicError

        kwargs: dict = {
            "model": self._model,
            "messages": messages,
            "max_tokens": max_tokens if max_tokens is not None else self._max_tokens,
            "temperature": temperature if temperature is not None else self._temperature,
        }

        # Anthropic: system prompt is a top-level kwarg, not a message
        if system:
            kwargs["system"] = system

        try:
            response = await self._client.messages.create(**kwargs)
        except AnthropicError as exc:
            raise ProviderError(f"Anthropic completion failed: {exc}") from exc

        # Extract text from the first content block
        content = ""
        for block in response.content:
            if block.type == "text":
                content = block.text
                break

        return LLMResponse(
            content=content,
            model=response.model,
            input_tokens=response.usage.input_tokens,
            output_tokens=response.usage.output_tokens,
        )


# ---------------------------------------------------------------------------
# Implementation 2: OpenAI-Compatible
# ---------------------------------------------------------------------------


class OpenAICompatibleProvider:
    """
    OpenAI-compatible provider for any API that follows the OpenAI API.

    Switching providers is a config change:
        LLM_PROVIDER=openai_compatible
        LLM_BASE_URL=https://api.deepseek.com/v1
        LLM_API_KEY=your-key
        LLM_MODEL=deepseek-chat
    """

    def __init__(
        self,
        api_key: str | None = None,
        model: str | None = None,
        base_url: str | None = None,
    ) -> None:
        from openai import AsyncOpenAI

        resolved_key = api_key or settings.llm_api_key or settings.openai_api_key
        if not resolved_key:
            raise ValueError(
                "No API key configured for OpenAI-compatible provider. "
                "Set LLM_API_KEY in .env"
            )

        client_kwargs: dict = {"api_key": resolved_key}
        resolved_base_url = base_url or settings.llm_base_url
        if resolved_base_url:
            client_kwargs["base_url"] = resolved_base_url

        self._client = AsyncOpenAI(**client_kwargs)
        self._model = model or settings.llm_model
        self._temperature = settings.llm_temperature
        self._max_tokens = settings.llm_max_tokens

        logger.info(
            "Initialized OpenAICompatibleProvider (model=%s, base_url=%s)",
            self._model,
            resolved_base_url or "https://api.openai.com/v1",
        )

    async def complete(
        self,
        messages: list[dict[str, str]],
        system: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
        json_mode: bool = False,
    ) -> LLMResponse:
        """Generate a completion using an OpenAI-compatible API."""
        from openai import OpenAIError

        # OpenAI: system prompt goes as the first message
        all_messages: list[dict[str, str]] = []
        if system:
            all_messages.append({"role": "system", "content": system})
        all_messages.extend(messages)

        kwargs: dict = {
            "model": self._model,
            "messages": all_messages,
            "max_tokens": max_tokens if max_tokens is not None else self._max_tokens,
            "temperature": temperature if temperature is not None else self._temperature,
        }
        if json_mode:
            kwargs["response_format"] = {"type": "json_object"}

        try:
            response = await self._client.chat.completions.create(**kwargs)
        except OpenAIError as exc:
            raise ProviderError(f"Completion request failed: {exc}") from exc

        content = response.choices[0].message.content or ""

        # Token counts: OpenAI uses different field names than Anthropic
        usage = response.usage
        input_tokens = usage.prompt_tokens if usage else 0
        output_tokens = usage.completion_tokens if usage else 0

        return LLMResponse(
            content=content,
            model=response.model or self._model,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
        )


# ---------------------------------------------------------------------------
# Factory Functions
# ---------------------------------------------------------------------------


def create_llm_provider() -> AnthropicProvider | OpenAICompatibleProvider:
    """
    Build a fresh provider from settings.

    Celery tasks call this instead of get_llm_provider(): each task runs
    its own event loop, and SDK clients must not outlive the loop they
    were created on.
    """
    if settings.llm_provider == "anthropic":
        return AnthropicProvider()
    return OpenAICompatibleProvider()


# Lazy singleton — avoid re-creating client on every request
_provider: AnthropicProvider | OpenAICompatibleProvider | None = None


def get_llm_provider() -> AnthropicProvider | OpenAICompatibleProvider:
    """
    Factory that returns the configured LLM provider for the API process.

    Reads `llm_provider` from settings:
    - "anthropic" → AnthropicProvider (Claude)
    - "openai_compatible" → OpenAICompatibleProvider (default)
    """
    global _provider
    if _provider is None:
        _provider = create_llm_provider()
    return _provider
