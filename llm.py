"""
Streaming chat-completion client.

Wraps litellm.acompletion(stream=True) and normalizes each chunk into a
StreamDelta, so the conversation loop never touches provider-specific
response objects. Any LiteLLM-supported model works ("gpt-4o-mini",
"claude-sonnet-4-20250514", "openrouter/...").

Anything with the same `stream(model, messages, tools)` async-generator
method can stand in for the client (tests use scripted fakes).
"""

import logging
from dataclasses import dataclass, field
from typing import AsyncIterator, Protocol

import litellm

logger = logging.getLogger(__name__)

litellm.suppress_debug_info = True


@dataclass
class ToolCallDelta:
    """A fragment of a streamed tool call; fragments with the same index belong together."""
    index: int
    id: str | None = None
    name: str | None = None
    arguments: str | None = None


@dataclass
class StreamDelta:
    content: str | None = None
    tool_calls: list[ToolCallDelta] = field(default_factory=list)
    finish_reason: str | None = None


class ChatClient(Protocol):
    def stream(self, model: str, messages: list[dict], tools: list[dict] | None = None) -> AsyncIterator[StreamDelta]:
        ...


def is_transient_error(exc: Exception) -> bool:
    """Check if an exception is a transient LLM API error worth retrying.

    Covers 503 Service Unavailable, 429 Rate Limit, timeouts and
    connection-level failures that are likely to resolve on their own.
    """
    exc_type = type(exc).__name__

    if "ServiceUnavailable" in exc_type or "RateLimit" in exc_type:
        return True
    if "Timeout" in exc_type:
        return True
    if "APIConnectionError" in exc_type or "ConnectionError" in exc_type:
        return True

    exc_str = str(exc).lower()
    if "503" in exc_str or "service unavailable" in exc_str:
        return True
    if "429" in exc_str or "rate limit" in exc_str:
        return True
    if "connection refused" in exc_str or "connection reset" in exc_str:
        return True

    return False


class LiteLLMChatClient:
    """
    Streaming chat client backed by LiteLLM.

    Usage:
        client = LiteLLMChatClient(default_model="gpt-4o-mini")
        async for delta in client.stream(None, messages, tools):
            ...
    """

    def __init__(self, default_model: str | None = None, api_base: str | None = None,
                 temperature: float | None = None, max_tokens: int | None = None):
        self._default_model = default_model
        self._api_base = api_base
        self._temperature = temperature
        self._max_tokens = max_tokens

    async def stream(self, model: str | None, messages: list[dict],
                     tools: list[dict] | None = None) -> AsyncIterator[StreamDelta]:
        model = model or self._default_model
        if not model:
            raise ValueError("Model must be specified either in call or as default")

        call_kwargs = {"model": model, "messages": messages, "stream": True}
        if tools:
            call_kwargs["tools"] = tools
            call_kwargs["tool_choice"] = "auto"
        if self._api_base:
            call_kwargs["api_base"] = self._api_base
        if self._temperature is not None:
            call_kwargs["temperature"] = self._temperature
        if self._max_tokens is not None:
            call_kwargs["max_tokens"] = self._max_tokens

        response = await litellm.acompletion(**call_kwargs)
        async for chunk in response:
            if not chunk.choices:
                continue
            choice = chunk.choices[0]
            delta = choice.delta

            calls = []
            for tc in getattr(delta, "tool_calls", None) or []:
                fn = getattr(tc, "function", None)
                calls.append(ToolCallDelta(
                    index=getattr(tc, "index", None) or 0,
                    id=getattr(tc, "id", None),
                    name=getattr(fn, "name", None) if fn else None,
                    arguments=getattr(fn, "arguments", None) if fn else None,
                ))

            yield StreamDelta(
                content=getattr(delta, "content", None),
                tool_calls=calls,
                finish_reason=getattr(choice, "finish_reason", None),
            )
