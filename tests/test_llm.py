"""
Unit tests for llm.py

Tests cover:
- Streamed litellm chunks normalized into StreamDelta
- Tool-call fragments carried through with their index
- Request keyword arguments (tools, tool_choice, api_base, model default)
- Transient error classification
"""

from types import SimpleNamespace
from unittest.mock import AsyncMock, patch

import pytest

from llm import LiteLLMChatClient, StreamDelta, ToolCallDelta, is_transient_error


def chunk(content=None, tool_calls=None, finish_reason=None):
    delta = SimpleNamespace(content=content, tool_calls=tool_calls)
    return SimpleNamespace(choices=[SimpleNamespace(delta=delta, finish_reason=finish_reason)])


def call_fragment(index, id=None, name=None, arguments=None):
    return SimpleNamespace(index=index, id=id, function=SimpleNamespace(name=name, arguments=arguments))


async def stream_of(*chunks):
    for c in chunks:
        yield c


async def collect(client, *args, **kwargs):
    return [d async for d in client.stream(*args, **kwargs)]


class TestLiteLLMChatClient:
    """Streaming through a patched litellm.acompletion."""

    @pytest.mark.asyncio
    async def test_text_stream(self):
        response = stream_of(chunk("Hel"), chunk("lo"), SimpleNamespace(choices=[]), chunk(finish_reason="stop"))
        with patch("litellm.acompletion", new=AsyncMock(return_value=response)) as completion:
            deltas = await collect(LiteLLMChatClient(), "gpt-4o-mini", [{"role": "user", "content": "hi"}])

        assert deltas == [
            StreamDelta(content="Hel"),
            StreamDelta(content="lo"),
            StreamDelta(finish_reason="stop"),
        ]
        kwargs = completion.call_args.kwargs
        assert kwargs["model"] == "gpt-4o-mini"
        assert kwargs["stream"] is True
        assert "tools" not in kwargs

    @pytest.mark.asyncio
    async def test_tool_call_fragments(self):
        response = stream_of(
            chunk(tool_calls=[call_fragment(0, id="call_a", name="search_web", arguments='{"qu')]),
            chunk(tool_calls=[call_fragment(0, arguments='ery": "x"}')]),
            chunk(tool_calls=[call_fragment(1, id="call_b", name="read_note", arguments="{}")]),
            chunk(finish_reason="tool_calls"),
        )
        tools = [{"type": "function", "function": {"name": "search_web", "parameters": {}}}]
        with patch("litellm.acompletion", new=AsyncMock(return_value=response)) as completion:
            deltas = await collect(LiteLLMChatClient(), "m", [], tools)

        assert deltas[0].tool_calls == [ToolCallDelta(0, "call_a", "search_web", '{"qu')]
        assert deltas[1].tool_calls == [ToolCallDelta(0, None, None, 'ery": "x"}')]
        assert deltas[2].tool_calls[0].index == 1
        assert deltas[3].finish_reason == "tool_calls"
        assert completion.call_args.kwargs["tools"] == tools
        assert completion.call_args.kwargs["tool_choice"] == "auto"

    @pytest.mark.asyncio
    async def test_default_model_and_options(self):
        with patch("litellm.acompletion", new=AsyncMock(return_value=stream_of())) as completion:
            client = LiteLLMChatClient(default_model="claude-sonnet-4-20250514", api_base="http://proxy", temperature=0.2)
            await collect(client, None, [])

        kwargs = completion.call_args.kwargs
        assert kwargs["model"] == "claude-sonnet-4-20250514"
        assert kwargs["api_base"] == "http://proxy"
        assert kwargs["temperature"] == 0.2
        assert "max_tokens" not in kwargs

    @pytest.mark.asyncio
    async def test_model_required(self):
        with pytest.raises(ValueError):
            await collect(LiteLLMChatClient(), None, [])


class TestTransientErrors:
    """is_transient_error classification."""

    @pytest.mark.parametrize("exc", [
        type("ServiceUnavailableError", (Exception,), {})("down"),
        type("RateLimitError", (Exception,), {})("slow down"),
        TimeoutError("read timed out"),
        ConnectionError("reset"),
        RuntimeError("HTTP 503 from upstream"),
        RuntimeError("429 Too Many Requests"),
        OSError("Connection refused"),
    ])
    def test_transient(self, exc):
        assert is_transient_error(exc) is True

    @pytest.mark.parametrize("exc", [
        ValueError("invalid api key"),
        RuntimeError("400 bad request: context length exceeded"),
    ])
    def test_permanent(self, exc):
        assert is_transient_error(exc) is False
