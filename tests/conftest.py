"""
Shared fixtures for the agentdeck test suite.

Provides temp directories, in-memory stores with offline hash embeddings,
environment variable management and a scripted chat client. Nothing here
touches the network: litellm, Playwright and httpx are always faked.
"""

import os
import sys
from pathlib import Path
from unittest.mock import patch

import pytest

# Ensure the project root is on sys.path so tests can import project modules
PROJECT_ROOT = Path(__file__).resolve().parent.parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from llm import StreamDelta, ToolCallDelta  # noqa: E402
from memory.embeddings import HashEmbeddings  # noqa: E402
from memory.notes import NoteStore  # noqa: E402
from memory.store import VectorStore  # noqa: E402
from storage import AgentStore  # noqa: E402

TEST_DIM = 256


# =============================================================================
# Scripted chat client
# =============================================================================


def text_reply(*chunks: str) -> list[StreamDelta]:
    """A streamed text answer split into the given chunks."""
    return [StreamDelta(content=c) for c in chunks] + [StreamDelta(finish_reason="stop")]


def tool_reply(*calls: tuple, content: str = None) -> list[StreamDelta]:
    """
    A streamed answer asking for tool calls.

    Each call is (name, arguments_json) or (name, arguments_json, call_id).
    Arguments are streamed in two fragments to exercise accumulation.
    """
    deltas = [StreamDelta(content=content)] if content else []
    for index, call in enumerate(calls):
        name, arguments = call[0], call[1]
        call_id = call[2] if len(call) > 2 else f"call_{index}"
        half = len(arguments) // 2
        deltas.append(StreamDelta(tool_calls=[ToolCallDelta(index=index, id=call_id, name=name, arguments=arguments[:half])]))
        deltas.append(StreamDelta(tool_calls=[ToolCallDelta(index=index, arguments=arguments[half:])]))
    deltas.append(StreamDelta(finish_reason="tool_calls"))
    return deltas


class ScriptedChatClient:
    """
    Chat client that replays a script of responses.

    Each script entry is a list of StreamDelta (an Exception instance inside
    the list is raised at that point of the stream) or an Exception (raised
    before anything streams). When the script runs out, a plain "done"
    answer is returned.
    """

    def __init__(self, script: list = None):
        self.script = list(script or [])
        self.calls: list[dict] = []

    async def stream(self, model, messages, tools=None):
        self.calls.append({
            "model": model,
            "messages": [dict(m) for m in messages],
            "tools": tools,
        })
        entry = self.script.pop(0) if self.script else text_reply("done")
        if isinstance(entry, Exception):
            raise entry
        for item in entry:
            if isinstance(item, Exception):
                raise item
            yield item


async def no_sleep(seconds: float):
    return None


class FakeClock:
    """Monotonic clock that advances by `step` seconds on every read."""

    def __init__(self, step: float = 0.0, start: float = 1000.0):
        self.now = start
        self.step = step

    def __call__(self) -> float:
        value = self.now
        self.now += self.step
        return value


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def tmp_dir(tmp_path):
    """Provide a temporary directory that is cleaned up after the test."""
    return tmp_path


@pytest.fixture
def config_dir(tmp_path):
    """Provide a temporary directory for config files."""
    d = tmp_path / "config"
    d.mkdir()
    return d


@pytest.fixture
def clean_env():
    """Temporarily clear agentdeck and provider env vars to avoid side effects."""
    keys = [
        "OPENAI_API_KEY", "SEARXNG_URL",
        "AGENTDECK_CONFIG", "AGENTDECK_HOME", "AGENTDECK_MODEL",
        "AGENTDECK_EMBEDDINGS", "AGENTDECK_LOG_LEVEL", "AGENTDECK_TIMEZONE",
    ]
    saved = {}
    for key in keys:
        if key in os.environ:
            saved[key] = os.environ.pop(key)
    yield
    # Restore
    for key, val in saved.items():
        os.environ[key] = val
    for key in keys:
        if key not in saved and key in os.environ:
            del os.environ[key]


@pytest.fixture
def mock_openai_key():
    """Set a fake OPENAI_API_KEY for tests that need provider detection."""
    with patch.dict(os.environ, {"OPENAI_API_KEY": "sk-test-key-123"}):
        yield


@pytest.fixture
def embeddings():
    return HashEmbeddings(dim=TEST_DIM)


@pytest.fixture
def vector_store(embeddings):
    """In-memory vector store with offline hash embeddings."""
    store = VectorStore(":memory:", provider=embeddings, dim=TEST_DIM)
    yield store
    store.close()


@pytest.fixture
def notes(tmp_path):
    return NoteStore(tmp_path / "notes")


@pytest.fixture
def agent_store():
    store = AgentStore(":memory:")
    yield store
    store.close()


@pytest.fixture
def make_client():
    """Factory for scripted chat clients."""
    return ScriptedChatClient
