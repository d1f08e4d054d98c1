import pytest
from types import SimpleNamespace

from streamux.config import Settings
from streamux.control import AgentContext


@pytest.fixture
def mock_env(monkeypatch):
    """Mock environment variables for API keys."""
    monkeypatch.setenv("OPENAI_API_KEY", "sk-test-openai")
    monkeypatch.setenv("ANTHROPIC_API_KEY", "sk-test-anthropic")
    monkeypatch.setenv("GOOGLE_API_KEY", "AIza-test-google")
    monkeypatch.setenv("DEEPSEEK_API_KEY", "sk-test-deepseek")
    monkeypatch.setenv("OPENROUTER_API_KEY", "sk-test-openrouter")


@pytest.fixture
def settings():
    """Settings with fake keys that never touch the environment."""
    return Settings(
        openai_api_key="sk-test-openai",
        anthropic_api_key="sk-test-anthropic",
        google_api_key="AIza-test-google",
        deepseek_api_key="sk-test-deepseek",
        openrouter_api_key="sk-test-openrouter",
    )


@pytest.fixture
def agent():
    return AgentContext(agent_id="test-agent")


@pytest.fixture
def collect():
    """Drain an async event stream into a list."""
    async def _collect(stream):
        return [event async for event in stream]
    return _collect


class FakeStream:
    """Async iterator over prepared chunks, like an SDK stream response."""

    def __init__(self, chunks, error=None):
        self._chunks = list(chunks)
        self._error = error

    def __aiter__(self):
        return self._iter()

    async def _iter(self):
        for chunk in self._chunks:
            yield chunk
        if self._error is not None:
            raise self._error


@pytest.fixture
def fake_stream():
    return FakeStream


@pytest.fixture
def openai_chunk():
    """Build a chat-completions stream chunk."""
    def _chunk(content=None, finish_reason=None, tool_calls=None, usage=None, **delta_fields):
        delta = SimpleNamespace(content=content, tool_calls=tool_calls, **delta_fields)
        choice = SimpleNamespace(delta=delta, finish_reason=finish_reason)
        return SimpleNamespace(choices=[choice], usage=usage)
    return _chunk
