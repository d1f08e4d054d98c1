import asyncio
import logging
from collections import deque
from dataclasses import dataclass, field
from typing import AsyncIterator, Deque, Dict, List, Optional

from .base import BaseLLMProvider
from ..control import AgentContext
from ..cost import CostTracker
from ..errors import StreamAbortedError
from ..types import ResponseInput, StreamEvent, ToolCall
from ..utils import content_to_text

logger = logging.getLogger(__name__)


@dataclass
class ScriptedResponse:
    """
    One canned answer for ``ScriptedProvider``.

    Args:
        chunks: Text fragments streamed in order.
        thinking: Reasoning streamed before the text.
        tool_calls: Native tool calls surfaced after the text. Arguments may
            be malformed to exercise repair.
        error: Raised after ``fail_after`` chunks have been streamed.
        fail_after: Number of chunks to stream before ``error`` is raised.
        usage: Token usage to report; an estimated zero usage when omitted.
    """
    chunks: List[str] = field(default_factory=list)
    thinking: str = ""
    tool_calls: List[ToolCall] = field(default_factory=list)
    error: Optional[BaseException] = None
    fail_after: int = 0
    usage: Optional[Dict[str, int]] = None


class ScriptedProvider(BaseLLMProvider):
    """
    Offline provider for ``test-`` models.

    Plays queued ``ScriptedResponse`` objects one per ``stream`` call. With
    nothing queued it echoes the last user message. Text goes through the
    same marker guard and TOOL_CALLS extraction as the OpenAI adapter.
    """

    provider_id = "test"

    def __init__(
        self,
        responses: Optional[List[ScriptedResponse]] = None,
        cost_tracker: Optional[CostTracker] = None,
        chunk_delay: float = 0.0,
    ):
        super().__init__(None, cost_tracker)
        self.responses: Deque[ScriptedResponse] = deque(responses or [])
        self.chunk_delay = chunk_delay
        self.calls = 0

    def add_response(self, response: ScriptedResponse) -> None:
        self.responses.append(response)

    @staticmethod
    def _echo(history: ResponseInput) -> ScriptedResponse:
        for item in reversed(history):
            if item.get("type", "message") == "message" and item.get("role") == "user":
                return ScriptedResponse(chunks=[f"You said: {content_to_text(item.get('content'))}"])
        return ScriptedResponse(chunks=["Hello from the test model."])

    async def stream(
        self,
        history: ResponseInput,
        model: str,
        agent: AgentContext,
    ) -> AsyncIterator[StreamEvent]:
        self.calls += 1
        script = self.responses.popleft() if self.responses else self._echo(history)
        state = self.new_state(model, guard_markers=True)

        await agent.checkpoint()
        if script.error is not None and script.fail_after == 0:
            raise script.error

        for event in state.add_thinking(script.thinking):
            yield event

        try:
            for i, chunk in enumerate(script.chunks, start=1):
                if self.chunk_delay:
                    await asyncio.sleep(self.chunk_delay)
                await agent.checkpoint()
                for event in state.add_text(chunk):
                    yield event
                if script.error is not None and i == script.fail_after:
                    logger.debug("[%s] scripted failure after %d chunk(s)", self.provider_id, i)
                    raise script.error
        except StreamAbortedError:
            raise
        except Exception:
            for event in state.flush_on_failure():
                yield event
            raise

        if script.tool_calls:
            out: List[StreamEvent] = []
            if state.text:
                out.extend(state.complete())
            for call in script.tool_calls:
                out.extend(state.tool_placeholder(call))
                out.extend(state.start_tool(call))
        else:
            out = state.complete_with_simulated_tools()
        for event in out:
            yield event

        if script.usage is not None:
            state.set_usage(
                input_tokens=script.usage.get("input_tokens", 0),
                output_tokens=script.usage.get("output_tokens", 0),
                cached_tokens=script.usage.get("cached_tokens", 0),
            )
        for event in state.report_cost():
            yield event
