import logging
import uuid
from abc import ABC, abstractmethod
from typing import Any, AsyncIterator, Dict, List, Optional, Set

from .. import events
from ..catalog import ModelCatalog, default_catalog
from ..citations import Citation, CitationTracker, format_citation, generate_footnotes
from ..control import AgentContext
from ..cost import CostTracker, ModelUsage
from ..delta_buffer import DeltaBuffer, buffer_delta, flush_buffered_deltas
from ..errors import ConfigurationError, ModelNotFoundError
from ..simulated_tools import parse_simulated_tool_calls, repair_json_arguments, safe_prefix_length, scrub_markers
from ..types import ResponseInput, StreamEvent, ToolCall, UsageSnapshot

logger = logging.getLogger(__name__)


def field_of(obj: Any, name: str, default: Any = None) -> Any:
    """Read ``name`` from an SDK object or a plain dict."""
    if obj is None:
        return default
    if isinstance(obj, dict):
        return obj.get(name, default)
    return getattr(obj, name, default)


class StreamState:
    """
    Bookkeeping for one assistant message while a provider stream is decoded.

    Keeps the invariants every adapter owes the caller: a single message id
    with increasing ``order``, deltas that concatenate to the final content,
    at most one ``message_complete``, tool ids surfaced once, and a cost
    report at the end.

    Args:
        provider (str): Provider id, used in log messages.
        model (str): Model id used for pricing.
        cost_tracker (CostTracker): Tracker that prices the final usage.
        guard_markers (bool): Hold back text that may turn into a
            ``TOOL_CALLS`` block so simulated calls can be stripped later.
    """

    def __init__(
        self,
        provider: str,
        model: str,
        cost_tracker: CostTracker,
        guard_markers: bool = False,
    ):
        self.provider = provider
        self.model = model
        self.cost_tracker = cost_tracker
        self.guard_markers = guard_markers

        self.message_id = str(uuid.uuid4())
        self.order = 0
        self.text = ""
        self.released = 0
        self.thinking = ""
        self.thinking_signature: Optional[str] = None
        self.buffers: Dict[str, DeltaBuffer] = {}
        self.citations = CitationTracker()
        self.seen_tool_ids: Set[str] = set()
        self.announced_tool_ids: Set[str] = set()
        self.usage: UsageSnapshot = {}
        self.usage_reported = False
        self.completed = False
        self.truncated = False

    # -------------------------------------------------------------------------
    # Text
    # -------------------------------------------------------------------------

    def _delta(self, content: str) -> StreamEvent:
        event = events.message_delta(content, self.message_id, self.order)
        self.order += 1
        return event

    def add_text(self, fragment: str) -> List[StreamEvent]:
        """Append upstream text and return any deltas ready for the caller."""
        if not fragment:
            return []
        self.text += fragment
        safe = safe_prefix_length(self.text) if self.guard_markers else len(self.text)
        if safe <= self.released:
            return []
        chunk = self.text[self.released:safe]
        self.released = safe
        return buffer_delta(self.buffers, self.message_id, chunk, self._delta)

    def add_citation(self, citation: Citation) -> List[StreamEvent]:
        return self.add_text(format_citation(self.citations, citation))

    def add_thinking(self, fragment: str) -> List[StreamEvent]:
        if not fragment:
            return []
        self.thinking += fragment
        event = events.message_delta("", self.message_id, self.order, thinking_content=fragment)
        self.order += 1
        return [event]

    def flush(self) -> List[StreamEvent]:
        return flush_buffered_deltas(self.buffers, lambda _id, content: self._delta(content))

    def flush_on_failure(self) -> List[StreamEvent]:
        """
        Buffered deltas to deliver before an upstream failure propagates.

        Once anything has been yielded the stream cannot be retried, so the
        text already released to the buffer is flushed. Before that nothing is
        returned and the request stays retryable.
        """
        if self.order == 0 or self.completed:
            return []
        return self.flush()

    @property
    def emitted_text(self) -> str:
        return self.text[:self.released]

    def complete(self, final_text: Optional[str] = None) -> List[StreamEvent]:
        """
        Close the message.

        Flushes buffered text, emits whatever part of ``final_text`` (default:
        all text received plus citation footnotes) has not been sent yet, then
        the single ``message_complete``. Nothing is emitted for a message
        that never had any text or thinking.
        """
        if self.completed:
            logger.warning("[%s] message %s already completed", self.provider, self.message_id)
            return []
        self.completed = True

        out = self.flush()
        if final_text is None:
            final_text = self.text + generate_footnotes(self.citations)

        sent = self.emitted_text
        if not final_text.startswith(sent):
            logger.error("[%s] final content diverges from streamed deltas", self.provider)
            final_text = sent
        remainder = final_text[len(sent):]
        if remainder:
            out.append(self._delta(remainder))

        if final_text or self.thinking:
            out.append(events.message_complete(
                final_text,
                self.message_id,
                thinking_content=self.thinking or None,
                thinking_signature=self.thinking_signature,
            ))
        return out

    def fail_truncated(self) -> List[StreamEvent]:
        """
        Close the message after the output token limit was hit.

        Buffered text is flushed but no ``message_complete`` follows; the
        caller gets one non-fatal ``FINISH_LENGTH`` error instead.
        """
        if self.completed:
            return []
        self.completed = True
        preview = scrub_markers(self.text)[:100]
        message = f"Error ({self.provider}): Response truncated (max_tokens). Partial: {preview}..."
        logger.warning(message)
        return self.flush() + [events.error_event(message, code="FINISH_LENGTH", recoverable=False)]

    def finish(self) -> List[StreamEvent]:
        """Close the message normally, or as truncated when the limit was hit."""
        return self.fail_truncated() if self.truncated else self.complete()

    def complete_with_simulated_tools(self) -> List[StreamEvent]:
        """
        Close the message, turning a trailing ``TOOL_CALLS`` block into tool calls.
        """
        result = parse_simulated_tool_calls(self.text)
        if not result.handled:
            return self.complete(result.content + generate_footnotes(self.citations))

        logger.debug("[%s] extracted %d simulated tool call(s)", self.provider, len(result.tool_calls))
        text = result.content if result.content.strip() or self.emitted_text else ""
        if text:
            text += generate_footnotes(self.citations)
        out = self.complete(text)
        for call in result.tool_calls:
            out.extend(self.start_tool(call))
        return out

    # -------------------------------------------------------------------------
    # Tools
    # -------------------------------------------------------------------------

    def tool_placeholder(self, tool_call: ToolCall) -> List[StreamEvent]:
        """Announce an in-flight call once, before its arguments are complete."""
        call_id = tool_call["id"]
        if call_id in self.seen_tool_ids or call_id in self.announced_tool_ids:
            return []
        self.announced_tool_ids.add(call_id)
        return [events.tool_delta(tool_call)]

    def start_tool(self, tool_call: ToolCall) -> List[StreamEvent]:
        """
        Validate and surface a finished tool call.

        Duplicate ids are suppressed. Arguments that are not valid JSON are
        repaired when possible, otherwise the call is dropped with a
        non-fatal error event.
        """
        call_id = tool_call["id"]
        if call_id in self.seen_tool_ids:
            logger.warning("[%s] duplicate tool call id %s suppressed", self.provider, call_id)
            return []

        arguments = repair_json_arguments(tool_call["function"].get("arguments"))
        if arguments is None:
            name = tool_call["function"]["name"]
            logger.warning("[%s] dropping tool call %s (%s) with invalid arguments", self.provider, call_id, name)
            return [events.error_event(
                f"Tool call '{name}' had invalid JSON arguments and was dropped",
                code="INVALID_TOOL_ARGUMENTS",
                recoverable=True,
            )]

        self.seen_tool_ids.add(call_id)
        call: ToolCall = {
            "id": call_id,
            "type": "function",
            "function": {"name": tool_call["function"]["name"], "arguments": arguments},
        }
        return [events.tool_start(call)]

    # -------------------------------------------------------------------------
    # Usage & Cost
    # -------------------------------------------------------------------------

    def set_usage(
        self,
        *,
        input_tokens: Optional[int] = None,
        output_tokens: Optional[int] = None,
        cached_tokens: Optional[int] = None,
    ) -> None:
        """Record usage figures; later values replace earlier ones field by field."""
        if input_tokens is not None:
            self.usage["input_tokens"] = input_tokens
        if output_tokens is not None:
            self.usage["output_tokens"] = output_tokens
        if cached_tokens is not None:
            self.usage["cached_tokens"] = cached_tokens

    def report_cost(self, image_count: int = 0) -> List[StreamEvent]:
        """Price the accumulated usage once and return the ``cost_update`` event."""
        if self.usage_reported:
            return []
        self.usage_reported = True

        estimated = not self.usage
        usage = ModelUsage(
            model=self.model,
            input_tokens=self.usage.get("input_tokens", 0),
            output_tokens=self.usage.get("output_tokens", 0),
            cached_tokens=self.usage.get("cached_tokens", 0),
            image_count=image_count,
            metadata={"provider": self.provider, "estimated": estimated},
        )
        snapshot: UsageSnapshot = {
            "input_tokens": usage.input_tokens,
            "output_tokens": usage.output_tokens,
            "total_tokens": usage.total_tokens,
            "cached_tokens": usage.cached_tokens,
        }
        try:
            usage = self.cost_tracker.add_usage(usage)
        except ModelNotFoundError:
            logger.warning("[%s] no catalog entry for '%s', cost not tracked", self.provider, self.model)
            return [events.cost_update(self.model, snapshot, 0.0, estimated=estimated, no_pricing=True)]

        return [events.cost_update(
            self.model, snapshot, usage.cost or 0.0,
            estimated=estimated, no_pricing=usage.no_pricing,
        )]


class BaseLLMProvider(ABC):
    """
    Abstract base class for streaming provider adapters.

    Subclasses translate the gateway's history into a vendor request and the
    vendor's stream back into ``StreamEvent`` dictionaries.
    """

    provider_id: str = "base"

    def __init__(
        self,
        api_key: Optional[str] = None,
        cost_tracker: Optional[CostTracker] = None,
    ):
        self.api_key = api_key
        self.client: Any = None
        self.cost_tracker = cost_tracker or CostTracker()
        self.catalog: ModelCatalog = default_catalog

    @abstractmethod
    def stream(
        self,
        history: ResponseInput,
        model: str,
        agent: AgentContext,
    ) -> AsyncIterator[StreamEvent]:
        """
        Stream a response for ``history``.

        Args:
            history (ResponseInput): Conversation so far.
            model (str): Model id, possibly with an effort suffix.
            agent (AgentContext): Settings, tools and control handles.

        Yields:
            StreamEvent: Events in delivery order.

        Raises:
            ProviderError: When the upstream stream fails unrecoverably.
            StreamAbortedError: When ``agent.abort`` fires.
        """

    def new_state(self, model: str, guard_markers: bool = False) -> StreamState:
        return StreamState(self.provider_id, model, self.cost_tracker, guard_markers)

    def require_client(self) -> Any:
        if self.client is None:
            raise ConfigurationError(
                f"{self.provider_id} client not configured (missing API key?)",
                details={"provider": self.provider_id},
            )
        return self.client

    @staticmethod
    def with_instructions(history: ResponseInput, agent: AgentContext) -> ResponseInput:
        """Prepend the agent's instructions as a system message."""
        if not agent.instructions:
            return list(history)
        return [{"type": "message", "role": "system", "content": agent.instructions}, *history]


    def record_usage(self, usage: ModelUsage) -> Optional[ModelUsage]:
        """Price a non-streaming call; models missing from the catalog are logged and skipped."""
        try:
            return self.cost_tracker.add_usage(usage)
        except ModelNotFoundError:
            logger.warning("[%s] no catalog entry for '%s', cost not tracked", self.provider_id, usage.model)
            return None
