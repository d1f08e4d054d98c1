import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional, Set, Union

from .catalog import ModelCatalog, default_catalog, split_effort_suffix
from .config import Settings
from .control import AgentContext, abortable
from .cost import CostResolver, CostTracker
from .errors import ConfigurationError, StreamAbortedError, ToolExecutionError
from .events import error_event
from .providers import (
    AnthropicProvider,
    BaseLLMProvider,
    DeepSeekProvider,
    GeminiProvider,
    OpenAIProvider,
    OpenRouterProvider,
    ScriptedProvider,
    provider_for_model,
)
from .queue import SequentialQueue, sequential_queue
from .request_log import LoggingRequestLogger, RequestLogger
from .retry import RetryOptions, retry_stream_with_backoff, retry_with_backoff
from .types import (
    ErrorEvent,
    FileEvent,
    FunctionCallOutputMessage,
    ResponseInput,
    StreamEvent,
    ToolCall,
    UsageSnapshot,
)
from .utils import create_function_call_output

logger = logging.getLogger(__name__)

ToolHandler = Callable[[Dict[str, Any]], Union[Any, Awaitable[Any]]]

TOOL_TIMEOUT = 30.0  # seconds
MAX_TOOL_RESULT_LENGTH = 5000  # characters

# Provider id -> adapter class built on demand from Settings
PROVIDER_CLASSES = {
    "openai": OpenAIProvider,
    "anthropic": AnthropicProvider,
    "google": GeminiProvider,
    "deepseek": DeepSeekProvider,
    "openrouter": OpenRouterProvider,
}


@dataclass
class RequestResult:
    """
    Everything one request produced, collected from its event stream.
    """
    model: str
    text: str = ""
    thinking: str = ""
    tool_calls: List[ToolCall] = field(default_factory=list)
    files: List[FileEvent] = field(default_factory=list)
    cost: float = 0.0
    usage: UsageSnapshot = field(default_factory=dict)
    errors: List[ErrorEvent] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not any(e.get("fatal") for e in self.errors)


class Gateway:
    """
    Single entry point for streaming requests to any supported provider.

    The gateway resolves the model id, picks an adapter, drives the stream
    through the retry engine and turns unrecoverable failures into a final
    fatal ``error`` event.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        providers: Optional[Dict[str, BaseLLMProvider]] = None,
        catalog: Optional[ModelCatalog] = None,
        cost_tracker: Optional[CostTracker] = None,
        request_logger: Optional[RequestLogger] = None,
        retry_options: Optional[RetryOptions] = None,
        tool_timeout: Optional[float] = TOOL_TIMEOUT,
        untimed_tools: Optional[Set[str]] = None,
        max_tool_result_length: Optional[int] = MAX_TOOL_RESULT_LENGTH,
    ):
        """
        Initialize the gateway.

        Args:
            settings: API keys and defaults. Loaded from the environment and
                ``.env`` when omitted.
            providers: Pre-built adapters keyed by provider id. Missing
                providers are created lazily from ``settings``.
            catalog: Model registry used for alias resolution and pricing.
            cost_tracker: Shared tracker; every adapter reports into it.
            request_logger: Receives one request/response record per call.
            retry_options: Backoff policy for stream and non-stream calls.
            tool_timeout: Seconds a tool handler may run before its output
                becomes a timeout error. ``None`` disables the limit.
            untimed_tools: Tool names that are never timed out.
            max_tool_result_length: Longer tool outputs are truncated.
                ``None`` keeps them whole.
        """
        self.settings = settings or Settings.from_env()
        self.catalog = catalog or default_catalog
        self.cost_tracker = cost_tracker or CostTracker(CostResolver(self.catalog))
        self.request_logger = request_logger or LoggingRequestLogger()
        self.retry_options = retry_options or RetryOptions(max_retries=self.settings.max_retries)
        self.tool_timeout = tool_timeout
        self.untimed_tools: Set[str] = set(untimed_tools or ())
        self.max_tool_result_length = max_tool_result_length
        self.queue: SequentialQueue = sequential_queue
        self.providers: Dict[str, BaseLLMProvider] = {}
        for provider_id, provider in (providers or {}).items():
            self.register_provider(provider_id, provider)

    # ==========================================================================
    # Providers & Models
    # ==========================================================================

    def register_provider(self, provider_id: str, provider: BaseLLMProvider) -> None:
        provider.cost_tracker = self.cost_tracker
        provider.catalog = self.catalog
        self.providers[provider_id] = provider

    def get_provider(self, provider_id: str) -> BaseLLMProvider:
        """
        Return the adapter for ``provider_id``, creating it on first use.

        Raises:
            ConfigurationError: If the provider id is unknown.
        """
        provider = self.providers.get(provider_id)
        if provider is not None:
            return provider

        if provider_id == "test":
            provider = ScriptedProvider()
        elif provider_id in PROVIDER_CLASSES:
            provider = PROVIDER_CLASSES[provider_id](self.settings.api_key_for(provider_id))
        else:
            raise ConfigurationError(f"Provider '{provider_id}' not supported.", details={"provider": provider_id})
        self.register_provider(provider_id, provider)
        return provider

    def resolve_model(self, model: str) -> str:
        """
        Map an alias to its canonical id, keeping any effort suffix.

        ``"claude-sonnet-4-high"`` becomes ``"claude-sonnet-4-20250514-high"``.
        Unknown ids are returned unchanged.
        """
        entry = self.catalog.find_model(model)
        if entry is None:
            return model
        base_model, effort = split_effort_suffix(model)
        if effort and self.catalog.find_model(base_model) is entry:
            return f"{entry.id}-{effort}"
        return entry.id

    # ==========================================================================
    # Streaming
    # ==========================================================================

    @staticmethod
    def _allowed(event: StreamEvent, agent: AgentContext) -> bool:
        if agent.allowed_events is None:
            return True
        # Fatal errors always reach the caller
        if event["type"] == "error" and event.get("fatal"):
            return True
        return event["type"] in agent.allowed_events

    async def stream(
        self,
        history: ResponseInput,
        model: str,
        agent: Optional[AgentContext] = None,
    ) -> AsyncIterator[StreamEvent]:
        """
        Stream one request as gateway events.

        Transient failures before the first event are retried. Any other
        failure ends the stream with a fatal ``error`` event. An abort
        raises ``StreamAbortedError`` instead.

        Args:
            history (ResponseInput): Conversation so far.
            model (str): Model id, alias, or either with an effort suffix.
            agent (AgentContext, optional): Settings, tools and control handles.

        Yields:
            StreamEvent: Events in delivery order.
        """
        agent = agent or AgentContext()
        resolved = self.resolve_model(model)
        provider_id = provider_for_model(resolved, self.catalog)
        request_id = self.request_logger.log_request(
            agent.agent_id, provider_id, resolved,
            {"history": history, "settings": agent.settings, "tools": [t["function"]["name"] for t in agent.tools]},
        )
        counts: Dict[str, int] = {}

        try:
            provider = self.get_provider(provider_id)
            events = retry_stream_with_backoff(
                lambda: provider.stream(history, resolved, agent),
                self.retry_options,
            )
            async for event in abortable(events, agent.abort):
                counts[event["type"]] = counts.get(event["type"], 0) + 1
                if self._allowed(event, agent):
                    yield event
        except StreamAbortedError as e:
            self.request_logger.log_error(request_id, e)
            raise
        except Exception as e:
            logger.error("[%s] %s stream failed: %s", provider_id, resolved, e)
            self.request_logger.log_error(request_id, e)
            yield error_event(
                str(e),
                fatal=True,
                code=getattr(e, "code", None) or type(e).__name__,
                recoverable=bool(getattr(e, "recoverable", False)),
            )
            return

        self.request_logger.log_response(request_id, {"model": resolved, "events": counts})

    async def request(
        self,
        history: ResponseInput,
        model: str,
        agent: Optional[AgentContext] = None,
    ) -> RequestResult:
        """
        Run a request to completion and collect its output.

        Returns:
            RequestResult: Final text, thinking, tool calls, files, cost and
            any error events.
        """
        result = RequestResult(model=model)
        async for event in self.stream(history, model, agent):
            kind = event["type"]
            if kind == "message_complete":
                result.text += event.get("content", "")
                result.thinking += event.get("thinking_content", "")
            elif kind == "tool_start":
                result.tool_calls.append(event["tool_call"])
            elif kind == "file_complete":
                result.files.append(event)
            elif kind == "cost_update":
                result.cost += event.get("cost", 0.0)
                for key, value in event.get("usage", {}).items():
                    result.usage[key] = result.usage.get(key, 0) + value
            elif kind == "error":
                result.errors.append(event)
        return result

    # ==========================================================================
    # Tool Execution
    # ==========================================================================

    async def _execute_tool_call(self, tool_call: ToolCall, handlers: Dict[str, ToolHandler]) -> Any:
        name = tool_call["function"]["name"]
        handler = handlers.get(name)
        if handler is None:
            raise ToolExecutionError(name, f"No handler for tool '{name}'")
        try:
            arguments = json.loads(tool_call["function"]["arguments"] or "{}")
            result = handler(arguments)
            if asyncio.iscoroutine(result):
                result = await self._await_tool(name, result)
        except ToolExecutionError:
            raise
        except Exception as e:
            raise ToolExecutionError(name, f"Error executing tool '{name}': {e}") from e
        return result

    async def _await_tool(self, name: str, pending: Awaitable[Any]) -> Any:
        timeout = None if name in self.untimed_tools else self.tool_timeout
        try:
            return await asyncio.wait_for(pending, timeout)
        except asyncio.TimeoutError as e:
            raise ToolExecutionError(name, f"Tool '{name}' timed out after {timeout:g}s") from e

    async def _tool_output(self, tool_call: ToolCall, handlers: Dict[str, ToolHandler]) -> FunctionCallOutputMessage:
        try:
            output = await self._execute_tool_call(tool_call, handlers)
        except ToolExecutionError as e:
            logger.warning("Tool call %s failed: %s", tool_call["id"], e)
            output = f"Error: {e}"

        item = create_function_call_output(tool_call, output)
        limit = self.max_tool_result_length
        if limit is not None and len(item["output"]) > limit:
            logger.debug("Truncating %d-character output of %s", len(item["output"]), tool_call["id"])
            item["output"] = item["output"][:limit] + f"\n\n... Output truncated to {limit} characters"
        return item

    async def run_tools(
        self,
        tool_calls: List[ToolCall],
        handlers: Dict[str, ToolHandler],
        agent: Optional[AgentContext] = None,
    ) -> List[FunctionCallOutputMessage]:
        """
        Execute tool calls and return their outputs as history items.

        Calls run concurrently unless ``agent.sequential_tools`` is set, in
        which case they are serialized per agent through the sequential
        queue. Handler failures and timeouts become error text in the
        output, and outputs over ``max_tool_result_length`` are truncated.

        Args:
            tool_calls (List[ToolCall]): Calls from ``tool_start`` events.
            handlers (Dict[str, ToolHandler]): Tool name to function (sync or
                async) taking the parsed arguments.
            agent (AgentContext, optional): Owner of the calls.

        Returns:
            List[FunctionCallOutputMessage]: One output per call, in order.
        """
        agent = agent or AgentContext()
        if agent.sequential_tools:
            return [
                await self.queue.run_sequential(
                    agent.agent_id, lambda call=call: self._tool_output(call, handlers),
                )
                for call in tool_calls
            ]
        return list(await asyncio.gather(*(self._tool_output(call, handlers) for call in tool_calls)))

    # ==========================================================================
    # Non-chat Capabilities
    # ==========================================================================

    def _capable_provider(self, model: str, capability: str) -> Callable[..., Awaitable[Any]]:
        provider_id = provider_for_model(model, self.catalog)
        method = getattr(self.get_provider(provider_id), capability, None)
        if method is None:
            raise ConfigurationError(
                f"Provider '{provider_id}' does not support {capability}",
                details={"provider": provider_id, "model": model},
            )
        return method

    async def embed(
        self,
        input: Union[str, List[str]],
        model: str = "text-embedding-3-small",
        dimensions: Optional[int] = None,
    ) -> List[List[float]]:
        model = self.resolve_model(model)
        method = self._capable_provider(model, "create_embedding")
        return await retry_with_backoff(lambda: method(input, model=model, dimensions=dimensions), self.retry_options)

    async def image(self, prompt: str, model: str = "gpt-image-1", **kwargs: Any) -> List[str]:
        """Generate images; returns base64 strings."""
        model = self.resolve_model(model)
        method = self._capable_provider(model, "create_image")
        return await retry_with_backoff(lambda: method(prompt, model=model, **kwargs), self.retry_options)

    async def voice(self, text: str, model: str = "tts-1", **kwargs: Any) -> bytes:
        model = self.resolve_model(model)
        method = self._capable_provider(model, "create_voice")
        return await retry_with_backoff(lambda: method(text, model=model, **kwargs), self.retry_options)

    async def transcribe(self, audio: bytes, model: str = "whisper-1", **kwargs: Any) -> str:
        model = self.resolve_model(model)
        method = self._capable_provider(model, "create_transcription")
        return await retry_with_backoff(lambda: method(audio, model=model, **kwargs), self.retry_options)
