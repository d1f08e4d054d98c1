import asyncio

import pytest

from streamux.catalog import ModelCatalog, ModelEntry, ModelFeatures
from streamux.client import Gateway
from streamux.config import Settings
from streamux.control import AgentContext
from streamux.errors import ConfigurationError, ProviderError, StreamAbortedError
from streamux.providers import AnthropicProvider, BaseLLMProvider, OpenAIProvider, ScriptedProvider, ScriptedResponse
from streamux.retry import RetryOptions

HISTORY = [{"type": "message", "role": "user", "content": "hi"}]


class RecordingRequestLogger:
    def __init__(self):
        self.requests = []
        self.responses = []
        self.errors = []

    def log_request(self, agent_id, provider, model, payload):
        self.requests.append((agent_id, provider, model))
        return f"req-{len(self.requests)}"

    def log_response(self, request_id, payload):
        self.responses.append((request_id, payload))

    def log_error(self, request_id, error):
        self.errors.append((request_id, error))


class StalledProvider(BaseLLMProvider):
    """Sends one delta, then waits on an upstream that never answers."""

    provider_id = "test"

    async def stream(self, history, model, agent):
        state = self.new_state(model)
        for event in state.add_text("A first delta that is long enough."):
            yield event
        await asyncio.Event().wait()


def _overloaded():
    return ProviderError("test", "test API error: overloaded", status=503, recoverable=True)


@pytest.fixture
def request_logger():
    return RecordingRequestLogger()


@pytest.fixture
def make_gateway(settings, request_logger):
    def _make(*responses):
        provider = ScriptedProvider(list(responses))
        gateway = Gateway(
            settings=settings,
            providers={"test": provider},
            request_logger=request_logger,
            retry_options=RetryOptions(initial_delay=0.0, max_delay=0.0),
        )
        return gateway, provider
    return _make


class TestGatewayStream:

    @pytest.mark.asyncio
    async def test_retries_before_first_event(self, make_gateway, collect, request_logger):
        gateway, provider = make_gateway(
            ScriptedResponse(error=_overloaded()),
            ScriptedResponse(chunks=["Hello there, this is the answer."]),
        )
        events = await collect(gateway.stream(HISTORY, "test-model"))

        assert provider.calls == 2
        assert [e["content"] for e in events if e["type"] == "message_complete"] == ["Hello there, this is the answer."]
        assert request_logger.requests == [("default", "test", "test-model")]
        assert request_logger.responses[0][1]["events"]["message_complete"] == 1
        assert request_logger.errors == []

    @pytest.mark.asyncio
    async def test_failure_after_output_ends_with_fatal_error(self, make_gateway, collect, request_logger):
        gateway, provider = make_gateway(ScriptedResponse(
            chunks=["This first chunk is long enough.", " And this one never arrives."],
            error=_overloaded(),
            fail_after=1,
        ))
        events = await collect(gateway.stream(HISTORY, "test-model"))

        assert provider.calls == 1
        assert events[0]["type"] == "message_delta"
        assert events[0]["content"] == "This first chunk is long enough."
        last = events[-1]
        assert last["type"] == "error"
        assert last["fatal"] is True
        assert last["code"] == "PROVIDER_ERROR"
        assert last["recoverable"] is True
        assert len(request_logger.errors) == 1

    @pytest.mark.asyncio
    async def test_buffered_text_is_flushed_before_fatal_error(self, make_gateway, collect):
        gateway, _ = make_gateway(ScriptedResponse(
            chunks=["This first chunk is long enough.", " tail"],
            error=_overloaded(),
            fail_after=2,
        ))
        events = await collect(gateway.stream(HISTORY, "test-model"))

        assert [e["type"] for e in events] == ["message_delta", "message_delta", "error"]
        assert "".join(e["content"] for e in events[:-1]) == "This first chunk is long enough. tail"
        assert events[0]["message_id"] == events[1]["message_id"]
        assert events[-1]["fatal"] is True

    @pytest.mark.asyncio
    async def test_buffered_text_before_first_event_is_retried(self, make_gateway, collect):
        gateway, provider = make_gateway(
            ScriptedResponse(chunks=["Short"], error=_overloaded(), fail_after=1),
            ScriptedResponse(chunks=["A complete and long enough answer."]),
        )
        events = await collect(gateway.stream(HISTORY, "test-model"))

        assert provider.calls == 2
        deltas = [e["content"] for e in events if e["type"] == "message_delta"]
        assert "".join(deltas) == "A complete and long enough answer."
        assert not [e for e in events if e["type"] == "error"]

    @pytest.mark.asyncio
    async def test_non_retryable_failure_is_not_retried(self, make_gateway, collect):
        gateway, provider = make_gateway(
            ScriptedResponse(error=ProviderError("test", "bad request", status=400)),
            ScriptedResponse(chunks=["never used"]),
        )
        events = await collect(gateway.stream(HISTORY, "test-model"))

        assert provider.calls == 1
        assert [e["type"] for e in events] == ["error"]
        assert events[0]["fatal"] is True

    @pytest.mark.asyncio
    async def test_allowed_events_filter(self, make_gateway, collect):
        gateway, _ = make_gateway(ScriptedResponse(chunks=["A reply that is long enough to stream."]))
        agent = AgentContext(allowed_events={"message_complete"})
        events = await collect(gateway.stream(HISTORY, "test-model", agent))
        assert [e["type"] for e in events] == ["message_complete"]

    @pytest.mark.asyncio
    async def test_fatal_errors_bypass_the_filter(self, make_gateway, collect):
        gateway, _ = make_gateway(ScriptedResponse(error=ProviderError("test", "denied", status=401)))
        agent = AgentContext(allowed_events={"message_complete"})
        events = await collect(gateway.stream(HISTORY, "test-model", agent))
        assert [e["type"] for e in events] == ["error"]

    @pytest.mark.asyncio
    async def test_abort_raises(self, make_gateway, collect, request_logger):
        gateway, _ = make_gateway(ScriptedResponse(chunks=["unused"]))
        agent = AgentContext()
        agent.abort.abort("user cancelled")

        with pytest.raises(StreamAbortedError):
            await collect(gateway.stream(HISTORY, "test-model", agent))
        assert len(request_logger.errors) == 1

    @pytest.mark.asyncio
    async def test_abort_interrupts_stalled_upstream(self, settings, request_logger):
        gateway = Gateway(settings=settings, providers={"test": StalledProvider()}, request_logger=request_logger)
        agent = AgentContext()
        received = []

        async def consume():
            async for event in gateway.stream(HISTORY, "test-model", agent):
                received.append(event)

        task = asyncio.ensure_future(consume())
        await asyncio.sleep(0.05)
        assert [e["type"] for e in received] == ["message_delta"]
        assert not task.done()

        agent.abort.abort("user cancelled")
        with pytest.raises(StreamAbortedError):
            await asyncio.wait_for(task, timeout=1)
        assert len(request_logger.errors) == 1

    @pytest.mark.asyncio
    async def test_missing_api_key_becomes_fatal_error(self, collect):
        gateway = Gateway(settings=Settings(), retry_options=RetryOptions(initial_delay=0.0, max_delay=0.0))
        events = await collect(gateway.stream(HISTORY, "someone/new-model"))

        assert [e["type"] for e in events] == ["error"]
        assert events[0]["code"] == "CONFIGURATION_ERROR"
        assert events[0]["recoverable"] is False


class TestGatewayRequest:

    @pytest.mark.asyncio
    async def test_collects_text_thinking_and_cost(self, make_gateway):
        gateway, _ = make_gateway(ScriptedResponse(
            thinking="Pondering",
            chunks=["The answer", " is 42."],
            usage={"input_tokens": 10, "output_tokens": 5},
        ))
        result = await gateway.request(HISTORY, "test-model")

        assert result.ok
        assert result.text == "The answer is 42."
        assert result.thinking == "Pondering"
        assert result.cost == pytest.approx(10 / 1e6 * 1.0 + 5 / 1e6 * 2.0)
        assert result.usage["input_tokens"] == 10
        assert result.usage["total_tokens"] == 15
        assert gateway.cost_tracker.get_total_cost() == pytest.approx(result.cost)

    @pytest.mark.asyncio
    async def test_collects_tool_calls(self, make_gateway):
        gateway, _ = make_gateway(ScriptedResponse(tool_calls=[
            {"id": "call_1", "type": "function", "function": {"name": "add", "arguments": '{"a": 1, "b": 2}'}},
        ]))
        result = await gateway.request(HISTORY, "test-model")
        assert [c["id"] for c in result.tool_calls] == ["call_1"]
        assert result.text == ""

    @pytest.mark.asyncio
    async def test_failed_request_is_not_ok(self, make_gateway):
        gateway, _ = make_gateway(ScriptedResponse(error=ProviderError("test", "denied", status=401)))
        result = await gateway.request(HISTORY, "test-model")
        assert not result.ok
        assert "denied" in result.errors[0]["error"]


class TestToolExecution:

    @staticmethod
    def _call(call_id, name, arguments):
        return {"id": call_id, "type": "function", "function": {"name": name, "arguments": arguments}}

    @pytest.mark.asyncio
    async def test_concurrent_tools_and_failures(self, make_gateway):
        gateway, _ = make_gateway()

        async def slow_add(args):
            await asyncio.sleep(0.01)
            return args["a"] + args["b"]

        def explode(args):
            raise RuntimeError("kaboom")

        outputs = await gateway.run_tools(
            [
                self._call("c1", "add", '{"a": 1, "b": 2}'),
                self._call("c2", "missing", "{}"),
                self._call("c3", "explode", "{}"),
            ],
            {"add": slow_add, "explode": explode},
        )

        assert [o["call_id"] for o in outputs] == ["c1", "c2", "c3"]
        assert outputs[0]["output"] == "3"
        assert outputs[0]["type"] == "function_call_output"
        assert outputs[1]["output"] == "Error: No handler for tool 'missing'"
        assert outputs[2]["output"] == "Error: Error executing tool 'explode': kaboom"

    @pytest.mark.asyncio
    async def test_sequential_tools_run_one_at_a_time(self, make_gateway):
        gateway, _ = make_gateway()
        log = []

        async def step(args):
            log.append(f"start:{args['n']}")
            await asyncio.sleep(0.01 if args["n"] == 1 else 0)
            log.append(f"end:{args['n']}")
            return {"n": args["n"]}

        agent = AgentContext(agent_id="sequential-agent", sequential_tools=True)
        outputs = await gateway.run_tools(
            [self._call("c1", "step", '{"n": 1}'), self._call("c2", "step", '{"n": 2}')],
            {"step": step},
            agent,
        )

        assert log == ["start:1", "end:1", "start:2", "end:2"]
        assert outputs[1]["output"] == '{"n": 2}'

    @pytest.mark.asyncio
    async def test_hung_tool_times_out_without_blocking_the_queue(self, settings):
        gateway = Gateway(settings=settings, tool_timeout=0.05, untimed_tools={"patient"})

        async def hang(args):
            await asyncio.Event().wait()

        async def patient(args):
            await asyncio.sleep(0.1)
            return "done"

        agent = AgentContext(agent_id="timeout-agent", sequential_tools=True)
        outputs = await gateway.run_tools(
            [self._call("c1", "hang", "{}"), self._call("c2", "patient", "{}")],
            {"hang": hang, "patient": patient},
            agent,
        )

        assert outputs[0]["output"] == "Error: Tool 'hang' timed out after 0.05s"
        assert outputs[1]["output"] == "done"

    @pytest.mark.asyncio
    async def test_long_outputs_are_truncated(self, settings):
        gateway = Gateway(settings=settings, max_tool_result_length=10)
        outputs = await gateway.run_tools(
            [self._call("c1", "dump", "{}"), self._call("c2", "short", "{}")],
            {"dump": lambda args: "x" * 50, "short": lambda args: "ok"},
        )
        assert outputs[0]["output"] == "x" * 10 + "\n\n... Output truncated to 10 characters"
        assert outputs[1]["output"] == "ok"


class TestGatewayProviders:

    def test_resolve_model(self, make_gateway):
        gateway, _ = make_gateway()
        assert gateway.resolve_model("claude-sonnet-4-high") == "claude-sonnet-4-20250514-high"
        assert gateway.resolve_model("claude-sonnet-4") == "claude-sonnet-4-20250514"
        assert gateway.resolve_model("gpt-4o") == "gpt-4o"
        assert gateway.resolve_model("someone/unknown") == "someone/unknown"

    def test_providers_are_created_lazily(self, settings):
        gateway = Gateway(settings=settings)
        provider = gateway.get_provider("openai")
        assert isinstance(provider, OpenAIProvider)
        assert provider.cost_tracker is gateway.cost_tracker
        assert gateway.get_provider("openai") is provider

    @pytest.mark.asyncio
    async def test_adapters_use_the_gateway_catalog(self, settings):
        catalog = ModelCatalog()
        catalog.register(ModelEntry(
            id="claude-house", provider="anthropic", features=ModelFeatures(max_output_tokens=1000),
        ))
        gateway = Gateway(settings=settings, catalog=catalog)
        provider = gateway.get_provider("anthropic")
        assert provider.catalog is catalog

        params = await provider._build_request(HISTORY, "claude-house", AgentContext())
        assert params["max_tokens"] == 1000

        standalone = await AnthropicProvider(api_key="fake-key")._build_request(HISTORY, "claude-house", AgentContext())
        assert standalone["max_tokens"] == 8192

    def test_unknown_provider_id(self, settings):
        with pytest.raises(ConfigurationError):
            Gateway(settings=settings).get_provider("nobody")

    @pytest.mark.asyncio
    async def test_capability_check(self, make_gateway):
        gateway, _ = make_gateway()
        with pytest.raises(ConfigurationError):
            await gateway.embed("hello", model="test-model")
