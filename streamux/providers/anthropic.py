import json
import logging
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

import anthropic
from anthropic import AsyncAnthropic

from .base import BaseLLMProvider, StreamState, field_of
from ..catalog import split_effort_suffix
from ..control import AgentContext, abortable
from ..cost import CostTracker
from ..errors import ProviderError, StreamAbortedError
from ..simulated_tools import repair_json_arguments
from ..types import ResponseInput, StreamEvent, Tool, ToolCall
from ..utils import content_to_text, resolve_image_to_base64

logger = logging.getLogger(__name__)

# Extended thinking budget per model suffix; 0 disables thinking
THINKING_BUDGETS = {"low": 0, "medium": 8000, "high": 15000, "max": 30000}
DEFAULT_THINKING_BUDGET = 8000
DEFAULT_MAX_TOKENS = 8192
INTERLEAVED_THINKING_BETA = "interleaved-thinking-2025-05-14"

# Vendor error types that warrant another attempt, mapped to an HTTP status
STREAM_ERROR_STATUS = {
    "overloaded_error": 503,
    "rate_limit_error": 429,
    "api_error": 500,
    "timeout_error": 504,
}


def _supports_default_thinking(model: str) -> bool:
    return model.startswith(("claude-sonnet-4", "claude-opus-4", "claude-3-7-sonnet"))


class AnthropicProvider(BaseLLMProvider):
    """
    Provider for Anthropic (Claude) API.
    """

    provider_id = "anthropic"

    def __init__(self, api_key: Optional[str], cost_tracker: Optional[CostTracker] = None):
        super().__init__(api_key, cost_tracker)
        self.client = AsyncAnthropic(api_key=api_key) if api_key else None

    # =========================================================================
    # Request Building
    # =========================================================================

    async def _convert_messages(
        self,
        history: ResponseInput,
    ) -> Tuple[Optional[str], List[Dict[str, Any]]]:
        """
        Convert history to Claude format.

        System (and developer) messages travel as a separate top-level
        parameter. Tool calls become ``tool_use`` blocks, tool outputs become
        ``tool_result`` blocks in a user turn, and consecutive turns with the
        same role are merged because Claude requires strict alternation.

        Returns:
            Tuple containing:
            - system_text: Extracted system prompt string (or None)
            - converted: List of message dicts suitable for the API
        """
        system_parts: List[str] = []
        converted: List[Dict[str, Any]] = []

        def append(role: str, blocks: List[Dict[str, Any]]) -> None:
            if converted and converted[-1]["role"] == role:
                converted[-1]["content"].extend(blocks)
            else:
                converted.append({"role": role, "content": blocks})

        for item in history:
            kind = item.get("type", "message")

            if kind == "function_call":
                raw = repair_json_arguments(item.get("arguments"))
                if raw is None:
                    logger.warning("Unparseable arguments for %s, sending {}", item.get("name"))
                    raw = "{}"
                append("assistant", [{
                    "type": "tool_use",
                    "id": item.get("call_id", ""),
                    "name": item.get("name", ""),
                    "input": json.loads(raw),
                }])
                continue

            if kind == "function_call_output":
                append("user", [{
                    "type": "tool_result",
                    "tool_use_id": item.get("call_id", ""),
                    "content": item.get("output", ""),
                }])
                continue

            if kind == "thinking":
                text = (item.get("content") or "").strip()
                if not text:
                    continue
                if item.get("signature"):
                    append("assistant", [{"type": "thinking", "thinking": text, "signature": item["signature"]}])
                else:
                    append("assistant", [{"type": "text", "text": f"Thinking: {text}"}])
                continue

            role = item.get("role", "user")
            content = item.get("content", "")
            if role in ("system", "developer"):
                text = content_to_text(content)
                if text:
                    system_parts.append(text)
                continue

            if isinstance(content, str):
                if content:
                    append(role, [{"type": "text", "text": content}])
                continue

            blocks = []
            for part in content:
                if part.get("type") == "text":
                    blocks.append({"type": "text", "text": part.get("text", "")})
                elif part.get("type") == "image_url":
                    # Claude expects base64 data for images
                    b64_data, media_type = await resolve_image_to_base64(part.get("image_url", {}).get("url", ""))
                    blocks.append({
                        "type": "image",
                        "source": {"type": "base64", "media_type": media_type, "data": b64_data},
                    })
            if blocks:
                append(role, blocks)

        system_text = "\n\n".join(system_parts) if system_parts else None
        return system_text, converted

    @staticmethod
    def _convert_tools(tools: List[Tool]) -> List[Dict[str, Any]]:
        converted = []
        for tool in tools:
            func = tool.get("function", {})
            converted.append({
                "name": func.get("name", ""),
                "description": func.get("description", ""),
                "input_schema": func.get("parameters") or {"type": "object", "properties": {}},
            })
        return converted

    @staticmethod
    def _convert_tool_choice(tool_choice: Any) -> Optional[Dict[str, Any]]:
        if tool_choice == "auto":
            return {"type": "auto"}
        if tool_choice == "required":
            return {"type": "any"}
        if tool_choice == "none":
            return {"type": "none"}
        if isinstance(tool_choice, dict):
            name = tool_choice.get("function", {}).get("name")
            return {"type": "tool", "name": name} if name else None
        return None

    async def _build_request(
        self,
        history: ResponseInput,
        model: str,
        agent: AgentContext,
    ) -> Dict[str, Any]:
        base_model, effort = split_effort_suffix(model)
        settings = agent.settings
        history = self.with_instructions(history, agent)

        schema = settings.get("json_schema")
        if schema:
            history = [*history, {
                "type": "message",
                "role": "system",
                "content": "Your response MUST be a valid JSON object that conforms to this schema:\n"
                           + json.dumps(schema.get("schema", schema), indent=2),
            }]

        system_text, messages = await self._convert_messages(history)
        if not messages:
            logger.warning("No user or assistant messages after conversion, adding a placeholder")
            messages = [{"role": "user", "content": [{"type": "text", "text": "Please proceed."}]}]

        entry = self.catalog.find_model(base_model)
        limit = entry.features.max_output_tokens if entry else None
        max_tokens = settings.get("max_tokens") or limit or DEFAULT_MAX_TOKENS
        if limit:
            max_tokens = min(max_tokens, limit)

        if effort is not None:
            budget = THINKING_BUDGETS[effort]
        else:
            budget = DEFAULT_THINKING_BUDGET if _supports_default_thinking(base_model) else 0
        budget = min(budget, max_tokens - 1) if budget else 0

        params: Dict[str, Any] = {
            "model": base_model,
            "messages": messages,
            "max_tokens": max_tokens,
            "stream": True,
        }
        optional_params = {
            "system": system_text,
            "top_p": settings.get("top_p"),
            "top_k": settings.get("top_k"),
            "stop_sequences": [settings["stop_sequence"]] if settings.get("stop_sequence") else None,
        }
        params.update({k: v for k, v in optional_params.items() if v is not None})

        if budget >= 1024:
            params["thinking"] = {"type": "enabled", "budget_tokens": budget}
        elif settings.get("temperature") is not None:
            # Claude rejects a custom temperature while thinking is on
            params["temperature"] = settings["temperature"]

        if agent.tools:
            params["tools"] = self._convert_tools(agent.tools)
            tool_choice = self._convert_tool_choice(settings.get("tool_choice"))
            if tool_choice:
                params["tool_choice"] = tool_choice

        if base_model.startswith(("claude-sonnet-4", "claude-opus-4")):
            params["extra_headers"] = {"anthropic-beta": INTERLEAVED_THINKING_BETA}
        return params

    def _wrap_error(self, e: anthropic.APIError) -> ProviderError:
        return ProviderError(
            self.provider_id,
            f"{self.provider_id} API error: {e}",
            code="CONNECTION_ERROR" if isinstance(e, anthropic.APIConnectionError) else "API_ERROR",
            status=getattr(e, "status_code", None),
            recoverable=isinstance(e, anthropic.APIConnectionError),
        )

    # =========================================================================
    # Streaming
    # =========================================================================

    async def stream(
        self,
        history: ResponseInput,
        model: str,
        agent: AgentContext,
    ) -> AsyncIterator[StreamEvent]:
        """
        Stream a Claude response by decoding raw message events.

        Content blocks are tracked by index: ``content_block_stop`` carries
        only the index, so tool calls are finalized from the recorded block.
        """
        client = self.require_client()
        params = await self._build_request(history, model, agent)
        state = self.new_state(model)
        blocks: Dict[int, Dict[str, Any]] = {}

        await agent.checkpoint()
        try:
            response = await client.messages.create(**params)
            async for event in abortable(response, agent.abort):
                await agent.checkpoint()
                for out in self._decode_event(event, state, blocks):
                    yield out
        except StreamAbortedError:
            raise
        except Exception as e:
            for out in state.flush_on_failure():
                yield out
            if isinstance(e, anthropic.APIError):
                raise self._wrap_error(e) from e
            raise

        if not state.completed:
            # Stream ended without message_stop
            logger.warning("[%s] stream ended without message_stop", self.provider_id)
            for out in self._finish_pending_tools(state, blocks) + state.finish():
                yield out
        for out in state.report_cost():
            yield out

    def _apply_usage(self, state: StreamState, usage: Any) -> None:
        if usage is None:
            return
        input_tokens = field_of(usage, "input_tokens")
        cache_read = field_of(usage, "cache_read_input_tokens")
        cache_creation = field_of(usage, "cache_creation_input_tokens")
        if input_tokens is not None or cache_read or cache_creation:
            # Claude reports cached prompt tokens separately from input_tokens
            state.set_usage(
                input_tokens=(input_tokens or 0) + (cache_read or 0) + (cache_creation or 0),
                cached_tokens=cache_read or 0,
            )
        output_tokens = field_of(usage, "output_tokens")
        if output_tokens is not None:
            state.set_usage(output_tokens=output_tokens)

    def _finish_tool(self, state: StreamState, block: Dict[str, Any]) -> List[StreamEvent]:
        call: ToolCall = {
            "id": block["id"],
            "type": "function",
            "function": {"name": block["name"], "arguments": block["partial"] or block["initial"]},
        }
        return state.start_tool(call)

    def _finish_pending_tools(self, state: StreamState, blocks: Dict[int, Dict[str, Any]]) -> List[StreamEvent]:
        out: List[StreamEvent] = []
        for index in sorted(blocks):
            block = blocks.pop(index)
            if block["type"] == "tool_use":
                out.extend(self._finish_tool(state, block))
        return out

    def _decode_event(
        self,
        event: Any,
        state: StreamState,
        blocks: Dict[int, Dict[str, Any]],
    ) -> List[StreamEvent]:
        kind = field_of(event, "type")

        if kind == "message_start":
            self._apply_usage(state, field_of(field_of(event, "message"), "usage"))
            return []

        if kind == "message_delta":
            self._apply_usage(state, field_of(event, "usage"))
            if field_of(field_of(event, "delta"), "stop_reason") == "max_tokens":
                state.truncated = True
            return []

        if kind == "content_block_start":
            index = field_of(event, "index", 0)
            block = field_of(event, "content_block")
            block_type = field_of(block, "type")
            if block_type == "tool_use":
                initial = field_of(block, "input")
                blocks[index] = {
                    "type": "tool_use",
                    "id": field_of(block, "id"),
                    "name": field_of(block, "name"),
                    "initial": initial if isinstance(initial, str) else json.dumps(initial or {}),
                    "partial": "",
                }
                call: ToolCall = {
                    "id": blocks[index]["id"],
                    "type": "function",
                    "function": {"name": blocks[index]["name"], "arguments": "{}"},
                }
                return state.tool_placeholder(call)
            blocks[index] = {"type": block_type}
            if block_type == "text":
                return state.add_text(field_of(block, "text") or "")
            return []

        if kind == "content_block_delta":
            delta = field_of(event, "delta")
            delta_type = field_of(delta, "type")
            if delta_type == "text_delta":
                return state.add_text(field_of(delta, "text") or "")
            if delta_type == "thinking_delta":
                return state.add_thinking(field_of(delta, "thinking") or "")
            if delta_type == "signature_delta":
                state.thinking_signature = (state.thinking_signature or "") + (field_of(delta, "signature") or "")
                return []
            if delta_type == "input_json_delta":
                block = blocks.get(field_of(event, "index", 0))
                if block and block["type"] == "tool_use":
                    block["partial"] += field_of(delta, "partial_json") or ""
                return []
            if delta_type == "citations_delta":
                citation = field_of(delta, "citation")
                url = field_of(citation, "url")
                if url:
                    return state.add_citation({
                        "url": url,
                        "title": field_of(citation, "title") or url,
                        "cited_text": field_of(citation, "cited_text"),
                    })
            return []

        if kind == "content_block_stop":
            block = blocks.pop(field_of(event, "index", 0), None)
            if block and block["type"] == "tool_use":
                return self._finish_tool(state, block)
            return []

        if kind == "message_stop":
            return self._finish_pending_tools(state, blocks) + state.finish()

        if kind == "error":
            error = field_of(event, "error")
            error_type = field_of(error, "type") or "api_error"
            message = field_of(error, "message") or "Unknown streaming error"
            status = STREAM_ERROR_STATUS.get(error_type)
            raise ProviderError(
                self.provider_id,
                f"{self.provider_id} stream error ({error_type}): {message}",
                code=error_type,
                status=status,
                recoverable=status is not None,
            )
        return []
