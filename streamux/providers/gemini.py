import base64
import copy
import json
import logging
import uuid
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple, Union

from google import genai
from google.genai import errors as genai_errors
from google.genai import types

from .base import BaseLLMProvider, StreamState, field_of
from .. import events
from ..catalog import split_effort_suffix
from ..control import AgentContext, abortable
from ..cost import CostTracker, ModelUsage
from ..errors import ProviderError, StreamAbortedError
from ..simulated_tools import first_json_object
from ..types import ResponseInput, StreamEvent, Tool, ToolCall
from ..utils import content_to_text, resolve_image_to_base64

logger = logging.getLogger(__name__)

# Thinking budget per model suffix; 0 disables thinking
THINKING_BUDGETS = {"low": 0, "medium": 2048, "high": 12288, "max": 24576}

# Tool names that switch the request to Google Search grounding
WEB_SEARCH_TOOLS = ("google_web_search", "web_search")


def _strip_additional_properties(schema: Any) -> Any:
    """Remove ``additionalProperties`` everywhere; Gemini rejects the keyword."""
    if isinstance(schema, dict):
        return {k: _strip_additional_properties(v) for k, v in schema.items() if k != "additionalProperties"}
    if isinstance(schema, list):
        return [_strip_additional_properties(v) for v in schema]
    return schema


def _parse_args(name: str, raw: Optional[str]) -> Dict[str, Any]:
    try:
        args = json.loads(raw or "{}")
    except json.JSONDecodeError:
        args = first_json_object(raw or "")
        if args is None:
            logger.error("Failed to parse function call arguments for %s: %r", name, raw)
            return {"error": "Invalid JSON arguments provided", "raw_args": raw}
    return args if isinstance(args, dict) else {"value": args}


class GeminiProvider(BaseLLMProvider):
    """
    Provider for Google Gemini API (using google-genai SDK).
    """

    provider_id = "google"

    def __init__(self, api_key: Optional[str], cost_tracker: Optional[CostTracker] = None):
        super().__init__(api_key, cost_tracker)
        self.client = genai.Client(api_key=api_key) if api_key else None

    # =========================================================================
    # Request Building
    # =========================================================================

    async def _convert_messages(
        self,
        history: ResponseInput,
    ) -> Tuple[Optional[str], List[types.Content]]:
        """
        Convert history to Gemini format (google-genai SDK).

        Maps ``assistant`` to ``model``, tool calls to ``function_call`` parts
        and tool outputs to ``function_response`` parts. Consecutive items
        with the same role share one ``Content``.
        """
        system_parts: List[str] = []
        turns: List[Tuple[str, List[Dict[str, Any]]]] = []

        def append(role: str, parts: List[Dict[str, Any]]) -> None:
            if turns and turns[-1][0] == role:
                turns[-1][1].extend(parts)
            else:
                turns.append((role, parts))

        for item in history:
            kind = item.get("type", "message")

            if kind == "function_call":
                name = item.get("name", "")
                append("model", [{"function_call": {"name": name, "args": _parse_args(name, item.get("arguments"))}}])
                continue

            if kind == "function_call_output":
                append("user", [{
                    "function_response": {
                        "name": item.get("name", ""),
                        "response": {"content": item.get("output") or ""},
                    }
                }])
                continue

            if kind == "thinking":
                text = (item.get("content") or "").strip()
                if text:
                    append("model", [{"text": f"Thinking: {text}"}])
                continue

            role = item.get("role", "user")
            content = item.get("content", "")
            if role in ("system", "developer"):
                text = content_to_text(content)
                if text:
                    system_parts.append(text)
                continue

            gemini_role = "model" if role == "assistant" else "user"
            parts: List[Dict[str, Any]] = []
            if isinstance(content, str):
                if content.strip():
                    parts.append({"text": content})
            else:
                for part in content:
                    if part.get("type") == "text":
                        parts.append({"text": part.get("text", "")})
                    elif part.get("type") == "image_url":
                        url = part.get("image_url", {}).get("url", "")
                        b64_data, mime_type = await resolve_image_to_base64(url)
                        parts.append({"inline_data": {"mime_type": mime_type, "data": b64_data}})
            if parts:
                append(gemini_role, parts)

        if turns and turns[-1][0] != "user":
            logger.warning("Last message in history is not from 'user'. Gemini might not respond as expected.")

        system_instruction = "\n\n".join(system_parts) if system_parts else None
        return system_instruction, [types.Content(role=role, parts=parts) for role, parts in turns]

    @staticmethod
    def _convert_tools(tools: List[Tool]) -> List[types.Tool]:
        """
        Convert OpenAI-format tools to Gemini format (google-genai SDK).
        """
        function_declarations = []
        for tool in tools:
            func = tool.get("function", {})
            if func.get("name") in WEB_SEARCH_TOOLS:
                continue
            parameters = func.get("parameters")
            function_declarations.append(types.FunctionDeclaration(
                name=func.get("name", ""),
                description=func.get("description", ""),
                parameters=_strip_additional_properties(parameters) if parameters else None,
            ))
        return [types.Tool(function_declarations=function_declarations)] if function_declarations else []

    @staticmethod
    def _convert_tool_choice(tool_choice: Any) -> Optional[types.ToolConfig]:
        allowed: Optional[List[str]] = None
        if isinstance(tool_choice, dict) and tool_choice.get("function", {}).get("name"):
            mode = "ANY"
            allowed = [tool_choice["function"]["name"]]
        elif tool_choice == "required":
            mode = "ANY"
        elif tool_choice == "auto":
            mode = "AUTO"
        elif tool_choice == "none":
            mode = "NONE"
        else:
            return None
        return types.ToolConfig(function_calling_config=types.FunctionCallingConfig(
            mode=mode, allowed_function_names=allowed,
        ))

    async def _build_request(
        self,
        history: ResponseInput,
        model: str,
        agent: AgentContext,
    ) -> Dict[str, Any]:
        base_model, effort = split_effort_suffix(model)
        settings = agent.settings
        system_instruction, contents = await self._convert_messages(self.with_instructions(history, agent))

        config_kwargs: Dict[str, Any] = {"system_instruction": system_instruction}
        optional = {
            "temperature": settings.get("temperature"),
            "max_output_tokens": settings.get("max_tokens"),
            "top_p": settings.get("top_p"),
            "top_k": settings.get("top_k"),
            "seed": settings.get("seed"),
            "stop_sequences": [settings["stop_sequence"]] if settings.get("stop_sequence") else None,
        }
        config_kwargs.update({k: v for k, v in optional.items() if v is not None})

        entry = self.catalog.find_model(base_model)
        if effort is not None or (entry and entry.features.reasoning_output):
            thinking: Dict[str, Any] = {"include_thoughts": True}
            if effort is not None:
                thinking["thinking_budget"] = THINKING_BUDGETS[effort]
            config_kwargs["thinking_config"] = types.ThinkingConfig(**thinking)

        schema = settings.get("json_schema")
        if schema:
            config_kwargs["response_mime_type"] = "application/json"
            config_kwargs["response_schema"] = _strip_additional_properties(copy.deepcopy(schema.get("schema", schema)))

        if agent.tools:
            if any(t.get("function", {}).get("name") in WEB_SEARCH_TOOLS for t in agent.tools):
                logger.info("[%s] enabling Google Search grounding", self.provider_id)
                config_kwargs["tools"] = [types.Tool(google_search=types.GoogleSearch())]
            else:
                config_kwargs["tools"] = self._convert_tools(agent.tools)
                tool_config = self._convert_tool_choice(settings.get("tool_choice"))
                if tool_config:
                    config_kwargs["tool_config"] = tool_config

        return {
            "model": base_model,
            "contents": contents,
            "config": types.GenerateContentConfig(**config_kwargs),
        }

    def _wrap_error(self, e: genai_errors.APIError) -> ProviderError:
        status = getattr(e, "code", None)
        return ProviderError(
            self.provider_id,
            f"{self.provider_id} API error: {e}",
            code=str(getattr(e, "status", None) or "API_ERROR"),
            status=status if isinstance(status, int) else None,
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
        Stream a Gemini response.

        Function calls arrive whole and are surfaced immediately with a
        generated ``call_`` id. Search grounding chunks become citations.
        Usage comes from the latest ``usage_metadata`` seen.
        """
        client = self.require_client()
        request = await self._build_request(history, model, agent)
        state = self.new_state(model)
        image_count = 0

        await agent.checkpoint()
        try:
            response = await client.aio.models.generate_content_stream(**request)
            async for chunk in abortable(response, agent.abort):
                await agent.checkpoint()
                for event in self._decode_chunk(chunk, state):
                    if event["type"] == "file_complete":
                        image_count += 1
                    yield event
        except StreamAbortedError:
            raise
        except Exception as e:
            for event in state.flush_on_failure():
                yield event
            if isinstance(e, genai_errors.APIError):
                raise self._wrap_error(e) from e
            raise

        for event in state.finish():
            yield event
        for event in state.report_cost(image_count=image_count):
            yield event

    def _decode_chunk(self, chunk: Any, state: StreamState) -> List[StreamEvent]:
        out: List[StreamEvent] = []

        usage = field_of(chunk, "usage_metadata")
        if usage is not None:
            state.set_usage(
                input_tokens=field_of(usage, "prompt_token_count"),
                output_tokens=(field_of(usage, "candidates_token_count") or 0)
                + (field_of(usage, "thoughts_token_count") or 0),
                cached_tokens=field_of(usage, "cached_content_token_count"),
            )

        candidates = field_of(chunk, "candidates") or []
        if not candidates:
            return out
        candidate = candidates[0]

        for part in field_of(field_of(candidate, "content"), "parts") or []:
            text = field_of(part, "text")
            if text and field_of(part, "thought"):
                out.extend(state.add_thinking(text))
                continue
            if text:
                out.extend(state.add_text(text))

            signature = field_of(part, "thought_signature")
            if isinstance(signature, (bytes, bytearray)):
                state.thinking_signature = base64.b64encode(signature).decode("ascii")

            fc = field_of(part, "function_call")
            if fc is not None and field_of(fc, "name"):
                call: ToolCall = {
                    "id": field_of(fc, "id") or f"call_{uuid.uuid4()}",
                    "type": "function",
                    "function": {"name": field_of(fc, "name"), "arguments": json.dumps(field_of(fc, "args") or {})},
                }
                out.extend(state.start_tool(call))

            inline = field_of(part, "inline_data")
            data = field_of(inline, "data")
            if data:
                if isinstance(data, (bytes, bytearray)):
                    data = base64.b64encode(data).decode("ascii")
                out.append(events.file_complete(
                    data, field_of(inline, "mime_type") or "image/png", str(uuid.uuid4()), state.order,
                ))
                state.order += 1

        grounding = field_of(field_of(candidate, "grounding_metadata"), "grounding_chunks") or []
        for g in grounding:
            web = field_of(g, "web")
            uri = field_of(web, "uri")
            if uri and uri not in state.citations.records:
                out.extend(state.add_citation({"url": uri, "title": field_of(web, "title") or "Untitled"}))

        if str(field_of(candidate, "finish_reason") or "").endswith("MAX_TOKENS"):
            state.truncated = True
        return out

    # =========================================================================
    # Non-chat Capabilities
    # =========================================================================

    async def create_embedding(
        self,
        input: Union[str, List[str]],
        model: str = "gemini-embedding-001",
        dimensions: Optional[int] = None,
    ) -> List[List[float]]:
        """
        Embed one or more strings.

        Gemini does not report token usage for embeddings, so usage is
        estimated at four characters per token.
        """
        client = self.require_client()
        texts = [input] if isinstance(input, str) else list(input)
        config = types.EmbedContentConfig(output_dimensionality=dimensions) if dimensions else None
        try:
            response = await client.aio.models.embed_content(model=model, contents=texts, config=config)
        except genai_errors.APIError as e:
            raise self._wrap_error(e) from e

        estimated_tokens = sum(len(t) for t in texts) // 4
        self.record_usage(ModelUsage(
            model=model, input_tokens=estimated_tokens, metadata={"estimated": True},
        ))
        return [list(e.values) for e in response.embeddings]
