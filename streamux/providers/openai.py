import logging
from typing import Any, AsyncIterator, Dict, List, Optional, Union

import openai
from openai import AsyncOpenAI

from .base import BaseLLMProvider, StreamState, field_of
from .. import events
from ..catalog import split_effort_suffix
from ..control import AgentContext, abortable
from ..cost import CostTracker, ModelUsage
from ..errors import ProviderError, StreamAbortedError
from ..simulated_tools import scrub_markers
from ..types import ResponseInput, StreamEvent, ToolCall
from ..utils import content_to_text, encode_image_url

logger = logging.getLogger(__name__)

# OpenAI only understands three effort levels
REASONING_EFFORTS = {"low": "low", "medium": "medium", "high": "high", "max": "high"}


class OpenAIProvider(BaseLLMProvider):
    """
    Provider for OpenAI-compatible chat completion APIs.

    DeepSeek and OpenRouter reuse this adapter with a different base URL.
    """

    provider_id = "openai"

    def __init__(
        self,
        api_key: Optional[str],
        base_url: Optional[str] = None,
        cost_tracker: Optional[CostTracker] = None,
    ):
        super().__init__(api_key, cost_tracker)
        self.client = AsyncOpenAI(api_key=api_key, base_url=base_url) if api_key else None

    # =========================================================================
    # Request Building
    # =========================================================================

    async def _convert_messages(self, history: ResponseInput) -> List[Dict[str, Any]]:
        """
        Convert gateway history to OpenAI chat messages.

        Handles:
        - Consecutive ``function_call`` items merged into one assistant
          message with ``tool_calls``.
        - ``function_call_output`` items as ``tool`` messages.
        - Multimodal content, with remote image URLs inlined as base64.
        - ``thinking`` items are dropped; chat completions cannot replay them.
        """
        converted: List[Dict[str, Any]] = []
        for item in history:
            kind = item.get("type", "message")

            if kind == "function_call":
                call = {
                    "id": item.get("call_id", ""),
                    "type": "function",
                    "function": {"name": item.get("name", ""), "arguments": item.get("arguments") or "{}"},
                }
                last = converted[-1] if converted else None
                if last and last["role"] == "assistant" and "tool_calls" in last:
                    last["tool_calls"].append(call)
                else:
                    converted.append({"role": "assistant", "content": None, "tool_calls": [call]})
                continue

            if kind == "function_call_output":
                converted.append({
                    "role": "tool",
                    "tool_call_id": item.get("call_id", ""),
                    "content": item.get("output", ""),
                })
                continue

            if kind == "thinking":
                continue

            role = item.get("role", "user")
            content = item.get("content", "")
            if isinstance(content, str):
                converted.append({"role": role, "content": content})
                continue

            parts = []
            for part in content:
                if part.get("type") == "text":
                    parts.append({"type": "text", "text": part.get("text", "")})
                elif part.get("type") == "image_url":
                    url = part.get("image_url", {}).get("url", "")
                    detail = part.get("image_url", {}).get("detail")
                    # Some compatible endpoints refuse to fetch external URLs
                    if url.startswith(("http://", "https://")):
                        b64_data, mime_type = await encode_image_url(url)
                        url = f"data:{mime_type};base64,{b64_data}"
                    image_url = {"url": url}
                    if detail:
                        image_url["detail"] = detail
                    parts.append({"type": "image_url", "image_url": image_url})
            converted.append({"role": role, "content": parts})
        return converted

    def _apply_reasoning_effort(self, params: Dict[str, Any], effort: str) -> None:
        params["reasoning_effort"] = REASONING_EFFORTS[effort]

    async def _build_request(
        self,
        history: ResponseInput,
        model: str,
        agent: AgentContext,
    ) -> Dict[str, Any]:
        base_model, effort = split_effort_suffix(model)
        settings = agent.settings

        params: Dict[str, Any] = {
            "model": base_model,
            "messages": await self._convert_messages(self.with_instructions(history, agent)),
            "stream": True,
            "stream_options": {"include_usage": True},
        }
        if effort:
            self._apply_reasoning_effort(params, effort)

        optional_params = {
            "temperature": settings.get("temperature"),
            "top_p": settings.get("top_p"),
            "max_tokens": settings.get("max_tokens"),
            "seed": settings.get("seed"),
            "stop": settings.get("stop_sequence"),
            "tool_choice": settings.get("tool_choice") if agent.tools else None,
            "tools": agent.tools or None,
        }
        params.update({k: v for k, v in optional_params.items() if v is not None})

        schema = settings.get("json_schema")
        if schema:
            params["response_format"] = {"type": "json_schema", "json_schema": schema}
        return params

    def _wrap_error(self, e: openai.APIError) -> ProviderError:
        status = getattr(e, "status_code", None)
        if isinstance(e, openai.APIConnectionError):
            code = "CONNECTION_ERROR"
        else:
            code = getattr(e, "code", None) or "API_ERROR"
        return ProviderError(
            self.provider_id,
            f"{self.provider_id} API error: {e}",
            code=str(code),
            status=status,
            recoverable=isinstance(e, openai.APIConnectionError),
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
        Stream a chat completion as gateway events.

        Finish reasons:
        - ``stop``: close the message, extracting any simulated TOOL_CALLS block.
        - ``tool_calls``: surface the accumulated native calls.
        - ``length`` and anything else: terminal non-fatal error.
        """
        client = self.require_client()
        params = await self._build_request(history, model, agent)
        state = self.new_state(model, guard_markers=True)
        partial_calls: Dict[int, ToolCall] = {}
        finish_reason: Optional[str] = None

        await agent.checkpoint()
        try:
            response = await client.chat.completions.create(**params)
            async for chunk in abortable(response, agent.abort):
                await agent.checkpoint()
                for event in self._decode_chunk(chunk, state, partial_calls):
                    yield event
                choices = field_of(chunk, "choices") or []
                if choices and field_of(choices[0], "finish_reason"):
                    finish_reason = field_of(choices[0], "finish_reason")
        except StreamAbortedError:
            raise
        except Exception as e:
            for event in state.flush_on_failure():
                yield event
            if isinstance(e, openai.APIError):
                raise self._wrap_error(e) from e
            raise

        for event in self._finish(state, partial_calls, finish_reason):
            yield event
        for event in state.report_cost():
            yield event

    def _decode_chunk(
        self,
        chunk: Any,
        state: StreamState,
        partial_calls: Dict[int, ToolCall],
    ) -> List[StreamEvent]:
        out: List[StreamEvent] = []

        usage = field_of(chunk, "usage")
        if usage is not None:
            details = field_of(usage, "prompt_tokens_details")
            state.set_usage(
                input_tokens=field_of(usage, "prompt_tokens"),
                output_tokens=field_of(usage, "completion_tokens"),
                cached_tokens=field_of(details, "cached_tokens"),
            )

        # Perplexity-style citations arrive as a chunk-level URL list
        for url in field_of(chunk, "citations") or []:
            if isinstance(url, str) and url not in state.citations.records:
                title = url.rstrip("/").split("/")[-1] or url
                out.extend(state.add_citation({"url": url, "title": title}))

        choices = field_of(chunk, "choices") or []
        if not choices:
            return out
        delta = field_of(choices[0], "delta")
        if delta is None:
            return out

        for name in ("reasoning_content", "reasoning", "thinking_content"):
            thinking = field_of(delta, name)
            if isinstance(thinking, str) and thinking:
                out.extend(state.add_thinking(thinking))

        content = field_of(delta, "content")
        if isinstance(content, list):
            content = content_to_text(content)
        if content:
            out.extend(state.add_text(content))

        for annotation in field_of(delta, "annotations") or []:
            if field_of(annotation, "type") != "url_citation":
                continue
            cite = field_of(annotation, "url_citation")
            url = field_of(cite, "url")
            if url:
                out.extend(state.add_citation({"url": url, "title": field_of(cite, "title") or url}))

        for tc in field_of(delta, "tool_calls") or []:
            index = field_of(tc, "index")
            if not isinstance(index, int):
                continue
            func = field_of(tc, "function")
            call = partial_calls.get(index)
            if call is None:
                call = partial_calls[index] = {
                    "id": field_of(tc, "id") or "",
                    "type": "function",
                    "function": {"name": field_of(func, "name") or "", "arguments": ""},
                }
            else:
                if field_of(tc, "id"):
                    call["id"] = field_of(tc, "id")
                if field_of(func, "name"):
                    call["function"]["name"] = field_of(func, "name")
            call["function"]["arguments"] += field_of(func, "arguments") or ""
            if call["id"] and call["function"]["name"]:
                out.extend(state.tool_placeholder(call))
        return out

    def _finish(
        self,
        state: StreamState,
        partial_calls: Dict[int, ToolCall],
        finish_reason: Optional[str],
    ) -> List[StreamEvent]:
        if finish_reason == "tool_calls" or (finish_reason is None and partial_calls and not state.text):
            calls = [c for c in partial_calls.values() if c["id"] and c["function"]["name"]]
            if not calls:
                logger.warning("[%s] finish reason 'tool_calls' but no complete calls", self.provider_id)
                return state.flush() + [events.error_event(
                    f"Error ({self.provider_id}): Model indicated tool calls, but none were parsed correctly.",
                    code="TOOL_CALLS_MISSING",
                    recoverable=True,
                )]
            out: List[StreamEvent] = []
            if state.text:
                out.extend(state.complete())
            for call in calls:
                out.extend(state.start_tool(call))
            return out

        if finish_reason == "stop" or (finish_reason is None and state.text):
            if finish_reason is None:
                logger.warning("[%s] stream finished without finish_reason", self.provider_id)
            return state.complete_with_simulated_tools()

        if finish_reason is None:
            return state.flush() + [events.error_event(
                f"Error ({self.provider_id}): Stream finished unexpectedly empty.",
                code="EMPTY_STREAM",
                recoverable=True,
            )]

        if finish_reason == "length":
            return state.fail_truncated()

        preview = scrub_markers(state.text)[:100]
        message = f"Error ({self.provider_id}): Response stopped due to: {finish_reason}. Content: {preview}..."
        logger.warning(message)
        return state.flush() + [events.error_event(message, code=f"FINISH_{finish_reason.upper()}", recoverable=False)]

    # =========================================================================
    # Non-chat Capabilities
    # =========================================================================

    async def create_embedding(
        self,
        input: Union[str, List[str]],
        model: str = "text-embedding-3-small",
        dimensions: Optional[int] = None,
    ) -> List[List[float]]:
        """
        Embed one or more strings.

        Returns:
            List[List[float]]: One vector per input string.
        """
        client = self.require_client()
        kwargs: Dict[str, Any] = {"model": model, "input": input}
        if dimensions:
            kwargs["dimensions"] = dimensions
        try:
            response = await client.embeddings.create(**kwargs)
        except openai.APIError as e:
            raise self._wrap_error(e) from e

        usage = field_of(response, "usage")
        self.record_usage(ModelUsage(model=model, input_tokens=field_of(usage, "prompt_tokens", 0) or 0))
        return [list(item.embedding) for item in response.data]

    async def create_image(
        self,
        prompt: str,
        model: str = "gpt-image-1",
        n: int = 1,
        size: Optional[str] = None,
        quality: Optional[str] = None,
    ) -> List[str]:
        """
        Generate images.

        Returns:
            List[str]: Base64-encoded images.
        """
        client = self.require_client()
        kwargs: Dict[str, Any] = {"model": model, "prompt": prompt, "n": n}
        if size:
            kwargs["size"] = size
        if quality:
            kwargs["quality"] = quality
        if model.startswith("dall-e"):
            kwargs["response_format"] = "b64_json"
        try:
            response = await client.images.generate(**kwargs)
        except openai.APIError as e:
            raise self._wrap_error(e) from e

        images = [item.b64_json for item in response.data if getattr(item, "b64_json", None)]
        self.record_usage(ModelUsage(model=model, image_count=len(images), metadata={"prompt": prompt[:100]}))
        return images

    async def create_voice(
        self,
        text: str,
        model: str = "tts-1",
        voice: str = "alloy",
        response_format: str = "mp3",
    ) -> bytes:
        """Synthesize speech; returns the encoded audio bytes."""
        client = self.require_client()
        try:
            response = await client.audio.speech.create(
                model=model, voice=voice, input=text, response_format=response_format,
            )
        except openai.APIError as e:
            raise self._wrap_error(e) from e

        # TTS models are priced per character
        self.record_usage(ModelUsage(model=model, input_tokens=len(text), metadata={"characters": len(text)}))
        return response.content

    async def create_transcription(
        self,
        audio: bytes,
        model: str = "whisper-1",
        filename: str = "audio.wav",
        language: Optional[str] = None,
    ) -> str:
        client = self.require_client()
        kwargs: Dict[str, Any] = {"model": model, "file": (filename, audio)}
        if language:
            kwargs["language"] = language
        try:
            response = await client.audio.transcriptions.create(**kwargs)
        except openai.APIError as e:
            raise self._wrap_error(e) from e

        self.record_usage(ModelUsage(model=model, metadata={"bytes": len(audio)}))
        return response.text
