from datetime import datetime, timezone
from typing import Optional

from .types import (
    MessageEvent, ToolEvent, FileEvent, CostUpdateEvent, ErrorEvent,
    ToolCall, UsageSnapshot,
)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


# =============================================================================
# Event Factories
# =============================================================================

def message_delta(
    content: str,
    message_id: str,
    order: int,
    *,
    thinking_content: Optional[str] = None,
) -> MessageEvent:
    event: MessageEvent = {
        "type": "message_delta",
        "content": content,
        "message_id": message_id,
        "order": order,
        "timestamp": _now(),
    }
    if thinking_content:
        event["thinking_content"] = thinking_content
    return event


def message_complete(
    content: str,
    message_id: str,
    *,
    thinking_content: Optional[str] = None,
    thinking_signature: Optional[str] = None,
) -> MessageEvent:
    event: MessageEvent = {
        "type": "message_complete",
        "content": content,
        "message_id": message_id,
        "timestamp": _now(),
    }
    if thinking_content:
        event["thinking_content"] = thinking_content
    if thinking_signature:
        event["thinking_signature"] = thinking_signature
    return event


def tool_start(tool_call: ToolCall) -> ToolEvent:
    return {"type": "tool_start", "tool_call": tool_call, "timestamp": _now()}


def tool_delta(tool_call: ToolCall) -> ToolEvent:
    """
    Announce an in-flight tool call.

    The real arguments are still streaming, so a placeholder ``{}`` body is
    exposed instead of partial JSON.
    """
    placeholder: ToolCall = {
        "id": tool_call["id"],
        "type": "function",
        "function": {"name": tool_call["function"]["name"], "arguments": "{}"},
    }
    return {"type": "tool_delta", "tool_call": placeholder, "timestamp": _now()}


def file_complete(data: str, mime_type: str, message_id: str, order: int) -> FileEvent:
    return {
        "type": "file_complete",
        "message_id": message_id,
        "mime_type": mime_type,
        "data_format": "base64",
        "data": data,
        "order": order,
        "timestamp": _now(),
    }


def cost_update(
    model: str,
    usage: UsageSnapshot,
    cost: float,
    *,
    estimated: bool = False,
    no_pricing: bool = False,
) -> CostUpdateEvent:
    event: CostUpdateEvent = {
        "type": "cost_update",
        "model": model,
        "usage": usage,
        "cost": cost,
        "timestamp": _now(),
    }
    if estimated:
        event["estimated"] = True
    if no_pricing:
        event["no_pricing"] = True
    return event


def error_event(
    message: str,
    *,
    fatal: bool = False,
    code: Optional[str] = None,
    recoverable: Optional[bool] = None,
) -> ErrorEvent:
    event: ErrorEvent = {
        "type": "error",
        "error": message,
        "fatal": fatal,
        "timestamp": _now(),
    }
    if code:
        event["code"] = code
    if recoverable is not None:
        event["recoverable"] = recoverable
    return event
