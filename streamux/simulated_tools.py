"""
Extraction and repair of tool calls that a model wrote into its visible text.

Some vendors cannot be trusted with native function calling, so the model is
told to finish its answer with a block such as::

    TOOL_CALLS: [{"function": {"name": "search", "arguments": "{\\"q\\": \\"x\\"}"}}]

This module finds those blocks, keeps the last one, repairs common JSON
damage and normalizes every call object into a canonical ``ToolCall``.
"""
import json
import logging
import re
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Optional, Tuple

from .types import Tool, ToolCall

logger = logging.getLogger(__name__)

MARKER = "TOOL_CALLS"
CLEANUP_PLACEHOLDER = "[Simulated Tool Calls Removed]"

# Optional leading whitespace and ```json fence, then the marker itself
_MARKER_RE = re.compile(r"\s*(?:```(?:json)?\s*)?" + MARKER + r":\s*")
_CLOSING_FENCE_RE = re.compile(r"\s*```")
# Trailing text that could still turn into the preamble of a marker block
_PREAMBLE_TAIL_RE = re.compile(r"\s*(?:`{1,3}(?:j(?:s(?:on?)?)?)?\s*)?$")


# =============================================================================
# JSON Repair
# =============================================================================

def first_json_object(text: str) -> Optional[Dict[str, Any]]:
    """
    Decode the first well-formed JSON object found in ``text``.

    Used for vendors that occasionally emit concatenated objects such as
    ``{"a": 1}{"b": 2}``.
    """
    start = text.find("{")
    if start == -1:
        return None
    try:
        obj, _ = json.JSONDecoder().raw_decode(text, start)
    except json.JSONDecodeError:
        return None
    return obj if isinstance(obj, dict) else None


def repair_json_arguments(raw: Optional[str]) -> Optional[str]:
    """
    Return ``raw`` as a valid JSON string, or None if it cannot be repaired.

    Empty arguments become ``{}``. Concatenated objects are cut down to the
    first one.
    """
    if raw is None or not raw.strip():
        return "{}"
    try:
        json.loads(raw)
        return raw
    except json.JSONDecodeError:
        pass

    if "}{" in raw:
        obj = first_json_object(raw)
        if obj is not None:
            logger.warning("Recovered first object from concatenated JSON arguments: %s", raw)
            return json.dumps(obj)
    return None


# =============================================================================
# Call Shapes
# =============================================================================

@dataclass(frozen=True)
class SimulatedCall:
    """
    A call object as the model wrote it.

    ``shape`` records which layout was used:
    - "nested": ``{"id"?, "function": {"name", "arguments"}}``
    - "flat":   ``{"id"?, "name", "arguments"}``
    """
    shape: Literal["nested", "flat"]
    name: Any
    arguments: Any = None
    id: Optional[str] = None


def classify_call(obj: Any) -> Optional[SimulatedCall]:
    if not isinstance(obj, dict):
        return None
    call_id = obj.get("id") if isinstance(obj.get("id"), str) else None
    func = obj.get("function")
    if isinstance(func, dict):
        return SimulatedCall("nested", func.get("name"), func.get("arguments"), call_id)
    if "name" in obj:
        return SimulatedCall("flat", obj.get("name"), obj.get("arguments"), call_id)
    return None


def _normalize_arguments(arguments: Any) -> str:
    if arguments is None:
        return "{}"
    if isinstance(arguments, str):
        repaired = repair_json_arguments(arguments)
        if repaired is not None:
            return repaired
        logger.warning("Argument string is not valid JSON, wrapping as a string literal: %s", arguments)
        return json.dumps(arguments)
    return json.dumps(arguments)


def normalize_call(call: SimulatedCall) -> Optional[ToolCall]:
    """Turn a classified call into a canonical ToolCall; None if it has no usable name."""
    if not isinstance(call.name, str) or not call.name.strip():
        return None
    return {
        "id": call.id or f"sim_{uuid.uuid4()}",
        "type": "function",
        "function": {
            "name": call.name,
            "arguments": _normalize_arguments(call.arguments),
        },
    }


# =============================================================================
# Marker Scanning
# =============================================================================

@dataclass(frozen=True)
class MarkerBlock:
    start: int
    end: int
    payload: str
    complete: bool


def _scan_json_value(text: str, pos: int) -> Optional[int]:
    """Return the index just past the bracketed value opening at ``pos``."""
    depth = 0
    in_string = False
    escaped = False
    for i in range(pos, len(text)):
        ch = text[i]
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch in "[{":
            depth += 1
        elif ch in "]}":
            depth -= 1
            if depth == 0:
                return i + 1
    return None


def find_marker_blocks(text: str) -> List[MarkerBlock]:
    blocks: List[MarkerBlock] = []
    pos = 0
    while True:
        m = _MARKER_RE.search(text, pos)
        if not m:
            return blocks
        body = m.end()
        if body >= len(text) or text[body] not in "[{":
            pos = m.end()
            continue

        end = _scan_json_value(text, body)
        if end is None:
            # Truncated block: take everything up to the last closing bracket
            last = text.rfind("]")
            payload = text[body:last + 1] if last > body else text[body:]
            blocks.append(MarkerBlock(m.start(), len(text), payload, complete=False))
            return blocks

        payload = text[body:end]
        fence = _CLOSING_FENCE_RE.match(text, end)
        if fence:
            end = fence.end()
        blocks.append(MarkerBlock(m.start(), end, payload, complete=True))
        pos = end


def scrub_markers(text: str, blocks: Optional[List[MarkerBlock]] = None) -> str:
    """Replace every marker block in ``text`` with the cleanup placeholder."""
    if blocks is None:
        blocks = find_marker_blocks(text)
    out = []
    pos = 0
    for block in blocks:
        out.append(text[pos:block.start])
        out.append(CLEANUP_PLACEHOLDER)
        pos = block.end
    out.append(text[pos:])
    return "".join(out)


def safe_prefix_length(text: str) -> int:
    """
    Length of the prefix of ``text`` that can never become part of a marker.

    Streaming adapters only release this prefix as deltas, so the text sent
    before the marker is known always agrees with the final scrubbed content.
    """
    idx = text.find(MARKER)
    if idx != -1:
        head = text[:idx]
    else:
        head = text
        for k in range(min(len(MARKER) - 1, len(text)), 0, -1):
            if text.endswith(MARKER[:k]):
                head = text[:-k]
                break

    # Only the tail can hold a preamble; keep the regex scan short
    window = max(0, len(head) - 64)
    m = _PREAMBLE_TAIL_RE.search(head, window)
    return m.start() if m else len(head)


# =============================================================================
# Parsing
# =============================================================================

@dataclass
class SimulatedParseResult:
    handled: bool
    content: str
    tool_calls: List[ToolCall] = field(default_factory=list)


def _decode_payload(payload: str) -> Optional[List[Any]]:
    try:
        parsed = json.loads(payload)
    except json.JSONDecodeError as e:
        if "}{" not in payload:
            logger.warning("Unparseable TOOL_CALLS block (%s): %s", e, payload)
            return None
        first = first_json_object(payload)
        if first is None:
            logger.warning("Could not recover a call from concatenated TOOL_CALLS block: %s", payload)
            return None
        logger.warning("Recovered first object from concatenated TOOL_CALLS block")
        parsed = first

    if isinstance(parsed, dict):
        return [parsed]
    if isinstance(parsed, list):
        return parsed
    return None


def parse_simulated_tool_calls(text: str) -> SimulatedParseResult:
    """
    Extract tool calls from the last ``TOOL_CALLS`` block in ``text``.

    Returns:
        SimulatedParseResult: When ``handled`` is True, ``content`` is the
        visible text before the last block (earlier blocks replaced by the
        placeholder) and ``tool_calls`` holds every valid call. Otherwise
        ``content`` is the whole text with all blocks scrubbed.
    """
    blocks = find_marker_blocks(text)
    if not blocks:
        return SimulatedParseResult(False, text)

    if len(blocks) > 1:
        logger.debug("Found %d TOOL_CALLS blocks, using the last one", len(blocks))
    last = blocks[-1]

    calls: List[ToolCall] = []
    items = _decode_payload(last.payload)
    for item in items or []:
        classified = classify_call(item)
        call = normalize_call(classified) if classified else None
        if call is None:
            logger.warning("Dropping simulated tool call without a usable name: %r", item)
            continue
        calls.append(call)

    if not calls:
        return SimulatedParseResult(False, scrub_markers(text, blocks))

    visible = scrub_markers(text[:last.start], blocks[:-1])
    return SimulatedParseResult(True, visible, calls)


# =============================================================================
# Prompting
# =============================================================================

def build_simulated_tool_instructions(tools: List[Tool]) -> str:
    """
    Build the system instructions that teach a model the TOOL_CALLS format.
    """
    definitions = json.dumps([t.get("function", {}) for t in tools], indent=2)
    return (
        "You can call the following tools:\n"
        f"{definitions}\n\n"
        "To call one or more tools, end your response with a single line of the form:\n"
        f'{MARKER}: [{{"id": "call_1", "type": "function", "function": '
        '{"name": "tool_name", "arguments": "{\\"param\\": \\"value\\"}"}}]\n'
        "The arguments value must be a JSON-encoded string. Only the last "
        f"{MARKER} block in your response is executed. If no tool is needed, "
        "answer normally without the block."
    )
