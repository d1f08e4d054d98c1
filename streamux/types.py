from typing import Literal, List, Dict, Any, Union, TypedDict, Optional

# =============================================================================
# Type Definitions
# =============================================================================

# Supported upstream vendors
ProviderID = Literal["openai", "anthropic", "google", "deepseek", "openrouter", "test"]


class TextContent(TypedDict, total=False):
    """
    Text content part for multimodal messages.
    """
    type: Literal["text"]
    text: str


class ImageUrlDetail(TypedDict, total=False):
    """
    Image URL with optional detail level.
    """
    url: str
    detail: Literal["auto", "low", "high"]  # OpenAI-specific


class ImageContent(TypedDict, total=False):
    """
    Image content part for multimodal messages (OpenAI format).
    """
    type: Literal["image_url"]
    image_url: ImageUrlDetail


# Content can be a simple string or a list of content parts (text + images)
ContentPart = Union[TextContent, ImageContent]
MessageContent = Union[str, List[ContentPart]]


# =============================================================================
# Tool Calling Type Definitions
# =============================================================================

class FunctionParameters(TypedDict, total=False):
    """
    JSON Schema for function parameters.
    """
    type: Literal["object"]
    properties: Dict[str, Any]
    required: List[str]


class FunctionDefinition(TypedDict, total=False):
    """
    Function definition for tools.
    """
    name: str
    description: str
    parameters: FunctionParameters


class Tool(TypedDict):
    """
    Tool definition in OpenAI format.
    """
    type: Literal["function"]
    function: FunctionDefinition


class ToolCallFunction(TypedDict):
    name: str
    arguments: str  # JSON-encoded object, validated before exposure


class ToolCall(TypedDict):
    """
    Tool call surfaced by a provider.

    ``function.arguments`` is always a string holding valid JSON by the time
    a ``tool_start`` event carries it.
    """
    id: str
    type: Literal["function"]
    function: ToolCallFunction


# =============================================================================
# Conversation History (inbound)
# =============================================================================

class InputMessage(TypedDict, total=False):
    """
    Plain conversation turn.

    Roles:
    - "system" / "developer": Instructions
    - "user": User message
    - "assistant": Previous model response
    """
    type: Literal["message"]
    role: Literal["system", "developer", "user", "assistant"]
    content: MessageContent
    status: Literal["in_progress", "completed", "incomplete"]


class ThinkingMessage(TypedDict, total=False):
    """
    Reasoning emitted by the model on a previous turn.
    """
    type: Literal["thinking"]
    role: Literal["assistant"]
    content: str
    signature: str
    thinking_id: str


class FunctionCallMessage(TypedDict, total=False):
    """
    A previous request by the model to call a tool.
    """
    type: Literal["function_call"]
    call_id: str
    name: str
    arguments: str


class FunctionCallOutputMessage(TypedDict, total=False):
    """
    Result of a tool execution fed back to the model.
    """
    type: Literal["function_call_output"]
    call_id: str
    name: str
    output: str


ResponseInputItem = Union[InputMessage, ThinkingMessage, FunctionCallMessage, FunctionCallOutputMessage]
ResponseInput = List[ResponseInputItem]


# =============================================================================
# Streaming Events (outbound)
# =============================================================================

StreamEventType = Literal[
    "message_delta",
    "message_complete",
    "tool_start",
    "tool_delta",
    "file_complete",
    "cost_update",
    "error",
]


class MessageEvent(TypedDict, total=False):
    type: Literal["message_delta", "message_complete"]
    content: str
    message_id: str
    order: int
    thinking_content: str
    thinking_signature: str
    timestamp: str


class ToolEvent(TypedDict, total=False):
    type: Literal["tool_start", "tool_delta"]
    tool_call: ToolCall
    timestamp: str


class FileEvent(TypedDict, total=False):
    type: Literal["file_complete"]
    message_id: str
    mime_type: str
    data_format: Literal["base64"]
    data: str
    order: int
    timestamp: str


class UsageSnapshot(TypedDict, total=False):
    input_tokens: int
    output_tokens: int
    total_tokens: int
    cached_tokens: int


class CostUpdateEvent(TypedDict, total=False):
    type: Literal["cost_update"]
    model: str
    usage: UsageSnapshot
    cost: float
    estimated: bool
    no_pricing: bool
    timestamp: str


class ErrorEvent(TypedDict, total=False):
    type: Literal["error"]
    error: str
    fatal: bool
    code: str
    recoverable: bool
    timestamp: str


StreamEvent = Union[MessageEvent, ToolEvent, FileEvent, CostUpdateEvent, ErrorEvent]


# =============================================================================
# Request Settings
# =============================================================================

class JSONSchemaFormat(TypedDict, total=False):
    """
    Structured output constraint (OpenAI ``json_schema`` response format).
    """
    name: str
    schema: Dict[str, Any]
    description: str
    strict: Optional[bool]


ToolChoice = Union[Literal["auto", "none", "required"], Dict[str, Any]]


class ModelSettings(TypedDict, total=False):
    temperature: float
    top_p: float
    top_k: int
    max_tokens: int
    stop_sequence: str
    seed: int
    tool_choice: ToolChoice
    json_schema: JSONSchemaFormat
