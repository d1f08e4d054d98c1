from .client import Gateway, RequestResult
from .catalog import ModelCatalog, ModelEntry, default_catalog, find_model
from .config import Settings
from .control import AbortSignal, AgentContext, PauseController
from .cost import CostResolver, CostTracker, ModelUsage
from .errors import (
    ConfigurationError,
    ModelNotFoundError,
    ProviderError,
    QueueClearedError,
    StreamAbortedError,
    StreamuxError,
    ToolExecutionError,
)
from .logging_config import init_logging
from .queue import SequentialQueue, run_sequential, sequential_queue
from .retry import RetryOptions, is_retryable_error, retry_stream_with_backoff, retry_with_backoff
from .rich_llm_printer import RichStreamPrinter
from .types import Tool, ToolCall, StreamEvent, ResponseInput, ContentPart, ImageContent, TextContent, ProviderID

__all__ = [
    "Gateway",
    "RequestResult",
    "ModelCatalog",
    "ModelEntry",
    "default_catalog",
    "find_model",
    "Settings",
    "AbortSignal",
    "AgentContext",
    "PauseController",
    "CostResolver",
    "CostTracker",
    "ModelUsage",
    "ConfigurationError",
    "ModelNotFoundError",
    "ProviderError",
    "QueueClearedError",
    "StreamAbortedError",
    "StreamuxError",
    "ToolExecutionError",
    "init_logging",
    "SequentialQueue",
    "run_sequential",
    "sequential_queue",
    "RetryOptions",
    "is_retryable_error",
    "retry_stream_with_backoff",
    "retry_with_backoff",
    "RichStreamPrinter",
    "Tool",
    "ToolCall",
    "StreamEvent",
    "ResponseInput",
    "ContentPart",
    "ImageContent",
    "TextContent",
    "ProviderID",
]
