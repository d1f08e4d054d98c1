"""
Exception hierarchy shared by the gateway, adapters and utilities.
"""
from typing import Any, Dict, Optional


class StreamuxError(Exception):
    """
    Base class for all gateway errors.

    Attributes:
        code: Short machine-readable error code.
        recoverable: Whether the caller may reasonably try again.
        details: Extra context for logging.
    """

    def __init__(
        self,
        message: str,
        code: str = "STREAMUX_ERROR",
        recoverable: bool = False,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.code = code
        self.recoverable = recoverable
        self.details = details or {}


class ProviderError(StreamuxError):
    """
    Raised by an adapter when the upstream stream cannot continue.

    ``status`` carries the HTTP status when the vendor reported one, which
    lets the retry engine classify the failure.
    """

    def __init__(
        self,
        provider: str,
        message: str,
        code: str = "PROVIDER_ERROR",
        status: Optional[int] = None,
        recoverable: bool = False,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, code, recoverable, details)
        self.provider = provider
        self.status = status


class ModelNotFoundError(StreamuxError):
    def __init__(self, model: str, message: Optional[str] = None):
        super().__init__(
            message or f"Model '{model}' not found or not available",
            code="MODEL_NOT_FOUND",
        )
        self.model = model


class ConfigurationError(StreamuxError):
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code="CONFIGURATION_ERROR", details=details)


class StreamAbortedError(StreamuxError):
    """Raised when a request's abort signal fires."""

    def __init__(self, message: str = "Operation aborted"):
        super().__init__(message, code="ABORT_ERROR")


class QueueClearedError(StreamuxError):
    """Rejects sequential-queue tasks that were cleared before they started."""

    def __init__(self, owner_key: str):
        super().__init__(f"Queue cleared for '{owner_key}'", code="QUEUE_CLEARED")
        self.owner_key = owner_key


class ToolExecutionError(StreamuxError):
    def __init__(self, tool_name: str, message: str):
        super().__init__(message, code="TOOL_EXECUTION_ERROR", recoverable=True)
        self.tool_name = tool_name
