"""
Hooks for recording every upstream request and its outcome.
"""
import json
import logging
import uuid
from typing import Any, Optional, Protocol

logger = logging.getLogger(__name__)


class RequestLogger(Protocol):
    def log_request(self, agent_id: str, provider: str, model: str, payload: Any) -> str:
        """Record an outgoing request and return its id."""
        ...

    def log_response(self, request_id: str, payload: Any) -> None:
        ...

    def log_error(self, request_id: str, error: Any) -> None:
        ...


def _preview(payload: Any, limit: int = 500) -> str:
    try:
        text = json.dumps(payload, default=str)
    except (TypeError, ValueError):
        text = repr(payload)
    return text if len(text) <= limit else text[:limit] + "..."


class LoggingRequestLogger:
    """
    Default request logger: writes a short summary of each call at DEBUG
    level and failures at WARNING level.
    """

    def __init__(self, log: Optional[logging.Logger] = None):
        self.log = log or logger

    def log_request(self, agent_id: str, provider: str, model: str, payload: Any) -> str:
        request_id = str(uuid.uuid4())
        self.log.debug("[%s] %s/%s request (agent=%s): %s",
                       request_id, provider, model, agent_id, _preview(payload))
        return request_id

    def log_response(self, request_id: str, payload: Any) -> None:
        self.log.debug("[%s] response: %s", request_id, _preview(payload))

    def log_error(self, request_id: str, error: Any) -> None:
        self.log.warning("[%s] error: %s", request_id, error)
