from typing import Any, Dict, Optional

from openai import AsyncOpenAI

from .openai import OpenAIProvider, REASONING_EFFORTS
from ..cost import CostTracker

OPENROUTER_BASE_URL = "https://openrouter.ai/api/v1"

DEFAULT_HEADERS = {
    "HTTP-Referer": "https://github.com/streamux/streamux",
    "X-Title": "streamux",
}

# Routing preferences sent with every request
PROVIDER_PREFERENCES = {
    "require_parameters": True,
    "sort": "throughput",
}


class OpenRouterProvider(OpenAIProvider):
    """
    Fallback provider for any model id without a dedicated adapter.
    """

    provider_id = "openrouter"

    def __init__(
        self,
        api_key: Optional[str],
        base_url: str = OPENROUTER_BASE_URL,
        cost_tracker: Optional[CostTracker] = None,
    ):
        super().__init__(None, cost_tracker=cost_tracker)
        self.api_key = api_key
        self.client = AsyncOpenAI(
            api_key=api_key, base_url=base_url, default_headers=DEFAULT_HEADERS,
        ) if api_key else None

    def _apply_reasoning_effort(self, params: Dict[str, Any], effort: str) -> None:
        extra = params.setdefault("extra_body", {})
        extra["reasoning"] = {"effort": REASONING_EFFORTS[effort]}

    async def _build_request(self, history, model, agent) -> Dict[str, Any]:
        params = await super()._build_request(history, model, agent)
        params.setdefault("extra_body", {})["provider"] = dict(PROVIDER_PREFERENCES)
        return params
