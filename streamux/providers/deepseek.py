import json
import logging
from typing import Any, Dict, List, Optional

from .openai import OpenAIProvider
from ..control import AgentContext
from ..cost import CostTracker
from ..simulated_tools import build_simulated_tool_instructions
from ..types import ResponseInput

logger = logging.getLogger(__name__)

DEEPSEEK_BASE_URL = "https://api.deepseek.com/v1"
REASONER_MODEL = "deepseek-reasoner"
REASONER_MAX_TOKENS = 8000
# Parameters the reasoner rejects
REASONER_UNSUPPORTED = ("response_format", "logprobs", "top_logprobs", "tool_choice", "tools", "reasoning_effort")
CONTINUE_PROMPT = "Let me think through this step by step..."


def _as_text(content: Any) -> str:
    if content is None:
        return ""
    return content if isinstance(content, str) else json.dumps(content)


class DeepSeekProvider(OpenAIProvider):
    """
    DeepSeek is OpenAI-compatible, except ``deepseek-reasoner`` which has no
    native tool support and a strict message layout.
    """

    provider_id = "deepseek"

    def __init__(
        self,
        api_key: Optional[str],
        base_url: str = DEEPSEEK_BASE_URL,
        cost_tracker: Optional[CostTracker] = None,
    ):
        super().__init__(api_key, base_url=base_url, cost_tracker=cost_tracker)

    async def _build_request(
        self,
        history: ResponseInput,
        model: str,
        agent: AgentContext,
    ) -> Dict[str, Any]:
        params = await super()._build_request(history, model, agent)
        if params["model"] != REASONER_MODEL:
            return params

        for key in REASONER_UNSUPPORTED:
            params.pop(key, None)
        params["max_tokens"] = REASONER_MAX_TOKENS
        params["messages"] = self.prepare_reasoner_messages(params["messages"], agent)
        return params

    @staticmethod
    def prepare_reasoner_messages(messages: List[Dict[str, Any]], agent: AgentContext) -> List[Dict[str, Any]]:
        """
        Reshape chat messages for ``deepseek-reasoner``.

        - Tool calls and tool results become plain text turns.
        - All system messages (plus simulated tool instructions) are merged
          into one leading system message.
        - Consecutive messages with the same role are merged.
        - The conversation always ends with a user turn.
        """
        rewritten: List[Dict[str, Any]] = []
        for message in messages:
            role = message["role"]
            if role == "assistant" and message.get("tool_calls"):
                calls = "\n".join(
                    f"Called function '{tc['function']['name']}' with arguments: {_as_text(tc['function']['arguments'])}"
                    for tc in message["tool_calls"]
                )
                rewritten.append({"role": "assistant", "content": f"[Previous Action] {calls}"})
            elif role == "tool":
                call_info = f" for call ID {message['tool_call_id']}" if message.get("tool_call_id") else ""
                rewritten.append({"role": "user", "content": f"[Tool Result{call_info}] {_as_text(message.get('content'))}"})
            else:
                rewritten.append({"role": role, "content": _as_text(message.get("content"))})

        if not rewritten or rewritten[-1]["role"] != "user":
            rewritten.append({"role": "user", "content": CONTINUE_PROMPT})

        system_parts = [m["content"] for m in rewritten if m["role"] in ("system", "developer") and m["content"]]
        if agent.tools:
            system_parts.append(build_simulated_tool_instructions(agent.tools))

        merged: List[Dict[str, Any]] = []
        for message in rewritten:
            if message["role"] in ("system", "developer"):
                continue
            if merged and merged[-1]["role"] == message["role"]:
                merged[-1]["content"] = f"{merged[-1]['content']}\n\n{message['content']}"
            else:
                merged.append(dict(message))

        if system_parts:
            merged.insert(0, {"role": "system", "content": "\n\n".join(system_parts)})
        return merged
