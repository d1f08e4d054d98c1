from typing import Optional

from .base import BaseLLMProvider, StreamState
from .openai import OpenAIProvider
from .deepseek import DeepSeekProvider
from .openrouter import OpenRouterProvider
from .anthropic import AnthropicProvider
from .gemini import GeminiProvider
from .scripted import ScriptedProvider, ScriptedResponse
from ..catalog import ModelCatalog, default_catalog, split_effort_suffix

# Model id prefixes and the provider that serves them
PROVIDER_PREFIXES = (
    (("gpt-", "o1", "o3", "o4", "text-", "dall-e", "gpt-image", "tts-", "whisper"), "openai"),
    (("claude-",), "anthropic"),
    (("gemini-", "imagen-"), "google"),
    (("deepseek-",), "deepseek"),
    (("test-",), "test"),
)
FALLBACK_PROVIDER = "openrouter"


def provider_for_model(model: str, catalog: Optional[ModelCatalog] = None) -> str:
    """
    Pick the provider id for ``model``.

    The catalog entry's provider wins; otherwise the id prefix decides, and
    anything unrecognised goes to OpenRouter.
    """
    entry = (catalog or default_catalog).find_model(model)
    if entry is not None:
        return entry.provider
    base_model, _ = split_effort_suffix(model)
    for prefixes, provider in PROVIDER_PREFIXES:
        if base_model.startswith(prefixes):
            return provider
    return FALLBACK_PROVIDER


__all__ = [
    "BaseLLMProvider",
    "StreamState",
    "OpenAIProvider",
    "DeepSeekProvider",
    "OpenRouterProvider",
    "AnthropicProvider",
    "GeminiProvider",
    "ScriptedProvider",
    "ScriptedResponse",
    "PROVIDER_PREFIXES",
    "provider_for_model",
]
