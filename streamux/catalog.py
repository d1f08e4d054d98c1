"""
Static model registry used for provider selection and pricing.
"""
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple, Union

logger = logging.getLogger(__name__)

# Model ids may carry an effort suffix that only affects request settings
EFFORT_SUFFIXES = ("-low", "-medium", "-high", "-max")


# =============================================================================
# Pricing & Features
# =============================================================================

@dataclass(frozen=True)
class TieredPrice:
    """Per-million price that jumps once a request crosses ``threshold_tokens``."""
    threshold_tokens: int
    price_below_threshold_per_million: float
    price_above_threshold_per_million: float


@dataclass(frozen=True)
class TimeBasedPrice:
    """
    Peak / off-peak per-million price.

    The peak window starts (inclusive) and ends (exclusive) at the given UTC
    times and may wrap past midnight.
    """
    peak_price_per_million: float
    off_peak_price_per_million: float
    peak_utc_start_hour: int
    peak_utc_start_minute: int
    peak_utc_end_hour: int
    peak_utc_end_minute: int


Price = Union[float, TieredPrice, TimeBasedPrice]


@dataclass(frozen=True)
class ModelCost:
    input_per_million: Optional[Price] = None
    output_per_million: Optional[Price] = None
    cached_input_per_million: Optional[Price] = None
    per_image: Optional[float] = None

    @property
    def is_priced(self) -> bool:
        return any(
            v is not None
            for v in (self.input_per_million, self.output_per_million,
                      self.cached_input_per_million, self.per_image)
        )


@dataclass(frozen=True)
class ModelFeatures:
    context_length: Optional[int] = None
    input_modality: List[str] = field(default_factory=lambda: ["text"])
    output_modality: List[str] = field(default_factory=lambda: ["text"])
    tool_use: bool = False
    simulate_tools: bool = False
    streaming: bool = True
    json_output: bool = False
    max_output_tokens: Optional[int] = None
    reasoning_output: bool = False


@dataclass(frozen=True)
class ModelEntry:
    id: str
    provider: str
    cost: ModelCost = field(default_factory=ModelCost)
    features: ModelFeatures = field(default_factory=ModelFeatures)
    model_class: str = "standard"
    aliases: List[str] = field(default_factory=list)
    description: Optional[str] = None


# =============================================================================
# Registry
# =============================================================================

def _deepseek_window(peak: float, off_peak: float) -> TimeBasedPrice:
    return TimeBasedPrice(
        peak_price_per_million=peak,
        off_peak_price_per_million=off_peak,
        peak_utc_start_hour=0,
        peak_utc_start_minute=30,
        peak_utc_end_hour=16,
        peak_utc_end_minute=30,
    )


MODEL_REGISTRY: List[ModelEntry] = [
    # OpenAI
    ModelEntry(
        id="gpt-4o",
        aliases=["gpt-4o-2024-08-06"],
        provider="openai",
        cost=ModelCost(input_per_million=2.5, cached_input_per_million=1.25, output_per_million=10.0),
        features=ModelFeatures(context_length=128000, input_modality=["text", "image"],
                               tool_use=True, json_output=True, max_output_tokens=16384),
        description="OpenAI's versatile omni model",
    ),
    ModelEntry(
        id="gpt-4.1",
        aliases=["gpt-4.1-2025-04-14"],
        provider="openai",
        cost=ModelCost(input_per_million=2.0, cached_input_per_million=0.5, output_per_million=8.0),
        features=ModelFeatures(context_length=1048576, input_modality=["text", "image"],
                               tool_use=True, json_output=True),
        description="Flagship GPT model for complex tasks",
    ),
    ModelEntry(
        id="o3",
        aliases=["o3-2025-04-16"],
        provider="openai",
        cost=ModelCost(input_per_million=2.0, cached_input_per_million=0.5, output_per_million=8.0),
        features=ModelFeatures(context_length=200000, input_modality=["text", "image"],
                               tool_use=True, json_output=True, max_output_tokens=100000,
                               reasoning_output=True),
        model_class="reasoning",
    ),
    ModelEntry(
        id="text-embedding-3-small",
        provider="openai",
        cost=ModelCost(input_per_million=0.02, output_per_million=0),
        features=ModelFeatures(context_length=8191, output_modality=["embedding"]),
        model_class="embedding",
    ),
    ModelEntry(
        id="gpt-image-1",
        provider="openai",
        cost=ModelCost(input_per_million=5.0, per_image=0.042),
        features=ModelFeatures(input_modality=["text", "image"], output_modality=["image"],
                               streaming=False),
        model_class="image_generation",
    ),
    ModelEntry(
        id="tts-1",
        provider="openai",
        cost=ModelCost(input_per_million=15.0),
        features=ModelFeatures(output_modality=["audio"], streaming=False),
        model_class="voice",
    ),
    ModelEntry(
        id="whisper-1",
        provider="openai",
        cost=ModelCost(input_per_million=6.0),
        features=ModelFeatures(input_modality=["audio"], streaming=False),
        model_class="transcription",
    ),
    # Anthropic
    ModelEntry(
        id="claude-sonnet-4-20250514",
        aliases=["claude-sonnet-4", "claude-4-sonnet"],
        provider="anthropic",
        cost=ModelCost(input_per_million=3.0, output_per_million=15.0, cached_input_per_million=0.3),
        features=ModelFeatures(context_length=200000, input_modality=["text", "image"],
                               tool_use=True, json_output=True, max_output_tokens=64000,
                               reasoning_output=True),
        model_class="reasoning",
    ),
    ModelEntry(
        id="claude-opus-4-1-20250805",
        aliases=["claude-opus-4", "claude-opus-4-1", "claude-4-opus"],
        provider="anthropic",
        cost=ModelCost(input_per_million=15.0, output_per_million=75.0, cached_input_per_million=1.5),
        features=ModelFeatures(context_length=200000, input_modality=["text", "image"],
                               tool_use=True, json_output=True, max_output_tokens=32000,
                               reasoning_output=True),
        model_class="reasoning",
    ),
    ModelEntry(
        id="claude-3-5-haiku-latest",
        aliases=["claude-3-5-haiku-20241022"],
        provider="anthropic",
        cost=ModelCost(input_per_million=0.8, output_per_million=4.0, cached_input_per_million=0.08),
        features=ModelFeatures(context_length=200000, input_modality=["text", "image"],
                               tool_use=True, json_output=True, max_output_tokens=8192),
        model_class="mini",
    ),
    # Google
    ModelEntry(
        id="gemini-2.5-pro-preview-06-05",
        aliases=["gemini-2.5-pro"],
        provider="google",
        cost=ModelCost(
            input_per_million=TieredPrice(200000, 1.25, 2.5),
            output_per_million=TieredPrice(200000, 10.0, 15.0),
        ),
        features=ModelFeatures(context_length=1048576,
                               input_modality=["text", "image", "video", "audio"],
                               tool_use=True, json_output=True, max_output_tokens=65536,
                               reasoning_output=True),
        model_class="reasoning",
    ),
    ModelEntry(
        id="gemini-2.5-flash-preview-05-20",
        aliases=["gemini-2.5-flash"],
        provider="google",
        cost=ModelCost(input_per_million=0.3, output_per_million=2.5),
        features=ModelFeatures(context_length=1048576,
                               input_modality=["text", "image", "video", "audio"],
                               tool_use=True, json_output=True, max_output_tokens=65536,
                               reasoning_output=True),
        model_class="reasoning",
    ),
    ModelEntry(
        id="gemini-embedding-001",
        aliases=["text-embedding-004"],
        provider="google",
        cost=ModelCost(input_per_million=0.15, output_per_million=0),
        features=ModelFeatures(context_length=2048, output_modality=["embedding"]),
        model_class="embedding",
    ),
    # DeepSeek
    ModelEntry(
        id="deepseek-chat",
        aliases=["deepseek-v3-0324"],
        provider="deepseek",
        cost=ModelCost(
            input_per_million=_deepseek_window(0.27, 0.135),
            cached_input_per_million=_deepseek_window(0.07, 0.035),
            output_per_million=_deepseek_window(1.1, 0.55),
        ),
        features=ModelFeatures(context_length=64000, max_output_tokens=8192,
                               tool_use=True, json_output=True),
    ),
    ModelEntry(
        id="deepseek-reasoner",
        aliases=["deepseek-r1-0528"],
        provider="deepseek",
        cost=ModelCost(
            input_per_million=_deepseek_window(0.55, 0.1375),
            cached_input_per_million=_deepseek_window(0.14, 0.035),
            output_per_million=_deepseek_window(2.19, 0.5475),
        ),
        features=ModelFeatures(context_length=64000, max_output_tokens=64000,
                               tool_use=True, simulate_tools=True, json_output=True,
                               reasoning_output=True),
        model_class="reasoning",
    ),
    # OpenRouter
    ModelEntry(
        id="openai/gpt-oss-120b",
        aliases=["gpt-oss-120b"],
        provider="openrouter",
        cost=ModelCost(input_per_million=0.09, output_per_million=0.45),
        features=ModelFeatures(context_length=131072, tool_use=True, json_output=True,
                               reasoning_output=True),
    ),
    # Offline scripted models
    ModelEntry(
        id="test-model",
        provider="test",
        cost=ModelCost(input_per_million=1.0, output_per_million=2.0),
        features=ModelFeatures(tool_use=True, json_output=True),
    ),
]


class ModelCatalog:
    """
    Lookup over a list of ``ModelEntry`` objects.

    Entries registered at runtime take precedence over the built-in ones.
    """

    def __init__(self, entries: Optional[List[ModelEntry]] = None):
        self._entries: List[ModelEntry] = list(MODEL_REGISTRY if entries is None else entries)
        self._external: Dict[str, ModelEntry] = {}

    def register(self, entry: ModelEntry) -> None:
        if entry.id in self._external:
            logger.warning("Replacing externally registered model '%s'", entry.id)
        self._external[entry.id] = entry

    def unregister(self, model_id: str) -> None:
        self._external.pop(model_id, None)

    def entries(self) -> List[ModelEntry]:
        return list(self._external.values()) + self._entries

    def find_model(self, model_id: str) -> Optional[ModelEntry]:
        """
        Find a model by id, then by alias, then with its effort suffix removed.

        Args:
            model_id (str): e.g. ``"claude-sonnet-4-high"``.

        Returns:
            Optional[ModelEntry]: The matching entry, or None.
        """
        if model_id in self._external:
            return self._external[model_id]

        for entry in self._entries:
            if entry.id == model_id:
                return entry
        for entry in self._entries:
            if model_id in entry.aliases:
                return entry

        for suffix in EFFORT_SUFFIXES:
            if model_id.endswith(suffix):
                return self.find_model(model_id[:-len(suffix)])
        return None


def split_effort_suffix(model_id: str) -> Tuple[str, Optional[str]]:
    """Split ``"o3-high"`` into ``("o3", "high")``; no suffix gives ``(model_id, None)``."""
    for suffix in EFFORT_SUFFIXES:
        if model_id.endswith(suffix):
            return model_id[:-len(suffix)], suffix[1:]
    return model_id, None


default_catalog = ModelCatalog()


def find_model(model_id: str) -> Optional[ModelEntry]:
    return default_catalog.find_model(model_id)
