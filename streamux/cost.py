"""
Usage pricing and per-process cost accounting.
"""
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from rich.console import Console
from rich.table import Table

from .catalog import ModelCatalog, Price, TieredPrice, TimeBasedPrice, default_catalog
from .errors import ModelNotFoundError

logger = logging.getLogger(__name__)

TOKENS_PER_MILLION = 1_000_000


@dataclass
class ModelUsage:
    """
    One priced (or to-be-priced) call to a model.

    ``cost`` stays None until ``CostResolver.resolve`` fills it in.
    """
    model: str
    input_tokens: int = 0
    output_tokens: int = 0
    cached_tokens: int = 0
    image_count: int = 0
    cost: Optional[float] = None
    timestamp: Optional[datetime] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    is_free_tier: bool = False
    no_pricing: bool = False

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


# =============================================================================
# Price Lookup
# =============================================================================

def _in_peak_window(price: TimeBasedPrice, when: datetime) -> bool:
    now = when.hour * 60 + when.minute
    start = price.peak_utc_start_hour * 60 + price.peak_utc_start_minute
    end = price.peak_utc_end_hour * 60 + price.peak_utc_end_minute
    if start <= end:
        return start <= now < end
    # Window wraps past midnight
    return now >= start or now < end


def price_per_million(price: Optional[Price], tokens_for_tier_check: int, when: datetime) -> float:
    """
    Resolve a price component to a flat per-million rate.

    Args:
        price: Flat number, ``TieredPrice`` or ``TimeBasedPrice``.
        tokens_for_tier_check (int): Token count compared against a tier threshold.
        when (datetime): UTC time used for peak / off-peak selection.

    Returns:
        float: Price per million tokens (0 when the component is undefined).
    """
    if price is None:
        return 0.0
    if isinstance(price, TimeBasedPrice):
        if _in_peak_window(price, when):
            return price.peak_price_per_million
        return price.off_peak_price_per_million
    if isinstance(price, TieredPrice):
        if tokens_for_tier_check <= price.threshold_tokens:
            return price.price_below_threshold_per_million
        return price.price_above_threshold_per_million
    return float(price)


class CostResolver:
    """
    Prices a ``ModelUsage`` against the model catalog.
    """

    def __init__(self, catalog: Optional[ModelCatalog] = None):
        self.catalog = catalog or default_catalog

    def resolve(self, usage: ModelUsage, when: Optional[datetime] = None) -> ModelUsage:
        """
        Fill in ``usage.cost``.

        Cached tokens are billed at the cached rate when the model defines
        one; otherwise they count as ordinary input. Tiered input prices are
        chosen on the full input token count.

        Raises:
            ModelNotFoundError: If the model is not in the catalog.
        """
        if usage.cost is not None:
            return usage
        if usage.is_free_tier:
            usage.cost = 0.0
            return usage

        entry = self.catalog.find_model(usage.model)
        if entry is None:
            raise ModelNotFoundError(usage.model, f"Model not found when recording usage: {usage.model}")

        cost = entry.cost
        if not cost.is_priced:
            logger.warning("Model '%s' has no pricing data, recording zero cost", usage.model)
            usage.cost = 0.0
            usage.no_pricing = True
            return usage

        if when is None:
            when = usage.timestamp or datetime.now(timezone.utc)
        when = when.astimezone(timezone.utc) if when.tzinfo else when

        input_tokens = usage.input_tokens or 0
        cached_tokens = usage.cached_tokens or 0
        if cached_tokens > 0 and cost.cached_input_per_million is not None:
            billed_cached = cached_tokens
            billed_input = max(0, input_tokens - cached_tokens)
        else:
            billed_cached = 0
            billed_input = input_tokens

        total = 0.0
        if billed_input > 0 and cost.input_per_million is not None:
            rate = price_per_million(cost.input_per_million, input_tokens, when)
            total += billed_input / TOKENS_PER_MILLION * rate
        if billed_cached > 0:
            rate = price_per_million(cost.cached_input_per_million, billed_cached, when)
            total += billed_cached / TOKENS_PER_MILLION * rate
        if usage.output_tokens > 0 and cost.output_per_million is not None:
            rate = price_per_million(cost.output_per_million, usage.output_tokens, when)
            total += usage.output_tokens / TOKENS_PER_MILLION * rate
        if usage.image_count > 0 and cost.per_image:
            total += usage.image_count * cost.per_image

        usage.cost = max(0.0, total)
        return usage


# =============================================================================
# Cost Tracker
# =============================================================================

class CostTracker:
    """
    Records every priced usage and reports running totals.
    """

    def __init__(self, resolver: Optional[CostResolver] = None):
        self.resolver = resolver or CostResolver()
        self.entries: List[ModelUsage] = []
        self.started = time.monotonic()
        self._callbacks: List[Callable[[ModelUsage], None]] = []

    def on_add_usage(self, callback: Callable[[ModelUsage], None]) -> None:
        self._callbacks.append(callback)

    def add_usage(self, usage: ModelUsage) -> ModelUsage:
        """
        Price ``usage``, record it and notify callbacks.

        Returns:
            ModelUsage: The priced entry.

        Raises:
            ModelNotFoundError: If the model has no catalog entry.
        """
        usage = self.resolver.resolve(usage)
        if usage.timestamp is None:
            usage.timestamp = datetime.now(timezone.utc)
        self.entries.append(usage)

        for callback in self._callbacks:
            try:
                callback(usage)
            except Exception:
                logger.exception("Error in cost tracker callback")
        return usage

    def get_total_cost(self) -> float:
        return sum(e.cost or 0.0 for e in self.entries)

    def get_costs_by_model(self) -> Dict[str, Dict[str, Any]]:
        models: Dict[str, Dict[str, Any]] = {}
        for entry in self.entries:
            bucket = models.setdefault(entry.model, {"cost": 0.0, "calls": 0})
            bucket["cost"] += entry.cost or 0.0
            bucket["calls"] += 1
        return models

    def print_summary(self, console: Optional[Console] = None) -> None:
        """Render a cost table, then reset the tracker."""
        if not self.entries:
            return
        console = console or Console()
        runtime = round(time.monotonic() - self.started)

        table = Table(title="Cost Summary", caption=f"Runtime: {runtime} seconds")
        table.add_column("Model", style="cyan")
        table.add_column("Calls", justify="right")
        table.add_column("Cost", justify="right", style="green")
        for model, data in self.get_costs_by_model().items():
            table.add_row(model, str(data["calls"]), f"${data['cost']:.6f}")
        table.add_section()
        table.add_row("Total", str(len(self.entries)), f"${self.get_total_cost():.6f}", style="bold")

        console.print(table)
        self.reset()

    def reset(self) -> None:
        self.entries = []
        self.started = time.monotonic()
