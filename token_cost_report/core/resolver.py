"""
Per-event cost resolution.

Combines the pricing cache, the built-in table and user overrides into one
active table, then prices events through the matcher chain.
"""

import logging
import threading
from typing import Dict, List, Mapping, Optional, Sequence

from .pricing import (
    CostResolution,
    ModelMatcher,
    ModelPricing,
    builtin_pricing,
    default_matchers,
    find_pricing,
    reconcile_cost,
)
from .token_counter import TokenUsage
from token_cost_report.storage.pricing_cache import CacheState, PricingCache

logger = logging.getLogger(__name__)


class PricingResolver:
    """Turns (model, token counts, reported cost) into a CostResolution.

    The cache is read once here, at construction. When it is not usable the
    built-in table is used and, on the first resolution, written back so the
    next run finds it. That write happens at most once per resolver.

    Args:
        cache: Pricing cache to read and refresh; None disables caching
        overrides: Pricing entries that take precedence over the base table
        default_pricing: Constant pricing for models no other matcher finds
        matchers: Custom matcher chain (replaces the default chain)
    """

    def __init__(
        self,
        cache: Optional[PricingCache] = None,
        overrides: Optional[Mapping[str, ModelPricing]] = None,
        default_pricing: Optional[ModelPricing] = None,
        matchers: Optional[Sequence[ModelMatcher]] = None,
    ):
        self.cache = cache
        self.warnings: List[str] = []
        self.cache_state: Optional[CacheState] = None
        self._needs_write = False
        self._written = False
        self._write_lock = threading.Lock()

        base: Optional[Dict[str, ModelPricing]] = None
        if cache is not None:
            loaded = cache.load()
            self.cache_state = loaded.state
            if loaded.is_valid:
                base = loaded.table
            else:
                if loaded.warning:
                    self.warnings.append(loaded.warning)
                self._needs_write = True
        self.base_table: Dict[str, ModelPricing] = base if base is not None else builtin_pricing()
        self.table: Dict[str, ModelPricing] = dict(self.base_table)
        if overrides:
            self.table.update(overrides)
        self.matchers = list(matchers) if matchers is not None else default_matchers(default_pricing)

    @property
    def using_cache(self) -> bool:
        return self.cache_state == CacheState.VALID

    def _save(self) -> bool:
        # Caller holds the write lock.
        if self._written:
            return True
        self._written = True
        saved = self.cache.save(self.base_table)
        if not saved:
            self.warnings.append(f"Pricing cache could not be written to {self.cache.path}")
        return saved

    def _persist_once(self) -> None:
        if not self._needs_write:
            return
        with self._write_lock:
            if not self._needs_write:
                return
            self._needs_write = False
            self._save()

    def refresh_cache(self) -> bool:
        """Write the active base table to the cache, at most once per resolver."""
        if self.cache is None:
            return False
        with self._write_lock:
            self._needs_write = False
            return self._save()

    def lookup(self, model: str):
        """Return the PricingMatch for a model id, or None."""
        return find_pricing(model, self.table, self.matchers)

    def resolve(
        self,
        model: Optional[str],
        usage: TokenUsage,
        reported_cost: Optional[float] = None,
    ) -> CostResolution:
        """Resolve the cost of one event.

        Order: exact, alias and family-prefix matches against the active
        table (plus a constant fallback if configured); otherwise the
        reported cost; otherwise unpriced with zero cost.
        """
        self._persist_once()
        if model is None:
            return reconcile_cost(None, reported_cost)
        match = self.lookup(model)
        if match is None:
            return reconcile_cost(None, reported_cost)
        resolution = reconcile_cost(match.pricing.cost_of(usage), reported_cost, match)
        if resolution.discrepancy:
            logger.debug(
                "Computed cost %.6f for %s differs from reported cost %.6f",
                resolution.cost, model, reported_cost,
            )
        return resolution
