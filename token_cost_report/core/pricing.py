"""
Pricing calculations and rate management.

Holds per-token rates, the built-in fallback table, and the ordered model
matchers used to find a rate for a logged model identifier.
"""

import re
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Dict, Iterable, Mapping, Optional, Tuple

from .token_counter import TokenUsage

TOKENS_PER_MILLION = Decimal("1000000")


def per_token_rate(price_per_million) -> float:
    """Convert a published USD-per-million-tokens price to USD per token.

    This is the only place the division by one million happens. Prices read
    back from the pricing cache are already per token and must not pass
    through here again.
    """
    price = Decimal(str(price_per_million))
    if price < 0:
        raise ValueError("price cannot be negative")
    return float(price / TOKENS_PER_MILLION)


@dataclass(frozen=True)
class ModelPricing:
    """Per-token pricing for a specific model."""
    input_cost_per_token: float
    output_cost_per_token: float
    cache_creation_cost_per_token: float = 0.0
    cache_read_cost_per_token: float = 0.0

    def __post_init__(self):
        """Validate rates are non-negative."""
        for name, value in self.as_dict().items():
            if value < 0:
                raise ValueError(f"{name} cannot be negative")

    @classmethod
    def from_published(
        cls,
        input_per_million,
        output_per_million,
        cache_creation_per_million=0,
        cache_read_per_million=0,
    ) -> "ModelPricing":
        """Build pricing from published per-million-token prices."""
        return cls(
            input_cost_per_token=per_token_rate(input_per_million),
            output_cost_per_token=per_token_rate(output_per_million),
            cache_creation_cost_per_token=per_token_rate(cache_creation_per_million),
            cache_read_cost_per_token=per_token_rate(cache_read_per_million),
        )

    @classmethod
    def from_dict(cls, data: Mapping[str, float]) -> "ModelPricing":
        """Rebuild pricing from its per-token dictionary form."""
        return cls(
            input_cost_per_token=float(data["input_cost_per_token"]),
            output_cost_per_token=float(data["output_cost_per_token"]),
            cache_creation_cost_per_token=float(data.get("cache_creation_cost_per_token", 0.0)),
            cache_read_cost_per_token=float(data.get("cache_read_cost_per_token", 0.0)),
        )

    def as_dict(self) -> Dict[str, float]:
        return {
            "input_cost_per_token": self.input_cost_per_token,
            "output_cost_per_token": self.output_cost_per_token,
            "cache_creation_cost_per_token": self.cache_creation_cost_per_token,
            "cache_read_cost_per_token": self.cache_read_cost_per_token,
        }

    def cost_of(self, usage: TokenUsage) -> float:
        """Sum of tokens times rate over the four token categories."""
        return (
            usage.input_tokens * self.input_cost_per_token
            + usage.output_tokens * self.output_cost_per_token
            + usage.cache_creation_tokens * self.cache_creation_cost_per_token
            + usage.cache_read_tokens * self.cache_read_cost_per_token
        )


# Published USD per million tokens: input, output, cache write, cache read.
_PUBLISHED_PRICES: Dict[str, Tuple[Decimal, Decimal, Decimal, Decimal]] = {
    "claude-opus-4-20250514": (Decimal("15.00"), Decimal("75.00"), Decimal("18.75"), Decimal("1.50")),
    "claude-sonnet-4-20250514": (Decimal("3.00"), Decimal("15.00"), Decimal("3.75"), Decimal("0.30")),
    "claude-3-5-sonnet-20241022": (Decimal("3.00"), Decimal("15.00"), Decimal("3.75"), Decimal("0.30")),
    "claude-3-5-haiku-20241022": (Decimal("0.80"), Decimal("4.00"), Decimal("1.00"), Decimal("0.08")),
    "claude-3-opus-20240229": (Decimal("15.00"), Decimal("75.00"), Decimal("18.75"), Decimal("1.50")),
    "claude-3-haiku-20240307": (Decimal("0.25"), Decimal("1.25"), Decimal("0.30"), Decimal("0.03")),
}


def builtin_pricing() -> Dict[str, ModelPricing]:
    """Return a fresh copy of the built-in fallback pricing table."""
    return {
        model: ModelPricing.from_published(*prices)
        for model, prices in _PUBLISHED_PRICES.items()
    }


# Short names seen in logs and on the command line, mapped to table keys.
MODEL_ALIASES: Dict[str, str] = {
    "opus-4": "claude-opus-4-20250514",
    "opus4": "claude-opus-4-20250514",
    "claude-opus-4": "claude-opus-4-20250514",
    "claude-4-opus": "claude-opus-4-20250514",
    "sonnet-4": "claude-sonnet-4-20250514",
    "sonnet4": "claude-sonnet-4-20250514",
    "claude-sonnet-4": "claude-sonnet-4-20250514",
    "claude-4-sonnet": "claude-sonnet-4-20250514",
    "sonnet-3.5": "claude-3-5-sonnet-20241022",
    "sonnet3.5": "claude-3-5-sonnet-20241022",
    "claude-3.5-sonnet": "claude-3-5-sonnet-20241022",
    "claude-3-5-sonnet-latest": "claude-3-5-sonnet-20241022",
    "haiku-3.5": "claude-3-5-haiku-20241022",
    "haiku3.5": "claude-3-5-haiku-20241022",
    "claude-3.5-haiku": "claude-3-5-haiku-20241022",
    "claude-3-5-haiku-latest": "claude-3-5-haiku-20241022",
    "opus-3": "claude-3-opus-20240229",
    "opus3": "claude-3-opus-20240229",
    "claude-3-opus-latest": "claude-3-opus-20240229",
    "haiku-3": "claude-3-haiku-20240307",
    "haiku3": "claude-3-haiku-20240307",
}

MODEL_FAMILIES = ("opus", "sonnet", "haiku")

_VERSION_SUFFIX = re.compile(r"-(\d{8}|latest)$")


def strip_version_suffix(model: str) -> str:
    """Drop a trailing release date or ``-latest`` tag from a model id."""
    return _VERSION_SUFFIX.sub("", model.strip().lower())


def model_family(model: str) -> Optional[str]:
    """Return the model family name, if one can be recognized."""
    lowered = model.lower()
    canonical = MODEL_ALIASES.get(lowered, lowered)
    for family in MODEL_FAMILIES:
        if family in canonical:
            return family
    return None


def matches_model_filter(model: str, model_filter: str) -> bool:
    """Check a model id against a user filter (substring, family or alias)."""
    wanted = model_filter.strip().lower()
    lowered = model.lower()
    if not wanted:
        return True
    if wanted in lowered:
        return True
    if wanted in MODEL_FAMILIES:
        return model_family(model) == wanted
    target = MODEL_ALIASES.get(wanted)
    if target is not None:
        return strip_version_suffix(target) == strip_version_suffix(MODEL_ALIASES.get(lowered, lowered))
    return False


@dataclass(frozen=True)
class PricingMatch:
    """A table entry chosen for a model, and the matcher that chose it."""
    key: str
    pricing: ModelPricing
    matcher: str


class ModelMatcher:
    """One step of the model lookup chain."""
    name = "matcher"

    def match(self, model: str, table: Mapping[str, ModelPricing]) -> Optional[PricingMatch]:
        raise NotImplementedError


class ExactMatch(ModelMatcher):
    """Model id equals a table key."""
    name = "exact"

    def match(self, model, table):
        if model in table:
            return PricingMatch(model, table[model], self.name)
        return None


class AliasMatch(ModelMatcher):
    """Model id is a known alias or a spelling variation of a table key."""
    name = "alias"

    def __init__(self, aliases: Optional[Mapping[str, str]] = None):
        self.aliases = dict(MODEL_ALIASES if aliases is None else aliases)

    def candidates(self, model: str) -> Iterable[str]:
        lowered = model.strip().lower()
        if lowered in self.aliases:
            yield self.aliases[lowered]
        bare = lowered[len("claude-"):] if lowered.startswith("claude-") else lowered
        yield lowered
        yield f"claude-3-5-{bare}"
        yield f"claude-3-{bare}"
        yield f"claude-{bare}"
        yield bare

    def match(self, model, table):
        for candidate in self.candidates(model):
            if candidate in table:
                return PricingMatch(candidate, table[candidate], self.name)
        return None


class FamilyPrefixMatch(ModelMatcher):
    """Model id is a more specific release of a table key's family.

    ``claude-opus-4-1-20250805`` matches ``claude-opus-4-20250514`` because,
    with release dates removed, the first extends the second at a ``-``
    boundary. The longest matching key wins; ties go to the smallest key.
    """
    name = "family_prefix"

    def match(self, model, table):
        base = strip_version_suffix(model)
        best: Optional[Tuple[int, str]] = None
        for key in table:
            key_base = strip_version_suffix(key)
            if base == key_base or base.startswith(key_base + "-"):
                rank = (-len(key_base), key)
                if best is None or rank < best:
                    best = rank
        if best is None:
            return None
        key = best[1]
        return PricingMatch(key, table[key], self.name)


class FallbackConstant(ModelMatcher):
    """Every model gets the same configured pricing."""
    name = "fallback_constant"

    def __init__(self, pricing: ModelPricing, key: str = "default"):
        self.pricing = pricing
        self.key = key

    def match(self, model, table):
        return PricingMatch(self.key, self.pricing, self.name)


def default_matchers(default_pricing: Optional[ModelPricing] = None):
    """The standard lookup chain, optionally ending in a constant fallback."""
    matchers = [ExactMatch(), AliasMatch(), FamilyPrefixMatch()]
    if default_pricing is not None:
        matchers.append(FallbackConstant(default_pricing))
    return matchers


def find_pricing(model: str, table: Mapping[str, ModelPricing], matchers) -> Optional[PricingMatch]:
    """Try each matcher in order and return the first hit."""
    for matcher in matchers:
        found = matcher.match(model, table)
        if found is not None:
            return found
    return None


class PriceSource(Enum):
    """Where the cost of an event came from."""
    COMPUTED = "computed"
    REPORTED = "reported"
    UNPRICED = "unpriced"


@dataclass(frozen=True)
class CostResolution:
    """Resolved cost of one event, or an explicit unpriced marker."""
    cost: float
    source: PriceSource
    pricing_key: Optional[str] = None
    matcher: Optional[str] = None
    discrepancy: bool = False

    @property
    def is_priced(self) -> bool:
        return self.source != PriceSource.UNPRICED


# Relative gap between computed and reported cost that counts as a discrepancy.
DISCREPANCY_RATIO = 0.5


def reconcile_cost(
    computed: Optional[float],
    reported: Optional[float],
    match: Optional[PricingMatch] = None,
) -> CostResolution:
    """Apply cost precedence: computed, unless missing or exactly zero.

    A computed zero falls back to the reported cost when one exists. Without
    either, the event is unpriced and contributes zero.
    """
    key = match.key if match else None
    matcher = match.matcher if match else None
    if computed is not None and computed != 0:
        discrepancy = False
        if reported is not None:
            larger = max(abs(computed), abs(reported))
            discrepancy = abs(computed - reported) > DISCREPANCY_RATIO * larger
        return CostResolution(computed, PriceSource.COMPUTED, key, matcher, discrepancy)
    if reported is not None:
        return CostResolution(reported, PriceSource.REPORTED, key, matcher)
    if computed is not None:
        return CostResolution(0.0, PriceSource.COMPUTED, key, matcher)
    return CostResolution(0.0, PriceSource.UNPRICED)
