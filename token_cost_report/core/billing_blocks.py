"""
Five-hour billing blocks.

Usage is bucketed into fixed UTC windows starting at 00:00, 05:00, 10:00,
15:00 and 20:00. Blocks fold and merge the same way as the daily and
session aggregates.
"""

from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, timezone
from fractions import Fraction
from typing import Dict, Iterable, List, Optional, Set, Tuple

from .aggregation import UsageTotals
from .pricing import CostResolution
from .token_counter import TokenUsage
from token_cost_report.storage.models import UsageEvent

BLOCK_HOURS = 5
BLOCKS_PER_DAY = 24 // BLOCK_HOURS + (1 if 24 % BLOCK_HOURS else 0)


def block_index(instant: datetime) -> int:
    """Index (0-4) of the UTC block an instant falls in."""
    return instant.astimezone(timezone.utc).hour // BLOCK_HOURS


def block_start(instant: datetime) -> datetime:
    """Start of the UTC block an instant falls in."""
    utc = instant.astimezone(timezone.utc)
    return datetime.combine(utc.date(), time(block_index(utc) * BLOCK_HOURS), tzinfo=timezone.utc)


_LATEST = datetime.max.replace(tzinfo=timezone.utc)


def _block_bounds(day: date, index: int) -> Tuple[datetime, datetime]:
    start = datetime.combine(day, time(index * BLOCK_HOURS), tzinfo=timezone.utc)
    if day == date.max:
        # No next midnight to end at
        return start, _LATEST
    end = min(start + timedelta(hours=BLOCK_HOURS),
              datetime.combine(day + timedelta(days=1), time(0), tzinfo=timezone.utc))
    return start, end


@dataclass
class BlockTotals(UsageTotals):
    """Running sums for one block plus the sessions seen in it."""
    sessions: Set[str] = field(default_factory=set)

    def absorb(self, other: UsageTotals) -> None:
        super().absorb(other)
        if isinstance(other, BlockTotals):
            self.sessions |= other.sessions

    def copy(self) -> "BlockTotals":
        clone = BlockTotals()
        clone.absorb(self)
        return clone


@dataclass(frozen=True)
class BillingBlock:
    """Usage inside one five-hour UTC window."""
    date: date
    block_index: int
    start_time: datetime
    end_time: datetime
    usage: TokenUsage
    total_cost: float
    record_count: int
    session_count: int
    unpriced_count: int = 0

    @property
    def total_tokens(self) -> int:
        return self.usage.total_tokens

    @property
    def label(self) -> str:
        """Time-of-day range, e.g. ``05:00-10:00``."""
        end_hour = self.block_index * BLOCK_HOURS + BLOCK_HOURS
        return f"{self.start_time.hour:02d}:00-{min(end_hour, 24):02d}:00"

    def contains(self, instant: datetime) -> bool:
        return self.start_time <= instant < self.end_time


class BlockPartial:
    """Per-worker accumulator of billing-block sums."""

    def __init__(self):
        self.totals: Dict[Tuple[date, int], BlockTotals] = {}

    def add(self, event: UsageEvent, resolution: CostResolution) -> None:
        """Fold one priced event into its block."""
        utc = event.timestamp.astimezone(timezone.utc)
        key = (utc.date(), block_index(utc))
        sums = self.totals.setdefault(key, BlockTotals())
        sums.add(event.usage, resolution)
        sums.sessions.add(event.session_key)

    def _absorb_partial(self, other: "BlockPartial") -> None:
        # Mutates self only; sums taken from other are copied, never shared.
        for key, sums in other.totals.items():
            if key in self.totals:
                self.totals[key].absorb(sums)
            else:
                self.totals[key] = sums.copy()

    def merge(self, other: "BlockPartial") -> "BlockPartial":
        """Return a new partial holding the sums of both; inputs are untouched."""
        merged = BlockPartial()
        merged._absorb_partial(self)
        merged._absorb_partial(other)
        return merged

    def blocks(self) -> List[BillingBlock]:
        """Blocks with at least one event, in chronological order."""
        result = []
        for (day, index) in sorted(self.totals):
            sums = self.totals[(day, index)]
            start, end = _block_bounds(day, index)
            result.append(BillingBlock(
                date=day,
                block_index=index,
                start_time=start,
                end_time=end,
                usage=sums.usage,
                total_cost=sums.total_cost,
                record_count=sums.record_count,
                session_count=len(sums.sessions),
                unpriced_count=sums.unpriced_count,
            ))
        return result

    def peak_block(self) -> Optional[BillingBlock]:
        """Block with the highest cost; the earliest wins a tie."""
        best_key = None
        for key in sorted(self.totals):
            if best_key is None or self.totals[key].cost > self.totals[best_key].cost:
                best_key = key
        if best_key is None:
            return None
        return next(b for b in self.blocks() if (b.date, b.block_index) == best_key)

    def average_block_cost(self) -> Optional[float]:
        """Mean cost over blocks that saw at least one event."""
        active = [sums for sums in self.totals.values() if sums.record_count > 0]
        if not active:
            return None
        return float(sum((sums.cost for sums in active), Fraction(0)) / len(active))

    def usage_by_block_time(self) -> Dict[str, Tuple[TokenUsage, float]]:
        """Usage and cost per time-of-day label, summed across all dates."""
        by_label: Dict[str, UsageTotals] = {}
        for block in self.blocks():
            sums = self.totals[(block.date, block.block_index)]
            by_label.setdefault(block.label, UsageTotals()).absorb(sums)
        return {label: (sums.usage, sums.total_cost) for label, sums in sorted(by_label.items())}

    def current_block(self, now: datetime) -> Optional[BillingBlock]:
        """The block containing ``now``, if it has any usage."""
        utc = now.astimezone(timezone.utc)
        key = (utc.date(), block_index(utc))
        if key not in self.totals:
            return None
        return next(b for b in self.blocks() if (b.date, b.block_index) == key)


def merge_block_partials(partials: Iterable[BlockPartial]) -> BlockPartial:
    """Merge any number of block partials into one accumulator; order never changes the result."""
    merged = BlockPartial()
    for part in partials:
        merged._absorb_partial(part)
    return merged
