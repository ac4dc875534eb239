"""
Daily, session and monthly aggregation.

Each worker folds its own events into an AggregationPartial; partials are
combined with merge_partials. Token sums are integers and cost sums are
exact fractions until a report is built, so the merge is associative and
commutative: sharding the same events any way gives identical totals.
"""

import calendar
import math
from dataclasses import dataclass, field
from datetime import date, datetime, timezone, tzinfo
from enum import Enum
from fractions import Fraction
from functools import reduce
from typing import Dict, Iterable, List, Optional, Tuple

from .pricing import CostResolution
from .token_counter import TokenUsage
from token_cost_report.storage.models import UsageEvent


class SortOrder(Enum):
    """Report ordering."""
    ASC = "asc"
    DESC = "desc"


class SortField(Enum):
    """Report sort key."""
    DATE = "date"
    COST = "cost"
    TOKENS = "tokens"


@dataclass
class UsageTotals:
    """Mutable running sums for one aggregation key."""
    input_tokens: int = 0
    output_tokens: int = 0
    cache_creation_tokens: int = 0
    cache_read_tokens: int = 0
    cost: Fraction = Fraction(0)
    record_count: int = 0
    unpriced_count: int = 0

    def add(self, usage: TokenUsage, resolution: CostResolution) -> None:
        self.input_tokens += usage.input_tokens
        self.output_tokens += usage.output_tokens
        self.cache_creation_tokens += usage.cache_creation_tokens
        self.cache_read_tokens += usage.cache_read_tokens
        self.cost += Fraction(resolution.cost)
        self.record_count += 1
        if not resolution.is_priced:
            self.unpriced_count += 1

    def absorb(self, other: "UsageTotals") -> None:
        """Add another accumulator's sums into this one."""
        self.input_tokens += other.input_tokens
        self.output_tokens += other.output_tokens
        self.cache_creation_tokens += other.cache_creation_tokens
        self.cache_read_tokens += other.cache_read_tokens
        self.cost += other.cost
        self.record_count += other.record_count
        self.unpriced_count += other.unpriced_count

    def copy(self) -> "UsageTotals":
        clone = UsageTotals()
        clone.absorb(self)
        return clone

    @property
    def usage(self) -> TokenUsage:
        return TokenUsage(
            input_tokens=self.input_tokens,
            output_tokens=self.output_tokens,
            cache_creation_tokens=self.cache_creation_tokens,
            cache_read_tokens=self.cache_read_tokens,
        )

    @property
    def total_cost(self) -> float:
        return float(self.cost)


@dataclass
class SessionTotals(UsageTotals):
    """Running sums for one session plus its activity span."""
    first_activity: Optional[datetime] = None
    last_activity: Optional[datetime] = None

    def touch(self, instant: datetime) -> None:
        if self.first_activity is None or instant < self.first_activity:
            self.first_activity = instant
        if self.last_activity is None or instant > self.last_activity:
            self.last_activity = instant

    def absorb(self, other: UsageTotals) -> None:
        super().absorb(other)
        if isinstance(other, SessionTotals):
            if other.first_activity is not None:
                self.touch(other.first_activity)
            if other.last_activity is not None:
                self.touch(other.last_activity)

    def copy(self) -> "SessionTotals":
        clone = SessionTotals()
        clone.absorb(self)
        return clone


@dataclass(frozen=True)
class DailyAggregate:
    """Usage for one calendar date."""
    date: date
    usage: TokenUsage
    total_cost: float
    record_count: int
    unpriced_count: int = 0

    @property
    def total_tokens(self) -> int:
        return self.usage.total_tokens


@dataclass(frozen=True)
class SessionAggregate:
    """Usage for one session, keyed by session_key."""
    session_key: str
    usage: TokenUsage
    total_cost: float
    record_count: int
    first_activity: datetime
    last_activity: datetime
    unpriced_count: int = 0

    @property
    def total_tokens(self) -> int:
        return self.usage.total_tokens

    @property
    def project_path(self) -> str:
        """Everything before the last ``/`` of the session key."""
        head, _, _ = self.session_key.rpartition("/")
        return head

    @property
    def session_id(self) -> str:
        return self.session_key.rpartition("/")[2]


@dataclass(frozen=True)
class MonthlyAggregate:
    """Usage for one (year, month)."""
    year: int
    month: int
    usage: TokenUsage
    total_cost: float
    record_count: int
    active_days: int
    unpriced_count: int = 0

    @property
    def total_tokens(self) -> int:
        return self.usage.total_tokens

    @property
    def month_name(self) -> str:
        return calendar.month_name[self.month]

    @property
    def avg_daily_cost(self) -> float:
        if self.active_days == 0:
            return 0.0
        return self.total_cost / self.active_days


@dataclass(frozen=True)
class ReportTotals:
    """Grand total over a list of aggregates, for report footers."""
    usage: TokenUsage
    total_cost: float
    record_count: int

    @property
    def total_tokens(self) -> int:
        return self.usage.total_tokens


def totals(aggregates: Iterable) -> ReportTotals:
    """Collapse Daily/Session/Monthly aggregates or billing blocks into one total."""
    items = list(aggregates)
    usage = reduce(lambda acc, item: acc + item.usage, items, TokenUsage())
    return ReportTotals(
        usage=usage,
        total_cost=math.fsum(item.total_cost for item in items),
        record_count=sum(item.record_count for item in items),
    )


def _ordered(items: List, key, order: SortOrder) -> List:
    return sorted(items, key=key, reverse=(order == SortOrder.DESC))


class AggregationPartial:
    """Per-worker accumulator for daily and session sums.

    Monthly sums are derived from the daily map when a report is built, so
    daily and monthly totals cannot drift apart.

    Args:
        tz: Timezone whose calendar dates key the daily map
    """

    def __init__(self, tz: tzinfo = timezone.utc):
        self.tz = tz
        self.daily: Dict[date, UsageTotals] = {}
        self.sessions: Dict[str, SessionTotals] = {}

    def add(self, event: UsageEvent, resolution: CostResolution) -> None:
        """Fold one priced event into the partial."""
        day = event.timestamp.astimezone(self.tz).date()
        self.daily.setdefault(day, UsageTotals()).add(event.usage, resolution)
        session = self.sessions.setdefault(event.session_key, SessionTotals())
        session.add(event.usage, resolution)
        session.touch(event.timestamp)

    def _absorb_partial(self, other: "AggregationPartial") -> None:
        # Mutates self only; sums taken from other are copied, never shared.
        if self.tz != other.tz:
            raise ValueError("cannot merge partials bucketed in different timezones")
        for day, sums in other.daily.items():
            if day in self.daily:
                self.daily[day].absorb(sums)
            else:
                self.daily[day] = sums.copy()
        for key, sums in other.sessions.items():
            if key in self.sessions:
                self.sessions[key].absorb(sums)
            else:
                self.sessions[key] = sums.copy()

    def merge(self, other: "AggregationPartial") -> "AggregationPartial":
        """Return a new partial holding the sums of both; inputs are untouched."""
        merged = AggregationPartial(self.tz)
        merged._absorb_partial(self)
        merged._absorb_partial(other)
        return merged

    def _monthly_totals(self) -> Dict[Tuple[int, int], Tuple[UsageTotals, int]]:
        months: Dict[Tuple[int, int], Tuple[UsageTotals, int]] = {}
        for day, sums in self.daily.items():
            key = (day.year, day.month)
            month_sums, active_days = months.get(key, (UsageTotals(), 0))
            month_sums.absorb(sums)
            months[key] = (month_sums, active_days + 1)
        return months

    def daily_report(
        self,
        order: SortOrder = SortOrder.DESC,
        sort_field: SortField = SortField.DATE,
    ) -> List[DailyAggregate]:
        """Daily aggregates, newest first by default."""
        rows = [
            DailyAggregate(
                date=day,
                usage=sums.usage,
                total_cost=sums.total_cost,
                record_count=sums.record_count,
                unpriced_count=sums.unpriced_count,
            )
            for day, sums in self.daily.items()
        ]
        keys = {
            SortField.DATE: lambda r: r.date,
            SortField.COST: lambda r: (r.total_cost, r.date),
            SortField.TOKENS: lambda r: (r.total_tokens, r.date),
        }
        return _ordered(rows, keys[sort_field], order)

    def monthly_report(
        self,
        order: SortOrder = SortOrder.DESC,
        sort_field: SortField = SortField.DATE,
    ) -> List[MonthlyAggregate]:
        """Monthly aggregates, newest first by default."""
        rows = [
            MonthlyAggregate(
                year=year,
                month=month,
                usage=sums.usage,
                total_cost=sums.total_cost,
                record_count=sums.record_count,
                active_days=active_days,
                unpriced_count=sums.unpriced_count,
            )
            for (year, month), (sums, active_days) in self._monthly_totals().items()
        ]
        keys = {
            SortField.DATE: lambda r: (r.year, r.month),
            SortField.COST: lambda r: (r.total_cost, r.year, r.month),
            SortField.TOKENS: lambda r: (r.total_tokens, r.year, r.month),
        }
        return _ordered(rows, keys[sort_field], order)

    def session_report(
        self,
        order: SortOrder = SortOrder.DESC,
        sort_field: SortField = SortField.COST,
    ) -> List[SessionAggregate]:
        """Session aggregates, most expensive first by default."""
        rows = [
            SessionAggregate(
                session_key=key,
                usage=sums.usage,
                total_cost=sums.total_cost,
                record_count=sums.record_count,
                first_activity=sums.first_activity,
                last_activity=sums.last_activity,
                unpriced_count=sums.unpriced_count,
            )
            for key, sums in self.sessions.items()
        ]
        keys = {
            SortField.DATE: lambda r: (r.last_activity, r.session_key),
            SortField.COST: lambda r: (r.total_cost, r.session_key),
            SortField.TOKENS: lambda r: (r.total_tokens, r.session_key),
        }
        return _ordered(rows, keys[sort_field], order)


def merge_partials(partials: Iterable[AggregationPartial], tz: tzinfo = timezone.utc) -> AggregationPartial:
    """Merge any number of partials; order never changes the result.

    Folds into one accumulator, so the cost is linear in the total number
    of keys. The inputs are left untouched.
    """
    merged = AggregationPartial(tz)
    for part in partials:
        merged._absorb_partial(part)
    return merged
