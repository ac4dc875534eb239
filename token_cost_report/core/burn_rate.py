"""
Burn rate and near-future projections.

Rates are computed over finalized billing blocks and divided by active
hours rather than wall-clock hours, so idle nights and weekends do not
dilute them. Every division is guarded: an empty window gives an explicit
NO_DATA snapshot and a zero rate gives an UNBOUNDED limit forecast.
"""

import math
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone, tzinfo
from enum import Enum
from fractions import Fraction
from typing import Iterable, List, Optional, Sequence, Tuple

from .aggregation import DailyAggregate, SessionAggregate
from .billing_blocks import BillingBlock

DEFAULT_ACTIVE_HOURS_PER_DAY = 9.0
DEFAULT_TREND_THRESHOLD_PERCENT = 5.0
DEFAULT_DAYS_PER_MONTH = 30
DEFAULT_WINDOWS = (timedelta(hours=24), timedelta(days=7))


class ForecastState(Enum):
    """Whether a window had any usage to forecast from."""
    NO_DATA = "no_data"
    ACTIVE = "active"


class TrendDirection(Enum):
    """Direction of the latest window against the one before it."""
    UP = "up"
    DOWN = "down"
    FLAT = "flat"


class LimitState(Enum):
    """Outcome of a time-to-limit forecast."""
    NO_LIMIT = "no_limit"
    UNBOUNDED = "unbounded"
    PROJECTED = "projected"
    EXCEEDED = "exceeded"


@dataclass(frozen=True)
class ForecastConfig:
    """Forecast parameters; owned by the caller's configuration."""
    active_hours_per_day: float = DEFAULT_ACTIVE_HOURS_PER_DAY
    trend_threshold_percent: float = DEFAULT_TREND_THRESHOLD_PERCENT
    days_per_month: int = DEFAULT_DAYS_PER_MONTH
    token_limit: Optional[int] = None
    cost_limit: Optional[float] = None

    def __post_init__(self):
        """Validate forecast parameters."""
        if not 0 < self.active_hours_per_day <= 24:
            raise ValueError("active_hours_per_day must be in (0, 24]")
        if self.trend_threshold_percent < 0:
            raise ValueError("trend_threshold_percent cannot be negative")
        if self.days_per_month <= 0:
            raise ValueError("days_per_month must be > 0")
        if self.token_limit is not None and self.token_limit <= 0:
            raise ValueError("token_limit must be > 0")
        if self.cost_limit is not None and self.cost_limit <= 0:
            raise ValueError("cost_limit must be > 0")


@dataclass(frozen=True)
class LimitForecast:
    """How long until a limit is reached at the current rate.

    ``hours_remaining`` is in active hours. It is 0 when the limit is already
    reached and None when no limit is set or the rate is zero.
    ``days_until_limit`` converts it to whole days of activity (rounded up)
    and ``limit_date`` is that many calendar days after the forecast date.
    """
    state: LimitState
    limit: Optional[float] = None
    current_usage: float = 0.0
    hours_remaining: Optional[float] = None
    days_until_limit: Optional[int] = None
    limit_date: Optional[date] = None

    @property
    def alert(self) -> bool:
        return self.state == LimitState.EXCEEDED


@dataclass(frozen=True)
class BurnRateSnapshot:
    """Rates and projections for one lookback window."""
    window_start: datetime
    window_end: datetime
    state: ForecastState
    window_tokens: int
    window_cost: float
    tokens_per_minute: float
    tokens_per_hour: float
    cost_per_hour: float
    projected_daily_tokens: int
    projected_daily_cost: float
    projected_monthly_tokens: int
    projected_monthly_cost: float
    trend: TrendDirection
    trend_percent: Optional[float]
    token_limit: LimitForecast
    cost_limit: LimitForecast

    @property
    def has_data(self) -> bool:
        return self.state == ForecastState.ACTIVE


@dataclass(frozen=True)
class SessionBurnRate:
    """Rate of a single session between its first and last activity."""
    state: ForecastState
    hours_elapsed: float
    tokens_per_hour: float
    cost_per_hour: float


def classify_trend(recent: float, prior: float, threshold_percent: float) -> Tuple[TrendDirection, Optional[float]]:
    """Compare two equal-length windows.

    Returns:
        Direction and percent change; the percent is None when the prior
        window was empty and the recent one was not
    """
    if prior == 0:
        if recent > 0:
            return TrendDirection.UP, None
        return TrendDirection.FLAT, 0.0
    change = (recent - prior) / prior * 100.0
    if change > threshold_percent:
        return TrendDirection.UP, change
    if change < -threshold_percent:
        return TrendDirection.DOWN, change
    return TrendDirection.FLAT, change


def time_to_limit(
    limit: Optional[float],
    current_usage: float,
    rate_per_hour: float,
    active_hours_per_day: float = DEFAULT_ACTIVE_HOURS_PER_DAY,
    today: Optional[date] = None,
) -> LimitForecast:
    """Forecast when ``current_usage`` reaches ``limit`` at ``rate_per_hour``.

    Args:
        limit: Token or cost limit; None means no limit is set
        current_usage: Usage so far in the limit's period
        rate_per_hour: Consumption per active hour
        active_hours_per_day: Active hours in one day of use
        today: Date the forecast is made on; without it limit_date stays None
    """
    if limit is None:
        return LimitForecast(LimitState.NO_LIMIT, current_usage=current_usage)
    if current_usage >= limit:
        return LimitForecast(LimitState.EXCEEDED, limit, current_usage, 0.0, 0, today)
    if rate_per_hour <= 0:
        return LimitForecast(LimitState.UNBOUNDED, limit, current_usage)
    hours = (limit - current_usage) / rate_per_hour
    if not math.isfinite(hours):
        return LimitForecast(LimitState.UNBOUNDED, limit, current_usage)
    days = math.ceil(hours / active_hours_per_day)
    limit_date = None
    if today is not None:
        try:
            limit_date = today + timedelta(days=days)
        except OverflowError:
            limit_date = None
    return LimitForecast(LimitState.PROJECTED, limit, current_usage, hours, days, limit_date)


def _window_totals(blocks: Sequence[BillingBlock], start: datetime, end: datetime) -> Tuple[int, float]:
    # Block granularity: a block belongs to the window its start falls in.
    tokens = 0
    cost = Fraction(0)
    for block in blocks:
        if start <= block.start_time < end:
            tokens += block.total_tokens
            cost += Fraction(block.total_cost)
    return tokens, float(cost)


class BurnRateForecaster:
    """Derives burn-rate snapshots from finalized aggregates.

    Args:
        config: Forecast parameters and limits
        tz: Timezone the daily aggregates were bucketed in
    """

    def __init__(self, config: Optional[ForecastConfig] = None, tz: tzinfo = timezone.utc):
        self.config = config or ForecastConfig()
        self.tz = tz

    def active_hours(self, window: timedelta) -> float:
        """Active hours contained in a wall-clock window."""
        return window / timedelta(days=1) * self.config.active_hours_per_day

    def month_to_date(self, daily: Iterable[DailyAggregate], now: datetime) -> Tuple[int, float]:
        """Tokens and cost so far in the calendar month containing ``now``."""
        today = now.astimezone(self.tz).date()
        tokens = 0
        cost = Fraction(0)
        for row in daily:
            if row.date.year == today.year and row.date.month == today.month and row.date <= today:
                tokens += row.total_tokens
                cost += Fraction(row.total_cost)
        return tokens, float(cost)

    def snapshot(
        self,
        daily: Iterable[DailyAggregate],
        blocks: Iterable[BillingBlock],
        window: timedelta,
        now: datetime,
    ) -> BurnRateSnapshot:
        """Compute the burn rate over ``[now - window, now)``.

        Raises:
            ValueError: If window is not positive or now is naive
        """
        if window <= timedelta(0):
            raise ValueError("window must be positive")
        if now.tzinfo is None:
            raise ValueError("now must be timezone-aware")

        block_list = list(blocks)
        start = now - window
        tokens, cost = _window_totals(block_list, start, now)
        prior_tokens, _ = _window_totals(block_list, start - window, start)
        trend, trend_percent = classify_trend(tokens, prior_tokens, self.config.trend_threshold_percent)

        if tokens == 0 and cost == 0:
            state = ForecastState.NO_DATA
            tokens_per_hour = cost_per_hour = 0.0
        else:
            state = ForecastState.ACTIVE
            hours = self.active_hours(window)
            tokens_per_hour = tokens / hours
            cost_per_hour = cost / hours

        daily_hours = self.config.active_hours_per_day
        month_hours = daily_hours * self.config.days_per_month
        mtd_tokens, mtd_cost = self.month_to_date(daily, now)
        today = now.astimezone(self.tz).date()

        return BurnRateSnapshot(
            window_start=start,
            window_end=now,
            state=state,
            window_tokens=tokens,
            window_cost=cost,
            tokens_per_minute=tokens_per_hour / 60.0,
            tokens_per_hour=tokens_per_hour,
            cost_per_hour=cost_per_hour,
            projected_daily_tokens=int(tokens_per_hour * daily_hours),
            projected_daily_cost=cost_per_hour * daily_hours,
            projected_monthly_tokens=int(tokens_per_hour * month_hours),
            projected_monthly_cost=cost_per_hour * month_hours,
            trend=trend,
            trend_percent=trend_percent,
            token_limit=time_to_limit(self.config.token_limit, mtd_tokens, tokens_per_hour, daily_hours, today),
            cost_limit=time_to_limit(self.config.cost_limit, mtd_cost, cost_per_hour, daily_hours, today),
        )

    def snapshots(
        self,
        daily: Iterable[DailyAggregate],
        blocks: Iterable[BillingBlock],
        now: datetime,
        windows: Sequence[timedelta] = DEFAULT_WINDOWS,
    ) -> List[BurnRateSnapshot]:
        """One snapshot per lookback window, in the order given."""
        daily_list = list(daily)
        block_list = list(blocks)
        return [self.snapshot(daily_list, block_list, window, now) for window in windows]


def session_burn_rate(session: SessionAggregate) -> SessionBurnRate:
    """Wall-clock rate of one session; NO_DATA when it spans no time."""
    elapsed = (session.last_activity - session.first_activity).total_seconds() / 3600.0
    if elapsed <= 0 or session.total_tokens == 0:
        return SessionBurnRate(ForecastState.NO_DATA, max(elapsed, 0.0), 0.0, 0.0)
    return SessionBurnRate(
        ForecastState.ACTIVE,
        elapsed,
        session.total_tokens / elapsed,
        session.total_cost / elapsed,
    )
