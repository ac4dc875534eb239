"""
Unit tests for burn-rate forecasting.

Tests active-hour rates, trend classification and limit projections.
"""

from datetime import date, datetime, timedelta, timezone

import pytest

from token_cost_report.core.aggregation import DailyAggregate, SessionAggregate
from token_cost_report.core.billing_blocks import BillingBlock
from token_cost_report.core.burn_rate import (
    BurnRateForecaster,
    ForecastConfig,
    ForecastState,
    LimitState,
    TrendDirection,
    classify_trend,
    session_burn_rate,
    time_to_limit,
)
from token_cost_report.core.token_counter import TokenUsage

NOW = datetime(2024, 1, 10, 12, 0, tzinfo=timezone.utc)


def _block(start, tokens, cost):
    return BillingBlock(
        date=start.date(),
        block_index=start.hour // 5,
        start_time=start,
        end_time=start + timedelta(hours=5),
        usage=TokenUsage(input_tokens=tokens),
        total_cost=cost,
        record_count=1,
        session_count=1,
    )


def _day(day, tokens, cost):
    return DailyAggregate(date=day, usage=TokenUsage(input_tokens=tokens), total_cost=cost, record_count=1)


class TestForecastConfig:
    """Test forecast parameter validation."""

    def test_defaults(self):
        config = ForecastConfig()
        assert config.active_hours_per_day == 9.0
        assert config.days_per_month == 30

    @pytest.mark.parametrize("kwargs", [
        {"active_hours_per_day": 0},
        {"active_hours_per_day": 25},
        {"trend_threshold_percent": -1},
        {"days_per_month": 0},
        {"token_limit": 0},
        {"cost_limit": -5.0},
    ])
    def test_invalid(self, kwargs):
        with pytest.raises(ValueError):
            ForecastConfig(**kwargs)


class TestSnapshot:
    """Test a single-window snapshot."""

    def test_no_data(self):
        """Zero usage gives an explicit NO_DATA snapshot, not a division error."""
        snapshot = BurnRateForecaster().snapshot([], [], timedelta(hours=24), NOW)
        assert snapshot.state == ForecastState.NO_DATA
        assert not snapshot.has_data
        assert snapshot.tokens_per_hour == 0.0
        assert snapshot.projected_monthly_cost == 0.0
        assert snapshot.trend == TrendDirection.FLAT

    def test_active_hour_rate(self):
        blocks = [_block(datetime(2024, 1, 10, 0, tzinfo=timezone.utc), 9000, 0.9)]
        snapshot = BurnRateForecaster().snapshot([], blocks, timedelta(hours=24), NOW)
        # One day window is 9 active hours
        assert snapshot.state == ForecastState.ACTIVE
        assert snapshot.window_tokens == 9000
        assert snapshot.tokens_per_hour == pytest.approx(1000.0)
        assert snapshot.tokens_per_minute == pytest.approx(1000.0 / 60)
        assert snapshot.cost_per_hour == pytest.approx(0.1)
        assert snapshot.projected_daily_tokens == 9000
        assert snapshot.projected_monthly_tokens == 270000
        assert snapshot.projected_monthly_cost == pytest.approx(27.0)

    def test_window_uses_block_start(self):
        blocks = [
            _block(datetime(2024, 1, 9, 10, tzinfo=timezone.utc), 100, 0.1),
            _block(datetime(2024, 1, 9, 15, tzinfo=timezone.utc), 200, 0.2),
        ]
        snapshot = BurnRateForecaster().snapshot([], blocks, timedelta(hours=24), NOW)
        # Window starts 2024-01-09 12:00; the 10:00 block belongs to the prior window
        assert snapshot.window_tokens == 200

    def test_trend_up(self):
        blocks = [
            _block(datetime(2024, 1, 8, 15, tzinfo=timezone.utc), 100, 0.1),
            _block(datetime(2024, 1, 9, 15, tzinfo=timezone.utc), 200, 0.2),
        ]
        snapshot = BurnRateForecaster().snapshot([], blocks, timedelta(hours=24), NOW)
        assert snapshot.trend == TrendDirection.UP
        assert snapshot.trend_percent == pytest.approx(100.0)

    def test_rejects_bad_arguments(self):
        forecaster = BurnRateForecaster()
        with pytest.raises(ValueError):
            forecaster.snapshot([], [], timedelta(0), NOW)
        with pytest.raises(ValueError):
            forecaster.snapshot([], [], timedelta(hours=1), datetime(2024, 1, 1))

    def test_multiple_windows(self):
        blocks = [_block(datetime(2024, 1, 5, 0, tzinfo=timezone.utc), 6300, 0.63)]
        day_window, week_window = BurnRateForecaster().snapshots([], blocks, NOW)
        assert not day_window.has_data
        assert week_window.has_data
        # 7 days x 9 active hours
        assert week_window.tokens_per_hour == pytest.approx(100.0)


class TestTrend:
    """Test trend classification."""

    def test_within_threshold_is_flat(self):
        assert classify_trend(104, 100, 5.0) == (TrendDirection.FLAT, pytest.approx(4.0))

    def test_down(self):
        direction, percent = classify_trend(50, 100, 5.0)
        assert direction == TrendDirection.DOWN
        assert percent == pytest.approx(-50.0)

    def test_from_nothing(self):
        assert classify_trend(10, 0, 5.0) == (TrendDirection.UP, None)

    def test_both_empty(self):
        assert classify_trend(0, 0, 5.0) == (TrendDirection.FLAT, 0.0)


class TestLimits:
    """Test time-to-limit projection."""

    def test_no_limit(self):
        assert time_to_limit(None, 10, 5).state == LimitState.NO_LIMIT

    def test_projected(self):
        forecast = time_to_limit(100, 40, 20)
        assert forecast.state == LimitState.PROJECTED
        assert forecast.hours_remaining == pytest.approx(3.0)
        assert forecast.days_until_limit == 1
        assert forecast.limit_date is None
        assert not forecast.alert

    def test_days_and_date(self):
        # 1000 remaining at 10/hour is 100 active hours; 100 / 8 rounds up to 13 days
        forecast = time_to_limit(1000, 0, 10, active_hours_per_day=8, today=date(2024, 1, 25))
        assert forecast.hours_remaining == pytest.approx(100.0)
        assert forecast.days_until_limit == 13
        assert forecast.limit_date == date(2024, 2, 7)

    def test_exact_day_boundary_not_rounded_up(self):
        forecast = time_to_limit(90, 0, 10, active_hours_per_day=9, today=date(2024, 1, 1))
        assert forecast.days_until_limit == 1
        assert forecast.limit_date == date(2024, 1, 2)

    def test_exceeded_alerts(self):
        forecast = time_to_limit(100, 100, 20, today=date(2024, 1, 5))
        assert forecast.state == LimitState.EXCEEDED
        assert forecast.hours_remaining == 0.0
        assert forecast.days_until_limit == 0
        assert forecast.limit_date == date(2024, 1, 5)
        assert forecast.alert

    def test_zero_rate_is_unbounded(self):
        forecast = time_to_limit(100, 40, 0, today=date(2024, 1, 5))
        assert forecast.state == LimitState.UNBOUNDED
        assert forecast.hours_remaining is None
        assert forecast.days_until_limit is None
        assert forecast.limit_date is None

    def test_date_past_calendar_end(self):
        forecast = time_to_limit(1e30, 0, 1, today=date(2024, 1, 1))
        assert forecast.state == LimitState.PROJECTED
        assert forecast.days_until_limit > 0
        assert forecast.limit_date is None

    def test_snapshot_uses_month_to_date(self):
        config = ForecastConfig(token_limit=20000, cost_limit=1.0)
        daily = [
            _day(date(2023, 12, 31), 50000, 5.0),
            _day(date(2024, 1, 2), 4000, 0.4),
            _day(date(2024, 1, 10), 5000, 0.5),
        ]
        blocks = [_block(datetime(2024, 1, 10, 0, tzinfo=timezone.utc), 9000, 0.9)]
        snapshot = BurnRateForecaster(config).snapshot(daily, blocks, timedelta(hours=24), NOW)
        # 9000 tokens so far this month at 1000 tokens/hour
        assert snapshot.token_limit.current_usage == 9000
        assert snapshot.token_limit.hours_remaining == pytest.approx(11.0)
        assert snapshot.cost_limit.state == LimitState.PROJECTED
        assert snapshot.cost_limit.hours_remaining == pytest.approx(1.0)
        # 11 active hours at 9 per day is 2 days from 2024-01-10
        assert snapshot.token_limit.days_until_limit == 2
        assert snapshot.token_limit.limit_date == date(2024, 1, 12)
        assert snapshot.cost_limit.days_until_limit == 1
        assert snapshot.cost_limit.limit_date == date(2024, 1, 11)


class TestSessionBurnRate:
    """Test per-session rates."""

    def _session(self, minutes, tokens):
        start = datetime(2024, 1, 1, 10, tzinfo=timezone.utc)
        return SessionAggregate(
            session_key="p/s",
            usage=TokenUsage(input_tokens=tokens),
            total_cost=1.0,
            record_count=2,
            first_activity=start,
            last_activity=start + timedelta(minutes=minutes),
        )

    def test_rate(self):
        rate = session_burn_rate(self._session(30, 1000))
        assert rate.state == ForecastState.ACTIVE
        assert rate.tokens_per_hour == pytest.approx(2000.0)
        assert rate.cost_per_hour == pytest.approx(2.0)

    def test_instant_session(self):
        assert session_burn_rate(self._session(0, 1000)).state == ForecastState.NO_DATA
