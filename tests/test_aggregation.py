"""
Unit tests for daily, session and monthly aggregation.

Tests merge-order independence and cross-view consistency.
"""

import random
from datetime import date, datetime, timedelta, timezone
from unittest.mock import patch

import pytest

from token_cost_report.core.aggregation import (
    AggregationPartial,
    SessionTotals,
    SortField,
    SortOrder,
    merge_partials,
    totals,
)
from token_cost_report.core.pricing import CostResolution, PriceSource
from token_cost_report.core.token_counter import TokenUsage
from token_cost_report.storage.models import UsageEvent


def _event(when, session="proj/s1", input_tokens=100, output_tokens=50):
    return UsageEvent(when, session, TokenUsage(input_tokens=input_tokens, output_tokens=output_tokens))


def _priced(cost):
    return CostResolution(cost, PriceSource.COMPUTED)


def _sample_events(count=60, seed=7):
    rng = random.Random(seed)
    start = datetime(2024, 1, 28, tzinfo=timezone.utc)
    events = []
    for i in range(count):
        when = start + timedelta(hours=rng.randint(0, 24 * 10), minutes=rng.randint(0, 59))
        event = _event(when, f"proj/s{rng.randint(1, 4)}", rng.randint(0, 5000), rng.randint(0, 2000))
        events.append((event, _priced(rng.choice([0.1, 0.2, 0.3, 0.015, 1e-7]))))
    return events


def _fold(pairs):
    partial = AggregationPartial()
    for event, resolution in pairs:
        partial.add(event, resolution)
    return partial


class TestPartial:
    """Test folding events into one partial."""

    def test_daily_and_session_sums(self):
        partial = _fold([
            (_event(datetime(2024, 1, 1, 10, tzinfo=timezone.utc)), _priced(0.10)),
            (_event(datetime(2024, 1, 1, 11, tzinfo=timezone.utc)), _priced(0.20)),
        ])
        [day] = partial.daily_report()
        assert day.date == date(2024, 1, 1)
        assert day.total_tokens == 300
        assert day.total_cost == pytest.approx(0.30)
        assert day.record_count == 2

        [session] = partial.session_report()
        assert session.session_key == "proj/s1"
        assert session.project_path == "proj"
        assert session.session_id == "s1"
        assert session.first_activity == datetime(2024, 1, 1, 10, tzinfo=timezone.utc)
        assert session.last_activity == datetime(2024, 1, 1, 11, tzinfo=timezone.utc)

    def test_unpriced_events_counted(self):
        partial = _fold([
            (_event(datetime(2024, 1, 1, tzinfo=timezone.utc)), CostResolution(0.0, PriceSource.UNPRICED)),
        ])
        [day] = partial.daily_report()
        assert day.total_cost == 0.0
        assert day.unpriced_count == 1
        assert day.total_tokens == 150

    def test_daily_uses_reporting_timezone(self):
        partial = AggregationPartial(timezone(timedelta(hours=-5)))
        partial.add(_event(datetime(2024, 1, 2, 2, tzinfo=timezone.utc)), _priced(0.1))
        assert partial.daily_report()[0].date == date(2024, 1, 1)

    def test_monthly_derived_from_daily(self):
        partial = _fold([
            (_event(datetime(2024, 1, 30, tzinfo=timezone.utc)), _priced(0.1)),
            (_event(datetime(2024, 1, 31, tzinfo=timezone.utc)), _priced(0.3)),
            (_event(datetime(2024, 2, 1, tzinfo=timezone.utc)), _priced(0.5)),
        ])
        february, january = partial.monthly_report()
        assert (january.year, january.month) == (2024, 1)
        assert january.month_name == "January"
        assert january.active_days == 2
        assert january.avg_daily_cost == pytest.approx(0.2)
        assert february.record_count == 1

    def test_merge_different_timezones_rejected(self):
        with pytest.raises(ValueError):
            AggregationPartial(timezone.utc).merge(AggregationPartial(timezone(timedelta(hours=1))))


class TestSorting:
    """Test report ordering."""

    def setup_method(self):
        self.partial = _fold([
            (_event(datetime(2024, 1, 1, tzinfo=timezone.utc), "p/a"), _priced(0.5)),
            (_event(datetime(2024, 1, 2, tzinfo=timezone.utc), "p/b"), _priced(0.1)),
            (_event(datetime(2024, 1, 3, tzinfo=timezone.utc), "p/c"), _priced(0.3)),
        ])

    def test_daily_newest_first_by_default(self):
        dates = [row.date.day for row in self.partial.daily_report()]
        assert dates == [3, 2, 1]

    def test_daily_ascending(self):
        dates = [row.date.day for row in self.partial.daily_report(SortOrder.ASC)]
        assert dates == [1, 2, 3]

    def test_sessions_by_cost(self):
        keys = [row.session_key for row in self.partial.session_report()]
        assert keys == ["p/a", "p/c", "p/b"]

    def test_daily_by_cost(self):
        dates = [row.date.day for row in self.partial.daily_report(SortOrder.DESC, SortField.COST)]
        assert dates == [1, 3, 2]


class TestMergeIndependence:
    """Sharding the same events any way gives identical reports."""

    def _reports(self, partial):
        return partial.daily_report(), partial.session_report(), partial.monthly_report()

    @pytest.mark.parametrize("shards", [1, 2, 5, 13])
    def test_shard_count(self, shards):
        events = _sample_events()
        expected = self._reports(_fold(events))

        parts = [_fold(events[i::shards]) for i in range(shards)]
        assert self._reports(merge_partials(parts)) == expected

    def test_shard_order(self):
        events = _sample_events()
        parts = [_fold(events[i::4]) for i in range(4)]
        forward = self._reports(merge_partials(parts))
        backward = self._reports(merge_partials(reversed(parts)))
        assert forward == backward

    def test_merge_leaves_inputs_untouched(self):
        events = _sample_events(10)
        left, right = _fold(events[:5]), _fold(events[5:])
        before = left.daily_report()
        left.merge(right)
        assert left.daily_report() == before

    def test_many_single_session_partials(self):
        """Each key is copied once, however many partials are merged."""
        count = 3000
        day = datetime(2024, 1, 1, 10, tzinfo=timezone.utc)
        parts = [_fold([(_event(day, f"proj/s{i}", 10, 0), _priced(0.001))]) for i in range(count)]

        session_copies = []
        original_copy = SessionTotals.copy

        def counting_copy(self):
            session_copies.append(self)
            return original_copy(self)

        with patch.object(SessionTotals, "copy", counting_copy):
            merged = merge_partials(parts)

        assert len(session_copies) == count
        [row] = merged.daily_report()
        assert row.record_count == count
        assert row.total_tokens == 10 * count
        assert len(merged.session_report()) == count
        # Inputs are untouched
        assert parts[0].daily_report()[0].record_count == 1

    def test_empty_merge(self):
        merged = merge_partials([])
        assert merged.daily_report() == []


class TestTotals:
    """Daily, session and monthly grand totals agree."""

    def test_cross_view_totals_equal(self):
        partial = _fold(_sample_events())
        daily = totals(partial.daily_report())
        sessions = totals(partial.session_report())
        monthly = totals(partial.monthly_report())

        assert daily.usage == sessions.usage == monthly.usage
        assert daily.record_count == sessions.record_count == monthly.record_count == 60
        assert daily.total_cost == pytest.approx(sessions.total_cost, abs=1e-9)
        assert daily.total_cost == pytest.approx(monthly.total_cost, abs=1e-9)

    def test_totals_of_nothing(self):
        empty = totals([])
        assert empty.total_tokens == 0
        assert empty.total_cost == 0.0
