"""Tests for the behavioral signal functions."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta, timezone
from decimal import Decimal

import pytest

from trade_bot_detector.detector.models import SignalName, TimingTag
from trade_bot_detector.detector.signals import (
    SignalConfig,
    analyze_liquidity,
    compute_signals,
    fired_signals,
    hour_coverage,
    interval_consistency,
    reaction_time_ms,
    score_activity_24x7,
    score_amount_magnitude,
    score_off_hours,
    score_pattern_regularity,
    score_precision,
    score_reaction_time,
    score_trading_frequency,
    significant_fractional_digits,
    timing_tag,
    total_score,
    trades_in_window,
)

T0 = datetime(2026, 3, 2, 23, 0, tzinfo=UTC)


def _series(make_trade, count: int, step: timedelta, *, amount: str = "1", start: datetime = T0) -> list:
    return [
        make_trade(amount=amount, block_number=100 + i, ts=start + step * i)
        for i in range(count)
    ]


class TestReactionTime:
    """Tests for reaction time measurement and scoring."""

    def test_measures_milliseconds(self, make_trade, make_observation) -> None:
        trade = make_trade(ts=T0 + timedelta(milliseconds=50))
        obs = make_observation(publish_time=T0)
        assert reaction_time_ms(trade, obs, stale_after=timedelta(seconds=60)) == pytest.approx(50.0)

    def test_no_reference(self, make_trade) -> None:
        assert reaction_time_ms(make_trade(), None, stale_after=timedelta(seconds=60)) is None

    def test_future_reference_ignored(self, make_trade, make_observation) -> None:
        trade = make_trade(ts=T0)
        obs = make_observation(publish_time=T0 + timedelta(seconds=1))
        assert reaction_time_ms(trade, obs, stale_after=timedelta(seconds=60)) is None

    def test_stale_reference_ignored(self, make_trade, make_observation) -> None:
        trade = make_trade(ts=T0 + timedelta(seconds=61))
        obs = make_observation(publish_time=T0)
        assert reaction_time_ms(trade, obs, stale_after=timedelta(seconds=60)) is None

    @pytest.mark.parametrize(
        ("reaction", "points"),
        [(None, 0), (50.0, 30), (99.9, 30), (100.0, 20), (499.0, 20), (500.0, 10), (999.0, 10), (1000.0, 0)],
    )
    def test_points(self, reaction, points) -> None:
        assert score_reaction_time(reaction).points == points

    @pytest.mark.parametrize(
        ("reaction", "tag"),
        [(None, None), (50.0, TimingTag.IMMEDIATE), (500.0, TimingTag.FAST), (5000.0, TimingTag.NORMAL)],
    )
    def test_timing_tag(self, reaction, tag) -> None:
        assert timing_tag(reaction) is tag


class TestTradeShape:
    """Tests for amount, precision and time-of-day signals."""

    @pytest.mark.parametrize(
        ("amount", "points"),
        [("0.5", 20), ("0.999", 20), ("1", 10), ("9.99", 10), ("10", 0), ("150.75", 0)],
    )
    def test_amount_magnitude(self, amount, points) -> None:
        assert score_amount_magnitude(Decimal(amount)).points == points

    @pytest.mark.parametrize(
        ("amount", "digits"),
        [("0.01234567", 8), ("0.0100", 2), ("150.75", 2), ("10", 0), ("1E+1", 0), ("0", 0)],
    )
    def test_significant_fractional_digits(self, amount, digits) -> None:
        assert significant_fractional_digits(Decimal(amount)) == digits

    @pytest.mark.parametrize(
        ("amount", "points"),
        [("0.01234567", 15), ("0.1234567", 15), ("0.123456", 8), ("0.12345", 8), ("0.1234", 0)],
    )
    def test_precision(self, amount, points) -> None:
        assert score_precision(Decimal(amount)).points == points

    def test_off_hours_uses_utc(self) -> None:
        """Test that non-UTC timestamps are converted before bucketing."""
        local = datetime(2026, 3, 2, 1, 0, tzinfo=timezone(timedelta(hours=2)))  # 23:00 UTC
        assert score_off_hours(local).points == 10
        assert score_off_hours(datetime(2026, 3, 2, 14, 0, tzinfo=UTC)).points == 0

    def test_off_hours_custom_window(self) -> None:
        ts = datetime(2026, 3, 2, 14, 0, tzinfo=UTC)
        assert score_off_hours(ts, frozenset({14})).points == 10

    def test_off_hours_rejects_naive(self) -> None:
        with pytest.raises(ValueError):
            score_off_hours(datetime(2026, 3, 2, 14, 0))


class TestHistorySignals:
    """Tests for signals computed from the trader's history."""

    def test_trades_in_window(self, make_trade) -> None:
        history = _series(make_trade, 5, timedelta(minutes=20))
        as_of = history[-1].chain_timestamp
        assert trades_in_window(history, as_of=as_of, window=timedelta(hours=1)) == 3

    @pytest.mark.parametrize(("count", "points"), [(3, 0), (21, 5), (51, 15), (101, 25), (100, 15)])
    def test_trading_frequency(self, count, points) -> None:
        assert score_trading_frequency(count).points == points

    def test_interval_consistency(self, make_trade) -> None:
        assert interval_consistency(_series(make_trade, 4, timedelta(seconds=30))) == 100.0
        assert interval_consistency(_series(make_trade, 1, timedelta(seconds=30))) is None

    def test_regular_pattern(self, make_trade) -> None:
        assert score_pattern_regularity(_series(make_trade, 5, timedelta(minutes=1))).points == 15

    def test_regularity_needs_three_trades(self, make_trade) -> None:
        assert score_pattern_regularity(_series(make_trade, 2, timedelta(minutes=1))).points == 0

    def test_irregular_pattern(self, make_trade) -> None:
        gaps = [1, 60, 2, 300]
        ts = T0
        history = []
        for i, gap in enumerate(gaps):
            ts += timedelta(seconds=gap)
            history.append(make_trade(block_number=100 + i, ts=ts))
        assert score_pattern_regularity(history).points == 0

    def test_activity_24x7(self, make_trade) -> None:
        around_the_clock = _series(make_trade, 24, timedelta(hours=1))
        assert hour_coverage(around_the_clock) == 24
        assert score_activity_24x7(around_the_clock).points == 15

        half_day = _series(make_trade, 13, timedelta(hours=1))
        assert score_activity_24x7(half_day).points == 8

        too_few = _series(make_trade, 9, timedelta(hours=1))
        assert score_activity_24x7(too_few).points == 0


class TestComputeSignals:
    """Tests for the combined signal evaluation."""

    def test_superhuman_off_hours_micro_trade(self, make_trade, make_observation) -> None:
        """Immediate micro trade at 23:00 UTC scores 90 in total."""
        trade = make_trade(amount="0.01234567", ts=T0 + timedelta(milliseconds=50))
        obs = make_observation(publish_time=T0)

        results = compute_signals(trade, [trade], obs)

        points = {r.name: r.points for r in results}
        assert points[SignalName.REACTION_TIME] == 30
        assert points[SignalName.AMOUNT_MAGNITUDE] == 20
        assert points[SignalName.PRECISION] == 15
        assert points[SignalName.OFF_HOURS] == 10
        assert points[SignalName.MARKET_TIMING] == 15
        assert total_score(results) == 90

    def test_ordinary_daytime_trade(self, make_trade) -> None:
        """Large, unpriced daytime trade scores nothing."""
        start = datetime(2026, 3, 2, 13, 10, tzinfo=UTC)
        history = [
            make_trade(amount="150.75", block_number=100 + i, ts=start + timedelta(minutes=m))
            for i, m in enumerate((0, 7, 50))
        ]
        results = compute_signals(history[-1], history, None)
        assert total_score(results) < 40

    def test_all_signals_reported_in_order(self, make_trade) -> None:
        trade = make_trade()
        names = [r.name for r in compute_signals(trade, [trade], None)]
        assert names == list(SignalName)

    def test_deterministic(self, make_trade, make_observation) -> None:
        history = _series(make_trade, 12, timedelta(seconds=5), amount="0.123456")
        obs = make_observation(publish_time=history[-1].chain_timestamp - timedelta(milliseconds=300))
        first = compute_signals(history[-1], history, obs)
        second = compute_signals(history[-1], list(history), obs)
        assert first == second

    def test_total_score_clamped(self, make_trade, make_observation) -> None:
        """Test that the score never exceeds 100."""
        history = _series(make_trade, 120, timedelta(seconds=10), amount="0.00000001", start=T0)
        obs = make_observation(publish_time=history[-1].chain_timestamp - timedelta(milliseconds=10))
        results = compute_signals(history[-1], history, obs, SignalConfig())
        assert sum(r.points for r in results) > 100
        assert total_score(results) == 100

    def test_fired_signals(self, make_trade) -> None:
        trade = make_trade(amount="0.5")
        fired = fired_signals(compute_signals(trade, [trade], None))
        assert [r.name for r in fired] == [SignalName.AMOUNT_MAGNITUDE]


class TestAnalyzeLiquidity:
    """Tests for liquidity-provider profiling."""

    def test_too_few_trades(self, make_trade) -> None:
        analysis = analyze_liquidity(_series(make_trade, 4, timedelta(seconds=1)))
        assert analysis.trade_count == 0
        assert not analysis.is_liquidity_provider

    def test_market_maker(self, make_trade) -> None:
        """Frequent, evenly sized trades with enough volume."""
        history = _series(make_trade, 60, timedelta(seconds=30), amount="10")
        analysis = analyze_liquidity(history)

        assert analysis.is_market_maker
        assert analysis.is_liquidity_provider
        assert analysis.bot_type == "Market Maker"
        assert analysis.total_volume == Decimal("600")

    def test_arbitrage_below_volume_threshold(self, make_trade) -> None:
        history = _series(make_trade, 6, timedelta(seconds=1), amount="1")
        analysis = analyze_liquidity(history)

        assert analysis.is_arbitrage
        assert analysis.bot_type == "Arbitrage Bot"
        assert not analysis.is_liquidity_provider

    def test_casual_trader(self, make_trade) -> None:
        analysis = analyze_liquidity(_series(make_trade, 6, timedelta(hours=3), amount="200"))
        assert not analysis.is_market_maker
        assert not analysis.is_arbitrage
        assert analysis.bot_type == "Unknown"
