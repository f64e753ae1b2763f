"""Tests for address classification."""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest

from trade_bot_detector.detector.classifier import Classifier, ClassifierConfig, ClassifierError
from trade_bot_detector.detector.models import Category, LiquidityAnalysis, PublishState, RiskLevel
from trade_bot_detector.ingestor.price_feed import PriceFeed

T_NIGHT = datetime(2026, 3, 2, 23, 0, tzinfo=UTC)
T_DAY = datetime(2026, 3, 2, 14, 0, tzinfo=UTC)


class FakeHistory:
    """Trade history keyed by address."""

    def __init__(self, trades=None) -> None:
        self.trades: dict[str, list] = {}
        for trade in trades or []:
            self.trades.setdefault(trade.trader, []).append(trade)

    async def user_trades(self, address: str) -> list:
        return list(self.trades.get(address, []))


def _feed(make_observation, *publish_times: datetime) -> PriceFeed:
    feed = PriceFeed()
    for ts in publish_times:
        feed.observe(make_observation(publish_time=ts))
    return feed


def _liquidity(*, provider: bool = False, market_maker: bool = False) -> LiquidityAnalysis:
    return LiquidityAnalysis(
        total_volume=Decimal("800") if provider else Decimal("5"),
        trade_count=20,
        trades_per_hour=60.0,
        burst_ratio=0.0,
        is_market_maker=market_maker,
        is_arbitrage=False,
        is_liquidity_provider=provider,
        bot_type="Market Maker" if market_maker else "Unknown",
    )


class TestScenarios:
    """End-to-end classification of single trades."""

    @pytest.mark.asyncio
    async def test_superhuman_micro_trade_is_critical_bad_bot(self, make_trade, make_observation) -> None:
        """50ms after a price update, 8-digit micro amount at 23:00 UTC."""
        trade = make_trade(amount="0.01234567", ts=T_NIGHT + timedelta(milliseconds=50))
        sink = MagicMock()
        classifier = Classifier(FakeHistory(), _feed(make_observation, T_NIGHT), sink=sink)

        record = await classifier.analyze(trade)

        assert record.score >= 60
        assert record.score == 90
        assert record.category is Category.BAD_BOT
        assert record.risk_level is RiskLevel.CRITICAL
        assert record.publish_state is PublishState.PENDING
        sink.enqueue.assert_called_once()

    @pytest.mark.asyncio
    async def test_unpriced_daytime_trade_stays_unclassified(self, make_trade) -> None:
        """No price context, 150.75 at 14:00 UTC, 3 trades in the last hour."""
        history = [
            make_trade(amount="150.75", block_number=100 + i, ts=T_DAY - timedelta(minutes=m))
            for i, m in enumerate((50, 20, 0))
        ]
        classifier = Classifier(FakeHistory(history), PriceFeed())

        record = await classifier.analyze(history[-1])

        assert record.score < 40
        assert record.category is Category.UNCLASSIFIED
        assert record.risk_level is None

    @pytest.mark.asyncio
    async def test_deterministic(self, make_trade, make_observation) -> None:
        """Same history and price snapshot give the same result."""
        history = [
            make_trade(amount="0.123456", block_number=100 + i, ts=T_NIGHT + timedelta(seconds=3 * i))
            for i in range(8)
        ]
        results = []
        for _ in range(2):
            classifier = Classifier(FakeHistory(history), _feed(make_observation, T_NIGHT + timedelta(seconds=20)))
            results.append(await classifier.analyze(history[-1]))

        assert results[0].score == results[1].score
        assert results[0].category is results[1].category
        assert results[0].signals == results[1].signals


class TestDecide:
    """Tests for the category decision."""

    def test_risk_levels(self) -> None:
        classifier = Classifier(FakeHistory(), PriceFeed())
        assert classifier.risk_level(60) is RiskLevel.MEDIUM
        assert classifier.risk_level(70) is RiskLevel.HIGH
        assert classifier.risk_level(85) is RiskLevel.CRITICAL

    def test_bad_bot_threshold(self) -> None:
        classifier = Classifier(FakeHistory(), PriceFeed())
        assert classifier.decide(60, _liquidity()).category is Category.BAD_BOT
        assert classifier.decide(59, _liquidity()).category is Category.UNCLASSIFIED

    def test_good_bot_needs_corroboration(self) -> None:
        classifier = Classifier(FakeHistory(), PriceFeed())
        assert classifier.decide(45, _liquidity()).category is Category.UNCLASSIFIED

        decision = classifier.decide(45, _liquidity(market_maker=True))
        assert decision.category is Category.GOOD_BOT
        assert decision.bot_type == "Market Maker"

    def test_good_bot_by_score_when_corroboration_disabled(self) -> None:
        classifier = Classifier(
            FakeHistory(),
            PriceFeed(),
            config=ClassifierConfig(require_good_bot_corroboration=False),
        )
        assert classifier.decide(45, _liquidity()).category is Category.GOOD_BOT

    def test_liquidity_override(self) -> None:
        """A high-scoring liquidity provider is a good bot, capped below the bad threshold."""
        classifier = Classifier(FakeHistory(), PriceFeed())
        decision = classifier.decide(90, _liquidity(provider=True, market_maker=True))

        assert decision.category is Category.GOOD_BOT
        assert decision.score == 59
        assert decision.risk_level is None

    def test_liquidity_override_disabled(self) -> None:
        classifier = Classifier(FakeHistory(), PriceFeed(), config=ClassifierConfig(liquidity_override=False))
        decision = classifier.decide(90, _liquidity(provider=True))
        assert decision.category is Category.BAD_BOT

    def test_invalid_thresholds(self) -> None:
        with pytest.raises(ValueError):
            ClassifierConfig(good_bot_min_score=70, bad_bot_min_score=60)


class TestBoundedHistory:
    """Tests for the history window used for scoring."""

    def test_excludes_later_and_old_trades(self, make_trade) -> None:
        classifier = Classifier(FakeHistory(), PriceFeed(), config=ClassifierConfig(history_max_age=timedelta(days=1)))
        old = make_trade(block_number=1, ts=T_DAY - timedelta(days=2))
        recent = make_trade(block_number=50, ts=T_DAY - timedelta(hours=1))
        current = make_trade(block_number=60, ts=T_DAY)
        later = make_trade(block_number=70, ts=T_DAY + timedelta(hours=1))

        window = classifier.bounded_history([old, recent, current, later], current)

        assert window == [recent, current]

    def test_appends_missing_trade_and_caps(self, make_trade) -> None:
        classifier = Classifier(FakeHistory(), PriceFeed(), config=ClassifierConfig(history_max_trades=2))
        history = [make_trade(block_number=b, ts=T_DAY - timedelta(minutes=10 - b)) for b in range(1, 4)]
        current = make_trade(block_number=5, ts=T_DAY)

        window = classifier.bounded_history(history, current)

        assert [t.block_number for t in window] == [3, 5]


class TestRecordLifecycle:
    """Tests for record updates and the pending queue."""

    @pytest.mark.asyncio
    async def test_unchanged_decision_not_requeued(self, make_trade, make_observation) -> None:
        trade = make_trade(amount="0.01234567", ts=T_NIGHT + timedelta(milliseconds=50))
        sink = MagicMock()
        classifier = Classifier(FakeHistory(), _feed(make_observation, T_NIGHT), sink=sink)

        first = await classifier.analyze(trade)
        second = await classifier.analyze(trade)

        assert sink.enqueue.call_count == 1
        assert second.version == first.version

    @pytest.mark.asyncio
    async def test_changed_decision_bumps_version(self, make_trade, make_observation) -> None:
        sink = MagicMock()
        feed = _feed(make_observation, T_NIGHT)
        classifier = Classifier(FakeHistory(), feed, sink=sink)

        await classifier.analyze(make_trade(amount="0.5", block_number=1, ts=T_DAY))
        record = await classifier.analyze(
            make_trade(amount="0.01234567", block_number=2, ts=T_NIGHT + timedelta(milliseconds=50))
        )

        assert record.version == 2
        assert record.category is Category.BAD_BOT
        assert sink.enqueue.call_count == 2

    @pytest.mark.asyncio
    async def test_committed_bot_flag_is_sticky(self, make_trade, make_observation, sample_trader) -> None:
        classifier = Classifier(FakeHistory(), _feed(make_observation, T_NIGHT))
        await classifier.analyze(
            make_trade(amount="0.01234567", block_number=1, ts=T_NIGHT + timedelta(milliseconds=50))
        )
        classifier._records[sample_trader].committed_category = Category.BAD_BOT

        record = await classifier.analyze(make_trade(amount="150.75", block_number=2, ts=T_DAY + timedelta(days=1)))

        assert record.category is Category.BAD_BOT

    @pytest.mark.asyncio
    async def test_not_sticky_when_disabled(self, make_trade, make_observation, sample_trader) -> None:
        classifier = Classifier(
            FakeHistory(),
            _feed(make_observation, T_NIGHT),
            config=ClassifierConfig(sticky_flags=False),
        )
        await classifier.analyze(
            make_trade(amount="0.01234567", block_number=1, ts=T_NIGHT + timedelta(milliseconds=50))
        )
        classifier._records[sample_trader].committed_category = Category.BAD_BOT

        record = await classifier.analyze(make_trade(amount="150.75", block_number=2, ts=T_DAY + timedelta(days=1)))

        assert record.category is Category.UNCLASSIFIED

    @pytest.mark.asyncio
    async def test_failure_leaves_record_unchanged(self, make_trade, make_observation, sample_trader) -> None:
        history = FakeHistory()
        classifier = Classifier(history, _feed(make_observation, T_NIGHT))
        before = await classifier.analyze(
            make_trade(amount="0.01234567", block_number=1, ts=T_NIGHT + timedelta(milliseconds=50))
        )

        history.user_trades = AsyncMock(side_effect=RuntimeError("rpc down"))  # type: ignore[method-assign]
        with pytest.raises(ClassifierError):
            await classifier.analyze(make_trade(amount="150.75", block_number=2, ts=T_DAY))

        after = classifier.current_record(sample_trader)
        assert after == before
        assert classifier.statistics().errors == 1

    @pytest.mark.asyncio
    async def test_concurrent_analysis_same_address(self, make_trade) -> None:
        """Analyses of one address are serialized and all counted."""
        history = FakeHistory()
        active = 0
        peak = 0

        async def slow_trades(address):
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            await asyncio.sleep(0.01)
            active -= 1
            return []

        history.user_trades = slow_trades  # type: ignore[method-assign]
        classifier = Classifier(history, PriceFeed())

        await asyncio.gather(*(classifier.analyze(make_trade(block_number=b)) for b in range(5)))

        assert peak == 1
        assert classifier.statistics().trades_analyzed == 5

    @pytest.mark.asyncio
    async def test_returned_records_are_copies(self, make_trade, sample_trader) -> None:
        classifier = Classifier(FakeHistory(), PriceFeed())
        record = await classifier.analyze(make_trade())
        record.score = 99

        assert classifier.current_record(sample_trader).score != 99  # type: ignore[union-attr]
        assert classifier.current_record("0x" + "00" * 20) is None


class TestReclassify:
    """Tests for administrative reclassification."""

    @pytest.mark.asyncio
    async def test_reversible(self, sample_trader) -> None:
        sink = MagicMock()
        classifier = Classifier(FakeHistory(), PriceFeed(), sink=sink)

        bad = await classifier.reclassify(sample_trader, Category.BAD_BOT)
        assert bad.category is Category.BAD_BOT
        assert bad.score == 60
        assert bad.risk_level is RiskLevel.MEDIUM

        good = await classifier.reclassify(sample_trader, Category.GOOD_BOT, bot_type="Market Maker")
        assert good.category is Category.GOOD_BOT
        assert good.risk_level is None
        assert good.bot_type == "Market Maker"
        assert good.score < 60
        assert good.publish_state is PublishState.PENDING
        assert sink.enqueue.call_count == 2

        assert [r.address for r in classifier.records(Category.GOOD_BOT)] == [sample_trader]
        assert classifier.records(Category.BAD_BOT) == []

    @pytest.mark.asyncio
    async def test_unflag(self, sample_trader) -> None:
        classifier = Classifier(FakeHistory(), PriceFeed())
        await classifier.reclassify(sample_trader, Category.BAD_BOT, score=88)

        record = await classifier.reclassify(sample_trader, Category.UNCLASSIFIED)

        assert record.category is Category.UNCLASSIFIED
        assert record.risk_level is None
        assert record.score == 88

    @pytest.mark.asyncio
    async def test_unflag_unknown_address(self) -> None:
        classifier = Classifier(FakeHistory(), PriceFeed())
        with pytest.raises(ClassifierError):
            await classifier.reclassify("0x" + "99" * 20, Category.UNCLASSIFIED)

    @pytest.mark.asyncio
    async def test_score_out_of_range(self, sample_trader) -> None:
        classifier = Classifier(FakeHistory(), PriceFeed())
        with pytest.raises(ClassifierError):
            await classifier.reclassify(sample_trader, Category.BAD_BOT, score=101)


class TestStatistics:
    """Tests for aggregate statistics."""

    @pytest.mark.asyncio
    async def test_counts(self, make_trade, make_observation) -> None:
        classifier = Classifier(FakeHistory(), _feed(make_observation, T_NIGHT))
        await classifier.analyze(
            make_trade(trader="0x" + "01" * 20, amount="0.01234567", ts=T_NIGHT + timedelta(milliseconds=50))
        )
        await classifier.analyze(make_trade(trader="0x" + "02" * 20, amount="150.75", ts=T_DAY))
        await classifier.reclassify("0x" + "03" * 20, Category.GOOD_BOT)

        stats = classifier.statistics()
        data = stats.to_dict()

        assert stats.total_addresses == 3
        assert stats.by_category == {"UNCLASSIFIED": 1, "GOOD_BOT": 1, "BAD_BOT": 1}
        assert stats.risk_distribution["CRITICAL"] == 1
        assert stats.pending == 3
        assert stats.trades_analyzed == 2
        assert data["total_liquidity"] == "0"
