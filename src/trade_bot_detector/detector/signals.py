"""Behavioral signals for trade bot detection.

Every function here is pure: the result depends only on the arguments, so
signals can be computed concurrently for different addresses and the total
score is reproducible from the same trade history and price context.
"""

from __future__ import annotations

import math
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from decimal import Decimal

from trade_bot_detector.detector.models import (
    LiquidityAnalysis,
    SignalName,
    SignalResult,
    TimingTag,
)
from trade_bot_detector.ingestor.models import PriceObservation, Trade

MIN_SCORE = 0
MAX_SCORE = 100

# Off-hours window (UTC hours).
DEFAULT_OFF_HOURS = frozenset({22, 23, 0, 1, 2, 3, 4, 5, 6})

MIN_TRADES_FOR_REGULARITY = 3
MIN_TRADES_FOR_24X7 = 10

# Liquidity analysis
DEFAULT_LIQUIDITY_THRESHOLD = Decimal("500")
DEFAULT_MIN_TRADES_FOR_LIQUIDITY = 5
MARKET_MAKER_MIN_TRADES = 10
MARKET_MAKER_MIN_TRADES_PER_HOUR = 50.0
MARKET_MAKER_MAX_AMOUNT_CV = 0.5
ARBITRAGE_MIN_TRADES = 5
ARBITRAGE_BURST_SECONDS = 2.0
ARBITRAGE_MIN_BURST_RATIO = 0.4


@dataclass(frozen=True)
class SignalConfig:
    """Tunable inputs of the signal functions.

    Attributes:
        stale_after: Price context older than this (relative to the trade)
            is treated as absent.
        off_hours: UTC hours of day that count as off-hours.
        immediate_ms: Reaction below this is tagged immediate.
        fast_ms: Reaction below this is tagged fast.
        frequency_window: Trailing window for the trading-frequency signal.
    """

    stale_after: timedelta = timedelta(seconds=60)
    off_hours: frozenset[int] = field(default_factory=lambda: DEFAULT_OFF_HOURS)
    immediate_ms: float = 100.0
    fast_ms: float = 1000.0
    frequency_window: timedelta = timedelta(hours=1)


def _result(name: SignalName, points: int, rationale: str = "") -> SignalResult:
    return SignalResult(name=name, points=points, rationale=rationale)


def reaction_time_ms(
    trade: Trade,
    reference: PriceObservation | None,
    *,
    stale_after: timedelta,
) -> float | None:
    """Milliseconds from the reference price publish to the trade.

    Returns None when there is no reference, when it was published after the
    trade, or when it is older than ``stale_after``.
    """
    if reference is None:
        return None
    delta = trade.chain_timestamp - reference.publish_time
    if delta < timedelta(0) or delta > stale_after:
        return None
    return delta.total_seconds() * 1000.0


def score_reaction_time(reaction_ms: float | None) -> SignalResult:
    if reaction_ms is None:
        return _result(SignalName.REACTION_TIME, 0, "No reliable price context")
    if reaction_ms < 100:
        return _result(SignalName.REACTION_TIME, 30, f"Superhuman reaction: {reaction_ms:.0f}ms")
    if reaction_ms < 500:
        return _result(SignalName.REACTION_TIME, 20, f"Very fast reaction: {reaction_ms:.0f}ms")
    if reaction_ms < 1000:
        return _result(SignalName.REACTION_TIME, 10, f"Fast reaction: {reaction_ms:.0f}ms")
    return _result(SignalName.REACTION_TIME, 0)


def timing_tag(
    reaction_ms: float | None,
    *,
    immediate_ms: float = 100.0,
    fast_ms: float = 1000.0,
) -> TimingTag | None:
    if reaction_ms is None:
        return None
    if reaction_ms < immediate_ms:
        return TimingTag.IMMEDIATE
    if reaction_ms < fast_ms:
        return TimingTag.FAST
    return TimingTag.NORMAL


def score_market_timing(tag: TimingTag | None) -> SignalResult:
    if tag is TimingTag.IMMEDIATE:
        return _result(SignalName.MARKET_TIMING, 15, "Immediate market timing")
    if tag is TimingTag.FAST:
        return _result(SignalName.MARKET_TIMING, 8, "Fast market timing")
    return _result(SignalName.MARKET_TIMING, 0)


def trades_in_window(history: Sequence[Trade], *, as_of: datetime, window: timedelta) -> int:
    """Count trades with ``as_of - window < chain_timestamp <= as_of``."""
    start = as_of - window
    return sum(1 for t in history if start < t.chain_timestamp <= as_of)


def score_trading_frequency(count: int) -> SignalResult:
    if count > 100:
        return _result(SignalName.TRADING_FREQUENCY, 25, f"Extreme trading frequency: {count} trades/hour")
    if count > 50:
        return _result(SignalName.TRADING_FREQUENCY, 15, f"High trading frequency: {count} trades/hour")
    if count > 20:
        return _result(SignalName.TRADING_FREQUENCY, 5, f"Elevated trading frequency: {count} trades/hour")
    return _result(SignalName.TRADING_FREQUENCY, 0)


def score_amount_magnitude(amount: Decimal) -> SignalResult:
    if amount < 1:
        return _result(SignalName.AMOUNT_MAGNITUDE, 20, f"Micro trade amount: {amount:f}")
    if amount < 10:
        return _result(SignalName.AMOUNT_MAGNITUDE, 10, f"Small trade amount: {amount:f}")
    return _result(SignalName.AMOUNT_MAGNITUDE, 0)


def significant_fractional_digits(amount: Decimal) -> int:
    """Fractional digits left after dropping trailing zeros (0.0100 -> 2)."""
    if not amount.is_finite() or amount == 0:
        return 0
    exponent = int(amount.normalize().as_tuple().exponent)
    return max(0, -exponent)


def score_precision(amount: Decimal) -> SignalResult:
    digits = significant_fractional_digits(amount)
    if digits > 6:
        return _result(SignalName.PRECISION, 15, f"Extreme precision: {digits} decimal places")
    if digits > 4:
        return _result(SignalName.PRECISION, 8, f"High precision: {digits} decimal places")
    return _result(SignalName.PRECISION, 0)


def score_off_hours(ts: datetime, off_hours: frozenset[int] = DEFAULT_OFF_HOURS) -> SignalResult:
    if ts.tzinfo is None:
        raise ValueError("timestamp must be timezone-aware")
    hour = ts.astimezone(UTC).hour
    if hour in off_hours:
        return _result(SignalName.OFF_HOURS, 10, f"Off-hours trading: {hour:02d}:00 UTC")
    return _result(SignalName.OFF_HOURS, 0)


def interval_consistency(history: Sequence[Trade]) -> float | None:
    """Regularity of the gaps between consecutive trades, 0-100.

    100 means perfectly even spacing. Returns None for fewer than two trades.
    """
    if len(history) < 2:
        return None
    intervals = [
        (b.chain_timestamp - a.chain_timestamp).total_seconds()
        for a, b in zip(history, history[1:], strict=False)
    ]
    mean = sum(intervals) / len(intervals)
    variance = sum((i - mean) ** 2 for i in intervals) / len(intervals)
    std_dev = math.sqrt(variance)
    if std_dev == 0:
        return 100.0
    if mean <= 0:
        return 0.0
    return (1 - min(std_dev / mean, 1.0)) * 100


def score_pattern_regularity(history: Sequence[Trade]) -> SignalResult:
    if len(history) < MIN_TRADES_FOR_REGULARITY:
        return _result(SignalName.PATTERN_REGULARITY, 0)
    consistency = interval_consistency(history)
    if consistency is None:
        return _result(SignalName.PATTERN_REGULARITY, 0)
    if consistency > 90:
        return _result(
            SignalName.PATTERN_REGULARITY,
            15,
            f"Very consistent trading pattern: {consistency:.1f}%",
        )
    if consistency > 80:
        return _result(SignalName.PATTERN_REGULARITY, 10, f"Consistent trading pattern: {consistency:.1f}%")
    if consistency > 70:
        return _result(SignalName.PATTERN_REGULARITY, 5, f"Somewhat consistent pattern: {consistency:.1f}%")
    return _result(SignalName.PATTERN_REGULARITY, 0)


def hour_coverage(history: Sequence[Trade]) -> int:
    """Distinct UTC hours of day with at least one trade."""
    return len({t.chain_timestamp.astimezone(UTC).hour for t in history})


def score_activity_24x7(history: Sequence[Trade]) -> SignalResult:
    if len(history) < MIN_TRADES_FOR_24X7:
        return _result(SignalName.ACTIVITY_24X7, 0)
    hours = hour_coverage(history)
    coverage = hours / 24 * 100
    if coverage > 70:
        return _result(SignalName.ACTIVITY_24X7, 15, f"24/7 trading: {hours} different hours")
    if coverage > 50:
        return _result(SignalName.ACTIVITY_24X7, 8, f"Extensive trading: {hours} different hours")
    return _result(SignalName.ACTIVITY_24X7, 0)


def compute_signals(
    trade: Trade,
    history: Sequence[Trade],
    reference: PriceObservation | None,
    config: SignalConfig | None = None,
) -> list[SignalResult]:
    """Evaluate every signal for ``trade``.

    Args:
        trade: The trade being scored.
        history: The trader's trades up to and including ``trade``, in chain
            order.
        reference: Nearest price observation published at or before the
            trade, if any.
        config: Signal thresholds.

    Returns:
        One result per signal, in evaluation order (zero-point results
        included).
    """
    cfg = config or SignalConfig()
    reaction = reaction_time_ms(trade, reference, stale_after=cfg.stale_after)
    tag = timing_tag(reaction, immediate_ms=cfg.immediate_ms, fast_ms=cfg.fast_ms)
    frequency = trades_in_window(history, as_of=trade.chain_timestamp, window=cfg.frequency_window)
    return [
        score_reaction_time(reaction),
        score_trading_frequency(frequency),
        score_amount_magnitude(trade.amount),
        score_precision(trade.amount),
        score_off_hours(trade.chain_timestamp, cfg.off_hours),
        score_market_timing(tag),
        score_pattern_regularity(history),
        score_activity_24x7(history),
    ]


def total_score(results: Sequence[SignalResult]) -> int:
    """Sum of points, clamped to [0, 100]."""
    return max(MIN_SCORE, min(MAX_SCORE, sum(r.points for r in results)))


def fired_signals(results: Sequence[SignalResult]) -> tuple[SignalResult, ...]:
    return tuple(r for r in results if r.fired)


def analyze_liquidity(
    history: Sequence[Trade],
    *,
    liquidity_threshold: Decimal = DEFAULT_LIQUIDITY_THRESHOLD,
    min_trades: int = DEFAULT_MIN_TRADES_FOR_LIQUIDITY,
) -> LiquidityAnalysis:
    """Profile whether a trader looks like a market maker or arbitrageur.

    A trader is a liquidity provider when it shows a market-maker or
    arbitrage pattern and its total volume reaches ``liquidity_threshold``.
    """
    if len(history) < min_trades:
        return LiquidityAnalysis.empty()

    total_volume = sum((t.amount for t in history), Decimal("0"))

    span_hours = (history[-1].chain_timestamp - history[0].chain_timestamp).total_seconds() / 3600
    trades_per_hour = len(history) / max(span_hours, 1.0)

    amounts = [float(t.amount) for t in history]
    mean_amount = sum(amounts) / len(amounts)
    if mean_amount > 0:
        variance = sum((a - mean_amount) ** 2 for a in amounts) / len(amounts)
        amount_cv = math.sqrt(variance) / mean_amount
    else:
        amount_cv = math.inf

    is_market_maker = (
        len(history) >= MARKET_MAKER_MIN_TRADES
        and trades_per_hour > MARKET_MAKER_MIN_TRADES_PER_HOUR
        and amount_cv < MARKET_MAKER_MAX_AMOUNT_CV
    )

    bursts = sum(
        1
        for a, b in zip(history, history[1:], strict=False)
        if abs((b.chain_timestamp - a.chain_timestamp).total_seconds()) < ARBITRAGE_BURST_SECONDS
    )
    burst_ratio = bursts / len(history)
    is_arbitrage = len(history) >= ARBITRAGE_MIN_TRADES and burst_ratio > ARBITRAGE_MIN_BURST_RATIO

    if is_market_maker:
        bot_type = "Market Maker"
    elif is_arbitrage:
        bot_type = "Arbitrage Bot"
    else:
        bot_type = "Unknown"

    return LiquidityAnalysis(
        total_volume=total_volume,
        trade_count=len(history),
        trades_per_hour=trades_per_hour,
        burst_ratio=burst_ratio,
        is_market_maker=is_market_maker,
        is_arbitrage=is_arbitrage,
        is_liquidity_provider=(is_market_maker or is_arbitrage) and total_volume >= liquidity_threshold,
        bot_type=bot_type,
    )
