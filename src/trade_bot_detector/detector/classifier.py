"""Address classification from behavioral signals.

The Classifier turns each analyzed trade into an up-to-date
ClassificationRecord for the trader: it scores the trader's recent history
against the price context, decides a category, and hands the changed record
to the publisher queue.
"""

from __future__ import annotations

import dataclasses
import logging
from collections import Counter
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from typing import Protocol

from trade_bot_detector.detector.models import (
    Category,
    ClassificationRecord,
    ClassificationStats,
    LiquidityAnalysis,
    PublishState,
    RiskLevel,
    SignalResult,
)
from trade_bot_detector.detector.signals import (
    DEFAULT_LIQUIDITY_THRESHOLD,
    DEFAULT_MIN_TRADES_FOR_LIQUIDITY,
    SignalConfig,
    analyze_liquidity,
    compute_signals,
    fired_signals,
    total_score,
)
from trade_bot_detector.ingestor.models import PriceObservation, Trade, normalize_address
from trade_bot_detector.locks import KeyedLocks

logger = logging.getLogger(__name__)

DEFAULT_GOOD_BOT_MIN_SCORE = 40
DEFAULT_BAD_BOT_MIN_SCORE = 60
DEFAULT_HIGH_RISK_SCORE = 70
DEFAULT_CRITICAL_RISK_SCORE = 85
DEFAULT_HISTORY_MAX_TRADES = 500
DEFAULT_HISTORY_MAX_AGE = timedelta(days=30)


class ClassifierError(Exception):
    """Raised when an address cannot be classified."""


class TradeHistory(Protocol):
    async def user_trades(self, address: str) -> list[Trade]: ...


class PriceContext(Protocol):
    def reference_observation(
        self,
        ts: datetime,
        instrument_ids: Iterable[str] | None = None,
    ) -> PriceObservation | None: ...


class PendingSink(Protocol):
    def enqueue(self, record: ClassificationRecord) -> None: ...


@dataclass(frozen=True)
class ClassifierConfig:
    """Classification thresholds and policy switches.

    Attributes:
        good_bot_min_score: Lowest score considered for GOOD_BOT.
        bad_bot_min_score: Lowest score classified BAD_BOT.
        high_risk_score: BAD_BOT score at which risk becomes HIGH.
        critical_risk_score: BAD_BOT score at which risk becomes CRITICAL.
        require_good_bot_corroboration: GOOD_BOT needs a liquidity-provider
            or market-maker pattern; otherwise the score alone decides.
        liquidity_override: A BAD_BOT-scored liquidity provider is classified
            GOOD_BOT with its score capped below ``bad_bot_min_score``.
        sticky_flags: Analysis never demotes an address whose committed
            category is a bot category; only ``reclassify`` unflags.
        history_max_trades: Most recent trades considered per analysis.
        history_max_age: Oldest trade considered, relative to the analyzed one.
    """

    good_bot_min_score: int = DEFAULT_GOOD_BOT_MIN_SCORE
    bad_bot_min_score: int = DEFAULT_BAD_BOT_MIN_SCORE
    high_risk_score: int = DEFAULT_HIGH_RISK_SCORE
    critical_risk_score: int = DEFAULT_CRITICAL_RISK_SCORE
    require_good_bot_corroboration: bool = True
    liquidity_override: bool = True
    sticky_flags: bool = True
    history_max_trades: int = DEFAULT_HISTORY_MAX_TRADES
    history_max_age: timedelta = DEFAULT_HISTORY_MAX_AGE
    liquidity_threshold: Decimal = DEFAULT_LIQUIDITY_THRESHOLD
    min_trades_for_liquidity: int = DEFAULT_MIN_TRADES_FOR_LIQUIDITY
    signals: SignalConfig = field(default_factory=SignalConfig)

    def __post_init__(self) -> None:
        if not 0 <= self.good_bot_min_score <= self.bad_bot_min_score <= 100:
            raise ValueError("Expected 0 <= good_bot_min_score <= bad_bot_min_score <= 100")
        if self.history_max_trades < 1:
            raise ValueError("history_max_trades must be >= 1")


@dataclass(frozen=True)
class Decision:
    """Outcome of scoring one trade, before it is applied to a record."""

    category: Category
    score: int
    risk_level: RiskLevel | None
    bot_type: str | None
    liquidity: LiquidityAnalysis
    signals: tuple[SignalResult, ...]


class Classifier:
    """Scores traders and maintains one ClassificationRecord per address.

    Analysis of a given address is serialized; different addresses are
    analyzed concurrently. A failed analysis leaves the previous record
    untouched.

    Example:
        ```python
        classifier = Classifier(event_source, price_feed, sink=publisher)
        record = await classifier.analyze(trade)
        print(record.category, record.score)
        ```
    """

    def __init__(
        self,
        history: TradeHistory,
        prices: PriceContext,
        *,
        config: ClassifierConfig | None = None,
        reference_instruments: Iterable[str] | None = None,
        sink: PendingSink | None = None,
    ) -> None:
        self._history = history
        self._prices = prices
        self._config = config or ClassifierConfig()
        self._reference_instruments = list(reference_instruments) if reference_instruments else None
        self._sink = sink

        self._records: dict[str, ClassificationRecord] = {}
        self._locks = KeyedLocks()
        self._trades_analyzed = 0
        self._errors = 0

    @property
    def config(self) -> ClassifierConfig:
        return self._config

    def attach_sink(self, sink: PendingSink) -> None:
        self._sink = sink

    # Decision logic

    def risk_level(self, score: int) -> RiskLevel:
        if score >= self._config.critical_risk_score:
            return RiskLevel.CRITICAL
        if score >= self._config.high_risk_score:
            return RiskLevel.HIGH
        return RiskLevel.MEDIUM

    def decide(
        self,
        score: int,
        liquidity: LiquidityAnalysis,
        signals: tuple[SignalResult, ...] = (),
    ) -> Decision:
        cfg = self._config
        if score >= cfg.bad_bot_min_score:
            if cfg.liquidity_override and liquidity.is_liquidity_provider:
                return Decision(
                    category=Category.GOOD_BOT,
                    score=min(score, cfg.bad_bot_min_score - 1),
                    risk_level=None,
                    bot_type=liquidity.bot_type,
                    liquidity=liquidity,
                    signals=signals,
                )
            return Decision(
                category=Category.BAD_BOT,
                score=score,
                risk_level=self.risk_level(score),
                bot_type=None,
                liquidity=liquidity,
                signals=signals,
            )

        if score >= cfg.good_bot_min_score:
            corroborated = liquidity.is_liquidity_provider or liquidity.is_market_maker
            if corroborated or not cfg.require_good_bot_corroboration:
                return Decision(
                    category=Category.GOOD_BOT,
                    score=score,
                    risk_level=None,
                    bot_type=liquidity.bot_type,
                    liquidity=liquidity,
                    signals=signals,
                )

        return Decision(
            category=Category.UNCLASSIFIED,
            score=score,
            risk_level=None,
            bot_type=None,
            liquidity=liquidity,
            signals=signals,
        )

    def bounded_history(self, history: list[Trade], trade: Trade) -> list[Trade]:
        """Trades considered when scoring ``trade``.

        Only trades at or before ``trade`` in chain order count, limited to
        ``history_max_age`` before it and to the last ``history_max_trades``.
        """
        cutoff = trade.chain_timestamp - self._config.history_max_age
        window = [
            t
            for t in history
            if t.chain_position <= trade.chain_position and t.chain_timestamp >= cutoff
        ]
        if not any(t.key == trade.key for t in window):
            window.append(trade)
            window.sort(key=lambda t: t.chain_position)
        return window[-self._config.history_max_trades :]

    def evaluate(self, trade: Trade, history: list[Trade]) -> Decision:
        """Score ``trade`` against an already-fetched history (no side effects)."""
        window = self.bounded_history(history, trade)
        reference = self._prices.reference_observation(trade.chain_timestamp, self._reference_instruments)
        results = compute_signals(trade, window, reference, self._config.signals)
        liquidity = analyze_liquidity(
            window,
            liquidity_threshold=self._config.liquidity_threshold,
            min_trades=self._config.min_trades_for_liquidity,
        )
        return self.decide(total_score(results), liquidity, fired_signals(results))

    # Record management

    async def analyze(self, trade: Trade) -> ClassificationRecord:
        """Score ``trade`` and upsert its trader's record.

        Returns:
            A snapshot of the trader's record after the update.

        Raises:
            ClassifierError: If history or price context cannot be obtained or
                scoring fails. The previous record is left untouched.
        """
        address = normalize_address(trade.trader)
        async with self._locks.hold(address):
            try:
                history = await self._history.user_trades(address)
                decision = self.evaluate(trade, history)
            except Exception as e:
                self._errors += 1
                logger.error("Analysis failed for %s (tx %s): %s", address, trade.transaction_hash, e)
                raise ClassifierError(f"Failed to analyze {address}: {e}") from e

            self._trades_analyzed += 1
            record = self._apply_decision(address, decision)
            return dataclasses.replace(record)

    def _apply_decision(self, address: str, decision: Decision) -> ClassificationRecord:
        existing = self._records.get(address)

        if (
            existing is not None
            and self._config.sticky_flags
            and decision.category is Category.UNCLASSIFIED
            and existing.committed_category.is_bot
        ):
            logger.debug(
                "Keeping %s as %s (score %d below threshold, flags are sticky)",
                address,
                existing.committed_category.value,
                decision.score,
            )
            return existing

        if existing is not None and self._matches(existing, decision):
            # Registry-visible state unchanged: refresh the explanation only.
            existing.signals = decision.signals
            existing.decided_at = datetime.now(UTC)
            return existing

        if existing is None:
            record = ClassificationRecord(
                address=address,
                score=decision.score,
                category=decision.category,
                bot_type=decision.bot_type,
                risk_level=decision.risk_level,
                liquidity_provided=decision.liquidity.total_volume,
                signals=decision.signals,
            )
            self._records[address] = record
        else:
            record = existing
            record.score = decision.score
            record.category = decision.category
            record.bot_type = decision.bot_type
            record.risk_level = decision.risk_level
            record.liquidity_provided = decision.liquidity.total_volume
            record.signals = decision.signals
            record.decided_at = datetime.now(UTC)
            record.publish_state = PublishState.PENDING
            record.version += 1

        self._log_decision(record)
        self._enqueue(record)
        return record

    @staticmethod
    def _matches(record: ClassificationRecord, decision: Decision) -> bool:
        return (
            record.category is decision.category
            and record.score == decision.score
            and record.risk_level is decision.risk_level
            and record.bot_type == decision.bot_type
            and record.liquidity_provided == decision.liquidity.total_volume
        )

    def _log_decision(self, record: ClassificationRecord) -> None:
        if record.category is Category.BAD_BOT:
            logger.warning(
                "Bad bot: %s score=%d risk=%s",
                record.address,
                record.score,
                record.risk_level.value if record.risk_level else "-",
            )
        elif record.category is Category.GOOD_BOT:
            logger.info(
                "Good bot: %s score=%d type=%s liquidity=%s",
                record.address,
                record.score,
                record.bot_type,
                record.liquidity_provided,
            )
        else:
            logger.debug("Unclassified: %s score=%d", record.address, record.score)

    def _enqueue(self, record: ClassificationRecord) -> None:
        if self._sink is not None:
            self._sink.enqueue(record)

    async def reclassify(
        self,
        address: str,
        category: Category,
        *,
        score: int | None = None,
        bot_type: str | None = None,
    ) -> ClassificationRecord:
        """Administratively move ``address`` to ``category``.

        Moving to UNCLASSIFIED unflags the address. The record is replaced in
        one step and marked PENDING so the publisher commits the move.

        Raises:
            ClassifierError: If unflagging an address that has no record, or
                if ``score`` is out of range.
        """
        key = normalize_address(address)
        cfg = self._config
        if score is not None and not 0 <= score <= 100:
            raise ClassifierError(f"Score out of range: {score}")

        async with self._locks.hold(key):
            existing = self._records.get(key)
            if existing is None and category is Category.UNCLASSIFIED:
                raise ClassifierError(f"No classification record for {key}")

            previous_score = existing.score if existing else 0
            if category is Category.BAD_BOT:
                new_score = score if score is not None else max(previous_score, cfg.bad_bot_min_score)
                risk: RiskLevel | None = self.risk_level(new_score)
                new_bot_type = None
            elif category is Category.GOOD_BOT:
                new_score = score if score is not None else min(
                    max(previous_score, cfg.good_bot_min_score),
                    cfg.bad_bot_min_score - 1,
                )
                risk = None
                new_bot_type = bot_type or (existing.bot_type if existing else None) or "Unknown"
            else:
                new_score = score if score is not None else previous_score
                risk = None
                new_bot_type = None

            if existing is None:
                record = ClassificationRecord(
                    address=key,
                    score=new_score,
                    category=category,
                    bot_type=new_bot_type,
                    risk_level=risk,
                )
                self._records[key] = record
            else:
                record = existing
                record.score = new_score
                record.category = category
                record.bot_type = new_bot_type
                record.risk_level = risk
                record.decided_at = datetime.now(UTC)
                record.publish_state = PublishState.PENDING
                record.version += 1

            logger.info("Reclassified %s as %s (score %d)", key, category.value, new_score)
            self._enqueue(record)
            return dataclasses.replace(record)

    # Read-only projections

    def current_record(self, address: str) -> ClassificationRecord | None:
        record = self._records.get(normalize_address(address))
        return dataclasses.replace(record) if record else None

    def records(self, category: Category | None = None) -> list[ClassificationRecord]:
        return [
            dataclasses.replace(r)
            for _, r in sorted(self._records.items())
            if category is None or r.category is category
        ]

    def statistics(self) -> ClassificationStats:
        """Counts by category, risk distribution and liquidity totals."""
        by_category = Counter(r.category.value for r in self._records.values())
        risk = Counter(r.risk_level.value for r in self._records.values() if r.risk_level is not None)
        total_liquidity = sum(
            (r.liquidity_provided for r in self._records.values() if r.category is Category.GOOD_BOT),
            Decimal("0"),
        )
        return ClassificationStats(
            total_addresses=len(self._records),
            by_category={c.value: by_category.get(c.value, 0) for c in Category},
            risk_distribution={lvl.value: risk.get(lvl.value, 0) for lvl in RiskLevel},
            total_liquidity=total_liquidity,
            pending=sum(1 for r in self._records.values() if r.is_pending),
            trades_analyzed=self._trades_analyzed,
            errors=self._errors,
        )
