"""Data models for the detector module."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from decimal import Decimal
from enum import Enum


class SignalName(str, Enum):
    """Behavioral signals, in evaluation order."""

    REACTION_TIME = "reaction_time"
    TRADING_FREQUENCY = "trading_frequency"
    AMOUNT_MAGNITUDE = "amount_magnitude"
    PRECISION = "precision"
    OFF_HOURS = "off_hours"
    MARKET_TIMING = "market_timing"
    PATTERN_REGULARITY = "pattern_regularity"
    ACTIVITY_24X7 = "activity_24x7"


class TimingTag(str, Enum):
    """Qualitative reaction speed relative to the nearest prior price update."""

    IMMEDIATE = "immediate"
    FAST = "fast"
    NORMAL = "normal"


class Category(str, Enum):
    UNCLASSIFIED = "UNCLASSIFIED"
    GOOD_BOT = "GOOD_BOT"
    BAD_BOT = "BAD_BOT"

    @property
    def is_bot(self) -> bool:
        return self is not Category.UNCLASSIFIED


class RiskLevel(str, Enum):
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


class PublishState(str, Enum):
    PENDING = "PENDING"
    PUBLISHED = "PUBLISHED"


@dataclass(frozen=True)
class SignalResult:
    """Points awarded by one signal, with a human-readable rationale."""

    name: SignalName
    points: int
    rationale: str

    @property
    def fired(self) -> bool:
        return self.points > 0

    def to_dict(self) -> dict[str, object]:
        return {"name": self.name.value, "points": self.points, "rationale": self.rationale}


@dataclass(frozen=True)
class LiquidityAnalysis:
    """Liquidity-provision profile of a trader's recent history.

    Attributes:
        total_volume: Sum of trade amounts (ether units).
        trade_count: Number of trades analyzed.
        trades_per_hour: Trade rate over the history's span (1h minimum span).
        burst_ratio: Share of trades placed within 2s of the previous one.
        is_market_maker: Frequent, consistently sized trading.
        is_arbitrage: Bursty trading.
        is_liquidity_provider: A market-maker or arbitrage pattern backed by
            enough volume.
        bot_type: "Market Maker", "Arbitrage Bot" or "Unknown".
    """

    total_volume: Decimal
    trade_count: int
    trades_per_hour: float
    burst_ratio: float
    is_market_maker: bool
    is_arbitrage: bool
    is_liquidity_provider: bool
    bot_type: str

    @classmethod
    def empty(cls) -> LiquidityAnalysis:
        return cls(
            total_volume=Decimal("0"),
            trade_count=0,
            trades_per_hour=0.0,
            burst_ratio=0.0,
            is_market_maker=False,
            is_arbitrage=False,
            is_liquidity_provider=False,
            bot_type="Unknown",
        )


@dataclass
class ClassificationRecord:
    """Current classification of one address.

    One record exists per address and is updated in place. ``version`` is
    bumped on every change so the publisher can tell whether a record moved
    on while its batch was being submitted. ``committed_category`` is the
    category last confirmed in the registry.
    """

    address: str
    score: int
    category: Category
    bot_type: str | None = None
    risk_level: RiskLevel | None = None
    liquidity_provided: Decimal = Decimal("0")
    signals: tuple[SignalResult, ...] = ()
    decided_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    publish_state: PublishState = PublishState.PENDING
    committed_category: Category = Category.UNCLASSIFIED
    version: int = 1

    @property
    def is_pending(self) -> bool:
        return self.publish_state is PublishState.PENDING

    @property
    def needs_submission(self) -> bool:
        """False when publishing this record would not change the registry."""
        if self.category is Category.UNCLASSIFIED:
            return self.committed_category.is_bot
        return True

    def to_dict(self) -> dict[str, object]:
        return {
            "address": self.address,
            "score": self.score,
            "category": self.category.value,
            "bot_type": self.bot_type,
            "risk_level": self.risk_level.value if self.risk_level else None,
            "liquidity_provided": f"{self.liquidity_provided:f}",
            "signals": [s.to_dict() for s in self.signals],
            "decided_at": self.decided_at.isoformat(),
            "publish_state": self.publish_state.value,
            "committed_category": self.committed_category.value,
            "version": self.version,
        }


@dataclass
class ClassificationStats:
    """Aggregate view over all classification records."""

    total_addresses: int = 0
    by_category: dict[str, int] = field(default_factory=dict)
    risk_distribution: dict[str, int] = field(default_factory=dict)
    total_liquidity: Decimal = Decimal("0")
    pending: int = 0
    trades_analyzed: int = 0
    errors: int = 0

    def to_dict(self) -> dict[str, object]:
        return {
            "total_addresses": self.total_addresses,
            "by_category": dict(self.by_category),
            "risk_distribution": dict(self.risk_distribution),
            "total_liquidity": f"{self.total_liquidity:f}",
            "pending": self.pending,
            "trades_analyzed": self.trades_analyzed,
            "errors": self.errors,
        }
