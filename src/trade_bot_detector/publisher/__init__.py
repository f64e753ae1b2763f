"""Publication layer - Committing classifications to the bot registry."""

from trade_bot_detector.publisher.publisher import (
    FlagPublisher,
    FlushResult,
    PublisherError,
    PublisherStats,
)
from trade_bot_detector.publisher.registry import (
    BotInfo,
    BotRegistry,
    ContractRegistry,
    InMemoryRegistry,
    RegistryAccessError,
    RegistryError,
    RegistryInvariantError,
    RegistrySubmissionError,
    TradeBlockedError,
)

__all__ = [
    "BotInfo",
    "BotRegistry",
    "ContractRegistry",
    "FlagPublisher",
    "FlushResult",
    "InMemoryRegistry",
    "PublisherError",
    "PublisherStats",
    "RegistryAccessError",
    "RegistryError",
    "RegistryInvariantError",
    "RegistrySubmissionError",
    "TradeBlockedError",
]
