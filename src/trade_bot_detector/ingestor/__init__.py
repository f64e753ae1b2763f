"""Data ingestion layer - Oracle prices and on-chain trade events."""

from trade_bot_detector.ingestor.chain import (
    ChainClient,
    ChainClientError,
    ChainConnectivityError,
    LogRangeTooLargeError,
    RPCError,
)
from trade_bot_detector.ingestor.events import ChainEventSource, CheckpointStore
from trade_bot_detector.ingestor.models import PriceObservation, Trade
from trade_bot_detector.ingestor.price_feed import (
    PriceConnectionError,
    PriceFeed,
    PriceStreamError,
    PriceStreamHandler,
)

__all__ = [
    "ChainClient",
    "ChainClientError",
    "ChainConnectivityError",
    "ChainEventSource",
    "CheckpointStore",
    "LogRangeTooLargeError",
    "PriceConnectionError",
    "PriceFeed",
    "PriceObservation",
    "PriceStreamError",
    "PriceStreamHandler",
    "RPCError",
    "Trade",
]
