"""Pytest configuration and fixtures."""

from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, datetime
from decimal import Decimal

import pytest

from trade_bot_detector.ingestor.models import PriceObservation, Trade

TRADER = "0x" + "ab" * 20
ANALYZER = "0x" + "aa" * 20
BTC_ID = "e62df6c8b4a85fe1a67db44dc12de5db330f7ac66b72dc658afedf0f4a415b43"


@pytest.fixture
def sample_trader() -> str:
    """Sample trader address for testing."""
    return TRADER


@pytest.fixture
def analyzer_address() -> str:
    """Address allowed to mutate the registry."""
    return ANALYZER


@pytest.fixture
def make_trade() -> Callable[..., Trade]:
    """Factory for trades with sensible defaults."""

    def _make(
        *,
        trader: str = TRADER,
        amount: str | Decimal = "1",
        block_number: int = 100,
        log_index: int = 0,
        tx_hash: str | None = None,
        ts: datetime | None = None,
    ) -> Trade:
        return Trade(
            trader=trader,
            amount=Decimal(amount),
            block_number=block_number,
            log_index=log_index,
            transaction_hash=tx_hash or f"0x{block_number:032x}{log_index:032x}",
            chain_timestamp=ts or datetime(2026, 3, 2, 12, 0, tzinfo=UTC),
        )

    return _make


@pytest.fixture
def make_observation() -> Callable[..., PriceObservation]:
    """Factory for price observations."""

    def _make(
        *,
        instrument_id: str = BTC_ID,
        price: str = "65000",
        publish_time: datetime | None = None,
    ) -> PriceObservation:
        return PriceObservation(
            instrument_id=instrument_id,
            price=Decimal(price),
            confidence_interval=Decimal("1.5"),
            publish_time=publish_time or datetime(2026, 3, 2, 12, 0, tzinfo=UTC),
        )

    return _make
