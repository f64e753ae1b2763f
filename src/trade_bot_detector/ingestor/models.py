"""Data models for the ingestor module."""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import UTC, datetime
from decimal import Decimal, InvalidOperation
from typing import Any

WEI_PER_ETHER = Decimal(10) ** 18


class MalformedPayloadError(ValueError):
    """Raised when a network payload cannot be parsed into a typed record."""


def _parse_epoch(raw: Any) -> datetime:
    """Parse unix seconds (or millis) from an int/float/str payload value."""
    try:
        ts_f = float(raw)
    except (TypeError, ValueError, OverflowError) as e:
        raise MalformedPayloadError(f"Invalid timestamp: {raw!r}") from e
    if not math.isfinite(ts_f):
        raise MalformedPayloadError(f"Invalid timestamp: {raw!r}")
    if ts_f > 1e12:
        ts_f /= 1000.0
    try:
        return datetime.fromtimestamp(ts_f, tz=UTC)
    except (OverflowError, OSError, ValueError) as e:
        raise MalformedPayloadError(f"Timestamp out of range: {raw!r}") from e


def _to_decimal(raw: Any, name: str) -> Decimal:
    if raw is None:
        raise MalformedPayloadError(f"Missing field: {name}")
    try:
        value = Decimal(str(raw))
    except (InvalidOperation, ValueError) as e:
        raise MalformedPayloadError(f"Invalid {name}: {raw!r}") from e
    if not value.is_finite():
        raise MalformedPayloadError(f"Invalid {name}: {raw!r}")
    return value


def normalize_address(address: str) -> str:
    """Canonical lowercase form used as the key for per-address state."""
    return address.strip().lower()


@dataclass(frozen=True)
class PriceObservation:
    """A single oracle price update for one instrument.

    Attributes:
        instrument_id: Price feed identifier (e.g. a Pyth price id).
        price: Price in quote units with the exponent already applied.
        confidence_interval: Oracle confidence interval in quote units.
        publish_time: When the oracle published the price.
        received_at: When this process received the message.
    """

    instrument_id: str
    price: Decimal
    confidence_interval: Decimal
    publish_time: datetime
    received_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    @classmethod
    def from_push_message(
        cls,
        data: dict[str, Any],
        *,
        received_at: datetime | None = None,
    ) -> PriceObservation:
        """Create a PriceObservation from a push-feed message.

        Accepts the flat shape ``{id, price, conf, publish_time}`` as well as
        the Hermes ``price_update`` envelope where the quote sits under
        ``price_feed.price`` with an ``expo`` exponent.

        Raises:
            MalformedPayloadError: If required fields are missing or invalid.
        """
        if not isinstance(data, dict):
            raise MalformedPayloadError("Price message must be an object")

        feed = data.get("price_feed", data)
        if not isinstance(feed, dict):
            raise MalformedPayloadError("price_feed must be an object")

        instrument_id = feed.get("id")
        if not instrument_id:
            raise MalformedPayloadError("Missing field: id")

        quote = feed.get("price")
        if isinstance(quote, dict):
            price_raw = quote.get("price")
            conf_raw = quote.get("conf", "0")
            expo_raw = quote.get("expo", 0)
            publish_raw = quote.get("publish_time")
        else:
            price_raw = quote
            conf_raw = feed.get("conf", "0")
            expo_raw = feed.get("expo", 0)
            publish_raw = feed.get("publish_time")

        try:
            expo = int(expo_raw)
        except (TypeError, ValueError) as e:
            raise MalformedPayloadError(f"Invalid expo: {expo_raw!r}") from e

        price = _to_decimal(price_raw, "price").scaleb(expo)
        conf = _to_decimal(conf_raw, "conf").scaleb(expo)
        if price <= 0:
            raise MalformedPayloadError(f"Non-positive price: {price}")
        if publish_raw is None:
            raise MalformedPayloadError("Missing field: publish_time")

        return cls(
            instrument_id=normalize_instrument_id(str(instrument_id)),
            price=price,
            confidence_interval=abs(conf),
            publish_time=_parse_epoch(publish_raw),
            received_at=received_at or datetime.now(UTC),
        )

    def to_dict(self) -> dict[str, object]:
        return {
            "instrument_id": self.instrument_id,
            "price": str(self.price),
            "confidence_interval": str(self.confidence_interval),
            "publish_time": self.publish_time.isoformat(),
            "received_at": self.received_at.isoformat(),
        }


def normalize_instrument_id(instrument_id: str) -> str:
    """Lowercase, unprefixed price feed id."""
    # Hermes reports ids without the 0x prefix even when subscribed with it.
    raw = instrument_id.lower()
    return raw[2:] if raw.startswith("0x") else raw


@dataclass(frozen=True)
class Trade:
    """A confirmed on-chain trade event.

    ``chain_timestamp`` is the block time reported by the contract and is the
    only clock used for scoring; ``observed_at`` records ingestion time.
    """

    trader: str
    amount: Decimal
    block_number: int
    log_index: int
    transaction_hash: str
    chain_timestamp: datetime
    observed_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def key(self) -> tuple[str, int]:
        """Unique identity of the event that produced this trade."""
        return (self.transaction_hash.lower(), self.log_index)

    @property
    def chain_position(self) -> tuple[int, int]:
        """Total chain order: (block number, log index)."""
        return (self.block_number, self.log_index)

    @classmethod
    def from_event_args(
        cls,
        args: dict[str, Any],
        *,
        block_number: int,
        log_index: int,
        transaction_hash: str,
        observed_at: datetime | None = None,
    ) -> Trade:
        """Create a Trade from decoded ``TradeExecuted`` event arguments.

        The event carries the amount in wei and the block timestamp in seconds.

        Raises:
            MalformedPayloadError: If the decoded arguments are unusable.
        """
        user = args.get("user")
        if not user:
            raise MalformedPayloadError("Missing field: user")
        amount_wei = args.get("amount")
        if amount_wei is None:
            raise MalformedPayloadError("Missing field: amount")
        try:
            amount = Decimal(int(amount_wei)) / WEI_PER_ETHER
        except (TypeError, ValueError) as e:
            raise MalformedPayloadError(f"Invalid amount: {amount_wei!r}") from e

        ts_raw = args.get("timestamp")
        if ts_raw is None:
            raise MalformedPayloadError("Missing field: timestamp")

        tx_hash: Any = transaction_hash
        if isinstance(tx_hash, (bytes, bytearray)):
            tx_hash = "0x" + bytes(tx_hash).hex()

        return cls(
            trader=normalize_address(str(user)),
            amount=amount.normalize(),
            block_number=int(block_number),
            log_index=int(log_index),
            transaction_hash=str(tx_hash).lower(),
            chain_timestamp=_parse_epoch(ts_raw),
            observed_at=observed_at or datetime.now(UTC),
        )

    def to_dict(self) -> dict[str, object]:
        return {
            "trader": self.trader,
            "amount": f"{self.amount:f}",
            "block_number": self.block_number,
            "log_index": self.log_index,
            "transaction_hash": self.transaction_hash,
            "chain_timestamp": self.chain_timestamp.isoformat(),
            "observed_at": self.observed_at.isoformat(),
        }
