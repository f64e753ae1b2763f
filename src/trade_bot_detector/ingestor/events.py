"""On-chain ``TradeExecuted`` event source.

Polls confirmed blocks for trade events, replays historical ranges in chunks
and keeps the per-trader trade log that the classifier reads history from.
"""

from __future__ import annotations

import asyncio
import bisect
import contextlib
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from typing import TYPE_CHECKING, Any

from redis.exceptions import RedisError
from web3 import AsyncWeb3

from trade_bot_detector.ingestor.chain import ChainConnectivityError, LogRangeTooLargeError
from trade_bot_detector.ingestor.models import (
    MalformedPayloadError,
    Trade,
    normalize_address,
)
from trade_bot_detector.locks import KeyedLocks

if TYPE_CHECKING:
    from redis.asyncio import Redis

    from trade_bot_detector.ingestor.chain import ChainClient

logger = logging.getLogger(__name__)

# TradeExecuted(address indexed user, uint256 timestamp, uint256 amount, uint256 blockNumber)
TRADE_EXECUTED_SIGNATURE = "TradeExecuted(address,uint256,uint256,uint256)"
TRADE_EXECUTED_TOPIC = AsyncWeb3.keccak(text=TRADE_EXECUTED_SIGNATURE).to_0x_hex()

DEFAULT_CHUNK_SIZE = 2000
DEFAULT_CONFIRMATIONS = 2
DEFAULT_POLL_INTERVAL_SECONDS = 2.0

TradeCallback = Callable[[Trade], Awaitable[None]]
ChainPosition = tuple[int, int]


def _strip_hex(value: Any) -> str:
    hexed = value.hex() if hasattr(value, "hex") else str(value)
    return hexed[2:] if hexed.startswith("0x") else hexed


def _pad_topic_address(address: str) -> str:
    return "0x" + address.lower().replace("0x", "").zfill(64)


def _topic_to_address(topic: Any) -> str:
    return ("0x" + _strip_hex(topic)[-40:]).lower()


def decode_trade_log(log: dict[str, Any]) -> Trade:
    """Decode a raw ``TradeExecuted`` log into a Trade.

    Raises:
        MalformedPayloadError: If the log does not have the expected layout.
    """
    topics = log.get("topics") or []
    if len(topics) < 2:
        raise MalformedPayloadError("TradeExecuted log must carry the trader topic")
    if "0x" + _strip_hex(topics[0]).lower() != TRADE_EXECUTED_TOPIC:
        raise MalformedPayloadError("Log is not a TradeExecuted event")

    data = _strip_hex(log.get("data", ""))
    if len(data) < 64 * 3:
        raise MalformedPayloadError(f"TradeExecuted data too short ({len(data) // 2} bytes)")
    try:
        words = [int(data[i : i + 64], 16) for i in range(0, 64 * 3, 64)]
    except ValueError as e:
        raise MalformedPayloadError("TradeExecuted data is not hex") from e
    timestamp, amount_wei, _event_block = words

    block_number = log.get("blockNumber")
    log_index = log.get("logIndex")
    tx_hash = log.get("transactionHash")
    if block_number is None or log_index is None or tx_hash is None:
        raise MalformedPayloadError("Log is missing its chain position")

    return Trade.from_event_args(
        {"user": _topic_to_address(topics[1]), "amount": amount_wei, "timestamp": timestamp},
        block_number=int(block_number),
        log_index=int(log_index),
        transaction_hash="0x" + _strip_hex(tx_hash),
    )


class CheckpointStore:
    """Backfill checkpoint and live watermark, optionally persisted in Redis.

    Values are always kept in memory; Redis failures degrade to a warning and
    the in-memory value is used.
    """

    def __init__(
        self,
        redis: Redis | None = None,
        *,
        namespace: str = "trade_bot_detector",
    ) -> None:
        self._redis = redis
        self._namespace = namespace
        self._values: dict[str, str] = {}

    def _key(self, name: str) -> str:
        return f"{self._namespace}:{name}"

    async def _get(self, name: str) -> str | None:
        if name in self._values:
            return self._values[name]
        if not self._redis:
            return None
        try:
            value = await self._redis.get(self._key(name))
        except (RedisError, OSError) as e:
            logger.warning("Checkpoint read failed for %s: %s", name, e)
            return None
        if value is None:
            return None
        text = value.decode() if isinstance(value, bytes) else str(value)
        self._values[name] = text
        return text

    async def _set(self, name: str, value: str) -> None:
        self._values[name] = value
        if not self._redis:
            return
        try:
            await self._redis.set(self._key(name), value)
        except (RedisError, OSError) as e:
            logger.warning("Checkpoint write failed for %s: %s", name, e)

    async def load_backfill_checkpoint(self, scope: str) -> int | None:
        """Last fully processed block of a backfill, or None."""
        raw = await self._get(f"backfill:{scope}")
        return int(raw) if raw is not None else None

    async def save_backfill_checkpoint(self, scope: str, block: int) -> None:
        await self._set(f"backfill:{scope}", str(block))

    async def load_watermark(self, scope: str) -> ChainPosition | None:
        raw = await self._get(f"watermark:{scope}")
        if raw is None:
            return None
        block, _, index = raw.partition(":")
        return (int(block), int(index or 0))

    async def save_watermark(self, scope: str, position: ChainPosition) -> None:
        await self._set(f"watermark:{scope}", f"{position[0]}:{position[1]}")


class ChainEventSource:
    """Totally ordered, de-duplicated stream of trades, live and historical.

    Live delivery polls ``eth_getLogs`` up to ``head - confirmations`` and
    hands each new trade to the subscribers in ``(block, log_index)`` order.
    A watermark of the last delivered position suppresses re-delivery after
    reconnects or overlapping polls.

    Example:
        ```python
        source = ChainEventSource(client, "0xRegistry...")
        source.subscribe(on_trade)
        await source.backfill(from_block, to_block)
        await source.run()
        ```
    """

    def __init__(
        self,
        client: ChainClient,
        contract_address: str,
        *,
        checkpoints: CheckpointStore | None = None,
        confirmations: int = DEFAULT_CONFIRMATIONS,
        poll_interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        start_block: int | None = None,
        hydrate_lookback_blocks: int | None = None,
    ) -> None:
        if chunk_size < 1:
            raise ValueError("chunk_size must be >= 1")
        if confirmations < 0:
            raise ValueError("confirmations must be >= 0")
        self._client = client
        self._contract_address = AsyncWeb3.to_checksum_address(contract_address)
        self._scope = self._contract_address.lower()
        self._checkpoints = checkpoints or CheckpointStore()
        self._confirmations = confirmations
        self._poll_interval = poll_interval_seconds
        self._chunk_size = chunk_size
        self._start_block = start_block
        self._hydrate_lookback = hydrate_lookback_blocks

        self._subscribers: list[TradeCallback] = []
        self._trades_by_user: dict[str, list[Trade]] = {}
        self._seen: set[tuple[str, int]] = set()
        self._hydrated: set[str] = set()
        self._user_locks = KeyedLocks()

        self._watermark: ChainPosition | None = None
        self._watermark_loaded = False
        self._running = False
        self._stop_event: asyncio.Event | None = None

    @property
    def contract_address(self) -> str:
        return self._contract_address

    @property
    def watermark(self) -> ChainPosition | None:
        """Position of the last trade delivered to subscribers."""
        return self._watermark

    @property
    def checkpoints(self) -> CheckpointStore:
        return self._checkpoints

    def subscribe(self, on_trade: TradeCallback) -> None:
        """Register a callback invoked once per newly confirmed trade."""
        self._subscribers.append(on_trade)

    # Trade log

    def record(self, trade: Trade) -> bool:
        """Insert ``trade`` into its trader's log in chain order.

        Returns:
            False if the trade was already recorded.
        """
        if trade.key in self._seen:
            return False
        self._seen.add(trade.key)
        log = self._trades_by_user.setdefault(trade.trader, [])
        if not log or log[-1].chain_position < trade.chain_position:
            log.append(trade)
        else:
            positions = [t.chain_position for t in log]
            log.insert(bisect.bisect_left(positions, trade.chain_position), trade)
        return True

    def cached_trades(self, address: str) -> list[Trade]:
        """Trades already in the local log for ``address`` (no chain access)."""
        return list(self._trades_by_user.get(normalize_address(address), ()))

    def known_traders(self) -> list[str]:
        return sorted(self._trades_by_user)

    @property
    def trade_count(self) -> int:
        return len(self._seen)

    async def user_trades(self, address: str) -> list[Trade]:
        """Ordered trade history for ``address``.

        When a lookback is configured, the first request for each address
        hydrates it from chain logs filtered by the trader topic.
        """
        key = normalize_address(address)
        if key in self._hydrated or not self._hydrate_lookback:
            return self.cached_trades(key)

        async with self._user_locks.hold(key):
            if key not in self._hydrated:
                await self._hydrate(key)
                self._hydrated.add(key)
        return self.cached_trades(key)

    async def _hydrate(self, address: str) -> None:
        head = await self._client.get_block_number()
        to_block = max(0, head - self._confirmations)
        from_block = max(0, to_block - int(self._hydrate_lookback or 0))
        added = 0
        async for trade in self._iter_range(from_block, to_block, trader=address):
            if self.record(trade):
                added += 1
        logger.debug(
            "Hydrated %d trades for %s from blocks %d-%d",
            added,
            address[:10],
            from_block,
            to_block,
        )

    # Log fetching

    def _filter(self, from_block: int, to_block: int, trader: str | None) -> dict[str, Any]:
        topics: list[str | None] = [TRADE_EXECUTED_TOPIC]
        if trader:
            topics.append(_pad_topic_address(trader))
        return {
            "address": self._contract_address,
            "topics": topics,
            "fromBlock": from_block,
            "toBlock": to_block,
        }

    async def _fetch_logs(self, from_block: int, to_block: int, trader: str | None) -> list[Trade]:
        """Fetch one block range, halving it recursively while the node refuses it as too large."""
        try:
            logs = await self._client.get_logs(self._filter(from_block, to_block, trader))
        except LogRangeTooLargeError as e:
            if to_block <= from_block:
                raise
            mid = (from_block + to_block) // 2
            logger.warning(
                "get_logs refused blocks %d-%d, splitting at %d: %s",
                from_block,
                to_block,
                mid,
                e,
            )
            left = await self._fetch_logs(from_block, mid, trader)
            right = await self._fetch_logs(mid + 1, to_block, trader)
            return left + right

        trades: list[Trade] = []
        for log in logs:
            try:
                trades.append(decode_trade_log(log))
            except MalformedPayloadError as e:
                logger.warning(
                    "Skipping undecodable log in block %s: %s",
                    log.get("blockNumber"),
                    e,
                )
        trades.sort(key=lambda t: t.chain_position)
        return trades

    async def _iter_range(
        self,
        from_block: int,
        to_block: int,
        *,
        trader: str | None = None,
    ) -> AsyncIterator[Trade]:
        for chunk_start in range(from_block, to_block + 1, self._chunk_size):
            chunk_end = min(to_block, chunk_start + self._chunk_size - 1)
            for trade in await self._fetch_logs(chunk_start, chunk_end, trader):
                yield trade

    # Backfill

    async def iter_backfill(self, from_block: int, to_block: int) -> AsyncIterator[Trade]:
        """Replay ``[from_block, to_block]`` lazily, in ascending chain order.

        Each trade is recorded in the trade log (idempotently) before it is
        yielded. The checkpoint advances after every completed chunk, so an
        interrupted replay can continue with ``resume_backfill``.
        """
        if from_block < 0 or to_block < from_block:
            raise ValueError(f"Invalid backfill range {from_block}-{to_block}")

        logger.info("Backfilling blocks %d-%d", from_block, to_block)
        recorded = 0
        for chunk_start in range(from_block, to_block + 1, self._chunk_size):
            chunk_end = min(to_block, chunk_start + self._chunk_size - 1)
            trades = await self._fetch_logs(chunk_start, chunk_end, None)
            for trade in trades:
                if self.record(trade):
                    recorded += 1
                yield trade
            await self._checkpoints.save_backfill_checkpoint(self._scope, chunk_end)
            logger.debug("Backfill checkpoint at block %d", chunk_end)
        logger.info("Backfill of blocks %d-%d complete (%d new trades)", from_block, to_block, recorded)

    async def backfill(self, from_block: int, to_block: int) -> list[Trade]:
        """Replay a block range and return its trades in chain order."""
        return [trade async for trade in self.iter_backfill(from_block, to_block)]

    async def resume_backfill(self, to_block: int, *, default_from_block: int = 0) -> list[Trade]:
        """Continue a backfill after the last checkpoint (or from ``default_from_block``)."""
        checkpoint = await self._checkpoints.load_backfill_checkpoint(self._scope)
        from_block = checkpoint + 1 if checkpoint is not None else default_from_block
        if from_block > to_block:
            logger.info("Backfill already complete up to block %d", checkpoint)
            return []
        return await self.backfill(from_block, to_block)

    # Live delivery

    async def _ensure_watermark(self) -> None:
        if self._watermark_loaded:
            return
        self._watermark = await self._checkpoints.load_watermark(self._scope)
        self._watermark_loaded = True

    async def _deliver(self, trade: Trade) -> None:
        for callback in self._subscribers:
            try:
                await callback(trade)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(
                    "Trade subscriber failed for %s (block %d): %s",
                    trade.transaction_hash,
                    trade.block_number,
                    e,
                )

    async def poll_once(self) -> int:
        """Deliver every confirmed trade after the watermark.

        Returns:
            Number of trades delivered to subscribers.
        """
        await self._ensure_watermark()
        head = await self._client.get_block_number()
        confirmed = head - self._confirmations
        if confirmed < 0:
            return 0

        if self._watermark is not None:
            from_block = self._watermark[0]
        elif self._start_block is not None:
            from_block = self._start_block
        else:
            from_block = confirmed
        if from_block > confirmed:
            return 0

        delivered = 0
        async for trade in self._iter_range(from_block, confirmed):
            if self._watermark is not None and trade.chain_position <= self._watermark:
                continue
            self.record(trade)
            await self._deliver(trade)
            self._watermark = trade.chain_position
            delivered += 1

        if self._watermark is None or self._watermark[0] < confirmed:
            # Nothing newer than the confirmed head: advance past empty blocks.
            self._watermark = (confirmed, -1)
        await self._checkpoints.save_watermark(self._scope, self._watermark)
        return delivered

    async def run(self) -> None:
        """Poll until ``stop`` is called.

        Raises:
            ChainConnectivityError: When the RPC stays unreachable after all
                retries. The caller must treat this as fatal.
        """
        if self._running:
            raise RuntimeError("Event source already running")
        self._running = True
        self._stop_event = asyncio.Event()
        logger.info(
            "Polling %s for TradeExecuted (confirmations=%d, interval=%.1fs)",
            self._contract_address,
            self._confirmations,
            self._poll_interval,
        )
        try:
            while not self._stop_event.is_set():
                try:
                    delivered = await self.poll_once()
                except ChainConnectivityError:
                    logger.critical("Lost connectivity to the chain RPC; stopping event source")
                    raise
                if delivered:
                    logger.debug("Delivered %d trades (watermark=%s)", delivered, self._watermark)
                with contextlib.suppress(TimeoutError):
                    await asyncio.wait_for(self._stop_event.wait(), timeout=self._poll_interval)
        finally:
            self._running = False

    async def stop(self) -> None:
        if self._stop_event:
            self._stop_event.set()
