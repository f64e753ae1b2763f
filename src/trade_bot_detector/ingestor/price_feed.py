"""Oracle price feed: bounded per-instrument history plus the push-stream client.

``PriceFeed`` owns one fixed-capacity ring buffer per instrument. The
``PriceStreamHandler`` keeps a WebSocket subscription to the oracle's push
endpoint open and hands every message to ``PriceFeed.observe``.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import time
from collections import deque
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any

import websockets
from websockets.asyncio.client import ClientConnection

from trade_bot_detector.ingestor.models import (
    MalformedPayloadError,
    PriceObservation,
    normalize_instrument_id,
)

logger = logging.getLogger(__name__)

DEFAULT_HISTORY_CAPACITY = 20
DEFAULT_PING_INTERVAL = 20  # seconds
DEFAULT_OPEN_TIMEOUT = 10  # seconds
DEFAULT_MAX_RECONNECT_DELAY = 30  # seconds
DEFAULT_INITIAL_RECONNECT_DELAY = 1  # seconds


class PriceFeed:
    """Rolling, per-instrument history of oracle price observations.

    Reads never block: ``latest`` and ``history`` return whatever has been
    observed so far, including the last known value while the stream is
    reconnecting. Callers that care about freshness compare ``publish_time``
    against their own threshold.

    Example:
        ```python
        feed = PriceFeed(capacity=20)
        feed.observe({"id": "btc", "price": "6500000", "conf": "100",
                      "expo": -2, "publish_time": 1700000000})
        obs = feed.latest("btc")
        ```
    """

    def __init__(self, *, capacity: int = DEFAULT_HISTORY_CAPACITY) -> None:
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        self._capacity = capacity
        self._buffers: dict[str, deque[PriceObservation]] = {}
        self._rejected = 0

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def rejected_count(self) -> int:
        """Number of malformed messages dropped by ``observe``."""
        return self._rejected

    def observe(
        self,
        raw: dict[str, Any] | PriceObservation,
        *,
        received_at: datetime | None = None,
    ) -> PriceObservation | None:
        """Normalize a push message and append it to its instrument's buffer.

        Malformed messages are logged and dropped. Messages older than the
        newest buffered observation for the instrument are dropped as well so
        the buffer stays in publish-time order.

        Returns:
            The stored observation, or None if the message was rejected.
        """
        if isinstance(raw, PriceObservation):
            obs = raw
        else:
            try:
                obs = PriceObservation.from_push_message(raw, received_at=received_at)
            except MalformedPayloadError as e:
                self._rejected += 1
                logger.warning("Dropping malformed price message: %s", e)
                return None

        buf = self._buffers.get(obs.instrument_id)
        if buf is None:
            buf = deque(maxlen=self._capacity)
            self._buffers[obs.instrument_id] = buf
        elif buf and obs.publish_time < buf[-1].publish_time:
            logger.debug(
                "Ignoring out-of-order price for %s (publish_time=%s < %s)",
                obs.instrument_id[:10],
                obs.publish_time.isoformat(),
                buf[-1].publish_time.isoformat(),
            )
            return None

        buf.append(obs)
        return obs

    def latest(self, instrument_id: str) -> PriceObservation | None:
        """Most recent observation, or None if nothing has arrived yet."""
        buf = self._buffers.get(normalize_instrument_id(instrument_id))
        if not buf:
            return None
        return buf[-1]

    def history(self, instrument_id: str, limit: int | None = None) -> list[PriceObservation]:
        """Buffered observations oldest to newest, at most ``limit`` of them."""
        buf = self._buffers.get(normalize_instrument_id(instrument_id))
        if not buf:
            return []
        items = list(buf)
        if limit is None:
            return items
        if limit <= 0:
            return []
        return items[-limit:]

    def latest_at_or_before(self, instrument_id: str, ts: datetime) -> PriceObservation | None:
        """Newest observation whose ``publish_time`` is not after ``ts``."""
        if ts.tzinfo is None:
            raise ValueError("timestamp must be timezone-aware")
        buf = self._buffers.get(normalize_instrument_id(instrument_id))
        if not buf:
            return None
        for obs in reversed(buf):
            if obs.publish_time <= ts:
                return obs
        return None

    def reference_observation(
        self,
        ts: datetime,
        instrument_ids: Iterable[str] | None = None,
    ) -> PriceObservation | None:
        """Nearest-prior observation across several instruments.

        Picks, among ``instrument_ids`` (all known instruments when omitted),
        the observation published closest to but not after ``ts``. Ties go to
        the instrument listed first.
        """
        ids = list(instrument_ids) if instrument_ids is not None else sorted(self._buffers)
        best: PriceObservation | None = None
        for instrument_id in ids:
            obs = self.latest_at_or_before(instrument_id, ts)
            if obs is None:
                continue
            if best is None or obs.publish_time > best.publish_time:
                best = obs
        return best

    def instruments(self) -> list[str]:
        return sorted(self._buffers)

    def snapshot(self) -> dict[str, dict[str, object]]:
        """Latest observation per instrument, JSON-serializable."""
        return {iid: buf[-1].to_dict() for iid, buf in sorted(self._buffers.items()) if buf}


class ConnectionState(Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"


@dataclass
class StreamStats:
    prices_received: int = 0
    messages_rejected: int = 0
    reconnect_count: int = 0
    last_message_time: float | None = None
    connected_since: float | None = None
    last_error: str | None = None


class PriceStreamError(Exception):
    """Base exception for price stream errors."""


class PriceConnectionError(PriceStreamError):
    """Raised when connection to the price WebSocket fails."""


ObservationCallback = Callable[[PriceObservation], Awaitable[None]]
StateCallback = Callable[[ConnectionState], Awaitable[None]]


class PriceStreamHandler:
    """WebSocket client for the oracle push feed (Hermes-compatible).

    Subscribes to ``price_ids`` and feeds every ``price_update`` into the
    given ``PriceFeed``. Disconnects trigger reconnects with capped doubling
    backoff; the feed keeps serving the last known values meanwhile.
    """

    def __init__(
        self,
        *,
        host: str,
        feed: PriceFeed,
        price_ids: Iterable[str],
        on_observation: ObservationCallback | None = None,
        on_state_change: StateCallback | None = None,
        ping_interval: int = DEFAULT_PING_INTERVAL,
        open_timeout: float = DEFAULT_OPEN_TIMEOUT,
        max_reconnect_delay: float = DEFAULT_MAX_RECONNECT_DELAY,
        initial_reconnect_delay: float = DEFAULT_INITIAL_RECONNECT_DELAY,
    ) -> None:
        self._host = host
        self._feed = feed
        self._price_ids = [p for p in price_ids if p]
        self._on_observation = on_observation
        self._on_state_change = on_state_change
        self._ping_interval = ping_interval
        self._open_timeout = open_timeout
        self._max_reconnect_delay = max_reconnect_delay
        self._initial_reconnect_delay = initial_reconnect_delay

        self._state = ConnectionState.DISCONNECTED
        self._stats = StreamStats()

        self._ws: ClientConnection | None = None
        self._running = False
        self._stop_event: asyncio.Event | None = None

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def stats(self) -> StreamStats:
        return self._stats

    async def _set_state(self, new_state: ConnectionState) -> None:
        if self._state != new_state:
            old = self._state
            self._state = new_state
            logger.info("Price stream state: %s -> %s", old.value, new_state.value)
            if self._on_state_change:
                try:
                    await self._on_state_change(new_state)
                except Exception as e:  # pragma: no cover
                    logger.error("Error in state change callback: %s", e)

    def _subscribe_message(self) -> str:
        return json.dumps({"type": "subscribe", "ids": list(self._price_ids)})

    async def _connect(self) -> ClientConnection:
        await self._set_state(ConnectionState.CONNECTING)
        try:
            ws = await websockets.connect(
                self._host,
                ping_interval=self._ping_interval,
                ping_timeout=self._ping_interval * 2,
                open_timeout=self._open_timeout,
            )
        except Exception as e:
            self._stats.last_error = str(e)
            raise PriceConnectionError(f"Failed to connect to {self._host}: {e}") from e

        await ws.send(self._subscribe_message())
        await self._set_state(ConnectionState.CONNECTED)
        self._stats.connected_since = time.time()
        logger.info("Connected to price stream: %s (%d feeds)", self._host, len(self._price_ids))
        return ws

    async def handle_message(self, message: str) -> PriceObservation | None:
        """Parse one raw message and store it in the feed."""
        try:
            data = json.loads(message)
        except json.JSONDecodeError:
            self._stats.messages_rejected += 1
            logger.warning("Invalid JSON message on price stream")
            return None

        msg_type = data.get("type") if isinstance(data, dict) else None
        if msg_type == "response":
            if data.get("status") != "success":
                logger.error("Price stream subscription error: %s", data.get("error"))
            return None
        if msg_type not in ("price_update", None):
            logger.debug("Ignoring price stream message type=%r", msg_type)
            return None

        obs = self._feed.observe(data)
        if obs is None:
            self._stats.messages_rejected += 1
            return None

        self._stats.prices_received += 1
        self._stats.last_message_time = time.time()
        if self._on_observation:
            await self._on_observation(obs)
        return obs

    async def _listen(self, ws: ClientConnection) -> None:
        try:
            while self._running:
                try:
                    message = await asyncio.wait_for(ws.recv(), timeout=1.0)
                except TimeoutError:
                    continue
                if isinstance(message, bytes):
                    message = message.decode("utf-8", errors="replace")
                await self.handle_message(message)
        except websockets.ConnectionClosed as e:
            logger.warning("Price stream connection closed: %s", e)
            raise

    async def start(self) -> None:
        """Run the stream until ``stop`` is called, reconnecting as needed."""
        if self._running:
            raise RuntimeError("Price stream already running")
        if not self._price_ids:
            raise PriceStreamError("No price ids configured")
        self._running = True
        self._stop_event = asyncio.Event()

        delay = self._initial_reconnect_delay
        while self._running and not self._stop_event.is_set():
            try:
                self._ws = await self._connect()
                delay = self._initial_reconnect_delay
                await self._listen(self._ws)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                if not self._running:
                    break
                self._stats.reconnect_count += 1
                self._stats.last_error = str(e)
                logger.warning("Price stream error, reconnecting in %.1fs: %s", delay, e)
                await self._set_state(ConnectionState.RECONNECTING)
                with contextlib.suppress(TimeoutError):
                    await asyncio.wait_for(self._stop_event.wait(), timeout=delay)
                delay = min(self._max_reconnect_delay, delay * 2)
            finally:
                with contextlib.suppress(Exception):
                    if self._ws:
                        await self._ws.close()
                self._ws = None

        await self._set_state(ConnectionState.DISCONNECTED)

    async def stop(self) -> None:
        self._running = False
        if self._stop_event:
            self._stop_event.set()
        if self._ws:
            with contextlib.suppress(Exception):
                await self._ws.close()


def is_stale(obs: PriceObservation, *, as_of: datetime, max_age: timedelta) -> bool:
    """True when ``obs`` was published more than ``max_age`` before ``as_of``."""
    return as_of - obs.publish_time > max_age
