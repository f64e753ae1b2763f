"""Main pipeline orchestrator for Trade Bot Detector.

This module provides the Pipeline class that wires together all detection
components and manages the event flow from ingestion to registry publication.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections import deque
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import TYPE_CHECKING, Any

from redis.asyncio import Redis

from trade_bot_detector.config import Settings, get_settings
from trade_bot_detector.detector.classifier import Classifier, ClassifierConfig, ClassifierError
from trade_bot_detector.detector.signals import SignalConfig
from trade_bot_detector.ingestor.chain import ChainClient, ChainConnectivityError
from trade_bot_detector.ingestor.events import ChainEventSource, CheckpointStore
from trade_bot_detector.ingestor.price_feed import PriceFeed, PriceStreamHandler
from trade_bot_detector.publisher.publisher import FlagPublisher, FlushResult
from trade_bot_detector.publisher.registry import BotRegistry, ContractRegistry, InMemoryRegistry

if TYPE_CHECKING:
    from trade_bot_detector.ingestor.models import Trade

logger = logging.getLogger(__name__)

DRY_RUN_ANALYZER = "0x" + "0" * 40


class ChannelClosedError(Exception):
    """Raised by ``TradeChannel.get`` once the channel is closed and drained."""


class TradeChannel:
    """Bounded hand-off between the event source and the analysis workers.

    Live trades are always handed out before backfill trades. Producers wait
    while the channel is full.
    """

    def __init__(self, capacity: int) -> None:
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        self._capacity = capacity
        self._live: deque[Trade] = deque()
        self._backfill: deque[Trade] = deque()
        self._cond = asyncio.Condition()
        self._closed = False

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def is_closed(self) -> bool:
        return self._closed

    def __len__(self) -> int:
        return len(self._live) + len(self._backfill)

    @property
    def live_size(self) -> int:
        return len(self._live)

    @property
    def backfill_size(self) -> int:
        return len(self._backfill)

    async def put(self, trade: Trade, *, live: bool = True) -> None:
        """Add ``trade``, waiting for room if the channel is full.

        Raises:
            ChannelClosedError: If the channel is closed.
        """
        async with self._cond:
            await self._cond.wait_for(lambda: self._closed or len(self) < self._capacity)
            if self._closed:
                raise ChannelClosedError("Trade channel is closed")
            (self._live if live else self._backfill).append(trade)
            self._cond.notify_all()

    async def get(self) -> tuple[Trade, bool]:
        """Take the next trade, live first.

        Returns:
            The trade and whether it came from the live stream.

        Raises:
            ChannelClosedError: Once the channel is closed and empty.
        """
        async with self._cond:
            await self._cond.wait_for(lambda: self._closed or len(self) > 0)
            if self._live:
                trade, live = self._live.popleft(), True
            elif self._backfill:
                trade, live = self._backfill.popleft(), False
            else:
                raise ChannelClosedError("Trade channel is closed")
            self._cond.notify_all()
            return trade, live

    async def close(self) -> None:
        """Stop accepting trades; queued trades can still be taken."""
        async with self._cond:
            self._closed = True
            self._cond.notify_all()


class PipelineState(str, Enum):
    """Pipeline lifecycle states."""

    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    ERROR = "error"


@dataclass
class PipelineStats:
    """Statistics for the pipeline."""

    started_at: datetime | None = None
    trades_received: int = 0
    trades_processed: int = 0
    backfill_trades: int = 0
    errors: int = 0
    last_trade_time: datetime | None = None
    last_error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "trades_received": self.trades_received,
            "trades_processed": self.trades_processed,
            "backfill_trades": self.backfill_trades,
            "errors": self.errors,
            "last_trade_time": self.last_trade_time.isoformat() if self.last_trade_time else None,
            "last_error": self.last_error,
        }


class Pipeline:
    """Main pipeline orchestrator for the Trade Bot Detector.

    This class wires together all components and manages the event flow
    from trade ingestion through scoring and classification to the registry.

    Pipeline flow:
        TradeExecuted logs → TradeChannel → Workers (Classifier) → FlagPublisher → Registry

    Example:
        ```python
        from trade_bot_detector.config import get_settings
        from trade_bot_detector.pipeline import Pipeline

        settings = get_settings()
        pipeline = Pipeline(settings)

        await pipeline.start()
        # Pipeline runs until stop() is called
        await pipeline.stop()
        ```
    """

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        dry_run: bool | None = None,
        chain_client: ChainClient | None = None,
        registry: BotRegistry | None = None,
        redis: Redis | None = None,
    ) -> None:
        """Initialize the pipeline.

        Args:
            settings: Application settings. If not provided, uses get_settings().
            dry_run: If True, publish to an in-memory registry. Overrides settings.dry_run.
            chain_client: Pre-built chain client (built from settings otherwise).
            registry: Pre-built registry (built from settings otherwise).
            redis: Pre-built Redis connection for checkpoints.
        """
        self._settings = settings or get_settings()
        self._dry_run = dry_run if dry_run is not None else self._settings.dry_run

        self._state = PipelineState.STOPPED
        self._stats = PipelineStats()

        # Injected components are not closed by the pipeline.
        self._owns_chain_client = chain_client is None
        self._owns_redis = redis is None

        # Components (initialized in start())
        self._redis: Redis | None = redis
        self._chain_client: ChainClient | None = chain_client
        self._registry: BotRegistry | None = registry
        self._price_feed: PriceFeed | None = None
        self._price_stream: PriceStreamHandler | None = None
        self._event_source: ChainEventSource | None = None
        self._classifier: Classifier | None = None
        self._publisher: FlagPublisher | None = None
        self._channel: TradeChannel | None = None

        # Synchronization
        self._stop_event: asyncio.Event | None = None
        self._fatal_error: BaseException | None = None
        self._price_task: asyncio.Task[None] | None = None
        self._source_task: asyncio.Task[None] | None = None
        self._backfill_task: asyncio.Task[None] | None = None
        self._publisher_task: asyncio.Task[None] | None = None
        self._worker_tasks: list[asyncio.Task[None]] = []

    @property
    def state(self) -> PipelineState:
        """Current pipeline state."""
        return self._state

    @property
    def stats(self) -> PipelineStats:
        """Current pipeline statistics."""
        return self._stats

    @property
    def is_running(self) -> bool:
        """Check if pipeline is running."""
        return self._state == PipelineState.RUNNING

    @property
    def classifier(self) -> Classifier | None:
        return self._classifier

    @property
    def publisher(self) -> FlagPublisher | None:
        return self._publisher

    @property
    def price_feed(self) -> PriceFeed | None:
        return self._price_feed

    @property
    def event_source(self) -> ChainEventSource | None:
        return self._event_source

    async def start(self) -> None:
        """Start the pipeline.

        Initializes all components and begins processing trades.

        Raises:
            RuntimeError: If pipeline is already running.
            Exception: If any component fails to initialize.
        """
        if self._state != PipelineState.STOPPED:
            raise RuntimeError(f"Cannot start pipeline in state {self._state}")

        self._state = PipelineState.STARTING
        self._stop_event = asyncio.Event()
        self._fatal_error = None
        logger.info("Starting pipeline...")

        try:
            await self._initialize_components()
            await self._start_background_services()
            self._stats.started_at = datetime.now(UTC)
            self._state = PipelineState.RUNNING
            logger.info("Pipeline started successfully (dry_run=%s)", self._dry_run)
        except Exception as e:
            self._state = PipelineState.ERROR
            self._stats.last_error = str(e)
            logger.error("Failed to start pipeline: %s", e)
            await self._stop_background_services()
            await self._cleanup()
            raise

    async def stop(self) -> None:
        """Stop the pipeline gracefully.

        Stops all background services, drains queued trades, flushes pending
        classifications and cleans up resources. A pipeline stopped by a
        fatal error ends in the ERROR state.
        """
        if self._state in (PipelineState.STOPPED, PipelineState.STOPPING):
            return
        if self._state == PipelineState.ERROR and self._classifier is None:
            return

        self._state = PipelineState.STOPPING
        logger.info("Stopping pipeline...")

        if self._stop_event:
            self._stop_event.set()

        await self._stop_background_services()
        await self._final_flush()
        await self._cleanup()

        self._state = PipelineState.ERROR if self._fatal_error else PipelineState.STOPPED
        logger.info("Pipeline stopped")

    async def _initialize_components(self) -> None:
        """Initialize all pipeline components."""
        settings = self._settings

        if self._redis is None and settings.redis.url:
            logger.debug("Initializing Redis connection...")
            self._redis = Redis.from_url(settings.redis.url)

        if self._chain_client is None:
            logger.debug("Initializing chain client...")
            private_key = (
                settings.chain.analyzer_private_key.get_secret_value()
                if settings.chain.analyzer_private_key
                else None
            )
            self._chain_client = ChainClient(
                settings.chain.rpc_url,
                fallback_rpc_url=settings.chain.fallback_rpc_url,
                private_key=private_key,
                chain_id=settings.chain.chain_id,
                max_requests_per_second=settings.chain.max_requests_per_second,
                max_attempts=settings.chain.max_attempts,
                request_timeout_seconds=settings.chain.request_timeout_seconds,
                receipt_timeout_seconds=settings.chain.receipt_timeout_seconds,
            )

        contract_address = settings.chain.contract_address
        if not contract_address:
            raise ValueError("CHAIN_CONTRACT_ADDRESS is required")

        logger.debug("Initializing price feed...")
        self._price_feed = PriceFeed(capacity=settings.price_feed.history_capacity)

        logger.debug("Initializing event source...")
        self._event_source = ChainEventSource(
            self._chain_client,
            contract_address,
            checkpoints=CheckpointStore(self._redis),
            confirmations=settings.chain.confirmations,
            poll_interval_seconds=settings.chain.poll_interval_seconds,
            chunk_size=settings.chain.backfill_chunk_size,
            start_block=settings.chain.start_block,
            hydrate_lookback_blocks=settings.chain.hydrate_lookback_blocks,
        )

        if self._registry is None:
            if self._dry_run:
                logger.info("Dry run: publishing to an in-memory registry")
                self._registry = InMemoryRegistry(self._chain_client.account_address or DRY_RUN_ANALYZER)
            else:
                self._registry = ContractRegistry(
                    self._chain_client,
                    contract_address,
                    gas_limit=settings.chain.gas_limit,
                )

        logger.debug("Initializing publisher...")
        self._publisher = FlagPublisher(
            self._registry,
            batch_size=settings.publisher.batch_size,
            flush_interval_seconds=settings.publisher.flush_interval_seconds,
            max_attempts=settings.publisher.max_attempts,
            retry_delay_seconds=settings.publisher.retry_delay_seconds,
        )

        logger.debug("Initializing classifier...")
        detection = settings.detection
        self._classifier = Classifier(
            self._event_source,
            self._price_feed,
            config=ClassifierConfig(
                good_bot_min_score=detection.good_bot_min_score,
                bad_bot_min_score=detection.bad_bot_min_score,
                high_risk_score=detection.high_risk_score,
                critical_risk_score=detection.critical_risk_score,
                require_good_bot_corroboration=detection.require_good_bot_corroboration,
                liquidity_override=detection.liquidity_override,
                sticky_flags=detection.sticky_flags,
                history_max_trades=detection.history_max_trades,
                history_max_age=detection.history_max_age,
                liquidity_threshold=detection.liquidity_threshold,
                min_trades_for_liquidity=detection.min_trades_for_liquidity,
                signals=SignalConfig(
                    stale_after=timedelta(seconds=settings.price_feed.stale_after_seconds),
                    off_hours=frozenset(detection.off_hours),
                    immediate_ms=detection.immediate_reaction_ms,
                    fast_ms=detection.fast_reaction_ms,
                ),
            ),
            reference_instruments=settings.price_feed.price_ids,
            sink=self._publisher,
        )

        self._channel = TradeChannel(settings.pipeline.channel_capacity)
        self._event_source.subscribe(self._on_trade)

        logger.info("All components initialized")

    async def _start_background_services(self) -> None:
        """Start background services."""
        settings = self._settings

        if self._price_feed:
            logger.debug("Starting price stream...")
            self._price_stream = PriceStreamHandler(
                host=settings.price_feed.ws_url,
                feed=self._price_feed,
                price_ids=settings.price_feed.price_ids,
                max_reconnect_delay=settings.price_feed.max_reconnect_delay_seconds,
            )
            self._price_task = asyncio.create_task(self._run_price_stream())

        for worker_id in range(settings.pipeline.workers):
            self._worker_tasks.append(asyncio.create_task(self._run_worker(worker_id)))

        if self._publisher:
            logger.debug("Starting publisher loop...")
            self._publisher_task = asyncio.create_task(self._publisher.run())

        if settings.pipeline.backfill_blocks > 0:
            logger.debug("Starting startup backfill...")
            self._backfill_task = asyncio.create_task(self._run_startup_backfill())

        if self._event_source:
            logger.debug("Starting event source...")
            self._source_task = asyncio.create_task(self._run_event_source())

    async def _run_price_stream(self) -> None:
        if not self._price_stream:
            return
        try:
            await self._price_stream.start()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            # Trades keep flowing without price context.
            self._stats.last_error = str(e)
            logger.error("Price stream stopped: %s", e)

    async def _run_event_source(self) -> None:
        if not self._event_source:
            return
        try:
            await self._event_source.run()
        except asyncio.CancelledError:
            raise
        except ChainConnectivityError as e:
            self._fail(e)
        except Exception as e:
            logger.exception("Event source crashed")
            self._fail(e)

    async def _run_startup_backfill(self) -> None:
        if not self._event_source or not self._chain_client or not self._channel:
            return
        settings = self._settings
        try:
            head = await self._chain_client.get_block_number()
            to_block = head - settings.chain.confirmations
            if to_block < 0:
                return
            from_block = max(0, to_block - settings.pipeline.backfill_blocks + 1)
            async for trade in self._event_source.iter_backfill(from_block, to_block):
                self._stats.backfill_trades += 1
                if settings.pipeline.analyze_backfill:
                    await self._channel.put(trade, live=False)
        except asyncio.CancelledError:
            raise
        except ChannelClosedError:
            logger.debug("Startup backfill interrupted by shutdown")
        except ChainConnectivityError as e:
            self._fail(e)
        except Exception as e:
            self._stats.errors += 1
            self._stats.last_error = str(e)
            logger.error("Startup backfill failed: %s", e)

    def _fail(self, error: BaseException) -> None:
        """Record a terminal error and release ``run``."""
        self._fatal_error = error
        self._state = PipelineState.ERROR
        self._stats.last_error = str(error)
        logger.critical("Pipeline halted: %s", error)
        if self._stop_event:
            self._stop_event.set()

    async def _on_trade(self, trade: Trade) -> None:
        """Hand a live trade to the workers, waiting while the channel is full."""
        if not self._channel:
            return
        self._stats.trades_received += 1
        await self._channel.put(trade, live=True)

    async def _run_worker(self, worker_id: int) -> None:
        if not self._channel:
            return
        logger.debug("Worker %d started", worker_id)
        while True:
            try:
                trade, _live = await self._channel.get()
            except ChannelClosedError:
                break
            await self._process_trade(trade)
        logger.debug("Worker %d stopped", worker_id)

    async def _process_trade(self, trade: Trade) -> None:
        """Classify the trader behind a single trade."""
        if not self._classifier:
            return
        try:
            await self._classifier.analyze(trade)
        except ClassifierError as e:
            self._stats.errors += 1
            self._stats.last_error = str(e)
            return
        self._stats.trades_processed += 1
        self._stats.last_trade_time = datetime.now(UTC)

    async def flush_now(self) -> FlushResult:
        """Flush pending classifications immediately.

        Raises:
            RuntimeError: If the pipeline has not been initialized.
        """
        if not self._publisher:
            raise RuntimeError("Pipeline is not running")
        return await self._publisher.flush()

    async def _final_flush(self) -> None:
        if not self._publisher or not self._publisher.queue_size:
            return
        try:
            result = await self._publisher.flush()
        except Exception as e:
            self._stats.last_error = str(e)
            logger.error("Final flush failed: %s", e)
            return
        logger.info(
            "Final flush: %d published, %d failed",
            result.published,
            result.failed,
        )

    async def _stop_background_services(self) -> None:
        """Stop background services."""
        # Stop producers first so the workers can drain the channel.
        if self._event_source:
            logger.debug("Stopping event source...")
            await self._event_source.stop()

        if self._price_stream:
            logger.debug("Stopping price stream...")
            await self._price_stream.stop()

        for task in (self._source_task, self._backfill_task, self._price_task):
            if task:
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task
        self._source_task = None
        self._backfill_task = None
        self._price_task = None

        if self._channel:
            await self._channel.close()
        if self._worker_tasks:
            await asyncio.gather(*self._worker_tasks, return_exceptions=True)
            self._worker_tasks = []

        if self._publisher:
            logger.debug("Stopping publisher loop...")
            await self._publisher.stop()
        if self._publisher_task:
            with contextlib.suppress(asyncio.CancelledError):
                await self._publisher_task
            self._publisher_task = None

    async def _cleanup(self) -> None:
        """Clean up resources."""
        if self._chain_client and self._owns_chain_client:
            await self._chain_client.aclose()
            self._chain_client = None

        if self._redis and self._owns_redis:
            await self._redis.aclose()
            self._redis = None

        logger.debug("Resources cleaned up")

    async def backfill(
        self,
        from_block: int,
        to_block: int | None = None,
        *,
        resume: bool = False,
        publish: bool = True,
    ) -> dict[str, Any]:
        """Cold-start replay: classify every trader seen in a block range.

        Trades are analyzed one by one in chain order, so the resulting
        classifications are the same on every run over the same range.

        Args:
            from_block: First block to replay (or the fallback start when resuming).
            to_block: Last block to replay; defaults to the confirmed head.
            resume: Continue after the stored backfill checkpoint.
            publish: Flush the resulting classifications to the registry.

        Returns:
            JSON-serializable summary of the replay.
        """
        if self._state != PipelineState.STOPPED:
            raise RuntimeError(f"Cannot backfill in state {self._state}")

        self._state = PipelineState.STARTING
        try:
            await self._initialize_components()
            if not self._event_source or not self._chain_client or not self._classifier:
                raise RuntimeError("Pipeline components failed to initialize")
            self._stats.started_at = datetime.now(UTC)
            self._state = PipelineState.RUNNING

            if to_block is None:
                head = await self._chain_client.get_block_number()
                to_block = max(0, head - self._settings.chain.confirmations)

            if resume:
                trades = await self._event_source.resume_backfill(to_block, default_from_block=from_block)
            else:
                trades = await self._event_source.backfill(from_block, to_block)

            for trade in trades:
                self._stats.backfill_trades += 1
                await self._process_trade(trade)

            flush: FlushResult | None = None
            if publish and self._publisher:
                flush = await self._publisher.flush()

            return {
                "from_block": from_block,
                "to_block": to_block,
                "resumed": resume,
                "trades": len(trades),
                "pipeline": self._stats.to_dict(),
                "classification": self._classifier.statistics().to_dict(),
                "flush": flush.to_dict() if flush else None,
            }
        except Exception as e:
            self._stats.last_error = str(e)
            raise
        finally:
            await self._cleanup()
            self._state = PipelineState.STOPPED

    async def run(self) -> None:
        """Start the pipeline and run until interrupted.

        This is a convenience method that starts the pipeline and
        blocks until a stop signal is received.

        Raises:
            ChainConnectivityError: If the chain RPC became unreachable.

        Example:
            ```python
            pipeline = Pipeline()
            try:
                await pipeline.run()
            except KeyboardInterrupt:
                pass
            ```
        """
        await self.start()

        try:
            if self._stop_event:
                await self._stop_event.wait()
        except asyncio.CancelledError:
            pass
        finally:
            await self.stop()

        if self._fatal_error is not None:
            raise self._fatal_error

    def request_stop(self) -> None:
        """Ask ``run`` to return (safe to call from a signal handler)."""
        if self._stop_event:
            self._stop_event.set()

    async def __aenter__(self) -> Pipeline:
        """Async context manager entry."""
        await self.start()
        return self

    async def __aexit__(self, *args: Any) -> None:
        """Async context manager exit."""
        await self.stop()
