"""Batched, idempotent publication of classifications to the bot registry.

FlagPublisher keeps at most one PENDING entry per address and commits them
in batches: good bots through ``flagGoodBots``, bad bots through
``flagBadBots`` and unflags one address at a time. Each batch is retried on
its own; a failed batch never undoes a sibling batch that was confirmed.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from decimal import Decimal

from trade_bot_detector.detector.models import Category, ClassificationRecord, PublishState
from trade_bot_detector.publisher.registry import (
    BotRegistry,
    RegistryAccessError,
    RegistryError,
    RegistryInvariantError,
    SubmissionReceipt,
    check_batch,
)

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 10
DEFAULT_FLUSH_INTERVAL_SECONDS = 30.0
DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_RETRY_DELAY_SECONDS = 1.0
DEFAULT_MAX_RETRY_DELAY_SECONDS = 8.0


class PublisherError(Exception):
    """Raised for publisher misuse or configuration errors."""


@dataclass
class PublisherStats:
    flushes: int = 0
    skipped_flushes: int = 0
    batches_submitted: int = 0
    batches_failed: int = 0
    records_published: int = 0
    records_superseded: int = 0
    retries: int = 0
    last_flush_at: datetime | None = None
    last_error: str | None = None

    def to_dict(self) -> dict[str, object]:
        return {
            "flushes": self.flushes,
            "skipped_flushes": self.skipped_flushes,
            "batches_submitted": self.batches_submitted,
            "batches_failed": self.batches_failed,
            "records_published": self.records_published,
            "records_superseded": self.records_superseded,
            "retries": self.retries,
            "last_flush_at": self.last_flush_at.isoformat() if self.last_flush_at else None,
            "last_error": self.last_error,
        }


@dataclass(frozen=True)
class BatchOutcome:
    """Result of one registry submission (with its retries)."""

    operation: str
    addresses: tuple[str, ...]
    success: bool
    attempts: int
    transaction_hash: str | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, object]:
        return {
            "operation": self.operation,
            "addresses": list(self.addresses),
            "success": self.success,
            "attempts": self.attempts,
            "transaction_hash": self.transaction_hash,
            "error": self.error,
        }


@dataclass(frozen=True)
class FlushResult:
    """Summary of one ``flush`` call.

    Attributes:
        skipped: True when another flush was already in flight.
        published: Records marked PUBLISHED by this flush.
        superseded: Records whose batch succeeded but which changed while it
            was in flight; they stay PENDING.
        failed: Records in batches that exhausted their retries.
        batches: Per-submission outcomes.
    """

    skipped: bool = False
    published: int = 0
    superseded: int = 0
    failed: int = 0
    batches: tuple[BatchOutcome, ...] = field(default_factory=tuple)

    @property
    def ok(self) -> bool:
        return not self.skipped and self.failed == 0

    def to_dict(self) -> dict[str, object]:
        return {
            "skipped": self.skipped,
            "published": self.published,
            "superseded": self.superseded,
            "failed": self.failed,
            "batches": [b.to_dict() for b in self.batches],
        }


@dataclass(frozen=True)
class _Entry:
    """A queued record and the state it had when the flush started."""

    record: ClassificationRecord
    version: int
    category: Category
    score: int
    bot_type: str | None
    risk_level: str | None
    liquidity: Decimal

    @classmethod
    def snapshot(cls, record: ClassificationRecord) -> _Entry:
        return cls(
            record=record,
            version=record.version,
            category=record.category,
            score=record.score,
            bot_type=record.bot_type,
            risk_level=record.risk_level.value if record.risk_level else None,
            liquidity=record.liquidity_provided,
        )


class FlagPublisher:
    """Commits PENDING classification records to the registry.

    Example:
        ```python
        publisher = FlagPublisher(registry, batch_size=10, flush_interval_seconds=30)
        classifier.attach_sink(publisher)
        asyncio.create_task(publisher.run())
        ...
        result = await publisher.flush()
        ```
    """

    def __init__(
        self,
        registry: BotRegistry,
        *,
        batch_size: int = DEFAULT_BATCH_SIZE,
        flush_interval_seconds: float = DEFAULT_FLUSH_INTERVAL_SECONDS,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        retry_delay_seconds: float = DEFAULT_RETRY_DELAY_SECONDS,
        max_retry_delay_seconds: float = DEFAULT_MAX_RETRY_DELAY_SECONDS,
    ) -> None:
        if batch_size < 1:
            raise PublisherError("batch_size must be >= 1")
        if max_attempts < 1:
            raise PublisherError("max_attempts must be >= 1")
        self._registry = registry
        self._batch_size = batch_size
        self._flush_interval = flush_interval_seconds
        self._max_attempts = max_attempts
        self._retry_delay = retry_delay_seconds
        self._max_retry_delay = max_retry_delay_seconds

        self._queue: dict[str, ClassificationRecord] = {}
        self._flush_lock = asyncio.Lock()
        self._wake = asyncio.Event()
        self._stop_event = asyncio.Event()
        self._stats = PublisherStats()

    @property
    def stats(self) -> PublisherStats:
        return self._stats

    @property
    def queue_size(self) -> int:
        return len(self._queue)

    @property
    def is_flushing(self) -> bool:
        return self._flush_lock.locked()

    def pending_addresses(self) -> list[str]:
        return sorted(self._queue)

    def enqueue(self, record: ClassificationRecord) -> None:
        """Queue ``record`` for publication; an address is queued at most once."""
        record.publish_state = PublishState.PENDING
        self._queue[record.address] = record
        if len(self._queue) >= self._batch_size:
            self._wake.set()

    async def flush(self) -> FlushResult:
        """Submit every PENDING record.

        A call made while another flush is in flight returns a skipped result
        and leaves the queue untouched.

        Raises:
            RegistryInvariantError: If a batch is malformed. Nothing from that
                batch is submitted.
        """
        if self._flush_lock.locked():
            self._stats.skipped_flushes += 1
            logger.debug("Flush already in flight; skipping")
            return FlushResult(skipped=True)

        async with self._flush_lock:
            self._stats.flushes += 1
            self._stats.last_flush_at = datetime.now(UTC)
            return await self._flush_locked()

    async def _flush_locked(self) -> FlushResult:
        entries = [_Entry.snapshot(r) for r in self._queue.values() if r.is_pending]
        if not entries:
            return FlushResult()

        good = [e for e in entries if e.category is Category.GOOD_BOT]
        bad = [e for e in entries if e.category is Category.BAD_BOT]
        unflag = [e for e in entries if e.category is Category.UNCLASSIFIED and e.record.needs_submission]
        untouched = [e for e in entries if not e.record.needs_submission]

        published = 0
        superseded = 0
        failed = 0
        outcomes: list[BatchOutcome] = []

        # Nothing to change in the registry for addresses it never flagged.
        for entry in untouched:
            p, s = self._confirm([entry])
            published += p
            superseded += s

        for chunk in self._chunks(good):
            outcome = await self._submit_good(chunk)
            outcomes.append(outcome)
            if outcome.success:
                p, s = self._confirm(chunk)
                published += p
                superseded += s
            else:
                failed += len(chunk)

        for chunk in self._chunks(bad):
            outcome = await self._submit_bad(chunk)
            outcomes.append(outcome)
            if outcome.success:
                p, s = self._confirm(chunk)
                published += p
                superseded += s
            else:
                failed += len(chunk)

        for entry in unflag:
            outcome = await self._with_retry(
                "unflagBot",
                (entry.record.address,),
                lambda e=entry: self._registry.unflag_bot(e.record.address),
            )
            outcomes.append(outcome)
            if outcome.success:
                p, s = self._confirm([entry])
                published += p
                superseded += s
            else:
                failed += 1

        result = FlushResult(
            published=published,
            superseded=superseded,
            failed=failed,
            batches=tuple(outcomes),
        )
        logger.info(
            "Flush complete: published=%d superseded=%d failed=%d batches=%d queue=%d",
            published,
            superseded,
            failed,
            len(outcomes),
            len(self._queue),
        )
        return result

    def _chunks(self, entries: list[_Entry]) -> list[list[_Entry]]:
        return [entries[i : i + self._batch_size] for i in range(0, len(entries), self._batch_size)]

    async def _submit_good(self, chunk: list[_Entry]) -> BatchOutcome:
        addresses = [e.record.address for e in chunk]
        scores = [e.score for e in chunk]
        bot_types = [e.bot_type or "Unknown" for e in chunk]
        liquidity = [e.liquidity for e in chunk]
        check_batch("flagGoodBots", addresses, scores, bot_types, liquidity)
        return await self._with_retry(
            "flagGoodBots",
            tuple(addresses),
            lambda: self._registry.flag_good_bots(addresses, scores, bot_types, liquidity),
        )

    async def _submit_bad(self, chunk: list[_Entry]) -> BatchOutcome:
        addresses = [e.record.address for e in chunk]
        scores = [e.score for e in chunk]
        risk_levels = [e.risk_level or "MEDIUM" for e in chunk]
        check_batch("flagBadBots", addresses, scores, risk_levels)
        return await self._with_retry(
            "flagBadBots",
            tuple(addresses),
            lambda: self._registry.flag_bad_bots(addresses, scores, risk_levels),
        )

    async def _with_retry(
        self,
        operation: str,
        addresses: tuple[str, ...],
        submit: Callable[[], Awaitable[SubmissionReceipt]],
    ) -> BatchOutcome:
        delay = self._retry_delay
        last_error: str | None = None
        for attempt in range(1, self._max_attempts + 1):
            try:
                receipt = await submit()
            except RegistryInvariantError:
                raise
            except RegistryAccessError as e:
                last_error = str(e)
                logger.error("%s rejected (not retried): %s", operation, e)
                self._stats.batches_failed += 1
                self._stats.last_error = last_error
                return BatchOutcome(operation, addresses, False, attempt, error=last_error)
            except RegistryError as e:
                last_error = str(e)
                logger.warning(
                    "%s failed for %d addresses (attempt %d/%d): %s",
                    operation,
                    len(addresses),
                    attempt,
                    self._max_attempts,
                    e,
                )
                if attempt < self._max_attempts:
                    self._stats.retries += 1
                    await asyncio.sleep(delay)
                    delay = min(self._max_retry_delay, delay * 2)
                continue

            self._stats.batches_submitted += 1
            logger.info(
                "%s confirmed for %d addresses (tx=%s)",
                operation,
                len(addresses),
                receipt.transaction_hash or "-",
            )
            return BatchOutcome(
                operation,
                addresses,
                True,
                attempt,
                transaction_hash=receipt.transaction_hash,
            )

        self._stats.batches_failed += 1
        self._stats.last_error = last_error
        logger.error("%s gave up after %d attempts: %s", operation, self._max_attempts, last_error)
        return BatchOutcome(operation, addresses, False, self._max_attempts, error=last_error)

    def _confirm(self, entries: list[_Entry]) -> tuple[int, int]:
        """Record a confirmed submission; returns (published, superseded)."""
        published = 0
        superseded = 0
        for entry in entries:
            record = entry.record
            record.committed_category = entry.category
            if record.version != entry.version:
                superseded += 1
                continue
            record.publish_state = PublishState.PUBLISHED
            if self._queue.get(record.address) is record:
                del self._queue[record.address]
            published += 1
        self._stats.records_published += published
        self._stats.records_superseded += superseded
        return published, superseded

    async def run(self) -> None:
        """Flush every interval, or as soon as the queue reaches ``batch_size``."""
        logger.info(
            "Publisher running (interval=%.1fs, batch_size=%d)",
            self._flush_interval,
            self._batch_size,
        )
        while not self._stop_event.is_set():
            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(self._wake.wait(), timeout=self._flush_interval)
            self._wake.clear()
            if self._stop_event.is_set():
                break
            if not self._queue:
                continue
            try:
                await self.flush()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self._stats.last_error = str(e)
                logger.error("Flush failed: %s", e)

    async def stop(self) -> None:
        self._stop_event.set()
        self._wake.set()
