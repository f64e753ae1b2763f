"""Bot registry surface: the on-chain contract and an in-memory equivalent.

The registry keeps two disjoint buckets (good bots and bad bots), accepts
batched flag mutations from a single analyzer identity only, and blocks
trades from flagged bad bots.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Any, Protocol

from web3 import AsyncWeb3

from trade_bot_detector.detector.models import Category
from trade_bot_detector.ingestor.chain import (
    ChainClientError,
    ContractRevertError,
    SignerNotConfiguredError,
)
from trade_bot_detector.ingestor.models import WEI_PER_ETHER, normalize_address

if TYPE_CHECKING:
    from trade_bot_detector.ingestor.chain import ChainClient

logger = logging.getLogger(__name__)

# On-chain category enum: 0 = none, 1 = good bot, 2 = bad bot.
_CATEGORY_BY_CODE = {
    0: Category.UNCLASSIFIED,
    1: Category.GOOD_BOT,
    2: Category.BAD_BOT,
}

# Revert reasons the contract gives when it refuses a flagged trader.
_TRADE_BLOCK_REASONS = ("bad bot", "cannot trade")


def _is_trade_block(message: str) -> bool:
    lowered = message.lower()
    return any(reason in lowered for reason in _TRADE_BLOCK_REASONS)


BOT_REGISTRY_ABI: list[dict[str, Any]] = [
    {
        "type": "function",
        "name": "flagGoodBots",
        "stateMutability": "nonpayable",
        "inputs": [
            {"name": "users", "type": "address[]"},
            {"name": "scores", "type": "uint256[]"},
            {"name": "botTypes", "type": "string[]"},
            {"name": "liquidityAmounts", "type": "uint256[]"},
        ],
        "outputs": [],
    },
    {
        "type": "function",
        "name": "flagBadBots",
        "stateMutability": "nonpayable",
        "inputs": [
            {"name": "users", "type": "address[]"},
            {"name": "scores", "type": "uint256[]"},
            {"name": "riskLevels", "type": "string[]"},
        ],
        "outputs": [],
    },
    {
        "type": "function",
        "name": "unflagBot",
        "stateMutability": "nonpayable",
        "inputs": [{"name": "user", "type": "address"}],
        "outputs": [],
    },
    {
        "type": "function",
        "name": "getBotInfo",
        "stateMutability": "view",
        "inputs": [{"name": "user", "type": "address"}],
        "outputs": [
            {"name": "isFlagged", "type": "bool"},
            {"name": "score", "type": "uint256"},
            {"name": "category", "type": "uint8"},
            {"name": "botType", "type": "string"},
            {"name": "liquidityProvided", "type": "uint256"},
            {"name": "flaggedAt", "type": "uint256"},
        ],
    },
    {
        "type": "function",
        "name": "executeTrade",
        "stateMutability": "nonpayable",
        "inputs": [{"name": "amount", "type": "uint256"}],
        "outputs": [],
    },
]


class RegistryError(Exception):
    """Base exception for registry errors."""


class RegistryInvariantError(RegistryError):
    """Raised when a batch violates the registry's input invariants."""


class RegistryAccessError(RegistryError):
    """Raised when a mutation is attempted by an identity other than the analyzer."""


class TradeBlockedError(RegistryError):
    """Raised when a flagged bad bot tries to trade."""


class RegistrySubmissionError(RegistryError):
    """Raised when a mutation could not be confirmed."""


@dataclass(frozen=True)
class BotInfo:
    """Registry-side view of one address."""

    address: str
    is_flagged: bool
    score: int
    category: Category
    bot_type: str
    liquidity_provided: Decimal
    flagged_at: datetime | None
    risk_level: str | None = None

    def to_dict(self) -> dict[str, object]:
        return {
            "address": self.address,
            "is_flagged": self.is_flagged,
            "score": self.score,
            "category": self.category.value,
            "bot_type": self.bot_type,
            "liquidity_provided": f"{self.liquidity_provided:f}",
            "flagged_at": self.flagged_at.isoformat() if self.flagged_at else None,
            "risk_level": self.risk_level,
        }


@dataclass(frozen=True)
class SubmissionReceipt:
    count: int
    transaction_hash: str | None = None
    block_number: int | None = None


class BotRegistry(Protocol):
    async def flag_good_bots(
        self,
        addresses: list[str],
        scores: list[int],
        bot_types: list[str],
        liquidity_amounts: list[Decimal],
    ) -> SubmissionReceipt: ...

    async def flag_bad_bots(
        self,
        addresses: list[str],
        scores: list[int],
        risk_levels: list[str],
    ) -> SubmissionReceipt: ...

    async def unflag_bot(self, address: str) -> SubmissionReceipt: ...

    async def get_bot_info(self, address: str) -> BotInfo: ...


def check_batch(operation: str, addresses: list[str], *columns: list[Any]) -> None:
    """Raise RegistryInvariantError unless every column matches ``addresses``."""
    lengths = [len(addresses), *(len(c) for c in columns)]
    if len(set(lengths)) != 1:
        raise RegistryInvariantError(f"{operation}: array length mismatch {lengths}")
    if len({normalize_address(a) for a in addresses}) != len(addresses):
        raise RegistryInvariantError(f"{operation}: duplicate addresses in batch")


def _check_score(operation: str, score: int) -> None:
    if not 0 <= score <= 100:
        raise RegistryInvariantError(f"{operation}: score out of range: {score}")


class InMemoryRegistry:
    """Process-local registry with the same semantics as the contract.

    Used for dry runs and tests. Every mutation checks the sender against the
    analyzer identity and applies the whole batch or nothing.
    """

    def __init__(self, analyzer: str) -> None:
        self._analyzer = normalize_address(analyzer)
        self._good: set[str] = set()
        self._bad: set[str] = set()
        self._info: dict[str, BotInfo] = {}
        self._trades: list[tuple[str, Decimal]] = []
        self._submissions = 0

    @property
    def analyzer(self) -> str:
        return self._analyzer

    @property
    def submission_count(self) -> int:
        """Number of accepted mutations."""
        return self._submissions

    def good_bots(self) -> list[str]:
        return sorted(self._good)

    def bad_bots(self) -> list[str]:
        return sorted(self._bad)

    def _authorize(self, sender: str | None) -> None:
        if sender is not None and normalize_address(sender) != self._analyzer:
            raise RegistryAccessError(f"{sender} is not authorized")

    def _receipt(self, count: int) -> SubmissionReceipt:
        self._submissions += 1
        return SubmissionReceipt(count=count)

    async def flag_good_bots(
        self,
        addresses: list[str],
        scores: list[int],
        bot_types: list[str],
        liquidity_amounts: list[Decimal],
        *,
        sender: str | None = None,
    ) -> SubmissionReceipt:
        self._authorize(sender)
        check_batch("flagGoodBots", addresses, scores, bot_types, liquidity_amounts)
        for score in scores:
            _check_score("flagGoodBots", score)

        now = datetime.now(UTC)
        for address, score, bot_type, liquidity in zip(
            addresses, scores, bot_types, liquidity_amounts, strict=True
        ):
            key = normalize_address(address)
            self._bad.discard(key)
            self._good.add(key)
            self._info[key] = BotInfo(
                address=key,
                is_flagged=True,
                score=score,
                category=Category.GOOD_BOT,
                bot_type=bot_type,
                liquidity_provided=liquidity,
                flagged_at=now,
            )
        return self._receipt(len(addresses))

    async def flag_bad_bots(
        self,
        addresses: list[str],
        scores: list[int],
        risk_levels: list[str],
        *,
        sender: str | None = None,
    ) -> SubmissionReceipt:
        self._authorize(sender)
        check_batch("flagBadBots", addresses, scores, risk_levels)
        for score in scores:
            _check_score("flagBadBots", score)

        now = datetime.now(UTC)
        for address, score, risk_level in zip(addresses, scores, risk_levels, strict=True):
            key = normalize_address(address)
            self._good.discard(key)
            self._bad.add(key)
            self._info[key] = BotInfo(
                address=key,
                is_flagged=True,
                score=score,
                category=Category.BAD_BOT,
                bot_type="",
                liquidity_provided=Decimal("0"),
                flagged_at=now,
                risk_level=risk_level,
            )
        return self._receipt(len(addresses))

    async def unflag_bot(self, address: str, *, sender: str | None = None) -> SubmissionReceipt:
        self._authorize(sender)
        key = normalize_address(address)
        self._good.discard(key)
        self._bad.discard(key)
        self._info.pop(key, None)
        return self._receipt(1)

    async def get_bot_info(self, address: str) -> BotInfo:
        key = normalize_address(address)
        info = self._info.get(key)
        if info is not None:
            return info
        return BotInfo(
            address=key,
            is_flagged=False,
            score=0,
            category=Category.UNCLASSIFIED,
            bot_type="",
            liquidity_provided=Decimal("0"),
            flagged_at=None,
        )

    async def execute_trade(self, amount: Decimal, *, sender: str) -> None:
        """Record a trade for ``sender``; flagged bad bots are refused."""
        key = normalize_address(sender)
        if key in self._bad:
            raise TradeBlockedError(f"{key} is flagged as a bad bot")
        self._trades.append((key, amount))

    @property
    def trade_count(self) -> int:
        return len(self._trades)


class ContractRegistry:
    """Registry backed by the deployed contract.

    Mutations are signed by the chain client's analyzer key and wait for the
    receipt before returning.
    """

    def __init__(
        self,
        client: ChainClient,
        contract_address: str,
        *,
        gas_limit: int | None = None,
    ) -> None:
        self._client = client
        self._contract = client.contract(contract_address, BOT_REGISTRY_ABI)
        self._gas_limit = gas_limit

    @property
    def address(self) -> str:
        return str(self._contract.address)

    async def _transact(self, fn_name: str, *args: Any) -> SubmissionReceipt:
        logger.debug("Submitting %s to %s", fn_name, self.address)
        try:
            receipt = await self._client.transact(
                self._contract,
                fn_name,
                *args,
                gas_limit=self._gas_limit,
            )
        except SignerNotConfiguredError as e:
            raise RegistryAccessError(str(e)) from e
        except ContractRevertError as e:
            if "not authorized" in str(e).lower():
                raise RegistryAccessError(str(e)) from e
            raise RegistrySubmissionError(str(e)) from e
        except ChainClientError as e:
            raise RegistrySubmissionError(f"{fn_name} failed: {e}") from e
        return SubmissionReceipt(
            count=len(args[0]) if args and isinstance(args[0], list) else 1,
            transaction_hash=receipt.transaction_hash,
            block_number=receipt.block_number,
        )

    async def flag_good_bots(
        self,
        addresses: list[str],
        scores: list[int],
        bot_types: list[str],
        liquidity_amounts: list[Decimal],
    ) -> SubmissionReceipt:
        check_batch("flagGoodBots", addresses, scores, bot_types, liquidity_amounts)
        for score in scores:
            _check_score("flagGoodBots", score)
        return await self._transact(
            "flagGoodBots",
            [AsyncWeb3.to_checksum_address(a) for a in addresses],
            list(scores),
            list(bot_types),
            [int(amount * WEI_PER_ETHER) for amount in liquidity_amounts],
        )

    async def flag_bad_bots(
        self,
        addresses: list[str],
        scores: list[int],
        risk_levels: list[str],
    ) -> SubmissionReceipt:
        check_batch("flagBadBots", addresses, scores, risk_levels)
        for score in scores:
            _check_score("flagBadBots", score)
        return await self._transact(
            "flagBadBots",
            [AsyncWeb3.to_checksum_address(a) for a in addresses],
            list(scores),
            list(risk_levels),
        )

    async def unflag_bot(self, address: str) -> SubmissionReceipt:
        return await self._transact("unflagBot", AsyncWeb3.to_checksum_address(address))

    async def get_bot_info(self, address: str) -> BotInfo:
        try:
            result = await self._client.call_function(
                self._contract,
                "getBotInfo",
                AsyncWeb3.to_checksum_address(address),
            )
        except ChainClientError as e:
            raise RegistryError(f"getBotInfo failed for {address}: {e}") from e
        is_flagged, score, category, bot_type, liquidity_wei, flagged_at = result
        return BotInfo(
            address=normalize_address(address),
            is_flagged=bool(is_flagged),
            score=int(score),
            category=_CATEGORY_BY_CODE.get(int(category), Category.UNCLASSIFIED),
            bot_type=str(bot_type),
            liquidity_provided=(Decimal(int(liquidity_wei)) / WEI_PER_ETHER).normalize(),
            flagged_at=datetime.fromtimestamp(int(flagged_at), tz=UTC) if int(flagged_at) else None,
        )

    async def execute_trade(self, amount: Decimal) -> SubmissionReceipt:
        """Trade from the client's own account.

        Raises:
            TradeBlockedError: If the contract refuses the sender.
        """
        try:
            return await self._transact("executeTrade", int(amount * WEI_PER_ETHER))
        except RegistrySubmissionError as e:
            if isinstance(e.__cause__, ContractRevertError) and _is_trade_block(str(e)):
                raise TradeBlockedError(str(e)) from e
            raise
