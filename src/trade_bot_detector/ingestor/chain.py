"""EVM chain client with retry, failover and rate limiting.

This module provides the RPC client shared by the trade event source and the
registry publisher with:
- Bounded per-call timeouts
- Retry logic with capped exponential backoff
- Rate limiting to respect provider limits
- Failover to secondary RPC URL
- Signed contract transactions for the analyzer identity
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, TypeVar

from eth_account import Account
from eth_account.signers.local import LocalAccount
from web3 import AsyncWeb3
from web3.contract import AsyncContract
from web3.exceptions import ContractLogicError, TimeExhausted, Web3Exception, Web3RPCError
from web3.middleware import ExtraDataToPOAMiddleware
from web3.providers import AsyncHTTPProvider

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Default configuration
DEFAULT_MAX_REQUESTS_PER_SECOND = 25
DEFAULT_MAX_ATTEMPTS = 5
DEFAULT_RETRY_DELAY_SECONDS = 1.0
DEFAULT_MAX_RETRY_DELAY_SECONDS = 16.0
DEFAULT_REQUEST_TIMEOUT_SECONDS = 30.0
DEFAULT_RECEIPT_TIMEOUT_SECONDS = 120.0

# Errors worth another attempt: node-side failures, transport drops, timeouts.
TRANSIENT_ERRORS: tuple[type[BaseException], ...] = (
    Web3Exception,
    TimeoutError,
    ConnectionError,
    OSError,
)

# Provider messages refusing an eth_getLogs range as too large.
_RANGE_LIMIT_MARKERS = (
    "query returned more than",
    "block range",
    "range too large",
    "response size exceeded",
    "too many results",
)


class ChainClientError(Exception):
    """Base exception for chain client errors."""


class RPCError(ChainClientError):
    """Raised when an RPC call fails for a non-transient reason."""


class ChainConnectivityError(RPCError):
    """Raised when all retries and failover are exhausted.

    This is terminal: the caller must surface it to the process supervisor
    rather than keep going blind.
    """


class LogRangeTooLargeError(RPCError):
    """Raised when the node refuses an ``eth_getLogs`` range as too large."""


def is_range_limit_error(error: BaseException) -> bool:
    if not isinstance(error, Web3RPCError):
        return False
    message = str(error).lower()
    return any(marker in message for marker in _RANGE_LIMIT_MARKERS)


class ContractRevertError(ChainClientError):
    """Raised when a contract call or transaction reverts."""


class SignerNotConfiguredError(ChainClientError):
    """Raised when a transaction is requested without an analyzer key."""


@dataclass
class RateLimiter:
    """Token bucket rate limiter."""

    max_tokens: float
    refill_rate: float  # tokens per second
    tokens: float
    last_refill: float

    @classmethod
    def create(cls, max_requests_per_second: float) -> RateLimiter:
        """Create a rate limiter with specified max requests per second."""
        return cls(
            max_tokens=max_requests_per_second,
            refill_rate=max_requests_per_second,
            tokens=max_requests_per_second,
            last_refill=time.monotonic(),
        )

    def _refill(self) -> None:
        now = time.monotonic()
        elapsed = now - self.last_refill
        self.tokens = min(self.max_tokens, self.tokens + elapsed * self.refill_rate)
        self.last_refill = now

    async def acquire(self, tokens: float = 1.0) -> None:
        """Acquire tokens, waiting if necessary."""
        while True:
            self._refill()
            if self.tokens >= tokens:
                self.tokens -= tokens
                return
            wait_time = (tokens - self.tokens) / self.refill_rate
            await asyncio.sleep(wait_time)


@dataclass(frozen=True)
class TransactionReceipt:
    """Minimal view of a mined transaction."""

    transaction_hash: str
    block_number: int
    gas_used: int
    status: int


class ChainClient:
    """Async EVM client with retry, failover and rate limiting.

    Example:
        ```python
        client = ChainClient(
            "https://sepolia.example/rpc",
            fallback_rpc_url="https://sepolia-backup.example/rpc",
            private_key=settings.chain.analyzer_private_key.get_secret_value(),
        )
        head = await client.get_block_number()
        logs = await client.get_logs({"fromBlock": head - 10, "toBlock": head})
        ```
    """

    def __init__(
        self,
        rpc_url: str,
        *,
        fallback_rpc_url: str | None = None,
        private_key: str | None = None,
        chain_id: int | None = None,
        max_requests_per_second: float = DEFAULT_MAX_REQUESTS_PER_SECOND,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        retry_delay_seconds: float = DEFAULT_RETRY_DELAY_SECONDS,
        max_retry_delay_seconds: float = DEFAULT_MAX_RETRY_DELAY_SECONDS,
        request_timeout_seconds: float = DEFAULT_REQUEST_TIMEOUT_SECONDS,
        receipt_timeout_seconds: float = DEFAULT_RECEIPT_TIMEOUT_SECONDS,
    ) -> None:
        """Initialize the chain client.

        Args:
            rpc_url: Primary RPC endpoint URL.
            fallback_rpc_url: Optional fallback RPC URL for failover.
            private_key: Analyzer key used to sign registry transactions.
            chain_id: Chain id for signed transactions (queried when omitted).
            max_requests_per_second: Rate limit for RPC calls.
            max_attempts: Attempts per endpoint before giving up.
            retry_delay_seconds: Initial delay between retries.
            max_retry_delay_seconds: Cap for the doubling retry delay.
            request_timeout_seconds: Timeout applied to every RPC call.
            receipt_timeout_seconds: How long to wait for a transaction receipt.
        """
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self._rpc_url = rpc_url
        self._fallback_rpc_url = fallback_rpc_url
        self._max_attempts = max_attempts
        self._retry_delay = retry_delay_seconds
        self._max_retry_delay = max_retry_delay_seconds
        self._request_timeout = request_timeout_seconds
        self._receipt_timeout = receipt_timeout_seconds
        self._chain_id = chain_id

        self._w3 = self._new_web3_client(rpc_url)
        self._w3_fallback: AsyncWeb3[AsyncHTTPProvider] | None = None
        if fallback_rpc_url:
            self._w3_fallback = self._new_web3_client(fallback_rpc_url)

        self._account: LocalAccount | None = Account.from_key(private_key) if private_key else None
        # Serializes nonce allocation for the analyzer account.
        self._tx_lock = asyncio.Lock()

        self._rate_limiter = RateLimiter.create(max_requests_per_second)

        self._primary_healthy = True
        self._last_primary_check = 0.0
        self._primary_recovery_interval = 60.0

    def _new_web3_client(self, rpc_url: str) -> AsyncWeb3[AsyncHTTPProvider]:
        client = AsyncWeb3(AsyncHTTPProvider(rpc_url))
        self._inject_poa_middleware(client, rpc_url=rpc_url)
        return client

    def _inject_poa_middleware(self, client: AsyncWeb3[AsyncHTTPProvider], *, rpc_url: str) -> None:
        try:
            client.middleware_onion.inject(ExtraDataToPOAMiddleware, layer=0)
        except Exception as e:
            logger.warning("Failed to inject PoA middleware (rpc=%s): %s", rpc_url, e)

    @property
    def account_address(self) -> str | None:
        """Checksummed analyzer address, or None in read-only mode."""
        return self._account.address if self._account else None

    @property
    def is_read_only(self) -> bool:
        return self._account is None

    def contract(self, address: str, abi: list[dict[str, Any]]) -> AsyncContract:
        """Bind a contract on the primary endpoint (for encoding/decoding)."""
        return self._w3.eth.contract(address=AsyncWeb3.to_checksum_address(address), abi=abi)

    def _should_try_primary(self) -> bool:
        if self._primary_healthy:
            return True
        now = time.monotonic()
        if now - self._last_primary_check > self._primary_recovery_interval:
            self._last_primary_check = now
            return True
        return False

    async def _attempt_on(
        self,
        w3: AsyncWeb3[AsyncHTTPProvider],
        label: str,
        description: str,
        call: Callable[[AsyncWeb3[AsyncHTTPProvider]], Awaitable[T]],
        timeout: float,
    ) -> tuple[bool, T | None, BaseException | None]:
        delay = self._retry_delay
        last_error: BaseException | None = None
        for attempt in range(self._max_attempts):
            try:
                result = await asyncio.wait_for(call(w3), timeout=timeout)
                return True, result, None
            except ContractLogicError as e:
                raise ContractRevertError(f"{description} reverted: {e}") from e
            except TRANSIENT_ERRORS as e:
                if is_range_limit_error(e):
                    raise LogRangeTooLargeError(f"{description} refused: {e}") from e
                last_error = e
                logger.warning(
                    "%s RPC %s failed (attempt %d/%d): %s",
                    label,
                    description,
                    attempt + 1,
                    self._max_attempts,
                    e,
                )
                if attempt < self._max_attempts - 1:
                    await asyncio.sleep(delay)
                    delay = min(self._max_retry_delay, delay * 2)
        return False, None, last_error

    async def execute(
        self,
        description: str,
        call: Callable[[AsyncWeb3[AsyncHTTPProvider]], Awaitable[T]],
        *,
        timeout: float | None = None,
    ) -> T:
        """Run ``call`` against the primary endpoint, then the fallback.

        Args:
            description: Short label for logs and errors.
            call: Receives a web3 instance and returns an awaitable.
            timeout: Per-attempt timeout; defaults to the request timeout.

        Returns:
            Result of the call.

        Raises:
            ContractRevertError: If the node reports a revert (not retried).
            LogRangeTooLargeError: If the node refuses a log range (not retried).
            ChainConnectivityError: If all retries and failover fail.
        """
        await self._rate_limiter.acquire()
        last_error: BaseException | None = None
        attempt_timeout = timeout if timeout is not None else self._request_timeout

        if self._should_try_primary():
            ok, result, last_error = await self._attempt_on(
                self._w3, "Primary", description, call, attempt_timeout
            )
            if ok:
                self._primary_healthy = True
                return result  # type: ignore[return-value]
            self._primary_healthy = False
            self._last_primary_check = time.monotonic()

        if self._w3_fallback:
            ok, result, err = await self._attempt_on(
                self._w3_fallback, "Fallback", description, call, attempt_timeout
            )
            if ok:
                logger.info("Fallback RPC succeeded for %s", description)
                return result  # type: ignore[return-value]
            last_error = err

        raise ChainConnectivityError(f"RPC call {description} failed after all retries: {last_error}")

    async def _execute_with_retry(self, func_name: str, *args: Any, **kwargs: Any) -> Any:
        """Execute a ``web3.eth`` method with retry and failover logic."""

        async def call(w3: AsyncWeb3[AsyncHTTPProvider]) -> Any:
            method = getattr(w3.eth, func_name)
            return await method(*args, **kwargs)

        return await self.execute(func_name, call)

    async def get_block_number(self) -> int:
        return int(await self._execute_with_retry("get_block_number"))

    async def get_logs(self, filter_params: dict[str, Any]) -> list[dict[str, Any]]:
        """Fetch logs via ``eth_getLogs`` with retry/failover semantics."""
        logs = await self._execute_with_retry("get_logs", filter_params)
        return [dict(log) for log in logs]

    async def get_chain_id(self) -> int:
        if self._chain_id is None:
            self._chain_id = int(await self._execute_with_retry("get_chain_id"))
        return self._chain_id

    async def call_function(self, contract: AsyncContract, fn_name: str, *args: Any) -> Any:
        """Read-only contract call with retry."""
        address = contract.address
        abi = contract.abi

        async def call(w3: AsyncWeb3[AsyncHTTPProvider]) -> Any:
            bound = w3.eth.contract(address=address, abi=abi)
            return await bound.functions[fn_name](*args).call()

        return await self.execute(f"{fn_name}()", call)

    async def transact(
        self,
        contract: AsyncContract,
        fn_name: str,
        *args: Any,
        gas_limit: int | None = None,
    ) -> TransactionReceipt:
        """Sign, send and wait for a contract transaction from the analyzer.

        The nonce is re-read on every attempt, so a dropped transaction is
        resubmitted with a fresh nonce rather than stuck behind the old one.

        Raises:
            SignerNotConfiguredError: If no analyzer key is configured.
            ContractRevertError: If the transaction reverts.
            ChainConnectivityError: If submission keeps failing.
        """
        account = self._account
        if account is None:
            raise SignerNotConfiguredError(f"Cannot send {fn_name}: no analyzer key configured")

        address = contract.address
        abi = contract.abi
        chain_id = await self.get_chain_id()

        async def send(w3: AsyncWeb3[AsyncHTTPProvider]) -> TransactionReceipt:
            bound = w3.eth.contract(address=address, abi=abi)
            nonce = await w3.eth.get_transaction_count(account.address, "pending")
            tx_params: dict[str, Any] = {
                "from": account.address,
                "nonce": nonce,
                "chainId": chain_id,
            }
            if gas_limit is not None:
                tx_params["gas"] = gas_limit
            tx = await bound.functions[fn_name](*args).build_transaction(tx_params)
            signed = account.sign_transaction(tx)
            tx_hash = await w3.eth.send_raw_transaction(signed.raw_transaction)
            logger.info("Transaction sent: %s %s", fn_name, tx_hash.to_0x_hex())
            try:
                receipt = await w3.eth.wait_for_transaction_receipt(
                    tx_hash,
                    timeout=self._receipt_timeout,
                )
            except TimeExhausted as e:
                raise TimeoutError(f"No receipt for {tx_hash.to_0x_hex()}") from e
            return TransactionReceipt(
                transaction_hash=tx_hash.to_0x_hex(),
                block_number=int(receipt["blockNumber"]),
                gas_used=int(receipt["gasUsed"]),
                status=int(receipt["status"]),
            )

        async with self._tx_lock:
            # The receipt wait is bounded separately from ordinary RPC calls.
            receipt = await self.execute(
                fn_name, send, timeout=self._request_timeout + self._receipt_timeout
            )

        if receipt.status != 1:
            raise ContractRevertError(f"{fn_name} reverted in tx {receipt.transaction_hash}")
        logger.info(
            "Transaction confirmed: %s block=%d gas=%d",
            fn_name,
            receipt.block_number,
            receipt.gas_used,
        )
        return receipt

    async def health_check(self) -> bool:
        """Check if the client can reach the RPC."""
        try:
            await self._execute_with_retry("get_block_number")
            return True
        except ChainClientError:
            return False

    async def aclose(self) -> None:
        """Close async HTTP provider sessions to avoid leaked aiohttp sessions."""
        providers = [self._w3.provider]
        if self._w3_fallback is not None:
            providers.append(self._w3_fallback.provider)

        for provider in providers:
            disconnect = getattr(provider, "disconnect", None)
            if not callable(disconnect):
                continue
            try:
                result = disconnect()
                if asyncio.iscoroutine(result):
                    await result
            except Exception as e:
                logger.warning("Failed to close RPC provider session: %s", e)
