"""Tests for the EVM chain client."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest
from web3.exceptions import ContractLogicError, Web3RPCError

from trade_bot_detector.ingestor.chain import (
    ChainClient,
    ChainConnectivityError,
    ContractRevertError,
    LogRangeTooLargeError,
    RateLimiter,
    SignerNotConfiguredError,
    TransactionReceipt,
)

TEST_KEY = "0x" + "4c" * 32


def _client(**kwargs) -> ChainClient:
    kwargs.setdefault("retry_delay_seconds", 0)
    kwargs.setdefault("max_attempts", 3)
    kwargs.setdefault("max_requests_per_second", 1000)
    return ChainClient("http://127.0.0.1:8545", **kwargs)


class TestRateLimiter:
    """Tests for the token bucket."""

    @pytest.mark.asyncio
    async def test_acquire_consumes_tokens(self) -> None:
        limiter = RateLimiter.create(2)
        await limiter.acquire()
        await limiter.acquire()
        assert limiter.tokens < 1

    def test_create_full_bucket(self) -> None:
        limiter = RateLimiter.create(10)
        assert limiter.tokens == 10
        assert limiter.refill_rate == 10


class TestExecute:
    """Tests for retry and failover."""

    @pytest.mark.asyncio
    async def test_returns_result(self) -> None:
        client = _client()
        call = AsyncMock(return_value=42)
        assert await client.execute("eth_blockNumber", call) == 42
        call.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_retries_transient_errors(self) -> None:
        """Test that transient failures are retried on the same endpoint."""
        client = _client()
        call = AsyncMock(side_effect=[ConnectionError("reset"), Web3RPCError("busy"), 7])
        assert await client.execute("eth_blockNumber", call) == 7
        assert call.await_count == 3

    @pytest.mark.asyncio
    async def test_exhaustion_raises_connectivity_error(self) -> None:
        client = _client()
        call = AsyncMock(side_effect=ConnectionError("down"))
        with pytest.raises(ChainConnectivityError):
            await client.execute("eth_blockNumber", call)
        assert call.await_count == 3

    @pytest.mark.asyncio
    async def test_fails_over_to_fallback(self) -> None:
        """Test that the fallback endpoint is used once the primary is exhausted."""
        client = _client(fallback_rpc_url="http://127.0.0.1:8546")
        seen = []

        async def call(w3):
            seen.append(w3)
            if w3 is client._w3:
                raise ConnectionError("primary down")
            return "ok"

        assert await client.execute("eth_blockNumber", call) == "ok"
        assert seen[-1] is client._w3_fallback
        assert len(seen) == 4

    @pytest.mark.asyncio
    async def test_revert_not_retried(self) -> None:
        client = _client()
        call = AsyncMock(side_effect=ContractLogicError("execution reverted: Not authorized"))
        with pytest.raises(ContractRevertError):
            await client.execute("flagBadBots", call)
        call.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_calls_are_time_bounded(self) -> None:
        """Test that a hanging call counts as a failed attempt."""
        client = _client(max_attempts=2, request_timeout_seconds=0.01)

        async def hang(_w3):
            await asyncio.sleep(10)

        with pytest.raises(ChainConnectivityError):
            await client.execute("eth_blockNumber", hang)

    @pytest.mark.asyncio
    async def test_range_limit_not_retried(self) -> None:
        """Test that a refused log range is reported at once, not as connectivity loss."""
        client = _client(fallback_rpc_url="http://127.0.0.1:8546")
        call = AsyncMock(side_effect=Web3RPCError("query returned more than 10000 results"))
        with pytest.raises(LogRangeTooLargeError) as exc_info:
            await client.execute("get_logs", call)
        assert not isinstance(exc_info.value, ChainConnectivityError)
        call.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_per_call_timeout_leaves_default_alone(self) -> None:
        client = _client(max_attempts=1, request_timeout_seconds=0.01)

        async def slow(_w3):
            await asyncio.sleep(0.05)
            return "mined"

        long_call = asyncio.create_task(client.execute("sendTx", slow, timeout=5.0))
        await asyncio.sleep(0)
        with pytest.raises(ChainConnectivityError):
            await client.execute("eth_blockNumber", slow)
        assert await long_call == "mined"


class TestReads:
    """Tests for read helpers."""

    @pytest.mark.asyncio
    async def test_get_logs_returns_dicts(self) -> None:
        client = _client()
        client._w3 = MagicMock()
        client._w3.eth.get_logs = AsyncMock(return_value=[{"blockNumber": 1}])

        logs = await client.get_logs({"fromBlock": 0, "toBlock": 1})

        assert logs == [{"blockNumber": 1}]
        client._w3.eth.get_logs.assert_awaited_once_with({"fromBlock": 0, "toBlock": 1})

    @pytest.mark.asyncio
    async def test_chain_id_cached(self) -> None:
        client = _client()
        client._w3 = MagicMock()
        client._w3.eth.get_chain_id = AsyncMock(return_value=11155111)

        assert await client.get_chain_id() == 11155111
        assert await client.get_chain_id() == 11155111
        client._w3.eth.get_chain_id.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_health_check(self) -> None:
        client = _client(max_attempts=1)
        client._w3 = MagicMock()
        client._w3.eth.get_block_number = AsyncMock(side_effect=ConnectionError("down"))
        assert await client.health_check() is False


class TestTransact:
    """Tests for signed transactions."""

    def test_read_only_without_key(self) -> None:
        client = _client()
        assert client.is_read_only
        assert client.account_address is None

    def test_account_from_key(self) -> None:
        client = _client(private_key=TEST_KEY)
        assert not client.is_read_only
        assert client.account_address is not None
        assert client.account_address.startswith("0x")

    @pytest.mark.asyncio
    async def test_requires_signer(self) -> None:
        client = _client()
        with pytest.raises(SignerNotConfiguredError):
            await client.transact(MagicMock(), "unflagBot", "0x" + "00" * 20)

    @pytest.mark.asyncio
    async def test_failed_status_is_revert(self) -> None:
        client = _client(private_key=TEST_KEY, chain_id=1)
        client.execute = AsyncMock(  # type: ignore[method-assign]
            return_value=TransactionReceipt(transaction_hash="0xabc", block_number=5, gas_used=21000, status=0)
        )
        with pytest.raises(ContractRevertError):
            await client.transact(MagicMock(), "flagGoodBots", [], [], [], [])

    @pytest.mark.asyncio
    async def test_success_returns_receipt(self) -> None:
        client = _client(private_key=TEST_KEY, chain_id=1)
        receipt = TransactionReceipt(transaction_hash="0xabc", block_number=5, gas_used=50000, status=1)
        client.execute = AsyncMock(return_value=receipt)  # type: ignore[method-assign]

        assert await client.transact(MagicMock(), "unflagBot", "0x" + "00" * 20) == receipt
        _, kwargs = client.execute.await_args
        assert kwargs["timeout"] == 30.0 + 120.0
        assert client._request_timeout == 30.0
