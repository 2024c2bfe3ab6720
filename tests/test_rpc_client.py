"""Tests for the JSON-RPC chain reader."""

import asyncio
import math
from decimal import Decimal
from unittest.mock import AsyncMock, patch

import aiohttp
import eth_abi
import pytest

from conftest import TOKEN, make_log
from pyusd_dashboard.events import TRANSFER_TOPIC
from pyusd_dashboard.rpc_client import ChainReader, RPCError


def make_reader(**overrides) -> ChainReader:
    options = dict(
        rpc_url="http://node.test",
        max_block_range=5,
        batch_delay=0,
        max_attempts=3,
        retry_min_wait=0,
        retry_max_wait=0,
    )
    options.update(overrides)
    return ChainReader(**options)


def reference_logs(first_block, last_block):
    """One log per block, standing in for a provider's full-range answer."""
    return [make_log(n, n, 1_000_000 + n) for n in range(first_block, last_block + 1)]


class TestChunkedLogQueries:
    """Test cases for get_logs_in_range."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("from_block,to_block", [(100, 100), (100, 104), (100, 105), (100, 122), (7, 56)])
    async def test_issues_ceil_width_over_five_calls(self, from_block, to_block):
        """Test a span of width W issues ceil(W/5) sub-queries of at most 5 blocks."""
        reader = make_reader()
        everything = reference_logs(from_block, to_block)

        async def provider(address, topics, start, end):
            assert end - start + 1 <= 5
            return [log for log in everything if start <= int(log["blockNumber"], 16) <= end]

        with patch.object(reader, "get_logs", AsyncMock(side_effect=provider)) as get_logs:
            logs = await reader.get_logs_in_range(TOKEN, [TRANSFER_TOPIC], from_block, to_block)

        width = to_block - from_block + 1
        assert get_logs.await_count == math.ceil(width / 5)

        spans = [(call.args[2], call.args[3]) for call in get_logs.await_args_list]
        covered = [b for start, end in spans for b in range(start, end + 1)]
        assert covered == list(range(from_block, to_block + 1))

        hashes = sorted(log["transactionHash"] for log in logs)
        assert hashes == sorted(log["transactionHash"] for log in everything)

    @pytest.mark.asyncio
    async def test_failed_sub_range_is_skipped(self):
        """Test a failing chunk contributes nothing and does not abort the query."""
        reader = make_reader()
        everything = reference_logs(100, 114)

        async def provider(address, topics, start, end):
            if start == 105:
                raise RPCError("eth_getLogs: query timeout", method="eth_getLogs")
            return [log for log in everything if start <= int(log["blockNumber"], 16) <= end]

        with patch.object(reader, "get_logs", AsyncMock(side_effect=provider)) as get_logs:
            logs = await reader.get_logs_in_range(TOKEN, [TRANSFER_TOPIC], 100, 114)

        assert get_logs.await_count == 3
        blocks = sorted(int(log["blockNumber"], 16) for log in logs)
        assert blocks == [100, 101, 102, 103, 104, 110, 111, 112, 113, 114]

    @pytest.mark.asyncio
    async def test_every_sub_range_failing_returns_empty(self):
        """Test permanent failure yields an empty list instead of raising."""
        reader = make_reader()

        with patch.object(reader, "get_logs", AsyncMock(side_effect=RPCError("down"))):
            logs = await reader.get_logs_in_range(TOKEN, [TRANSFER_TOPIC], 1, 20)

        assert logs == []

    @pytest.mark.asyncio
    async def test_empty_span(self):
        """Test an inverted span issues no calls."""
        reader = make_reader()

        with patch.object(reader, "get_logs", AsyncMock(return_value=[])) as get_logs:
            logs = await reader.get_logs_in_range(TOKEN, [TRANSFER_TOPIC], 10, 9)

        assert logs == []
        get_logs.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_pauses_between_chunks(self):
        """Test the inter-call delay is applied between, not before, chunks."""
        reader = make_reader(batch_delay=0.25)

        with patch.object(reader, "get_logs", AsyncMock(return_value=[])), \
                patch("pyusd_dashboard.rpc_client.asyncio.sleep", AsyncMock()) as sleep:
            await reader.get_logs_in_range(TOKEN, [TRANSFER_TOPIC], 1, 15)

        assert sleep.await_count == 2
        sleep.assert_awaited_with(0.25)


class TestRequests:
    """Test cases for the JSON-RPC request layer."""

    @pytest.mark.asyncio
    async def test_error_object_raises(self):
        """Test a JSON-RPC error response becomes RPCError without retrying."""
        reader = make_reader()
        body = {"jsonrpc": "2.0", "id": 1, "error": {"code": -32005, "message": "query returned more than 10000 results"}}

        with patch.object(reader, "_post", AsyncMock(return_value=body)) as post:
            with pytest.raises(RPCError) as exc_info:
                await reader.current_block_number()

        assert exc_info.value.code == -32005
        assert exc_info.value.method == "eth_blockNumber"
        assert post.await_count == 1

    @pytest.mark.asyncio
    async def test_transport_error_retried(self):
        """Test transient transport failures are retried."""
        reader = make_reader()
        responses = [aiohttp.ClientError("connection reset"), {"jsonrpc": "2.0", "id": 1, "result": "0x10"}]

        with patch.object(reader, "_post", AsyncMock(side_effect=responses)) as post:
            block = await reader.current_block_number()

        assert block == 16
        assert post.await_count == 2

    @pytest.mark.asyncio
    async def test_retries_exhausted(self):
        """Test RPCError after the attempt budget is spent."""
        reader = make_reader(max_attempts=3)

        with patch.object(reader, "_post", AsyncMock(side_effect=aiohttp.ClientError("refused"))) as post:
            with pytest.raises(RPCError):
                await reader.current_block_number()

        assert post.await_count == 3

    @pytest.mark.asyncio
    async def test_get_logs_sends_hex_range(self):
        """Test eth_getLogs receives hex block bounds."""
        reader = make_reader()

        with patch.object(reader, "_request", AsyncMock(return_value=[])) as request:
            await reader.get_logs(TOKEN, [TRANSFER_TOPIC], 16, 20)

        method, params = request.await_args.args
        assert method == "eth_getLogs"
        assert params[0]["fromBlock"] == "0x10"
        assert params[0]["toBlock"] == "0x14"

    @pytest.mark.asyncio
    async def test_filter_changes_none_is_empty(self):
        """Test a null filter result is treated as no changes."""
        reader = make_reader()

        with patch.object(reader, "_request", AsyncMock(return_value=None)):
            assert await reader.get_filter_changes("0x1") == []

    @pytest.mark.asyncio
    async def test_missing_block(self):
        """Test an unknown block raises RPCError."""
        reader = make_reader()

        with patch.object(reader, "_request", AsyncMock(return_value=None)):
            with pytest.raises(RPCError):
                await reader.get_block(123)

    @pytest.mark.asyncio
    async def test_health_check(self):
        """Test health_check reports failures as False."""
        reader = make_reader()

        with patch.object(reader, "_request", AsyncMock(side_effect=RPCError("down"))):
            assert await reader.health_check() is False
        with patch.object(reader, "_request", AsyncMock(return_value="0x1")):
            assert await reader.health_check() is True

    @pytest.mark.asyncio
    async def test_close_is_idempotent(self):
        """Test close can run without a session and more than once."""
        reader = make_reader()
        await reader.close()
        await reader.close()
        assert reader.session is None


class TestSession:
    """Test cases for HTTP session reuse and recycling."""

    @pytest.mark.asyncio
    async def test_fresh_session_is_reused(self):
        reader = make_reader(max_connection_age=60)
        try:
            first = await reader._get_session()
            assert await reader._get_session() is first
        finally:
            await reader.close()

    @pytest.mark.asyncio
    async def test_aged_session_is_recreated(self):
        """Test a session past its maximum age is closed and replaced."""
        reader = make_reader(max_connection_age=60)
        try:
            old = await reader._get_session()
            reader._session_created_at -= 120

            new = await reader._get_session()

            assert new is not old
            assert old.closed
            assert not new.closed
        finally:
            await reader.close()

    @pytest.mark.asyncio
    async def test_concurrent_recycling_creates_one_session(self):
        """Test callers racing past the age threshold share one replacement."""
        reader = make_reader(max_connection_age=60)
        try:
            old = await reader._get_session()
            reader._session_created_at -= 120

            with patch("pyusd_dashboard.rpc_client.aiohttp.ClientSession", wraps=aiohttp.ClientSession) as factory:
                sessions = await asyncio.gather(*(reader._get_session() for _ in range(3)))

            assert factory.call_count == 1
            assert len({id(s) for s in sessions}) == 1
            assert sessions[0] is not old
            assert old.closed
        finally:
            await reader.close()


class TestTokenReads:
    """Test cases for contract reads."""

    @pytest.mark.asyncio
    async def test_balance_of(self):
        """Test balanceOf output is decoded to minor units."""
        reader = make_reader()
        output = eth_abi.encode(["uint256"], [2_500_000])

        with patch.object(reader, "eth_call", AsyncMock(return_value=output)) as call:
            balance = await reader.balance_of(TOKEN, "0x1111111111111111111111111111111111111111")

        assert balance == 2_500_000
        data = call.await_args.args[1]
        assert data.startswith("0x70a08231")

    @pytest.mark.asyncio
    async def test_token_info(self):
        """Test ERC-20 metadata decoding."""
        reader = make_reader()
        outputs = {
            "0x06fdde03": eth_abi.encode(["string"], ["PayPal USD"]),
            "0x95d89b41": eth_abi.encode(["string"], ["PYUSD"]),
            "0x313ce567": eth_abi.encode(["uint8"], [6]),
            "0x18160ddd": eth_abi.encode(["uint256"], [630_656_345_110_000]),
        }

        async def eth_call(to, data, block="latest"):
            return outputs[data]

        with patch.object(reader, "eth_call", AsyncMock(side_effect=eth_call)):
            info = await reader.token_info(TOKEN)

        assert info.name == "PayPal USD"
        assert info.symbol == "PYUSD"
        assert info.decimals == 6
        assert info.total_supply == Decimal("630656345.11")

    @pytest.mark.asyncio
    async def test_fee_estimates_default_priority_fee(self):
        """Test fee suggestions when the node lacks eth_maxPriorityFeePerGas."""
        reader = make_reader()

        async def request(method, params=None):
            if method == "eth_gasPrice":
                return hex(3_000_000_000)
            if method == "eth_getBlockByNumber":
                return {"number": "0x10", "timestamp": "0x20", "baseFeePerGas": hex(2_000_000_000)}
            raise RPCError("method not found", code=-32601, method=method)

        with patch.object(reader, "_request", AsyncMock(side_effect=request)):
            fees = await reader.fee_estimates()

        assert fees.gas_price == Decimal(3)
        assert fees.max_priority_fee_per_gas == Decimal(1)
        assert fees.max_fee_per_gas == Decimal(5)
