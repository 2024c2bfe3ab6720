"""Ethereum JSON-RPC client."""

import asyncio
import itertools
import time
from decimal import Decimal
from typing import Any, Dict, List, Optional

import aiohttp
import eth_abi
import structlog
from eth_utils import decode_hex, encode_hex, keccak, to_checksum_address
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from pyusd_dashboard.config import settings
from pyusd_dashboard.models import BlockHeader, DecodeError, FeeEstimates, TokenInfo, decode
from pyusd_dashboard.telemetry import rpc_request_duration, rpc_subrange_failures

logger = structlog.get_logger(__name__)

TRANSIENT_ERRORS = (aiohttp.ClientError, asyncio.TimeoutError)

DEFAULT_PRIORITY_FEE_WEI = 1_000_000_000


class RPCError(Exception):
    """Raised when a JSON-RPC call fails or returns an error object."""

    def __init__(self, message: str, code: Optional[int] = None, method: Optional[str] = None):
        super().__init__(message)
        self.code = code
        self.method = method


def function_selector(signature: str) -> str:
    """Return the 4-byte selector of a contract function signature."""
    return encode_hex(keccak(text=signature)[:4])


class ChainReader:
    """Client for reading token and chain state from an Ethereum JSON-RPC node.

    One instance is created per process and shared by reference. The
    underlying HTTP session is recreated once it is older than
    ``max_connection_age`` seconds.
    """

    def __init__(
        self,
        rpc_url: str = None,
        timeout: float = None,
        max_block_range: int = None,
        batch_delay: float = None,
        max_attempts: int = None,
        max_connection_age: float = None,
        retry_min_wait: float = None,
        retry_max_wait: float = None,
    ):
        self.rpc_url = rpc_url or settings.rpc_url
        self.timeout = timeout or settings.rpc_timeout
        self.max_block_range = max_block_range or settings.rpc_max_block_range
        self.batch_delay = settings.rpc_batch_delay if batch_delay is None else batch_delay
        self.max_attempts = max_attempts or settings.rpc_max_attempts
        self.max_connection_age = max_connection_age or settings.rpc_connection_max_age
        self.retry_min_wait = settings.rpc_retry_min_wait if retry_min_wait is None else retry_min_wait
        self.retry_max_wait = settings.rpc_retry_max_wait if retry_max_wait is None else retry_max_wait
        self.session: Optional[aiohttp.ClientSession] = None
        self._session_created_at = 0.0
        self._session_lock = asyncio.Lock()
        self._ids = itertools.count(1)

    async def __aenter__(self):
        """Async context manager entry."""
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Async context manager exit."""
        await self.close()

    async def connect(self):
        """Open the HTTP session to the node."""
        await self._get_session()

    async def close(self):
        """Close the HTTP session. Safe to call more than once."""
        if self.session and not self.session.closed:
            await self.session.close()
        self.session = None

    def _session_is_fresh(self) -> bool:
        age = time.monotonic() - self._session_created_at
        return self.session is not None and not self.session.closed and age < self.max_connection_age

    async def _get_session(self) -> aiohttp.ClientSession:
        """Return a live session, recreating it past the age threshold."""
        if self._session_is_fresh():
            return self.session

        async with self._session_lock:
            # Another caller may have replaced it while we waited
            if self._session_is_fresh():
                return self.session

            if self.session is not None and not self.session.closed:
                age = time.monotonic() - self._session_created_at
                logger.info("Recycling JSON-RPC session", age_seconds=round(age))
                await self.session.close()

            self.session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout)
            )
            self._session_created_at = time.monotonic()
            return self.session

    async def _post(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        session = await self._get_session()
        async with session.post(self.rpc_url, json=payload) as response:
            response.raise_for_status()
            return await response.json(content_type=None)

    async def _request(self, method: str, params: List[Any] = None) -> Any:
        """Make a JSON-RPC call with retry logic on transport errors.

        Raises:
            RPCError: On an error response or when all attempts fail
        """
        payload = {
            "jsonrpc": "2.0",
            "id": next(self._ids),
            "method": method,
            "params": params or [],
        }

        try:
            with rpc_request_duration.labels(method).time():
                async for attempt in AsyncRetrying(
                    stop=stop_after_attempt(self.max_attempts),
                    wait=wait_exponential(multiplier=1, min=self.retry_min_wait, max=self.retry_max_wait),
                    retry=retry_if_exception_type(TRANSIENT_ERRORS),
                    reraise=True,
                ):
                    with attempt:
                        body = await self._post(payload)
        except TRANSIENT_ERRORS as e:
            logger.error("JSON-RPC request failed", method=method, error=str(e) or type(e).__name__)
            raise RPCError(f"{method} failed after {self.max_attempts} attempts: {e}", method=method) from e

        if not isinstance(body, dict):
            raise RPCError(f"{method} returned a non-object response", method=method)

        error = body.get("error")
        if error:
            message = error.get("message", "unknown error") if isinstance(error, dict) else str(error)
            code = error.get("code") if isinstance(error, dict) else None
            raise RPCError(f"{method}: {message}", code=code, method=method)

        return body.get("result")

    async def current_block_number(self) -> int:
        """Get the latest block number."""
        result = await self._request("eth_blockNumber")
        return int(result, 16)

    async def get_logs(
        self,
        address: str,
        topics: List[Optional[str]],
        from_block: int,
        to_block: int,
    ) -> List[Dict[str, Any]]:
        """Run a single eth_getLogs call.

        The span must already be within the provider's block-range limit.
        """
        result = await self._request("eth_getLogs", [{
            "address": address,
            "topics": topics,
            "fromBlock": hex(from_block),
            "toBlock": hex(to_block),
        }])
        if not isinstance(result, list):
            raise RPCError("eth_getLogs returned a non-list result", method="eth_getLogs")
        return result

    async def get_logs_in_range(
        self,
        address: str,
        topics: List[Optional[str]],
        from_block: int,
        to_block: int,
    ) -> List[Dict[str, Any]]:
        """Fetch logs for an arbitrary span in provider-sized chunks.

        Sub-ranges are queried sequentially with a short pause between
        calls. A sub-range that still fails after retries is logged and
        skipped, so the result may be partial but this never raises.

        Args:
            address: Contract address emitting the logs
            topics: Topic filter
            from_block: First block, inclusive
            to_block: Last block, inclusive

        Returns:
            Concatenated logs of all successful sub-ranges
        """
        logs: List[Dict[str, Any]] = []
        if to_block < from_block:
            return logs

        for start in range(from_block, to_block + 1, self.max_block_range):
            end = min(start + self.max_block_range - 1, to_block)

            if start > from_block and self.batch_delay > 0:
                await asyncio.sleep(self.batch_delay)

            try:
                batch = await self.get_logs(address, topics, start, end)
                logs.extend(batch)
                logger.debug("Fetched logs", from_block=start, to_block=end, count=len(batch))
            except Exception as e:
                rpc_subrange_failures.inc()
                logger.error(
                    "Failed to fetch logs for sub-range",
                    from_block=start,
                    to_block=end,
                    error=str(e)
                )

        return logs

    async def get_block(self, number: int) -> BlockHeader:
        """Get a block header by number."""
        result = await self._request("eth_getBlockByNumber", [hex(number), False])
        if result is None:
            raise RPCError(f"Block {number} not found", method="eth_getBlockByNumber")
        return decode(BlockHeader, result)

    async def eth_call(self, to: str, data: str, block: str = "latest") -> bytes:
        """Execute a read-only contract call and return the raw output."""
        result = await self._request("eth_call", [{"to": to, "data": data}, block])
        return decode_hex(result or "0x")

    async def balance_of(self, token: str, holder: str) -> int:
        """Get a holder's token balance in minor units."""
        data = function_selector("balanceOf(address)") + encode_hex(
            eth_abi.encode(["address"], [to_checksum_address(holder)])
        )[2:]
        output = await self.eth_call(token, data)
        try:
            (balance,) = eth_abi.decode(["uint256"], output)
        except Exception as e:
            raise DecodeError(f"Invalid balanceOf output for {holder}: {e}") from e
        return balance

    async def token_info(self, token: str) -> TokenInfo:
        """Read name, symbol, decimals and total supply of an ERC-20 token."""
        name_out, symbol_out, decimals_out, supply_out = await asyncio.gather(
            self.eth_call(token, function_selector("name()")),
            self.eth_call(token, function_selector("symbol()")),
            self.eth_call(token, function_selector("decimals()")),
            self.eth_call(token, function_selector("totalSupply()")),
        )

        try:
            (name,) = eth_abi.decode(["string"], name_out)
            (symbol,) = eth_abi.decode(["string"], symbol_out)
            (decimals,) = eth_abi.decode(["uint8"], decimals_out)
            (total_supply,) = eth_abi.decode(["uint256"], supply_out)
        except Exception as e:
            raise DecodeError(f"Invalid ERC-20 metadata for {token}: {e}") from e

        return TokenInfo(
            name=name,
            symbol=symbol,
            decimals=decimals,
            total_supply=Decimal(total_supply).scaleb(-decimals),
        )

    async def fee_estimates(self) -> FeeEstimates:
        """Get gas price and EIP-1559 fee suggestions in gwei."""
        gas_price_hex, latest = await asyncio.gather(
            self._request("eth_gasPrice"),
            self._request("eth_getBlockByNumber", ["latest", False]),
        )
        gas_price = int(gas_price_hex, 16)
        header = decode(BlockHeader, latest) if latest else None

        try:
            priority_fee = int(await self._request("eth_maxPriorityFeePerGas"), 16)
        except RPCError as e:
            logger.warning("eth_maxPriorityFeePerGas unavailable, using default", error=str(e))
            priority_fee = DEFAULT_PRIORITY_FEE_WEI

        max_fee = None
        max_priority = None
        if header is not None and header.base_fee_per_gas is not None:
            max_fee = header.base_fee_per_gas * 2 + priority_fee
            max_priority = priority_fee

        def gwei(wei: Optional[int]) -> Optional[Decimal]:
            return None if wei is None else Decimal(wei).scaleb(-9)

        return FeeEstimates(
            gas_price=gwei(gas_price),
            max_fee_per_gas=gwei(max_fee),
            max_priority_fee_per_gas=gwei(max_priority),
        )

    async def new_filter(self, address: str, topics: List[Optional[str]]) -> str:
        """Install a server-side log filter and return its id."""
        filter_id = await self._request("eth_newFilter", [{"address": address, "topics": topics}])
        if not filter_id:
            raise RPCError("eth_newFilter returned no filter id", method="eth_newFilter")
        return filter_id

    async def get_filter_changes(self, filter_id: str) -> List[Dict[str, Any]]:
        """Get logs produced since the filter was last polled."""
        result = await self._request("eth_getFilterChanges", [filter_id])
        if result is None:
            return []
        if not isinstance(result, list):
            raise RPCError("eth_getFilterChanges returned a non-list result", method="eth_getFilterChanges")
        return result

    async def uninstall_filter(self, filter_id: str) -> bool:
        """Release a server-side filter."""
        return bool(await self._request("eth_uninstallFilter", [filter_id]))

    async def health_check(self) -> bool:
        """Check if the node is healthy and responding.

        Returns:
            True if node is healthy, False otherwise
        """
        try:
            await self.current_block_number()
            return True
        except Exception:
            return False
