"""Shared fakes and fixtures. Nothing here touches the network."""

import asyncio
from decimal import Decimal
from types import SimpleNamespace
from typing import Any, Dict, List, Optional

import pytest

from pyusd_dashboard.config import settings
from pyusd_dashboard.events import TRANSFER_TOPIC
from pyusd_dashboard.models import BlockHeader, FeeEstimates, TokenInfo
from pyusd_dashboard.rpc_client import RPCError
from pyusd_dashboard.warehouse import Warehouse

TOKEN = "0x6c3ea9036406852006290770BEdFcAbA0e23A0e8"
ALICE = "0x1111111111111111111111111111111111111111"
BOB = "0x2222222222222222222222222222222222222222"
CAROL = "0x3333333333333333333333333333333333333333"

GENESIS_TIMESTAMP = 1_700_000_000


def tx_hash(n: int) -> str:
    return "0x" + format(n, "064x")


def address_topic(address: str) -> str:
    return "0x" + "0" * 24 + address[2:].lower()


def make_log(
    n: int,
    block: int,
    value: int,
    sender: str = ALICE,
    receiver: str = BOB,
    log_index: int = 0,
    removed: bool = False,
    hash_: Optional[str] = None,
) -> Dict[str, Any]:
    """Build a raw Transfer log as returned by eth_getLogs."""
    return {
        "address": TOKEN.lower(),
        "topics": [TRANSFER_TOPIC, address_topic(sender), address_topic(receiver)],
        "data": "0x" + value.to_bytes(32, "big").hex(),
        "blockNumber": hex(block),
        "transactionHash": hash_ or tx_hash(n),
        "logIndex": hex(log_index),
        "removed": removed,
    }


def block_timestamp(number: int) -> int:
    return GENESIS_TIMESTAMP + number * 12


class FakeChainReader:
    """In-memory stand-in for ChainReader."""

    def __init__(self, head: int = 100, logs=(), filter_supported: bool = True, max_block_range: int = 5):
        self.head = head
        self.logs: List[Dict[str, Any]] = list(logs)
        self.max_block_range = max_block_range
        self.filter_supported = filter_supported
        self.filter_error: Optional[Exception] = None
        self.uninstall_error: Optional[Exception] = None
        self.head_error: Optional[Exception] = None
        self.pending_changes: List[Dict[str, Any]] = []
        self.installed = set()
        self.uninstalled: List[str] = []
        self.log_queries: List[tuple] = []
        self.healthy = True
        self.balance = 0
        self._filters = 0

    async def current_block_number(self) -> int:
        if self.head_error:
            raise self.head_error
        return self.head

    async def get_logs_in_range(self, address, topics, from_block, to_block):
        self.log_queries.append((from_block, to_block))
        return [
            log for log in self.logs
            if from_block <= int(log["blockNumber"], 16) <= to_block
        ]

    async def get_block(self, number: int) -> BlockHeader:
        return BlockHeader(number=number, timestamp=block_timestamp(number), base_fee_per_gas=None)

    async def new_filter(self, address, topics) -> str:
        if not self.filter_supported:
            raise RPCError("eth_newFilter: method not supported", code=-32601, method="eth_newFilter")
        self._filters += 1
        filter_id = hex(self._filters)
        self.installed.add(filter_id)
        return filter_id

    async def get_filter_changes(self, filter_id: str):
        if self.filter_error:
            raise self.filter_error
        changes, self.pending_changes = self.pending_changes, []
        return changes

    async def uninstall_filter(self, filter_id: str) -> bool:
        self.uninstalled.append(filter_id)
        if self.uninstall_error:
            raise self.uninstall_error
        self.installed.discard(filter_id)
        return True

    async def balance_of(self, token: str, holder: str) -> int:
        return self.balance

    async def token_info(self, token: str) -> TokenInfo:
        return TokenInfo(name="PayPal USD", symbol="PYUSD", decimals=6, total_supply=Decimal("1000000.5"))

    async def fee_estimates(self) -> FeeEstimates:
        return FeeEstimates(
            gas_price=Decimal("12.5"),
            max_fee_per_gas=Decimal("25"),
            max_priority_fee_per_gas=Decimal("1"),
        )

    async def health_check(self) -> bool:
        return self.healthy


class FakeWarehouse(Warehouse):
    """Warehouse returning canned rows per query template."""

    def __init__(self, results: Dict[str, List[Dict[str, Any]]] = None, error: Exception = None):
        super().__init__(project="test-project", table=settings.warehouse_table, timeout=5)
        self.results = results or {}
        self.error = error
        self.calls: List[tuple] = []

    async def query(self, template: str, params: Dict[str, Any] = None) -> List[Dict[str, Any]]:
        self.calls.append((template, params))
        if self.error:
            raise self.error
        return [dict(row) for row in self.results.get(template, [])]


class StubModel:
    """Generative model double exposing generate_content_async."""

    def __init__(self, text: str = None, error: Exception = None, delay: float = 0):
        self.text = text
        self.error = error
        self.delay = delay
        self.prompts: List[str] = []

    async def generate_content_async(self, prompt: str):
        self.prompts.append(prompt)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error:
            raise self.error
        return SimpleNamespace(text=self.text)


@pytest.fixture
def reader():
    return FakeChainReader()


@pytest.fixture
def failing_model():
    return StubModel(error=RuntimeError("generative endpoint unreachable"))
