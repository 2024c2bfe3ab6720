"""Typed result models for chain, warehouse and report data."""

from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Literal, Optional, Type, TypeVar

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

ModelT = TypeVar("ModelT", bound=BaseModel)

AMOUNT_QUANTUM = Decimal("0.000001")


class DecodeError(Exception):
    """Raised when an upstream payload is missing or mistyping a field."""
    pass


def decode(model: Type[ModelT], data: Any) -> ModelT:
    """Validate one raw payload into ``model`` or raise DecodeError."""
    try:
        return model.model_validate(data)
    except ValidationError as e:
        raise DecodeError(f"{model.__name__}: {e.error_count()} invalid field(s): {e}") from e


def decode_all(model: Type[ModelT], rows: Iterable[Any]) -> List[ModelT]:
    """Validate a list of raw rows."""
    return [decode(model, row) for row in rows]


def format_timestamp(value: datetime) -> str:
    """Render a timestamp as UTC ISO-8601 with millisecond precision."""
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.000Z")


def _hex_to_int(value: Any) -> Any:
    if isinstance(value, str) and value.startswith("0x"):
        return int(value, 16)
    return value


# ---------------------------------------------------------------------------
# Chain models
# ---------------------------------------------------------------------------

class RawLog(BaseModel):
    """A log entry as returned by eth_getLogs / eth_getFilterChanges."""

    model_config = ConfigDict(populate_by_name=True)

    address: str
    topics: List[str]
    data: str
    block_number: int = Field(alias="blockNumber")
    transaction_hash: str = Field(alias="transactionHash")
    log_index: int = Field(default=0, alias="logIndex")
    removed: bool = False

    @field_validator("block_number", "log_index", mode="before")
    @classmethod
    def parse_hex(cls, value: Any) -> Any:
        return _hex_to_int(value)


class BlockHeader(BaseModel):
    """The subset of a block the dashboard reads."""

    model_config = ConfigDict(populate_by_name=True)

    number: int
    timestamp: int
    base_fee_per_gas: Optional[int] = Field(default=None, alias="baseFeePerGas")

    @field_validator("number", "timestamp", "base_fee_per_gas", mode="before")
    @classmethod
    def parse_hex(cls, value: Any) -> Any:
        return _hex_to_int(value)


class Transfer(BaseModel):
    """One token movement in the live feed.

    ``value`` is in whole tokens with exactly six fractional digits, no
    display rounding applied.
    """

    model_config = ConfigDict(frozen=True)

    hash: str
    from_address: str
    to_address: str
    value: Decimal
    block_number: int
    timestamp: datetime
    log_index: int = 0

    def to_dict(self) -> Dict[str, Any]:
        """Serialize with the field names the dashboard UI expects."""
        return {
            "hash": self.hash,
            "from": self.from_address,
            "to": self.to_address,
            "value": format(self.value.quantize(AMOUNT_QUANTUM), "f"),
            "timestamp": format_timestamp(self.timestamp),
            "blockNumber": self.block_number,
        }


class TokenInfo(BaseModel):
    """ERC-20 metadata read through eth_call."""

    name: str
    symbol: str
    decimals: int
    total_supply: Decimal


class FeeEstimates(BaseModel):
    """Current fee data in gwei."""

    gas_price: Decimal
    max_fee_per_gas: Optional[Decimal] = None
    max_priority_fee_per_gas: Optional[Decimal] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "gasPrice": str(self.gas_price),
            "maxFeePerGas": str(self.max_fee_per_gas) if self.max_fee_per_gas is not None else None,
            "maxPriorityFeePerGas": (
                str(self.max_priority_fee_per_gas) if self.max_priority_fee_per_gas is not None else None
            ),
        }


# ---------------------------------------------------------------------------
# Warehouse row models (amounts are raw minor units)
# ---------------------------------------------------------------------------

class HolderBalanceRow(BaseModel):
    address: str
    balance: Decimal


class TotalSupplyRow(BaseModel):
    total_supply: Decimal = Decimal(0)

    @field_validator("total_supply", mode="before")
    @classmethod
    def none_is_zero(cls, value: Any) -> Any:
        return Decimal(0) if value is None else value


class HolderCountRow(BaseModel):
    holder_count: int


class SupplyTotalsRow(BaseModel):
    total_minted: Optional[Decimal] = None
    total_burned: Optional[Decimal] = None
    current_supply: Optional[Decimal] = None


class SupplyHistoryRow(BaseModel):
    formatted_date: str
    daily_change: Decimal
    cumulative_supply: Decimal


class PeriodChangeRow(BaseModel):
    period: str
    avg_daily_change: Decimal
    total_change: Decimal


class DailyVolumeRow(BaseModel):
    formatted_date: str
    volume: Decimal


class VolumeSummaryRow(BaseModel):
    volume_24h: Optional[Decimal] = None
    prev_volume_24h: Optional[Decimal] = None
    volume_7d: Optional[Decimal] = None
    prev_volume_7d: Optional[Decimal] = None
    volume_30d: Optional[Decimal] = None
    prev_volume_30d: Optional[Decimal] = None


class MevMonthlyRow(BaseModel):
    month: str
    total_blocks: int
    total_transactions: int
    sandwich_blocks: int
    frontrun_blocks: int
    total_volume: Decimal


class MevDailyRow(BaseModel):
    activity_date: date
    sandwich_blocks: int
    frontrun_blocks: int
    total_blocks: int
    total_volume: Decimal


class BlockTransferRow(BaseModel):
    block_number: int
    block_timestamp: datetime
    transaction_hash: str
    from_address: str
    to_address: str
    amount: Decimal


class MarketHourRow(BaseModel):
    hour: datetime
    tx_count: int
    volume: Decimal
    unique_senders: int
    unique_receivers: int
    max_transfer: Decimal
    whale_txs: int = 0
    whale_volume: Decimal = Decimal(0)
    accumulation_wallets: int = 0
    distribution_wallets: int = 0


class AddressCountRow(BaseModel):
    tx_count: int


class FirstTransactionRow(BaseModel):
    first_tx_date: Optional[datetime] = None


class AddressStatsRow(BaseModel):
    send_txs: int = 0
    receive_txs: int = 0
    total_sent: Optional[Decimal] = None
    total_received: Optional[Decimal] = None
    max_sent: Optional[Decimal] = None
    max_received: Optional[Decimal] = None
    avg_sent: Optional[Decimal] = None
    avg_received: Optional[Decimal] = None


# ---------------------------------------------------------------------------
# Report models
# ---------------------------------------------------------------------------

class WalletStats(BaseModel):
    """Per-address activity summary in whole tokens, display-rounded."""

    total_transactions: int = 0
    first_transaction_date: Optional[str] = None
    send_transactions: int = 0
    receive_transactions: int = 0
    total_sent: float = 0
    total_received: float = 0
    max_sent: float = 0
    max_received: float = 0
    avg_sent: float = 0
    avg_received: float = 0


class MarketSnapshot(BaseModel):
    """One hour of aggregated market activity in whole tokens."""

    model_config = ConfigDict(populate_by_name=True)

    timestamp: str
    transaction_count: int = Field(alias="transactionCount")
    volume: float
    unique_senders: int = Field(alias="uniqueSenders")
    unique_receivers: int = Field(alias="uniqueReceivers")
    max_transfer: float = Field(alias="maxTransfer")
    whale_transactions: int = Field(alias="whaleTransactions")
    whale_volume: float = Field(alias="whaleVolume")
    accumulation_wallets: int = Field(alias="accumulationWallets")
    distribution_wallets: int = Field(alias="distributionWallets")


Level = Literal["HIGH", "MEDIUM", "LOW"]


class Prediction(BaseModel):
    """A market movement prediction, from the model or the rule-based fallback."""

    model_config = ConfigDict(populate_by_name=True)

    type: Literal["ACCUMULATION", "DISTRIBUTION", "WHALE_MOVEMENT", "NORMAL"]
    probability: float = Field(ge=0, le=1)
    reasoning: str = Field(min_length=1)
    suggested_action: str = Field(alias="suggestedAction", min_length=1)
    timeframe: str = Field(min_length=1)
    confidence: Level
    potential_impact: Level = Field(alias="potentialImpact")

    @field_validator("probability")
    @classmethod
    def round_probability(cls, value: float) -> float:
        return round(value, 2)
