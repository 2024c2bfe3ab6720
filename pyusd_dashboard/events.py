"""ERC-20 Transfer event decoding."""

from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Union

import eth_abi
from eth_utils import decode_hex, encode_hex, keccak, to_checksum_address

from pyusd_dashboard.models import DecodeError, RawLog, Transfer, decode

TRANSFER_EVENT_SIGNATURE = "Transfer(address,address,uint256)"
TRANSFER_TOPIC = encode_hex(keccak(text=TRANSFER_EVENT_SIGNATURE))


def to_token_units(raw_amount: int, decimals: int) -> Decimal:
    """Scale an integer minor-unit amount to whole tokens without rounding."""
    return Decimal(raw_amount).scaleb(-decimals)


def topic_to_address(topic: str) -> str:
    """Extract the checksummed address from a 32-byte indexed topic."""
    raw = decode_hex(topic)
    if len(raw) != 32:
        raise DecodeError(f"Indexed address topic must be 32 bytes, got {len(raw)}")
    return to_checksum_address(encode_hex(raw[-20:]))


def parse_transfer_log(log: Union[Dict[str, Any], RawLog], block_timestamp: int, decimals: int) -> Transfer:
    """Decode a raw Transfer log into a Transfer.

    Args:
        log: Log object from eth_getLogs or eth_getFilterChanges
        block_timestamp: Unix timestamp of the log's block
        decimals: Token decimal count

    Returns:
        Decoded transfer

    Raises:
        DecodeError: If the log is not a well-formed Transfer event
    """
    raw = log if isinstance(log, RawLog) else decode(RawLog, log)

    if len(raw.topics) != 3 or raw.topics[0].lower() != TRANSFER_TOPIC:
        raise DecodeError(f"Log {raw.transaction_hash} is not an ERC-20 Transfer event")

    try:
        (value,) = eth_abi.decode(["uint256"], decode_hex(raw.data))
    except Exception as e:
        raise DecodeError(f"Invalid Transfer data in {raw.transaction_hash}: {e}") from e

    return Transfer(
        hash=raw.transaction_hash,
        from_address=topic_to_address(raw.topics[1]),
        to_address=topic_to_address(raw.topics[2]),
        value=to_token_units(value, decimals),
        block_number=raw.block_number,
        timestamp=datetime.fromtimestamp(block_timestamp, tz=timezone.utc),
        log_index=raw.log_index,
    )
