"""Tests for Transfer log decoding."""

from datetime import datetime, timezone
from decimal import Decimal

import pytest
from eth_utils import to_checksum_address

from conftest import ALICE, BOB, block_timestamp, make_log, tx_hash
from pyusd_dashboard.events import TRANSFER_TOPIC, parse_transfer_log, to_token_units, topic_to_address
from pyusd_dashboard.models import DecodeError, Transfer


class TestTransferDecoding:
    """Test cases for parse_transfer_log."""

    def test_transfer_topic(self):
        """Test the topic is keccak of the canonical event signature."""
        assert TRANSFER_TOPIC == "0xddf252ad1be2c89b69c2b068fc378daa952ba7f163c4a11628f55a4df523b3ef"

    def test_parse_valid_log(self):
        """Test a well-formed log decodes into a Transfer."""
        log = make_log(1, 42, 1_500_000, sender=ALICE, receiver=BOB, log_index=3)

        transfer = parse_transfer_log(log, block_timestamp(42), 6)

        assert transfer.hash == tx_hash(1)
        assert transfer.from_address == to_checksum_address(ALICE)
        assert transfer.to_address == to_checksum_address(BOB)
        assert transfer.value == Decimal("1.5")
        assert transfer.block_number == 42
        assert transfer.log_index == 3
        assert transfer.timestamp == datetime.fromtimestamp(block_timestamp(42), tz=timezone.utc)

    def test_amount_keeps_minor_units(self):
        """Test amounts are scaled without rounding."""
        assert to_token_units(1, 6) == Decimal("0.000001")
        assert to_token_units(123_456_789, 6) == Decimal("123.456789")

    def test_wrong_topic_rejected(self):
        """Test a log of another event raises DecodeError."""
        log = make_log(1, 42, 10)
        log["topics"][0] = "0x" + "ab" * 32

        with pytest.raises(DecodeError):
            parse_transfer_log(log, block_timestamp(42), 6)

    def test_missing_topic_rejected(self):
        """Test a log without both indexed addresses raises DecodeError."""
        log = make_log(1, 42, 10)
        log["topics"] = log["topics"][:2]

        with pytest.raises(DecodeError):
            parse_transfer_log(log, block_timestamp(42), 6)

    def test_malformed_data_rejected(self):
        """Test truncated data raises DecodeError."""
        log = make_log(1, 42, 10)
        log["data"] = "0x1234"

        with pytest.raises(DecodeError):
            parse_transfer_log(log, block_timestamp(42), 6)

    def test_missing_field_rejected(self):
        """Test a log missing its block number raises DecodeError."""
        log = make_log(1, 42, 10)
        del log["blockNumber"]

        with pytest.raises(DecodeError):
            parse_transfer_log(log, block_timestamp(42), 6)

    def test_topic_length_checked(self):
        """Test a short topic is not accepted as an address."""
        with pytest.raises(DecodeError):
            topic_to_address("0x" + "11" * 20)


class TestTransferSerialization:
    """Test cases for Transfer.to_dict."""

    def test_six_fractional_digits(self):
        """Test values always carry exactly six fractional digits."""
        transfer = Transfer(
            hash=tx_hash(7),
            from_address=ALICE,
            to_address=BOB,
            value=Decimal("1000000"),
            block_number=10,
            timestamp=datetime(2024, 3, 1, 12, 30, 5, tzinfo=timezone.utc),
        )

        data = transfer.to_dict()

        assert data["value"] == "1000000.000000"
        assert data["timestamp"] == "2024-03-01T12:30:05.000Z"
        assert data["blockNumber"] == 10
        assert data["from"] == ALICE
        assert data["to"] == BOB
