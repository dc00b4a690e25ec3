"""Tests for evmdecoder.tokens.classifier."""

import pytest
from eth_abi import encode as abi_encode

from evmdecoder.models.schema import LogEntry, TokenStandard
from evmdecoder.tokens.classifier import (
    Classification,
    EventKind,
    classify,
    extract_transfers,
    parse_transfer,
)
from evmdecoder.tokens.constants import (
    APPROVAL_FOR_ALL_TOPIC,
    APPROVAL_TOPIC,
    TRANSFER_BATCH_TOPIC,
    TRANSFER_SINGLE_TOPIC,
    TRANSFER_TOPIC,
)

ALICE = "0x" + "a1" * 20
BOB = "0x" + "b2" * 20
OPERATOR = "0x" + "0e" * 20
TOKEN = "0x" + "cd" * 20


def _topic(address: str) -> str:
    return "0x" + "0" * 24 + address[2:]


def _uint_topic(value: int) -> str:
    return "0x" + value.to_bytes(32, "big").hex()


def _words(*values: int) -> str:
    return "0x" + abi_encode(["uint256"] * len(values), list(values)).hex()


class TestClassify:
    @pytest.mark.parametrize("topic0,count,expected", [
        (TRANSFER_TOPIC, 3, Classification(EventKind.TRANSFER, TokenStandard.ERC20)),
        (TRANSFER_TOPIC, 4, Classification(EventKind.TRANSFER, TokenStandard.ERC721)),
        (APPROVAL_TOPIC, 3, Classification(EventKind.APPROVAL, TokenStandard.ERC20)),
        (APPROVAL_TOPIC, 4, Classification(EventKind.APPROVAL, TokenStandard.ERC721)),
        (TRANSFER_SINGLE_TOPIC, 4, Classification(EventKind.TRANSFER_SINGLE, TokenStandard.ERC1155)),
        (TRANSFER_BATCH_TOPIC, 4, Classification(EventKind.TRANSFER_BATCH, TokenStandard.ERC1155)),
        (APPROVAL_FOR_ALL_TOPIC, 3, Classification(EventKind.APPROVAL_FOR_ALL, TokenStandard.ERC721)),
    ])
    def test_known_events(self, topic0, count, expected):
        assert classify(topic0, count) == expected

    def test_transfer_with_unexpected_topic_count(self):
        assert classify(TRANSFER_TOPIC, 2) is None
        assert classify(TRANSFER_TOPIC, 5) is None

    def test_unknown_topic(self):
        assert classify("0x" + "12" * 32, 3) is None

    def test_topic_case_is_ignored(self):
        assert classify(TRANSFER_TOPIC.upper().replace("0X", "0x"), 3).standard == TokenStandard.ERC20


class TestParseTransfer:
    def test_erc20_value_from_data(self):
        log = LogEntry(
            tx_id="t1", log_index=2, address=TOKEN,
            topics=[TRANSFER_TOPIC, _topic(ALICE), _topic(BOB)],
            data=_words(10**18),
        )
        transfer = parse_transfer(log, classify(TRANSFER_TOPIC, 3))

        assert transfer.from_address == ALICE
        assert transfer.to_address == BOB
        assert transfer.value == str(10**18)
        assert transfer.token_address == TOKEN
        assert transfer.log_index == 2

    def test_erc20_empty_data_is_zero(self):
        log = LogEntry(log_index=0, address=TOKEN, topics=[TRANSFER_TOPIC, _topic(ALICE), _topic(BOB)], data="0x")
        assert parse_transfer(log, classify(TRANSFER_TOPIC, 3)).value == "0"

    def test_erc721_value_from_topic(self):
        log = LogEntry(
            log_index=0, address=TOKEN,
            topics=[TRANSFER_TOPIC, _topic(ALICE), _topic(BOB), _uint_topic(42)],
            data="0x",
        )
        transfer = parse_transfer(log, classify(TRANSFER_TOPIC, 4))
        assert transfer.value == "42"
        assert transfer.to_address == BOB

    def test_erc1155_single(self):
        log = LogEntry(
            log_index=0, address=TOKEN,
            topics=[TRANSFER_SINGLE_TOPIC, _topic(OPERATOR), _topic(ALICE), _topic(BOB)],
            data=_words(7, 3),
        )
        transfer = parse_transfer(log, classify(TRANSFER_SINGLE_TOPIC, 4))
        assert transfer.from_address == ALICE
        assert transfer.to_address == BOB
        assert transfer.value == "7:3"

    def test_uint256_max_survives(self):
        log = LogEntry(
            log_index=0, address=TOKEN,
            topics=[TRANSFER_TOPIC, _topic(ALICE), _topic(BOB)],
            data=_words(2**256 - 1),
        )
        assert parse_transfer(log, classify(TRANSFER_TOPIC, 3)).value == str(2**256 - 1)


class TestExtractTransfers:
    def test_approval_registers_token_without_transfer(self):
        logs = [LogEntry(
            tx_id="t1", log_index=0, address=TOKEN,
            topics=[APPROVAL_TOPIC, _topic(ALICE), _topic(BOB)], data=_words(5),
        )]
        transfers, tokens = extract_transfers(logs, height=10)

        assert transfers == []
        assert len(tokens) == 1
        assert tokens[0].type == TokenStandard.ERC20
        assert tokens[0].first_seen_tx == "t1"
        assert tokens[0].first_seen_height == 10

    def test_batch_registers_erc1155(self):
        logs = [LogEntry(
            log_index=0, address=TOKEN,
            topics=[TRANSFER_BATCH_TOPIC, _topic(OPERATOR), _topic(ALICE), _topic(BOB)], data="0x",
        )]
        transfers, tokens = extract_transfers(logs)
        assert transfers == []
        assert tokens[0].type == TokenStandard.ERC1155

    def test_malformed_payload_is_skipped(self):
        logs = [
            LogEntry(log_index=0, address=TOKEN, topics=[TRANSFER_TOPIC, _topic(ALICE), _topic(BOB)], data="0x1234"),
            LogEntry(log_index=1, address=TOKEN, topics=[TRANSFER_TOPIC, _topic(ALICE), _topic(BOB)], data=_words(9)),
        ]
        transfers, tokens = extract_transfers(logs)

        assert [t.log_index for t in transfers] == [1]
        assert len(tokens) == 2

    def test_unrelated_and_anonymous_logs(self):
        logs = [
            LogEntry(log_index=0, address=TOKEN, topics=[], data="0x"),
            LogEntry(log_index=1, address=TOKEN, topics=["0x" + "12" * 32], data="0x"),
        ]
        assert extract_transfers(logs) == ([], [])
