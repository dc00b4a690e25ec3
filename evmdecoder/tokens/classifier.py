"""Classify event logs by token standard and extract transfers.

The Transfer event shares one topic between ERC-20 and ERC-721; they differ
only in whether the third argument is indexed:

- ERC-20:  topics = [sig, from, to],          data = value
- ERC-721: topics = [sig, from, to, tokenId], data = empty
- ERC-1155 TransferSingle: topics = [sig, operator, from, to], data = (id, value)
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import NamedTuple

from eth_abi import decode as abi_decode
from eth_abi.exceptions import DecodingError

from evmdecoder.errors import MalformedLogPayload
from evmdecoder.models.schema import LogEntry, Token, TokenStandard, TokenTransfer
from evmdecoder.tokens.constants import (
    APPROVAL_FOR_ALL_TOPIC,
    APPROVAL_TOPIC,
    TRANSFER_BATCH_TOPIC,
    TRANSFER_SINGLE_TOPIC,
    TRANSFER_TOPIC,
)

logger = logging.getLogger(__name__)


class EventKind(str, Enum):
    TRANSFER = "Transfer"
    APPROVAL = "Approval"
    APPROVAL_FOR_ALL = "ApprovalForAll"
    TRANSFER_SINGLE = "TransferSingle"
    TRANSFER_BATCH = "TransferBatch"


class Classification(NamedTuple):
    kind: EventKind
    standard: TokenStandard

    @property
    def yields_transfer(self) -> bool:
        return self.kind in (EventKind.TRANSFER, EventKind.TRANSFER_SINGLE)


def classify(topic0: str, topic_count: int) -> Classification | None:
    """Pure mapping of (topic0, topic count) to an event kind and token standard."""
    topic0 = topic0.lower()

    if topic0 in (TRANSFER_TOPIC, APPROVAL_TOPIC):
        kind = EventKind.TRANSFER if topic0 == TRANSFER_TOPIC else EventKind.APPROVAL
        if topic_count == 4:
            return Classification(kind, TokenStandard.ERC721)
        if topic_count == 3:
            return Classification(kind, TokenStandard.ERC20)
        return None

    if topic0 == TRANSFER_SINGLE_TOPIC:
        return Classification(EventKind.TRANSFER_SINGLE, TokenStandard.ERC1155)
    if topic0 == TRANSFER_BATCH_TOPIC:
        return Classification(EventKind.TRANSFER_BATCH, TokenStandard.ERC1155)
    if topic0 == APPROVAL_FOR_ALL_TOPIC:
        return Classification(EventKind.APPROVAL_FOR_ALL, TokenStandard.ERC721)
    return None


def _topic_to_address(topic: str) -> str:
    """Convert a 32-byte padded topic to a 20-byte hex address."""
    hex_str = topic[2:] if topic.startswith("0x") else topic
    if len(hex_str) != 64:
        raise MalformedLogPayload(f"topic is not 32 bytes: {topic}")
    return "0x" + hex_str[-40:].lower()


def _topic_to_int(topic: str) -> int:
    try:
        return int(topic, 16)
    except ValueError as exc:
        raise MalformedLogPayload(f"topic is not hex: {topic}") from exc


def _data_bytes(data: str) -> bytes:
    try:
        return bytes.fromhex(data[2:] if data.startswith("0x") else data)
    except ValueError as exc:
        raise MalformedLogPayload(f"log data is not hex: {exc}") from exc


def _decode_uints(data: str, count: int) -> tuple[int, ...]:
    try:
        return tuple(abi_decode(["uint256"] * count, _data_bytes(data)))
    except DecodingError as exc:
        raise MalformedLogPayload(f"expected {count} uint256 words: {exc}") from exc


def parse_transfer(log: LogEntry, classification: Classification) -> TokenTransfer:
    """Build the TokenTransfer for a transfer-classified log.

    Raises MalformedLogPayload when topics or data do not fit the event shape.
    """
    topics = log.topics

    if classification.kind == EventKind.TRANSFER_SINGLE:
        if len(topics) < 4:
            raise MalformedLogPayload("TransferSingle needs operator, from and to topics")
        token_id, amount = _decode_uints(log.data, 2)
        from_addr, to_addr = _topic_to_address(topics[2]), _topic_to_address(topics[3])
        value = f"{token_id}:{amount}"
    elif classification.standard == TokenStandard.ERC721:
        from_addr, to_addr = _topic_to_address(topics[1]), _topic_to_address(topics[2])
        value = str(_topic_to_int(topics[3]))
    else:
        from_addr, to_addr = _topic_to_address(topics[1]), _topic_to_address(topics[2])
        if log.data in ("", "0x"):
            value = "0"
        else:
            (amount,) = _decode_uints(log.data, 1)
            value = str(amount)

    return TokenTransfer(
        tx_id=log.tx_id,
        log_index=log.log_index,
        token_address=log.address.lower(),
        from_address=from_addr,
        to_address=to_addr,
        value=value,
    )


def extract_transfers(
    logs: list[LogEntry],
    height: int | None = None,
) -> tuple[list[TokenTransfer], list[Token]]:
    """Classify each log. Returns (transfers, token registry observations).

    Every classified log registers its contract as a token. Approvals and
    TransferBatch only register; malformed payloads are skipped, the log
    itself is still stored by the caller.
    """
    transfers: list[TokenTransfer] = []
    tokens: list[Token] = []

    for log in logs:
        if not log.topics:
            continue
        classification = classify(log.topics[0], len(log.topics))
        if classification is None:
            continue

        tokens.append(Token(
            address=log.address.lower(),
            type=classification.standard,
            first_seen_tx=log.tx_id or None,
            first_seen_height=height,
        ))

        if not classification.yields_transfer:
            continue
        try:
            transfers.append(parse_transfer(log, classification))
        except MalformedLogPayload as e:
            logger.debug(f"Skipping {classification.kind.value} log {log.tx_id}#{log.log_index}: {e}")

    return transfers, tokens
