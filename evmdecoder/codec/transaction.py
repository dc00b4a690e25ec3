"""Decode raw RLP transaction envelopes (legacy, EIP-2930, EIP-1559).

Envelope layouts, fields in positional order:

    legacy:  rlp([nonce, gasPrice, gas, to, value, data, v, r, s])
    0x01:    0x01 || rlp([chainId, nonce, gasPrice, gas, to, value, data,
                          accessList, yParity, r, s])
    0x02:    0x02 || rlp([chainId, nonce, maxPriorityFeePerGas, maxFeePerGas,
                          gas, to, value, data, accessList, yParity, r, s])
"""

from __future__ import annotations

import base64
import binascii
from dataclasses import dataclass

import rlp
from rlp.sedes import big_endian_int
from eth_account import Account
from web3 import Web3

from evmdecoder.errors import MalformedTransaction, UnsupportedTransactionType
from evmdecoder.models.schema import DecodedTransaction, TxStatus

LEGACY_TX = 0
ACCESS_LIST_TX = 1
DYNAMIC_FEE_TX = 2

_FIELD_COUNTS = {LEGACY_TX: 9, ACCESS_LIST_TX: 11, DYNAMIC_FEE_TX: 12}


@dataclass(frozen=True)
class Envelope:
    """Positional fields of a signed envelope, enough to re-encode it exactly."""

    tx_type: int
    nonce: int
    gas_limit: int
    to: bytes
    value: int
    data: bytes
    v: int
    r: int
    s: int
    chain_id: int | None = None
    gas_price: int | None = None
    max_priority_fee_per_gas: int | None = None
    max_fee_per_gas: int | None = None
    access_list: tuple = ()

    @property
    def is_signed(self) -> bool:
        return bool(self.r or self.s)


def decode_raw_bytes(encoded: str | bytes) -> bytes:
    """Turn ingestion output into raw bytes. 0x-prefixed is hex, otherwise base64."""
    if isinstance(encoded, (bytes, bytearray)):
        return bytes(encoded)
    text = encoded.strip()
    if not text:
        raise MalformedTransaction("empty transaction bytes")
    try:
        if text[:2].lower() == "0x":
            return bytes.fromhex(text[2:])
        return base64.b64decode(text, validate=True)
    except (ValueError, binascii.Error) as exc:
        raise MalformedTransaction(f"transaction bytes are neither hex nor base64: {exc}") from exc


def _int(item, name: str) -> int:
    if not isinstance(item, bytes):
        raise MalformedTransaction(f"field {name} must be a byte string")
    try:
        return big_endian_int.deserialize(item)
    except rlp.exceptions.DeserializationError as exc:
        raise MalformedTransaction(f"field {name} is not a canonical integer") from exc


def _bytes(item, name: str) -> bytes:
    if not isinstance(item, bytes):
        raise MalformedTransaction(f"field {name} must be a byte string")
    return item


def _address(item) -> bytes:
    to = _bytes(item, "to")
    if len(to) not in (0, 20):
        raise MalformedTransaction(f"recipient must be empty or 20 bytes, got {len(to)}")
    return to


def _freeze(item):
    """Nested rlp lists -> tuples, so the envelope stays hashable."""
    if isinstance(item, list):
        return tuple(_freeze(i) for i in item)
    return item


def _thaw(item):
    if isinstance(item, tuple):
        return [_thaw(i) for i in item]
    return item


def _decode_items(payload: bytes, tx_type: int) -> list:
    try:
        items = rlp.decode(payload)
    except rlp.exceptions.RLPException as exc:
        raise MalformedTransaction(f"invalid RLP payload: {exc}") from exc
    expected = _FIELD_COUNTS[tx_type]
    if not isinstance(items, list) or len(items) != expected:
        got = len(items) if isinstance(items, list) else "a byte string"
        raise MalformedTransaction(f"type {tx_type} envelope needs {expected} fields, got {got}")
    return items


def _legacy_chain_id(v: int) -> int | None:
    # EIP-155: v = chainId * 2 + 35 + recovery
    if v < 35:
        return None
    return (v - 35) // 2


def decode_envelope(raw: bytes) -> Envelope:
    """Parse the positional envelope. Raises MalformedTransaction on any defect."""
    if not raw:
        raise MalformedTransaction("empty envelope")

    first = raw[0]
    if first >= 0xC0:
        f = _decode_items(raw, LEGACY_TX)
        v = _int(f[6], "v")
        return Envelope(
            tx_type=LEGACY_TX,
            nonce=_int(f[0], "nonce"),
            gas_price=_int(f[1], "gasPrice"),
            gas_limit=_int(f[2], "gas"),
            to=_address(f[3]),
            value=_int(f[4], "value"),
            data=_bytes(f[5], "data"),
            v=v,
            r=_int(f[7], "r"),
            s=_int(f[8], "s"),
            chain_id=_legacy_chain_id(v),
        )

    if first == ACCESS_LIST_TX:
        f = _decode_items(raw[1:], ACCESS_LIST_TX)
        return Envelope(
            tx_type=ACCESS_LIST_TX,
            chain_id=_int(f[0], "chainId"),
            nonce=_int(f[1], "nonce"),
            gas_price=_int(f[2], "gasPrice"),
            gas_limit=_int(f[3], "gas"),
            to=_address(f[4]),
            value=_int(f[5], "value"),
            data=_bytes(f[6], "data"),
            access_list=_access_list(f[7]),
            v=_int(f[8], "yParity"),
            r=_int(f[9], "r"),
            s=_int(f[10], "s"),
        )

    if first == DYNAMIC_FEE_TX:
        f = _decode_items(raw[1:], DYNAMIC_FEE_TX)
        return Envelope(
            tx_type=DYNAMIC_FEE_TX,
            chain_id=_int(f[0], "chainId"),
            nonce=_int(f[1], "nonce"),
            max_priority_fee_per_gas=_int(f[2], "maxPriorityFeePerGas"),
            max_fee_per_gas=_int(f[3], "maxFeePerGas"),
            gas_limit=_int(f[4], "gas"),
            to=_address(f[5]),
            value=_int(f[6], "value"),
            data=_bytes(f[7], "data"),
            access_list=_access_list(f[8]),
            v=_int(f[9], "yParity"),
            r=_int(f[10], "r"),
            s=_int(f[11], "s"),
        )

    raise UnsupportedTransactionType(first)


def _access_list(item) -> tuple:
    if not isinstance(item, list):
        raise MalformedTransaction("access list must be an RLP list")
    return _freeze(item)


def encode_envelope(env: Envelope) -> bytes:
    """Serialize an envelope back to its canonical bytes."""
    if env.tx_type == LEGACY_TX:
        return rlp.encode([
            env.nonce, env.gas_price, env.gas_limit, env.to, env.value,
            env.data, env.v, env.r, env.s,
        ])
    if env.tx_type == ACCESS_LIST_TX:
        fields = [
            env.chain_id, env.nonce, env.gas_price, env.gas_limit, env.to,
            env.value, env.data, _thaw(env.access_list), env.v, env.r, env.s,
        ]
    elif env.tx_type == DYNAMIC_FEE_TX:
        fields = [
            env.chain_id, env.nonce, env.max_priority_fee_per_gas, env.max_fee_per_gas,
            env.gas_limit, env.to, env.value, env.data, _thaw(env.access_list),
            env.v, env.r, env.s,
        ]
    else:
        raise UnsupportedTransactionType(env.tx_type)
    return bytes([env.tx_type]) + rlp.encode(fields)


def transaction_hash(raw: bytes) -> str:
    """keccak-256 of the canonical envelope bytes."""
    return "0x" + bytes(Web3.keccak(raw)).hex()


def recover_sender(raw: bytes, env: Envelope) -> str:
    """Lowercase sender recovered from the signature, '' for unsigned envelopes."""
    if not env.is_signed:
        return ""
    try:
        return Account.recover_transaction(raw).lower()
    except Exception as exc:
        raise MalformedTransaction(f"cannot recover sender: {exc}") from exc


def decode_transaction(
    encoded: str | bytes,
    tx_id: str,
    gas_used: int | None = None,
) -> DecodedTransaction:
    """Decode an encoded envelope into a DecodedTransaction with status SUCCESS.

    Raises MalformedTransaction (or UnsupportedTransactionType); never returns
    a partially filled record.
    """
    raw = decode_raw_bytes(encoded)
    env = decode_envelope(raw)
    sender = recover_sender(raw, env)

    return DecodedTransaction(
        tx_id=tx_id,
        hash=transaction_hash(raw),
        sender=sender,
        recipient="0x" + env.to.hex() if env.to else None,
        nonce=env.nonce,
        gas_limit=env.gas_limit,
        # dynamic-fee envelopes carry no gasPrice
        gas_price=env.gas_price or 0,
        max_fee_per_gas=env.max_fee_per_gas,
        max_priority_fee_per_gas=env.max_priority_fee_per_gas,
        value=env.value,
        data="0x" + env.data.hex(),
        tx_type=env.tx_type,
        chain_id=env.chain_id,
        gas_used=gas_used,
        status=TxStatus.SUCCESS,
    )
