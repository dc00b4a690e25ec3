"""Decode MsgEthereumTxResponse out of a Cosmos TxMsgData blob.

The message classes are built at import time from descriptors mirroring
cosmos/evm/vm/v1/tx.proto and evm.proto, so no protoc step is needed.
Only the fields this pipeline reads are declared; everything else is carried
as unknown fields by the protobuf runtime.
"""

from __future__ import annotations

import logging

from google.protobuf import descriptor_pb2, descriptor_pool, message_factory
from google.protobuf.message import DecodeError

from evmdecoder.errors import MalformedResponse
from evmdecoder.models.schema import ExecutionResult, LogEntry

logger = logging.getLogger(__name__)

PACKAGE = "cosmos.evm.vm.v1"
MSG_ETHEREUM_TX_RESPONSE_URL = f"/{PACKAGE}.MsgEthereumTxResponse"

_F = descriptor_pb2.FieldDescriptorProto


def _add_field(msg, name: str, number: int, ftype: int, repeated: bool = False, type_name: str = ""):
    field = msg.field.add(
        name=name,
        number=number,
        type=ftype,
        label=_F.LABEL_REPEATED if repeated else _F.LABEL_OPTIONAL,
    )
    if type_name:
        field.type_name = f".{PACKAGE}.{type_name}"


def _build_pool() -> descriptor_pool.DescriptorPool:
    fdp = descriptor_pb2.FileDescriptorProto(
        name="evmdecoder/cosmos_evm_vm_v1.proto",
        package=PACKAGE,
        syntax="proto3",
    )

    log = fdp.message_type.add(name="Log")
    _add_field(log, "address", 1, _F.TYPE_STRING)
    _add_field(log, "topics", 2, _F.TYPE_STRING, repeated=True)
    _add_field(log, "data", 3, _F.TYPE_BYTES)
    _add_field(log, "block_number", 4, _F.TYPE_UINT64)
    _add_field(log, "tx_hash", 5, _F.TYPE_STRING)
    _add_field(log, "tx_index", 6, _F.TYPE_UINT64)
    _add_field(log, "block_hash", 7, _F.TYPE_STRING)
    _add_field(log, "index", 8, _F.TYPE_UINT64)
    _add_field(log, "removed", 9, _F.TYPE_BOOL)

    resp = fdp.message_type.add(name="MsgEthereumTxResponse")
    _add_field(resp, "hash", 1, _F.TYPE_STRING)
    _add_field(resp, "logs", 2, _F.TYPE_MESSAGE, repeated=True, type_name="Log")
    _add_field(resp, "ret", 3, _F.TYPE_BYTES)
    _add_field(resp, "vm_error", 4, _F.TYPE_STRING)
    _add_field(resp, "gas_used", 5, _F.TYPE_UINT64)

    # Wire-compatible with google.protobuf.Any
    any_msg = fdp.message_type.add(name="MsgResponse")
    _add_field(any_msg, "type_url", 1, _F.TYPE_STRING)
    _add_field(any_msg, "value", 2, _F.TYPE_BYTES)

    msg_data = fdp.message_type.add(name="TxMsgData")
    _add_field(msg_data, "msg_responses", 2, _F.TYPE_MESSAGE, repeated=True, type_name="MsgResponse")

    pool = descriptor_pool.DescriptorPool()
    pool.AddSerializedFile(fdp.SerializeToString())
    return pool


_POOL = _build_pool()


def _message_class(name: str):
    return message_factory.GetMessageClass(_POOL.FindMessageTypeByName(f"{PACKAGE}.{name}"))


TxMsgData = _message_class("TxMsgData")
MsgEthereumTxResponse = _message_class("MsgEthereumTxResponse")


def _hex_to_bytes(hex_data: str | bytes) -> bytes:
    if isinstance(hex_data, (bytes, bytearray)):
        return bytes(hex_data)
    text = hex_data.strip()
    if text[:2].lower() == "0x":
        text = text[2:]
    try:
        return bytes.fromhex(text)
    except ValueError as exc:
        raise MalformedResponse(f"response data is not hex: {exc}") from exc


def _assign_log_indexes(raw_logs) -> list[int]:
    """Explicit indexes when they are distinct, otherwise positional order.

    proto3 cannot tell an omitted index from index 0, so a collision means the
    source did not fill them in.
    """
    explicit = [int(log.index) for log in raw_logs]
    if len(set(explicit)) == len(explicit):
        return explicit
    return list(range(len(raw_logs)))


def decode_execution_result(hex_data: str | bytes) -> ExecutionResult | None:
    """Decode logs, gas used and VM error from hex-encoded TxMsgData.

    Returns None when no MsgEthereumTxResponse is present. Raises
    MalformedResponse when the bytes cannot be parsed.
    """
    raw = _hex_to_bytes(hex_data)
    envelope = TxMsgData()
    try:
        envelope.ParseFromString(raw)
    except DecodeError as exc:
        raise MalformedResponse(f"invalid TxMsgData: {exc}") from exc

    match = next(
        (r for r in envelope.msg_responses if r.type_url.endswith("MsgEthereumTxResponse")),
        None,
    )
    if match is None:
        logger.debug(f"No MsgEthereumTxResponse among {len(envelope.msg_responses)} responses")
        return None

    response = MsgEthereumTxResponse()
    try:
        response.ParseFromString(match.value)
    except DecodeError as exc:
        raise MalformedResponse(f"invalid MsgEthereumTxResponse: {exc}") from exc

    indexes = _assign_log_indexes(response.logs)
    logs = [
        LogEntry(
            log_index=idx,
            address=log.address.lower(),
            topics=[t.lower() for t in log.topics],
            data="0x" + log.data.hex(),
        )
        for idx, log in zip(indexes, response.logs)
    ]

    return ExecutionResult(
        logs=logs,
        gas_used=int(response.gas_used),
        vm_error=response.vm_error or None,
    )


def encode_execution_result(
    logs: list[LogEntry] | None = None,
    gas_used: int = 0,
    vm_error: str = "",
    tx_hash: str = "",
    explicit_indexes: bool = True,
) -> str:
    """Build hex TxMsgData wrapping one MsgEthereumTxResponse."""
    response = MsgEthereumTxResponse(hash=tx_hash, vm_error=vm_error, gas_used=gas_used)
    for entry in logs or []:
        log = response.logs.add(
            address=entry.address,
            data=bytes.fromhex(entry.data[2:] if entry.data.startswith("0x") else entry.data),
            tx_hash=tx_hash,
        )
        log.topics.extend(entry.topics)
        if explicit_indexes:
            log.index = entry.log_index

    envelope = TxMsgData()
    envelope.msg_responses.add(
        type_url=MSG_ETHEREUM_TX_RESPONSE_URL,
        value=response.SerializeToString(),
    )
    return envelope.SerializeToString().hex()
