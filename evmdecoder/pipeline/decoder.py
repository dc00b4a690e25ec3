"""Decode one pending transaction into everything it contributes to storage.

Shared by the batch scheduler and the priority decoder so both paths produce
identical rows for the same input.
"""

from __future__ import annotations

import logging

from evmdecoder.codec.response import decode_execution_result
from evmdecoder.codec.transaction import decode_transaction
from evmdecoder.contracts.deployment import track_deployment
from evmdecoder.errors import MalformedResponse, MalformedTransaction
from evmdecoder.labels.signatures import SignatureResolver, decode_arguments, get_selector
from evmdecoder.models.schema import DecodedTransaction, DecodeResult, LogEntry, TxStatus
from evmdecoder.tokens.classifier import extract_transfers

logger = logging.getLogger(__name__)


def decode_offline(row) -> DecodeResult:
    """Everything except the signature lookup. CPU-bound, no I/O.

    A malformed or missing envelope yields a sentinel result; a malformed
    execution response only drops the logs.
    """
    if not row.raw_bytes:
        logger.warning(f"No raw bytes for tx {row.tx_id}; marking as undecodable")
        return DecodeResult.sentinel(row.tx_id, row.height)

    try:
        tx = decode_transaction(row.raw_bytes, row.tx_id, row.gas_used)
    except MalformedTransaction as e:
        logger.warning(f"Failed to decode tx {row.tx_id}: {e}")
        return DecodeResult.sentinel(row.tx_id, row.height)

    logs: list[LogEntry] = []
    if row.response_data:
        try:
            execution = decode_execution_result(row.response_data)
        except MalformedResponse as e:
            logger.warning(f"Failed to decode tx response for {row.tx_id}: {e}")
            execution = None
        if execution is not None:
            logs = [log.model_copy(update={"tx_id": row.tx_id}) for log in execution.logs]
            if execution.gas_used:
                tx.gas_used = execution.gas_used
            tx.status = TxStatus.FAILED if execution.failed else TxStatus.SUCCESS

    transfers, tokens = extract_transfers(logs, row.height)
    contract = track_deployment(tx, row.height)

    return DecodeResult(
        transaction=tx,
        height=row.height,
        logs=logs,
        transfers=transfers,
        tokens=tokens,
        contract=contract,
    )


async def resolve_function(tx: DecodedTransaction, resolver: SignatureResolver) -> None:
    """Fill function name, signature and decoded args when the selector is known."""
    if tx.is_sentinel or tx.recipient is None:
        return
    selector = get_selector(tx.data)
    if selector is None:
        return

    signature = await resolver.resolve(selector)
    if signature is None:
        return
    tx.function_signature = signature
    tx.function_name = signature.split("(")[0]
    tx.decoded_args = decode_arguments(tx.data, signature)


async def decode_pending(row, resolver: SignatureResolver | None = None) -> DecodeResult:
    result = decode_offline(row)
    if resolver is not None:
        await resolve_function(result.transaction, resolver)
    return result
