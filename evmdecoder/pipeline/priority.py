"""On-demand single-transaction decode, independent of the batch loop.

Safe to run against a key the batch scheduler is also handling: both paths
write insert-if-absent, so whichever commits first wins and the other becomes
a no-op.
"""

from __future__ import annotations

import asyncio
import logging
from enum import Enum

import duckdb
from pydantic import BaseModel

from evmdecoder.config import get_settings
from evmdecoder.labels.signatures import SignatureResolver
from evmdecoder.models.schema import DecodedTransaction
from evmdecoder.pipeline.decoder import decode_pending
from evmdecoder.storage.database import get_pending_one, get_transaction, is_pending, persist_results

logger = logging.getLogger(__name__)


class PriorityStatus(str, Enum):
    DECODED = "decoded"
    ALREADY_DECODED = "already_decoded"
    DECODE_FAILED = "decode_failed"
    NOT_FOUND = "not_found"


_MESSAGES = {
    PriorityStatus.DECODED: "Transaction decoded successfully",
    PriorityStatus.ALREADY_DECODED: "Transaction already decoded",
    PriorityStatus.DECODE_FAILED: "Failed to decode transaction",
    PriorityStatus.NOT_FOUND: "Transaction not found in pending queue or decoded transactions",
}


class PriorityOutcome(BaseModel):
    tx_id: str
    status: PriorityStatus
    transaction: DecodedTransaction | None = None

    @property
    def success(self) -> bool:
        return self.status in (PriorityStatus.DECODED, PriorityStatus.ALREADY_DECODED)

    @property
    def message(self) -> str:
        return _MESSAGES[self.status]


class PriorityChannel:
    """In-process publish/subscribe channel carrying transaction keys."""

    def __init__(self, maxsize: int = 0):
        self._queue: asyncio.Queue[str] = asyncio.Queue(maxsize)

    def publish(self, tx_id: str) -> None:
        self._queue.put_nowait(tx_id)

    async def get(self) -> str:
        return await self._queue.get()

    def qsize(self) -> int:
        return self._queue.qsize()


def request_priority_decode(
    conn: duckdb.DuckDBPyConnection,
    channel: PriorityChannel,
    tx_id: str,
) -> bool:
    """Publish tx_id only if it is still pending. Returns whether it was queued."""
    if not is_pending(conn, tx_id):
        return False
    channel.publish(tx_id)
    return True


class PriorityDecoder:
    def __init__(
        self,
        conn: duckdb.DuckDBPyConnection,
        resolver: SignatureResolver | None = None,
        timeout: float | None = None,
    ):
        self.conn = conn
        self.resolver = resolver
        self.timeout = timeout if timeout is not None else get_settings().priority_decode_timeout

    async def decode_one(self, tx_id: str, timeout: float | None = None) -> PriorityOutcome:
        """Decode and persist exactly one transaction.

        Raises asyncio.TimeoutError when the request outlives its timeout;
        nothing is written in that case.
        """
        return await asyncio.wait_for(
            self._decode_one(tx_id),
            timeout=self.timeout if timeout is None else timeout,
        )

    def _already_decoded(self, tx_id: str) -> PriorityOutcome:
        existing = get_transaction(self.conn, tx_id)
        if existing is None:
            return PriorityOutcome(tx_id=tx_id, status=PriorityStatus.NOT_FOUND)
        status = PriorityStatus.DECODE_FAILED if existing.is_sentinel else PriorityStatus.ALREADY_DECODED
        return PriorityOutcome(tx_id=tx_id, status=status, transaction=existing)

    async def _decode_one(self, tx_id: str) -> PriorityOutcome:
        row = get_pending_one(self.conn, tx_id)
        if row is None:
            return self._already_decoded(tx_id)

        result = await decode_pending(row, self.resolver)
        try:
            stats = persist_results(self.conn, [result])
        except (duckdb.TransactionException, duckdb.ConstraintException) as e:
            logger.info(f"Priority decode of {tx_id} lost the write race: {e}")
            return self._already_decoded(tx_id)

        if stats.skipped:
            return self._already_decoded(tx_id)

        stored = get_transaction(self.conn, tx_id)
        if stored is None or stored.is_sentinel:
            logger.warning(f"Priority decode of {tx_id} recorded as undecodable")
            return PriorityOutcome(tx_id=tx_id, status=PriorityStatus.DECODE_FAILED, transaction=stored)

        logger.info(f"Decoded priority transaction: {tx_id}")
        return PriorityOutcome(tx_id=tx_id, status=PriorityStatus.DECODED, transaction=stored)

    async def listen(self, channel: PriorityChannel, stop: asyncio.Event, poll: float = 0.5) -> None:
        """Consume the trigger channel until `stop` is set."""
        logger.info("Listening for priority decode requests")
        while not stop.is_set():
            try:
                tx_id = await asyncio.wait_for(channel.get(), timeout=poll)
            except asyncio.TimeoutError:
                continue

            try:
                outcome = await self.decode_one(tx_id)
            except asyncio.TimeoutError:
                logger.warning(f"Priority decode of {tx_id} timed out after {self.timeout}s")
                continue
            except Exception:
                logger.exception(f"Priority decode of {tx_id} failed")
                continue
            logger.debug(f"Priority request {tx_id}: {outcome.status.value}")
