"""Continuous batch decoder: poll the pending set, decode, commit per batch."""

from __future__ import annotations

import asyncio
import logging
from enum import Enum

import duckdb

from evmdecoder.config import get_settings
from evmdecoder.labels.signatures import SignatureResolver
from evmdecoder.pipeline.decoder import decode_pending
from evmdecoder.storage.database import get_pending, persist_results

logger = logging.getLogger(__name__)


class SchedulerState(str, Enum):
    IDLE = "idle"
    PROCESSING = "processing"
    STOPPED = "stopped"


class BatchScheduler:
    """Poll loop over `evm_pending_decode`.

    Each cycle decodes up to `batch_size` rows sequentially and persists them
    in one DuckDB transaction. Undecodable envelopes are committed as sentinel
    rows in the same transaction; any other exception rolls the batch back.
    """

    def __init__(
        self,
        conn: duckdb.DuckDBPyConnection,
        resolver: SignatureResolver | None = None,
        batch_size: int | None = None,
        poll_interval: float | None = None,
        error_backoff: float | None = None,
    ):
        settings = get_settings()
        self.conn = conn
        self.resolver = resolver
        self.batch_size = batch_size or settings.batch_size
        self.poll_interval = poll_interval if poll_interval is not None else settings.poll_interval
        if error_backoff is None:
            error_backoff = settings.error_backoff
        # unset backoff follows the poll interval actually in use
        self.error_backoff = error_backoff if error_backoff is not None else self.poll_interval * 2
        self.state = SchedulerState.IDLE
        self._stop = asyncio.Event()

    async def run_once(self) -> int:
        """Process one batch. Returns the number of pending rows it consumed."""
        pending = get_pending(self.conn, self.batch_size)
        if not pending:
            return 0

        self.state = SchedulerState.PROCESSING
        try:
            logger.info(f"Processing {len(pending)} EVM transactions...")
            results = [await decode_pending(row, self.resolver) for row in pending]
            stats = persist_results(self.conn, results)
        finally:
            self.state = SchedulerState.IDLE

        logger.info(
            f"Decoded {stats.written} transactions ({stats.sentinels} undecodable, "
            f"{stats.skipped} already done, {stats.logs} logs, {stats.transfers} transfers)"
        )
        return len(pending)

    async def drain(self) -> int:
        """Run batches until one comes back short. Returns rows consumed."""
        total = 0
        while True:
            processed = await self.run_once()
            total += processed
            if processed < self.batch_size:
                return total

    def stop(self) -> None:
        self._stop.set()

    @property
    def stopping(self) -> bool:
        return self._stop.is_set()

    async def _sleep(self, seconds: float) -> None:
        try:
            await asyncio.wait_for(self._stop.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    async def run(self) -> None:
        """Loop until stop(). Stop is honoured between batches only."""
        logger.info(f"Starting EVM decode loop (batch_size={self.batch_size}, poll={self.poll_interval}s)")
        consecutive_empty = 0

        while not self._stop.is_set():
            try:
                processed = await self.run_once()
            except Exception:
                logger.exception(f"Batch failed and was rolled back; retrying in {self.error_backoff}s")
                await self._sleep(self.error_backoff)
                continue

            if processed >= self.batch_size:
                consecutive_empty = 0
                # backlog: go again without waiting, but let other tasks run
                await asyncio.sleep(0)
                continue

            if processed == 0:
                consecutive_empty += 1
                if consecutive_empty == 1:
                    logger.info("No pending EVM transactions, polling...")
            else:
                consecutive_empty = 0
            await self._sleep(self.poll_interval)

        self.state = SchedulerState.STOPPED
        logger.info("EVM decode loop stopped")
