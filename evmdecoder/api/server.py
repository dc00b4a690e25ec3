"""
FastAPI surface for the priority decode path.

POST /decode  decode one transaction now and return the stored record
POST /notify  queue a transaction on the priority channel if it is pending
GET  /health  liveness

`evmdecoder serve` runs this app with the priority listener as a lifespan
task; `evmdecoder run --api` adds the batch loop as a second one. DuckDB
allows a single writing process per database file, so all writers share it.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException
from fastapi.responses import JSONResponse
from pydantic import AliasChoices, BaseModel, Field

from evmdecoder.pipeline.priority import (
    PriorityChannel,
    PriorityDecoder,
    PriorityStatus,
    request_priority_decode,
)
from evmdecoder.pipeline.scheduler import BatchScheduler

logger = logging.getLogger(__name__)


class DecodeRequest(BaseModel):
    """Body for /decode and /notify. Accepts `txId` as well as `tx_id`."""

    tx_id: str = Field(..., min_length=1, validation_alias=AliasChoices("tx_id", "txId"))


class NotifyResponse(BaseModel):
    tx_id: str
    queued: bool = Field(..., description="False when the transaction is not pending")


def create_app(
    decoder: PriorityDecoder,
    channel: PriorityChannel | None = None,
    scheduler: BatchScheduler | None = None,
) -> FastAPI:

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Run the priority listener and batch loop for the lifetime of the server."""
        stop = asyncio.Event()
        tasks = []
        if channel is not None:
            tasks.append(asyncio.create_task(decoder.listen(channel, stop), name="priority-listener"))
        if scheduler is not None:
            tasks.append(asyncio.create_task(scheduler.run(), name="batch-scheduler"))
        logger.info(f"Started {len(tasks)} background task(s)")

        yield

        stop.set()
        if scheduler is not None:
            scheduler.stop()
        await asyncio.gather(*tasks)
        logger.info("Background tasks stopped")

    app = FastAPI(
        title="evmdecoder",
        description="On-demand EVM transaction decoding",
        lifespan=lifespan,
    )

    @app.get("/health")
    async def health() -> dict:
        return {"status": "ok"}

    @app.post("/decode")
    async def decode(req: DecodeRequest) -> JSONResponse:
        try:
            outcome = await decoder.decode_one(req.tx_id)
        except asyncio.TimeoutError:
            raise HTTPException(status_code=504, detail=f"Decoding {req.tx_id} timed out")

        if outcome.status == PriorityStatus.NOT_FOUND:
            code = 404
        elif outcome.status == PriorityStatus.DECODE_FAILED:
            code = 422
        else:
            code = 200
        body = {
            "success": outcome.success,
            "message": outcome.message,
            "status": outcome.status.value,
            "data": outcome.transaction.model_dump(mode="json") if outcome.transaction else None,
        }
        return JSONResponse(status_code=code, content=body)

    @app.post("/notify", status_code=202, response_model=NotifyResponse)
    async def notify(req: DecodeRequest) -> NotifyResponse:
        if channel is None:
            raise HTTPException(status_code=503, detail="Priority channel not configured")
        queued = request_priority_decode(decoder.conn, channel, req.tx_id)
        return NotifyResponse(tx_id=req.tx_id, queued=queued)

    return app
