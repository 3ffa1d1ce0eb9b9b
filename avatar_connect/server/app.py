import logging
from datetime import datetime
from typing import Dict, List, Optional

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field

from avatar_connect import __version__
from avatar_connect.core.dispatcher import Dispatcher
from avatar_connect.core.event_log import Datum

logger = logging.getLogger(__name__)

# The Transport Adapter. Browser pages and scripts push input and poll output over plain JSON.

class InputPayload(BaseModel):
    channel: str
    content: str
    is_final: bool = False

class ChannelRequest(BaseModel):
    name: str
    retrieved_id: Optional[int] = None
    retrieved_timestamp: Optional[datetime] = None
    count: Optional[int] = Field(default=None, ge=0)

class OutputRequest(BaseModel):
    channels: List[ChannelRequest]

class ChannelDatumOut(BaseModel):
    id: int
    datetime: str
    channel: str
    content: str
    flags: List[str]

    @classmethod
    def from_datum(cls, datum: Datum) -> "ChannelDatumOut":
        return cls(
            id=datum.id,
            datetime=datum.created_at.isoformat(),
            channel=datum.channel,
            content=datum.content,
            flags=sorted(datum.flags),
        )

class OutputResponse(BaseModel):
    channel_data: Dict[str, List[ChannelDatumOut]]

class StatusResponse(BaseModel):
    version: str
    processors: int
    log_length: int
    last_id: int

def create_app(dispatcher: Dispatcher) -> FastAPI:
    app = FastAPI(title="Avatar Connect")

    @app.post("/input", response_model=InputPayload)
    async def input_endpoint(payload: InputPayload):
        logger.debug(f"📨 Input [{payload.channel}] final={payload.is_final}: {payload.content!r}")

        # Runtime-level commands act before the Datum is pushed.
        words = payload.content.split(maxsplit=1)
        command = words[0] if words else ""
        if command == "/quit":
            dispatcher.request_shutdown()
        elif command == "/save":
            try:
                dispatcher.save()
            except OSError as e:
                raise HTTPException(status_code=500, detail=f"Save failed: {e}")
        elif command == "/load":
            try:
                await dispatcher.load()
            except (OSError, ValueError) as e:
                raise HTTPException(status_code=500, detail=f"Load failed: {e}")

        await dispatcher.push(payload.channel, payload.content, is_final=payload.is_final)
        return payload

    @app.post("/output", response_model=OutputResponse)
    async def output_endpoint(request: OutputRequest):
        channel_data = {}
        for channel in request.channels:
            data = dispatcher.log.query(
                channel.name,
                after_id=channel.retrieved_id,
                after_timestamp=channel.retrieved_timestamp,
                count=channel.count,
            )
            channel_data[channel.name] = [ChannelDatumOut.from_datum(d) for d in data]
        return OutputResponse(channel_data=channel_data)

    @app.get("/status", response_model=StatusResponse)
    async def status_endpoint():
        return StatusResponse(
            version=__version__,
            processors=len(dispatcher.processors),
            log_length=len(dispatcher.log),
            last_id=dispatcher.log.last_id,
        )

    return app
