"""
FastAPI application entry point.

Routes:
  GET /                         liveness
  GET /{broadcaster}/sse        live chat for one broadcaster as server-sent events
  GET /tiktok/{broadcaster}/sse same stream, legacy path

Each SSE client gets a handshake frame, then one `data: {...}` frame per chat
message. The pool lives on app.state and is created/closed by the lifespan.
"""
from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

import uvicorn
from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import PlainTextResponse, StreamingResponse
from starlette.background import BackgroundTask

from chat_relay.broadcast.relay_pool import BroadcasterEntry, ConnectionPool
from chat_relay.broadcast.sink import SubscriberSink
from chat_relay.config import (
    CORS_ALLOWED_ORIGINS, HOST, KEEPALIVE_INTERVAL_S, LOG_LEVEL, PORT,
)
from chat_relay.models import SSE_KEEPALIVE, normalize_key
from chat_relay.scheduler.jobs import setup_scheduler
from chat_relay.upstream.base import UpstreamFactory

log = logging.getLogger("uvicorn.error")

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


def _default_upstream_factory() -> UpstreamFactory:
    from chat_relay.upstream.tiktok import TikTokUpstream
    return TikTokUpstream


# ── Dependencies ──────────────────────────────────────────────────────────────

def get_pool(request: Request) -> ConnectionPool:
    return request.app.state.pool


def broadcaster_key(broadcaster: str) -> str:
    key = normalize_key(broadcaster)
    if key is None:
        log.warning("Rejected subscribe for invalid broadcaster %r", broadcaster)
        raise HTTPException(status.HTTP_400_BAD_REQUEST, "Missing or invalid broadcaster")
    return key


# ── SSE stream ────────────────────────────────────────────────────────────────

async def event_stream(
    pool: ConnectionPool,
    entry: BroadcasterEntry,
    sink: SubscriberSink,
    keepalive: float = KEEPALIVE_INTERVAL_S,
) -> AsyncIterator[str]:
    """Drain one sink into the response; detach it when the client goes away."""
    try:
        while True:
            try:
                frame = await sink.next_frame(timeout=keepalive)
            except asyncio.TimeoutError:
                yield SSE_KEEPALIVE
                continue
            if frame is None:
                break
            yield frame
    finally:
        pool.detach(entry, sink)


async def release_sink(pool: ConnectionPool, entry: BroadcasterEntry, sink: SubscriberSink) -> None:
    # covers clients that drop before the body iterator is first entered
    pool.detach(entry, sink)


router = APIRouter()


@router.get("/", response_class=PlainTextResponse)
async def health():
    return "Chat relay is running"


@router.get("/{broadcaster}/sse")
@router.get("/tiktok/{broadcaster}/sse")
async def relay_sse(
    key: str = Depends(broadcaster_key),
    pool: ConnectionPool = Depends(get_pool),
):
    entry, sink = await pool.subscribe(key)
    return StreamingResponse(
        event_stream(pool, entry, sink),
        media_type="text/event-stream",
        headers=SSE_HEADERS,
        background=BackgroundTask(release_sink, pool, entry, sink),
    )


# ── App factory ───────────────────────────────────────────────────────────────

def create_app(
    upstream_factory: Optional[UpstreamFactory] = None,
    allowed_origins: Optional[list[str]] = None,
    **pool_options,
) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        scheduler = await setup_scheduler()
        factory = upstream_factory or _default_upstream_factory()
        app.state.pool = ConnectionPool(scheduler, factory, **pool_options)
        yield
        await app.state.pool.close()
        scheduler.shutdown(wait=False)

    app = FastAPI(title="ChatRelay", lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=CORS_ALLOWED_ORIGINS if allowed_origins is None else allowed_origins,
        allow_credentials=True,
        allow_methods=["GET"],
        allow_headers=["*"],
    )
    app.include_router(router)
    return app


app = create_app()


def run() -> None:
    logging.basicConfig(
        level=LOG_LEVEL.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    log.info("Chat relay starting on %s:%d", HOST, PORT)
    uvicorn.run(app, host=HOST, port=PORT, log_level=LOG_LEVEL)


if __name__ == "__main__":
    run()
