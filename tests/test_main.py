"""Tests for the HTTP gateway: liveness, key validation, SSE response wiring."""
import json

import pytest
from fastapi import HTTPException
from fastapi.testclient import TestClient

from chat_relay.main import broadcaster_key, create_app, event_stream, relay_sse
from chat_relay.models import ChatEvent, SSE_KEEPALIVE
from chat_relay.scheduler.jobs import IDLE, timer_pending


@pytest.fixture
def client(factory):
    app = create_app(upstream_factory=factory, allowed_origins=["http://localhost:3000"])
    with TestClient(app) as c:
        yield c


def test_health(client):
    r = client.get("/")
    assert r.status_code == 200
    assert "running" in r.text


@pytest.mark.parametrize("path", ["/@/sse", "/%20/sse", "/bad%20name/sse", "/tiktok/@/sse"])
def test_invalid_broadcaster_rejected(client, path):
    r = client.get(path)
    assert r.status_code == 400
    assert len(client.app.state.pool) == 0


def test_cors_allow_list(client):
    allowed = client.get("/", headers={"Origin": "http://localhost:3000"})
    assert allowed.headers["access-control-allow-origin"] == "http://localhost:3000"
    assert allowed.headers["access-control-allow-credentials"] == "true"

    denied = client.get("/", headers={"Origin": "https://evil.example"})
    assert "access-control-allow-origin" not in denied.headers


def test_broadcaster_key_dependency():
    assert broadcaster_key("@Foo") == "foo"
    with pytest.raises(HTTPException) as exc:
        broadcaster_key("@")
    assert exc.value.status_code == 400


async def test_event_stream_relays_frames_and_detaches(make_pool, factory, scheduler):
    pool = make_pool(idle_grace=5)
    entry, sink = await pool.subscribe("abc")
    stream = event_stream(pool, entry, sink, keepalive=0.05)

    first = await stream.__anext__()
    assert json.loads(first[6:]) == {"system": "connected", "user": "abc"}
    assert await stream.__anext__() == SSE_KEEPALIVE

    await factory.created["abc"][0].emit("chat", ChatEvent(unique_id="u1", comment="hi"))
    frame = json.loads((await stream.__anext__())[6:])
    assert (frame["user"], frame["message"]) == ("u1", "hi")

    await stream.aclose()
    assert sink not in entry.sinks
    assert timer_pending(scheduler, IDLE, "abc")


async def test_event_stream_ends_when_sink_closed(make_pool):
    pool = make_pool()
    entry, sink = await pool.subscribe("abc")
    stream = event_stream(pool, entry, sink)
    await stream.__anext__()

    await pool.teardown(entry)
    with pytest.raises(StopAsyncIteration):
        await stream.__anext__()


async def test_relay_sse_response(make_pool, factory):
    pool = make_pool(idle_grace=5)
    response = await relay_sse(key="foo", pool=pool)

    assert response.headers["content-type"].startswith("text/event-stream")
    assert response.headers["cache-control"] == "no-cache"
    assert response.headers["connection"] == "keep-alive"
    assert response.headers["x-accel-buffering"] == "no"

    entry = pool.get("foo")
    assert len(entry.sinks) == 1
    # client gone before the body was ever read
    await response.background()
    assert len(entry.sinks) == 0
    await response.body_iterator.aclose()
