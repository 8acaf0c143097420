import asyncio

import pytest

from chat_relay.broadcast.sink import SinkClosedError, SinkFullError, SubscriberSink


async def test_frames_come_out_in_order():
    sink = SubscriberSink(maxsize=4)
    sink.deliver("a")
    sink.deliver("b")
    assert await sink.next_frame() == "a"
    assert await sink.next_frame() == "b"


async def test_full_queue_raises():
    sink = SubscriberSink(maxsize=2)
    sink.deliver("a")
    sink.deliver("b")
    with pytest.raises(SinkFullError):
        sink.deliver("c")


async def test_close_wakes_reader_and_rejects_writes():
    sink = SubscriberSink(maxsize=1)
    sink.deliver("a")
    sink.close()
    sink.close()
    assert not sink.alive
    with pytest.raises(SinkClosedError):
        sink.deliver("b")
    assert await sink.next_frame() == "a"
    assert await sink.next_frame() is None


async def test_next_frame_timeout():
    sink = SubscriberSink()
    with pytest.raises(asyncio.TimeoutError):
        await sink.next_frame(timeout=0.01)


def test_sinks_get_distinct_ids():
    assert SubscriberSink().id != SubscriberSink().id
