"""TikTok LIVE upstream session backed by the TikTokLive client."""
from __future__ import annotations

import asyncio
import logging

from TikTokLive import TikTokLiveClient
from TikTokLive.events import CommentEvent, DisconnectEvent

from chat_relay.models import ChatEvent
from chat_relay.upstream.base import UpstreamEmitter

log = logging.getLogger(__name__)


class TikTokUpstream(UpstreamEmitter):
    def __init__(self, key: str) -> None:
        super().__init__()
        self.key = key
        self._client = TikTokLiveClient(unique_id=f"@{key}")
        self._client.add_listener(CommentEvent, self._on_comment)
        self._client.add_listener(DisconnectEvent, self._on_disconnect)
        self._task: asyncio.Task | None = None
        self._error_task: asyncio.Task | None = None

    async def connect(self) -> None:
        # start() returns once the websocket is up; the fetch loop keeps running in _task
        self._task = await self._client.start()
        self._task.add_done_callback(self._on_task_done)

    async def disconnect(self) -> None:
        await self._client.disconnect()

    async def _on_comment(self, event: CommentEvent) -> None:
        await self.emit("chat", ChatEvent(unique_id=event.user.unique_id, comment=event.comment))

    async def _on_disconnect(self, event: DisconnectEvent) -> None:
        await self.emit("disconnected")

    def _on_task_done(self, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            # a crashed fetch loop sends no DisconnectEvent, so report the drop here
            log.debug("TikTok fetch loop for @%s ended with %r", self.key, exc)
            self._error_task = asyncio.get_running_loop().create_task(self._report_crash(exc))

    async def _report_crash(self, exc: BaseException) -> None:
        await self.emit("error", exc)
        await self.emit("disconnected")
