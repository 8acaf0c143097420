"""
Upstream live-chat session contract.

An upstream session is one live connection to one broadcaster's chat. The relay
only needs three things from it:

  await session.connect()        raises on failure
  await session.disconnect()
  session.on(event, handler)     event is "chat", "disconnected" or "error"

Handlers are coroutine functions:
  chat          handler(event: ChatEvent)
  disconnected  handler()
  error         handler(exc: BaseException)
"""
from __future__ import annotations

import logging
from collections import defaultdict
from typing import Any, Awaitable, Callable, Literal, Protocol

log = logging.getLogger(__name__)

UpstreamEvent = Literal["chat", "disconnected", "error"]
Handler = Callable[..., Awaitable[None]]


class UpstreamSession(Protocol):
    async def connect(self) -> None: ...

    async def disconnect(self) -> None: ...

    def on(self, event: UpstreamEvent, handler: Handler) -> None: ...


UpstreamFactory = Callable[[str], UpstreamSession]


class UpstreamEmitter:
    """Handler registry shared by concrete upstream sessions."""

    def __init__(self) -> None:
        self._handlers: dict[str, list[Handler]] = defaultdict(list)

    def on(self, event: UpstreamEvent, handler: Handler) -> None:
        self._handlers[event].append(handler)

    async def emit(self, event: UpstreamEvent, *args: Any) -> None:
        for handler in list(self._handlers[event]):
            try:
                await handler(*args)
            except Exception:
                log.exception("Upstream %s handler failed", event)
