"""
Connection pool and fan-out.

key → BroadcasterEntry, one upstream chat session per broadcaster, shared by
every SSE client watching that broadcaster. Upstream chat events are rendered
once and pushed into each client's SubscriberSink.

Entry lifecycle:
  first subscriber        → entry created, upstream connect started
  upstream drops          → reconnect after RECONNECT_DELAY_S if anyone listens,
                            otherwise the entry is removed immediately
  connect fails           → retry after CONNECT_RETRY_S while anyone listens
  last subscriber leaves  → idle timer; after IDLE_GRACE_S the upstream is
                            disconnected and the entry removed
  subscriber returns      → idle timer cancelled, same upstream reused

All entry mutations run on the event loop without awaiting mid-update, so each
handler sees a consistent entry.
"""
from __future__ import annotations

import asyncio
import logging
import time
from functools import partial
from typing import Any, Callable

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from chat_relay.broadcast.sink import SubscriberSink
from chat_relay.config import (
    CONNECT_RETRY_S, CONNECT_TIMEOUT_S, IDLE_GRACE_S,
    MIN_CONNECT_SPACING_S, RECONNECT_DELAY_S, SINK_QUEUE_MAXSIZE,
)
from chat_relay.models import ChatEvent, RelayMessage, SystemFrame, UpstreamState, sse_frame
from chat_relay.scheduler.jobs import IDLE, RECONNECT, arm_timer, cancel_timer, timer_pending
from chat_relay.upstream.base import UpstreamFactory, UpstreamSession

log = logging.getLogger(__name__)


class BroadcasterEntry:
    def __init__(self, key: str, upstream: UpstreamSession) -> None:
        self.key = key
        self.upstream = upstream
        self.sinks: set[SubscriberSink] = set()
        self.state: UpstreamState = "disconnected"
        self.last_attempt: float | None = None  # clock() at the start of the last connect
        self.closed = False                     # set once the entry leaves the pool
        self.connect_task: asyncio.Task | None = None

    @property
    def connecting(self) -> bool:
        return self.state == "connecting"

    def __repr__(self) -> str:
        return f"<BroadcasterEntry @{self.key} {self.state} sinks={len(self.sinks)}>"


class ConnectionPool:
    def __init__(
        self,
        scheduler: AsyncIOScheduler,
        upstream_factory: UpstreamFactory,
        *,
        reconnect_delay: float = RECONNECT_DELAY_S,
        connect_retry: float = CONNECT_RETRY_S,
        min_connect_spacing: float = MIN_CONNECT_SPACING_S,
        connect_timeout: float = CONNECT_TIMEOUT_S,
        idle_grace: float = IDLE_GRACE_S,
        sink_maxsize: int = SINK_QUEUE_MAXSIZE,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._scheduler = scheduler
        self._factory = upstream_factory
        self.reconnect_delay = reconnect_delay
        self.connect_retry = connect_retry
        self.min_connect_spacing = min_connect_spacing
        self.connect_timeout = connect_timeout
        self.idle_grace = idle_grace
        self.sink_maxsize = sink_maxsize
        self._clock = clock
        self._entries: dict[str, BroadcasterEntry] = {}
        # One asyncio.Lock per key, created on first access. Creation itself never
        # awaits, so it is already atomic on the event loop; the lock only marks
        # the critical section.
        self._locks: dict[str, asyncio.Lock] = {}

    # ── Lookup ────────────────────────────────────────────────────────────────

    def _lock_for(self, key: str) -> asyncio.Lock:
        if key not in self._locks:
            self._locks[key] = asyncio.Lock()
        return self._locks[key]

    def get(self, key: str) -> BroadcasterEntry | None:
        return self._entries.get(key)

    def keys(self) -> list[str]:
        return list(self._entries)

    def __contains__(self, key: str) -> bool:
        return key in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    async def get_or_create(self, key: str) -> BroadcasterEntry:
        """Return the entry for `key`, creating it and starting its upstream connect."""
        async with self._lock_for(key):
            entry = self._entries.get(key)
            if entry is not None:
                return entry
            log.info("Creating new upstream connection for @%s", key)
            entry = BroadcasterEntry(key, self._factory(key))
            entry.upstream.on("chat", partial(self._on_chat, entry))
            entry.upstream.on("disconnected", partial(self._on_disconnected, entry))
            entry.upstream.on("error", partial(self._on_error, entry))
            self._entries[key] = entry
            # no subscribers yet: the entry starts inside its idle grace window
            self._arm_idle(entry)
            self._start_connect(entry)
            return entry

    def remove(self, key: str) -> BroadcasterEntry | None:
        """Drop `key` from the pool, cancel its timers and close its sinks.

        The upstream session is not disconnected; use teardown() for a full shutdown.
        """
        entry = self._entries.pop(key, None)
        lock = self._locks.get(key)
        if lock is not None and not lock.locked():
            del self._locks[key]
        if entry is None:
            return None
        entry.closed = True
        cancel_timer(self._scheduler, IDLE, key)
        cancel_timer(self._scheduler, RECONNECT, key)
        for sink in list(entry.sinks):
            sink.close()
        entry.sinks.clear()
        return entry

    def _discard(self, entry: BroadcasterEntry) -> None:
        if self._entries.get(entry.key) is entry:
            self.remove(entry.key)
        entry.closed = True

    # ── Subscribers ───────────────────────────────────────────────────────────

    async def subscribe(self, key: str) -> tuple[BroadcasterEntry, SubscriberSink]:
        while True:
            entry = await self.get_or_create(key)
            if not entry.closed:
                return entry, self.attach(entry)

    def attach(self, entry: BroadcasterEntry) -> SubscriberSink:
        if cancel_timer(self._scheduler, IDLE, entry.key):
            log.debug("Idle teardown for @%s cancelled", entry.key)
        sink = SubscriberSink(self.sink_maxsize)
        entry.sinks.add(sink)
        sink.deliver(sse_frame(SystemFrame(user=entry.key)))
        log.info("Client joined @%s (%d connected)", entry.key, len(entry.sinks))
        if entry.state == "disconnected":
            self._start_connect(entry)
        return sink

    def detach(self, entry: BroadcasterEntry, sink: SubscriberSink) -> bool:
        """Remove `sink` once; arm the idle timer when it was the last one."""
        if sink not in entry.sinks:
            return False
        entry.sinks.discard(sink)
        sink.close()
        log.info("Client left @%s (%d left)", entry.key, len(entry.sinks))
        self._arm_idle(entry)
        return True

    def _arm_idle(self, entry: BroadcasterEntry) -> None:
        if entry.sinks or entry.closed or timer_pending(self._scheduler, IDLE, entry.key):
            return
        log.info("No clients for @%s, disconnecting in %.0fs", entry.key, self.idle_grace)
        arm_timer(self._scheduler, IDLE, entry.key, self.idle_grace, self._expire_idle, entry)

    # ── Upstream connection ───────────────────────────────────────────────────

    def _start_connect(self, entry: BroadcasterEntry) -> None:
        if entry.connect_task is not None and not entry.connect_task.done():
            return
        if timer_pending(self._scheduler, RECONNECT, entry.key):
            return
        entry.connect_task = asyncio.create_task(self.connect(entry))

    async def connect(self, entry: BroadcasterEntry) -> bool:
        """One rate-limited connect attempt. Returns True if upstream is now connected."""
        if entry.closed or entry.state != "disconnected":
            log.debug("Connect to @%s skipped (%s)", entry.key, "closed" if entry.closed else entry.state)
            return False
        now = self._clock()
        if entry.last_attempt is not None:
            wait = self.min_connect_spacing - (now - entry.last_attempt)
            if wait > 0:
                log.info("Connect to @%s throttled, next attempt in %.1fs", entry.key, wait)
                arm_timer(self._scheduler, RECONNECT, entry.key, wait, self._reconnect, entry)
                return False

        entry.state = "connecting"
        entry.last_attempt = now
        try:
            await asyncio.wait_for(entry.upstream.connect(), timeout=self.connect_timeout)
        except Exception as exc:
            entry.state = "disconnected"
            log.warning("Failed to connect to @%s: %s", entry.key, str(exc) or type(exc).__name__)
            if entry.closed:
                return False
            if entry.sinks:
                log.info("Retrying @%s in %.0fs", entry.key, self.connect_retry)
                arm_timer(self._scheduler, RECONNECT, entry.key, self.connect_retry, self._reconnect, entry)
            else:
                log.info("No clients for @%s, not retrying", entry.key)
                self._arm_idle(entry)
            return False

        if entry.closed:
            # torn down while the handshake was in flight
            entry.state = "disconnected"
            await self._disconnect_upstream(entry)
            return False
        entry.state = "connected"
        log.info("Connected to @%s", entry.key)
        self._arm_idle(entry)
        return True

    async def _reconnect(self, entry: BroadcasterEntry) -> None:
        if entry.closed:
            return
        if not entry.sinks:
            log.info("No clients for @%s, skipping reconnect", entry.key)
            self._arm_idle(entry)
            return
        await self.connect(entry)

    async def _disconnect_upstream(self, entry: BroadcasterEntry) -> None:
        try:
            await entry.upstream.disconnect()
        except Exception as exc:
            log.warning("Error disconnecting from @%s: %s", entry.key, exc)

    # ── Upstream events ───────────────────────────────────────────────────────

    async def _on_chat(self, entry: BroadcasterEntry, event: Any) -> None:
        if entry.closed:
            return
        try:
            chat = event if isinstance(event, ChatEvent) else ChatEvent.model_validate(event)
        except Exception as exc:
            log.warning("Dropping malformed chat event for @%s: %s", entry.key, exc)
            return
        frame = sse_frame(RelayMessage.from_chat(chat))
        for sink in list(entry.sinks):
            try:
                sink.deliver(frame)
            except Exception as exc:
                # left in place; the client's own disconnect detaches it
                log.error("Write error for @%s (sink %s): %s", entry.key, sink.id, exc)

    async def _on_disconnected(self, entry: BroadcasterEntry) -> None:
        if entry.closed:
            return
        entry.state = "disconnected"
        log.info("Disconnected from @%s", entry.key)
        if entry.sinks:
            log.info("Reconnecting to @%s in %.0fs", entry.key, self.reconnect_delay)
            arm_timer(self._scheduler, RECONNECT, entry.key, self.reconnect_delay, self._reconnect, entry)
        else:
            self._discard(entry)
            log.info("Removed @%s (no clients)", entry.key)

    async def _on_error(self, entry: BroadcasterEntry, exc: BaseException) -> None:
        log.warning("Upstream error for @%s: %s", entry.key, exc)

    # ── Teardown ──────────────────────────────────────────────────────────────

    async def _expire_idle(self, entry: BroadcasterEntry) -> None:
        if entry.closed or entry.sinks:
            return
        await self.teardown(entry)
        log.info("Disconnected idle @%s", entry.key)

    async def teardown(self, entry: BroadcasterEntry) -> None:
        """Remove the entry, close any remaining sinks and disconnect upstream."""
        self._discard(entry)
        for sink in list(entry.sinks):
            sink.close()
        entry.sinks.clear()
        await self._disconnect_upstream(entry)

    async def close(self) -> None:
        for entry in list(self._entries.values()):
            await self.teardown(entry)
