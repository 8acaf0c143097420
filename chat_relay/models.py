"""Pydantic models for upstream events and the frames sent to subscribers."""
from __future__ import annotations

import re
import time
from typing import Literal

from pydantic import AliasChoices, BaseModel, Field

from chat_relay.config import CHAT_COLOR

UpstreamState = Literal["disconnected", "connecting", "connected"]

KEY_MARKER = "@"
_KEY_RE = re.compile(r"[a-z0-9._\-]{1,64}")


def normalize_key(raw: str) -> str | None:
    """Lowercase `raw` and drop one leading "@". Returns None if unusable."""
    key = raw.strip().lower()
    if key.startswith(KEY_MARKER):
        key = key[1:]
    if not _KEY_RE.fullmatch(key):
        return None
    return key


def _now_ms() -> int:
    return int(time.time() * 1000)


# ── Upstream ──────────────────────────────────────────────────────────────────

class ChatEvent(BaseModel):
    unique_id: str = Field(validation_alias=AliasChoices("unique_id", "uniqueId"))
    comment: str


# ── Downstream frames ─────────────────────────────────────────────────────────

class RelayMessage(BaseModel):
    user: str
    message: str
    color: str = CHAT_COLOR
    timestamp: int = Field(default_factory=_now_ms)  # epoch ms

    @classmethod
    def from_chat(cls, event: ChatEvent) -> "RelayMessage":
        return cls(user=event.unique_id, message=event.comment)


class SystemFrame(BaseModel):
    system: Literal["connected"] = "connected"
    user: str


def sse_frame(payload: BaseModel) -> str:
    return f"data: {payload.model_dump_json()}\n\n"


SSE_KEEPALIVE = ": keepalive\n\n"
