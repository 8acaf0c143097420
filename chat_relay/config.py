"""Central configuration: server binding, CORS, relay timings."""
import os

# ── Server ────────────────────────────────────────────────────────────────────
HOST = os.environ.get("HOST", "0.0.0.0")
PORT = int(os.environ.get("PORT", "8080"))
LOG_LEVEL = os.environ.get("LOG_LEVEL", "info").lower()

# ── CORS ──────────────────────────────────────────────────────────────────────
DEFAULT_ALLOWED_ORIGINS = [
    "https://streamdoctors-multichat.netlify.app",
    "http://localhost:3000",
]
CORS_ALLOWED_ORIGINS: list[str] = [
    o.strip()
    for o in os.environ.get("CORS_ALLOWED_ORIGINS", ",".join(DEFAULT_ALLOWED_ORIGINS)).split(",")
    if o.strip()
]

# ── Upstream connection ───────────────────────────────────────────────────────
RECONNECT_DELAY_S     = float(os.environ.get("RECONNECT_DELAY_S", "10"))      # after upstream drops
CONNECT_RETRY_S       = float(os.environ.get("CONNECT_RETRY_S", "15"))        # after a failed connect
MIN_CONNECT_SPACING_S = float(os.environ.get("MIN_CONNECT_SPACING_S", "5"))   # between attempt starts
CONNECT_TIMEOUT_S     = float(os.environ.get("CONNECT_TIMEOUT_S", "30"))

# ── Subscribers ───────────────────────────────────────────────────────────────
IDLE_GRACE_S          = float(os.environ.get("IDLE_GRACE_S", "60"))   # last client left → teardown
KEEPALIVE_INTERVAL_S  = float(os.environ.get("KEEPALIVE_INTERVAL_S", "30"))
SINK_QUEUE_MAXSIZE    = int(os.environ.get("SINK_QUEUE_MAXSIZE", "256"))

# ── Messages ──────────────────────────────────────────────────────────────────
CHAT_COLOR = "#00f2ea"
