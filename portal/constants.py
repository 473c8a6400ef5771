"""Shared constants for Portal.

Default limits, prefixes and header policies used across modules are defined
here. Other modules import from here rather than repeating literals.
"""

# ─── Listener ─────────────────────────────────────────────────────────────────

DEFAULT_HOST: str = "0.0.0.0"
DEFAULT_PORT: int = 8080

# Sites with heavy cookies send very large header blocks.
MAX_HEADER_BYTES: int = 65_536  # 64 KB

# Keep-alive timeout in seconds; longer than common load-balancer idle timeouts.
KEEP_ALIVE_TIMEOUT_S: int = 65

# ─── Connection admission ─────────────────────────────────────────────────────

# A single proxied page can open hundreds of tunnel connections (images,
# scripts, XHR) from one exit IP, so the per-window ceiling is deliberately high.
DEFAULT_MAX_CONNECTIONS_PER_IP: int = 1000
DEFAULT_WINDOW_DURATION_S: int = 60
DEFAULT_BLOCK_DURATION_S: int = 30

# Records idle for this many windows are reclaimed by the background sweep.
DEFAULT_RECLAIM_AFTER_WINDOWS: int = 3

# ─── Routing ──────────────────────────────────────────────────────────────────

DEFAULT_TUNNEL_PREFIX: str = "/bare/"
DEFAULT_WEBSOCKET_SUFFIXES: tuple[str, ...] = ("/wisp/", "/adblock/")
NOT_FOUND_PATH: str = "/404"
DEFAULT_STATIC_DIR: str = "dist/client"

# Cross-origin requests are allowed from any origin on every route.
CORS_ALLOWED_METHODS: tuple[str, ...] = ("GET", "POST", "PUT", "DELETE", "OPTIONS", "PATCH")

# ─── Outbound fallback header set ─────────────────────────────────────────────

# Only these headers survive the strict retry after a transport rejects the
# permissively sanitized set. Compared case-insensitively.
MINIMAL_HEADER_ALLOWLIST: frozenset[str] = frozenset(
    {
        "accept",
        "accept-language",
        "content-type",
        "content-length",
        "user-agent",
    }
)

# ─── Relay ────────────────────────────────────────────────────────────────────

RELAY_URL_HEADER: str = "x-bare-url"
RELAY_HEADER_PREFIX: str = "x-bare-"
RELAY_TIMEOUT_S: float = 120.0
RELAY_POOL_MAX_CONNECTIONS: int = 200
RELAY_POOL_KEEPALIVE_EXPIRY_S: float = 30.0
