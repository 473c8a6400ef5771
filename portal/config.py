"""Config loading for Portal.

Reads ``.portal/config.yaml`` (or ``~/.portal/config.yaml``).
Raises SystemExit on parse errors, a missing ``version`` field, or invalid values.
If no config file is found, returns default values (safe to run without config).

Config search order:
  1. ``config_path`` argument (if provided — for testing or explicit override)
  2. PORTAL_CONFIG environment variable (if set)
  3. ``.portal/config.yaml`` (working directory — for development)
  4. ``~/.portal/config.yaml`` (home directory — for deployments)

Environment variable overrides (applied last, always win over the file):
  PORT                          — server.port
  HOST                          — server.host
  BARE_MAX_CONNECTIONS_PER_IP   — admission.max_connections_per_ip
  BARE_WINDOW_DURATION          — admission.window_duration (seconds)
  BARE_BLOCK_DURATION           — admission.block_duration (seconds)
  TRUST_PROXY                   — server.trust_proxy ("true" / "false")
An empty variable counts as unset.
"""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass, field
from typing import Any, NoReturn, Optional

import yaml

from portal.constants import (
    DEFAULT_BLOCK_DURATION_S,
    DEFAULT_HOST,
    DEFAULT_MAX_CONNECTIONS_PER_IP,
    DEFAULT_PORT,
    DEFAULT_RECLAIM_AFTER_WINDOWS,
    DEFAULT_STATIC_DIR,
    DEFAULT_TUNNEL_PREFIX,
    DEFAULT_WEBSOCKET_SUFFIXES,
    DEFAULT_WINDOW_DURATION_S,
    NOT_FOUND_PATH,
)
from portal.utils.logger import get_logger

logger = get_logger(__name__)

# ─── Version constants ────────────────────────────────────────────────────────

SUPPORTED_CONFIG_VERSION = 1
SUPPORTED_VERSIONS: frozenset[int] = frozenset({1})

DEFAULT_CONFIG_PATHS = [
    ".portal/config.yaml",
    os.path.expanduser("~/.portal/config.yaml"),
]

_TRUE_VALUES: frozenset[str] = frozenset({"1", "true", "yes", "on"})
_FALSE_VALUES: frozenset[str] = frozenset({"0", "false", "no", "off"})


# ─── Dataclasses ─────────────────────────────────────────────────────────────


@dataclass
class ServerConfig:
    """Listener configuration.

    trust_proxy: when True the client IP used for admission is the leftmost
                 ``X-Forwarded-For`` entry; when False it is the raw peer address.
    """

    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    trust_proxy: bool = True


@dataclass
class AdmissionConfig:
    """Per-client-IP admission limits for the tunnel-protocol handler."""

    max_connections_per_ip: int = DEFAULT_MAX_CONNECTIONS_PER_IP
    window_duration: int = DEFAULT_WINDOW_DURATION_S
    block_duration: int = DEFAULT_BLOCK_DURATION_S
    reclaim_after_windows: int = DEFAULT_RECLAIM_AFTER_WINDOWS


@dataclass
class RoutingConfig:
    """Route registration for the dispatcher."""

    tunnel_prefix: str = DEFAULT_TUNNEL_PREFIX
    websocket_suffixes: list[str] = field(
        default_factory=lambda: list(DEFAULT_WEBSOCKET_SUFFIXES)
    )
    not_found_path: str = NOT_FOUND_PATH


@dataclass
class HandlerConfig:
    """Optional ``module:attribute`` import strings for downstream handlers.

    None selects the built-in handler (HTTP relay for the tunnel protocol,
    the unavailable handler for the tunnel websocket).
    """

    tunnel: Optional[str] = None
    websocket: Optional[str] = None
    relay_url: Optional[str] = None  # outbound through an upstream relay when set


@dataclass
class ApplicationConfig:
    """Application handler configuration."""

    static_dir: str = DEFAULT_STATIC_DIR


@dataclass
class Config:
    """Root configuration object populated from .portal/config.yaml.

    All fields have safe defaults; Portal can start without any config file.
    """

    version: int = SUPPORTED_CONFIG_VERSION
    server: ServerConfig = field(default_factory=ServerConfig)
    admission: AdmissionConfig = field(default_factory=AdmissionConfig)
    routing: RoutingConfig = field(default_factory=RoutingConfig)
    handlers: HandlerConfig = field(default_factory=HandlerConfig)
    application: ApplicationConfig = field(default_factory=ApplicationConfig)
    path: Optional[str] = None  # Path to the loaded config file

    @classmethod
    def defaults(cls) -> "Config":
        """Return a fully-default Config (no file required)."""
        return cls()

    @classmethod
    def from_dict(cls, raw: dict, path: Optional[str] = None) -> "Config":
        """Construct Config from a parsed YAML dict.

        Merges user-supplied values onto defaults; unknown keys are ignored.

        Raises:
            SystemExit(1): On a non-positive admission value or a malformed
                           route registration.
        """
        server_raw = raw.get("server", {}) or {}
        server = ServerConfig(
            host=server_raw.get("host", DEFAULT_HOST),
            port=_positive_int("server.port", server_raw.get("port", DEFAULT_PORT)),
            trust_proxy=_parse_bool("server.trust_proxy", server_raw.get("trust_proxy", True)),
        )

        admission_raw = raw.get("admission", {}) or {}
        admission = AdmissionConfig(
            max_connections_per_ip=_positive_int(
                "admission.max_connections_per_ip",
                admission_raw.get("max_connections_per_ip", DEFAULT_MAX_CONNECTIONS_PER_IP),
            ),
            window_duration=_positive_int(
                "admission.window_duration",
                admission_raw.get("window_duration", DEFAULT_WINDOW_DURATION_S),
            ),
            block_duration=_positive_int(
                "admission.block_duration",
                admission_raw.get("block_duration", DEFAULT_BLOCK_DURATION_S),
            ),
            reclaim_after_windows=_positive_int(
                "admission.reclaim_after_windows",
                admission_raw.get("reclaim_after_windows", DEFAULT_RECLAIM_AFTER_WINDOWS),
            ),
        )

        routing_raw = raw.get("routing", {}) or {}
        tunnel_prefix = routing_raw.get("tunnel_prefix", DEFAULT_TUNNEL_PREFIX)
        if not isinstance(tunnel_prefix, str) or not tunnel_prefix.startswith("/"):
            _fail(f"Invalid routing.tunnel_prefix: {tunnel_prefix!r}. Must start with '/'.")
        suffixes = routing_raw.get("websocket_suffixes", list(DEFAULT_WEBSOCKET_SUFFIXES))
        if not isinstance(suffixes, list) or not all(isinstance(s, str) and s for s in suffixes):
            _fail("Invalid routing.websocket_suffixes: must be a list of non-empty strings.")
        routing = RoutingConfig(
            tunnel_prefix=tunnel_prefix,
            websocket_suffixes=suffixes,
            not_found_path=routing_raw.get("not_found_path", NOT_FOUND_PATH),
        )

        handlers_raw = raw.get("handlers", {}) or {}
        handlers = HandlerConfig(
            tunnel=handlers_raw.get("tunnel"),
            websocket=handlers_raw.get("websocket"),
            relay_url=handlers_raw.get("relay_url"),
        )

        application_raw = raw.get("application", {}) or {}
        application = ApplicationConfig(
            static_dir=application_raw.get("static_dir", DEFAULT_STATIC_DIR),
        )

        return cls(
            version=raw.get("version", SUPPORTED_CONFIG_VERSION),
            server=server,
            admission=admission,
            routing=routing,
            handlers=handlers,
            application=application,
            path=path,
        )


# ─── Config loading ───────────────────────────────────────────────────────────


def load_config(config_path: Optional[str] = None) -> Config:
    """Load and validate Portal configuration.

    If no file is found at any search path, returns default Config (not an
    error). If a file is found but invalid, writes the error to stderr and
    raises SystemExit(1). Environment overrides are applied in both cases.

    Returns:
        Config object with all values populated (file values merged onto defaults).

    Raises:
        SystemExit(1): On YAML parse error, missing or unsupported ``version``,
                       invalid values, or an invalid environment override.
    """
    search_paths: list[str] = []
    if config_path:
        search_paths.append(config_path)
    env_config = os.environ.get("PORTAL_CONFIG")
    if env_config:
        search_paths.append(env_config)
    search_paths.extend(DEFAULT_CONFIG_PATHS)

    found_path: Optional[str] = None
    for candidate in search_paths:
        expanded = os.path.expanduser(candidate)
        if os.path.isfile(expanded):
            found_path = expanded
            break

    # ── No config file found ─────────────────────────────────────────────────
    if found_path is None:
        logger.info("No config file found — using defaults", searched=search_paths)
        config = Config.defaults()
        _apply_env_overrides(config)
        return config

    # ── Parse config file ─────────────────────────────────────────────────────
    logger.info("Loading config", path=found_path)

    try:
        with open(found_path) as fh:
            raw = yaml.safe_load(fh)
    except yaml.YAMLError as exc:
        _fail(
            f"Failed to parse {found_path}: {exc}\n"
            "Portal refuses to start with an invalid config. "
            "Check the YAML syntax and try again."
        )
    except OSError as exc:
        _fail(f"Could not read {found_path}: {exc}")

    if not isinstance(raw, dict):
        if raw is None:
            _fail(
                f"{found_path} is missing the required 'version' field.\n"
                "Add 'version: 1' to the top of your config file."
            )
        _fail(
            f"{found_path} is not a valid YAML mapping.\n"
            "The config file must be a YAML dictionary at the top level."
        )

    # ── Version validation ────────────────────────────────────────────────────
    version = raw.get("version")
    if version is None:
        _fail(
            f"{found_path} is missing the required 'version' field.\n"
            "Add 'version: 1' to the top of your config file."
        )
    if version not in SUPPORTED_VERSIONS:
        _fail(
            f"Unsupported config version: {version}. "
            f"Supported versions: {sorted(SUPPORTED_VERSIONS)}."
        )

    config = Config.from_dict(raw, path=found_path)
    _apply_env_overrides(config)

    if not config.server.trust_proxy:
        logger.info("trust_proxy disabled, admission keyed on raw peer address")

    logger.info(
        "Config loaded",
        path=found_path,
        version=config.version,
        port=config.server.port,
        max_connections_per_ip=config.admission.max_connections_per_ip,
    )
    return config


def _apply_env_overrides(config: Config) -> None:
    """Apply environment variable overrides to a Config object in-place.

    Called for both file-loaded and default configs so env vars always take
    precedence over any file value.

    Raises:
        SystemExit(1): If a numeric override is not a positive integer, or
                       TRUST_PROXY is not a recognised boolean.
    """
    env_port = os.environ.get("PORT", "").strip()
    if env_port:
        config.server.port = _positive_int("PORT", env_port)

    env_host = os.environ.get("HOST")
    if env_host:
        config.server.host = env_host

    numeric_overrides = (
        ("BARE_MAX_CONNECTIONS_PER_IP", "max_connections_per_ip"),
        ("BARE_WINDOW_DURATION", "window_duration"),
        ("BARE_BLOCK_DURATION", "block_duration"),
    )
    for env_name, attr in numeric_overrides:
        env_value = os.environ.get(env_name, "").strip()
        if env_value:
            setattr(config.admission, attr, _positive_int(env_name, env_value))

    env_trust = os.environ.get("TRUST_PROXY", "").strip()
    if env_trust:
        config.server.trust_proxy = _parse_bool("TRUST_PROXY", env_trust)


def _positive_int(name: str, value: Any) -> int:
    """Coerce *value* to a positive int or exit with a config error."""
    try:
        number = int(value)
    except (TypeError, ValueError):
        _fail(f"{name} is not a valid integer: '{value}'")
    if number <= 0:
        _fail(f"{name} must be a positive integer, got {number}")
    return number


def _parse_bool(name: str, value: Any) -> bool:
    """Accept a YAML boolean or one of the recognised true/false spellings."""
    if isinstance(value, bool):
        return value
    normalized = str(value).strip().lower()
    if normalized in _TRUE_VALUES:
        return True
    if normalized in _FALSE_VALUES:
        return False
    _fail(f"{name} is not a boolean: '{value}'")


def _fail(message: str) -> NoReturn:
    print(f"CONFIG ERROR: {message}", file=sys.stderr)
    raise SystemExit(1)
