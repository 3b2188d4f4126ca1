from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path

from .paths import broker_socket_path, default_download_dir

DEFAULT_CLAIM_TTL_MS = 300_000
DEFAULT_REQUEST_TIMEOUT_MS = 60_000
DEFAULT_CONNECT_ATTEMPTS = 50
DEFAULT_CONNECT_INTERVAL_MS = 100
DEFAULT_CDP_URL = "http://127.0.0.1:9222"

_MIN_SWEEP_MS = 10_000
_MAX_SWEEP_MS = 60_000


def _int_env(name: str, default: int, *, minimum: int = 0) -> int:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = int(raw.strip())
    except ValueError:
        return default
    if value < minimum:
        return default
    return value


def sweep_interval_ms(ttl_ms: int) -> int:
    """Sweep cadence: half the TTL, clamped to [10 s, 60 s]."""
    return min(max(_MIN_SWEEP_MS, ttl_ms // 2), _MAX_SWEEP_MS)


@dataclass
class BrokerConfig:
    socket_path: Path
    claim_ttl_ms: int = DEFAULT_CLAIM_TTL_MS
    request_timeout_ms: int = DEFAULT_REQUEST_TIMEOUT_MS
    connect_attempts: int = DEFAULT_CONNECT_ATTEMPTS
    connect_interval_ms: int = DEFAULT_CONNECT_INTERVAL_MS
    backend: str = "extension"
    cdp_url: str = DEFAULT_CDP_URL
    download_dir: Path | None = None
    log_file: str | None = None
    debug: bool = False

    @staticmethod
    def normalize_backend(raw: str | None) -> str:
        backend = (raw or "").strip().lower()
        if backend in {"agent", "agent-browser", "headless"}:
            return "agent"
        return "extension"

    @property
    def leases_enabled(self) -> bool:
        return self.claim_ttl_ms > 0

    @property
    def sweep_interval_ms(self) -> int:
        return sweep_interval_ms(self.claim_ttl_ms)

    @property
    def request_timeout(self) -> float:
        return self.request_timeout_ms / 1000.0

    @property
    def log_level(self) -> int:
        return logging.DEBUG if self.debug else logging.INFO

    @classmethod
    def from_env(cls) -> BrokerConfig:
        return cls(
            socket_path=broker_socket_path(),
            claim_ttl_ms=_int_env("MCP_BROWSER_CLAIM_TTL_MS", DEFAULT_CLAIM_TTL_MS),
            request_timeout_ms=_int_env("MCP_BROWSER_REQUEST_TIMEOUT_MS", DEFAULT_REQUEST_TIMEOUT_MS, minimum=1),
            connect_attempts=_int_env("MCP_BROWSER_CONNECT_ATTEMPTS", DEFAULT_CONNECT_ATTEMPTS, minimum=1),
            connect_interval_ms=_int_env("MCP_BROWSER_CONNECT_INTERVAL_MS", DEFAULT_CONNECT_INTERVAL_MS),
            backend=cls.normalize_backend(os.environ.get("MCP_BROWSER_BACKEND")),
            cdp_url=(os.environ.get("MCP_BROWSER_CDP_URL") or DEFAULT_CDP_URL).rstrip("/"),
            download_dir=default_download_dir(),
            log_file=os.environ.get("MCP_BROWSER_BROKER_LOG") or None,
            debug=os.environ.get("MCP_BROWSER_DEBUG") == "1",
        )


def configure_logging(config: BrokerConfig | None = None) -> None:
    """Process-wide logging setup. Output goes to stderr; stdout belongs to the protocol."""
    cfg = config or BrokerConfig.from_env()
    logging.basicConfig(
        level=cfg.log_level,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
    if cfg.log_file:
        handler = logging.FileHandler(cfg.log_file, encoding="utf-8")
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s %(message)s"))
        logging.getLogger("mcp.browser_broker").addHandler(handler)
