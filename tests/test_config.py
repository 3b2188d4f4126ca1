from __future__ import annotations

import logging

import pytest

from mcp_servers.browser_broker import paths
from mcp_servers.browser_broker.config import BrokerConfig, sweep_interval_ms
from mcp_servers.browser_broker.errors import InvalidRequestError
from mcp_servers.browser_broker.tools import TOOLS, tool_spec

_ENV = (
    "MCP_BROWSER_CLAIM_TTL_MS",
    "MCP_BROWSER_BROKER_SOCKET",
    "MCP_BROWSER_BROKER_DIR",
    "MCP_BROWSER_BACKEND",
    "MCP_BROWSER_REQUEST_TIMEOUT_MS",
    "MCP_BROWSER_CONNECT_ATTEMPTS",
    "MCP_BROWSER_CONNECT_INTERVAL_MS",
    "MCP_BROWSER_CDP_URL",
    "MCP_BROWSER_DOWNLOAD_DIR",
    "MCP_BROWSER_BROKER_LOG",
    "MCP_BROWSER_DEBUG",
)


@pytest.fixture()
def clean_env(monkeypatch, tmp_path):
    for name in _ENV:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("MCP_BROWSER_BROKER_DIR", str(tmp_path / "rt"))
    return monkeypatch


def test_defaults(clean_env, tmp_path) -> None:
    cfg = BrokerConfig.from_env()

    assert cfg.claim_ttl_ms == 300_000
    assert cfg.socket_path == tmp_path / "rt" / "broker.sock"
    assert cfg.backend == "extension"
    assert cfg.cdp_url == "http://127.0.0.1:9222"
    assert cfg.request_timeout == 60.0
    assert cfg.log_level == logging.INFO
    assert cfg.leases_enabled


def test_ttl_env_parsing(clean_env) -> None:
    clean_env.setenv("MCP_BROWSER_CLAIM_TTL_MS", "0")
    assert BrokerConfig.from_env().leases_enabled is False

    clean_env.setenv("MCP_BROWSER_CLAIM_TTL_MS", "-5")
    assert BrokerConfig.from_env().claim_ttl_ms == 300_000

    clean_env.setenv("MCP_BROWSER_CLAIM_TTL_MS", "soon")
    assert BrokerConfig.from_env().claim_ttl_ms == 300_000

    clean_env.setenv("MCP_BROWSER_CLAIM_TTL_MS", "1500")
    assert BrokerConfig.from_env().claim_ttl_ms == 1500


def test_overrides(clean_env, tmp_path) -> None:
    clean_env.setenv("MCP_BROWSER_BROKER_SOCKET", str(tmp_path / "x.sock"))
    clean_env.setenv("MCP_BROWSER_BACKEND", "Agent-Browser")
    clean_env.setenv("MCP_BROWSER_CDP_URL", "http://127.0.0.1:9333/")
    clean_env.setenv("MCP_BROWSER_DOWNLOAD_DIR", str(tmp_path / "dl"))
    clean_env.setenv("MCP_BROWSER_DEBUG", "1")

    cfg = BrokerConfig.from_env()

    assert cfg.socket_path == tmp_path / "x.sock"
    assert cfg.backend == "agent"
    assert cfg.cdp_url == "http://127.0.0.1:9333"
    assert cfg.download_dir == tmp_path / "dl"
    assert cfg.log_level == logging.DEBUG


def test_sweep_interval_is_clamped() -> None:
    assert sweep_interval_ms(1_000) == 10_000
    assert sweep_interval_ms(60_000) == 30_000
    assert sweep_interval_ms(300_000) == 60_000


def test_runtime_dir_falls_back_to_tmp(monkeypatch) -> None:
    monkeypatch.delenv("MCP_BROWSER_BROKER_DIR", raising=False)
    monkeypatch.delenv("XDG_RUNTIME_DIR", raising=False)
    monkeypatch.setattr(paths, "_infer_xdg_runtime_dir", lambda _uid: None)

    root = paths._runtime_root()

    assert root.parent.as_posix() == "/tmp"
    assert root.name.startswith("browser-broker-")


def test_runtime_dir_uses_xdg(monkeypatch, tmp_path) -> None:
    monkeypatch.delenv("MCP_BROWSER_BROKER_DIR", raising=False)
    monkeypatch.setenv("XDG_RUNTIME_DIR", str(tmp_path))

    p = paths.runtime_dir()

    assert p == tmp_path / "browser-broker"
    assert p.is_dir()


def test_tool_registry() -> None:
    assert {name for name, spec in TOOLS.items() if not spec.requires_tab} == {
        "get_tabs",
        "get_active_tab",
        "open_tab",
        "list_downloads",
    }
    assert len(TOOLS) == 16
    assert tool_spec(" click ").name == "click"
    with pytest.raises(InvalidRequestError, match="Unknown tool: hover"):
        tool_spec("hover")
    with pytest.raises(InvalidRequestError, match="tool is required"):
        tool_spec(None)
