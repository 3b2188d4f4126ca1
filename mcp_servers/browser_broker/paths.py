from __future__ import annotations

import os
from pathlib import Path


def _infer_xdg_runtime_dir(uid: int | None) -> Path | None:
    if uid is None or uid < 0:
        return None
    candidate = Path("/run") / "user" / str(uid)
    if candidate.is_dir() and os.access(candidate, os.W_OK | os.X_OK):
        return candidate
    return None


def _runtime_root() -> Path:
    raw = os.environ.get("MCP_BROWSER_BROKER_DIR")
    if isinstance(raw, str) and raw.strip():
        return Path(raw.strip()).expanduser()

    xdg = os.environ.get("XDG_RUNTIME_DIR")
    if isinstance(xdg, str) and xdg.strip():
        return Path(xdg.strip()).expanduser() / "browser-broker"

    uid = os.getuid() if hasattr(os, "getuid") else None
    inferred = _infer_xdg_runtime_dir(uid)
    if inferred is not None:
        return inferred / "browser-broker"
    suffix = str(uid) if isinstance(uid, int) and uid >= 0 else "user"
    return Path("/tmp") / f"browser-broker-{suffix}"


def runtime_dir() -> Path:
    p = _runtime_root()
    p.mkdir(parents=True, exist_ok=True, mode=0o700)
    return p


def broker_socket_path() -> Path:
    """Socket the broker listens on; `MCP_BROWSER_BROKER_SOCKET` overrides the location."""
    override = os.environ.get("MCP_BROWSER_BROKER_SOCKET")
    if isinstance(override, str) and override.strip():
        return Path(override.strip()).expanduser()
    # Keep paths short: some platforms have strict AF_UNIX path length limits.
    return runtime_dir() / "broker.sock"


def default_download_dir() -> Path:
    raw = os.environ.get("MCP_BROWSER_DOWNLOAD_DIR")
    if isinstance(raw, str) and raw.strip():
        return Path(raw.strip()).expanduser()
    return Path.home() / ".browser-broker" / "downloads"
