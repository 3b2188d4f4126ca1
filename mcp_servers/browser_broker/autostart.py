from __future__ import annotations

import asyncio
import logging
import os
import subprocess
import sys

from .config import BrokerConfig
from .errors import ConnectFailedError
from .framing import STREAM_LIMIT

logger = logging.getLogger("mcp.browser_broker.autostart")


def spawn_broker(config: BrokerConfig) -> subprocess.Popen:
    """Start the broker detached from the caller's session and stdio."""
    env = os.environ.copy()
    env["MCP_BROWSER_BROKER_SOCKET"] = str(config.socket_path)
    return subprocess.Popen(
        [sys.executable, "-m", "mcp_servers.browser_broker.broker"],
        stdin=subprocess.DEVNULL,
        stdout=subprocess.DEVNULL,
        stderr=subprocess.DEVNULL,
        env=env,
        start_new_session=True,
        close_fds=True,
    )


async def connect_to_broker(
    config: BrokerConfig, *, autostart: bool = True
) -> tuple[asyncio.StreamReader, asyncio.StreamWriter]:
    """Connect to the broker socket, spawning the broker once if nobody is listening.

    Retries `connect_attempts` times, `connect_interval_ms` apart.
    """
    path = str(config.socket_path)
    try:
        return await asyncio.open_unix_connection(path, limit=STREAM_LIMIT)
    except OSError as exc:
        logger.debug("broker not reachable at %s: %s", path, exc)

    if autostart:
        config.socket_path.parent.mkdir(parents=True, exist_ok=True)
        proc = spawn_broker(config)
        logger.info("started broker pid=%d socket=%s", proc.pid, path)

    interval = config.connect_interval_ms / 1000.0
    last_error: OSError | None = None
    for _ in range(max(1, config.connect_attempts)):
        await asyncio.sleep(interval)
        try:
            return await asyncio.open_unix_connection(path, limit=STREAM_LIMIT)
        except OSError as exc:
            last_error = exc
    raise ConnectFailedError(f"Could not connect to broker at {path}: {last_error}")
