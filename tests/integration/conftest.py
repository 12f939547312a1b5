"""Integration test fixtures and utilities.

Provides shared fixtures for:
- Relay server lifecycle on free ports
- WebSocket client helpers for the relay protocol
"""

import asyncio
import json
import logging
from collections.abc import AsyncIterator
from typing import Any

import pytest_asyncio
from websockets.asyncio.client import ClientConnection

from src.signaling.config import HttpConfig, RelayConfig, WebSocketConfig
from src.signaling.server import RelayServer
from tests.helpers.relay_test_utils import get_free_port

logger = logging.getLogger(__name__)


@pytest_asyncio.fixture
async def relay_server() -> AsyncIterator[RelayServer]:
    """Start a relay server (WebSocket + HTTP) on free ports.

    The classifier worker is the bundled one (``python -m src.classifier``),
    spawned lazily on the first classify request.
    """
    config = RelayConfig(
        websocket=WebSocketConfig(host="127.0.0.1", port=get_free_port()),
        http=HttpConfig(host="127.0.0.1", port=get_free_port()),
        graceful_shutdown_timeout_s=2,
    )
    server = RelayServer(config)
    await server.start()
    logger.info(
        "Test relay started",
        extra={"ws_port": config.websocket.port, "http_port": config.http.port},
    )
    try:
        yield server
    finally:
        await server.stop()


def ws_url(server: RelayServer, path: str = "/ws") -> str:
    """WebSocket URL of a running relay."""
    return f"ws://127.0.0.1:{server.config.websocket.port}{path}"


def http_url(server: RelayServer, path: str) -> str:
    """HTTP URL of a running relay."""
    return f"http://127.0.0.1:{server.config.http.port}{path}"


async def send_json(ws: ClientConnection, message: dict[str, Any]) -> None:
    """Send one relay message."""
    await ws.send(json.dumps(message))


async def recv_json(ws: ClientConnection, timeout: float = 2.0) -> dict[str, Any]:
    """Receive one relay message."""
    raw = await asyncio.wait_for(ws.recv(), timeout=timeout)
    message: dict[str, Any] = json.loads(raw)
    return message


async def recv_until(
    ws: ClientConnection, message_type: str, timeout: float = 2.0
) -> dict[str, Any]:
    """Receive messages until one of ``message_type`` arrives."""
    async with asyncio.timeout(timeout):
        while True:
            message = await recv_json(ws, timeout=timeout)
            if message.get("type") == message_type:
                return message
