"""End-to-end tests for the relay over real WebSocket connections."""

import asyncio

import pytest
import websockets
from websockets.exceptions import ConnectionClosed

from src.signaling.server import RelayServer
from tests.integration.conftest import recv_json, recv_until, send_json, ws_url


@pytest.mark.integration
@pytest.mark.asyncio
async def test_two_peer_negotiation(relay_server: RelayServer) -> None:
    """Test join, offer relay and disconnect between two browsers."""
    async with websockets.connect(ws_url(relay_server)) as a:
        await send_json(a, {"type": "join", "roomId": "r1", "userId": "A"})
        assert await recv_json(a) == {"type": "joined", "roomId": "r1", "userId": "A"}

        b = await websockets.connect(ws_url(relay_server))
        await send_json(b, {"type": "join", "roomId": "r1", "userId": "B"})
        assert await recv_json(b) == {"type": "joined", "roomId": "r1", "userId": "B"}
        assert await recv_json(a) == {"type": "peer-joined", "userId": "B"}

        await send_json(b, {"type": "offer", "sdp": "X"})
        assert await recv_json(a) == {"type": "offer", "sdp": "X", "from": "B"}

        await send_json(a, {"type": "answer", "sdp": "Y"})
        assert await recv_json(b) == {"type": "answer", "sdp": "Y", "from": "A"}

        await b.close()
        assert await recv_json(a) == {"type": "peer-left", "from": "B"}

        await asyncio.sleep(0.05)
        room = relay_server.registry.members("r1")
        assert len(room) == 1


@pytest.mark.integration
@pytest.mark.asyncio
async def test_messages_stay_in_room(relay_server: RelayServer) -> None:
    """Test that rooms are isolated from each other."""
    async with (
        websockets.connect(ws_url(relay_server)) as a,
        websockets.connect(ws_url(relay_server)) as b,
        websockets.connect(ws_url(relay_server)) as c,
    ):
        await send_json(a, {"type": "join", "roomId": "r1", "userId": "A"})
        await recv_until(a, "joined")
        await send_json(b, {"type": "join", "roomId": "r1", "userId": "B"})
        await recv_until(b, "joined")
        await send_json(c, {"type": "join", "roomId": "r2", "userId": "C"})
        await recv_until(c, "joined")

        await send_json(a, {"type": "transcription", "text": "hello"})

        assert await recv_until(b, "transcription") == {
            "type": "transcription",
            "text": "hello",
            "from": "A",
        }
        with pytest.raises(TimeoutError):
            await recv_json(c, timeout=0.3)


@pytest.mark.integration
@pytest.mark.asyncio
async def test_invalid_message_keeps_connection(relay_server: RelayServer) -> None:
    """Test that protocol errors are reported without closing the socket."""
    async with websockets.connect(ws_url(relay_server)) as ws:
        await ws.send("not json")
        assert await recv_json(ws) == {"type": "error", "message": "Invalid message format"}

        await send_json(ws, {"type": "wave"})
        assert await recv_json(ws) == {"type": "error", "message": "Unknown message type: wave"}

        await ws.send(b"\x00\x01")
        assert await recv_json(ws) == {
            "type": "error",
            "message": "Binary frames are not supported",
        }

        await send_json(ws, {"type": "join", "roomId": "r1"})
        joined = await recv_json(ws)
        assert joined["type"] == "joined"
        assert joined["userId"].startswith("user-")


@pytest.mark.integration
@pytest.mark.asyncio
async def test_unknown_path_rejected(relay_server: RelayServer) -> None:
    """Test that connections on other paths are closed with 1008."""
    async with websockets.connect(ws_url(relay_server, "/other")) as ws:
        with pytest.raises(ConnectionClosed) as exc_info:
            await asyncio.wait_for(ws.recv(), timeout=2.0)

    assert exc_info.value.rcvd is not None
    assert exc_info.value.rcvd.code == 1008


@pytest.mark.integration
@pytest.mark.asyncio
async def test_switch_rooms(relay_server: RelayServer) -> None:
    """Test that switching rooms notifies the old room first."""
    async with (
        websockets.connect(ws_url(relay_server)) as stay,
        websockets.connect(ws_url(relay_server)) as mover,
    ):
        await send_json(stay, {"type": "join", "roomId": "a", "userId": "S"})
        await recv_until(stay, "joined")
        await send_json(mover, {"type": "join", "roomId": "a", "userId": "M"})
        await recv_until(mover, "joined")
        await recv_until(stay, "peer-joined")

        await send_json(mover, {"type": "join", "roomId": "b", "userId": "M"})

        assert await recv_until(stay, "peer-left") == {"type": "peer-left", "from": "M"}
        assert await recv_until(mover, "joined") == {
            "type": "joined",
            "roomId": "b",
            "userId": "M",
        }
        assert relay_server.registry.has_room("b")
