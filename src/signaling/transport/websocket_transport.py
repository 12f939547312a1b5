"""WebSocket boundary for the signaling relay.

Clients connect to a single path (``/ws`` by default). Every admitted
connection is wrapped in a :class:`WebSocketSession` and handed to the server
loop through :meth:`WebSocketTransport.accept_session`; the connection
handler then parks until the socket closes.

Rejections happen before a session exists:
- wrong path: close 1008 (policy violation)
- connection limit reached: close 1013 (try again later)
"""

import asyncio
import json
import logging
import uuid
from collections.abc import AsyncIterator

import websockets
from websockets.asyncio.server import Server, ServerConnection
from websockets.protocol import State

from src.common.types import RelayPayload, SessionID
from src.signaling.transport.base import Transport, TransportSession
from src.signaling.transport.websocket_protocol import ErrorMessage

logger = logging.getLogger(__name__)

CLOSE_POLICY_VIOLATION = 1008
CLOSE_TRY_AGAIN_LATER = 1013


def new_session_id() -> SessionID:
    """Handle id for a freshly admitted connection."""
    return f"ws-{uuid.uuid4().hex[:12]}"


class WebSocketSession(TransportSession):
    """Relay client connected over a WebSocket.

    Text frames are relay messages. Binary frames are answered with an
    ``error`` message and dropped.
    """

    def __init__(self, websocket: ServerConnection, session_id: str) -> None:
        self._ws = websocket
        self._id = session_id
        self._open = True

        logger.debug(
            "Relay client attached",
            extra={"session_id": session_id, "remote": websocket.remote_address},
        )

    @property
    def session_id(self) -> SessionID:
        return self._id

    @property
    def is_connected(self) -> bool:
        return self._open and self._ws.state is State.OPEN

    async def send_json(self, payload: RelayPayload) -> None:
        """Send one relay message as a text frame.

        Raises:
            ConnectionError: If the connection is closed
        """
        if not self.is_connected:
            raise ConnectionError(f"Relay client {self._id}: connection is closed")

        text = json.dumps(payload)
        try:
            await self._ws.send(text)
        except websockets.exceptions.ConnectionClosed as e:
            self._open = False
            raise ConnectionError(f"Relay client {self._id}: {e}") from e

    async def receive_messages(self) -> AsyncIterator[str]:
        try:
            async for frame in self._ws:
                if isinstance(frame, str):
                    yield frame
                    continue

                logger.warning(
                    "Dropping binary frame from relay client",
                    extra={"session_id": self._id, "bytes": len(frame)},
                )
                await self._reject_frame("Binary frames are not supported")
        except websockets.exceptions.ConnectionClosed as e:
            logger.debug(
                "Relay client connection dropped",
                extra={"session_id": self._id, "reason": str(e)},
            )
        finally:
            self._open = False

    async def close(self) -> None:
        if not self._open:
            return
        self._open = False
        try:
            await self._ws.close()
        except Exception as e:
            logger.warning(
                "Relay client close failed",
                extra={"session_id": self._id, "error": str(e)},
            )

    async def _reject_frame(self, reason: str) -> None:
        try:
            await self.send_json(ErrorMessage(message=reason).to_payload())
        except ConnectionError:
            logger.debug("Could not report rejected frame", extra={"session_id": self._id})


class WebSocketTransport(Transport):
    """``websockets`` server admitting relay clients on one path.

    Args:
        host: Listen address
        port: Listen port (0 binds an ephemeral port, see :attr:`port`)
        path: The only request path accepted
        max_connections: Connections beyond this are closed with 1013
        max_message_bytes: Largest inbound frame accepted
    """

    def __init__(
        self,
        host: str = "0.0.0.0",  # noqa: S104
        port: int = 8080,
        path: str = "/ws",
        max_connections: int = 100,
        max_message_bytes: int = 2**20,
    ) -> None:
        self._host = host
        self._port = port
        self._path = path
        self._max_connections = max_connections
        self._max_message_bytes = max_message_bytes

        self._server: Server | None = None
        self._sessions: set[WebSocketSession] = set()
        self._admitted: asyncio.Queue[WebSocketSession] = asyncio.Queue()

    @property
    def transport_type(self) -> str:
        return "websocket"

    @property
    def is_running(self) -> bool:
        return self._server is not None

    @property
    def port(self) -> int:
        """Port actually bound once running, configured port otherwise."""
        if self._server is not None:
            for sock in self._server.sockets:
                return int(sock.getsockname()[1])
        return self._port

    @property
    def active_connections(self) -> int:
        """Admitted connections that have not closed yet."""
        return len(self._sessions)

    async def start(self) -> None:
        if self._server is not None:
            raise RuntimeError("WebSocket transport is already running")

        try:
            self._server = await websockets.serve(
                self._serve_client,
                self._host,
                self._port,
                max_size=self._max_message_bytes,
            )
        except OSError as e:
            logger.error(
                "Cannot bind relay WebSocket listener",
                extra={"host": self._host, "port": self._port, "error": str(e)},
            )
            raise
        except Exception as e:
            raise RuntimeError(f"Failed to start WebSocket transport: {e}") from e

        logger.info(
            "Relay WebSocket listener up",
            extra={"host": self._host, "port": self.port, "path": self._path},
        )

    async def stop(self) -> None:
        server, self._server = self._server, None
        if server is None:
            return
        server.close()
        await server.wait_closed()
        logger.info("Relay WebSocket listener down", extra={"port": self._port})

    async def accept_session(self) -> TransportSession:
        if self._server is None:
            raise RuntimeError("WebSocket transport is not running")
        return await self._admitted.get()

    def _admission_error(self, websocket: ServerConnection) -> tuple[int, str] | None:
        """Close code and reason if the connection must be refused."""
        path = websocket.request.path if websocket.request else ""
        if path.partition("?")[0] != self._path:
            return CLOSE_POLICY_VIOLATION, "Unknown path"
        if len(self._sessions) >= self._max_connections:
            return CLOSE_TRY_AGAIN_LATER, "Too many connections"
        return None

    async def _serve_client(self, websocket: ServerConnection) -> None:
        refusal = self._admission_error(websocket)
        if refusal is not None:
            code, reason = refusal
            logger.warning(
                "Refusing relay connection",
                extra={
                    "remote": websocket.remote_address,
                    "code": code,
                    "reason": reason,
                },
            )
            await websocket.close(code, reason)
            return

        session = WebSocketSession(websocket, new_session_id())
        self._sessions.add(session)
        logger.info(
            "Relay client connected",
            extra={"session_id": session.session_id, "remote": websocket.remote_address},
        )

        try:
            await self._admitted.put(session)
            # The hub consumes the socket from its own task; returning early
            # would make websockets close it.
            await websocket.wait_closed()
        finally:
            self._sessions.discard(session)
            logger.info("Relay client disconnected", extra={"session_id": session.session_id})
