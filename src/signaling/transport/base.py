"""Connection interfaces the signaling hub is written against.

The hub only needs to push JSON objects to a client, pull raw text frames
from it and learn when it has gone away. Anything wire-specific (framing,
close codes, path routing) lives in the concrete transport.
"""

from abc import ABC, abstractmethod
from collections.abc import AsyncIterator

from src.common.types import RelayPayload, SessionID


class TransportSession(ABC):
    """One connected client as seen by the relay."""

    @property
    @abstractmethod
    def session_id(self) -> SessionID:
        """Opaque handle id, unique per connection."""

    @property
    @abstractmethod
    def is_connected(self) -> bool:
        """False once the peer closed or a send failed."""

    @abstractmethod
    async def send_json(self, payload: RelayPayload) -> None:
        """Serialize ``payload`` and deliver it to the client.

        Raises:
            ConnectionError: The client is gone
        """

    @abstractmethod
    def receive_messages(self) -> AsyncIterator[str]:
        """Inbound text frames in arrival order.

        Implemented as an async generator; exhausts when the client
        disconnects.
        """

    @abstractmethod
    async def close(self) -> None:
        """Close the connection from the server side (idempotent)."""


class Transport(ABC):
    """Listener producing :class:`TransportSession` objects."""

    @property
    @abstractmethod
    def transport_type(self) -> str:
        """Short name used in logs, e.g. ``"websocket"``."""

    @property
    @abstractmethod
    def is_running(self) -> bool:
        """True between a successful :meth:`start` and :meth:`stop`."""

    @abstractmethod
    async def start(self) -> None:
        """Bind and begin accepting clients.

        Raises:
            OSError: The listen address could not be bound
            RuntimeError: Already running, or startup failed otherwise
        """

    @abstractmethod
    async def stop(self) -> None:
        """Stop accepting clients and close open connections."""

    @abstractmethod
    async def accept_session(self) -> TransportSession:
        """Wait for the next admitted client.

        Raises:
            RuntimeError: The transport is not running
        """
