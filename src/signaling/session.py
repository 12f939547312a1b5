"""Server-side handle for one connected relay client.

A Session wraps the transport connection and tracks the relay state of that
client: the display user id and the room it currently belongs to. Sessions
compare and hash by identity, so two clients announcing the same user id are
still distinct room members.
"""

import logging
import time
from enum import Enum

from src.common.types import RelayPayload, RoomID, SessionID, UserID
from src.signaling.transport.base import TransportSession

logger = logging.getLogger(__name__)


class SessionState(Enum):
    """Session state machine states.

    State Transitions:
    - UNJOINED → JOINED (on join)
    - JOINED → JOINED (on join to another room; old room is left first)
    - JOINED → UNJOINED (on leave or disconnect)
    - * → CLOSED (on disconnect, after room cleanup)
    """

    UNJOINED = "unjoined"
    JOINED = "joined"
    CLOSED = "closed"


# Valid state transitions
VALID_TRANSITIONS: dict[SessionState, set[SessionState]] = {
    SessionState.UNJOINED: {SessionState.JOINED, SessionState.CLOSED},
    SessionState.JOINED: {SessionState.JOINED, SessionState.UNJOINED, SessionState.CLOSED},
    SessionState.CLOSED: set(),  # Terminal state
}


class Session:
    """Relay state for one connected client.

    Owned by the boundary adapter that accepted the connection; referenced,
    never owned, by the room registry.

    Attributes:
        transport: Underlying transport session
        user_id: Display label, assigned on first join
        current_room: Room the session belongs to, if any
        state: Current relay state
        connected_at: Monotonic timestamp of connection
    """

    def __init__(self, transport: TransportSession) -> None:
        self.transport = transport
        self.user_id: UserID | None = None
        self.current_room: RoomID | None = None
        self.state = SessionState.UNJOINED
        self.connected_at = time.monotonic()
        self.messages_received = 0

    @property
    def session_id(self) -> SessionID:
        """Transport handle id."""
        return self.transport.session_id

    @property
    def is_connected(self) -> bool:
        """Whether the underlying connection is still open."""
        return self.transport.is_connected

    def transition_state(self, new_state: SessionState) -> None:
        """Transition to a new state.

        Args:
            new_state: Target state

        Raises:
            ValueError: If the transition is not allowed
        """
        if new_state not in VALID_TRANSITIONS[self.state]:
            raise ValueError(
                f"Invalid session transition: {self.state.value} -> {new_state.value}"
            )

        logger.debug(
            "Session state transition",
            extra={
                "session_id": self.session_id,
                "from_state": self.state.value,
                "to_state": new_state.value,
            },
        )
        self.state = new_state

    def mark_joined(self, room_id: RoomID, user_id: UserID) -> None:
        """Record membership of ``room_id`` under ``user_id``."""
        self.transition_state(SessionState.JOINED)
        self.current_room = room_id
        self.user_id = user_id

    def mark_left(self) -> None:
        """Clear room membership."""
        self.transition_state(SessionState.UNJOINED)
        self.current_room = None

    def mark_closed(self) -> None:
        """Mark the session as disconnected; no further transitions."""
        if self.state != SessionState.CLOSED:
            self.transition_state(SessionState.CLOSED)
        self.current_room = None

    async def send(self, payload: RelayPayload) -> None:
        """Send one JSON object to this client.

        Raises:
            ConnectionError: If the connection is closed
        """
        await self.transport.send_json(payload)

    def __repr__(self) -> str:
        return (
            f"Session(session_id={self.session_id!r}, user_id={self.user_id!r}, "
            f"room={self.current_room!r}, state={self.state.value})"
        )
