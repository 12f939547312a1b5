"""Signaling hub: per-session message routing for the relay.

Consumes inbound messages for each session, drives the room registry and
performs fan-out relay. The hub trusts only the envelope: it reads ``type``
(plus ``roomId``/``userId`` on join) and stamps ``from`` on relayed messages.
Negotiation payloads are passed through verbatim.

Session state machine:
- UNJOINED --join--> JOINED(room)
- JOINED(a) --join b--> JOINED(b)  (peer-left sent to a first)
- JOINED --leave / disconnect--> UNJOINED

Ordering: messages from one session are handled sequentially by that
session's task, and each broadcast completes before the next inbound message
on the same connection is processed.
"""

import logging
import time

from src.common.metrics import MetricsCollector
from src.common.types import RelayPayload, UserID
from src.signaling.room_registry import RoomRegistry
from src.signaling.session import Session, SessionState
from src.signaling.transport.websocket_protocol import (
    FORWARD_MESSAGE_TYPES,
    ErrorMessage,
    JoinedMessage,
    JoinMessage,
    LeaveMessage,
    PeerJoinedMessage,
    PeerLeftMessage,
    ProtocolError,
    UnknownMessageTypeError,
    decode_client_message,
)

logger = logging.getLogger(__name__)


def generate_user_id() -> UserID:
    """Server-side display label for clients that join without one."""
    return f"user-{int(time.time() * 1000)}"


class SignalingHub:
    """Routes relay messages between the members of each room.

    Args:
        registry: Room membership registry (shared, injected)
        metrics: Optional metrics collector
    """

    def __init__(self, registry: RoomRegistry, metrics: MetricsCollector | None = None) -> None:
        self.registry = registry
        self.metrics = metrics

    async def run_session(self, session: Session) -> None:
        """Process every inbound message of ``session`` until it disconnects.

        Disconnect is handled exactly like an explicit leave and never
        surfaces as an error.
        """
        if self.metrics:
            self.metrics.record_session_start()

        logger.info("Relay session started", extra={"session_id": session.session_id})

        try:
            async for raw in session.transport.receive_messages():
                session.messages_received += 1
                try:
                    await self.handle_message(session, raw)
                except Exception as e:
                    logger.exception(
                        "Error processing message",
                        extra={"session_id": session.session_id, "error": str(e)},
                    )
                    await self._send_error(session, "Message processing error")
        finally:
            await self.handle_disconnect(session)
            if self.metrics:
                self.metrics.record_session_end()

            logger.info(
                "Relay session ended",
                extra={
                    "session_id": session.session_id,
                    "messages": session.messages_received,
                },
            )

    async def handle_message(self, session: Session, raw: str) -> None:
        """Route one inbound text frame from ``session``.

        Malformed or unknown messages are answered with an ``error`` message
        to the sender only; the connection stays open.
        """
        try:
            message, data = decode_client_message(raw)
        except UnknownMessageTypeError as e:
            logger.warning(
                "Unknown message type",
                extra={"session_id": session.session_id, "type": e.message_type},
            )
            self._record_error()
            await self._send_error(session, str(e))
            return
        except ProtocolError as e:
            logger.warning(
                "Invalid relay message",
                extra={"session_id": session.session_id, "error": str(e)},
            )
            self._record_error()
            await self._send_error(session, str(e))
            return

        if self.metrics:
            self.metrics.record_relay_message()

        if isinstance(message, JoinMessage):
            await self._handle_join(session, message)
        elif isinstance(message, LeaveMessage):
            await self._handle_leave(session)
        elif message.type in FORWARD_MESSAGE_TYPES:
            await self._handle_forward(session, data)

    async def handle_disconnect(self, session: Session) -> None:
        """Clean up after the transport closed: leave the room, notify peers."""
        if session.state == SessionState.JOINED:
            await self._leave_current_room(session)
        session.mark_closed()

    async def _handle_join(self, session: Session, message: JoinMessage) -> None:
        if session.state == SessionState.JOINED:
            await self._leave_current_room(session)

        room_id = message.room_id
        user_id = message.user_id or generate_user_id()

        self.registry.join(room_id, session)
        session.mark_joined(room_id, user_id)
        self._update_room_gauge()

        logger.info(
            "User joined room",
            extra={"session_id": session.session_id, "room_id": room_id, "user_id": user_id},
        )

        try:
            await session.send(JoinedMessage(room_id=room_id, user_id=user_id).to_payload())
        except ConnectionError as e:
            logger.warning(
                "Failed to confirm join",
                extra={"session_id": session.session_id, "error": str(e)},
            )

        await self.registry.broadcast(
            room_id, session, PeerJoinedMessage(user_id=user_id).to_payload()
        )

    async def _handle_leave(self, session: Session) -> None:
        if session.state != SessionState.JOINED:
            logger.debug("Leave while not joined", extra={"session_id": session.session_id})
            return
        await self._leave_current_room(session)

    async def _handle_forward(self, session: Session, data: RelayPayload) -> None:
        if session.state != SessionState.JOINED or session.current_room is None:
            logger.debug(
                "Dropping message from session outside any room",
                extra={"session_id": session.session_id, "type": data.get("type")},
            )
            return

        # ``from`` is always stamped by the hub, never taken from the client
        payload = {**data, "from": session.user_id}
        delivered = await self.registry.broadcast(session.current_room, session, payload)

        logger.debug(
            "Relayed message",
            extra={
                "session_id": session.session_id,
                "room_id": session.current_room,
                "type": data.get("type"),
                "recipients": delivered,
            },
        )

    async def _leave_current_room(self, session: Session) -> None:
        room_id = session.current_room
        user_id = session.user_id
        if room_id is None:
            return

        self.registry.leave(room_id, session)
        session.mark_left()
        self._update_room_gauge()

        logger.info(
            "User left room",
            extra={"session_id": session.session_id, "room_id": room_id, "user_id": user_id},
        )

        if user_id is not None:
            await self.registry.broadcast(
                room_id, session, PeerLeftMessage(from_user=user_id).to_payload()
            )

    async def _send_error(self, session: Session, message: str) -> None:
        try:
            await session.send(ErrorMessage(message=message).to_payload())
        except ConnectionError:
            logger.debug(
                "Could not deliver error to closed session",
                extra={"session_id": session.session_id},
            )

    def _record_error(self) -> None:
        if self.metrics:
            self.metrics.record_relay_error()

    def _update_room_gauge(self) -> None:
        if self.metrics:
            self.metrics.set_rooms_active(self.registry.room_count)
