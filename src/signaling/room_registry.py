"""In-memory room membership registry.

Owns the mapping of room id → member sessions. Rooms are created lazily on
first join and deleted eagerly on last leave, so a room id is present if and
only if it has at least one member. A session belongs to at most one room.

Thread-safety: NOT thread-safe. All mutations happen on the event loop.
"""

import asyncio
import logging

from src.common.types import RelayPayload, RoomID
from src.signaling.session import Session

logger = logging.getLogger(__name__)


class RoomRegistry:
    """Room id → member set, plus the reverse session → room index."""

    def __init__(self) -> None:
        self._rooms: dict[RoomID, set[Session]] = {}
        self._session_rooms: dict[Session, RoomID] = {}

    def join(self, room_id: RoomID, session: Session) -> RoomID | None:
        """Add ``session`` to ``room_id``, leaving any prior room first.

        Args:
            room_id: Room to join (created if absent)
            session: Joining session

        Returns:
            The room the session was removed from, or None
        """
        previous = self._session_rooms.get(session)
        if previous is not None and previous != room_id:
            self.leave(previous, session)
        elif previous == room_id:
            return None

        self._rooms.setdefault(room_id, set()).add(session)
        self._session_rooms[session] = room_id

        logger.info(
            "Session joined room",
            extra={
                "session_id": session.session_id,
                "room_id": room_id,
                "members": len(self._rooms[room_id]),
            },
        )
        return previous

    def leave(self, room_id: RoomID, session: Session) -> bool:
        """Remove ``session`` from ``room_id``; delete the room when empty.

        Args:
            room_id: Room to leave
            session: Leaving session

        Returns:
            True if the session was a member and has been removed
        """
        members = self._rooms.get(room_id)
        if members is None or session not in members:
            return False

        members.discard(session)
        if self._session_rooms.get(session) == room_id:
            del self._session_rooms[session]

        if not members:
            del self._rooms[room_id]
            logger.info("Room deleted (empty)", extra={"room_id": room_id})
        else:
            logger.info(
                "Session left room",
                extra={
                    "session_id": session.session_id,
                    "room_id": room_id,
                    "remaining": len(members),
                },
            )
        return True

    async def broadcast(
        self, room_id: RoomID, sender: Session | None, payload: RelayPayload
    ) -> int:
        """Deliver ``payload`` to every member of ``room_id`` except ``sender``.

        Exclusion is by session handle, never by user id. Delivery failures are
        isolated per recipient. Members whose connection is already closed are
        skipped.

        Args:
            room_id: Target room (nothing happens if absent)
            sender: Session to exclude
            payload: JSON object to send

        Returns:
            Number of recipients the payload was delivered to
        """
        members = self._rooms.get(room_id)
        if not members:
            return 0

        recipients = [m for m in members if m is not sender and m.is_connected]
        if not recipients:
            return 0

        results = await asyncio.gather(
            *(recipient.send(payload) for recipient in recipients),
            return_exceptions=True,
        )

        delivered = 0
        for recipient, result in zip(recipients, results, strict=True):
            if isinstance(result, BaseException):
                logger.warning(
                    "Relay delivery failed",
                    extra={
                        "session_id": recipient.session_id,
                        "room_id": room_id,
                        "type": payload.get("type"),
                        "error": str(result),
                    },
                )
            else:
                delivered += 1
        return delivered

    def members(self, room_id: RoomID) -> frozenset[Session]:
        """Snapshot of the members of ``room_id`` (empty if absent)."""
        return frozenset(self._rooms.get(room_id, ()))

    def room_of(self, session: Session) -> RoomID | None:
        """Room ``session`` currently belongs to, if any."""
        return self._session_rooms.get(session)

    def has_room(self, room_id: RoomID) -> bool:
        """Whether ``room_id`` currently exists (has at least one member)."""
        return room_id in self._rooms

    @property
    def room_count(self) -> int:
        """Number of non-empty rooms."""
        return len(self._rooms)

    def __contains__(self, room_id: object) -> bool:
        return room_id in self._rooms

    def __len__(self) -> int:
        return len(self._rooms)
