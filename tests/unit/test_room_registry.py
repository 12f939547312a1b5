"""Unit tests for the room registry.

Tests lazy room creation, eager deletion, single-room membership and
broadcast fan-out with per-recipient failure isolation.
"""

import pytest

from src.signaling.room_registry import RoomRegistry
from tests.helpers.relay_test_utils import make_session


def test_join_creates_room_lazily() -> None:
    """Test that joining an unknown room creates it."""
    registry = RoomRegistry()
    session, _ = make_session("s1")

    assert registry.has_room("r1") is False

    previous = registry.join("r1", session)

    assert previous is None
    assert registry.has_room("r1")
    assert registry.members("r1") == frozenset({session})
    assert registry.room_of(session) == "r1"
    assert len(registry) == 1


def test_join_moves_session_between_rooms() -> None:
    """Test that a session belongs to at most one room."""
    registry = RoomRegistry()
    session, _ = make_session("s1")
    other, _ = make_session("s2")

    registry.join("a", session)
    registry.join("a", other)
    previous = registry.join("b", session)

    assert previous == "a"
    assert registry.members("a") == frozenset({other})
    assert registry.members("b") == frozenset({session})
    assert registry.room_of(session) == "b"


def test_join_same_room_twice_is_idempotent() -> None:
    """Test that re-joining the current room does not duplicate membership."""
    registry = RoomRegistry()
    session, _ = make_session("s1")

    registry.join("r1", session)
    assert registry.join("r1", session) is None
    assert len(registry.members("r1")) == 1


def test_leave_deletes_empty_room() -> None:
    """Test that the last leave removes the room."""
    registry = RoomRegistry()
    s1, _ = make_session("s1")
    s2, _ = make_session("s2")
    registry.join("r1", s1)
    registry.join("r1", s2)

    assert registry.leave("r1", s1) is True
    assert registry.has_room("r1")

    assert registry.leave("r1", s2) is True
    assert registry.has_room("r1") is False
    assert "r1" not in registry
    assert registry.room_count == 0


def test_leave_non_member_is_noop() -> None:
    """Test leaving a room the session is not in."""
    registry = RoomRegistry()
    s1, _ = make_session("s1")
    s2, _ = make_session("s2")
    registry.join("r1", s1)

    assert registry.leave("r1", s2) is False
    assert registry.leave("missing", s1) is False
    assert registry.members("r1") == frozenset({s1})


def test_join_elsewhere_deletes_emptied_room() -> None:
    """Test that moving the only member out of a room deletes it."""
    registry = RoomRegistry()
    session, _ = make_session("s1")

    registry.join("a", session)
    registry.join("b", session)

    assert registry.has_room("a") is False
    assert registry.room_count == 1


@pytest.mark.asyncio
async def test_broadcast_excludes_sender() -> None:
    """Test that the sender never receives its own broadcast."""
    registry = RoomRegistry()
    s1, t1 = make_session("s1")
    s2, t2 = make_session("s2")
    s3, t3 = make_session("s3")
    for s in (s1, s2, s3):
        registry.join("r1", s)

    delivered = await registry.broadcast("r1", s1, {"type": "offer", "sdp": "x"})

    assert delivered == 2
    assert t1.sent == []
    assert t2.sent == [{"type": "offer", "sdp": "x"}]
    assert t3.sent == [{"type": "offer", "sdp": "x"}]


@pytest.mark.asyncio
async def test_broadcast_excludes_by_handle_not_user_id() -> None:
    """Test that two sessions with the same user id are distinct members."""
    registry = RoomRegistry()
    s1, t1 = make_session("s1")
    s2, t2 = make_session("s2")
    s1.user_id = s2.user_id = "same-name"
    registry.join("r1", s1)
    registry.join("r1", s2)

    await registry.broadcast("r1", s1, {"type": "transcription", "text": "hi"})

    assert t1.sent == []
    assert len(t2.sent) == 1


@pytest.mark.asyncio
async def test_broadcast_to_absent_room() -> None:
    """Test that broadcasting to a missing room does nothing."""
    registry = RoomRegistry()
    s1, _ = make_session("s1")

    assert await registry.broadcast("missing", s1, {"type": "offer"}) == 0


@pytest.mark.asyncio
async def test_broadcast_isolates_failing_recipient() -> None:
    """Test that one failing recipient does not block the others."""
    registry = RoomRegistry()
    sender, _ = make_session("sender")
    broken, _ = make_session("broken", fail_sends=True)
    healthy, t_healthy = make_session("healthy")
    for s in (sender, broken, healthy):
        registry.join("r1", s)

    delivered = await registry.broadcast("r1", sender, {"type": "answer"})

    assert delivered == 1
    assert t_healthy.sent == [{"type": "answer"}]


@pytest.mark.asyncio
async def test_broadcast_skips_disconnected_members() -> None:
    """Test that members with a closed connection are skipped."""
    registry = RoomRegistry()
    sender, _ = make_session("sender")
    gone, t_gone = make_session("gone")
    registry.join("r1", sender)
    registry.join("r1", gone)
    await t_gone.close()

    assert await registry.broadcast("r1", sender, {"type": "offer"}) == 0
    assert t_gone.sent == []
