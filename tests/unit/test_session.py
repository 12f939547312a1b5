"""Unit tests for the relay session state machine."""

import pytest

from src.signaling.session import SessionState
from tests.helpers.relay_test_utils import make_session


def test_initial_state() -> None:
    """Test a fresh session is unjoined with no identity."""
    session, _ = make_session("s1")

    assert session.state == SessionState.UNJOINED
    assert session.user_id is None
    assert session.current_room is None
    assert session.session_id == "s1"
    assert session.is_connected is True


def test_join_leave_cycle() -> None:
    """Test join then leave."""
    session, _ = make_session("s1")

    session.mark_joined("r1", "alice")
    assert session.state == SessionState.JOINED
    assert session.current_room == "r1"
    assert session.user_id == "alice"

    session.mark_left()
    assert session.state == SessionState.UNJOINED
    assert session.current_room is None
    # The label is kept for later peer-left/peer-joined messages
    assert session.user_id == "alice"


def test_leave_while_unjoined_is_invalid() -> None:
    """Test that UNJOINED -> UNJOINED is rejected."""
    session, _ = make_session("s1")

    with pytest.raises(ValueError, match="Invalid session transition"):
        session.mark_left()


def test_closed_is_terminal() -> None:
    """Test that nothing follows CLOSED and closing twice is harmless."""
    session, _ = make_session("s1")
    session.mark_joined("r1", "alice")

    session.mark_closed()
    session.mark_closed()

    assert session.state == SessionState.CLOSED
    assert session.current_room is None
    with pytest.raises(ValueError):
        session.mark_joined("r2", "alice")


def test_sessions_hash_by_identity() -> None:
    """Test that sessions with the same user id are distinct."""
    a, _ = make_session("a")
    b, _ = make_session("b")
    a.user_id = b.user_id = "same"

    assert a != b
    assert len({a, b}) == 2


@pytest.mark.asyncio
async def test_send_goes_to_transport() -> None:
    """Test that send delegates to the transport."""
    session, transport = make_session("s1")

    await session.send({"type": "error", "message": "x"})

    assert transport.sent == [{"type": "error", "message": "x"}]
