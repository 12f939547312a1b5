"""Common type aliases for the relay backend.

These aliases improve code readability across the signaling and classifier
packages. They represent domain concepts shared by both halves of the system.

The type system distinguishes between:
- Relay types: room, user and session identifiers
- Classifier types: correlation ids and classification results

Example:
    >>> from src.common.types import ClassificationResult, RoomID
    >>> room: RoomID = "r1"
    >>> result: ClassificationResult = {"letter": "A", "confidence": 0.91}
"""

from typing import Any, TypedDict

# Relay types
type RoomID = str
"""Caller-supplied room name.

Rooms are created lazily when the first session joins and removed as soon
as the last member leaves.

Example:
    >>> room_id: RoomID = "standup-42"
"""

type UserID = str
"""Display label for a connected user.

Supplied by the client on join or generated server-side (``user-<ms>``).
Not an identity key: two sessions may share the same user id.

Example:
    >>> user_id: UserID = "user-1718000000000"
"""

type SessionID = str
"""Opaque handle id for one connected client (``ws-<12 hex>``).

Example:
    >>> session_id: SessionID = "ws-3f2a9c1b7d4e"
"""

type RelayPayload = dict[str, Any]
"""JSON object relayed between room members.

Only the ``type`` envelope field and the server-stamped ``from`` field are
interpreted by the relay; everything else is passed through verbatim.
"""


# Classifier types
type CorrelationID = str
"""Token pairing an outgoing worker request with its response.

Format: ``req_<epoch ms>_<counter>``; unique for the lifetime of the
supervisor.

Example:
    >>> request_id: CorrelationID = "req_1718000000000_7"
"""


class ClassificationResult(TypedDict):
    """Result of classifying one still frame.

    Attributes:
        letter: Predicted fingerspelled letter (A-Z)
        confidence: Model confidence in [0.0, 1.0]

    Example:
        >>> result: ClassificationResult = {"letter": "A", "confidence": 0.91}
        >>> result["letter"]
        'A'
    """

    letter: str
    confidence: float
