"""WebSocket relay message protocol definitions.

Defines Pydantic models for the relay envelope. Messages are JSON objects
carried in WebSocket text frames. Inbound messages form a tagged union keyed
on ``type``; only the envelope is trusted, forward-only payload fields are
validated for shape and then relayed verbatim.
"""

import json
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

# Message types relayed to the rest of the room with a stamped ``from`` field
FORWARD_MESSAGE_TYPES: frozenset[str] = frozenset(
    {"offer", "answer", "ice-candidate", "transcription", "asl-letter"}
)


class ProtocolError(ValueError):
    """Inbound message could not be parsed as a relay envelope."""


class UnknownMessageTypeError(ProtocolError):
    """Inbound message carried a ``type`` the relay does not route."""

    def __init__(self, message_type: str) -> None:
        super().__init__(f"Unknown message type: {message_type}")
        self.message_type = message_type


class _ClientMessage(BaseModel):
    """Base for client → server messages; unknown fields are kept."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)


class JoinMessage(_ClientMessage):
    """Client → Server: join (or switch to) a room."""

    type: Literal["join"] = "join"
    room_id: str = Field(..., alias="roomId", min_length=1, description="Room to join")
    user_id: str | None = Field(
        default=None, alias="userId", description="Display label; generated if absent"
    )


class LeaveMessage(_ClientMessage):
    """Client → Server: leave the current room."""

    type: Literal["leave"] = "leave"


class OfferMessage(_ClientMessage):
    """Client → Server: negotiation offer (opaque fields)."""

    type: Literal["offer"] = "offer"


class AnswerMessage(_ClientMessage):
    """Client → Server: negotiation answer (opaque fields)."""

    type: Literal["answer"] = "answer"


class IceCandidateMessage(_ClientMessage):
    """Client → Server: connectivity candidate.

    ``candidate`` is required but may be ``null`` (end-of-candidates).
    """

    type: Literal["ice-candidate"] = "ice-candidate"
    candidate: Any = Field(..., description="Opaque candidate object")


class TranscriptionMessage(_ClientMessage):
    """Client → Server: speech-to-text caption for the other peers."""

    type: Literal["transcription"] = "transcription"
    text: str = Field(..., description="Caption text")


class AslLetterMessage(_ClientMessage):
    """Client → Server: fingerspelled letter recognised on the sender's side."""

    type: Literal["asl-letter"] = "asl-letter"
    letter: str = Field(..., description="Recognised letter")
    confidence: float = Field(..., description="Classifier confidence")
    accumulated_text: str | None = Field(default=None, alias="accumulatedText")
    action: Literal["send"] | None = Field(default=None)


ClientMessage = Annotated[
    JoinMessage
    | LeaveMessage
    | OfferMessage
    | AnswerMessage
    | IceCandidateMessage
    | TranscriptionMessage
    | AslLetterMessage,
    Field(discriminator="type"),
]

CLIENT_MESSAGE_TYPES: frozenset[str] = frozenset({"join", "leave"}) | FORWARD_MESSAGE_TYPES

_client_message_adapter: TypeAdapter[ClientMessage] = TypeAdapter(ClientMessage)


class _ServerMessage(BaseModel):
    """Base for server → client messages."""

    model_config = ConfigDict(populate_by_name=True)

    def to_payload(self) -> dict[str, Any]:
        """Return the wire representation (camelCase keys)."""
        return self.model_dump(by_alias=True, exclude_none=True)


class JoinedMessage(_ServerMessage):
    """Server → Client: join confirmation sent to the joining session."""

    type: Literal["joined"] = "joined"
    room_id: str = Field(..., alias="roomId")
    user_id: str = Field(..., alias="userId")


class PeerJoinedMessage(_ServerMessage):
    """Server → Client: another session joined the room."""

    type: Literal["peer-joined"] = "peer-joined"
    user_id: str = Field(..., alias="userId")


class PeerLeftMessage(_ServerMessage):
    """Server → Client: another session left the room or disconnected."""

    type: Literal["peer-left"] = "peer-left"
    from_user: str = Field(..., alias="from")


class ErrorMessage(_ServerMessage):
    """Server → Client: error notification, sent to the originating session only."""

    type: Literal["error"] = "error"
    message: str = Field(..., description="Error description")


def decode_client_message(raw: str) -> tuple[ClientMessage, dict[str, Any]]:
    """Parse and validate one inbound text frame.

    Args:
        raw: Raw WebSocket text frame

    Returns:
        Tuple of (validated message, original JSON object). The original
        object is what gets relayed, so forward-only payloads stay verbatim.

    Raises:
        UnknownMessageTypeError: If ``type`` is not a routed message type
        ProtocolError: If the frame is not a JSON object or fails validation
    """
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ProtocolError("Invalid message format") from e

    if not isinstance(data, dict):
        raise ProtocolError("Invalid message format")

    message_type = data.get("type")
    if not isinstance(message_type, str):
        raise ProtocolError("Missing message type")
    if message_type not in CLIENT_MESSAGE_TYPES:
        raise UnknownMessageTypeError(message_type)

    try:
        message = _client_message_adapter.validate_python(data)
    except ValidationError as e:
        fields = ", ".join(
            ".".join(str(part) for part in err["loc"][1:]) or message_type
            for err in e.errors()
        )
        raise ProtocolError(f"Invalid {message_type} message: {fields}") from e

    return message, data
