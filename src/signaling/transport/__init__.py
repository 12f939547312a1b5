"""Client connection layer of the relay: interfaces, WebSocket boundary, wire envelopes."""

from src.signaling.transport.base import Transport, TransportSession
from src.signaling.transport.websocket_protocol import (
    ProtocolError,
    UnknownMessageTypeError,
    decode_client_message,
)
from src.signaling.transport.websocket_transport import WebSocketSession, WebSocketTransport

__all__ = [
    "ProtocolError",
    "Transport",
    "TransportSession",
    "UnknownMessageTypeError",
    "WebSocketSession",
    "WebSocketTransport",
    "decode_client_message",
]
