"""Common utilities and type definitions.

This package provides shared types used across the signaling relay and the
classifier supervisor.
"""

from src.common.types import (
    ClassificationResult,
    CorrelationID,
    RelayPayload,
    RoomID,
    SessionID,
    UserID,
)

__all__ = [
    "ClassificationResult",
    "CorrelationID",
    "RelayPayload",
    "RoomID",
    "SessionID",
    "UserID",
]
