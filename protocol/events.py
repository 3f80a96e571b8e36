"""
Typed events published by a protocol session.

The lifecycle manager consumes these one at a time per device,
in the order the session emitted them.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import List, Literal, Optional, Union

DeliveryMode = Literal["notify", "append"]


class CloseReason(str, Enum):
    """Why a session closed. Only LOGGED_OUT is terminal."""

    LOGGED_OUT = "logged_out"
    OTHER = "other"


@dataclass(frozen=True)
class InboundMessage:
    """One message as decoded by the protocol layer."""

    chat_id: str
    message_id: str
    from_me: bool
    timestamp_s: int
    text: Optional[str] = None  # None for non-text payloads


@dataclass(frozen=True)
class PairingTokenEmitted:
    token: str


@dataclass(frozen=True)
class ConnectionOpened:
    pass


@dataclass(frozen=True)
class ConnectionClosed:
    reason: CloseReason = CloseReason.OTHER
    detail: Optional[str] = None


@dataclass(frozen=True)
class CredentialsChanged:
    pass


@dataclass(frozen=True)
class MessagesReceived:
    messages: List[InboundMessage] = field(default_factory=list)
    delivery: DeliveryMode = "notify"


SessionEvent = Union[
    PairingTokenEmitted,
    ConnectionOpened,
    ConnectionClosed,
    CredentialsChanged,
    MessagesReceived,
]
