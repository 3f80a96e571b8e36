"""
Protocol session boundary.

The lifecycle manager talks to WhatsApp only through ProtocolSession.

Supported backends:
- StubProtocolSession: deterministic fake (tests, local development)
- PyaileysSession: pyaileys WhatsApp Web multi-device client

The pyaileys backend is imported on demand by infra.config so the
stub backend works without the protocol library loaded.
"""

from .base import ProtocolSession, ProtocolSessionFactory
from .events import (
    CloseReason,
    ConnectionClosed,
    ConnectionOpened,
    CredentialsChanged,
    DeliveryMode,
    InboundMessage,
    MessagesReceived,
    PairingTokenEmitted,
    SessionEvent,
)
from .stub import StubProtocolSession, StubProtocolSessionFactory

__all__ = [
    "ProtocolSession",
    "ProtocolSessionFactory",
    "StubProtocolSession",
    "StubProtocolSessionFactory",
    "CloseReason",
    "ConnectionClosed",
    "ConnectionOpened",
    "CredentialsChanged",
    "DeliveryMode",
    "InboundMessage",
    "MessagesReceived",
    "PairingTokenEmitted",
    "SessionEvent",
]
