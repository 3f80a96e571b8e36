"""
Records held by the bridge stores.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from backend.base import DeviceBackend
    from protocol.base import ProtocolSession


class DeviceStatus(str, Enum):
    """Lifecycle status of a device session."""

    UNINITIALIZED = "uninitialized"
    CONNECTING = "connecting"
    AWAITING_PAIRING = "awaiting-pairing"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"


@dataclass(frozen=True)
class ExternalCredentials:
    """Endpoint + key pair of the caller's REST document store."""

    url: str
    key: str

    def __repr__(self) -> str:
        # Never log the key
        return f"ExternalCredentials(url={self.url!r}, key='***')"


@dataclass
class SessionEntry:
    """A live protocol session plus everything tied to its lifetime."""

    device_id: str
    session: "ProtocolSession"
    backend: "DeviceBackend"
    credentials: Optional[ExternalCredentials] = None
    status: DeviceStatus = DeviceStatus.CONNECTING
    phone: Optional[str] = None
    reconnect_attempts: int = 0
    closing: bool = False
    # Set once the account is logged out; auth material must not be rewritten
    auth_discarded: bool = False

    # Task handles, cancelled on teardown
    pump_task: Optional[asyncio.Task] = field(default=None, repr=False)
    heartbeat_task: Optional[asyncio.Task] = field(default=None, repr=False)
    reconnect_task: Optional[asyncio.Task] = field(default=None, repr=False)


@dataclass
class DeviceMetadata:
    """
    Best-effort device telemetry.

    battery is a placeholder simulation driven by the heartbeat,
    not a hardware reading.
    """

    battery: int = 100
    last_seen: Optional[datetime] = None


@dataclass(frozen=True)
class DeviceStatusView:
    """Read-only snapshot returned by status queries."""

    connected: bool
    has_qr: bool
    battery: Optional[int] = None
    phone: Optional[str] = None
