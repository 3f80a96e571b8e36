"""
Protocol session boundary.

The lifecycle manager depends ONLY on these interfaces. Wire format,
encryption and multi-device sync live behind them in the protocol
library.
"""

import asyncio
from abc import ABC, abstractmethod
from typing import List, Optional

from .events import SessionEvent


class ProtocolSession(ABC):
    """
    One authenticated WhatsApp session for one device.

    Events are pushed onto a per-session channel; the consumer calls
    next_event() / event_done() in a loop so ordering is preserved.
    """

    def __init__(self, device_id: str):
        self.device_id = device_id
        self._events: "asyncio.Queue[SessionEvent]" = asyncio.Queue()

    # ------------------------------------------------------------------
    # Event channel
    # ------------------------------------------------------------------

    def publish(self, event: SessionEvent) -> None:
        self._events.put_nowait(event)

    async def next_event(self) -> SessionEvent:
        return await self._events.get()

    def event_done(self) -> None:
        self._events.task_done()

    async def wait_idle(self) -> None:
        """Block until every published event has been handled."""
        await self._events.join()

    def drain_events(self) -> List[SessionEvent]:
        """Remove and return every event not yet consumed."""
        pending: List[SessionEvent] = []
        while True:
            try:
                event = self._events.get_nowait()
            except asyncio.QueueEmpty:
                break
            pending.append(event)
            self._events.task_done()
        return pending

    # ------------------------------------------------------------------
    # Session operations
    # ------------------------------------------------------------------

    @abstractmethod
    async def connect(self) -> None:
        """Open the connection; pairing and open arrive as events."""
        raise NotImplementedError

    @abstractmethod
    async def close(self) -> None:
        """Drop the connection, keeping stored credentials."""
        raise NotImplementedError

    @abstractmethod
    async def logout(self) -> None:
        """Unlink this companion device and forget its credentials."""
        raise NotImplementedError

    @abstractmethod
    async def send_text(self, jid: str, text: str) -> str:
        """Send a text message. Returns the message id."""
        raise NotImplementedError

    @abstractmethod
    async def save_credentials(self) -> None:
        """Persist current auth material to the device's durable store."""
        raise NotImplementedError

    @property
    @abstractmethod
    def identity(self) -> Optional[str]:
        """Own JID once authenticated, e.g. "5511999998888:1@s.whatsapp.net"."""
        raise NotImplementedError

    @property
    @abstractmethod
    def is_registered(self) -> bool:
        """True when stored credentials already belong to a paired account."""
        raise NotImplementedError


class ProtocolSessionFactory(ABC):
    """Creates sessions bound to per-device auth material."""

    @abstractmethod
    async def open(self, device_id: str) -> ProtocolSession:
        """
        Load or create the auth material for device_id and build a session.

        Auth material is scoped to this device only; nothing is shared
        across devices.
        """
        raise NotImplementedError
