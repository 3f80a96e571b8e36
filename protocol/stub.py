"""
Stub protocol session for testing and local development.

In-memory, deterministic, no network. Tests drive it by emitting
events the way the real library would.
"""

from typing import Dict, List, Optional, Tuple

from .base import ProtocolSession, ProtocolSessionFactory
from .events import (
    CloseReason,
    ConnectionClosed,
    ConnectionOpened,
    CredentialsChanged,
    InboundMessage,
    MessagesReceived,
    PairingTokenEmitted,
    SessionEvent,
)


class StubProtocolSession(ProtocolSession):
    """
    Deterministic fake session.

    Properties:
    - Records connect/close/logout calls and sent messages
    - Failures are opt-in via fail_send / fail_logout
    - emit() returns once the consumer has handled the event
    """

    def __init__(self, device_id: str, registered: bool = False):
        super().__init__(device_id)
        self._identity: Optional[str] = None
        self._registered = registered
        self.connect_calls = 0
        self.closed = False
        self.logged_out = False
        self.saved_credentials = 0
        self.sent: List[Tuple[str, str]] = []
        self.fail_send: Optional[Exception] = None
        self.fail_logout: Optional[Exception] = None

    async def connect(self) -> None:
        self.connect_calls += 1

    async def close(self) -> None:
        self.closed = True

    async def logout(self) -> None:
        if self.fail_logout is not None:
            raise self.fail_logout
        self.logged_out = True
        self._registered = False
        self.publish(ConnectionClosed(reason=CloseReason.LOGGED_OUT))

    async def send_text(self, jid: str, text: str) -> str:
        if self.fail_send is not None:
            raise self.fail_send
        self.sent.append((jid, text))
        return f"STUB{len(self.sent):06d}"

    async def save_credentials(self) -> None:
        self.saved_credentials += 1

    @property
    def identity(self) -> Optional[str]:
        return self._identity

    @property
    def is_registered(self) -> bool:
        return self._registered

    # ------------------------------------------------------------------
    # Simulation helpers
    # ------------------------------------------------------------------

    async def emit(self, event: SessionEvent) -> None:
        self.publish(event)
        await self.wait_idle()

    async def emit_pairing_token(self, token: str = "2@stub-ref,noise,ident,adv") -> None:
        await self.emit(PairingTokenEmitted(token=token))

    async def emit_open(self, identity: str = "5511999998888:1@s.whatsapp.net") -> None:
        self._identity = identity
        self._registered = True
        await self.emit(ConnectionOpened())

    async def emit_close(self, reason: CloseReason = CloseReason.OTHER) -> None:
        await self.emit(ConnectionClosed(reason=reason))

    async def emit_credentials_changed(self) -> None:
        await self.emit(CredentialsChanged())

    async def emit_messages(
        self, messages: List[InboundMessage], delivery: str = "notify"
    ) -> None:
        await self.emit(MessagesReceived(messages=messages, delivery=delivery))  # type: ignore[arg-type]


class StubProtocolSessionFactory(ProtocolSessionFactory):
    """Hands out StubProtocolSession objects and remembers them."""

    def __init__(self, registered: bool = False):
        self.registered = registered
        self.opened: List[StubProtocolSession] = []
        self.fail_open: Optional[Exception] = None

    async def open(self, device_id: str) -> StubProtocolSession:
        if self.fail_open is not None:
            raise self.fail_open
        session = StubProtocolSession(device_id, registered=self.registered)
        self.opened.append(session)
        return session

    def sessions_for(self, device_id: str) -> List[StubProtocolSession]:
        return [s for s in self.opened if s.device_id == device_id]

    def latest(self, device_id: str) -> StubProtocolSession:
        return self.sessions_for(device_id)[-1]

    @property
    def open_counts(self) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        for s in self.opened:
            counts[s.device_id] = counts.get(s.device_id, 0) + 1
        return counts
