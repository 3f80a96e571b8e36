"""
pyaileys-backed protocol session.

Wraps pyaileys.WhatsAppClient (asyncio WhatsApp Web multi-device client)
and translates its string-keyed events into the typed session events.

Auth material lives in a Baileys-style multi-file folder per device:
    <auth_root>/<device_id>/
"""

import asyncio
import logging
import shutil
from pathlib import Path
from typing import Any, Optional

from pyaileys import WhatsAppClient
from pyaileys.wabinary import S_WHATSAPP_NET
from pyaileys.wabinary.jid import jid_normalized_user
from pyaileys.wabinary.types import BinaryNode

from .base import ProtocolSession, ProtocolSessionFactory
from .events import (
    CloseReason,
    ConnectionClosed,
    ConnectionOpened,
    CredentialsChanged,
    InboundMessage,
    MessagesReceived,
    PairingTokenEmitted,
)

logger = logging.getLogger(__name__)

# Stream error codes (same values Baileys uses for DisconnectReason)
STREAM_LOGGED_OUT = 401
STREAM_RESTART_REQUIRED = 515


class PyaileysSession(ProtocolSession):
    """ProtocolSession over a pyaileys WhatsAppClient."""

    def __init__(self, device_id: str, client: WhatsAppClient, auth_state: Any, auth_dir: Path):
        super().__init__(device_id)
        self.client = client
        self.auth_state = auth_state
        self.auth_dir = auth_dir

        self._last_stream_code: Optional[int] = None
        self._device_removed = False

        client.on("connection.update", self._on_connection_update)
        client.on("creds.update", self._on_creds_update)
        client.on("message.decrypted", self._on_message_decrypted)
        client.on("history.sync", self._on_history_sync)
        client.on("cb:stream:error", self._on_stream_error)

    # ------------------------------------------------------------------
    # Library event translation
    # ------------------------------------------------------------------

    async def _on_connection_update(self, update: Any) -> None:
        if update.qr:
            self.publish(PairingTokenEmitted(token=update.qr))

        if update.connection == "open":
            self._last_stream_code = None
            self.publish(ConnectionOpened())

        elif update.connection == "close":
            if self._last_stream_code == STREAM_RESTART_REQUIRED:
                # The library reconnects by itself after pairing
                logger.info(f"Restart requested for {self.device_id}, awaiting library reconnect")
                self._last_stream_code = None
                return
            self.publish(ConnectionClosed(
                reason=self._classify_close(),
                detail=str(update.last_disconnect) if update.last_disconnect else None,
            ))

    async def _on_creds_update(self, _creds: Any) -> None:
        self.publish(CredentialsChanged())

    async def _on_message_decrypted(self, payload: dict) -> None:
        chat_jid = payload.get("chat_jid") or ""
        sender = payload.get("sender_jid")
        own = self.identity
        from_me = bool(
            sender and own and jid_normalized_user(sender) == jid_normalized_user(own)
        )
        message = InboundMessage(
            chat_id=chat_jid,
            message_id=str(payload.get("id") or ""),
            from_me=from_me,
            timestamp_s=int(payload.get("timestamp_s") or 0),
            text=payload.get("text") or None,
        )
        self.publish(MessagesReceived(messages=[message], delivery="notify"))

    async def _on_history_sync(self, _summary: dict) -> None:
        # Backfill is summarized by the library; no per-message records
        self.publish(MessagesReceived(messages=[], delivery="append"))

    async def _on_stream_error(self, stanza: BinaryNode) -> None:
        code_raw = stanza.attrs.get("code")
        self._last_stream_code = int(code_raw) if code_raw and code_raw.isdigit() else None
        children = stanza.content if isinstance(stanza.content, list) else []
        for child in children:
            if getattr(child, "tag", None) == "conflict" and child.attrs.get("type") == "device_removed":
                self._device_removed = True

    def _classify_close(self) -> CloseReason:
        if self._device_removed or self._last_stream_code == STREAM_LOGGED_OUT:
            return CloseReason.LOGGED_OUT
        return CloseReason.OTHER

    # ------------------------------------------------------------------
    # ProtocolSession
    # ------------------------------------------------------------------

    async def connect(self) -> None:
        await self.client.connect()

    async def close(self) -> None:
        await self.client.disconnect()

    async def logout(self) -> None:
        me = self.identity
        if me:
            await self.client.socket.query(
                BinaryNode(
                    tag="iq",
                    attrs={"to": S_WHATSAPP_NET, "type": "set", "xmlns": "md"},
                    content=[
                        BinaryNode(
                            tag="remove-companion-device",
                            attrs={"jid": me, "reason": "user_initiated"},
                        )
                    ],
                )
            )
        self._device_removed = True
        await self.client.disconnect()
        await asyncio.to_thread(shutil.rmtree, self.auth_dir, ignore_errors=True)
        logger.info(f"Removed auth folder for {self.device_id}: {self.auth_dir}")

    async def send_text(self, jid: str, text: str) -> str:
        return await self.client.send_text(jid, text)

    async def save_credentials(self) -> None:
        await self.auth_state.save_creds()

    @property
    def identity(self) -> Optional[str]:
        me = self.client.socket.auth.creds.me
        return me.id if me else None

    @property
    def is_registered(self) -> bool:
        return self.client.socket.auth.creds.me is not None


class PyaileysSessionFactory(ProtocolSessionFactory):
    """Opens pyaileys sessions from <auth_root>/<device_id>."""

    def __init__(self, auth_root: Path):
        self.auth_root = Path(auth_root)
        self.auth_root.mkdir(parents=True, exist_ok=True)

    async def open(self, device_id: str) -> PyaileysSession:
        auth_dir = self.auth_root / device_id
        client, auth_state = await WhatsAppClient.from_auth_folder(str(auth_dir))
        logger.debug(f"Loaded auth folder for {device_id}: {auth_dir}")
        return PyaileysSession(device_id, client, auth_state, auth_dir)
