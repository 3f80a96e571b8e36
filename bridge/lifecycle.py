"""
Session Lifecycle Manager.

Owns creation, reconnection and teardown of one protocol session per
device, and relays session events into the stores and the external
backend.

Event handling:
  - One pump task per session consumes its event channel sequentially,
    so events of a device are handled in emission order.
  - Backend failures inside event handlers are logged and swallowed.
  - Credential updates are saved even when queued behind a close or on a
    replaced session; only logged-out sessions discard them.

Reconnect policy:
  - Exactly one reconnect is scheduled per unexpected close, after a
    fixed delay. Unbounded by default; reconnect_max_attempts > 0 caps
    consecutive attempts (counter resets when a session opens).
  - A reconnect whose session cannot be opened keeps the entry and
    schedules the next attempt.
"""

import asyncio
import logging
import random
import weakref
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Coroutine, Optional, Protocol, Set

from backend.base import BackendError, DeviceBackend
from backend.schemas import BackendDeviceStatus, DevicePatch, MessageRecord, iso_timestamp
from protocol.base import ProtocolSessionFactory
from protocol.events import (
    CloseReason,
    ConnectionClosed,
    ConnectionOpened,
    CredentialsChanged,
    MessagesReceived,
    PairingTokenEmitted,
    SessionEvent,
)

from .errors import BackendNotConfiguredError, DeviceNotFoundError, InvalidRequestError, ProtocolError
from .normalize import contact_phone_from_jid, format_phone, normalize_recipient, phone_from_identity
from .pairing import render_pairing_code
from .stores import (
    BridgeStores,
    DeviceMetadata,
    DeviceStatus,
    DeviceStatusView,
    ExternalCredentials,
    SessionEntry,
)

logger = logging.getLogger(__name__)


class BackendProvider(Protocol):
    def for_device(
        self, device_id: str, credentials: Optional[ExternalCredentials]
    ) -> DeviceBackend: ...


@dataclass
class LifecycleSettings:
    reconnect_delay_s: float = 3.0
    reconnect_max_attempts: int = 0  # 0 = unbounded
    heartbeat_interval_s: float = 30.0
    battery_floor: int = 20


@dataclass(frozen=True)
class CreateResult:
    accepted: bool
    pairing_pending: bool


@dataclass(frozen=True)
class SyncResult:
    phone: Optional[str]
    battery: int
    status: BackendDeviceStatus


def _backend_status(status: DeviceStatus) -> BackendDeviceStatus:
    if status == DeviceStatus.CONNECTED:
        return "connected"
    if status in (DeviceStatus.CONNECTING, DeviceStatus.AWAITING_PAIRING):
        return "connecting"
    return "disconnected"


class SessionLifecycleManager:
    """Creates, reconnects and tears down device sessions."""

    def __init__(
        self,
        factory: ProtocolSessionFactory,
        backends: BackendProvider,
        stores: Optional[BridgeStores] = None,
        settings: Optional[LifecycleSettings] = None,
        rng: Optional[random.Random] = None,
    ):
        self.factory = factory
        self.backends = backends
        self.stores = stores or BridgeStores()
        self.settings = settings or LifecycleSettings()
        self._rng = rng or random.Random()

        # A lock lives only while some coroutine holds or awaits it
        self._device_locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()
        self._counter_locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()
        self._background: Set[asyncio.Task] = set()

    # =========================================================================
    # PUBLIC OPERATIONS
    # =========================================================================

    @property
    def active_connections(self) -> int:
        return len(self.stores.sessions)

    async def create(
        self,
        device_id: str,
        credentials: Optional[ExternalCredentials] = None,
    ) -> CreateResult:
        """
        Open a new protocol session for device_id and register it.

        Returns as soon as the session object exists; pairing and
        connection progress arrive through the event channel.

        Raises:
            InvalidRequestError: device_id empty or not a safe folder name
            ProtocolError: the session could not be constructed
        """
        self._validate_device_id(device_id)
        return await self._open(device_id, credentials)

    async def _open(
        self,
        device_id: str,
        credentials: Optional[ExternalCredentials],
        *,
        reconnect_attempts: int = 0,
        retrying: bool = False,
    ) -> CreateResult:
        """
        Replace whatever session device_id has with a fresh one.

        When retrying, a failed open leaves the prior entry registered so
        the caller can schedule the next attempt.
        """
        async with self._lock_for(device_id):
            prior = self.stores.sessions.get(device_id)
            if prior is not None:
                logger.info(f"Replacing existing session for device: {device_id}")
                await self._teardown(prior)

            logger.info(f"Creating connection for device: {device_id}")
            try:
                session = await self.factory.open(device_id)
            except Exception as e:
                logger.error(f"Error creating connection for {device_id}: {e}", exc_info=True)
                if prior is not None and self._is_current(prior) and not retrying:
                    self.stores.sessions.delete(device_id)
                raise ProtocolError(str(e)) from e

            if credentials is None:
                logger.warning(
                    f"Device {device_id} has no external backend credentials; persistence disabled",
                    extra={"device_id": device_id},
                )

            entry = SessionEntry(
                device_id=device_id,
                session=session,
                backend=self.backends.for_device(device_id, credentials),
                credentials=credentials,
                status=DeviceStatus.CONNECTING,
                reconnect_attempts=reconnect_attempts,
            )
            self.stores.sessions.set(device_id, entry)
            entry.pump_task = asyncio.create_task(
                self._run_session(entry), name=f"session:{device_id}"
            )

        return CreateResult(accepted=True, pairing_pending=not session.is_registered)

    async def disconnect(self, device_id: str) -> None:
        """
        Log the device out and forget its session.

        Raises:
            DeviceNotFoundError: no session for device_id
            ProtocolError: logout failed (entry is left in place)
        """
        async with self._lock_for(device_id):
            entry = self.stores.sessions.get(device_id)
            if entry is None:
                raise DeviceNotFoundError(device_id)

            # The close caused by logout must not trigger a reconnect
            entry.closing = True
            try:
                await entry.session.logout()
            except Exception as e:
                entry.closing = False
                logger.error(f"Error disconnecting device {device_id}: {e}", exc_info=True)
                raise ProtocolError(str(e)) from e

            entry.auth_discarded = True
            self._remove(entry)
            self.stores.pairings.delete(device_id)

        logger.info(f"Device {device_id} disconnected")
        await self._persist(entry, DevicePatch(status="disconnected", qr_code=None))

    async def send_message(self, device_id: str, to: str, text: str) -> str:
        """
        Send a text message through the device's session.

        Returns the protocol message id.

        Raises:
            DeviceNotFoundError: no session for device_id
            ProtocolError: the session rejected the send
        """
        entry = self.stores.sessions.get(device_id)
        if entry is None:
            raise DeviceNotFoundError(device_id, "Device not connected")

        jid = normalize_recipient(to)
        try:
            message_id = await entry.session.send_text(jid, text)
        except Exception as e:
            logger.error(f"Error sending message from {device_id}: {e}", exc_info=True)
            raise ProtocolError(str(e)) from e

        logger.info(f"Message sent from {device_id} to {to}")
        now = datetime.now(timezone.utc)
        self._touch(device_id, now)
        self._spawn(self._increment_message_count(entry, now), name=f"count:{device_id}")
        return message_id

    def status(self, device_id: str) -> DeviceStatusView:
        """Pure read of the three stores."""
        entry = self.stores.sessions.get(device_id)
        metadata = self.stores.metadata.get(device_id)
        return DeviceStatusView(
            connected=entry is not None and entry.status == DeviceStatus.CONNECTED,
            has_qr=self.stores.pairings.contains(device_id),
            battery=metadata.battery if metadata else None,
            phone=entry.phone if entry else None,
        )

    def pairing_code(self, device_id: str) -> Optional[str]:
        return self.stores.pairings.get(device_id)

    async def sync(self, device_id: str) -> SyncResult:
        """
        Push the current device state to the external backend.

        Raises:
            DeviceNotFoundError: no session for device_id
            BackendNotConfiguredError: device has no external credentials
            BackendError: the backend rejected the update
        """
        entry = self.stores.sessions.get(device_id)
        if entry is None:
            raise DeviceNotFoundError(device_id)
        if entry.credentials is None:
            raise BackendNotConfiguredError("Device has no external backend configured")

        metadata = self.stores.metadata.get(device_id) or DeviceMetadata()
        status = _backend_status(entry.status)
        await entry.backend.update_device(DevicePatch(
            status=status,
            phone=format_phone(entry.phone or ""),
            battery=metadata.battery,
            last_seen=iso_timestamp(metadata.last_seen),
        ))
        logger.info(f"Device {device_id} synced ({status})")
        return SyncResult(phone=entry.phone, battery=metadata.battery, status=status)

    async def tick(self, device_id: str) -> Optional[DeviceMetadata]:
        """
        One heartbeat step: simulated battery decay plus last_seen refresh.

        The battery value is a placeholder, not telemetry.
        """
        entry = self.stores.sessions.get(device_id)
        if entry is None:
            return None

        current = self.stores.metadata.get(device_id) or DeviceMetadata()
        drop = self._rng.randint(0, 1)
        battery = min(current.battery, max(self.settings.battery_floor, current.battery - drop))
        now = datetime.now(timezone.utc)
        updated = DeviceMetadata(battery=battery, last_seen=now)
        self.stores.metadata.set(device_id, updated)

        await self._persist(entry, DevicePatch(battery=battery, last_seen=iso_timestamp(now)))
        return updated

    async def shutdown(self) -> None:
        """Close every session without logging out; credentials stay on disk."""
        for device_id in self.stores.sessions.keys():
            entry = self.stores.sessions.delete(device_id)
            if entry is not None:
                await self._teardown(entry)
        for task in list(self._background):
            task.cancel()
        logger.info("All sessions closed")

    # =========================================================================
    # EVENT PUMP
    # =========================================================================

    async def _run_session(self, entry: SessionEntry) -> None:
        session = entry.session
        try:
            await session.connect()
        except Exception as e:
            logger.error(f"Connection failed for {entry.device_id}: {e}", exc_info=True)
            session.publish(ConnectionClosed(reason=CloseReason.OTHER, detail=str(e)))

        while True:
            event = await session.next_event()
            try:
                keep_running = await self._dispatch(entry, event)
            except Exception as e:
                logger.error(
                    f"Error handling {type(event).__name__} for {entry.device_id}: {e}",
                    exc_info=True,
                )
                keep_running = True
            finally:
                session.event_done()
            if not keep_running:
                break

        # Credential updates queued behind the close still reach disk
        await self._flush_credentials(entry)

    async def _dispatch(self, entry: SessionEntry, event: SessionEvent) -> bool:
        """Handle one event. Returns False once the session is finished."""
        if not self._is_current(entry):
            if isinstance(event, CredentialsChanged):
                await self._on_credentials_changed(entry)
            else:
                logger.debug(f"Dropping {type(event).__name__} from stale session {entry.device_id}")
            return False

        if isinstance(event, PairingTokenEmitted):
            await self._on_pairing_token(entry, event)
        elif isinstance(event, ConnectionOpened):
            await self._on_open(entry)
        elif isinstance(event, ConnectionClosed):
            await self._on_close(entry, event)
            return False
        elif isinstance(event, CredentialsChanged):
            await self._on_credentials_changed(entry)
        elif isinstance(event, MessagesReceived):
            await self._on_messages(entry, event)
        else:
            logger.debug(f"Unknown session event: {event!r}")
        return True

    async def _on_pairing_token(self, entry: SessionEntry, event: PairingTokenEmitted) -> None:
        artifact = render_pairing_code(event.token)
        self.stores.pairings.set(entry.device_id, artifact)
        entry.status = DeviceStatus.AWAITING_PAIRING
        logger.info(f"QR Code generated for device: {entry.device_id}")

        await self._persist(entry, DevicePatch(qr_code=artifact, status="connecting"))

    async def _on_open(self, entry: SessionEntry) -> None:
        device_id = entry.device_id
        self.stores.pairings.delete(device_id)

        phone = phone_from_identity(entry.session.identity)
        entry.phone = phone or None
        entry.status = DeviceStatus.CONNECTED
        entry.reconnect_attempts = 0

        now = datetime.now(timezone.utc)
        metadata = DeviceMetadata(battery=100, last_seen=now)
        self.stores.metadata.set(device_id, metadata)
        self._start_heartbeat(entry)
        logger.info(f"Connection opened for device: {device_id}")

        await self._persist(entry, DevicePatch(
            status="connected",
            phone=format_phone(phone),
            battery=metadata.battery,
            qr_code=None,
            last_seen=iso_timestamp(now),
        ))

    async def _on_close(self, entry: SessionEntry, event: ConnectionClosed) -> None:
        device_id = entry.device_id
        if entry.closing:
            logger.debug(f"Close for {device_id} during logout")
            return

        logged_out = event.reason == CloseReason.LOGGED_OUT
        logger.info(
            f"Connection closed for {device_id}, reconnecting: {not logged_out}",
            extra={"device_id": device_id, "detail": event.detail},
        )

        entry.status = DeviceStatus.DISCONNECTED
        self._cancel(entry.heartbeat_task)

        if logged_out:
            entry.auth_discarded = True
            self._remove(entry)
        else:
            self._schedule_reconnect(entry)

        await self._persist(entry, DevicePatch(status="disconnected", qr_code=None))

    async def _on_credentials_changed(self, entry: SessionEntry) -> None:
        if entry.closing or entry.auth_discarded:
            logger.debug(f"Ignoring credential update for logged-out device {entry.device_id}")
            return
        try:
            await entry.session.save_credentials()
        except Exception as e:
            logger.error(f"Failed to save credentials for {entry.device_id}: {e}", exc_info=True)

    async def _flush_credentials(self, entry: SessionEntry) -> None:
        """Save once for every CredentialsChanged still queued on the session."""
        for event in entry.session.drain_events():
            if isinstance(event, CredentialsChanged):
                await self._on_credentials_changed(entry)

    async def _on_messages(self, entry: SessionEntry, event: MessagesReceived) -> None:
        if event.delivery != "notify":
            return

        device_id = entry.device_id
        for message in event.messages:
            if not message.text:
                continue
            logger.info(
                f"Message received on {device_id}: {message.message_id}",
                extra={"device_id": device_id, "chat_id": message.chat_id},
            )
            record = MessageRecord(
                device_id=device_id,
                chat_id=message.chat_id,
                message_id=message.message_id,
                from_me=message.from_me,
                contact_phone=contact_phone_from_jid(message.chat_id),
                content=message.text,
                timestamp=iso_timestamp(
                    datetime.fromtimestamp(message.timestamp_s, tz=timezone.utc)
                ),
            )
            try:
                await entry.backend.insert_message(record)
            except BackendError as e:
                logger.error(f"Failed to store message for {device_id}: {e}", exc_info=True)

        self._touch(device_id)

    # =========================================================================
    # BACKGROUND TASKS
    # =========================================================================

    def _schedule_reconnect(self, entry: SessionEntry) -> None:
        """Schedule one reconnect, or drop the entry once the cap is exceeded."""
        attempts = entry.reconnect_attempts + 1
        limit = self.settings.reconnect_max_attempts
        if limit and attempts > limit:
            logger.warning(f"Giving up on {entry.device_id} after {limit} reconnect attempts")
            self._remove(entry)
            return

        entry.reconnect_attempts = attempts
        entry.reconnect_task = asyncio.create_task(
            self._reconnect_later(entry), name=f"reconnect:{entry.device_id}"
        )

    async def _reconnect_later(self, entry: SessionEntry) -> None:
        await asyncio.sleep(self.settings.reconnect_delay_s)
        if not self._is_current(entry):
            logger.info(f"Reconnect for {entry.device_id} superseded")
            return

        logger.info(f"Reconnecting device {entry.device_id} (attempt {entry.reconnect_attempts})")
        try:
            await self._open(
                entry.device_id,
                entry.credentials,
                reconnect_attempts=entry.reconnect_attempts,
                retrying=True,
            )
        except ProtocolError as e:
            logger.error(f"Reconnect failed for {entry.device_id}: {e}")
            if self._is_current(entry):
                self._schedule_reconnect(entry)

    def _start_heartbeat(self, entry: SessionEntry) -> None:
        if entry.heartbeat_task is not None and not entry.heartbeat_task.done():
            return
        entry.heartbeat_task = asyncio.create_task(
            self._heartbeat(entry), name=f"heartbeat:{entry.device_id}"
        )

    async def _heartbeat(self, entry: SessionEntry) -> None:
        while True:
            await asyncio.sleep(self.settings.heartbeat_interval_s)
            if not self._is_current(entry):
                return
            await self.tick(entry.device_id)

    async def _increment_message_count(self, entry: SessionEntry, now: datetime) -> None:
        if not entry.backend.enabled:
            return
        # Serialized per device; concurrent processes can still race
        async with self._counter_lock_for(entry.device_id):
            try:
                count = await entry.backend.get_messages_count()
                await entry.backend.update_device(DevicePatch(
                    messages_count=count + 1,
                    last_seen=iso_timestamp(now),
                ))
            except BackendError as e:
                logger.error(f"Failed to update message count for {entry.device_id}: {e}")

    def _spawn(self, coro: Coroutine, name: str) -> asyncio.Task:
        task = asyncio.create_task(coro, name=name)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    # =========================================================================
    # HELPERS
    # =========================================================================

    @staticmethod
    def _validate_device_id(device_id: Optional[str]) -> None:
        if not device_id or not isinstance(device_id, str):
            raise InvalidRequestError("deviceId is required")
        # Names the per-device auth folder
        if device_id in (".", "..") or any(c in device_id for c in ("/", "\\", "\x00")):
            raise InvalidRequestError("deviceId must not contain path separators")

    def _is_current(self, entry: SessionEntry) -> bool:
        return self.stores.sessions.get(entry.device_id) is entry

    def _lock_for(self, device_id: str) -> asyncio.Lock:
        lock = self._device_locks.get(device_id)
        if lock is None:
            lock = self._device_locks[device_id] = asyncio.Lock()
        return lock

    def _counter_lock_for(self, device_id: str) -> asyncio.Lock:
        lock = self._counter_locks.get(device_id)
        if lock is None:
            lock = self._counter_locks[device_id] = asyncio.Lock()
        return lock

    def _touch(self, device_id: str, now: Optional[datetime] = None) -> None:
        metadata = self.stores.metadata.get(device_id) or DeviceMetadata()
        self.stores.metadata.set(
            device_id,
            DeviceMetadata(battery=metadata.battery, last_seen=now or datetime.now(timezone.utc)),
        )

    @staticmethod
    def _cancel(task: Optional[asyncio.Task]) -> None:
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    def _cancel_tasks(self, entry: SessionEntry) -> None:
        for task in (entry.pump_task, entry.heartbeat_task, entry.reconnect_task):
            self._cancel(task)

    def _remove(self, entry: SessionEntry) -> None:
        if self._is_current(entry):
            self.stores.sessions.delete(entry.device_id)
        self._cancel_tasks(entry)

    async def _teardown(self, entry: SessionEntry) -> None:
        self._cancel_tasks(entry)
        await self._flush_credentials(entry)
        try:
            await entry.session.close()
        except Exception as e:
            logger.warning(f"Error closing previous session for {entry.device_id}: {e}")

    async def _persist(self, entry: SessionEntry, patch: DevicePatch) -> None:
        try:
            await entry.backend.update_device(patch)
        except BackendError as e:
            logger.error(
                f"Failed to persist device state for {entry.device_id}: {e}",
                exc_info=True,
                extra={"device_id": entry.device_id},
            )
