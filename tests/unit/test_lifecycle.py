"""
Test suite for the session lifecycle manager.

Verifies:
- Session registration, pairing and open transitions
- Reconnect on unexpected close, removal on logout
- Send, disconnect and sync request paths
- Inbound message persistence
- Simulated battery decay
"""

import asyncio
import gc
import random

import pytest

from backend.base import BackendError
from bridge.errors import (
    BackendNotConfiguredError,
    DeviceNotFoundError,
    InvalidRequestError,
    ProtocolError,
)
from bridge.lifecycle import LifecycleSettings, SessionLifecycleManager, SyncResult
from bridge.stores import BridgeStores, DeviceMetadata, DeviceStatus, DeviceStatusView
from protocol import (
    CloseReason,
    ConnectionClosed,
    CredentialsChanged,
    InboundMessage,
    StubProtocolSessionFactory,
)


async def open_device(manager, stub_factory, device_id="d1", credentials=None):
    await manager.create(device_id, credentials)
    session = stub_factory.latest(device_id)
    await session.emit_open()
    return session


class TestCreate:
    """create() registers a session and starts its pump."""

    @pytest.mark.asyncio
    async def test_create_registers_connecting_entry(self, manager, credentials):
        """Entry exists immediately with status connecting."""
        result = await manager.create("d1", credentials)

        entry = manager.stores.sessions.get("d1")
        assert result.accepted is True
        assert result.pairing_pending is True
        assert entry is not None
        assert entry.status == DeviceStatus.CONNECTING
        assert manager.active_connections == 1

    @pytest.mark.asyncio
    async def test_create_connects_session(self, manager, stub_factory):
        """The pump calls connect() on the new session."""
        await manager.create("d1")
        session = stub_factory.latest("d1")
        await session.emit_credentials_changed()

        assert session.connect_calls == 1

    @pytest.mark.asyncio
    async def test_registered_session_not_pending_pairing(self, backends, settings):
        """Stored credentials mean no QR is expected."""
        manager = SessionLifecycleManager(
            StubProtocolSessionFactory(registered=True), backends, settings=settings
        )
        try:
            result = await manager.create("d1")
            assert result.pairing_pending is False
        finally:
            await manager.shutdown()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("device_id", ["", "..", "a/b", "a\\b"])
    async def test_create_rejects_bad_device_id(self, manager, device_id):
        """Empty or path-like ids are refused."""
        with pytest.raises(InvalidRequestError):
            await manager.create(device_id)

        assert len(manager.stores.sessions) == 0

    @pytest.mark.asyncio
    async def test_factory_failure_raises_protocol_error(self, manager, stub_factory):
        """A session that cannot be built is not registered."""
        stub_factory.fail_open = RuntimeError("auth folder unreadable")

        with pytest.raises(ProtocolError, match="auth folder unreadable"):
            await manager.create("d1")

        assert "d1" not in manager.stores.sessions

    @pytest.mark.asyncio
    async def test_create_replaces_prior_session(self, manager, stub_factory):
        """A second create tears the first session down."""
        await manager.create("d1")
        first = stub_factory.latest("d1")
        await manager.create("d1")
        second = stub_factory.latest("d1")

        assert first is not second
        assert first.closed is True
        assert manager.stores.sessions.get("d1").session is second
        assert stub_factory.open_counts == {"d1": 2}

    @pytest.mark.asyncio
    async def test_devices_are_isolated(self, manager, stub_factory):
        """Each device gets its own session."""
        await manager.create("d1")
        await manager.create("d2")

        assert stub_factory.open_counts == {"d1": 1, "d2": 1}
        assert manager.active_connections == 2


class TestPairingAndOpen:
    """Pairing artifacts and the open transition."""

    @pytest.mark.asyncio
    async def test_status_before_connection(self, manager):
        """Unknown or fresh devices are not connected and have no QR."""
        assert manager.status("nope") == DeviceStatusView(connected=False, has_qr=False)

        await manager.create("d1")
        view = manager.status("d1")
        assert view.connected is False
        assert view.has_qr is False

    @pytest.mark.asyncio
    async def test_pairing_token_stores_artifact(self, manager, stub_factory, backends, credentials):
        """A pairing token becomes a PNG data URL and is persisted."""
        await manager.create("d1", credentials)
        session = stub_factory.latest("d1")
        await session.emit_pairing_token()

        artifact = manager.pairing_code("d1")
        assert artifact.startswith("data:image/png;base64,")
        assert manager.status("d1").has_qr is True
        assert manager.stores.sessions.get("d1").status == DeviceStatus.AWAITING_PAIRING
        assert backends.backends["d1"].patches[-1] == {"qr_code": artifact, "status": "connecting"}

    @pytest.mark.asyncio
    async def test_open_clears_pairing_artifact(self, manager, stub_factory):
        """open removes the stored QR."""
        await manager.create("d1")
        session = stub_factory.latest("d1")
        await session.emit_pairing_token()
        await session.emit_open()

        assert manager.pairing_code("d1") is None
        assert manager.status("d1").has_qr is False

    @pytest.mark.asyncio
    async def test_open_reports_connected_with_phone(self, manager, stub_factory):
        """Identity 5511999998888:1 yields the bare phone."""
        await open_device(manager, stub_factory)

        view = manager.status("d1")
        assert view.connected is True
        assert view.phone == "5511999998888"
        assert view.battery == 100

    @pytest.mark.asyncio
    async def test_open_persists_connected_patch(self, manager, stub_factory, backends, credentials):
        """Backend gets status, +phone, battery and a cleared qr_code."""
        await open_device(manager, stub_factory, credentials=credentials)

        patch = backends.backends["d1"].patches[-1]
        assert patch["status"] == "connected"
        assert patch["phone"] == "+5511999998888"
        assert patch["battery"] == 100
        assert patch["qr_code"] is None
        assert patch["last_seen"].endswith("Z")

    @pytest.mark.asyncio
    async def test_status_is_idempotent(self, manager, stub_factory):
        """Reading status twice changes nothing."""
        await open_device(manager, stub_factory)

        assert manager.status("d1") == manager.status("d1")

    @pytest.mark.asyncio
    async def test_backend_failure_does_not_break_open(self, manager, stub_factory, backends, credentials):
        """Persist errors are logged, state still advances."""
        await manager.create("d1", credentials)
        backends.backends["d1"].fail = BackendError("backend down", status_code=503)
        await stub_factory.latest("d1").emit_open()

        assert manager.status("d1").connected is True

    @pytest.mark.asyncio
    async def test_credentials_changed_saves(self, manager, stub_factory):
        """Credential updates are written through the session."""
        await manager.create("d1")
        session = stub_factory.latest("d1")
        await session.emit_credentials_changed()
        await session.emit_credentials_changed()

        assert session.saved_credentials == 2


class TestClose:
    """Close handling and reconnect policy."""

    @pytest.mark.asyncio
    async def test_unexpected_close_reconnects(self, manager, stub_factory, backends, credentials):
        """Non-logout close keeps the entry and re-creates after the delay."""
        first = await open_device(manager, stub_factory, credentials=credentials)
        await first.emit_close()

        entry = manager.stores.sessions.get("d1")
        assert entry is not None
        assert entry.status == DeviceStatus.DISCONNECTED
        assert manager.status("d1").connected is False
        assert backends.backends["d1"].patches[-1] == {"status": "disconnected", "qr_code": None}

        await asyncio.sleep(0.1)

        assert stub_factory.open_counts == {"d1": 2}
        entry = manager.stores.sessions.get("d1")
        assert entry is not None
        assert entry.session is stub_factory.latest("d1")
        assert entry.reconnect_attempts == 1
        assert entry.credentials == credentials
        assert first.closed is True

    @pytest.mark.asyncio
    async def test_open_resets_reconnect_attempts(self, manager, stub_factory):
        """A successful reconnect starts the count over."""
        first = await open_device(manager, stub_factory)
        await first.emit_close()
        await asyncio.sleep(0.1)

        await stub_factory.latest("d1").emit_open()

        assert manager.stores.sessions.get("d1").reconnect_attempts == 0
        assert manager.status("d1").connected is True

    @pytest.mark.asyncio
    async def test_logout_close_removes_entry(self, manager, stub_factory):
        """Logged-out sessions are forgotten and not reconnected."""
        session = await open_device(manager, stub_factory)
        await session.emit_close(CloseReason.LOGGED_OUT)

        assert "d1" not in manager.stores.sessions
        await asyncio.sleep(0.1)
        assert stub_factory.open_counts == {"d1": 1}

    @pytest.mark.asyncio
    async def test_reconnect_cap_gives_up(self, backends):
        """With a cap, the entry is dropped once attempts exceed it."""
        factory = StubProtocolSessionFactory()
        manager = SessionLifecycleManager(
            factory,
            backends,
            settings=LifecycleSettings(
                reconnect_delay_s=0.01, reconnect_max_attempts=1, heartbeat_interval_s=3600
            ),
        )
        try:
            await manager.create("d1")
            await factory.latest("d1").emit_close()
            await asyncio.sleep(0.1)
            assert factory.open_counts == {"d1": 2}

            await factory.latest("d1").emit_close()
            await asyncio.sleep(0.1)

            assert factory.open_counts == {"d1": 2}
            assert "d1" not in manager.stores.sessions
        finally:
            await manager.shutdown()


class TestDisconnect:
    """Explicit disconnect."""

    @pytest.mark.asyncio
    async def test_disconnect_logs_out_and_forgets(self, manager, stub_factory, backends, credentials):
        """Entry, QR and session are gone and the backend is told."""
        session = await open_device(manager, stub_factory, credentials=credentials)

        await manager.disconnect("d1")

        assert session.logged_out is True
        assert "d1" not in manager.stores.sessions
        assert manager.pairing_code("d1") is None
        assert backends.backends["d1"].patches[-1] == {"status": "disconnected", "qr_code": None}

        await asyncio.sleep(0.1)
        assert stub_factory.open_counts == {"d1": 1}

    @pytest.mark.asyncio
    async def test_disconnect_unknown_device(self, manager):
        """404 path."""
        with pytest.raises(DeviceNotFoundError):
            await manager.disconnect("missing")

    @pytest.mark.asyncio
    async def test_disconnect_logout_failure(self, manager, stub_factory):
        """Entry is kept when logout raises."""
        session = await open_device(manager, stub_factory)
        session.fail_logout = RuntimeError("socket gone")

        with pytest.raises(ProtocolError, match="socket gone"):
            await manager.disconnect("d1")

        entry = manager.stores.sessions.get("d1")
        assert entry is not None
        assert entry.closing is False


class TestSendMessage:
    """Outbound messages."""

    @pytest.mark.asyncio
    async def test_send_normalizes_individual_recipient(self, manager, stub_factory):
        """Formatting characters are stripped from phone numbers."""
        session = await open_device(manager, stub_factory)

        message_id = await manager.send_message("d1", "+1 (555) 123-4567", "hi")

        assert message_id == "STUB000001"
        assert session.sent == [("15551234567@s.whatsapp.net", "hi")]

    @pytest.mark.asyncio
    async def test_send_to_group_passes_through(self, manager, stub_factory):
        """Group JIDs are used unchanged."""
        session = await open_device(manager, stub_factory)

        await manager.send_message("d1", "120363041234567890@g.us", "hello group")

        assert session.sent == [("120363041234567890@g.us", "hello group")]

    @pytest.mark.asyncio
    async def test_send_increments_message_count(self, manager, stub_factory, backends, credentials):
        """Each send bumps messages_count on the backend."""
        await open_device(manager, stub_factory, credentials=credentials)

        await manager.send_message("d1", "15551234567", "one")
        await manager.send_message("d1", "15551234567", "two")
        await asyncio.sleep(0.05)

        assert backends.backends["d1"].messages_count == 2

    @pytest.mark.asyncio
    async def test_send_without_credentials_skips_counter(self, manager, stub_factory, backends):
        """No backend, no counter update."""
        await open_device(manager, stub_factory)

        await manager.send_message("d1", "15551234567", "one")
        await asyncio.sleep(0.05)

        assert backends.backends["d1"].messages_count == 0

    @pytest.mark.asyncio
    async def test_send_unknown_device(self, manager):
        """404 with the not-connected message."""
        with pytest.raises(DeviceNotFoundError, match="Device not connected"):
            await manager.send_message("missing", "15551234567", "hi")

    @pytest.mark.asyncio
    async def test_send_failure_raises_protocol_error(self, manager, stub_factory):
        """Session errors surface as ProtocolError."""
        session = await open_device(manager, stub_factory)
        session.fail_send = RuntimeError("not on whatsapp")

        with pytest.raises(ProtocolError, match="not on whatsapp"):
            await manager.send_message("d1", "15551234567", "hi")


class TestInboundMessages:
    """Inbound message persistence."""

    @pytest.mark.asyncio
    async def test_notify_text_message_is_stored(self, manager, stub_factory, backends, credentials):
        """Text messages become records in the messages collection."""
        session = await open_device(manager, stub_factory, credentials=credentials)

        await session.emit_messages([
            InboundMessage(
                chat_id="5511888887777@s.whatsapp.net",
                message_id="3EB0ABC",
                from_me=False,
                timestamp_s=1700000000,
                text="hello",
            )
        ])

        records = backends.backends["d1"].messages
        assert len(records) == 1
        record = records[0]
        assert record.device_id == "d1"
        assert record.chat_id == "5511888887777@s.whatsapp.net"
        assert record.contact_phone == "5511888887777"
        assert record.content == "hello"
        assert record.message_type == "text"
        assert record.status == "received"
        assert record.timestamp == "2023-11-14T22:13:20.000Z"

    @pytest.mark.asyncio
    async def test_non_text_and_append_are_skipped(self, manager, stub_factory, backends, credentials):
        """Only notify deliveries with text are stored."""
        session = await open_device(manager, stub_factory, credentials=credentials)
        text = InboundMessage(
            chat_id="5511888887777@s.whatsapp.net",
            message_id="1",
            from_me=False,
            timestamp_s=1700000000,
            text="backfill",
        )
        media = InboundMessage(
            chat_id="5511888887777@s.whatsapp.net",
            message_id="2",
            from_me=False,
            timestamp_s=1700000000,
        )

        await session.emit_messages([text], delivery="append")
        await session.emit_messages([media])

        assert backends.backends["d1"].messages == []

    @pytest.mark.asyncio
    async def test_store_failure_is_swallowed(self, manager, stub_factory, backends, credentials):
        """The pump keeps running after a failed insert."""
        session = await open_device(manager, stub_factory, credentials=credentials)
        backends.backends["d1"].fail = BackendError("insert failed", status_code=400)

        await session.emit_messages([
            InboundMessage(chat_id="1@s.whatsapp.net", message_id="x", from_me=True, timestamp_s=1, text="t")
        ])
        backends.backends["d1"].fail = None
        await session.emit_messages([
            InboundMessage(chat_id="1@s.whatsapp.net", message_id="y", from_me=True, timestamp_s=1, text="t")
        ])

        assert [r.message_id for r in backends.backends["d1"].messages] == ["y"]


class TestHeartbeat:
    """Simulated battery and last_seen refresh."""

    @pytest.mark.asyncio
    async def test_battery_never_increases_nor_drops_below_floor(self, manager, stub_factory):
        """Non-increasing, floored at 20."""
        await open_device(manager, stub_factory)
        manager.stores.metadata.set("d1", DeviceMetadata(battery=25))

        readings = []
        for _ in range(40):
            metadata = await manager.tick("d1")
            readings.append(metadata.battery)

        assert all(b >= 20 for b in readings)
        assert all(later <= earlier for earlier, later in zip(readings, readings[1:]))
        assert readings[-1] == 20

    @pytest.mark.asyncio
    async def test_tick_persists_battery(self, manager, stub_factory, backends, credentials):
        """Each tick PATCHes battery and last_seen."""
        await open_device(manager, stub_factory, credentials=credentials)

        metadata = await manager.tick("d1")

        patch = backends.backends["d1"].patches[-1]
        assert patch["battery"] == metadata.battery
        assert metadata.last_seen is not None

    @pytest.mark.asyncio
    async def test_tick_unknown_device(self, manager):
        """No entry, nothing to do."""
        assert await manager.tick("missing") is None

    @pytest.mark.asyncio
    async def test_heartbeat_runs_on_interval(self, backends):
        """The periodic task ticks on its own."""
        factory = StubProtocolSessionFactory()
        manager = SessionLifecycleManager(
            factory,
            backends,
            stores=BridgeStores(),
            settings=LifecycleSettings(heartbeat_interval_s=0.01),
            rng=random.Random(0),
        )
        try:
            await open_device(manager, factory)
            first_seen = manager.stores.metadata.get("d1").last_seen
            await asyncio.sleep(0.1)

            assert manager.stores.metadata.get("d1").last_seen > first_seen
        finally:
            await manager.shutdown()


class TestSync:
    """Explicit push of device state."""

    @pytest.mark.asyncio
    async def test_sync_pushes_state(self, manager, stub_factory, backends, credentials):
        """Connected device syncs status, phone and battery."""
        await open_device(manager, stub_factory, credentials=credentials)

        result = await manager.sync("d1")

        assert result == SyncResult(phone="5511999998888", battery=100, status="connected")
        patch = backends.backends["d1"].patches[-1]
        assert patch["status"] == "connected"
        assert patch["phone"] == "+5511999998888"

    @pytest.mark.asyncio
    async def test_sync_without_credentials(self, manager, stub_factory):
        """400 path."""
        await open_device(manager, stub_factory)

        with pytest.raises(BackendNotConfiguredError):
            await manager.sync("d1")

    @pytest.mark.asyncio
    async def test_sync_unknown_device(self, manager):
        """404 path."""
        with pytest.raises(DeviceNotFoundError):
            await manager.sync("missing")

    @pytest.mark.asyncio
    async def test_sync_backend_failure_propagates(self, manager, stub_factory, backends, credentials):
        """Unlike event handlers, sync surfaces backend errors."""
        await open_device(manager, stub_factory, credentials=credentials)
        backends.backends["d1"].fail = BackendError("down", status_code=500)

        with pytest.raises(BackendError):
            await manager.sync("d1")


class TestShutdown:
    """Process shutdown."""

    @pytest.mark.asyncio
    async def test_shutdown_closes_without_logout(self, manager, stub_factory):
        """Sessions are closed, credentials kept."""
        session = await open_device(manager, stub_factory)

        await manager.shutdown()

        assert session.closed is True
        assert session.logged_out is False
        assert manager.active_connections == 0


class TestCredentialPersistence:
    """Every credential update reaches the auth store."""

    @pytest.mark.asyncio
    async def test_saved_when_session_replaced(self, manager, stub_factory):
        """Updates still queued on a replaced session are flushed on teardown."""
        await manager.create("d1")
        first = stub_factory.latest("d1")
        first.publish(CredentialsChanged())

        await manager.create("d1")

        assert first.saved_credentials == 1
        assert first.closed is True

    @pytest.mark.asyncio
    async def test_saved_when_queued_behind_close(self, manager, stub_factory):
        """The pump stops after a close but drains pending updates."""
        await manager.create("d1")
        session = stub_factory.latest("d1")
        session.publish(ConnectionClosed(reason=CloseReason.OTHER))
        session.publish(CredentialsChanged())

        await session.wait_idle()

        assert session.saved_credentials == 1

    @pytest.mark.asyncio
    async def test_saved_when_published_after_close(self, manager, stub_factory):
        """Updates arriving after the pump stopped are saved by the reconnect."""
        first = await open_device(manager, stub_factory)
        await first.emit_close()
        first.publish(CredentialsChanged())

        await asyncio.sleep(0.1)

        assert stub_factory.open_counts == {"d1": 2}
        assert first.saved_credentials == 1

    @pytest.mark.asyncio
    async def test_saved_on_shutdown(self, manager, stub_factory):
        await manager.create("d1")
        session = stub_factory.latest("d1")
        session.publish(CredentialsChanged())

        await manager.shutdown()

        assert session.saved_credentials == 1

    @pytest.mark.asyncio
    async def test_logged_out_session_discards_updates(self, manager, stub_factory):
        """Auth material of a logged-out account is not rewritten."""
        session = await open_device(manager, stub_factory)
        session.publish(ConnectionClosed(reason=CloseReason.LOGGED_OUT))
        session.publish(CredentialsChanged())

        await session.wait_idle()

        assert session.saved_credentials == 0
        assert "d1" not in manager.stores.sessions


class TestReconnectFailures:
    """Reconnects whose session cannot be opened."""

    @pytest.mark.asyncio
    async def test_failed_reconnect_keeps_entry_and_retries(self, manager, stub_factory):
        """The entry survives failed opens and recovers once the factory does."""
        first = await open_device(manager, stub_factory)
        stub_factory.fail_open = RuntimeError("auth folder locked")

        await first.emit_close()
        await asyncio.sleep(0.1)

        entry = manager.stores.sessions.get("d1")
        assert entry is not None
        assert entry.session is first
        assert entry.reconnect_attempts >= 2
        assert stub_factory.open_counts == {"d1": 1}

        stub_factory.fail_open = None
        await asyncio.sleep(0.1)

        assert stub_factory.open_counts == {"d1": 2}
        second = stub_factory.latest("d1")
        assert manager.stores.sessions.get("d1").session is second

        await second.emit_open()
        assert manager.stores.sessions.get("d1").reconnect_attempts == 0
        assert manager.status("d1").connected is True

    @pytest.mark.asyncio
    async def test_failed_reconnects_count_against_cap(self, backends):
        """With a cap, repeated open failures eventually drop the entry."""
        factory = StubProtocolSessionFactory()
        manager = SessionLifecycleManager(
            factory,
            backends,
            settings=LifecycleSettings(
                reconnect_delay_s=0.01, reconnect_max_attempts=2, heartbeat_interval_s=3600
            ),
        )
        try:
            await manager.create("d1")
            factory.fail_open = RuntimeError("auth folder locked")
            await factory.latest("d1").emit_close()
            await asyncio.sleep(0.1)

            assert "d1" not in manager.stores.sessions
            assert factory.open_counts == {"d1": 1}
        finally:
            await manager.shutdown()


class TestLockHousekeeping:
    """Per-device locks do not outlive their use."""

    @pytest.mark.asyncio
    async def test_locks_released_after_disconnect(self, manager, stub_factory, credentials):
        await open_device(manager, stub_factory, credentials=credentials)
        await manager.send_message("d1", "15551234567", "hi")
        await asyncio.sleep(0.05)

        await manager.disconnect("d1")
        gc.collect()

        assert "d1" not in manager._device_locks
        assert "d1" not in manager._counter_locks
