"""Pytest configuration and fixtures."""

import os
import random
import sys
from pathlib import Path
from typing import Dict, List, Optional

import pytest
import pytest_asyncio

# Add project root to sys.path for imports
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

# Never open real WhatsApp sessions from tests
os.environ.setdefault("PROTOCOL_BACKEND", "stub")

from backend.base import BackendError, DeviceBackend  # noqa: E402
from backend.schemas import DevicePatch, MessageRecord  # noqa: E402
from bridge.lifecycle import LifecycleSettings, SessionLifecycleManager  # noqa: E402
from bridge.stores import BridgeStores, ExternalCredentials  # noqa: E402
from protocol import StubProtocolSessionFactory  # noqa: E402


class RecordingBackend(DeviceBackend):
    """DeviceBackend fake that keeps every call for assertions."""

    def __init__(self, device_id: str, enabled: bool = True):
        self.device_id = device_id
        self.enabled = enabled
        self.patches: List[dict] = []
        self.messages: List[MessageRecord] = []
        self.messages_count = 0
        self.fail: Optional[BackendError] = None

    async def update_device(self, patch: DevicePatch) -> None:
        if self.fail is not None:
            raise self.fail
        payload = patch.to_payload()
        self.patches.append(payload)
        if "messages_count" in payload:
            self.messages_count = payload["messages_count"]

    async def insert_message(self, record: MessageRecord) -> None:
        if self.fail is not None:
            raise self.fail
        self.messages.append(record)

    async def get_messages_count(self) -> int:
        if self.fail is not None:
            raise self.fail
        return self.messages_count


class RecordingBackendProvider:
    """Hands out one RecordingBackend per device and keeps them around."""

    def __init__(self):
        self.backends: Dict[str, RecordingBackend] = {}

    def for_device(
        self, device_id: str, credentials: Optional[ExternalCredentials]
    ) -> RecordingBackend:
        backend = self.backends.get(device_id)
        if backend is None:
            backend = self.backends[device_id] = RecordingBackend(device_id)
        backend.enabled = credentials is not None
        return backend


CREDENTIALS = ExternalCredentials(url="https://db.example.test", key="service-key")


@pytest.fixture
def credentials() -> ExternalCredentials:
    return CREDENTIALS


@pytest.fixture
def stub_factory() -> StubProtocolSessionFactory:
    return StubProtocolSessionFactory()


@pytest.fixture
def backends() -> RecordingBackendProvider:
    return RecordingBackendProvider()


@pytest.fixture
def settings() -> LifecycleSettings:
    # Heartbeat is driven manually through tick() in tests
    return LifecycleSettings(
        reconnect_delay_s=0.01,
        reconnect_max_attempts=0,
        heartbeat_interval_s=3600,
        battery_floor=20,
    )


@pytest_asyncio.fixture
async def manager(stub_factory, backends, settings):
    manager = SessionLifecycleManager(
        factory=stub_factory,
        backends=backends,
        stores=BridgeStores(),
        settings=settings,
        rng=random.Random(1234),
    )
    yield manager
    await manager.shutdown()
