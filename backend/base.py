"""
External backend boundary.

The lifecycle manager persists device and message state only through
DeviceBackend. One instance is bound to one device.
"""

from abc import ABC, abstractmethod

from .schemas import DevicePatch, MessageRecord


class BackendError(Exception):
    """A call to the external document store failed."""

    def __init__(self, message: str, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)


class DeviceBackend(ABC):
    """
    Per-device view of the external store.

    Stateless and best-effort: no retries, failures raise BackendError.
    """

    enabled: bool = True

    @abstractmethod
    async def update_device(self, patch: DevicePatch) -> None:
        """PATCH the device row."""
        raise NotImplementedError

    @abstractmethod
    async def insert_message(self, record: MessageRecord) -> None:
        """POST an inbound message record."""
        raise NotImplementedError

    @abstractmethod
    async def get_messages_count(self) -> int:
        """Read the persisted messages_count of the device row (0 if unset)."""
        raise NotImplementedError


class DisabledDeviceBackend(DeviceBackend):
    """
    Backend for devices created without external credentials.

    Every operation is a silent no-op.
    """

    enabled = False

    def __init__(self, device_id: str):
        self.device_id = device_id

    async def update_device(self, patch: DevicePatch) -> None:
        return None

    async def insert_message(self, record: MessageRecord) -> None:
        return None

    async def get_messages_count(self) -> int:
        return 0
