"""External backend adapter - Module Exports"""

from typing import Optional

import httpx

from bridge.stores.types import ExternalCredentials

from .base import BackendError, DeviceBackend, DisabledDeviceBackend
from .rest import RestDeviceBackend
from .schemas import DevicePatch, MessageRecord, iso_timestamp


class BackendFactory:
    """Binds a shared HTTP client to per-device credentials."""

    def __init__(self, client: httpx.AsyncClient):
        self.client = client

    def for_device(
        self, device_id: str, credentials: Optional[ExternalCredentials]
    ) -> DeviceBackend:
        if credentials is None:
            return DisabledDeviceBackend(device_id)
        return RestDeviceBackend(device_id, credentials, self.client)

    async def aclose(self) -> None:
        await self.client.aclose()


__all__ = [
    "BackendError",
    "BackendFactory",
    "DeviceBackend",
    "DisabledDeviceBackend",
    "RestDeviceBackend",
    "DevicePatch",
    "MessageRecord",
    "iso_timestamp",
]
