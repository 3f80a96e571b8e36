"""
REST document store adapter (PostgREST / Supabase style).

Issues:
- PATCH {url}/rest/v1/devices?id=eq.{device_id}
- POST  {url}/rest/v1/messages
- GET   {url}/rest/v1/devices?id=eq.{device_id}&select=messages_count

No retries. Non-2xx responses and transport errors raise BackendError.
"""

import logging
from typing import Any, Optional

import httpx

from bridge.stores.types import ExternalCredentials

from .base import BackendError, DeviceBackend
from .schemas import DevicePatch, MessageRecord

logger = logging.getLogger(__name__)


class RestDeviceBackend(DeviceBackend):
    """DeviceBackend over the caller's REST endpoint."""

    def __init__(
        self,
        device_id: str,
        credentials: ExternalCredentials,
        client: httpx.AsyncClient,
    ):
        self.device_id = device_id
        self.credentials = credentials
        self.client = client
        self.base_url = credentials.url.rstrip("/") + "/rest/v1"

    def _headers(self) -> dict[str, str]:
        key = self.credentials.key
        return {
            "apikey": key,
            "Authorization": f"Bearer {key}",
            "Content-Type": "application/json",
            "Prefer": "return=minimal",
        }

    async def _request(
        self,
        method: str,
        path: str,
        params: Optional[dict[str, str]] = None,
        json: Optional[Any] = None,
    ) -> httpx.Response:
        url = f"{self.base_url}/{path}"
        try:
            response = await self.client.request(
                method, url, params=params, json=json, headers=self._headers()
            )
        except httpx.RequestError as e:
            logger.error(
                f"Backend request failed: {method} {path}: {e}",
                extra={"device_id": self.device_id, "error": str(e)},
            )
            raise BackendError(f"Backend request failed: {e}")

        if response.status_code >= 300:
            error_text = response.text
            logger.error(
                f"Backend error: {response.status_code} - {error_text}",
                extra={
                    "device_id": self.device_id,
                    "status_code": response.status_code,
                    "error_body": error_text,
                },
            )
            raise BackendError(
                f"Backend returned {response.status_code} for {method} {path}",
                status_code=response.status_code,
            )
        return response

    def _device_filter(self) -> dict[str, str]:
        return {"id": f"eq.{self.device_id}"}

    async def update_device(self, patch: DevicePatch) -> None:
        payload = patch.to_payload()
        await self._request("PATCH", "devices", params=self._device_filter(), json=payload)
        logger.debug(
            f"Device row updated: {sorted(payload)}",
            extra={"device_id": self.device_id},
        )

    async def insert_message(self, record: MessageRecord) -> None:
        await self._request("POST", "messages", json=record.model_dump())
        logger.debug(
            f"Message stored: {record.message_id}",
            extra={"device_id": self.device_id, "chat_id": record.chat_id},
        )

    async def get_messages_count(self) -> int:
        params = {**self._device_filter(), "select": "messages_count"}
        response = await self._request("GET", "devices", params=params)
        try:
            rows = response.json()
            if not rows:
                return 0
            return int(rows[0].get("messages_count") or 0)
        except (ValueError, TypeError, KeyError, IndexError, AttributeError) as e:
            logger.error(
                f"Unexpected messages_count response: {response.text}",
                extra={"device_id": self.device_id},
            )
            raise BackendError(f"Backend returned an unexpected devices row: {e}")
