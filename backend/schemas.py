"""
External backend payload schemas.

PURE DATA MODELS - NO LOGIC
Field names are the external store's contract and must match it exactly.
"""

from datetime import datetime, timezone
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

BackendDeviceStatus = Literal["connecting", "connected", "disconnected"]


def iso_timestamp(moment: Optional[datetime] = None) -> str:
    """ISO-8601 UTC with millisecond precision and a Z suffix."""
    moment = moment or datetime.now(timezone.utc)
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


class DevicePatch(BaseModel):
    """
    Partial update of a row in the devices collection.

    Only explicitly set fields are sent, so qr_code=None clears the
    column while an omitted qr_code leaves it untouched.
    """

    model_config = ConfigDict(extra="forbid")

    status: Optional[BackendDeviceStatus] = None
    phone: Optional[str] = None
    battery: Optional[int] = Field(None, ge=0, le=100)
    qr_code: Optional[str] = None
    last_seen: Optional[str] = None
    messages_count: Optional[int] = Field(None, ge=0)

    def to_payload(self) -> dict:
        return self.model_dump(exclude_unset=True)


class MessageRecord(BaseModel):
    """Row inserted into the messages collection for an inbound message."""

    model_config = ConfigDict(frozen=True)

    device_id: str
    chat_id: str
    message_id: str
    from_me: bool
    contact_phone: Optional[str] = None
    message_type: Literal["text"] = "text"
    content: str
    status: Literal["received"] = "received"
    timestamp: str
