"""Session, pairing and metadata stores."""

from .base import KeyValueStore
from .memory import BridgeStores, InMemoryStore
from .types import (
    DeviceMetadata,
    DeviceStatus,
    DeviceStatusView,
    ExternalCredentials,
    SessionEntry,
)

__all__ = [
    "KeyValueStore",
    "InMemoryStore",
    "BridgeStores",
    "DeviceMetadata",
    "DeviceStatus",
    "DeviceStatusView",
    "ExternalCredentials",
    "SessionEntry",
]
