"""
In-memory store implementation.

Process-local, dict-backed. Used for all three bridge stores.
"""

from dataclasses import dataclass, field
from typing import Dict, Iterator, Optional

from bridge.stores.base import K, KeyValueStore, V
from bridge.stores.types import DeviceMetadata, SessionEntry


class InMemoryStore(KeyValueStore[K, V]):
    """Dict-backed store."""

    def __init__(self):
        self._data: Dict[K, V] = {}

    def get(self, key: K) -> Optional[V]:
        return self._data.get(key)

    def set(self, key: K, value: V) -> None:
        self._data[key] = value

    def delete(self, key: K) -> Optional[V]:
        return self._data.pop(key, None)

    def keys(self) -> Iterator[K]:
        return iter(list(self._data))

    def __len__(self) -> int:
        return len(self._data)


@dataclass
class BridgeStores:
    """
    The three process-wide stores, grouped for injection.

    sessions:  device_id -> SessionEntry
    pairings:  device_id -> pairing artifact (PNG data URL)
    metadata:  device_id -> DeviceMetadata
    """

    sessions: KeyValueStore[str, SessionEntry] = field(default_factory=InMemoryStore)
    pairings: KeyValueStore[str, str] = field(default_factory=InMemoryStore)
    metadata: KeyValueStore[str, DeviceMetadata] = field(default_factory=InMemoryStore)
