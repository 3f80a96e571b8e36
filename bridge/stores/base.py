"""
Abstract key-value store boundary.

The lifecycle manager depends only on this interface, never on a
concrete map. Every operation is a single synchronous step, so no
interleaved coroutine can observe a half-applied update for a key.
"""

from abc import ABC, abstractmethod
from typing import Generic, Iterator, Optional, TypeVar

K = TypeVar("K")
V = TypeVar("V")


class KeyValueStore(ABC, Generic[K, V]):
    """Atomic get/set/delete per key."""

    @abstractmethod
    def get(self, key: K) -> Optional[V]:
        """Return the value for key, or None if absent."""
        raise NotImplementedError

    @abstractmethod
    def set(self, key: K, value: V) -> None:
        """Insert or replace the value for key."""
        raise NotImplementedError

    @abstractmethod
    def delete(self, key: K) -> Optional[V]:
        """Remove key and return the previous value (None if absent)."""
        raise NotImplementedError

    @abstractmethod
    def keys(self) -> Iterator[K]:
        """Iterate over a snapshot of the present keys."""
        raise NotImplementedError

    @abstractmethod
    def __len__(self) -> int:
        raise NotImplementedError

    def contains(self, key: K) -> bool:
        return self.get(key) is not None

    def __contains__(self, key: object) -> bool:
        return self.contains(key)  # type: ignore[arg-type]
