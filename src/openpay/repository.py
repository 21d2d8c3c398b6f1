"""
Keyed in-memory storage for orchestrator state.

Every read-modify-write goes through update(), which holds the lock for
the whole callback so a record is never observed half-changed.
"""

from __future__ import annotations

import threading
from typing import Callable, Generic, Iterator, Optional, Protocol, TypeVar

from .errors import NotFoundError

T = TypeVar("T")


class Repository(Protocol[T]):
    def add(self, identifier: str, item: T) -> T: ...

    def get(self, identifier: str) -> T: ...

    def find(self, identifier: str) -> Optional[T]: ...

    def list(self, predicate: Optional[Callable[[T], bool]] = None) -> list[T]: ...

    def update(self, identifier: str, fn: Callable[[T], T]) -> T: ...

    def remove(self, identifier: str) -> Optional[T]: ...


class InMemoryRepository(Generic[T]):
    """Thread-safe dict-backed repository."""

    def __init__(self, kind: str):
        self.kind = kind
        self._items: dict[str, T] = {}
        self._lock = threading.RLock()

    def add(self, identifier: str, item: T) -> T:
        with self._lock:
            if identifier in self._items:
                raise ValueError(f"{self.kind} already exists: {identifier}")
            self._items[identifier] = item
        return item

    def get(self, identifier: str) -> T:
        item = self.find(identifier)
        if item is None:
            raise NotFoundError(self.kind, identifier)
        return item

    def find(self, identifier: str) -> Optional[T]:
        with self._lock:
            return self._items.get(identifier)

    def list(self, predicate: Optional[Callable[[T], bool]] = None) -> list[T]:
        with self._lock:
            items = list(self._items.values())
        if predicate is None:
            return items
        return [item for item in items if predicate(item)]

    def update(self, identifier: str, fn: Callable[[T], T]) -> T:
        """Replace a record with fn(record) atomically.

        If fn raises, the stored record is left unchanged.
        """
        with self._lock:
            if identifier not in self._items:
                raise NotFoundError(self.kind, identifier)
            updated = fn(self._items[identifier])
            self._items[identifier] = updated
            return updated

    def remove(self, identifier: str) -> Optional[T]:
        with self._lock:
            return self._items.pop(identifier, None)

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)

    def __iter__(self) -> Iterator[T]:
        return iter(self.list())
