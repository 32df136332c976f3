"""
Repository ports and in-memory adapters.

Components read and write entities only through a Repository, so a
database-backed adapter can replace InMemoryRepository without touching the
algorithms. In-memory state does not survive a restart.
"""

from abc import ABC, abstractmethod
from collections.abc import Callable, Iterator
from typing import Generic, TypeVar

from core.errors import NotFoundError

T = TypeVar("T")


class Repository(ABC, Generic[T]):
    """Keyed entity store."""

    entity_name: str = "Entity"

    @abstractmethod
    def get(self, entity_id: str) -> T | None: ...

    @abstractmethod
    def put(self, entity_id: str, entity: T) -> None: ...

    @abstractmethod
    def delete(self, entity_id: str) -> bool: ...

    @abstractmethod
    def values(self) -> list[T]: ...

    def require(self, entity_id: str) -> T:
        entity = self.get(entity_id)
        if entity is None:
            raise NotFoundError(self.entity_name, entity_id)
        return entity

    def filter(self, predicate: Callable[[T], bool]) -> list[T]:
        return [e for e in self.values() if predicate(e)]

    def __contains__(self, entity_id: object) -> bool:
        return isinstance(entity_id, str) and self.get(entity_id) is not None

    def __iter__(self) -> Iterator[T]:
        return iter(self.values())

    def __len__(self) -> int:
        return len(self.values())


class InMemoryRepository(Repository[T]):
    """Dict-backed repository; preserves insertion order."""

    def __init__(self, entity_name: str = "Entity"):
        self.entity_name = entity_name
        self._items: dict[str, T] = {}

    def get(self, entity_id: str) -> T | None:
        return self._items.get(entity_id)

    def put(self, entity_id: str, entity: T) -> None:
        self._items[entity_id] = entity

    def delete(self, entity_id: str) -> bool:
        return self._items.pop(entity_id, None) is not None

    def values(self) -> list[T]:
        return list(self._items.values())

    def __len__(self) -> int:
        return len(self._items)


class AppendOnlyLog(ABC, Generic[T]):
    """Per-key append-only sequences (feature vectors, metric buckets)."""

    @abstractmethod
    def append_many(self, key: str, items: list[T]) -> None: ...

    @abstractmethod
    def read(self, key: str) -> list[T]: ...


class InMemoryAppendOnlyLog(AppendOnlyLog[T]):
    def __init__(self) -> None:
        self._data: dict[str, list[T]] = {}

    def append_many(self, key: str, items: list[T]) -> None:
        # Single extend keeps a batch all-or-nothing from a reader's view.
        self._data.setdefault(key, []).extend(items)

    def read(self, key: str) -> list[T]:
        return list(self._data.get(key, []))
