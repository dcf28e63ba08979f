"""Key-addressable stores for engine state.

The engines only ever call ``get``/``set``/``delete``/``values`` so they run
unchanged against the in-memory store (default, and in tests) or the
SQLAlchemy-backed one.
"""

from __future__ import annotations

from typing import Dict, Generic, Iterator, List, Optional, Protocol, Type, TypeVar

from pydantic import BaseModel

from tool_warden.clients.database import StoredRecord, session_scope

T = TypeVar("T", bound=BaseModel)


class KeyValueStore(Protocol[T]):
    # True when contents outlive the process.
    persistent: bool

    def get(self, key: str) -> Optional[T]:
        ...

    def set(self, key: str, value: T) -> None:
        ...

    def delete(self, key: str) -> None:
        ...

    def values(self) -> List[T]:
        ...


class InMemoryStore(Generic[T]):
    """Dict-backed store; values are shared references."""

    persistent = False

    def __init__(self) -> None:
        self._items: Dict[str, T] = {}

    def get(self, key: str) -> Optional[T]:
        return self._items.get(key)

    def set(self, key: str, value: T) -> None:
        self._items[key] = value

    def delete(self, key: str) -> None:
        self._items.pop(key, None)

    def values(self) -> List[T]:
        return list(self._items.values())

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._items))

    def __len__(self) -> int:
        return len(self._items)


class SqlStore(Generic[T]):
    """Persists pydantic models as JSON rows in ``stored_records``."""

    persistent = True

    def __init__(self, namespace: str, model: Type[T]) -> None:
        self.namespace = namespace
        self.model = model

    def get(self, key: str) -> Optional[T]:
        with session_scope() as db:
            row = db.get(StoredRecord, (self.namespace, key))
            return self.model.model_validate_json(row.payload) if row else None

    def set(self, key: str, value: T) -> None:
        record = StoredRecord(namespace=self.namespace, key=key, payload=value.model_dump_json())
        with session_scope() as db:
            db.merge(record)

    def delete(self, key: str) -> None:
        with session_scope() as db:
            row = db.get(StoredRecord, (self.namespace, key))
            if row:
                db.delete(row)

    def values(self) -> List[T]:
        with session_scope() as db:
            rows = (
                db.query(StoredRecord)
                .filter(StoredRecord.namespace == self.namespace)
                .order_by(StoredRecord.key.asc())
                .all()
            )
            return [self.model.model_validate_json(row.payload) for row in rows]
