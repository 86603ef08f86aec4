"""
Document store used by the ledger services.

The hosted document database owns atomicity; services only see this small
interface. ``InMemoryStorage`` mirrors the hosted store closely enough to act
as its emulator in tests and local runs.
"""

import copy
import operator
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Optional, TypeVar
from uuid import uuid4

from .config import Settings

T = TypeVar("T")

Filter = tuple[str, str, Any]

_OPERATORS: dict[str, Callable[[Any, Any], bool]] = {
    "==": operator.eq,
    "<": operator.lt,
    "<=": operator.le,
    ">": operator.gt,
    ">=": operator.ge,
}


class StorageError(Exception):
    pass


class DocumentNotFoundError(StorageError):
    pass


class DocumentExistsError(StorageError):
    pass


class ReadAfterWriteError(StorageError):
    pass


@dataclass(frozen=True)
class Increment:
    """Atomic numeric increment applied by the store at write time."""
    value: float


@dataclass
class Document:
    id: str
    data: dict

    def get(self, field: str, default: Any = None) -> Any:
        return _get_path(self.data, field, default)


_MISSING = object()


def _get_path(data: dict, field: str, default: Any = None) -> Any:
    value: Any = data
    for part in field.split("."):
        if not isinstance(value, dict) or part not in value:
            return default
        value = value[part]
    return value


def _apply_update(data: dict, updates: dict) -> None:
    for field, value in updates.items():
        *parents, leaf = field.split(".")
        target = data
        for part in parents:
            child = target.get(part)
            if not isinstance(child, dict):
                child = {}
                target[part] = child
            target = child
        if isinstance(value, Increment):
            current = target.get(leaf) or 0
            target[leaf] = current + value.value
        else:
            target[leaf] = copy.deepcopy(value)


def _resolve_increments(data: dict) -> dict:
    return {
        k: (v.value if isinstance(v, Increment) else copy.deepcopy(v))
        for k, v in data.items()
    }


class Transaction(ABC):
    @abstractmethod
    def get(self, collection: str, doc_id: str) -> Optional[Document]: ...

    @abstractmethod
    def create(self, collection: str, doc_id: str, data: dict) -> None: ...

    @abstractmethod
    def set(self, collection: str, doc_id: str, data: dict) -> None: ...

    @abstractmethod
    def update(self, collection: str, doc_id: str, data: dict) -> None: ...


class WriteBatch(ABC):
    @abstractmethod
    def set(self, collection: str, doc_id: str, data: dict) -> None: ...

    @abstractmethod
    def update(self, collection: str, doc_id: str, data: dict) -> None: ...

    @abstractmethod
    def commit(self) -> None: ...


class DocumentStore(ABC):
    @abstractmethod
    def new_id(self, collection: str) -> str: ...

    @abstractmethod
    def get(self, collection: str, doc_id: str) -> Optional[Document]: ...

    @abstractmethod
    def add(self, collection: str, data: dict) -> str: ...

    @abstractmethod
    def set(self, collection: str, doc_id: str, data: dict) -> None: ...

    @abstractmethod
    def update(self, collection: str, doc_id: str, data: dict) -> None: ...

    @abstractmethod
    def query(
        self,
        collection: str,
        filters: Iterable[Filter] = (),
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> list[Document]: ...

    @abstractmethod
    def run_transaction(self, fn: Callable[[Transaction], T]) -> T: ...

    @abstractmethod
    def batch(self) -> WriteBatch: ...


class _InMemoryWrites:
    def __init__(self, storage: "InMemoryStorage"):
        self.storage = storage
        self.writes: list[tuple[str, str, str, dict]] = []

    def set(self, collection: str, doc_id: str, data: dict) -> None:
        self.writes.append(("set", collection, doc_id, dict(data)))

    def update(self, collection: str, doc_id: str, data: dict) -> None:
        self.writes.append(("update", collection, doc_id, dict(data)))


class InMemoryTransaction(_InMemoryWrites, Transaction):
    def create(self, collection: str, doc_id: str, data: dict) -> None:
        self.writes.append(("create", collection, doc_id, dict(data)))

    def get(self, collection: str, doc_id: str) -> Optional[Document]:
        if self.writes:
            raise ReadAfterWriteError("Transaction reads must happen before writes")
        return self.storage.get(collection, doc_id)


class InMemoryBatch(_InMemoryWrites, WriteBatch):
    def commit(self) -> None:
        self.storage._commit(self.writes)
        self.writes = []


class InMemoryStorage(DocumentStore):
    def __init__(self):
        self.collections: dict[str, dict[str, dict]] = {}
        self._lock = threading.RLock()

    def new_id(self, collection: str) -> str:
        return uuid4().hex[:20]

    def get(self, collection: str, doc_id: str) -> Optional[Document]:
        with self._lock:
            data = self.collections.get(collection, {}).get(doc_id)
            if data is None:
                return None
            return Document(id=doc_id, data=copy.deepcopy(data))

    def add(self, collection: str, data: dict) -> str:
        doc_id = self.new_id(collection)
        self.set(collection, doc_id, data)
        return doc_id

    def set(self, collection: str, doc_id: str, data: dict) -> None:
        self._commit([("set", collection, doc_id, data)])

    def update(self, collection: str, doc_id: str, data: dict) -> None:
        self._commit([("update", collection, doc_id, data)])

    def query(
        self,
        collection: str,
        filters: Iterable[Filter] = (),
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> list[Document]:
        filters = list(filters)
        with self._lock:
            docs = [
                Document(id=doc_id, data=copy.deepcopy(data))
                for doc_id, data in self.collections.get(collection, {}).items()
                if all(self._matches(data, f) for f in filters)
            ]

        if order_by:
            # Documents without the ordering field never appear in ordered results
            docs = [d for d in docs if d.get(order_by, _MISSING) is not _MISSING]
            docs.sort(
                key=lambda d: (d.get(order_by) is not None, d.get(order_by)),
                reverse=descending,
            )
        if limit is not None:
            docs = docs[:limit]
        return docs

    def run_transaction(self, fn: Callable[[Transaction], T]) -> T:
        with self._lock:
            txn = InMemoryTransaction(self)
            result = fn(txn)
            self._commit(txn.writes)
            return result

    def batch(self) -> InMemoryBatch:
        return InMemoryBatch(self)

    def _matches(self, data: dict, f: Filter) -> bool:
        field, op, expected = f
        value = _get_path(data, field, _MISSING)
        if value is _MISSING:
            return False
        if op == "==":
            return value == expected
        if value is None or expected is None:
            return False
        try:
            return _OPERATORS[op](value, expected)
        except TypeError:
            return False

    def _commit(self, writes: list[tuple[str, str, str, dict]]) -> None:
        with self._lock:
            staged = copy.deepcopy(self.collections)
            for kind, collection, doc_id, data in writes:
                docs = staged.setdefault(collection, {})
                if kind == "create" and doc_id in docs:
                    raise DocumentExistsError(f"{collection}/{doc_id} already exists")
                if kind in ("set", "create"):
                    docs[doc_id] = _resolve_increments(data)
                else:
                    if doc_id not in docs:
                        raise DocumentNotFoundError(f"{collection}/{doc_id} not found")
                    _apply_update(docs[doc_id], data)
            self.collections = staged


def create_storage(settings: Settings) -> DocumentStore:
    if settings.storage_backend == "firestore":
        from .firestore import FirestoreStorage
        return FirestoreStorage(project=settings.firestore_project)
    return InMemoryStorage()
