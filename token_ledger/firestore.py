from typing import Callable, Iterable, Optional

from google.cloud import firestore
from google.cloud.firestore_v1.base_query import FieldFilter

from .storage import (
    Document,
    DocumentStore,
    Filter,
    Increment,
    T,
    Transaction,
    WriteBatch,
)


def _to_firestore(data: dict) -> dict:
    return {
        k: (firestore.Increment(v.value) if isinstance(v, Increment) else v)
        for k, v in data.items()
    }


def _to_document(snapshot) -> Optional[Document]:
    if not snapshot.exists:
        return None
    return Document(id=snapshot.id, data=snapshot.to_dict() or {})


class FirestoreTransaction(Transaction):
    def __init__(self, storage: "FirestoreStorage", transaction: firestore.Transaction):
        self.storage = storage
        self.transaction = transaction

    def get(self, collection: str, doc_id: str) -> Optional[Document]:
        ref = self.storage.ref(collection, doc_id)
        return _to_document(ref.get(transaction=self.transaction))

    def set(self, collection: str, doc_id: str, data: dict) -> None:
        self.transaction.set(self.storage.ref(collection, doc_id), _to_firestore(data))

    def create(self, collection: str, doc_id: str, data: dict) -> None:
        self.transaction.create(self.storage.ref(collection, doc_id), _to_firestore(data))

    def update(self, collection: str, doc_id: str, data: dict) -> None:
        self.transaction.update(self.storage.ref(collection, doc_id), _to_firestore(data))


class FirestoreBatch(WriteBatch):
    def __init__(self, storage: "FirestoreStorage"):
        self.storage = storage
        self.batch = storage.client.batch()

    def set(self, collection: str, doc_id: str, data: dict) -> None:
        self.batch.set(self.storage.ref(collection, doc_id), _to_firestore(data))

    def update(self, collection: str, doc_id: str, data: dict) -> None:
        self.batch.update(self.storage.ref(collection, doc_id), _to_firestore(data))

    def commit(self) -> None:
        self.batch.commit()


class FirestoreStorage(DocumentStore):
    """Document store backed by Cloud Firestore."""

    def __init__(self, project: Optional[str] = None, client: Optional[firestore.Client] = None):
        self.client = client or firestore.Client(project=project)

    def ref(self, collection: str, doc_id: str) -> firestore.DocumentReference:
        return self.client.collection(collection).document(doc_id)

    def new_id(self, collection: str) -> str:
        return self.client.collection(collection).document().id

    def get(self, collection: str, doc_id: str) -> Optional[Document]:
        return _to_document(self.ref(collection, doc_id).get())

    def add(self, collection: str, data: dict) -> str:
        _, ref = self.client.collection(collection).add(_to_firestore(data))
        return ref.id

    def set(self, collection: str, doc_id: str, data: dict) -> None:
        self.ref(collection, doc_id).set(_to_firestore(data))

    def update(self, collection: str, doc_id: str, data: dict) -> None:
        self.ref(collection, doc_id).update(_to_firestore(data))

    def query(
        self,
        collection: str,
        filters: Iterable[Filter] = (),
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> list[Document]:
        q = self.client.collection(collection)
        for field, op, value in filters:
            q = q.where(filter=FieldFilter(field, op, value))
        if order_by:
            direction = firestore.Query.DESCENDING if descending else firestore.Query.ASCENDING
            q = q.order_by(order_by, direction=direction)
        if limit is not None:
            q = q.limit(limit)
        return [Document(id=s.id, data=s.to_dict() or {}) for s in q.stream()]

    def run_transaction(self, fn: Callable[[Transaction], T]) -> T:
        @firestore.transactional
        def _run(transaction):
            return fn(FirestoreTransaction(self, transaction))

        return _run(self.client.transaction())

    def batch(self) -> FirestoreBatch:
        return FirestoreBatch(self)
