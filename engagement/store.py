"""
In-memory document store.

Stands in for the shared remote store the engagement services talk to:
collections of camelCase documents, equality/predicate queries, live
subscriptions that deliver a snapshot plus per-document changes, an atomic
``Increment`` field value, and all-or-nothing transactions guarded by
preconditions (compare-and-set).

Every operation and every transaction commit runs under one re-entrant lock,
so concurrent callers interleave only between store operations.
"""
import copy
import logging
import threading
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Callable, Iterator, Optional, Set

from .errors import EngagementError, NotFoundError, StoreUnavailableError

logger = logging.getLogger(__name__)

ALL_COLLECTIONS = "*"


class PreconditionFailedError(EngagementError):
    pass


@dataclass(frozen=True)
class Increment:
    amount: Any = 1


@dataclass(frozen=True)
class DocumentChange:
    kind: str  # added | modified | removed
    document: dict


@dataclass(frozen=True)
class Snapshot:
    documents: list[dict]
    changes: list[DocumentChange] = field(default_factory=list)


def new_id() -> str:
    return uuid.uuid4().hex


def get_path(document: dict, path: str) -> Any:
    value: Any = document
    for part in path.split("."):
        if not isinstance(value, dict):
            return None
        value = value.get(part)
    return value


def _apply_fields(document: dict, fields: dict) -> None:
    for path, value in fields.items():
        target = document
        parts = path.split(".")
        for part in parts[:-1]:
            target = target.setdefault(part, {})
        key = parts[-1]
        if isinstance(value, Increment):
            target[key] = (target.get(key) or 0) + value.amount
        else:
            target[key] = copy.deepcopy(value)


def _matches(document: dict, filters: dict, where: Optional[Callable[[dict], bool]]) -> bool:
    for path, expected in filters.items():
        if get_path(document, path) != expected:
            return False
    return where(document) if where else True


class Subscription:
    """Handle for a live query; call ``unsubscribe`` when the view goes away."""

    def __init__(self, store: "InMemoryStore", collection: str, callback: Callable[[Snapshot], None],
                 query: dict):
        self.store = store
        self.collection = collection
        self.callback = callback
        self.query = query
        self.active = True
        self._seen: dict[str, dict] = {}

    def unsubscribe(self) -> None:
        self.active = False
        self.store._detach(self)

    def _deliver(self) -> None:
        if not self.active:
            return
        documents = self.store.query(self.collection, **self.query)
        current = {doc["id"]: doc for doc in documents}
        changes = []
        for doc_id, doc in current.items():
            previous = self._seen.get(doc_id)
            if previous is None:
                changes.append(DocumentChange("added", doc))
            elif previous != doc:
                changes.append(DocumentChange("modified", doc))
        for doc_id, doc in self._seen.items():
            if doc_id not in current:
                changes.append(DocumentChange("removed", doc))
        self._seen = current
        try:
            self.callback(Snapshot(documents=documents, changes=changes))
        except Exception:
            logger.exception("Subscription handler on %s failed", self.collection)


class StoreTransaction:
    """Buffered writes plus preconditions, applied atomically on commit."""

    def __init__(self, store: "InMemoryStore"):
        self.store = store
        self._preconditions: list[tuple[str, str, Optional[dict]]] = []
        self._writes: list[tuple[str, str, str, dict]] = []

    def get(self, collection: str, doc_id: str) -> Optional[dict]:
        return self.store.get(collection, doc_id)

    def require(self, collection: str, doc_id: str, expected: dict) -> None:
        self._preconditions.append((collection, doc_id, expected))

    def require_absent(self, collection: str, doc_id: str) -> None:
        self._preconditions.append((collection, doc_id, None))

    def set(self, collection: str, doc_id: str, data: dict) -> None:
        self._writes.append(("set", collection, doc_id, data))

    def add(self, collection: str, data: dict) -> str:
        doc_id = data.get("id") or new_id()
        self.set(collection, doc_id, {**data, "id": doc_id})
        return doc_id

    def update(self, collection: str, doc_id: str, fields: dict, create: bool = False) -> None:
        self._writes.append(("upsert" if create else "update", collection, doc_id, fields))

    def commit(self) -> Set[str]:
        store = self.store
        with store._lock:
            touched = {c for c, _, _ in self._preconditions} | {c for _, c, _, _ in self._writes}
            for collection in touched:
                store._check_available(collection)
            for collection, doc_id, expected in self._preconditions:
                current = store._docs(collection).get(doc_id)
                if expected is None:
                    if current is not None:
                        raise PreconditionFailedError(f"{collection}/{doc_id} already exists")
                    continue
                if current is None or any(get_path(current, k) != v for k, v in expected.items()):
                    raise PreconditionFailedError(f"Precondition failed on {collection}/{doc_id}")
            for op, collection, doc_id, _ in self._writes:
                if op == "update" and doc_id not in store._docs(collection):
                    raise NotFoundError(f"{collection}/{doc_id} not found")
            for op, collection, doc_id, payload in self._writes:
                docs = store._docs(collection)
                if op == "set":
                    docs[doc_id] = copy.deepcopy(payload)
                else:
                    document = docs.setdefault(doc_id, {"id": doc_id})
                    _apply_fields(document, payload)
        return touched


class InMemoryStore:
    def __init__(self):
        self.collections: dict[str, dict[str, dict]] = {}
        self.unavailable: set[str] = set()
        self._subscriptions: list[Subscription] = []
        self._lock = threading.RLock()

    def _docs(self, collection: str) -> dict[str, dict]:
        return self.collections.setdefault(collection, {})

    def _check_available(self, collection: str) -> None:
        if ALL_COLLECTIONS in self.unavailable or collection in self.unavailable:
            raise StoreUnavailableError(f"Store unavailable for '{collection}'")

    def get(self, collection: str, doc_id: str) -> Optional[dict]:
        with self._lock:
            self._check_available(collection)
            document = self._docs(collection).get(doc_id)
            return copy.deepcopy(document) if document is not None else None

    def query(self, collection: str, where: Optional[Callable[[dict], bool]] = None,
              order_by: Optional[str] = None, descending: bool = False,
              limit: Optional[int] = None, **filters) -> list[dict]:
        with self._lock:
            self._check_available(collection)
            found = [copy.deepcopy(d) for d in self._docs(collection).values() if _matches(d, filters, where)]
        if order_by:
            ordered = [d for d in found if get_path(d, order_by) is not None]
            missing = [d for d in found if get_path(d, order_by) is None]
            ordered.sort(key=lambda d: get_path(d, order_by), reverse=descending)
            found = ordered + missing
        return found[:limit] if limit is not None else found

    def add(self, collection: str, data: dict) -> str:
        with self.transaction() as txn:
            doc_id = txn.add(collection, data)
        return doc_id

    def set(self, collection: str, doc_id: str, data: dict) -> None:
        with self.transaction() as txn:
            txn.set(collection, doc_id, {**data, "id": doc_id})

    def update(self, collection: str, doc_id: str, fields: dict, create: bool = False) -> None:
        with self.transaction() as txn:
            txn.update(collection, doc_id, fields, create=create)

    def compare_and_set(self, collection: str, doc_id: str, expected: dict, fields: dict) -> bool:
        try:
            with self.transaction() as txn:
                txn.require(collection, doc_id, expected)
                txn.update(collection, doc_id, fields)
        except PreconditionFailedError:
            return False
        return True

    @contextmanager
    def transaction(self) -> Iterator[StoreTransaction]:
        txn = StoreTransaction(self)
        yield txn
        touched = txn.commit()
        self._notify(touched)

    def subscribe(self, collection: str, callback: Callable[[Snapshot], None], **query) -> Subscription:
        subscription = Subscription(self, collection, callback, query)
        with self._lock:
            self._subscriptions.append(subscription)
        subscription._deliver()
        return subscription

    def _detach(self, subscription: Subscription) -> None:
        with self._lock:
            if subscription in self._subscriptions:
                self._subscriptions.remove(subscription)

    def _notify(self, collections: Set[str]) -> None:
        with self._lock:
            targets = [s for s in self._subscriptions if s.collection in collections]
        for subscription in targets:
            try:
                subscription._deliver()
            except StoreUnavailableError:
                logger.warning("Skipped delivery to %s subscriber: store unavailable", subscription.collection)
