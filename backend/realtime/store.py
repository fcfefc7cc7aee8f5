"""
Document store with realtime subscriptions.

The backend is a passive document store: per-document CRUD plus realtime
change subscriptions keyed by collection path and filter predicate. No server
logic runs on it; every rule lives in the clients.

Layout:
    cells/{cellId}/presence/{uid}
    cells/{cellId}/requests/{requestId}

Semantics shared by all backends:
- SERVER_TIMESTAMP in written data is replaced with the store clock
- Subscribers get the current result on subscribe, then the full result
  list again after every change that touches it (overwrite, not merge)
- Documents whose expiresAt has passed are hard-deleted by the store's own
  reaper (purge_expired); components never bulk-delete
"""

from __future__ import annotations

import copy
import itertools
import logging
import operator
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from django.utils import timezone

from .conf import geo_setting
from .exceptions import DocumentNotFound, SubscriptionError
from .streams import Subscription

logger = logging.getLogger(__name__)


# ---------------------- Paths ----------------------

CELLS_COLLECTION = "cells"
PRESENCE_GROUP = "presence"
REQUESTS_GROUP = "requests"


def presence_collection(cell_id: str) -> str:
    return f"{CELLS_COLLECTION}/{cell_id}/{PRESENCE_GROUP}"


def presence_path(cell_id: str, uid: str) -> str:
    return f"{presence_collection(cell_id)}/{uid}"


def requests_collection(cell_id: str) -> str:
    return f"{CELLS_COLLECTION}/{cell_id}/{REQUESTS_GROUP}"


def request_path(cell_id: str, request_id: str) -> str:
    return f"{requests_collection(cell_id)}/{request_id}"


def split_path(path: str) -> Tuple[str, str]:
    """Split a document path into (collection path, document id)."""
    collection, _, doc_id = path.rpartition("/")
    if not collection or not doc_id:
        raise ValueError(f"Not a document path: {path!r}")
    return collection, doc_id


def group_of(collection: str) -> str:
    """Collection group name, i.e. the last segment of a collection path."""
    return collection.rsplit("/", 1)[-1]


# ---------------------- Values & Filters ----------------------

class _ServerTimestamp:
    def __repr__(self):
        return "SERVER_TIMESTAMP"


SERVER_TIMESTAMP = _ServerTimestamp()

Filter = Tuple[str, str, Any]

FILTER_OPERATORS: Dict[str, Callable[[Any, Any], bool]] = {
    "==": operator.eq,
    "!=": operator.ne,
    "<": operator.lt,
    "<=": operator.le,
    ">": operator.gt,
    ">=": operator.ge,
    "in": lambda actual, expected: actual in expected,
}


def validate_filters(filters: Optional[Sequence[Filter]]) -> List[Filter]:
    checked = []
    for item in filters or ():
        field, op, value = item
        if op not in FILTER_OPERATORS:
            raise ValueError(f"Unsupported filter operator {op!r} on {field!r}")
        checked.append((field, op, value))
    return checked


def matches_filters(data: Dict[str, Any], filters: Sequence[Filter]) -> bool:
    """A document missing a filtered field never matches."""
    for field, op, value in filters:
        if field not in data:
            return False
        try:
            if not FILTER_OPERATORS[op](data[field], value):
                return False
        except TypeError:
            return False
    return True


def resolve_server_values(data: Dict[str, Any], now: datetime) -> Dict[str, Any]:
    resolved = {}
    for key, value in data.items():
        if value is SERVER_TIMESTAMP:
            resolved[key] = now
        elif isinstance(value, dict):
            resolved[key] = resolve_server_values(value, now)
        else:
            resolved[key] = copy.deepcopy(value)
    return resolved


@dataclass(frozen=True)
class DocumentSnapshot:
    """A document as read from the store. data is None when it does not exist."""
    path: str
    data: Optional[Dict[str, Any]]

    @property
    def id(self) -> str:
        return split_path(self.path)[1]

    @property
    def exists(self) -> bool:
        return self.data is not None


SnapshotCallback = Callable[[Any], None]
ErrorCallback = Callable[[SubscriptionError], None]


# ---------------------- Store Contract ----------------------

class DocumentStore(ABC):
    """Contract shared by the in-memory and Redis backends."""

    @abstractmethod
    def now(self) -> datetime:
        """Store clock used for SERVER_TIMESTAMP."""

    @abstractmethod
    def get(self, path: str) -> DocumentSnapshot:
        pass

    @abstractmethod
    def set(self, path: str, data: Dict[str, Any], merge: bool = False) -> None:
        pass

    @abstractmethod
    def update(self, path: str, fields: Dict[str, Any]) -> None:
        """Merge fields into an existing document. Raises DocumentNotFound."""

    @abstractmethod
    def delete(self, path: str) -> None:
        pass

    @abstractmethod
    def query(self, collection: str, filters: Optional[Sequence[Filter]] = None) -> List[DocumentSnapshot]:
        pass

    @abstractmethod
    def query_group(self, group: str, filters: Optional[Sequence[Filter]] = None) -> List[DocumentSnapshot]:
        """Query every collection named group, across all cells."""

    @abstractmethod
    def watch_document(
        self, path: str, on_snapshot: SnapshotCallback, on_error: Optional[ErrorCallback] = None
    ) -> Subscription:
        pass

    @abstractmethod
    def watch_collection(
        self,
        collection: str,
        filters: Optional[Sequence[Filter]],
        on_snapshot: SnapshotCallback,
        on_error: Optional[ErrorCallback] = None,
    ) -> Subscription:
        pass

    @abstractmethod
    def watch_group(
        self,
        group: str,
        filters: Optional[Sequence[Filter]],
        on_snapshot: SnapshotCallback,
        on_error: Optional[ErrorCallback] = None,
    ) -> Subscription:
        pass

    @abstractmethod
    def purge_expired(self, now: Optional[datetime] = None) -> int:
        """Hard-delete documents whose expiresAt has passed. Returns the count."""


# ---------------------- In-Memory Backend ----------------------

@dataclass
class _Watcher:
    kind: str          # "document" | "collection" | "group"
    target: str
    filters: List[Filter]
    on_snapshot: SnapshotCallback
    on_error: Optional[ErrorCallback]
    active: bool = True


class InMemoryDocumentStore(DocumentStore):
    """
    Process-local store with synchronous change delivery.

    Callbacks run on the writer's thread, after the store lock is released.
    """

    def __init__(self, clock: Optional[Callable[[], datetime]] = None):
        self._clock = clock or timezone.now
        self._docs: Dict[str, Dict[str, Any]] = {}
        self._watchers: Dict[int, _Watcher] = {}
        self._ids = itertools.count()
        self._lock = threading.RLock()

    def now(self) -> datetime:
        return self._clock()

    def __len__(self):
        return len(self._docs)

    # -- reads --

    def get(self, path: str) -> DocumentSnapshot:
        with self._lock:
            data = self._docs.get(path)
            return DocumentSnapshot(path, copy.deepcopy(data))

    def _select(self, predicate, filters) -> List[DocumentSnapshot]:
        return [
            DocumentSnapshot(path, copy.deepcopy(data))
            for path, data in sorted(self._docs.items())
            if predicate(path) and matches_filters(data, filters)
        ]

    def query(self, collection: str, filters: Optional[Sequence[Filter]] = None) -> List[DocumentSnapshot]:
        checked = validate_filters(filters)
        with self._lock:
            return self._select(lambda p: split_path(p)[0] == collection, checked)

    def query_group(self, group: str, filters: Optional[Sequence[Filter]] = None) -> List[DocumentSnapshot]:
        checked = validate_filters(filters)
        with self._lock:
            return self._select(lambda p: group_of(split_path(p)[0]) == group, checked)

    # -- writes --

    def set(self, path: str, data: Dict[str, Any], merge: bool = False) -> None:
        split_path(path)
        with self._lock:
            resolved = resolve_server_values(data, self.now())
            if merge and path in self._docs:
                resolved = {**self._docs[path], **resolved}
            self._docs[path] = resolved
            deliveries = self._collect(path)
        self._deliver(deliveries)

    def update(self, path: str, fields: Dict[str, Any]) -> None:
        with self._lock:
            if path not in self._docs:
                raise DocumentNotFound(path)
            self._docs[path] = {**self._docs[path], **resolve_server_values(fields, self.now())}
            deliveries = self._collect(path)
        self._deliver(deliveries)

    def delete(self, path: str) -> None:
        with self._lock:
            if self._docs.pop(path, None) is None:
                return
            deliveries = self._collect(path)
        self._deliver(deliveries)

    def purge_expired(self, now: Optional[datetime] = None) -> int:
        cutoff = now or self.now()
        deliveries = []
        with self._lock:
            expired = [
                path for path, data in self._docs.items()
                if isinstance(data.get("expiresAt"), datetime) and data["expiresAt"] <= cutoff
            ]
            for path in expired:
                del self._docs[path]
            for path in expired:
                deliveries.extend(self._collect(path))
        self._deliver(deliveries)
        if expired:
            logger.info("Purged %s expired document(s)", len(expired))
        return len(expired)

    # -- subscriptions --

    def _result_for(self, watcher: _Watcher):
        if watcher.kind == "document":
            return DocumentSnapshot(watcher.target, copy.deepcopy(self._docs.get(watcher.target)))
        if watcher.kind == "collection":
            return self._select(lambda p: split_path(p)[0] == watcher.target, watcher.filters)
        return self._select(lambda p: group_of(split_path(p)[0]) == watcher.target, watcher.filters)

    def _affects(self, watcher: _Watcher, path: str) -> bool:
        if watcher.kind == "document":
            return watcher.target == path
        collection = split_path(path)[0]
        if watcher.kind == "collection":
            return watcher.target == collection
        return watcher.target == group_of(collection)

    def _collect(self, path: str):
        return [
            (watcher, self._result_for(watcher))
            for watcher in self._watchers.values()
            if watcher.active and self._affects(watcher, path)
        ]

    def _deliver(self, deliveries: Iterable):
        for watcher, payload in deliveries:
            if not watcher.active:
                continue
            try:
                watcher.on_snapshot(payload)
            except Exception:
                logger.exception("Snapshot listener for %s %s raised", watcher.kind, watcher.target)

    def _watch(self, kind, target, filters, on_snapshot, on_error) -> Subscription:
        watcher = _Watcher(kind, target, validate_filters(filters), on_snapshot, on_error)
        with self._lock:
            watcher_id = next(self._ids)
            self._watchers[watcher_id] = watcher
            initial = self._result_for(watcher)

        def _cancel():
            watcher.active = False
            with self._lock:
                self._watchers.pop(watcher_id, None)

        subscription = Subscription(_cancel)
        self._deliver([(watcher, initial)])
        return subscription

    def watch_document(self, path, on_snapshot, on_error=None) -> Subscription:
        return self._watch("document", path, None, on_snapshot, on_error)

    def watch_collection(self, collection, filters, on_snapshot, on_error=None) -> Subscription:
        return self._watch("collection", collection, filters, on_snapshot, on_error)

    def watch_group(self, group, filters, on_snapshot, on_error=None) -> Subscription:
        return self._watch("group", group, filters, on_snapshot, on_error)

    @property
    def active_watchers(self) -> int:
        with self._lock:
            return len(self._watchers)

    def fail_watchers(self, target: str, message: str = "permission denied") -> int:
        """Deliver a SubscriptionError to every watcher on target, leaving them open."""
        with self._lock:
            affected = [w for w in self._watchers.values() if w.active and w.target == target]
        for watcher in affected:
            if watcher.on_error is None:
                continue
            try:
                watcher.on_error(SubscriptionError(message, target=target))
            except Exception:
                logger.exception("Error listener for %s %s raised", watcher.kind, watcher.target)
        return len(affected)


# ---------------------- Singleton ----------------------

_document_store: Optional[DocumentStore] = None


def get_document_store() -> DocumentStore:
    """Get singleton DocumentStore for the configured backend."""
    global _document_store
    if _document_store is None:
        backend = geo_setting("STORE_BACKEND")
        if backend == "redis":
            from .redis_store import RedisDocumentStore
            _document_store = RedisDocumentStore.from_url(geo_setting("REDIS_URL"))
        elif backend == "memory":
            _document_store = InMemoryDocumentStore()
        else:
            raise ValueError(f"Unknown GEO_CELLS STORE_BACKEND {backend!r}")
    return _document_store


def reset_document_store():
    global _document_store
    _document_store = None
