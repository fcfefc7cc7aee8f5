"""
Redis-backed document store.

Architecture:
- Each document is a JSON string under doc:{path}
- Collection and collection-group membership is tracked in Redis SETs
- expiresAt maps to EXPIREAT on the document key, so Redis itself is the reaper
- Every write publishes on the document, collection and group channels;
  subscribers re-read their query and receive the full result list

Index entries that outlive their (expired) document are dropped lazily on
read and by purge_expired().
"""

from __future__ import annotations

import json
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

import redis
from django.utils import timezone

from .exceptions import DocumentNotFound, StoreUnavailable, SubscriptionError
from .store import (
    DocumentSnapshot,
    DocumentStore,
    Filter,
    group_of,
    matches_filters,
    resolve_server_values,
    split_path,
    validate_filters,
)
from .streams import Subscription

logger = logging.getLogger(__name__)

_DATETIME_TAG = "__datetime__"


# ---------------------- Encoding ----------------------

def _encode_default(value):
    if isinstance(value, datetime):
        return {_DATETIME_TAG: value.isoformat()}
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def _decode_hook(obj):
    if len(obj) == 1 and _DATETIME_TAG in obj:
        return datetime.fromisoformat(obj[_DATETIME_TAG])
    return obj


def encode_document(data: Dict[str, Any]) -> str:
    return json.dumps(data, default=_encode_default, sort_keys=True)


def decode_document(raw: Optional[str]) -> Optional[Dict[str, Any]]:
    if raw is None:
        return None
    return json.loads(raw, object_hook=_decode_hook)


# ---------------------- Store ----------------------

class RedisDocumentStore(DocumentStore):
    """Document store on top of plain Redis keys, SETs and pub/sub."""

    def __init__(self, redis_client: redis.Redis, prefix: str = "geocells:", clock=None):
        self._redis = redis_client
        self._prefix = prefix
        self._clock = clock or timezone.now

    @classmethod
    def from_url(cls, url: str, **kwargs) -> "RedisDocumentStore":
        return cls(redis.Redis.from_url(url, decode_responses=True), **kwargs)

    def now(self) -> datetime:
        return self._clock()

    # -- key names --

    def _doc_key(self, path: str) -> str:
        return f"{self._prefix}doc:{path}"

    def _collection_key(self, collection: str) -> str:
        return f"{self._prefix}col:{collection}"

    def _group_key(self, group: str) -> str:
        return f"{self._prefix}group:{group}"

    def _document_channel(self, path: str) -> str:
        return f"{self._prefix}changes:doc:{path}"

    def _collection_channel(self, collection: str) -> str:
        return f"{self._prefix}changes:col:{collection}"

    def _group_channel(self, group: str) -> str:
        return f"{self._prefix}changes:group:{group}"

    def _channels_for(self, path: str) -> List[str]:
        collection = split_path(path)[0]
        return [
            self._document_channel(path),
            self._collection_channel(collection),
            self._group_channel(group_of(collection)),
        ]

    # -- reads --

    def get(self, path: str) -> DocumentSnapshot:
        try:
            raw = self._redis.get(self._doc_key(path))
        except redis.RedisError as e:
            raise StoreUnavailable(f"get {path}: {e}") from e
        return DocumentSnapshot(path, decode_document(raw))

    def _load(self, paths: List[str], index_key: str, members: List[str], filters) -> List[DocumentSnapshot]:
        if not paths:
            return []
        raws = self._redis.mget([self._doc_key(p) for p in paths])
        results = []
        dangling = []
        for path, member, raw in zip(paths, members, raws):
            if raw is None:
                dangling.append(member)
                continue
            data = decode_document(raw)
            if matches_filters(data, filters):
                results.append(DocumentSnapshot(path, data))
        if dangling:
            self._redis.srem(index_key, *dangling)
        return sorted(results, key=lambda snap: snap.path)

    def query(self, collection: str, filters: Optional[Sequence[Filter]] = None) -> List[DocumentSnapshot]:
        checked = validate_filters(filters)
        index_key = self._collection_key(collection)
        try:
            members = sorted(self._redis.smembers(index_key))
            paths = [f"{collection}/{doc_id}" for doc_id in members]
            return self._load(paths, index_key, members, checked)
        except redis.RedisError as e:
            raise StoreUnavailable(f"query {collection}: {e}") from e

    def query_group(self, group: str, filters: Optional[Sequence[Filter]] = None) -> List[DocumentSnapshot]:
        checked = validate_filters(filters)
        index_key = self._group_key(group)
        try:
            members = sorted(self._redis.smembers(index_key))
            return self._load(members, index_key, members, checked)
        except redis.RedisError as e:
            raise StoreUnavailable(f"query group {group}: {e}") from e

    # -- writes --

    def _write(self, path: str, data: Dict[str, Any]):
        collection, doc_id = split_path(path)
        doc_key = self._doc_key(path)
        pipe = self._redis.pipeline()
        pipe.set(doc_key, encode_document(data))
        expires_at = data.get("expiresAt")
        if isinstance(expires_at, datetime):
            pipe.expireat(doc_key, int(expires_at.timestamp()))
        pipe.sadd(self._collection_key(collection), doc_id)
        pipe.sadd(self._group_key(group_of(collection)), path)
        for channel in self._channels_for(path):
            pipe.publish(channel, path)
        pipe.execute()

    def set(self, path: str, data: Dict[str, Any], merge: bool = False) -> None:
        resolved = resolve_server_values(data, self.now())
        try:
            if merge:
                existing = decode_document(self._redis.get(self._doc_key(path)))
                if existing is not None:
                    resolved = {**existing, **resolved}
            self._write(path, resolved)
        except redis.RedisError as e:
            raise StoreUnavailable(f"set {path}: {e}") from e

    def update(self, path: str, fields: Dict[str, Any]) -> None:
        try:
            existing = decode_document(self._redis.get(self._doc_key(path)))
            if existing is None:
                raise DocumentNotFound(path)
            self._write(path, {**existing, **resolve_server_values(fields, self.now())})
        except redis.RedisError as e:
            raise StoreUnavailable(f"update {path}: {e}") from e

    def delete(self, path: str) -> None:
        collection, doc_id = split_path(path)
        try:
            pipe = self._redis.pipeline()
            pipe.delete(self._doc_key(path))
            pipe.srem(self._collection_key(collection), doc_id)
            pipe.srem(self._group_key(group_of(collection)), path)
            for channel in self._channels_for(path):
                pipe.publish(channel, path)
            pipe.execute()
        except redis.RedisError as e:
            raise StoreUnavailable(f"delete {path}: {e}") from e

    def purge_expired(self, now: Optional[datetime] = None) -> int:
        """
        Drop group index entries whose document key Redis already expired,
        and notify subscribers of those documents.
        """
        purged = 0
        try:
            for group_key in self._redis.scan_iter(f"{self._prefix}group:*", count=100):
                paths = sorted(self._redis.smembers(group_key))
                if not paths:
                    continue
                exists = self._redis.mget([self._doc_key(p) for p in paths])
                for path, raw in zip(paths, exists):
                    if raw is not None:
                        continue
                    collection, doc_id = split_path(path)
                    pipe = self._redis.pipeline()
                    pipe.srem(group_key, path)
                    pipe.srem(self._collection_key(collection), doc_id)
                    for channel in self._channels_for(path):
                        pipe.publish(channel, path)
                    pipe.execute()
                    purged += 1
        except redis.RedisError as e:
            raise StoreUnavailable(f"purge_expired: {e}") from e
        if purged:
            logger.info("Pruned %s expired document index entries", purged)
        return purged

    # -- subscriptions --

    def _watch(self, channel: str, target: str, read, on_snapshot, on_error) -> Subscription:
        def _report(error: Exception):
            logger.warning("Subscription on %s failed: %s", target, error)
            if on_error is not None:
                on_error(SubscriptionError(str(error), target=target))

        def _deliver():
            try:
                payload = read()
            except StoreUnavailable as e:
                _report(e)
                return
            try:
                on_snapshot(payload)
            except Exception:
                logger.exception("Snapshot listener for %s raised", target)

        def _handler(message):
            _deliver()

        def _exception_handler(ex, pubsub, thread):
            _report(ex)

        pubsub = self._redis.pubsub(ignore_subscribe_messages=True)
        try:
            pubsub.subscribe(**{channel: _handler})
            thread = pubsub.run_in_thread(
                sleep_time=0.1, daemon=True, exception_handler=_exception_handler
            )
        except redis.RedisError as e:
            pubsub.close()
            raise StoreUnavailable(f"subscribe {target}: {e}") from e

        def _cancel():
            thread.stop()
            pubsub.close()

        subscription = Subscription(_cancel)
        _deliver()
        return subscription

    def watch_document(self, path, on_snapshot, on_error=None) -> Subscription:
        return self._watch(
            self._document_channel(path), path, lambda: self.get(path), on_snapshot, on_error
        )

    def watch_collection(self, collection, filters, on_snapshot, on_error=None) -> Subscription:
        checked = validate_filters(filters)
        return self._watch(
            self._collection_channel(collection),
            collection,
            lambda: self.query(collection, checked),
            on_snapshot,
            on_error,
        )

    def watch_group(self, group, filters, on_snapshot, on_error=None) -> Subscription:
        checked = validate_filters(filters)
        return self._watch(
            self._group_channel(group),
            group,
            lambda: self.query_group(group, checked),
            on_snapshot,
            on_error,
        )
