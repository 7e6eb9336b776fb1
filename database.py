"""
Document store access for the academy backend.

`db` is the module-level MongoDB handle built from DATABASE_URL / DATABASE_NAME.
`DocumentStore` wraps a database handle with the operations the rest of the
app consumes: live subscriptions, one-shot reads, whole-document writes and
batched multi-document writes. Subscribers receive a fresh snapshot after
every write committed through the store.
"""
import logging
import os
import threading
from typing import Any, Callable, Dict, List, Optional, Union

from bson import ObjectId
from pydantic import BaseModel
from pymongo import MongoClient
from pymongo.errors import PyMongoError

from errors import BackendError, NotFoundError, StaleDocumentError

logger = logging.getLogger(__name__)

DATABASE_URL = os.getenv("DATABASE_URL", "mongodb://localhost:27017")
DATABASE_NAME = os.getenv("DATABASE_NAME", "academy")

client = MongoClient(DATABASE_URL, connect=False)
db = client[DATABASE_NAME]

Snapshot = List[Dict[str, Any]]
Unsubscribe = Callable[[], None]


def new_id() -> str:
    return str(ObjectId())


def _as_dict(data: Union[BaseModel, Dict[str, Any]]) -> Dict[str, Any]:
    if isinstance(data, BaseModel):
        return data.model_dump(mode="json", by_alias=True)
    return dict(data)


class _Listener:
    def __init__(self, collection: str, callback: Callable, doc_id: Optional[str] = None, filter_dict: Optional[Dict[str, Any]] = None):
        self.collection = collection
        self.callback = callback
        self.doc_id = doc_id
        self.filter_dict = filter_dict or {}
        self.active = True


class WriteBatch:
    """Collects writes across collections and applies them in order on commit.

    Subscribers are notified once per touched collection after the last write.
    """

    def __init__(self, store: "DocumentStore"):
        self._store = store
        self._ops: List[tuple] = []

    def set(self, collection: str, doc_id: str, data: Union[BaseModel, Dict[str, Any]]) -> "WriteBatch":
        doc = _as_dict(data)
        doc.pop("id", None)
        doc["_id"] = doc_id
        if collection in self._store.versioned:
            doc.setdefault("version", 0)
        self._ops.append(("set", collection, doc_id, doc))
        return self

    def update(self, collection: str, doc_id: str, fields: Dict[str, Any]) -> "WriteBatch":
        update: Dict[str, Any] = {"$set": dict(fields)}
        if collection in self._store.versioned:
            update["$inc"] = {"version": 1}
        self._ops.append(("update", collection, doc_id, update))
        return self

    def delete(self, collection: str, doc_id: str) -> "WriteBatch":
        self._ops.append(("delete", collection, doc_id, None))
        return self

    def __len__(self):
        return len(self._ops)

    def commit(self) -> None:
        if not self._ops:
            return
        touched = []
        try:
            for kind, collection, doc_id, payload in self._ops:
                coll = self._store.db[collection]
                if kind == "set":
                    coll.replace_one({"_id": doc_id}, payload, upsert=True)
                elif kind == "update":
                    coll.update_one({"_id": doc_id}, payload)
                else:
                    coll.delete_one({"_id": doc_id})
                if collection not in touched:
                    touched.append(collection)
        except PyMongoError as e:
            logger.exception("Batch write failed after %d collections", len(touched))
            raise BackendError(str(e)) from e
        logger.debug("Committed batch of %d writes", len(self._ops))
        self._ops = []
        for collection in touched:
            self._store.notify(collection)


class DocumentStore:
    """Generic CRUD/subscribe operations over a MongoDB database handle.

    Collections named in `versioned` carry an integer `version` field that is
    bumped on every write and may be checked with `update(..., expected_version=)`.
    """

    def __init__(self, database, versioned=("classes",)):
        self.db = database
        self.versioned = set(versioned)
        self._listeners: List[_Listener] = []
        self._lock = threading.RLock()

    # Subscriptions

    def subscribe_collection(self, collection: str, callback: Callable[[Snapshot], None], filter_dict: Optional[Dict[str, Any]] = None) -> Unsubscribe:
        listener = _Listener(collection, callback, filter_dict=filter_dict)
        return self._register(listener)

    def subscribe_document(self, collection: str, doc_id: str, callback: Callable[[Optional[Dict[str, Any]]], None]) -> Unsubscribe:
        listener = _Listener(collection, callback, doc_id=doc_id)
        return self._register(listener)

    def _register(self, listener: _Listener) -> Unsubscribe:
        with self._lock:
            self._listeners.append(listener)
        self._deliver(listener)

        def unsubscribe():
            with self._lock:
                listener.active = False
                if listener in self._listeners:
                    self._listeners.remove(listener)
        return unsubscribe

    def _deliver(self, listener: _Listener) -> None:
        if listener.doc_id is not None:
            listener.callback(self.get(listener.collection, listener.doc_id))
        else:
            listener.callback(self.query(listener.collection, listener.filter_dict))

    def notify(self, collection: str) -> None:
        with self._lock:
            listeners = [l for l in self._listeners if l.collection == collection]
        for listener in listeners:
            # may have been unsubscribed by an earlier callback in this round
            if listener.active:
                self._deliver(listener)

    @property
    def listener_count(self) -> int:
        with self._lock:
            return len(self._listeners)

    # Reads

    def get(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        try:
            return self.db[collection].find_one({"_id": doc_id})
        except PyMongoError as e:
            logger.exception("Failed to read %s/%s", collection, doc_id)
            raise BackendError(str(e)) from e

    def query(self, collection: str, filter_dict: Optional[Dict[str, Any]] = None, limit: Optional[int] = None) -> Snapshot:
        try:
            cursor = self.db[collection].find(filter_dict or {})
            if limit:
                cursor = cursor.limit(limit)
            return list(cursor)
        except PyMongoError as e:
            logger.exception("Failed to query %s", collection)
            raise BackendError(str(e)) from e

    def is_empty(self, collection: str) -> bool:
        return not self.query(collection, limit=1)

    # Writes

    def create(self, collection: str, data: Union[BaseModel, Dict[str, Any]], doc_id: Optional[str] = None) -> str:
        doc = _as_dict(data)
        doc.pop("id", None)
        doc["_id"] = doc_id or new_id()
        if collection in self.versioned:
            doc.setdefault("version", 0)
        try:
            self.db[collection].insert_one(doc)
        except PyMongoError as e:
            logger.exception("Failed to create document in %s", collection)
            raise BackendError(str(e)) from e
        logger.debug("Created %s/%s", collection, doc["_id"])
        self.notify(collection)
        return doc["_id"]

    def set(self, collection: str, doc_id: str, data: Union[BaseModel, Dict[str, Any]], merge: bool = False) -> None:
        doc = _as_dict(data)
        doc.pop("id", None)
        doc.pop("_id", None)
        try:
            if merge:
                self.db[collection].update_one({"_id": doc_id}, {"$set": doc}, upsert=True)
            else:
                self.db[collection].replace_one({"_id": doc_id}, doc, upsert=True)
        except PyMongoError as e:
            logger.exception("Failed to write %s/%s", collection, doc_id)
            raise BackendError(str(e)) from e
        logger.debug("Set %s/%s (merge=%s)", collection, doc_id, merge)
        self.notify(collection)

    def update(self, collection: str, doc_id: str, fields: Dict[str, Any], expected_version: Optional[int] = None) -> None:
        query: Dict[str, Any] = {"_id": doc_id}
        update: Dict[str, Any] = {"$set": dict(fields)}
        if collection in self.versioned:
            update["$inc"] = {"version": 1}
            if expected_version is not None:
                query["version"] = expected_version
        try:
            result = self.db[collection].update_one(query, update)
        except PyMongoError as e:
            logger.exception("Failed to update %s/%s", collection, doc_id)
            raise BackendError(str(e)) from e
        if result.matched_count == 0:
            if expected_version is not None and self.get(collection, doc_id) is not None:
                logger.warning("Version conflict on %s/%s (expected %s)", collection, doc_id, expected_version)
                raise StaleDocumentError(collection, doc_id)
            raise NotFoundError(f"{collection}/{doc_id}")
        logger.debug("Updated %s/%s fields=%s", collection, doc_id, sorted(fields))
        self.notify(collection)

    def delete(self, collection: str, doc_id: str) -> bool:
        try:
            result = self.db[collection].delete_one({"_id": doc_id})
        except PyMongoError as e:
            logger.exception("Failed to delete %s/%s", collection, doc_id)
            raise BackendError(str(e)) from e
        logger.debug("Deleted %s/%s", collection, doc_id)
        self.notify(collection)
        return result.deleted_count > 0

    def batch(self) -> WriteBatch:
        return WriteBatch(self)

    def list_collection_names(self) -> List[str]:
        try:
            return self.db.list_collection_names()
        except PyMongoError as e:
            logger.exception("Failed to list collections of %s", self.name)
            raise BackendError(str(e)) from e

    @property
    def name(self) -> str:
        return getattr(self.db, "name", DATABASE_NAME)
