"""Document store used as the system of record and as the notification queue.

The store exposes the primitives the pipeline relies on from a managed
document database: get by id, full put, merge update, add with a generated id,
field queries, batched writes and change watchers. Writes are last-write-wins
per document.

Watchers are called after a write has been applied, with the document state
before and after the write. A failing watcher is logged and never affects the
writer.
"""
import copy
import logging
import threading
import uuid
from abc import ABC, abstractmethod
from collections import defaultdict
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from database import Base, SessionLocal
from error_handler import DependencyError
from models import Document

logger = logging.getLogger(__name__)

# (field, operator, value)
FieldFilter = Tuple[str, str, Any]
WatchCallback = Callable[[str, str, Optional[Dict[str, Any]], Optional[Dict[str, Any]]], None]

_OPERATORS = {
    "==": lambda a, b: a == b,
    "!=": lambda a, b: a != b,
    "<": lambda a, b: a is not None and a < b,
    "<=": lambda a, b: a is not None and a <= b,
    ">": lambda a, b: a is not None and a > b,
    ">=": lambda a, b: a is not None and a >= b,
    "in": lambda a, b: a in b,
}


@dataclass
class DocumentSnapshot:
    """A document id with a copy of its data."""
    id: str
    data: Dict[str, Any]


@dataclass
class WriteOp:
    kind: str  # "set" or "update"
    collection: str
    doc_id: str
    data: Dict[str, Any]


def matches(data: Dict[str, Any], filters: Iterable[FieldFilter]) -> bool:
    """Return True if a document satisfies every filter."""
    for field_name, operator, value in filters:
        compare = _OPERATORS.get(operator)
        if compare is None:
            raise ValueError(f"Unsupported query operator: {operator}")
        try:
            if not compare(data.get(field_name), value):
                return False
        except TypeError:
            # Mixed types never match a range filter
            return False
    return True


class WriteBatch:
    """Collects writes and applies them together on commit."""

    def __init__(self, store: "DocumentStore"):
        self._store = store
        self._ops: List[WriteOp] = []

    def set(self, collection: str, doc_id: str, data: Dict[str, Any]) -> "WriteBatch":
        self._ops.append(WriteOp("set", collection, doc_id, dict(data)))
        return self

    def update(self, collection: str, doc_id: str, fields: Dict[str, Any]) -> "WriteBatch":
        self._ops.append(WriteOp("update", collection, doc_id, dict(fields)))
        return self

    def __len__(self) -> int:
        return len(self._ops)

    def commit(self) -> None:
        if not self._ops:
            return
        changes = self._store._apply_batch(self._ops)
        self._ops = []
        for collection, doc_id, before, after in changes:
            self._store._notify(collection, doc_id, before, after)


class DocumentStore(ABC):
    """Abstract document store."""

    def __init__(self):
        self._watchers: Dict[str, List[WatchCallback]] = defaultdict(list)
        self._watch_lock = threading.Lock()

    @abstractmethod
    def get(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        """Return a copy of a document, or None if it does not exist."""

    @abstractmethod
    def query(
        self,
        collection: str,
        filters: Sequence[FieldFilter] = (),
        limit: Optional[int] = None,
    ) -> List[DocumentSnapshot]:
        """Return documents matching every filter."""

    @abstractmethod
    def _apply_batch(
        self, ops: Sequence[WriteOp]
    ) -> List[Tuple[str, str, Optional[Dict[str, Any]], Dict[str, Any]]]:
        """Apply writes atomically and return (collection, id, before, after) per op."""

    def put(self, collection: str, doc_id: str, data: Dict[str, Any]) -> None:
        """Create or replace a document."""
        self.batch().set(collection, doc_id, data).commit()

    def update(self, collection: str, doc_id: str, fields: Dict[str, Any]) -> None:
        """Merge fields into a document, creating it if missing."""
        self.batch().update(collection, doc_id, fields).commit()

    def add(self, collection: str, data: Dict[str, Any]) -> str:
        """Create a document with a generated id and return the id."""
        doc_id = uuid.uuid4().hex
        self.put(collection, doc_id, data)
        return doc_id

    def batch(self) -> WriteBatch:
        return WriteBatch(self)

    def watch(self, collection: str, callback: WatchCallback) -> Callable[[], None]:
        """
        Register a change watcher on a collection.

        Args:
            collection: Collection name
            callback: Called as callback(collection, doc_id, before, after)

        Returns:
            A function that removes the watcher
        """
        with self._watch_lock:
            self._watchers[collection].append(callback)

        def unsubscribe():
            with self._watch_lock:
                if callback in self._watchers[collection]:
                    self._watchers[collection].remove(callback)

        return unsubscribe

    def _notify(
        self,
        collection: str,
        doc_id: str,
        before: Optional[Dict[str, Any]],
        after: Optional[Dict[str, Any]],
    ) -> None:
        with self._watch_lock:
            callbacks = list(self._watchers.get(collection, ()))
        for callback in callbacks:
            try:
                callback(collection, doc_id, copy.deepcopy(before), copy.deepcopy(after))
            except Exception as e:
                logger.error(
                    f"Watcher {getattr(callback, '__name__', callback)} failed for "
                    f"{collection}/{doc_id}: {e}",
                    exc_info=True,
                )

    def close(self) -> None:
        """Release backend resources."""


class MemoryDocumentStore(DocumentStore):
    """Thread-safe in-process store. State is lost on restart."""

    def __init__(self):
        super().__init__()
        self._data: Dict[str, Dict[str, Dict[str, Any]]] = defaultdict(dict)
        self._lock = threading.RLock()

    def get(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            doc = self._data[collection].get(doc_id)
            return copy.deepcopy(doc) if doc is not None else None

    def query(
        self,
        collection: str,
        filters: Sequence[FieldFilter] = (),
        limit: Optional[int] = None,
    ) -> List[DocumentSnapshot]:
        with self._lock:
            results = []
            for doc_id, data in self._data[collection].items():
                if matches(data, filters):
                    results.append(DocumentSnapshot(doc_id, copy.deepcopy(data)))
                    if limit is not None and len(results) >= limit:
                        break
            return results

    def _apply_batch(self, ops):
        changes = []
        with self._lock:
            for op in ops:
                docs = self._data[op.collection]
                before = docs.get(op.doc_id)
                if op.kind == "update" and before is not None:
                    after = {**before, **copy.deepcopy(op.data)}
                else:
                    after = copy.deepcopy(op.data)
                docs[op.doc_id] = after
                changes.append((op.collection, op.doc_id, before, copy.deepcopy(after)))
        return changes


class SqlDocumentStore(DocumentStore):
    """Store backed by the ``documents`` table through SQLAlchemy."""

    def __init__(self, session_factory: Optional[sessionmaker] = None, create_tables: bool = True):
        super().__init__()
        self._session_factory = session_factory or SessionLocal
        if create_tables:
            try:
                Base.metadata.create_all(bind=self._session_factory.kw["bind"])
                logger.info("Document tables created/verified")
            except SQLAlchemyError as e:
                raise DependencyError(f"Document store unavailable: {e}") from e

    def get(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        db = self._session_factory()
        try:
            row = db.get(Document, (collection, doc_id))
            return copy.deepcopy(row.data) if row is not None else None
        except SQLAlchemyError as e:
            logger.error(f"Failed to read {collection}/{doc_id}: {e}")
            raise DependencyError(f"Document store unavailable: {e}") from e
        finally:
            db.close()

    def statement(self, collection: str, filters: Sequence[FieldFilter] = ()):
        """
        SELECT for a collection with string and boolean equality filters pushed into SQL.

        The remaining filters, and the exact semantics of the pushed ones, are
        applied in Python by ``query``.
        """
        stmt = select(Document).where(Document.collection == collection)
        for field_name, operator, value in filters:
            if operator != "==":
                continue
            if isinstance(value, bool):
                stmt = stmt.where(Document.data[field_name].as_boolean() == value)
            elif isinstance(value, str):
                stmt = stmt.where(Document.data[field_name].as_string() == value)
        return stmt.order_by(Document.created_at)

    def query(
        self,
        collection: str,
        filters: Sequence[FieldFilter] = (),
        limit: Optional[int] = None,
    ) -> List[DocumentSnapshot]:
        db = self._session_factory()
        try:
            rows = db.execute(self.statement(collection, filters)).scalars()
            results = []
            for row in rows:
                if matches(row.data or {}, filters):
                    results.append(DocumentSnapshot(row.doc_id, copy.deepcopy(row.data)))
                    if limit is not None and len(results) >= limit:
                        break
            return results
        except SQLAlchemyError as e:
            logger.error(f"Failed to query {collection}: {e}")
            raise DependencyError(f"Document store unavailable: {e}") from e
        finally:
            db.close()

    def _apply_batch(self, ops):
        changes = []
        db = self._session_factory()
        try:
            for op in ops:
                row = db.get(Document, (op.collection, op.doc_id))
                before = copy.deepcopy(row.data) if row is not None else None
                if op.kind == "update" and before is not None:
                    after = {**before, **op.data}
                else:
                    after = dict(op.data)
                if row is None:
                    row = Document(collection=op.collection, doc_id=op.doc_id, data=after)
                    db.add(row)
                    db.flush()
                else:
                    # Assign a new object so the JSON column is flagged dirty
                    row.data = copy.deepcopy(after)
                changes.append((op.collection, op.doc_id, before, copy.deepcopy(after)))
            db.commit()
            return changes
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Failed to apply {len(ops)} document write(s): {e}")
            raise DependencyError(f"Document store unavailable: {e}") from e
        finally:
            db.close()


def create_document_store(backend: str, session_factory: Optional[sessionmaker] = None) -> DocumentStore:
    """Build the configured store backend."""
    if backend == "memory":
        logger.warning("Using in-memory document store; data is lost on restart")
        return MemoryDocumentStore()
    if backend == "sql":
        return SqlDocumentStore(session_factory=session_factory)
    raise ValueError(f"Unknown store backend: {backend}")
