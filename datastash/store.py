"""
Document storage for recipes, runs and snapshots.

Documents are addressed by (type, id) and carry a revision token. Writes to
an existing document must present its current revision; a stale or missing
revision raises Conflict instead of overwriting.

Logical layout:
    system/recipe          the recipe (singleton)
    run/<timestamp>        one document per run
    data/<run id>          snapshot header of a successful run
    data/<run id>/<index>  snapshot rows, as an ordered child collection
"""

import copy
import json
import logging
import sqlite3
import threading
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Dict, List, Any, Tuple

from datastash.errors import Conflict, NotFound, StorageUnavailable

logger = logging.getLogger(__name__)


@dataclass
class Stored:
    """Identity and new revision of a written document."""
    id: str
    revision: str


def _next_revision(revision: Optional[str]) -> str:
    generation = int(revision.split('-', 1)[0]) if revision else 0
    return f"{generation + 1}-{uuid.uuid4().hex}"


class DocumentStore:
    """
    Contract for a keyed document store.

    Returned documents are plain dicts holding the stored data plus `id`
    and `revision` keys.
    """

    def put(self, type: str, id: str, data: Dict[str, Any],
            revision: Optional[str] = None) -> Stored:
        """
        Create or update a document.

        Args:
            type: Document type (namespace)
            id: Document id within the type
            data: JSON-serializable body
            revision: Current revision when updating; None when creating

        Returns:
            Stored with the new revision

        Raises:
            Conflict: If the document exists and revision doesn't match
        """
        raise NotImplementedError

    def put_many(self, type: str, items: List[Tuple[str, Dict[str, Any]]]) -> None:
        """Create several documents of one type."""
        for id, data in items:
            self.put(type, id, data)

    def get(self, type: str, id: str) -> Dict[str, Any]:
        """
        Fetch a document.

        Raises:
            NotFound: If the document does not exist
        """
        raise NotImplementedError

    def list_by_type(self, type: str) -> List[Dict[str, Any]]:
        """All documents of a type, newest first by id."""
        raise NotImplementedError

    def delete(self, type: str, id: str) -> None:
        """
        Delete a document.

        Raises:
            NotFound: If the document does not exist
        """
        raise NotImplementedError

    def close(self):
        pass


class MemoryDocumentStore(DocumentStore):
    """In-process store, used for tests and embedding."""

    def __init__(self):
        self._documents: Dict[Tuple[str, str], Tuple[str, Dict[str, Any]]] = {}
        self._lock = threading.RLock()

    def put(self, type, id, data, revision=None):
        with self._lock:
            existing = self._documents.get((type, id))
            current = existing[0] if existing else None
            if current != revision:
                raise Conflict(type, id, revision)
            new_revision = _next_revision(current)
            self._documents[(type, id)] = (new_revision, copy.deepcopy(data))
            return Stored(id=id, revision=new_revision)

    def get(self, type, id):
        with self._lock:
            if (type, id) not in self._documents:
                raise NotFound(type, id)
            revision, data = self._documents[(type, id)]
            return dict(copy.deepcopy(data), id=id, revision=revision)

    def list_by_type(self, type):
        with self._lock:
            ids = sorted((i for t, i in self._documents if t == type), reverse=True)
            return [self.get(type, i) for i in ids]

    def delete(self, type, id):
        with self._lock:
            if (type, id) not in self._documents:
                raise NotFound(type, id)
            del self._documents[(type, id)]


class SQLiteDocumentStore(DocumentStore):
    """
    Store backed by a single SQLite table.

    The connection is shared between the worker thread and callers, so all
    access is serialized through a lock.
    """

    def __init__(self, db_path: Path):
        """
        Open (and create if needed) the store.

        Args:
            db_path: Path to the SQLite database file
        """
        self.db_path = Path(db_path)
        self._lock = threading.RLock()
        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            self.conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
            self._create_tables()
        except (sqlite3.Error, OSError) as e:
            raise StorageUnavailable(f"Cannot open {self.db_path}: {e}") from e
        logger.info(f"Opened document store: {self.db_path}")

    def _create_tables(self):
        """Create database tables if they don't exist"""
        self.conn.execute("""
            CREATE TABLE IF NOT EXISTS documents (
                type TEXT NOT NULL,
                id TEXT NOT NULL,
                revision TEXT NOT NULL,
                data TEXT NOT NULL,
                PRIMARY KEY (type, id)
            )
        """)
        self.conn.commit()

    def _current_revision(self, type: str, id: str) -> Optional[str]:
        cursor = self.conn.execute(
            "SELECT revision FROM documents WHERE type = ? AND id = ?",
            (type, id)
        )
        row = cursor.fetchone()
        return row[0] if row else None

    def put(self, type, id, data, revision=None):
        with self._lock:
            try:
                current = self._current_revision(type, id)
                if current != revision:
                    raise Conflict(type, id, revision)
                new_revision = _next_revision(current)
                self.conn.execute(
                    "INSERT OR REPLACE INTO documents (type, id, revision, data) VALUES (?, ?, ?, ?)",
                    (type, id, new_revision, json.dumps(data))
                )
                self.conn.commit()
                return Stored(id=id, revision=new_revision)
            except sqlite3.Error as e:
                raise StorageUnavailable(str(e)) from e

    def put_many(self, type, items):
        with self._lock:
            try:
                self.conn.executemany(
                    "INSERT INTO documents (type, id, revision, data) VALUES (?, ?, ?, ?)",
                    [(type, id, _next_revision(None), json.dumps(data)) for id, data in items]
                )
                self.conn.commit()
            except sqlite3.IntegrityError as e:
                self.conn.rollback()
                raise Conflict(type, '*') from e
            except sqlite3.Error as e:
                raise StorageUnavailable(str(e)) from e

    def get(self, type, id):
        with self._lock:
            try:
                cursor = self.conn.execute(
                    "SELECT revision, data FROM documents WHERE type = ? AND id = ?",
                    (type, id)
                )
                row = cursor.fetchone()
            except sqlite3.Error as e:
                raise StorageUnavailable(str(e)) from e
        if row is None:
            raise NotFound(type, id)
        return dict(json.loads(row[1]), id=id, revision=row[0])

    def list_by_type(self, type):
        with self._lock:
            try:
                cursor = self.conn.execute(
                    "SELECT id, revision, data FROM documents WHERE type = ? ORDER BY id DESC",
                    (type,)
                )
                rows = cursor.fetchall()
            except sqlite3.Error as e:
                raise StorageUnavailable(str(e)) from e
        return [dict(json.loads(data), id=id, revision=revision) for id, revision, data in rows]

    def delete(self, type, id):
        with self._lock:
            try:
                cursor = self.conn.execute(
                    "DELETE FROM documents WHERE type = ? AND id = ?",
                    (type, id)
                )
                self.conn.commit()
            except sqlite3.Error as e:
                raise StorageUnavailable(str(e)) from e
        if cursor.rowcount == 0:
            raise NotFound(type, id)

    def close(self):
        """Close database connection"""
        with self._lock:
            self.conn.close()


def add_unique(store: DocumentStore, type: str, id: str, data: Dict[str, Any],
               max_attempts: int = 100) -> Stored:
    """
    Create a document, adding a numeric suffix on id collisions.

    '2024-01-01T00:00:00.000000Z' becomes '...Z-001', then '...Z-002' and so on.
    The suffix is zero-padded so suffixed ids still sort in creation order.
    """
    for attempt in range(max_attempts):
        candidate = f"{id}-{attempt:03d}" if attempt else id
        try:
            return store.put(type, candidate, data)
        except Conflict:
            logger.debug(f"{type}/{candidate} exists, retrying")
    raise Conflict(type, id)


class ChildCollection:
    """
    Ordered child records of one parent document.

    Children are stored as type '<type>/<id>' with zero-padded index ids,
    so they sort in insertion order and never mix with the parent type's
    own listing.
    """

    def __init__(self, store: DocumentStore, type: str, id: str):
        self.store = store
        self.type = f"{type}/{id}"

    def replace(self, items: List[Dict[str, Any]]):
        """Replace all children with items, in order."""
        self.clear()
        # wrapped so an item's own 'id' or 'revision' keys survive
        self.store.put_many(self.type, [(f"{i:08d}", {'item': item}) for i, item in enumerate(items)])

    def items(self) -> List[Dict[str, Any]]:
        """Children in insertion order."""
        return [doc['item'] for doc in reversed(self.store.list_by_type(self.type))]

    def clear(self):
        for doc in self.store.list_by_type(self.type):
            self.store.delete(self.type, doc['id'])
