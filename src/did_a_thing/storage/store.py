"""File-backed embedded object store with multi-collection atomic units.

All collections live in a single YAML document (``store.yaml``) inside the
state directory.  Every read or write goes through :meth:`EntityStore.transaction`,
which takes the in-process lock plus an exclusive file lock, loads the document,
yields a :class:`StoreTransaction` and writes the document back atomically
(temp file then rename) only if the body finished without raising.  A body that
raises leaves the file untouched, so an atomic unit is all-or-nothing.

The store knows nothing about tasks or phases beyond the collection and index
declarations in :mod:`.schema`; business rules belong to the caller.
"""

from __future__ import annotations

import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Iterable, Iterator, Optional, TypeVar

import yaml
from loguru import logger

from ..constants import STORE_FILE, STORE_LOCK_FILE
from ..errors import NotFound, StorageFailure
from ..io_utils import FileLock, _atomic_write_yaml
from .bootstrap import upgrade_document
from .schema import COLLECTION_INDEXES, KEY_PATH

T = TypeVar("T")

Record = dict[str, Any]


@contextmanager
def _io_errors(action: str) -> Iterator[None]:
    try:
        yield
    except (OSError, yaml.YAMLError) as exc:
        logger.error("Store failed to {}: {}", action, exc)
        raise StorageFailure(f"Failed to {action}: {exc}") from exc


def _normalize_key(key: Any) -> tuple:
    if isinstance(key, (tuple, list)):
        return tuple(key)
    return (key,)


class _Collection:
    """In-memory view of one collection for the lifetime of a transaction."""

    def __init__(self, name: str, raw: dict[str, Any]) -> None:
        self.name = name
        self.raw = raw
        self.rows: dict[int, Record] = {}
        for item in raw.get("records") or []:
            if isinstance(item, dict) and item.get(KEY_PATH) is not None:
                self.rows[int(item[KEY_PATH])] = dict(item)
        self.next_id = int(raw.get("next_id") or 1)
        self.indexes: dict[str, list[str]] = {
            idx: list(fields) for idx, fields in (raw.get("indexes") or {}).items()
        }
        self._index_cache: dict[str, dict[tuple, list[int]]] = {}

    def index(self, index_name: str) -> dict[tuple, list[int]]:
        fields = self.indexes.get(index_name)
        if fields is None:
            raise StorageFailure(f"Collection '{self.name}' has no index '{index_name}'")
        cached = self._index_cache.get(index_name)
        if cached is None:
            cached = {}
            for record_id in sorted(self.rows):
                row = self.rows[record_id]
                cached.setdefault(tuple(row.get(f) for f in fields), []).append(record_id)
            self._index_cache[index_name] = cached
        return cached

    def invalidate(self) -> None:
        self._index_cache.clear()

    def dump(self) -> dict[str, Any]:
        self.raw["records"] = [dict(row) for row in self.rows.values()]
        self.raw["next_id"] = self.next_id
        return self.raw


class CollectionView:
    """Operations on one collection inside a transaction."""

    def __init__(self, tx: "StoreTransaction", coll: _Collection) -> None:
        self._tx = tx
        self._coll = coll

    @property
    def name(self) -> str:
        return self._coll.name

    def _writable(self) -> None:
        if self._tx.readonly:
            raise StorageFailure(f"Cannot write to '{self.name}' in a read-only transaction")

    # -- reads ---------------------------------------------------------------

    def get(self, record_id: int) -> Optional[Record]:
        row = self._coll.rows.get(int(record_id))
        return dict(row) if row is not None else None

    def require(self, record_id: int) -> Record:
        row = self.get(record_id)
        if row is None:
            raise NotFound(self.name, record_id)
        return row

    def get_all(self) -> list[Record]:
        return [dict(row) for row in self._coll.rows.values()]

    def get_all_keys_by_index(self, index_name: str, key: Any) -> list[int]:
        return list(self._coll.index(index_name).get(_normalize_key(key), []))

    def get_all_by_index(self, index_name: str, key: Any) -> list[Record]:
        return [dict(self._coll.rows[rid]) for rid in self.get_all_keys_by_index(index_name, key)]

    def count(self) -> int:
        return len(self._coll.rows)

    # -- writes --------------------------------------------------------------

    def add(self, record: Record) -> Record:
        """Insert *record*, assigning an id when it has none."""
        self._writable()
        row = dict(record)
        raw_id = row.get(KEY_PATH)
        if raw_id is None:
            record_id = self._coll.next_id
        else:
            record_id = int(raw_id)
            if record_id in self._coll.rows:
                raise StorageFailure(f"{self.name} record {record_id} already exists")
        row[KEY_PATH] = record_id
        self._coll.next_id = max(self._coll.next_id, record_id + 1)
        self._coll.rows[record_id] = row
        self._coll.invalidate()
        self._tx.dirty = True
        return dict(row)

    def put(self, record: Record) -> Record:
        """Fully replace an existing record."""
        self._writable()
        raw_id = record.get(KEY_PATH)
        if raw_id is None:
            raise StorageFailure(f"Cannot put a {self.name} record without an id")
        record_id = int(raw_id)
        if record_id not in self._coll.rows:
            raise NotFound(self.name, record_id)
        row = dict(record)
        row[KEY_PATH] = record_id
        self._coll.rows[record_id] = row
        self._coll.invalidate()
        self._tx.dirty = True
        return dict(row)

    def delete(self, record_id: int) -> bool:
        self._writable()
        if self._coll.rows.pop(int(record_id), None) is None:
            return False
        self._coll.invalidate()
        self._tx.dirty = True
        return True

    def clear(self) -> int:
        """Remove every record; the id sequence keeps counting."""
        self._writable()
        removed = len(self._coll.rows)
        if removed:
            self._coll.rows.clear()
            self._coll.invalidate()
            self._tx.dirty = True
        return removed


class StoreTransaction:
    """An atomic unit over a declared set of collections."""

    def __init__(self, document: dict[str, Any], scope: Iterable[str], *, readonly: bool = False) -> None:
        self._document = document
        self.scope = frozenset(scope)
        self.readonly = readonly
        self.dirty = False
        self._collections: dict[str, _Collection] = {}

    def collection(self, name: str) -> CollectionView:
        if name not in self.scope:
            raise StorageFailure(f"Collection '{name}' is not part of this transaction")
        coll = self._collections.get(name)
        if coll is None:
            coll = _Collection(name, self._document["collections"][name])
            self._collections[name] = coll
        return CollectionView(self, coll)

    def __getitem__(self, name: str) -> CollectionView:
        return self.collection(name)

    def dump(self) -> dict[str, Any]:
        for coll in self._collections.values():
            coll.dump()
        return self._document


class EntityStore:
    """Process-wide handle on the store file of one state directory.

    Parameters
    ----------
    state_dir:
        Directory holding ``store.yaml`` and its lock file.
    """

    def __init__(self, state_dir: Path) -> None:
        self.state_dir = state_dir
        self.path = state_dir / STORE_FILE
        self._lock = FileLock(state_dir / STORE_LOCK_FILE)
        self._thread_lock = threading.RLock()
        self._opened = False
        self._active = False

    # -- lifecycle -----------------------------------------------------------

    @property
    def is_open(self) -> bool:
        return self._opened

    def open(self) -> "EntityStore":
        """Create or upgrade the store file.  Safe to call repeatedly."""
        with self._thread_lock:
            if self._active:
                raise StorageFailure("Cannot open the store inside a transaction")
            with _io_errors("acquire store lock"):
                self._lock.acquire()
            try:
                with _io_errors("read store"):
                    raw = self._read_raw()
                document, changed = upgrade_document(raw)
                if changed:
                    with _io_errors("write store"):
                        _atomic_write_yaml(self.path, document)
                    logger.debug("Initialized store schema at {}", self.path)
            finally:
                self._lock.release()
            self._opened = True
        return self

    def close(self) -> None:
        with self._thread_lock:
            self._opened = False

    def wipe(self) -> None:
        """Release the handle, then delete the store files."""
        with self._thread_lock:
            if self._active:
                raise StorageFailure("Cannot wipe the store inside a transaction")
            self.close()
            with _io_errors("delete store"):
                for path in (self.path, self.path.with_suffix(self.path.suffix + ".tmp"), self._lock.lock_path):
                    path.unlink(missing_ok=True)
        logger.info("Wiped store at {}", self.path)

    def _ensure_open(self) -> None:
        if not self._opened:
            raise StorageFailure("Store is not open")

    def _read_raw(self) -> Any:
        if not self.path.exists():
            return None
        return yaml.safe_load(self.path.read_text(encoding="utf-8"))

    @staticmethod
    def _scope(collections: Iterable[str]) -> list[str]:
        names = list(collections)
        if not names:
            raise StorageFailure("A transaction needs at least one collection")
        for name in names:
            if name not in COLLECTION_INDEXES:
                raise StorageFailure(f"Unknown collection '{name}'")
        return names

    # -- atomic units --------------------------------------------------------

    @contextmanager
    def transaction(self, *collections: str, readonly: bool = False) -> Iterator[StoreTransaction]:
        """Run a block of reads/writes over *collections* as one unit.

        Usage::

            with store.transaction("tasks", "phases") as tx:
                task = tx["tasks"].add({"title": "Laundry"})
                tx["phases"].add({"task_id": task["id"], "index": 0, "name": "Washing"})
        """
        scope = self._scope(collections)
        with self._thread_lock:
            self._ensure_open()
            if self._active:
                raise StorageFailure("Nested store transactions are not supported")
            with _io_errors("acquire store lock"):
                self._lock.acquire()
            self._active = True
            try:
                with _io_errors("read store"):
                    raw = self._read_raw()
                document, _ = upgrade_document(raw)
                tx = StoreTransaction(document, scope, readonly=readonly)
                yield tx
                if tx.dirty:
                    with _io_errors("write store"):
                        _atomic_write_yaml(self.path, tx.dump())
            finally:
                self._active = False
                self._lock.release()

    def run_atomic(self, collections: Iterable[str], fn: Callable[[StoreTransaction], T], *, readonly: bool = False) -> T:
        with self.transaction(*collections, readonly=readonly) as tx:
            return fn(tx)

    # -- single-collection shortcuts -----------------------------------------

    def add(self, collection: str, record: Record) -> Record:
        with self.transaction(collection) as tx:
            return tx[collection].add(record)

    def get(self, collection: str, record_id: int) -> Optional[Record]:
        with self.transaction(collection, readonly=True) as tx:
            return tx[collection].get(record_id)

    def require(self, collection: str, record_id: int) -> Record:
        with self.transaction(collection, readonly=True) as tx:
            return tx[collection].require(record_id)

    def get_all(self, collection: str) -> list[Record]:
        with self.transaction(collection, readonly=True) as tx:
            return tx[collection].get_all()

    def get_all_by_index(self, collection: str, index_name: str, key: Any) -> list[Record]:
        with self.transaction(collection, readonly=True) as tx:
            return tx[collection].get_all_by_index(index_name, key)

    def put(self, collection: str, record: Record) -> Record:
        with self.transaction(collection) as tx:
            return tx[collection].put(record)

    def delete(self, collection: str, record_id: int) -> bool:
        with self.transaction(collection) as tx:
            return tx[collection].delete(record_id)
