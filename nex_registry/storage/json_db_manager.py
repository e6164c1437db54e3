import json
import logging
import os
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple

from nex_registry.domain.models import AuthenticationStore, RepositoryConfig
from nex_registry.storage.db_manager import (
    DatabaseManager,
    Document,
    DuplicateKeyError,
    StorageError,
)
from nex_registry.storage.query import (
    apply_projection,
    get_path,
    matches,
    run_pipeline,
    sort_documents,
)

logger = logging.getLogger(__name__)


class _RecordLock:
    __slots__ = ("lock", "holders")

    def __init__(self) -> None:
        self.lock = threading.RLock()
        self.holders = 0


class JsonDatabaseManager(DatabaseManager):
    """
    Document store keeping one JSON array per collection under
    ``<data_dir>/collections``. Collections are held in memory and every
    write replaces the collection file atomically.
    """

    def __init__(self, data_dir: Path):
        self._data_dir = data_dir
        self._collections: Dict[str, List[Document]] = {}
        self._unique_indexes: Dict[str, List[Tuple[str, ...]]] = {}
        self._repository_config: Optional[RepositoryConfig] = None
        self._auth_store: Optional[AuthenticationStore] = None

        self._write_lock = threading.RLock()
        self._record_locks: Dict[Tuple[str, str], _RecordLock] = {}
        self._record_locks_guard = threading.Lock()

        # Ensure data directory exists
        self._collections_dir().mkdir(parents=True, exist_ok=True)

    def initialize(self) -> None:
        self._load_repository_config()
        with self._write_lock:
            self._collections = {}
            for path in sorted(self._collections_dir().glob("*.json")):
                self._collections[path.stem] = self._read_collection(path)
        logger.info(
            "Loaded %d collection(s) from %s", len(self._collections), self._collections_dir()
        )

    # ------------------------------------------------------------------
    # Configuration and authentication documents
    # ------------------------------------------------------------------

    def get_repository_config(self) -> RepositoryConfig:
        if self._repository_config is None:
            return self._load_repository_config()
        return self._repository_config

    def save_repository_config(self, config: RepositoryConfig) -> None:
        self._repository_config = config
        self._write_file(self._data_dir / "repository.json", config.model_dump_json(indent=2))

    def get_auth_store(self) -> AuthenticationStore:
        if self._auth_store is not None:
            return self._auth_store

        path = self._data_dir / "authentication.json"
        if path.exists():
            try:
                raw = json.loads(path.read_text(encoding="utf-8"))
                store = AuthenticationStore(**raw)
            except Exception as e:
                logger.warning(f"Ignoring unreadable authentication.json: {e}")
                store = AuthenticationStore()
        else:
            store = AuthenticationStore()

        self._auth_store = store
        return store

    def save_auth_store(self, store: AuthenticationStore) -> None:
        self._auth_store = store
        self._write_file(
            self._data_dir / "authentication.json",
            store.model_dump_json(by_alias=True, indent=2),
        )

    # ------------------------------------------------------------------
    # Document operations
    # ------------------------------------------------------------------

    def ensure_unique_index(self, collection: str, fields: Sequence[str]) -> None:
        key = tuple(fields)
        indexes = self._unique_indexes.setdefault(collection, [])
        if key not in indexes:
            indexes.append(key)

    def find_one(self, collection: str, filter: Optional[Document] = None) -> Optional[Document]:
        for doc in self._docs(collection):
            if matches(doc, filter):
                return apply_projection(doc, None)
        return None

    def find(
        self,
        collection: str,
        filter: Optional[Document] = None,
        projection: Optional[Dict[str, int]] = None,
        sort: Optional[Sequence[Tuple[str, int]]] = None,
        limit: Optional[int] = None,
    ) -> List[Document]:
        found = [d for d in self._docs(collection) if matches(d, filter)]
        found = sort_documents(found, sort)
        if limit is not None and limit >= 0:
            found = found[:limit]
        return [apply_projection(d, projection) for d in found]

    def count(self, collection: str, filter: Optional[Document] = None) -> int:
        return sum(1 for d in self._docs(collection) if matches(d, filter))

    def insert(self, collection: str, document: Document) -> Document:
        with self._write_lock:
            docs = self._docs(collection)
            self._check_unique(collection, document, docs)
            stored = apply_projection(document, None)
            self._commit(collection, docs + [stored])
            return apply_projection(stored, None)

    def replace_one(self, collection: str, filter: Document, document: Document) -> bool:
        with self._write_lock:
            docs = self._docs(collection)
            position = self._position(docs, filter)
            if position is None:
                return False
            others = docs[:position] + docs[position + 1:]
            self._check_unique(collection, document, others)
            updated = list(docs)
            updated[position] = apply_projection(document, None)
            self._commit(collection, updated)
            return True

    def update_one(self, collection: str, filter: Document, changes: Document) -> bool:
        with self._write_lock:
            docs = self._docs(collection)
            position = self._position(docs, filter)
            if position is None:
                return False
            merged = apply_projection(docs[position], None)
            merged.update(apply_projection(changes, None))
            return self.replace_one(collection, filter, merged)

    def delete_one(self, collection: str, filter: Document) -> bool:
        with self._write_lock:
            docs = self._docs(collection)
            position = self._position(docs, filter)
            if position is None:
                return False
            self._commit(collection, docs[:position] + docs[position + 1:])
            return True

    def delete_many(self, collection: str, filter: Document) -> int:
        with self._write_lock:
            docs = self._docs(collection)
            kept = [d for d in docs if not matches(d, filter)]
            removed = len(docs) - len(kept)
            if removed:
                self._commit(collection, kept)
            return removed

    def aggregate(self, collection: str, pipeline: Sequence[Document]) -> List[Document]:
        return run_pipeline(self._docs(collection), pipeline)

    @contextmanager
    def record_lock(self, collection: str, key: str) -> Iterator[None]:
        lock_key = (collection, key)
        with self._record_locks_guard:
            entry = self._record_locks.get(lock_key)
            if entry is None:
                entry = self._record_locks[lock_key] = _RecordLock()
            entry.holders += 1
        try:
            with entry.lock:
                yield
        finally:
            # Entries live only while someone holds or waits on them.
            with self._record_locks_guard:
                entry.holders -= 1
                if entry.holders == 0:
                    del self._record_locks[lock_key]

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _collections_dir(self) -> Path:
        return self._data_dir / "collections"

    def _collection_path(self, collection: str) -> Path:
        return self._collections_dir() / f"{collection}.json"

    def _docs(self, collection: str) -> List[Document]:
        docs = self._collections.get(collection)
        if docs is None:
            with self._write_lock:
                docs = self._collections.get(collection)
                if docs is None:
                    path = self._collection_path(collection)
                    docs = self._read_collection(path) if path.exists() else []
                    self._collections[collection] = docs
        return docs

    def _read_collection(self, path: Path) -> List[Document]:
        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            raise StorageError(f"Cannot read collection file {path}: {exc}") from exc
        if not isinstance(raw, list):
            raise StorageError(f"Collection file {path} does not contain a JSON array")
        return raw

    def _position(self, docs: List[Document], filter: Document) -> Optional[int]:
        for i, doc in enumerate(docs):
            if matches(doc, filter):
                return i
        return None

    def _check_unique(self, collection: str, document: Document, existing: List[Document]) -> None:
        for fields in self._unique_indexes.get(collection, []):
            values = tuple(get_path(document, f) for f in fields)
            for doc in existing:
                if tuple(get_path(doc, f) for f in fields) == values:
                    raise DuplicateKeyError(collection, fields, values)

    def _commit(self, collection: str, docs: List[Document]) -> None:
        # Persist first so a failed write leaves the in-memory view untouched.
        self._write_file(self._collection_path(collection), json.dumps(docs, indent=2))
        self._collections[collection] = docs

    def _write_file(self, path: Path, text: str) -> None:
        tmp_path = path.with_name(path.name + ".tmp")
        try:
            with self._write_lock:
                tmp_path.write_text(text, encoding="utf-8")
                os.replace(tmp_path, path)
        except OSError as exc:
            logger.error(f"Failed to write {path}: {exc}")
            raise StorageError(f"Cannot write {path}: {exc}") from exc

    def _load_repository_config(self) -> RepositoryConfig:
        path = self._data_dir / "repository.json"
        if path.exists():
            try:
                raw = json.loads(path.read_text(encoding="utf-8"))
                config = RepositoryConfig(**raw)
            except Exception as e:
                # Invalid settings fall back to defaults and the file is rewritten.
                logger.warning(f"Invalid repository.json, using defaults: {e}")
                config = RepositoryConfig()
        else:
            config = RepositoryConfig()

        self.save_repository_config(config)
        return config
