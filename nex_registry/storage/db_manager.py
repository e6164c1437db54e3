from abc import ABC, abstractmethod
from typing import Any, ContextManager, Dict, List, Optional, Sequence, Tuple

from nex_registry.domain.models import AuthenticationStore, RepositoryConfig

Document = Dict[str, Any]


class StorageError(Exception):
    """The underlying store could not read or write (disk failure, corrupt file)."""


class DuplicateKeyError(StorageError):
    """An insert or replace would violate a unique index."""

    def __init__(self, collection: str, fields: Sequence[str], values: Sequence[Any]):
        self.collection = collection
        self.fields = tuple(fields)
        self.values = tuple(values)
        super().__init__(
            f"Duplicate key in {collection}: "
            + ", ".join(f"{f}={v!r}" for f, v in zip(self.fields, self.values))
        )


class DatabaseManager(ABC):
    """
    Abstract base class for the registry's document store.
    """

    @abstractmethod
    def initialize(self) -> None:
        """Initialize the storage subsystem (e.g. load from disk)."""
        pass

    @abstractmethod
    def get_repository_config(self) -> RepositoryConfig:
        """Retrieve repository configuration."""
        pass

    @abstractmethod
    def save_repository_config(self, config: RepositoryConfig) -> None:
        """Save repository configuration."""
        pass

    @abstractmethod
    def get_auth_store(self) -> AuthenticationStore:
        """Get the authentication store."""
        pass

    @abstractmethod
    def save_auth_store(self, store: AuthenticationStore) -> None:
        """Save the authentication store."""
        pass

    @abstractmethod
    def ensure_unique_index(self, collection: str, fields: Sequence[str]) -> None:
        """Reject future writes that would duplicate the given field combination."""
        pass

    @abstractmethod
    def find_one(self, collection: str, filter: Optional[Document] = None) -> Optional[Document]:
        """Return a copy of the first matching document, or None."""
        pass

    @abstractmethod
    def find(
        self,
        collection: str,
        filter: Optional[Document] = None,
        projection: Optional[Dict[str, int]] = None,
        sort: Optional[Sequence[Tuple[str, int]]] = None,
        limit: Optional[int] = None,
    ) -> List[Document]:
        """Return copies of all matching documents."""
        pass

    @abstractmethod
    def count(self, collection: str, filter: Optional[Document] = None) -> int:
        """Count matching documents."""
        pass

    @abstractmethod
    def insert(self, collection: str, document: Document) -> Document:
        """Insert a new document. Raises DuplicateKeyError on a unique index clash."""
        pass

    @abstractmethod
    def replace_one(self, collection: str, filter: Document, document: Document) -> bool:
        """Replace the first matching document. Returns False if nothing matched."""
        pass

    @abstractmethod
    def update_one(self, collection: str, filter: Document, changes: Document) -> bool:
        """Set top-level fields on the first matching document."""
        pass

    @abstractmethod
    def delete_one(self, collection: str, filter: Document) -> bool:
        """Delete the first matching document."""
        pass

    @abstractmethod
    def delete_many(self, collection: str, filter: Document) -> int:
        """Delete all matching documents and return how many were removed."""
        pass

    @abstractmethod
    def aggregate(self, collection: str, pipeline: Sequence[Document]) -> List[Document]:
        """Run a rollup pipeline ($match/$unwind/$group/$sort/$limit)."""
        pass

    @abstractmethod
    def record_lock(self, collection: str, key: str) -> ContextManager[None]:
        """
        Re-entrant lock scoping one record's read-modify-write cycle.
        Different keys never block each other.
        """
        pass
