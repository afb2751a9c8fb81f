"""
Abstract base classes for the data store drivers.

Defines the interface the catalog and ingest layers use to reach the
relational and document stores. Every method is a coroutine; driver
exceptions are translated to ``StoreWriteError`` / ``StoreReadError``.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Sequence, Tuple

from polystore.ingest.schema_generator import GeneratedSchema

Row = Dict[str, Any]
Document = Dict[str, Any]
SortSpec = Sequence[Tuple[str, int]]


class RelationalDriver(ABC):
    """
    Abstract relational store driver.

    Entities are tables named by ``GeneratedSchema.entity_name``.
    """

    name = "relational"

    @abstractmethod
    async def execute(self, statement: str, params: Optional[Dict[str, Any]] = None) -> List[Row]:
        """
        Execute a raw SQL statement.

        Returns:
            Result rows as dicts (empty for statements without results)

        Raises:
            StoreWriteError: If the statement fails
        """
        pass

    @abstractmethod
    async def create_entity(self, schema: GeneratedSchema) -> None:
        """
        Create the table described by a generated schema (if missing).

        Raises:
            StoreWriteError: If the table cannot be created
        """
        pass

    @abstractmethod
    async def insert(self, entity: str, rows: List[Row]) -> int:
        """
        Insert rows keyed by column name.

        Returns:
            Number of rows inserted

        Raises:
            StoreWriteError: On constraint, type, or connectivity errors
        """
        pass

    @abstractmethod
    async def query(
        self,
        entity: str,
        filter: Optional[Dict[str, Any]] = None,
        order: Optional[Sequence[str]] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[Row]:
        """
        Select rows.

        Args:
            entity: Table name
            filter: Column equality conditions, ANDed
            order: Column names, ``-`` prefix for descending
            limit: Maximum rows (None for all)
            offset: Rows to skip

        Raises:
            InputError: If a filter or order column does not exist
            StoreReadError: If the store fails
        """
        pass

    @abstractmethod
    async def count(self, entity: str, filter: Optional[Dict[str, Any]] = None) -> int:
        """Count rows matching ``filter``."""
        pass

    @abstractmethod
    async def drop_entity(self, entity: str) -> None:
        """Drop a table if it exists."""
        pass


class DocumentDriver(ABC):
    """
    Abstract document store driver.

    Filters, sorts, and updates use MongoDB query syntax.
    """

    name = "document"

    @abstractmethod
    async def insert_many(self, collection: str, documents: List[Document]) -> int:
        """
        Insert documents in order.

        Returns:
            Number of documents inserted

        Raises:
            StoreWriteError: On failure, with ``inserted`` set to the
                number written before the failure
        """
        pass

    @abstractmethod
    async def find(
        self,
        collection: str,
        filter: Optional[Dict[str, Any]] = None,
        sort: Optional[SortSpec] = None,
        limit: int = 0,
        skip: int = 0,
        projection: Optional[Dict[str, Any]] = None,
    ) -> List[Document]:
        """
        Find documents. ``limit=0`` means no limit.

        Raises:
            StoreReadError: If the store fails
        """
        pass

    @abstractmethod
    async def find_one(
        self,
        collection: str,
        filter: Dict[str, Any],
        projection: Optional[Dict[str, Any]] = None,
    ) -> Optional[Document]:
        """Find the first matching document, or None."""
        pass

    @abstractmethod
    async def count(self, collection: str, filter: Optional[Dict[str, Any]] = None) -> int:
        """Count matching documents."""
        pass

    @abstractmethod
    async def delete_one(self, collection: str, filter: Dict[str, Any]) -> int:
        """Delete the first matching document. Returns 0 or 1."""
        pass

    @abstractmethod
    async def find_one_and_update(
        self,
        collection: str,
        filter: Dict[str, Any],
        update: Dict[str, Any],
    ) -> Optional[Document]:
        """Apply ``update`` to the first match and return the updated document."""
        pass

    @abstractmethod
    async def drop_collection(self, collection: str) -> None:
        """Drop a collection if it exists."""
        pass

    @abstractmethod
    async def create_index(self, collection: str, field: str, unique: bool = False) -> None:
        """Ensure a single-field ascending index."""
        pass
