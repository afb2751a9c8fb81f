"""
Document store handle and PyMongo driver.

Documents keep their full nested structure. The handle is connected
explicitly at startup and injected into the driver.
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional

from pymongo import ASCENDING, MongoClient, ReturnDocument  # type: ignore
from pymongo.errors import BulkWriteError, ConnectionFailure, PyMongoError  # type: ignore

from polystore.common.exceptions import StoreReadError, StoreWriteError
from polystore.common.metrics import track_store_operation
from polystore.common.resilience import retry_connect
from polystore.config.settings import Settings, get_settings
from polystore.storage.adapter import Document, DocumentDriver, SortSpec

logger = logging.getLogger(__name__)

STORE_NAME = "document"


class DocumentStoreHandle:
    """
    Explicit handle on the MongoDB database.

    The client is created in the constructor but does not touch the
    network until ``connect()`` is awaited.
    """

    def __init__(self, settings: Optional[Settings] = None, client: Optional[MongoClient] = None):
        self.settings = settings or get_settings()
        self.client = client or MongoClient(
            self.settings.mongo_url,
            serverSelectionTimeoutMS=self.settings.mongo_timeout_ms,
        )
        self.connected = False

    def _ping(self) -> None:
        try:
            self.client.admin.command("ping")
        except ConnectionFailure as e:
            raise ConnectionError(f"Document store unreachable: {e}") from e

    async def connect(self) -> "DocumentStoreHandle":
        """
        Wait until MongoDB answers ``ping``.

        Raises:
            ConnectionError: After ``connect_attempts`` failed attempts
        """
        ping = retry_connect(self.settings.connect_attempts)(self._ping)
        await asyncio.to_thread(ping)
        self.connected = True
        logger.info(f"Document store ready (database '{self.settings.mongo_database}')")
        return self

    @property
    def database(self):
        return self.client[self.settings.mongo_database]

    def check_connection(self) -> bool:
        try:
            self._ping()
            return True
        except ConnectionError:
            return False

    async def close(self) -> None:
        await asyncio.to_thread(self.client.close)
        self.connected = False


class PyMongoDocumentDriver(DocumentDriver):
    """Document driver over a connected ``DocumentStoreHandle``."""

    def __init__(self, handle: DocumentStoreHandle):
        self.handle = handle

    def _collection(self, collection: str):
        return self.handle.database[collection]

    @track_store_operation(STORE_NAME, "insert")
    async def insert_many(self, collection: str, documents: List[Document]) -> int:
        if not documents:
            return 0
        try:
            result = await asyncio.to_thread(
                self._collection(collection).insert_many, documents, ordered=True)
        except BulkWriteError as e:
            inserted = e.details.get("nInserted", 0)
            raise StoreWriteError(
                f"Insert into {collection} failed after {inserted} documents: {e}",
                store=STORE_NAME, entity=collection, inserted=inserted) from e
        except PyMongoError as e:
            raise StoreWriteError(
                f"Insert into {collection} failed: {e}", store=STORE_NAME, entity=collection) from e
        return len(result.inserted_ids)

    @track_store_operation(STORE_NAME, "find")
    async def find(
        self,
        collection: str,
        filter: Optional[Dict[str, Any]] = None,
        sort: Optional[SortSpec] = None,
        limit: int = 0,
        skip: int = 0,
        projection: Optional[Dict[str, Any]] = None,
    ) -> List[Document]:
        def _find():
            cursor = self._collection(collection).find(filter or {}, projection)
            if sort:
                cursor = cursor.sort(list(sort))
            if skip:
                cursor = cursor.skip(skip)
            if limit:
                cursor = cursor.limit(limit)
            return list(cursor)

        try:
            return await asyncio.to_thread(_find)
        except PyMongoError as e:
            raise StoreReadError(f"Find on {collection} failed: {e}", store=STORE_NAME) from e

    @track_store_operation(STORE_NAME, "find_one")
    async def find_one(
        self,
        collection: str,
        filter: Dict[str, Any],
        projection: Optional[Dict[str, Any]] = None,
    ) -> Optional[Document]:
        try:
            return await asyncio.to_thread(
                self._collection(collection).find_one, filter, projection)
        except PyMongoError as e:
            raise StoreReadError(f"Find on {collection} failed: {e}", store=STORE_NAME) from e

    @track_store_operation(STORE_NAME, "count")
    async def count(self, collection: str, filter: Optional[Dict[str, Any]] = None) -> int:
        try:
            return await asyncio.to_thread(
                self._collection(collection).count_documents, filter or {})
        except PyMongoError as e:
            raise StoreReadError(f"Count on {collection} failed: {e}", store=STORE_NAME) from e

    @track_store_operation(STORE_NAME, "delete")
    async def delete_one(self, collection: str, filter: Dict[str, Any]) -> int:
        try:
            result = await asyncio.to_thread(self._collection(collection).delete_one, filter)
        except PyMongoError as e:
            raise StoreWriteError(
                f"Delete on {collection} failed: {e}", store=STORE_NAME, entity=collection) from e
        return result.deleted_count

    @track_store_operation(STORE_NAME, "update")
    async def find_one_and_update(
        self,
        collection: str,
        filter: Dict[str, Any],
        update: Dict[str, Any],
    ) -> Optional[Document]:
        try:
            return await asyncio.to_thread(
                self._collection(collection).find_one_and_update,
                filter,
                update,
                return_document=ReturnDocument.AFTER,
            )
        except PyMongoError as e:
            raise StoreWriteError(
                f"Update on {collection} failed: {e}", store=STORE_NAME, entity=collection) from e

    @track_store_operation(STORE_NAME, "drop")
    async def drop_collection(self, collection: str) -> None:
        try:
            await asyncio.to_thread(self.handle.database.drop_collection, collection)
        except PyMongoError as e:
            raise StoreWriteError(
                f"Failed to drop collection {collection}: {e}",
                store=STORE_NAME, entity=collection) from e
        logger.info(f"Dropped collection {collection}")

    async def create_index(self, collection: str, field: str, unique: bool = False) -> None:
        try:
            await asyncio.to_thread(
                self._collection(collection).create_index, [(field, ASCENDING)], unique=unique)
        except PyMongoError as e:
            raise StoreWriteError(
                f"Failed to index {collection}.{field}: {e}",
                store=STORE_NAME, entity=collection) from e
