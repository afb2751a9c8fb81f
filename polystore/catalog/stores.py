"""
Catalog stores: where dataset catalog entries are persisted.

Exactly two implementations exist, one per storage backend. An entry lives
in the store named by its own ``storage`` field and in no other.
"""

import asyncio
import logging
import re
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import Text, cast, func, or_, select  # type: ignore
from sqlalchemy.exc import IntegrityError, SQLAlchemyError  # type: ignore

from polystore.catalog.entities import DatasetCatalogEntry
from polystore.catalog.models import DatasetCatalogRecord
from polystore.common.exceptions import InputError, StoreReadError, StoreWriteError
from polystore.ingest.backend_selector import StorageDecision
from polystore.ingest.schema_generator import GeneratedSchema
from polystore.storage.adapter import DocumentDriver
from polystore.storage.sql import RelationalStoreHandle

logger = logging.getLogger(__name__)

CATALOG_COLLECTION = "dataset_catalog"

# Sort key -> (ORM attribute, document field)
SORT_FIELDS = {
    "created_at": ("created_at", "createdAt"),
    "updated_at": ("updated_at", "updatedAt"),
    "original_name": ("original_name", "originalName"),
    "file_size": ("file_size", "fileSize"),
    "record_count": ("record_count", "recordCount"),
}
SORT_ORDERS = ("asc", "desc")


@dataclass(frozen=True)
class ListFilters:
    """Equality filters for listing; ``tag`` matches list membership."""
    category: Optional[str] = None
    storage: Optional[str] = None
    mime_type: Optional[str] = None
    original_name: Optional[str] = None
    tag: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Only the filters that are set."""
        return {key: value for key, value in asdict(self).items() if value is not None}

    def matches(self, entry: DatasetCatalogEntry) -> bool:
        if self.category is not None and entry.category != self.category:
            return False
        if self.storage is not None and entry.storage.value != self.storage:
            return False
        if self.mime_type is not None and entry.mime_type != self.mime_type:
            return False
        if self.original_name is not None and entry.original_name != self.original_name:
            return False
        if self.tag is not None and self.tag not in entry.tags:
            return False
        return True


def validate_sort(sort_by: str, order: str) -> None:
    if sort_by not in SORT_FIELDS:
        raise InputError(
            f"Unsupported sort key '{sort_by}'; use one of {', '.join(SORT_FIELDS)}")
    if order not in SORT_ORDERS:
        raise InputError(f"Unsupported sort order '{order}'; use 'asc' or 'desc'")


class CatalogStore(ABC):
    """
    Narrow CRUD interface over one catalog backend.

    Reads raise ``StoreReadError`` and writes raise ``StoreWriteError`` when
    the backend fails.
    """

    name: StorageDecision

    @abstractmethod
    async def insert(self, entry: DatasetCatalogEntry) -> DatasetCatalogEntry:
        """Persist a new entry; returns it with timestamps assigned."""
        pass

    @abstractmethod
    async def get(self, dataset_id: str) -> Optional[DatasetCatalogEntry]:
        pass

    @abstractmethod
    async def get_by_name(self, original_name: str) -> Optional[DatasetCatalogEntry]:
        """Most recently created entry with this original name."""
        pass

    @abstractmethod
    async def list(
        self,
        filters: ListFilters,
        sort_by: str = "created_at",
        order: str = "desc",
        limit: Optional[int] = None,
    ) -> List[DatasetCatalogEntry]:
        """The first ``limit`` entries matching ``filters`` in sort order."""
        pass

    @abstractmethod
    async def count(self, filters: ListFilters) -> int:
        pass

    @abstractmethod
    async def update(self, dataset_id: str, changes: Dict[str, Any]) -> Optional[DatasetCatalogEntry]:
        """Apply changes to tags/description/metadata; None if the id is unknown."""
        pass

    @abstractmethod
    async def delete(self, dataset_id: str) -> bool:
        pass

    @abstractmethod
    async def search(self, keyword: str, limit: int) -> List[DatasetCatalogEntry]:
        """Case-insensitive substring match over name, description, and tags."""
        pass


def keyword_matches(entry: DatasetCatalogEntry, keyword: str) -> bool:
    needle = keyword.lower()
    haystack = [entry.original_name, entry.description or "", *entry.tags]
    return any(needle in str(value).lower() for value in haystack)


class RelationalCatalog(CatalogStore):
    """Catalog entries as rows of the ``dataset_catalog`` table."""

    name = StorageDecision.RELATIONAL

    def __init__(self, handle: RelationalStoreHandle):
        self.handle = handle

    @staticmethod
    def _to_entry(record: DatasetCatalogRecord) -> DatasetCatalogEntry:
        return DatasetCatalogEntry(
            id=record.dataset_id,
            original_name=record.original_name,
            storage=StorageDecision(record.storage),
            mime_type=record.mime_type,
            category=record.category,
            file_size=record.file_size,
            record_count=record.record_count,
            schema=GeneratedSchema.from_dict(record.dataset_schema) if record.dataset_schema else None,
            metadata=record.metadata_json or {},
            tags=list(record.tags or []),
            description=record.description,
            created_at=record.created_at,
            updated_at=record.updated_at,
        )

    @staticmethod
    def _filtered(stmt, filters: ListFilters):
        if filters.category is not None:
            stmt = stmt.where(DatasetCatalogRecord.category == filters.category)
        if filters.storage is not None:
            stmt = stmt.where(DatasetCatalogRecord.storage == filters.storage)
        if filters.mime_type is not None:
            stmt = stmt.where(DatasetCatalogRecord.mime_type == filters.mime_type)
        if filters.original_name is not None:
            stmt = stmt.where(DatasetCatalogRecord.original_name == filters.original_name)
        return stmt

    async def _run(self, func, write: bool = False):
        try:
            return await asyncio.to_thread(func)
        except SQLAlchemyError as e:
            if write:
                raise StoreWriteError(
                    f"Relational catalog write failed: {e}", store=self.name.value) from e
            raise StoreReadError(f"Relational catalog read failed: {e}", store=self.name.value) from e

    async def insert(self, entry: DatasetCatalogEntry) -> DatasetCatalogEntry:
        def _insert():
            record = DatasetCatalogRecord(
                dataset_id=entry.id,
                original_name=entry.original_name,
                file_size=entry.file_size,
                mime_type=entry.mime_type,
                category=entry.category,
                storage=self.name.value,
                record_count=entry.record_count,
                metadata_json=entry.metadata,
                dataset_schema=entry.schema.to_dict() if entry.schema else None,
                tags=list(entry.tags),
                description=entry.description,
            )
            with self.handle.session() as db:
                db.add(record)
                db.flush()
                return self._to_entry(record)

        try:
            return await self._run(_insert, write=True)
        except StoreWriteError as e:
            if isinstance(e.__cause__, IntegrityError):
                raise StoreWriteError(
                    f"Dataset {entry.id} is already cataloged", store=self.name.value) from e.__cause__
            raise

    async def get(self, dataset_id: str) -> Optional[DatasetCatalogEntry]:
        def _get():
            with self.handle.session() as db:
                record = db.scalars(
                    select(DatasetCatalogRecord).where(DatasetCatalogRecord.dataset_id == dataset_id)
                ).first()
                return self._to_entry(record) if record else None

        return await self._run(_get)

    async def get_by_name(self, original_name: str) -> Optional[DatasetCatalogEntry]:
        def _get():
            with self.handle.session() as db:
                record = db.scalars(
                    select(DatasetCatalogRecord)
                    .where(DatasetCatalogRecord.original_name == original_name)
                    .order_by(DatasetCatalogRecord.created_at.desc(), DatasetCatalogRecord.id.desc())
                ).first()
                return self._to_entry(record) if record else None

        return await self._run(_get)

    async def list(
        self,
        filters: ListFilters,
        sort_by: str = "created_at",
        order: str = "desc",
        limit: Optional[int] = None,
    ) -> List[DatasetCatalogEntry]:
        validate_sort(sort_by, order)
        column = getattr(DatasetCatalogRecord, SORT_FIELDS[sort_by][0])

        def _list():
            stmt = self._filtered(select(DatasetCatalogRecord), filters)
            stmt = stmt.order_by(column.desc() if order == "desc" else column.asc(),
                                 DatasetCatalogRecord.dataset_id.asc())
            # Tags are a JSON blob; membership is checked after loading
            if limit is not None and filters.tag is None:
                stmt = stmt.limit(limit)
            with self.handle.session() as db:
                entries = [self._to_entry(r) for r in db.scalars(stmt).all()]
            if filters.tag is not None:
                entries = [e for e in entries if filters.tag in e.tags]
            return entries[:limit] if limit is not None else entries

        return await self._run(_list)

    async def count(self, filters: ListFilters) -> int:
        def _count():
            with self.handle.session() as db:
                if filters.tag is None:
                    stmt = self._filtered(
                        select(func.count()).select_from(DatasetCatalogRecord), filters)
                    return db.execute(stmt).scalar_one()
                tags = db.scalars(
                    self._filtered(select(DatasetCatalogRecord.tags), filters)).all()
                return sum(1 for t in tags if t and filters.tag in t)

        return await self._run(_count)

    async def update(self, dataset_id: str, changes: Dict[str, Any]) -> Optional[DatasetCatalogEntry]:
        def _update():
            with self.handle.session() as db:
                record = db.scalars(
                    select(DatasetCatalogRecord).where(DatasetCatalogRecord.dataset_id == dataset_id)
                ).first()
                if record is None:
                    return None
                if "tags" in changes:
                    record.tags = list(changes["tags"] or [])
                if "description" in changes:
                    record.description = changes["description"]
                if "metadata" in changes:
                    record.metadata_json = changes["metadata"] or {}
                record.updated_at = datetime.utcnow()
                db.flush()
                return self._to_entry(record)

        return await self._run(_update, write=True)

    async def delete(self, dataset_id: str) -> bool:
        def _delete():
            with self.handle.session() as db:
                record = db.scalars(
                    select(DatasetCatalogRecord).where(DatasetCatalogRecord.dataset_id == dataset_id)
                ).first()
                if record is None:
                    return False
                db.delete(record)
                return True

        return await self._run(_delete, write=True)

    async def search(self, keyword: str, limit: int) -> List[DatasetCatalogEntry]:
        escaped = keyword.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
        pattern = f"%{escaped}%"

        def _search():
            stmt = (
                select(DatasetCatalogRecord)
                .where(or_(
                    DatasetCatalogRecord.original_name.ilike(pattern, escape="\\"),
                    DatasetCatalogRecord.description.ilike(pattern, escape="\\"),
                    cast(DatasetCatalogRecord.tags, Text).ilike(pattern, escape="\\"),
                ))
                .order_by(DatasetCatalogRecord.created_at.desc(), DatasetCatalogRecord.dataset_id.asc())
            )
            with self.handle.session() as db:
                entries = [self._to_entry(r) for r in db.scalars(stmt).all()]
            # Text matches on the serialized tag list can hit JSON punctuation
            return [e for e in entries if keyword_matches(e, keyword)][:limit]

        return await self._run(_search)


class DocumentCatalog(CatalogStore):
    """Catalog entries as documents in the ``dataset_catalog`` collection."""

    name = StorageDecision.DOCUMENT

    def __init__(self, driver: DocumentDriver, collection: str = CATALOG_COLLECTION):
        self.driver = driver
        self.collection = collection

    async def ensure_indexes(self) -> None:
        await self.driver.create_index(self.collection, "datasetId", unique=True)
        await self.driver.create_index(self.collection, "createdAt")

    @staticmethod
    def _to_document(entry: DatasetCatalogEntry) -> Dict[str, Any]:
        return {
            "datasetId": entry.id,
            "originalName": entry.original_name,
            "storage": StorageDecision.DOCUMENT.value,
            "mimeType": entry.mime_type,
            "category": entry.category,
            "fileSize": entry.file_size,
            "recordCount": entry.record_count,
            "datasetSchema": entry.schema.to_dict() if entry.schema else None,
            "metadata": entry.metadata,
            "tags": list(entry.tags),
            "description": entry.description,
            "createdAt": entry.created_at,
            "updatedAt": entry.updated_at,
        }

    @staticmethod
    def _to_entry(document: Dict[str, Any]) -> DatasetCatalogEntry:
        schema = document.get("datasetSchema")
        return DatasetCatalogEntry(
            id=document["datasetId"],
            original_name=document["originalName"],
            storage=StorageDecision(document["storage"]),
            mime_type=document.get("mimeType", "application/json"),
            category=document.get("category", "json"),
            file_size=document.get("fileSize", 0),
            record_count=document.get("recordCount", 0),
            schema=GeneratedSchema.from_dict(schema) if schema else None,
            metadata=document.get("metadata") or {},
            tags=list(document.get("tags") or []),
            description=document.get("description"),
            created_at=document.get("createdAt"),
            updated_at=document.get("updatedAt"),
        )

    @staticmethod
    def _query(filters: ListFilters) -> Dict[str, Any]:
        query: Dict[str, Any] = {}
        if filters.category is not None:
            query["category"] = filters.category
        if filters.storage is not None:
            query["storage"] = filters.storage
        if filters.mime_type is not None:
            query["mimeType"] = filters.mime_type
        if filters.original_name is not None:
            query["originalName"] = filters.original_name
        if filters.tag is not None:
            query["tags"] = filters.tag
        return query

    @staticmethod
    def _now() -> datetime:
        # BSON dates keep millisecond precision
        now = datetime.utcnow()
        return now.replace(microsecond=now.microsecond // 1000 * 1000)

    async def insert(self, entry: DatasetCatalogEntry) -> DatasetCatalogEntry:
        now = self._now()
        document = self._to_document(entry)
        document["createdAt"] = now
        document["updatedAt"] = now
        await self.driver.insert_many(self.collection, [document])
        return self._to_entry(document)

    async def get(self, dataset_id: str) -> Optional[DatasetCatalogEntry]:
        document = await self.driver.find_one(self.collection, {"datasetId": dataset_id})
        return self._to_entry(document) if document else None

    async def get_by_name(self, original_name: str) -> Optional[DatasetCatalogEntry]:
        documents = await self.driver.find(
            self.collection, {"originalName": original_name}, sort=[("createdAt", -1)], limit=1)
        return self._to_entry(documents[0]) if documents else None

    async def list(
        self,
        filters: ListFilters,
        sort_by: str = "created_at",
        order: str = "desc",
        limit: Optional[int] = None,
    ) -> List[DatasetCatalogEntry]:
        validate_sort(sort_by, order)
        field = SORT_FIELDS[sort_by][1]
        direction = -1 if order == "desc" else 1
        documents = await self.driver.find(
            self.collection,
            self._query(filters),
            sort=[(field, direction), ("datasetId", 1)],
            limit=limit or 0,
        )
        return [self._to_entry(d) for d in documents]

    async def count(self, filters: ListFilters) -> int:
        return await self.driver.count(self.collection, self._query(filters))

    async def update(self, dataset_id: str, changes: Dict[str, Any]) -> Optional[DatasetCatalogEntry]:
        fields: Dict[str, Any] = {"updatedAt": self._now()}
        if "tags" in changes:
            fields["tags"] = list(changes["tags"] or [])
        if "description" in changes:
            fields["description"] = changes["description"]
        if "metadata" in changes:
            fields["metadata"] = changes["metadata"] or {}

        document = await self.driver.find_one_and_update(
            self.collection, {"datasetId": dataset_id}, {"$set": fields})
        return self._to_entry(document) if document else None

    async def delete(self, dataset_id: str) -> bool:
        deleted = await self.driver.delete_one(self.collection, {"datasetId": dataset_id})
        return deleted > 0

    async def search(self, keyword: str, limit: int) -> List[DatasetCatalogEntry]:
        pattern = {"$regex": re.escape(keyword), "$options": "i"}
        documents = await self.driver.find(
            self.collection,
            {"$or": [
                {"originalName": pattern},
                {"description": pattern},
                {"tags": pattern},
            ]},
            sort=[("createdAt", -1)],
            limit=limit,
        )
        return [self._to_entry(d) for d in documents]
