"""
Catalog service: dataset metadata across the relational and document stores.

Routes catalog writes by each entry's ``storage`` field, probes the
relational store before the document store on reads, keeps the cache
coherent, and owns the batched data-write paths.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple, Union

from polystore.catalog.cache import (
    CacheLayer,
    dataset_key,
    list_key,
    normalize_keyword,
    search_key,
)
from polystore.catalog.entities import (
    UPDATABLE_FIELDS,
    DatasetCatalogEntry,
    data_collection_name,
)
from polystore.catalog.stores import (
    SORT_FIELDS,
    CatalogStore,
    DocumentCatalog,
    ListFilters,
    RelationalCatalog,
    validate_sort,
)
from polystore.common.exceptions import (
    DatasetNotFoundError,
    InputError,
    StoreReadError,
    StoreUnavailableError,
    StoreWriteError,
)
from polystore.common.metrics import records_written_total, track_catalog_operation
from polystore.config.settings import Settings, get_settings
from polystore.ingest.backend_selector import StorageDecision
from polystore.ingest.row_transform import flatten
from polystore.ingest.schema_generator import GeneratedSchema
from polystore.storage.adapter import DocumentDriver, RelationalDriver

logger = logging.getLogger(__name__)

Records = Union[Dict[str, Any], List[Dict[str, Any]]]


@dataclass
class DatasetPage:
    """One page of a merged, sorted catalog listing."""
    datasets: List[DatasetCatalogEntry] = field(default_factory=list)
    total: int = 0
    page: int = 1
    limit: int = 20

    @property
    def pages(self) -> int:
        return (self.total + self.limit - 1) // self.limit if self.limit else 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "datasets": [d.to_dict() for d in self.datasets],
            "pagination": {
                "page": self.page,
                "limit": self.limit,
                "total": self.total,
                "pages": self.pages,
            },
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DatasetPage":
        pagination = data["pagination"]
        return cls(
            datasets=[DatasetCatalogEntry.from_dict(d) for d in data["datasets"]],
            total=pagination["total"],
            page=pagination["page"],
            limit=pagination["limit"],
        )


def _as_list(records: Records) -> List[Dict[str, Any]]:
    if isinstance(records, dict):
        return [records]
    if not isinstance(records, list):
        raise InputError(f"Expected a record or a list of records, got {type(records).__name__}")
    return records


def _sort_value(entry: DatasetCatalogEntry, sort_by: str):
    value = getattr(entry, SORT_FIELDS[sort_by][0])
    # Missing values sort last in ascending order
    return (value is None, value if value is not None else 0)


class CatalogService:
    """
    Dataset catalog across two stores with a best-effort cache.

    Usage:
        service = CatalogService(relational, document, cache, sql_driver, mongo_driver)
        entry = await service.create(entry)
        entry = await service.get(entry.id)
    """

    def __init__(
        self,
        relational: RelationalCatalog,
        document: DocumentCatalog,
        cache: CacheLayer,
        relational_driver: RelationalDriver,
        document_driver: DocumentDriver,
        settings: Optional[Settings] = None,
    ):
        self.relational = relational
        self.document = document
        self.cache = cache
        self.relational_driver = relational_driver
        self.document_driver = document_driver
        self.settings = settings or get_settings()

    @property
    def stores(self) -> Tuple[CatalogStore, CatalogStore]:
        """Probe order: relational first."""
        return (self.relational, self.document)

    def store_for(self, storage: StorageDecision) -> CatalogStore:
        if storage == StorageDecision.RELATIONAL:
            return self.relational
        return self.document

    async def _probe(self, operation: str, *args) -> Tuple[Any, Optional[CatalogStore]]:
        """
        Call ``operation`` on each store in probe order until one returns a hit.

        A store that fails to read counts as a miss. Raises StoreUnavailableError
        only when every store failed.
        """
        failures: List[Exception] = []
        for store in self.stores:
            try:
                result = await getattr(store, operation)(*args)
            except StoreReadError as e:
                logger.warning(f"{store.name.value} catalog failed during {operation}: {e}")
                failures.append(e)
                continue
            if result:
                return result, store

        if len(failures) == len(self.stores):
            raise StoreUnavailableError(
                f"All catalog stores failed during {operation}") from failures[-1]
        return None, None

    async def _gather(self, operation: str, *args) -> List[Any]:
        """Call ``operation`` on both stores, tolerating one failure."""
        results = []
        failures: List[Exception] = []
        for store in self.stores:
            try:
                results.append(await getattr(store, operation)(*args))
            except StoreReadError as e:
                logger.warning(f"{store.name.value} catalog failed during {operation}: {e}")
                failures.append(e)

        if len(failures) == len(self.stores):
            raise StoreUnavailableError(
                f"All catalog stores failed during {operation}") from failures[-1]
        return results

    # ========== Catalog operations ==========

    @track_catalog_operation("create")
    async def create(self, entry: DatasetCatalogEntry) -> DatasetCatalogEntry:
        """
        Write a catalog entry to the store named by ``entry.storage``.

        Returns:
            The persisted entry with timestamps
        """
        stored = await self.store_for(entry.storage).insert(entry)
        await self.cache.invalidate_lists()
        logger.info(f"Cataloged dataset {stored.id} in {stored.storage.value} store")
        return stored

    @track_catalog_operation("get")
    async def get(self, dataset_id: str) -> Optional[DatasetCatalogEntry]:
        """
        Look up an entry: cache, then relational store, then document store.

        Returns:
            The entry, or None if no store has it

        Raises:
            StoreUnavailableError: If both stores failed
        """
        cached = await self.cache.get(dataset_key(dataset_id))
        if cached is not None:
            return DatasetCatalogEntry.from_dict(cached)

        entry, _ = await self._probe("get", dataset_id)
        if entry is not None:
            await self.cache.set(
                dataset_key(dataset_id), entry.to_dict(), self.settings.cache_dataset_ttl)
        return entry

    async def get_by_name(self, original_name: str) -> Optional[DatasetCatalogEntry]:
        """Most recent entry with this original name, relational store first."""
        entry, _ = await self._probe("get_by_name", original_name)
        return entry

    @track_catalog_operation("list")
    async def list(
        self,
        filters: Optional[ListFilters] = None,
        page: int = 1,
        limit: Optional[int] = None,
        sort_by: str = "created_at",
        order: str = "desc",
    ) -> DatasetPage:
        """
        List entries from both stores, merged and sorted, one page at a time.

        Raises:
            InputError: On an invalid page, sort key, or order
        """
        filters = filters or ListFilters()
        limit = limit or self.settings.list_default_limit
        if page < 1:
            raise InputError("page must be >= 1")
        limit = max(1, min(limit, self.settings.list_max_limit))
        validate_sort(sort_by, order)

        options = {"page": page, "limit": limit, "sortBy": sort_by, "order": order}
        key = list_key(filters.to_dict(), options)
        cached = await self.cache.get(key)
        if cached is not None:
            return DatasetPage.from_dict(cached)

        offset = (page - 1) * limit
        # Each store contributes at most its top offset+limit entries
        batches = await self._gather("list", filters, sort_by, order, offset + limit)
        counts = await self._gather("count", filters)

        merged = [entry for batch in batches for entry in batch]
        # Ties break on ascending dataset id, the same order each store uses
        merged.sort(key=lambda e: e.id)
        merged.sort(key=lambda e: _sort_value(e, sort_by), reverse=(order == "desc"))

        result = DatasetPage(
            datasets=merged[offset:offset + limit],
            total=sum(counts),
            page=page,
            limit=limit,
        )
        await self.cache.set(key, result.to_dict(), self.settings.cache_list_ttl)
        return result

    @track_catalog_operation("update")
    async def update(self, dataset_id: str, changes: Dict[str, Any]) -> DatasetCatalogEntry:
        """
        Update tags, description, or metadata of an entry in whichever store owns it.

        Raises:
            InputError: If ``changes`` touches any other field
            DatasetNotFoundError: If no store has the id
            StoreWriteError: If the owning store rejects the update
        """
        illegal = sorted(set(changes) - set(UPDATABLE_FIELDS))
        if illegal:
            raise InputError(f"Fields cannot be updated: {', '.join(illegal)}")

        current, store = await self._probe("get", dataset_id)
        if current is None:
            raise DatasetNotFoundError(dataset_id)

        entry = await store.update(dataset_id, changes)
        if entry is None:
            raise DatasetNotFoundError(dataset_id)

        await self.cache.invalidate_dataset(dataset_id)
        logger.info(f"Updated dataset {dataset_id}: {', '.join(sorted(changes))}")
        return entry

    @track_catalog_operation("delete")
    async def delete(self, dataset_id: str) -> DatasetCatalogEntry:
        """
        Delete an entry and drop its data table or collection.

        Raises:
            DatasetNotFoundError: If no store has the id
        """
        entry, store = await self._probe("get", dataset_id)
        if entry is None:
            raise DatasetNotFoundError(dataset_id)

        await store.delete(dataset_id)
        await self.cache.invalidate_dataset(dataset_id)

        try:
            await self.drop_data(entry)
        except StoreWriteError as e:
            logger.error(f"Dataset {dataset_id} deleted but its data container remains: {e}")

        logger.info(f"Deleted dataset {dataset_id} from {entry.storage.value} store")
        return entry

    @track_catalog_operation("search")
    async def search(self, keyword: str, limit: Optional[int] = None) -> List[DatasetCatalogEntry]:
        """
        Case-insensitive substring search over name, description, and tags.

        Raises:
            InputError: If the keyword is blank
        """
        normalized = normalize_keyword(keyword or "")
        if not normalized:
            raise InputError("Search keyword must not be empty")
        limit = min(limit or self.settings.search_result_limit, self.settings.search_result_limit)

        key = search_key(normalized)
        cached = await self.cache.get(key)
        if cached is not None:
            return [DatasetCatalogEntry.from_dict(d) for d in cached][:limit]

        batches = await self._gather("search", normalized, self.settings.search_result_limit)
        results = [entry for batch in batches for entry in batch][:self.settings.search_result_limit]

        await self.cache.set(key, [e.to_dict() for e in results], self.settings.cache_search_ttl)
        return results[:limit]

    # ========== Data write paths ==========

    async def store_relational_records(self, schema: GeneratedSchema, records: Records) -> int:
        """
        Flatten records and insert them into the schema's table in batches.

        Creates the table first. On failure the partially populated table is
        dropped.

        Returns:
            Number of rows inserted

        Raises:
            StoreWriteError: If the table cannot be created or any batch fails
        """
        records = _as_list(records)
        non_objects = [i for i, r in enumerate(records) if not isinstance(r, dict)]
        if non_objects:
            raise StoreWriteError(
                f"Relational storage needs objects; element {non_objects[0]} is not one",
                store=StorageDecision.RELATIONAL.value, entity=schema.entity_name)

        rows = [schema.to_columns(flatten(r, max_depth=self.settings.schema_max_depth))
                for r in records]
        entity = schema.entity_name
        batch_size = self.settings.insert_batch_size

        await self.relational_driver.create_entity(schema)
        inserted = 0
        try:
            for start in range(0, len(rows), batch_size):
                inserted += await self.relational_driver.insert(entity, rows[start:start + batch_size])
        except StoreWriteError as e:
            logger.warning(
                f"Relational insert into {entity} failed after {inserted} rows; dropping table")
            await self._drop_quietly(self.relational_driver.drop_entity, entity)
            raise StoreWriteError(str(e), store=e.store, entity=entity, inserted=inserted) from e

        records_written_total.labels(storage=StorageDecision.RELATIONAL.value).inc(inserted)
        return inserted

    async def store_document_records(self, dataset_id: str, records: Records) -> int:
        """
        Stamp records with the dataset id and import time and insert them in batches.

        On failure the partially populated collection is dropped.

        Returns:
            Number of documents inserted

        Raises:
            StoreWriteError: If any batch fails
        """
        records = _as_list(records)
        collection = data_collection_name(dataset_id)
        imported_at = datetime.utcnow()
        documents = [
            {**(r if isinstance(r, dict) else {"value": r}),
             "_datasetId": dataset_id, "_importedAt": imported_at}
            for r in records
        ]
        batch_size = self.settings.insert_batch_size

        inserted = 0
        try:
            for start in range(0, len(documents), batch_size):
                inserted += await self.document_driver.insert_many(
                    collection, documents[start:start + batch_size])
        except StoreWriteError as e:
            inserted += e.inserted
            logger.error(
                f"Document insert into {collection} failed after {inserted} documents; "
                f"dropping collection")
            await self._drop_quietly(self.document_driver.drop_collection, collection)
            raise StoreWriteError(str(e), store=e.store, entity=collection, inserted=inserted) from e

        records_written_total.labels(storage=StorageDecision.DOCUMENT.value).inc(inserted)
        return inserted

    async def drop_data(self, entry: DatasetCatalogEntry) -> None:
        """Drop the table or collection holding a dataset's records."""
        if entry.storage == StorageDecision.DOCUMENT:
            await self.document_driver.drop_collection(data_collection_name(entry.id))
        elif entry.schema is not None:
            await self.relational_driver.drop_entity(entry.schema.entity_name)

    @staticmethod
    async def _drop_quietly(drop, name: str) -> None:
        try:
            await drop(name)
        except StoreWriteError as e:
            logger.error(f"Cleanup of {name} failed: {e}")
