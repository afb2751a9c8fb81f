"""
Retrieval service: dataset records in nested-JSON form from either store.

Relational rows are renamed back to field names and unflattened; document
records lose their storage bookkeeping fields. Callers never see which
store answered.
"""

import logging
from typing import Any, Dict, List, Optional, Sequence, Tuple

from polystore.catalog.cache import stats_key
from polystore.catalog.entities import DatasetCatalogEntry, data_collection_name
from polystore.catalog.service import CatalogService
from polystore.common.exceptions import DatasetNotFoundError, InputError
from polystore.config.settings import Settings, get_settings
from polystore.ingest.backend_selector import StorageDecision
from polystore.ingest.row_transform import unflatten
from polystore.ingest.schema_generator import SYNTHETIC_COLUMNS

logger = logging.getLogger(__name__)

# Fields stamped onto every document-backed record
DOCUMENT_INTERNAL_FIELDS = ("_id", "_datasetId", "_importedAt")

DEFAULT_PAGE_SIZE = 100

_MISSING = object()


def strip_internal_fields(document: Dict[str, Any]) -> Dict[str, Any]:
    return {k: v for k, v in document.items() if k not in DOCUMENT_INTERNAL_FIELDS}


def _lookup(record: Dict[str, Any], path: Sequence[str]) -> Any:
    current: Any = record
    for part in path:
        if not isinstance(current, dict) or part not in current:
            return _MISSING
        current = current[part]
    return current


def project(record: Dict[str, Any], fields: Sequence[str]) -> Dict[str, Any]:
    """
    Keep only ``fields`` of a nested record. Dotted paths select nested
    values and keep their nesting; missing paths are omitted.
    """
    result: Dict[str, Any] = {}
    for field_path in fields:
        path = field_path.split(".")
        value = _lookup(record, path)
        if value is _MISSING:
            continue
        target = result
        for part in path[:-1]:
            target = target.setdefault(part, {})
        target[path[-1]] = value
    return result


class RetrievalService:
    """Read access to dataset records and stats."""

    def __init__(self, catalog: CatalogService, settings: Optional[Settings] = None):
        self.catalog = catalog
        self.settings = settings or get_settings()

    async def _require(self, dataset_id: str) -> DatasetCatalogEntry:
        entry = await self.catalog.get(dataset_id)
        if entry is None:
            raise DatasetNotFoundError(dataset_id)
        return entry

    async def resolve(self, dataset_ref: str) -> DatasetCatalogEntry:
        """
        Resolve a dataset by id, then by original name.

        Raises:
            DatasetNotFoundError: If neither matches
        """
        entry = await self.catalog.get(dataset_ref)
        if entry is None:
            entry = await self.catalog.get_by_name(dataset_ref)
        if entry is None:
            raise DatasetNotFoundError(dataset_ref)
        return entry

    def _check_window(self, limit: int, offset: int) -> None:
        if limit < 1 or limit > self.settings.list_max_limit:
            raise InputError(f"limit must be between 1 and {self.settings.list_max_limit}")
        if offset < 0:
            raise InputError("offset must be >= 0")

    async def _fetch(
        self,
        entry: DatasetCatalogEntry,
        where: Optional[Dict[str, Any]],
        order_by: Optional[Sequence[str]],
        limit: int,
        offset: int,
    ) -> Tuple[List[Dict[str, Any]], int]:
        """Records in nested form plus the total matching ``where``."""
        where = where or {}

        if entry.storage == StorageDecision.DOCUMENT:
            collection = data_collection_name(entry.id)
            sort = [(key.lstrip("-"), -1 if key.startswith("-") else 1) for key in order_by or []]
            documents = await self.catalog.document_driver.find(
                collection, where, sort=sort or [("_importedAt", 1)], limit=limit, skip=offset)
            total = await self.catalog.document_driver.count(collection, where)
            return [strip_internal_fields(d) for d in documents], total

        schema = entry.schema
        if schema is None:
            raise InputError(f"Dataset {entry.id} has no relational schema")
        renames = schema.column_renames
        order = [
            ("-" if key.startswith("-") else "") + renames.get(key.lstrip("-"), key.lstrip("-"))
            for key in order_by or []
        ]
        column_filter = schema.to_columns(where)

        rows = await self.catalog.relational_driver.query(
            schema.entity_name, column_filter, order or None, limit, offset)
        total = await self.catalog.relational_driver.count(schema.entity_name, column_filter)
        # Synthetic columns are removed before renaming back to field names
        records = [
            unflatten(
                schema.from_columns({k: v for k, v in row.items() if k not in SYNTHETIC_COLUMNS}),
                compound_only=self.settings.unflatten_compound_only,
                drop=(),
            )
            for row in rows
        ]
        return records, total

    async def retrieve_dataset(
        self,
        dataset_id: str,
        page: int = 1,
        limit: int = DEFAULT_PAGE_SIZE,
        where: Optional[Dict[str, Any]] = None,
        order_by: Optional[Sequence[str]] = None,
    ) -> Dict[str, Any]:
        """
        One page of a dataset's records.

        Args:
            dataset_id: Dataset id
            page: 1-based page number
            limit: Page size
            where: Field equality filter
            order_by: Field names, ``-`` prefix for descending

        Returns:
            ``{"dataset": ..., "data": [...], "pagination": {...}}``

        Raises:
            DatasetNotFoundError: If the id is unknown
            InputError: On an invalid window or unknown field
        """
        if page < 1:
            raise InputError("page must be >= 1")
        self._check_window(limit, 0)

        entry = await self._require(dataset_id)
        records, total = await self._fetch(entry, where, order_by, limit, (page - 1) * limit)

        return {
            "dataset": entry.to_dict(),
            "data": records,
            "pagination": {
                "page": page,
                "limit": limit,
                "total": total,
                "pages": (total + limit - 1) // limit,
            },
        }

    async def retrieve(
        self,
        dataset_ref: str,
        entity: Optional[str] = None,
        filter: Optional[Dict[str, Any]] = None,
        fields: Optional[Sequence[str]] = None,
        limit: int = DEFAULT_PAGE_SIZE,
        offset: int = 0,
    ) -> List[Dict[str, Any]]:
        """
        Records of a dataset in nested-JSON form, whichever store holds them.

        Args:
            dataset_ref: Dataset id or original name
            entity: Expected table/collection name; must match the dataset if given
            filter: Field equality filter
            fields: Projection; dotted paths select nested values
            limit: Maximum records
            offset: Records to skip

        Raises:
            DatasetNotFoundError: If the reference resolves to nothing
            InputError: If ``entity`` does not belong to the dataset
        """
        self._check_window(limit, offset)
        entry = await self.resolve(dataset_ref)

        if entity is not None and entity not in self._entity_names(entry):
            raise InputError(f"Entity '{entity}' does not belong to dataset {entry.id}")

        records, _ = await self._fetch(entry, filter, None, limit, offset)
        if fields:
            records = [project(r, fields) for r in records]
        return records

    @staticmethod
    def _entity_names(entry: DatasetCatalogEntry) -> Tuple[str, ...]:
        names = [entry.entity_name]
        if entry.schema is not None:
            names.append(entry.schema.entity_name)
        return tuple(n for n in names if n)

    async def get_dataset_stats(self, dataset_id: str) -> Dict[str, Any]:
        """
        Summary of a dataset, cached until the dataset changes.

        Raises:
            DatasetNotFoundError: If the id is unknown
        """
        key = stats_key(dataset_id)
        cached = await self.catalog.cache.get(key)
        if cached is not None:
            return cached

        entry = await self._require(dataset_id)
        stats = {
            "datasetId": entry.id,
            "name": entry.original_name,
            "datasetName": entry.dataset_name,
            "category": entry.category,
            "storage": entry.storage.value,
            "entity": entry.entity_name,
            "recordCount": entry.record_count,
            "fileSize": entry.file_size,
            "createdAt": entry.created_at.isoformat() if entry.created_at else None,
            "fields": entry.schema.fields if entry.schema else [],
        }
        await self.catalog.cache.set(key, stats, self.settings.cache_stats_ttl)
        return stats
