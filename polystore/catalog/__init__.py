"""
Dataset catalog.

Provides the catalog entry model, the relational and document catalog
stores, the cache layer, and the catalog service that ties them together.
"""

from polystore.catalog.entities import DatasetCatalogEntry
from polystore.catalog.stores import (
    CatalogStore,
    DocumentCatalog,
    ListFilters,
    RelationalCatalog,
)
from polystore.catalog.cache import CacheLayer
from polystore.catalog.service import CatalogService, DatasetPage

__all__ = [
    "DatasetCatalogEntry",
    "CatalogStore",
    "DocumentCatalog",
    "ListFilters",
    "RelationalCatalog",
    "CacheLayer",
    "CatalogService",
    "DatasetPage",
]
