"""
Application wiring.

Connects the store handles explicitly, then builds drivers, catalog
stores, cache, and services once and hands them out together.

Usage:
    context = await create_app_context()
    result = await context.orchestrator.ingest("people.json", "application/json", data)
    await context.close()
"""

import logging
from dataclasses import dataclass
from typing import Optional

from polystore.catalog.cache import CacheLayer, create_cache_client
from polystore.catalog.models import Base
from polystore.catalog.service import CatalogService
from polystore.catalog.stores import DocumentCatalog, RelationalCatalog
from polystore.common.logging_config import setup_logging
from polystore.config.settings import Settings, get_settings
from polystore.ingest.orchestrator import IngestOrchestrator
from polystore.retrieval.service import RetrievalService
from polystore.storage.mongo import DocumentStoreHandle, PyMongoDocumentDriver
from polystore.storage.sql import RelationalStoreHandle, SqlAlchemyRelationalDriver

logger = logging.getLogger(__name__)


@dataclass
class AppContext:
    settings: Settings
    relational_handle: RelationalStoreHandle
    document_handle: DocumentStoreHandle
    cache: CacheLayer
    catalog: CatalogService
    orchestrator: IngestOrchestrator
    retrieval: RetrievalService

    async def close(self) -> None:
        await self.cache.close()
        await self.document_handle.close()
        await self.relational_handle.dispose()
        logger.info("Stores closed")


async def create_app_context(
    settings: Optional[Settings] = None,
    create_tables: bool = False,
) -> AppContext:
    """
    Connect both stores and build the services.

    Args:
        settings: Settings (``get_settings()`` if omitted)
        create_tables: Create the catalog table directly instead of relying on migrations

    Raises:
        ConnectionError: If a store stays unreachable after retries
    """
    settings = settings or get_settings()
    setup_logging(settings.log_level, settings.log_json)

    relational_handle = await RelationalStoreHandle(settings).connect()
    document_handle = await DocumentStoreHandle(settings).connect()
    if create_tables:
        relational_handle.create_all(Base.metadata)

    cache = CacheLayer(create_cache_client(settings) if settings.cache_enabled else None, settings)
    if cache.enabled and not await cache.ping():
        logger.warning("Cache unreachable at startup; continuing without it until it recovers")

    document_driver = PyMongoDocumentDriver(document_handle)
    document_catalog = DocumentCatalog(document_driver)
    await document_catalog.ensure_indexes()

    catalog = CatalogService(
        relational=RelationalCatalog(relational_handle),
        document=document_catalog,
        cache=cache,
        relational_driver=SqlAlchemyRelationalDriver(relational_handle),
        document_driver=document_driver,
        settings=settings,
    )

    return AppContext(
        settings=settings,
        relational_handle=relational_handle,
        document_handle=document_handle,
        cache=cache,
        catalog=catalog,
        orchestrator=IngestOrchestrator(catalog, settings),
        retrieval=RetrievalService(catalog, settings),
    )
