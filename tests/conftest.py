# Test configuration

import os
import sys

import pytest

# Project root for running without an installed package
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from polystore.catalog.cache import CacheLayer
from polystore.catalog.models import Base
from polystore.catalog.service import CatalogService
from polystore.catalog.stores import DocumentCatalog, RelationalCatalog
from polystore.config.settings import Settings
from polystore.ingest.orchestrator import IngestOrchestrator
from polystore.retrieval.service import RetrievalService
from polystore.storage.sql import RelationalStoreHandle, SqlAlchemyRelationalDriver

from fakes import FakeDocumentDriver, FakeRedis


@pytest.fixture
def test_settings():
    """Settings for tests: in-memory SQLite, cache on, tiny batches"""
    return Settings(
        database_url="sqlite://",
        cache_enabled=True,
        insert_batch_size=2,
        schema_sample_size=2,
        connect_attempts=1,
        cache_failure_threshold=3,
        cache_recovery_timeout=60.0,
        cache_scan_count=2,
        search_result_limit=5,
        log_json=False,
    )


@pytest.fixture
def relational_handle(test_settings):
    handle = RelationalStoreHandle(test_settings)
    handle.create_all(Base.metadata)
    yield handle
    handle.engine.dispose()


@pytest.fixture
def relational_driver(relational_handle):
    return SqlAlchemyRelationalDriver(relational_handle)


@pytest.fixture
def document_driver():
    return FakeDocumentDriver()


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def cache(fake_redis, test_settings):
    return CacheLayer(fake_redis, test_settings)


@pytest.fixture
def relational_catalog(relational_handle):
    return RelationalCatalog(relational_handle)


@pytest.fixture
def document_catalog(document_driver):
    return DocumentCatalog(document_driver)


@pytest.fixture
def catalog_service(relational_catalog, document_catalog, cache, relational_driver,
                    document_driver, test_settings):
    return CatalogService(
        relational=relational_catalog,
        document=document_catalog,
        cache=cache,
        relational_driver=relational_driver,
        document_driver=document_driver,
        settings=test_settings,
    )


@pytest.fixture
def orchestrator(catalog_service, test_settings):
    return IngestOrchestrator(catalog_service, test_settings)


@pytest.fixture
def retrieval(catalog_service, test_settings):
    return RetrievalService(catalog_service, test_settings)
