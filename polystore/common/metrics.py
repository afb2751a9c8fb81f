"""
Prometheus metrics for ingests, catalog operations, the cache, and store calls.

Everything is registered on a private ``REGISTRY`` so importing the
package never touches the process-wide default registry.
"""

import inspect
from functools import wraps
from typing import Callable

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Histogram,
    generate_latest,
)

REGISTRY = CollectorRegistry()

# ========== Ingest ==========

ingest_requests_total = Counter(
    "ingest_requests_total",
    "JSON ingests by final storage and outcome",
    ["storage", "status"],  # relational/document/none, success/failure
    registry=REGISTRY,
)

ingest_fallbacks_total = Counter(
    "ingest_fallbacks_total",
    "Relational writes that degraded to the document store",
    registry=REGISTRY,
)

ingest_latency_seconds = Histogram(
    "ingest_latency_seconds",
    "Profile-to-catalog duration of one ingest",
    buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
    registry=REGISTRY,
)

records_written_total = Counter(
    "records_written_total",
    "Dataset records written to a data table or collection",
    ["storage"],
    registry=REGISTRY,
)

# ========== Catalog and cache ==========

catalog_operations_total = Counter(
    "catalog_operations_total",
    "Catalog service calls by outcome",
    ["operation", "status"],  # create/get/list/update/delete/search
    registry=REGISTRY,
)

cache_requests_total = Counter(
    "cache_requests_total",
    "Cache lookups by result",
    ["result"],  # hit/miss/error
    registry=REGISTRY,
)

# ========== Stores ==========

store_operation_duration_seconds = Histogram(
    "store_operation_duration_seconds",
    "Duration of one driver call",
    ["store", "operation"],
    buckets=(0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 5.0),
    registry=REGISTRY,
)


def track_catalog_operation(operation: str):
    """Count each call of an async catalog operation as success or failure."""
    def decorator(func: Callable):
        @wraps(func)
        async def wrapper(*args, **kwargs):
            try:
                result = await func(*args, **kwargs)
            except Exception:
                catalog_operations_total.labels(operation=operation, status="failure").inc()
                raise
            catalog_operations_total.labels(operation=operation, status="success").inc()
            return result

        return wrapper
    return decorator


def track_store_operation(store: str, operation: str):
    """Observe the duration of a driver call, sync or async, failed or not."""
    timer = store_operation_duration_seconds.labels(store=store, operation=operation)

    def decorator(func: Callable):
        if inspect.iscoroutinefunction(func):
            @wraps(func)
            async def async_wrapper(*args, **kwargs):
                with timer.time():
                    return await func(*args, **kwargs)

            return async_wrapper

        @wraps(func)
        def sync_wrapper(*args, **kwargs):
            with timer.time():
                return func(*args, **kwargs)

        return sync_wrapper
    return decorator


def get_metrics() -> bytes:
    """All metrics in the Prometheus text exposition format."""
    return generate_latest(REGISTRY)


def get_metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
