"""
Exception taxonomy for ingest, catalog, and store operations.

Driver exceptions (SQLAlchemy, PyMongo, Redis) are translated into these
types at the adapter boundary and never reach callers directly.
"""

from typing import Optional


class PolystoreError(Exception):
    """Base class for all polystore errors."""
    pass


class InputError(PolystoreError):
    """Malformed or empty payload, or an unsupported top-level JSON shape."""
    pass


class SchemaGenerationError(PolystoreError):
    """Raised when a schema cannot be generated from a profile."""
    pass


class StoreWriteError(PolystoreError):
    """A store rejected a write."""

    def __init__(self, message: str, store: str, entity: Optional[str] = None, inserted: int = 0):
        super().__init__(message)
        self.store = store
        self.entity = entity
        self.inserted = inserted


class StoreReadError(PolystoreError):
    """A probed store was unreachable or failed a read."""

    def __init__(self, message: str, store: str):
        super().__init__(message)
        self.store = store


class StoreUnavailableError(PolystoreError):
    """Every probed store failed; nothing can be answered."""
    pass


class DatasetNotFoundError(PolystoreError):
    """No catalog entry exists for the dataset id."""

    def __init__(self, dataset_id: str):
        super().__init__(f"Dataset not found: {dataset_id}")
        self.dataset_id = dataset_id


class CacheError(PolystoreError):
    """Cache backend failure. Never propagated outside the cache layer."""
    pass


class IngestError(PolystoreError):
    """
    Ingest failure tagged with the stage that failed.

    Stages: ``profiling``, ``schema``, ``write``, ``catalog``.
    """

    def __init__(self, stage: str, cause: Exception):
        super().__init__(f"Ingest failed at stage '{stage}': {cause}")
        self.stage = stage
        self.cause = cause

    def to_dict(self) -> dict:
        return {
            "stage": self.stage,
            "error_type": type(self.cause).__name__,
            "message": str(self.cause),
        }
