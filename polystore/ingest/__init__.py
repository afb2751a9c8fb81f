"""
Ingest module for JSON datasets.

Provides field profiling, backend selection, schema generation, and the
flatten/unflatten transform used by the relational write path.
"""

from polystore.ingest.profiler import (
    FieldProfile,
    PrimitiveKind,
    TypeProfile,
    detect_kind,
    profile,
)
from polystore.ingest.backend_selector import (
    StorageDecision,
    explain_selection,
    select_backend,
)
from polystore.ingest.schema_generator import (
    ColumnSpec,
    GeneratedSchema,
    RelationalType,
    SchemaGenerator,
    build_table,
)
from polystore.ingest.row_transform import flatten, unflatten
from polystore.ingest.validator import derive_dataset_name, normalize_payload

__all__ = [  # ruff: noqa: RUF022
    # Profiling
    "FieldProfile",
    "PrimitiveKind",
    "TypeProfile",
    "detect_kind",
    "profile",
    # Backend selection
    "StorageDecision",
    "explain_selection",
    "select_backend",
    # Schema generation
    "ColumnSpec",
    "GeneratedSchema",
    "RelationalType",
    "SchemaGenerator",
    "build_table",
    # Row transform
    "flatten",
    "unflatten",
    # Payload checks
    "derive_dataset_name",
    "normalize_payload",
]
