"""Backend selection policy: relational vs document storage."""

from enum import Enum
from typing import List

from polystore.ingest.profiler import TypeProfile


class StorageDecision(str, Enum):
    RELATIONAL = "relational"
    DOCUMENT = "document"


def nested_fields(type_profile: TypeProfile) -> List[str]:
    """Top-level fields that hold objects or arrays."""
    return [name for name, fp in type_profile.items() if fp.nested]


def select_backend(type_profile: TypeProfile) -> StorageDecision:
    """
    Choose the storage backend for a profile.

    Document storage is chosen iff at least one top-level field is nested.
    Arrays of primitives count as nested. An empty profile selects
    relational storage.
    """
    if nested_fields(type_profile):
        return StorageDecision.DOCUMENT
    return StorageDecision.RELATIONAL


def explain_selection(type_profile: TypeProfile) -> str:
    """Generate a one-line explanation of the decision."""
    decision = select_backend(type_profile)
    nested = nested_fields(type_profile)
    if decision == StorageDecision.DOCUMENT:
        return (
            f"Document storage: nested field(s) {', '.join(sorted(nested))} "
            f"require structured values"
        )
    return f"Relational storage: {len(type_profile)} flat field(s)"
