"""
JSON Field Profiler.

Builds a per-field type/nullability/nesting profile from a bounded sample
of parsed JSON records.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Set


class PrimitiveKind(str, Enum):
    """Enumeration of observed JSON value kinds (null is tracked separately)."""
    STRING = "string"
    NUMBER = "number"
    BOOLEAN = "boolean"
    OBJECT = "object"
    ARRAY = "array"


# Deterministic ordering when kinds are serialized
KIND_ORDER = [
    PrimitiveKind.STRING,
    PrimitiveKind.NUMBER,
    PrimitiveKind.BOOLEAN,
    PrimitiveKind.OBJECT,
    PrimitiveKind.ARRAY,
]

DEFAULT_MAX_DEPTH = 32


@dataclass
class FieldProfile:
    """Profile of one field across the sample."""
    types: Set[PrimitiveKind] = field(default_factory=set)
    nullable: bool = False
    nested: bool = False
    nested_fields: Optional[Dict[str, "FieldProfile"]] = None

    def sorted_types(self) -> List[PrimitiveKind]:
        return [kind for kind in KIND_ORDER if kind in self.types]

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "types": [kind.value for kind in self.sorted_types()],
            "nullable": self.nullable,
            "nested": self.nested,
        }
        if self.nested_fields is not None:
            data["nestedFields"] = profile_to_dict(self.nested_fields)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FieldProfile":
        nested_fields = data.get("nestedFields")
        return cls(
            types={PrimitiveKind(t) for t in data.get("types", [])},
            nullable=bool(data.get("nullable", False)),
            nested=bool(data.get("nested", False)),
            nested_fields=profile_from_dict(nested_fields) if nested_fields is not None else None,
        )


# Field name -> profile, in first-seen order
TypeProfile = Dict[str, FieldProfile]


def detect_kind(value: Any) -> Optional[PrimitiveKind]:
    """
    Detect the kind of a parsed JSON value.

    Returns:
        PrimitiveKind, or None for null
    """
    if value is None:
        return None
    elif isinstance(value, bool):
        return PrimitiveKind.BOOLEAN
    elif isinstance(value, (int, float)):
        return PrimitiveKind.NUMBER
    elif isinstance(value, str):
        return PrimitiveKind.STRING
    elif isinstance(value, list):
        return PrimitiveKind.ARRAY
    elif isinstance(value, dict):
        return PrimitiveKind.OBJECT
    else:
        return PrimitiveKind.STRING  # Fallback


def profile(sample: List[Any], max_depth: int = DEFAULT_MAX_DEPTH) -> TypeProfile:
    """
    Profile a sample of records.

    Non-object entries are skipped. A key that is null in some record, or
    absent from some record, is nullable. Object values are profiled
    recursively into ``nested_fields``; below ``max_depth`` levels, objects
    are still marked nested but not expanded further.

    Args:
        sample: Parsed JSON records
        max_depth: Maximum number of object levels to expand

    Returns:
        TypeProfile keyed by field name
    """
    return _profile_level(sample, max_depth, depth=1)


def _profile_level(sample: List[Any], max_depth: int, depth: int) -> TypeProfile:
    result: TypeProfile = {}
    presence: Dict[str, int] = {}
    object_values: Dict[str, List[Dict[str, Any]]] = {}
    records_seen = 0

    for record in sample:
        if not isinstance(record, dict):
            continue
        records_seen += 1

        for key, value in record.items():
            field_profile = result.setdefault(key, FieldProfile())
            presence[key] = presence.get(key, 0) + 1

            kind = detect_kind(value)
            if kind is None:
                field_profile.nullable = True
                continue

            field_profile.types.add(kind)
            if kind in (PrimitiveKind.OBJECT, PrimitiveKind.ARRAY):
                field_profile.nested = True
            if kind == PrimitiveKind.OBJECT:
                object_values.setdefault(key, []).append(value)

    for key, field_profile in result.items():
        if presence[key] < records_seen:
            field_profile.nullable = True
        if key in object_values and depth < max_depth:
            field_profile.nested_fields = _profile_level(
                object_values[key], max_depth, depth + 1)

    return result


def profile_to_dict(type_profile: TypeProfile) -> Dict[str, Any]:
    """Serialize a profile to plain JSON-compatible data."""
    return {name: fp.to_dict() for name, fp in type_profile.items()}


def profile_from_dict(data: Dict[str, Any]) -> TypeProfile:
    """Rebuild a profile from ``profile_to_dict`` output."""
    return {name: FieldProfile.from_dict(info) for name, info in data.items()}

