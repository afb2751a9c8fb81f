"""
Schema Generator for relational tables and validation schemas.

Turns a field profile into a relational column spec (plus PostgreSQL DDL
text) and a JSON-Schema-shaped validation document. Both are generated
from the same profile for every dataset, whichever backend stores it.
"""

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from sqlalchemy import (  # type: ignore
    BOOLEAN, DOUBLE_PRECISION, JSON, Column, DateTime, Integer, MetaData, Table, Text, func,
)
from sqlalchemy.dialects import postgresql  # type: ignore
from sqlalchemy.schema import CreateTable  # type: ignore

from polystore.common.exceptions import SchemaGenerationError
from polystore.ingest.profiler import FieldProfile, PrimitiveKind, TypeProfile

ENTITY_NAMESPACE = "dataset"
ENTITY_SEPARATOR = "_"
ID_PREFIX_LENGTH = 8
MAX_IDENTIFIER_LENGTH = 63  # PostgreSQL NAMEDATALEN - 1

ID_COLUMN = "_row_id"
CREATED_AT_COLUMN = "_created_at"
SYNTHETIC_COLUMNS = (ID_COLUMN, CREATED_AT_COLUMN)

JSON_SCHEMA_DRAFT = "http://json-schema.org/draft-07/schema#"


class RelationalType(str, Enum):
    TEXT = "TEXT"
    DOUBLE = "DOUBLE PRECISION"
    BOOLEAN = "BOOLEAN"
    JSONB = "JSONB"
    SERIAL = "SERIAL"
    TIMESTAMP = "TIMESTAMP"


@dataclass
class ColumnSpec:
    """One relational column. ``source`` is the profiled field name, None for synthetic columns."""
    name: str
    type: RelationalType
    nullable: bool
    source: Optional[str] = None

    @property
    def synthetic(self) -> bool:
        return self.source is None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "type": self.type.value,
            "nullable": self.nullable,
            "source": self.source,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ColumnSpec":
        return cls(
            name=data["name"],
            type=RelationalType(data["type"]),
            nullable=data["nullable"],
            source=data.get("source"),
        )


@dataclass
class GeneratedSchema:
    """Relational column spec, validation schema, and naming for one dataset."""
    entity_name: str
    columns: List[ColumnSpec]
    validation_schema: Dict[str, Any]
    ddl: str = ""
    fields: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def profiled_columns(self) -> List[ColumnSpec]:
        return [c for c in self.columns if not c.synthetic]

    @property
    def column_renames(self) -> Dict[str, str]:
        """Field name -> column name, only where they differ."""
        return {
            c.source: c.name for c in self.profiled_columns if c.source != c.name
        }

    def to_columns(self, row: Dict[str, Any]) -> Dict[str, Any]:
        """Rename a flat row's field keys to column names."""
        renames = self.column_renames
        return {renames.get(key, key): value for key, value in row.items()}

    def from_columns(self, row: Dict[str, Any]) -> Dict[str, Any]:
        """Rename a stored row's column keys back to field names."""
        reverse = {column: source for source, column in self.column_renames.items()}
        return {reverse.get(key, key): value for key, value in row.items()}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entityName": self.entity_name,
            "columns": [c.to_dict() for c in self.columns],
            "validationSchema": self.validation_schema,
            "ddl": self.ddl,
            "fields": self.fields,
            "columnRenames": self.column_renames,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "GeneratedSchema":
        return cls(
            entity_name=data["entityName"],
            columns=[ColumnSpec.from_dict(c) for c in data.get("columns", [])],
            validation_schema=data.get("validationSchema", {}),
            ddl=data.get("ddl", ""),
            fields=data.get("fields", []),
        )


def sanitize_identifier(identifier: str) -> str:
    """
    Sanitize an identifier for SQL.

    Lowercases, replaces anything outside ``[a-z0-9_]`` with ``_`` and
    prefixes a leading digit with ``_``.
    """
    name = re.sub(r"[^a-z0-9_]", "_", identifier.lower())
    if name and name[0].isdigit():
        name = f"_{name}"
    return name or "_"


def strip_extension(name: str) -> str:
    return re.sub(r"\.[^/.]+$", "", name)


def generate_entity_name(name: str, dataset_id: str) -> str:
    """
    Derive the data table name for a dataset.

    Format: ``dataset_<sanitized name>_<first 8 chars of the id>``.

    Raises:
        SchemaGenerationError: If the dataset id is empty
    """
    id_prefix = sanitize_identifier(dataset_id[:ID_PREFIX_LENGTH]) if dataset_id else ""
    if not id_prefix.strip("_"):
        raise SchemaGenerationError("Cannot name an entity without a dataset id")

    base = re.sub(r"[^a-z0-9_]", "_", strip_extension(name).lower()) or "data"
    room = MAX_IDENTIFIER_LENGTH - len(ENTITY_NAMESPACE) - len(id_prefix) - 2 * len(ENTITY_SEPARATOR)
    base = base[:room]

    return ENTITY_SEPARATOR.join([ENTITY_NAMESPACE, base, id_prefix])


def map_relational_type(field_profile: FieldProfile) -> RelationalType:
    """
    Map a field profile to a relational column type.

    Nested fields are JSONB. Mixed kinds widen to TEXT when a string was
    seen, else DOUBLE PRECISION when a number was seen, else JSONB.
    """
    types = field_profile.types

    if field_profile.nested:
        return RelationalType.JSONB

    if len(types) > 1:
        if PrimitiveKind.STRING in types:
            return RelationalType.TEXT
        if PrimitiveKind.NUMBER in types:
            return RelationalType.DOUBLE
        return RelationalType.JSONB

    type_mapping = {
        PrimitiveKind.STRING: RelationalType.TEXT,
        PrimitiveKind.NUMBER: RelationalType.DOUBLE,
        PrimitiveKind.BOOLEAN: RelationalType.BOOLEAN,
        PrimitiveKind.OBJECT: RelationalType.JSONB,
        PrimitiveKind.ARRAY: RelationalType.JSONB,
    }
    if not types:
        # Only nulls observed
        return RelationalType.TEXT
    return type_mapping[next(iter(types))]


def _json_schema_type(kind: Optional[PrimitiveKind]) -> str:
    return kind.value if kind is not None else "string"


def map_validation_property(field_profile: FieldProfile) -> Dict[str, Any]:
    """Map a field profile to a JSON Schema property definition."""
    types = field_profile.sorted_types()

    if field_profile.nested:
        if PrimitiveKind.OBJECT in types:
            if field_profile.nested_fields is None:
                return {"type": "object"}
            return _object_schema(field_profile.nested_fields)
        if PrimitiveKind.ARRAY in types:
            return {"type": "array", "items": {"type": "object"}}

    if len(types) > 1:
        return {"type": [_json_schema_type(kind) for kind in types]}

    return {"type": _json_schema_type(types[0] if types else None)}


def _object_schema(type_profile: TypeProfile) -> Dict[str, Any]:
    properties = {}
    required = []
    for field_name, field_profile in type_profile.items():
        properties[field_name] = map_validation_property(field_profile)
        if not field_profile.nullable:
            required.append(field_name)

    schema: Dict[str, Any] = {"type": "object", "properties": properties}
    if required:
        schema["required"] = required
    return schema


def generate_validation_schema(type_profile: TypeProfile) -> Dict[str, Any]:
    """Generate a draft-07 JSON Schema document from a profile."""
    return {"$schema": JSON_SCHEMA_DRAFT, **_object_schema(type_profile)}


def summarize_fields(type_profile: TypeProfile) -> List[Dict[str, Any]]:
    """Flat field list used by profile summaries and dataset stats."""
    summary = []
    for field_name, field_profile in type_profile.items():
        types = field_profile.types
        summary.append({
            "name": field_name,
            "type": _dominant_kind(types),
            "nullable": field_profile.nullable,
            "required": not field_profile.nullable,
            "nested": field_profile.nested,
            "array": PrimitiveKind.ARRAY in types,
        })
    return summary


def _dominant_kind(types) -> str:
    for kind in (PrimitiveKind.NUMBER, PrimitiveKind.BOOLEAN, PrimitiveKind.STRING,
                 PrimitiveKind.ARRAY, PrimitiveKind.OBJECT):
        if kind in types:
            return kind.value
    return PrimitiveKind.STRING.value


def sqlalchemy_type(relational_type: RelationalType):
    """SQLAlchemy type object for a relational type."""
    if relational_type == RelationalType.TEXT:
        return Text()
    if relational_type == RelationalType.DOUBLE:
        return DOUBLE_PRECISION()
    if relational_type == RelationalType.BOOLEAN:
        return BOOLEAN()
    if relational_type == RelationalType.JSONB:
        return JSON().with_variant(postgresql.JSONB(), "postgresql")
    if relational_type == RelationalType.TIMESTAMP:
        return DateTime()
    return Integer()


def build_table(schema: GeneratedSchema, metadata: Optional[MetaData] = None) -> Table:
    """
    Build a SQLAlchemy ``Table`` for a generated schema.

    Args:
        schema: Generated schema
        metadata: MetaData to attach to (a fresh one if omitted)

    Returns:
        Table object usable for DDL and DML on any SQLAlchemy dialect
    """
    metadata = metadata if metadata is not None else MetaData()
    columns = []
    for spec in schema.columns:
        if spec.name == ID_COLUMN:
            columns.append(Column(ID_COLUMN, Integer, primary_key=True, autoincrement=True))
        elif spec.name == CREATED_AT_COLUMN:
            columns.append(Column(CREATED_AT_COLUMN, DateTime, nullable=False,
                                  server_default=func.now()))
        else:
            columns.append(Column(spec.name, sqlalchemy_type(spec.type), nullable=spec.nullable))
    return Table(schema.entity_name, metadata, *columns)


class SchemaGenerator:
    """
    Generates relational and validation schemas from a field profile.

    Column order follows profile order after the two synthetic columns.
    A profiled field whose sanitized name collides with a synthetic column
    or an earlier column is renamed with a numeric suffix.
    """

    def __init__(self, max_rename_attempts: int = 1000):
        self.max_rename_attempts = max_rename_attempts

    def generate(self, name: str, dataset_id: str, type_profile: TypeProfile) -> GeneratedSchema:
        """
        Generate the schema for a dataset.

        Args:
            name: Human-provided dataset or file name
            dataset_id: Dataset identifier
            type_profile: Field profile of the sample

        Returns:
            GeneratedSchema

        Raises:
            SchemaGenerationError: On invalid inputs
        """
        if not isinstance(type_profile, dict):
            raise SchemaGenerationError("Profile must be a mapping of field name to FieldProfile")

        entity_name = generate_entity_name(name, dataset_id)
        columns = [
            ColumnSpec(ID_COLUMN, RelationalType.SERIAL, nullable=False),
            ColumnSpec(CREATED_AT_COLUMN, RelationalType.TIMESTAMP, nullable=False),
        ]
        columns.extend(self.generate_columns(type_profile))

        schema = GeneratedSchema(
            entity_name=entity_name,
            columns=columns,
            validation_schema=generate_validation_schema(type_profile),
            fields=summarize_fields(type_profile),
        )
        schema.ddl = self.generate_ddl(schema)
        return schema

    def generate_columns(self, type_profile: TypeProfile) -> List[ColumnSpec]:
        """Map profiled fields to columns, disambiguating name collisions."""
        taken = set(SYNTHETIC_COLUMNS)
        columns = []

        for field_name, field_profile in type_profile.items():
            column_name = self._unique_name(sanitize_identifier(field_name), taken)
            taken.add(column_name)
            columns.append(ColumnSpec(
                name=column_name,
                type=map_relational_type(field_profile),
                nullable=field_profile.nullable,
                source=field_name,
            ))

        return columns

    def _unique_name(self, column_name: str, taken: set) -> str:
        if column_name not in taken:
            return column_name
        for suffix in range(1, self.max_rename_attempts + 1):
            candidate = f"{column_name}_{suffix}"
            if candidate not in taken:
                return candidate
        raise SchemaGenerationError(f"Cannot disambiguate column name '{column_name}'")

    def generate_ddl(self, schema: GeneratedSchema) -> str:
        """Compile PostgreSQL CREATE TABLE text for reference."""
        table = build_table(schema)
        ddl = str(CreateTable(table, if_not_exists=True).compile(dialect=postgresql.dialect()))
        return ddl.strip() + ";"
