"""
Unit tests for relational and validation schema generation.
"""

import pytest
from sqlalchemy import MetaData, create_engine, inspect

from polystore.common.exceptions import SchemaGenerationError
from polystore.ingest.profiler import FieldProfile, PrimitiveKind, profile
from polystore.ingest.schema_generator import (
    CREATED_AT_COLUMN,
    ID_COLUMN,
    JSON_SCHEMA_DRAFT,
    MAX_IDENTIFIER_LENGTH,
    GeneratedSchema,
    RelationalType,
    SchemaGenerator,
    build_table,
    generate_entity_name,
    map_relational_type,
    sanitize_identifier,
)

DATASET_ID = "abcdef12-3456-7890-abcd-ef1234567890"


@pytest.fixture
def generator():
    return SchemaGenerator()


class TestEntityNaming:
    """Tests for entity name derivation."""

    def test_strips_extension_and_appends_id_prefix(self):
        assert generate_entity_name("People.json", DATASET_ID) == "dataset_people_abcdef12"

    def test_replaces_unsafe_characters(self):
        assert generate_entity_name("Sales Report-2024.json", DATASET_ID) == \
            "dataset_sales_report_2024_abcdef12"

    def test_same_name_different_ids_differ(self):
        other = "99999999-0000-0000-0000-000000000000"
        assert generate_entity_name("x.json", DATASET_ID) != generate_entity_name("x.json", other)

    def test_long_names_fit_identifier_limit(self):
        name = generate_entity_name("n" * 200 + ".json", DATASET_ID)

        assert len(name) <= MAX_IDENTIFIER_LENGTH
        assert name.startswith("dataset_")
        assert name.endswith("_abcdef12")

    def test_empty_id_is_rejected(self):
        with pytest.raises(SchemaGenerationError):
            generate_entity_name("x.json", "")

    def test_sanitize_identifier(self):
        assert sanitize_identifier("First Name") == "first_name"
        assert sanitize_identifier("1st") == "_1st"
        assert sanitize_identifier("") == "_"


class TestTypeMapping:
    """Tests for profile -> relational type mapping."""

    def test_single_kinds(self):
        assert map_relational_type(FieldProfile(types={PrimitiveKind.STRING})) == RelationalType.TEXT
        assert map_relational_type(FieldProfile(types={PrimitiveKind.NUMBER})) == RelationalType.DOUBLE
        assert map_relational_type(FieldProfile(types={PrimitiveKind.BOOLEAN})) == RelationalType.BOOLEAN

    def test_nested_is_structured(self):
        fp = FieldProfile(types={PrimitiveKind.ARRAY}, nested=True)
        assert map_relational_type(fp) == RelationalType.JSONB

    def test_widening(self):
        assert map_relational_type(FieldProfile(
            types={PrimitiveKind.NUMBER, PrimitiveKind.STRING})) == RelationalType.TEXT
        assert map_relational_type(FieldProfile(
            types={PrimitiveKind.NUMBER, PrimitiveKind.BOOLEAN})) == RelationalType.DOUBLE
        assert map_relational_type(FieldProfile(
            types={PrimitiveKind.BOOLEAN, PrimitiveKind.STRING})) == RelationalType.TEXT

    def test_null_only_field_is_text(self):
        assert map_relational_type(FieldProfile(nullable=True)) == RelationalType.TEXT


class TestSchemaGenerator:
    """Tests for SchemaGenerator.generate()."""

    def test_flat_profile_columns(self, generator):
        """Scenario: id/name records produce NOT NULL double and text columns."""
        schema = generator.generate(
            "people.json", DATASET_ID, profile([{"id": 1, "name": "Ann"}, {"id": 2, "name": "Bo"}]))

        assert schema.entity_name == "dataset_people_abcdef12"
        assert [c.name for c in schema.columns] == [ID_COLUMN, CREATED_AT_COLUMN, "id", "name"]
        id_column = schema.columns[2]
        assert id_column.type == RelationalType.DOUBLE
        assert not id_column.nullable
        assert "id DOUBLE PRECISION NOT NULL" in schema.ddl
        assert "name TEXT NOT NULL" in schema.ddl
        assert schema.ddl.startswith("CREATE TABLE IF NOT EXISTS dataset_people_abcdef12")

    def test_nullable_fields_have_no_not_null(self, generator):
        schema = generator.generate("t", DATASET_ID, profile([{"a": 1, "b": "x"}, {"a": 2}]))

        b = next(c for c in schema.columns if c.name == "b")
        assert b.nullable
        assert "b TEXT NOT NULL" not in schema.ddl

    def test_synthetic_column_collision_renames_profiled_field(self, generator):
        schema = generator.generate("t", DATASET_ID, profile([{"_row_id": 5, "v": 1}]))

        names = [c.name for c in schema.columns]
        assert names == [ID_COLUMN, CREATED_AT_COLUMN, "_row_id_1", "v"]
        assert schema.column_renames == {"_row_id": "_row_id_1"}

    def test_sanitized_name_collision_gets_suffix(self, generator):
        schema = generator.generate("t", DATASET_ID, profile([{"Name": "a", "name": "b"}]))

        assert schema.column_renames == {"Name": "name", "name": "name_1"}

    def test_rename_helpers_are_inverse(self, generator):
        schema = generator.generate("t", DATASET_ID, profile([{"_created_at": "x", "Size": 1}]))
        row = {"_created_at": "x", "Size": 1}

        columns = schema.to_columns(row)
        assert set(columns) == {"_created_at_1", "size"}
        assert schema.from_columns(columns) == row

    def test_schema_generated_for_document_datasets_too(self, generator):
        schema = generator.generate("t", DATASET_ID, profile([{"tags": ["a"], "addr": {"c": 1}}]))

        types = {c.name: c.type for c in schema.profiled_columns}
        assert types == {"tags": RelationalType.JSONB, "addr": RelationalType.JSONB}

    def test_invalid_profile_rejected(self, generator):
        with pytest.raises(SchemaGenerationError):
            generator.generate("t", DATASET_ID, [{"a": 1}])

    def test_round_trip_through_dict(self, generator):
        schema = generator.generate("t", DATASET_ID, profile([{"_row_id": 1, "a": "x"}]))
        restored = GeneratedSchema.from_dict(schema.to_dict())

        assert restored == schema
        assert restored.column_renames == schema.column_renames


class TestValidationSchema:
    """Tests for the JSON-Schema-shaped validation document."""

    def test_structure(self, generator):
        sample = [
            {"id": 1, "addr": {"city": "NYC"}, "tags": ["a"], "v": 1, "note": None},
            {"id": 2, "addr": {"city": "LA"}, "tags": [], "v": "x"},
        ]
        validation = generator.generate("t", DATASET_ID, profile(sample)).validation_schema

        assert validation["$schema"] == JSON_SCHEMA_DRAFT
        assert validation["type"] == "object"
        props = validation["properties"]
        assert props["id"] == {"type": "number"}
        assert props["addr"] == {
            "type": "object",
            "properties": {"city": {"type": "string"}},
            "required": ["city"],
        }
        assert props["tags"] == {"type": "array", "items": {"type": "object"}}
        assert props["v"] == {"type": ["string", "number"]}
        assert props["note"] == {"type": "string"}
        assert validation["required"] == ["id", "addr", "tags", "v"]

    def test_field_set_matches_columns(self, generator):
        sample = [{"a": 1, "B c": "x", "_row_id": 2, "d": {"e": 1}}, {"f": [1]}]
        schema = generator.generate("t", DATASET_ID, profile(sample))

        sources = {c.source for c in schema.profiled_columns}
        assert sources == set(schema.validation_schema["properties"])

    def test_field_summary(self, generator):
        schema = generator.generate("t", DATASET_ID, profile([{"n": 1, "tags": ["a"]}, {"n": 2}]))

        assert schema.fields == [
            {"name": "n", "type": "number", "nullable": False, "required": True,
             "nested": False, "array": False},
            {"name": "tags", "type": "array", "nullable": True, "required": False,
             "nested": True, "array": True},
        ]


class TestBuildTable:
    """Tests for the SQLAlchemy table built from a schema."""

    def test_table_creates_on_sqlite(self, generator):
        schema = generator.generate("t", DATASET_ID, profile([{"a": 1, "b": True, "c": "x"}]))
        engine = create_engine("sqlite://")

        build_table(schema, MetaData()).create(engine)

        columns = {c["name"]: c for c in inspect(engine).get_columns(schema.entity_name)}
        assert set(columns) == {ID_COLUMN, CREATED_AT_COLUMN, "a", "b", "c"}
        assert not columns["a"].get("nullable")
        engine.dispose()
