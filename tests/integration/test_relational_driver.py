"""
Integration tests for the SQLAlchemy relational driver on SQLite.
"""

import pytest

from polystore.common.exceptions import InputError, StoreReadError, StoreWriteError
from polystore.ingest.profiler import profile
from polystore.ingest.schema_generator import ID_COLUMN, SchemaGenerator

pytestmark = pytest.mark.integration

DATASET_ID = "0badc0de-0000-0000-0000-000000000000"


@pytest.fixture
def schema():
    sample = [{"n": 1, "label": "a", "ok": True}, {"n": 2, "label": None, "ok": False}]
    return SchemaGenerator().generate("things.json", DATASET_ID, profile(sample))


class TestRelationalDriver:
    """Create, insert, query, count, and drop against SQLite."""

    @pytest.mark.asyncio
    async def test_insert_and_query(self, relational_driver, schema):
        await relational_driver.create_entity(schema)

        inserted = await relational_driver.insert(
            schema.entity_name, [{"n": 1, "label": "a", "ok": True}, {"n": 2, "ok": False}])

        assert inserted == 2
        rows = await relational_driver.query(schema.entity_name)
        assert [r[ID_COLUMN] for r in rows] == [1, 2]
        assert rows[1]["label"] is None
        assert rows[0]["ok"] is True
        assert rows[0]["_created_at"] is not None

    @pytest.mark.asyncio
    async def test_filter_order_limit_offset(self, relational_driver, schema):
        await relational_driver.create_entity(schema)
        await relational_driver.insert(
            schema.entity_name, [{"n": i, "label": "x" if i % 2 else "y", "ok": True} for i in range(6)])

        rows = await relational_driver.query(
            schema.entity_name, {"label": "x"}, order=["-n"], limit=2, offset=1)

        assert [r["n"] for r in rows] == [3.0, 1.0]
        assert await relational_driver.count(schema.entity_name, {"label": "x"}) == 3
        assert await relational_driver.count(schema.entity_name) == 6

    @pytest.mark.asyncio
    async def test_create_is_idempotent(self, relational_driver, schema):
        await relational_driver.create_entity(schema)
        await relational_driver.insert(schema.entity_name, [{"n": 1, "ok": True}])

        await relational_driver.create_entity(schema)

        assert await relational_driver.count(schema.entity_name) == 1

    @pytest.mark.asyncio
    async def test_unknown_insert_column(self, relational_driver, schema):
        await relational_driver.create_entity(schema)

        with pytest.raises(StoreWriteError, match="extra"):
            await relational_driver.insert(schema.entity_name, [{"n": 1, "ok": True, "extra": 1}])

    @pytest.mark.asyncio
    async def test_not_null_violation(self, relational_driver, schema):
        await relational_driver.create_entity(schema)

        with pytest.raises(StoreWriteError) as exc_info:
            await relational_driver.insert(schema.entity_name, [{"label": "no n"}])

        assert exc_info.value.entity == schema.entity_name

    @pytest.mark.asyncio
    async def test_unknown_query_column(self, relational_driver, schema):
        await relational_driver.create_entity(schema)

        with pytest.raises(InputError):
            await relational_driver.query(schema.entity_name, {"missing": 1})
        with pytest.raises(InputError):
            await relational_driver.query(schema.entity_name, order=["-missing"])

    @pytest.mark.asyncio
    async def test_missing_table(self, relational_driver):
        with pytest.raises(StoreReadError):
            await relational_driver.query("dataset_absent_00000000")
        with pytest.raises(StoreWriteError):
            await relational_driver.insert("dataset_absent_00000000", [{"a": 1}])

    @pytest.mark.asyncio
    async def test_drop(self, relational_driver, schema):
        await relational_driver.create_entity(schema)

        await relational_driver.drop_entity(schema.entity_name)
        await relational_driver.drop_entity(schema.entity_name)

        with pytest.raises(StoreReadError):
            await relational_driver.count(schema.entity_name)

    @pytest.mark.asyncio
    async def test_reflects_tables_it_did_not_create(self, relational_handle, relational_driver, schema):
        from polystore.storage.sql import SqlAlchemyRelationalDriver

        await relational_driver.create_entity(schema)
        await relational_driver.insert(schema.entity_name, [{"n": 5, "ok": True}])

        other = SqlAlchemyRelationalDriver(relational_handle)

        assert [r["n"] for r in await other.query(schema.entity_name)] == [5.0]

    @pytest.mark.asyncio
    async def test_execute(self, relational_driver):
        rows = await relational_driver.execute("SELECT :v AS v", {"v": 3})

        assert rows == [{"v": 3}]
        with pytest.raises(StoreWriteError):
            await relational_driver.execute("SELEC nonsense")
