"""
Unit tests for the PyMongo driver and document store handle, with a mocked client.
"""

from unittest.mock import MagicMock

import pytest
from pymongo import ReturnDocument
from pymongo.errors import BulkWriteError, ConnectionFailure, OperationFailure

from polystore.common.exceptions import StoreReadError, StoreWriteError
from polystore.storage.mongo import DocumentStoreHandle, PyMongoDocumentDriver


@pytest.fixture
def client():
    return MagicMock()


@pytest.fixture
def collection(client):
    # client[db][collection] resolves to the same mock for any name
    return client.__getitem__.return_value.__getitem__.return_value


@pytest.fixture
def driver(client, test_settings):
    return PyMongoDocumentDriver(DocumentStoreHandle(test_settings, client=client))


class TestDocumentStoreHandle:
    """Tests for connecting the handle."""

    @pytest.mark.asyncio
    async def test_connect_pings(self, client, test_settings):
        handle = await DocumentStoreHandle(test_settings, client=client).connect()

        client.admin.command.assert_called_once_with("ping")
        assert handle.connected
        assert handle.check_connection()

    @pytest.mark.asyncio
    async def test_connect_gives_up(self, client, test_settings):
        client.admin.command.side_effect = ConnectionFailure("refused")
        handle = DocumentStoreHandle(test_settings, client=client)

        with pytest.raises(ConnectionError):
            await handle.connect()
        assert not handle.connected
        assert not handle.check_connection()

    @pytest.mark.asyncio
    async def test_close(self, client, test_settings):
        handle = DocumentStoreHandle(test_settings, client=client)

        await handle.close()

        client.close.assert_called_once()


class TestPyMongoDocumentDriver:
    """Tests for driver calls and error translation."""

    @pytest.mark.asyncio
    async def test_insert_many(self, driver, collection):
        collection.insert_many.return_value.inserted_ids = [1, 2]

        assert await driver.insert_many("c", [{"a": 1}, {"a": 2}]) == 2
        collection.insert_many.assert_called_once_with([{"a": 1}, {"a": 2}], ordered=True)

    @pytest.mark.asyncio
    async def test_insert_nothing(self, driver, collection):
        assert await driver.insert_many("c", []) == 0
        collection.insert_many.assert_not_called()

    @pytest.mark.asyncio
    async def test_bulk_write_error_reports_inserted(self, driver, collection):
        collection.insert_many.side_effect = BulkWriteError({"nInserted": 3, "writeErrors": []})

        with pytest.raises(StoreWriteError) as exc_info:
            await driver.insert_many("c", [{"a": 1}] * 5)

        assert exc_info.value.inserted == 3
        assert exc_info.value.entity == "c"

    @pytest.mark.asyncio
    async def test_find_applies_cursor_options(self, driver, collection):
        cursor = collection.find.return_value
        cursor.sort.return_value = cursor
        cursor.skip.return_value = cursor
        cursor.limit.return_value = cursor
        cursor.__iter__.return_value = iter([{"a": 1}])

        docs = await driver.find("c", {"a": 1}, sort=[("a", -1)], limit=5, skip=2)

        assert docs == [{"a": 1}]
        cursor.sort.assert_called_once_with([("a", -1)])
        cursor.skip.assert_called_once_with(2)
        cursor.limit.assert_called_once_with(5)

    @pytest.mark.asyncio
    async def test_read_errors_translated(self, driver, collection):
        collection.find_one.side_effect = OperationFailure("auth")
        collection.count_documents.side_effect = OperationFailure("auth")

        with pytest.raises(StoreReadError):
            await driver.find_one("c", {"a": 1})
        with pytest.raises(StoreReadError):
            await driver.count("c")

    @pytest.mark.asyncio
    async def test_find_one_and_update_returns_new_document(self, driver, collection):
        collection.find_one_and_update.return_value = {"a": 2}

        assert await driver.find_one_and_update("c", {"a": 1}, {"$set": {"a": 2}}) == {"a": 2}
        collection.find_one_and_update.assert_called_once_with(
            {"a": 1}, {"$set": {"a": 2}}, return_document=ReturnDocument.AFTER)

    @pytest.mark.asyncio
    async def test_delete_one(self, driver, collection):
        collection.delete_one.return_value.deleted_count = 1

        assert await driver.delete_one("c", {"a": 1}) == 1

    @pytest.mark.asyncio
    async def test_drop_error_translated(self, driver, client):
        client.__getitem__.return_value.drop_collection.side_effect = OperationFailure("locked")

        with pytest.raises(StoreWriteError):
            await driver.drop_collection("c")

    @pytest.mark.asyncio
    async def test_create_index(self, driver, collection):
        await driver.create_index("c", "datasetId", unique=True)

        collection.create_index.assert_called_once_with([("datasetId", 1)], unique=True)
