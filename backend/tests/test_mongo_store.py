"""
Driver error translation in the MongoDB adapter.
"""
import pytest
from pymongo.errors import (
    DuplicateKeyError as PyMongoDuplicateKeyError,
    OperationFailure,
    PyMongoError,
    ServerSelectionTimeoutError,
)

from title_registry.errors import DuplicateKeyError, StoreUnavailableError
from title_registry.mongo_store import MongoDocumentStore


class RaisingCollection:
    def __init__(self, error):
        self.error = error

    async def update_one(self, query, update, session=None):
        raise self.error

    async def insert_one(self, document, session=None):
        raise self.error


class RaisingDatabase:
    def __init__(self, error):
        self.error = error

    def __getitem__(self, name):
        return RaisingCollection(self.error)


def store_raising(error):
    return MongoDocumentStore(client=None, db=RaisingDatabase(error))


@pytest.mark.parametrize("label", ["TransientTransactionError", "UnknownTransactionCommitResult"])
async def test_labelled_transaction_errors_are_retryable(label):
    error = OperationFailure("WriteConflict", code=112, details={"errorLabels": [label]})

    with pytest.raises(StoreUnavailableError):
        await store_raising(error).update_one("contracts", {"_id": "c-1"}, {"$set": {"status": "sold"}})


async def test_labelled_base_driver_error_is_retryable():
    error = PyMongoError("commit failed", error_labels=["UnknownTransactionCommitResult"])

    with pytest.raises(StoreUnavailableError):
        await store_raising(error).update_one("transactions", {"_id": "t-1"}, {"$set": {"status": "paid"}})


async def test_server_selection_timeout_is_unavailable():
    with pytest.raises(StoreUnavailableError):
        await store_raising(ServerSelectionTimeoutError("no primary")).update_one("users", {}, {"$set": {}})


async def test_unlabelled_operation_failure_propagates():
    error = OperationFailure("bad update", code=9)

    with pytest.raises(OperationFailure):
        await store_raising(error).update_one("contracts", {}, {"$set": {}})


async def test_duplicate_key_carries_the_key():
    error = PyMongoDuplicateKeyError(
        "E11000", code=11000, details={"keyValue": {"contractNumber": "CNT-1"}}
    )

    with pytest.raises(DuplicateKeyError) as exc:
        await store_raising(error).insert_one("contracts", {"contractNumber": "CNT-1"})

    assert exc.value.key == {"contractNumber": "CNT-1"}
