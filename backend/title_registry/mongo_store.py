"""
MONGODB DOCUMENT STORE (motor)

Production adapter for the DocumentStore port.

- `_id` values are ObjectId hex strings, so ids travel unchanged between
  documents, transactions and notification links
- driver connection failures and transient transaction errors (write
  conflicts, unknown commit result) surface as StoreUnavailableError
- unique index violations surface as DuplicateKeyError
- transaction() opens a client session and a multi-document transaction;
  MongoDB requires a replica set for these
"""

from contextlib import asynccontextmanager
import logging

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from pymongo.errors import (
    ConnectionFailure,
    DuplicateKeyError as PyMongoDuplicateKeyError,
    NetworkTimeout,
    PyMongoError,
    ServerSelectionTimeoutError,
)

from title_registry.errors import DuplicateKeyError, StoreUnavailableError
from title_registry.store import DocumentStore, INDEX_SPECS, new_id

logger = logging.getLogger(__name__)

_UNAVAILABLE = (ConnectionFailure, ServerSelectionTimeoutError, NetworkTimeout)

# Labels the server attaches when a transaction may succeed if retried
_RETRYABLE_LABELS = ("TransientTransactionError", "UnknownTransactionCommitResult")


class _translate_errors:
    """Map driver exceptions onto the registry taxonomy."""

    def __init__(self, collection: str):
        self.collection = collection

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        if exc is None:
            return False
        if isinstance(exc, PyMongoDuplicateKeyError):
            key = (exc.details or {}).get("keyValue", {})
            raise DuplicateKeyError(self.collection, key) from exc
        if isinstance(exc, _UNAVAILABLE):
            logger.error(f"[STORE] MongoDB unavailable on {self.collection}: {exc}")
            raise StoreUnavailableError(f"Document store unavailable: {exc}") from exc
        if isinstance(exc, PyMongoError) and any(exc.has_error_label(label) for label in _RETRYABLE_LABELS):
            logger.error(f"[STORE] Transaction aborted on {self.collection}, retry: {exc}")
            raise StoreUnavailableError(f"Transaction aborted, retry: {exc}") from exc
        return False


class MongoDocumentStore(DocumentStore):
    """DocumentStore backed by motor."""

    def __init__(self, client: AsyncIOMotorClient, db: AsyncIOMotorDatabase):
        self.client = client
        self.db = db

    @classmethod
    def from_url(cls, mongo_url: str, db_name: str) -> "MongoDocumentStore":
        client = AsyncIOMotorClient(mongo_url)
        return cls(client, client[db_name])

    async def find_one(self, collection, query, session=None, sort=None):
        with _translate_errors(collection):
            return await self.db[collection].find_one(query, session=session, sort=sort)

    async def find(self, collection, query, session=None, sort=None, limit=0):
        with _translate_errors(collection):
            cursor = self.db[collection].find(query, session=session)
            if sort:
                cursor = cursor.sort(sort)
            if limit:
                cursor = cursor.limit(limit)
            return await cursor.to_list(length=None)

    async def count_documents(self, collection, query, session=None):
        with _translate_errors(collection):
            return await self.db[collection].count_documents(query, session=session)

    async def insert_one(self, collection, document, session=None):
        doc = dict(document)
        doc.setdefault("_id", new_id())
        with _translate_errors(collection):
            await self.db[collection].insert_one(doc, session=session)
        return doc["_id"]

    async def update_one(self, collection, query, update, session=None):
        with _translate_errors(collection):
            result = await self.db[collection].update_one(query, update, session=session)
        return result.matched_count

    async def update_many(self, collection, query, update, session=None):
        with _translate_errors(collection):
            result = await self.db[collection].update_many(query, update, session=session)
        return result.matched_count

    async def delete_one(self, collection, query, session=None):
        with _translate_errors(collection):
            result = await self.db[collection].delete_one(query, session=session)
        return result.deleted_count

    async def delete_many(self, collection, query, session=None):
        with _translate_errors(collection):
            result = await self.db[collection].delete_many(query, session=session)
        return result.deleted_count

    @asynccontextmanager
    async def transaction(self):
        with _translate_errors("session"):
            async with await self.client.start_session() as session:
                async with session.start_transaction():
                    yield session

    async def ensure_indexes(self) -> None:
        """Create the indexes the registry relies on (idempotent)."""
        for collection, keys, unique, sparse, name in INDEX_SPECS:
            try:
                await self.db[collection].create_index(
                    keys,
                    unique=unique,
                    sparse=sparse,
                    name=name
                )
            except Exception as e:
                logger.warning(f"[STORE] Index creation result for {name}: {str(e)}")
        logger.info("[STORE] Ensured registry indexes")

    async def close(self) -> None:
        self.client.close()
