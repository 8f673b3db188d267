"""
DOCUMENT STORE PORT

The lifecycle, sale and settlement services reach persistence only through
this interface. Two adapters implement it:

- MongoDocumentStore  (motor, production; multi-document transactions need a replica set)
- MemoryDocumentStore (in-process, development and tests)

Query documents use the MongoDB operator subset:
    equality, $in, $nin, $ne, $lt, $lte, $gt, $gte, $exists, $or
Update documents use:
    $set, $unset, $inc, $push

All writes that must commit or roll back together are made with the `session`
yielded by `transaction()`.

Usage:
    async with store.transaction() as session:
        await store.insert_one("contracts", doc, session=session)
        matched = await store.update_one(
            "contracts",
            {"_id": seller_id, "status": "for_sale"},
            {"$set": {"pendingSale": True}},
            session=session
        )
"""

from typing import Any, AsyncContextManager, Dict, List, Optional, Tuple

from bson import ObjectId

# Collections
CONTRACTS = "contracts"
TRANSACTIONS = "transactions"
USERS = "users"
CIVIL_REGISTRY = "civilregistry"
NOTIFICATION_OUTBOX = "notification_outbox"
NOTIFICATIONS = "notifications"
IDEMPOTENCY_KEYS = "idempotency_keys"
AUDIT_LOGS = "audit_logs"


# (collection, [(field, direction)...], unique, sparse, name)
INDEX_SPECS: List[Tuple[str, List[Tuple[str, int]], bool, bool, str]] = [
    (CONTRACTS, [("contractNumber", 1)], True, False, "unique_contract_number"),
    (CONTRACTS, [("userId", 1), ("createdAt", -1)], False, False, "contracts_by_owner"),
    (CONTRACTS, [("propertyNumber", 1), ("userId", 1), ("status", 1)], False, False, "seller_side_lookup"),
    (CONTRACTS, [("pendingTransactionId", 1)], False, True, "contracts_by_pending_transaction"),
    (TRANSACTIONS, [("sellerId", 1), ("createdAt", -1)], False, False, "transactions_by_seller"),
    (TRANSACTIONS, [("buyerId", 1), ("createdAt", -1)], False, False, "transactions_by_buyer"),
    (USERS, [("phoneNumber", 1)], True, True, "unique_user_phone"),
    (USERS, [("nationalId", 1)], True, True, "unique_user_national_id"),
    (CIVIL_REGISTRY, [("nationalId", 1)], False, False, "civil_registry_national_id"),
    (NOTIFICATION_OUTBOX, [("status", 1), ("nextAttemptAt", 1)], False, False, "outbox_due"),
    (NOTIFICATIONS, [("userId", 1), ("createdAt", -1)], False, False, "inbox_by_user"),
    (NOTIFICATIONS, [("userId", 1), ("isRead", 1)], False, False, "inbox_unread"),
    (IDEMPOTENCY_KEYS, [("operation_id", 1)], True, False, "unique_operation_id"),
    (AUDIT_LOGS, [("entity_type", 1), ("entity_id", 1), ("timestamp", -1)], False, False, "audit_by_entity"),
]

Sort = Optional[List[Tuple[str, int]]]


def new_id() -> str:
    """Generate a document id (ObjectId hex string)."""
    return str(ObjectId())


class DocumentStore:
    """Abstract document store. Every method may raise StoreUnavailableError."""

    async def find_one(
        self,
        collection: str,
        query: Dict[str, Any],
        session: Any = None,
        sort: Sort = None
    ) -> Optional[Dict[str, Any]]:
        raise NotImplementedError

    async def find(
        self,
        collection: str,
        query: Dict[str, Any],
        session: Any = None,
        sort: Sort = None,
        limit: int = 0
    ) -> List[Dict[str, Any]]:
        raise NotImplementedError

    async def insert_one(
        self,
        collection: str,
        document: Dict[str, Any],
        session: Any = None
    ) -> str:
        """Insert a document, assigning `_id` when absent. Returns the id."""
        raise NotImplementedError

    async def update_one(
        self,
        collection: str,
        query: Dict[str, Any],
        update: Dict[str, Any],
        session: Any = None
    ) -> int:
        """Update the first matching document. Returns the matched count (0 or 1)."""
        raise NotImplementedError

    async def update_many(
        self,
        collection: str,
        query: Dict[str, Any],
        update: Dict[str, Any],
        session: Any = None
    ) -> int:
        raise NotImplementedError

    async def delete_one(
        self,
        collection: str,
        query: Dict[str, Any],
        session: Any = None
    ) -> int:
        raise NotImplementedError

    async def delete_many(
        self,
        collection: str,
        query: Dict[str, Any],
        session: Any = None
    ) -> int:
        raise NotImplementedError

    async def count_documents(
        self,
        collection: str,
        query: Dict[str, Any],
        session: Any = None
    ) -> int:
        raise NotImplementedError

    def transaction(self) -> AsyncContextManager[Any]:
        """Open a unit of work. Writes made with its session commit or roll back together."""
        raise NotImplementedError

    async def ensure_indexes(self) -> None:
        raise NotImplementedError

    async def close(self) -> None:
        return None
