"""
IN-PROCESS DOCUMENT STORE

Implements the DocumentStore port on plain dicts for development and tests.

Behaviour mirrors the MongoDB adapter where the core depends on it:
- unique indexes from INDEX_SPECS (missing/None values are not indexed)
- transactions: every write made with a session is journaled and undone
  in reverse order if the unit of work raises
- transactions are serialized with one asyncio lock
- every call yields to the event loop, so concurrent requests interleave
  between reads and compare-and-swap writes the way they do against a server
"""

from contextlib import asynccontextmanager
from typing import Any, Callable, Dict, List
import asyncio
import copy
import logging

from title_registry.errors import DuplicateKeyError, StoreUnavailableError
from title_registry.store import DocumentStore, INDEX_SPECS, Sort, new_id

logger = logging.getLogger(__name__)

_MISSING = object()


def _lookup(doc: Dict[str, Any], key: str) -> Any:
    value: Any = doc
    for part in key.split("."):
        if not isinstance(value, dict) or part not in value:
            return _MISSING
        value = value[part]
    return value


def _comparable(value: Any) -> bool:
    return value is not _MISSING and value is not None


_OPERATORS: Dict[str, Callable[[Any, Any], bool]] = {
    "$in": lambda value, arg: (None if value is _MISSING else value) in arg,
    "$nin": lambda value, arg: (None if value is _MISSING else value) not in arg,
    "$ne": lambda value, arg: (None if value is _MISSING else value) != arg,
    "$lt": lambda value, arg: _comparable(value) and value < arg,
    "$lte": lambda value, arg: _comparable(value) and value <= arg,
    "$gt": lambda value, arg: _comparable(value) and value > arg,
    "$gte": lambda value, arg: _comparable(value) and value >= arg,
    "$exists": lambda value, arg: (value is not _MISSING) == bool(arg),
}


def matches(doc: Dict[str, Any], query: Dict[str, Any]) -> bool:
    """Evaluate a query document against a stored document."""
    for key, condition in query.items():
        if key == "$or":
            if not any(matches(doc, sub) for sub in condition):
                return False
            continue

        value = _lookup(doc, key)

        if isinstance(condition, dict) and condition and all(k.startswith("$") for k in condition):
            for op, arg in condition.items():
                if op not in _OPERATORS:
                    raise ValueError(f"Unsupported query operator: {op}")
                if not _OPERATORS[op](value, arg):
                    return False
        else:
            if (None if value is _MISSING else value) != condition:
                return False
    return True


def apply_update(doc: Dict[str, Any], update: Dict[str, Any]) -> None:
    """Apply an update document in place."""
    for op, fields in update.items():
        if op == "$set":
            for key, value in fields.items():
                doc[key] = copy.deepcopy(value)
        elif op == "$unset":
            for key in fields:
                doc.pop(key, None)
        elif op == "$inc":
            for key, value in fields.items():
                doc[key] = doc.get(key, 0) + value
        elif op == "$push":
            for key, value in fields.items():
                doc.setdefault(key, []).append(copy.deepcopy(value))
        else:
            raise ValueError(f"Unsupported update operator: {op}")


def _sort_documents(docs: List[Dict[str, Any]], sort: Sort) -> List[Dict[str, Any]]:
    ordered = list(docs)
    for field_name, direction in reversed(sort or []):
        def key(d, f=field_name):
            value = _lookup(d, f)
            return (0, None) if not _comparable(value) else (1, value)
        ordered.sort(key=key, reverse=direction < 0)
    return ordered


class MemorySession:
    """Undo journal for one unit of work."""

    def __init__(self):
        self.journal: List[Callable[[], None]] = []
        self.active = True

    def record(self, undo: Callable[[], None]) -> None:
        if self.active:
            self.journal.append(undo)

    def rollback(self) -> None:
        for undo in reversed(self.journal):
            undo()
        self.journal.clear()
        self.active = False

    def commit(self) -> None:
        self.journal.clear()
        self.active = False


class MemoryDocumentStore(DocumentStore):
    """
    Dict-backed document store.

    `available` can be switched off to simulate an outage: every call then
    raises StoreUnavailableError.
    """

    def __init__(self):
        self._collections: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._unique: Dict[str, List[str]] = {}
        self._tx_lock = asyncio.Lock()
        self.available = True

        for collection, keys, unique, _sparse, _name in INDEX_SPECS:
            if unique:
                self._unique.setdefault(collection, []).append(keys[0][0])

    # =========================================================================
    # INTERNALS
    # =========================================================================

    async def _enter(self) -> None:
        await asyncio.sleep(0)
        if not self.available:
            raise StoreUnavailableError("Document store is unavailable")

    def _docs(self, collection: str) -> Dict[str, Dict[str, Any]]:
        return self._collections.setdefault(collection, {})

    def _check_unique(self, collection: str, doc: Dict[str, Any]) -> None:
        for field_name in self._unique.get(collection, []):
            value = doc.get(field_name)
            if value is None:
                continue
            for other in self._docs(collection).values():
                if other["_id"] != doc["_id"] and other.get(field_name) == value:
                    raise DuplicateKeyError(collection, {field_name: value})

    def _matching(self, collection: str, query: Dict[str, Any], sort: Sort = None) -> List[Dict[str, Any]]:
        found = [d for d in self._docs(collection).values() if matches(d, query)]
        return _sort_documents(found, sort) if sort else found

    # =========================================================================
    # READS
    # =========================================================================

    async def find_one(self, collection, query, session=None, sort=None):
        await self._enter()
        found = self._matching(collection, query, sort)
        return copy.deepcopy(found[0]) if found else None

    async def find(self, collection, query, session=None, sort=None, limit=0):
        await self._enter()
        found = self._matching(collection, query, sort)
        if limit:
            found = found[:limit]
        return [copy.deepcopy(d) for d in found]

    async def count_documents(self, collection, query, session=None):
        await self._enter()
        return len(self._matching(collection, query))

    # =========================================================================
    # WRITES
    # =========================================================================

    async def insert_one(self, collection, document, session=None):
        await self._enter()
        doc = copy.deepcopy(document)
        doc.setdefault("_id", new_id())
        docs = self._docs(collection)
        if doc["_id"] in docs:
            raise DuplicateKeyError(collection, {"_id": doc["_id"]})
        self._check_unique(collection, doc)
        docs[doc["_id"]] = doc

        if session is not None:
            doc_id = doc["_id"]
            session.record(lambda: docs.pop(doc_id, None))
        return doc["_id"]

    async def _update(self, collection, query, update, session, many: bool) -> int:
        await self._enter()
        docs = self._docs(collection)
        targets = self._matching(collection, query)
        if not many:
            targets = targets[:1]

        for target in targets:
            before = copy.deepcopy(target)
            candidate = copy.deepcopy(target)
            apply_update(candidate, update)
            candidate["_id"] = before["_id"]
            self._check_unique(collection, candidate)
            docs[before["_id"]] = candidate
            if session is not None:
                session.record(lambda b=before: docs.__setitem__(b["_id"], b))
        return len(targets)

    async def update_one(self, collection, query, update, session=None):
        return await self._update(collection, query, update, session, many=False)

    async def update_many(self, collection, query, update, session=None):
        return await self._update(collection, query, update, session, many=True)

    async def _delete(self, collection, query, session, many: bool) -> int:
        await self._enter()
        docs = self._docs(collection)
        targets = self._matching(collection, query)
        if not many:
            targets = targets[:1]

        for target in targets:
            removed = docs.pop(target["_id"])
            if session is not None:
                session.record(lambda r=removed: docs.__setitem__(r["_id"], r))
        return len(targets)

    async def delete_one(self, collection, query, session=None):
        return await self._delete(collection, query, session, many=False)

    async def delete_many(self, collection, query, session=None):
        return await self._delete(collection, query, session, many=True)

    # =========================================================================
    # UNIT OF WORK
    # =========================================================================

    @asynccontextmanager
    async def transaction(self):
        async with self._tx_lock:
            await self._enter()
            session = MemorySession()
            try:
                yield session
            except BaseException:
                session.rollback()
                logger.info("[STORE] Memory transaction rolled back")
                raise
            else:
                session.commit()

    async def ensure_indexes(self) -> None:
        await self._enter()

    # =========================================================================
    # TEST HELPERS
    # =========================================================================

    def snapshot(self, collection: str) -> List[Dict[str, Any]]:
        """Copy of every document in a collection."""
        return [copy.deepcopy(d) for d in self._docs(collection).values()]
