"""
IDEMPOTENCY KEYS

Retry-safe handling for the multi-document commands (initiate sale, confirm).

- The caller may send an operation_id with the command
- A repeated operation_id returns the result recorded the first time, but
  only to the same caller for the same entity
- The key is recorded inside the same unit of work as the mutation, so a
  rolled-back attempt leaves no key behind and can be retried

Usage:
    async with store.transaction() as session:
        previous = await idempotency.lookup(
            operation_id, "INITIATE_SALE", user_id, contract_id, session=session
        )
        if previous is not None:
            return previous

        result = await do_mutation(session)
        await idempotency.record(operation_id, "INITIATE_SALE", user_id, contract_id, result, session=session)
"""

from datetime import datetime
from typing import Any, Dict, Optional
import logging

from title_registry.errors import StateConflictError
from title_registry.store import DocumentStore, IDEMPOTENCY_KEYS

logger = logging.getLogger(__name__)


class IdempotencyKeys:
    """Stores the outcome of keyed operations."""

    def __init__(self, store: DocumentStore):
        self.store = store

    async def lookup(
        self,
        operation_id: Optional[str],
        operation: str,
        user_id: str,
        entity_id: str,
        session: Any = None
    ) -> Optional[Dict[str, Any]]:
        """
        Return the recorded response for a repeated operation_id, else None.

        Raises StateConflictError if the id was already used for a different
        operation, by a different caller, or on a different entity.
        """
        if not operation_id:
            return None

        existing = await self.store.find_one(
            IDEMPOTENCY_KEYS,
            {"operation_id": operation_id},
            session=session
        )
        if not existing:
            logger.debug(f"[IDEMPOTENT] New operation: {operation_id} ({operation})")
            return None

        if (
            existing.get("operation") != operation
            or existing.get("user_id") != user_id
            or existing.get("entity_id") != entity_id
        ):
            logger.warning(
                f"[IDEMPOTENT] operation_id {operation_id} reused by user:{user_id} "
                f"for {operation}/{entity_id}"
            )
            raise StateConflictError(f"operation_id {operation_id} was already used for another operation")

        logger.info(
            f"[IDEMPOTENT] Duplicate operation detected: {operation_id} "
            f"for {operation}/{entity_id}"
        )
        return existing.get("response")

    async def record(
        self,
        operation_id: Optional[str],
        operation: str,
        user_id: str,
        entity_id: str,
        response: Dict[str, Any],
        session: Any = None
    ) -> None:
        """Record a completed operation. No-op without an operation_id."""
        if not operation_id:
            return

        await self.store.insert_one(
            IDEMPOTENCY_KEYS,
            {
                "operation_id": operation_id,
                "operation": operation,
                "user_id": user_id,
                "entity_id": entity_id,
                "response": response,
                "created_at": datetime.utcnow()
            },
            session=session
        )

        logger.info(f"[IDEMPOTENT] Recorded operation: {operation_id} for {operation}/{entity_id}")
