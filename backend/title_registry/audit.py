from datetime import datetime
from typing import Any, Dict, List, Optional
import logging

from title_registry.errors import AuthorizationError
from title_registry.store import AUDIT_LOGS, DocumentStore

logger = logging.getLogger(__name__)

# Financial entity types that CANNOT be deleted
FINANCIAL_ENTITY_TYPES = [
    "TRANSACTION",
]


class AuditTrail:
    """Append-only audit log of lifecycle and settlement actions."""

    def __init__(self, store: DocumentStore):
        self.store = store

    def enforce_financial_delete_guard(self, entity_type: str, action_type: str):
        """
        Transactions are financial records and are never deleted; cancelled
        ones keep status=cancelled.
        """
        if action_type == "DELETE" and entity_type in FINANCIAL_ENTITY_TYPES:
            raise AuthorizationError(
                f"Cannot DELETE {entity_type}. Financial records are immutable; cancel instead."
            )

    async def log_action(
        self,
        entity_type: str,
        entity_id: str,
        action_type: str,
        user_id: Optional[str],
        old_value: Optional[Dict[str, Any]] = None,
        new_value: Optional[Dict[str, Any]] = None,
        session: Any = None
    ):
        """
        Log an action to the audit trail (INSERT ONLY).

        Written with the caller's session so the entry commits or rolls back
        with the change it describes. Write failures are logged, not raised.
        """
        self.enforce_financial_delete_guard(entity_type, action_type)

        try:
            await self.store.insert_one(
                AUDIT_LOGS,
                {
                    "entity_type": entity_type,
                    "entity_id": entity_id,
                    "action_type": action_type,
                    "old_value_json": old_value,
                    "new_value_json": new_value,
                    "user_id": user_id,
                    "timestamp": datetime.utcnow()
                },
                session=session
            )
            logger.info(f"[AUDIT] {action_type} on {entity_type}:{entity_id} by user:{user_id}")
        except Exception as e:
            logger.error(f"[AUDIT] Failed to create audit log: {str(e)}")

    def transition_callback(self, entity_type: str):
        """Post-transition callback for a StateMachine."""
        async def _log(entity_doc, from_state, to_state, result, session):
            await self.log_action(
                entity_type=entity_type,
                entity_id=entity_doc["_id"],
                action_type=f"{from_state.upper()}_TO_{to_state.upper()}",
                user_id=result.get("actor_id"),
                old_value={"status": from_state},
                new_value={"status": to_state, **_plain(result.get("changes"))},
                session=session
            )
        return _log

    async def get_audit_logs(
        self,
        entity_type: Optional[str] = None,
        entity_id: Optional[str] = None,
        limit: int = 100
    ) -> List[Dict[str, Any]]:
        """Retrieve audit logs, newest first (READ ONLY)"""
        query: Dict[str, Any] = {}
        if entity_type:
            query["entity_type"] = entity_type
        if entity_id:
            query["entity_id"] = entity_id

        return await self.store.find(AUDIT_LOGS, query, sort=[("timestamp", -1)], limit=limit)


def _plain(changes: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    return {k: v for k, v in (changes or {}).items() if k != "paymentDetails"}
