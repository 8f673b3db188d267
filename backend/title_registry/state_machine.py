"""
GENERIC STATE MACHINE

A reusable state machine for entity status transitions with:
- Transition registration with handlers
- Transition validation
- Compare-and-swap status writes inside an existing unit of work
- Status history tracking
- Post-transition callbacks (audit)

Usage:
    machine = StateMachine("contract", collection="contracts")
    machine.register("pending", "approved", handle_approve)
    machine.register("pending", "rejected", handle_reject)

    # Execute transition (inside transaction)
    result = await machine.transition(store, doc, "approved", session=session, context={...})
"""

from typing import Dict, Any, Optional, Callable, Awaitable, List, Tuple
from datetime import datetime
import logging

from title_registry.errors import StateConflictError, TitleRegistryError
from title_registry.store import DocumentStore

logger = logging.getLogger(__name__)


# =============================================================================
# EXCEPTIONS
# =============================================================================

class InvalidTransitionError(StateConflictError):
    """Raised when attempting an unregistered state transition."""
    def __init__(self, entity: str, from_state: str, to_state: str, allowed: List[str] = None):
        self.entity = entity
        self.from_state = from_state
        self.to_state = to_state
        self.allowed = allowed or []

        allowed_str = f" Allowed transitions from '{from_state}': {self.allowed}" if self.allowed else ""
        message = f"Invalid transition for {entity}: '{from_state}' -> '{to_state}'.{allowed_str}"
        super().__init__(message, {"from_state": from_state, "to_state": to_state, "allowed": self.allowed})


class ConcurrentTransitionError(StateConflictError):
    """Raised when the status changed between read and compare-and-swap write."""
    def __init__(self, entity: str, entity_id: str, from_state: str, to_state: str):
        self.entity = entity
        self.entity_id = entity_id
        message = (
            f"{entity} {entity_id} is no longer '{from_state}'; "
            f"transition to '{to_state}' was not applied"
        )
        super().__init__(message, {"from_state": from_state, "to_state": to_state})


class TransitionHandlerError(TitleRegistryError):
    """Raised when a transition handler fails unexpectedly."""
    def __init__(self, entity: str, from_state: str, to_state: str, original_error: Exception):
        self.original_error = original_error
        message = f"Handler failed for {entity}: '{from_state}' -> '{to_state}': {str(original_error)}"
        super().__init__(message)


# =============================================================================
# TYPE DEFINITIONS
# =============================================================================

# Handler signature: async def handler(entity_doc, context, session) -> Dict[str, Any]
# The returned dict is written with the status change.
TransitionHandler = Callable[[Dict[str, Any], Dict[str, Any], Any], Awaitable[Dict[str, Any]]]

# Callback signature: async def callback(entity_doc, from_state, to_state, result, session)
TransitionCallback = Callable[[Dict[str, Any], str, str, Dict[str, Any], Any], Awaitable[None]]


async def _no_changes(entity_doc: Dict[str, Any], context: Dict[str, Any], session: Any) -> Dict[str, Any]:
    return {}


class Transition:
    """Definition of a state transition."""

    def __init__(
        self,
        from_state: str,
        to_state: str,
        handler: TransitionHandler,
        description: str = ""
    ):
        self.from_state = from_state
        self.to_state = to_state
        self.handler = handler
        self.description = description

# =============================================================================
# STATE MACHINE
# =============================================================================

class StateMachine:
    """
    State machine bound to one collection.

    A transition:
    1. validates the edge is registered
    2. runs the handler to compute the fields written with the new status
    3. writes status + fields + history entry with a filter on the current
       status, so a concurrent writer that got there first makes this one fail
    4. runs post-transition callbacks (errors are logged, never raised)
    """

    def __init__(
        self,
        entity_name: str,
        collection: str,
        status_field: str = "status",
        history_field: Optional[str] = "statusHistory"
    ):
        self.entity_name = entity_name
        self.collection = collection
        self.status_field = status_field
        self.history_field = history_field

        self._transitions: Dict[Tuple[str, str], Transition] = {}
        self._post_callbacks: List[TransitionCallback] = []

    # =========================================================================
    # REGISTRATION
    # =========================================================================

    def register(
        self,
        from_state: str,
        to_state: str,
        handler: Optional[TransitionHandler] = None,
        description: str = ""
    ) -> "StateMachine":
        """Register a state transition. Returns self for chaining."""
        key = (from_state, to_state)

        if key in self._transitions:
            logger.warning(
                f"[STATE_MACHINE] Overwriting transition {self.entity_name}: "
                f"'{from_state}' -> '{to_state}'"
            )

        self._transitions[key] = Transition(
            from_state=from_state,
            to_state=to_state,
            handler=handler or _no_changes,
            description=description
        )

        logger.debug(
            f"[STATE_MACHINE] Registered {self.entity_name}: "
            f"'{from_state}' -> '{to_state}' {description}"
        )

        return self

    def on_post_transition(self, callback: TransitionCallback) -> "StateMachine":
        """Register callback to run AFTER a successful status write."""
        self._post_callbacks.append(callback)
        return self

    # =========================================================================
    # VALIDATION
    # =========================================================================

    def get_allowed_transitions(self, from_state: str) -> List[str]:
        """Get list of valid target states from a given state."""
        return [dst for (src, dst) in self._transitions.keys() if src == from_state]

    def can_transition(self, from_state: str, to_state: str) -> bool:
        """Check if transition is registered."""
        return (from_state, to_state) in self._transitions

    def validate_transition(self, from_state: str, to_state: str) -> None:
        """Raise InvalidTransitionError if the edge is not registered."""
        if not self.can_transition(from_state, to_state):
            raise InvalidTransitionError(
                entity=self.entity_name,
                from_state=from_state,
                to_state=to_state,
                allowed=self.get_allowed_transitions(from_state)
            )

    # =========================================================================
    # TRANSITION EXECUTION
    # =========================================================================

    async def transition(
        self,
        store: DocumentStore,
        entity_doc: Dict[str, Any],
        to_state: str,
        session: Any = None,
        context: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        """
        Execute a state transition.

        Returns:
            Result dict with:
            - status: "success"
            - from_state / to_state
            - changes: fields written alongside the status
            - document: the entity as it looks after the write
            - transitioned_at

        Raises:
            InvalidTransitionError: edge not registered
            ConcurrentTransitionError: status changed since entity_doc was read
            TransitionHandlerError: handler raised an unexpected exception
        """
        context = context or {}
        from_state = entity_doc.get(self.status_field)
        entity_id = entity_doc["_id"]

        if from_state is None:
            raise StateConflictError(f"{self.entity_name} {entity_id} has no {self.status_field}")

        self.validate_transition(from_state, to_state)

        transition = self._transitions[(from_state, to_state)]

        try:
            changes = await transition.handler(entity_doc, context, session) or {}
        except TitleRegistryError:
            raise
        except Exception as e:
            logger.error(
                f"[STATE_MACHINE] Handler failed {self.entity_name}: "
                f"'{from_state}' -> '{to_state}': {e}"
            )
            raise TransitionHandlerError(self.entity_name, from_state, to_state, e)

        transitioned_at = datetime.utcnow()
        update: Dict[str, Any] = {
            "$set": {
                self.status_field: to_state,
                "updatedAt": transitioned_at,
                **changes
            }
        }
        if self.history_field:
            update["$push"] = {
                self.history_field: self.get_history_entry(
                    from_state, to_state, context.get("actor_id"), transitioned_at
                )
            }

        matched = await store.update_one(
            self.collection,
            {"_id": entity_id, self.status_field: from_state},
            update,
            session=session
        )
        if not matched:
            logger.warning(
                f"[STATE_MACHINE] Lost race on {self.entity_name} {entity_id}: "
                f"'{from_state}' -> '{to_state}'"
            )
            raise ConcurrentTransitionError(self.entity_name, entity_id, from_state, to_state)

        document = dict(entity_doc)
        document.update(update["$set"])

        result = {
            "status": "success",
            "from_state": from_state,
            "to_state": to_state,
            "changes": changes,
            "actor_id": context.get("actor_id"),
            "document": document,
            "transitioned_at": transitioned_at
        }

        for callback in self._post_callbacks:
            try:
                await callback(entity_doc, from_state, to_state, result, session)
            except Exception as e:
                logger.error(f"[STATE_MACHINE] Post-callback error: {e}")

        logger.info(
            f"[STATE_MACHINE] {self.entity_name} {entity_id}: "
            f"'{from_state}' -> '{to_state}'"
        )

        return result

    def get_history_entry(
        self,
        from_state: str,
        to_state: str,
        user_id: Optional[str] = None,
        at: Optional[datetime] = None
    ) -> Dict[str, Any]:
        return {
            "from_state": from_state,
            "to_state": to_state,
            "transitioned_at": at or datetime.utcnow(),
            "transitioned_by": user_id
        }
