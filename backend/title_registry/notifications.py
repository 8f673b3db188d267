"""
NOTIFICATION OUTBOX & DISPATCHER

Lifecycle commands never write user notifications directly. They enqueue
an intent into `notification_outbox` after their unit of work commits; a
dispatcher drains due intents into the user-facing `notifications` inbox.

RULES:
- enqueue never raises: a failure is logged and swallowed, the committed
  transition stands
- dispatch retries with exponential backoff, then marks the intent FAILED
- administrators are resolved through an explicit AdminRegistry, every
  administrator is addressed (no arbitrary single-admin lookup)
"""

from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional
import asyncio
import logging
import traceback

from title_registry.enums import NotificationType, UserRole
from title_registry.errors import NotFoundError
from title_registry.store import (
    DocumentStore,
    NOTIFICATION_OUTBOX,
    NOTIFICATIONS,
    USERS,
)

logger = logging.getLogger(__name__)


class OutboxStatus:
    PENDING = "PENDING"
    RETRYING = "RETRYING"
    DELIVERED = "DELIVERED"
    FAILED = "FAILED"


# =============================================================================
# ADMINISTRATOR REGISTRY
# =============================================================================

class AdminRegistry:
    """Resolves which users are administrators."""

    async def admin_ids(self) -> List[str]:
        raise NotImplementedError

    async def is_admin(self, user_id: Optional[str]) -> bool:
        return bool(user_id) and user_id in await self.admin_ids()


class StaticAdminRegistry(AdminRegistry):
    """Administrators configured explicitly (ADMIN_USER_IDS)."""

    def __init__(self, admin_ids: List[str]):
        self._admin_ids = list(admin_ids)

    async def admin_ids(self) -> List[str]:
        return list(self._admin_ids)


class UserRoleAdminRegistry(AdminRegistry):
    """Every active user with role=admin."""

    def __init__(self, store: DocumentStore):
        self.store = store

    async def admin_ids(self) -> List[str]:
        admins = await self.store.find(
            USERS,
            {"role": UserRole.ADMIN.value, "isActive": {"$ne": False}},
            sort=[("createdAt", 1)]
        )
        return [a["_id"] for a in admins]


# =============================================================================
# OUTBOX
# =============================================================================

class NotificationOutbox:
    """Queues notification intents. Fire-and-forget relative to the caller."""

    def __init__(self, store: DocumentStore, admins: AdminRegistry):
        self.store = store
        self.admins = admins

    async def enqueue(
        self,
        user_id: str,
        type: NotificationType,
        title: str,
        message: str,
        contract_id: Optional[str] = None,
        data: Optional[Dict[str, Any]] = None
    ) -> Optional[str]:
        """
        Queue one notification for one user.

        Returns the intent id, or None when the intent could not be stored.
        """
        try:
            intent_id = await self.store.insert_one(
                NOTIFICATION_OUTBOX,
                {
                    "userId": user_id,
                    "type": NotificationType(type).value,
                    "title": title,
                    "message": message,
                    "contractId": contract_id,
                    "data": data or {},
                    "status": OutboxStatus.PENDING,
                    "attempts": 0,
                    "nextAttemptAt": datetime.utcnow(),
                    "createdAt": datetime.utcnow(),
                    "lastError": None
                }
            )
            logger.info(f"[OUTBOX] Queued {NotificationType(type).value} for user:{user_id}")
            return intent_id
        except Exception as e:
            logger.error(f"[OUTBOX] Failed to queue notification for user:{user_id}: {str(e)}")
            return None

    async def enqueue_for_admins(
        self,
        type: NotificationType,
        title: str,
        message: str,
        contract_id: Optional[str] = None,
        data: Optional[Dict[str, Any]] = None
    ) -> List[str]:
        """Queue one notification per administrator."""
        try:
            admin_ids = await self.admins.admin_ids()
        except Exception as e:
            logger.error(f"[OUTBOX] Failed to resolve administrators: {str(e)}")
            return []

        if not admin_ids:
            logger.warning("[OUTBOX] No administrators registered; admin notification dropped")

        queued = []
        for admin_id in admin_ids:
            intent_id = await self.enqueue(admin_id, type, title, message, contract_id, data)
            if intent_id:
                queued.append(intent_id)
        return queued


# =============================================================================
# DISPATCHER
# =============================================================================

DeliveryHook = Callable[[Dict[str, Any]], Awaitable[None]]


class NotificationDispatcher:
    """
    Drains due outbox intents.

    Each intent is delivered into the inbox and, when configured, passed to
    an external delivery hook (SMS/push). A failing intent is retried with
    exponential backoff up to `max_attempts`.
    """

    def __init__(
        self,
        store: DocumentStore,
        max_attempts: int = 5,
        base_retry_delay: int = 60,
        batch_size: int = 100,
        delivery_hook: Optional[DeliveryHook] = None
    ):
        self.store = store
        self.max_attempts = max_attempts
        self.base_retry_delay = base_retry_delay
        self.batch_size = batch_size
        self.delivery_hook = delivery_hook
        self._task: Optional[asyncio.Task] = None

    async def drain(self, now: Optional[datetime] = None) -> Dict[str, int]:
        """Deliver every due intent once. Returns delivered/retried/failed counts."""
        now = now or datetime.utcnow()
        due = await self.store.find(
            NOTIFICATION_OUTBOX,
            {
                "status": {"$in": [OutboxStatus.PENDING, OutboxStatus.RETRYING]},
                "nextAttemptAt": {"$lte": now}
            },
            sort=[("createdAt", 1)],
            limit=self.batch_size
        )

        counts = {"delivered": 0, "retried": 0, "failed": 0}
        for intent in due:
            outcome = await self._dispatch(intent, now)
            counts[outcome] += 1

        if due:
            logger.info(
                f"[DISPATCH] Drained {len(due)} intents: delivered={counts['delivered']} "
                f"retried={counts['retried']} failed={counts['failed']}"
            )
        return counts

    async def _dispatch(self, intent: Dict[str, Any], now: datetime) -> str:
        try:
            await self._deliver(intent)
        except Exception as e:
            error_msg = str(e)
            attempts = intent.get("attempts", 0) + 1
            logger.error(f"[DISPATCH] Failed: {intent['_id']} - {error_msg}")
            logger.debug(traceback.format_exc())

            if attempts < self.max_attempts:
                delay = self.base_retry_delay * (2 ** (attempts - 1))
                await self.store.update_one(
                    NOTIFICATION_OUTBOX,
                    {"_id": intent["_id"]},
                    {
                        "$set": {
                            "status": OutboxStatus.RETRYING,
                            "attempts": attempts,
                            "lastError": error_msg,
                            "nextAttemptAt": now + timedelta(seconds=delay)
                        }
                    }
                )
                logger.info(f"[DISPATCH] Scheduled retry {attempts} for {intent['_id']} in {delay}s")
                return "retried"

            await self.store.update_one(
                NOTIFICATION_OUTBOX,
                {"_id": intent["_id"]},
                {
                    "$set": {
                        "status": OutboxStatus.FAILED,
                        "attempts": attempts,
                        "lastError": error_msg,
                        "failedAt": now
                    }
                }
            )
            return "failed"

        await self.store.update_one(
            NOTIFICATION_OUTBOX,
            {"_id": intent["_id"]},
            {
                "$set": {
                    "status": OutboxStatus.DELIVERED,
                    "attempts": intent.get("attempts", 0) + 1,
                    "deliveredAt": now
                }
            }
        )
        return "delivered"

    async def _deliver(self, intent: Dict[str, Any]) -> None:
        # The inbox id is the intent id, so a retried delivery cannot duplicate it
        existing = await self.store.find_one(NOTIFICATIONS, {"_id": intent["_id"]})
        if not existing:
            await self.store.insert_one(
                NOTIFICATIONS,
                {
                    "_id": intent["_id"],
                    "userId": intent["userId"],
                    "type": intent["type"],
                    "title": intent["title"],
                    "message": intent["message"],
                    "contractId": intent.get("contractId"),
                    "data": intent.get("data") or {},
                    "isRead": False,
                    "readAt": None,
                    "createdAt": intent.get("createdAt") or datetime.utcnow()
                }
            )

        if self.delivery_hook is not None:
            await self.delivery_hook(intent)

    # =========================================================================
    # BACKGROUND LOOP
    # =========================================================================

    def start(self, interval: float = 5.0) -> asyncio.Task:
        """Run drain() every `interval` seconds until stop()."""
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._run_forever(interval))
            logger.info(f"[DISPATCH] Started (interval={interval}s)")
        return self._task

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
            logger.info("[DISPATCH] Stopped")

    async def _run_forever(self, interval: float) -> None:
        while True:
            try:
                await self.drain()
            except Exception as e:
                logger.error(f"[DISPATCH] Drain cycle failed: {str(e)}")
            await asyncio.sleep(interval)


# =============================================================================
# INBOX
# =============================================================================

class NotificationInbox:
    """Read/acknowledge operations on delivered notifications."""

    def __init__(self, store: DocumentStore):
        self.store = store

    async def list_for_user(
        self,
        user_id: str,
        unread_only: bool = False,
        limit: int = 50
    ) -> List[Dict[str, Any]]:
        query: Dict[str, Any] = {"userId": user_id}
        if unread_only:
            query["isRead"] = False
        return await self.store.find(NOTIFICATIONS, query, sort=[("createdAt", -1)], limit=limit)

    async def unread_count(self, user_id: str) -> int:
        return await self.store.count_documents(NOTIFICATIONS, {"userId": user_id, "isRead": False})

    async def mark_read(self, notification_id: str, user_id: str) -> Dict[str, Any]:
        matched = await self.store.update_one(
            NOTIFICATIONS,
            {"_id": notification_id, "userId": user_id},
            {"$set": {"isRead": True, "readAt": datetime.utcnow()}}
        )
        if not matched:
            raise NotFoundError(f"Notification {notification_id} not found")
        return await self.store.find_one(NOTIFICATIONS, {"_id": notification_id})

    async def mark_all_read(self, user_id: str) -> int:
        return await self.store.update_many(
            NOTIFICATIONS,
            {"userId": user_id, "isRead": False},
            {"$set": {"isRead": True, "readAt": datetime.utcnow()}}
        )

    async def delete(self, notification_id: str) -> int:
        """Remove a notification and its outbox intent (they share the id)."""
        removed = await self.store.delete_one(NOTIFICATIONS, {"_id": notification_id})
        removed += await self.store.delete_one(NOTIFICATION_OUTBOX, {"_id": notification_id})
        if not removed:
            raise NotFoundError(f"Notification {notification_id} not found")
        logger.info(f"[INBOX] Notification {notification_id} deleted")
        return removed
