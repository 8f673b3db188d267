"""
Notification outbox, dispatcher and inbox.
"""
from datetime import datetime, timedelta

import pytest

from title_registry.enums import NotificationType
from title_registry.errors import AuthorizationError, NotFoundError, ValidationError
from title_registry.notifications import (
    NotificationDispatcher,
    NotificationInbox,
    NotificationOutbox,
    OutboxStatus,
    StaticAdminRegistry,
)
from title_registry.store import NOTIFICATION_OUTBOX, NOTIFICATIONS


@pytest.fixture
def outbox(store):
    return NotificationOutbox(store, StaticAdminRegistry(["admin-1", "admin-2"]))


@pytest.fixture
def inbox(store):
    return NotificationInbox(store)


class TestOutbox:
    """Queued intents"""

    async def test_enqueue_stores_pending_intent(self, store, outbox):
        intent_id = await outbox.enqueue("user-1", NotificationType.GENERAL, "عنوان", "رسالة", contract_id="c-1")

        intent = await store.find_one(NOTIFICATION_OUTBOX, {"_id": intent_id})
        assert intent["status"] == OutboxStatus.PENDING
        assert intent["attempts"] == 0
        assert intent["type"] == "general"
        assert intent["contractId"] == "c-1"

    async def test_enqueue_for_admins_addresses_every_admin(self, store, outbox):
        queued = await outbox.enqueue_for_admins(NotificationType.GENERAL, "عقد جديد", "رسالة")

        assert len(queued) == 2
        intents = await store.find(NOTIFICATION_OUTBOX, {})
        assert {i["userId"] for i in intents} == {"admin-1", "admin-2"}

    async def test_enqueue_swallows_store_failure(self, store, outbox):
        store.available = False
        assert await outbox.enqueue("user-1", NotificationType.ALERT, "t", "m") is None

    async def test_no_admins_queues_nothing(self, store):
        outbox = NotificationOutbox(store, StaticAdminRegistry([]))
        assert await outbox.enqueue_for_admins(NotificationType.GENERAL, "t", "m") == []


class TestDispatcher:
    """Draining intents into the inbox"""

    async def test_drain_delivers_into_inbox(self, store, outbox):
        intent_id = await outbox.enqueue("user-1", NotificationType.CONTRACT_APPROVED, "تمت الموافقة", "رسالة")
        dispatcher = NotificationDispatcher(store)

        counts = await dispatcher.drain()

        assert counts == {"delivered": 1, "retried": 0, "failed": 0}
        delivered = await store.find_one(NOTIFICATIONS, {"_id": intent_id})
        assert delivered["userId"] == "user-1"
        assert delivered["isRead"] is False
        intent = await store.find_one(NOTIFICATION_OUTBOX, {"_id": intent_id})
        assert intent["status"] == OutboxStatus.DELIVERED

    async def test_second_drain_delivers_nothing_new(self, store, outbox):
        await outbox.enqueue("user-1", NotificationType.GENERAL, "t", "m")
        dispatcher = NotificationDispatcher(store)

        await dispatcher.drain()
        counts = await dispatcher.drain()

        assert counts["delivered"] == 0
        assert await store.count_documents(NOTIFICATIONS, {}) == 1

    async def test_failing_delivery_backs_off_exponentially(self, store, outbox):
        async def failing_hook(intent):
            raise ConnectionError("sms gateway down")

        intent_id = await outbox.enqueue("user-1", NotificationType.GENERAL, "t", "m")
        dispatcher = NotificationDispatcher(store, base_retry_delay=60, delivery_hook=failing_hook)
        now = datetime.utcnow() + timedelta(seconds=1)

        counts = await dispatcher.drain(now=now)

        assert counts["retried"] == 1
        intent = await store.find_one(NOTIFICATION_OUTBOX, {"_id": intent_id})
        assert intent["status"] == OutboxStatus.RETRYING
        assert intent["attempts"] == 1
        assert intent["lastError"] == "sms gateway down"
        assert intent["nextAttemptAt"] == now + timedelta(seconds=60)

        # Not due yet
        assert (await dispatcher.drain(now=now + timedelta(seconds=30)))["retried"] == 0

        await dispatcher.drain(now=now + timedelta(seconds=61))
        intent = await store.find_one(NOTIFICATION_OUTBOX, {"_id": intent_id})
        assert intent["attempts"] == 2
        assert intent["nextAttemptAt"] == now + timedelta(seconds=61 + 120)

    async def test_marks_failed_after_max_attempts(self, store, outbox):
        async def failing_hook(intent):
            raise ConnectionError("sms gateway down")

        intent_id = await outbox.enqueue("user-1", NotificationType.GENERAL, "t", "m")
        dispatcher = NotificationDispatcher(store, max_attempts=3, base_retry_delay=1, delivery_hook=failing_hook)
        clock = datetime.utcnow() + timedelta(seconds=1)

        outcomes = []
        for _ in range(3):
            counts = await dispatcher.drain(now=clock)
            outcomes.append(counts)
            clock += timedelta(hours=1)

        assert [o["retried"] for o in outcomes] == [1, 1, 0]
        assert outcomes[-1]["failed"] == 1
        intent = await store.find_one(NOTIFICATION_OUTBOX, {"_id": intent_id})
        assert intent["status"] == OutboxStatus.FAILED
        assert intent["attempts"] == 3
        assert (await dispatcher.drain(now=clock))["failed"] == 0

    async def test_retry_after_hook_failure_does_not_duplicate_inbox_entry(self, store, outbox):
        calls = {"n": 0}

        async def flaky_hook(intent):
            calls["n"] += 1
            if calls["n"] == 1:
                raise ConnectionError("timeout")

        await outbox.enqueue("user-1", NotificationType.GENERAL, "t", "m")
        dispatcher = NotificationDispatcher(store, base_retry_delay=1, delivery_hook=flaky_hook)
        now = datetime.utcnow() + timedelta(seconds=1)

        await dispatcher.drain(now=now)
        counts = await dispatcher.drain(now=now + timedelta(seconds=5))

        assert counts["delivered"] == 1
        assert await store.count_documents(NOTIFICATIONS, {"userId": "user-1"}) == 1


class TestInbox:
    """Listing and acknowledging"""

    async def _deliver(self, store, outbox, user_id, count):
        for i in range(count):
            await outbox.enqueue(user_id, NotificationType.GENERAL, f"t{i}", "m")
        await NotificationDispatcher(store).drain()

    async def test_list_and_unread_count(self, store, outbox, inbox):
        await self._deliver(store, outbox, "user-1", 3)
        await self._deliver(store, outbox, "user-2", 1)

        assert len(await inbox.list_for_user("user-1")) == 3
        assert await inbox.unread_count("user-1") == 3
        assert await inbox.unread_count("user-2") == 1

    async def test_mark_read(self, store, outbox, inbox):
        await self._deliver(store, outbox, "user-1", 2)
        first = (await inbox.list_for_user("user-1"))[0]

        marked = await inbox.mark_read(first["_id"], "user-1")

        assert marked["isRead"] is True
        assert marked["readAt"] is not None
        assert await inbox.unread_count("user-1") == 1
        assert len(await inbox.list_for_user("user-1", unread_only=True)) == 1

    async def test_cannot_mark_someone_elses_notification(self, store, outbox, inbox):
        await self._deliver(store, outbox, "user-1", 1)
        notification = (await inbox.list_for_user("user-1"))[0]

        with pytest.raises(NotFoundError):
            await inbox.mark_read(notification["_id"], "user-2")

    async def test_mark_all_read(self, store, outbox, inbox):
        await self._deliver(store, outbox, "user-1", 3)

        assert await inbox.mark_all_read("user-1") == 3
        assert await inbox.unread_count("user-1") == 0

    async def test_delete_removes_notification_and_intent(self, store, outbox, inbox):
        await self._deliver(store, outbox, "user-1", 1)
        notification = (await inbox.list_for_user("user-1"))[0]

        await inbox.delete(notification["_id"])

        assert await inbox.list_for_user("user-1") == []
        assert await store.find_one(NOTIFICATION_OUTBOX, {"_id": notification["_id"]}) is None

    async def test_deleting_queued_intent_prevents_delivery(self, store, outbox, inbox):
        intent_id = await outbox.enqueue("user-1", NotificationType.GENERAL, "t", "m")

        await inbox.delete(intent_id)
        await NotificationDispatcher(store).drain()

        assert await inbox.list_for_user("user-1") == []

    async def test_delete_unknown(self, inbox):
        with pytest.raises(NotFoundError):
            await inbox.delete("ffffffffffffffffffffffff")


class TestEndToEndDelivery:
    """Lifecycle commands reach the inbox through the dispatcher"""

    async def test_approval_reaches_owner_inbox(self, service, owner, approved_contract):
        await service.dispatcher.drain()

        notifications = await service.inbox.list_for_user(owner["_id"])
        assert [n["type"] for n in notifications] == ["contract_approved"]
        assert notifications[0]["contractId"] == approved_contract["_id"]


class TestAdminNotifications:
    """Administrator-authored notifications"""

    async def test_send_defaults_to_general(self, service, store, admin, owner):
        intent_id = await service.send_admin_notification(admin["_id"], owner["_id"], None, " تنبيه ", "رسالة")

        intent = await store.find_one(NOTIFICATION_OUTBOX, {"_id": intent_id})
        assert intent["userId"] == owner["_id"]
        assert intent["type"] == "general"
        assert intent["title"] == "تنبيه"

    async def test_send_with_explicit_type(self, service, store, admin, owner):
        intent_id = await service.send_admin_notification(admin["_id"], owner["_id"], "reminder", "t", "m")
        assert (await store.find_one(NOTIFICATION_OUTBOX, {"_id": intent_id}))["type"] == "reminder"

    @pytest.mark.parametrize("title,message", [("", "m"), ("t", ""), (None, "m"), ("t", "   ")])
    async def test_missing_title_or_message(self, service, store, admin, owner, title, message):
        with pytest.raises(ValidationError):
            await service.send_admin_notification(admin["_id"], owner["_id"], "general", title, message)
        assert await store.count_documents(NOTIFICATION_OUTBOX, {"userId": owner["_id"]}) == 0

    async def test_unknown_type(self, service, admin, owner):
        with pytest.raises(ValidationError):
            await service.send_admin_notification(admin["_id"], owner["_id"], "broadcast", "t", "m")

    async def test_unknown_user(self, service, admin):
        with pytest.raises(NotFoundError):
            await service.send_admin_notification(admin["_id"], "ffffffffffffffffffffffff", "general", "t", "m")

    async def test_only_admins_send_or_delete(self, service, owner, registered_buyer):
        with pytest.raises(AuthorizationError):
            await service.send_admin_notification(owner["_id"], registered_buyer["_id"], "general", "t", "m")
        with pytest.raises(AuthorizationError):
            await service.delete_notification(owner["_id"], "ffffffffffffffffffffffff")

    async def test_delete_is_audited(self, service, store, admin, owner):
        intent_id = await service.send_admin_notification(admin["_id"], owner["_id"], "general", "t", "m")
        await service.dispatcher.drain()

        await service.delete_notification(admin["_id"], intent_id)

        assert await service.inbox.list_for_user(owner["_id"]) == []
        logs = await service.get_audit_logs(admin["_id"], entity_type="NOTIFICATION", entity_id=intent_id)
        assert sorted(log["action_type"] for log in logs) == ["CREATE", "DELETE"]
