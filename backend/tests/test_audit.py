"""
Audit trail entries and the financial delete guard.
"""
import pytest

from title_registry.audit import AuditTrail
from title_registry.errors import AuthorizationError
from title_registry.store import AUDIT_LOGS


class TestAuditTrail:
    """Insert-only log"""

    async def test_entries_newest_first(self, store):
        audit = AuditTrail(store)
        await audit.log_action("CONTRACT", "c-1", "CREATE", "u-1", new_value={"status": "pending"})
        await audit.log_action("CONTRACT", "c-1", "PENDING_TO_APPROVED", "u-2")

        logs = await audit.get_audit_logs(entity_type="CONTRACT", entity_id="c-1")
        assert [log["action_type"] for log in logs] == ["PENDING_TO_APPROVED", "CREATE"]

    async def test_transaction_delete_refused(self, store):
        audit = AuditTrail(store)
        with pytest.raises(AuthorizationError):
            await audit.log_action("TRANSACTION", "t-1", "DELETE", "u-1")
        assert await store.count_documents(AUDIT_LOGS, {}) == 0

    async def test_payment_details_kept_out_of_transition_entries(self, service, store, registered_buyer, sale):
        await service.pay(sale["transaction"]["_id"], registered_buyer["_id"], "bank_transfer", {"cardNumber": "4111111111111234"})

        logs = await store.find(AUDIT_LOGS, {"entity_id": sale["transaction"]["_id"], "action_type": "PENDING_TO_PAID"})
        assert len(logs) == 1
        assert "paymentDetails" not in logs[0]["new_value_json"]
        assert logs[0]["user_id"] == registered_buyer["_id"]
