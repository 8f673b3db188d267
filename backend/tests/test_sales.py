"""
Sale negotiation: initiate_sale atomicity and cancel_pending_payment.
"""
import pytest

from conftest import BUYER_PHONE, OWNER_PHONE, contract_fields
from title_registry import accounts as accounts_module
from title_registry.enums import PROPERTY_DESCRIPTOR_FIELDS
from title_registry.errors import (
    AuthorizationError,
    NotFoundError,
    StateConflictError,
    StoreUnavailableError,
    ValidationError,
)
from title_registry.security import verify_password
from title_registry.store import (
    CONTRACTS,
    IDEMPOTENCY_KEYS,
    NOTIFICATION_OUTBOX,
    TRANSACTIONS,
    USERS,
)


class TestInitiateSale:
    """Offer creation"""

    async def test_creates_derived_record_transaction_and_markers(self, service, activations, owner, registered_buyer, approved_contract):
        result = await service.initiate_sale(
            approved_contract["_id"], owner["_id"], "منى حسن إبراهيم", BUYER_PHONE, 550000
        )

        derived = await service.get_contract(result["buyerContract"]["_id"])
        txn = await service.get_transaction(result["transaction"]["_id"])
        original = await service.get_contract(approved_contract["_id"])

        assert derived["status"] == "sale_pending"
        assert derived["userId"] == registered_buyer["_id"]
        assert derived["sellerId"] == owner["_id"]
        assert derived["price"] == 550000
        assert derived["salePrice"] == 550000
        assert derived["contractNumber"] != original["contractNumber"]
        for field in PROPERTY_DESCRIPTOR_FIELDS:
            assert derived.get(field) == original.get(field)

        assert txn["contractId"] == derived["_id"]
        assert txn["fees"] == 300
        assert txn["totalAmount"] == 550300
        assert txn["status"] == "pending"

        assert original["status"] == "approved"
        assert original["pendingSale"] is True
        assert original["pendingBuyerId"] == registered_buyer["_id"]
        assert original["pendingTransactionId"] == txn["_id"]
        assert result["isNewUser"] is False
        assert "activationToken" not in result
        assert activations.tokens == {}

    async def test_amount_defaults_to_record_price(self, service, owner, registered_buyer, approved_contract):
        result = await service.initiate_sale(
            approved_contract["_id"], owner["_id"], "منى", BUYER_PHONE
        )
        assert result["transaction"]["amount"] == 500000
        assert result["transaction"]["totalAmount"] == 500300

    async def test_buyer_notified_with_payment_link(self, service, store, sale):
        txn_id = sale["transaction"]["_id"]
        intents = await store.find(NOTIFICATION_OUTBOX, {"userId": sale["transaction"]["buyerId"]})
        assert len(intents) == 1
        assert intents[0]["data"]["paymentLink"] == f"/paymentPage?transactionId={txn_id}"

    async def test_unknown_phone_provisions_inactive_temporary_buyer(self, service, store, activations, owner, approved_contract):
        result = await service.initiate_sale(
            approved_contract["_id"], owner["_id"], "مشتر جديد", "01055555555", 600000
        )

        buyer = await store.find_one(USERS, {"phoneNumber": "01055555555"})
        assert result["isNewUser"] is True
        assert "activationToken" not in result
        assert buyer["isTempUser"] is True
        assert buyer["credentialsActivated"] is False
        assert buyer["nationalId"].startswith("TEMP-")
        assert "activationToken" not in buyer
        token = activations.tokens[buyer["_id"]]
        assert buyer["activationTokenHash"] != token
        assert verify_password(token, buyer["activationTokenHash"])

    async def test_not_owner(self, service, registered_buyer, approved_contract):
        with pytest.raises(AuthorizationError):
            await service.initiate_sale(
                approved_contract["_id"], registered_buyer["_id"], "x", "01077777777", 1000
            )

    async def test_pending_record_not_sellable(self, service, owner, pending_contract):
        with pytest.raises(StateConflictError):
            await service.initiate_sale(pending_contract["_id"], owner["_id"], "x", BUYER_PHONE, 1000)

    async def test_unknown_record(self, service, owner):
        with pytest.raises(NotFoundError):
            await service.initiate_sale("ffffffffffffffffffffffff", owner["_id"], "x", BUYER_PHONE, 1000)

    async def test_second_offer_while_outstanding_conflicts(self, service, store, owner, sale, approved_contract):
        with pytest.raises(StateConflictError):
            await service.initiate_sale(approved_contract["_id"], owner["_id"], "x", "01077777777", 1000)
        assert await store.count_documents(TRANSACTIONS, {}) == 1

    async def test_seller_cannot_buy_own_record(self, service, owner, approved_contract):
        with pytest.raises(ValidationError):
            await service.initiate_sale(approved_contract["_id"], owner["_id"], "me", OWNER_PHONE, 1000)

    async def test_password_hashing_happens_outside_the_unit_of_work(self, service, store, owner, approved_contract, monkeypatch):
        original_hash = accounts_module.hash_password
        held = []

        def recording_hash(secret):
            held.append(store._tx_lock.locked())
            return original_hash(secret)

        monkeypatch.setattr(accounts_module, "hash_password", recording_hash)

        await service.initiate_sale(approved_contract["_id"], owner["_id"], "مشتر جديد", "01055555555", 550000)

        assert held == [False, False]

    @pytest.mark.parametrize("amount", [0, -100])
    async def test_non_positive_amount_rejected(self, service, store, owner, registered_buyer, approved_contract, amount):
        with pytest.raises(ValidationError):
            await service.initiate_sale(approved_contract["_id"], owner["_id"], "x", BUYER_PHONE, amount)
        assert await store.count_documents(TRANSACTIONS, {}) == 0


class TestInitiateSaleAtomicity:
    """All-or-nothing offer creation"""

    async def test_failure_after_derived_record_leaves_nothing(self, service, store, owner, approved_contract, monkeypatch):
        contracts_before = store.snapshot(CONTRACTS)
        users_before = store.snapshot(USERS)
        original_insert = store.insert_one

        async def failing_insert(collection, document, session=None):
            if collection == TRANSACTIONS:
                raise StoreUnavailableError("transactions collection unreachable")
            return await original_insert(collection, document, session=session)

        monkeypatch.setattr(store, "insert_one", failing_insert)

        with pytest.raises(StoreUnavailableError):
            await service.initiate_sale(
                approved_contract["_id"], owner["_id"], "مشتر جديد", "01055555555", 550000
            )

        assert store.snapshot(CONTRACTS) == contracts_before
        assert store.snapshot(USERS) == users_before
        assert store.snapshot(TRANSACTIONS) == []
        assert await store.count_documents(NOTIFICATION_OUTBOX, {"data.paymentLink": {"$exists": True}}) == 0

    async def test_retry_after_failure_succeeds(self, service, store, owner, registered_buyer, approved_contract, monkeypatch):
        original_update = store.update_one
        calls = {"n": 0}

        async def flaky_update(collection, query, update, session=None):
            if collection == CONTRACTS and "pendingSale" in update.get("$set", {}) and calls["n"] == 0:
                calls["n"] += 1
                raise StoreUnavailableError("primary stepped down")
            return await original_update(collection, query, update, session=session)

        monkeypatch.setattr(store, "update_one", flaky_update)

        with pytest.raises(StoreUnavailableError):
            await service.initiate_sale(approved_contract["_id"], owner["_id"], "x", BUYER_PHONE, 550000)
        result = await service.initiate_sale(approved_contract["_id"], owner["_id"], "x", BUYER_PHONE, 550000)

        assert await store.count_documents(TRANSACTIONS, {}) == 1
        assert await store.count_documents(CONTRACTS, {"status": "sale_pending"}) == 1
        assert result["transaction"]["totalAmount"] == 550300


class TestInitiateSaleIdempotency:
    """operation_id replays"""

    async def test_repeated_operation_id_returns_first_result(self, service, store, owner, registered_buyer, approved_contract):
        first = await service.initiate_sale(
            approved_contract["_id"], owner["_id"], "x", BUYER_PHONE, 550000, operation_id="op-1"
        )
        second = await service.initiate_sale(
            approved_contract["_id"], owner["_id"], "x", BUYER_PHONE, 550000, operation_id="op-1"
        )

        assert second["transaction"]["_id"] == first["transaction"]["_id"]
        assert await store.count_documents(TRANSACTIONS, {}) == 1
        assert await store.count_documents(IDEMPOTENCY_KEYS, {"operation_id": "op-1"}) == 1

    async def test_failed_attempt_records_no_key(self, service, store, owner, approved_contract):
        with pytest.raises(ValidationError):
            await service.initiate_sale(
                approved_contract["_id"], owner["_id"], "x", BUYER_PHONE, -1, operation_id="op-2"
            )
        assert await store.count_documents(IDEMPOTENCY_KEYS, {}) == 0

    async def test_operation_id_reused_on_another_record_conflicts(self, service, store, admin, owner, registered_buyer, approved_contract):
        second = await service.submit(owner["_id"], contract_fields(propertyNumber="P-2002"))
        await service.approve(second["_id"], admin["_id"])
        first = await service.initiate_sale(
            approved_contract["_id"], owner["_id"], "x", BUYER_PHONE, 550000, operation_id="op-1"
        )

        with pytest.raises(StateConflictError):
            await service.initiate_sale(second["_id"], owner["_id"], "x", BUYER_PHONE, 700000, operation_id="op-1")

        assert await store.count_documents(TRANSACTIONS, {}) == 1
        untouched = await service.get_contract(second["_id"])
        assert untouched["pendingSale"] is not True
        assert first["transaction"]["originalContractId"] == approved_contract["_id"]

    async def test_operation_id_replay_needs_the_owner(self, service, registered_buyer, owner, approved_contract):
        await service.initiate_sale(
            approved_contract["_id"], owner["_id"], "x", BUYER_PHONE, 550000, operation_id="op-1"
        )
        with pytest.raises(AuthorizationError):
            await service.initiate_sale(
                approved_contract["_id"], registered_buyer["_id"], "x", "01077777777", 550000, operation_id="op-1"
            )

    async def test_replay_does_not_resend_activation(self, service, activations, owner, approved_contract):
        first = await service.initiate_sale(
            approved_contract["_id"], owner["_id"], "جديد", "01055555555", 550000, operation_id="op-3"
        )
        token = activations.tokens[first["transaction"]["buyerId"]]

        second = await service.initiate_sale(
            approved_contract["_id"], owner["_id"], "جديد", "01055555555", 550000, operation_id="op-3"
        )

        assert second["transaction"]["_id"] == first["transaction"]["_id"]
        assert activations.tokens[first["transaction"]["buyerId"]] == token


class TestCancelPendingPayment:
    """Buyer withdraws from a pending purchase"""

    async def test_deletes_derived_record_and_cancels_transaction(self, service, store, owner, registered_buyer, sale, approved_contract):
        derived_id = sale["buyerContract"]["_id"]

        result = await service.cancel_pending_payment(derived_id, registered_buyer["_id"])

        assert result["cancelled"] is True
        assert await store.find_one(CONTRACTS, {"_id": derived_id}) is None
        txn = await service.get_transaction(sale["transaction"]["_id"])
        assert txn["status"] == "cancelled"
        assert txn["notes"] == "cancelled by buyer"
        original = await service.get_contract(approved_contract["_id"])
        assert original["status"] == "approved"
        assert original["pendingSale"] is False
        assert original["pendingTransactionId"] is None

        alerts = await store.find(NOTIFICATION_OUTBOX, {"userId": owner["_id"], "type": "alert"})
        assert len(alerts) == 1

    async def test_only_buyer_can_cancel(self, service, owner, sale):
        with pytest.raises(AuthorizationError):
            await service.cancel_pending_payment(sale["buyerContract"]["_id"], owner["_id"])

    async def test_cancel_twice(self, service, registered_buyer, sale):
        await service.cancel_pending_payment(sale["buyerContract"]["_id"], registered_buyer["_id"])
        with pytest.raises(NotFoundError):
            await service.cancel_pending_payment(sale["buyerContract"]["_id"], registered_buyer["_id"])

    async def test_record_can_be_offered_again_after_cancel(self, service, owner, registered_buyer, sale, approved_contract):
        await service.cancel_pending_payment(sale["buyerContract"]["_id"], registered_buyer["_id"])
        again = await service.initiate_sale(approved_contract["_id"], owner["_id"], "x", BUYER_PHONE, 560000)
        assert again["transaction"]["totalAmount"] == 560300
