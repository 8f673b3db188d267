"""
TRANSACTION SETTLEMENT ENGINE

Drives a sale transaction through payment and confirmation.

STATE GRAPH:
    pending -> paid -> completed
    pending -> cancelled
    paid    -> cancelled

confirm() is the only operation that mutates two ownership records. In one
unit of work it:
1. completes the transaction (totalAmount is never recomputed)
2. moves the buyer-side derived record to `completed`
3. resolves the seller-side original record and moves it to `sold`

SELLER-SIDE RESOLUTION:
- candidates: same propertyNumber, owned by the seller, status approved/for_sale/sold
- `sold` candidates are ignored
- a candidate whose pendingTransactionId is this transaction wins
- else the most recently created remaining candidate
- else fallback on (pendingTransactionId, seller)
- else the seller side is skipped with a warning; the rest still commits
"""

from datetime import datetime
from typing import Any, Dict, List, Optional
import logging

from title_registry.accounts import UserAccounts
from title_registry.audit import AuditTrail
from title_registry.enums import (
    ContractStatus,
    NotificationType,
    PaymentStatus,
    SELLABLE_STATUSES,
    TransactionStatus,
)
from title_registry.errors import AuthorizationError, NotFoundError, StateConflictError
from title_registry.idempotency import IdempotencyKeys
from title_registry.lifecycle import TitleLifecycleController
from title_registry.notifications import NotificationOutbox
from title_registry.schemas import sanitize_payment_details
from title_registry.state_machine import StateMachine
from title_registry.store import CONTRACTS, DocumentStore, TRANSACTIONS, USERS

logger = logging.getLogger(__name__)

PENDING_MARKERS_CLEARED = {
    "pendingSale": False,
    "pendingBuyerId": None,
    "pendingTransactionId": None
}


# =============================================================================
# TRANSITION HANDLERS
# =============================================================================

async def _on_paid(txn: Dict[str, Any], context: Dict[str, Any], session: Any) -> Dict[str, Any]:
    return {
        "paymentMethod": context["paymentMethod"],
        "paymentDetails": context["paymentDetails"],
        "paidAt": datetime.utcnow()
    }


async def _on_completed(txn: Dict[str, Any], context: Dict[str, Any], session: Any) -> Dict[str, Any]:
    return {"completedAt": datetime.utcnow()}


async def _on_cancelled(txn: Dict[str, Any], context: Dict[str, Any], session: Any) -> Dict[str, Any]:
    return {
        "notes": context.get("notes"),
        "cancelledAt": datetime.utcnow()
    }


def build_transaction_machine(audit: Optional[AuditTrail] = None) -> StateMachine:
    machine = StateMachine("transaction", collection=TRANSACTIONS)
    P, PD = TransactionStatus.PENDING.value, TransactionStatus.PAID.value
    C, X = TransactionStatus.COMPLETED.value, TransactionStatus.CANCELLED.value

    machine.register(P, PD, _on_paid, description="Buyer pays")
    machine.register(PD, C, _on_completed, description="Seller confirms receipt")
    machine.register(P, X, _on_cancelled, description="Seller rejects or buyer cancels before payment")
    machine.register(PD, X, _on_cancelled, description="Seller rejects or buyer cancels after payment")

    if audit is not None:
        machine.on_post_transition(audit.transition_callback("TRANSACTION"))
    return machine


async def clear_pending_markers(
    store: DocumentStore,
    transaction: Dict[str, Any],
    session: Any
) -> int:
    """Clear the offer markers on the seller's original record."""
    query: Dict[str, Any] = {"userId": transaction["sellerId"], "pendingTransactionId": transaction["_id"]}
    if transaction.get("originalContractId"):
        query = {
            "$or": [
                query,
                {"_id": transaction["originalContractId"], "pendingTransactionId": transaction["_id"]}
            ]
        }
    return await store.update_one(
        CONTRACTS,
        query,
        {"$set": {**PENDING_MARKERS_CLEARED, "updatedAt": datetime.utcnow()}},
        session=session
    )


class TransactionSettlementEngine:
    """pay / confirm / reject on sale transactions."""

    def __init__(
        self,
        store: DocumentStore,
        accounts: UserAccounts,
        lifecycle: TitleLifecycleController,
        outbox: NotificationOutbox,
        audit: AuditTrail,
        idempotency: IdempotencyKeys
    ):
        self.store = store
        self.accounts = accounts
        self.lifecycle = lifecycle
        self.outbox = outbox
        self.audit = audit
        self.idempotency = idempotency
        self.machine = build_transaction_machine(audit)

    # =========================================================================
    # READS
    # =========================================================================

    async def get_transaction(
        self,
        transaction_id: str,
        user_id: Optional[str] = None,
        session: Any = None
    ) -> Dict[str, Any]:
        """Fetch a transaction. With `user_id`, the caller must be its buyer or seller."""
        txn = await self.store.find_one(TRANSACTIONS, {"_id": transaction_id}, session=session)
        if not txn:
            raise NotFoundError(f"Transaction {transaction_id} not found")
        if user_id is not None and user_id not in (txn.get("buyerId"), txn.get("sellerId")):
            raise AuthorizationError("Not a party to this transaction")
        return txn

    async def list_transactions_for_user(self, user_id: str) -> List[Dict[str, Any]]:
        return await self.store.find(
            TRANSACTIONS,
            {"$or": [{"sellerId": user_id}, {"buyerId": user_id}]},
            sort=[("createdAt", -1)]
        )

    # =========================================================================
    # PAY
    # =========================================================================

    async def pay(
        self,
        transaction_id: str,
        buyer_id: str,
        method: str,
        details: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        """pending -> paid. Mirrors paymentStatus=paid onto the derived record."""
        payment = sanitize_payment_details(method, details)
        await self.accounts.require_active_account(buyer_id)

        async with self.store.transaction() as session:
            txn = await self.get_transaction(transaction_id, session=session)
            if txn.get("buyerId") != buyer_id:
                raise AuthorizationError("Only the buyer can pay this transaction")

            result = await self.machine.transition(
                self.store,
                txn,
                TransactionStatus.PAID.value,
                session=session,
                context={"actor_id": buyer_id, **payment}
            )
            await self.store.update_one(
                CONTRACTS,
                {"_id": txn["contractId"]},
                {"$set": {"paymentStatus": PaymentStatus.PAID.value, "updatedAt": datetime.utcnow()}},
                session=session
            )

        paid = result["document"]
        logger.info(f"[SETTLEMENT] Transaction {transaction_id} paid by user:{buyer_id} via {paid['paymentMethod']}")

        buyer = await self.store.find_one(USERS, {"_id": buyer_id})
        await self.outbox.enqueue(
            paid["sellerId"],
            NotificationType.GENERAL,
            "تم الدفع",
            f"قام المشتري {(buyer or {}).get('fullName', '')} بدفع مبلغ {paid['totalAmount']:,.0f} جنيه",
            contract_id=paid["contractId"],
            data={"transactionId": transaction_id}
        )
        await self.accounts.touch_activity(buyer_id)
        return paid

    # =========================================================================
    # CONFIRM
    # =========================================================================

    async def confirm(
        self,
        transaction_id: str,
        seller_id: str,
        operation_id: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        paid -> completed, finalizing both ownership records in one unit of work.

        A repeated `operation_id` returns the first result without re-applying.
        """
        await self.accounts.require_active_account(seller_id)

        async with self.store.transaction() as session:
            txn = await self.get_transaction(transaction_id, session=session)
            if txn.get("sellerId") != seller_id:
                raise AuthorizationError("Only the seller can confirm this transaction")

            previous = await self.idempotency.lookup(
                operation_id, "CONFIRM_TRANSACTION", seller_id, transaction_id, session=session
            )
            if previous is not None:
                return previous

            derived = await self.store.find_one(CONTRACTS, {"_id": txn["contractId"]}, session=session)
            if not derived:
                raise StateConflictError(f"Buyer-side contract for transaction {transaction_id} no longer exists")

            completed = await self.machine.transition(
                self.store,
                txn,
                TransactionStatus.COMPLETED.value,
                session=session,
                context={"actor_id": seller_id}
            )
            buyer_contract = await self.lifecycle.complete_derived_record(
                derived, seller_id=seller_id, actor_id=seller_id, session=session
            )

            seller_contract = None
            original = await self._resolve_seller_record(txn, derived, session)
            if original:
                seller_contract = await self.lifecycle.mark_sold(
                    original, buyer_id=txn["buyerId"], actor_id=seller_id, session=session
                )
            else:
                logger.warning(
                    f"[SETTLEMENT] No seller-side contract found for transaction {transaction_id}; "
                    f"seller side skipped"
                )

            response = {
                "transaction": completed["document"],
                "buyerContract": buyer_contract,
                "sellerContract": seller_contract
            }
            await self.idempotency.record(
                operation_id, "CONFIRM_TRANSACTION", seller_id, transaction_id, response, session=session
            )

        logger.info(
            f"[SETTLEMENT] Transaction {transaction_id} completed; "
            f"{buyer_contract['contractNumber']} -> completed, "
            f"{seller_contract['contractNumber'] if seller_contract else 'no seller record'} -> sold"
        )

        await self.outbox.enqueue(
            txn["buyerId"],
            NotificationType.CONTRACT_APPROVED,
            "تم اكتمال عملية الشراء",
            "تم تأكيد استلام المبلغ وأصبح العقار ملكك الآن",
            contract_id=buyer_contract["_id"],
            data={"transactionId": transaction_id}
        )
        await self.accounts.touch_activity(seller_id)
        return response

    async def _resolve_seller_record(
        self,
        txn: Dict[str, Any],
        derived: Dict[str, Any],
        session: Any
    ) -> Optional[Dict[str, Any]]:
        candidates = await self.store.find(
            CONTRACTS,
            {
                "propertyNumber": derived.get("propertyNumber"),
                "userId": txn["sellerId"],
                "status": {"$in": [
                    ContractStatus.APPROVED.value,
                    ContractStatus.FOR_SALE.value,
                    ContractStatus.SOLD.value
                ]}
            },
            session=session,
            sort=[("createdAt", -1)]
        )
        live = [c for c in candidates if c["status"] in SELLABLE_STATUSES]

        for candidate in live:
            if candidate.get("pendingTransactionId") == txn["_id"]:
                return candidate
        if live:
            if len(live) > 1:
                logger.warning(
                    f"[SETTLEMENT] {len(live)} seller-side candidates for property "
                    f"{derived.get('propertyNumber')}; using most recent {live[0]['_id']}"
                )
            return live[0]

        fallback = await self.store.find_one(
            CONTRACTS,
            {"pendingTransactionId": txn["_id"], "userId": txn["sellerId"]},
            session=session
        )
        if fallback and fallback["status"] in SELLABLE_STATUSES:
            logger.info(f"[SETTLEMENT] Seller-side contract {fallback['_id']} found by pendingTransactionId")
            return fallback
        return None

    # =========================================================================
    # REJECT
    # =========================================================================

    async def reject_payment(
        self,
        transaction_id: str,
        seller_id: str,
        reason: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        pending|paid -> cancelled.

        Deletes the derived buyer-side record and clears the offer markers on
        the seller's original record. The original record's status is untouched.
        """
        await self.accounts.require_active_account(seller_id)

        async with self.store.transaction() as session:
            txn = await self.get_transaction(transaction_id, session=session)
            if txn.get("sellerId") != seller_id:
                raise AuthorizationError("Only the seller can reject this payment")

            result = await self.machine.transition(
                self.store,
                txn,
                TransactionStatus.CANCELLED.value,
                session=session,
                context={"actor_id": seller_id, "notes": reason}
            )
            await self.store.delete_one(CONTRACTS, {"_id": txn["contractId"]}, session=session)
            await clear_pending_markers(self.store, txn, session)
            await self.audit.log_action(
                entity_type="CONTRACT",
                entity_id=txn["contractId"],
                action_type="DELETE",
                user_id=seller_id,
                old_value={"status": ContractStatus.SALE_PENDING.value},
                new_value={"reason": reason},
                session=session
            )

        cancelled = result["document"]
        logger.info(f"[SETTLEMENT] Transaction {transaction_id} rejected by seller:{seller_id}")

        await self.outbox.enqueue(
            cancelled["buyerId"],
            NotificationType.CONTRACT_REJECTED,
            "تم رفض الدفع",
            f"تم رفض عملية الدفع. السبب: {reason}" if reason else "تم رفض عملية الدفع.",
            contract_id=cancelled["contractId"]
        )
        await self.accounts.touch_activity(seller_id)
        return cancelled
