"""
SALE NEGOTIATION MANAGER

initiate_sale turns an offer from the owner of an approved/for_sale record
into, within ONE unit of work:
- a buyer account (looked up by phone, or provisioned as a temporary account)
- a derived buyer-side record in `sale_pending` copying the property descriptor
- exactly one pending transaction (totalAmount = amount + fees)
- pending-sale markers on the original record (its status is unchanged)
- an idempotency record and audit entries

A failure at any step rolls every write back. The buyer is notified with a
payment link after commit.

cancel_pending_payment is the buyer's compensation path: the derived record is
deleted, the transaction cancelled and the original's markers cleared, again
as one unit of work.
"""

from datetime import datetime
from typing import Any, Dict, Optional
import logging

from title_registry.accounts import UserAccounts
from title_registry.activation import ActivationSender, UnconfiguredActivationSender
from title_registry.audit import AuditTrail
from title_registry.config import RegistryConfig
from title_registry.contract_numbering import ContractNumbering
from title_registry.enums import (
    ContractStatus,
    NotificationType,
    PaymentStatus,
    PROPERTY_DESCRIPTOR_FIELDS,
    SELLABLE_STATUSES,
    TransactionStatus,
)
from title_registry.errors import (
    AuthorizationError,
    DuplicateKeyError,
    NotFoundError,
    StateConflictError,
    StoreUnavailableError,
    ValidationError,
)
from title_registry.idempotency import IdempotencyKeys
from title_registry.money import calculate_transaction_amounts
from title_registry.notifications import NotificationOutbox
from title_registry.settlement import build_transaction_machine, clear_pending_markers
from title_registry.store import CONTRACTS, DocumentStore, TRANSACTIONS

logger = logging.getLogger(__name__)


class SaleNegotiationManager:
    """Creates and withdraws sale offers."""

    def __init__(
        self,
        store: DocumentStore,
        config: RegistryConfig,
        accounts: UserAccounts,
        numbering: ContractNumbering,
        outbox: NotificationOutbox,
        audit: AuditTrail,
        idempotency: IdempotencyKeys,
        activation_sender: Optional[ActivationSender] = None
    ):
        self.store = store
        self.config = config
        self.accounts = accounts
        self.numbering = numbering
        self.outbox = outbox
        self.audit = audit
        self.idempotency = idempotency
        self.activation_sender = activation_sender or UnconfiguredActivationSender()
        self.transaction_machine = build_transaction_machine(audit)

    def payment_link(self, transaction_id: str) -> str:
        return self.config.payment_link_template.format(transaction_id=transaction_id)

    # =========================================================================
    # INITIATE
    # =========================================================================

    async def initiate_sale(
        self,
        record_id: str,
        seller_id: str,
        buyer_name: str,
        buyer_phone: str,
        amount: Optional[float] = None,
        operation_id: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Offer an approved/for_sale record to a buyer identified by phone.

        Returns:
            {
                "transaction": ...,
                "buyerContract": ...,
                "isNewUser": bool
            }

        A provisioned buyer's activation token goes to the activation sender
        after commit and is not part of the result.

        Raises:
            NotFoundError: unknown record
            AuthorizationError: caller is not the owner
            StateConflictError: record not sellable, or an offer is already outstanding
            ValidationError: bad amount, missing buyer phone, buyer is the seller
        """
        seller = await self.accounts.require_active_account(seller_id)
        if not buyer_phone or not str(buyer_phone).strip():
            raise ValidationError("Buyer phone number is required")
        if seller.get("phoneNumber") and str(buyer_phone).strip().replace(" ", "") == seller["phoneNumber"]:
            raise ValidationError("Buyer cannot be the seller")

        # Hash outside the unit of work; only used if the buyer is still unknown inside it
        credentials = None
        if await self.accounts.find_by_phone(buyer_phone) is None:
            credentials = self.accounts.issue_temporary_credentials()

        activation_token = None
        async with self.store.transaction() as session:
            contract = await self.store.find_one(CONTRACTS, {"_id": record_id}, session=session)
            if not contract:
                raise NotFoundError(f"Contract {record_id} not found")
            if contract.get("userId") != seller_id:
                raise AuthorizationError("Only the owner can sell this contract")

            previous = await self.idempotency.lookup(
                operation_id, "INITIATE_SALE", seller_id, record_id, session=session
            )
            if previous is not None:
                return previous

            if contract.get("status") not in SELLABLE_STATUSES:
                raise StateConflictError(
                    f"Contract {contract.get('contractNumber')} is '{contract.get('status')}' and not available for sale"
                )
            if contract.get("pendingSale"):
                raise StateConflictError(
                    f"Contract {contract.get('contractNumber')} already has an outstanding offer"
                )

            sale_amount = amount if amount is not None else contract.get("price")
            amounts = calculate_transaction_amounts(sale_amount, self.config.transaction_fee)

            buyer = await self.accounts.find_by_phone(buyer_phone, session=session)
            is_new_user = buyer is None
            if buyer is None:
                credentials = credentials or self.accounts.issue_temporary_credentials()
                buyer = await self.accounts.provision_temporary_buyer(
                    buyer_name, buyer_phone, credentials=credentials, session=session
                )
                activation_token = credentials["activationToken"]
            elif buyer["_id"] == seller_id:
                raise ValidationError("Buyer cannot be the seller")

            now = datetime.utcnow()
            derived = {
                "userId": buyer["_id"],
                "sellerId": seller_id,
                "buyerId": buyer["_id"],
                "fullName": (buyer_name or "").strip() or buyer.get("fullName"),
                "nationalId": buyer.get("nationalId"),
                "phoneNumber": buyer.get("phoneNumber"),
                **{field: contract.get(field) for field in PROPERTY_DESCRIPTOR_FIELDS},
                "price": amounts["amount"],
                "salePrice": amounts["amount"],
                "status": ContractStatus.SALE_PENDING.value,
                "paymentStatus": PaymentStatus.PENDING.value,
                "originalContractId": contract["_id"],
                "pendingSale": False,
                "pendingBuyerId": None,
                "pendingTransactionId": None,
                "statusHistory": [],
                "createdAt": now,
                "updatedAt": now
            }
            derived["contractNumber"] = await self.numbering.generate(session=session)
            try:
                derived["_id"] = await self.store.insert_one(CONTRACTS, derived, session=session)
            except DuplicateKeyError:
                raise StoreUnavailableError("Contract number collision, retry the sale")

            transaction = {
                "contractId": derived["_id"],
                "originalContractId": contract["_id"],
                "sellerId": seller_id,
                "buyerId": buyer["_id"],
                **amounts,
                "status": TransactionStatus.PENDING.value,
                "paymentMethod": None,
                "paymentDetails": None,
                "notes": None,
                "statusHistory": [],
                "paidAt": None,
                "completedAt": None,
                "createdAt": now,
                "updatedAt": now
            }
            transaction["_id"] = await self.store.insert_one(TRANSACTIONS, transaction, session=session)

            marked = await self.store.update_one(
                CONTRACTS,
                {"_id": contract["_id"], "status": contract["status"], "pendingSale": {"$ne": True}},
                {
                    "$set": {
                        "pendingSale": True,
                        "pendingBuyerId": buyer["_id"],
                        "pendingTransactionId": transaction["_id"],
                        "updatedAt": now
                    }
                },
                session=session
            )
            if not marked:
                raise StateConflictError(
                    f"Contract {contract.get('contractNumber')} changed while the sale was being initiated"
                )

            await self.audit.log_action(
                entity_type="CONTRACT",
                entity_id=contract["_id"],
                action_type="SALE_INITIATED",
                user_id=seller_id,
                old_value={"pendingSale": False},
                new_value={"pendingBuyerId": buyer["_id"], "pendingTransactionId": transaction["_id"]},
                session=session
            )
            await self.audit.log_action(
                entity_type="TRANSACTION",
                entity_id=transaction["_id"],
                action_type="CREATE",
                user_id=seller_id,
                new_value={"totalAmount": transaction["totalAmount"], "contractId": derived["_id"]},
                session=session
            )

            response = {
                "transaction": transaction,
                "buyerContract": derived,
                "isNewUser": is_new_user
            }
            await self.idempotency.record(
                operation_id, "INITIATE_SALE", seller_id, contract["_id"], response, session=session
            )

        logger.info(
            f"[SALE] Contract {contract['contractNumber']} offered to user:{buyer['_id']} "
            f"for {transaction['totalAmount']} (transaction {transaction['_id']})"
        )

        await self.outbox.enqueue(
            buyer["_id"],
            NotificationType.GENERAL,
            "طلب شراء عقار",
            f"قام البائع {contract.get('fullName')} بإرسال طلب شراء عقار {contract.get('propertyType')} إليك. يرجى إتمام الدفع",
            contract_id=derived["_id"],
            data={
                "transactionId": transaction["_id"],
                "amount": transaction["totalAmount"],
                "paymentLink": self.payment_link(transaction["_id"]),
                "sellerName": contract.get("fullName")
            }
        )
        if activation_token:
            await self.activation_sender.send(buyer, activation_token)
        await self.accounts.touch_activity(seller_id)
        return response

    # =========================================================================
    # CANCEL
    # =========================================================================

    async def cancel_pending_payment(self, record_id: str, buyer_id: str) -> Dict[str, Any]:
        """
        Withdraw from a pending purchase.

        Legal only for the buyer of a `sale_pending` derived record. The derived
        record is deleted, not transitioned.
        """
        await self.accounts.require_active_account(buyer_id)

        async with self.store.transaction() as session:
            derived = await self.store.find_one(CONTRACTS, {"_id": record_id}, session=session)
            if not derived:
                raise NotFoundError(f"Contract {record_id} not found")
            if derived.get("userId") != buyer_id:
                raise AuthorizationError("Only the buyer can cancel this payment")
            if derived.get("status") != ContractStatus.SALE_PENDING.value:
                raise StateConflictError(f"Contract {derived.get('contractNumber')} is not awaiting payment")

            deleted = await self.store.delete_one(
                CONTRACTS,
                {"_id": record_id, "status": ContractStatus.SALE_PENDING.value},
                session=session
            )
            if not deleted:
                raise StateConflictError(f"Contract {derived.get('contractNumber')} is not awaiting payment")

            txn = await self.store.find_one(
                TRANSACTIONS,
                {
                    "contractId": record_id,
                    "status": {"$in": [TransactionStatus.PENDING.value, TransactionStatus.PAID.value]}
                },
                session=session
            )
            if txn:
                await self.transaction_machine.transition(
                    self.store,
                    txn,
                    TransactionStatus.CANCELLED.value,
                    session=session,
                    context={"actor_id": buyer_id, "notes": "cancelled by buyer"}
                )
                await clear_pending_markers(self.store, txn, session)

            await self.audit.log_action(
                entity_type="CONTRACT",
                entity_id=record_id,
                action_type="DELETE",
                user_id=buyer_id,
                old_value={"status": derived["status"], "contractNumber": derived.get("contractNumber")},
                session=session
            )

        logger.info(f"[SALE] Buyer user:{buyer_id} cancelled pending payment on {derived.get('contractNumber')}")

        if derived.get("sellerId"):
            await self.outbox.enqueue(
                derived["sellerId"],
                NotificationType.ALERT,
                "تم إلغاء عملية الدفع",
                f"قام المشتري بإلغاء عملية دفع العقار {derived.get('propertyType')}",
                contract_id=record_id
            )
        await self.accounts.touch_activity(buyer_id)
        return {
            "cancelled": True,
            "contractId": record_id,
            "transactionId": txn["_id"] if txn else None
        }
