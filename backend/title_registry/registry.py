"""
TITLE REGISTRY SERVICE

Wires the components around one DocumentStore and exposes the inbound
commands:

    submit, approve, reject, list_for_sale,
    initiate_sale, cancel_pending_payment,
    pay, confirm, reject_payment

plus accounts, activation delivery, the inbox, administrator notifications
and the read paths the commands need.
"""

from typing import Any, Dict, List, Optional
import logging

from title_registry.accounts import CivilRegistry, UserAccounts
from title_registry.activation import (
    ActivationSender,
    UnconfiguredActivationSender,
    WebhookActivationSender,
)
from title_registry.audit import AuditTrail
from title_registry.config import RegistryConfig
from title_registry.contract_numbering import ContractNumbering
from title_registry.enums import NotificationType
from title_registry.errors import StoreUnavailableError, ValidationError
from title_registry.idempotency import IdempotencyKeys
from title_registry.lifecycle import TitleLifecycleController
from title_registry.notifications import (
    AdminRegistry,
    NotificationDispatcher,
    NotificationInbox,
    NotificationOutbox,
    StaticAdminRegistry,
    UserRoleAdminRegistry,
)
from title_registry.sales import SaleNegotiationManager
from title_registry.settlement import TransactionSettlementEngine
from title_registry.store import DocumentStore

logger = logging.getLogger(__name__)


class TitleRegistryService:
    """Facade over lifecycle, sale, settlement, accounts and notifications."""

    def __init__(
        self,
        store: DocumentStore,
        config: Optional[RegistryConfig] = None,
        admins: Optional[AdminRegistry] = None,
        numbering: Optional[ContractNumbering] = None,
        activation_sender: Optional[ActivationSender] = None
    ):
        self.store = store
        self.config = config or RegistryConfig()

        if admins is None:
            admins = (
                StaticAdminRegistry(self.config.admin_user_ids)
                if self.config.admin_user_ids
                else UserRoleAdminRegistry(store)
            )
        self.admins = admins

        if activation_sender is None:
            activation_sender = (
                WebhookActivationSender(self.config.activation_webhook_url)
                if self.config.activation_webhook_url
                else UnconfiguredActivationSender()
            )
        self.activation_sender = activation_sender

        self.audit = AuditTrail(store)
        self.idempotency = IdempotencyKeys(store)
        self.numbering = numbering or ContractNumbering(
            store,
            prefix=self.config.contract_number_prefix,
            max_retries=self.config.contract_number_max_retries
        )
        self.outbox = NotificationOutbox(store, admins)
        self.inbox = NotificationInbox(store)
        self.dispatcher = NotificationDispatcher(
            store,
            max_attempts=self.config.notification_max_attempts,
            base_retry_delay=self.config.notification_retry_delay_seconds,
            batch_size=self.config.notification_batch_size
        )

        self.civil_registry = CivilRegistry(store)
        self.accounts = UserAccounts(store, self.config, self.civil_registry, admins, self.audit)
        self.lifecycle = TitleLifecycleController(
            store, self.accounts, self.civil_registry, self.numbering, self.outbox, self.audit
        )
        self.sales = SaleNegotiationManager(
            store, self.config, self.accounts, self.numbering, self.outbox, self.audit, self.idempotency,
            activation_sender
        )
        self.settlement = TransactionSettlementEngine(
            store, self.accounts, self.lifecycle, self.outbox, self.audit, self.idempotency
        )

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    async def submit(self, owner_id: str, fields: Dict[str, Any]) -> Dict[str, Any]:
        return await self.lifecycle.submit(owner_id, fields)

    async def approve(self, record_id: str, admin_id: str, notes: Optional[str] = None) -> Dict[str, Any]:
        return await self.lifecycle.approve(record_id, admin_id, notes)

    async def reject(self, record_id: str, admin_id: str, reason: Optional[str]) -> Dict[str, Any]:
        return await self.lifecycle.reject(record_id, admin_id, reason)

    async def list_for_sale(self, record_id: str, owner_id: str, sale_price: Optional[float] = None) -> Dict[str, Any]:
        return await self.lifecycle.list_for_sale(record_id, owner_id, sale_price)

    async def get_contract(self, record_id: str, user_id: Optional[str] = None) -> Dict[str, Any]:
        """With `user_id`, the caller must be a party to the record or an administrator."""
        contract = await self.lifecycle.get_contract(record_id)
        if user_id is not None:
            await self.lifecycle.require_reader(contract, user_id)
        return contract

    async def get_contract_by_number(self, contract_number: str, user_id: Optional[str] = None) -> Dict[str, Any]:
        contract = await self.lifecycle.get_contract_by_number(contract_number)
        if user_id is not None:
            await self.lifecycle.require_reader(contract, user_id)
        return contract

    # =========================================================================
    # SALE
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
        return await self.sales.initiate_sale(
            record_id, seller_id, buyer_name, buyer_phone, amount, operation_id
        )

    async def cancel_pending_payment(self, record_id: str, buyer_id: str) -> Dict[str, Any]:
        return await self.sales.cancel_pending_payment(record_id, buyer_id)

    # =========================================================================
    # SETTLEMENT
    # =========================================================================

    async def pay(
        self,
        transaction_id: str,
        buyer_id: str,
        method: str,
        details: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        return await self.settlement.pay(transaction_id, buyer_id, method, details)

    async def confirm(self, transaction_id: str, seller_id: str, operation_id: Optional[str] = None) -> Dict[str, Any]:
        return await self.settlement.confirm(transaction_id, seller_id, operation_id)

    async def reject_payment(self, transaction_id: str, seller_id: str, reason: Optional[str] = None) -> Dict[str, Any]:
        return await self.settlement.reject_payment(transaction_id, seller_id, reason)

    async def get_transaction(self, transaction_id: str, user_id: Optional[str] = None) -> Dict[str, Any]:
        return await self.settlement.get_transaction(transaction_id, user_id)

    async def list_transactions_for_user(self, user_id: str) -> List[Dict[str, Any]]:
        return await self.settlement.list_transactions_for_user(user_id)

    # =========================================================================
    # ACCOUNTS
    # =========================================================================

    async def resend_activation(self, user_id: str) -> bool:
        """Issue a new activation token to a provisioned buyer and send it."""
        user = await self.accounts.reissue_activation_token(user_id)
        return await self.activation_sender.send(user, user.pop("activationToken"))

    # =========================================================================
    # ADMINISTRATION
    # =========================================================================

    async def send_admin_notification(
        self,
        admin_id: str,
        user_id: str,
        type: Optional[str],
        title: Optional[str],
        message: Optional[str]
    ) -> str:
        """Queue a notification from an administrator to one user."""
        await self.accounts.require_admin(admin_id)
        if not user_id or not (title or "").strip() or not (message or "").strip():
            raise ValidationError("User, title and message are required")
        try:
            notification_type = NotificationType(type or NotificationType.GENERAL.value)
        except ValueError:
            raise ValidationError(f"Unknown notification type: {type}")

        await self.accounts.get_user(user_id)
        intent_id = await self.outbox.enqueue(user_id, notification_type, title.strip(), message.strip())
        if intent_id is None:
            raise StoreUnavailableError("Notification could not be queued")

        await self.audit.log_action(
            entity_type="NOTIFICATION",
            entity_id=intent_id,
            action_type="CREATE",
            user_id=admin_id,
            new_value={"userId": user_id, "type": notification_type.value}
        )
        logger.info(f"[REGISTRY] Admin {admin_id} sent {notification_type.value} to user:{user_id}")
        return intent_id

    async def delete_notification(self, admin_id: str, notification_id: str) -> int:
        await self.accounts.require_admin(admin_id)
        removed = await self.inbox.delete(notification_id)
        await self.audit.log_action(
            entity_type="NOTIFICATION",
            entity_id=notification_id,
            action_type="DELETE",
            user_id=admin_id
        )
        return removed

    async def get_audit_logs(
        self,
        admin_id: str,
        entity_type: Optional[str] = None,
        entity_id: Optional[str] = None,
        limit: int = 100
    ) -> List[Dict[str, Any]]:
        await self.accounts.require_admin(admin_id)
        return await self.audit.get_audit_logs(entity_type, entity_id, limit)

    # =========================================================================
    # LIFECYCLE HOOKS
    # =========================================================================

    async def startup(self, run_dispatcher: bool = True) -> None:
        await self.store.ensure_indexes()
        if run_dispatcher:
            self.dispatcher.start(self.config.notification_dispatch_interval)
        logger.info("[REGISTRY] Title registry service started")

    async def shutdown(self) -> None:
        await self.dispatcher.stop()
        await self.store.close()
        logger.info("[REGISTRY] Title registry service stopped")
