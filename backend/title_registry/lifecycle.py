"""
TITLE LIFECYCLE CONTROLLER

Owns every status transition on an ownership record ("contract").

STATE GRAPH:
    pending      -> approved | rejected
    approved     -> for_sale
    approved     -> sold          (seller side, on confirmed sale)
    for_sale     -> sold          (seller side, on confirmed sale)
    sale_pending -> completed     (buyer side, on confirmed sale)

Terminal: rejected, sold, completed.

Derived buyer-side records are created directly in `sale_pending` by the
sale negotiation manager. The settlement engine calls `complete_derived_record`
and `mark_sold` inside its own unit of work to finalize a sale.

RULES:
- every status write is compare-and-swap on the current status
- rejection requires a non-empty reason
- notifications are queued after the unit of work commits
"""

from datetime import datetime
from typing import Any, Dict, List, Optional
import logging

from title_registry.accounts import CivilRegistry, UserAccounts
from title_registry.audit import AuditTrail
from title_registry.contract_numbering import ContractNumbering
from title_registry.enums import ContractStatus, NotificationType, PaymentStatus
from title_registry.errors import AuthorizationError, NotFoundError, ValidationError
from title_registry.money import to_float, validate_positive
from title_registry.notifications import NotificationOutbox
from title_registry.schemas import ContractCreate, parse_model
from title_registry.state_machine import StateMachine
from title_registry.store import CONTRACTS, DocumentStore

logger = logging.getLogger(__name__)

DEFAULT_APPROVAL_NOTE = "تم الموافقة على العقد"


# =============================================================================
# TRANSITION HANDLERS
# =============================================================================

async def _on_approve(contract: Dict[str, Any], context: Dict[str, Any], session: Any) -> Dict[str, Any]:
    return {
        "adminNotes": context.get("notes") or DEFAULT_APPROVAL_NOTE,
        "approvedAt": datetime.utcnow(),
        "approvedBy": context.get("actor_id")
    }


async def _on_reject(contract: Dict[str, Any], context: Dict[str, Any], session: Any) -> Dict[str, Any]:
    reason = (context.get("reason") or "").strip()
    if not reason:
        raise ValidationError("Rejection reason is required")
    return {
        "adminNotes": reason,
        "rejectedAt": datetime.utcnow(),
        "rejectedBy": context.get("actor_id")
    }


async def _on_list_for_sale(contract: Dict[str, Any], context: Dict[str, Any], session: Any) -> Dict[str, Any]:
    sale_price = context.get("sale_price")
    return {"salePrice": to_float(sale_price) if sale_price is not None else contract.get("price")}


async def _on_sold(contract: Dict[str, Any], context: Dict[str, Any], session: Any) -> Dict[str, Any]:
    return {
        "soldAt": datetime.utcnow(),
        "buyerId": context["buyer_id"],
        "pendingSale": False,
        "pendingBuyerId": None,
        "pendingTransactionId": None
    }


async def _on_completed(contract: Dict[str, Any], context: Dict[str, Any], session: Any) -> Dict[str, Any]:
    return {
        "paymentStatus": PaymentStatus.CONFIRMED.value,
        "sellerId": context["seller_id"],
        "completedAt": datetime.utcnow()
    }


def build_contract_machine(audit: Optional[AuditTrail] = None) -> StateMachine:
    """Contract state graph with audit logging."""
    machine = StateMachine("contract", collection=CONTRACTS)
    P, A, R = ContractStatus.PENDING.value, ContractStatus.APPROVED.value, ContractStatus.REJECTED.value
    F, SP = ContractStatus.FOR_SALE.value, ContractStatus.SALE_PENDING.value
    S, C = ContractStatus.SOLD.value, ContractStatus.COMPLETED.value

    machine.register(P, A, _on_approve, description="Administrator approves the claim")
    machine.register(P, R, _on_reject, description="Administrator rejects the claim with a reason")
    machine.register(A, F, _on_list_for_sale, description="Owner lists the title for sale")
    machine.register(A, S, _on_sold, description="Sale confirmed (seller side)")
    machine.register(F, S, _on_sold, description="Sale confirmed (seller side)")
    machine.register(SP, C, _on_completed, description="Sale confirmed (buyer side)")

    if audit is not None:
        machine.on_post_transition(audit.transition_callback("CONTRACT"))
    return machine


class TitleLifecycleController:
    """Submission, review and listing of ownership records."""

    def __init__(
        self,
        store: DocumentStore,
        accounts: UserAccounts,
        civil_registry: CivilRegistry,
        numbering: ContractNumbering,
        outbox: NotificationOutbox,
        audit: AuditTrail
    ):
        self.store = store
        self.accounts = accounts
        self.civil_registry = civil_registry
        self.numbering = numbering
        self.outbox = outbox
        self.audit = audit
        self.machine = build_contract_machine(audit)

    # =========================================================================
    # READS
    # =========================================================================

    async def get_contract(self, record_id: str, session: Any = None) -> Dict[str, Any]:
        contract = await self.store.find_one(CONTRACTS, {"_id": record_id}, session=session)
        if not contract:
            raise NotFoundError(f"Contract {record_id} not found")
        return contract

    async def get_contract_by_number(self, contract_number: str) -> Dict[str, Any]:
        contract = await self.store.find_one(CONTRACTS, {"contractNumber": contract_number})
        if not contract:
            raise NotFoundError(f"Contract {contract_number} not found")
        return contract

    async def list_for_owner(self, owner_id: str) -> List[Dict[str, Any]]:
        return await self.store.find(CONTRACTS, {"userId": owner_id}, sort=[("createdAt", -1)])

    async def require_reader(self, contract: Dict[str, Any], user_id: Optional[str]) -> Dict[str, Any]:
        """Owner, either party to its sale, or an administrator."""
        parties = {
            contract.get("userId"),
            contract.get("sellerId"),
            contract.get("buyerId"),
            contract.get("pendingBuyerId")
        }
        if user_id and user_id in parties:
            return contract
        if await self.accounts.admins.is_admin(user_id):
            return contract
        raise AuthorizationError("Not allowed to view this contract")

    # =========================================================================
    # SUBMIT
    # =========================================================================

    async def submit(self, owner_id: str, fields: Dict[str, Any]) -> Dict[str, Any]:
        """
        Create a `pending` ownership record for review.

        The claimed national ID must be present in the civil registry. Every
        administrator is notified of the new claim.
        """
        await self.accounts.require_active_account(owner_id)
        claim = parse_model(ContractCreate, fields)
        await self.civil_registry.verify(claim.nationalId)

        now = datetime.utcnow()
        document = {
            "userId": owner_id,
            **claim.model_dump(),
            "status": ContractStatus.PENDING.value,
            "salePrice": None,
            "buyerId": None,
            "sellerId": None,
            "pendingSale": False,
            "pendingBuyerId": None,
            "pendingTransactionId": None,
            "paymentStatus": None,
            "adminNotes": None,
            "statusHistory": [],
            "createdAt": now,
            "updatedAt": now
        }

        contract = await self.numbering.insert_with_number(document)
        await self.audit.log_action(
            entity_type="CONTRACT",
            entity_id=contract["_id"],
            action_type="CREATE",
            user_id=owner_id,
            new_value={"contractNumber": contract["contractNumber"], "status": contract["status"]}
        )
        logger.info(f"[LIFECYCLE] Contract {contract['contractNumber']} submitted by user:{owner_id}")

        await self.outbox.enqueue_for_admins(
            NotificationType.GENERAL,
            "طلب إثبات ملكية جديد",
            f"تم تقديم طلب جديد من {claim.fullName} - نوع العقار: {claim.propertyType}",
            contract_id=contract["_id"],
            data={
                "userName": claim.fullName,
                "propertyType": claim.propertyType,
                "propertyNumber": claim.propertyNumber
            }
        )
        await self.accounts.touch_activity(owner_id)
        return contract

    # =========================================================================
    # REVIEW
    # =========================================================================

    async def approve(self, record_id: str, admin_id: str, notes: Optional[str] = None) -> Dict[str, Any]:
        """pending -> approved. Notifies the owner."""
        await self.accounts.require_admin(admin_id)
        contract = await self.get_contract(record_id)

        async with self.store.transaction() as session:
            result = await self.machine.transition(
                self.store,
                contract,
                ContractStatus.APPROVED.value,
                session=session,
                context={"actor_id": admin_id, "notes": notes}
            )
        approved = result["document"]
        logger.info(f"[LIFECYCLE] Contract {approved['contractNumber']} approved by admin:{admin_id}")

        await self.outbox.enqueue(
            approved["userId"],
            NotificationType.CONTRACT_APPROVED,
            "تم الموافقة على العقد",
            f"تمت الموافقة على العقد رقم {approved['contractNumber']} بنجاح",
            contract_id=approved["_id"]
        )
        await self.accounts.touch_activity(approved["userId"])
        return approved

    async def reject(self, record_id: str, admin_id: str, reason: Optional[str]) -> Dict[str, Any]:
        """pending -> rejected. The reason is stored as adminNotes and sent to the owner."""
        if not reason or not reason.strip():
            raise ValidationError("Rejection reason is required")

        await self.accounts.require_admin(admin_id)
        contract = await self.get_contract(record_id)

        async with self.store.transaction() as session:
            result = await self.machine.transition(
                self.store,
                contract,
                ContractStatus.REJECTED.value,
                session=session,
                context={"actor_id": admin_id, "reason": reason}
            )
        rejected = result["document"]
        logger.info(f"[LIFECYCLE] Contract {rejected['contractNumber']} rejected by admin:{admin_id}")

        await self.outbox.enqueue(
            rejected["userId"],
            NotificationType.CONTRACT_REJECTED,
            "تم رفض العقد",
            f"تم رفض العقد رقم {rejected['contractNumber']} - سبب الرفض: {rejected['adminNotes']}",
            contract_id=rejected["_id"]
        )
        await self.accounts.touch_activity(rejected["userId"])
        return rejected

    # =========================================================================
    # LISTING
    # =========================================================================

    async def list_for_sale(
        self,
        record_id: str,
        owner_id: str,
        sale_price: Optional[float] = None
    ) -> Dict[str, Any]:
        """approved -> for_sale. salePrice defaults to the record's price."""
        await self.accounts.require_active_account(owner_id)
        contract = await self.get_contract(record_id)
        if contract.get("userId") != owner_id:
            raise AuthorizationError("Only the owner can list this contract for sale")

        if sale_price is not None:
            validate_positive(sale_price, "salePrice")

        async with self.store.transaction() as session:
            result = await self.machine.transition(
                self.store,
                contract,
                ContractStatus.FOR_SALE.value,
                session=session,
                context={"actor_id": owner_id, "sale_price": sale_price}
            )
        listed = result["document"]
        logger.info(f"[LIFECYCLE] Contract {listed['contractNumber']} listed for sale at {listed['salePrice']}")

        await self.outbox.enqueue_for_admins(
            NotificationType.GENERAL,
            "عرض جديد للبيع",
            f"تم عرض عقار {listed.get('propertyType')} للبيع بسعر {listed['salePrice']:,.0f} جنيه",
            contract_id=listed["_id"],
            data={"sellerName": listed.get("fullName")}
        )
        await self.accounts.touch_activity(owner_id)
        return listed

    # =========================================================================
    # SALE FINALIZATION (called by the settlement engine inside its unit of work)
    # =========================================================================

    async def complete_derived_record(
        self,
        derived: Dict[str, Any],
        seller_id: str,
        actor_id: str,
        session: Any
    ) -> Dict[str, Any]:
        """sale_pending -> completed on the buyer-side record."""
        result = await self.machine.transition(
            self.store,
            derived,
            ContractStatus.COMPLETED.value,
            session=session,
            context={"actor_id": actor_id, "seller_id": seller_id}
        )
        return result["document"]

    async def mark_sold(
        self,
        original: Dict[str, Any],
        buyer_id: str,
        actor_id: str,
        session: Any
    ) -> Dict[str, Any]:
        """approved/for_sale -> sold on the seller-side record, clearing pending markers."""
        result = await self.machine.transition(
            self.store,
            original,
            ContractStatus.SOLD.value,
            session=session,
            context={"actor_id": actor_id, "buyer_id": buyer_id}
        )
        return result["document"]
