from fastapi import FastAPI, APIRouter, Body, Depends, Request, status
from fastapi.responses import JSONResponse
from dotenv import load_dotenv
from starlette.middleware.cors import CORSMiddleware
from bson import ObjectId
import os
import logging
from pathlib import Path
from typing import Optional, Dict, Any
from datetime import datetime

from models import (
    UserRegister, ActivateCredentialsRequest, UserResponse, PurgeInactiveRequest,
    ApprovalRequest, RejectionRequest, ListForSaleRequest, InitiateSaleRequest,
    PaymentRequest, ConfirmRequest, RejectPaymentRequest, AdminNotificationRequest
)
from auth import get_current_user
from title_registry.config import RegistryConfig
from title_registry.errors import TitleRegistryError
from title_registry.memory_store import MemoryDocumentStore
from title_registry.mongo_store import MongoDocumentStore
from title_registry.registry import TitleRegistryService

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# Never returned to clients
HIDDEN_FIELDS = {"passwordHash", "activationTokenHash"}


def serialize_doc(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """Serialize a stored document for JSON response (handles ObjectId, datetime)"""
    if doc is None:
        return None
    result = {}
    for key, value in doc.items():
        if key in HIDDEN_FIELDS:
            continue
        if isinstance(value, ObjectId):
            result[key] = str(value)
        elif isinstance(value, datetime):
            result[key] = value.isoformat()
        elif isinstance(value, dict):
            result[key] = serialize_doc(value)
        elif isinstance(value, list):
            result[key] = [
                serialize_doc(item) if isinstance(item, dict)
                else str(item) if isinstance(item, ObjectId)
                else item.isoformat() if isinstance(item, datetime)
                else item
                for item in value
            ]
        else:
            result[key] = value
    return result


def build_service_from_env() -> TitleRegistryService:
    """MongoDB when MONGO_URL is set, otherwise the in-process store."""
    config = RegistryConfig.from_env()
    mongo_url = os.environ.get('MONGO_URL')
    if mongo_url:
        store = MongoDocumentStore.from_url(mongo_url, os.environ.get('DB_NAME', 'title_registry'))
    else:
        logger.warning("MONGO_URL not set; using in-process document store")
        store = MemoryDocumentStore()
    return TitleRegistryService(store, config)


def get_service(request: Request) -> TitleRegistryService:
    return request.app.state.service


# Create router with /api prefix
api_router = APIRouter(prefix="/api")


@api_router.get("/health")
async def health():
    return {"status": "healthy", "timestamp": datetime.utcnow().isoformat()}


# ============================================
# USER ENDPOINTS
# ============================================

@api_router.post("/users/register", status_code=status.HTTP_201_CREATED)
async def register_user(user_data: UserRegister, service: TitleRegistryService = Depends(get_service)):
    """Register an account. The national ID must exist in the civil registry."""
    user = await service.accounts.register_user(
        user_data.fullName, user_data.nationalId, user_data.phoneNumber, user_data.password
    )
    return UserResponse(**user).model_dump()


@api_router.post("/users/{user_id}/activate")
async def activate_credentials(
    user_id: str,
    body: ActivateCredentialsRequest,
    service: TitleRegistryService = Depends(get_service)
):
    """Set a real password on a provisioned buyer account."""
    user = await service.accounts.activate_credentials(user_id, body.activationToken, body.newPassword)
    return UserResponse(**user).model_dump()


@api_router.post("/users/{user_id}/activation/resend")
async def resend_activation(user_id: str, service: TitleRegistryService = Depends(get_service)):
    """Send a provisioned buyer a fresh activation code. The code never appears in the response."""
    sent = await service.resend_activation(user_id)
    return {"sent": sent}


@api_router.delete("/admin/users/{user_id}")
async def delete_user(
    user_id: str,
    current_user: dict = Depends(get_current_user),
    service: TitleRegistryService = Depends(get_service)
):
    removed = await service.accounts.delete_user(current_user["user_id"], user_id)
    return {"message": "User deleted successfully", "removed": removed}


@api_router.post("/admin/users/purge-inactive")
async def purge_inactive_users(
    body: PurgeInactiveRequest,
    current_user: dict = Depends(get_current_user),
    service: TitleRegistryService = Depends(get_service)
):
    return await service.accounts.purge_inactive_users(current_user["user_id"], body.days)


# ============================================
# CONTRACT ENDPOINTS
# ============================================

@api_router.post("/contracts", status_code=status.HTTP_201_CREATED)
async def submit_contract(
    fields: Dict[str, Any] = Body(...),
    current_user: dict = Depends(get_current_user),
    service: TitleRegistryService = Depends(get_service)
):
    contract = await service.submit(current_user["user_id"], fields)
    return {"message": "Contract created successfully", "contract": serialize_doc(contract)}


@api_router.get("/contracts/mine")
async def my_contracts(
    current_user: dict = Depends(get_current_user),
    service: TitleRegistryService = Depends(get_service)
):
    contracts = await service.lifecycle.list_for_owner(current_user["user_id"])
    return {"contracts": [serialize_doc(c) for c in contracts]}


@api_router.get("/contracts/number/{contract_number}")
async def get_contract_by_number(
    contract_number: str,
    current_user: dict = Depends(get_current_user),
    service: TitleRegistryService = Depends(get_service)
):
    contract = await service.get_contract_by_number(contract_number, current_user["user_id"])
    return {"contract": serialize_doc(contract)}


@api_router.get("/contracts/{record_id}")
async def get_contract(
    record_id: str,
    current_user: dict = Depends(get_current_user),
    service: TitleRegistryService = Depends(get_service)
):
    contract = await service.get_contract(record_id, current_user["user_id"])
    return {"contract": serialize_doc(contract)}


@api_router.put("/admin/contracts/{record_id}/approve")
async def approve_contract(
    record_id: str,
    body: ApprovalRequest,
    current_user: dict = Depends(get_current_user),
    service: TitleRegistryService = Depends(get_service)
):
    contract = await service.approve(record_id, current_user["user_id"], body.notes)
    return {"message": "Contract approved successfully", "contract": serialize_doc(contract)}


@api_router.put("/admin/contracts/{record_id}/reject")
async def reject_contract(
    record_id: str,
    body: RejectionRequest,
    current_user: dict = Depends(get_current_user),
    service: TitleRegistryService = Depends(get_service)
):
    contract = await service.reject(record_id, current_user["user_id"], body.reason)
    return {"message": "Contract rejected successfully", "contract": serialize_doc(contract)}


@api_router.put("/contracts/{record_id}/for-sale")
async def list_for_sale(
    record_id: str,
    body: ListForSaleRequest,
    current_user: dict = Depends(get_current_user),
    service: TitleRegistryService = Depends(get_service)
):
    contract = await service.list_for_sale(record_id, current_user["user_id"], body.salePrice)
    return {"message": "Contract updated to for sale successfully", "contract": serialize_doc(contract)}


@api_router.post("/contracts/{record_id}/initiate-sale")
async def initiate_sale(
    record_id: str,
    body: InitiateSaleRequest,
    current_user: dict = Depends(get_current_user),
    service: TitleRegistryService = Depends(get_service)
):
    """The activation token for a new buyer goes to the OTP channel, never into this response."""
    result = await service.initiate_sale(
        record_id,
        current_user["user_id"],
        body.buyerName,
        body.buyerPhone,
        body.amount,
        body.operationId
    )
    return {
        "message": "Sale initiated successfully",
        "transaction": serialize_doc(result["transaction"]),
        "buyerContract": serialize_doc(result["buyerContract"]),
        "isNewUser": result["isNewUser"]
    }


@api_router.put("/contracts/{record_id}/cancel-payment")
async def cancel_pending_payment(
    record_id: str,
    current_user: dict = Depends(get_current_user),
    service: TitleRegistryService = Depends(get_service)
):
    result = await service.cancel_pending_payment(record_id, current_user["user_id"])
    return {"message": "Payment cancelled successfully", **result}


# ============================================
# TRANSACTION ENDPOINTS
# ============================================

@api_router.get("/transactions/mine")
async def my_transactions(
    current_user: dict = Depends(get_current_user),
    service: TitleRegistryService = Depends(get_service)
):
    transactions = await service.list_transactions_for_user(current_user["user_id"])
    return {"transactions": [serialize_doc(t) for t in transactions]}


@api_router.get("/transactions/{transaction_id}")
async def get_transaction(
    transaction_id: str,
    current_user: dict = Depends(get_current_user),
    service: TitleRegistryService = Depends(get_service)
):
    txn = await service.get_transaction(transaction_id, current_user["user_id"])
    return {"transaction": serialize_doc(txn)}


@api_router.post("/transactions/{transaction_id}/pay")
async def pay_transaction(
    transaction_id: str,
    body: PaymentRequest,
    current_user: dict = Depends(get_current_user),
    service: TitleRegistryService = Depends(get_service)
):
    txn = await service.pay(transaction_id, current_user["user_id"], body.paymentMethod, body.paymentDetails)
    return {"message": "Payment completed successfully", "transaction": serialize_doc(txn)}


@api_router.put("/transactions/{transaction_id}/confirm")
async def confirm_transaction(
    transaction_id: str,
    body: ConfirmRequest,
    current_user: dict = Depends(get_current_user),
    service: TitleRegistryService = Depends(get_service)
):
    result = await service.confirm(transaction_id, current_user["user_id"], body.operationId)
    return {
        "message": "Transaction completed successfully",
        "transaction": serialize_doc(result["transaction"]),
        "buyerContract": serialize_doc(result["buyerContract"]),
        "sellerContract": serialize_doc(result["sellerContract"])
    }


@api_router.put("/transactions/{transaction_id}/reject")
async def reject_payment(
    transaction_id: str,
    body: RejectPaymentRequest,
    current_user: dict = Depends(get_current_user),
    service: TitleRegistryService = Depends(get_service)
):
    txn = await service.reject_payment(transaction_id, current_user["user_id"], body.reason)
    return {"message": "Payment rejected successfully", "transaction": serialize_doc(txn)}


# ============================================
# NOTIFICATION ENDPOINTS
# ============================================

@api_router.get("/notifications")
async def list_notifications(
    unread_only: bool = False,
    limit: int = 50,
    current_user: dict = Depends(get_current_user),
    service: TitleRegistryService = Depends(get_service)
):
    items = await service.inbox.list_for_user(current_user["user_id"], unread_only, limit)
    return {"notifications": [serialize_doc(n) for n in items]}


@api_router.get("/notifications/unread-count")
async def unread_count(
    current_user: dict = Depends(get_current_user),
    service: TitleRegistryService = Depends(get_service)
):
    return {"count": await service.inbox.unread_count(current_user["user_id"])}


@api_router.put("/notifications/read-all")
async def mark_all_read(
    current_user: dict = Depends(get_current_user),
    service: TitleRegistryService = Depends(get_service)
):
    return {"updated": await service.inbox.mark_all_read(current_user["user_id"])}


@api_router.put("/notifications/{notification_id}/read")
async def mark_read(
    notification_id: str,
    current_user: dict = Depends(get_current_user),
    service: TitleRegistryService = Depends(get_service)
):
    notification = await service.inbox.mark_read(notification_id, current_user["user_id"])
    return {"notification": serialize_doc(notification)}


# ============================================
# ADMIN NOTIFICATION & AUDIT ENDPOINTS
# ============================================

@api_router.post("/admin/notifications", status_code=status.HTTP_201_CREATED)
async def send_admin_notification(
    body: AdminNotificationRequest,
    current_user: dict = Depends(get_current_user),
    service: TitleRegistryService = Depends(get_service)
):
    notification_id = await service.send_admin_notification(
        current_user["user_id"], body.userId, body.type, body.title, body.message
    )
    return {"message": "Notification sent successfully", "notificationId": notification_id}


@api_router.delete("/admin/notifications/{notification_id}")
async def delete_notification(
    notification_id: str,
    current_user: dict = Depends(get_current_user),
    service: TitleRegistryService = Depends(get_service)
):
    await service.delete_notification(current_user["user_id"], notification_id)
    return {"message": "Notification deleted successfully"}


@api_router.get("/admin/audit-logs")
async def get_audit_logs(
    entity_type: Optional[str] = None,
    entity_id: Optional[str] = None,
    limit: int = 100,
    current_user: dict = Depends(get_current_user),
    service: TitleRegistryService = Depends(get_service)
):
    """Get audit logs (admin only)"""
    logs = await service.get_audit_logs(current_user["user_id"], entity_type, entity_id, limit)
    return {"logs": [serialize_doc(log) for log in logs]}


# ============================================
# APP
# ============================================

async def handle_registry_error(request: Request, exc: TitleRegistryError):
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


def create_app(service: Optional[TitleRegistryService] = None, run_dispatcher: bool = True) -> FastAPI:
    app = FastAPI(
        title="Property Title Registry",
        version="1.0.0",
        description="Ownership records, resale negotiation and transaction settlement"
    )
    app.state.service = service or build_service_from_env()

    app.include_router(api_router)
    app.add_exception_handler(TitleRegistryError, handle_registry_error)
    app.add_middleware(
        CORSMiddleware,
        allow_credentials=True,
        allow_origins=os.environ.get('CORS_ORIGINS', '*').split(','),
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.on_event("startup")
    async def start_registry():
        await app.state.service.startup(run_dispatcher=run_dispatcher)

    @app.on_event("shutdown")
    async def stop_registry():
        await app.state.service.shutdown()

    return app


app = create_app()
