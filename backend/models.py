from pydantic import BaseModel, Field
from typing import Optional, Dict, Any

# ============================================
# USER REQUESTS
# ============================================
class UserRegister(BaseModel):
    fullName: str
    nationalId: str
    phoneNumber: str
    password: str


class ActivateCredentialsRequest(BaseModel):
    activationToken: str
    newPassword: str


class UserResponse(BaseModel):
    user_id: str = Field(alias="_id")
    fullName: str
    phoneNumber: str
    role: str
    isTempUser: bool = False
    credentialsActivated: bool = True

    class Config:
        populate_by_name = True


class PurgeInactiveRequest(BaseModel):
    days: Optional[int] = None


# ============================================
# CONTRACT REQUESTS
# ============================================
class ApprovalRequest(BaseModel):
    notes: Optional[str] = None


class RejectionRequest(BaseModel):
    # Required by the lifecycle; left optional here so a missing reason is a 400
    reason: Optional[str] = None


class ListForSaleRequest(BaseModel):
    salePrice: Optional[float] = None


class InitiateSaleRequest(BaseModel):
    buyerName: str
    buyerPhone: str
    amount: Optional[float] = None
    operationId: Optional[str] = None


# ============================================
# TRANSACTION REQUESTS
# ============================================
class PaymentRequest(BaseModel):
    paymentMethod: str
    paymentDetails: Optional[Dict[str, Any]] = None


class ConfirmRequest(BaseModel):
    operationId: Optional[str] = None


class RejectPaymentRequest(BaseModel):
    reason: Optional[str] = None


# ============================================
# ADMIN REQUESTS
# ============================================
class AdminNotificationRequest(BaseModel):
    # Left optional so missing fields are a 400 from the registry
    userId: Optional[str] = None
    title: Optional[str] = None
    message: Optional[str] = None
    type: str = "general"
