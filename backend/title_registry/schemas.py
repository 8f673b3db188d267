from typing import Any, Dict, Optional

from pydantic import BaseModel, Field, ValidationError as PydanticValidationError, model_validator

from title_registry.enums import (
    FLOOR_REQUIRED_TYPES,
    Governorate,
    PaymentMethod,
    PropertyCategory,
)
from title_registry.errors import ValidationError

# ============================================
# OWNERSHIP RECORD SUBMISSION
# ============================================
class ContractCreate(BaseModel):
    fullName: str = Field(min_length=1)
    nationalId: str = Field(min_length=1)
    phoneNumber: str = Field(min_length=1)
    propertyNumber: str = Field(min_length=1)
    ownershipPercentage: float = Field(gt=0, le=100)
    address: str = Field(min_length=1)
    governorate: Governorate
    propertyType: str = Field(min_length=1)
    propertyCategory: PropertyCategory
    floor: Optional[str] = None
    price: float = Field(gt=0)
    area: float = Field(gt=0)
    notes: Optional[str] = ""
    contractImage: Optional[str] = None
    imageType: Optional[str] = None
    imageName: Optional[str] = None

    class Config:
        use_enum_values = True
        str_strip_whitespace = True

    @model_validator(mode="after")
    def check_floor(self):
        # Vertically stacked units must state their floor
        if self.propertyType in FLOOR_REQUIRED_TYPES and not (self.floor or "").strip():
            raise ValueError(f"floor is required for property type {self.propertyType}")
        return self


# ============================================
# PAYMENT DETAILS
# ============================================
class PaymentDetails(BaseModel):
    cardHolderName: Optional[str] = None
    bankName: Optional[str] = None
    cardNumber: Optional[str] = None
    accountNumber: Optional[str] = None
    expiryDate: Optional[str] = None
    securityCode: Optional[str] = None

    class Config:
        str_strip_whitespace = True
        extra = "ignore"


def mask_number(number: Optional[str]) -> Optional[str]:
    """Keep only the last four digits of a card/account number."""
    if not number:
        return None
    digits = "".join(ch for ch in number if ch.isdigit())
    if len(digits) < 4:
        return "****"
    return f"****{digits[-4:]}"


def sanitize_payment_details(method: str, details: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """
    Validate the payment method and reduce details to what may be stored.

    Card/account numbers are masked and security codes are dropped.
    """
    try:
        method = PaymentMethod(method).value
    except ValueError:
        allowed = ", ".join(m.value for m in PaymentMethod)
        raise ValidationError(f"Unsupported payment method '{method}'. Allowed: {allowed}")

    parsed = parse_model(PaymentDetails, details or {})
    stored = {
        "cardHolderName": parsed.cardHolderName,
        "bankName": parsed.bankName,
        "cardNumber": mask_number(parsed.cardNumber),
        "accountNumber": mask_number(parsed.accountNumber),
        "expiryDate": parsed.expiryDate,
    }
    return {"paymentMethod": method, "paymentDetails": {k: v for k, v in stored.items() if v is not None}}


def parse_model(model_cls, data: Dict[str, Any]):
    """Validate `data` against a pydantic model, raising the registry ValidationError."""
    try:
        return model_cls.model_validate(data)
    except PydanticValidationError as e:
        first = e.errors()[0]
        location = ".".join(str(part) for part in first.get("loc", ())) or "input"
        raise ValidationError(f"Invalid {location}: {first.get('msg')}", {"errors": e.errors(include_url=False, include_context=False)})
