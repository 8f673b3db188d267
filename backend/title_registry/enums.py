from enum import Enum


class ContractStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    FOR_SALE = "for_sale"
    SALE_PENDING = "sale_pending"
    SOLD = "sold"
    COMPLETED = "completed"


TERMINAL_CONTRACT_STATUSES = {
    ContractStatus.REJECTED.value,
    ContractStatus.SOLD.value,
    ContractStatus.COMPLETED.value,
}

# Statuses from which an owner may offer the title to a buyer
SELLABLE_STATUSES = [ContractStatus.APPROVED.value, ContractStatus.FOR_SALE.value]


class TransactionStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    CONFIRMED = "confirmed"


class PaymentMethod(str, Enum):
    BANK_TRANSFER = "bank_transfer"
    CASH = "cash"


class NotificationType(str, Enum):
    CONTRACT_APPROVED = "contract_approved"
    CONTRACT_REJECTED = "contract_rejected"
    GENERAL = "general"
    REMINDER = "reminder"
    ALERT = "alert"


class UserRole(str, Enum):
    ADMIN = "admin"
    USER = "user"


class Governorate(str, Enum):
    CAIRO = "القاهرة"
    GIZA = "الجيزة"
    ALEXANDRIA = "الإسكندرية"
    DAKAHLIA = "الدقهلية"
    RED_SEA = "البحر الأحمر"
    BEHEIRA = "البحيرة"
    FAYOUM = "الفيوم"
    GHARBIA = "الغربية"
    ISMAILIA = "الإسماعيلية"
    MONUFIA = "المنوفية"
    MINYA = "المنيا"
    QALYUBIA = "القليوبية"
    NEW_VALLEY = "الوادي الجديد"
    SUEZ = "السويس"
    ASWAN = "اسوان"
    ASSIUT = "اسيوط"
    BENI_SUEF = "بني سويف"
    PORT_SAID = "بورسعيد"
    DAMIETTA = "دمياط"
    SHARQIA = "الشرقية"
    SOUTH_SINAI = "جنوب سيناء"
    KAFR_EL_SHEIKH = "كفر الشيخ"
    MATROUH = "مطروح"
    LUXOR = "الأقصر"
    QENA = "قنا"
    NORTH_SINAI = "شمال سيناء"
    SOHAG = "سوهاج"


class PropertyCategory(str, Enum):
    RESIDENTIAL = "سكني"
    COMMERCIAL = "تجاري / إداري"
    LAND = "أراضي"
    INDUSTRIAL = "صناعي"


class PropertyType(str, Enum):
    """Known property types. Other free-form types are accepted."""

    APARTMENT = "شقة"
    DUPLEX = "دوبلكس"
    STUDIO = "ستوديو"
    PENTHOUSE = "بنتهاوس"
    OFFICE = "مكتب إداري"
    CLINIC = "عيادة"
    VILLA = "فيلا"
    SHOP = "محل تجاري"
    LAND_PLOT = "قطعة أرض"


# Vertically stacked units must state their floor
FLOOR_REQUIRED_TYPES = {
    PropertyType.APARTMENT.value,
    PropertyType.DUPLEX.value,
    PropertyType.STUDIO.value,
    PropertyType.PENTHOUSE.value,
    PropertyType.OFFICE.value,
    PropertyType.CLINIC.value,
}

# Descriptor fields copied verbatim from a seller record into a derived record
PROPERTY_DESCRIPTOR_FIELDS = [
    "propertyNumber",
    "ownershipPercentage",
    "address",
    "governorate",
    "propertyType",
    "propertyCategory",
    "floor",
    "area",
    "contractImage",
    "imageType",
    "imageName",
]
