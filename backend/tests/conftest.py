import pytest

from title_registry.activation import ActivationSender
from title_registry.config import RegistryConfig
from title_registry.enums import Governorate, PropertyCategory, PropertyType, UserRole
from title_registry.memory_store import MemoryDocumentStore
from title_registry.registry import TitleRegistryService

ADMIN_NATIONAL_ID = "29001010100011"
OWNER_NATIONAL_ID = "29105150100234"
BUYER_NATIONAL_ID = "29203200100456"
OWNER_PHONE = "01011111111"
BUYER_PHONE = "01022222222"


def contract_fields(**overrides):
    """Valid submission for property P-1001 priced 500000."""
    fields = {
        "fullName": "أحمد محمد علي",
        "nationalId": OWNER_NATIONAL_ID,
        "phoneNumber": OWNER_PHONE,
        "propertyNumber": "P-1001",
        "ownershipPercentage": 100,
        "address": "12 شارع التحرير",
        "governorate": Governorate.CAIRO.value,
        "propertyType": PropertyType.APARTMENT.value,
        "propertyCategory": PropertyCategory.RESIDENTIAL.value,
        "floor": "3",
        "price": 500000,
        "area": 120,
    }
    fields.update(overrides)
    return fields


class RecordingActivationSender(ActivationSender):
    """Keeps the last activation token sent to each user."""

    def __init__(self):
        self.tokens = {}

    async def send(self, user, activation_token):
        self.tokens[user["_id"]] = activation_token
        return True


@pytest.fixture
def store():
    return MemoryDocumentStore()


@pytest.fixture
def config():
    return RegistryConfig()


@pytest.fixture
def activations():
    return RecordingActivationSender()


@pytest.fixture
async def service(store, config, activations):
    svc = TitleRegistryService(store, config, activation_sender=activations)
    for name, national_id in [
        ("مدير النظام", ADMIN_NATIONAL_ID),
        ("أحمد محمد علي", OWNER_NATIONAL_ID),
        ("منى حسن إبراهيم", BUYER_NATIONAL_ID),
    ]:
        await svc.civil_registry.register_citizen(name, national_id)
    return svc


@pytest.fixture
async def admin(service):
    return await service.accounts.register_user(
        "مدير النظام", ADMIN_NATIONAL_ID, "01000000000", "admin123", role=UserRole.ADMIN
    )


@pytest.fixture
async def owner(service):
    return await service.accounts.register_user(
        "أحمد محمد علي", OWNER_NATIONAL_ID, OWNER_PHONE, "owner123"
    )


@pytest.fixture
async def registered_buyer(service):
    return await service.accounts.register_user(
        "منى حسن إبراهيم", BUYER_NATIONAL_ID, BUYER_PHONE, "buyer123"
    )


@pytest.fixture
async def pending_contract(service, admin, owner):
    return await service.submit(owner["_id"], contract_fields())


@pytest.fixture
async def approved_contract(service, admin, pending_contract):
    return await service.approve(pending_contract["_id"], admin["_id"])


@pytest.fixture
async def sale(service, owner, registered_buyer, approved_contract):
    """Outstanding offer of the approved contract to the registered buyer."""
    return await service.initiate_sale(
        approved_contract["_id"], owner["_id"], "منى حسن إبراهيم", BUYER_PHONE, 550000
    )
