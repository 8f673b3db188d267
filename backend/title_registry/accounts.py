"""
USER ACCOUNTS

- Registration against the civil registry (national ID must exist there)
- Temporary buyer provisioning during sale initiation
- Credential activation for provisioned buyers
- Active-account guard used by every owner/seller/buyer command
- Administrative cleanup of users and inactive accounts

RULES:
- A provisioned buyer holds a random password nobody knows and cannot act
  until `activate_credentials` sets a real one
- Administrators are never deleted
- Users with an outstanding sale are never deleted
- Transactions are financial records and survive user deletion
"""

from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional
import logging
import uuid

from title_registry.audit import AuditTrail
from title_registry.config import RegistryConfig
from title_registry.enums import ContractStatus, TransactionStatus, UserRole
from title_registry.errors import (
    AuthorizationError,
    DuplicateKeyError,
    NotFoundError,
    StateConflictError,
    ValidationError,
)
from title_registry.notifications import AdminRegistry
from title_registry.security import (
    generate_activation_token,
    generate_temp_password,
    hash_password,
    verify_password,
)
from title_registry.store import (
    CIVIL_REGISTRY,
    CONTRACTS,
    DocumentStore,
    NOTIFICATION_OUTBOX,
    NOTIFICATIONS,
    TRANSACTIONS,
    USERS,
)

logger = logging.getLogger(__name__)

MIN_PASSWORD_LENGTH = 6


class CivilRegistry:
    """National-ID lookup table (`civilregistry` collection)."""

    def __init__(self, store: DocumentStore):
        self.store = store

    async def register_citizen(self, full_name: str, national_id: str) -> str:
        return await self.store.insert_one(
            CIVIL_REGISTRY,
            {"fullName": full_name, "nationalId": national_id}
        )

    async def verify(self, national_id: Optional[str], session: Any = None) -> Dict[str, Any]:
        """Return the registry entry, raising ValidationError if the ID is unknown."""
        if not national_id or not str(national_id).strip():
            raise ValidationError("National ID is required")

        entry = await self.store.find_one(
            CIVIL_REGISTRY,
            {"nationalId": str(national_id).strip()},
            session=session
        )
        if not entry:
            raise ValidationError(f"National ID {national_id} is not in the civil registry")
        return entry


def _normalize_phone(phone: Optional[str]) -> str:
    phone = (phone or "").strip().replace(" ", "")
    if not phone:
        raise ValidationError("Phone number is required")
    return phone


class UserAccounts:
    """User records in the `users` collection."""

    def __init__(
        self,
        store: DocumentStore,
        config: RegistryConfig,
        civil_registry: CivilRegistry,
        admins: AdminRegistry,
        audit: AuditTrail
    ):
        self.store = store
        self.config = config
        self.civil_registry = civil_registry
        self.admins = admins
        self.audit = audit

    # =========================================================================
    # LOOKUPS
    # =========================================================================

    async def get_user(self, user_id: str, session: Any = None) -> Dict[str, Any]:
        user = await self.store.find_one(USERS, {"_id": user_id}, session=session)
        if not user:
            raise NotFoundError(f"User {user_id} not found")
        return user

    async def find_by_phone(self, phone_number: str, session: Any = None) -> Optional[Dict[str, Any]]:
        return await self.store.find_one(
            USERS,
            {"phoneNumber": _normalize_phone(phone_number)},
            session=session
        )

    # =========================================================================
    # REGISTRATION
    # =========================================================================

    async def register_user(
        self,
        full_name: str,
        national_id: str,
        phone_number: str,
        password: str,
        role: UserRole = UserRole.USER
    ) -> Dict[str, Any]:
        """
        Create an activated account.

        The national ID must be present in the civil registry; national ID and
        phone number are unique across users.
        """
        if not full_name or not full_name.strip():
            raise ValidationError("Full name is required")
        if not password or len(password) < MIN_PASSWORD_LENGTH:
            raise ValidationError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters")

        phone = _normalize_phone(phone_number)
        entry = await self.civil_registry.verify(national_id)

        now = datetime.utcnow()
        user = {
            "fullName": full_name.strip(),
            "nationalId": entry["nationalId"],
            "phoneNumber": phone,
            "passwordHash": hash_password(password),
            "role": UserRole(role).value,
            "isActive": True,
            "isTempUser": False,
            "credentialsActivated": True,
            "activationTokenHash": None,
            "createdAt": now,
            "lastActivity": now
        }

        try:
            user["_id"] = await self.store.insert_one(USERS, user)
        except DuplicateKeyError as e:
            field_name = next(iter(e.key), "user")
            raise StateConflictError(f"A user with this {field_name} already exists")

        logger.info(f"[ACCOUNTS] Registered user:{user['_id']} role={user['role']}")
        return user

    def issue_temporary_credentials(self) -> Dict[str, str]:
        """
        Fresh activation token plus the hashes stored for it.

        bcrypt is slow; callers compute this before opening a unit of work.
        """
        activation_token = generate_activation_token()
        return {
            "activationToken": activation_token,
            "activationTokenHash": hash_password(activation_token),
            "passwordHash": hash_password(generate_temp_password())
        }

    async def provision_temporary_buyer(
        self,
        full_name: str,
        phone_number: str,
        credentials: Optional[Dict[str, str]] = None,
        session: Any = None
    ) -> Dict[str, Any]:
        """
        Create a placeholder account for a buyer known only by phone number.

        `credentials` comes from issue_temporary_credentials(); the raw token
        in it is for the activation sender only and is never stored.
        """
        credentials = credentials or self.issue_temporary_credentials()
        now = datetime.utcnow()
        user = {
            "fullName": (full_name or "").strip() or _normalize_phone(phone_number),
            "nationalId": f"{self.config.temp_national_id_prefix}{uuid.uuid4().hex}",
            "phoneNumber": _normalize_phone(phone_number),
            "passwordHash": credentials["passwordHash"],
            "role": UserRole.USER.value,
            "isActive": True,
            "isTempUser": True,
            "credentialsActivated": False,
            "activationTokenHash": credentials["activationTokenHash"],
            "createdAt": now,
            "lastActivity": now
        }
        user["_id"] = await self.store.insert_one(USERS, user, session=session)

        logger.info(f"[ACCOUNTS] Provisioned temporary buyer user:{user['_id']}")
        return user

    async def reissue_activation_token(self, user_id: str) -> Dict[str, Any]:
        """
        Replace a provisioned buyer's activation token.

        Returns the user with the raw `activationToken` attached for the sender.
        """
        user = await self.get_user(user_id)
        if user.get("credentialsActivated", True):
            raise StateConflictError("Credentials are already activated")

        credentials = self.issue_temporary_credentials()
        matched = await self.store.update_one(
            USERS,
            {"_id": user_id, "credentialsActivated": False},
            {"$set": {"activationTokenHash": credentials["activationTokenHash"]}}
        )
        if not matched:
            raise StateConflictError("Credentials are already activated")

        logger.info(f"[ACCOUNTS] Activation token reissued for user:{user_id}")
        return {**user, "activationToken": credentials["activationToken"]}

    async def activate_credentials(
        self,
        user_id: str,
        activation_token: str,
        new_password: str
    ) -> Dict[str, Any]:
        """Replace a provisioned buyer's temporary password with a real one."""
        user = await self.get_user(user_id)

        if user.get("credentialsActivated", True):
            raise StateConflictError("Credentials are already activated")
        if not activation_token or not verify_password(activation_token, user.get("activationTokenHash")):
            raise AuthorizationError("Invalid activation token")
        if not new_password or len(new_password) < MIN_PASSWORD_LENGTH:
            raise ValidationError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters")

        matched = await self.store.update_one(
            USERS,
            {"_id": user_id, "credentialsActivated": False},
            {
                "$set": {
                    "passwordHash": hash_password(new_password),
                    "credentialsActivated": True,
                    "activationTokenHash": None,
                    "activatedAt": datetime.utcnow(),
                    "lastActivity": datetime.utcnow()
                }
            }
        )
        if not matched:
            raise StateConflictError("Credentials are already activated")

        logger.info(f"[ACCOUNTS] Credentials activated for user:{user_id}")
        return await self.get_user(user_id)

    # =========================================================================
    # GUARDS
    # =========================================================================

    async def require_active_account(self, user_id: Optional[str], session: Any = None) -> Dict[str, Any]:
        """Return the acting user, refusing inactive or non-activated accounts."""
        if not user_id:
            raise AuthorizationError("Authentication required")

        user = await self.store.find_one(USERS, {"_id": user_id}, session=session)
        if not user:
            raise AuthorizationError("User account not found")
        if not user.get("isActive", True):
            raise AuthorizationError("User account is inactive")
        if not user.get("credentialsActivated", True):
            raise AuthorizationError("Account credentials must be activated first")
        return user

    async def require_admin(self, user_id: Optional[str]) -> None:
        if not await self.admins.is_admin(user_id):
            raise AuthorizationError("Administrator privileges required")

    async def touch_activity(self, user_id: str) -> None:
        """Stamp lastActivity. Failures are logged only."""
        try:
            await self.store.update_one(
                USERS,
                {"_id": user_id},
                {"$set": {"lastActivity": datetime.utcnow()}}
            )
        except Exception as e:
            logger.warning(f"[ACCOUNTS] Could not stamp activity for user:{user_id}: {str(e)}")

    # =========================================================================
    # CLEANUP
    # =========================================================================

    async def has_outstanding_sale(self, user_id: str) -> bool:
        pending_record = await self.store.count_documents(
            CONTRACTS,
            {
                "userId": user_id,
                "$or": [
                    {"status": ContractStatus.SALE_PENDING.value},
                    {"pendingSale": True}
                ]
            }
        )
        if pending_record:
            return True

        open_transactions = await self.store.count_documents(
            TRANSACTIONS,
            {
                "$or": [{"buyerId": user_id}, {"sellerId": user_id}],
                "status": {"$in": [TransactionStatus.PENDING.value, TransactionStatus.PAID.value]}
            }
        )
        return open_transactions > 0

    async def delete_user(self, admin_id: str, user_id: str) -> Dict[str, int]:
        """
        Delete a user with their records, notifications and outbox intents.

        Raises:
            AuthorizationError: caller is not an administrator, or target is one
            StateConflictError: target has an outstanding sale
        """
        await self.require_admin(admin_id)
        user = await self.get_user(user_id)

        if user.get("role") == UserRole.ADMIN.value or await self.admins.is_admin(user_id):
            raise AuthorizationError("Administrators cannot be deleted")
        if await self.has_outstanding_sale(user_id):
            raise StateConflictError("User has an outstanding sale and cannot be deleted")

        return await self._delete_user_data(admin_id, user)

    async def _delete_user_data(self, admin_id: str, user: Dict[str, Any]) -> Dict[str, int]:
        user_id = user["_id"]
        async with self.store.transaction() as session:
            removed = {
                "notifications": await self.store.delete_many(NOTIFICATIONS, {"userId": user_id}, session=session),
                "outbox": await self.store.delete_many(NOTIFICATION_OUTBOX, {"userId": user_id}, session=session),
                "contracts": await self.store.delete_many(CONTRACTS, {"userId": user_id}, session=session),
                "users": await self.store.delete_one(USERS, {"_id": user_id}, session=session)
            }
            await self.audit.log_action(
                entity_type="USER",
                entity_id=user_id,
                action_type="DELETE",
                user_id=admin_id,
                old_value={"phoneNumber": user.get("phoneNumber"), "role": user.get("role")},
                new_value=removed,
                session=session
            )

        logger.info(
            f"[ACCOUNTS] Deleted user:{user_id} with {removed['contracts']} contracts, "
            f"{removed['notifications']} notifications"
        )
        return removed

    async def purge_inactive_users(self, admin_id: str, days: Optional[int] = None) -> Dict[str, List[str]]:
        """
        Delete non-admin users without activity for `days` days.

        Users with an outstanding sale are skipped, not deleted.
        """
        await self.require_admin(admin_id)
        days = self.config.inactive_user_days if days is None else days
        if days < 1:
            raise ValidationError("days must be at least 1")

        cutoff = datetime.utcnow() - timedelta(days=days)
        admin_ids = await self.admins.admin_ids()
        candidates = await self.store.find(
            USERS,
            {
                "role": {"$ne": UserRole.ADMIN.value},
                "_id": {"$nin": admin_ids},
                "$or": [
                    {"lastActivity": {"$lt": cutoff}},
                    {"lastActivity": {"$exists": False}, "createdAt": {"$lt": cutoff}}
                ]
            }
        )

        deleted: List[str] = []
        skipped: List[str] = []
        for user in candidates:
            if await self.has_outstanding_sale(user["_id"]):
                skipped.append(user["_id"])
                continue
            await self._delete_user_data(admin_id, user)
            deleted.append(user["_id"])

        logger.info(
            f"[ACCOUNTS] Purged {len(deleted)} inactive users (cutoff {days} days), "
            f"skipped {len(skipped)} with outstanding sales"
        )
        return {"deleted": deleted, "skipped": skipped}
