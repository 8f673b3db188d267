"""
Seed script for the property title registry.

Creates:
- Civil registry entries for the seeded identities
- 1 Admin user (phone: 01000000000 / password: admin123)
- Database indexes
"""

import asyncio
import os
from pathlib import Path
from dotenv import load_dotenv

from title_registry.config import RegistryConfig
from title_registry.enums import UserRole
from title_registry.mongo_store import MongoDocumentStore
from title_registry.registry import TitleRegistryService
from title_registry.store import CIVIL_REGISTRY

# Load environment
ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

CITIZENS = [
    {"fullName": "مدير النظام", "nationalId": "29001010100011"},
    {"fullName": "أحمد محمد علي", "nationalId": "29105150100234"},
    {"fullName": "منى حسن إبراهيم", "nationalId": "29203200100456"},
]

ADMIN_PHONE = "01000000000"
ADMIN_PASSWORD = "admin123"


async def seed_database():
    """Seed the database with initial data"""

    store = MongoDocumentStore.from_url(os.environ['MONGO_URL'], os.environ['DB_NAME'])
    service = TitleRegistryService(store, RegistryConfig.from_env())

    print("🌱 Starting database seeding...")

    try:
        # ============================================
        # 1. CREATE INDEXES
        # ============================================
        print("📇 Creating database indexes...")
        await store.ensure_indexes()
        print("   ✅ Indexes created")

        # ============================================
        # 2. CIVIL REGISTRY
        # ============================================
        print("🪪 Creating civil registry entries...")

        for citizen in CITIZENS:
            existing = await store.find_one(CIVIL_REGISTRY, {"nationalId": citizen["nationalId"]})
            if existing:
                print(f"   ⚠️  {citizen['nationalId']} already registered. Skipping...")
                continue
            await service.civil_registry.register_citizen(citizen["fullName"], citizen["nationalId"])
            print(f"   ✅ {citizen['nationalId']} - {citizen['fullName']}")

        # ============================================
        # 3. CREATE ADMIN USER
        # ============================================
        print("👤 Creating admin user...")

        existing_admin = await service.accounts.find_by_phone(ADMIN_PHONE)
        if existing_admin:
            print("   ⚠️  Admin user already exists. Skipping...")
            admin_id = existing_admin["_id"]
        else:
            admin = await service.accounts.register_user(
                CITIZENS[0]["fullName"],
                CITIZENS[0]["nationalId"],
                ADMIN_PHONE,
                ADMIN_PASSWORD,
                role=UserRole.ADMIN
            )
            admin_id = admin["_id"]
            print("   ✅ Admin user created")
            print(f"      📱 Phone: {ADMIN_PHONE}")
            print(f"      🔑 Password: {ADMIN_PASSWORD}")
            print("      ⚠️  CHANGE PASSWORD AFTER FIRST LOGIN!")

        # ============================================
        # SUMMARY
        # ============================================
        print("\n" + "="*60)
        print("✨ DATABASE SEEDING COMPLETE ✨")
        print("="*60)
        print(f"\n👤 Admin ID: {admin_id}")
        print(f"🪪 Civil registry entries: {len(CITIZENS)}")
        print("\n⚠️  SECURITY: Change admin password after first login!")
        print("="*60)

    finally:
        await store.close()


if __name__ == "__main__":
    asyncio.run(seed_database())
