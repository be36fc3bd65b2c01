"""Seed script for the Servly backend.

Creates baseline data for local testing:
- 1 admin user
- 2 providers (starter and pro plan) with services and weekly schedules
- 2 customers

Idempotent: checks if users exist before creating them.
Run with: python seed.py

Sign-in is handled by the hosted identity provider, so the script prints a
short-lived access token per user for calling the API locally.
"""

import asyncio
import sys
import uuid
from datetime import time

from app.config import settings

# Guard: prevent running on production
if settings.APP_ENV == "production":
    print("ERROR: Cannot seed production database.")
    sys.exit(1)

from sqlalchemy import select

from app.auth.service import create_access_token
from app.database import async_session
from app.models.availability import WeeklySchedule
from app.models.enums import PricingType, ProviderPlan, UserRole
from app.models.provider_profile import ProviderProfile
from app.models.service import Service
from app.models.user import User


SEED_USERS = [
    {"email": "admin@servly.test", "role": UserRole.ADMIN, "first_name": "Admin", "last_name": "Servly"},
    {"email": "aroha@servly.test", "role": UserRole.PROVIDER, "first_name": "Aroha", "last_name": "Ngata"},
    {"email": "liam@servly.test", "role": UserRole.PROVIDER, "first_name": "Liam", "last_name": "Walker"},
    {"email": "mere@servly.test", "role": UserRole.CUSTOMER, "first_name": "Mere", "last_name": "Parata"},
    {"email": "olivia@servly.test", "role": UserRole.CUSTOMER, "first_name": "Olivia", "last_name": "Chen"},
]


PROVIDER_PROFILES = [
    {
        "email": "aroha@servly.test",
        "business_name": "Aroha's Gardens",
        "plan": ProviderPlan.STARTER,
        "charges_gst": True,
        "services": [
            ("Lawn mowing", PricingType.FIXED, 8_000),
            ("Hedge trimming", PricingType.FIXED, 12_000),
            ("Garden redesign", PricingType.QUOTE, 0),
        ],
        # Monday to Friday, 08:00-17:00
        "days": [(d, time(8, 0), time(17, 0)) for d in range(5)],
    },
    {
        "email": "liam@servly.test",
        "business_name": "Walker Plumbing",
        "plan": ProviderPlan.PRO,
        "charges_gst": False,
        "services": [
            ("Leak repair", PricingType.FIXED, 15_000),
            ("Hot water cylinder install", PricingType.QUOTE, 0),
        ],
        # Tuesday to Saturday, 07:00-15:00
        "days": [(d, time(7, 0), time(15, 0)) for d in range(1, 6)],
    },
]


async def seed() -> None:
    async with async_session() as db:
        user_map: dict[str, User] = {}

        # Create users (idempotent)
        for user_data in SEED_USERS:
            result = await db.execute(select(User).where(User.email == user_data["email"]))
            existing = result.scalar_one_or_none()
            if existing:
                print(f"  [skip] User {user_data['email']} already exists")
                user_map[user_data["email"]] = existing
                continue

            user = User(id=uuid.uuid4(), **user_data)
            db.add(user)
            await db.flush()
            user_map[user_data["email"]] = user
            print(f"  [created] User {user_data['email']} ({user_data['role'].value})")

        # Create provider profiles, services and schedules (idempotent)
        for profile_data in PROVIDER_PROFILES:
            user = user_map[profile_data["email"]]
            result = await db.execute(select(ProviderProfile).where(ProviderProfile.user_id == user.id))
            if result.scalar_one_or_none():
                print(f"  [skip] Profile for {profile_data['email']} already exists")
                continue

            profile = ProviderProfile(
                id=uuid.uuid4(),
                user_id=user.id,
                business_name=profile_data["business_name"],
                plan=profile_data["plan"],
                charges_gst=profile_data["charges_gst"],
            )
            db.add(profile)
            await db.flush()

            for title, pricing_type, price in profile_data["services"]:
                db.add(Service(provider_id=profile.id, title=title, pricing_type=pricing_type, price_in_cents=price))
            for day_of_week, start, end in profile_data["days"]:
                db.add(WeeklySchedule(provider_id=profile.id, day_of_week=day_of_week, start_time=start, end_time=end))
            await db.flush()
            print(
                f"  [created] {profile_data['business_name']} ({profile_data['plan'].value}) with "
                f"{len(profile_data['services'])} services"
            )

        await db.commit()

        print("\nAccess tokens (valid for the configured expiry):")
        for email, user in user_map.items():
            print(f"  {email}: {create_access_token(str(user.id))}")
        print("\nSeed completed successfully.")


if __name__ == "__main__":
    print("Seeding Servly database...")
    asyncio.run(seed())
