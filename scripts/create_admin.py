"""Create an admin user in the Servly database, or promote an existing user.

Usage:
    python scripts/create_admin.py admin@servly.test [identity-provider-subject]
"""

import asyncio
import sys

from sqlalchemy import select

from app.auth.service import create_access_token
from app.database import async_session
from app.models.enums import UserRole
from app.models.user import User


async def create_admin(email: str, external_id: str | None = None) -> None:
    async with async_session() as db:
        result = await db.execute(select(User).where(User.email == email))
        user = result.scalar_one_or_none()
        if user is not None and user.role == UserRole.ADMIN:
            print(f"Error: User with email '{email}' is already an admin.")
            sys.exit(1)
        if user is not None and user.role == UserRole.PROVIDER:
            # Provider profiles reference the user; promote a separate account instead
            print(f"Error: '{email}' is a provider account and cannot be promoted.")
            sys.exit(1)

        if user is None:
            user = User(email=email, external_id=external_id, role=UserRole.ADMIN)
            db.add(user)
        else:
            user.role = UserRole.ADMIN
        await db.commit()

        print(f"Admin user ready: {email} (id={user.id})")
        print(f"Access token: {create_access_token(str(user.id))}")


def main() -> None:
    if len(sys.argv) not in (2, 3):
        print("Usage: python scripts/create_admin.py <email> [external_id]")
        sys.exit(1)

    asyncio.run(create_admin(sys.argv[1], sys.argv[2] if len(sys.argv) == 3 else None))


if __name__ == "__main__":
    main()
