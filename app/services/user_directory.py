"""
User Directory - The slice of the user account store the licensing flow needs.

Purchases provision accounts by email: verified, no password, default
preferences. Writes flush inside the caller's transaction.
"""

import secrets
import string
from uuid import UUID

from argon2 import PasswordHasher
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.models import User
from app.exceptions import UserNotFoundError, WriteVerificationError
from app.observability.logging import get_logger

logger = get_logger(__name__)

TEMPORARY_PASSWORD_LENGTH = 12
DEFAULT_CUSTOMER_NAME = "JVZoo Customer"
_PASSWORD_ALPHABET = string.ascii_letters + string.digits


def generate_temporary_password(length: int = TEMPORARY_PASSWORD_LENGTH) -> str:
    """Random password for welcome emails (letters and digits only)."""
    return "".join(secrets.choice(_PASSWORD_ALPHABET) for _ in range(length))


class UserDirectory:
    """Lookup and purchase-driven provisioning of users."""

    def __init__(
        self, session: AsyncSession, password_hasher: PasswordHasher | None = None
    ) -> None:
        self.session = session
        self.password_hasher = password_hasher or PasswordHasher()

    async def get(self, user_id: UUID) -> User:
        """
        Raises:
            UserNotFoundError: No such user
        """
        user = await self.session.get(User, user_id)
        if user is None:
            raise UserNotFoundError(user_id)
        return user

    async def find_by_email(self, email: str) -> User | None:
        """Case-insensitive email match."""
        stmt = select(User).where(func.lower(User.email) == email.strip().lower())
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def find_or_create_from_purchase(
        self,
        email: str,
        name: str | None = None,
        customer_id: str | None = None,
    ) -> tuple[User, bool]:
        """
        Return (user, created) for a buyer email.

        New users are email-verified, have no password, and carry the default
        preferences from the model.
        """
        normalized = email.strip().lower()
        user = await self.find_by_email(normalized)
        if user is not None:
            if customer_id and not user.jvzoo_customer_id:
                user.jvzoo_customer_id = customer_id
                await self.session.flush()
            return user, False

        new_user = User(
            email=normalized,
            name=name or DEFAULT_CUSTOMER_NAME,
            password_hash=None,
            email_verified=True,
            created_via="jvzoo",
            jvzoo_customer_id=customer_id,
            credits_used_period=0,
        )

        try:
            async with self.session.begin_nested():
                self.session.add(new_user)
                await self.session.flush()
        except IntegrityError:
            # Race condition - user created by a concurrent notification
            user = await self.find_by_email(normalized)
            if user is None:
                raise WriteVerificationError("User creation failed due to race condition")
            return user, False

        verified = await self.session.get(User, new_user.id)
        if verified is None:
            raise WriteVerificationError(f"User {new_user.id} not found after insert")

        logger.info("user_provisioned", user_id=str(verified.id), created_via="jvzoo")
        return verified, True

    async def issue_temporary_password(self, user: User) -> str:
        """Set and return a fresh temporary password (stored as an Argon2 hash)."""
        password = generate_temporary_password()
        user.password_hash = self.password_hasher.hash(password)
        await self.session.flush()
        logger.info("temporary_password_issued", user_id=str(user.id))
        return password
