"""
Persistence operations for user records and their broker credential groups
"""
from typing import Any, Mapping
import uuid

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
import structlog

from tradelink.core.exceptions import NotFoundError, ValidationError
from tradelink.models.user import BROKER_FIELDS, TOKEN_FIELDS, DataProvider, User, utcnow

logger = structlog.get_logger()


def parse_user_id(user_id: uuid.UUID | str) -> uuid.UUID:
    if isinstance(user_id, uuid.UUID):
        return user_id
    try:
        return uuid.UUID(str(user_id))
    except ValueError:
        raise ValidationError("Invalid user ID")


class CredentialStore:
    """Thin repository over the users table.

    Updates are merge-only and keyed by user id; concurrent writers for the
    same user are not serialized, the last commit wins.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get(self, user_id: uuid.UUID | str) -> User:
        user = await self.db.get(User, parse_user_id(user_id))
        if user is None:
            raise NotFoundError("User not found")
        return user

    async def get_by_email(self, email: str) -> User | None:
        result = await self.db.execute(select(User).filter(User.email == email.strip().lower()))
        return result.scalar_one_or_none()

    async def list_users(self, verified: bool | None = None) -> list[User]:
        query = select(User).order_by(User.created_at)
        if verified is not None:
            query = query.filter(User.is_verified == verified)
        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def create_user(self, email: str, password_hash: str, name: str = "") -> User:
        user = User(
            email=email.strip().lower(),
            password_hash=password_hash,
            name=name or "",
            is_verified=False,
        )
        self.db.add(user)
        await self.db.commit()
        logger.info("User record created", user_id=str(user.id))
        return user

    async def touch_login(self, user: User) -> User:
        now = utcnow()
        user.last_login = now
        user.updated_at = now
        await self.db.commit()
        return user

    async def mark_verified(self, user_id: uuid.UUID | str) -> User:
        user = await self.get(user_id)
        user.is_verified = True
        user.updated_at = utcnow()
        await self.db.commit()
        logger.info("User marked verified", user_id=str(user.id))
        return user

    async def update_broker_fields(self, user_id: uuid.UUID | str, fields: Mapping[str, Any]) -> User:
        """Merge the given broker/trading fields into the record, leaving others untouched"""
        unknown = set(fields) - BROKER_FIELDS
        if unknown:
            raise ValidationError(f"Unknown broker fields: {', '.join(sorted(unknown))}")

        user = await self.get(user_id)
        for name, value in fields.items():
            if isinstance(value, DataProvider):
                value = value.value
            setattr(user, name, value)
        user.updated_at = utcnow()
        await self.db.commit()

        logger.info(
            "Broker fields updated",
            user_id=str(user.id),
            fields=sorted(fields),
        )
        return user

    async def clear_broker_tokens(self, user_id: uuid.UUID | str, provider: DataProvider) -> User:
        """Blank out a provider's tokens so a known-invalid token is never kept"""
        cleared = {name: "" for name in TOKEN_FIELDS[provider]}
        user = await self.update_broker_fields(user_id, cleared)
        logger.info("Broker tokens cleared", user_id=str(user.id), broker=provider.value)
        return user
