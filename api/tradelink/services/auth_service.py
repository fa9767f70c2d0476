"""
Account registration, login and identity-token verification
"""
from dataclasses import dataclass
from typing import Optional
import re
import uuid

import structlog

from tradelink.core.exceptions import (
    AuthError,
    ConflictError,
    ForbiddenError,
    ValidationError,
)
from tradelink.core.metrics import record_auth_event
from tradelink.core.security import (
    create_access_token,
    decode_access_token,
    get_password_hash,
    verify_password,
)
from tradelink.models.user import User
from tradelink.services.credential_store import CredentialStore

logger = structlog.get_logger()

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
MIN_PASSWORD_LENGTH = 6
INVALID_CREDENTIALS = "Invalid email or password"


@dataclass
class TokenClaims:
    """Identity asserted by a valid token"""
    user_id: uuid.UUID
    email: str
    name: str
    is_verified: bool


@dataclass
class AuthResult:
    user: User
    token: str


def issue_token(user: User) -> str:
    if not user.email:
        raise ValidationError("User email is required for token generation")
    return create_access_token(
        data={
            "sub": str(user.id),
            "id": str(user.id),
            "email": user.email,
            "name": user.name or "",
            "is_verified": bool(user.is_verified),
        }
    )


def verify_token(token: Optional[str]) -> Optional[TokenClaims]:
    """Decode an identity token; None on any failure, never raises"""
    if not token:
        return None
    payload = decode_access_token(token)
    if payload is None:
        return None
    try:
        return TokenClaims(
            user_id=uuid.UUID(str(payload.get("sub") or payload.get("id"))),
            email=str(payload["email"]),
            name=payload.get("name") or "",
            is_verified=bool(payload.get("is_verified", False)),
        )
    except (KeyError, ValueError, TypeError):
        logger.warning("Identity token missing required claims")
        return None


class AuthService:
    """User registration and login backed by the credential store"""

    def __init__(self, store: CredentialStore):
        self.store = store

    async def register(self, email: Optional[str], password: Optional[str], name: Optional[str] = None) -> AuthResult:
        if not email or not password:
            raise ValidationError("Email and password are required")
        if not EMAIL_PATTERN.match(email):
            raise ValidationError("Invalid email format")
        if len(password) < MIN_PASSWORD_LENGTH:
            raise ValidationError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters long")

        if await self.store.get_by_email(email):
            record_auth_event("register", "conflict")
            raise ConflictError("User with this email already exists")

        user = await self.store.create_user(
            email=email,
            password_hash=get_password_hash(password),
            name=name or "",
        )
        record_auth_event("register", "success")
        logger.info("User registered successfully", user_id=str(user.id))
        return AuthResult(user=user, token=issue_token(user))

    async def login(self, email: Optional[str], password: Optional[str]) -> AuthResult:
        if not email or not password:
            raise ValidationError("Email and password are required")

        user = await self.store.get_by_email(email)
        if user is None or not verify_password(password, user.password_hash):
            record_auth_event("login", "bad_credentials")
            logger.warning("Failed login attempt")
            raise AuthError(INVALID_CREDENTIALS)

        if not user.is_verified:
            record_auth_event("login", "unverified")
            logger.info("Login refused for unverified account", user_id=str(user.id))
            raise ForbiddenError()

        await self.store.touch_login(user)
        record_auth_event("login", "success")
        logger.info("User logged in successfully", user_id=str(user.id))
        return AuthResult(user=user, token=issue_token(user))

    async def verify_account(self, user_id: Optional[str]) -> User:
        if not user_id:
            raise ValidationError("User ID is required")
        return await self.store.mark_verified(user_id)
