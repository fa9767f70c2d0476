"""
Broker verification workflow.

Drives a user from "no credentials" to a linked, validated broker account:

    checking -> requires_credentials -> requires_auth -> auth_started
             -> auth_completed -> success | failed

``failed`` is left only through an explicit retry, which re-enters
``requires_auth``. All state lives in a ``VerificationContext`` owned by the
caller; the workflow itself holds no per-user state.
"""
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Set
import uuid

import structlog

from tradelink.core.codec import decode_secure_data
from tradelink.core.config import settings
from tradelink.core.exceptions import TradeLinkError, ValidationError
from tradelink.models.user import DataProvider, User
from tradelink.services.broker_service import (
    EXCHANGE_MISSING_CREDENTIALS,
    EXCHANGE_REJECTED,
    LABELS,
    BrokerLinkService,
    credential,
)

logger = structlog.get_logger()


class VerificationState(str, Enum):
    CHECKING = "checking"
    REQUIRES_CREDENTIALS = "requires_credentials"
    REQUIRES_AUTH = "requires_auth"
    AUTH_STARTED = "auth_started"
    AUTH_COMPLETED = "auth_completed"
    SUCCESS = "success"
    FAILED = "failed"


ACTION_SAVE_CREDENTIALS = "Save Credentials"
ACTION_TRY_AGAIN = "Try Again"


def verify_action(provider: DataProvider) -> str:
    return f"Verify {LABELS[provider]} Account"


@dataclass
class VerificationContext:
    """Per-user workflow state passed explicitly between steps"""
    user_id: uuid.UUID
    provider: DataProvider = DataProvider.FYERS
    state: VerificationState = VerificationState.CHECKING
    message: str = ""
    action: Optional[str] = None
    auth_url: Optional[str] = None
    redirect_to: Optional[str] = None
    redirect_delay_ms: Optional[int] = None
    cached_auth_code: Optional[str] = None
    consumed_codes: Set[str] = field(default_factory=set)
    user: Optional[User] = None

    def as_dict(self) -> dict:
        return {
            "success": self.state != VerificationState.FAILED,
            "provider": self.provider.value,
            "state": self.state.value,
            "message": self.message,
            "action": self.action,
            "auth_url": self.auth_url,
            "redirect_to": self.redirect_to,
            "redirect_delay_ms": self.redirect_delay_ms,
        }


class VerificationWorkflow:
    """State machine over the broker link operations"""

    def __init__(self, service: BrokerLinkService):
        self.service = service

    def _transition(
        self,
        ctx: VerificationContext,
        state: VerificationState,
        message: str = "",
        action: Optional[str] = None,
    ) -> VerificationContext:
        logger.info(
            "Verification state change",
            user_id=str(ctx.user_id),
            broker=ctx.provider.value,
            from_state=ctx.state.value,
            to_state=state.value,
        )
        ctx.state = state
        ctx.message = message
        ctx.action = action
        if state != VerificationState.SUCCESS:
            ctx.redirect_to = None
            ctx.redirect_delay_ms = None
        return ctx

    @staticmethod
    def _require(ctx: VerificationContext, *states: VerificationState) -> None:
        if ctx.state not in states:
            raise ValidationError(f"Cannot perform this step while verification is '{ctx.state.value}'")

    def _succeed(self, ctx: VerificationContext, user: User, message: str) -> VerificationContext:
        ctx.user = user
        ctx.auth_url = None
        self._transition(ctx, VerificationState.SUCCESS, message)
        ctx.redirect_to = settings.VERIFICATION_REDIRECT_PATH
        ctx.redirect_delay_ms = settings.VERIFICATION_REDIRECT_DELAY_MS
        return ctx

    async def _derive_from_credentials(self, ctx: VerificationContext, message: str = "") -> VerificationContext:
        user = await self.service.store.get(ctx.user_id)
        ctx.user = user
        label = LABELS[ctx.provider]

        has_client_id = bool(credential(user, ctx.provider, "client_id"))
        has_secret = bool(credential(user, ctx.provider, "secret_key"))

        if has_client_id and has_secret:
            return self._transition(
                ctx,
                VerificationState.REQUIRES_AUTH,
                message or f"Your {label} credentials are saved. Authorize access to finish linking your account.",
                verify_action(ctx.provider),
            )
        return self._transition(
            ctx,
            VerificationState.REQUIRES_CREDENTIALS,
            message or f"Enter your {label} API credentials to continue.",
            ACTION_SAVE_CREDENTIALS,
        )

    async def check(self, ctx: VerificationContext) -> VerificationContext:
        """Initial step: validate an existing token or work out what is missing"""
        self._require(ctx, VerificationState.CHECKING)
        user = await self.service.store.get(ctx.user_id)
        ctx.user = user

        if not (credential(user, ctx.provider, "client_id") and credential(user, ctx.provider, "access_token")):
            return await self._derive_from_credentials(ctx)

        self._transition(ctx, VerificationState.AUTH_COMPLETED)
        result = await self.service.validate_token(ctx.user_id, ctx.provider)

        if result.is_valid:
            user = await self.service.store.get(ctx.user_id)
            return self._succeed(ctx, user, result.message)
        if result.check_failed:
            return self._transition(ctx, VerificationState.FAILED, result.message, ACTION_TRY_AGAIN)

        # The rejected token has already been cleared by the validation step
        return await self._derive_from_credentials(
            ctx,
            f"{LABELS[ctx.provider]} token is invalid or expired. Please re-authenticate.",
        )

    async def submit_credentials(
        self,
        ctx: VerificationContext,
        client_id: str,
        secret_key: str,
    ) -> VerificationContext:
        """Store credentials received base64-encoded, then re-check"""
        self._require(
            ctx,
            VerificationState.REQUIRES_CREDENTIALS,
            VerificationState.REQUIRES_AUTH,
            VerificationState.CHECKING,
        )
        if not client_id or not secret_key:
            raise ValidationError(f"{LABELS[ctx.provider]} client ID and secret key are required")

        await self.service.save_credentials(
            ctx.user_id,
            ctx.provider,
            client_id=decode_secure_data(client_id),
            secret_key=decode_secure_data(secret_key),
        )
        ctx.state = VerificationState.CHECKING
        return await self.check(ctx)

    async def start_auth(self, ctx: VerificationContext, state: Optional[str] = None) -> VerificationContext:
        """Build the broker consent URL the user must be sent to"""
        self._require(ctx, VerificationState.REQUIRES_AUTH)
        user = ctx.user or await self.service.store.get(ctx.user_id)
        ctx.cached_auth_code = None

        if not credential(user, ctx.provider, "client_id"):
            ctx.message = f"Missing {LABELS[ctx.provider]} client ID. Please contact support."
            return ctx

        try:
            ctx.auth_url = self.service.auth_url(user, ctx.provider, state)
        except TradeLinkError as e:
            logger.error("Could not build consent URL", user_id=str(ctx.user_id), error=e.message)
            return self._transition(
                ctx,
                VerificationState.FAILED,
                f"Failed to generate {LABELS[ctx.provider]} authentication URL. Please try again.",
                ACTION_TRY_AGAIN,
            )
        return self._transition(ctx, VerificationState.AUTH_STARTED)

    def receive_auth_code(self, ctx: VerificationContext, auth_code: str) -> VerificationContext:
        """Return path from the broker's consent page"""
        self._require(
            ctx,
            VerificationState.CHECKING,
            VerificationState.REQUIRES_AUTH,
            VerificationState.AUTH_STARTED,
        )
        if not auth_code:
            raise ValidationError("Authorization code is required")
        ctx.cached_auth_code = auth_code
        return self._transition(ctx, VerificationState.AUTH_COMPLETED)

    async def complete_auth(self, ctx: VerificationContext) -> VerificationContext:
        """Exchange the cached authorization code, at most once"""
        self._require(ctx, VerificationState.AUTH_COMPLETED)
        label = LABELS[ctx.provider]

        auth_code, ctx.cached_auth_code = ctx.cached_auth_code, None
        if not auth_code:
            return self._transition(
                ctx,
                VerificationState.REQUIRES_AUTH,
                f"No authorization code received from {label}. Please authenticate again.",
                verify_action(ctx.provider),
            )
        if auth_code in ctx.consumed_codes:
            return self._transition(
                ctx,
                VerificationState.REQUIRES_AUTH,
                "This authorization code has already been used. Please authenticate again.",
                verify_action(ctx.provider),
            )
        ctx.consumed_codes.add(auth_code)

        result = await self.service.save_credentials(ctx.user_id, ctx.provider, auth_code=auth_code)

        if result.token_exchange_error:
            if result.token_exchange_error_type == EXCHANGE_MISSING_CREDENTIALS:
                return await self._derive_from_credentials(ctx, result.token_exchange_error)
            if result.token_exchange_error_type == EXCHANGE_REJECTED:
                return self._transition(
                    ctx,
                    VerificationState.REQUIRES_AUTH,
                    f"Token exchange failed: {result.token_exchange_error}",
                    verify_action(ctx.provider),
                )
            return self._transition(
                ctx,
                VerificationState.FAILED,
                f"Token exchange failed: {result.token_exchange_error}",
                ACTION_TRY_AGAIN,
            )

        if not result.access_token:
            return self._transition(
                ctx,
                VerificationState.REQUIRES_AUTH,
                "Failed to obtain access token. Please try authenticating again.",
                verify_action(ctx.provider),
            )

        # Reload so the caller sees whatever the server stored
        user = await self.service.store.get(ctx.user_id)
        return self._succeed(ctx, user, f"{label} account verified successfully")

    async def handle_callback(self, ctx: VerificationContext, auth_code: str) -> VerificationContext:
        self.receive_auth_code(ctx, auth_code)
        return await self.complete_auth(ctx)

    def retry(self, ctx: VerificationContext) -> VerificationContext:
        self._require(ctx, VerificationState.FAILED)
        return self._transition(
            ctx,
            VerificationState.REQUIRES_AUTH,
            f"Authorize access to your {LABELS[ctx.provider]} account to try again.",
            verify_action(ctx.provider),
        )
